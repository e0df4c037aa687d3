import os
import logging
import threading

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine

from parkspot.core.config import Settings

log = logging.getLogger(__name__)

_INIT_LOCK = threading.Lock()


def _ensure_dir_for_sqlite(url: str) -> None:
    if not url.startswith("sqlite:///"):
        return
    path = url.replace("sqlite:///", "", 1)
    if path == ":memory:":
        return
    d = os.path.dirname(path)
    if d:
        os.makedirs(d, exist_ok=True)


def build_engine(cfg: Settings) -> Engine:
    url = cfg.DATABASE_URL or "sqlite:///data/parkspot.db"
    if url.startswith("sqlite:"):
        _ensure_dir_for_sqlite(url)
        eng = create_engine(
            url,
            future=True,
            pool_pre_ping=True,
            connect_args={"check_same_thread": False},
            echo=cfg.DB_ECHO,
        )

        @event.listens_for(eng, "connect")
        def _sqlite_pragmas(dbapi_conn, _):
            cur = dbapi_conn.cursor()
            try:
                cur.execute("PRAGMA journal_mode=WAL")
                cur.execute("PRAGMA synchronous=NORMAL")
                cur.execute("PRAGMA busy_timeout=5000")
            finally:
                cur.close()

        log.info("DB engine ready dialect=%s", eng.dialect.name)
        return eng

    # Postgres (Supabase) / others
    eng = create_engine(
        url,
        future=True,
        pool_pre_ping=True,
        pool_size=cfg.DB_POOL_SIZE,
        max_overflow=cfg.DB_MAX_OVERFLOW,
        pool_recycle=cfg.DB_POOL_RECYCLE_S,
        echo=cfg.DB_ECHO,
    )
    log.info("DB engine ready dialect=%s", eng.dialect.name)
    return eng


def is_sqlite(engine: Engine) -> bool:
    return engine.dialect.name == "sqlite"


def is_postgres(engine: Engine) -> bool:
    return engine.dialect.name == "postgresql"


def init_db(engine: Engine) -> None:
    """Create the profiles table when missing. Alembic owns later changes."""
    with _INIT_LOCK:
        with engine.begin() as conn:
            conn.execute(
                text(
                    """
                CREATE TABLE IF NOT EXISTS profiles(
                    id TEXT PRIMARY KEY,
                    email TEXT,
                    subscription_tier TEXT NOT NULL DEFAULT 'free',
                    subscription_status TEXT NOT NULL DEFAULT 'inactive',
                    stripe_customer_id TEXT UNIQUE,
                    stripe_subscription_id TEXT,
                    subscription_renews_at TEXT,
                    cancel_at_period_end BOOLEAN NOT NULL DEFAULT FALSE,
                    created_at TEXT,
                    updated_at TEXT
                )
                """
                )
            )
            conn.execute(
                text(
                    "CREATE INDEX IF NOT EXISTS ix_profiles_stripe_subscription_id "
                    "ON profiles (stripe_subscription_id)"
                )
            )


def ping(engine: Engine) -> bool:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return True
