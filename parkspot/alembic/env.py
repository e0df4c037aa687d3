from alembic import context
from logging.config import fileConfig

from parkspot.core.config import get_settings
from parkspot.db import build_engine, is_sqlite

# this Alembic Config object provides access to the values within the .ini file in use.
config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# No ORM metadata; migrations are explicit.
target_metadata = None

engine = build_engine(get_settings())


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode (emit SQL to stdout/file, no DB connection)."""
    context.configure(
        url=str(engine.url),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=is_sqlite(engine),  # allows ALTER TABLE on SQLite via batch ops
        compare_type=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode (apply to a live DB connection)."""
    with engine.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            render_as_batch=is_sqlite(engine),
            compare_type=True,
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
