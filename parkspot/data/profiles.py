import datetime as dt
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from parkspot.db import is_postgres

log = logging.getLogger(__name__)

ACTIVE_STATUSES = ("active", "trialing")

# Columns the reconciler may write; everything else is owned elsewhere.
SUBSCRIPTION_COLUMNS = (
    "subscription_tier",
    "subscription_status",
    "stripe_subscription_id",
    "subscription_renews_at",
    "cancel_at_period_end",
)

_PROFILE_COLUMNS = (
    "id, email, subscription_tier, subscription_status, stripe_customer_id, "
    "stripe_subscription_id, subscription_renews_at, cancel_at_period_end"
)


def _utc_now_iso() -> str:
    """UTC timestamp, second precision, with trailing 'Z'."""
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0, tzinfo=None).isoformat() + "Z"


def _parse_iso(value: str | None) -> dt.datetime | None:
    s = (value or "").strip()
    if not s:
        return None
    try:
        d = dt.datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None
    if d.tzinfo is None:
        return d.replace(tzinfo=dt.timezone.utc)
    return d.astimezone(dt.timezone.utc)


@dataclass(frozen=True)
class Profile:
    id: str
    email: Optional[str]
    subscription_tier: str
    subscription_status: str
    stripe_customer_id: Optional[str]
    stripe_subscription_id: Optional[str]
    subscription_renews_at: Optional[str]
    cancel_at_period_end: bool

    def subscription_fields(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in SUBSCRIPTION_COLUMNS}

    def is_subscribed(self, now: dt.datetime | None = None) -> bool:
        """True for an active/trialing subscription whose period hasn't ended."""
        if self.subscription_status not in ACTIVE_STATUSES:
            return False
        renews_at = _parse_iso(self.subscription_renews_at)
        if renews_at is None:
            return True
        now_dt = now or dt.datetime.now(dt.timezone.utc)
        if now_dt.tzinfo is None:
            now_dt = now_dt.replace(tzinfo=dt.timezone.utc)
        return renews_at > now_dt


def _row_to_profile(row) -> Profile:
    return Profile(
        id=row[0],
        email=row[1],
        subscription_tier=row[2] or "free",
        subscription_status=row[3] or "inactive",
        stripe_customer_id=row[4] or None,
        stripe_subscription_id=row[5] or None,
        subscription_renews_at=row[6] or None,
        cancel_at_period_end=bool(row[7]),
    )


class ProfileStore:
    """Reads and writes the billing fields of ``profiles`` rows."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def ensure_profile(self, user_id: str, email: str | None = None) -> None:
        """
        Best-effort upsert to ensure a profiles row exists. No-op on conflicts.
        """
        if not user_id:
            return
        now = _utc_now_iso()
        params = {"id": user_id, "email": email, "now": now}
        sql_pg = (
            "INSERT INTO profiles (id, email, created_at, updated_at) "
            "VALUES (:id, :email, :now, :now) "
            "ON CONFLICT (id) DO NOTHING"
        )
        sql_sqlite = (
            "INSERT OR IGNORE INTO profiles (id, email, created_at, updated_at) "
            "VALUES (:id, :email, :now, :now)"
        )
        with self.engine.begin() as conn:
            conn.execute(text(sql_pg if is_postgres(self.engine) else sql_sqlite), params)

    def get_profile(self, user_id: str | None) -> Profile | None:
        if not user_id:
            return None
        with self.engine.begin() as conn:
            row = conn.execute(
                text(f"SELECT {_PROFILE_COLUMNS} FROM profiles WHERE id = :uid LIMIT 1"),
                {"uid": user_id},
            ).first()
        return _row_to_profile(row) if row else None

    def get_stripe_customer_id(self, user_id: str) -> str | None:
        if not user_id:
            return None
        with self.engine.begin() as conn:
            res = conn.execute(
                text("SELECT stripe_customer_id FROM profiles WHERE id = :uid LIMIT 1"),
                {"uid": user_id},
            ).first()
            return res[0] if res and res[0] else None

    def claim_stripe_customer_id(self, user_id: str, customer_id: str) -> str | None:
        """
        Compare-and-set the customer id: only written while the column is NULL.
        Returns whatever id is stored afterwards, which is ``customer_id`` when
        this call won and the previously stored id when it lost. A customer id
        already held by another profile is not written.
        """
        if not user_id or not customer_id:
            return None
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    text(
                        "UPDATE profiles SET stripe_customer_id = :cid, updated_at = :now "
                        "WHERE id = :uid AND stripe_customer_id IS NULL"
                    ),
                    {"uid": user_id, "cid": customer_id, "now": _utc_now_iso()},
                )
        except IntegrityError:
            log.warning("profiles.customer_taken user=%s customer=%s", user_id, customer_id)
        return self.get_stripe_customer_id(user_id)

    def find_user_id_by_stripe_customer(self, customer_id: str | None) -> str | None:
        if not customer_id:
            return None
        with self.engine.begin() as conn:
            res = conn.execute(
                text("SELECT id FROM profiles WHERE stripe_customer_id = :cid LIMIT 1"),
                {"cid": customer_id},
            ).first()
            return res[0] if res and res[0] else None

    def update_subscription_fields(self, user_id: str, changes: Dict[str, Any]) -> None:
        if not user_id or not changes:
            return
        unknown = set(changes) - set(SUBSCRIPTION_COLUMNS)
        if unknown:
            raise ValueError(f"not a subscription column: {sorted(unknown)}")
        assignments = ", ".join(f"{col} = :{col}" for col in changes)
        params = dict(changes, uid=user_id, now=_utc_now_iso())
        with self.engine.begin() as conn:
            conn.execute(
                text(f"UPDATE profiles SET {assignments}, updated_at = :now WHERE id = :uid"),
                params,
            )
