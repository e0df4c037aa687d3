"""Mirror processor subscription state onto the profile row.

Both the webhook path and the session verifier funnel into
``SubscriptionReconciler.apply``. Writes are last-write-wins with no version
check, so the only duplicate protection is that reapplying a snapshot the
profile already reflects writes nothing.
"""
import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from parkspot.core.errors import UnknownSubscriptionStatus
from parkspot.data.profiles import Profile, ProfileStore
from parkspot.services.plans import PlanCatalog

log = logging.getLogger(__name__)

# processor status -> profile subscription_status
STATUS_MAP: Dict[str, str] = {
    "active": "active",
    "trialing": "trialing",
    "canceled": "canceled",
    "past_due": "past_due",
    "unpaid": "past_due",
    "incomplete": "inactive",
    "incomplete_expired": "inactive",
    "paused": "inactive",
}

APPLIED = "applied"
UNCHANGED = "unchanged"
ORPHANED = "orphaned"


def map_status(processor_status: Optional[str]) -> str:
    try:
        return STATUS_MAP[processor_status or ""]
    except KeyError:
        raise UnknownSubscriptionStatus(f"Unknown subscription status: {processor_status!r}")


# --- helpers for Stripe timestamps/subscription period end ---
def _to_utc_dt_from_unix(ts: int | str | None) -> dt.datetime | None:
    if ts is None:
        return None
    try:
        # Stripe uses unix seconds; tolerate strings
        val = int(ts)
    except (TypeError, ValueError):
        return None
    if val <= 0:
        return None
    return dt.datetime.fromtimestamp(val, tz=dt.timezone.utc)


def _iso(value: dt.datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(dt.timezone.utc).replace(tzinfo=None).isoformat() + "Z"


def _first_item(sub: Dict[str, Any]) -> Dict[str, Any]:
    items = (sub.get("items") or {}).get("data") or []
    return (items[0] or {}) if items else {}


def _derive_period_end(sub: Dict[str, Any]) -> dt.datetime | None:
    """Current period end of a subscription.

    Newer API versions moved current_period_end onto the subscription items;
    a subscription still in trial may only carry trial_end.
    """
    return (
        _to_utc_dt_from_unix(sub.get("current_period_end"))
        or _to_utc_dt_from_unix(_first_item(sub).get("current_period_end"))
        or _to_utc_dt_from_unix(sub.get("trial_end"))
    )


def _id_of(ref: Any) -> Optional[str]:
    # expandable fields arrive either as an id or as the expanded object
    if isinstance(ref, dict):
        return ref.get("id")
    return ref or None


@dataclass(frozen=True)
class SubscriptionSnapshot:
    id: str
    status: str
    customer_id: Optional[str] = None
    price_id: Optional[str] = None
    current_period_end: Optional[dt.datetime] = None
    cancel_at_period_end: bool = False
    user_id: Optional[str] = None
    plan_id: Optional[str] = None

    @classmethod
    def from_stripe(cls, sub: Dict[str, Any]) -> "SubscriptionSnapshot":
        metadata = sub.get("metadata") or {}
        price = _first_item(sub).get("price") or {}
        return cls(
            id=sub.get("id") or "",
            status=sub.get("status") or "",
            customer_id=_id_of(sub.get("customer")),
            price_id=_id_of(price),
            current_period_end=_derive_period_end(sub),
            cancel_at_period_end=bool(sub.get("cancel_at_period_end")),
            user_id=metadata.get("user_id") or metadata.get("userId"),
            plan_id=metadata.get("plan_id") or metadata.get("tier"),
        )


@dataclass(frozen=True)
class ReconcileResult:
    outcome: str
    user_id: Optional[str] = None
    changed: Tuple[str, ...] = field(default_factory=tuple)
    tier: Optional[str] = None
    status: Optional[str] = None


class SubscriptionReconciler:
    def __init__(self, store: ProfileStore, catalog: PlanCatalog):
        self.store = store
        self.catalog = catalog

    def _attribute(self, snap: SubscriptionSnapshot) -> Optional[Profile]:
        profile = self.store.get_profile(snap.user_id) if snap.user_id else None
        if profile is None:
            user_id = self.store.find_user_id_by_stripe_customer(snap.customer_id)
            profile = self.store.get_profile(user_id) if user_id else None
        return profile

    def _resolve_tier(self, snap: SubscriptionSnapshot) -> Optional[str]:
        # Metadata is fixed at creation; the price follows plan changes made at Stripe
        tier = self.catalog.tier_for_price(snap.price_id) or self.catalog.tier_for_plan_id(snap.plan_id)
        return tier.value if tier else None

    def _sync_customer(self, profile: Profile, customer_id: Optional[str]) -> None:
        if not customer_id or profile.stripe_customer_id == customer_id:
            return
        owner = None
        if profile.stripe_customer_id is None:
            owner = self.store.find_user_id_by_stripe_customer(customer_id)
            if owner is None:
                stored = self.store.claim_stripe_customer_id(profile.id, customer_id)
                if stored == customer_id:
                    return
            else:
                stored = None
        else:
            stored = profile.stripe_customer_id
        log.warning(
            "reconcile.customer_mismatch user=%s stored=%s snapshot=%s owner=%s",
            profile.id,
            stored,
            customer_id,
            owner,
        )

    def apply(self, snap: SubscriptionSnapshot) -> ReconcileResult:
        status = map_status(snap.status)
        profile = self._attribute(snap)
        if profile is None:
            log.warning(
                "reconcile.orphaned sub=%s customer=%s meta_user=%s",
                snap.id,
                snap.customer_id,
                snap.user_id,
            )
            return ReconcileResult(ORPHANED)

        self._sync_customer(profile, snap.customer_id)

        target: Dict[str, Any] = {
            "subscription_status": status,
            "stripe_subscription_id": snap.id,
            "cancel_at_period_end": snap.cancel_at_period_end,
        }
        tier = self._resolve_tier(snap)
        if tier:
            target["subscription_tier"] = tier
        if snap.current_period_end is not None:
            target["subscription_renews_at"] = _iso(snap.current_period_end)

        current = profile.subscription_fields()
        changes = {k: v for k, v in target.items() if current.get(k) != v}
        final_tier = target.get("subscription_tier", profile.subscription_tier)
        if not changes:
            log.info("reconcile.unchanged user=%s sub=%s status=%s", profile.id, snap.id, status)
            return ReconcileResult(UNCHANGED, profile.id, (), final_tier, status)

        self.store.update_subscription_fields(profile.id, changes)
        log.info(
            "reconcile.applied user=%s sub=%s status=%s tier=%s fields=%s",
            profile.id,
            snap.id,
            status,
            final_tier,
            ",".join(sorted(changes)),
        )
        return ReconcileResult(APPLIED, profile.id, tuple(sorted(changes)), final_tier, status)
