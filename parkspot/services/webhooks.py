import logging
from enum import Enum
from typing import Any, Callable, Dict, Optional

from parkspot.core.errors import UnknownSubscriptionStatus
from parkspot.services.processor import BillingProcessor
from parkspot.services.reconciler import (
    ReconcileResult,
    SubscriptionReconciler,
    SubscriptionSnapshot,
)

log = logging.getLogger(__name__)

IGNORED = "ignored"
ACKNOWLEDGED = "acknowledged"


class WebhookEventType(str, Enum):
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    CHECKOUT_COMPLETED = "checkout.session.completed"

    @classmethod
    def parse(cls, raw: Optional[str]) -> Optional["WebhookEventType"]:
        try:
            return cls(raw)
        except ValueError:
            return None


class WebhookReceiver:
    """Verify and dispatch processor events.

    Each ``WebhookEventType`` member has exactly one handler; adding a member
    without a handler fails at construction time.
    """

    def __init__(self, processor: BillingProcessor, reconciler: SubscriptionReconciler):
        self.processor = processor
        self.reconciler = reconciler
        self._handlers: Dict[WebhookEventType, Callable[[Dict[str, Any]], str]] = {
            WebhookEventType.SUBSCRIPTION_CREATED: self._on_subscription,
            WebhookEventType.SUBSCRIPTION_UPDATED: self._on_subscription,
            WebhookEventType.SUBSCRIPTION_DELETED: self._on_subscription,
            WebhookEventType.CHECKOUT_COMPLETED: self._on_checkout_completed,
        }
        missing = set(WebhookEventType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"no webhook handler for {sorted(m.value for m in missing)}")

    def _on_subscription(self, obj: Dict[str, Any]) -> str:
        snapshot = SubscriptionSnapshot.from_stripe(obj)
        try:
            result: ReconcileResult = self.reconciler.apply(snapshot)
        except UnknownSubscriptionStatus as e:
            # acknowledged anyway; a retry would carry the same status
            log.error("stripe.webhook sub=%s %s", snapshot.id, e.message)
            return e.error_code
        return result.outcome

    def _on_checkout_completed(self, obj: Dict[str, Any]) -> str:
        mode = obj.get("mode")
        if mode == "subscription":
            # customer.subscription.* events carry the state for this session
            log.info(
                "stripe.webhook checkout.session.completed session=%s sub=%s deferred to subscription events",
                obj.get("id"),
                obj.get("subscription"),
            )
        else:
            log.info(
                "stripe.webhook checkout.session.completed session=%s mode=%s not handled",
                obj.get("id"),
                mode,
            )
        return ACKNOWLEDGED

    def receive(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        event = self.processor.construct_event(payload, signature)
        etype = event.get("type")
        obj = (event.get("data") or {}).get("object") or {}

        kind = WebhookEventType.parse(etype)
        if kind is None:
            log.info("stripe.webhook ignored event=%s id=%s", etype, event.get("id"))
            return {"received": True, "event": etype, "outcome": IGNORED}

        outcome = self._handlers[kind](obj)
        log.info("stripe.webhook event=%s id=%s outcome=%s", etype, event.get("id"), outcome)
        return {"received": True, "event": etype, "outcome": outcome}
