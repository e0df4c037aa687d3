import logging
from typing import Any, Dict

from parkspot.core.errors import Forbidden, NotFound, ProcessorNotFound
from parkspot.services.processor import BillingProcessor
from parkspot.services.reconciler import APPLIED, ORPHANED, SubscriptionReconciler, SubscriptionSnapshot

log = logging.getLogger(__name__)

PAID_STATUSES = ("paid", "no_payment_required")


class SessionVerifier:
    """
    Fallback verification when returning from Stripe Checkout. Runs the same
    reconciliation as the webhook so a user who beats the webhook back to the
    success page still sees the upgraded plan.
    """

    def __init__(self, processor: BillingProcessor, reconciler: SubscriptionReconciler):
        self.processor = processor
        self.reconciler = reconciler

    def verify(self, session_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
        user_id = user.get("user_id")
        try:
            session = self.processor.retrieve_checkout_session(session_id)
        except ProcessorNotFound:
            raise NotFound("Session not found", error_code="session_not_found")
        if not session:
            raise NotFound("Session not found", error_code="session_not_found")

        ref = (session.get("metadata") or {}).get("user_id") or session.get("client_reference_id")
        if not user_id or not ref or ref != user_id:
            raise Forbidden("Session belongs to another user")

        payment_status = session.get("payment_status")
        sub_ref = session.get("subscription")
        sub_id = sub_ref.get("id") if isinstance(sub_ref, dict) else sub_ref
        if payment_status not in PAID_STATUSES or session.get("mode") != "subscription" or not sub_id:
            log.info(
                "billing.verify pending user=%s session=%s payment_status=%s mode=%s",
                user_id,
                session_id,
                payment_status,
                session.get("mode"),
            )
            return {"success": False, "status": "pending"}

        sub = self.processor.retrieve_subscription(sub_id)
        result = self.reconciler.apply(SubscriptionSnapshot.from_stripe(sub))
        log.info(
            "billing.verify user=%s session=%s sub=%s outcome=%s",
            user_id,
            session_id,
            sub_id,
            result.outcome,
        )
        if result.outcome == ORPHANED:
            raise NotFound("Profile not found", error_code="profile_not_found")
        return {
            "success": True,
            "status": result.status,
            "tier": result.tier,
            "updated": result.outcome == APPLIED,
        }
