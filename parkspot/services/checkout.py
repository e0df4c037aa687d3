import logging
from typing import Any, Dict, Optional

from parkspot.core.errors import InvalidPlan, ProcessorUnavailable
from parkspot.data.profiles import ProfileStore
from parkspot.services.plans import PlanCatalog
from parkspot.services.processor import BillingProcessor

log = logging.getLogger(__name__)


class CheckoutService:
    def __init__(
        self,
        store: ProfileStore,
        processor: BillingProcessor,
        catalog: PlanCatalog,
        public_base_url: Optional[str],
    ):
        self.store = store
        self.processor = processor
        self.catalog = catalog
        self.public_base_url = public_base_url

    def resolve_customer(self, user_id: str, email: Optional[str]) -> str:
        """Return the user's billing customer, creating it on first checkout.

        Two concurrent first checkouts may both create a customer; the
        compare-and-set keeps whichever was stored first and the other
        customer is left unused at the processor.
        """
        customer_id = self.store.get_stripe_customer_id(user_id)
        if customer_id:
            return customer_id
        created = self.processor.create_customer(user_id, email)
        stored = self.store.claim_stripe_customer_id(user_id, created)
        if stored and stored != created:
            log.warning(
                "checkout.customer_race user=%s kept=%s orphaned=%s", user_id, stored, created
            )
            return stored
        log.info("checkout.customer_created user=%s customer=%s", user_id, created)
        return stored or created

    def _session_params(self, user_id: str, plan_id: str, price_id: str, customer_id: str) -> Dict[str, Any]:
        base = self.public_base_url
        metadata = {"user_id": user_id, "plan_id": plan_id}
        return {
            "mode": "subscription",
            "customer": customer_id,
            "client_reference_id": user_id,
            "line_items": [{"price": price_id, "quantity": 1}],
            "metadata": metadata,
            "subscription_data": {"metadata": dict(metadata)},
            "allow_promotion_codes": True,
            # Include session_id so we can verify on return even without webhooks
            "success_url": f"{base}/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{base}/plans?canceled=true",
        }

    def start_checkout(
        self,
        user: Dict[str, Any],
        plan_id: str,
        price_id: Optional[str] = None,
    ) -> str:
        configured_price = self.catalog.price_for(plan_id)
        if not configured_price:
            raise InvalidPlan(f"Invalid plan: {plan_id}")
        if price_id and price_id != configured_price:
            raise InvalidPlan("Price does not match plan")
        if not self.public_base_url:
            raise ProcessorUnavailable("Checkout not configured")

        user_id = user["user_id"]
        email = user.get("email")
        self.store.ensure_profile(user_id, email)
        customer_id = self.resolve_customer(user_id, email)

        session = self.processor.create_checkout_session(
            self._session_params(user_id, plan_id, configured_price, customer_id)
        )
        log.info(
            "checkout.session_created user=%s plan=%s session=%s",
            user_id,
            plan_id,
            session.get("id"),
        )
        return session["url"]
