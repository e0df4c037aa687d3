"""Payment processor client.

Everything the billing flow needs from Stripe goes through ``BillingProcessor``
so request handlers never touch a module-level SDK client and tests can swap
in a double.
"""
import json
import logging
from typing import Any, Dict, Optional, Protocol

import stripe

from parkspot.core.errors import (
    CardDeclined,
    InvalidSignature,
    ProcessorNotFound,
    ProcessorRequestError,
    ProcessorUnavailable,
)

log = logging.getLogger(__name__)

DEFAULT_TOLERANCE_S = 300


def to_plain(obj: Any) -> Dict[str, Any]:
    """Recursively convert a StripeObject (or a plain dict) into dicts and lists."""
    if obj is None:
        return {}
    if isinstance(obj, dict) and not hasattr(obj, "to_dict_recursive"):
        return obj
    if hasattr(obj, "to_dict_recursive"):
        return obj.to_dict_recursive()
    return obj.to_dict()


def verify_webhook(
    payload: bytes,
    signature: Optional[str],
    secret: Optional[str],
    tolerance: int = DEFAULT_TOLERANCE_S,
) -> Dict[str, Any]:
    """
    Check the ``stripe-signature`` header against the raw request body and
    return the parsed event. The body must be the exact bytes received; any
    re-serialization changes the HMAC.
    """
    if not secret:
        raise InvalidSignature("Webhook secret not configured")
    if not signature:
        raise InvalidSignature("No signature provided")
    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError:
        raise InvalidSignature("Body is not valid UTF-8")
    try:
        stripe.WebhookSignature.verify_header(body, signature, secret, tolerance)
    except stripe.SignatureVerificationError:
        raise InvalidSignature("Signature verification failed")
    try:
        event = json.loads(body)
    except ValueError:
        raise InvalidSignature("Invalid payload")
    if not isinstance(event, dict) or not event.get("type"):
        raise InvalidSignature("Invalid payload")
    return event


class BillingProcessor(Protocol):
    def create_customer(self, user_id: str, email: Optional[str]) -> str: ...

    def create_checkout_session(self, params: Dict[str, Any]) -> Dict[str, Any]: ...

    def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]: ...

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]: ...

    def cancel_at_period_end(self, subscription_id: str) -> Dict[str, Any]: ...

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]: ...


class StripeProcessor:
    """``BillingProcessor`` backed by the stripe SDK.

    The API key is passed per call instead of being assigned to ``stripe.api_key``.
    """

    def __init__(self, api_key: Optional[str], webhook_secret: Optional[str], tolerance: int = DEFAULT_TOLERANCE_S):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance

    def _call(self, what: str, fn, *args, **kwargs) -> Dict[str, Any]:
        if not self.api_key:
            raise ProcessorUnavailable("Stripe not configured")
        try:
            return to_plain(fn(*args, api_key=self.api_key, **kwargs))
        except stripe.CardError as e:
            log.warning("stripe.%s card_error code=%s", what, e.code)
            raise CardDeclined(e.user_message or "Your card was declined")
        except stripe.InvalidRequestError as e:
            if e.code == "resource_missing":
                raise ProcessorNotFound(f"{what}: resource missing")
            log.warning("stripe.%s invalid_request param=%s msg=%s", what, e.param, e.user_message)
            raise ProcessorRequestError(e.user_message or "Invalid request to payment processor")
        except stripe.StripeError:
            log.exception("stripe.%s failed", what)
            raise ProcessorUnavailable("Payment processor error")

    def create_customer(self, user_id: str, email: Optional[str]) -> str:
        cust = self._call(
            "customer.create",
            stripe.Customer.create,
            email=email or None,
            metadata={"user_id": user_id},
        )
        return cust["id"]

    def create_checkout_session(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return self._call("checkout.create", stripe.checkout.Session.create, **params)

    def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        return self._call("checkout.retrieve", stripe.checkout.Session.retrieve, session_id)

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return self._call("subscription.retrieve", stripe.Subscription.retrieve, subscription_id)

    def cancel_at_period_end(self, subscription_id: str) -> Dict[str, Any]:
        return self._call(
            "subscription.modify",
            stripe.Subscription.modify,
            subscription_id,
            cancel_at_period_end=True,
        )

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        return verify_webhook(payload, signature, self.webhook_secret, self.tolerance)
