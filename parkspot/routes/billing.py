import logging

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse

from parkspot.auth import get_current_user
from parkspot.core.errors import APIError, NotFound, RateLimited
from parkspot.core.types import (
    CancelResponse,
    CheckoutRequest,
    CheckoutResponse,
    FeaturesResponse,
    PlanFeature,
    SubscriptionStatusResponse,
    VerifySessionRequest,
    VerifySessionResponse,
    WebhookAck,
)
from parkspot.data.profiles import ProfileStore
from parkspot.services.checkout import CheckoutService
from parkspot.services.plans import PlanCatalog
from parkspot.services.processor import BillingProcessor
from parkspot.services.rate_limit import UserRateLimiter
from parkspot.services.reconciler import SubscriptionReconciler, SubscriptionSnapshot
from parkspot.services.verifier import SessionVerifier
from parkspot.services.webhooks import WebhookReceiver

router = APIRouter(prefix="/api")
log = logging.getLogger("billing")


def get_store(request: Request) -> ProfileStore:
    return request.app.state.store


def get_processor(request: Request) -> BillingProcessor:
    return request.app.state.processor


def get_catalog(request: Request) -> PlanCatalog:
    return request.app.state.catalog


def get_reconciler(request: Request) -> SubscriptionReconciler:
    return request.app.state.reconciler


def get_checkout(request: Request) -> CheckoutService:
    return request.app.state.checkout


def get_receiver(request: Request) -> WebhookReceiver:
    return request.app.state.webhooks


def get_verifier(request: Request) -> SessionVerifier:
    return request.app.state.verifier


def get_limiter(request: Request) -> UserRateLimiter:
    return request.app.state.limiter


@router.post("/stripe/create-checkout-session", response_model=CheckoutResponse)
async def create_checkout_session(
    req: CheckoutRequest,
    user: dict = Depends(get_current_user),
    checkout: CheckoutService = Depends(get_checkout),
    limiter: UserRateLimiter = Depends(get_limiter),
):
    if not await limiter.allow("checkout", user["user_id"]):
        raise RateLimited("Too many checkout attempts", details={"retry": 60})
    url = checkout.start_checkout(user, req.planId, req.priceId)
    return CheckoutResponse(url=url)


@router.post("/stripe/webhook", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(None),
    receiver: WebhookReceiver = Depends(get_receiver),
):
    # Only endpoint without auth; protected by Stripe signature verification
    payload_bytes = await request.body()
    try:
        return receiver.receive(payload_bytes, stripe_signature)
    except APIError:
        raise
    except Exception:
        log.exception("stripe.webhook handler error")
        return JSONResponse(
            {"error": "Webhook handler failed", "error_code": "webhook_processing_failed"},
            status_code=500,
        )


@router.post("/stripe/verify-session", response_model=VerifySessionResponse)
async def verify_session(
    req: VerifySessionRequest,
    user: dict = Depends(get_current_user),
    verifier: SessionVerifier = Depends(get_verifier),
    limiter: UserRateLimiter = Depends(get_limiter),
):
    if not await limiter.allow("verify", user["user_id"]):
        raise RateLimited("Too many verification attempts", details={"retry": 60})
    result = verifier.verify(req.sessionId, user)
    if not result["success"]:
        # Accepted: the client should keep polling
        return JSONResponse(VerifySessionResponse(**result).model_dump(), status_code=202)
    return VerifySessionResponse(**result)


@router.get("/subscription/status", response_model=SubscriptionStatusResponse)
async def subscription_status(
    user: dict = Depends(get_current_user),
    store: ProfileStore = Depends(get_store),
):
    """The server's view of the user's subscription fields."""
    profile = store.get_profile(user["user_id"])
    if profile is None:
        return SubscriptionStatusResponse()
    return SubscriptionStatusResponse(
        tier=profile.subscription_tier,
        status=profile.subscription_status,
        renewsAt=profile.subscription_renews_at,
        cancelAtPeriodEnd=profile.cancel_at_period_end,
        isSubscribed=profile.is_subscribed(),
    )


@router.get("/subscription/features", response_model=FeaturesResponse)
async def subscription_features(
    user: dict = Depends(get_current_user),
    store: ProfileStore = Depends(get_store),
    catalog: PlanCatalog = Depends(get_catalog),
):
    profile = store.get_profile(user["user_id"])
    tier = profile.subscription_tier if (profile and profile.is_subscribed()) else "free"
    features = [
        PlanFeature(id=f.id, name=f.name, description=f.description)
        for f in catalog.features_for(tier)
    ]
    return FeaturesResponse(tier=tier, features=features)


@router.post("/subscription/cancel", response_model=CancelResponse)
async def cancel_subscription(
    user: dict = Depends(get_current_user),
    store: ProfileStore = Depends(get_store),
    processor: BillingProcessor = Depends(get_processor),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
):
    user_id = user["user_id"]
    profile = store.get_profile(user_id)
    if profile is None or not profile.stripe_subscription_id:
        raise NotFound("No active subscription found", error_code="no_active_subscription")

    sub = processor.cancel_at_period_end(profile.stripe_subscription_id)
    result = reconciler.apply(SubscriptionSnapshot.from_stripe(sub))
    log.info(
        "subscription.cancel user=%s sub=%s outcome=%s",
        user_id,
        profile.stripe_subscription_id,
        result.outcome,
    )
    updated = store.get_profile(user_id) or profile
    return CancelResponse(
        success=True,
        cancelAtPeriodEnd=updated.cancel_at_period_end,
        renewsAt=updated.subscription_renews_at,
    )
