from pydantic import BaseModel, Field
from typing import Literal, Optional, List

SubscriptionTier = Literal["free", "basic", "pro", "enterprise"]

SubscriptionStatus = Literal[
    "active",
    "inactive",
    "trialing",
    "canceled",
    "past_due",
]


class CheckoutRequest(BaseModel):
    planId: str = Field(min_length=1, max_length=64)
    priceId: Optional[str] = None


class CheckoutResponse(BaseModel):
    url: str


class VerifySessionRequest(BaseModel):
    sessionId: str = Field(min_length=1, max_length=255)


class VerifySessionResponse(BaseModel):
    success: bool
    status: Optional[str] = None
    tier: Optional[SubscriptionTier] = None
    updated: bool = False


class SubscriptionStatusResponse(BaseModel):
    tier: SubscriptionTier = "free"
    status: SubscriptionStatus = "inactive"
    renewsAt: Optional[str] = None
    cancelAtPeriodEnd: bool = False
    isSubscribed: bool = False


class PlanFeature(BaseModel):
    id: str
    name: str
    description: str


class FeaturesResponse(BaseModel):
    tier: SubscriptionTier
    features: List[PlanFeature]


class CancelResponse(BaseModel):
    success: bool
    cancelAtPeriodEnd: bool = False
    renewsAt: Optional[str] = None


class WebhookAck(BaseModel):
    received: bool
    event: Optional[str] = None
    outcome: Optional[str] = None


class ErrorResponse(BaseModel):
    error: str
    error_code: str
