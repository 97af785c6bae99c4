"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

import re
from enum import Enum

from pydantic import BaseModel, Field, field_validator

USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


class ProvisioningStatus(str, Enum):
    """Provisioning status stored on the billing customer record."""

    NONE = "none"
    INCOMPLETE = "incomplete"
    PENDING = "pending"
    COMPLETE = "complete"
    FAILED = "failed"
    RETRY_PENDING = "retry_pending"

    @classmethod
    def parse(cls, value: str | None) -> "ProvisioningStatus":
        """Parse a stored value; missing or unrecognized values read as NONE."""
        if not value:
            return cls.NONE
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.NONE


class ProvisioningReason(str, Enum):
    """Why the state machine was invoked."""

    CHECKOUT_COMPLETED = "checkout_completed"
    RENEWAL = "renewal"
    PLAN_CHANGE = "plan_change"
    MANUAL_REFRESH = "manual_refresh"
    STATUS_CHECK = "status_check"


class OutcomeKind(str, Enum):
    """Result of a single provisioning run."""

    GRANTED = "granted"
    ALREADY_PROVISIONED = "already_provisioned"
    NEEDS_ONBOARDING = "needs_onboarding"
    FAILED = "failed"
    REVOKED = "revoked"


class EventDisposition(str, Enum):
    """What was done with an authenticated billing event."""

    PROVISIONED = "provisioned"
    LOGGED = "logged"
    SKIPPED = "skipped"
    IGNORED = "ignored"


class GrantStatus(str, Enum):
    """Per-indicator grant/revoke result."""

    SUCCESS = "success"
    FAILURE = "failure"
    NOT_APPLICABLE = "not_applicable"


# ============================================================================
# Username Validation Models
# ============================================================================


def username_problem(username: str) -> str | None:
    """Why a trimmed username is unacceptable, or None if it is fine."""
    if not username:
        return "Username cannot be empty"
    if not USERNAME_PATTERN.fullmatch(username):
        return "Username can only contain letters, numbers, underscores, and hyphens"
    return None


class ValidateUsernameRequest(BaseModel):
    """
    POST /v1/tradingview/validate request body.

    Only trimmed here; the character check is a 400 raised by the route.
    """

    username: str = Field(..., max_length=255)

    @field_validator("username")
    @classmethod
    def strip_username(cls, v: str) -> str:
        return v.strip()


class ValidateUsernameResponse(BaseModel):
    """POST /v1/tradingview/validate response."""

    success: bool = True
    verified_username: str


# ============================================================================
# Provisioning Models
# ============================================================================


class IndicatorResultItem(BaseModel):
    """Single indicator result in a provisioning response."""

    indicator_id: str
    status: GrantStatus
    expiration: str | None = None
    error: str | None = None


class ProvisioningResponse(BaseModel):
    """Response for refresh/sync/retry/revoke endpoints."""

    success: bool
    outcome: OutcomeKind
    provisioning_status: ProvisioningStatus
    message: str
    duration: str | None = None
    needs_onboarding: bool = False
    results: list[IndicatorResultItem] = Field(default_factory=list)


class CustomerRequest(BaseModel):
    """Operator request body identifying a billing customer."""

    customer_id: str = Field(..., min_length=1, max_length=255)


# ============================================================================
# Plan Models
# ============================================================================


class PlanItem(BaseModel):
    """Plan as shown in listings."""

    id: str
    price_id: str
    name: str
    description: str = ""
    plan_type: str
    price: float
    currency: str
    interval: str
    access_duration_months: int
    bonus_months: int
    total_access_months: int
    features: list[str] = Field(default_factory=list)


class PlanListResponse(BaseModel):
    """GET /v1/plans response."""

    plans: list[PlanItem]


class ChangePlanRequest(BaseModel):
    """POST /v1/subscription/change-plan request body."""

    new_price_id: str = Field(..., min_length=1, max_length=255)


class ChangePlanResponse(BaseModel):
    """POST /v1/subscription/change-plan response."""

    success: bool = True
    message: str
    subscription_id: str
    subscription_status: str


class CheckoutSessionRequest(BaseModel):
    """POST /v1/checkout/create-session request body."""

    plan_id: str = Field(..., min_length=1, max_length=255)


class SessionUrlResponse(BaseModel):
    """Hosted Stripe page (checkout or billing portal) to redirect the user to."""

    url: str


class CancelSubscriptionResponse(BaseModel):
    """POST /v1/subscription/cancel response."""

    success: bool = True
    cancel_at_period_end: bool
    current_period_end: str | None = None


# ============================================================================
# Status Models
# ============================================================================


class SubscriptionDetails(BaseModel):
    """Summary of the customer's active subscription."""

    id: str
    status: str
    plan_name: str
    plan_type: str
    price_amount: float
    currency: str
    interval: str
    current_period_end: str | None = None
    cancel_at_period_end: bool = False
    total_access_months: int
    bonus_months: int


class CurrentPlanRef(BaseModel):
    """Reference to the plan matching the active subscription."""

    id: str
    plan_type: str


class SubscriptionStatusResponse(BaseModel):
    """GET /v1/subscription/status response."""

    customer_id: str
    tradingview_username: str | None = None
    has_active_subscription: bool
    subscription: SubscriptionDetails | None = None
    current_plan: CurrentPlanRef | None = None
    available_plans: list[PlanItem] = Field(default_factory=list)
    provisioning_status: ProvisioningStatus
    last_error: str | None = None


# ============================================================================
# Webhook / Health Models
# ============================================================================


class WebhookAck(BaseModel):
    """Acknowledgement returned for every authenticated billing event."""

    received: bool = True


class SessionHealthResponse(BaseModel):
    """GET /v1/health/tradingview-session response."""

    healthy: bool
    message: str | None = None
    error: str | None = None
    status: int | None = None


class ErrorDetail(BaseModel):
    """Standard error response."""

    detail: str
