"""
API Routes - FastAPI endpoints for subscribers and billing events.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from structlog import get_logger

from app.api.dependencies import (
    UserIdentity,
    get_billing_provider,
    get_current_customer,
    get_event_processor,
    get_plan_resolver,
    get_provisioning_service,
    get_tradingview_client,
    get_user_from_google_token,
)
from app.config import settings
from app.exceptions import ExternalServiceError, SubscriptionNotFoundError, ValidationError
from app.models.api import (
    CancelSubscriptionResponse,
    ChangePlanRequest,
    ChangePlanResponse,
    CheckoutSessionRequest,
    CurrentPlanRef,
    IndicatorResultItem,
    OutcomeKind,
    PlanItem,
    PlanListResponse,
    ProvisioningReason,
    ProvisioningResponse,
    ProvisioningStatus,
    SessionUrlResponse,
    SubscriptionDetails,
    SubscriptionStatusResponse,
    ValidateUsernameRequest,
    ValidateUsernameResponse,
    WebhookAck,
    username_problem,
)
from app.models.domain import DEFAULT_ACCESS_MONTHS, CustomerRecord, Plan, ProvisioningOutcome
from app.services.event_ingestion import BillingEventProcessor
from app.services.payment_provider import BillingProvider
from app.services.plans import PlanResolver
from app.services.provisioning import ProvisioningService
from app.services.tradingview import TradingViewClient, format_expiration

logger = get_logger(__name__)
router = APIRouter()


def plan_item(plan: Plan) -> PlanItem:
    """Convert a domain plan to its API representation."""
    return PlanItem(
        id=plan.plan_id,
        price_id=plan.price_id,
        name=plan.name,
        description=plan.description,
        plan_type=plan.plan_type,
        price=plan.price,
        currency=plan.currency,
        interval=plan.interval,
        access_duration_months=plan.access_duration_months,
        bonus_months=plan.bonus_months,
        total_access_months=plan.total_access_months,
        features=list(plan.features),
    )


def provisioning_response(outcome: ProvisioningOutcome) -> ProvisioningResponse:
    """Convert a state machine outcome to its API representation."""
    return ProvisioningResponse(
        success=outcome.success,
        outcome=outcome.kind,
        provisioning_status=outcome.status,
        message=outcome.message if outcome.error is None else f"{outcome.message}: {outcome.error}",
        duration=str(outcome.duration) if outcome.duration else None,
        needs_onboarding=outcome.kind is OutcomeKind.NEEDS_ONBOARDING,
        results=[
            IndicatorResultItem(
                indicator_id=result.indicator_id,
                status=result.status,
                expiration=format_expiration(result.expiration) if result.expiration else None,
                error=result.error,
            )
            for result in outcome.results
        ],
    )


def outcome_status_code(outcome: ProvisioningOutcome) -> int:
    """HTTP status for a provisioning outcome returned to a caller."""
    if outcome.kind is OutcomeKind.NEEDS_ONBOARDING:
        return status.HTTP_400_BAD_REQUEST
    if outcome.kind is OutcomeKind.FAILED:
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_200_OK


async def run_provisioning(
    customer: CustomerRecord,
    reason: ProvisioningReason,
    billing: BillingProvider,
    service: ProvisioningService,
    response: Response,
) -> ProvisioningResponse:
    """
    Provision a customer on request (user refresh/sync, operator retry).

    Requires a username and an active subscription; the subscription's price
    decides the duration.
    """
    if not customer.external_username:
        outcome = await service.provision(customer, reason)
        response.status_code = outcome_status_code(outcome)
        return provisioning_response(outcome)

    subscription = await billing.get_active_subscription(customer.customer_id)
    if subscription is None:
        raise ValidationError(
            f"No active subscription found (provisioning status: "
            f"{customer.provisioning_status.value})"
        )

    outcome = await service.provision(customer, reason, subscription=subscription)
    response.status_code = outcome_status_code(outcome)
    return provisioning_response(outcome)


# ============================================================================
# Billing events
# ============================================================================


@router.post("/v1/webhooks/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    processor: BillingEventProcessor = Depends(get_event_processor),
) -> WebhookAck:
    """
    Handle Stripe webhook events.

    The signature is checked before anything else. Once authenticated the
    event is acknowledged whatever the provisioning outcome; only a failure to
    load or save billing records answers 500 so that Stripe retries.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature", "")

    try:
        await processor.handle(payload, signature)
    except ExternalServiceError as exc:
        logger.error("stripe_webhook_processing_failed", error=exc.message)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from exc

    return WebhookAck()


# ============================================================================
# Access
# ============================================================================


@router.post("/v1/access/refresh", response_model=ProvisioningResponse)
async def refresh_access(
    response: Response,
    customer: CustomerRecord = Depends(get_current_customer),
    billing: BillingProvider = Depends(get_billing_provider),
    service: ProvisioningService = Depends(get_provisioning_service),
) -> ProvisioningResponse:
    """
    Re-attempt provisioning for the signed-in user.

    Always calls TradingView, whatever the stored status, so a user stuck in
    failed or retry_pending can recover without operator help.

    Auth: Bearer {google_id_token}
    """
    return await run_provisioning(
        customer, ProvisioningReason.MANUAL_REFRESH, billing, service, response
    )


@router.post("/v1/access/sync", response_model=ProvisioningResponse)
async def sync_access(
    response: Response,
    customer: CustomerRecord = Depends(get_current_customer),
    billing: BillingProvider = Depends(get_billing_provider),
    service: ProvisioningService = Depends(get_provisioning_service),
) -> ProvisioningResponse:
    """
    Make sure access is provisioned; a no-op when the status is already complete.

    Auth: Bearer {google_id_token}
    """
    return await run_provisioning(
        customer, ProvisioningReason.STATUS_CHECK, billing, service, response
    )


@router.post("/v1/tradingview/validate", response_model=ValidateUsernameResponse)
async def validate_tradingview_username(
    request: ValidateUsernameRequest,
    user: UserIdentity = Depends(get_user_from_google_token),
    billing: BillingProvider = Depends(get_billing_provider),
    tradingview: TradingViewClient = Depends(get_tradingview_client),
) -> ValidateUsernameResponse:
    """
    Validate a TradingView username and store its canonical spelling.

    Creates the billing customer on first use.

    Auth: Bearer {google_id_token}
    """
    problem = username_problem(request.username)
    if problem:
        raise ValidationError(problem)

    validation = await tradingview.validate_username(request.username)
    if not validation.valid:
        raise ValidationError("TradingView username not found. Please check and try again.")

    customer = await billing.get_or_create_customer(user.email, user.external_id)
    await billing.save_customer(customer.with_username(validation.canonical_username))

    logger.info(
        "tradingview_username_saved",
        customer_id=customer.customer_id,
        username=validation.canonical_username,
    )
    return ValidateUsernameResponse(verified_username=validation.canonical_username)


# ============================================================================
# Subscription
# ============================================================================


@router.get("/v1/plans", response_model=PlanListResponse)
async def list_plans(
    plans: PlanResolver = Depends(get_plan_resolver),
) -> PlanListResponse:
    """List the plan catalog in display order."""
    return PlanListResponse(plans=[plan_item(plan) for plan in await plans.resolve_plans()])


@router.get("/v1/subscription/status", response_model=SubscriptionStatusResponse)
async def get_subscription_status(
    user: UserIdentity = Depends(get_user_from_google_token),
    billing: BillingProvider = Depends(get_billing_provider),
    plans: PlanResolver = Depends(get_plan_resolver),
) -> SubscriptionStatusResponse:
    """
    Get the signed-in user's username, subscription and provisioning status.

    Auth: Bearer {google_id_token}
    """
    customer = await billing.get_or_create_customer(user.email, user.external_id)
    subscription = await billing.get_active_subscription(customer.customer_id)
    available_plans = await plans.resolve_plans()

    details: SubscriptionDetails | None = None
    current_plan: Plan | None = None

    if subscription is not None:
        current_plan = await plans.resolve_by_price_id(subscription.price_id)
        display_plan = current_plan
        if display_plan is None and subscription.price_id:
            display_plan = Plan.from_price(await billing.retrieve_price(subscription.price_id))

        if current_plan is not None:
            total_months = current_plan.total_access_months
            bonus_months = current_plan.bonus_months
        else:
            total_months = customer.total_access_months or DEFAULT_ACCESS_MONTHS
            bonus_months = customer.bonus_months

        details = SubscriptionDetails(
            id=subscription.subscription_id,
            status=subscription.status,
            plan_name=display_plan.name if display_plan else "Plan",
            plan_type=(current_plan.plan_type if current_plan else "")
            or customer.plan_type
            or "unknown",
            price_amount=display_plan.price if display_plan else 0.0,
            currency=display_plan.currency if display_plan else "",
            interval=display_plan.interval if display_plan else (subscription.interval or ""),
            current_period_end=(
                subscription.current_period_end.isoformat()
                if subscription.current_period_end
                else None
            ),
            cancel_at_period_end=subscription.cancel_at_period_end,
            total_access_months=total_months,
            bonus_months=bonus_months,
        )

    return SubscriptionStatusResponse(
        customer_id=customer.customer_id,
        tradingview_username=customer.external_username,
        has_active_subscription=subscription is not None,
        subscription=details,
        current_plan=(
            CurrentPlanRef(id=current_plan.plan_id, plan_type=current_plan.plan_type)
            if current_plan
            else None
        ),
        available_plans=[plan_item(plan) for plan in available_plans],
        provisioning_status=customer.provisioning_status,
        last_error=customer.last_error,
    )


@router.post("/v1/subscription/change-plan", response_model=ChangePlanResponse)
async def change_plan(
    request: ChangePlanRequest,
    customer: CustomerRecord = Depends(get_current_customer),
    billing: BillingProvider = Depends(get_billing_provider),
    plans: PlanResolver = Depends(get_plan_resolver),
    service: ProvisioningService = Depends(get_provisioning_service),
) -> ChangePlanResponse:
    """
    Move the active subscription to another plan.

    Stripe prorates. Access is extended when the resulting
    customer.subscription.updated event arrives, not here, so a change is
    never granted twice.

    Auth: Bearer {google_id_token}
    """
    subscription = await billing.get_active_subscription(customer.customer_id)
    if subscription is None:
        raise SubscriptionNotFoundError(customer.customer_id)

    if subscription.price_id == request.new_price_id:
        raise ValidationError("Already on this plan")

    plan = await plans.resolve_by_price_id(request.new_price_id)
    if plan is None:
        raise ValidationError(f"Unknown plan: {request.new_price_id}")

    updated = await billing.change_subscription_price(subscription, request.new_price_id)
    await service.apply_plan_snapshot(customer, plan)

    return ChangePlanResponse(
        message=f"Plan changed to {plan.name}",
        subscription_id=updated.subscription_id,
        subscription_status=updated.status,
    )


@router.post("/v1/subscription/cancel", response_model=CancelSubscriptionResponse)
async def cancel_subscription(
    customer: CustomerRecord = Depends(get_current_customer),
    billing: BillingProvider = Depends(get_billing_provider),
) -> CancelSubscriptionResponse:
    """
    Cancel the active subscription at the end of the current period.

    Granted access is not revoked; it runs until its expiration.

    Auth: Bearer {google_id_token}
    """
    subscription = await billing.get_active_subscription(customer.customer_id)
    if subscription is None:
        raise SubscriptionNotFoundError(customer.customer_id)

    updated = await billing.cancel_at_period_end(subscription.subscription_id)
    return CancelSubscriptionResponse(
        cancel_at_period_end=updated.cancel_at_period_end,
        current_period_end=(
            updated.current_period_end.isoformat() if updated.current_period_end else None
        ),
    )


# ============================================================================
# Hosted Stripe pages
# ============================================================================


@router.post("/v1/checkout/create-session", response_model=SessionUrlResponse)
async def create_checkout_session(
    request: CheckoutSessionRequest,
    user: UserIdentity = Depends(get_user_from_google_token),
    billing: BillingProvider = Depends(get_billing_provider),
    plans: PlanResolver = Depends(get_plan_resolver),
) -> SessionUrlResponse:
    """
    Start Stripe Checkout for a plan.

    The plan snapshot is stored with status incomplete before redirecting, so
    checkout.session.completed finds the customer ready to provision. A
    TradingView username must already be validated.

    Auth: Bearer {google_id_token}
    """
    plan = await plans.resolve_by_plan_id(request.plan_id)
    if plan is None:
        raise ValidationError("Invalid plan selected")

    customer = await billing.get_or_create_customer(user.email, user.external_id)
    if not customer.external_username:
        raise ValidationError("Please set your TradingView username first")

    await billing.save_customer(
        customer.with_plan(plan).with_status(ProvisioningStatus.INCOMPLETE)
    )

    base_url = settings.app_base_url.rstrip("/")
    url = await billing.create_checkout_session(
        customer.customer_id,
        plan.price_id,
        success_url=f"{base_url}{settings.checkout_success_path}",
        cancel_url=f"{base_url}{settings.checkout_cancel_path}",
    )

    logger.info(
        "checkout_session_started",
        customer_id=customer.customer_id,
        plan_id=plan.plan_id,
        price_id=plan.price_id,
    )
    return SessionUrlResponse(url=url)


@router.post("/v1/billing-portal", response_model=SessionUrlResponse)
async def create_billing_portal_session(
    user: UserIdentity = Depends(get_user_from_google_token),
    billing: BillingProvider = Depends(get_billing_provider),
) -> SessionUrlResponse:
    """
    Open the Stripe billing portal for the signed-in user.

    Auth: Bearer {google_id_token}
    """
    customer = await billing.get_or_create_customer(user.email, user.external_id)
    url = await billing.create_billing_portal_session(
        customer.customer_id,
        return_url=f"{settings.app_base_url.rstrip('/')}{settings.billing_portal_return_path}",
    )
    return SessionUrlResponse(url=url)
