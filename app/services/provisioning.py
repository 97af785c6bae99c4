"""
Provisioning Service - the access state machine.

NO DICTIONARIES - All operations use strongly typed domain models.

Status lifecycle stored on the billing customer:

    none/incomplete -> pending -> complete | failed
    failed -> pending (next attempt)
    failed -> retry_pending (session rejected, refresh requested)

Only this service writes provisioning_status and last_error. TradingView state
is never used to infer them.
"""

import time

from structlog import get_logger

from app.exceptions import ExternalServiceError, is_session_error
from app.models.api import OutcomeKind, ProvisioningReason, ProvisioningStatus
from app.models.domain import (
    CustomerRecord,
    Duration,
    IndicatorResult,
    Plan,
    ProvisioningOutcome,
    RefreshTriggerResult,
    SubscriptionSummary,
)
from app.observability.logging import log_context
from app.observability.metrics import metrics
from app.observability.tracing import trace_operation
from app.services.payment_provider import BillingProvider
from app.services.plans import PlanResolver
from app.services.session_refresh import SessionRefreshTrigger
from app.services.tradingview import TradingViewClient

logger = get_logger(__name__)


def _first_error(results: list[IndicatorResult]) -> str | None:
    """Error of the first failing indicator, or None when every indicator succeeded."""
    for result in results:
        if not result.succeeded:
            return result.error or f"Grant failed for indicator {result.indicator_id}"
    return None


class ProvisioningService:
    """
    Grants, extends or skips TradingView access for one billing customer.

    Every run follows the same pattern:
    1. Bail out if there is no username yet (onboarding incomplete)
    2. Skip pure status checks when already complete
    3. Persist pending, then grant on every indicator
    4. Persist complete, failed, or retry_pending after a session rejection
    """

    def __init__(
        self,
        billing: BillingProvider,
        tradingview: TradingViewClient,
        plans: PlanResolver,
        refresh_trigger: SessionRefreshTrigger,
    ) -> None:
        self.billing = billing
        self.tradingview = tradingview
        self.plans = plans
        self.refresh_trigger = refresh_trigger

    async def provision(
        self,
        customer: CustomerRecord,
        reason: ProvisioningReason,
        plan: Plan | None = None,
        subscription: SubscriptionSummary | None = None,
    ) -> ProvisioningOutcome:
        """
        Run the state machine once for a customer.

        External failures (TradingView errors, rejected sessions) end up in the
        stored status and the returned outcome. Only a failure to persist the
        customer record propagates.
        """
        start = time.monotonic()
        with log_context(customer_id=customer.customer_id, reason=reason.value):
            with trace_operation(
                "provision", customer_id=customer.customer_id, reason=reason.value
            ) as span:
                outcome = await self._run(customer, reason, plan, subscription)
                span.set_attribute("outcome", outcome.kind.value)
                span.set_attribute("provisioning_status", outcome.status.value)

        metrics.record_provisioning(reason.value, outcome.kind.value, time.monotonic() - start)
        return outcome

    async def _run(
        self,
        customer: CustomerRecord,
        reason: ProvisioningReason,
        plan: Plan | None,
        subscription: SubscriptionSummary | None,
    ) -> ProvisioningOutcome:
        username = customer.external_username
        if not username:
            logger.info("provisioning_needs_onboarding")
            return ProvisioningOutcome(
                kind=OutcomeKind.NEEDS_ONBOARDING,
                status=customer.provisioning_status,
                message="No TradingView username on file",
            )

        if (
            reason is ProvisioningReason.STATUS_CHECK
            and customer.provisioning_status is ProvisioningStatus.COMPLETE
        ):
            logger.info("provisioning_already_complete", username=username)
            return ProvisioningOutcome(
                kind=OutcomeKind.ALREADY_PROVISIONED,
                status=ProvisioningStatus.COMPLETE,
                message="Access already provisioned",
            )

        months = await self._resolve_months(customer, plan, subscription)
        duration = Duration.months(months)

        pending = customer.with_status(ProvisioningStatus.PENDING, customer.last_error)
        await self.billing.save_customer(pending)

        logger.info(
            "provisioning_started",
            username=username,
            duration=str(duration),
            previous_status=customer.provisioning_status.value,
            legacy_username_key=customer.username_from_legacy_key,
        )

        results: list[IndicatorResult] = []
        try:
            results = await self.tradingview.grant_access(username, duration)
            error = _first_error(results)
        except ExternalServiceError as exc:
            logger.error("provisioning_grant_raised", username=username, error=exc.message)
            error = exc.message

        for result in results:
            metrics.record_indicator_grant(result.status.value)

        if error is None:
            await self.billing.save_customer(pending.with_status(ProvisioningStatus.COMPLETE))
            logger.info(
                "provisioning_completed",
                username=username,
                duration=str(duration),
                indicator_count=len(results),
            )
            return ProvisioningOutcome(
                kind=OutcomeKind.GRANTED,
                status=ProvisioningStatus.COMPLETE,
                message=f"Access granted to {username} for {duration}",
                duration=duration,
                results=tuple(results),
            )

        failed = pending.with_status(ProvisioningStatus.FAILED, error)
        await self.billing.save_customer(failed)
        logger.warning("provisioning_failed", username=username, error=error)

        session_rejected = is_session_error(error) or any(
            is_session_error(result.error) for result in results
        )
        if not session_rejected:
            return ProvisioningOutcome(
                kind=OutcomeKind.FAILED,
                status=ProvisioningStatus.FAILED,
                message="Access grant failed",
                duration=duration,
                results=tuple(results),
                error=error,
            )

        refresh = await self._request_session_refresh(customer.customer_id)
        await self.billing.save_customer(failed.with_status(ProvisioningStatus.RETRY_PENDING, error))
        logger.warning(
            "provisioning_retry_pending",
            username=username,
            refresh_triggered=refresh.triggered,
        )
        return ProvisioningOutcome(
            kind=OutcomeKind.FAILED,
            status=ProvisioningStatus.RETRY_PENDING,
            message="TradingView session rejected; refresh requested",
            duration=duration,
            results=tuple(results),
            error=error,
            refresh_trigger=refresh,
        )

    async def _resolve_months(
        self,
        customer: CustomerRecord,
        plan: Plan | None,
        subscription: SubscriptionSummary | None,
    ) -> int:
        if plan is None and subscription is None and customer.total_access_months > 0:
            return customer.total_access_months
        return await self.plans.resolve_access_months(
            plan=plan,
            price_id=subscription.price_id if subscription else None,
            interval=subscription.interval if subscription else None,
            interval_count=subscription.interval_count if subscription else None,
        )

    async def _request_session_refresh(self, customer_id: str) -> RefreshTriggerResult:
        result = await self.refresh_trigger.trigger(customer_id)
        metrics.record_session_error(result.triggered)
        logger.info(
            "session_refresh_requested",
            triggered=result.triggered,
            detail=result.detail,
        )
        return result

    async def apply_plan_snapshot(self, customer: CustomerRecord, plan: Plan) -> CustomerRecord:
        """Persist the plan's months and type onto the customer record."""
        updated = customer.with_plan(plan)
        await self.billing.save_customer(updated)
        logger.info(
            "plan_snapshot_saved",
            customer_id=customer.customer_id,
            plan_type=plan.plan_type,
            total_access_months=plan.total_access_months,
        )
        return updated

    async def revoke(self, customer: CustomerRecord) -> ProvisioningOutcome:
        """
        Remove access on every indicator immediately.

        Full success resets the status to none; anything else is stored as
        failed with the first error.
        """
        username = customer.external_username
        if not username:
            return ProvisioningOutcome(
                kind=OutcomeKind.NEEDS_ONBOARDING,
                status=customer.provisioning_status,
                message="No TradingView username on file",
            )

        with log_context(customer_id=customer.customer_id):
            results: list[IndicatorResult] = []
            try:
                results = await self.tradingview.revoke_access(username)
                error = _first_error(results)
            except ExternalServiceError as exc:
                error = exc.message

            if error is None:
                await self.billing.save_customer(customer.with_status(ProvisioningStatus.NONE))
                logger.info("access_revoked", username=username)
                return ProvisioningOutcome(
                    kind=OutcomeKind.REVOKED,
                    status=ProvisioningStatus.NONE,
                    message=f"Access revoked for {username}",
                    results=tuple(results),
                )

            await self.billing.save_customer(
                customer.with_status(ProvisioningStatus.FAILED, error)
            )
            logger.warning("access_revoke_failed", username=username, error=error)
            return ProvisioningOutcome(
                kind=OutcomeKind.FAILED,
                status=ProvisioningStatus.FAILED,
                message="Access revoke failed",
                results=tuple(results),
                error=error,
            )
