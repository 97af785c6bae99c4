"""
Billing Event Ingestion - Stripe webhook dispatch.

Events are verified before anything else happens. After that every event is
acknowledged; what the state machine decided is recorded on the customer,
not in the webhook response.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from structlog import get_logger

from app.exceptions import CustomerNotFoundError
from app.models.api import EventDisposition, ProvisioningReason
from app.models.domain import BillingEvent, CustomerRecord, Plan, ProvisioningOutcome
from app.observability.logging import log_context
from app.observability.metrics import metrics
from app.services.payment_provider import BillingProvider
from app.services.plans import PlanResolver
from app.services.provisioning import ProvisioningService
from app.services.stripe_provider import subscription_from_stripe

logger = get_logger(__name__)


@dataclass(frozen=True)
class EventResult:
    """Disposition of one billing event plus the provisioning outcome, if any."""

    event_type: str
    disposition: EventDisposition
    outcome: ProvisioningOutcome | None = None


def _ref_id(value: Any) -> str | None:
    """Id of a Stripe reference that may or may not be expanded."""
    if isinstance(value, Mapping):
        value = value.get("id")
    return value or None


def invoice_subscription_id(invoice: Mapping[str, Any]) -> str | None:
    """Subscription id of an invoice, from the top level or the newer `parent` block."""
    direct = _ref_id(invoice.get("subscription"))
    if direct:
        return direct
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return _ref_id(details.get("subscription"))


def previous_price_id(previous_attributes: Mapping[str, Any]) -> str | None:
    """Price id before the update, when the event says the items changed."""
    items = (previous_attributes.get("items") or {}).get("data") or []
    if not items:
        return None
    price = items[0].get("price") or {}
    return _ref_id(price)


def _snapshot_differs(customer: CustomerRecord, plan: Plan) -> bool:
    """Whether a stored plan snapshot exists and disagrees with `plan`."""
    has_snapshot = bool(customer.plan_type or customer.total_access_months)
    if not has_snapshot:
        return False
    return (
        customer.plan_type != plan.plan_type
        or customer.total_access_months != plan.total_access_months
        or customer.internal_product_id != plan.internal_product_id
    )


class BillingEventProcessor:
    """
    Verifies and dispatches Stripe events to the provisioning state machine.

    Handled events:
    - checkout.session.completed (subscription mode): snapshot plan, provision
    - invoice.paid (subscription_cycle): provision as renewal
    - customer.subscription.updated: re-provision on a plan change
    - customer.subscription.deleted: logged only, access lapses on its own
    """

    def __init__(
        self,
        billing: BillingProvider,
        plans: PlanResolver,
        provisioning: ProvisioningService,
    ) -> None:
        self.billing = billing
        self.plans = plans
        self.provisioning = provisioning

    async def handle(self, payload: bytes, signature: str) -> EventResult:
        """
        Verify the raw payload and dispatch it.

        Raises:
            InvalidSignatureError: Before any side effect, if verification fails
            PaymentProviderError: If customer or subscription records cannot be loaded
        """
        event = await self.billing.verify_webhook(payload, signature)
        return await self.dispatch(event)

    async def dispatch(self, event: BillingEvent) -> EventResult:
        """Route an already verified event to its handler."""
        handlers = {
            "checkout.session.completed": self._checkout_completed,
            "invoice.paid": self._invoice_paid,
            "customer.subscription.updated": self._subscription_updated,
            "customer.subscription.deleted": self._subscription_deleted,
        }

        with log_context(event_id=event.event_id, event_type=event.event_type):
            handler = handlers.get(event.event_type)
            if handler is None:
                logger.info("billing_event_ignored")
                result = EventResult(event.event_type, EventDisposition.IGNORED)
            else:
                result = await handler(event)

            logger.info(
                "billing_event_processed",
                disposition=result.disposition.value,
                outcome=result.outcome.kind.value if result.outcome else None,
            )

        metrics.record_billing_event(event.event_type, result.disposition.value)
        return result

    async def _load_customer(self, customer_id: str) -> CustomerRecord | None:
        try:
            return await self.billing.retrieve_customer(customer_id)
        except CustomerNotFoundError:
            logger.warning("billing_event_customer_missing", customer_id=customer_id)
            return None

    async def _checkout_completed(self, event: BillingEvent) -> EventResult:
        session = event.data_object
        customer_id = _ref_id(session.get("customer"))
        subscription_id = _ref_id(session.get("subscription"))

        if session.get("mode") != "subscription" or not customer_id or not subscription_id:
            logger.info("checkout_not_subscription", mode=session.get("mode"))
            return EventResult(event.event_type, EventDisposition.IGNORED)

        customer = await self._load_customer(customer_id)
        if customer is None:
            return EventResult(event.event_type, EventDisposition.SKIPPED)

        subscription = await self.billing.retrieve_subscription(subscription_id)
        plan = await self.plans.resolve_by_price_id(subscription.price_id)
        if plan is not None:
            customer = await self.provisioning.apply_plan_snapshot(customer, plan)
        else:
            logger.warning("checkout_plan_unknown", price_id=subscription.price_id)

        outcome = await self.provisioning.provision(
            customer, ProvisioningReason.CHECKOUT_COMPLETED, plan=plan, subscription=subscription
        )
        return EventResult(event.event_type, EventDisposition.PROVISIONED, outcome)

    async def _invoice_paid(self, event: BillingEvent) -> EventResult:
        invoice = event.data_object
        customer_id = _ref_id(invoice.get("customer"))
        subscription_id = invoice_subscription_id(invoice)

        # The first invoice is covered by checkout.session.completed
        if invoice.get("billing_reason") != "subscription_cycle":
            logger.info("invoice_not_renewal", billing_reason=invoice.get("billing_reason"))
            return EventResult(event.event_type, EventDisposition.IGNORED)
        if not customer_id or not subscription_id:
            logger.info("invoice_missing_references")
            return EventResult(event.event_type, EventDisposition.IGNORED)

        customer = await self._load_customer(customer_id)
        if customer is None:
            return EventResult(event.event_type, EventDisposition.SKIPPED)

        subscription = await self.billing.retrieve_subscription(subscription_id)
        plan = await self.plans.resolve_by_price_id(subscription.price_id)
        outcome = await self.provisioning.provision(
            customer, ProvisioningReason.RENEWAL, plan=plan, subscription=subscription
        )
        return EventResult(event.event_type, EventDisposition.PROVISIONED, outcome)

    async def _subscription_updated(self, event: BillingEvent) -> EventResult:
        subscription = subscription_from_stripe(event.data_object)

        if subscription.cancel_at_period_end:
            # No revocation: granted access runs until its expiration
            logger.info(
                "subscription_cancel_scheduled",
                subscription_id=subscription.subscription_id,
                current_period_end=subscription.current_period_end,
            )

        if not subscription.customer_id or not subscription.price_id:
            return EventResult(event.event_type, EventDisposition.LOGGED)

        plan = await self.plans.resolve_by_price_id(subscription.price_id)
        if plan is None:
            logger.warning("subscription_plan_unknown", price_id=subscription.price_id)
            return EventResult(event.event_type, EventDisposition.LOGGED)

        customer = await self._load_customer(subscription.customer_id)
        if customer is None:
            return EventResult(event.event_type, EventDisposition.SKIPPED)

        old_price_id = previous_price_id(event.previous_attributes)
        if old_price_id is None or old_price_id == subscription.price_id:
            # Not a plan change: keep the snapshot current, never grant
            if _snapshot_differs(customer, plan):
                await self.provisioning.apply_plan_snapshot(customer, plan)
                logger.info(
                    "subscription_plan_snapshot_synced",
                    subscription_id=subscription.subscription_id,
                    plan_type=plan.plan_type,
                )
            return EventResult(event.event_type, EventDisposition.LOGGED)

        customer = await self.provisioning.apply_plan_snapshot(customer, plan)
        logger.info(
            "subscription_plan_changed",
            subscription_id=subscription.subscription_id,
            old_price_id=old_price_id,
            new_price_id=subscription.price_id,
            plan_type=plan.plan_type,
        )

        if not subscription.is_active:
            logger.info("subscription_plan_change_inactive", status=subscription.status)
            return EventResult(event.event_type, EventDisposition.LOGGED)

        outcome = await self.provisioning.provision(
            customer, ProvisioningReason.PLAN_CHANGE, plan=plan, subscription=subscription
        )
        return EventResult(event.event_type, EventDisposition.PROVISIONED, outcome)

    async def _subscription_deleted(self, event: BillingEvent) -> EventResult:
        # Access was granted for a fixed duration and expires on its own
        logger.info(
            "subscription_deleted",
            subscription_id=event.data_object.get("id"),
            customer_id=_ref_id(event.data_object.get("customer")),
        )
        return EventResult(event.event_type, EventDisposition.LOGGED)
