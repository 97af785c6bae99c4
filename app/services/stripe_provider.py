"""
Stripe Billing Provider Implementation.

NO DICTIONARIES - Stripe objects are converted to typed domain models here
and nowhere else.
"""

from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

import stripe
from structlog import get_logger

from app.exceptions import CustomerNotFoundError, InvalidSignatureError, PaymentProviderError
from app.models.domain import BillingEvent, BillingPrice, CustomerRecord, SubscriptionSummary

logger = get_logger(__name__)


def _plain(obj: Any) -> Any:
    """Convert Stripe objects (and anything nested in them) into dicts and lists."""
    if obj is None or isinstance(obj, str | int | float | bool):
        return obj
    if isinstance(obj, Mapping):
        return {key: _plain(value) for key, value in obj.items()}
    if isinstance(obj, list | tuple):
        return [_plain(item) for item in obj]
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return _plain(to_dict())
    return obj


def _timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


def customer_from_stripe(customer: Any) -> CustomerRecord:
    """Build a CustomerRecord from a Stripe customer."""
    data = _plain(customer)
    if data.get("deleted"):
        raise CustomerNotFoundError(data.get("id", "unknown"))
    metadata = {str(k): str(v) for k, v in (data.get("metadata") or {}).items()}
    return CustomerRecord.from_metadata(data["id"], data.get("email"), metadata)


def subscription_from_stripe(subscription: Any) -> SubscriptionSummary:
    """Build a SubscriptionSummary from a Stripe subscription (first item only)."""
    data = _plain(subscription)
    items = (data.get("items") or {}).get("data") or []
    item = items[0] if items else {}
    price = item.get("price") or {}
    recurring = price.get("recurring") or {}
    customer = data.get("customer")
    if isinstance(customer, dict):
        customer = customer.get("id")

    # Newer API versions moved current_period_end onto the subscription item
    period_end = data.get("current_period_end") or item.get("current_period_end")

    return SubscriptionSummary(
        subscription_id=data["id"],
        customer_id=customer or "",
        status=data.get("status", ""),
        price_id=price.get("id"),
        item_id=item.get("id"),
        interval=recurring.get("interval"),
        interval_count=int(recurring.get("interval_count") or 1),
        current_period_end=_timestamp(period_end),
        cancel_at_period_end=bool(data.get("cancel_at_period_end")),
    )


def price_from_stripe(price: Any) -> BillingPrice:
    """Build a BillingPrice from a Stripe price with `product` expanded."""
    data = _plain(price)
    product = data.get("product")
    if not isinstance(product, dict):
        product = {}
    recurring = data.get("recurring") or {}
    return BillingPrice(
        price_id=data["id"],
        unit_amount=data.get("unit_amount"),
        currency=data.get("currency", ""),
        recurring_interval=recurring.get("interval"),
        recurring_interval_count=int(recurring.get("interval_count") or 1),
        product_name=product.get("name") or "",
        product_description=product.get("description") or "",
        product_metadata={str(k): str(v) for k, v in (product.get("metadata") or {}).items()},
    )


class StripeProvider:
    """
    Stripe billing provider implementation.

    Implements the BillingProvider protocol for Stripe.
    """

    def __init__(self, api_key: str, webhook_secret: str) -> None:
        """
        Initialize Stripe provider.

        Args:
            api_key: Stripe secret API key
            webhook_secret: Stripe webhook signing secret
        """
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        stripe.api_key = api_key

    @staticmethod
    def _provider_error(operation: str, exc: stripe.StripeError) -> PaymentProviderError:
        logger.error(
            "stripe_call_failed",
            operation=operation,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        return PaymentProviderError(f"{operation} failed: {exc}", getattr(exc, "http_status", None))

    async def retrieve_customer(self, customer_id: str) -> CustomerRecord:
        """
        Load a Stripe customer.

        Raises:
            CustomerNotFoundError: If the customer is missing or deleted
            PaymentProviderError: If Stripe API call fails
        """
        try:
            customer = stripe.Customer.retrieve(customer_id)
        except stripe.InvalidRequestError as exc:
            if getattr(exc, "http_status", None) == 404:
                raise CustomerNotFoundError(customer_id) from exc
            raise self._provider_error("retrieve_customer", exc) from exc
        except stripe.StripeError as exc:
            raise self._provider_error("retrieve_customer", exc) from exc
        return customer_from_stripe(customer)

    async def find_customer_by_email(self, email: str) -> CustomerRecord | None:
        """Find the first Stripe customer with this email."""
        try:
            customers = _plain(stripe.Customer.list(email=email, limit=1))
        except stripe.StripeError as exc:
            raise self._provider_error("find_customer_by_email", exc) from exc
        data = customers.get("data") or []
        return customer_from_stripe(data[0]) if data else None

    async def get_or_create_customer(self, email: str, google_id: str) -> CustomerRecord:
        """
        Find a customer by email, creating one when none exists.

        The Google account id is stamped on the customer the first time it
        is seen.
        """
        try:
            customers = _plain(stripe.Customer.list(email=email, limit=1))
            existing = customers.get("data") or []
            if existing:
                customer = existing[0]
                if google_id and not (customer.get("metadata") or {}).get("googleId"):
                    customer = stripe.Customer.modify(
                        customer["id"], metadata={"googleId": google_id}
                    )
                return customer_from_stripe(customer)

            customer = stripe.Customer.create(email=email, metadata={"googleId": google_id})
        except stripe.StripeError as exc:
            raise self._provider_error("get_or_create_customer", exc) from exc

        logger.info("stripe_customer_created", email=email)
        return customer_from_stripe(customer)

    async def save_customer(self, customer: CustomerRecord) -> CustomerRecord:
        """
        Write the customer's provisioning metadata back to Stripe.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        try:
            updated = stripe.Customer.modify(customer.customer_id, metadata=customer.to_metadata())
        except stripe.StripeError as exc:
            raise self._provider_error("save_customer", exc) from exc

        logger.info(
            "stripe_customer_saved",
            customer_id=customer.customer_id,
            provisioning_status=customer.provisioning_status.value,
        )
        return customer_from_stripe(updated)

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionSummary:
        """Load a Stripe subscription."""
        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as exc:
            raise self._provider_error("retrieve_subscription", exc) from exc
        return subscription_from_stripe(subscription)

    async def get_active_subscription(self, customer_id: str) -> SubscriptionSummary | None:
        """Return the active subscription, falling back to a trialing one."""
        try:
            for status in ("active", "trialing"):
                subscriptions = _plain(
                    stripe.Subscription.list(customer=customer_id, status=status, limit=1)
                )
                data = subscriptions.get("data") or []
                if data:
                    return subscription_from_stripe(data[0])
        except stripe.StripeError as exc:
            raise self._provider_error("get_active_subscription", exc) from exc
        return None

    async def change_subscription_price(
        self, subscription: SubscriptionSummary, new_price_id: str
    ) -> SubscriptionSummary:
        """Swap the subscription item's price with Stripe-side proration."""
        try:
            updated = stripe.Subscription.modify(
                subscription.subscription_id,
                items=[{"id": subscription.item_id, "price": new_price_id}],
                proration_behavior="create_prorations",
            )
        except stripe.StripeError as exc:
            raise self._provider_error("change_subscription_price", exc) from exc

        logger.info(
            "stripe_subscription_price_changed",
            subscription_id=subscription.subscription_id,
            old_price_id=subscription.price_id,
            new_price_id=new_price_id,
        )
        return subscription_from_stripe(updated)

    async def cancel_at_period_end(self, subscription_id: str) -> SubscriptionSummary:
        """Schedule cancellation; access is left to lapse at its granted expiration."""
        try:
            updated = stripe.Subscription.modify(subscription_id, cancel_at_period_end=True)
        except stripe.StripeError as exc:
            raise self._provider_error("cancel_at_period_end", exc) from exc

        logger.info("stripe_subscription_cancel_scheduled", subscription_id=subscription_id)
        return subscription_from_stripe(updated)

    async def retrieve_price(self, price_id: str) -> BillingPrice:
        """Load a Stripe price with its product expanded."""
        try:
            price = stripe.Price.retrieve(price_id, expand=["product"])
        except stripe.StripeError as exc:
            raise self._provider_error("retrieve_price", exc) from exc
        return price_from_stripe(price)

    async def create_checkout_session(
        self, customer_id: str, price_id: str, success_url: str, cancel_url: str
    ) -> str:
        """
        Create a Stripe Checkout session for a one-item subscription.

        Returns:
            The hosted checkout URL

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        try:
            session = stripe.checkout.Session.create(
                customer=customer_id,
                payment_method_types=["card"],
                line_items=[{"price": price_id, "quantity": 1}],
                mode="subscription",
                success_url=success_url,
                cancel_url=cancel_url,
            )
        except stripe.StripeError as exc:
            raise self._provider_error("create_checkout_session", exc) from exc

        data = _plain(session)
        logger.info(
            "stripe_checkout_session_created",
            customer_id=customer_id,
            price_id=price_id,
            checkout_session_id=data.get("id"),
        )
        return data.get("url") or ""

    async def create_billing_portal_session(self, customer_id: str, return_url: str) -> str:
        """Create a billing portal session and return its URL."""
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id, return_url=return_url
            )
        except stripe.StripeError as exc:
            raise self._provider_error("create_billing_portal_session", exc) from exc

        logger.info("stripe_billing_portal_session_created", customer_id=customer_id)
        return _plain(session).get("url") or ""

    async def verify_webhook(self, payload: bytes, signature: str) -> BillingEvent:
        """
        Verify and parse a Stripe webhook event.

        Args:
            payload: Raw webhook payload
            signature: Stripe-Signature header value

        Returns:
            Parsed billing event

        Raises:
            InvalidSignatureError: If the header is missing or verification fails
        """
        if not signature:
            logger.warning("stripe_webhook_signature_missing")
            raise InvalidSignatureError("Missing signature")

        try:
            event = stripe.Webhook.construct_event(  # type: ignore[no-untyped-call]
                payload, signature, self.webhook_secret
            )
        except stripe.SignatureVerificationError as exc:
            logger.error("stripe_webhook_verification_failed", error=str(exc))
            raise InvalidSignatureError("Invalid signature") from exc
        except ValueError as exc:
            logger.error("stripe_webhook_parsing_failed", error=str(exc))
            raise InvalidSignatureError(f"Invalid payload: {exc}") from exc

        data = _plain(event)
        event_data = data.get("data") or {}
        logger.info("stripe_webhook_verified", event_id=data.get("id"), event_type=data.get("type"))

        return BillingEvent(
            event_id=data.get("id", ""),
            event_type=data.get("type", ""),
            data_object=event_data.get("object") or {},
            previous_attributes=event_data.get("previous_attributes") or {},
        )
