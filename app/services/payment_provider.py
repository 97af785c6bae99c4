"""
Billing Provider Protocol - Provider-agnostic interface.

NO DICTIONARIES - All data uses strongly typed models. The billing provider's
customer record is the only persistent store this service has.
"""

from typing import Protocol

from app.models.domain import BillingEvent, BillingPrice, CustomerRecord, SubscriptionSummary


class BillingProvider(Protocol):
    """
    Billing provider protocol.

    StripeProvider implements it; tests substitute AsyncMock(spec=...).
    """

    async def retrieve_customer(self, customer_id: str) -> CustomerRecord:
        """
        Load a customer by id.

        Raises:
            CustomerNotFoundError: If missing or deleted
            PaymentProviderError: If the provider call fails
        """
        ...

    async def find_customer_by_email(self, email: str) -> CustomerRecord | None:
        """Find the first customer with this email, or None."""
        ...

    async def get_or_create_customer(self, email: str, google_id: str) -> CustomerRecord:
        """Find a customer by email, creating one when none exists."""
        ...

    async def save_customer(self, customer: CustomerRecord) -> CustomerRecord:
        """
        Persist the customer's provisioning metadata (last write wins).

        Raises:
            PaymentProviderError: If the provider call fails
        """
        ...

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionSummary:
        """Load a subscription by id."""
        ...

    async def get_active_subscription(self, customer_id: str) -> SubscriptionSummary | None:
        """Return the customer's active (or trialing) subscription, if any."""
        ...

    async def change_subscription_price(
        self, subscription: SubscriptionSummary, new_price_id: str
    ) -> SubscriptionSummary:
        """Swap the subscription's price, letting the provider prorate."""
        ...

    async def cancel_at_period_end(self, subscription_id: str) -> SubscriptionSummary:
        """Schedule cancellation at the end of the current period."""
        ...

    async def retrieve_price(self, price_id: str) -> BillingPrice:
        """Load a price with its product expanded."""
        ...

    async def create_checkout_session(
        self, customer_id: str, price_id: str, success_url: str, cancel_url: str
    ) -> str:
        """Start a hosted subscription checkout and return its URL."""
        ...

    async def create_billing_portal_session(self, customer_id: str, return_url: str) -> str:
        """Open a self-service billing portal session and return its URL."""
        ...

    async def verify_webhook(self, payload: bytes, signature: str) -> BillingEvent:
        """
        Verify and parse a webhook event.

        Raises:
            InvalidSignatureError: If signature verification fails
        """
        ...
