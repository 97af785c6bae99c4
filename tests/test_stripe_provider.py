"""
Tests for the Stripe billing provider.

Stripe SDK calls are patched; these tests cover conversion into domain
models and error mapping.
"""

from unittest.mock import MagicMock, patch

import pytest
import stripe

from app.exceptions import CustomerNotFoundError, InvalidSignatureError, PaymentProviderError
from app.models.api import ProvisioningStatus
from app.services.stripe_provider import (
    StripeProvider,
    _plain,
    customer_from_stripe,
    price_from_stripe,
    subscription_from_stripe,
)
from tests.conftest import make_customer, make_subscription

SUBSCRIPTION = {
    "id": "sub_1",
    "customer": {"id": "cus_1"},
    "status": "active",
    "cancel_at_period_end": False,
    "items": {
        "data": [
            {
                "id": "si_1",
                "current_period_end": 1800000000,
                "price": {"id": "price_1", "recurring": {"interval": "month", "interval_count": 6}},
            }
        ]
    },
}


@pytest.fixture
def provider() -> StripeProvider:
    return StripeProvider(api_key="sk_test_fake_key", webhook_secret="whsec_test")


class TestConversion:
    """Tests for Stripe object conversion."""

    def test_plain_uses_to_dict(self, mock_stripe_customer):
        """Objects exposing to_dict are flattened recursively."""
        data = _plain({"customer": mock_stripe_customer, "items": [mock_stripe_customer]})
        assert data["customer"]["id"] == "cus_test123"
        assert data["items"][0]["metadata"]["tradingview_username"] == "foobar"

    def test_customer(self, mock_stripe_customer):
        """Customer metadata becomes a CustomerRecord."""
        record = customer_from_stripe(mock_stripe_customer)
        assert record.customer_id == "cus_test123"
        assert record.external_username == "foobar"
        assert record.provisioning_status is ProvisioningStatus.COMPLETE

    def test_deleted_customer(self):
        """A deleted customer is not found."""
        with pytest.raises(CustomerNotFoundError):
            customer_from_stripe({"id": "cus_1", "deleted": True})

    def test_subscription_item_period_end(self):
        """current_period_end is read from the item when missing at the top level."""
        summary = subscription_from_stripe(SUBSCRIPTION)
        assert summary.customer_id == "cus_1"
        assert summary.price_id == "price_1"
        assert summary.item_id == "si_1"
        assert summary.interval == "month"
        assert summary.interval_count == 6
        assert summary.current_period_end.year == 2027

    def test_price_with_product(self):
        """Product metadata is carried onto the price."""
        price = price_from_stripe(
            {
                "id": "price_1",
                "unit_amount": 4900,
                "currency": "usd",
                "recurring": {"interval": "month", "interval_count": 6},
                "product": {
                    "name": "Six Months",
                    "description": None,
                    "metadata": {"access_duration_months": 6},
                },
            }
        )
        assert price.recurring_interval_count == 6
        assert price.product_name == "Six Months"
        assert price.product_description == ""
        assert price.product_metadata == {"access_duration_months": "6"}


class TestCustomers:
    """Tests for customer operations."""

    @pytest.mark.asyncio
    async def test_retrieve_customer(self, provider, mock_stripe_customer):
        """A customer is loaded and converted."""
        with patch("stripe.Customer.retrieve", return_value=mock_stripe_customer) as retrieve:
            record = await provider.retrieve_customer("cus_test123")

        retrieve.assert_called_once_with("cus_test123")
        assert record.external_username == "foobar"

    @pytest.mark.asyncio
    async def test_retrieve_missing_customer(self, provider):
        """A 404 from Stripe is CustomerNotFoundError."""
        error = stripe.InvalidRequestError("No such customer", "id", http_status=404)
        with patch("stripe.Customer.retrieve", side_effect=error):
            with pytest.raises(CustomerNotFoundError):
                await provider.retrieve_customer("cus_missing")

    @pytest.mark.asyncio
    async def test_retrieve_customer_api_error(self, provider):
        """Other Stripe errors are PaymentProviderError."""
        with patch("stripe.Customer.retrieve", side_effect=stripe.APIConnectionError("down")):
            with pytest.raises(PaymentProviderError):
                await provider.retrieve_customer("cus_1")

    @pytest.mark.asyncio
    async def test_find_by_email_none(self, provider):
        """No match returns None."""
        with patch("stripe.Customer.list", return_value={"data": []}):
            assert await provider.find_customer_by_email("x@example.com") is None

    @pytest.mark.asyncio
    async def test_get_or_create_creates(self, provider):
        """A missing customer is created with the Google id."""
        with (
            patch("stripe.Customer.list", return_value={"data": []}),
            patch(
                "stripe.Customer.create",
                return_value={"id": "cus_new", "email": "a@example.com", "metadata": {}},
            ) as create,
        ):
            record = await provider.get_or_create_customer("a@example.com", "g-1")

        create.assert_called_once_with(email="a@example.com", metadata={"googleId": "g-1"})
        assert record.customer_id == "cus_new"

    @pytest.mark.asyncio
    async def test_get_or_create_stamps_google_id(self, provider):
        """An existing customer without a Google id gets one."""
        existing = {"id": "cus_1", "email": "a@example.com", "metadata": {}}
        with (
            patch("stripe.Customer.list", return_value={"data": [existing]}),
            patch("stripe.Customer.modify", return_value=existing) as modify,
        ):
            await provider.get_or_create_customer("a@example.com", "g-1")

        modify.assert_called_once_with("cus_1", metadata={"googleId": "g-1"})

    @pytest.mark.asyncio
    async def test_save_customer_writes_metadata(self, provider):
        """The full metadata map is written."""
        record = make_customer(status=ProvisioningStatus.PENDING)
        stored = {"id": "cus_test123", "metadata": record.to_metadata()}
        with patch("stripe.Customer.modify", return_value=stored) as modify:
            saved = await provider.save_customer(record)

        assert modify.call_args.kwargs["metadata"]["provisioning_status"] == "pending"
        assert saved.provisioning_status is ProvisioningStatus.PENDING


class TestSubscriptions:
    """Tests for subscription operations."""

    @pytest.mark.asyncio
    async def test_active_falls_back_to_trialing(self, provider):
        """A trialing subscription counts when no active one exists."""
        trialing = dict(SUBSCRIPTION, status="trialing")
        with patch(
            "stripe.Subscription.list", side_effect=[{"data": []}, {"data": [trialing]}]
        ) as list_:
            summary = await provider.get_active_subscription("cus_1")

        assert summary.status == "trialing"
        assert [c.kwargs["status"] for c in list_.call_args_list] == ["active", "trialing"]

    @pytest.mark.asyncio
    async def test_no_subscription(self, provider):
        """None when neither active nor trialing exists."""
        with patch("stripe.Subscription.list", return_value={"data": []}):
            assert await provider.get_active_subscription("cus_1") is None

    @pytest.mark.asyncio
    async def test_change_price_prorates(self, provider):
        """The item's price is swapped with prorations."""
        with patch("stripe.Subscription.modify", return_value=SUBSCRIPTION) as modify:
            await provider.change_subscription_price(make_subscription(), "price_new")

        modify.assert_called_once_with(
            "sub_test123",
            items=[{"id": "si_test123", "price": "price_new"}],
            proration_behavior="create_prorations",
        )

    @pytest.mark.asyncio
    async def test_cancel_at_period_end(self, provider):
        """Cancellation is scheduled, not immediate."""
        cancelled = dict(SUBSCRIPTION, cancel_at_period_end=True)
        with patch("stripe.Subscription.modify", return_value=cancelled) as modify:
            summary = await provider.cancel_at_period_end("sub_1")

        modify.assert_called_once_with("sub_1", cancel_at_period_end=True)
        assert summary.cancel_at_period_end is True


class TestVerifyWebhook:
    """Tests for webhook verification."""

    @pytest.mark.asyncio
    async def test_missing_signature(self, provider):
        """An empty signature is rejected without calling Stripe."""
        with patch("stripe.Webhook.construct_event") as construct:
            with pytest.raises(InvalidSignatureError, match="Missing signature"):
                await provider.verify_webhook(b"{}", "")
        construct.assert_not_called()

    @pytest.mark.asyncio
    async def test_bad_signature(self, provider):
        """A signature mismatch is InvalidSignatureError."""
        error = stripe.SignatureVerificationError("No signatures found", "t=1,v1=bad")
        with patch("stripe.Webhook.construct_event", side_effect=error):
            with pytest.raises(InvalidSignatureError) as exc_info:
                await provider.verify_webhook(b"{}", "t=1,v1=bad")
        assert exc_info.value.message == "Invalid signature"

    @pytest.mark.asyncio
    async def test_bad_payload(self, provider):
        """Unparseable JSON is InvalidSignatureError."""
        with patch("stripe.Webhook.construct_event", side_effect=ValueError("bad json")):
            with pytest.raises(InvalidSignatureError, match="Invalid payload"):
                await provider.verify_webhook(b"not json", "t=1,v1=x")

    @pytest.mark.asyncio
    async def test_verified_event(self, provider):
        """A verified event exposes type, object and previous attributes."""
        event = MagicMock()
        event.to_dict.return_value = {
            "id": "evt_1",
            "type": "customer.subscription.updated",
            "data": {"object": SUBSCRIPTION, "previous_attributes": {"status": "trialing"}},
        }
        with patch("stripe.Webhook.construct_event", return_value=event) as construct:
            result = await provider.verify_webhook(b"{}", "t=1,v1=x")

        construct.assert_called_once_with(b"{}", "t=1,v1=x", "whsec_test")
        assert result.event_id == "evt_1"
        assert result.event_type == "customer.subscription.updated"
        assert result.data_object["id"] == "sub_1"
        assert result.previous_attributes == {"status": "trialing"}


class TestHostedSessions:
    """Tests for checkout and billing portal sessions."""

    @pytest.mark.asyncio
    async def test_checkout_session(self, provider):
        """A one-item subscription checkout is created for the customer."""
        session = {"id": "cs_test", "url": "https://checkout.stripe.com/c/cs_test"}
        with patch("stripe.checkout.Session.create", return_value=session) as create:
            url = await provider.create_checkout_session(
                "cus_1", "price_1", "https://app/success", "https://app/checkout"
            )

        assert url == "https://checkout.stripe.com/c/cs_test"
        create.assert_called_once_with(
            customer="cus_1",
            payment_method_types=["card"],
            line_items=[{"price": "price_1", "quantity": 1}],
            mode="subscription",
            success_url="https://app/success",
            cancel_url="https://app/checkout",
        )

    @pytest.mark.asyncio
    async def test_checkout_session_error(self, provider):
        """Stripe errors are PaymentProviderError."""
        with patch(
            "stripe.checkout.Session.create", side_effect=stripe.APIConnectionError("down")
        ):
            with pytest.raises(PaymentProviderError, match="create_checkout_session failed"):
                await provider.create_checkout_session("cus_1", "price_1", "s", "c")

    @pytest.mark.asyncio
    async def test_billing_portal_session(self, provider):
        """The portal session URL is returned."""
        session = {"id": "bps_test", "url": "https://billing.stripe.com/p/test"}
        with patch("stripe.billing_portal.Session.create", return_value=session) as create:
            url = await provider.create_billing_portal_session("cus_1", "https://app/dashboard")

        assert url == "https://billing.stripe.com/p/test"
        create.assert_called_once_with(customer="cus_1", return_url="https://app/dashboard")
