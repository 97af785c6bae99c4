"""
Tests for the plan cache and plan resolver.
"""

from unittest.mock import AsyncMock

import pytest

from app.exceptions import PaymentProviderError
from app.services.plans import PlanCache, PlanResolver, months_from_interval
from tests.conftest import make_plan, make_price


class FakeClock:
    """Monotonic clock the test advances by hand."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def price_billing() -> AsyncMock:
    """Billing mock serving two prices by id."""
    prices = {
        "price_annual": make_price("price_annual"),
        "price_six_month": make_price(
            "price_six_month",
            access_duration_months="6",
            bonus_months="0",
            plan_type="six_month",
            interval="month",
            interval_count=6,
        ),
    }
    billing = AsyncMock()
    billing.retrieve_price.side_effect = lambda price_id: prices[price_id]
    return billing


def make_resolver(billing, clock, price_ids=None) -> PlanResolver:
    return PlanResolver(
        billing=billing,
        price_ids=price_ids or ["price_six_month", "price_annual"],
        cache=PlanCache(ttl_seconds=300, clock=clock),
    )


class TestPlanCache:
    """Tests for PlanCache."""

    def test_empty_cache(self, clock):
        """An empty cache returns None."""
        assert PlanCache(clock=clock).get() is None

    def test_hit_within_ttl(self, clock):
        """Stored plans are served until the TTL elapses."""
        cache = PlanCache(ttl_seconds=300, clock=clock)
        cache.store([make_plan()])
        clock.now += 299
        assert [p.price_id for p in cache.get()] == ["price_annual"]

    def test_expired_after_ttl(self, clock):
        """A snapshot older than the TTL is treated as missing."""
        cache = PlanCache(ttl_seconds=300, clock=clock)
        cache.store([make_plan()])
        clock.now += 300
        assert cache.get() is None

    def test_clear(self, clock):
        """clear() drops the snapshot."""
        cache = PlanCache(clock=clock)
        cache.store([make_plan()])
        cache.clear()
        assert cache.get() is None


class TestMonthsFromInterval:
    """Tests for billing interval to month conversion."""

    @pytest.mark.parametrize(
        ("interval", "count", "months"),
        [("year", 1, 12), ("year", 2, 24), ("month", 6, 6), ("month", None, 1), ("week", 1, 0)],
    )
    def test_conversion(self, interval, count, months):
        """Years are 12 months; other units give 0."""
        assert months_from_interval(interval, count) == months


class TestResolvePlans:
    """Tests for catalog resolution."""

    @pytest.mark.asyncio
    async def test_configured_order(self, price_billing, clock):
        """Plans come back in configured price id order."""
        plans = await make_resolver(price_billing, clock).resolve_plans()

        assert [p.price_id for p in plans] == ["price_six_month", "price_annual"]
        assert [p.total_access_months for p in plans] == [6, 18]

    @pytest.mark.asyncio
    async def test_cached_between_calls(self, price_billing, clock):
        """A warm cache avoids Stripe calls."""
        resolver = make_resolver(price_billing, clock)

        await resolver.resolve_plans()
        await resolver.resolve_plans()

        assert price_billing.retrieve_price.await_count == 2

    @pytest.mark.asyncio
    async def test_refetched_after_ttl(self, price_billing, clock):
        """An expired cache triggers a fresh fetch."""
        resolver = make_resolver(price_billing, clock)

        await resolver.resolve_plans()
        clock.now += 301
        await resolver.resolve_plans()

        assert price_billing.retrieve_price.await_count == 4

    @pytest.mark.asyncio
    async def test_failed_price_is_skipped(self, clock):
        """A price that fails to load is left out of the catalog."""
        billing = AsyncMock()

        async def retrieve(price_id):
            if price_id == "price_broken":
                raise PaymentProviderError("No such price")
            return make_price(price_id)

        billing.retrieve_price.side_effect = retrieve
        resolver = make_resolver(billing, clock, ["price_broken", "price_annual"])

        plans = await resolver.resolve_plans()

        assert [p.price_id for p in plans] == ["price_annual"]

    @pytest.mark.asyncio
    async def test_resolve_by_ids(self, price_billing, clock):
        """Plans can be found by price id or plan id."""
        resolver = make_resolver(price_billing, clock)

        assert (await resolver.resolve_by_price_id("price_annual")).plan_type == "annual"
        assert (await resolver.resolve_by_plan_id("six_month")).price_id == "price_six_month"
        assert await resolver.resolve_by_price_id("price_unknown") is None
        assert await resolver.resolve_by_price_id(None) is None
        assert await resolver.resolve_by_plan_id("") is None


class TestResolveAccessMonths:
    """Tests for the access month fallback chain."""

    @pytest.mark.asyncio
    async def test_explicit_plan_wins(self, price_billing, clock):
        """The explicit plan's total is used without any lookup."""
        resolver = make_resolver(price_billing, clock)

        months = await resolver.resolve_access_months(plan=make_plan(), price_id="price_six_month")

        assert months == 18
        price_billing.retrieve_price.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_price_lookup(self, price_billing, clock):
        """Without a plan the price id is looked up."""
        resolver = make_resolver(price_billing, clock)
        assert await resolver.resolve_access_months(price_id="price_six_month") == 6

    @pytest.mark.asyncio
    async def test_zero_month_plan_falls_through_to_interval(self, price_billing, clock):
        """A plan with no months falls back to the billing interval."""
        resolver = make_resolver(price_billing, clock)
        empty = make_plan(access_duration_months=0, bonus_months=0)

        months = await resolver.resolve_access_months(
            plan=empty, price_id="price_unknown", interval="year", interval_count=1
        )

        assert months == 12

    @pytest.mark.asyncio
    async def test_default(self, price_billing, clock):
        """With nothing to go on the default is used."""
        resolver = make_resolver(price_billing, clock)
        assert await resolver.resolve_access_months() == 6
