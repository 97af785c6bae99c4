"""
Plan Resolver - Stripe price ids to access durations.

The catalog lives in Stripe: each configured price's product metadata carries
plan_type, access_duration_months, bonus_months and features. Results are
cached for a few minutes in an injected PlanCache.
"""

import time
from collections.abc import Callable

from structlog import get_logger

from app.exceptions import ExternalServiceError
from app.models.domain import DEFAULT_ACCESS_MONTHS, Plan
from app.observability.metrics import metrics
from app.services.payment_provider import BillingProvider

logger = get_logger(__name__)


class PlanCache:
    """Timestamped plan snapshot with a TTL."""

    def __init__(
        self, ttl_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._plans: list[Plan] = []
        self._stored_at: float | None = None

    def get(self) -> list[Plan] | None:
        """Cached plans, or None when nothing is cached or the snapshot expired."""
        if not self._plans or self._stored_at is None:
            return None
        if self.clock() - self._stored_at >= self.ttl_seconds:
            return None
        return list(self._plans)

    def store(self, plans: list[Plan]) -> None:
        self._plans = list(plans)
        self._stored_at = self.clock()

    def clear(self) -> None:
        self._plans = []
        self._stored_at = None


def months_from_interval(interval: str | None, interval_count: int | None = 1) -> int:
    """Months covered by one billing period; unknown intervals give 0."""
    count = interval_count or 1
    if interval == "year":
        return 12 * count
    if interval == "month":
        return count
    return 0


class PlanResolver:
    """
    Resolve plans from the configured Stripe prices.

    Plans are returned in the configured price id order. A price that fails
    to load is logged and left out rather than failing the whole catalog.
    """

    def __init__(
        self,
        billing: BillingProvider,
        price_ids: list[str],
        cache: PlanCache,
        default_months: int = DEFAULT_ACCESS_MONTHS,
    ) -> None:
        self.billing = billing
        self.price_ids = list(price_ids)
        self.cache = cache
        self.default_months = default_months

    async def resolve_plans(self) -> list[Plan]:
        """Return the plan catalog, fetching from Stripe when the cache is cold."""
        cached = self.cache.get()
        if cached is not None:
            return cached

        plans: list[Plan] = []
        for price_id in self.price_ids:
            try:
                price = await self.billing.retrieve_price(price_id)
                plans.append(Plan.from_price(price))
            except (ExternalServiceError, ValueError) as exc:
                logger.error("plan_fetch_failed", price_id=price_id, error=str(exc))
                metrics.record_plan_fetch(success=False)
                continue
            metrics.record_plan_fetch(success=True)

        self.cache.store(plans)
        logger.info("plan_catalog_loaded", plan_count=len(plans))
        return plans

    async def resolve_by_price_id(self, price_id: str | None) -> Plan | None:
        """Find the plan for a Stripe price id."""
        if not price_id:
            return None
        for plan in await self.resolve_plans():
            if plan.price_id == price_id:
                return plan
        return None

    async def resolve_by_plan_id(self, plan_id: str | None) -> Plan | None:
        """Find the plan by its catalog id (product metadata plan_id)."""
        if not plan_id:
            return None
        for plan in await self.resolve_plans():
            if plan.plan_id == plan_id:
                return plan
        return None

    async def resolve_access_months(
        self,
        plan: Plan | None = None,
        price_id: str | None = None,
        interval: str | None = None,
        interval_count: int | None = None,
    ) -> int:
        """
        Months of access to grant.

        Tries, in order: the explicit plan's total, the plan found by price id,
        the billing interval, then the default. Never less than 1.
        """
        months = plan.total_access_months if plan else 0

        if months <= 0 and price_id:
            by_price = await self.resolve_by_price_id(price_id)
            if by_price:
                months = by_price.total_access_months

        if months <= 0:
            months = months_from_interval(interval, interval_count)

        if months <= 0:
            logger.warning(
                "plan_months_defaulted",
                price_id=price_id,
                interval=interval,
                default_months=self.default_months,
            )
            months = self.default_months

        return max(months, 1)
