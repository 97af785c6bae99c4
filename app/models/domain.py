"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
The flat string metadata map on the Stripe customer only exists at the
boundary (CustomerRecord.from_metadata / to_metadata).
"""

import json
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from dateutil.relativedelta import relativedelta

from app.models.api import GrantStatus, OutcomeKind, ProvisioningStatus

# Floor applied when a plan resolves to zero months
DEFAULT_ACCESS_MONTHS = 6

# Stripe metadata values are capped at 500 characters
MAX_METADATA_VALUE_LENGTH = 500


class MetadataKey(str, Enum):
    """Customer metadata keys. Names are stable: existing customers already carry them."""

    USERNAME = "tradingview_username"
    LEGACY_USERNAME = "tradingViewUsername"
    PROVISIONING_STATUS = "provisioning_status"
    PLAN_TYPE = "plan_type"
    ACCESS_DURATION_MONTHS = "access_duration_months"
    BONUS_MONTHS = "bonus_months"
    TOTAL_ACCESS_MONTHS = "total_access_months"
    INTERNAL_PRODUCT_ID = "internal_product_id"
    LAST_ERROR = "last_error"


def _parse_int(value: str | None) -> int:
    """Parse a string-encoded integer, treating blanks and garbage as 0."""
    if not value:
        return 0
    try:
        return int(str(value).strip())
    except ValueError:
        return 0


# ============================================================================
# Durations
# ============================================================================


class DurationUnit(str, Enum):
    """Unit letter of a compact duration string."""

    YEAR = "Y"
    MONTH = "M"
    WEEK = "W"
    DAY = "D"


@dataclass(frozen=True)
class Duration:
    """Signed magnitude plus unit, written compactly as e.g. "18M" or "1Y"."""

    magnitude: int
    unit: DurationUnit

    @classmethod
    def parse(cls, text: str) -> "Duration":
        """
        Parse "<n><unit>".

        The unit letter is case-insensitive; an unparseable magnitude defaults
        to 1. Raises ValueError for an unknown unit.
        """
        text = (text or "").strip()
        if not text:
            raise ValueError("Duration cannot be empty")
        try:
            unit = DurationUnit(text[-1].upper())
        except ValueError:
            raise ValueError(f"Unknown duration unit: {text[-1]!r}") from None
        try:
            magnitude = int(text[:-1])
        except ValueError:
            magnitude = 1
        return cls(magnitude=magnitude, unit=unit)

    @classmethod
    def months(cls, count: int) -> "Duration":
        """Month duration."""
        return cls(magnitude=count, unit=DurationUnit.MONTH)

    def as_relativedelta(self) -> relativedelta:
        """Calendar offset for this duration."""
        if self.unit is DurationUnit.YEAR:
            return relativedelta(years=self.magnitude)
        if self.unit is DurationUnit.MONTH:
            return relativedelta(months=self.magnitude)
        if self.unit is DurationUnit.WEEK:
            return relativedelta(weeks=self.magnitude)
        return relativedelta(days=self.magnitude)

    def apply(self, start: datetime) -> datetime:
        """Move `start` by this duration using calendar arithmetic."""
        return start + self.as_relativedelta()

    def __str__(self) -> str:
        return f"{self.magnitude}{self.unit.value}"


# ============================================================================
# Plans and billing objects
# ============================================================================


@dataclass(frozen=True)
class BillingPrice:
    """Stripe price with its product expanded."""

    price_id: str
    unit_amount: int | None
    currency: str
    recurring_interval: str | None
    recurring_interval_count: int
    product_name: str
    product_description: str
    product_metadata: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Plan:
    """A billing price mapped to an access duration and feature set."""

    plan_id: str
    price_id: str
    name: str
    description: str
    price: float
    currency: str
    interval: str
    plan_type: str
    access_duration_months: int
    bonus_months: int
    internal_product_id: str
    features: tuple[str, ...] = ()
    recurring_interval: str | None = None
    recurring_interval_count: int = 1

    def __post_init__(self) -> None:
        """Validate plan configuration."""
        if not self.price_id:
            raise ValueError("Price ID required")
        if self.access_duration_months < 0 or self.bonus_months < 0:
            raise ValueError("Plan months cannot be negative")

    @property
    def total_access_months(self) -> int:
        return self.access_duration_months + self.bonus_months

    @property
    def effective_access_months(self) -> int:
        """Total months with the fallback floor applied."""
        total = self.total_access_months or DEFAULT_ACCESS_MONTHS
        return max(total, 1)

    @classmethod
    def from_price(cls, price: BillingPrice) -> "Plan":
        """Build a plan from Stripe price/product data (product metadata drives months)."""
        metadata = price.product_metadata
        try:
            features = tuple(str(f) for f in json.loads(metadata.get("features") or "[]"))
        except (ValueError, TypeError):
            features = ()

        interval = price.recurring_interval or "month"
        if price.recurring_interval == "year":
            interval = "year"
        elif price.recurring_interval == "month" and price.recurring_interval_count > 1:
            interval = f"{price.recurring_interval_count} months"

        return cls(
            plan_id=metadata.get("plan_id") or price.price_id,
            price_id=price.price_id,
            name=price.product_name or "Plan",
            description=price.product_description or "",
            price=price.unit_amount / 100 if price.unit_amount else 0.0,
            currency=price.currency,
            interval=interval,
            plan_type=metadata.get("plan_type", ""),
            access_duration_months=max(_parse_int(metadata.get("access_duration_months")), 0),
            bonus_months=max(_parse_int(metadata.get("bonus_months")), 0),
            internal_product_id=metadata.get("internal_product_id", ""),
            features=features,
            recurring_interval=price.recurring_interval,
            recurring_interval_count=price.recurring_interval_count,
        )


@dataclass(frozen=True)
class SubscriptionSummary:
    """The parts of a Stripe subscription the service cares about."""

    subscription_id: str
    customer_id: str
    status: str
    price_id: str | None
    item_id: str | None
    interval: str | None = None
    interval_count: int = 1
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False

    @property
    def is_active(self) -> bool:
        return self.status in ("active", "trialing")


@dataclass(frozen=True)
class BillingEvent:
    """Verified billing event: type plus the nested `data.object` as plain data."""

    event_id: str
    event_type: str
    data_object: Mapping[str, Any]
    previous_attributes: Mapping[str, Any] = field(default_factory=dict)


# ============================================================================
# Customer record
# ============================================================================


@dataclass(frozen=True)
class CustomerRecord:
    """Typed view of a Stripe customer and its provisioning metadata."""

    customer_id: str
    email: str | None = None
    external_username: str | None = None
    provisioning_status: ProvisioningStatus = ProvisioningStatus.NONE
    plan_type: str = ""
    access_duration_months: int = 0
    bonus_months: int = 0
    total_access_months: int = 0
    internal_product_id: str = ""
    last_error: str | None = None
    username_from_legacy_key: bool = False

    def __post_init__(self) -> None:
        if not self.customer_id:
            raise ValueError("customer_id cannot be empty")

    @classmethod
    def from_metadata(
        cls, customer_id: str, email: str | None, metadata: Mapping[str, str] | None
    ) -> "CustomerRecord":
        """Read the flat metadata map, accepting both username spellings."""
        metadata = metadata or {}
        canonical = (metadata.get(MetadataKey.USERNAME.value) or "").strip()
        legacy = (metadata.get(MetadataKey.LEGACY_USERNAME.value) or "").strip()
        return cls(
            customer_id=customer_id,
            email=email,
            external_username=canonical or legacy or None,
            provisioning_status=ProvisioningStatus.parse(
                metadata.get(MetadataKey.PROVISIONING_STATUS.value)
            ),
            plan_type=metadata.get(MetadataKey.PLAN_TYPE.value, ""),
            access_duration_months=_parse_int(
                metadata.get(MetadataKey.ACCESS_DURATION_MONTHS.value)
            ),
            bonus_months=_parse_int(metadata.get(MetadataKey.BONUS_MONTHS.value)),
            total_access_months=_parse_int(metadata.get(MetadataKey.TOTAL_ACCESS_MONTHS.value)),
            internal_product_id=metadata.get(MetadataKey.INTERNAL_PRODUCT_ID.value, ""),
            last_error=metadata.get(MetadataKey.LAST_ERROR.value) or None,
            username_from_legacy_key=bool(legacy and not canonical),
        )

    def to_metadata(self) -> dict[str, str]:
        """
        Serialize to the Stripe metadata map.

        Stripe merges metadata on update and deletes keys set to "", which is
        how a cleared last_error is removed. The username is only written
        under the canonical key; the legacy key is blanked so the two
        spellings cannot drift apart.
        """
        metadata = {
            MetadataKey.PROVISIONING_STATUS.value: self.provisioning_status.value,
            MetadataKey.PLAN_TYPE.value: self.plan_type,
            MetadataKey.ACCESS_DURATION_MONTHS.value: str(self.access_duration_months),
            MetadataKey.BONUS_MONTHS.value: str(self.bonus_months),
            MetadataKey.TOTAL_ACCESS_MONTHS.value: str(self.total_access_months),
            MetadataKey.INTERNAL_PRODUCT_ID.value: self.internal_product_id,
            MetadataKey.LAST_ERROR.value: (self.last_error or "")[:MAX_METADATA_VALUE_LENGTH],
        }
        if self.external_username:
            metadata[MetadataKey.USERNAME.value] = self.external_username
            metadata[MetadataKey.LEGACY_USERNAME.value] = ""
        return metadata

    def with_status(
        self, status: ProvisioningStatus, last_error: str | None = None
    ) -> "CustomerRecord":
        """Copy with a new status. A None last_error clears the stored one."""
        return replace(
            self,
            provisioning_status=status,
            last_error=last_error,
            username_from_legacy_key=False,
        )

    def with_plan(self, plan: Plan) -> "CustomerRecord":
        """Copy with the denormalized plan snapshot replaced."""
        return replace(
            self,
            plan_type=plan.plan_type,
            access_duration_months=plan.access_duration_months,
            bonus_months=plan.bonus_months,
            total_access_months=plan.total_access_months,
            internal_product_id=plan.internal_product_id,
        )

    def with_username(self, username: str) -> "CustomerRecord":
        """Copy with a newly validated username."""
        return replace(self, external_username=username, username_from_legacy_key=False)


# ============================================================================
# Third-party grant models
# ============================================================================


@dataclass(frozen=True)
class UsernameValidation:
    """Outcome of a username lookup on TradingView."""

    valid: bool
    canonical_username: str


@dataclass(frozen=True)
class GrantState:
    """Current TradingView grant for one (indicator, username)."""

    has_access: bool
    no_expiration: bool
    current_expiration: datetime | None = None


@dataclass(frozen=True)
class IndicatorResult:
    """Per-indicator outcome of a grant or revoke."""

    indicator_id: str
    username: str
    status: GrantStatus
    has_access: bool = False
    no_expiration: bool = False
    current_expiration: datetime | None = None
    expiration: datetime | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        """Success or nothing to do (lifetime grant)."""
        return self.status in (GrantStatus.SUCCESS, GrantStatus.NOT_APPLICABLE)


# ============================================================================
# Provisioning outcome and side-action results
# ============================================================================


@dataclass(frozen=True)
class RefreshTriggerResult:
    """Outcome of a session refresh request."""

    triggered: bool
    detail: str


@dataclass(frozen=True)
class NotificationResult:
    """Outcome of a chat-ops notification."""

    sent: bool
    detail: str


@dataclass(frozen=True)
class ProvisioningOutcome:
    """Result of one state machine run."""

    kind: OutcomeKind
    status: ProvisioningStatus
    message: str
    duration: Duration | None = None
    results: tuple[IndicatorResult, ...] = ()
    error: str | None = None
    refresh_trigger: RefreshTriggerResult | None = None

    @property
    def success(self) -> bool:
        return self.kind in (
            OutcomeKind.GRANTED,
            OutcomeKind.ALREADY_PROVISIONED,
            OutcomeKind.REVOKED,
        )
