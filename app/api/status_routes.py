"""
Status API routes - Health checks for the access service's dependencies.

Public endpoints (no auth). The aggregate status is cached for 10 seconds to
prevent abuse; the TradingView session probe is not cached because operators
use it right after rotating the credential.
"""

import asyncio
import time
from datetime import UTC, datetime
from enum import Enum

import httpx
from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, Field
from structlog import get_logger

from app.api.dependencies import get_http_client, get_notifier, get_tradingview_client
from app.config import settings
from app.exceptions import TradingViewError
from app.models.api import SessionHealthResponse
from app.services.notifications import ChatOpsNotifier
from app.services.tradingview import TradingViewClient

logger = get_logger(__name__)
router = APIRouter(tags=["status"])

# Timeout for health checks
CHECK_TIMEOUT = 5.0  # seconds
DEGRADED_LATENCY_THRESHOLD = 1000  # ms

STRIPE_API_URL = "https://api.stripe.com/v1/"

# Rate limiting: cache last result for 10 seconds
_status_cache: dict[str, tuple[datetime, "ServiceStatusResponse"]] = {}
_CACHE_TTL_SECONDS = 10


class StatusLevel(str, Enum):
    """Status levels for health checks."""

    OPERATIONAL = "operational"
    DEGRADED = "degraded"
    OUTAGE = "outage"


class ProviderStatus(BaseModel):
    """Status of a single provider."""

    status: StatusLevel
    latency_ms: int | None = None
    last_check: str = Field(..., description="ISO 8601 timestamp")
    message: str | None = None


class ServiceStatusResponse(BaseModel):
    """Response for /v1/status endpoint."""

    service: str = "indicator-access"
    status: StatusLevel
    timestamp: str = Field(..., description="ISO 8601 timestamp")
    version: str
    providers: dict[str, ProviderStatus]


def _latency_status(latency_ms: int, timestamp: str) -> ProviderStatus:
    status = (
        StatusLevel.DEGRADED if latency_ms > DEGRADED_LATENCY_THRESHOLD else StatusLevel.OPERATIONAL
    )
    return ProviderStatus(
        status=status,
        latency_ms=latency_ms,
        last_check=timestamp,
        message="High latency" if status == StatusLevel.DEGRADED else None,
    )


async def check_tradingview_session(tradingview: TradingViewClient) -> ProviderStatus:
    """Check that TradingView still accepts the shared session credential."""
    start = time.perf_counter()
    timestamp = datetime.now(UTC).isoformat()

    if not tradingview.session_id:
        return ProviderStatus(
            status=StatusLevel.DEGRADED,
            latency_ms=0,
            last_check=timestamp,
            message="Not configured",
        )

    try:
        status_code = await asyncio.wait_for(tradingview.check_session(), timeout=CHECK_TIMEOUT)
    except TimeoutError:
        return ProviderStatus(
            status=StatusLevel.OUTAGE,
            latency_ms=int(CHECK_TIMEOUT * 1000),
            last_check=timestamp,
            message="Timeout",
        )
    except TradingViewError as e:
        logger.warning("tradingview_health_check_failed", error=e.message)
        return ProviderStatus(
            status=StatusLevel.OUTAGE,
            latency_ms=None,
            last_check=timestamp,
            message="Connection failed",
        )

    latency_ms = int((time.perf_counter() - start) * 1000)
    if status_code != 200:
        return ProviderStatus(
            status=StatusLevel.OUTAGE,
            latency_ms=latency_ms,
            last_check=timestamp,
            message=f"Session rejected: {status_code}",
        )
    return _latency_status(latency_ms, timestamp)


async def check_stripe(http_client: httpx.AsyncClient) -> ProviderStatus:
    """Check Stripe API reachability."""
    start = time.perf_counter()
    timestamp = datetime.now(UTC).isoformat()

    try:
        response = await http_client.get(STRIPE_API_URL, timeout=CHECK_TIMEOUT)
    except httpx.TimeoutException:
        return ProviderStatus(
            status=StatusLevel.OUTAGE,
            latency_ms=int(CHECK_TIMEOUT * 1000),
            last_check=timestamp,
            message="Timeout",
        )
    except httpx.HTTPError as e:
        logger.warning("stripe_health_check_failed", error=str(e))
        return ProviderStatus(
            status=StatusLevel.OUTAGE,
            latency_ms=None,
            last_check=timestamp,
            message="Connection failed",
        )

    latency_ms = int((time.perf_counter() - start) * 1000)

    # 401 is expected (no key sent) - endpoint is reachable
    if response.status_code in (200, 401):
        return _latency_status(latency_ms, timestamp)

    return ProviderStatus(
        status=StatusLevel.DEGRADED,
        latency_ms=latency_ms,
        last_check=timestamp,
        message=f"Unexpected status: {response.status_code}",
    )


def calculate_overall_status(providers: dict[str, ProviderStatus]) -> StatusLevel:
    """Calculate overall service status from provider statuses."""
    statuses = [p.status for p in providers.values()]

    if StatusLevel.OUTAGE in statuses:
        return StatusLevel.OUTAGE
    if StatusLevel.DEGRADED in statuses:
        return StatusLevel.DEGRADED
    return StatusLevel.OPERATIONAL


@router.get("/v1/status", response_model=ServiceStatusResponse)
async def get_status(
    tradingview: TradingViewClient = Depends(get_tradingview_client),
    http_client: httpx.AsyncClient = Depends(get_http_client),
) -> ServiceStatusResponse:
    """
    Get service status.

    Checks the TradingView session and Stripe reachability concurrently.
    Rate limited via 10-second cache to prevent abuse.
    """
    cache_key = "status"
    now = datetime.now(UTC)

    if cache_key in _status_cache:
        cached_time, cached_response = _status_cache[cache_key]
        age_seconds = (now - cached_time).total_seconds()
        if age_seconds < _CACHE_TTL_SECONDS:
            logger.debug("status_cache_hit", age_seconds=age_seconds)
            return cached_response

    tradingview_status, stripe_status = await asyncio.gather(
        check_tradingview_session(tradingview),
        check_stripe(http_client),
    )

    providers = {
        "tradingview_session": tradingview_status,
        "stripe": stripe_status,
    }

    response = ServiceStatusResponse(
        status=calculate_overall_status(providers),
        timestamp=now.isoformat(),
        version=settings.api_version,
        providers=providers,
    )

    _status_cache[cache_key] = (now, response)

    return response


@router.get("/v1/health/tradingview-session", response_model=SessionHealthResponse)
async def tradingview_session_health(
    response: Response,
    tradingview: TradingViewClient = Depends(get_tradingview_client),
    notifier: ChatOpsNotifier = Depends(get_notifier),
) -> SessionHealthResponse:
    """
    Probe the TradingView session credential.

    A rejected credential answers 503 and alerts the operators; a missing
    credential or a failed probe answers 500.
    """
    if not tradingview.session_id:
        response.status_code = 500
        return SessionHealthResponse(
            healthy=False, error="TRADINGVIEW_SESSION_ID not configured"
        )

    try:
        status_code = await tradingview.check_session()
    except TradingViewError as e:
        logger.error("tradingview_session_probe_failed", error=e.message)
        response.status_code = 500
        return SessionHealthResponse(healthy=False, error="Failed to check session")

    if status_code != 200:
        await notifier.notify_session_expired()
        response.status_code = 503
        return SessionHealthResponse(
            healthy=False,
            error="TradingView session expired. Please refresh TRADINGVIEW_SESSION_ID.",
            status=status_code,
        )

    return SessionHealthResponse(healthy=True, message="TradingView session is valid")
