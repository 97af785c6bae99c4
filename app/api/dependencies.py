"""
FastAPI Dependencies - Authentication and service wiring.

NO DICTIONARIES - All dependencies return typed objects.

Long-lived objects (the shared httpx client and the plan cache) are created in
the application lifespan and read from app.state; everything else is built
per request.
"""

import hmac
import time
from dataclasses import dataclass

import httpx
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token
from structlog import get_logger

from app.config import settings
from app.exceptions import CustomerNotFoundError
from app.models.domain import CustomerRecord
from app.services.event_ingestion import BillingEventProcessor
from app.services.notifications import ChatOpsNotifier
from app.services.payment_provider import BillingProvider
from app.services.plans import PlanCache, PlanResolver
from app.services.provisioning import ProvisioningService
from app.services.session_refresh import GitHubDispatchTrigger, SessionRefreshTrigger
from app.services.stripe_provider import StripeProvider
from app.services.tradingview import TradingViewClient

logger = get_logger(__name__)

# ============================================================================
# User Authentication (Google ID tokens)
# ============================================================================


@dataclass
class UserIdentity:
    """Authenticated user identity from a Google ID token."""

    external_id: str  # Google user ID (sub)
    email: str
    name: str | None = None


# Bearer token scheme
bearer_scheme = HTTPBearer(auto_error=False)

# Cache for verified Google ID tokens: token -> (user_id, email, name, expiry_timestamp)
_google_token_cache: dict[str, tuple[str, str, str | None, float]] = {}
_MAX_CACHE_SIZE = 10000


def _cleanup_google_token_cache() -> None:
    """Remove expired entries from the cache."""
    if len(_google_token_cache) < _MAX_CACHE_SIZE:
        return

    now = time.time()
    expired = [k for k, (_, _, _, exp) in _google_token_cache.items() if exp < now]
    for k in expired:
        del _google_token_cache[k]


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_user_from_google_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> UserIdentity:
    """
    FastAPI dependency to validate a Google ID token from the Authorization header.

    Accepts: Authorization: Bearer {google_id_token}
    Verifies: Token signature against Google's public keys and the audience
    against every configured client id (web and mobile clients differ).

    Returns:
        UserIdentity with the verified email

    Raises:
        HTTPException 401 if no token, an invalid token, or no email claim
    """
    if credentials is None:
        raise _unauthorized("Authorization header required")

    token = credentials.credentials

    # Check cache first (avoids network call to Google)
    cached = _google_token_cache.get(token)
    if cached is not None:
        user_id, email, name, expiry = cached
        if time.time() < expiry:
            return UserIdentity(external_id=user_id, email=email, name=name)
        del _google_token_cache[token]

    valid_client_ids = settings.valid_google_client_ids
    if not valid_client_ids:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server misconfiguration: no Google client IDs configured",
        )

    last_error: str | None = None
    for client_id in valid_client_ids:
        try:
            idinfo = id_token.verify_oauth2_token(  # type: ignore[no-untyped-call]
                token,
                google_requests.Request(),  # type: ignore[no-untyped-call]
                client_id,
            )
        except ValueError as e:
            last_error = str(e)
            # Audience mismatch: the token may belong to another configured client
            if "audience" in last_error.lower():
                continue
            break

        user_id = idinfo.get("sub")
        email = idinfo.get("email")
        if not user_id or not email:
            raise _unauthorized("Invalid token: missing user ID or email")

        # Cache the verified token until it expires (with 60s buffer)
        expiry = idinfo.get("exp", time.time() + 3600) - 60
        _cleanup_google_token_cache()
        _google_token_cache[token] = (user_id, email, idinfo.get("name"), expiry)

        return UserIdentity(external_id=user_id, email=email, name=idinfo.get("name"))

    logger.warning("google_token_validation_failed", error=last_error)

    error_msg = last_error or "Token validation failed"
    if "audience" in error_msg.lower():
        raise _unauthorized("Invalid token audience. Token not issued for this application.")
    raise _unauthorized(f"Invalid Google ID token: {error_msg}")


# ============================================================================
# Operator Authentication (shared bearer secret)
# ============================================================================


async def require_operator(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> None:
    """
    FastAPI dependency for operator-only endpoints.

    The bearer token must equal OPERATOR_SECRET. An unset secret disables
    the operator endpoints entirely.
    """
    expected = settings.operator_secret
    if not expected or credentials is None:
        raise _unauthorized("Unauthorized")
    if not hmac.compare_digest(credentials.credentials.encode(), expected.encode()):
        logger.warning("operator_auth_failed")
        raise _unauthorized("Unauthorized")


# ============================================================================
# Services
# ============================================================================


def get_http_client(request: Request) -> httpx.AsyncClient:
    """Shared outbound HTTP client created at startup."""
    return request.app.state.http_client  # type: ignore[no-any-return]


def get_plan_cache(request: Request) -> PlanCache:
    """Process-wide plan cache created at startup."""
    return request.app.state.plan_cache  # type: ignore[no-any-return]


def get_billing_provider() -> BillingProvider:
    return StripeProvider(
        api_key=settings.stripe_api_key,
        webhook_secret=settings.stripe_webhook_secret,
    )


def get_tradingview_client(
    http_client: httpx.AsyncClient = Depends(get_http_client),
) -> TradingViewClient:
    return TradingViewClient(
        http_client=http_client,
        base_url=settings.tradingview_base_url,
        session_id=settings.tradingview_session_id,
        indicator_ids=settings.indicator_ids,
    )


def get_plan_resolver(
    billing: BillingProvider = Depends(get_billing_provider),
    cache: PlanCache = Depends(get_plan_cache),
) -> PlanResolver:
    return PlanResolver(
        billing=billing,
        price_ids=settings.plan_price_ids,
        cache=cache,
        default_months=settings.default_access_months,
    )


def get_refresh_trigger(
    http_client: httpx.AsyncClient = Depends(get_http_client),
) -> SessionRefreshTrigger:
    return GitHubDispatchTrigger(
        http_client=http_client,
        token=settings.github_token,
        repo=settings.github_repo,
        api_url=settings.github_api_url,
    )


def get_notifier(
    http_client: httpx.AsyncClient = Depends(get_http_client),
) -> ChatOpsNotifier:
    return ChatOpsNotifier(http_client=http_client, webhook_url=settings.notification_webhook_url)


def get_provisioning_service(
    billing: BillingProvider = Depends(get_billing_provider),
    tradingview: TradingViewClient = Depends(get_tradingview_client),
    plans: PlanResolver = Depends(get_plan_resolver),
    refresh_trigger: SessionRefreshTrigger = Depends(get_refresh_trigger),
) -> ProvisioningService:
    return ProvisioningService(
        billing=billing,
        tradingview=tradingview,
        plans=plans,
        refresh_trigger=refresh_trigger,
    )


def get_event_processor(
    billing: BillingProvider = Depends(get_billing_provider),
    plans: PlanResolver = Depends(get_plan_resolver),
    provisioning: ProvisioningService = Depends(get_provisioning_service),
) -> BillingEventProcessor:
    return BillingEventProcessor(billing=billing, plans=plans, provisioning=provisioning)


# ============================================================================
# Customer lookup for the authenticated user
# ============================================================================


async def get_current_customer(
    user: UserIdentity = Depends(get_user_from_google_token),
    billing: BillingProvider = Depends(get_billing_provider),
) -> CustomerRecord:
    """
    Billing customer for the signed-in user.

    Raises:
        CustomerNotFoundError: If no customer exists for the user's email
    """
    customer = await billing.find_customer_by_email(user.email)
    if customer is None:
        raise CustomerNotFoundError(user.email)
    return customer
