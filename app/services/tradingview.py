"""
TradingView Access Client - invite-only indicator grants.

Wraps the cookie-authenticated TradingView endpoints (username hint, list
users, add, modify expiration, remove). There is no retry or session refresh
here: a rejected session surfaces as a failed result or SessionError and is
classified by the caller.
"""

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import httpx
from dateutil.parser import isoparse
from structlog import get_logger

from app.exceptions import TradingViewError, classify_tradingview_error
from app.models.api import GrantStatus
from app.models.domain import Duration, GrantState, IndicatorResult, UsernameValidation

logger = get_logger(__name__)

USERNAME_HINT_PATH = "/username_hint/"
LIST_USERS_PATH = "/pine_perm/list_users/"
ADD_PATH = "/pine_perm/add/"
MODIFY_PATH = "/pine_perm/modify_user_expiration/"
REMOVE_PATH = "/pine_perm/remove/"
SESSION_PROBE_PATH = "/tvcoins/details/"


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def format_expiration(ts: datetime) -> str:
    """Format an expiration the way TradingView expects (UTC, millisecond precision)."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def parse_expiration(value: str) -> datetime:
    """Parse an ISO 8601 expiration; naive values are taken as UTC."""
    ts = isoparse(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts


class TradingViewClient:
    """
    TradingView access client.

    One shared session credential (the `sessionid` cookie) authenticates
    every call. Indicators are processed sequentially and independently.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        base_url: str,
        session_id: str,
        indicator_ids: list[str],
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        """
        Initialize TradingView client.

        Args:
            http_client: Shared async HTTP client
            base_url: TradingView origin, e.g. https://www.tradingview.com
            session_id: Value of the `sessionid` cookie
            indicator_ids: Pine ids granted to every subscriber
            clock: Source of "now" for new grants
        """
        self.http_client = http_client
        self.base_url = base_url.rstrip("/")
        self.session_id = session_id
        self.indicator_ids = list(indicator_ids)
        self.clock = clock

    def _headers(self) -> dict[str, str]:
        return {
            "Cookie": f"sessionid={self.session_id}",
            "Origin": self.base_url,
            "Referer": f"{self.base_url}/",
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        data: dict[str, str] | None = None,
    ) -> httpx.Response:
        try:
            return await self.http_client.request(
                method,
                f"{self.base_url}{path}",
                params=params,
                data=data,
                headers=self._headers(),
            )
        except httpx.HTTPError as exc:
            raise TradingViewError(f"TradingView request failed: {exc}") from exc

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        body = response.text.strip()[:200]
        return f"TradingView API error: {response.status_code} {body}".strip()

    def _raise_for_status(self, response: httpx.Response) -> None:
        if response.is_success:
            return
        raise classify_tradingview_error(self._error_message(response), response.status_code)

    def _require_indicators(self) -> list[str]:
        if not self.indicator_ids:
            raise TradingViewError("No indicator ids configured")
        return self.indicator_ids

    async def validate_username(self, username: str) -> UsernameValidation:
        """
        Look a username up via the username hint endpoint.

        Matching is case-insensitive; the canonical spelling is whatever
        TradingView returns.

        Raises:
            TradingViewError: On a non-2xx response
        """
        response = await self._request("GET", USERNAME_HINT_PATH, params={"s": username})
        self._raise_for_status(response)

        wanted = username.casefold()
        for candidate in response.json() or []:
            name = candidate.get("username") if isinstance(candidate, dict) else candidate
            if isinstance(name, str) and name.casefold() == wanted:
                logger.info("tradingview_username_validated", username=name)
                return UsernameValidation(valid=True, canonical_username=name)

        logger.info("tradingview_username_not_found", username=username)
        return UsernameValidation(valid=False, canonical_username="")

    async def get_grant(self, indicator_id: str, username: str) -> GrantState:
        """
        Fetch the current grant for one indicator.

        Raises:
            TradingViewError: On a non-2xx response
        """
        response = await self._request(
            "POST",
            LIST_USERS_PATH,
            params={"limit": 10, "order_by": "-created"},
            data={"pine_id": indicator_id, "username": username},
        )
        self._raise_for_status(response)

        wanted = username.casefold()
        for entry in (response.json() or {}).get("results", []):
            if str(entry.get("username", "")).casefold() != wanted:
                continue
            expiration = entry.get("expiration")
            if not expiration:
                return GrantState(has_access=True, no_expiration=True)
            return GrantState(
                has_access=True,
                no_expiration=False,
                current_expiration=parse_expiration(expiration),
            )

        return GrantState(has_access=False, no_expiration=False)

    async def grant_access(self, username: str, duration: Duration | str) -> list[IndicatorResult]:
        """
        Grant or extend access on every configured indicator.

        Expiration moves forward from the current expiration when the user
        already has access, otherwise from now. Lifetime grants are left
        alone. A failure on one indicator does not stop the others.

        Raises:
            TradingViewError: If no indicator ids are configured
        """
        if isinstance(duration, str):
            duration = Duration.parse(duration)
        indicator_ids = self._require_indicators()

        results = []
        for indicator_id in indicator_ids:
            results.append(await self._grant_one(indicator_id, username, duration))
        return results

    async def _grant_one(
        self, indicator_id: str, username: str, duration: Duration
    ) -> IndicatorResult:
        try:
            state = await self.get_grant(indicator_id, username)
        except TradingViewError as exc:
            logger.warning(
                "tradingview_grant_lookup_failed",
                indicator_id=indicator_id,
                username=username,
                error=exc.message,
            )
            return IndicatorResult(
                indicator_id=indicator_id,
                username=username,
                status=GrantStatus.FAILURE,
                error=exc.message,
            )

        if state.has_access and state.no_expiration:
            logger.info(
                "tradingview_grant_lifetime_skipped",
                indicator_id=indicator_id,
                username=username,
            )
            return IndicatorResult(
                indicator_id=indicator_id,
                username=username,
                status=GrantStatus.NOT_APPLICABLE,
                has_access=True,
                no_expiration=True,
            )

        if state.has_access and state.current_expiration is not None:
            start = state.current_expiration
        else:
            start = self.clock()
        new_expiration = duration.apply(start)
        path = MODIFY_PATH if state.has_access else ADD_PATH

        try:
            response = await self._request(
                "POST",
                path,
                data={
                    "pine_id": indicator_id,
                    "username_recip": username,
                    "expiration": format_expiration(new_expiration),
                },
            )
        except TradingViewError as exc:
            error: str | None = exc.message
            succeeded = False
        else:
            succeeded = response.is_success
            error = None if succeeded else self._error_message(response)

        log = logger.info if succeeded else logger.warning
        log(
            "tradingview_grant_succeeded" if succeeded else "tradingview_grant_failed",
            indicator_id=indicator_id,
            username=username,
            extended=state.has_access,
            duration=str(duration),
            expiration=format_expiration(new_expiration),
            error=error,
        )

        return IndicatorResult(
            indicator_id=indicator_id,
            username=username,
            status=GrantStatus.SUCCESS if succeeded else GrantStatus.FAILURE,
            has_access=state.has_access,
            no_expiration=False,
            current_expiration=state.current_expiration,
            expiration=new_expiration,
            error=error,
        )

    async def revoke_access(self, username: str) -> list[IndicatorResult]:
        """
        Remove the grant on every configured indicator, each independently.

        Raises:
            TradingViewError: If no indicator ids are configured
        """
        results = []
        for indicator_id in self._require_indicators():
            try:
                response = await self._request(
                    "POST",
                    REMOVE_PATH,
                    data={"pine_id": indicator_id, "username_recip": username},
                )
            except TradingViewError as exc:
                error: str | None = exc.message
                succeeded = False
            else:
                succeeded = response.is_success
                error = None if succeeded else self._error_message(response)

            logger.info(
                "tradingview_revoke_completed",
                indicator_id=indicator_id,
                username=username,
                succeeded=succeeded,
                error=error,
            )
            results.append(
                IndicatorResult(
                    indicator_id=indicator_id,
                    username=username,
                    status=GrantStatus.SUCCESS if succeeded else GrantStatus.FAILURE,
                    has_access=not succeeded,
                    error=error,
                )
            )
        return results

    async def check_session(self) -> int:
        """
        Probe the session credential against a lightweight logged-in page.

        Returns:
            HTTP status code (200 means the session is valid)

        Raises:
            TradingViewError: If the request could not be made
        """
        response = await self._request("GET", SESSION_PROBE_PATH)
        return response.status_code
