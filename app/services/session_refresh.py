"""
Session Refresh Trigger - out-of-band renewal of the TradingView credential.

The credential is refreshed by an external workflow; this service only asks
for it to run. Failures are reported in the result and never raised.
"""

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Protocol

import httpx
from structlog import get_logger

from app.models.domain import RefreshTriggerResult

logger = get_logger(__name__)

DISPATCH_EVENT_TYPE = "refresh-session"


class SessionRefreshTrigger(Protocol):
    """Fire-and-forget request to renew the shared session credential."""

    async def trigger(self, customer_id: str | None = None) -> RefreshTriggerResult:
        """Request a refresh. Never raises."""
        ...


class GitHubDispatchTrigger:
    """
    Session refresh via a GitHub `repository_dispatch` event.

    The workflow listening for `refresh-session` logs in and rotates the
    credential. GitHub answers 204 when the event is accepted.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        token: str,
        repo: str,
        api_url: str = "https://api.github.com",
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.http_client = http_client
        self.token = token
        self.repo = repo
        self.api_url = api_url.rstrip("/")
        self.clock = clock

    async def trigger(self, customer_id: str | None = None) -> RefreshTriggerResult:
        if not self.token or not self.repo:
            logger.error("session_refresh_not_configured")
            return RefreshTriggerResult(triggered=False, detail="GitHub token or repo not configured")

        try:
            response = await self.http_client.post(
                f"{self.api_url}/repos/{self.repo}/dispatches",
                headers={
                    "Accept": "application/vnd.github.v3+json",
                    "Authorization": f"Bearer {self.token}",
                },
                json={
                    "event_type": DISPATCH_EVENT_TYPE,
                    "client_payload": {
                        "customer_id": customer_id or "",
                        "triggered_at": self.clock().isoformat(),
                    },
                },
            )
        except httpx.HTTPError as exc:
            logger.error("session_refresh_request_failed", customer_id=customer_id, error=str(exc))
            return RefreshTriggerResult(triggered=False, detail=f"Request failed: {exc}")

        if response.status_code == 204:
            logger.info("session_refresh_triggered", customer_id=customer_id)
            return RefreshTriggerResult(triggered=True, detail="Dispatch accepted")

        logger.error(
            "session_refresh_rejected",
            customer_id=customer_id,
            status_code=response.status_code,
            body=response.text[:200],
        )
        return RefreshTriggerResult(
            triggered=False, detail=f"Dispatch rejected: {response.status_code}"
        )
