"""
Operational notifications to a chat-ops incoming webhook.

The payload carries the message as both `content` (Discord) and `text`
(Slack) so either kind of webhook URL works.
"""

import httpx
from structlog import get_logger

from app.models.domain import NotificationResult

logger = get_logger(__name__)

SESSION_EXPIRED_MESSAGE = (
    "TradingView session expired!\n\n"
    "The shared session credential was rejected. Please:\n"
    "1. Log in to TradingView with the vendor account\n"
    "2. Copy the sessionid cookie\n"
    "3. Update TRADINGVIEW_SESSION_ID and restart the service"
)


class ChatOpsNotifier:
    """Best-effort poster for operator alerts."""

    def __init__(self, http_client: httpx.AsyncClient, webhook_url: str) -> None:
        self.http_client = http_client
        self.webhook_url = webhook_url

    async def notify(self, message: str) -> NotificationResult:
        """Post a message. Never raises; an unset URL is a no-op."""
        if not self.webhook_url:
            logger.warning("notification_webhook_not_configured")
            return NotificationResult(sent=False, detail="Webhook URL not configured")

        try:
            response = await self.http_client.post(
                self.webhook_url, json={"content": message, "text": message}
            )
        except httpx.HTTPError as exc:
            logger.error("notification_send_failed", error=str(exc))
            return NotificationResult(sent=False, detail=f"Request failed: {exc}")

        if not response.is_success:
            logger.error("notification_rejected", status_code=response.status_code)
            return NotificationResult(
                sent=False, detail=f"Webhook rejected: {response.status_code}"
            )

        logger.info("notification_sent")
        return NotificationResult(sent=True, detail="Notification sent")

    async def notify_session_expired(self) -> NotificationResult:
        logger.error("tradingview_session_expired")
        return await self.notify(SESSION_EXPIRED_MESSAGE)
