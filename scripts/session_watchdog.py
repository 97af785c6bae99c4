#!/usr/bin/env python3
"""
TradingView Session Watchdog

Probes the shared TradingView session credential on an interval. When the
credential is rejected it alerts the operators and requests a session refresh
once per outage, so a broken session is noticed before the next renewal
fails.

Usage:
    python scripts/session_watchdog.py [--interval SECONDS] [--once]
"""

import argparse
import asyncio
import sys

import httpx
import structlog

from app.config import settings
from app.exceptions import TradingViewError
from app.observability.logging import setup_logging
from app.services.notifications import ChatOpsNotifier
from app.services.session_refresh import GitHubDispatchTrigger
from app.services.tradingview import TradingViewClient

logger = structlog.get_logger()

DEFAULT_INTERVAL_SECONDS = 300


class SessionWatchdog:
    """Tracks session health across checks so one outage alerts only once."""

    def __init__(
        self,
        tradingview: TradingViewClient,
        notifier: ChatOpsNotifier,
        refresh_trigger: GitHubDispatchTrigger,
    ) -> None:
        self.tradingview = tradingview
        self.notifier = notifier
        self.refresh_trigger = refresh_trigger
        self.alerted = False

    async def check(self) -> bool:
        """Run one probe. Returns True when the session is healthy."""
        try:
            status_code = await self.tradingview.check_session()
        except TradingViewError as e:
            logger.warning("watchdog_probe_failed", error=e.message)
            return False

        if status_code == 200:
            if self.alerted:
                logger.info("watchdog_session_recovered")
            self.alerted = False
            return True

        logger.error("watchdog_session_rejected", status_code=status_code)
        if not self.alerted:
            await self.notifier.notify_session_expired()
            result = await self.refresh_trigger.trigger()
            logger.info("watchdog_refresh_requested", triggered=result.triggered)
            self.alerted = True
        return False


async def run_loop(interval: float, once: bool) -> None:
    """Run the session check in a loop."""
    logger.info("session_watchdog_started", check_interval_seconds=interval)

    async with httpx.AsyncClient(timeout=settings.tradingview_timeout_seconds) as http_client:
        watchdog = SessionWatchdog(
            tradingview=TradingViewClient(
                http_client=http_client,
                base_url=settings.tradingview_base_url,
                session_id=settings.tradingview_session_id,
                indicator_ids=settings.indicator_ids,
            ),
            notifier=ChatOpsNotifier(http_client, settings.notification_webhook_url),
            refresh_trigger=GitHubDispatchTrigger(
                http_client=http_client,
                token=settings.github_token,
                repo=settings.github_repo,
                api_url=settings.github_api_url,
            ),
        )

        while True:
            await watchdog.check()
            if once:
                return
            await asyncio.sleep(interval)


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="TradingView session watchdog")
    parser.add_argument("--interval", type=float, default=DEFAULT_INTERVAL_SECONDS)
    parser.add_argument("--once", action="store_true", help="Run a single check and exit")
    args = parser.parse_args()

    setup_logging()
    if not settings.tradingview_session_id:
        logger.error("TRADINGVIEW_SESSION_ID not set in environment")
        sys.exit(1)

    try:
        asyncio.run(run_loop(args.interval, args.once))
    except KeyboardInterrupt:
        logger.info("session_watchdog_stopped")
        sys.exit(0)


if __name__ == "__main__":
    main()
