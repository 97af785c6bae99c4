"""
Tests for status and health routes.
"""

import asyncio
from datetime import UTC, datetime

import httpx
import pytest

from app.api.status_routes import (
    ProviderStatus,
    StatusLevel,
    calculate_overall_status,
    check_stripe,
    check_tradingview_session,
)
from app.exceptions import TradingViewError

NOW = datetime.now(UTC).isoformat()


def provider(level: StatusLevel) -> ProviderStatus:
    return ProviderStatus(status=level, latency_ms=10, last_check=NOW)


class TestCalculateOverallStatus:
    """Tests for calculate_overall_status function."""

    def test_all_operational(self):
        """All providers operational returns operational."""
        providers = {"a": provider(StatusLevel.OPERATIONAL), "b": provider(StatusLevel.OPERATIONAL)}
        assert calculate_overall_status(providers) == StatusLevel.OPERATIONAL

    def test_one_degraded(self):
        """One degraded provider returns degraded."""
        providers = {"a": provider(StatusLevel.OPERATIONAL), "b": provider(StatusLevel.DEGRADED)}
        assert calculate_overall_status(providers) == StatusLevel.DEGRADED

    def test_outage_takes_priority_over_degraded(self):
        """Outage takes priority over degraded."""
        providers = {"a": provider(StatusLevel.OUTAGE), "b": provider(StatusLevel.DEGRADED)}
        assert calculate_overall_status(providers) == StatusLevel.OUTAGE


class TestCheckTradingViewSession:
    """Tests for check_tradingview_session function."""

    @pytest.mark.asyncio
    async def test_operational(self, tradingview):
        """A 200 probe is operational."""
        tradingview.check_session.return_value = 200

        result = await check_tradingview_session(tradingview)

        assert result.status == StatusLevel.OPERATIONAL

    @pytest.mark.asyncio
    async def test_not_configured(self, tradingview):
        """A missing session id is degraded without probing."""
        tradingview.session_id = ""

        result = await check_tradingview_session(tradingview)

        assert result.status == StatusLevel.DEGRADED
        assert result.message == "Not configured"
        tradingview.check_session.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rejected(self, tradingview):
        """A rejected session is an outage."""
        tradingview.check_session.return_value = 401

        result = await check_tradingview_session(tradingview)

        assert result.status == StatusLevel.OUTAGE
        assert result.message == "Session rejected: 401"

    @pytest.mark.asyncio
    async def test_connection_failed(self, tradingview):
        """A failed probe is an outage."""
        tradingview.check_session.side_effect = TradingViewError("request failed")

        result = await check_tradingview_session(tradingview)

        assert result.status == StatusLevel.OUTAGE
        assert result.message == "Connection failed"

    @pytest.mark.asyncio
    async def test_timeout(self, tradingview, monkeypatch):
        """A probe that never answers is reported as a timeout."""
        monkeypatch.setattr("app.api.status_routes.CHECK_TIMEOUT", 0.01)

        async def hang():
            await asyncio.sleep(1)

        tradingview.check_session.side_effect = hang

        result = await check_tradingview_session(tradingview)

        assert result.status == StatusLevel.OUTAGE
        assert result.message == "Timeout"


class TestCheckStripe:
    """Tests for check_stripe function."""

    @pytest.mark.asyncio
    async def test_unauthorized_is_reachable(self):
        """401 without a key still means the API is up."""
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(401)))
        assert (await check_stripe(client)).status == StatusLevel.OPERATIONAL

    @pytest.mark.asyncio
    async def test_unexpected_status(self):
        """Other statuses are degraded."""
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(503)))

        result = await check_stripe(client)

        assert result.status == StatusLevel.DEGRADED
        assert result.message == "Unexpected status: 503"

    @pytest.mark.asyncio
    async def test_connection_error(self):
        """Network errors are an outage."""

        def handler(request):
            raise httpx.ConnectError("refused")

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        assert (await check_stripe(client)).status == StatusLevel.OUTAGE


class TestStatusEndpoint:
    """Tests for GET /v1/status."""

    def test_status(self, client, tradingview):
        """Both providers are reported."""
        tradingview.check_session.return_value = 200

        response = client.get("/v1/status")

        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "indicator-access"
        assert data["status"] == "operational"
        assert set(data["providers"]) == {"tradingview_session", "stripe"}

    def test_cached(self, client, tradingview):
        """A second call within the TTL is served from cache."""
        tradingview.check_session.return_value = 200

        client.get("/v1/status")
        client.get("/v1/status")

        assert tradingview.check_session.await_count == 1


class TestSessionHealthEndpoint:
    """Tests for GET /v1/health/tradingview-session."""

    def test_healthy(self, client, tradingview, notifier):
        """A valid session answers 200."""
        tradingview.check_session.return_value = 200

        response = client.get("/v1/health/tradingview-session")

        assert response.status_code == 200
        assert response.json()["healthy"] is True
        assert response.json()["message"] == "TradingView session is valid"
        notifier.notify_session_expired.assert_not_awaited()

    def test_expired_alerts(self, client, tradingview, notifier):
        """A rejected session answers 503 and alerts operators."""
        tradingview.check_session.return_value = 403

        response = client.get("/v1/health/tradingview-session")

        assert response.status_code == 503
        data = response.json()
        assert data["healthy"] is False
        assert data["status"] == 403
        notifier.notify_session_expired.assert_awaited_once()

    def test_not_configured(self, client, tradingview):
        """A missing session id answers 500."""
        tradingview.session_id = ""

        response = client.get("/v1/health/tradingview-session")

        assert response.status_code == 500
        assert response.json()["error"] == "TRADINGVIEW_SESSION_ID not configured"

    def test_probe_failure(self, client, tradingview, notifier):
        """A failed probe answers 500 without alerting."""
        tradingview.check_session.side_effect = TradingViewError("request failed")

        response = client.get("/v1/health/tradingview-session")

        assert response.status_code == 500
        assert response.json()["error"] == "Failed to check session"
        notifier.notify_session_expired.assert_not_awaited()
