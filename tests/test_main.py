"""
Tests for Main Application setup.

Covers the lifespan, the domain exception handler and the operational
endpoints.
"""

import json

import pytest
from fastapi.testclient import TestClient
from starlette.requests import Request

from app.exceptions import (
    CustomerNotFoundError,
    InvalidSignatureError,
    PaymentProviderError,
    SessionError,
    UnauthorizedError,
    ValidationError,
)
from app.main import access_error_handler
from app.services.plans import PlanCache


def make_request(path: str = "/v1/test") -> Request:
    return Request(
        {"type": "http", "method": "POST", "path": path, "headers": [], "query_string": b""}
    )


class TestAccessErrorHandler:
    """Tests for domain exception to HTTP status mapping."""

    @pytest.mark.parametrize(
        ("exc", "status_code", "detail"),
        [
            (UnauthorizedError(), 401, "Unauthorized"),
            (InvalidSignatureError("Invalid signature"), 400, "Invalid signature"),
            (ValidationError("Already on this plan"), 400, "Already on this plan"),
            (CustomerNotFoundError("cus_1"), 404, None),
            (PaymentProviderError("down"), 502, "Payment provider error: down"),
            (SessionError("TradingView API error: 403"), 502, None),
        ],
    )
    @pytest.mark.asyncio
    async def test_mapping(self, exc, status_code, detail):
        """Each exception family maps to its status and exposes its message."""
        response = await access_error_handler(make_request(), exc)

        assert response.status_code == status_code
        body = json.loads(response.body)
        assert body["detail"] == (detail if detail is not None else exc.message)


class TestApplication:
    """Tests for application wiring."""

    def test_root(self, client):
        """Root reports service name and version."""
        data = client.get("/").json()
        assert data["status"] == "running"
        assert data["service"] == "Indicator Access API"

    def test_metrics(self, client):
        """Prometheus metrics are exposed."""
        client.get("/")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "access_http_requests_total" in response.text

    def test_unhandled_error_is_generic_500(self, client, billing):
        """Unexpected exceptions answer a generic 500."""
        billing.find_customer_by_email.side_effect = RuntimeError("kaboom")

        response = client.post("/v1/access/refresh")

        assert response.status_code == 500
        assert response.json() == {"detail": "Internal server error"}

    def test_lifespan_creates_shared_objects(self, app):
        """Startup creates the shared HTTP client and the plan cache."""
        with TestClient(app) as test_client:
            test_client.get("/")
            assert isinstance(app.state.plan_cache, PlanCache)
            http_client = app.state.http_client
        assert http_client.is_closed
