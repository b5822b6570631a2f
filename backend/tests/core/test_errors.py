"""Tests for domain exceptions and their HTTP mapping."""

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from perfwatch.core.errors import register_exception_handlers
from perfwatch.core.exceptions import (
    CollectorError,
    CollectorPermissionError,
    ConnectivityError,
    NotFoundError,
    PerfwatchError,
    SchemaVersionError,
    UnsupportedOnThisServerVersion,
    ValidationError,
)


class TestExceptionHierarchy:
    def test_collector_errors_share_a_base(self):
        for exc in (ConnectivityError, CollectorPermissionError, UnsupportedOnThisServerVersion):
            assert issubclass(exc, CollectorError)
            assert issubclass(exc, PerfwatchError)

    def test_reason_is_kept(self):
        assert ConnectivityError("network name is no longer available").reason == "network name is no longer available"

    def test_schema_version_error_carries_versions(self):
        error = SchemaVersionError(on_disk=5, supported=2)
        assert (error.on_disk, error.supported) == (5, 2)
        assert "5" in error.reason and "2" in error.reason


class TestErrorHandlers:
    @pytest.fixture
    def app(self) -> FastAPI:
        app = FastAPI()
        register_exception_handlers(app)

        @app.get("/invalid")
        async def invalid():
            raise ValidationError("interval must be at least 1 minute")

        @app.get("/missing")
        async def missing():
            raise NotFoundError("Server 9 not found")

        @app.get("/schema")
        async def schema():
            raise SchemaVersionError(3, 2)

        return app

    @pytest.mark.asyncio
    async def test_maps_to_status_codes(self, app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            invalid = await client.get("/invalid")
            missing = await client.get("/missing")
            schema = await client.get("/schema")

        assert invalid.status_code == 422
        assert invalid.json()["error"]["code"] == "VALIDATION_ERROR"
        assert invalid.json()["error"]["message"] == "interval must be at least 1 minute"
        assert missing.status_code == 404
        assert missing.json()["error"]["code"] == "NOT_FOUND"
        assert schema.status_code == 503
        assert schema.json()["error"]["details"] == {"on_disk": 3, "supported": 2}
