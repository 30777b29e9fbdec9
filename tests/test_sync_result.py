"""Tests for sync results and error classification."""

import os
import pytest
import httpx

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from syncbridge.services.lock_service import LockTimeoutError
from syncbridge.services.odoo_client import OdooAuthError, OdooError, OdooRPCError, OdooServerError
from syncbridge.services.sync_result import (
    ConfigurationError,
    ErrorType,
    SyncResult,
    classify_exception,
)


class TestSyncResult:
    """Test result constructors."""

    def test_success(self):
        result = SyncResult.success(42)
        assert result.succeeded is True
        assert result.entity_id == 42
        assert result.error_type is None
        assert result.is_retryable is False

    def test_failure_defaults_to_transient(self):
        result = SyncResult.failure("boom")
        assert result.succeeded is False
        assert result.error_type == ErrorType.TRANSIENT
        assert result.is_retryable is True

    def test_permanent_and_config_are_not_retryable(self):
        assert SyncResult.failure("bad", ErrorType.PERMANENT).is_retryable is False
        assert SyncResult.failure("bad", ErrorType.CONFIG).is_retryable is False


class TestClassifyException:
    """Test the error taxonomy."""

    @pytest.mark.parametrize("exc", [
        httpx.ConnectError("connection refused"),
        httpx.ReadTimeout("read timed out"),
        LockTimeoutError("Lock 'push:shop:product:1' is held by another worker"),
        OdooServerError("Server error HTTP 503 on /jsonrpc", code=503),
        OdooServerError("Server error HTTP 429 on /jsonrpc", code=429),
        RuntimeError("something unexpected"),
    ])
    def test_transient(self, exc):
        assert classify_exception(exc) == ErrorType.TRANSIENT

    @pytest.mark.parametrize("exc", [
        OdooRPCError("Odoo RPC error: odoo.exceptions.ValidationError: Invalid email"),
        OdooRPCError("Odoo RPC error: odoo.exceptions.AccessError: Access Denied"),
        OdooRPCError("Odoo RPC error: odoo.exceptions.UserError: Missing required value"),
        OdooError("HTTP 404 on /jsonrpc", code=404),
        ValueError("bad payload"),
    ])
    def test_permanent(self, exc):
        assert classify_exception(exc) == ErrorType.PERMANENT

    def test_business_error_wins_over_server_status(self):
        exc = OdooServerError("Server error HTTP 500: ValidationError: name is required", code=500)
        assert classify_exception(exc) == ErrorType.PERMANENT

    def test_config_errors(self):
        assert classify_exception(OdooAuthError("Authentication failed")) == ErrorType.CONFIG
        assert classify_exception(ConfigurationError("no model")) == ErrorType.CONFIG
