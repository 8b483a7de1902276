# ============================================================================
# FILE: test/api_layer/test_exception_handling.py
# Centralized exception handling
# ============================================================================

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel

from api.error_codes import ERROR_CODE_MAP, get_http_status
from api.exceptions import register_exception_handlers
from api.middleware import request_logging_middleware
from checkout_handler.exceptions import (
    CartLockedError, DatabaseError, ErrorCode, FingerprintMismatchError, LockConflictError,
    LockExpiredError, LockNotFoundError, ServiceUnavailableError, SessionMismatchError,
    ThrottledError, UnauthorizedError, ValidationError
)


class Payload(BaseModel):
    count: int


RAISERS = {
    "validation": lambda: ValidationError("bad value", field="cart_id", value="x y"),
    "not_found": lambda: LockNotFoundError("lock-1"),
    "conflict": lambda: LockConflictError("held", cart_id="cart-1", lock_id="lock-1"),
    "cart_locked": lambda: CartLockedError("locked", cart_id="cart-1", lock_id="lock-1"),
    "fingerprint": lambda: FingerprintMismatchError("changed", lock_id="lock-1"),
    "expired": lambda: LockExpiredError("gone", lock_id="lock-1", state="expired"),
    "session": lambda: SessionMismatchError("other session"),
    "unauthorized": lambda: UnauthorizedError("no session"),
    "throttled": lambda: ThrottledError("slow down", scope="cart", retry_after=42, limit=5),
    "unavailable": lambda: ServiceUnavailableError("no pipeline"),
    "database": lambda: DatabaseError("write failed", details={"original_error": "secret"}),
    "crash": lambda: RuntimeError("boom"),
}


@pytest.fixture
def error_client():
    app = FastAPI()
    app.middleware("http")(request_logging_middleware)
    register_exception_handlers(app)

    @app.get("/raise/{kind}")
    def raise_error(kind: str):
        raise RAISERS[kind]()

    @app.post("/payload")
    def payload(body: Payload):
        return {"count": body.count}

    with TestClient(app, raise_server_exceptions=False) as client:
        yield client


class TestExceptionHandling:
    """Test centralized exception handling."""

    @pytest.mark.parametrize("kind,status_code", [
        ("validation", 422),
        ("not_found", 404),
        ("conflict", 409),
        ("cart_locked", 409),
        ("fingerprint", 409),
        ("expired", 410),
        ("session", 403),
        ("unauthorized", 401),
        ("throttled", 429),
        ("unavailable", 503),
        ("database", 500),
    ])
    def test_status_codes(self, error_client, kind, status_code):
        """✓ Each checkout error maps to its HTTP status"""
        response = error_client.get(f"/raise/{kind}")

        assert response.status_code == status_code
        body = response.json()
        assert body["success"] is False
        assert body["trace_id"] == response.headers["X-Trace-ID"]

    def test_error_envelope(self, error_client):
        """✓ Envelope carries code, message, type and details"""
        error = error_client.get("/raise/conflict").json()["error"]

        assert error["code"] == ErrorCode.LOCK_CONFLICT.value
        assert error["message"] == "held"
        assert error["type"] == "LockConflictError"
        assert error["details"]["lock_id"] == "lock-1"

    def test_original_error_not_leaked(self, error_client):
        """✓ original_error is stripped from details"""
        error = error_client.get("/raise/database").json()["error"]
        assert "original_error" not in error.get("details", {})

    def test_throttled_retry_after(self, error_client):
        """✓ 429 carries Retry-After"""
        response = error_client.get("/raise/throttled")

        assert response.headers["Retry-After"] == "42"
        assert response.json()["error"]["details"]["retry_after"] == 42

    def test_request_validation(self, error_client):
        """✓ Body validation uses the same envelope"""
        response = error_client.post("/payload", json={"count": "many"})

        assert response.status_code == 422
        error = response.json()["error"]
        assert error["code"] == ErrorCode.VALIDATION_ERROR.value
        assert error["type"] == "ValidationError"
        assert error["details"]["errors"]

    def test_unexpected_exception(self, error_client):
        """✓ Unknown errors → 500 without internals"""
        response = error_client.get("/raise/crash")

        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == ErrorCode.INTERNAL_ERROR.value
        assert "boom" not in error["message"]


class TestErrorCodeMap:
    """Test the error code table."""

    def test_every_code_mapped(self):
        """✓ No ErrorCode falls through to the default"""
        assert set(ERROR_CODE_MAP) == set(ErrorCode)

    def test_lookup(self):
        """✓ get_http_status returns status and message"""
        assert get_http_status(ErrorCode.LOCK_EXPIRED) == (410, "Checkout lock is no longer active")
