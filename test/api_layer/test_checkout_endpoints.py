# ============================================================================
# FILE: test/api_layer/test_checkout_endpoints.py
# Checkout lock endpoints
# ============================================================================

import pytest
from fastapi.testclient import TestClient

from api.app import create_app
from checkout_handler.exceptions import ErrorCode
from checkout_handler.pipeline import CheckoutPipeline, FunctionPhase, PhaseResult
from db.db import get_db

SESSION_A = "session-a"
SESSION_B = "session-b"
PIPELINE_KEY = "test-pipeline-key"


def start(client, cart_id, key="key-1", session_id=SESSION_A, **body):
    headers = {"X-Session-ID": session_id}
    if key is not None:
        headers["Idempotency-Key"] = key
    return client.post("/checkout/start", json={"cart_id": cart_id, **body}, headers=headers)


def started_lock(client, cart_id, key="key-1"):
    response = start(client, cart_id, key)
    assert response.status_code == 201
    return response.json()["data"]["lock"]["id"]


def build_client(settings, clock, session_factory, pipeline=None):
    app = create_app(settings=settings, clock=clock, pipeline=pipeline, session_factory=session_factory)

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app)


# ============================================================================
# POST /checkout/start
# ============================================================================

class TestStartEndpoint:
    """Test checkout initiation."""

    def test_start_creates_lock(self, client, api_cart):
        """✓ First submission → 201 with an active lock"""
        response = start(client, api_cart)

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        assert body["data"]["status"] == "created"
        assert body["data"]["replayed"] is False
        assert body["data"]["outcome"] is None
        lock = body["data"]["lock"]
        assert lock["state"] == "active"
        assert lock["is_active"] is True
        assert lock["session_id"] == SESSION_A
        assert response.headers["Idempotency-Key"] == "key-1"
        assert "X-Trace-ID" in response.headers

    def test_replay_returns_same_lock(self, client, api_cart):
        """✓ Same key → 200 processing with the same lock"""
        first = start(client, api_cart).json()["data"]["lock"]["id"]
        response = start(client, api_cart)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "processing"
        assert data["replayed"] is True
        assert data["lock"]["id"] == first

    def test_missing_session(self, client, api_cart):
        """✓ No X-Session-ID → 401"""
        response = client.post(
            "/checkout/start", json={"cart_id": api_cart}, headers={"Idempotency-Key": "key-1"}
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == ErrorCode.UNAUTHORIZED.value

    def test_missing_idempotency_key(self, client, api_cart):
        """✓ No Idempotency-Key → 422"""
        response = start(client, api_cart, key=None)

        assert response.status_code == 422
        assert response.json()["error"]["type"] == "ValidationError"

    def test_bad_cart_id(self, client):
        """✓ Invalid cart id → 422 request validation"""
        response = start(client, "bad cart id")

        assert response.status_code == 422
        assert response.json()["error"]["details"]["errors"]

    def test_unknown_cart(self, client):
        """✓ Unknown cart → 404"""
        assert start(client, "missing-cart").status_code == 404

    def test_conflict(self, client, api_cart):
        """✓ Second key while live → 409 naming the holder"""
        lock_id = started_lock(client, api_cart)
        response = start(client, api_cart, key="key-2", session_id=SESSION_B)

        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == ErrorCode.LOCK_CONFLICT.value
        assert error["details"]["lock_id"] == lock_id
        assert "expires_at" in error["details"]

    def test_throttled(self, settings, clock, session_factory):
        """✓ Over the cart limit → 429 with Retry-After"""
        tight = settings.with_overrides(cart_attempt_limit=1)
        with build_client(tight, clock, session_factory) as client:
            cart_id = client.post("/carts", headers={"X-Session-ID": SESSION_A}).json()["data"]["id"]
            client.post(f"/carts/{cart_id}/lines", json={"purchasable_id": "sku-100", "quantity": 1})

            assert start(client, cart_id).status_code == 201
            response = start(client, cart_id, key="key-2")

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "60"
        assert response.json()["error"]["details"]["scope"] == "cart"


# ============================================================================
# GET /checkout/status and GET /checkout/{lock_id}
# ============================================================================

class TestReadEndpoints:
    """Test status, lock and diagnostics reads."""

    def test_status_without_lock(self, client, api_cart):
        """✓ Fresh cart → unlocked"""
        data = client.get("/checkout/status", params={"cart_id": api_cart}).json()["data"]

        assert data["locked"] is False
        assert data["can_checkout"] is True
        assert data["lock_id"] is None

    def test_status_while_locked(self, client, api_cart):
        """✓ Live lock → locked, cannot check out"""
        lock_id = started_lock(client, api_cart)
        data = client.get("/checkout/status", params={"cart_id": api_cart}).json()["data"]

        assert data["locked"] is True
        assert data["can_checkout"] is False
        assert data["lock_id"] == lock_id
        assert data["state_name"] == "In progress"

    def test_status_reports_lapsed_lease(self, client, api_cart, clock):
        """✓ Lapsed but unswept lock reads as expired"""
        started_lock(client, api_cart)
        clock.advance(minutes=16)

        data = client.get("/checkout/status", params={"cart_id": api_cart}).json()["data"]

        assert data["locked"] is False
        assert data["is_expired"] is True
        assert data["state"] == "expired"
        assert data["can_resume"] is True

    def test_status_requires_cart_id(self, client):
        """✓ Missing cart_id → 422"""
        assert client.get("/checkout/status").status_code == 422

    def test_get_lock(self, client, api_cart):
        """✓ Lock resource with its chain"""
        lock_id = started_lock(client, api_cart)
        data = client.get(f"/checkout/{lock_id}").json()["data"]

        assert data["lock"]["id"] == lock_id
        assert [link["id"] for link in data["chain"]] == [lock_id]

    def test_get_unknown_lock(self, client):
        """✓ Unknown lock → 404"""
        response = client.get("/checkout/missing-lock")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == ErrorCode.LOCK_NOT_FOUND.value

    def test_diagnostics(self, client, api_cart):
        """✓ System diagnostics count the active lock"""
        started_lock(client, api_cart)
        data = client.get("/checkout/diagnostics").json()["data"]

        assert data["locks"]["active"] == 1
        assert data["sweeper"]["cycles"] == 0


# ============================================================================
# Lease and terminal transitions
# ============================================================================

class TestLockTransitions:
    """Test heartbeat, complete, fail, cancel and resume."""

    def test_heartbeat(self, client, api_cart, clock):
        """✓ Holder heartbeat extends the lease"""
        lock_id = started_lock(client, api_cart)
        clock.advance(minutes=10)

        response = client.post(
            f"/checkout/{lock_id}/heartbeat", json={"phase": "payment"}, headers={"X-Session-ID": SESSION_A}
        )

        assert response.status_code == 200
        lock = response.json()["data"]
        assert lock["phase"] == "payment"
        assert lock["expires_at"].startswith("2026-03-02T12:25:00")

    def test_heartbeat_without_body(self, client, api_cart):
        """✓ Body is optional"""
        lock_id = started_lock(client, api_cart)
        response = client.post(f"/checkout/{lock_id}/heartbeat", headers={"X-Session-ID": SESSION_A})
        assert response.status_code == 200

    def test_heartbeat_other_session(self, client, api_cart):
        """✓ Other session → 403"""
        lock_id = started_lock(client, api_cart)
        response = client.post(f"/checkout/{lock_id}/heartbeat", headers={"X-Session-ID": SESSION_B})

        assert response.status_code == 403
        assert response.json()["error"]["code"] == ErrorCode.SESSION_MISMATCH.value

    def test_heartbeat_after_lapse(self, client, api_cart, clock):
        """✓ Lapsed lease → 410 and the lock is expired"""
        lock_id = started_lock(client, api_cart)
        clock.advance(minutes=16)

        response = client.post(f"/checkout/{lock_id}/heartbeat", headers={"X-Session-ID": SESSION_A})

        assert response.status_code == 410
        assert response.json()["error"]["details"]["state"] == "expired"

    def test_complete_requires_pipeline_key(self, client, api_cart):
        """✓ No X-Pipeline-Key → 401"""
        lock_id = started_lock(client, api_cart)
        response = client.post(f"/checkout/{lock_id}/complete", json={"order_id": "order-1"})
        assert response.status_code == 401

        response = client.post(
            f"/checkout/{lock_id}/complete", json={"order_id": "order-1"},
            headers={"X-Pipeline-Key": "wrong"}
        )
        assert response.status_code == 401

    def test_complete_then_replay(self, client, api_cart):
        """✓ Completion is replayed to the original key"""
        lock_id = started_lock(client, api_cart)

        response = client.post(
            f"/checkout/{lock_id}/complete",
            json={"order_id": "order-1", "result": {"total": "10.00"}},
            headers={"X-Pipeline-Key": PIPELINE_KEY}
        )

        assert response.status_code == 200
        lock = response.json()["data"]
        assert lock["state"] == "completed"
        assert lock["metadata"]["order_id"] == "order-1"
        assert lock["metadata"]["total"] == "10.00"

        replay = start(client, api_cart)
        assert replay.status_code == 200
        data = replay.json()["data"]
        assert data["status"] == "completed"
        assert data["outcome"]["order_id"] == "order-1"

    def test_complete_twice(self, client, api_cart):
        """✓ Completing a terminal lock → 410"""
        lock_id = started_lock(client, api_cart)
        headers = {"X-Pipeline-Key": PIPELINE_KEY}
        client.post(f"/checkout/{lock_id}/complete", json={"order_id": "order-1"}, headers=headers)

        response = client.post(f"/checkout/{lock_id}/complete", json={"order_id": "order-2"}, headers=headers)

        assert response.status_code == 410

    def test_fail(self, client, api_cart):
        """✓ Holder can fail the checkout"""
        lock_id = started_lock(client, api_cart)

        response = client.post(
            f"/checkout/{lock_id}/fail",
            json={"reason": "payment_declined", "details": {"gateway": "test"}},
            headers={"X-Session-ID": SESSION_A}
        )

        assert response.status_code == 200
        lock = response.json()["data"]
        assert lock["state"] == "failed"
        assert lock["failure_reason"] == "payment_declined"
        assert lock["can_resume"] is True

    def test_cancel_releases_cart(self, client, api_cart):
        """✓ Cancel → Cancelled and the cart is free"""
        lock_id = started_lock(client, api_cart)

        response = client.post(f"/checkout/{lock_id}/cancel", headers={"X-Session-ID": SESSION_A})

        assert response.status_code == 200
        assert response.json()["data"]["state_name"] == "Cancelled"
        status = client.get("/checkout/status", params={"cart_id": api_cart}).json()["data"]
        assert status["locked"] is False
        assert start(client, api_cart, key="key-2").status_code == 201

    def test_resume(self, client, api_cart, clock):
        """✓ Resume a failed lock → 201, replay → 200"""
        lock_id = started_lock(client, api_cart)
        client.post(f"/checkout/{lock_id}/fail", json={"reason": "payment_declined"},
                    headers={"X-Session-ID": SESSION_A})
        clock.advance(minutes=1)
        headers = {"X-Session-ID": SESSION_A, "Idempotency-Key": "key-2"}

        response = client.post(f"/checkout/{lock_id}/resume", headers=headers)

        assert response.status_code == 201
        resumed = response.json()["data"]
        assert resumed["previous_lock_id"] == lock_id
        assert resumed["state"] == "active"

        replay = client.post(f"/checkout/{lock_id}/resume", headers=headers)
        assert replay.status_code == 200
        assert replay.json()["data"]["id"] == resumed["id"]

        again = client.post(
            f"/checkout/{lock_id}/resume", headers={"X-Session-ID": SESSION_A, "Idempotency-Key": "key-3"}
        )
        assert again.status_code == 409

    def test_resume_active_lock(self, client, api_cart):
        """✓ Resuming a live lock → 409"""
        lock_id = started_lock(client, api_cart)
        response = client.post(f"/checkout/{lock_id}/resume", headers={"X-Session-ID": SESSION_A})
        assert response.status_code == 409


# ============================================================================
# POST /checkout/{lock_id}/process
# ============================================================================

class TestProcessEndpoint:
    """Test running the phase pipeline over HTTP."""

    def test_no_pipeline(self, client, api_cart):
        """✓ No configured pipeline → 503"""
        lock_id = started_lock(client, api_cart)
        response = client.post(f"/checkout/{lock_id}/process", headers={"X-Session-ID": SESSION_A})

        assert response.status_code == 503

    def test_process_completes(self, settings, clock, session_factory):
        """✓ Pipeline run completes the lock"""
        pipeline = CheckoutPipeline([
            FunctionPhase("payment", lambda ctx: PhaseResult.ok(authorization=ctx.payment_data["token"])),
            FunctionPhase("order_creation", lambda ctx: PhaseResult.ok(order_id="order-7")),
        ])
        with build_client(settings, clock, session_factory, pipeline=pipeline) as client:
            cart_id = client.post("/carts", headers={"X-Session-ID": SESSION_A}).json()["data"]["id"]
            client.post(f"/carts/{cart_id}/lines", json={"purchasable_id": "sku-100", "quantity": 1})
            lock_id = started_lock(client, cart_id)

            response = client.post(
                f"/checkout/{lock_id}/process",
                json={"payment_data": {"token": "tok-1"}},
                headers={"X-Session-ID": SESSION_A}
            )
            health = client.get("/healthz").json()

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "completed"
        assert data["order_id"] == "order-7"
        assert data["phases"]["payment"] == {"authorization": "tok-1"}
        assert data["lock"]["state"] == "completed"
        assert health["handler"]["pipeline_phases"] == ["payment", "order_creation"]

    def test_process_failure(self, settings, clock, session_factory):
        """✓ Failing phase → failed outcome, lock failed"""
        pipeline = CheckoutPipeline([
            FunctionPhase("payment", lambda ctx: PhaseResult.failed("card_declined")),
            FunctionPhase("order_creation", lambda ctx: PhaseResult.ok(order_id="order-7")),
        ])
        with build_client(settings, clock, session_factory, pipeline=pipeline) as client:
            cart_id = client.post("/carts", headers={"X-Session-ID": SESSION_A}).json()["data"]["id"]
            client.post(f"/carts/{cart_id}/lines", json={"purchasable_id": "sku-100", "quantity": 1})
            lock_id = started_lock(client, cart_id)

            response = client.post(f"/checkout/{lock_id}/process", headers={"X-Session-ID": SESSION_A})

        data = response.json()["data"]
        assert data["status"] == "failed"
        assert data["failure_reason"] == "payment: card_declined"
        assert data["lock"]["state"] == "failed"
