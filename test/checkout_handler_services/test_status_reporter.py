"""
FILE: test/checkout_handler_services/test_status_reporter.py
=============================================================
"""

from datetime import datetime, timedelta, timezone

import pytest

from checkout_handler.events import EventChannel, LockAcquired
from checkout_handler.handler import build_services
from checkout_handler.schemas import CANCELLED_REASON, LockSnapshot, LockState
from checkout_handler.services.status_service import (
    StatusCache, cart_status_view, derive_status, serialize_lock
)

T0 = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)
WINDOW = timedelta(minutes=30)
FINGERPRINT = "a" * 64
SESSION_A = "session-a"


def make_snapshot(**overrides) -> LockSnapshot:
    values = {
        "id": "lock-1",
        "cart_id": "cart-1",
        "session_id": SESSION_A,
        "state": LockState.ACTIVE,
        "locked_at": T0,
        "expires_at": T0 + timedelta(minutes=15),
        "lease_seconds": 900,
        "cart_fingerprint": FINGERPRINT,
    }
    values.update(overrides)
    return LockSnapshot(**values)


def failed_snapshot(reason="payment_declined", at=T0 + timedelta(minutes=5)) -> LockSnapshot:
    return make_snapshot(state=LockState.FAILED, failed_at=at, failure_reason=reason)


# ============================================================================
# TEST: derive_status
# ============================================================================

class TestDeriveStatus:
    """Test the pure status derivation"""

    def test_live_lock(self):
        """Active lock before its deadline"""
        status = derive_status(make_snapshot(), T0 + timedelta(minutes=1), WINDOW)

        assert status.is_active is True
        assert status.is_expired is False
        assert status.can_resume is False
        assert status.duration is None
        assert status.state == LockState.ACTIVE
        assert status.state_name == "In progress"

    def test_lapsed_lock_reads_as_expired(self):
        """Active lock past its deadline is expired without a write"""
        snapshot = make_snapshot()
        status = derive_status(snapshot, T0 + timedelta(minutes=16), WINDOW, current_fingerprint=FINGERPRINT)

        assert status.is_active is False
        assert status.is_expired is True
        assert status.state == LockState.EXPIRED
        assert status.state_name == "Expired"
        assert status.terminal_at == snapshot.expires_at
        assert status.duration == 900
        assert status.can_resume is True
        assert snapshot.state == LockState.ACTIVE

    def test_deadline_is_exclusive(self):
        """At the deadline the lock is no longer active"""
        status = derive_status(make_snapshot(), T0 + timedelta(minutes=15), WINDOW)
        assert status.is_active is False
        assert status.is_expired is True

    def test_completed(self):
        """Completed lock reports its duration"""
        snapshot = make_snapshot(state=LockState.COMPLETED, completed_at=T0 + timedelta(minutes=3))
        status = derive_status(snapshot, T0 + timedelta(minutes=4), WINDOW, current_fingerprint=FINGERPRINT)

        assert status.is_completed is True
        assert status.can_resume is False
        assert status.duration == 180
        assert status.state_name == "Completed"

    def test_failed_resumable_in_window(self):
        """Failed lock with unchanged cart can be resumed"""
        status = derive_status(
            failed_snapshot(), T0 + timedelta(minutes=20), WINDOW, current_fingerprint=FINGERPRINT
        )
        assert status.is_failed is True
        assert status.can_resume is True
        assert status.state_name == "Failed"

    def test_failed_outside_window(self):
        """Window counts from the failure time"""
        status = derive_status(
            failed_snapshot(), T0 + timedelta(minutes=35), WINDOW, current_fingerprint=FINGERPRINT
        )
        assert status.can_resume is False

    def test_changed_cart_not_resumable(self):
        """Different fingerprint blocks resume"""
        status = derive_status(
            failed_snapshot(), T0 + timedelta(minutes=6), WINDOW, current_fingerprint="b" * 64
        )
        assert status.can_resume is False

    def test_unknown_fingerprint_not_resumable(self):
        """Missing current fingerprint blocks resume"""
        status = derive_status(failed_snapshot(), T0 + timedelta(minutes=6), WINDOW)
        assert status.can_resume is False

    def test_already_resumed(self):
        """A lock with a successor is not resumable again"""
        status = derive_status(
            failed_snapshot(), T0 + timedelta(minutes=6), WINDOW,
            current_fingerprint=FINGERPRINT, resumed=True
        )
        assert status.can_resume is False

    def test_cancelled_name(self):
        """Cancellation gets its own state name"""
        status = derive_status(failed_snapshot(reason=CANCELLED_REASON), T0 + timedelta(minutes=6), WINDOW)
        assert status.state_name == "Cancelled"
        assert status.state == LockState.FAILED


# ============================================================================
# TEST: serialization
# ============================================================================

class TestSerialization:
    """Test lock resource and cart status payloads"""

    def test_lock_resource_fields(self):
        """Lock resource exposes every documented field"""
        snapshot = make_snapshot()
        resource = serialize_lock(snapshot, derive_status(snapshot, T0, WINDOW))

        for key in (
            "id", "cart_id", "session_id", "user_id", "state", "state_name", "phase",
            "locked_at", "expires_at", "completed_at", "failed_at", "is_active",
            "is_completed", "is_failed", "is_expired", "can_resume", "duration",
            "failure_reason", "metadata", "created_at", "updated_at",
        ):
            assert key in resource
        assert resource["expires_at"] == "2026-03-02T12:15:00+00:00"

    def test_cart_without_lock(self):
        """Cart with no lock can be checked out"""
        view = cart_status_view("cart-1", None, None)

        assert view["locked"] is False
        assert view["can_checkout"] is True
        assert view["message"] == "No checkout in progress"

    def test_cart_with_failed_lock(self):
        """Failed lock message mentions the reason and resume"""
        snapshot = failed_snapshot()
        status = derive_status(snapshot, T0 + timedelta(minutes=6), WINDOW, current_fingerprint=FINGERPRINT)
        view = cart_status_view("cart-1", snapshot, status)

        assert view["locked"] is False
        assert view["lock_id"] == "lock-1"
        assert view["message"] == "Checkout failed: payment_declined; it can be resumed"


# ============================================================================
# TEST: StatusCache
# ============================================================================

class TestStatusCache:
    """Test the per-process status cache"""

    def test_disabled_with_zero_ttl(self):
        """TTL 0 stores nothing"""
        cache = StatusCache(0)
        cache.put("cart-1", {"locked": True})
        assert cache.get("cart-1") is None
        assert len(cache) == 0

    def test_entry_expires(self):
        """Entries live for ttl seconds"""
        now = [T0]
        cache = StatusCache(5, clock=lambda: now[0])
        cache.put("cart-1", {"locked": True})

        assert cache.get("cart-1") == {"locked": True}
        now[0] += timedelta(seconds=5)
        assert cache.get("cart-1") is None

    def test_entry_capped_by_deadline(self):
        """valid_until shortens an entry's life below the ttl"""
        now = [T0]
        cache = StatusCache(60, clock=lambda: now[0])
        cache.put("cart-1", {"locked": True}, valid_until=T0 + timedelta(seconds=10))

        now[0] += timedelta(seconds=9)
        assert cache.get("cart-1") == {"locked": True}
        now[0] += timedelta(seconds=1)
        assert cache.get("cart-1") is None

    def test_past_deadline_not_stored(self):
        """A view already stale is not cached"""
        cache = StatusCache(60, clock=lambda: T0)
        cache.put("cart-1", {"locked": True}, valid_until=T0)
        assert len(cache) == 0

    def test_event_invalidates_cart(self):
        """Any checkout event drops the cart's entry"""
        events = EventChannel()
        cache = StatusCache(60)
        cache.attach(events)
        cache.put("cart-1", {"locked": False})
        cache.put("cart-2", {"locked": False})

        events.publish(LockAcquired(cart_id="cart-1", occurred_at=T0, lock_id="lock-1"))

        assert cache.get("cart-1") is None
        assert cache.get("cart-2") == {"locked": False}


# ============================================================================
# TEST: StatusReporter
# ============================================================================

class TestStatusReporter:
    """Test status read through the store"""

    def _start(self, services, db, cart):
        return services.lock_manager.acquire(
            db, cart_id=cart.id, session_id=SESSION_A,
            idempotency_key="key-1", cart_fingerprint=cart.fingerprint
        ).lock

    def test_cart_status_lifecycle(self, services, db_session, cart):
        """Status follows the lock from start to failure"""
        assert services.status.cart_status(db_session, cart.id)["locked"] is False

        lock = self._start(services, db_session, cart)
        view = services.status.cart_status(db_session, cart.id)
        assert view["locked"] is True
        assert view["can_checkout"] is False
        assert view["lock_id"] == lock.id
        assert view["message"] == "Checkout in progress"

        services.lock_manager.fail(db_session, lock.id, "payment_declined")
        view = services.status.cart_status(db_session, cart.id)
        assert view["is_failed"] is True
        assert view["can_resume"] is True

    def test_lapsed_lock_not_written(self, services, db_session, cart, clock):
        """Reading status of a lapsed lock leaves it stored as active"""
        lock = self._start(services, db_session, cart)
        clock.advance(minutes=16)

        view = services.status.cart_status(db_session, cart.id)

        assert view["state"] == "expired"
        assert view["message"] == "Checkout session expired; it can be resumed"
        assert services.lock_manager.get_lock(db_session, lock.id).state == LockState.ACTIVE

    def test_resumed_lock_not_resumable(self, services, db_session, cart, clock):
        """Resource of a resumed lock reports can_resume false"""
        lock = self._start(services, db_session, cart)
        services.lock_manager.fail(db_session, lock.id, "payment_declined")
        services.lock_manager.resume(
            db_session, lock.id, current_fingerprint=cart.fingerprint, session_id=SESSION_A
        )

        resource = services.status.lock_resource(db_session, lock.id)
        assert resource["is_failed"] is True
        assert resource["can_resume"] is False

    def test_cached_status_invalidated_by_lock_event(self, settings, clock, session_factory, db_session):
        """Cached view is dropped when a lock is taken"""
        services = build_services(
            settings=settings.with_overrides(status_cache_ttl_seconds=60),
            clock=clock,
            session_factory=session_factory
        )
        created = services.carts.create_cart(db_session, session_id=SESSION_A)
        cart = services.carts.add_line(db_session, created.id, "sku-100", 1)

        assert services.status.cart_status(db_session, cart.id)["locked"] is False
        assert len(services.status_cache) == 1

        self._start(services, db_session, cart)

        assert services.status.cart_status(db_session, cart.id)["locked"] is True

    def test_cached_status_follows_lapsing_lease(self, settings, clock, session_factory, db_session):
        """A cached locked view is not served after the lease runs out"""
        services = build_services(
            settings=settings.with_overrides(status_cache_ttl_seconds=5),
            clock=clock,
            session_factory=session_factory
        )
        created = services.carts.create_cart(db_session, session_id=SESSION_A)
        cart = services.carts.add_line(db_session, created.id, "sku-100", 1)
        self._start(services, db_session, cart)

        assert services.status.cart_status(db_session, cart.id)["locked"] is True

        clock.advance(minutes=16)
        view = services.status.cart_status(db_session, cart.id)

        assert view["locked"] is False
        assert view["can_checkout"] is True
        assert view["is_expired"] is True

    def test_cached_status_follows_resume_window(self, settings, clock, session_factory, db_session):
        """can_resume flips once the window closes even while cached"""
        services = build_services(
            settings=settings.with_overrides(status_cache_ttl_seconds=3600),
            clock=clock,
            session_factory=session_factory
        )
        created = services.carts.create_cart(db_session, session_id=SESSION_A)
        cart = services.carts.add_line(db_session, created.id, "sku-100", 1)
        lock = self._start(services, db_session, cart)
        services.lock_manager.fail(db_session, lock.id, "payment_declined")

        assert services.status.cart_status(db_session, cart.id)["can_resume"] is True

        clock.advance(minutes=30)
        assert services.status.cart_status(db_session, cart.id)["can_resume"] is False
