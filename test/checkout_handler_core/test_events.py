"""
FILE: test/checkout_handler_core/test_events.py
================================================
"""

from dataclasses import FrozenInstanceError
from datetime import datetime, timezone

import pytest

from checkout_handler.events import (
    CartChanged, CheckoutEvent, EventChannel, LockAcquired, LockExpired
)

T0 = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


# ============================================================================
# TEST: EventChannel
# ============================================================================

class TestEventChannel:
    """Test in-process publish/subscribe"""

    def setup_method(self):
        """Fresh channel for each test"""
        self.channel = EventChannel()

    def test_delivers_to_exact_type(self):
        """Subscriber receives events of its type"""
        seen = []
        self.channel.subscribe(LockAcquired, seen.append)

        event = LockAcquired(cart_id="cart-1", occurred_at=T0, lock_id="lock-1", session_id="s")
        delivered = self.channel.publish(event)

        assert delivered == 1
        assert seen == [event]

    def test_base_type_receives_everything(self):
        """CheckoutEvent subscribers see every subclass"""
        seen = []
        self.channel.subscribe(CheckoutEvent, seen.append)

        self.channel.publish(LockAcquired(cart_id="cart-1", occurred_at=T0))
        self.channel.publish(CartChanged(cart_id="cart-1", occurred_at=T0, change="line_added"))

        assert [type(event) for event in seen] == [LockAcquired, CartChanged]

    def test_other_types_not_delivered(self):
        """Subscriber does not see unrelated events"""
        seen = []
        self.channel.subscribe(LockExpired, seen.append)

        assert self.channel.publish(LockAcquired(cart_id="cart-1", occurred_at=T0)) == 0
        assert seen == []

    def test_failing_subscriber_isolated(self):
        """A raising subscriber does not stop the others"""
        seen = []

        def broken(event):
            raise RuntimeError("subscriber bug")

        self.channel.subscribe(CheckoutEvent, broken)
        self.channel.subscribe(CheckoutEvent, seen.append)

        delivered = self.channel.publish(LockExpired(cart_id="cart-1", occurred_at=T0))

        assert delivered == 1
        assert len(seen) == 1

    def test_unsubscribe(self):
        """Unsubscribed handler no longer receives events"""
        seen = []
        self.channel.subscribe(LockAcquired, seen.append)
        self.channel.unsubscribe(LockAcquired, seen.append)

        self.channel.publish(LockAcquired(cart_id="cart-1", occurred_at=T0))

        assert seen == []

    def test_unsubscribe_unknown_handler(self):
        """Unsubscribing a handler that was never added is a no-op"""
        self.channel.unsubscribe(LockAcquired, print)


# ============================================================================
# TEST: event types
# ============================================================================

class TestEventTypes:
    """Test event dataclasses"""

    def test_events_are_immutable(self):
        """Events are frozen"""
        event = LockAcquired(cart_id="cart-1", occurred_at=T0)
        with pytest.raises(FrozenInstanceError):
            event.cart_id = "cart-2"

    def test_cart_changed_default(self):
        """CartChanged has a generic default change"""
        event = CartChanged(cart_id="cart-1", occurred_at=T0)
        assert event.change == "updated"
        assert event.lock_id is None
