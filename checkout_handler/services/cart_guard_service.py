"""
Cart mutation guard.

While a cart has an active checkout lock with a live lease, every
mutation of that cart (lines, discount code, addresses) is rejected
with CartLockedError, whichever session asks. The holder must cancel
the checkout first; cancellation is just fail(reason="cancelled").

The check runs inside the mutation's own transaction, after the cart
row has been read FOR UPDATE, so on PostgreSQL it serializes with the
row lock taken by checkout start.
"""
import functools
from typing import Callable, Optional, TypeVar

from sqlalchemy.orm import Session

from checkout_handler.exceptions import CartLockedError
from checkout_handler.events import CartChanged, LockExpired
from checkout_handler.schemas import CANCELLED_REASON, LockSnapshot
from checkout_handler.services import lock_store
from checkout_handler.services.lock_service import LockManager
from checkout_handler.utils.datetime_utils import ensure_timezone_aware, format_iso_datetime
from checkout_handler.utils.logging import get_context_logger
from checkout_handler.utils.transaction import transaction_scope

R = TypeVar('R')


class CartGuard:
    """Blocks cart mutations during checkout."""

    def __init__(self, lock_manager: LockManager):
        self.lock_manager = lock_manager

    def ensure_cart_mutable(
        self,
        db: Session,
        cart_id: str,
        trace_id: Optional[str] = None
    ) -> Optional[LockSnapshot]:
        """
        Raise CartLockedError if the cart has a live checkout lock.

        Must be called inside the caller's transaction. A lock whose lease
        has lapsed is expired in that same transaction and returned so the
        caller can announce it after commit.
        """
        lock = lock_store.get_active_lock_for_cart(db, cart_id)
        if lock is None:
            return None

        now = self.lock_manager.now()
        expires_at = ensure_timezone_aware(lock.expires_at)
        if expires_at > now:
            get_context_logger("cart_guard", trace_id=trace_id, cart_id=cart_id).warning(
                "cart:mutation_rejected",
                extra={"lock_id": lock.id, "phase": lock.phase}
            )
            raise CartLockedError(
                "Cart cannot be modified while checkout is in progress",
                cart_id=cart_id,
                lock_id=lock.id,
                expires_at=format_iso_datetime(expires_at)
            )

        return self.lock_manager.expire_in_transaction(db, lock.id, now)

    def announce_expired(self, expired: Optional[LockSnapshot]) -> None:
        if expired is None:
            return
        self.lock_manager.events.publish(LockExpired(
            cart_id=expired.cart_id,
            occurred_at=self.lock_manager.now(),
            lock_id=expired.id
        ))

    def is_cart_locked(self, db: Session, cart_id: str, trace_id: Optional[str] = None) -> bool:
        with transaction_scope(db, trace_id=trace_id, operation="is_cart_locked"):
            lock = lock_store.get_active_lock_for_cart(db, cart_id)
            return lock is not None and ensure_timezone_aware(lock.expires_at) > self.lock_manager.now()

    def cancel_checkout(
        self,
        db: Session,
        lock_id: str,
        session_id: str,
        trace_id: Optional[str] = None
    ) -> LockSnapshot:
        """Release the cart now instead of waiting for the lease to lapse."""
        return self.lock_manager.fail(
            db, lock_id, CANCELLED_REASON, session_id=session_id, trace_id=trace_id
        )


def guard_cart_mutation(change: str) -> Callable[[Callable[..., R]], Callable[..., R]]:
    """
    Decorator for cart provider methods of the form
    `method(self, db, cart, *args, **kwargs)`.

    The wrapper takes `cart_id` instead of `cart`, opens the transaction,
    loads the cart FOR UPDATE, runs the guard, calls the method and
    publishes a CartChanged event after commit. The owning object must
    expose `guard`, `events`, `now()`, `_load_cart()` and `_snapshot()`.

    Example:
        @guard_cart_mutation("add_line")
        def add_line(self, db, cart, purchasable_id, quantity):
            ...
    """
    def decorator(func: Callable[..., R]) -> Callable[..., R]:
        @functools.wraps(func)
        def wrapper(self, db: Session, cart_id: str, *args, trace_id: Optional[str] = None, **kwargs):
            with transaction_scope(db, trace_id=trace_id, operation=f"cart_{change}"):
                cart = self._load_cart(db, cart_id, for_update=True)
                expired = self.guard.ensure_cart_mutable(db, cart_id, trace_id=trace_id)
                func(self, db, cart, *args, **kwargs)
                cart.updated_at = self.now()
                db.flush()
                db.refresh(cart)
                snapshot = self._snapshot(cart)

            self.guard.announce_expired(expired)
            self.events.publish(CartChanged(
                cart_id=cart_id,
                occurred_at=self.now(),
                change=change
            ))
            get_context_logger("cart", trace_id=trace_id, cart_id=cart_id).info(
                f"cart:{change}",
                extra={"fingerprint": snapshot.fingerprint}
            )
            return snapshot
        return wrapper
    return decorator
