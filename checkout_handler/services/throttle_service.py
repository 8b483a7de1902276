"""
Throttling of checkout-initiation attempts.

Two tiers, both counted in the store so every API worker sees the same
numbers:
- client: keyed by session id (or client IP when no session is known)
- cart: keyed by cart id

Every attempt increments both counters before anything else happens,
whether or not it would go on to win the lock. A counter whose window
has passed restarts at 1.
"""
import math
from datetime import timedelta
from typing import Any, Callable, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from db.models.checkout_throttle_counters import CheckoutThrottleCounterModel
from checkout_handler.config import CheckoutSettings
from checkout_handler.exceptions import DatabaseError, ThrottledError
from checkout_handler.services.lock_store import new_id
from checkout_handler.utils.datetime_utils import ensure_timezone_aware, get_current_datetime
from checkout_handler.utils.logging import get_context_logger
from checkout_handler.utils.transaction import transaction_scope, with_retry

SCOPE_CLIENT = "client"
SCOPE_CART = "cart"

# Attempts at the update-or-insert dance before giving up
MAX_COUNTER_ATTEMPTS = 3


class ThrottleGate:
    """Windowed per-client and per-cart attempt counters."""

    def __init__(
        self,
        settings: Optional[CheckoutSettings] = None,
        clock: Optional[Callable[[], Any]] = None
    ):
        self.settings = settings or CheckoutSettings.from_env()
        self.clock = clock or get_current_datetime

    def now(self):
        return ensure_timezone_aware(self.clock())

    def check(
        self,
        db: Session,
        client_identity: str,
        cart_id: str,
        trace_id: Optional[str] = None
    ) -> None:
        """
        Count one attempt against both tiers.

        Raises:
            ThrottledError: Either tier is over its limit; carries the
                number of seconds until that tier's window resets
        """
        tiers = (
            (SCOPE_CLIENT, client_identity, self.settings.client_attempt_limit,
             self.settings.client_window_seconds),
            (SCOPE_CART, cart_id, self.settings.cart_attempt_limit,
             self.settings.cart_window_seconds),
        )
        now = self.now()

        counted = []
        for scope, subject, limit, window_seconds in tiers:
            count, window_start = self._hit(
                db, scope, subject, window_seconds, now, trace_id=trace_id
            )
            counted.append((scope, subject, limit, window_seconds, count, window_start))

        for scope, subject, limit, window_seconds, count, window_start in counted:
            if count <= limit:
                continue
            reset_at = window_start + timedelta(seconds=window_seconds)
            retry_after = max(1, math.ceil((reset_at - now).total_seconds()))
            get_context_logger("throttle", trace_id=trace_id, cart_id=cart_id).warning(
                "checkout:throttled",
                extra={"scope": scope, "count": count, "limit": limit, "retry_after": retry_after}
            )
            raise ThrottledError(
                f"Too many checkout attempts for this {scope}",
                scope=scope,
                retry_after=retry_after,
                limit=limit
            )

    @with_retry("throttle_hit")
    def _hit(
        self,
        db: Session,
        scope: str,
        subject: str,
        window_seconds: int,
        now,
        trace_id: Optional[str] = None
    ) -> Tuple[int, Any]:
        """Increment one counter. Returns (count, window_start) after the increment."""
        window_floor = now - timedelta(seconds=window_seconds)
        model = CheckoutThrottleCounterModel

        for _ in range(MAX_COUNTER_ATTEMPTS):
            try:
                with transaction_scope(db, trace_id=trace_id, operation="throttle_hit"):
                    counter = db.query(model).filter(model.scope == scope, model.subject == subject)

                    updated = counter.filter(model.window_start > window_floor).update(
                        {model.count: model.count + 1, model.updated_at: now},
                        synchronize_session=False
                    )
                    if not updated:
                        updated = counter.filter(model.window_start <= window_floor).update(
                            {model.count: 1, model.window_start: now, model.updated_at: now},
                            synchronize_session=False
                        )
                    if not updated:
                        db.add(model(
                            id=new_id(),
                            scope=scope,
                            subject=subject,
                            window_start=now,
                            count=1,
                            updated_at=now,
                        ))
                        db.flush()

                    row = counter.populate_existing().one()
                    return row.count, ensure_timezone_aware(row.window_start)
            except IntegrityError:
                # Another request inserted the first counter row; count again
                continue

        raise DatabaseError(
            "Could not record checkout attempt",
            operation="throttle_hit",
            details={"scope": scope}
        )
