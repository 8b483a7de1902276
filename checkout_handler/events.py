"""
Typed checkout events and a process-local publish/subscribe channel.

The lock manager publishes after a transition has committed; nothing
it does depends on who is listening. Subscribers (status cache,
metrics, downstream notifiers) must tolerate duplicates and must not
raise into the publisher.
"""
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Type

from checkout_handler.utils.logging import get_context_logger

logger = get_context_logger("events")


@dataclass(frozen=True)
class CheckoutEvent:
    cart_id: str
    occurred_at: datetime
    lock_id: Optional[str] = None


@dataclass(frozen=True)
class LockAcquired(CheckoutEvent):
    session_id: Optional[str] = None


@dataclass(frozen=True)
class LockRenewed(CheckoutEvent):
    phase: Optional[str] = None


@dataclass(frozen=True)
class LockCompleted(CheckoutEvent):
    order_id: Optional[str] = None


@dataclass(frozen=True)
class LockFailed(CheckoutEvent):
    reason: Optional[str] = None


@dataclass(frozen=True)
class LockExpired(CheckoutEvent):
    pass


@dataclass(frozen=True)
class LockResumed(CheckoutEvent):
    previous_lock_id: Optional[str] = None


@dataclass(frozen=True)
class CartChanged(CheckoutEvent):
    """Published by the cart provider after a committed mutation."""
    change: str = "updated"
    details: Dict = field(default_factory=dict, compare=False)


Handler = Callable[[CheckoutEvent], None]


class EventChannel:
    """Synchronous in-process fan-out keyed by event type."""

    def __init__(self):
        self._subscribers: Dict[Type[CheckoutEvent], List[Handler]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event_type: Type[CheckoutEvent], handler: Handler) -> None:
        with self._lock:
            self._subscribers[event_type].append(handler)

    def unsubscribe(self, event_type: Type[CheckoutEvent], handler: Handler) -> None:
        with self._lock:
            if handler in self._subscribers[event_type]:
                self._subscribers[event_type].remove(handler)

    def publish(self, event: CheckoutEvent) -> int:
        """
        Deliver `event` to handlers registered for its type or any base type.

        Returns the number of handlers that ran without error.
        """
        with self._lock:
            handlers = []
            for event_type in type(event).__mro__:
                handlers.extend(self._subscribers.get(event_type, ()))

        delivered = 0
        for handler in handlers:
            try:
                handler(event)
                delivered += 1
            except Exception:
                logger.exception(
                    "event:subscriber_failed",
                    extra={"event_type": type(event).__name__, "cart_id": event.cart_id}
                )
        return delivered
