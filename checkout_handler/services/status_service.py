"""
Read-only checkout status.

`derive_status` is a pure function of a lock snapshot and an instant; it
never writes. A lock whose lease lapsed but which has not been swept yet
is reported as expired, exactly as the sweeper will eventually store it.
"""
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from checkout_handler.events import CheckoutEvent, EventChannel
from checkout_handler.exceptions import ResourceNotFoundError
from checkout_handler.schemas import CANCELLED_REASON, LockSnapshot, LockState, LockStatus
from checkout_handler.services.lock_service import LockManager
from checkout_handler.utils.datetime_utils import ensure_timezone_aware, format_iso_datetime, get_current_datetime
from checkout_handler.utils.logging import get_context_logger

STATE_NAMES = {
    LockState.ACTIVE: "In progress",
    LockState.COMPLETED: "Completed",
    LockState.FAILED: "Failed",
    LockState.EXPIRED: "Expired",
}


def derive_status(
    snapshot: LockSnapshot,
    now: datetime,
    resume_window: timedelta,
    current_fingerprint: Optional[str] = None,
    resumed: bool = False
) -> LockStatus:
    """
    Compute the status flags of a lock at `now`.

    can_resume needs a known current fingerprint equal to the one stored on
    the lock, and is false once the lock has been resumed.
    """
    now = ensure_timezone_aware(now)
    lapsed = snapshot.state == LockState.ACTIVE and snapshot.expires_at <= now

    is_active = snapshot.state == LockState.ACTIVE and not lapsed
    is_completed = snapshot.state == LockState.COMPLETED
    is_failed = snapshot.state == LockState.FAILED
    is_expired = snapshot.state == LockState.EXPIRED or lapsed

    effective = LockState.EXPIRED if lapsed else snapshot.state
    terminal_at = snapshot.expires_at if lapsed else snapshot.terminal_at

    can_resume = (
        (is_failed or is_expired)
        and terminal_at is not None
        and now - terminal_at < resume_window
        and current_fingerprint is not None
        and current_fingerprint == snapshot.cart_fingerprint
        and not resumed
    )

    duration = None
    if terminal_at is not None:
        duration = (terminal_at - snapshot.locked_at).total_seconds()

    state_name = STATE_NAMES[effective]
    if is_failed and snapshot.failure_reason == CANCELLED_REASON:
        state_name = "Cancelled"

    return LockStatus(
        is_active=is_active,
        is_completed=is_completed,
        is_failed=is_failed,
        is_expired=is_expired,
        can_resume=bool(can_resume),
        duration=duration,
        state=effective,
        state_name=state_name,
        terminal_at=terminal_at,
    )


def serialize_lock(snapshot: LockSnapshot, status: LockStatus) -> Dict[str, Any]:
    """Lock resource as returned by the API."""
    return {
        "id": snapshot.id,
        "cart_id": snapshot.cart_id,
        "session_id": snapshot.session_id,
        "user_id": snapshot.user_id,
        "state": status.state.value,
        "state_name": status.state_name,
        "phase": snapshot.phase,
        "locked_at": format_iso_datetime(snapshot.locked_at),
        "expires_at": format_iso_datetime(snapshot.expires_at),
        "completed_at": format_iso_datetime(snapshot.completed_at),
        "failed_at": format_iso_datetime(snapshot.failed_at),
        "is_active": status.is_active,
        "is_completed": status.is_completed,
        "is_failed": status.is_failed,
        "is_expired": status.is_expired,
        "can_resume": status.can_resume,
        "duration": status.duration,
        "failure_reason": snapshot.failure_reason,
        "metadata": snapshot.metadata,
        "previous_lock_id": snapshot.previous_lock_id,
        "created_at": format_iso_datetime(snapshot.created_at),
        "updated_at": format_iso_datetime(snapshot.updated_at),
    }


def _status_message(snapshot: LockSnapshot, status: LockStatus) -> str:
    if status.is_active:
        return "Checkout in progress"
    if status.is_completed:
        return "Checkout completed"
    if status.is_failed and snapshot.failure_reason == CANCELLED_REASON:
        message = "Checkout cancelled"
    elif status.is_failed:
        message = f"Checkout failed: {snapshot.failure_reason}"
    else:
        message = "Checkout session expired"
    if status.can_resume:
        message += "; it can be resumed"
    return message


def cart_status_view(
    cart_id: str,
    snapshot: Optional[LockSnapshot],
    status: Optional[LockStatus]
) -> Dict[str, Any]:
    """Status of a cart built from its latest lock (or no lock at all)."""
    if snapshot is None or status is None:
        return {
            "cart_id": cart_id,
            "locked": False,
            "can_checkout": True,
            "lock_id": None,
            "state": None,
            "state_name": None,
            "phase": None,
            "expires_at": None,
            "can_resume": False,
            "message": "No checkout in progress",
            "is_active": False,
            "is_completed": False,
            "is_failed": False,
            "is_expired": False,
        }

    return {
        "cart_id": cart_id,
        "locked": status.is_active,
        "can_checkout": not status.is_active,
        "lock_id": snapshot.id,
        "state": status.state.value,
        "state_name": status.state_name,
        "phase": snapshot.phase,
        "expires_at": format_iso_datetime(snapshot.expires_at),
        "can_resume": status.can_resume,
        "message": _status_message(snapshot, status),
        "is_active": status.is_active,
        "is_completed": status.is_completed,
        "is_failed": status.is_failed,
        "is_expired": status.is_expired,
    }


class StatusCache:
    """
    Per-process cache of cart status payloads.

    Entries live for `ttl_seconds` (0 disables caching) and are dropped
    as soon as any checkout event for the cart is published. A view that
    changes by itself at a known instant (a lease running out, a resume
    window closing) is never served past that instant. The clock must be
    the one the lock manager uses.
    """

    def __init__(self, ttl_seconds: int, clock: Optional[Callable[[], datetime]] = None):
        self.ttl_seconds = ttl_seconds
        self._clock = clock or get_current_datetime
        self._entries: Dict[str, Tuple[datetime, Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.ttl_seconds > 0

    def attach(self, events: EventChannel) -> None:
        events.subscribe(CheckoutEvent, self._on_event)

    def now(self) -> datetime:
        return ensure_timezone_aware(self._clock())

    def get(self, cart_id: str) -> Optional[Dict[str, Any]]:
        if not self.enabled:
            return None
        with self._lock:
            entry = self._entries.get(cart_id)
            if entry is None:
                return None
            valid_until, payload = entry
            if self.now() >= valid_until:
                del self._entries[cart_id]
                return None
            return payload

    def put(self, cart_id: str, payload: Dict[str, Any], valid_until: Optional[datetime] = None) -> None:
        if not self.enabled:
            return
        now = self.now()
        deadline = now + timedelta(seconds=self.ttl_seconds)
        if valid_until is not None:
            deadline = min(deadline, ensure_timezone_aware(valid_until))
        if deadline <= now:
            return
        with self._lock:
            self._entries[cart_id] = (deadline, payload)

    def invalidate(self, cart_id: str) -> None:
        with self._lock:
            self._entries.pop(cart_id, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _on_event(self, event: CheckoutEvent) -> None:
        self.invalidate(event.cart_id)


class StatusReporter:
    """Builds lock resources and cart status views."""

    def __init__(
        self,
        lock_manager: LockManager,
        fingerprint_of: Optional[Callable[[Session, str], str]] = None,
        cache: Optional[StatusCache] = None
    ):
        self.lock_manager = lock_manager
        self.fingerprint_of = fingerprint_of
        self.cache = cache

    def lock_status(
        self,
        db: Session,
        lock_id: str,
        trace_id: Optional[str] = None
    ) -> Tuple[LockSnapshot, LockStatus]:
        snapshot = self.lock_manager.get_lock(db, lock_id, trace_id=trace_id)
        return snapshot, self._derive(db, snapshot, trace_id)

    def lock_resource(self, db: Session, lock_id: str, trace_id: Optional[str] = None) -> Dict[str, Any]:
        snapshot, status = self.lock_status(db, lock_id, trace_id=trace_id)
        return serialize_lock(snapshot, status)

    def resource_for(self, db: Session, snapshot: LockSnapshot, trace_id: Optional[str] = None) -> Dict[str, Any]:
        """Serialize a snapshot the caller already holds."""
        return serialize_lock(snapshot, self._derive(db, snapshot, trace_id))

    def cart_status(self, db: Session, cart_id: str, trace_id: Optional[str] = None) -> Dict[str, Any]:
        if self.cache is not None:
            cached = self.cache.get(cart_id)
            if cached is not None:
                return cached

        snapshot = self.lock_manager.get_latest_lock_for_cart(db, cart_id, trace_id=trace_id)
        status = self._derive(db, snapshot, trace_id) if snapshot is not None else None
        view = cart_status_view(cart_id, snapshot, status)

        if self.cache is not None:
            self.cache.put(cart_id, view, valid_until=self._view_deadline(snapshot, status))
        return view

    def _view_deadline(self, snapshot: Optional[LockSnapshot], status: Optional[LockStatus]) -> Optional[datetime]:
        """Instant at which the view goes stale without any event being published."""
        if snapshot is None or status is None:
            return None
        if status.is_active:
            return snapshot.expires_at
        if status.can_resume and status.terminal_at is not None:
            return status.terminal_at + self.lock_manager.settings.resume_window
        return None

    def _derive(self, db: Session, snapshot: LockSnapshot, trace_id: Optional[str]) -> LockStatus:
        current_fingerprint = None
        resumed = False
        if snapshot.state != LockState.ACTIVE and snapshot.state != LockState.COMPLETED:
            resumed = self.lock_manager.has_successor(db, snapshot.id, trace_id=trace_id)
        if self.fingerprint_of is not None:
            try:
                current_fingerprint = self.fingerprint_of(db, snapshot.cart_id)
            except ResourceNotFoundError:
                get_context_logger("status", trace_id=trace_id, cart_id=snapshot.cart_id).debug(
                    "status:cart_missing"
                )
        return derive_status(
            snapshot,
            self.lock_manager.now(),
            self.lock_manager.settings.resume_window,
            current_fingerprint=current_fingerprint,
            resumed=resumed
        )
