"""
Checkout lock manager.

Owns the lock state machine:

    active -> completed | failed | expired      (terminal states never change)

Mutual exclusion comes from the store alone. Acquisition is an INSERT
guarded by the partial unique index on (cart_id) WHERE state = 'active';
every later transition is an UPDATE guarded by the expected state. No
in-process locks are taken, so any number of API workers can share one
database.

Identity (session id, user id, idempotency key) is always passed in
explicitly; nothing here looks up an ambient request or session.
"""
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from checkout_handler.config import CheckoutSettings
from checkout_handler.events import (
    CheckoutEvent, EventChannel, LockAcquired, LockCompleted, LockExpired,
    LockFailed, LockRenewed, LockResumed
)
from checkout_handler.exceptions import (
    FingerprintMismatchError, LockConflictError, LockExpiredError,
    LockNotFoundError, SessionMismatchError, ValidationError
)
from checkout_handler.schemas import (
    Acquisition, LEASE_EXPIRED_REASON, LockSnapshot, LockState
)
from checkout_handler.services import lock_store
from checkout_handler.utils.datetime_utils import (
    ensure_timezone_aware, format_iso_datetime, get_current_datetime
)
from checkout_handler.utils.logging import get_context_logger
from checkout_handler.utils.transaction import transaction_scope, with_retry
from checkout_handler.utils.validation import (
    MAX_PHASE_LENGTH, MAX_REASON_LENGTH, validate_and_raise,
    validate_idempotency_key, validate_identifier, validate_metadata_field_size
)

# One retry after clearing a lapsed holder
ACQUIRE_ATTEMPTS = 2

# Keys that describe a finished attempt and must not leak into a resumed one
_TERMINAL_METADATA_KEYS = ("order_id", "failure", "result")


class LockManager:
    """Acquire, renew, complete, fail, resume and expire checkout locks."""

    def __init__(
        self,
        settings: Optional[CheckoutSettings] = None,
        clock: Optional[Callable[[], Any]] = None,
        events: Optional[EventChannel] = None,
        fingerprint_source: Optional[Callable[[Session, str], Optional[str]]] = None
    ):
        self.settings = settings or CheckoutSettings.from_env()
        self.clock = clock or get_current_datetime
        self.events = events or EventChannel()
        # Reads the cart fingerprint with the cart row locked, inside the
        # acquire transaction. None when carts live outside this store.
        self.fingerprint_source = fingerprint_source

    def now(self):
        return ensure_timezone_aware(self.clock())

    # ------------------------------------------------------------------
    # acquire
    # ------------------------------------------------------------------

    @with_retry("acquire")
    def acquire(
        self,
        db: Session,
        cart_id: str,
        session_id: str,
        idempotency_key: str,
        cart_fingerprint: str,
        user_id: Optional[str] = None,
        lease_minutes: Optional[int] = None,
        phase: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        trace_id: Optional[str] = None
    ) -> Acquisition:
        """
        Create the active lock for a cart, or replay the one this key made.

        The lock row and its idempotency record are inserted in one
        transaction. On a uniqueness violation the existing record (same
        key) is returned as a replay; otherwise the current holder is
        inspected and, if its lease has lapsed, expired so acquisition can
        be retried once.

        Returns:
            Acquisition with created=True for a new lock, False for a replay

        Raises:
            ValidationError: Malformed cart id, session id, key or metadata
            LockConflictError: Another live lock holds the cart
        """
        cart_id = validate_identifier("cart_id", cart_id)
        session_id = validate_identifier("session_id", session_id)
        idempotency_key = validate_idempotency_key(idempotency_key)
        cart_fingerprint = validate_and_raise("cart_fingerprint", cart_fingerprint, max_length=64)
        phase = self._validate_phase(phase)
        metadata = validate_metadata_field_size(metadata)
        lease_seconds = self._lease_seconds(lease_minutes)

        logger = get_context_logger(
            "lock_manager", trace_id=trace_id, cart_id=cart_id, session_id=session_id
        )

        for attempt in range(1, ACQUIRE_ATTEMPTS + 1):
            now = self.now()
            try:
                with transaction_scope(db, trace_id=trace_id, operation="acquire"):
                    self._verify_fingerprint(db, cart_id, cart_fingerprint)
                    lock = lock_store.insert_active_lock(
                        db,
                        cart_id=cart_id,
                        session_id=session_id,
                        user_id=user_id,
                        now=now,
                        lease_seconds=lease_seconds,
                        cart_fingerprint=cart_fingerprint,
                        phase=phase,
                        metadata=metadata,
                        idempotency_key=idempotency_key
                    )
                    lock_store.insert_idempotency_record(
                        db,
                        cart_id=cart_id,
                        idempotency_key=idempotency_key,
                        lock_id=lock.id,
                        now=now
                    )
                    snapshot = LockSnapshot.from_model(lock)
            except IntegrityError:
                replay = self._resolve_acquire_conflict(
                    db, cart_id, idempotency_key, now, trace_id, logger
                )
                if replay is not None:
                    return replay
                logger.info("checkout:acquire_retry", extra={"attempt": attempt})
                continue

            logger.info(
                "checkout:lock_acquired",
                extra={
                    "lock_id": snapshot.id,
                    "expires_at": format_iso_datetime(snapshot.expires_at),
                    "phase": snapshot.phase,
                }
            )
            self._publish(LockAcquired(
                cart_id=cart_id, occurred_at=now, lock_id=snapshot.id, session_id=session_id
            ))
            return Acquisition(lock=snapshot, created=True)

        logger.warning("checkout:lock_conflict", extra={"reason": "retry_exhausted"})
        raise LockConflictError("Cart is already being checked out", cart_id=cart_id)

    def _resolve_acquire_conflict(
        self,
        db: Session,
        cart_id: str,
        idempotency_key: str,
        now,
        trace_id: Optional[str],
        logger
    ) -> Optional[Acquisition]:
        """
        Work out why an acquire insert lost.

        Returns a replay Acquisition, None when the caller should retry,
        or raises LockConflictError.
        """
        expired = None
        with transaction_scope(db, trace_id=trace_id, operation="acquire_conflict"):
            record = lock_store.get_idempotency_record(db, cart_id, idempotency_key)
            if record is not None:
                mapped = lock_store.get_lock(db, record.lock_id)
                logger.info(
                    "checkout:idempotent_replay",
                    extra={"lock_id": mapped.id, "state": mapped.state}
                )
                return Acquisition(lock=LockSnapshot.from_model(mapped), created=False)

            holder = lock_store.get_active_lock_for_cart(db, cart_id)
            if holder is None:
                # Holder reached a terminal state between our insert and this read
                return None

            holder_expires_at = ensure_timezone_aware(holder.expires_at)
            if holder_expires_at > now:
                logger.warning(
                    "checkout:lock_conflict",
                    extra={"lock_id": holder.id, "holder_expires_at": format_iso_datetime(holder_expires_at)}
                )
                raise LockConflictError(
                    "Cart is already being checked out",
                    cart_id=cart_id,
                    lock_id=holder.id,
                    expires_at=format_iso_datetime(holder_expires_at)
                )

            expired = self.expire_in_transaction(db, holder.id, now)

        if expired is not None:
            logger.info("checkout:lock_expired", extra={"lock_id": expired.id, "via": "acquire"})
            self._publish(LockExpired(cart_id=cart_id, occurred_at=now, lock_id=expired.id))
        return None

    # ------------------------------------------------------------------
    # renew
    # ------------------------------------------------------------------

    @with_retry("renew")
    def renew(
        self,
        db: Session,
        lock_id: str,
        session_id: Optional[str] = None,
        phase: Optional[str] = None,
        trace_id: Optional[str] = None
    ) -> LockSnapshot:
        """
        Heartbeat: extend the lease to now + lease length, optionally
        recording the current phase.

        The deadline only moves forward. A lock whose lease has already
        lapsed cannot be renewed even if the sweeper has not run yet; it
        is expired on the spot.

        Raises:
            LockNotFoundError: Unknown lock id
            SessionMismatchError: Lock held by another session
            LockExpiredError: Lock is terminal or its lease has lapsed
        """
        phase = self._validate_phase(phase)
        now = self.now()

        snapshot = None
        with transaction_scope(db, trace_id=trace_id, operation="renew"):
            lock = self._load_owned(db, lock_id, session_id)
            new_expires_at = now + timedelta(seconds=lock.lease_seconds)
            if lock_store.renew_lock(db, lock_id, now, new_expires_at, phase=phase):
                snapshot = LockSnapshot.from_model(lock_store.get_lock(db, lock_id, fresh=True))

        if snapshot is None:
            current = self._settle(db, lock_id, now, trace_id)
            raise LockExpiredError(
                f"Checkout lock is {current.state.value} and can no longer be renewed",
                lock_id=lock_id,
                state=current.state.value
            )

        get_context_logger("lock_manager", trace_id=trace_id, lock_id=lock_id).debug(
            "checkout:lock_renewed",
            extra={"expires_at": format_iso_datetime(snapshot.expires_at), "phase": snapshot.phase}
        )
        self._publish(LockRenewed(
            cart_id=snapshot.cart_id, occurred_at=now, lock_id=lock_id, phase=snapshot.phase
        ))
        return snapshot

    # ------------------------------------------------------------------
    # terminal transitions
    # ------------------------------------------------------------------

    @with_retry("complete")
    def complete(
        self,
        db: Session,
        lock_id: str,
        result: Dict[str, Any],
        session_id: Optional[str] = None,
        trace_id: Optional[str] = None
    ) -> LockSnapshot:
        """
        Mark the checkout completed with the created order.

        `result` must carry the order id; it is merged into the lock
        metadata and cached on the idempotency record in the same
        transaction.

        Raises:
            ValidationError: result without an order_id
            LockExpiredError: Lock is no longer active
        """
        if not isinstance(result, dict) or not result.get("order_id"):
            raise ValidationError(
                "Completion requires the created order_id",
                field="order_id"
            )
        result = validate_metadata_field_size(result, field_name="result")
        order_id = validate_identifier("order_id", str(result["order_id"]))
        now = self.now()

        snapshot = None
        with transaction_scope(db, trace_id=trace_id, operation="complete"):
            lock = self._load_owned(db, lock_id, session_id)
            metadata = dict(lock.metadata_json or {})
            metadata.update(result)
            metadata["order_id"] = order_id
            if lock_store.complete_lock(db, lock_id, now, metadata):
                lock_store.cache_outcome(db, lock_id, LockState.COMPLETED.value, now, order_id=order_id)
                snapshot = LockSnapshot.from_model(lock_store.get_lock(db, lock_id, fresh=True))

        if snapshot is None:
            current = self._settle(db, lock_id, now, trace_id)
            raise LockExpiredError(
                f"Checkout lock is {current.state.value} and cannot be completed",
                lock_id=lock_id,
                state=current.state.value
            )

        get_context_logger("lock_manager", trace_id=trace_id, lock_id=lock_id, cart_id=snapshot.cart_id).info(
            "checkout:completed",
            extra={
                "order_id": order_id,
                "duration_seconds": (now - snapshot.locked_at).total_seconds(),
            }
        )
        self._publish(LockCompleted(
            cart_id=snapshot.cart_id, occurred_at=now, lock_id=lock_id, order_id=order_id
        ))
        return snapshot

    @with_retry("fail")
    def fail(
        self,
        db: Session,
        lock_id: str,
        reason: str,
        details: Optional[Dict[str, Any]] = None,
        session_id: Optional[str] = None,
        trace_id: Optional[str] = None
    ) -> LockSnapshot:
        """
        Mark the checkout failed. reason="cancelled" is the explicit
        cancellation path and releases the cart immediately.

        Raises:
            LockExpiredError: Lock is no longer active
        """
        reason = validate_and_raise("reason", reason, max_length=MAX_REASON_LENGTH)
        details = validate_metadata_field_size(details, field_name="details")
        now = self.now()

        snapshot = None
        with transaction_scope(db, trace_id=trace_id, operation="fail"):
            lock = self._load_owned(db, lock_id, session_id)
            metadata = dict(lock.metadata_json or {})
            metadata["failure"] = {
                "reason": reason,
                "phase": lock.phase,
                "failed_at": format_iso_datetime(now),
                **({"details": details} if details else {}),
            }
            if lock_store.fail_lock(db, lock_id, now, reason, metadata):
                lock_store.cache_outcome(db, lock_id, LockState.FAILED.value, now, failure_reason=reason)
                snapshot = LockSnapshot.from_model(lock_store.get_lock(db, lock_id, fresh=True))

        if snapshot is None:
            current = self._settle(db, lock_id, now, trace_id)
            raise LockExpiredError(
                f"Checkout lock is already {current.state.value}",
                lock_id=lock_id,
                state=current.state.value
            )

        get_context_logger("lock_manager", trace_id=trace_id, lock_id=lock_id, cart_id=snapshot.cart_id).warning(
            "checkout:failed",
            extra={"reason": reason, "phase": snapshot.phase}
        )
        self._publish(LockFailed(
            cart_id=snapshot.cart_id, occurred_at=now, lock_id=lock_id, reason=reason
        ))
        return snapshot

    # ------------------------------------------------------------------
    # resume
    # ------------------------------------------------------------------

    @with_retry("resume")
    def resume(
        self,
        db: Session,
        lock_id: str,
        current_fingerprint: str,
        session_id: str,
        user_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        trace_id: Optional[str] = None
    ) -> Acquisition:
        """
        Start a new active lock continuing a failed or expired one.

        Allowed within the resume window (measured from when the lock left
        ACTIVE) and only if the cart still has the fingerprint recorded at
        lock time. The new lock points back through previous_lock_id; a
        lock can be resumed once.

        Raises:
            SessionMismatchError: Lock held by another session
            LockConflictError: Lock still active, already resumed, or the
                cart has another active lock
            LockExpiredError: Lock completed, or resume window elapsed
            FingerprintMismatchError: Cart changed since the lock was taken
        """
        session_id = validate_identifier("session_id", session_id)
        if idempotency_key is not None:
            idempotency_key = validate_idempotency_key(idempotency_key)
        now = self.now()
        logger = get_context_logger("lock_manager", trace_id=trace_id, lock_id=lock_id, session_id=session_id)

        previous = self._settle(db, lock_id, now, trace_id)
        if previous.session_id != session_id:
            raise SessionMismatchError(lock_id=lock_id)
        if previous.state == LockState.ACTIVE:
            raise LockConflictError(
                "Checkout lock is still active",
                cart_id=previous.cart_id,
                lock_id=previous.id,
                expires_at=format_iso_datetime(previous.expires_at)
            )
        if previous.state == LockState.COMPLETED:
            raise LockExpiredError(
                "A completed checkout cannot be resumed",
                lock_id=lock_id,
                state=previous.state.value
            )
        if now - previous.terminal_at >= self.settings.resume_window:
            raise LockExpiredError(
                "Resume window has elapsed",
                lock_id=lock_id,
                state=previous.state.value,
                details={"resume_window_minutes": self.settings.resume_window_minutes}
            )
        if previous.cart_fingerprint != current_fingerprint:
            logger.warning("checkout:resume_fingerprint_mismatch", extra={"cart_id": previous.cart_id})
            raise FingerprintMismatchError(lock_id=lock_id)

        metadata = {
            key: value for key, value in previous.metadata.items()
            if key not in _TERMINAL_METADATA_KEYS
        }
        metadata["resumed_from"] = previous.id

        try:
            with transaction_scope(db, trace_id=trace_id, operation="resume"):
                if idempotency_key:
                    record = lock_store.get_idempotency_record(db, previous.cart_id, idempotency_key)
                    if record is not None:
                        mapped = lock_store.get_lock(db, record.lock_id)
                        return Acquisition(lock=LockSnapshot.from_model(mapped), created=False)
                self._verify_fingerprint(db, previous.cart_id, current_fingerprint)
                lock = lock_store.insert_active_lock(
                    db,
                    cart_id=previous.cart_id,
                    session_id=session_id,
                    user_id=user_id or previous.user_id,
                    now=now,
                    lease_seconds=previous.lease_seconds,
                    cart_fingerprint=current_fingerprint,
                    phase=previous.phase,
                    metadata=metadata,
                    idempotency_key=idempotency_key,
                    previous_lock_id=previous.id
                )
                if idempotency_key:
                    lock_store.insert_idempotency_record(
                        db,
                        cart_id=previous.cart_id,
                        idempotency_key=idempotency_key,
                        lock_id=lock.id,
                        now=now
                    )
                snapshot = LockSnapshot.from_model(lock)
        except IntegrityError:
            self._raise_resume_conflict(db, previous, idempotency_key, trace_id)

        logger.info(
            "checkout:lock_resumed",
            extra={"new_lock_id": snapshot.id, "cart_id": snapshot.cart_id, "phase": snapshot.phase}
        )
        self._publish(LockResumed(
            cart_id=snapshot.cart_id, occurred_at=now, lock_id=snapshot.id, previous_lock_id=previous.id
        ))
        return Acquisition(lock=snapshot, created=True)

    def _raise_resume_conflict(
        self,
        db: Session,
        previous: LockSnapshot,
        idempotency_key: Optional[str],
        trace_id: Optional[str]
    ) -> None:
        with transaction_scope(db, trace_id=trace_id, operation="resume_conflict"):
            successor = lock_store.get_successor(db, previous.id)
            holder = lock_store.get_active_lock_for_cart(db, previous.cart_id)
        if successor is not None:
            raise LockConflictError(
                "Checkout lock has already been resumed",
                cart_id=previous.cart_id,
                lock_id=successor.id
            )
        raise LockConflictError(
            "Cart is already being checked out",
            cart_id=previous.cart_id,
            lock_id=holder.id if holder is not None else None
        )

    # ------------------------------------------------------------------
    # expiry
    # ------------------------------------------------------------------

    def expire_lapsed(
        self,
        db: Session,
        lock_id: str,
        trace_id: Optional[str] = None,
        via: str = "lazy"
    ) -> bool:
        """
        Expire one lock if its lease has lapsed. Safe to race with
        renew/complete/fail and with other sweepers: only one conditional
        update can win.

        Returns:
            True if this call performed the transition
        """
        now = self.now()
        with transaction_scope(db, trace_id=trace_id, operation="expire"):
            expired = self.expire_in_transaction(db, lock_id, now)

        if expired is None:
            return False
        get_context_logger("lock_manager", trace_id=trace_id, lock_id=lock_id).info(
            "checkout:lock_expired",
            extra={"cart_id": expired.cart_id, "via": via, "phase": expired.phase}
        )
        self._publish(LockExpired(cart_id=expired.cart_id, occurred_at=now, lock_id=lock_id))
        return True

    def expire_in_transaction(self, db: Session, lock_id: str, now) -> Optional[LockSnapshot]:
        if not lock_store.expire_lock(db, lock_id, now):
            return None
        lock_store.cache_outcome(
            db, lock_id, LockState.FAILED.value, now, failure_reason=LEASE_EXPIRED_REASON
        )
        return LockSnapshot.from_model(lock_store.get_lock(db, lock_id, fresh=True))

    def _settle(self, db: Session, lock_id: str, now, trace_id: Optional[str]) -> LockSnapshot:
        """Current state of a lock, expiring it first if its lease lapsed."""
        expired = None
        with transaction_scope(db, trace_id=trace_id, operation="settle"):
            lock = lock_store.get_lock(db, lock_id, fresh=True)
            if lock is None:
                raise LockNotFoundError(lock_id)
            if lock.state == LockState.ACTIVE.value and ensure_timezone_aware(lock.expires_at) <= now:
                expired = self.expire_in_transaction(db, lock_id, now)
            snapshot = expired or LockSnapshot.from_model(lock)

        if expired is not None:
            self._publish(LockExpired(cart_id=expired.cart_id, occurred_at=now, lock_id=lock_id))
        return snapshot

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    def get_lock(self, db: Session, lock_id: str, trace_id: Optional[str] = None) -> LockSnapshot:
        with transaction_scope(db, trace_id=trace_id, operation="get_lock"):
            lock = lock_store.get_lock(db, lock_id, fresh=True)
            if lock is None:
                raise LockNotFoundError(lock_id)
            return LockSnapshot.from_model(lock)

    def get_latest_lock_for_cart(
        self,
        db: Session,
        cart_id: str,
        trace_id: Optional[str] = None
    ) -> Optional[LockSnapshot]:
        with transaction_scope(db, trace_id=trace_id, operation="get_latest_lock"):
            lock = lock_store.get_latest_lock_for_cart(db, cart_id)
            return LockSnapshot.from_model(lock) if lock is not None else None

    def get_active_lock_for_cart(
        self,
        db: Session,
        cart_id: str,
        trace_id: Optional[str] = None
    ) -> Optional[LockSnapshot]:
        with transaction_scope(db, trace_id=trace_id, operation="get_active_lock"):
            lock = lock_store.get_active_lock_for_cart(db, cart_id)
            return LockSnapshot.from_model(lock) if lock is not None else None

    def has_successor(self, db: Session, lock_id: str, trace_id: Optional[str] = None) -> bool:
        with transaction_scope(db, trace_id=trace_id, operation="has_successor"):
            return lock_store.get_successor(db, lock_id) is not None

    def get_lock_chain(self, db: Session, lock_id: str, trace_id: Optional[str] = None) -> List[LockSnapshot]:
        """All locks linked to `lock_id` by resumes, oldest first."""
        with transaction_scope(db, trace_id=trace_id, operation="get_lock_chain"):
            lock = lock_store.get_lock(db, lock_id)
            if lock is None:
                raise LockNotFoundError(lock_id)

            chain = [lock]
            seen = {lock.id}
            cursor = lock
            while cursor.previous_lock_id and cursor.previous_lock_id not in seen:
                cursor = lock_store.get_lock(db, cursor.previous_lock_id)
                if cursor is None:
                    break
                chain.insert(0, cursor)
                seen.add(cursor.id)

            cursor = lock
            while True:
                cursor = lock_store.get_successor(db, cursor.id)
                if cursor is None or cursor.id in seen:
                    break
                chain.append(cursor)
                seen.add(cursor.id)

            return [LockSnapshot.from_model(item) for item in chain]

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _load_owned(self, db: Session, lock_id: str, session_id: Optional[str]):
        lock = lock_store.get_lock(db, lock_id, fresh=True)
        if lock is None:
            raise LockNotFoundError(lock_id)
        if session_id is not None and lock.session_id != session_id:
            raise SessionMismatchError(lock_id=lock_id)
        return lock

    def _lease_seconds(self, lease_minutes: Optional[int]) -> int:
        if lease_minutes is None:
            return int(self.settings.lease_duration.total_seconds())
        if lease_minutes < 1:
            raise ValidationError("lease_minutes must be at least 1", field="lease_minutes", value=lease_minutes)
        lease = min(timedelta(minutes=lease_minutes), self.settings.max_lease_duration)
        return int(lease.total_seconds())

    def _verify_fingerprint(self, db: Session, cart_id: str, cart_fingerprint: str) -> None:
        if self.fingerprint_source is None:
            return
        current = self.fingerprint_source(db, cart_id)
        if current is not None and current != cart_fingerprint:
            raise FingerprintMismatchError(
                "Cart changed after its fingerprint was read",
                details={"cart_id": cart_id}
            )

    def _validate_phase(self, phase: Optional[str]) -> Optional[str]:
        if phase is None:
            return None
        return validate_and_raise("phase", phase, max_length=MAX_PHASE_LENGTH)

    def _publish(self, event: CheckoutEvent) -> None:
        self.events.publish(event)
