"""
Idempotency guard for checkout initiation.

IDEMPOTENCY SCOPING:
- Keys are scoped by CART: (cart_id, idempotency_key) maps to one lock
- Same key on a different cart = a different operation
- While the mapped lock is active, a resubmission reports "processing"
  and returns the same lock; nothing runs twice
- Once the mapped lock is terminal, its outcome is cached on the record
  and returned verbatim to every later request with that key, even if
  the checkout is later resumed under a new key
"""
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from checkout_handler.schemas import (
    Acquisition, CheckoutStart, IdempotencyOutcome, LEASE_EXPIRED_REASON,
    LockSnapshot, LockState
)
from checkout_handler.services import lock_store
from checkout_handler.services.lock_service import LockManager
from checkout_handler.utils.datetime_utils import ensure_timezone_aware
from checkout_handler.utils.logging import get_context_logger
from checkout_handler.utils.transaction import transaction_scope
from checkout_handler.utils.validation import validate_idempotency_key, validate_identifier

STATUS_CREATED = "created"
STATUS_PROCESSING = "processing"


class IdempotencyGuard:
    """Deduplicates retried checkout-initiation requests."""

    def __init__(self, lock_manager: LockManager):
        self.lock_manager = lock_manager

    def start(
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
    ) -> CheckoutStart:
        """
        Begin a checkout, or replay the result of an earlier attempt
        with the same key.

        Returns:
            CheckoutStart whose status is "created" for a new lock,
            "processing" while a replayed lock is active, or the cached
            terminal status ("completed"/"failed") afterwards
        """
        cart_id = validate_identifier("cart_id", cart_id)
        idempotency_key = validate_idempotency_key(idempotency_key)
        logger = get_context_logger(
            "idempotency", trace_id=trace_id, cart_id=cart_id, idempotency_key=idempotency_key
        )

        replay = self.lookup(db, cart_id, idempotency_key, trace_id=trace_id)
        if replay is not None:
            logger.info("checkout:idempotent_replay", extra={"status": replay.status, "lock_id": replay.lock.id})
            return replay

        acquisition = self.lock_manager.acquire(
            db,
            cart_id=cart_id,
            session_id=session_id,
            idempotency_key=idempotency_key,
            cart_fingerprint=cart_fingerprint,
            user_id=user_id,
            lease_minutes=lease_minutes,
            phase=phase,
            metadata=metadata,
            trace_id=trace_id
        )
        if acquisition.created:
            return CheckoutStart(lock=acquisition.lock, status=STATUS_CREATED, replayed=False)

        # Lost an insert race to a request carrying the same key
        return self._replay_for(db, acquisition, cart_id, idempotency_key, trace_id)

    def lookup(
        self,
        db: Session,
        cart_id: str,
        idempotency_key: str,
        trace_id: Optional[str] = None
    ) -> Optional[CheckoutStart]:
        """Replay for (cart_id, key) if the key has been used, else None."""
        with transaction_scope(db, trace_id=trace_id, operation="idempotency_lookup"):
            record = lock_store.get_idempotency_record(db, cart_id, idempotency_key)
            if record is None:
                return None
            outcome = self._cached_outcome(record)
            lock = lock_store.get_lock(db, record.lock_id, fresh=True)
            snapshot = LockSnapshot.from_model(lock)

        if outcome is not None:
            return CheckoutStart(lock=snapshot, status=outcome.status, replayed=True, outcome=outcome)
        return self._replay_for(
            db, Acquisition(lock=snapshot, created=False), cart_id, idempotency_key, trace_id
        )

    def _replay_for(
        self,
        db: Session,
        acquisition: Acquisition,
        cart_id: str,
        idempotency_key: str,
        trace_id: Optional[str]
    ) -> CheckoutStart:
        lock = acquisition.lock
        now = self.lock_manager.now()

        if lock.state == LockState.ACTIVE and ensure_timezone_aware(lock.expires_at) > now:
            return CheckoutStart(lock=lock, status=STATUS_PROCESSING, replayed=True)

        if lock.state == LockState.ACTIVE:
            # Lease lapsed and nobody swept it yet
            self.lock_manager.expire_lapsed(db, lock.id, trace_id=trace_id, via="idempotency")

        outcome = self._ensure_outcome(db, lock.id, cart_id, idempotency_key, trace_id)
        snapshot = self.lock_manager.get_lock(db, lock.id, trace_id=trace_id)
        if outcome is None:
            return CheckoutStart(lock=snapshot, status=STATUS_PROCESSING, replayed=True)
        return CheckoutStart(lock=snapshot, status=outcome.status, replayed=True, outcome=outcome)

    def _ensure_outcome(
        self,
        db: Session,
        lock_id: str,
        cart_id: str,
        idempotency_key: str,
        trace_id: Optional[str]
    ) -> Optional[IdempotencyOutcome]:
        """
        Read the cached outcome, filling it from the lock if a terminal
        transition happened without caching (e.g. rows written before the
        outcome columns existed).
        """
        now = self.lock_manager.now()
        with transaction_scope(db, trace_id=trace_id, operation="idempotency_outcome"):
            lock = lock_store.get_lock(db, lock_id, fresh=True)
            snapshot = LockSnapshot.from_model(lock)
            if snapshot.state == LockState.COMPLETED:
                lock_store.cache_outcome(
                    db, lock_id, LockState.COMPLETED.value, now, order_id=snapshot.order_id
                )
            elif snapshot.state == LockState.FAILED:
                lock_store.cache_outcome(
                    db, lock_id, LockState.FAILED.value, now, failure_reason=snapshot.failure_reason
                )
            elif snapshot.state == LockState.EXPIRED:
                lock_store.cache_outcome(
                    db, lock_id, LockState.FAILED.value, now, failure_reason=LEASE_EXPIRED_REASON
                )
            record = lock_store.get_idempotency_record(db, cart_id, idempotency_key)
            db.refresh(record)
            return self._cached_outcome(record)

    @staticmethod
    def _cached_outcome(record) -> Optional[IdempotencyOutcome]:
        if record is None or record.outcome_status is None:
            return None
        return IdempotencyOutcome(
            status=record.outcome_status,
            order_id=record.order_id,
            failure_reason=record.failure_reason,
            cached_at=ensure_timezone_aware(record.outcome_cached_at)
        )
