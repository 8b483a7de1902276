"""
Lock store primitives.

Every state change here is a single conditional statement whose WHERE
clause carries the expected current state, so two writers racing on the
same row cannot both win: the loser sees rowcount 0. Insertion of an
active lock relies on the partial unique index on (cart_id) WHERE
state = 'active'. None of these functions commit; callers own the
transaction.
"""
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from db.models.checkout_locks import CheckoutLockModel
from db.models.checkout_idempotency_records import CheckoutIdempotencyRecordModel
from checkout_handler.schemas import LockState


def new_id() -> str:
    return str(uuid.uuid4())


# ============================================================================
# INSERTS
# ============================================================================

def insert_active_lock(
    db: Session,
    *,
    cart_id: str,
    session_id: str,
    user_id: Optional[str],
    now: datetime,
    lease_seconds: int,
    cart_fingerprint: str,
    phase: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    idempotency_key: Optional[str] = None,
    previous_lock_id: Optional[str] = None
) -> CheckoutLockModel:
    """Insert an active lock. Raises IntegrityError if the cart already has one."""
    lock = CheckoutLockModel(
        id=new_id(),
        cart_id=cart_id,
        session_id=session_id,
        user_id=user_id,
        state=LockState.ACTIVE.value,
        phase=phase,
        locked_at=now,
        expires_at=now + timedelta(seconds=lease_seconds),
        lease_seconds=lease_seconds,
        cart_fingerprint=cart_fingerprint,
        metadata_json=dict(metadata or {}),
        idempotency_key=idempotency_key,
        previous_lock_id=previous_lock_id,
        created_at=now,
        updated_at=now,
    )
    db.add(lock)
    db.flush()
    return lock


def insert_idempotency_record(
    db: Session,
    *,
    cart_id: str,
    idempotency_key: str,
    lock_id: str,
    now: datetime
) -> CheckoutIdempotencyRecordModel:
    """Map (cart_id, idempotency_key) to a lock. Raises IntegrityError on reuse."""
    record = CheckoutIdempotencyRecordModel(
        id=new_id(),
        cart_id=cart_id,
        idempotency_key=idempotency_key,
        lock_id=lock_id,
        created_at=now,
    )
    db.add(record)
    db.flush()
    return record


# ============================================================================
# READS
# ============================================================================

def get_lock(db: Session, lock_id: str, fresh: bool = False) -> Optional[CheckoutLockModel]:
    """Load a lock. `fresh` reloads attributes changed by a conditional UPDATE."""
    query = db.query(CheckoutLockModel).filter(CheckoutLockModel.id == lock_id)
    if fresh:
        query = query.populate_existing()
    return query.first()


def get_active_lock_for_cart(db: Session, cart_id: str) -> Optional[CheckoutLockModel]:
    return (
        db.query(CheckoutLockModel)
        .filter(
            CheckoutLockModel.cart_id == cart_id,
            CheckoutLockModel.state == LockState.ACTIVE.value
        )
        .first()
    )


def get_latest_lock_for_cart(db: Session, cart_id: str) -> Optional[CheckoutLockModel]:
    return (
        db.query(CheckoutLockModel)
        .filter(CheckoutLockModel.cart_id == cart_id)
        .order_by(CheckoutLockModel.locked_at.desc(), CheckoutLockModel.created_at.desc())
        .first()
    )


def get_successor(db: Session, lock_id: str) -> Optional[CheckoutLockModel]:
    """The lock created by resuming `lock_id`, if any."""
    return (
        db.query(CheckoutLockModel)
        .filter(CheckoutLockModel.previous_lock_id == lock_id)
        .first()
    )


def get_idempotency_record(
    db: Session,
    cart_id: str,
    idempotency_key: str
) -> Optional[CheckoutIdempotencyRecordModel]:
    return (
        db.query(CheckoutIdempotencyRecordModel)
        .filter(
            CheckoutIdempotencyRecordModel.cart_id == cart_id,
            CheckoutIdempotencyRecordModel.idempotency_key == idempotency_key
        )
        .first()
    )


def get_idempotency_keys_for_lock(db: Session, lock_id: str) -> List[str]:
    rows = (
        db.query(CheckoutIdempotencyRecordModel.idempotency_key)
        .filter(CheckoutIdempotencyRecordModel.lock_id == lock_id)
        .all()
    )
    return [row[0] for row in rows]


def find_lapsed_lock_ids(db: Session, now: datetime, limit: int) -> List[str]:
    """Ids of active locks whose lease deadline has passed."""
    rows = (
        db.query(CheckoutLockModel.id)
        .filter(
            CheckoutLockModel.state == LockState.ACTIVE.value,
            CheckoutLockModel.expires_at <= now
        )
        .order_by(CheckoutLockModel.expires_at)
        .limit(limit)
        .all()
    )
    return [row[0] for row in rows]


# ============================================================================
# CONDITIONAL TRANSITIONS (return affected row count)
# ============================================================================

def renew_lock(
    db: Session,
    lock_id: str,
    now: datetime,
    new_expires_at: datetime,
    phase: Optional[str] = None
) -> int:
    """Push the lease deadline out to `new_expires_at` if the lease is still live."""
    values = {
        CheckoutLockModel.expires_at: case(
            (CheckoutLockModel.expires_at < new_expires_at, new_expires_at),
            else_=CheckoutLockModel.expires_at
        ),
        CheckoutLockModel.updated_at: now,
    }
    if phase is not None:
        values[CheckoutLockModel.phase] = phase

    return (
        db.query(CheckoutLockModel)
        .filter(
            CheckoutLockModel.id == lock_id,
            CheckoutLockModel.state == LockState.ACTIVE.value,
            CheckoutLockModel.expires_at > now
        )
        .update(values, synchronize_session=False)
    )


def complete_lock(db: Session, lock_id: str, now: datetime, metadata: Dict[str, Any]) -> int:
    return (
        db.query(CheckoutLockModel)
        .filter(
            CheckoutLockModel.id == lock_id,
            CheckoutLockModel.state == LockState.ACTIVE.value
        )
        .update(
            {
                CheckoutLockModel.state: LockState.COMPLETED.value,
                CheckoutLockModel.completed_at: now,
                CheckoutLockModel.metadata_json: metadata,
                CheckoutLockModel.updated_at: now,
            },
            synchronize_session=False
        )
    )


def fail_lock(
    db: Session,
    lock_id: str,
    now: datetime,
    reason: str,
    metadata: Dict[str, Any]
) -> int:
    return (
        db.query(CheckoutLockModel)
        .filter(
            CheckoutLockModel.id == lock_id,
            CheckoutLockModel.state == LockState.ACTIVE.value
        )
        .update(
            {
                CheckoutLockModel.state: LockState.FAILED.value,
                CheckoutLockModel.failed_at: now,
                CheckoutLockModel.failure_reason: reason,
                CheckoutLockModel.metadata_json: metadata,
                CheckoutLockModel.updated_at: now,
            },
            synchronize_session=False
        )
    )


def expire_lock(db: Session, lock_id: str, now: datetime) -> int:
    """Mark a lapsed lease expired. A live or terminal lock is left alone."""
    return (
        db.query(CheckoutLockModel)
        .filter(
            CheckoutLockModel.id == lock_id,
            CheckoutLockModel.state == LockState.ACTIVE.value,
            CheckoutLockModel.expires_at <= now
        )
        .update(
            {
                CheckoutLockModel.state: LockState.EXPIRED.value,
                CheckoutLockModel.updated_at: now,
            },
            synchronize_session=False
        )
    )


def cache_outcome(
    db: Session,
    lock_id: str,
    status: str,
    now: datetime,
    order_id: Optional[str] = None,
    failure_reason: Optional[str] = None
) -> int:
    """Record the terminal outcome on every record mapped to `lock_id`, once."""
    return (
        db.query(CheckoutIdempotencyRecordModel)
        .filter(
            CheckoutIdempotencyRecordModel.lock_id == lock_id,
            CheckoutIdempotencyRecordModel.outcome_status.is_(None)
        )
        .update(
            {
                CheckoutIdempotencyRecordModel.outcome_status: status,
                CheckoutIdempotencyRecordModel.order_id: order_id,
                CheckoutIdempotencyRecordModel.failure_reason: failure_reason,
                CheckoutIdempotencyRecordModel.outcome_cached_at: now,
            },
            synchronize_session=False
        )
    )


def count_locks(db: Session, *criteria) -> int:
    return db.query(func.count(CheckoutLockModel.id)).filter(*criteria).scalar() or 0
