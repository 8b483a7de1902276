"""
Schema definitions for checkout locking.

Immutable views of stored rows. Services build these inside the
transaction that read or wrote the row, so callers never touch a
live ORM object after commit.
"""
from __future__ import annotations
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from checkout_handler.utils.datetime_utils import ensure_timezone_aware


class LockState(str, Enum):
    """Stored lock states. ACTIVE is the only non-terminal state."""
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


CANCELLED_REASON = "cancelled"
LEASE_EXPIRED_REASON = "lease_expired"
CART_CHANGED_REASON = "cart_changed"


class LockSnapshot(BaseModel):
    """Point-in-time copy of a checkout_locks row."""
    model_config = ConfigDict(frozen=True)

    id: str
    cart_id: str
    session_id: str
    user_id: Optional[str] = None
    state: LockState
    phase: Optional[str] = None
    locked_at: datetime
    expires_at: datetime
    lease_seconds: int
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    cart_fingerprint: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    idempotency_key: Optional[str] = None
    previous_lock_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, lock) -> "LockSnapshot":
        return cls(
            id=lock.id,
            cart_id=lock.cart_id,
            session_id=lock.session_id,
            user_id=lock.user_id,
            state=LockState(lock.state),
            phase=lock.phase,
            locked_at=ensure_timezone_aware(lock.locked_at),
            expires_at=ensure_timezone_aware(lock.expires_at),
            lease_seconds=lock.lease_seconds,
            completed_at=ensure_timezone_aware(lock.completed_at),
            failed_at=ensure_timezone_aware(lock.failed_at),
            failure_reason=lock.failure_reason,
            cart_fingerprint=lock.cart_fingerprint,
            metadata=dict(lock.metadata_json or {}),
            idempotency_key=lock.idempotency_key,
            previous_lock_id=lock.previous_lock_id,
            created_at=ensure_timezone_aware(lock.created_at),
            updated_at=ensure_timezone_aware(lock.updated_at),
        )

    @property
    def order_id(self) -> Optional[str]:
        return self.metadata.get("order_id")

    @property
    def terminal_at(self) -> Optional[datetime]:
        """When the lock left ACTIVE. An expired lease ends at its deadline."""
        if self.state == LockState.COMPLETED:
            return self.completed_at
        if self.state == LockState.FAILED:
            return self.failed_at
        if self.state == LockState.EXPIRED:
            return self.expires_at
        return None


class Acquisition(BaseModel):
    """Result of acquire/resume: the lock and whether this call created it."""
    model_config = ConfigDict(frozen=True)

    lock: LockSnapshot
    created: bool


class IdempotencyOutcome(BaseModel):
    """Cached terminal outcome stored on an idempotency record."""
    model_config = ConfigDict(frozen=True)

    status: str
    order_id: Optional[str] = None
    failure_reason: Optional[str] = None
    cached_at: Optional[datetime] = None


class CheckoutStart(BaseModel):
    """What a checkout-initiation request gets back."""
    model_config = ConfigDict(frozen=True)

    lock: LockSnapshot
    status: str  # created | processing | completed | failed
    replayed: bool
    outcome: Optional[IdempotencyOutcome] = None


class LockStatus(BaseModel):
    """Derived view of a lock at a given instant."""
    model_config = ConfigDict(frozen=True)

    is_active: bool
    is_completed: bool
    is_failed: bool
    is_expired: bool
    can_resume: bool
    duration: Optional[float] = None
    state: LockState
    state_name: str
    terminal_at: Optional[datetime] = None


class CartLineSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    purchasable_id: str
    quantity: int
    meta: Dict[str, Any] = Field(default_factory=dict)


class CartSnapshot(BaseModel):
    """Current cart contents as seen by checkout."""
    model_config = ConfigDict(frozen=True)

    id: str
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    currency_code: str
    coupon_code: Optional[str] = None
    shipping_address: Optional[Dict[str, Any]] = None
    billing_address: Optional[Dict[str, Any]] = None
    lines: tuple[CartLineSnapshot, ...] = ()
    fingerprint: str

    @property
    def is_empty(self) -> bool:
        return not self.lines


class CheckoutOutcome(BaseModel):
    """Result of running the phase pipeline under a lock."""
    model_config = ConfigDict(frozen=True)

    lock: LockSnapshot
    status: str  # completed | failed | expired
    order_id: Optional[str] = None
    failure_reason: Optional[str] = None
    phases: Dict[str, Any] = Field(default_factory=dict)
