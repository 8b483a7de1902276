# db/models/checkout_locks.py
from sqlalchemy import Column, String, Integer, Index, CheckConstraint, text
from sqlalchemy.sql import func
from sqlalchemy.types import TIMESTAMP

from db.models.base import Base, JSONType

LOCK_STATES = ("active", "completed", "failed", "expired")


class CheckoutLockModel(Base):
    __tablename__ = 'checkout_locks'

    id = Column(String(36), primary_key=True)
    cart_id = Column(String(128), nullable=False, index=True)
    session_id = Column(String(128), nullable=False)
    user_id = Column(String(128), nullable=True)

    state = Column(String(16), nullable=False, server_default='active')
    phase = Column(String(64), nullable=True)

    locked_at = Column(TIMESTAMP(timezone=True), nullable=False)
    expires_at = Column(TIMESTAMP(timezone=True), nullable=False)
    lease_seconds = Column(Integer, nullable=False)
    completed_at = Column(TIMESTAMP(timezone=True), nullable=True)
    failed_at = Column(TIMESTAMP(timezone=True), nullable=True)
    failure_reason = Column(String(255), nullable=True)

    cart_fingerprint = Column(String(64), nullable=False)
    metadata_json = Column(JSONType, nullable=False, default=dict)
    idempotency_key = Column(String(128), nullable=True)

    # A terminal lock can be resumed at most once
    previous_lock_id = Column(String(36), nullable=True, unique=True)

    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        # At most one active lock per cart
        Index(
            'uq_checkout_locks_active_cart',
            'cart_id',
            unique=True,
            postgresql_where=text("state = 'active'"),
            sqlite_where=text("state = 'active'"),
        ),
        Index('ix_checkout_locks_state_expires_at', 'state', 'expires_at'),
        CheckConstraint(
            "state IN ('active', 'completed', 'failed', 'expired')",
            name='ck_checkout_locks_state'
        ),
    )
