# db/models/checkout_idempotency_records.py
from sqlalchemy import Column, String, UniqueConstraint
from sqlalchemy.sql import func
from sqlalchemy.types import TIMESTAMP

from db.models.base import Base


class CheckoutIdempotencyRecordModel(Base):
    __tablename__ = 'checkout_idempotency_records'

    id = Column(String(36), primary_key=True)
    cart_id = Column(String(128), nullable=False)
    idempotency_key = Column(String(128), nullable=False)
    lock_id = Column(String(36), nullable=False, index=True)

    # Written once, when the mapped lock reaches a terminal state
    outcome_status = Column(String(16), nullable=True)
    order_id = Column(String(128), nullable=True)
    failure_reason = Column(String(255), nullable=True)
    outcome_cached_at = Column(TIMESTAMP(timezone=True), nullable=True)

    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint('cart_id', 'idempotency_key', name='uq_checkout_idempotency_cart_key'),
    )
