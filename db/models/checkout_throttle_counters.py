# db/models/checkout_throttle_counters.py
from sqlalchemy import Column, String, Integer, UniqueConstraint
from sqlalchemy.sql import func
from sqlalchemy.types import TIMESTAMP

from db.models.base import Base


class CheckoutThrottleCounterModel(Base):
    __tablename__ = 'checkout_throttle_counters'

    id = Column(String(36), primary_key=True)
    scope = Column(String(16), nullable=False)  # 'client' or 'cart'
    subject = Column(String(255), nullable=False)
    window_start = Column(TIMESTAMP(timezone=True), nullable=False)
    count = Column(Integer, nullable=False, server_default='0')
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint('scope', 'subject', name='uq_checkout_throttle_scope_subject'),
    )
