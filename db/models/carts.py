# db/models/carts.py
from sqlalchemy import Column, String, Integer, ForeignKey, CheckConstraint
from sqlalchemy.sql import func
from sqlalchemy.types import TIMESTAMP
from sqlalchemy.orm import relationship

from db.models.base import Base, JSONType


class CartModel(Base):
    __tablename__ = 'carts'

    id = Column(String(36), primary_key=True)
    session_id = Column(String(128), nullable=True, index=True)
    user_id = Column(String(128), nullable=True)
    currency_code = Column(String(3), nullable=False, server_default='USD')
    coupon_code = Column(String(64), nullable=True)
    shipping_address = Column(JSONType, nullable=True)
    billing_address = Column(JSONType, nullable=True)

    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    lines = relationship(
        "CartLineModel",
        back_populates="cart",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="CartLineModel.created_at"
    )


class CartLineModel(Base):
    __tablename__ = 'cart_lines'

    id = Column(String(36), primary_key=True)
    cart_id = Column(String(36), ForeignKey('carts.id', ondelete='CASCADE'), nullable=False, index=True)
    purchasable_id = Column(String(128), nullable=False)
    quantity = Column(Integer, nullable=False)
    meta = Column(JSONType, nullable=True)

    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    cart = relationship("CartModel", back_populates="lines")

    __table_args__ = (
        CheckConstraint('quantity > 0', name='ck_cart_lines_quantity_positive'),
    )
