"""
Cart session provider.

A deliberately small cart store: lines, one discount code and two
addresses. Pricing is not computed here. What checkout needs from a cart
is its current content and a stable fingerprint of that content, so a
resumed checkout can tell whether the cart changed underneath it.

Every mutation goes through `guard_cart_mutation`, which rejects it
while a checkout lock holds the cart.
"""
import hashlib
import json
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from db.models.carts import CartLineModel, CartModel
from checkout_handler.events import EventChannel
from checkout_handler.exceptions import ResourceNotFoundError, ValidationError
from checkout_handler.schemas import CartLineSnapshot, CartSnapshot
from checkout_handler.services import lock_store
from checkout_handler.services.cart_guard_service import CartGuard, guard_cart_mutation
from checkout_handler.utils.datetime_utils import ensure_timezone_aware
from checkout_handler.utils.logging import get_context_logger
from checkout_handler.utils.transaction import transaction_scope
from checkout_handler.utils.validation import (
    validate_and_raise, validate_identifier, validate_metadata_field_size
)

ADDRESS_TYPES = ("shipping", "billing")
MAX_LINE_QUANTITY = 10000
MAX_COUPON_LENGTH = 64


def compute_fingerprint(
    currency_code: str,
    coupon_code: Optional[str],
    shipping_address: Optional[Dict[str, Any]],
    billing_address: Optional[Dict[str, Any]],
    lines
) -> str:
    """
    SHA-256 over a canonical JSON rendering of the cart content.

    Line order and line ids do not matter; only what is being bought,
    how many, and with which options.
    """
    canonical_lines = sorted(
        (
            {
                "purchasable_id": line.purchasable_id,
                "quantity": int(line.quantity),
                "meta": line.meta or {},
            }
            for line in lines
        ),
        key=lambda item: json.dumps(item, sort_keys=True, default=str)
    )
    payload = {
        "currency": currency_code,
        "coupon": coupon_code,
        "shipping": shipping_address or None,
        "billing": billing_address or None,
        "lines": canonical_lines,
    }
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def fingerprint_of(cart: CartModel) -> str:
    return compute_fingerprint(
        cart.currency_code,
        cart.coupon_code,
        cart.shipping_address,
        cart.billing_address,
        cart.lines
    )


class CartSessionProvider:
    """Cart storage whose mutations are blocked during checkout."""

    def __init__(
        self,
        guard: CartGuard,
        events: Optional[EventChannel] = None,
        clock: Optional[Callable[[], Any]] = None
    ):
        self.guard = guard
        self.events = events or guard.lock_manager.events
        self.clock = clock or guard.lock_manager.clock

    def now(self):
        return ensure_timezone_aware(self.clock())

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    def create_cart(
        self,
        db: Session,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
        currency_code: str = "USD",
        trace_id: Optional[str] = None
    ) -> CartSnapshot:
        currency_code = validate_and_raise(
            "currency_code", currency_code, max_length=3, min_length=3, pattern=r'^[A-Za-z]{3}$'
        ).upper()
        if session_id is not None:
            session_id = validate_identifier("session_id", session_id)
        now = self.now()

        with transaction_scope(db, trace_id=trace_id, operation="create_cart"):
            cart = CartModel(
                id=lock_store.new_id(),
                session_id=session_id,
                user_id=user_id,
                currency_code=currency_code,
                created_at=now,
                updated_at=now,
            )
            db.add(cart)
            db.flush()
            snapshot = self._snapshot(cart)

        get_context_logger("cart", trace_id=trace_id, cart_id=snapshot.id).info(
            "cart:created", extra={"session_id": session_id}
        )
        return snapshot

    def get_cart(self, db: Session, cart_id: str, trace_id: Optional[str] = None) -> CartSnapshot:
        with transaction_scope(db, trace_id=trace_id, operation="get_cart"):
            return self._snapshot(self._load_cart(db, cart_id))

    def get_fingerprint(self, db: Session, cart_id: str, trace_id: Optional[str] = None) -> str:
        return self.get_cart(db, cart_id, trace_id=trace_id).fingerprint

    def locked_fingerprint(self, db: Session, cart_id: str) -> Optional[str]:
        """
        Fingerprint read with the cart row locked, for use inside another
        transaction (LockManager.fingerprint_source). None for unknown carts.
        """
        cart = (
            db.query(CartModel)
            .filter(CartModel.id == cart_id)
            .populate_existing()
            .with_for_update()
            .first()
        )
        if cart is None:
            return None
        return fingerprint_of(cart)

    # ------------------------------------------------------------------
    # guarded mutations
    # ------------------------------------------------------------------

    @guard_cart_mutation("line_added")
    def add_line(
        self,
        db: Session,
        cart: CartModel,
        purchasable_id: str,
        quantity: int = 1,
        meta: Optional[Dict[str, Any]] = None
    ) -> None:
        purchasable_id = validate_identifier("purchasable_id", purchasable_id)
        quantity = self._validate_quantity(quantity)
        meta = validate_metadata_field_size(meta, field_name="meta")

        for line in cart.lines:
            if line.purchasable_id == purchasable_id and (line.meta or {}) == meta:
                line.quantity = self._validate_quantity(line.quantity + quantity)
                return

        cart.lines.append(CartLineModel(
            id=lock_store.new_id(),
            purchasable_id=purchasable_id,
            quantity=quantity,
            meta=meta,
            created_at=self.now(),
        ))

    @guard_cart_mutation("line_updated")
    def update_line(self, db: Session, cart: CartModel, line_id: str, quantity: int) -> None:
        self._find_line(cart, line_id).quantity = self._validate_quantity(quantity)

    @guard_cart_mutation("line_removed")
    def remove_line(self, db: Session, cart: CartModel, line_id: str) -> None:
        cart.lines.remove(self._find_line(cart, line_id))

    @guard_cart_mutation("discount_applied")
    def apply_discount_code(self, db: Session, cart: CartModel, code: str) -> None:
        cart.coupon_code = validate_and_raise(
            "code", code, max_length=MAX_COUPON_LENGTH, pattern=r'^[A-Za-z0-9\-_]+$'
        ).upper()

    @guard_cart_mutation("discount_removed")
    def remove_discount_code(self, db: Session, cart: CartModel) -> None:
        cart.coupon_code = None

    @guard_cart_mutation("address_changed")
    def set_address(
        self,
        db: Session,
        cart: CartModel,
        address_type: str,
        address: Optional[Dict[str, Any]]
    ) -> None:
        if address_type not in ADDRESS_TYPES:
            raise ValidationError(
                f"address_type must be one of {', '.join(ADDRESS_TYPES)}",
                field="address_type",
                value=address_type
            )
        address = validate_metadata_field_size(address, max_size_kb=8, field_name="address") or None
        setattr(cart, f"{address_type}_address", address)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _load_cart(self, db: Session, cart_id: str, for_update: bool = False) -> CartModel:
        query = db.query(CartModel).filter(CartModel.id == cart_id)
        if for_update:
            query = query.with_for_update()
        cart = query.first()
        if cart is None:
            raise ResourceNotFoundError(
                f"Cart {cart_id} not found",
                resource_type="cart",
                resource_id=cart_id
            )
        return cart

    @staticmethod
    def _find_line(cart: CartModel, line_id: str) -> CartLineModel:
        for line in cart.lines:
            if line.id == line_id:
                return line
        raise ResourceNotFoundError(
            f"Cart line {line_id} not found",
            resource_type="cart_line",
            resource_id=line_id
        )

    @staticmethod
    def _validate_quantity(quantity: int) -> int:
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
            raise ValidationError("quantity must be a positive integer", field="quantity", value=quantity)
        if quantity > MAX_LINE_QUANTITY:
            raise ValidationError(
                f"quantity cannot exceed {MAX_LINE_QUANTITY}",
                field="quantity",
                value=quantity
            )
        return quantity

    @staticmethod
    def _snapshot(cart: CartModel) -> CartSnapshot:
        return CartSnapshot(
            id=cart.id,
            session_id=cart.session_id,
            user_id=cart.user_id,
            currency_code=cart.currency_code,
            coupon_code=cart.coupon_code,
            shipping_address=cart.shipping_address,
            billing_address=cart.billing_address,
            lines=tuple(
                CartLineSnapshot(
                    id=line.id,
                    purchasable_id=line.purchasable_id,
                    quantity=line.quantity,
                    meta=line.meta or {},
                )
                for line in cart.lines
            ),
            fingerprint=fingerprint_of(cart),
        )
