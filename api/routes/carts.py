"""Cart routes. Every mutation answers 409 while a checkout holds the cart."""
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from api.dependencies import get_services, get_trace_id, optional_session_id, optional_user_id
from api.models.requests import (
    AddLineRequest, AddressRequest, CreateCartRequest, DiscountRequest, UpdateLineRequest
)
from api.models.responses import APIResponse, cart_payload
from checkout_handler.handler import CheckoutServices
from db.db import get_db

router = APIRouter(prefix="/carts", tags=["carts"])


@router.post("")
def create_cart(
    body: Optional[CreateCartRequest] = None,
    session_id: Optional[str] = Depends(optional_session_id),
    user_id: Optional[str] = Depends(optional_user_id),
    services: CheckoutServices = Depends(get_services),
    trace_id: Optional[str] = Depends(get_trace_id),
    db: Session = Depends(get_db)
):
    cart = services.carts.create_cart(
        db,
        session_id=session_id,
        user_id=user_id,
        currency_code=body.currency_code if body else "USD",
        trace_id=trace_id
    )
    return APIResponse.success(data=cart_payload(cart), message="Cart created", status_code=201)


@router.get("/{cart_id}")
def get_cart(
    cart_id: str,
    services: CheckoutServices = Depends(get_services),
    trace_id: Optional[str] = Depends(get_trace_id),
    db: Session = Depends(get_db)
):
    return APIResponse.success(data=cart_payload(services.carts.get_cart(db, cart_id, trace_id=trace_id)))


@router.post("/{cart_id}/lines")
def add_line(
    cart_id: str,
    body: AddLineRequest,
    services: CheckoutServices = Depends(get_services),
    trace_id: Optional[str] = Depends(get_trace_id),
    db: Session = Depends(get_db)
):
    cart = services.carts.add_line(
        db, cart_id, body.purchasable_id, body.quantity, body.meta, trace_id=trace_id
    )
    return APIResponse.success(data=cart_payload(cart), message="Line added")


@router.patch("/{cart_id}/lines/{line_id}")
def update_line(
    cart_id: str,
    line_id: str,
    body: UpdateLineRequest,
    services: CheckoutServices = Depends(get_services),
    trace_id: Optional[str] = Depends(get_trace_id),
    db: Session = Depends(get_db)
):
    cart = services.carts.update_line(db, cart_id, line_id, body.quantity, trace_id=trace_id)
    return APIResponse.success(data=cart_payload(cart), message="Line updated")


@router.delete("/{cart_id}/lines/{line_id}")
def remove_line(
    cart_id: str,
    line_id: str,
    services: CheckoutServices = Depends(get_services),
    trace_id: Optional[str] = Depends(get_trace_id),
    db: Session = Depends(get_db)
):
    cart = services.carts.remove_line(db, cart_id, line_id, trace_id=trace_id)
    return APIResponse.success(data=cart_payload(cart), message="Line removed")


@router.post("/{cart_id}/discount")
def apply_discount(
    cart_id: str,
    body: DiscountRequest,
    services: CheckoutServices = Depends(get_services),
    trace_id: Optional[str] = Depends(get_trace_id),
    db: Session = Depends(get_db)
):
    cart = services.carts.apply_discount_code(db, cart_id, body.code, trace_id=trace_id)
    return APIResponse.success(data=cart_payload(cart), message="Discount code applied")


@router.delete("/{cart_id}/discount")
def remove_discount(
    cart_id: str,
    services: CheckoutServices = Depends(get_services),
    trace_id: Optional[str] = Depends(get_trace_id),
    db: Session = Depends(get_db)
):
    cart = services.carts.remove_discount_code(db, cart_id, trace_id=trace_id)
    return APIResponse.success(data=cart_payload(cart), message="Discount code removed")


@router.put("/{cart_id}/address")
def set_address(
    cart_id: str,
    body: AddressRequest,
    services: CheckoutServices = Depends(get_services),
    trace_id: Optional[str] = Depends(get_trace_id),
    db: Session = Depends(get_db)
):
    cart = services.carts.set_address(db, cart_id, body.type, body.address, trace_id=trace_id)
    return APIResponse.success(data=cart_payload(cart), message="Address updated")
