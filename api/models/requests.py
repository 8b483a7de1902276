"""Request models for API endpoints."""
from typing import Dict, Any, Literal, Optional
from pydantic import BaseModel, Field, field_validator
import re

_IDENTIFIER_PATTERN = re.compile(r'^[a-zA-Z0-9\-_\.:]+$')


def _check_identifier(field_name: str, v: str) -> str:
    if not v or not v.strip():
        raise ValueError(f"{field_name} cannot be empty")
    v = v.strip()
    if len(v) > 128:
        raise ValueError(f"{field_name} exceeds maximum length of 128 characters")
    if not _IDENTIFIER_PATTERN.match(v):
        raise ValueError(f"{field_name} contains invalid characters (use alphanumeric, dash, underscore, dot, colon only)")
    return v


class StartCheckoutRequest(BaseModel):
    """Checkout initiation. The Idempotency-Key travels as a header."""
    cart_id: str = Field(..., description="Cart to check out", min_length=1, max_length=128)
    ttl_minutes: Optional[int] = Field(None, description="Lease length, capped by the configured maximum", ge=1)
    phase: Optional[str] = Field(None, description="Initial phase label", max_length=64)
    metadata: Optional[Dict[str, Any]] = Field(None, description="Opaque payload stored on the lock")

    @field_validator('cart_id')
    @classmethod
    def validate_cart_id(cls, v):
        return _check_identifier("cart_id", v)


class HeartbeatRequest(BaseModel):
    """Lease renewal; optionally records the phase now running."""
    phase: Optional[str] = Field(None, description="Current phase label", max_length=64)


class CompleteCheckoutRequest(BaseModel):
    order_id: str = Field(..., description="Order created by the pipeline", min_length=1, max_length=128)
    result: Optional[Dict[str, Any]] = Field(None, description="Extra result data merged into lock metadata")

    @field_validator('order_id')
    @classmethod
    def validate_order_id(cls, v):
        return _check_identifier("order_id", v)


class FailCheckoutRequest(BaseModel):
    reason: str = Field(..., description="Failure reason", min_length=1, max_length=255)
    details: Optional[Dict[str, Any]] = Field(None, description="Failure details")


class ProcessCheckoutRequest(BaseModel):
    """Payment data is handed to the phase handlers and never stored."""
    payment_data: Optional[Dict[str, Any]] = Field(None, description="Payment data for the phase handlers")


class CreateCartRequest(BaseModel):
    currency_code: str = Field("USD", description="ISO 4217 currency code", min_length=3, max_length=3)


class AddLineRequest(BaseModel):
    purchasable_id: str = Field(..., description="Purchasable identifier", min_length=1, max_length=128)
    quantity: int = Field(1, description="Quantity to add", ge=1)
    meta: Optional[Dict[str, Any]] = Field(None, description="Line options")

    @field_validator('purchasable_id')
    @classmethod
    def validate_purchasable_id(cls, v):
        return _check_identifier("purchasable_id", v)


class UpdateLineRequest(BaseModel):
    quantity: int = Field(..., description="New quantity", ge=1)


class DiscountRequest(BaseModel):
    code: str = Field(..., description="Discount code", min_length=1, max_length=64)


class AddressRequest(BaseModel):
    type: Literal["shipping", "billing"] = Field(..., description="Which address to set")
    address: Optional[Dict[str, Any]] = Field(None, description="Address fields; null clears it")
