"""Response models and builders for API endpoints."""
from typing import Dict, Any, Optional
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder

from checkout_handler.schemas import CartSnapshot, CheckoutOutcome, IdempotencyOutcome
from checkout_handler.utils.datetime_utils import format_iso_datetime


class APIResponse:
    """Standardized API response builder."""

    @staticmethod
    def success(data: Any = None, message: Optional[str] = None, status_code: int = 200) -> JSONResponse:
        """Build a success response."""
        content = {"success": True}

        if data is not None:
            content["data"] = jsonable_encoder(data)

        if message:
            content["message"] = message

        return JSONResponse(status_code=status_code, content=content)


def outcome_payload(outcome: Optional[IdempotencyOutcome]) -> Optional[Dict[str, Any]]:
    if outcome is None:
        return None
    return {
        "status": outcome.status,
        "order_id": outcome.order_id,
        "failure_reason": outcome.failure_reason,
        "cached_at": format_iso_datetime(outcome.cached_at),
    }


def checkout_outcome_payload(outcome: CheckoutOutcome, lock: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "status": outcome.status,
        "order_id": outcome.order_id,
        "failure_reason": outcome.failure_reason,
        "phases": outcome.phases,
        "lock": lock,
    }


def cart_payload(cart: CartSnapshot) -> Dict[str, Any]:
    return {
        "id": cart.id,
        "session_id": cart.session_id,
        "user_id": cart.user_id,
        "currency_code": cart.currency_code,
        "coupon_code": cart.coupon_code,
        "shipping_address": cart.shipping_address,
        "billing_address": cart.billing_address,
        "lines": [line.model_dump() for line in cart.lines],
        "fingerprint": cart.fingerprint,
    }
