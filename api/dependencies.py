"""Request-scoped dependencies: wired services and identity headers."""
import hmac
from typing import Optional

from fastapi import Depends, Header, Request

from checkout_handler.exceptions import UnauthorizedError
from checkout_handler.handler import CheckoutServices


def get_services(request: Request) -> CheckoutServices:
    return request.app.state.services


def get_trace_id(request: Request) -> Optional[str]:
    return getattr(request.state, "trace_id", None)


def require_session_id(x_session_id: Optional[str] = Header(None, alias="X-Session-ID")) -> str:
    """The holder identity. Every lock operation is attributed to a session."""
    if not x_session_id or not x_session_id.strip():
        raise UnauthorizedError("X-Session-ID header is required")
    return x_session_id.strip()


def optional_session_id(x_session_id: Optional[str] = Header(None, alias="X-Session-ID")) -> Optional[str]:
    return x_session_id.strip() if x_session_id and x_session_id.strip() else None


def optional_user_id(x_user_id: Optional[str] = Header(None, alias="X-User-ID")) -> Optional[str]:
    return x_user_id.strip() if x_user_id and x_user_id.strip() else None


def require_pipeline_key(
    x_pipeline_key: Optional[str] = Header(None, alias="X-Pipeline-Key"),
    services: CheckoutServices = Depends(get_services)
) -> None:
    """Completion is reserved for the checkout pipeline. No configured key, no access."""
    expected = services.settings.pipeline_key
    if not expected or not x_pipeline_key or not hmac.compare_digest(x_pipeline_key, expected):
        raise UnauthorizedError("A valid X-Pipeline-Key header is required")
