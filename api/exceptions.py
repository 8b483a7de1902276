"""Centralized exception handlers for the API."""
from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder

from checkout_handler.exceptions import BaseAppException, ErrorCode, ThrottledError
from checkout_handler.utils.logging import get_context_logger
from api.error_codes import get_http_status

logger = get_context_logger("api_exceptions")


def handle_checkout_exception(request: Request, exc: BaseAppException) -> JSONResponse:
    """
    Handle all checkout handler exceptions.

    Maps internal error codes to HTTP status codes and returns the
    structured error envelope. Throttled requests also get Retry-After.
    """
    status_code, default_message = get_http_status(exc.error_code)

    error_content = {
        "success": False,
        "error": {
            "code": exc.error_code.value,
            "message": str(exc) or default_message,
            "type": exc.__class__.__name__
        }
    }

    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        error_content["trace_id"] = trace_id

    if exc.details:
        details = {k: v for k, v in exc.details.items() if k != "original_error"}
        if details:
            error_content["error"]["details"] = jsonable_encoder(details)

    headers = None
    if isinstance(exc, ThrottledError):
        headers = {"Retry-After": str(exc.retry_after)}

    if status_code >= 500:
        logger.error(
            "api:server_error",
            extra={"trace_id": trace_id, "path": request.url.path, "error_type": exc.__class__.__name__,
                   "error_message": str(exc)}
        )

    return JSONResponse(status_code=status_code, content=error_content, headers=headers)


def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Body/query validation failures use the same envelope as ValidationError."""
    trace_id = getattr(request.state, "trace_id", None)
    content = {
        "success": False,
        "error": {
            "code": ErrorCode.VALIDATION_ERROR.value,
            "message": "Validation failed",
            "type": "ValidationError",
            "details": {"errors": jsonable_encoder(exc.errors())}
        }
    }
    if trace_id:
        content["trace_id"] = trace_id
    return JSONResponse(status_code=422, content=content)


def handle_unexpected_exception(request: Request, exc: Exception) -> JSONResponse:
    """
    Handle unexpected exceptions that weren't caught by custom handlers.

    Logs the full exception and returns a generic error to the client.
    """
    trace_id = getattr(request.state, "trace_id", "unknown")

    logger.exception(
        "Unexpected exception in API",
        extra={
            "trace_id": trace_id,
            "path": request.url.path,
            "method": request.method,
            "exception_type": type(exc).__name__,
            "exception_message": str(exc)
        }
    )

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": {
                "code": ErrorCode.INTERNAL_ERROR.value,
                "message": "An unexpected error occurred",
                "type": "InternalServerError"
            },
            "trace_id": trace_id
        }
    )


def register_exception_handlers(app):
    """
    Register all exception handlers with the FastAPI app.

    Args:
        app: FastAPI application instance
    """
    app.add_exception_handler(BaseAppException, handle_checkout_exception)
    app.add_exception_handler(RequestValidationError, handle_request_validation)
    app.add_exception_handler(Exception, handle_unexpected_exception)
