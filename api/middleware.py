"""Middleware for the API."""
import time
import uuid
from fastapi import Request

from checkout_handler.utils.logging import get_context_logger

logger = get_context_logger("api_middleware")


async def request_logging_middleware(request: Request, call_next):
    """
    Log all requests with structured logging.

    Creates ONE log entry per request with:
    - Request details (method, path)
    - Response status
    - Processing duration
    - Trace ID for correlation
    - Idempotency key and holder session, when sent

    This replaces scattered logging throughout the codebase.
    """
    trace_id = request.headers.get("X-Trace-ID") or str(uuid.uuid4())
    request.state.trace_id = trace_id

    # Idempotency-Key is read here once; routes take it from request.state
    idempotency_key = request.headers.get("Idempotency-Key")
    request.state.idempotency_key = idempotency_key

    start_time = time.time()

    response = await call_next(request)

    duration_ms = (time.time() - start_time) * 1000

    # ONE STRUCTURED LOG ENTRY PER REQUEST
    log_data = {
        "trace_id": trace_id,
        "idempotency_key": idempotency_key,
        "holder_session": request.headers.get("X-Session-ID"),
        "method": request.method,
        "path": request.url.path,
        "status_code": response.status_code,
        "duration_ms": round(duration_ms, 2),
        "success": 200 <= response.status_code < 400,
        "client_ip": request.client.host if request.client else None
    }

    if response.status_code >= 500:
        logger.error("request_completed", extra=log_data)
    elif response.status_code >= 400:
        logger.warning("request_completed", extra=log_data)
    else:
        logger.info("request_completed", extra=log_data)

    response.headers["X-Trace-ID"] = trace_id

    if idempotency_key:
        response.headers["Idempotency-Key"] = idempotency_key

    return response
