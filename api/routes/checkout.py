"""Checkout lock routes."""
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from api.dependencies import (
    get_services, get_trace_id, optional_user_id, require_pipeline_key, require_session_id
)
from api.models.requests import (
    CompleteCheckoutRequest, FailCheckoutRequest, HeartbeatRequest,
    ProcessCheckoutRequest, StartCheckoutRequest
)
from api.models.responses import APIResponse, checkout_outcome_payload, outcome_payload
from checkout_handler.handler import CheckoutServices, process_checkout, start_checkout
from checkout_handler.services.diagnostics_service import get_lock_diagnostics, get_system_diagnostics
from checkout_handler.services.idempotency_service import STATUS_CREATED
from db.db import get_db

router = APIRouter(prefix="/checkout", tags=["checkout"])


@router.post("/start")
def start(
    request: Request,
    body: StartCheckoutRequest,
    session_id: str = Depends(require_session_id),
    user_id: Optional[str] = Depends(optional_user_id),
    services: CheckoutServices = Depends(get_services),
    trace_id: Optional[str] = Depends(get_trace_id),
    db: Session = Depends(get_db)
):
    """Begin a checkout, or replay an earlier submission with the same Idempotency-Key."""
    result = start_checkout(
        services,
        db,
        cart_id=body.cart_id,
        session_id=session_id,
        idempotency_key=getattr(request.state, "idempotency_key", None),
        user_id=user_id,
        lease_minutes=body.ttl_minutes,
        phase=body.phase,
        metadata=body.metadata,
        trace_id=trace_id
    )

    data = {
        "status": result.status,
        "replayed": result.replayed,
        "lock": services.status.resource_for(db, result.lock, trace_id=trace_id),
        "outcome": outcome_payload(result.outcome),
    }
    if result.status == STATUS_CREATED:
        return APIResponse.success(data=data, message="Checkout started", status_code=201)
    return APIResponse.success(data=data, message=f"Checkout {result.status}")


@router.get("/status")
def cart_status(
    cart_id: str = Query(..., min_length=1, max_length=128),
    services: CheckoutServices = Depends(get_services),
    trace_id: Optional[str] = Depends(get_trace_id),
    db: Session = Depends(get_db)
):
    """Checkout status of a cart, built from its latest lock."""
    return APIResponse.success(data=services.status.cart_status(db, cart_id, trace_id=trace_id))


@router.get("/diagnostics")
def diagnostics(
    services: CheckoutServices = Depends(get_services),
    trace_id: Optional[str] = Depends(get_trace_id),
    db: Session = Depends(get_db)
):
    return APIResponse.success(
        data=get_system_diagnostics(db, services.lock_manager, sweeper=services.sweeper, trace_id=trace_id)
    )


@router.get("/{lock_id}")
def get_lock(
    lock_id: str,
    services: CheckoutServices = Depends(get_services),
    trace_id: Optional[str] = Depends(get_trace_id),
    db: Session = Depends(get_db)
):
    """Lock resource plus its resume chain."""
    return APIResponse.success(data=get_lock_diagnostics(db, services.status, lock_id, trace_id=trace_id))


@router.post("/{lock_id}/heartbeat")
def heartbeat(
    lock_id: str,
    body: Optional[HeartbeatRequest] = None,
    session_id: str = Depends(require_session_id),
    services: CheckoutServices = Depends(get_services),
    trace_id: Optional[str] = Depends(get_trace_id),
    db: Session = Depends(get_db)
):
    snapshot = services.lock_manager.renew(
        db,
        lock_id,
        session_id=session_id,
        phase=body.phase if body else None,
        trace_id=trace_id
    )
    return APIResponse.success(
        data=services.status.resource_for(db, snapshot, trace_id=trace_id),
        message="Lease renewed"
    )


@router.post("/{lock_id}/complete", dependencies=[Depends(require_pipeline_key)])
def complete(
    lock_id: str,
    body: CompleteCheckoutRequest,
    services: CheckoutServices = Depends(get_services),
    trace_id: Optional[str] = Depends(get_trace_id),
    db: Session = Depends(get_db)
):
    """Record the created order. Reserved for the checkout pipeline."""
    result = dict(body.result or {})
    result["order_id"] = body.order_id
    snapshot = services.lock_manager.complete(db, lock_id, result, trace_id=trace_id)
    return APIResponse.success(
        data=services.status.resource_for(db, snapshot, trace_id=trace_id),
        message="Checkout completed"
    )


@router.post("/{lock_id}/fail")
def fail(
    lock_id: str,
    body: FailCheckoutRequest,
    session_id: str = Depends(require_session_id),
    services: CheckoutServices = Depends(get_services),
    trace_id: Optional[str] = Depends(get_trace_id),
    db: Session = Depends(get_db)
):
    snapshot = services.lock_manager.fail(
        db, lock_id, body.reason, details=body.details, session_id=session_id, trace_id=trace_id
    )
    return APIResponse.success(
        data=services.status.resource_for(db, snapshot, trace_id=trace_id),
        message="Checkout failed"
    )


@router.post("/{lock_id}/cancel")
def cancel(
    lock_id: str,
    session_id: str = Depends(require_session_id),
    services: CheckoutServices = Depends(get_services),
    trace_id: Optional[str] = Depends(get_trace_id),
    db: Session = Depends(get_db)
):
    """Release the cart immediately."""
    snapshot = services.guard.cancel_checkout(db, lock_id, session_id, trace_id=trace_id)
    return APIResponse.success(
        data=services.status.resource_for(db, snapshot, trace_id=trace_id),
        message="Checkout cancelled"
    )


@router.post("/{lock_id}/resume")
def resume(
    request: Request,
    lock_id: str,
    session_id: str = Depends(require_session_id),
    user_id: Optional[str] = Depends(optional_user_id),
    services: CheckoutServices = Depends(get_services),
    trace_id: Optional[str] = Depends(get_trace_id),
    db: Session = Depends(get_db)
):
    """Continue a failed or expired checkout if the cart is unchanged."""
    previous = services.lock_manager.get_lock(db, lock_id, trace_id=trace_id)
    current_fingerprint = services.carts.get_fingerprint(db, previous.cart_id, trace_id=trace_id)

    acquisition = services.lock_manager.resume(
        db,
        lock_id,
        current_fingerprint=current_fingerprint,
        session_id=session_id,
        user_id=user_id,
        idempotency_key=getattr(request.state, "idempotency_key", None),
        trace_id=trace_id
    )
    data = services.status.resource_for(db, acquisition.lock, trace_id=trace_id)
    if acquisition.created:
        return APIResponse.success(data=data, message="Checkout resumed", status_code=201)
    return APIResponse.success(data=data, message="Checkout already resumed with this key")


@router.post("/{lock_id}/process")
def process(
    lock_id: str,
    body: Optional[ProcessCheckoutRequest] = None,
    session_id: str = Depends(require_session_id),
    services: CheckoutServices = Depends(get_services),
    trace_id: Optional[str] = Depends(get_trace_id),
    db: Session = Depends(get_db)
):
    """Run the configured phase pipeline under this lock."""
    outcome = process_checkout(
        services,
        db,
        lock_id,
        session_id=session_id,
        payment_data=body.payment_data if body else None,
        trace_id=trace_id
    )
    lock = services.status.resource_for(db, outcome.lock, trace_id=trace_id)
    return APIResponse.success(
        data=checkout_outcome_payload(outcome, lock),
        message=f"Checkout {outcome.status}"
    )
