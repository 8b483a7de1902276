"""
Main entry points for checkout handling.

`build_services` wires the lock manager, guards, throttle, status and
sweeper around one settings object and one event channel.
`start_checkout` is the checkout-initiation path:

    ThrottleGate -> cart fingerprint -> IdempotencyGuard -> LockManager.acquire
"""
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from checkout_handler.config import CheckoutSettings
from checkout_handler.events import EventChannel
from checkout_handler.exceptions import ServiceUnavailableError, ValidationError
from checkout_handler.pipeline import CheckoutPipeline
from checkout_handler.schemas import CheckoutOutcome, CheckoutStart
from checkout_handler.services.cart_guard_service import CartGuard
from checkout_handler.services.cart_service import CartSessionProvider
from checkout_handler.services.expiry_sweeper import ExpirySweeper
from checkout_handler.services.idempotency_service import IdempotencyGuard
from checkout_handler.services.lock_service import LockManager
from checkout_handler.services.status_service import StatusCache, StatusReporter
from checkout_handler.services.throttle_service import ThrottleGate
from checkout_handler.utils.logging import get_context_logger
from checkout_handler.utils.validation import validate_idempotency_key, validate_identifier
from checkout_handler.version import __version__


@dataclass
class CheckoutServices:
    settings: CheckoutSettings
    events: EventChannel
    lock_manager: LockManager
    idempotency: IdempotencyGuard
    guard: CartGuard
    carts: CartSessionProvider
    throttle: ThrottleGate
    status: StatusReporter
    status_cache: StatusCache
    sweeper: ExpirySweeper
    pipeline: Optional[CheckoutPipeline] = None


def build_services(
    settings: Optional[CheckoutSettings] = None,
    clock: Optional[Callable[[], Any]] = None,
    session_factory: Optional[Callable[[], Session]] = None,
    pipeline: Optional[CheckoutPipeline] = None
) -> CheckoutServices:
    settings = settings or CheckoutSettings.from_env()
    events = EventChannel()

    lock_manager = LockManager(settings=settings, clock=clock, events=events)
    guard = CartGuard(lock_manager)
    carts = CartSessionProvider(guard, events=events)
    # Checkout start re-reads the fingerprint under the cart row lock
    lock_manager.fingerprint_source = carts.locked_fingerprint

    status_cache = StatusCache(settings.status_cache_ttl_seconds, clock=lock_manager.now)
    status_cache.attach(events)

    return CheckoutServices(
        settings=settings,
        events=events,
        lock_manager=lock_manager,
        idempotency=IdempotencyGuard(lock_manager),
        guard=guard,
        carts=carts,
        throttle=ThrottleGate(settings=settings, clock=clock),
        status=StatusReporter(lock_manager, fingerprint_of=carts.get_fingerprint, cache=status_cache),
        status_cache=status_cache,
        sweeper=ExpirySweeper(lock_manager, session_factory=session_factory),
        pipeline=pipeline,
    )


def start_checkout(
    services: CheckoutServices,
    db: Session,
    cart_id: str,
    session_id: str,
    idempotency_key: str,
    user_id: Optional[str] = None,
    client_identity: Optional[str] = None,
    lease_minutes: Optional[int] = None,
    phase: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    trace_id: Optional[str] = None
) -> CheckoutStart:
    """
    Begin (or replay) a checkout for a cart.

    Args:
        services: Wired checkout services
        db: Database session
        cart_id: Cart to check out
        session_id: Holder session
        idempotency_key: Client token for this submission
        user_id: Authenticated user, if any
        client_identity: Throttle subject for the client tier (defaults to session_id)
        lease_minutes: Lease length, capped by the configured maximum
        phase: Initial phase label
        metadata: Opaque payload stored on the lock
        trace_id: Trace ID for logging

    Returns:
        CheckoutStart with status created, processing, completed or failed

    Raises:
        ValidationError: Bad identifiers, or an empty cart
        ThrottledError: Too many attempts for the client or the cart
        ResourceNotFoundError: Unknown cart
        LockConflictError: Another live lock holds the cart
        FingerprintMismatchError: Cart changed while the lock was being taken
    """
    trace_id = trace_id or str(uuid.uuid4())
    start_time = time.time()

    cart_id = validate_identifier("cart_id", cart_id)
    session_id = validate_identifier("session_id", session_id)
    idempotency_key = validate_idempotency_key(idempotency_key)

    logger = get_context_logger("checkout", trace_id=trace_id, cart_id=cart_id, session_id=session_id)

    services.throttle.check(db, client_identity or session_id, cart_id, trace_id=trace_id)

    cart = services.carts.get_cart(db, cart_id, trace_id=trace_id)
    if cart.is_empty:
        raise ValidationError("Cannot check out an empty cart", field="cart_id", value=cart_id)

    result = services.idempotency.start(
        db,
        cart_id=cart_id,
        session_id=session_id,
        idempotency_key=idempotency_key,
        cart_fingerprint=cart.fingerprint,
        user_id=user_id,
        lease_minutes=lease_minutes,
        phase=phase,
        metadata=metadata,
        trace_id=trace_id
    )

    logger.info(
        "checkout:start",
        extra={
            "status": result.status,
            "lock_id": result.lock.id,
            "replayed": result.replayed,
            "processing_time_seconds": round(time.time() - start_time, 3),
        }
    )
    return result


def process_checkout(
    services: CheckoutServices,
    db: Session,
    lock_id: str,
    session_id: str,
    payment_data: Optional[Dict[str, Any]] = None,
    trace_id: Optional[str] = None
) -> CheckoutOutcome:
    """Run the configured phase pipeline under `lock_id`."""
    if services.pipeline is None:
        raise ServiceUnavailableError(
            "No checkout pipeline is configured",
            service="checkout_pipeline"
        )
    return services.pipeline.execute(
        db,
        services.lock_manager,
        services.carts,
        lock_id,
        session_id=session_id,
        payment_data=payment_data,
        trace_id=trace_id
    )


def get_handler_status(services: Optional[CheckoutServices] = None) -> Dict[str, Any]:
    """Static facts about this handler, for health and diagnostics."""
    status = {
        "name": "checkout_handler",
        "version": __version__,
        "status": "operational",
        "timestamp": time.time(),
    }
    if services is not None:
        status["pipeline_phases"] = services.pipeline.phase_names if services.pipeline else []
        status["lease_minutes"] = services.settings.lease_minutes
        status["resume_window_minutes"] = services.settings.resume_window_minutes
    return status
