"""
Checkout phase pipeline.

Runs externally supplied phase handlers (payment authorization, order
creation, ...) under an active checkout lock:

1. Verify ownership and a live lease (a heartbeat)
2. Verify the cart has not changed since the lock was taken
3. For each phase: heartbeat with the phase label, then run the handler
4. Success ends in LockManager.complete with the created order id;
   failure ends in LockManager.fail, after completed phases are
   compensated in reverse order

Handler errors never escape `execute`: they become a DownstreamFailure
whose reason is stored on the lock.
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from sqlalchemy.orm import Session

from checkout_handler.exceptions import DownstreamFailure, LockExpiredError
from checkout_handler.schemas import (
    CART_CHANGED_REASON, CartSnapshot, CheckoutOutcome, LockSnapshot, LockState
)
from checkout_handler.services.lock_service import LockManager
from checkout_handler.utils.logging import get_context_logger
from checkout_handler.utils.telemetry import stage_timer
from checkout_handler.utils.validation import MAX_REASON_LENGTH

ORDER_PHASE = "order_creation"


@dataclass
class PhaseResult:
    success: bool
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @classmethod
    def ok(cls, **data) -> "PhaseResult":
        return cls(success=True, data=data)

    @classmethod
    def failed(cls, error: str, **data) -> "PhaseResult":
        return cls(success=False, data=data, error=error)


@dataclass
class PhaseContext:
    """What a phase handler sees. `results` holds the data of earlier phases."""
    db: Session
    lock_manager: LockManager
    lock: LockSnapshot
    session_id: str
    cart: Optional[CartSnapshot] = None
    payment_data: Dict[str, Any] = field(default_factory=dict)
    results: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    trace_id: Optional[str] = None

    def heartbeat(self, phase: Optional[str] = None) -> LockSnapshot:
        """Extend the lease. Long-running handlers call this between steps."""
        self.lock = self.lock_manager.renew(
            self.db,
            self.lock.id,
            session_id=self.session_id,
            phase=phase or self.lock.phase,
            trace_id=self.trace_id
        )
        return self.lock


class PhaseHandler(Protocol):
    name: str

    def run(self, context: PhaseContext) -> PhaseResult:
        ...

    def compensate(self, context: PhaseContext) -> None:
        ...


class FunctionPhase:
    """Adapts plain callables to the PhaseHandler interface."""

    def __init__(
        self,
        name: str,
        run: Callable[[PhaseContext], PhaseResult],
        compensate: Optional[Callable[[PhaseContext], None]] = None
    ):
        self.name = name
        self._run = run
        self._compensate = compensate

    def run(self, context: PhaseContext) -> PhaseResult:
        return self._run(context)

    def compensate(self, context: PhaseContext) -> None:
        if self._compensate is not None:
            self._compensate(context)


class CheckoutPipeline:
    """Ordered phase handlers executed under a checkout lock."""

    def __init__(self, phases: Sequence[PhaseHandler], order_phase: str = ORDER_PHASE):
        names = [phase.name for phase in phases]
        if len(set(names)) != len(names):
            raise ValueError(f"Phase names must be unique: {names}")
        self.phases = list(phases)
        self.order_phase = order_phase

    @property
    def phase_names(self) -> List[str]:
        return [phase.name for phase in self.phases]

    def execute(
        self,
        db: Session,
        lock_manager: LockManager,
        provider,
        lock_id: str,
        session_id: str,
        payment_data: Optional[Dict[str, Any]] = None,
        trace_id: Optional[str] = None
    ) -> CheckoutOutcome:
        """
        Run every phase and settle the lock.

        Raises:
            LockNotFoundError, SessionMismatchError, LockExpiredError: the
                lock cannot be processed at all (checked before any phase)
        """
        logger = get_context_logger("pipeline", trace_id=trace_id, lock_id=lock_id, session_id=session_id)

        lock = lock_manager.renew(db, lock_id, session_id=session_id, trace_id=trace_id)
        context = PhaseContext(
            db=db,
            lock_manager=lock_manager,
            lock=lock,
            session_id=session_id,
            payment_data=dict(payment_data or {}),
            trace_id=trace_id
        )

        if provider is not None:
            context.cart = provider.get_cart(db, lock.cart_id, trace_id=trace_id)
            if context.cart.fingerprint != lock.cart_fingerprint:
                logger.warning("checkout:cart_changed", extra={"cart_id": lock.cart_id})
                return self._fail(
                    context, [], DownstreamFailure("Cart changed since checkout started"),
                    reason=CART_CHANGED_REASON
                )

        completed: List[PhaseHandler] = []
        for phase in self.phases:
            try:
                context.heartbeat(phase=phase.name)
            except LockExpiredError:
                logger.warning("checkout:lease_lost", extra={"before_phase": phase.name})
                return self._lease_lost(context, completed)

            failure = self._run_phase(phase, context)
            if failure is not None:
                return self._fail(context, completed, failure)
            completed.append(phase)

        order_id = self._order_id(context.results)
        if not order_id:
            failure = DownstreamFailure("No order was created", phase=self.order_phase)
            return self._fail(context, completed, failure)

        try:
            snapshot = lock_manager.complete(
                db,
                lock_id,
                {"order_id": order_id, "phases": context.results},
                session_id=session_id,
                trace_id=trace_id
            )
        except LockExpiredError:
            logger.error("checkout:lease_lost_before_complete", extra={"order_id": order_id})
            return self._lease_lost(context, completed)

        return CheckoutOutcome(
            lock=snapshot,
            status=LockState.COMPLETED.value,
            order_id=order_id,
            phases=context.results
        )

    def _run_phase(self, phase: PhaseHandler, context: PhaseContext) -> Optional[DownstreamFailure]:
        with stage_timer(context.trace_id, phase.name, {"lock_id": context.lock.id}) as timer:
            try:
                result = phase.run(context)
            except Exception as e:
                timer.mark_failed(f"{type(e).__name__}: {e}")
                get_context_logger("pipeline", trace_id=context.trace_id, lock_id=context.lock.id).exception(
                    "checkout:phase_error", extra={"phase": phase.name}
                )
                return DownstreamFailure(str(e) or type(e).__name__, phase=phase.name, original_exception=e)

            if result is None or not result.success:
                error = (result.error if result is not None else None) or "phase reported failure"
                timer.mark_failed(error)
                return DownstreamFailure(error, phase=phase.name)

        context.results[phase.name] = dict(result.data)
        return None

    def _order_id(self, results: Dict[str, Dict[str, Any]]) -> Optional[str]:
        order_id = results.get(self.order_phase, {}).get("order_id")
        if order_id:
            return str(order_id)
        return None

    def _compensate(self, context: PhaseContext, completed: List[PhaseHandler]) -> List[str]:
        logger = get_context_logger("pipeline", trace_id=context.trace_id, lock_id=context.lock.id)
        compensated = []
        for phase in reversed(completed):
            try:
                phase.compensate(context)
                compensated.append(phase.name)
            except Exception:
                # Keep unwinding the remaining phases
                logger.exception("checkout:compensation_failed", extra={"phase": phase.name})
        return compensated

    def _fail(
        self,
        context: PhaseContext,
        completed: List[PhaseHandler],
        failure: DownstreamFailure,
        reason: Optional[str] = None
    ) -> CheckoutOutcome:
        compensated = self._compensate(context, completed)
        details = {"phase": failure.phase, "error": failure.message, "compensated": compensated}
        try:
            snapshot = context.lock_manager.fail(
                context.db,
                context.lock.id,
                (reason or failure.reason)[:MAX_REASON_LENGTH],
                details=details,
                session_id=context.session_id,
                trace_id=context.trace_id
            )
        except LockExpiredError:
            return self._stored_outcome(context)

        return CheckoutOutcome(
            lock=snapshot,
            status=LockState.FAILED.value,
            failure_reason=snapshot.failure_reason,
            phases=context.results
        )

    def _lease_lost(self, context: PhaseContext, completed: List[PhaseHandler]) -> CheckoutOutcome:
        self._compensate(context, completed)
        return self._stored_outcome(context)

    def _stored_outcome(self, context: PhaseContext) -> CheckoutOutcome:
        snapshot = context.lock_manager.get_lock(context.db, context.lock.id, trace_id=context.trace_id)
        return CheckoutOutcome(
            lock=snapshot,
            status=snapshot.state.value,
            order_id=snapshot.order_id,
            failure_reason=snapshot.failure_reason,
            phases=context.results
        )
