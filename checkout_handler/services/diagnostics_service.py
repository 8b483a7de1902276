"""
Operational diagnostics for checkout locks.

Read-only views used by GET /checkout/diagnostics, GET /checkout/{lock_id}
and the checkout_diagnostics.py script.
"""
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from db.models.checkout_locks import CheckoutLockModel
from db.models.checkout_idempotency_records import CheckoutIdempotencyRecordModel
from checkout_handler.schemas import LockState
from checkout_handler.services import lock_store
from checkout_handler.services.lock_service import LockManager
from checkout_handler.services.status_service import StatusReporter
from checkout_handler.utils.datetime_utils import format_iso_datetime, start_of_day
from checkout_handler.utils.error_handling import with_error_handling
from checkout_handler.utils.logging import get_context_logger
from checkout_handler.utils.telemetry import recent_events
from checkout_handler.version import __version__

RECENT_EVENT_LIMIT = 20


@with_error_handling("system_diagnostics")
def get_system_diagnostics(
    db: Session,
    lock_manager: LockManager,
    sweeper=None,
    trace_id: Optional[str] = None
) -> Dict[str, Any]:
    """
    Counts across all carts.

    "lapsed" locks are still stored as active although their lease has
    passed; a persistent non-zero value means the sweeper is not keeping up.
    """
    now = lock_manager.now()
    today = start_of_day(now)
    lock = CheckoutLockModel
    record = CheckoutIdempotencyRecordModel

    active = lock_store.count_locks(db, lock.state == LockState.ACTIVE.value, lock.expires_at > now)
    lapsed = lock_store.count_locks(db, lock.state == LockState.ACTIVE.value, lock.expires_at <= now)
    completed_today = lock_store.count_locks(
        db, lock.state == LockState.COMPLETED.value, lock.completed_at >= today
    )
    failed_today = lock_store.count_locks(
        db, lock.state == LockState.FAILED.value, lock.failed_at >= today
    )
    expired_today = lock_store.count_locks(
        db, lock.state == LockState.EXPIRED.value, lock.expires_at >= today
    )

    pending_outcomes = db.query(func.count(record.id)).filter(record.outcome_status.is_(None)).scalar() or 0
    stale_outcomes = (
        db.query(func.count(record.id))
        .join(lock, lock.id == record.lock_id)
        .filter(record.outcome_status.is_(None), lock.state != LockState.ACTIVE.value)
        .scalar()
    ) or 0
    db.commit()

    recommendations: List[str] = []
    if lapsed:
        recommendations.append(
            f"{lapsed} lapsed lock(s) not yet expired; check that the expiry sweeper is running"
        )
    if stale_outcomes:
        recommendations.append(
            f"{stale_outcomes} idempotency record(s) point at terminal locks without a cached outcome; "
            "they are filled on the next replay"
        )
    if failed_today and failed_today > completed_today:
        recommendations.append("More checkouts failed than completed today; review failure reasons")

    get_context_logger("diagnostics", trace_id=trace_id).info(
        "diagnostics:system", extra={"active": active, "lapsed": lapsed}
    )

    return {
        "version": __version__,
        "generated_at": format_iso_datetime(now),
        "locks": {
            "active": active,
            "lapsed_unswept": lapsed,
            "completed_today": completed_today,
            "failed_today": failed_today,
            "expired_today": expired_today,
        },
        "idempotency": {
            "pending_outcomes": pending_outcomes,
            "stale_outcomes": stale_outcomes,
        },
        "sweeper": sweeper.state() if sweeper is not None else None,
        "recommendations": recommendations,
        "recent_phases": recent_events(limit=RECENT_EVENT_LIMIT, kinds=["PHASE"]),
    }


@with_error_handling("lock_diagnostics")
def get_lock_diagnostics(
    db: Session,
    reporter: StatusReporter,
    lock_id: str,
    trace_id: Optional[str] = None
) -> Dict[str, Any]:
    """One lock, its resume chain (oldest first) and the keys mapped to each link."""
    resource = reporter.lock_resource(db, lock_id, trace_id=trace_id)
    chain = reporter.lock_manager.get_lock_chain(db, lock_id, trace_id=trace_id)

    links = []
    for link in chain:
        keys = lock_store.get_idempotency_keys_for_lock(db, link.id)
        links.append({
            "id": link.id,
            "state": link.state.value,
            "phase": link.phase,
            "locked_at": format_iso_datetime(link.locked_at),
            "terminal_at": format_iso_datetime(link.terminal_at),
            "failure_reason": link.failure_reason,
            "idempotency_keys": keys,
        })
    db.commit()

    return {
        "lock": resource,
        "chain": links,
        "recent_phases": recent_events(limit=RECENT_EVENT_LIMIT, kinds=["PHASE"], lock_id=lock_id),
    }
