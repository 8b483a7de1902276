"""
Background expiry of lapsed checkout leases.

Each sweep selects a batch of active locks whose deadline has passed and
expires them one by one through the same conditional update the lock
manager uses, so a sweep racing a late heartbeat or another sweeper can
never clobber a newer state.
"""
import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from checkout_handler.services import lock_store
from checkout_handler.services.lock_service import LockManager
from checkout_handler.utils.datetime_utils import format_iso_datetime
from checkout_handler.utils.logging import get_context_logger
from checkout_handler.utils.transaction import run_with_retry, transaction_scope

logger = get_context_logger("sweeper")


class ExpirySweeper:
    """Periodic and one-shot lease expiry."""

    def __init__(
        self,
        lock_manager: LockManager,
        session_factory: Optional[Callable[[], Session]] = None,
        batch_size: Optional[int] = None,
        interval_seconds: Optional[int] = None
    ):
        self.lock_manager = lock_manager
        self.session_factory = session_factory
        self.batch_size = batch_size or lock_manager.settings.sweeper_batch_size
        self.interval_seconds = interval_seconds or lock_manager.settings.sweeper_interval_seconds

        self.running = False
        self.cycles = 0
        self.total_expired = 0
        self.last_run_at: Optional[datetime] = None
        self.last_expired = 0
        self.last_error: Optional[str] = None

    def sweep_once(self, db: Optional[Session] = None, trace_id: Optional[str] = None) -> int:
        """
        Expire up to `batch_size` lapsed locks.

        Uses `db` when given, otherwise opens (and closes) a session from
        the factory.

        Returns:
            Number of locks this sweep transitioned to expired
        """
        if db is None:
            if self.session_factory is None:
                raise RuntimeError("ExpirySweeper needs a session or a session factory")
            session = self.session_factory()
            try:
                return self.sweep_once(session, trace_id=trace_id)
            finally:
                session.close()

        now = self.lock_manager.now()
        with transaction_scope(db, trace_id=trace_id, operation="sweep_select"):
            lock_ids = lock_store.find_lapsed_lock_ids(db, now, self.batch_size)

        expired = 0
        for lock_id in lock_ids:
            if run_with_retry(
                db,
                lambda: self.lock_manager.expire_lapsed(db, lock_id, trace_id=trace_id, via="sweeper"),
                trace_id=trace_id,
                operation="sweep_expire"
            ):
                expired += 1

        self.cycles += 1
        self.total_expired += expired
        self.last_run_at = now
        self.last_expired = expired
        self.last_error = None

        if lock_ids:
            logger.info(
                "sweeper:cycle_complete",
                extra={"candidates": len(lock_ids), "expired": expired, "trace_id": trace_id}
            )
        return expired

    async def run_periodically(self, stop_event: asyncio.Event) -> None:
        """Sweep every `interval_seconds` until `stop_event` is set."""
        self.running = True
        logger.info("sweeper:started", extra={"interval_seconds": self.interval_seconds})
        try:
            while not stop_event.is_set():
                try:
                    await asyncio.to_thread(self.sweep_once)
                except Exception as e:
                    # Next cycle retries; lazy expiry covers the gap
                    self.last_error = f"{type(e).__name__}: {e}"
                    logger.exception("sweeper:cycle_failed")

                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
                except asyncio.TimeoutError:
                    pass
        finally:
            self.running = False
            logger.info("sweeper:stopped", extra={"cycles": self.cycles})

    def state(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "interval_seconds": self.interval_seconds,
            "batch_size": self.batch_size,
            "cycles": self.cycles,
            "total_expired": self.total_expired,
            "last_run_at": format_iso_datetime(self.last_run_at) if self.last_run_at else None,
            "last_expired": self.last_expired,
            "last_error": self.last_error,
        }
