#checkout_handler/utils/telemetry.py

import time, threading
from collections import deque
from typing import Any, Dict, Iterable, List, Optional

from checkout_handler.utils.logging import get_context_logger

# Process-local buffer read by the diagnostics report. Not shared between workers.
_BUFFER_SIZE = 2000
_EVENTS: deque = deque(maxlen=_BUFFER_SIZE)
_GUARD = threading.Lock()

_logger = get_context_logger("telemetry")


def log_event(kind: str, name: str, data: Dict[str, Any] | None = None, level: str = "info"):
    """Record one event and mirror it to the log (debug, or error for failures)."""
    event = {
        "ts_ms": int(time.time() * 1000),
        "trace_id": None,
        "lock_id": None,
        **(data or {}),
        "kind": kind,
        "name": name,
        "level": level,
    }
    with _GUARD:
        _EVENTS.append(event)
    emit = _logger.error if level == "error" else _logger.debug
    emit(f"telemetry:{kind}:{name}", extra={"telemetry": event})


def recent_events(
    limit: int = 100,
    kinds: Optional[Iterable[str]] = None,
    names: Optional[Iterable[str]] = None,
    lock_id: Optional[str] = None,
    since_ts_ms: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """Newest first. Every filter is optional."""
    with _GUARD:
        snapshot = list(_EVENTS)

    kind_set = set(kinds) if kinds else None
    name_set = set(names) if names else None

    matched = []
    for event in reversed(snapshot):
        if kind_set and event["kind"] not in kind_set:
            continue
        if name_set and event["name"] not in name_set:
            continue
        if lock_id and event.get("lock_id") != lock_id:
            continue
        if since_ts_ms and event["ts_ms"] < since_ts_ms:
            continue
        matched.append(event)
        if len(matched) >= limit:
            break
    return matched


def clear_events():
    with _GUARD:
        _EVENTS.clear()


def stage_start(trace_id: Optional[str], stage: str, meta: dict | None = None):
    log_event("PHASE", f"{stage}:start", {"trace_id": trace_id, **(meta or {})})


def stage_end(trace_id: Optional[str], stage: str, ok: bool = True, error: str | None = None,
              latency_ms: int | None = None, meta: dict | None = None):
    payload: Dict[str, Any] = {"trace_id": trace_id, "ok": ok, **(meta or {})}
    if latency_ms is not None:
        payload["latency_ms"] = latency_ms
    if error:
        payload["error"] = error
    log_event("PHASE", f"{stage}:end", payload, level="info" if ok else "error")


class stage_timer:
    """
    Times one checkout phase. A phase that returns an unsuccessful
    result without raising calls `mark_failed` so the end event says so.
    """

    def __init__(self, trace_id: Optional[str], stage: str, meta: dict | None = None):
        self.trace_id = trace_id
        self.stage = stage
        self.meta = meta or {}
        self.failure: Optional[str] = None
        self._started = 0.0

    def mark_failed(self, error: str):
        self.failure = error

    def __enter__(self):
        self._started = time.perf_counter()
        stage_start(self.trace_id, self.stage, self.meta)
        return self

    def __exit__(self, exc_type, exc, tb):
        elapsed_ms = int((time.perf_counter() - self._started) * 1000)
        error = repr(exc) if exc is not None else self.failure
        stage_end(self.trace_id, self.stage, ok=error is None, error=error,
                  latency_ms=elapsed_ms, meta=self.meta)
        return False
