"""
Service layer for checkout locking.

Each service takes the database session explicitly and owns its
transactions; none of them hold process-wide state beyond the event
channel and the status cache.
"""

from .lock_service import LockManager
from .idempotency_service import IdempotencyGuard, STATUS_CREATED, STATUS_PROCESSING
from .cart_guard_service import CartGuard, guard_cart_mutation
from .cart_service import CartSessionProvider, compute_fingerprint
from .throttle_service import ThrottleGate, SCOPE_CART, SCOPE_CLIENT
from .status_service import StatusCache, StatusReporter, cart_status_view, derive_status, serialize_lock
from .expiry_sweeper import ExpirySweeper
from .diagnostics_service import get_lock_diagnostics, get_system_diagnostics

__all__ = [
    # Locking
    "LockManager",
    "IdempotencyGuard",
    "STATUS_CREATED",
    "STATUS_PROCESSING",

    # Cart protection
    "CartGuard",
    "guard_cart_mutation",
    "CartSessionProvider",
    "compute_fingerprint",

    # Throttling
    "ThrottleGate",
    "SCOPE_CART",
    "SCOPE_CLIENT",

    # Status
    "StatusCache",
    "StatusReporter",
    "cart_status_view",
    "derive_status",
    "serialize_lock",

    # Background / operations
    "ExpirySweeper",
    "get_lock_diagnostics",
    "get_system_diagnostics",
]
