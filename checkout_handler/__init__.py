"""
Checkout locking for shopping carts.

Guards the cart-to-order transition: one active checkout per cart,
idempotent replay of retried submissions, lease-based recovery, cart
protection during checkout and throttling of initiation attempts.
"""

from .handler import (
    CheckoutServices,
    build_services,
    start_checkout,
    process_checkout,
    get_handler_status
)
from .pipeline import CheckoutPipeline, FunctionPhase, PhaseContext, PhaseResult
from .config import CheckoutSettings

from .version import __version__

__all__ = [
    # Main entry points
    "CheckoutServices",
    "build_services",
    "start_checkout",
    "process_checkout",
    "get_handler_status",

    # Pipeline
    "CheckoutPipeline",
    "FunctionPhase",
    "PhaseContext",
    "PhaseResult",

    # Configuration
    "CheckoutSettings",

    # Version information
    "__version__",
]
