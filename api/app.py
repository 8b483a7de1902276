"""FastAPI application factory and configuration."""
import asyncio
from contextlib import asynccontextmanager
from typing import Any, Callable, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from api.middleware import request_logging_middleware
from api.exceptions import register_exception_handlers
from api.routes import carts, checkout, health
from checkout_handler.config import CheckoutSettings
from checkout_handler.handler import build_services
from checkout_handler.pipeline import CheckoutPipeline
from checkout_handler.utils.logging import get_context_logger
from checkout_handler.version import __version__
from db.db import SessionLocal, get_engine

logger = get_context_logger("api_app")


def _default_session_factory() -> Session:
    get_engine()
    return SessionLocal()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the expiry sweeper on startup and stop it on shutdown."""
    services = app.state.services
    stop_event = asyncio.Event()
    sweeper_task = None

    if services.settings.sweeper_enabled:
        sweeper_task = asyncio.create_task(services.sweeper.run_periodically(stop_event))
    else:
        logger.info("sweeper:disabled")

    yield

    stop_event.set()
    if sweeper_task is not None:
        await sweeper_task


def create_app(
    settings: Optional[CheckoutSettings] = None,
    clock: Optional[Callable[[], Any]] = None,
    pipeline: Optional[CheckoutPipeline] = None,
    session_factory: Optional[Callable[[], Session]] = None
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Checkout settings (default: read from the environment)
        clock: Time source for lease arithmetic (default: UTC now)
        pipeline: Phase pipeline run by POST /checkout/{lock_id}/process
        session_factory: Session source for the background sweeper

    Returns:
        Configured FastAPI application instance
    """
    app = FastAPI(
        title="Checkout Lock API",
        version=__version__,
        description="Cart checkout locking, idempotent replay and lease recovery",
        lifespan=lifespan
    )

    app.state.services = build_services(
        settings=settings,
        clock=clock,
        session_factory=session_factory or _default_session_factory,
        pipeline=pipeline
    )

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Trace-ID", "Retry-After", "Idempotency-Key"],
    )

    app.middleware("http")(request_logging_middleware)

    register_exception_handlers(app)

    app.include_router(health.router)
    app.include_router(checkout.router)
    app.include_router(carts.router)

    return app
