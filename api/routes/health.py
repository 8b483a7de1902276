"""Health check routes."""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from checkout_handler.handler import get_handler_status
from db.db import get_db

router = APIRouter(tags=["health"])


@router.get("/healthz")
def healthcheck(request: Request, db: Session = Depends(get_db)):
    """
    Health check endpoint.

    Tests database connectivity and reports the expiry sweeper.
    """
    services = getattr(request.app.state, "services", None)
    sweeper = services.sweeper.state() if services is not None else None

    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        # Return 503 Service Unavailable if unhealthy
        return JSONResponse(
            status_code=503,
            content={
                "status": "unhealthy",
                "database": "disconnected",
                "sweeper": sweeper,
                "error": str(e)
            }
        )

    return {
        "status": "healthy",
        "database": "connected",
        "sweeper": sweeper,
        "handler": get_handler_status(services)
    }


@router.get("/ready")
def readiness():
    """
    Readiness check endpoint.

    Simple check that the service is ready to handle requests.
    """
    return {"status": "ready"}


@router.get("/live")
def liveness():
    """
    Liveness check endpoint.

    Simple check that the service is alive.
    """
    return {"status": "alive"}
