"""
Health check and readiness probe endpoints.
Provides liveness and readiness checks for Kubernetes and monitoring systems.
"""
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from duochat.api.dependencies import get_db

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

SERVICE_NAME = "duochat"
SERVICE_VERSION = "1.0.0"


def check_database(db: Session) -> Dict[str, Any]:
    """
    Check database connectivity.

    Returns:
        Status dict with healthy=True/False and details
    """
    try:
        db.execute(text("SELECT 1")).fetchone()
        return {"healthy": True, "message": "Database connection OK"}
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        return {"healthy": False, "message": f"Database connection failed: {e}"}


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check(request: Request):
    """
    Liveness probe endpoint.

    Returns basic service status without checking dependencies.

    Example Response:
        {
            "status": "healthy",
            "service": "duochat",
            "version": "1.0.0",
            "sessions": 12,
            "users": 9
        }
    """
    engine = getattr(request.app.state, "engine", None)
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "sessions": engine.registry.get_session_count() if engine else 0,
        "users": engine.registry.get_user_count() if engine else 0,
    }


@router.get("/ready", status_code=status.HTTP_200_OK)
def readiness_check(db: Session = Depends(get_db)):
    """
    Readiness probe endpoint.

    Returns 200 OK only if the database answers, 503 otherwise. Push and
    blob storage are best-effort collaborators and do not gate readiness.
    """
    checks = {"database": check_database(db)}

    if all(check["healthy"] for check in checks.values()):
        return {"status": "ready", "checks": checks}

    logger.warning("Readiness check failed: database unreachable")
    raise HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"status": "not_ready", "checks": checks}
    )
