# chatsales/api/health.py
"""
Health endpoints: database connectivity, configuration presence and
in-process resources (session locks, pending notifications, model circuit
breaker).
"""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.orm import Session

from chatsales.config import get_config_status
from chatsales.database import get_db
from chatsales.utils.circuit_breaker import CircuitState
from chatsales.utils.logger import logger

router = APIRouter(tags=["health"])

VERSION = "1.0.0"


def check_database(db: Session) -> Dict[str, Any]:
    try:
        db.execute(text("SELECT 1"))
        return {"status": "healthy"}
    except Exception as e:
        logger.error(f"[Health Check] Database failed: {e}")
        return {"status": "unhealthy", "message": "Database connection failed"}


@router.get("/health")
async def health(request: Request, db: Session = Depends(get_db)):
    health_status: Dict[str, Any] = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": VERSION,
        "checks": {},
    }

    health_status["checks"]["database"] = check_database(db)
    if health_status["checks"]["database"]["status"] != "healthy":
        health_status["status"] = "unhealthy"

    config_status = get_config_status()
    health_status["checks"]["config"] = config_status
    if health_status["status"] == "healthy" and not config_status.get("openai_configured"):
        health_status["status"] = "degraded"

    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is not None:
        health_status["checks"]["session_locks"] = len(orchestrator.locks)
        health_status["checks"]["pending_notifications"] = orchestrator.notifier.pending
        breaker = getattr(orchestrator.provider, "breaker", None)
        if breaker is not None:
            health_status["checks"]["llm_breaker"] = breaker.snapshot()
            if health_status["status"] == "healthy" and breaker.state != CircuitState.CLOSED:
                health_status["status"] = "degraded"

    return health_status


@router.get("/health/simple")
async def health_simple():
    """For load balancers."""
    return {"status": "ok"}
