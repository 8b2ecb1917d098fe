"""
System Router - Health checks and monitoring
"""
import logging
from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session
import redis

from ecoverify.config import settings
from ecoverify.dependencies import get_db, verify_api_key
from ecoverify.services.ai_classifier_service import ai_classifier_service
from ecoverify.utils import utcnow

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check(db: Session = Depends(get_db)):
    """
    Liveness plus database and queue reachability.
    """
    database_status = "unhealthy"
    try:
        db.execute(text("SELECT 1"))
        database_status = "healthy"
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")

    redis_status = "unhealthy"
    verification_queue_depth = 0
    try:
        r = redis.from_url(settings.REDIS_URL)
        r.ping()
        redis_status = "healthy"
        verification_queue_depth = r.llen("verification") or 0
    except Exception as e:
        logger.warning(f"Redis health check failed: {e}")

    return {
        "status": "ok" if database_status == "healthy" else "degraded",
        "database": database_status,
        "redis": redis_status,
        "verify_mode": settings.ACTION_VERIFY_MODE,
        "verification_queue_depth": verification_queue_depth,
        "timestamp": utcnow().isoformat() + "Z"
    }


@router.get("/ai/health", dependencies=[Depends(verify_api_key)])
async def ai_health_check():
    """Reachability of every configured AI provider"""
    report = await ai_classifier_service.health_check()
    report["timestamp"] = utcnow().isoformat() + "Z"
    return report
