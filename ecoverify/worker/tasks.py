"""
Celery Tasks for background verification
"""
import asyncio
import logging
from celery import shared_task
from ecoverify.db.database import SessionLocal
# Importing the app makes it current, so .delay() from the API uses its broker
from ecoverify.worker.celery_app import celery_app  # noqa: F401

logger = logging.getLogger(__name__)


def get_db_session():
    """Get database session for tasks"""
    return SessionLocal()


@shared_task(bind=True, max_retries=3, default_retry_delay=30)
def verify_action(self, action_id: str):
    """
    Run the verification pipeline and its side effects for one action.

    Safe to retry: a decided action returns its stored outcome.
    """
    from ecoverify.services.action_service import action_service

    db = get_db_session()
    loop = asyncio.new_event_loop()
    try:
        asyncio.set_event_loop(loop)
        result = loop.run_until_complete(
            action_service.verify_and_process(db, action_id)
        )
        logger.info(f"Verification completed for action {action_id}: {result.status}")
        return {
            "action_id": action_id,
            "status": result.status,
            "verified": result.verified,
            "score": result.score,
        }
    except Exception as e:
        logger.error(f"Verification task failed for action {action_id}: {e}")
        raise self.retry(exc=e)
    finally:
        loop.close()
        db.close()
