"""
Audit Service - Append-only event trail

Best effort: a failed audit write is logged and never propagates.
"""
import logging
from typing import Dict, Any, List, Optional
from sqlalchemy.orm import Session

from ecoverify.db.models import AuditLog, AuditActionType

logger = logging.getLogger(__name__)


class AuditService:
    """Service for recording audit events"""

    def log(
        self,
        db: Session,
        action_type: AuditActionType,
        user_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        try:
            db.add(AuditLog(
                action_type=action_type.value,
                user_id=user_id,
                entity_type=entity_type,
                entity_id=entity_id,
                details=details
            ))
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to log audit event {action_type.value}: {e}")

    def get_events(
        self,
        db: Session,
        entity_id: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 100
    ) -> List[AuditLog]:
        query = db.query(AuditLog)
        if entity_id:
            query = query.filter(AuditLog.entity_id == entity_id)
        if user_id:
            query = query.filter(AuditLog.user_id == user_id)
        return query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit).all()


# Singleton instance
audit_service = AuditService()
