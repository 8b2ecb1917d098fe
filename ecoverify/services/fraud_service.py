"""
Fraud Detection Service - Post-rejection pattern checks

Runs after an action was REJECTED. Each heuristic looks at recent action
history on its own; if any of them fires the action moves REJECTED -> FLAGGED
and the user receives a single "suspicious" trust penalty.

This is a detection layer, not a preventive one.
"""
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from typing import Dict, Any, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ecoverify.db.models import RecycleAction, ActionStatus, ViolationKind
from ecoverify.exceptions import IntegrityFailure
from ecoverify.services.trust_service import TrustService, trust_service
from ecoverify.utils import utcnow

logger = logging.getLogger(__name__)

THRESHOLDS = {
    "max_users_per_image": 1,
    "cluster_min_users": 3,
    "cluster_window": timedelta(minutes=1),
    "cluster_degrees": 0.0001,
    "max_actions_per_minute": 5,
    "rapid_window": timedelta(minutes=1),
    "max_locations": 3,
    "location_window": timedelta(minutes=5),
    "max_points_per_hour": 80,
    "points_window": timedelta(hours=1),
}


@dataclass
class FraudCheckResult:
    action_id: str
    flagged: bool
    reasons: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class FraudService:
    """Service for detecting coordinated or automated abuse"""

    def __init__(self, trust: Optional[TrustService] = None):
        self.trust = trust or trust_service

    def check_patterns(
        self,
        db: Session,
        action_id: str,
        now: Optional[datetime] = None
    ) -> FraudCheckResult:
        """
        Evaluate every heuristic for a rejected action and flag it if any fires.

        Actions that are not REJECTED are left untouched.
        """
        now = now or utcnow()
        try:
            action = db.query(RecycleAction).filter(RecycleAction.id == action_id).first()
            if not action:
                raise IntegrityFailure(f"Recycle action not found: {action_id}")

            if action.status != ActionStatus.REJECTED.value:
                db.commit()
                return FraudCheckResult(
                    action_id=action_id,
                    flagged=action.status == ActionStatus.FLAGGED.value
                )

            checks = [
                self._check_duplicate_image_users(db, action),
                self._check_location_cluster(db, action, now),
                self._check_rapid_submissions(db, action, now),
                self._check_location_hopping(db, action, now),
                self._check_points_velocity(db, action, now),
            ]
            reasons = [reason for reason in checks if reason]

            if not reasons:
                db.commit()
                return FraudCheckResult(action_id=action_id, flagged=False)

            flagged = db.query(RecycleAction).filter(
                RecycleAction.id == action_id,
                RecycleAction.status == ActionStatus.REJECTED.value
            ).update({
                RecycleAction.status: ActionStatus.FLAGGED.value,
                RecycleAction.updated_at: now,
            }, synchronize_session=False)

            if flagged:
                self.trust.apply_penalty(
                    db, action.user_id, ViolationKind.SUSPICIOUS.value, action_id, now
                )
            db.commit()

            logger.warning(f"Action {action_id} flagged for fraud: {', '.join(reasons)}")
            return FraudCheckResult(action_id=action_id, flagged=True, reasons=reasons)
        except Exception:
            db.rollback()
            raise

    def _check_duplicate_image_users(self, db: Session, action: RecycleAction) -> Optional[str]:
        """Same image hash submitted by more than one user"""
        count = db.query(func.count(func.distinct(RecycleAction.user_id))).filter(
            RecycleAction.image_content_hash == action.image_content_hash
        ).scalar() or 0

        if count > THRESHOLDS["max_users_per_image"]:
            return f"Same image hash used by {count} users"
        return None

    def _check_location_cluster(
        self,
        db: Session,
        action: RecycleAction,
        now: datetime
    ) -> Optional[str]:
        """Several users at the same spot at the same time"""
        delta = THRESHOLDS["cluster_degrees"]
        rows = db.query(RecycleAction.user_id).filter(
            RecycleAction.created_at >= now - THRESHOLDS["cluster_window"],
            RecycleAction.gps_lat.between(action.gps_lat - delta, action.gps_lat + delta),
            RecycleAction.gps_lng.between(action.gps_lng - delta, action.gps_lng + delta)
        ).distinct().all()

        users = {user_id for (user_id,) in rows}
        users.add(action.user_id)

        if len(users) >= THRESHOLDS["cluster_min_users"]:
            return f"{len(users)} users at same location within 1 minute"
        return None

    def _check_rapid_submissions(
        self,
        db: Session,
        action: RecycleAction,
        now: datetime
    ) -> Optional[str]:
        count = db.query(func.count(RecycleAction.id)).filter(
            RecycleAction.user_id == action.user_id,
            RecycleAction.created_at >= now - THRESHOLDS["rapid_window"]
        ).scalar() or 0

        if count > THRESHOLDS["max_actions_per_minute"]:
            return f"{count} actions in 1 minute"
        return None

    def _check_location_hopping(
        self,
        db: Session,
        action: RecycleAction,
        now: datetime
    ) -> Optional[str]:
        count = db.query(func.count(func.distinct(RecycleAction.recycling_point_id))).filter(
            RecycleAction.user_id == action.user_id,
            RecycleAction.created_at >= now - THRESHOLDS["location_window"]
        ).scalar() or 0

        if count > THRESHOLDS["max_locations"]:
            return f"{count} different locations in 5 minutes"
        return None

    def _check_points_velocity(
        self,
        db: Session,
        action: RecycleAction,
        now: datetime
    ) -> Optional[str]:
        total = db.query(func.coalesce(func.sum(RecycleAction.points_awarded), 0)).filter(
            RecycleAction.user_id == action.user_id,
            RecycleAction.status == ActionStatus.VERIFIED.value,
            RecycleAction.created_at >= now - THRESHOLDS["points_window"]
        ).scalar() or 0

        if total > THRESHOLDS["max_points_per_hour"]:
            return f"{total} points in 1 hour"
        return None


# Singleton instance
fraud_service = FraudService()
