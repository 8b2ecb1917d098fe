"""
User Service - Provisioning and profile views

User ids come from the identity layer; rows are created on first use.
"""
import logging
from typing import Dict, Any, Optional
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ecoverify.config import settings
from ecoverify.db.models import User, RecycleAction, Reward, ActionStatus
from ecoverify.services.trust_service import TrustService

logger = logging.getLogger(__name__)


class UserService:
    """Service for user records"""

    def get_user(self, db: Session, user_id: str) -> Optional[User]:
        return db.query(User).filter(User.id == user_id).first()

    def get_or_create_user(self, db: Session, user_id: str) -> User:
        """Return the user, creating it with the default trust score if missing"""
        user = self.get_user(db, user_id)
        if user:
            return user

        try:
            user = User(
                id=user_id,
                trust_score=settings.DEFAULT_TRUST_SCORE,
                streak_days=0
            )
            db.add(user)
            db.commit()
            logger.info(f"Provisioned user {user_id}")
            return user
        except IntegrityError:
            # Created concurrently by another request
            db.rollback()
            return self.get_user(db, user_id)

    def get_profile(self, db: Session, user_id: str) -> Optional[Dict[str, Any]]:
        user = self.get_user(db, user_id)
        if not user:
            return None

        counts = dict(
            db.query(RecycleAction.status, func.count(RecycleAction.id))
            .filter(RecycleAction.user_id == user_id)
            .group_by(RecycleAction.status)
            .all()
        )
        total_points = db.query(func.coalesce(func.sum(Reward.final_points), 0)).filter(
            Reward.user_id == user_id
        ).scalar() or 0

        return {
            "user_id": user.id,
            "trust_score": round(user.trust_score, 4),
            "reward_multiplier": TrustService.multiplier_for(user.trust_score),
            "streak_days": user.streak_days,
            "last_action_at": user.last_action_at.isoformat() if user.last_action_at else None,
            "total_actions": sum(counts.values()),
            "verified_actions": counts.get(ActionStatus.VERIFIED.value, 0),
            "rejected_actions": counts.get(ActionStatus.REJECTED.value, 0),
            "flagged_actions": counts.get(ActionStatus.FLAGGED.value, 0),
            "pending_actions": counts.get(ActionStatus.PENDING.value, 0),
            "total_points": int(total_points),
            "member_since": user.created_at.isoformat() if user.created_at else None,
        }


# Singleton instance
user_service = UserService()
