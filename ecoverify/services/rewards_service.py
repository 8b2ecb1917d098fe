"""
Rewards Service - Points for verified recycling actions

Caps and cooldowns are checked in order before anything is written; the
reward row, the action's points and the user's streak commit together.
"""
import logging
import math
from datetime import datetime, timedelta
from typing import Dict, Any, List, Mapping, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ecoverify.config import settings
from ecoverify.db.models import (
    User, RecycleAction, RecyclingPoint, Reward, ActionStatus
)
from ecoverify.exceptions import IntegrityFailure, RewardLimitReached
from ecoverify.services.trust_service import TrustService
from ecoverify.utils import utcnow

logger = logging.getLogger(__name__)


class RewardsService:
    """Service for calculating and awarding points"""

    # Caps
    MAX_DAILY_POINTS = 100
    MAX_DAILY_POINTS_PER_LOCATION = 40
    MAX_SAME_MATERIAL_PER_10MIN = 3

    # Cooldowns
    ACTION_COOLDOWN = timedelta(seconds=30)
    LOCATION_COOLDOWN = timedelta(seconds=120)
    SAME_MATERIAL_WINDOW = timedelta(minutes=10)

    # Streak
    STREAK_MULTIPLIER_RATE = 0.05
    MAX_STREAK_MULTIPLIER = 2.0

    def __init__(self, base_points: Optional[Mapping[str, int]] = None):
        self.base_points = base_points if base_points is not None else settings.base_points_table()

    def calculate_and_award(
        self,
        db: Session,
        action_id: str,
        now: Optional[datetime] = None
    ) -> int:
        """
        Award points for a VERIFIED action and return the final points.

        A second call for the same action returns the stored value. Raises
        RewardLimitReached when a cap or cooldown refuses the award.
        """
        now = now or utcnow()
        try:
            action = db.query(RecycleAction).filter(RecycleAction.id == action_id).first()
            if not action:
                raise IntegrityFailure(f"Recycle action not found: {action_id}")

            existing = self._get_reward(db, action_id)
            if existing:
                db.commit()
                return existing.final_points

            if action.status != ActionStatus.VERIFIED.value:
                raise IntegrityFailure(
                    f"Cannot reward action {action_id} with status {action.status}"
                )

            # Serializes streak updates and cap checks per user
            user = db.query(User).filter(User.id == action.user_id).with_for_update().first()
            if not user:
                raise IntegrityFailure(f"User not found: {action.user_id}")

            point = db.query(RecyclingPoint).filter(
                RecyclingPoint.id == action.recycling_point_id
            ).first()
            if not point:
                raise IntegrityFailure(f"Recycling point not found: {action.recycling_point_id}")

            # The lock may have waited on a concurrent award for this action
            existing = self._get_reward(db, action_id)
            if existing:
                db.commit()
                return existing.final_points

            self._check_limits(db, action, now)

            base_points = self.base_points[action.claimed_material]
            location_multiplier = point.reward_multiplier
            streak_multiplier = self.streak_multiplier(user.streak_days)
            trust_multiplier = TrustService.multiplier_for(user.trust_score)

            final_points = math.floor(
                base_points * location_multiplier * streak_multiplier * trust_multiplier
            )

            db.add(Reward(
                user_id=user.id,
                action_id=action.id,
                base_points=base_points,
                location_multiplier=location_multiplier,
                streak_multiplier=streak_multiplier,
                trust_multiplier=trust_multiplier,
                final_points=final_points,
                created_at=now
            ))
            action.points_awarded = final_points
            self._update_streak(user, now)

            db.commit()
        except IntegrityError:
            db.rollback()
            existing = self._get_reward(db, action_id)
            if existing:
                logger.info(f"Reward for action {action_id} created concurrently")
                return existing.final_points
            raise
        except Exception:
            db.rollback()
            raise

        logger.info(
            f"Awarded {final_points} points to user {action.user_id} for action {action_id} "
            f"(base={base_points}, location={location_multiplier}, "
            f"streak={streak_multiplier:.2f}, trust={trust_multiplier})"
        )
        return final_points

    def streak_multiplier(self, streak_days: int) -> float:
        return min(self.MAX_STREAK_MULTIPLIER, 1 + streak_days * self.STREAK_MULTIPLIER_RATE)

    def _check_limits(self, db: Session, action: RecycleAction, now: datetime) -> None:
        day_start = datetime(now.year, now.month, now.day)

        # 1. Daily limit
        daily_total = db.query(func.coalesce(func.sum(Reward.final_points), 0)).filter(
            Reward.user_id == action.user_id,
            Reward.created_at >= day_start
        ).scalar() or 0
        if daily_total >= self.MAX_DAILY_POINTS:
            self._deny(action, f"Daily limit reached: {daily_total}/{self.MAX_DAILY_POINTS} points")

        # 2. Daily limit per location
        location_total = db.query(func.coalesce(func.sum(Reward.final_points), 0)).join(
            RecycleAction, Reward.action_id == RecycleAction.id
        ).filter(
            Reward.user_id == action.user_id,
            RecycleAction.recycling_point_id == action.recycling_point_id,
            Reward.created_at >= day_start
        ).scalar() or 0
        if location_total >= self.MAX_DAILY_POINTS_PER_LOCATION:
            self._deny(
                action,
                f"Location daily limit reached: {location_total}/{self.MAX_DAILY_POINTS_PER_LOCATION} points"
            )

        # 3. Same material (3 per 10 minutes)
        same_material = db.query(func.count(RecycleAction.id)).filter(
            RecycleAction.user_id == action.user_id,
            RecycleAction.id != action.id,
            RecycleAction.claimed_material == action.claimed_material,
            RecycleAction.status == ActionStatus.VERIFIED.value,
            RecycleAction.created_at >= action.created_at - self.SAME_MATERIAL_WINDOW,
            RecycleAction.created_at <= action.created_at
        ).scalar() or 0
        if same_material >= self.MAX_SAME_MATERIAL_PER_10MIN:
            self._deny(
                action,
                f"Same material limit: {same_material}/{self.MAX_SAME_MATERIAL_PER_10MIN} in 10 minutes"
            )

        # 4. Global cooldown
        previous = self._previous_action(db, action)
        if previous:
            elapsed = action.created_at - previous.created_at
            if elapsed < self.ACTION_COOLDOWN:
                self._deny(
                    action,
                    f"Global cooldown: {elapsed.total_seconds():.1f}s < "
                    f"{self.ACTION_COOLDOWN.total_seconds():.0f}s"
                )

        # 5. Location cooldown
        previous_here = self._previous_action(db, action, same_point=True)
        if previous_here:
            elapsed = action.created_at - previous_here.created_at
            if elapsed < self.LOCATION_COOLDOWN:
                self._deny(
                    action,
                    f"Location cooldown: {elapsed.total_seconds():.1f}s < "
                    f"{self.LOCATION_COOLDOWN.total_seconds():.0f}s"
                )

    def _previous_action(
        self,
        db: Session,
        action: RecycleAction,
        same_point: bool = False
    ) -> Optional[RecycleAction]:
        query = db.query(RecycleAction).filter(
            RecycleAction.user_id == action.user_id,
            RecycleAction.id != action.id,
            RecycleAction.created_at <= action.created_at
        )
        if same_point:
            query = query.filter(RecycleAction.recycling_point_id == action.recycling_point_id)
        return query.order_by(RecycleAction.created_at.desc()).first()

    def _deny(self, action: RecycleAction, reason: str) -> None:
        logger.warning(f"Reward denied for action {action.id}: {reason}")
        raise RewardLimitReached(reason)

    def _update_streak(self, user: User, now: datetime) -> None:
        today = now.date()
        if user.last_action_at is None:
            user.streak_days = 1
        else:
            last_day = user.last_action_at.date()
            if last_day == today - timedelta(days=1):
                user.streak_days += 1
            elif last_day < today - timedelta(days=1):
                user.streak_days = 1
            # Same day keeps the streak

        user.last_action_at = now

    def _get_reward(self, db: Session, action_id: str) -> Optional[Reward]:
        return db.query(Reward).filter(Reward.action_id == action_id).first()

    def get_user_rewards(
        self,
        db: Session,
        user_id: str,
        limit: int = 50,
        offset: int = 0
    ) -> List[Reward]:
        """Rewards for a user, newest first"""
        return db.query(Reward).filter(
            Reward.user_id == user_id
        ).order_by(Reward.created_at.desc()).offset(offset).limit(limit).all()

    def get_daily_summary(
        self,
        db: Session,
        user_id: str,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Today's points against the daily cap"""
        now = now or utcnow()
        day_start = datetime(now.year, now.month, now.day)

        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            raise IntegrityFailure(f"User not found: {user_id}")

        points_today, rewards_today = db.query(
            func.coalesce(func.sum(Reward.final_points), 0),
            func.count(Reward.id)
        ).filter(
            Reward.user_id == user_id,
            Reward.created_at >= day_start
        ).one()

        total_points = db.query(func.coalesce(func.sum(Reward.final_points), 0)).filter(
            Reward.user_id == user_id
        ).scalar() or 0

        return {
            "user_id": user_id,
            "date": day_start.date().isoformat(),
            "points_today": int(points_today or 0),
            "rewards_today": int(rewards_today or 0),
            "daily_limit": self.MAX_DAILY_POINTS,
            "remaining_today": max(0, self.MAX_DAILY_POINTS - int(points_today or 0)),
            "total_points": int(total_points),
            "streak_days": user.streak_days,
            "streak_multiplier": self.streak_multiplier(user.streak_days),
            "trust_multiplier": TrustService.multiplier_for(user.trust_score),
        }


# Singleton instance
rewards_service = RewardsService()
