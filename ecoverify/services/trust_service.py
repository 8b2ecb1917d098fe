"""
Trust Ledger - Per-user trust score with an append-only history

Every change to User.trust_score goes through this service. The user row is
locked (SELECT ... FOR UPDATE) for the read-modify-write and the history row
is committed together with the new score.
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, Any, Iterable, List, Mapping, Optional

from sqlalchemy.orm import Session

from ecoverify.config import settings
from ecoverify.db.models import User, TrustHistory
from ecoverify.exceptions import IntegrityFailure
from ecoverify.utils import utcnow

logger = logging.getLogger(__name__)

INCREASE_REASON = "verified_action"


class TrustService:
    """Service for trust score adjustments"""

    INCREASE_AMOUNT = 0.01
    INCREASE_COOLDOWN = timedelta(hours=1)
    DECAY_WINDOW = timedelta(days=30)
    DECAY_FACTOR = 0.5

    # Multiplier tiers
    BLOCK_THRESHOLD = 0.3
    REDUCED_THRESHOLD = 0.5

    def __init__(self, penalties: Optional[Mapping[str, float]] = None):
        self.penalties = penalties if penalties is not None else settings.penalty_table()

    def increase(
        self,
        db: Session,
        user_id: str,
        action_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> float:
        """
        Reward a verified action with +0.01 trust.

        At most one increase per user per hour; inside the cooldown this is a
        no-op that returns the current score.
        """
        now = now or utcnow()
        try:
            user = self._lock_user(db, user_id)

            last_increase = db.query(TrustHistory).filter(
                TrustHistory.user_id == user_id,
                TrustHistory.delta > 0
            ).order_by(TrustHistory.created_at.desc()).first()

            if last_increase and now - last_increase.created_at < self.INCREASE_COOLDOWN:
                db.commit()
                logger.debug(f"Trust increase for user {user_id} skipped (rate limited)")
                return user.trust_score

            new_score = self._apply(db, user, self.INCREASE_AMOUNT, INCREASE_REASON, action_id, now)
            db.commit()
            return new_score
        except Exception:
            db.rollback()
            raise

    def penalize(
        self,
        db: Session,
        user_id: str,
        violation: str,
        action_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> float:
        """Apply the fixed penalty for a violation kind and commit"""
        try:
            new_score = self.apply_penalty(db, user_id, violation, action_id, now)
            db.commit()
            return new_score
        except Exception:
            db.rollback()
            raise

    def apply_penalty(
        self,
        db: Session,
        user_id: str,
        violation: str,
        action_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> float:
        """
        Apply a penalty inside the caller's transaction (no commit).

        The penalty is halved when the user has earlier violations and all of
        them are older than DECAY_WINDOW.
        """
        if violation not in self.penalties:
            raise IntegrityFailure(f"Unknown violation kind: {violation}")

        now = now or utcnow()
        user = self._lock_user(db, user_id)

        penalty = self.penalties[violation]
        if self._violations_decayed(db, user_id, now):
            penalty *= self.DECAY_FACTOR

        new_score = self._apply(db, user, penalty, violation, action_id, now)
        logger.warning(
            f"Trust penalty {violation} ({penalty:+.3f}) for user {user_id}, "
            f"score now {new_score:.3f}"
        )
        return new_score

    @classmethod
    def multiplier_for(cls, score: float) -> float:
        """Reward multiplier for a trust score"""
        if score < cls.BLOCK_THRESHOLD:
            return 0.0
        if score < cls.REDUCED_THRESHOLD:
            return 0.5
        return 1.0

    def get_history(
        self,
        db: Session,
        user_id: str,
        limit: int = 50
    ) -> List[TrustHistory]:
        """Most recent trust adjustments first"""
        return db.query(TrustHistory).filter(
            TrustHistory.user_id == user_id
        ).order_by(TrustHistory.created_at.desc()).limit(limit).all()

    def replay_history(
        self,
        rows: Iterable[TrustHistory],
        initial_score: Optional[float] = None
    ) -> float:
        """Rebuild a score from its history, clamping at every step"""
        score = settings.DEFAULT_TRUST_SCORE if initial_score is None else initial_score
        for row in sorted(rows, key=lambda r: r.created_at):
            score = max(0.0, min(1.0, score + row.delta))
        return score

    def get_summary(self, db: Session, user_id: str) -> Dict[str, Any]:
        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            raise IntegrityFailure(f"User not found: {user_id}")
        return {
            "user_id": user.id,
            "trust_score": round(user.trust_score, 4),
            "reward_multiplier": self.multiplier_for(user.trust_score),
        }

    def _lock_user(self, db: Session, user_id: str) -> User:
        user = db.query(User).filter(User.id == user_id).with_for_update().first()
        if not user:
            raise IntegrityFailure(f"User not found: {user_id}")
        return user

    def _violations_decayed(self, db: Session, user_id: str, now: datetime) -> bool:
        violations = db.query(TrustHistory.created_at).filter(
            TrustHistory.user_id == user_id,
            TrustHistory.delta < 0
        ).all()
        if not violations:
            return False
        cutoff = now - self.DECAY_WINDOW
        return all(created_at < cutoff for (created_at,) in violations)

    def _apply(
        self,
        db: Session,
        user: User,
        delta: float,
        reason: str,
        action_id: Optional[str],
        now: datetime
    ) -> float:
        previous = user.trust_score
        new_score = max(0.0, min(1.0, previous + delta))

        user.trust_score = new_score
        db.add(TrustHistory(
            user_id=user.id,
            previous_score=previous,
            new_score=new_score,
            delta=delta,
            reason=reason,
            related_action_id=action_id,
            created_at=now
        ))
        db.flush()

        logger.info(f"Trust score for user {user.id}: {previous:.3f} -> {new_score:.3f} ({reason})")
        return new_score


# Singleton instance
trust_service = TrustService()
