"""
Action Service - Orchestrates the lifecycle of a recycling action

1. submit(): idempotency check, image store, PENDING row, dispatch
2. verify_and_process(): pipeline decision, then trust / reward / fraud /
   audit side effects, each in its own transaction

The submitter only ever waits for step 1.
"""
import asyncio
import logging
from datetime import datetime
from typing import Dict, Any, Callable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ecoverify.config import settings
from ecoverify.db.database import SessionLocal
from ecoverify.db.models import (
    RecycleAction, RecyclingPoint, ActionStatus, AuditActionType
)
from ecoverify.exceptions import ValidationFailure, ConflictFailure, RewardLimitReached
from ecoverify.services.audit_service import AuditService, audit_service
from ecoverify.services.fraud_service import FraudService, fraud_service
from ecoverify.services.rewards_service import RewardsService, rewards_service
from ecoverify.services.storage_service import ImageStore, image_store
from ecoverify.services.trust_service import TrustService, trust_service
from ecoverify.services.user_service import UserService, user_service
from ecoverify.services.verification_service import (
    VerificationService, VerificationResult, verification_service
)
from ecoverify.utils import perceptual_hash

logger = logging.getLogger(__name__)

ENTITY_TYPE = "recycle_action"

# Keeps inline verification tasks referenced until they finish
_background_tasks = set()


def dispatch_verification(action_id: str) -> None:
    """Hand a freshly created action to the background verifier"""
    if settings.ACTION_VERIFY_MODE == "inline":
        task = asyncio.get_running_loop().create_task(_verify_inline(action_id))
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)
        return

    from ecoverify.worker.tasks import verify_action
    verify_action.delay(action_id)


async def _verify_inline(action_id: str) -> None:
    db = SessionLocal()
    try:
        await action_service.verify_and_process(db, action_id)
    except Exception as e:
        logger.error(f"Inline verification failed for action {action_id}: {e}")
    finally:
        db.close()


class ActionService:
    """Sole owner of the recycle action lifecycle"""

    def __init__(
        self,
        pipeline: Optional[VerificationService] = None,
        trust: Optional[TrustService] = None,
        rewards: Optional[RewardsService] = None,
        fraud: Optional[FraudService] = None,
        audit: Optional[AuditService] = None,
        store: Optional[ImageStore] = None,
        users: Optional[UserService] = None,
        dispatcher: Optional[Callable[[str], None]] = None
    ):
        self.pipeline = pipeline or verification_service
        self.trust = trust or trust_service
        self.rewards = rewards or rewards_service
        self.fraud = fraud or fraud_service
        self.audit = audit or audit_service
        self.store = store or image_store
        self.users = users or user_service
        self.dispatcher = dispatcher or dispatch_verification

    def submit(
        self,
        db: Session,
        user_id: str,
        payload: Dict[str, Any],
        image_bytes: bytes,
        filename: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Accept a submission and schedule its verification.

        A repeated idempotency key returns the original action's outcome
        without storing anything.
        """
        existing = self._find_by_idempotency_key(db, payload["idempotency_key"])
        if existing:
            logger.info(f"Duplicate submission for idempotency key, returning action {existing.id}")
            self._redispatch_if_pending(existing)
            return self.outcome(existing, duplicate=True)

        point = db.query(RecyclingPoint).filter(
            RecyclingPoint.id == payload["recycling_point_id"]
        ).first()
        if not point or not point.is_active:
            raise ValidationFailure("Recycling point not found or inactive", stage="submission")

        self.users.get_or_create_user(db, user_id)

        stored = self.store.store(image_bytes, user_id, filename)
        claimed_hash = payload.get("image_hash")
        if claimed_hash and claimed_hash.lower() != stored.content_hash:
            raise ValidationFailure(
                "Image verification failed. Please try uploading again.",
                stage="submission",
                suggestions=["Try: Upload the original photo without editing or compressing it"]
            )

        try:
            action = self._create_action(db, user_id, payload, stored.url, stored.content_hash, image_bytes)
        except ConflictFailure as conflict:
            existing = self.get_action(db, conflict.existing_action_id)
            self._redispatch_if_pending(existing)
            return self.outcome(existing, duplicate=True)

        self.audit.log(
            db, AuditActionType.ACTION_SUBMITTED,
            user_id=user_id, entity_type=ENTITY_TYPE, entity_id=action.id,
            details={"recycling_point_id": point.id, "material": action.claimed_material}
        )

        self.dispatcher(action.id)
        logger.info(f"Action {action.id} submitted by user {user_id}, verification dispatched")

        return {
            "action_id": action.id,
            "status": ActionStatus.PENDING.value,
            "verified": False,
            "points": None,
            "verification_score": None,
            "reason": "Verification in progress",
            "duplicate": False,
        }

    def _redispatch_if_pending(self, action: RecycleAction) -> None:
        """
        A still-PENDING action may have lost its dispatch (broker down when
        it was submitted). Hand it over again; the decision write only
        succeeds once, so a second run returns the stored outcome.
        """
        if action.status != ActionStatus.PENDING.value:
            return
        logger.info(f"Action {action.id} still pending, dispatching verification again")
        self.dispatcher(action.id)

    def _create_action(
        self,
        db: Session,
        user_id: str,
        payload: Dict[str, Any],
        image_url: str,
        content_hash: str,
        image_bytes: bytes
    ) -> RecycleAction:
        action = RecycleAction(
            user_id=user_id,
            recycling_point_id=payload["recycling_point_id"],
            claimed_material=payload["material"],
            detection_confidence=payload["detection_confidence"],
            bounding_box_area_ratio=payload["bounding_box_area_ratio"],
            frame_count_detected=payload["frame_count_detected"],
            motion_score=payload["motion_score"],
            frame_samples=payload.get("frame_samples") or [],
            image_content_hash=content_hash,
            perceptual_hash=payload.get("perceptual_hash") or perceptual_hash(image_bytes),
            image_url=image_url,
            gps_lat=payload["gps_lat"],
            gps_lng=payload["gps_lng"],
            gps_accuracy_m=payload["gps_accuracy_m"],
            gps_altitude_m=payload.get("gps_altitude_m"),
            idempotency_key=payload["idempotency_key"],
            status=ActionStatus.PENDING.value
        )
        try:
            db.add(action)
            db.commit()
        except IntegrityError:
            db.rollback()
            existing = self._find_by_idempotency_key(db, payload["idempotency_key"])
            if existing:
                raise ConflictFailure(existing.id)
            raise
        return action

    async def verify_and_process(self, db: Session, action_id: str) -> VerificationResult:
        """
        Run the pipeline and apply the outcome's side effects.

        Side effects run only for the run that decided the action; a failure
        in one of them is logged and does not undo the decision.
        """
        result = await self.pipeline.verify(db, action_id)
        if not result.fresh:
            return result

        action = self.get_action(db, action_id)
        user_id = action.user_id

        if result.verified:
            self._increase_trust(db, user_id, action_id)
            points = self._award(db, user_id, action_id)
            self.audit.log(
                db, AuditActionType.ACTION_VERIFIED,
                user_id=user_id, entity_type=ENTITY_TYPE, entity_id=action_id,
                details={"points": points, "score": result.score, "ai_score": result.ai_score}
            )
            logger.info(f"Action {action_id} verified: {points} points awarded")
            return result

        self._penalize(db, user_id, action_id, result.violation)

        if not result.gate_rejection or settings.FRAUD_CHECK_ON_GATE_REJECTION:
            self._check_fraud(db, user_id, action_id)

        self.audit.log(
            db, AuditActionType.ACTION_REJECTED,
            user_id=user_id, entity_type=ENTITY_TYPE, entity_id=action_id,
            details={"reason": result.reason, "stage": result.stage, "score": result.score}
        )
        logger.warning(f"Action {action_id} rejected: {result.reason}")
        return result

    def _increase_trust(self, db: Session, user_id: str, action_id: str) -> None:
        try:
            new_score = self.trust.increase(db, user_id, action_id)
        except Exception as e:
            logger.error(f"Trust increase failed for action {action_id}: {e}")
            return
        self.audit.log(
            db, AuditActionType.TRUST_SCORE_CHANGED,
            user_id=user_id, entity_type=ENTITY_TYPE, entity_id=action_id,
            details={"trust_score": new_score, "reason": "verified_action"}
        )

    def _penalize(self, db: Session, user_id: str, action_id: str, violation: Optional[str]) -> None:
        try:
            new_score = self.trust.penalize(db, user_id, violation, action_id)
        except Exception as e:
            logger.error(f"Trust penalty failed for action {action_id}: {e}")
            return
        self.audit.log(
            db, AuditActionType.TRUST_SCORE_CHANGED,
            user_id=user_id, entity_type=ENTITY_TYPE, entity_id=action_id,
            details={"trust_score": new_score, "reason": violation}
        )

    def _award(self, db: Session, user_id: str, action_id: str) -> Optional[int]:
        try:
            points = self.rewards.calculate_and_award(db, action_id)
        except RewardLimitReached as e:
            self.audit.log(
                db, AuditActionType.REWARD_DENIED,
                user_id=user_id, entity_type=ENTITY_TYPE, entity_id=action_id,
                details={"reason": e.reason}
            )
            return None
        except Exception as e:
            logger.error(f"Reward calculation failed for action {action_id}: {e}")
            return None

        self.audit.log(
            db, AuditActionType.REWARD_AWARDED,
            user_id=user_id, entity_type=ENTITY_TYPE, entity_id=action_id,
            details={"points": points}
        )
        return points

    def _check_fraud(self, db: Session, user_id: str, action_id: str) -> None:
        try:
            fraud = self.fraud.check_patterns(db, action_id)
        except Exception as e:
            logger.error(f"Fraud check failed for action {action_id}: {e}")
            return
        if fraud.flagged and fraud.reasons:
            self.audit.log(
                db, AuditActionType.ACTION_FLAGGED,
                user_id=user_id, entity_type=ENTITY_TYPE, entity_id=action_id,
                details={"reasons": fraud.reasons}
            )

    def outcome(self, action: RecycleAction, duplicate: bool = False) -> Dict[str, Any]:
        """Submission response for an existing action"""
        return {
            "action_id": action.id,
            "status": action.status,
            "verified": action.status == ActionStatus.VERIFIED.value,
            "points": action.points_awarded,
            "verification_score": action.verification_score,
            "reason": action.verification_reason or (
                "Verification in progress" if action.status == ActionStatus.PENDING.value else None
            ),
            "duplicate": duplicate,
        }

    def get_action(self, db: Session, action_id: str) -> Optional[RecycleAction]:
        return db.query(RecycleAction).filter(RecycleAction.id == action_id).first()

    def list_user_actions(
        self,
        db: Session,
        user_id: str,
        status: Optional[str] = None,
        material: Optional[str] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        page: int = 1,
        limit: int = 20,
        sort_order: str = "desc"
    ) -> Tuple[List[RecycleAction], int]:
        """Paginated actions of one user with optional filters"""
        query = db.query(RecycleAction).filter(RecycleAction.user_id == user_id)

        if status:
            query = query.filter(RecycleAction.status == status)
        if material:
            query = query.filter(RecycleAction.claimed_material == material)
        if from_date:
            query = query.filter(RecycleAction.created_at >= from_date)
        if to_date:
            query = query.filter(RecycleAction.created_at <= to_date)

        total = query.count()

        order = RecycleAction.created_at.asc() if sort_order == "asc" else RecycleAction.created_at.desc()
        items = query.order_by(order).offset((page - 1) * limit).limit(limit).all()
        return items, total

    def _find_by_idempotency_key(self, db: Session, key: str) -> Optional[RecycleAction]:
        return db.query(RecycleAction).filter(RecycleAction.idempotency_key == key).first()


# Singleton instance
action_service = ActionService()
