"""
Verification Pipeline - Five ordered gates over one recycling action

Stages:
1. Object detection gate (on-device detector metadata)
2. Location gate (GPS accuracy, radius, material, travel speed, altitude)
3. Uniqueness gate (exact content hash, perceptual hash)
4. Frame-sequence gate (timing and on-screen stability)
5. AI classification (never fatal; neutral 0.5 when unavailable)

The first failing stage short-circuits with score 0. Stage 1-4 failures never
reach the AI classifier.
"""
import logging
from dataclasses import dataclass, field, asdict
from typing import Dict, Any, Optional, List, Tuple

from sqlalchemy.orm import Session

from ecoverify.db.models import (
    RecycleAction, RecyclingPoint, User, ActionStatus, ViolationKind
)
from ecoverify.exceptions import ValidationFailure, ExternalServiceFailure, IntegrityFailure
from ecoverify.services.ai_classifier_service import AIClassifierService, ai_classifier_service
from ecoverify.utils import (
    haversine_distance_m, hamming_distance, population_std_dev, utcnow
)

logger = logging.getLogger(__name__)

THRESHOLDS = {
    # Object detection
    "min_confidence": 0.80,
    "min_bounding_box_area": 0.25,
    "min_frame_count": 4,
    "min_motion_score": 0.30,

    # Location
    "max_gps_accuracy_m": 20.0,
    "max_speed_mps": 5.0,
    "max_jump_m": 50.0,
    "speed_window_sec": 10.0,
    "max_altitude_diff_m": 10.0,

    # Uniqueness
    "near_duplicate_max_bits": 5,
    "uniqueness_full_score_bits": 10,
    "perceptual_history_size": 100,

    # Frame sequence
    "min_frames": 4,
    "frame_window_ms": 2000,
    "max_frame_gap_ms": 500,
    "max_bbox_std_dev": 0.2,
    "confidence_std_dev_scale": 0.2,

    # Decision
    "min_verification_score": 0.85,
    "ai_neutral_score": 0.5,
}

SCORE_WEIGHTS = {
    "confidence": 0.20,
    "consistency": 0.15,
    "motion": 0.10,
    "location": 0.15,
    "uniqueness": 0.10,
    "ai": 0.20,
    "trust": 0.10,
}

MESSAGES = {
    "confidence_too_low": "Object detection confidence is too low. Please ensure the object is clearly visible and well-lit.",
    "bounding_box_too_small": "The detected object is too small in the image. Please move closer or ensure the object fills more of the frame.",
    "insufficient_frames": "Not enough frames detected. Please keep the camera steady and ensure the object is visible for at least 4 frames.",
    "motion_too_low": "Not enough motion detected. Please move the camera slightly while capturing.",
    "gps_accuracy_too_low": "GPS accuracy is too low. Please wait for better GPS signal or move to an open area.",
    "too_far_from_point": "You are too far from the recycling point. Please move closer to the designated location.",
    "material_not_allowed": "This material type is not accepted at this recycling point. Please check the point details.",
    "impossible_speed": "Location change detected that is not physically possible. Please ensure GPS is accurate.",
    "impossible_jump": "Impossible location jump detected. Please ensure you are at the correct location.",
    "altitude_mismatch": "Your altitude does not match the recycling point. Please ensure you are at the correct location.",
    "duplicate_image": "This image has already been submitted. Please capture a new image.",
    "image_too_similar": "This image is too similar to a previous submission. Please capture a new, different image.",
    "insufficient_frame_metadata": "Not enough frame data was provided. Please ensure all frames are captured and sent.",
    "bounding_box_inconsistent": "Object position changed too much between frames. Please keep the camera steady.",
}

HINTS = {
    "confidence_too_low": "Try: Better lighting, closer distance, clearer object",
    "bounding_box_too_small": "Try: Move closer to the object, ensure it fills 25%+ of frame",
    "insufficient_frames": "Try: Keep camera steady, ensure object visible for 4+ frames",
    "motion_too_low": "Try: Slight camera movement while capturing",
    "gps_accuracy_too_low": "Try: Wait for GPS lock, move to open area",
    "too_far_from_point": "Try: Move closer to the recycling point marker",
}

SCORE_REJECTION_SUGGESTIONS = [
    "Try: Ensure object is clearly visible and well-lit",
    "Try: Keep camera steady during capture",
    "Try: Move closer to the recycling point",
    "Try: Wait for better GPS accuracy",
]

STAGE_OBJECT_DETECTION = "object_detection"
STAGE_LOCATION = "location"
STAGE_UNIQUENESS = "uniqueness"
STAGE_FRAME_SEQUENCE = "frame_sequence"
STAGE_SCORE = "score_threshold"


def _gate_failure(
    reason: str,
    stage: str,
    suggestions: List[str],
    details: Dict[str, Any],
    violation: Optional[str] = None
) -> ValidationFailure:
    return ValidationFailure(
        reason, stage=stage, suggestions=suggestions, violation=violation, details=details
    )


@dataclass
class VerificationResult:
    action_id: str
    verified: bool
    score: float
    status: str
    reason: Optional[str] = None
    ai_score: Optional[float] = None
    stage: Optional[str] = None
    violation: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    suggestions: List[str] = field(default_factory=list)
    # False when the outcome was decided by an earlier run
    fresh: bool = True

    @property
    def gate_rejection(self) -> bool:
        """True when one of the stage 1-4 gates refused the action"""
        return not self.verified and self.stage not in (None, STAGE_SCORE)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_action(cls, action: RecycleAction) -> "VerificationResult":
        """Rebuild the stored outcome of an already decided action"""
        details = dict(action.verification_details or {})
        return cls(
            action_id=action.id,
            verified=action.status == ActionStatus.VERIFIED.value,
            score=action.verification_score or 0.0,
            status=action.status,
            reason=action.verification_reason,
            ai_score=action.ai_score,
            stage=action.verification_stage,
            violation=details.pop("violation", None),
            details=details.get("stages", {}),
            suggestions=details.get("suggestions", []),
            fresh=False
        )


class VerificationService:
    """
    Runs the five-stage pipeline for one action and writes the decision.

    The decision write is conditional on status=PENDING so a second run on
    the same action returns the first run's outcome.
    """

    def __init__(self, classifier: Optional[AIClassifierService] = None):
        self.classifier = classifier or ai_classifier_service

    async def verify(self, db: Session, action_id: str) -> VerificationResult:
        action = db.query(RecycleAction).filter(RecycleAction.id == action_id).first()
        if not action:
            raise IntegrityFailure(f"Recycle action not found: {action_id}")

        if action.status != ActionStatus.PENDING.value:
            logger.info(f"Action {action_id} already {action.status}, returning stored outcome")
            return VerificationResult.from_action(action)

        point = db.query(RecyclingPoint).filter(
            RecyclingPoint.id == action.recycling_point_id
        ).first()
        if not point:
            raise IntegrityFailure(f"Recycling point not found: {action.recycling_point_id}")

        stages: Dict[str, Any] = {}
        try:
            stages[STAGE_OBJECT_DETECTION] = self._check_object_detection(action)
            location_score, stages[STAGE_LOCATION] = self._check_location(db, action, point)
            uniqueness_score, stages[STAGE_UNIQUENESS] = self._check_uniqueness(db, action)
            consistency_score, stages[STAGE_FRAME_SEQUENCE] = self._check_frame_sequence(action)
        except ValidationFailure as failure:
            return self._reject_at_gate(db, action, failure, stages)

        image_url = action.image_url
        claimed_material = action.claimed_material
        detection_confidence = action.detection_confidence
        motion_score = action.motion_score

        # Close the read transaction before the network call
        db.commit()

        ai_score, ai_result, stages["ai_classification"] = await self._classify(
            image_url, claimed_material
        )

        user = db.query(User).filter(User.id == action.user_id).first()
        if not user:
            raise IntegrityFailure(f"User not found: {action.user_id}")
        trust_score = user.trust_score

        score = self.calculate_score(
            confidence=detection_confidence,
            consistency_score=consistency_score,
            motion_score=motion_score,
            location_score=location_score,
            uniqueness_score=uniqueness_score,
            ai_score=ai_score,
            trust_score=trust_score
        )
        verified = score >= THRESHOLDS["min_verification_score"]

        if verified:
            reason = None
            suggestions: List[str] = []
            violation = None
            stage = None
        else:
            reason = (
                f"Verification score {score * 100:.1f}% is below required "
                f"{THRESHOLDS['min_verification_score'] * 100:.0f}%"
            )
            suggestions = list(SCORE_REJECTION_SUGGESTIONS)
            violation = ViolationKind.REJECTED_VERIFICATION.value
            stage = STAGE_SCORE

        result = VerificationResult(
            action_id=action_id,
            verified=verified,
            score=score,
            status=ActionStatus.VERIFIED.value if verified else ActionStatus.REJECTED.value,
            reason=reason,
            ai_score=ai_score,
            stage=stage,
            violation=violation,
            details=stages,
            suggestions=suggestions
        )
        return self._write_decision(db, action_id, result, ai_result)

    @staticmethod
    def calculate_score(
        confidence: float,
        consistency_score: float,
        motion_score: float,
        location_score: float,
        uniqueness_score: float,
        ai_score: float,
        trust_score: float
    ) -> float:
        """Weighted verification score clamped to [0, 1]"""
        score = (
            SCORE_WEIGHTS["confidence"] * confidence
            + SCORE_WEIGHTS["consistency"] * consistency_score
            + SCORE_WEIGHTS["motion"] * min(motion_score / 0.5, 1.0)
            + SCORE_WEIGHTS["location"] * location_score
            + SCORE_WEIGHTS["uniqueness"] * uniqueness_score
            + SCORE_WEIGHTS["ai"] * ai_score
            + SCORE_WEIGHTS["trust"] * trust_score
        )
        return max(0.0, min(1.0, score))

    # ---- stage 1 ----

    def _check_object_detection(self, action: RecycleAction) -> Dict[str, Any]:
        issues = []
        suggestions = []
        reasons = []

        if action.detection_confidence < THRESHOLDS["min_confidence"]:
            issues.append(
                f"Confidence {action.detection_confidence * 100:.1f}% is below required "
                f"{THRESHOLDS['min_confidence'] * 100:.0f}%"
            )
            reasons.append(MESSAGES["confidence_too_low"])
            suggestions.append(HINTS["confidence_too_low"])

        if action.bounding_box_area_ratio < THRESHOLDS["min_bounding_box_area"]:
            issues.append(
                f"Object covers {action.bounding_box_area_ratio * 100:.1f}% of frame, needs at least "
                f"{THRESHOLDS['min_bounding_box_area'] * 100:.0f}%"
            )
            reasons.append(MESSAGES["bounding_box_too_small"])
            suggestions.append(HINTS["bounding_box_too_small"])

        if action.frame_count_detected < THRESHOLDS["min_frame_count"]:
            issues.append(
                f"Only {action.frame_count_detected} frames detected, need at least "
                f"{THRESHOLDS['min_frame_count']}"
            )
            reasons.append(MESSAGES["insufficient_frames"])
            suggestions.append(HINTS["insufficient_frames"])

        if action.motion_score < THRESHOLDS["min_motion_score"]:
            issues.append(
                f"Motion score {action.motion_score * 100:.1f}% is below required "
                f"{THRESHOLDS['min_motion_score'] * 100:.0f}%"
            )
            reasons.append(MESSAGES["motion_too_low"])
            suggestions.append(HINTS["motion_too_low"])

        details = {
            "confidence": action.detection_confidence,
            "bounding_box_area": action.bounding_box_area_ratio,
            "frame_count": action.frame_count_detected,
            "motion_score": action.motion_score,
        }
        if issues:
            details["issues"] = issues
            raise _gate_failure(reasons[0], STAGE_OBJECT_DETECTION, suggestions, details)

        details["passed"] = True
        return details

    # ---- stage 2 ----

    def _check_location(
        self,
        db: Session,
        action: RecycleAction,
        point: RecyclingPoint
    ) -> Tuple[float, Dict[str, Any]]:
        details: Dict[str, Any] = {"gps_accuracy": action.gps_accuracy_m}

        if action.gps_accuracy_m > THRESHOLDS["max_gps_accuracy_m"]:
            details["issues"] = [
                f"GPS accuracy {action.gps_accuracy_m:.1f}m exceeds maximum "
                f"{THRESHOLDS['max_gps_accuracy_m']:.0f}m"
            ]
            raise _gate_failure(
                MESSAGES["gps_accuracy_too_low"], STAGE_LOCATION,
                [HINTS["gps_accuracy_too_low"]], details,
                violation=ViolationKind.GPS_ACCURACY.value
            )

        distance = haversine_distance_m(
            action.gps_lat, action.gps_lng, point.latitude, point.longitude
        )
        details["distance"] = round(distance, 2)
        details["radius"] = point.radius_m

        if distance > point.radius_m:
            details["issues"] = [
                f"Distance {distance:.1f}m exceeds recycling point radius {point.radius_m:.0f}m"
            ]
            raise _gate_failure(
                MESSAGES["too_far_from_point"], STAGE_LOCATION,
                [HINTS["too_far_from_point"]], details
            )

        if action.claimed_material not in (point.allowed_materials or []):
            details["issues"] = [
                f"Material {action.claimed_material} not allowed at this recycling point"
            ]
            raise _gate_failure(
                MESSAGES["material_not_allowed"], STAGE_LOCATION,
                [f"Accepted here: {', '.join(point.allowed_materials or [])}"], details
            )

        self._check_travel(db, action, details)

        if point.altitude_m is not None and action.gps_altitude_m is not None:
            altitude_diff = abs(action.gps_altitude_m - point.altitude_m)
            details["altitude_diff"] = round(altitude_diff, 2)
            if altitude_diff > THRESHOLDS["max_altitude_diff_m"]:
                details["issues"] = [
                    f"Altitude difference {altitude_diff:.1f}m exceeds maximum "
                    f"{THRESHOLDS['max_altitude_diff_m']:.0f}m"
                ]
                raise _gate_failure(
                    MESSAGES["altitude_mismatch"], STAGE_LOCATION,
                    ["Please ensure you are at the correct location"], details,
                    violation=ViolationKind.GPS_ANOMALY.value
                )

        accuracy_score = 1 - min(action.gps_accuracy_m / THRESHOLDS["max_gps_accuracy_m"], 1.0)
        distance_score = 1 - min(distance / point.radius_m, 1.0) if point.radius_m > 0 else 0.0
        location_score = (accuracy_score + distance_score) / 2

        details["passed"] = True
        details["score"] = round(location_score, 4)
        return location_score, details

    def _check_travel(self, db: Session, action: RecycleAction, details: Dict[str, Any]) -> None:
        """Reject physically impossible movement since the user's previous action"""
        previous = db.query(RecycleAction).filter(
            RecycleAction.user_id == action.user_id,
            RecycleAction.id != action.id,
            RecycleAction.created_at <= action.created_at
        ).order_by(RecycleAction.created_at.desc()).first()

        if not previous:
            return

        time_diff = (action.created_at - previous.created_at).total_seconds()
        if not 0 <= time_diff < THRESHOLDS["speed_window_sec"]:
            return

        travelled = haversine_distance_m(
            action.gps_lat, action.gps_lng, previous.gps_lat, previous.gps_lng
        )

        if time_diff > 0:
            speed = travelled / time_diff
            if speed > THRESHOLDS["max_speed_mps"]:
                details["issues"] = [
                    f"Impossible speed detected: {speed:.2f} m/s "
                    f"(max: {THRESHOLDS['max_speed_mps']} m/s)"
                ]
                raise _gate_failure(
                    MESSAGES["impossible_speed"], STAGE_LOCATION,
                    ["Please ensure GPS is accurate and you are at the correct location"],
                    details, violation=ViolationKind.GPS_ANOMALY.value
                )

        if travelled > THRESHOLDS["max_jump_m"]:
            details["issues"] = [
                f"Impossible location jump: {travelled:.1f}m in {time_diff:.1f}s"
            ]
            raise _gate_failure(
                MESSAGES["impossible_jump"], STAGE_LOCATION,
                ["Please ensure you are at the correct location and GPS is accurate"],
                details, violation=ViolationKind.GPS_ANOMALY.value
            )

    # ---- stage 3 ----

    def _check_uniqueness(self, db: Session, action: RecycleAction) -> Tuple[float, Dict[str, Any]]:
        duplicate = db.query(RecycleAction.id).filter(
            RecycleAction.image_content_hash == action.image_content_hash,
            RecycleAction.id != action.id
        ).first()
        if duplicate:
            raise _gate_failure(
                MESSAGES["duplicate_image"], STAGE_UNIQUENESS,
                ["Please capture a new, different image"],
                {"issues": ["This exact image has already been submitted"]},
                violation=ViolationKind.DUPLICATE_IMAGE.value
            )

        nearest: Optional[int] = None
        if action.perceptual_hash:
            recent = db.query(RecycleAction.perceptual_hash).filter(
                RecycleAction.user_id == action.user_id,
                RecycleAction.id != action.id,
                RecycleAction.perceptual_hash.isnot(None)
            ).order_by(RecycleAction.created_at.desc()).limit(
                THRESHOLDS["perceptual_history_size"]
            ).all()

            for (other_hash,) in recent:
                try:
                    distance = hamming_distance(action.perceptual_hash, other_hash)
                except ValueError:
                    logger.debug(f"Skipping incomparable perceptual hash on action {action.id}")
                    continue
                if nearest is None or distance < nearest:
                    nearest = distance

            if nearest is not None and nearest <= THRESHOLDS["near_duplicate_max_bits"]:
                raise _gate_failure(
                    MESSAGES["image_too_similar"], STAGE_UNIQUENESS,
                    ["Please capture a new, different image from a different angle"],
                    {
                        "hamming_distance": nearest,
                        "issues": [
                            f"Image is too similar to a previous submission (similarity: {nearest}/64)"
                        ]
                    },
                    violation=ViolationKind.NEAR_DUPLICATE_IMAGE.value
                )

        full_bits = THRESHOLDS["uniqueness_full_score_bits"]
        if nearest is None or nearest > full_bits:
            uniqueness_score = 1.0
        else:
            uniqueness_score = nearest / full_bits

        return uniqueness_score, {
            "passed": True,
            "hamming_distance": nearest,
            "score": uniqueness_score
        }

    # ---- stage 4 ----

    def _check_frame_sequence(self, action: RecycleAction) -> Tuple[float, Dict[str, Any]]:
        samples = list(action.frame_samples or [])
        if len(samples) < THRESHOLDS["min_frames"]:
            raise _gate_failure(
                MESSAGES["insufficient_frame_metadata"], STAGE_FRAME_SEQUENCE,
                ["Please ensure all frames are captured and sent"],
                {"frames": len(samples), "issues": ["Not enough frame data provided"]}
            )

        frames = sorted(samples, key=lambda f: f["timestamp_ms"])
        window_ms = frames[-1]["timestamp_ms"] - frames[0]["timestamp_ms"]
        max_gap_ms = 0

        issues = []
        suggestions = []

        if window_ms > THRESHOLDS["frame_window_ms"]:
            issues.append(
                f"Frames captured over {window_ms / 1000:.1f}s, must be within "
                f"{THRESHOLDS['frame_window_ms'] / 1000:.1f}s"
            )
            suggestions.append("Try: Capture all frames quickly within 2 seconds")

        for prev, curr in zip(frames, frames[1:]):
            gap = curr["timestamp_ms"] - prev["timestamp_ms"]
            max_gap_ms = max(max_gap_ms, gap)
            if gap > THRESHOLDS["max_frame_gap_ms"]:
                issues.append(
                    f"Gap of {gap}ms between frames exceeds maximum {THRESHOLDS['max_frame_gap_ms']}ms"
                )
                if "Try: Capture frames continuously without pauses" not in suggestions:
                    suggestions.append("Try: Capture frames continuously without pauses")

        std_x = population_std_dev(f["bounding_box"]["x"] for f in frames)
        std_y = population_std_dev(f["bounding_box"]["y"] for f in frames)
        if std_x > THRESHOLDS["max_bbox_std_dev"] or std_y > THRESHOLDS["max_bbox_std_dev"]:
            issues.append(
                f"Bounding box moved too much between frames (std dev x={std_x:.3f}, y={std_y:.3f})"
            )
            suggestions.append("Try: Keep the camera steady while capturing")

        details = {
            "frames": len(frames),
            "window_ms": window_ms,
            "max_gap_ms": max_gap_ms,
            "bbox_std_dev_x": round(std_x, 4),
            "bbox_std_dev_y": round(std_y, 4),
        }
        if issues:
            details["issues"] = issues
            raise _gate_failure(issues[0], STAGE_FRAME_SEQUENCE, suggestions, details)

        confidence_std = population_std_dev(f["confidence"] for f in frames)
        consistency_score = 1 - min(confidence_std / THRESHOLDS["confidence_std_dev_scale"], 1.0)

        details["passed"] = True
        details["score"] = round(consistency_score, 4)
        return consistency_score, details

    # ---- stage 5 ----

    async def _classify(
        self,
        image_url: str,
        claimed_material: str
    ) -> Tuple[float, Optional[Dict[str, Any]], Dict[str, Any]]:
        try:
            result = await self.classifier.classify(image_url, claimed_material)
        except ExternalServiceFailure as e:
            logger.warning(f"AI classification unavailable, using neutral score: {e}")
            neutral = THRESHOLDS["ai_neutral_score"]
            ai_result = {"error": str(e), "provider_errors": e.provider_errors}
            return neutral, ai_result, {"available": False, "score": neutral, "error": str(e)}

        ai_score = self.classifier.score_result(result, claimed_material)
        details = {
            "available": True,
            "score": round(ai_score, 4),
            "detected_type": result.object_type,
            "confidence": result.confidence,
            "authentic": result.authentic,
            "provider": result.provider,
        }
        if ai_score < 0.7:
            details["issues"] = ["AI verification score too low"]
        return ai_score, result.to_dict(), details

    # ---- decision ----

    def _reject_at_gate(
        self,
        db: Session,
        action: RecycleAction,
        failure: ValidationFailure,
        stages: Dict[str, Any]
    ) -> VerificationResult:
        stages[failure.stage] = dict(failure.details, passed=False)
        logger.warning(
            f"Action {action.id} rejected at {failure.stage}: {failure.reason}"
        )
        result = VerificationResult(
            action_id=action.id,
            verified=False,
            score=0.0,
            status=ActionStatus.REJECTED.value,
            reason=failure.reason,
            ai_score=None,
            stage=failure.stage,
            violation=failure.violation or ViolationKind.REJECTED_VERIFICATION.value,
            details=stages,
            suggestions=failure.suggestions
        )
        return self._write_decision(db, action.id, result, None)

    def _write_decision(
        self,
        db: Session,
        action_id: str,
        result: VerificationResult,
        ai_result: Optional[Dict[str, Any]]
    ) -> VerificationResult:
        """Persist the outcome only if the action is still PENDING"""
        try:
            updated = db.query(RecycleAction).filter(
                RecycleAction.id == action_id,
                RecycleAction.status == ActionStatus.PENDING.value
            ).update({
                RecycleAction.status: result.status,
                RecycleAction.verification_score: result.score,
                RecycleAction.ai_score: result.ai_score,
                RecycleAction.ai_result: ai_result,
                RecycleAction.verification_reason: result.reason,
                RecycleAction.verification_stage: result.stage,
                RecycleAction.verification_details: {
                    "stages": result.details,
                    "suggestions": result.suggestions,
                    "violation": result.violation,
                },
                RecycleAction.verified_at: utcnow(),
            }, synchronize_session=False)
            db.commit()
        except Exception:
            db.rollback()
            raise

        if updated == 0:
            logger.info(f"Action {action_id} was decided concurrently, returning stored outcome")
            db.expire_all()
            action = db.query(RecycleAction).filter(RecycleAction.id == action_id).first()
            return VerificationResult.from_action(action)

        if result.verified:
            logger.info(f"Action {action_id} VERIFIED with score {result.score:.4f}")
        elif result.stage == STAGE_SCORE:
            logger.warning(f"Action {action_id} REJECTED with score {result.score:.4f}")
        return result


# Singleton instance
verification_service = VerificationService()
