"""
Tests for the five-stage verification pipeline
"""
import pytest

from ecoverify.db.models import RecycleAction, ActionStatus
from ecoverify.services.verification_service import (
    VerificationService, MESSAGES, STAGE_SCORE
)
from ecoverify.utils import utcnow
from tests.conftest import POINT_LAT, POINT_LNG, steady_frames

# ~200 m of latitude
TWO_HUNDRED_METERS_LAT = 200 / 111195


def _reload(db, action_id):
    db.expire_all()
    return db.query(RecycleAction).filter(RecycleAction.id == action_id).first()


@pytest.mark.asyncio
async def test_worked_example_is_verified(db, make_action, matching_classifier):
    action = make_action()
    pipeline = VerificationService(classifier=matching_classifier)

    result = await pipeline.verify(db, action.id)

    # 0.19 + 0.15 + 0.10 + 0.13125 + 0.10 + 0.20 + 0.07
    assert result.score == pytest.approx(0.94125)
    assert result.verified is True
    assert result.ai_score == 1.0
    assert result.reason is None
    assert len(matching_classifier.calls) == 1

    stored = _reload(db, action.id)
    assert stored.status == ActionStatus.VERIFIED.value
    assert stored.verification_score == pytest.approx(0.94125)
    assert stored.ai_result["provider"] == "stub"
    assert stored.verified_at is not None


@pytest.mark.asyncio
async def test_low_confidence_rejected_without_ai_call(db, make_action, matching_classifier):
    action = make_action(detection_confidence=0.5)
    result = await VerificationService(classifier=matching_classifier).verify(db, action.id)

    assert result.verified is False
    assert result.score == 0.0
    assert result.stage == "object_detection"
    assert "confidence" in result.reason.lower()
    assert result.violation == "rejected_verification"
    assert result.suggestions
    assert matching_classifier.calls == []

    stored = _reload(db, action.id)
    assert stored.status == ActionStatus.REJECTED.value
    assert stored.verification_score == 0.0
    assert stored.verification_stage == "object_detection"


@pytest.mark.asyncio
async def test_object_detection_lists_every_issue(db, make_action, matching_classifier):
    action = make_action(
        detection_confidence=0.5, bounding_box_area_ratio=0.1,
        frame_count_detected=2, motion_score=0.1
    )
    result = await VerificationService(classifier=matching_classifier).verify(db, action.id)

    assert len(result.details["object_detection"]["issues"]) == 4
    assert result.reason == MESSAGES["confidence_too_low"]


@pytest.mark.asyncio
async def test_impossible_speed_rejected_at_location(
    db, make_user, make_point, make_action, matching_classifier, seconds_ago
):
    user = make_user()
    point = make_point(radius_m=500.0)
    make_action(
        user=user, point=point, status=ActionStatus.VERIFIED.value,
        created_at=seconds_ago(3)
    )
    action = make_action(
        user=user, point=point,
        gps_lat=POINT_LAT + TWO_HUNDRED_METERS_LAT, gps_lng=POINT_LNG
    )

    result = await VerificationService(classifier=matching_classifier).verify(db, action.id)

    assert result.verified is False
    assert result.stage == "location"
    assert result.reason == MESSAGES["impossible_speed"]
    assert result.violation == "gps_anomaly"
    assert matching_classifier.calls == []


@pytest.mark.asyncio
async def test_simultaneous_jump_rejected_at_location(
    db, make_user, make_point, make_action, matching_classifier
):
    user = make_user()
    point = make_point(radius_m=500.0)
    created_at = utcnow()
    make_action(user=user, point=point, status=ActionStatus.VERIFIED.value, created_at=created_at)
    action = make_action(
        user=user, point=point, created_at=created_at,
        gps_lat=POINT_LAT + TWO_HUNDRED_METERS_LAT, gps_lng=POINT_LNG
    )

    result = await VerificationService(classifier=matching_classifier).verify(db, action.id)

    assert result.stage == "location"
    assert result.reason == MESSAGES["impossible_jump"]
    assert result.violation == "gps_anomaly"
    assert matching_classifier.calls == []


@pytest.mark.asyncio
async def test_slow_movement_outside_window_passes(
    db, make_user, make_point, make_action, matching_classifier, seconds_ago
):
    user = make_user()
    point = make_point(radius_m=500.0)
    make_action(user=user, point=point, created_at=seconds_ago(60))
    action = make_action(
        user=user, point=point,
        gps_lat=POINT_LAT + TWO_HUNDRED_METERS_LAT, gps_lng=POINT_LNG
    )

    result = await VerificationService(classifier=matching_classifier).verify(db, action.id)
    assert result.stage != "location"
    assert len(matching_classifier.calls) == 1


@pytest.mark.asyncio
async def test_poor_gps_accuracy(db, make_action, matching_classifier):
    action = make_action(gps_accuracy_m=35.0)
    result = await VerificationService(classifier=matching_classifier).verify(db, action.id)

    assert result.stage == "location"
    assert result.violation == "gps_accuracy"


@pytest.mark.asyncio
async def test_outside_radius(db, make_action, matching_classifier):
    action = make_action(gps_lat=POINT_LAT + TWO_HUNDRED_METERS_LAT)
    result = await VerificationService(classifier=matching_classifier).verify(db, action.id)

    assert result.stage == "location"
    assert result.reason == MESSAGES["too_far_from_point"]
    assert result.violation == "rejected_verification"


@pytest.mark.asyncio
async def test_material_not_allowed(db, make_point, make_action, matching_classifier):
    point = make_point(allowed_materials=["glass", "metal"])
    action = make_action(point=point, claimed_material="plastic")
    result = await VerificationService(classifier=matching_classifier).verify(db, action.id)

    assert result.stage == "location"
    assert result.reason == MESSAGES["material_not_allowed"]


@pytest.mark.asyncio
async def test_altitude_mismatch(db, make_point, make_action, matching_classifier):
    point = make_point(altitude_m=10.0)
    action = make_action(point=point, gps_altitude_m=35.0)
    result = await VerificationService(classifier=matching_classifier).verify(db, action.id)

    assert result.stage == "location"
    assert result.violation == "gps_anomaly"


@pytest.mark.asyncio
async def test_duplicate_hash_from_another_user_rejected_at_uniqueness(
    db, make_action, matching_classifier
):
    image_hash = "a" * 64
    make_action(image_content_hash=image_hash, status=ActionStatus.VERIFIED.value)
    action = make_action(image_content_hash=image_hash)

    result = await VerificationService(classifier=matching_classifier).verify(db, action.id)

    assert result.verified is False
    assert result.stage == "uniqueness"
    assert result.reason == MESSAGES["duplicate_image"]
    assert result.violation == "duplicate_image"
    assert matching_classifier.calls == []


@pytest.mark.asyncio
async def test_near_duplicate_of_own_image(
    db, make_user, make_point, make_action, matching_classifier, seconds_ago
):
    user = make_user()
    point = make_point()
    make_action(user=user, point=point, perceptual_hash="ffffffffffffffff", created_at=seconds_ago(600))
    action = make_action(user=user, point=point, perceptual_hash="fffffffffffffff0")

    result = await VerificationService(classifier=matching_classifier).verify(db, action.id)

    assert result.stage == "uniqueness"
    assert result.violation == "near_duplicate_image"
    assert result.details["uniqueness"]["hamming_distance"] == 4


@pytest.mark.asyncio
async def test_similar_image_lowers_uniqueness_score(
    db, make_user, make_point, make_action, matching_classifier, seconds_ago
):
    user = make_user()
    point = make_point()
    make_action(user=user, point=point, perceptual_hash="ffffffffffffffff", created_at=seconds_ago(600))
    action = make_action(user=user, point=point, perceptual_hash="ffffffffffffff00")

    result = await VerificationService(classifier=matching_classifier).verify(db, action.id)

    assert result.details["uniqueness"]["score"] == pytest.approx(0.8)
    # 0.94125 - 0.10 * 0.2
    assert result.score == pytest.approx(0.92125)


@pytest.mark.asyncio
async def test_frame_gap_too_large(db, make_action, matching_classifier):
    action = make_action(frame_samples=steady_frames(count=4, gap_ms=600))
    result = await VerificationService(classifier=matching_classifier).verify(db, action.id)

    assert result.stage == "frame_sequence"
    assert "600ms" in result.reason
    assert matching_classifier.calls == []


@pytest.mark.asyncio
async def test_frame_window_too_long(db, make_action, matching_classifier):
    # Every gap is allowed, but six frames span 2250ms
    action = make_action(frame_samples=steady_frames(count=6, gap_ms=450))
    result = await VerificationService(classifier=matching_classifier).verify(db, action.id)

    assert result.stage == "frame_sequence"
    assert "within 2.0s" in result.reason
    assert result.details["frame_sequence"]["max_gap_ms"] == 450
    assert matching_classifier.calls == []


@pytest.mark.asyncio
async def test_too_few_frame_samples(db, make_action, matching_classifier):
    action = make_action(frame_samples=steady_frames(count=3))
    result = await VerificationService(classifier=matching_classifier).verify(db, action.id)
    assert result.stage == "frame_sequence"


@pytest.mark.asyncio
async def test_unstable_bounding_box(db, make_action, matching_classifier):
    frames = steady_frames(count=4)
    for frame, x in zip(frames, [0.0, 0.9, 0.0, 0.9]):
        frame["bounding_box"]["x"] = x
    action = make_action(frame_samples=frames)

    result = await VerificationService(classifier=matching_classifier).verify(db, action.id)
    assert result.stage == "frame_sequence"


@pytest.mark.asyncio
async def test_ai_failure_is_neutral(db, make_action, failing_classifier):
    action = make_action()
    result = await VerificationService(classifier=failing_classifier).verify(db, action.id)

    # Same as the worked example with 0.5 instead of 1.0 AI evidence
    assert result.ai_score == 0.5
    assert result.score == pytest.approx(0.84125)
    assert result.verified is False
    assert result.stage == STAGE_SCORE
    assert result.gate_rejection is False
    assert result.details["ai_classification"]["available"] is False

    stored = _reload(db, action.id)
    assert stored.status == ActionStatus.REJECTED.value
    assert stored.ai_result["provider_errors"]["gemini"] == "timeout"


@pytest.mark.asyncio
async def test_second_run_returns_stored_outcome(db, make_action, matching_classifier):
    action = make_action()
    pipeline = VerificationService(classifier=matching_classifier)

    first = await pipeline.verify(db, action.id)
    second = await pipeline.verify(db, action.id)

    assert first.fresh is True
    assert second.fresh is False
    assert second.verified == first.verified
    assert second.score == pytest.approx(first.score)
    assert len(matching_classifier.calls) == 1


@pytest.mark.asyncio
async def test_trust_score_feeds_the_formula(db, make_user, make_action, matching_classifier):
    user = make_user(trust_score=0.0)
    action = make_action(user=user)
    result = await VerificationService(classifier=matching_classifier).verify(db, action.id)

    assert result.score == pytest.approx(0.87125)
    assert result.verified is True


@pytest.mark.parametrize("values,expected", [
    ({}, 1.0),
    ({"confidence": 0.0, "consistency_score": 0.0, "motion_score": 0.0, "location_score": 0.0,
      "uniqueness_score": 0.0, "ai_score": 0.0, "trust_score": 0.0}, 0.0),
    ({"motion_score": 5.0}, 1.0),
])
def test_score_is_bounded(values, expected):
    inputs = {
        "confidence": 1.0, "consistency_score": 1.0, "motion_score": 1.0,
        "location_score": 1.0, "uniqueness_score": 1.0, "ai_score": 1.0, "trust_score": 1.0,
    }
    inputs.update(values)
    score = VerificationService.calculate_score(**inputs)
    assert 0.0 <= score <= 1.0
    assert score == pytest.approx(expected)


@pytest.mark.asyncio
async def test_verified_iff_score_threshold(db, make_action, make_user, matching_classifier):
    for trust in (0.0, 0.35, 0.7, 1.0):
        action = make_action(user=make_user(trust_score=trust))
        result = await VerificationService(classifier=matching_classifier).verify(db, action.id)
        stored = _reload(db, action.id)
        assert 0.0 <= stored.verification_score <= 1.0
        assert (stored.status == ActionStatus.VERIFIED.value) == (stored.verification_score >= 0.85)
        assert result.verified == (result.score >= 0.85)
