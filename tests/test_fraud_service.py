"""
Tests for post-rejection fraud heuristics
"""
import pytest

from ecoverify.db.models import RecycleAction, TrustHistory, User, ActionStatus
from ecoverify.services.fraud_service import FraudService

REJECTED = ActionStatus.REJECTED.value


@pytest.fixture
def fraud():
    return FraudService()


def _reload(db, model, entity_id):
    db.expire_all()
    return db.query(model).filter(model.id == entity_id).first()


def _suspicious_rows(db, user_id):
    return db.query(TrustHistory).filter(
        TrustHistory.user_id == user_id,
        TrustHistory.reason == "suspicious"
    ).all()


def test_duplicate_image_across_users_flags(db, make_user, make_action, fraud):
    image_hash = "b" * 64
    make_action(image_content_hash=image_hash, status=ActionStatus.VERIFIED.value)
    user = make_user(trust_score=0.7)
    action = make_action(user=user, image_content_hash=image_hash, status=REJECTED)

    result = fraud.check_patterns(db, action.id)

    assert result.flagged is True
    assert any("2 users" in r for r in result.reasons)
    assert _reload(db, RecycleAction, action.id).status == ActionStatus.FLAGGED.value
    assert _reload(db, User, user.id).trust_score == pytest.approx(0.5)
    assert len(_suspicious_rows(db, user.id)) == 1


def test_several_heuristics_give_one_penalty(db, make_user, make_point, make_action, fraud, seconds_ago):
    image_hash = "c" * 64
    make_action(image_content_hash=image_hash)
    user = make_user(trust_score=0.7)
    point = make_point()
    for i in range(5):
        make_action(user=user, point=point, status=REJECTED, created_at=seconds_ago(10 + i))
    action = make_action(user=user, point=point, image_content_hash=image_hash, status=REJECTED)

    result = fraud.check_patterns(db, action.id)

    assert len(result.reasons) >= 2
    assert len(_suspicious_rows(db, user.id)) == 1
    assert _reload(db, User, user.id).trust_score == pytest.approx(0.5)


def test_clean_rejection_stays_rejected(db, make_user, make_action, fraud):
    user = make_user(trust_score=0.7)
    action = make_action(user=user, status=REJECTED)

    result = fraud.check_patterns(db, action.id)

    assert result.flagged is False
    assert result.reasons == []
    assert _reload(db, RecycleAction, action.id).status == REJECTED
    assert _reload(db, User, user.id).trust_score == pytest.approx(0.7)


def test_verified_action_is_untouched(db, make_action, fraud):
    image_hash = "d" * 64
    make_action(image_content_hash=image_hash)
    action = make_action(image_content_hash=image_hash, status=ActionStatus.VERIFIED.value)

    result = fraud.check_patterns(db, action.id)

    assert result.flagged is False
    assert _reload(db, RecycleAction, action.id).status == ActionStatus.VERIFIED.value


def test_already_flagged_is_not_penalized_again(db, make_user, make_action, fraud):
    user = make_user()
    action = make_action(user=user, status=ActionStatus.FLAGGED.value)

    result = fraud.check_patterns(db, action.id)

    assert result.flagged is True
    assert _suspicious_rows(db, user.id) == []


def test_location_cluster(db, make_action, fraud):
    make_action(status=REJECTED)
    make_action(status=REJECTED)
    action = make_action(status=REJECTED)

    result = fraud.check_patterns(db, action.id)

    assert result.flagged is True
    assert any("3 users at same location" in r for r in result.reasons)


def test_two_users_are_not_a_cluster(db, make_action, fraud):
    make_action(status=REJECTED)
    action = make_action(status=REJECTED)
    assert fraud.check_patterns(db, action.id).flagged is False


def test_points_velocity(db, make_user, make_point, make_action, fraud, seconds_ago):
    user = make_user()
    point = make_point()
    verified = ActionStatus.VERIFIED.value
    make_action(user=user, point=point, status=verified, points_awarded=50, created_at=seconds_ago(1800))
    make_action(user=user, point=point, status=verified, points_awarded=40, created_at=seconds_ago(900))
    action = make_action(user=user, point=point, status=REJECTED)

    result = fraud.check_patterns(db, action.id)

    assert result.reasons == ["90 points in 1 hour"]


def test_location_hopping(db, make_user, make_action, fraud, seconds_ago):
    user = make_user()
    for seconds in (240, 180, 120):
        make_action(user=user, status=REJECTED, created_at=seconds_ago(seconds))
    action = make_action(user=user, status=REJECTED)

    result = fraud.check_patterns(db, action.id)

    assert result.reasons == ["4 different locations in 5 minutes"]
