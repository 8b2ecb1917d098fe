import os
import tempfile
import uuid
from datetime import timedelta

import pytest

# Test environment must be in place before ecoverify.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6399/0")
os.environ.setdefault("AI_VERIFICATION_ENABLED", "false")
os.environ.setdefault("ACTION_VERIFY_MODE", "celery")
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("IMAGE_STORE_PATH", tempfile.mkdtemp(prefix="ecoverify-images-"))
os.environ.setdefault("IMAGE_BASE_URL", "http://testserver/images")

from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from ecoverify.db.database import Base, init_db  # noqa: E402
from ecoverify.db.models import (  # noqa: E402
    User, RecyclingPoint, RecycleAction, ActionStatus
)
from ecoverify.exceptions import ExternalServiceFailure  # noqa: E402
from ecoverify.services.ai_classifier_service import (  # noqa: E402
    AIClassifierService, ClassificationResult
)
from ecoverify.utils import utcnow  # noqa: E402

POINT_LAT = 40.7128
POINT_LNG = -74.0060
ALL_MATERIALS = ["glass", "metal", "plastic", "cardboard", "paper"]


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    init_db(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def steady_frames(count=5, gap_ms=300, confidence=0.95, x=0.3, y=0.3):
    return [
        {
            "index": i,
            "timestamp_ms": 1_700_000_000_000 + i * gap_ms,
            "confidence": confidence,
            "bounding_box": {"x": x, "y": y, "width": 0.4, "height": 0.5},
        }
        for i in range(count)
    ]


@pytest.fixture
def make_user(db):
    def _make(trust_score=0.7, streak_days=0, last_action_at=None, user_id=None):
        user = User(
            id=user_id or str(uuid.uuid4()),
            trust_score=trust_score,
            streak_days=streak_days,
            last_action_at=last_action_at
        )
        db.add(user)
        db.commit()
        return user
    return _make


@pytest.fixture
def make_point(db):
    def _make(**overrides):
        values = {
            "name": "Test Drop-off Bin",
            "latitude": POINT_LAT,
            "longitude": POINT_LNG,
            "radius_m": 50.0,
            "altitude_m": None,
            "allowed_materials": list(ALL_MATERIALS),
            "reward_multiplier": 1.0,
            "is_active": True,
        }
        values.update(overrides)
        point = RecyclingPoint(**values)
        db.add(point)
        db.commit()
        return point
    return _make


@pytest.fixture
def make_action(db, make_user, make_point):
    """
    Build a recycle action that passes every gate unless overridden.

    Pass user=/point= to reuse existing rows.
    """
    def _make(user=None, point=None, **overrides):
        user = user or make_user()
        point = point or make_point()
        values = {
            "user_id": user.id,
            "recycling_point_id": point.id,
            "claimed_material": "plastic",
            "detection_confidence": 0.95,
            "bounding_box_area_ratio": 0.4,
            "frame_count_detected": 5,
            "motion_score": 0.5,
            "frame_samples": steady_frames(),
            "image_content_hash": uuid.uuid4().hex + uuid.uuid4().hex,
            "perceptual_hash": None,
            "image_url": "https://images.test/photo.jpg",
            "gps_lat": point.latitude,
            "gps_lng": point.longitude,
            "gps_accuracy_m": 5.0,
            "gps_altitude_m": None,
            "idempotency_key": str(uuid.uuid4()),
            "status": ActionStatus.PENDING.value,
            "created_at": utcnow(),
        }
        values.update(overrides)
        action = RecycleAction(**values)
        db.add(action)
        db.commit()
        return action
    return _make


class StubClassifier:
    """Stands in for the AI adapter; records every call"""

    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []

    async def classify(self, image_url, claimed_material):
        self.calls.append((image_url, claimed_material))
        if self.error:
            raise self.error
        return self.result

    score_result = staticmethod(AIClassifierService.score_result)


@pytest.fixture
def matching_classifier():
    return StubClassifier(result=ClassificationResult(
        object_type="plastic",
        confidence=0.9,
        authentic=True,
        quality="good",
        reasoning="clear plastic bottle",
        provider="stub"
    ))


@pytest.fixture
def failing_classifier():
    return StubClassifier(error=ExternalServiceFailure(
        "All AI verification providers failed",
        {"gemini": "timeout", "ollama": "connection refused"}
    ))


@pytest.fixture
def seconds_ago():
    def _ago(seconds, base=None):
        return (base or utcnow()) - timedelta(seconds=seconds)
    return _ago
