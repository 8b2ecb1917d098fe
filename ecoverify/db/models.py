"""
SQLAlchemy ORM Models for EcoVerify
"""
import uuid
from enum import Enum
from sqlalchemy import (
    Column, Integer, String, Text, Float, Boolean, DateTime,
    ForeignKey, JSON, Index
)
from sqlalchemy.orm import relationship
from ecoverify.db.database import Base
from ecoverify.utils import utcnow


def _uuid() -> str:
    return str(uuid.uuid4())


class ActionStatus(str, Enum):
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"
    FLAGGED = "FLAGGED"


class MaterialType(str, Enum):
    GLASS = "glass"
    METAL = "metal"
    PLASTIC = "plastic"
    CARDBOARD = "cardboard"
    PAPER = "paper"


class ViolationKind(str, Enum):
    DUPLICATE_IMAGE = "duplicate_image"
    GPS_ANOMALY = "gps_anomaly"
    GPS_ACCURACY = "gps_accuracy"
    REJECTED_VERIFICATION = "rejected_verification"
    SUSPICIOUS = "suspicious"
    NEAR_DUPLICATE_IMAGE = "near_duplicate_image"


class AuditActionType(str, Enum):
    ACTION_SUBMITTED = "ACTION_SUBMITTED"
    ACTION_VERIFIED = "ACTION_VERIFIED"
    ACTION_REJECTED = "ACTION_REJECTED"
    ACTION_FLAGGED = "ACTION_FLAGGED"
    TRUST_SCORE_CHANGED = "TRUST_SCORE_CHANGED"
    REWARD_AWARDED = "REWARD_AWARDED"
    REWARD_DENIED = "REWARD_DENIED"


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    trust_score = Column(Float, nullable=False, default=0.7)
    streak_days = Column(Integer, nullable=False, default=0)
    last_action_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, onupdate=utcnow)

    # Relationships
    actions = relationship("RecycleAction", back_populates="user")
    trust_history = relationship("TrustHistory", back_populates="user")
    rewards = relationship("Reward", back_populates="user")


class RecyclingPoint(Base):
    __tablename__ = "recycling_points"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    radius_m = Column(Float, nullable=False)
    altitude_m = Column(Float)
    allowed_materials = Column(JSON, nullable=False, default=list)
    reward_multiplier = Column(Float, nullable=False, default=1.0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, onupdate=utcnow)

    __table_args__ = (
        Index('idx_recycling_points_active', 'is_active'),
    )

    # Relationships
    actions = relationship("RecycleAction", back_populates="recycling_point")


class RecycleAction(Base):
    """One submission attempt. Status only moves forward."""
    __tablename__ = "recycle_actions"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    recycling_point_id = Column(String(36), ForeignKey("recycling_points.id"), nullable=False)
    claimed_material = Column(String(20), nullable=False)
    # On-device detection metadata
    detection_confidence = Column(Float, nullable=False)
    bounding_box_area_ratio = Column(Float, nullable=False)
    frame_count_detected = Column(Integer, nullable=False)
    motion_score = Column(Float, nullable=False)
    frame_samples = Column(JSON, nullable=False, default=list)
    # Image
    image_content_hash = Column(String(64), nullable=False)
    perceptual_hash = Column(String(64))
    image_url = Column(Text, nullable=False)
    # GPS
    gps_lat = Column(Float, nullable=False)
    gps_lng = Column(Float, nullable=False)
    gps_accuracy_m = Column(Float, nullable=False)
    gps_altitude_m = Column(Float)
    # Outcome
    idempotency_key = Column(String(255), nullable=False, unique=True)
    status = Column(String(20), nullable=False, default=ActionStatus.PENDING.value)
    verification_score = Column(Float)
    ai_score = Column(Float)
    ai_result = Column(JSON)
    verification_reason = Column(Text)
    verification_stage = Column(String(50))
    verification_details = Column(JSON)
    points_awarded = Column(Integer)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    verified_at = Column(DateTime)
    updated_at = Column(DateTime, onupdate=utcnow)

    __table_args__ = (
        Index('idx_recycle_actions_user_created', 'user_id', 'created_at'),
        Index('idx_recycle_actions_image_hash', 'image_content_hash'),
        Index('idx_recycle_actions_status_created', 'status', 'created_at'),
        Index('idx_recycle_actions_point', 'recycling_point_id'),
        Index('idx_recycle_actions_gps', 'gps_lat', 'gps_lng'),
    )

    # Relationships
    user = relationship("User", back_populates="actions")
    recycling_point = relationship("RecyclingPoint", back_populates="actions")
    reward = relationship("Reward", back_populates="action", uselist=False)


class TrustHistory(Base):
    """Append-only ledger of trust score adjustments"""
    __tablename__ = "trust_history"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    previous_score = Column(Float, nullable=False)
    new_score = Column(Float, nullable=False)
    delta = Column(Float, nullable=False)
    reason = Column(String(100), nullable=False)
    related_action_id = Column(String(36), ForeignKey("recycle_actions.id"))
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index('idx_trust_history_user_created', 'user_id', 'created_at'),
    )

    # Relationships
    user = relationship("User", back_populates="trust_history")


class Reward(Base):
    __tablename__ = "rewards"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    action_id = Column(String(36), ForeignKey("recycle_actions.id"), nullable=False, unique=True)
    base_points = Column(Integer, nullable=False)
    location_multiplier = Column(Float, nullable=False)
    streak_multiplier = Column(Float, nullable=False)
    trust_multiplier = Column(Float, nullable=False)
    final_points = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index('idx_rewards_user_created', 'user_id', 'created_at'),
    )

    # Relationships
    user = relationship("User", back_populates="rewards")
    action = relationship("RecycleAction", back_populates="reward")


class AuditLog(Base):
    """Append-only audit trail (best effort)"""
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    action_type = Column(String(50), nullable=False)
    user_id = Column(String(36))
    entity_type = Column(String(50))
    entity_id = Column(String(36))
    details = Column(JSON)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index('idx_audit_logs_type_created', 'action_type', 'created_at'),
        Index('idx_audit_logs_user', 'user_id'),
    )
