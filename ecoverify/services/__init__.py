"""
Services package - Verification engine and business logic layer
"""
from ecoverify.services.ai_classifier_service import ai_classifier_service
from ecoverify.services.verification_service import verification_service
from ecoverify.services.trust_service import trust_service
from ecoverify.services.fraud_service import fraud_service
from ecoverify.services.rewards_service import rewards_service
from ecoverify.services.audit_service import audit_service
from ecoverify.services.storage_service import image_store
from ecoverify.services.user_service import user_service
from ecoverify.services.recycling_point_service import recycling_point_service
from ecoverify.services.action_service import action_service

__all__ = [
    "ai_classifier_service",
    "verification_service",
    "trust_service",
    "fraud_service",
    "rewards_service",
    "audit_service",
    "image_store",
    "user_service",
    "recycling_point_service",
    "action_service"
]
