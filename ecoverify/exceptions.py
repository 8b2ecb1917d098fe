"""
Error taxonomy for the verification engine.
"""
from typing import Any, Dict, List, Optional


class EcoVerifyError(Exception):
    """Base class for all engine errors"""


class ValidationFailure(EcoVerifyError):
    """A submission broke a gate rule. Always recoverable by resubmitting."""

    def __init__(
        self,
        reason: str,
        stage: Optional[str] = None,
        suggestions: Optional[List[str]] = None,
        violation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(reason)
        self.reason = reason
        self.stage = stage
        self.suggestions = suggestions or []
        self.violation = violation
        self.details = details or {}


class ExternalServiceFailure(EcoVerifyError):
    """Every AI provider (or the image download) failed."""

    def __init__(self, message: str, provider_errors: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.provider_errors = provider_errors or {}


class ConflictFailure(EcoVerifyError):
    """Idempotency key already used; carries the original action id."""

    def __init__(self, existing_action_id: str):
        super().__init__(f"Action already submitted: {existing_action_id}")
        self.existing_action_id = existing_action_id


class IntegrityFailure(EcoVerifyError):
    """Programming or data error: missing entity, illegal state transition."""


class RewardLimitReached(EcoVerifyError):
    """A reward cap or cooldown refused the award. Nothing was written."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason
