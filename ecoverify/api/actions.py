"""
Actions Router - Submission and lookup of recycling actions
"""
import json
import logging
from typing import Optional, List, Dict, Any

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.orm import Session

from ecoverify.db.models import MaterialType, RecycleAction
from ecoverify.dependencies import get_db, get_current_user_id
from ecoverify.services.action_service import action_service

logger = logging.getLogger(__name__)

router = APIRouter()

MAX_IMAGE_BYTES = 10 * 1024 * 1024
ALLOWED_CONTENT_TYPES = {"image/jpeg", "image/png"}


class BoundingBox(BaseModel):
    x: float
    y: float
    width: float = Field(ge=0)
    height: float = Field(ge=0)


class FrameSample(BaseModel):
    index: int = Field(ge=0)
    timestamp_ms: int = Field(ge=0)
    confidence: float = Field(ge=0, le=1)
    bounding_box: BoundingBox


class ActionSubmission(BaseModel):
    """JSON part of the multipart submission"""
    recycling_point_id: str
    material: MaterialType
    detection_confidence: float = Field(ge=0, le=1)
    bounding_box_area_ratio: float = Field(ge=0, le=1)
    frame_count_detected: int = Field(ge=0)
    motion_score: float = Field(ge=0, le=1)
    frame_samples: List[FrameSample] = Field(default_factory=list)
    image_hash: Optional[str] = Field(None, description="Client-side SHA-256 of the image")
    perceptual_hash: Optional[str] = Field(None, max_length=64)
    gps_lat: float = Field(ge=-90, le=90)
    gps_lng: float = Field(ge=-180, le=180)
    gps_accuracy_m: float = Field(ge=0)
    gps_altitude_m: Optional[float] = None
    idempotency_key: str = Field(min_length=8, max_length=255)


class SubmitActionResponse(BaseModel):
    action_id: str
    status: str
    verified: bool
    points: Optional[int] = None
    verification_score: Optional[float] = None
    reason: Optional[str] = None
    duplicate: bool = False


def serialize_action(action: RecycleAction) -> Dict[str, Any]:
    details = action.verification_details or {}
    return {
        "action_id": action.id,
        "user_id": action.user_id,
        "recycling_point_id": action.recycling_point_id,
        "material": action.claimed_material,
        "status": action.status,
        "verification_score": action.verification_score,
        "ai_score": action.ai_score,
        "points_awarded": action.points_awarded,
        "reason": action.verification_reason,
        "stage": action.verification_stage,
        "details": details.get("stages", {}),
        "suggestions": details.get("suggestions", []),
        "image_url": action.image_url,
        "gps": {
            "lat": action.gps_lat,
            "lng": action.gps_lng,
            "accuracy_m": action.gps_accuracy_m,
            "altitude_m": action.gps_altitude_m,
        },
        "created_at": action.created_at.isoformat() if action.created_at else None,
        "verified_at": action.verified_at.isoformat() if action.verified_at else None,
    }


@router.post("", response_model=SubmitActionResponse)
async def submit_action(
    file: UploadFile = File(..., description="Photo of the recycled object"),
    payload: str = Form(..., description="ActionSubmission as JSON"),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """
    Submit a recycling action.

    The response is a PENDING acknowledgement; verification runs in the
    background. Re-sending the same idempotency_key returns the original
    action's current outcome.
    """
    try:
        submission = ActionSubmission.model_validate_json(payload)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=json.loads(e.json()))

    if file.content_type and file.content_type not in ALLOWED_CONTENT_TYPES:
        raise HTTPException(status_code=400, detail="Invalid image format. Please use JPEG or PNG.")

    image_bytes = await file.read()
    if not image_bytes:
        raise HTTPException(status_code=400, detail="Empty image upload")
    if len(image_bytes) > MAX_IMAGE_BYTES:
        raise HTTPException(status_code=413, detail="Image too large")

    return action_service.submit(
        db=db,
        user_id=user_id,
        payload=submission.model_dump(mode="json"),
        image_bytes=image_bytes,
        filename=file.filename
    )


@router.get("/{action_id}")
async def get_action(
    action_id: str,
    db: Session = Depends(get_db)
):
    """Action detail including per-stage verification diagnostics"""
    action = action_service.get_action(db, action_id)
    if not action:
        raise HTTPException(status_code=404, detail="Action not found")
    return serialize_action(action)
