"""
Users Router - Profile, action history, trust history and rewards
"""
import math
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ecoverify.api.actions import serialize_action
from ecoverify.db.models import ActionStatus, MaterialType
from ecoverify.dependencies import get_db
from ecoverify.services.action_service import action_service
from ecoverify.services.rewards_service import rewards_service
from ecoverify.services.trust_service import trust_service
from ecoverify.services.user_service import user_service

router = APIRouter()


def _require_user(db: Session, user_id: str):
    user = user_service.get_user(db, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@router.get("/{user_id}/profile")
async def get_profile(
    user_id: str,
    db: Session = Depends(get_db)
):
    """Trust score, streak and action counts"""
    profile = user_service.get_profile(db, user_id)
    if not profile:
        raise HTTPException(status_code=404, detail="User not found")
    return profile


@router.get("/{user_id}/actions")
async def list_actions(
    user_id: str,
    status: Optional[ActionStatus] = Query(None),
    material: Optional[MaterialType] = Query(None),
    from_date: Optional[datetime] = Query(None),
    to_date: Optional[datetime] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    db: Session = Depends(get_db)
):
    """Paginated action history"""
    _require_user(db, user_id)

    items, total = action_service.list_user_actions(
        db,
        user_id,
        status=status.value if status else None,
        material=material.value if material else None,
        from_date=from_date,
        to_date=to_date,
        page=page,
        limit=limit,
        sort_order=sort_order
    )
    total_pages = math.ceil(total / limit) if total else 0

    return {
        "data": [serialize_action(a) for a in items],
        "meta": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        }
    }


@router.get("/{user_id}/trust-history")
async def get_trust_history(
    user_id: str,
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db)
):
    """Trust score adjustments, newest first"""
    _require_user(db, user_id)
    summary = trust_service.get_summary(db, user_id)
    rows = trust_service.get_history(db, user_id, limit)

    return {
        **summary,
        "history": [
            {
                "previous_score": r.previous_score,
                "new_score": r.new_score,
                "delta": r.delta,
                "reason": r.reason,
                "related_action_id": r.related_action_id,
                "created_at": r.created_at.isoformat(),
            }
            for r in rows
        ]
    }


@router.get("/{user_id}/rewards")
async def get_rewards(
    user_id: str,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db)
):
    """Awarded rewards plus today's totals against the daily cap"""
    _require_user(db, user_id)
    rewards = rewards_service.get_user_rewards(db, user_id, limit=limit, offset=offset)

    return {
        "summary": rewards_service.get_daily_summary(db, user_id),
        "rewards": [
            {
                "action_id": r.action_id,
                "base_points": r.base_points,
                "location_multiplier": r.location_multiplier,
                "streak_multiplier": r.streak_multiplier,
                "trust_multiplier": r.trust_multiplier,
                "final_points": r.final_points,
                "created_at": r.created_at.isoformat(),
            }
            for r in rewards
        ]
    }
