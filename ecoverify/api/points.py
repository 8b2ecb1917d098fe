"""
Recycling Points Router - Master data lookup
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ecoverify.db.models import MaterialType, RecyclingPoint
from ecoverify.dependencies import get_db
from ecoverify.services.recycling_point_service import recycling_point_service

router = APIRouter()


def serialize_point(point: RecyclingPoint, distance_m: Optional[float] = None):
    data = {
        "id": point.id,
        "name": point.name,
        "latitude": point.latitude,
        "longitude": point.longitude,
        "radius_m": point.radius_m,
        "altitude_m": point.altitude_m,
        "allowed_materials": point.allowed_materials or [],
        "reward_multiplier": point.reward_multiplier,
        "is_active": point.is_active,
    }
    if distance_m is not None:
        data["distance_m"] = round(distance_m, 1)
    return data


@router.get("")
async def list_points(
    material: Optional[MaterialType] = Query(None),
    search: Optional[str] = Query(None, max_length=100),
    db: Session = Depends(get_db)
):
    """Active recycling points ordered by name"""
    points = recycling_point_service.list_points(
        db,
        material=material.value if material else None,
        search=search
    )
    return {"points": [serialize_point(p) for p in points], "count": len(points)}


@router.get("/nearby")
async def nearby_points(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    radius_km: float = Query(5.0, gt=0, le=100),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db)
):
    """Active points within radius_km, closest first"""
    nearby = recycling_point_service.find_nearest(db, lat, lng, radius_km, limit)
    return {
        "points": [serialize_point(p, d) for p, d in nearby],
        "count": len(nearby)
    }


@router.get("/{point_id}")
async def get_point(
    point_id: str,
    db: Session = Depends(get_db)
):
    point = recycling_point_service.get_point(db, point_id)
    if not point:
        raise HTTPException(status_code=404, detail="Recycling point not found")
    return serialize_point(point)
