"""
Recycling Point Service - Read access to recycling point master data
"""
import logging
from typing import List, Optional, Tuple
from sqlalchemy.orm import Session

from ecoverify.db.models import RecyclingPoint
from ecoverify.utils import haversine_distance_m

logger = logging.getLogger(__name__)


class RecyclingPointService:
    """Service for listing and locating recycling points"""

    def list_points(
        self,
        db: Session,
        material: Optional[str] = None,
        search: Optional[str] = None,
        include_inactive: bool = False
    ) -> List[RecyclingPoint]:
        query = db.query(RecyclingPoint)
        if not include_inactive:
            query = query.filter(RecyclingPoint.is_active == True)  # noqa: E712
        if search:
            query = query.filter(RecyclingPoint.name.ilike(f"%{search}%"))

        points = query.order_by(RecyclingPoint.name.asc()).all()

        # allowed_materials is a JSON list, filtered in Python for portability
        if material:
            points = [p for p in points if material in (p.allowed_materials or [])]
        return points

    def get_point(self, db: Session, point_id: str) -> Optional[RecyclingPoint]:
        return db.query(RecyclingPoint).filter(RecyclingPoint.id == point_id).first()

    def find_nearest(
        self,
        db: Session,
        lat: float,
        lng: float,
        radius_km: float = 5.0,
        limit: Optional[int] = None
    ) -> List[Tuple[RecyclingPoint, float]]:
        """Active points within radius_km, closest first, with distance in meters"""
        points = db.query(RecyclingPoint).filter(RecyclingPoint.is_active == True).all()  # noqa: E712

        nearby = []
        for point in points:
            distance = haversine_distance_m(lat, lng, point.latitude, point.longitude)
            if distance <= radius_km * 1000:
                nearby.append((point, distance))

        nearby.sort(key=lambda item: item[1])
        if limit:
            nearby = nearby[:limit]
        return nearby


# Singleton instance
recycling_point_service = RecyclingPointService()
