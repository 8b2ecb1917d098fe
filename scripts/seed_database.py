#!/usr/bin/env python3
"""
Database Seeder for EcoVerify

Creates the schema and populates recycling points and demo users.

Usage:
    # From project root with venv activated:
    python scripts/seed_database.py

    # Or via docker:
    docker-compose exec api python scripts/seed_database.py

    # With options:
    python scripts/seed_database.py --points 50 --users 20 --clear
"""
import argparse
import os
import random
import sys
from uuid import uuid4

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ecoverify.config import settings  # noqa: E402
from ecoverify.db.database import SessionLocal, init_db  # noqa: E402
from ecoverify.db import models  # noqa: E402

# Configuration
DEFAULT_NUM_POINTS = 30
DEFAULT_NUM_USERS = 10

CITIES = [
    {"name": "New York", "lat": 40.7128, "lng": -74.0060},
    {"name": "London", "lat": 51.5074, "lng": -0.1278},
    {"name": "Paris", "lat": 48.8566, "lng": 2.3522},
    {"name": "Berlin", "lat": 52.5200, "lng": 13.4050},
    {"name": "Tokyo", "lat": 35.6762, "lng": 139.6503},
    {"name": "Toronto", "lat": 43.6532, "lng": -79.3832},
]

POINT_KINDS = ["Drop-off Bin", "Recycling Center", "Supermarket Kiosk", "Eco Station", "Campus Bin"]

MATERIALS = [m.value for m in models.MaterialType]


def random_point(index: int) -> models.RecyclingPoint:
    city = random.choice(CITIES)
    # Scatter within roughly 5 km of the city center
    lat = city["lat"] + random.uniform(-0.045, 0.045)
    lng = city["lng"] + random.uniform(-0.045, 0.045)
    allowed = sorted(random.sample(MATERIALS, k=random.randint(2, len(MATERIALS))))

    return models.RecyclingPoint(
        id=str(uuid4()),
        name=f"{city['name']} {random.choice(POINT_KINDS)} #{index}",
        latitude=round(lat, 6),
        longitude=round(lng, 6),
        radius_m=random.choice([25.0, 50.0, 75.0, 100.0]),
        altitude_m=round(random.uniform(0, 60), 1) if random.random() < 0.3 else None,
        allowed_materials=allowed,
        reward_multiplier=random.choice([1.0, 1.0, 1.0, 1.2, 1.5]),
        is_active=random.random() > 0.1
    )


def seed_database(
    num_points: int = DEFAULT_NUM_POINTS,
    num_users: int = DEFAULT_NUM_USERS,
    clear_existing: bool = False
):
    """Main seeding function"""
    print("=" * 60)
    print("EcoVerify Database Seeder")
    print("=" * 60)
    print(f"Recycling points: {num_points}")
    print(f"Users: {num_users}")
    print()

    init_db()
    db = SessionLocal()

    try:
        if clear_existing:
            print("Clearing existing data...")
            # Order matters due to foreign keys
            for model in (
                models.AuditLog, models.Reward, models.TrustHistory,
                models.RecycleAction, models.RecyclingPoint, models.User
            ):
                db.query(model).delete()
            db.commit()
            print("  Done clearing tables")

        print(f"\n1. Seeding {num_points} recycling points...")
        for i in range(1, num_points + 1):
            db.add(random_point(i))
        db.commit()
        print(f"  Created {num_points} recycling points")

        print(f"\n2. Seeding {num_users} users...")
        for _ in range(num_users):
            db.add(models.User(
                id=str(uuid4()),
                trust_score=settings.DEFAULT_TRUST_SCORE,
                streak_days=0
            ))
        db.commit()
        print(f"  Created {num_users} users")

        print("\nSeeding complete")
    except Exception as e:
        db.rollback()
        print(f"\nError during seeding: {e}")
        raise
    finally:
        db.close()


def main():
    parser = argparse.ArgumentParser(
        description="Seed EcoVerify database with recycling points and demo users"
    )
    parser.add_argument(
        "--points", "-p",
        type=int,
        default=DEFAULT_NUM_POINTS,
        help=f"Number of recycling points (default: {DEFAULT_NUM_POINTS})"
    )
    parser.add_argument(
        "--users", "-u",
        type=int,
        default=DEFAULT_NUM_USERS,
        help=f"Number of users (default: {DEFAULT_NUM_USERS})"
    )
    parser.add_argument(
        "--clear", "-c",
        action="store_true",
        help="Clear existing data before seeding"
    )

    args = parser.parse_args()

    seed_database(
        num_points=args.points,
        num_users=args.users,
        clear_existing=args.clear
    )


if __name__ == "__main__":
    main()
