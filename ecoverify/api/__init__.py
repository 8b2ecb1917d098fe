"""
API routers package
"""
from ecoverify.api import (
    system,
    actions,
    users,
    points
)

__all__ = [
    "system",
    "actions",
    "users",
    "points"
]
