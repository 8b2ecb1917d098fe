"""
Geospatial and hashing helpers shared by the verification engine.

All functions here are pure: no database, no I/O (except reading the image
bytes handed to ``perceptual_hash``).
"""
import hashlib
import io
import math
from datetime import datetime, timezone
from typing import Iterable, Optional

import numpy as np
from PIL import Image

EARTH_RADIUS_M = 6371000.0


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in every DateTime column"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def haversine_distance_m(
    lat1: float,
    lon1: float,
    lat2: float,
    lon2: float
) -> float:
    """Great-circle distance in meters between two GPS points."""
    p = math.pi / 180
    d_lat = (lat2 - lat1) * p
    d_lon = (lon2 - lon1) * p
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(lat1 * p) * math.cos(lat2 * p) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def hamming_distance(hash1: str, hash2: str) -> int:
    """
    Count differing bits between two hex fingerprints of equal length.

    Raises ValueError when the lengths differ or a value is not hex.
    """
    if len(hash1) != len(hash2):
        raise ValueError(
            f"Cannot compare fingerprints of different length ({len(hash1)} vs {len(hash2)})"
        )
    return bin(int(hash1, 16) ^ int(hash2, 16)).count("1")


def population_std_dev(values: Iterable[float]) -> float:
    """Population standard deviation; 0.0 for an empty sequence."""
    arr = np.asarray(list(values), dtype=float)
    if arr.size == 0:
        return 0.0
    return float(arr.std())


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def perceptual_hash(image_bytes: bytes, hash_size: int = 8) -> Optional[str]:
    """
    Difference hash (dHash) of an image as a hex string.

    With the default hash_size of 8 the result is 64 bits (16 hex chars).
    Returns None when the bytes cannot be decoded as an image.
    """
    try:
        img = Image.open(io.BytesIO(image_bytes)).convert("L")
    except (OSError, ValueError):
        return None
    img = img.resize((hash_size + 1, hash_size), Image.LANCZOS)
    px = np.asarray(img, dtype=np.int16)
    diff = px[:, :-1] > px[:, 1:]
    bits = 0
    for bit in diff.flatten():
        bits = (bits << 1) | int(bit)
    return format(bits, f"0{hash_size * hash_size // 4}x")
