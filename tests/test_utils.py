"""
Unit tests for geospatial and hashing helpers
"""
import io

import pytest
from PIL import Image

from ecoverify.utils import (
    haversine_distance_m, hamming_distance, population_std_dev,
    sha256_hex, perceptual_hash
)


def _gradient_png(reverse=False, size=(256, 64)):
    img = Image.new("L", size)
    width, height = size
    for x in range(width):
        value = 255 - x if reverse else x
        for y in range(height):
            img.putpixel((x, y), value)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def test_haversine_zero_for_same_point():
    assert haversine_distance_m(40.7128, -74.0060, 40.7128, -74.0060) == 0.0


def test_haversine_one_degree_latitude():
    # One degree of latitude is ~111.2 km on a 6371 km sphere
    assert haversine_distance_m(0.0, 0.0, 1.0, 0.0) == pytest.approx(111195, rel=1e-3)


def test_haversine_is_symmetric():
    d1 = haversine_distance_m(51.5074, -0.1278, 48.8566, 2.3522)
    d2 = haversine_distance_m(48.8566, 2.3522, 51.5074, -0.1278)
    assert d1 == pytest.approx(d2)
    assert d1 == pytest.approx(343_500, rel=0.01)


def test_hamming_distance_counts_bits():
    assert hamming_distance("0000000000000000", "0000000000000000") == 0
    assert hamming_distance("0000000000000000", "000000000000000f") == 4
    assert hamming_distance("ffffffffffffffff", "0000000000000000") == 64


def test_hamming_distance_rejects_length_mismatch():
    with pytest.raises(ValueError):
        hamming_distance("ff", "fff")


def test_population_std_dev():
    assert population_std_dev([1, 2, 3, 4]) == pytest.approx(1.118034, rel=1e-5)
    assert population_std_dev([0.3, 0.3, 0.3]) == 0.0
    assert population_std_dev([]) == 0.0


def test_sha256_hex():
    assert sha256_hex(b"") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


def test_perceptual_hash_is_stable_and_64_bits():
    data = _gradient_png()
    h1 = perceptual_hash(data)
    h2 = perceptual_hash(data)
    assert h1 == h2
    assert len(h1) == 16
    int(h1, 16)


def test_perceptual_hash_separates_different_images():
    forward = perceptual_hash(_gradient_png())
    backward = perceptual_hash(_gradient_png(reverse=True))
    assert hamming_distance(forward, backward) >= 48


def test_perceptual_hash_invalid_bytes():
    assert perceptual_hash(b"not an image") is None
