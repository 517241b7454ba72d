"""
tests/test_geo.py
Distance, ETA and bounding-box helpers.
"""

from decimal import Decimal

import pytest

from shared.utils.geo import (
    bounding_box,
    distance_and_eta,
    eta_minutes,
    haversine_km,
    round_half_up,
)
from tests.conftest import NEAR, SITE


def test_haversine_reference_pair():
    """MG Road to Koramangala, checked against an independent haversine."""
    assert haversine_km(*SITE, *NEAR) == pytest.approx(5.185, abs=0.05)


def test_haversine_is_symmetric_and_zero_on_same_point():
    assert haversine_km(*SITE, *NEAR) == pytest.approx(haversine_km(*NEAR, *SITE))
    assert haversine_km(*SITE, *SITE) == 0


def test_distance_and_eta_reference_pair():
    distance, eta = distance_and_eta(NEAR, SITE, 30)
    assert distance == pytest.approx(5.18, abs=0.01)
    assert eta == 10


def test_eta_rounds_half_up():
    # 1.25 km at 30 km/h is exactly 2.5 minutes
    assert eta_minutes(1.25, 30) == 3
    assert eta_minutes(1.2, 30) == 2


def test_eta_zero_distance():
    assert eta_minutes(0, 30) == 0


def test_round_half_up():
    assert round_half_up(2.345, 2) == Decimal("2.35")
    assert round_half_up(0.5) == Decimal("1")


def test_bounding_box_contains_radius():
    min_lat, max_lat, min_lng, max_lng = bounding_box(SITE[0], SITE[1], 10)
    assert min_lat < SITE[0] < max_lat
    assert min_lng < SITE[1] < max_lng
    # 10 km north of the site is ~0.09 degrees of latitude
    assert max_lat - SITE[0] == pytest.approx(0.0899, abs=0.001)


def test_bounding_box_near_pole_covers_all_longitudes():
    _, _, min_lng, max_lng = bounding_box(90.0, 0.0, 5)
    assert min_lng == -180.0
    assert max_lng == 180.0
