import math

import pytest

from service import EARTH_RADIUS_KM, distance_km


def test_distance_is_symmetric():
    a = (24.7136, 46.6753)   # Riyadh
    b = (21.4858, 39.1925)   # Jeddah
    assert distance_km(*a, *b) == pytest.approx(distance_km(*b, *a))


def test_distance_to_self_is_zero():
    assert distance_km(51.5, -0.12, 51.5, -0.12) == 0.0


def test_one_degree_of_latitude_is_about_111_km():
    d = distance_km(10.0, 20.0, 11.0, 20.0)
    assert d == pytest.approx(111.0, rel=0.01)


def test_known_city_pair():
    # Riyadh to Jeddah is roughly 850 km great-circle
    d = distance_km(24.7136, 46.6753, 21.4858, 39.1925)
    assert 830 < d < 870


def test_antipodal_points_do_not_blow_up():
    d = distance_km(0.0, 0.0, 0.0, 180.0)
    assert d == pytest.approx(math.pi * EARTH_RADIUS_KM)


def test_crossing_the_antimeridian():
    d = distance_km(0.0, 179.5, 0.0, -179.5)
    assert d == pytest.approx(111.19, rel=0.01)
