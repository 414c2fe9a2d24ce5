from datetime import timedelta

import pytest

from conftest import KM_PER_DEGREE, T0
from model import Provider, ProviderStatus
from service import ProviderMatcher

ORIGIN = (0.0, 0.0)


def _provider(name, km=None, **kwargs):
    kwargs.setdefault("status", ProviderStatus.AVAILABLE)
    kwargs.setdefault("specializations", ["plumbing"])
    if km is not None:
        kwargs["current_latitude"] = km / KM_PER_DEGREE
        kwargs["current_longitude"] = 0.0
        kwargs.setdefault("location_updated_at", T0)
    return Provider(name=name, **kwargs)


def _names(matches):
    return [m.provider.name for m in matches]


def test_nearest_first():
    providers = [_provider("two", 2), _provider("ten", 10), _provider("half", 0.5)]
    matches = ProviderMatcher().find_nearest(ORIGIN, providers)
    assert _names(matches) == ["half", "two", "ten"]
    assert [round(m.distance_km, 3) for m in matches] == [0.5, 2.0, 10.0]


def test_providers_without_coordinates_never_appear():
    providers = [_provider("located", 3), _provider("unknown")]
    assert _names(ProviderMatcher().find_nearest(ORIGIN, providers)) == ["located"]


def test_unavailable_and_inactive_providers_are_skipped():
    providers = [
        _provider("busy", 1, status=ProviderStatus.BUSY),
        _provider("offline", 1, status=ProviderStatus.OFFLINE),
        _provider("retired", 1, is_active=False),
        _provider("online", 4, status=ProviderStatus.ONLINE),
    ]
    assert _names(ProviderMatcher().find_nearest(ORIGIN, providers)) == ["online"]


def test_available_statuses_are_configurable():
    providers = [_provider("on_route", 1, status=ProviderStatus.ON_ROUTE)]
    matcher = ProviderMatcher(available_statuses=[ProviderStatus.ON_ROUTE])
    assert _names(matcher.find_nearest(ORIGIN, providers)) == ["on_route"]


def test_specialization_filter_is_case_insensitive():
    providers = [
        _provider("plumber", 5, specializations=["Plumbing"]),
        _provider("electrician", 1, specializations=["electrical"]),
    ]
    matches = ProviderMatcher().find_nearest(ORIGIN, providers, specialization="plumbing")
    assert _names(matches) == ["plumber"]


def test_no_specialization_means_no_filter():
    providers = [_provider("a", 1, specializations=["hvac"]), _provider("b", 2, specializations=[])]
    assert _names(ProviderMatcher().find_nearest(ORIGIN, providers)) == ["a", "b"]


def test_max_distance():
    providers = [_provider("near", 4), _provider("far", 40)]
    matches = ProviderMatcher().find_nearest(ORIGIN, providers, max_distance_km=10)
    assert _names(matches) == ["near"]


def test_negative_max_distance_is_rejected():
    with pytest.raises(ValueError):
        ProviderMatcher().find_nearest(ORIGIN, [], max_distance_km=-1)


def test_service_radius_is_respected_unless_disabled():
    providers = [_provider("small_radius", 8, service_radius_km=5)]
    assert ProviderMatcher().find_nearest(ORIGIN, providers) == []
    relaxed = ProviderMatcher(respect_service_radius=False)
    assert _names(relaxed.find_nearest(ORIGIN, providers)) == ["small_radius"]


def test_ties_break_on_rating_then_freshness():
    providers = [
        _provider("stale", 3, rating=4.5, location_updated_at=T0 - timedelta(hours=2)),
        _provider("low_rated", 3, rating=3.0),
        _provider("fresh", 3, rating=4.5, location_updated_at=T0),
        _provider("never_updated", 3, rating=4.5, location_updated_at=None),
    ]
    assert _names(ProviderMatcher().find_nearest(ORIGIN, providers)) == [
        "fresh", "stale", "never_updated", "low_rated",
    ]


def test_unknown_request_location_gives_empty_result():
    assert ProviderMatcher().find_nearest(None, [_provider("a", 1)]) == []
