import pytest

from app.remonta import geocoding
from app.remonta.geocoding import bounding_box, distance_km, geocode_address, parse_location


@pytest.fixture(autouse=True)
def _fresh_cache():
    geocoding.clear_cache()
    yield
    geocoding.clear_cache()


@pytest.mark.parametrize(
    "text, expected",
    [
        ("Parramatta, NSW 2150", ("Parramatta", "NSW", "2150")),
        ("Geelong vic 3220", ("Geelong", "VIC", "3220")),
        ("Hobart, Tasmania", ("Hobart", "TAS", None)),
        ("Queensland", ("Queensland", "QLD", None)),
        ("Darwin", ("Darwin", None, None)),
        ("", (None, None, None)),
    ],
)
def test_parse_location(text, expected):
    parsed = parse_location(text)
    assert (parsed.city, parsed.state, parsed.postal_code) == expected


def test_distance_km():
    sydney = (-33.8688, 151.2093)
    melbourne = (-37.8136, 144.9631)
    assert distance_km(*sydney, *sydney) == pytest.approx(0.0)
    assert distance_km(*sydney, *melbourne) == pytest.approx(713.4, abs=2.0)


def test_bounding_box_contains_radius():
    min_lat, max_lat, min_lon, max_lon = bounding_box(-33.8688, 151.2093, 50)
    assert min_lat < -33.8688 < max_lat
    assert min_lon < 151.2093 < max_lon
    assert distance_km(-33.8688, 151.2093, max_lat, 151.2093) == pytest.approx(50, abs=0.5)


def test_geocode_without_key_is_skipped(monkeypatch):
    def _no_network(url, timeout_seconds=10):
        raise AssertionError("network should not be used")

    monkeypatch.setattr(geocoding, "_fetch_json", _no_network)
    assert geocode_address("Parramatta NSW", api_key="") is None


def test_geocode_caches_results(monkeypatch):
    calls = []

    def _fake(url, timeout_seconds=10):
        calls.append(url)
        return {
            "status": "OK",
            "results": [
                {
                    "formatted_address": "Parramatta NSW 2150, Australia",
                    "geometry": {"location": {"lat": -33.815, "lng": 151.001}},
                }
            ],
        }

    monkeypatch.setattr(geocoding, "_fetch_json", _fake)
    first = geocode_address("Parramatta NSW", api_key="k")
    second = geocode_address("parramatta nsw", api_key="k")
    assert first == second
    assert first.latitude == -33.815
    assert len(calls) == 1


def test_geocode_failures_return_none(monkeypatch):
    monkeypatch.setattr(geocoding, "_fetch_json", lambda url, timeout_seconds=10: {"status": "ZERO_RESULTS", "results": []})
    assert geocode_address("Nowhere", api_key="k") is None

    def _boom(url, timeout_seconds=10):
        raise OSError("timed out")

    monkeypatch.setattr(geocoding, "_fetch_json", _boom)
    assert geocode_address("Somewhere", api_key="k") is None
