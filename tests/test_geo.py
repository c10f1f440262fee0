from __future__ import annotations

from datetime import date

import numpy as np
import pytest
import requests

from fieldops.domain.models import Coordinates, ScheduledJob, Site
from fieldops.domain.results import ErrorKind
from fieldops.services.geo_service import (
    CachingCoordinateLookup,
    GeoEstimator,
    GeoLookupUnavailableError,
    PostcodesIoLookup,
    StaticCoordinateLookup,
    distance_matrix_km,
    estimate_travel_minutes,
    haversine_km,
    postcode_area,
    postcode_district,
    prefix_covers,
)

from conftest import SW1A, north_of


LONDON = Coordinates(51.5074, -0.1278)
PARIS = Coordinates(48.8566, 2.3522)


class _FakeResponse:
    def __init__(self, status_code: int, payload=None):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        if self._payload is None:
            raise ValueError("no body")
        return self._payload


class _FakeSession:
    def __init__(self, response=None, error: Exception | None = None):
        self.response = response
        self.error = error
        self.calls: list[tuple[str, float]] = []

    def get(self, url, timeout):
        self.calls.append((url, timeout))
        if self.error is not None:
            raise self.error
        return self.response


class _TableLookup:
    def __init__(self, table):
        self.table = dict(table)
        self.calls = []

    def lookup(self, postcode):
        self.calls.append(postcode)
        return self.table.get(postcode)


class _CountingLookup:
    def __init__(self, coordinates):
        self.coordinates = coordinates
        self.calls = 0

    def lookup(self, postcode):
        self.calls += 1
        return self.coordinates


class _FailingLookup:
    def lookup(self, postcode):
        raise GeoLookupUnavailableError("timed out")


def test_haversine_london_paris():
    assert haversine_km(LONDON, PARIS) == pytest.approx(343.5, rel=0.01)
    assert haversine_km(LONDON, LONDON) == 0.0


def test_north_offset_helper_matches_haversine():
    assert haversine_km(SW1A, north_of(SW1A, 3.0)) == pytest.approx(3.0, abs=0.01)


@pytest.mark.parametrize(
    ("distance_km", "expected_minutes"),
    [(0.0, 0), (5.0, 10), (10.0, 20), (20.0, 30), (100.0, 120)],
)
def test_estimate_travel_minutes_speed_bands(distance_km, expected_minutes):
    assert estimate_travel_minutes(distance_km) == expected_minutes


def test_postcode_helpers():
    assert postcode_area("SW1A 1AA") == "SW"
    assert postcode_district("SW1A 1AA") == "SW1A"
    assert postcode_district("e14 5ab") == "E14"
    assert postcode_area("E14 5AB") == "E"


@pytest.mark.parametrize(
    ("prefix", "postcode", "expected"),
    [
        ("SW1A", "SW1A 1AA", True),
        ("SW1", "SW1A 1AA", True),
        ("SW", "SW1A 1AA", True),
        ("SW1", "SW10 9AB", False),
        ("EC", "E14 5AB", False),
        ("E", "E14 5AB", True),
        ("", "E14 5AB", False),
    ],
)
def test_prefix_covers(prefix, postcode, expected):
    assert prefix_covers(prefix, postcode) is expected


def test_distance_matrix_is_symmetric_with_zero_diagonal():
    points = [SW1A, north_of(SW1A, 3.0), LONDON]
    matrix = distance_matrix_km(points)
    assert matrix.shape == (3, 3)
    assert np.allclose(np.diag(matrix), 0.0)
    assert np.allclose(matrix, matrix.T)
    assert matrix[0, 1] == pytest.approx(haversine_km(points[0], points[1]), rel=1e-9)
    assert distance_matrix_km([]).shape == (0, 0)


def test_postcodes_io_lookup_parses_result():
    session = _FakeSession(_FakeResponse(200, {"status": 200, "result": {"latitude": 51.5, "longitude": -0.14}}))
    lookup = PostcodesIoLookup("https://api.postcodes.io/", timeout_seconds=2.5, session=session)

    coordinates = lookup.lookup("sw1a 1aa")

    assert coordinates == Coordinates(51.5, -0.14)
    assert session.calls == [("https://api.postcodes.io/postcodes/SW1A1AA", 2.5)]


def test_postcodes_io_lookup_unknown_postcode_returns_none():
    lookup = PostcodesIoLookup("https://api.postcodes.io", 2.0, session=_FakeSession(_FakeResponse(404)))
    assert lookup.lookup("ZZ9 9ZZ") is None


def test_postcodes_io_lookup_timeout_raises():
    session = _FakeSession(error=requests.exceptions.Timeout("slow"))
    lookup = PostcodesIoLookup("https://api.postcodes.io", 2.0, session=session)
    with pytest.raises(GeoLookupUnavailableError):
        lookup.lookup("SW1A 1AA")


def test_postcodes_io_lookup_server_error_raises():
    lookup = PostcodesIoLookup("https://api.postcodes.io", 2.0, session=_FakeSession(_FakeResponse(500)))
    with pytest.raises(GeoLookupUnavailableError, match="HTTP 500"):
        lookup.lookup("SW1A 1AA")


def test_caching_lookup_hits_inner_once_and_persists(repository):
    inner = _CountingLookup(SW1A)
    cache = CachingCoordinateLookup(inner, repository=repository)

    assert cache.lookup("SW1A 1AA") == SW1A
    assert cache.lookup("sw1a1aa") == SW1A
    assert inner.calls == 1
    assert repository.get_cached_postcode("SW1A1AA") == SW1A

    fresh = CachingCoordinateLookup(_CountingLookup(None), repository=repository)
    assert fresh.lookup("SW1A 1AA") == SW1A


def test_caching_lookup_retries_unknown_postcodes(repository):
    inner = _TableLookup({})
    cache = CachingCoordinateLookup(inner, repository=repository)

    assert cache.lookup("SW1P 3JA") is None
    assert repository.get_cached_postcode("SW1P3JA") is None

    inner.table["SW1P3JA"] = SW1A
    assert cache.lookup("SW1P 3JA") == SW1A
    assert inner.calls == ["SW1P3JA", "SW1P3JA"]


def test_caching_lookup_evicts_least_recently_used():
    inner = _TableLookup({"AB11AA": SW1A, "AB12AA": north_of(SW1A, 1.0), "AB13AA": north_of(SW1A, 2.0)})
    cache = CachingCoordinateLookup(inner, max_entries=2)

    for postcode in ("AB1 1AA", "AB1 2AA", "AB1 1AA", "AB1 3AA", "AB1 1AA", "AB1 2AA"):
        assert cache.lookup(postcode) is not None

    assert inner.calls == ["AB11AA", "AB12AA", "AB13AA", "AB12AA"]


def test_caching_lookup_rejects_empty_bound():
    with pytest.raises(ValueError):
        CachingCoordinateLookup(_TableLookup({}), max_entries=0)


def test_locate_jobs_fills_missing_coordinates(settings):
    nearby = north_of(SW1A, 1.0)
    estimator = GeoEstimator(lookup=StaticCoordinateLookup({"SW1A 2AA": nearby}), settings=settings)
    jobs = [
        ScheduledJob(1, 1, date(2025, 3, 10), "AM", "SW1A 1AA", SW1A, 1),
        ScheduledJob(2, 1, date(2025, 3, 10), "PM", "SW1A 2AA", None, 1),
        ScheduledJob(3, 1, date(2025, 3, 10), "PM", "ZZ9 9ZZ", None, 1),
    ]

    located = estimator.locate_jobs(jobs)

    assert [job.coordinates for job in located] == [SW1A, nearby, None]
    assert [job.booking_id for job in located] == [1, 2, 3]


def test_geo_estimator_prefers_stored_site_coordinates(settings):
    estimator = GeoEstimator(lookup=_FailingLookup(), settings=settings)
    site = Site(site_id=1, customer_id=1, postcode="SW1A 1AA", latitude=SW1A.latitude, longitude=SW1A.longitude)

    resolution = estimator.resolve_site(site)

    assert resolution.coordinates == SW1A
    assert resolution.error is None


def test_geo_estimator_degrades_on_lookup_failure(settings):
    estimator = GeoEstimator(lookup=_FailingLookup(), settings=settings)
    site = Site(site_id=1, customer_id=1, postcode="SW1A 1AA")

    resolution = estimator.resolve_site(site)

    assert resolution.degraded
    assert resolution.error.kind == ErrorKind.GEO_LOOKUP_UNAVAILABLE
    assert resolution.error.retryable is True
    assert estimator.resolve_postcode("SW1A 1AA") is None


def test_geo_estimator_unknown_postcode_is_not_retryable(settings):
    estimator = GeoEstimator(lookup=StaticCoordinateLookup(), settings=settings)
    resolution = estimator.resolve_site(Site(site_id=2, customer_id=1, postcode="ZZ9 9ZZ"))
    assert resolution.degraded
    assert resolution.error.retryable is False
