from __future__ import annotations

from datetime import timedelta

import pytest

from fieldops.domain.models import BookingStatus, ScheduledJob
from fieldops.domain.results import ErrorKind
from fieldops.services.geo_service import GeoEstimator, StaticCoordinateLookup
from fieldops.services.route_service import RouteService, efficiency_rating, slot_start_minutes

from conftest import BOOKING_DATE, SW1A, north_of


NAMED_SLOTS = {"AM": "09:00", "PM": "13:00", "FULL_DAY": "09:00"}


def _job(booking_id: int, slot: str, coordinates, postcode: str = "SW1A 1AA") -> ScheduledJob:
    return ScheduledJob(
        booking_id=booking_id,
        engineer_id=1,
        scheduled_date=BOOKING_DATE,
        time_slot=slot,
        postcode=postcode,
        coordinates=coordinates,
        service_id=1,
    )


@pytest.fixture
def route_service(repository, settings) -> RouteService:
    geo = GeoEstimator(lookup=StaticCoordinateLookup({}), settings=settings)
    return RouteService(repository=repository, settings=settings, geo=geo)


@pytest.mark.parametrize(
    ("slot", "minutes"),
    [("AM", 540), ("pm", 780), ("FULL_DAY", 540), ("10:30", 630), ("EVENING", 1440)],
)
def test_slot_start_minutes(slot, minutes):
    assert slot_start_minutes(slot, NAMED_SLOTS) == minutes


@pytest.mark.parametrize(
    ("total_km", "transitions", "rating"),
    [(0.0, 0, 100), (0.0, 2, 100), (10.0, 2, 80), (15.0, 2, 65), (30.0, 2, 40), (200.0, 2, 20)],
)
def test_efficiency_rating_bands(total_km, transitions, rating):
    assert efficiency_rating(total_km, transitions) == rating


def test_nearest_neighbour_from_earliest_slot(route_service):
    jobs = [
        _job(1, "AM", SW1A),
        _job(2, "AM", north_of(SW1A, 10.0)),
        _job(3, "PM", north_of(SW1A, 1.0)),
    ]

    route, warnings = route_service.build_route(1, BOOKING_DATE, jobs)

    assert warnings == ()
    assert [stop.booking_id for stop in route.stops] == [1, 3, 2]
    assert [stop.suggested_order for stop in route.stops] == [1, 2, 3]
    assert route.stops[0].distance_from_previous_km is None
    assert route.stops[1].distance_from_previous_km == pytest.approx(1.0, abs=0.01)
    assert route.stops[2].distance_from_previous_km == pytest.approx(9.0, abs=0.01)
    assert route.total_distance_km == pytest.approx(10.0, abs=0.02)
    assert route.total_travel_minutes == 20
    assert route.total_day_minutes == 20 + 3 * 60
    assert route.efficiency_rating == 80


def test_route_is_a_permutation_of_jobs(route_service):
    jobs = [_job(index, "PM" if index % 2 else "AM", north_of(SW1A, index * 1.5)) for index in range(1, 8)]
    route, _ = route_service.build_route(1, BOOKING_DATE, jobs)
    assert sorted(stop.booking_id for stop in route.stops) == list(range(1, 8))


def test_unlocated_jobs_go_last_with_warning(route_service):
    jobs = [
        _job(1, "PM", None, postcode="ZZ9 9ZZ"),
        _job(2, "PM", north_of(SW1A, 2.0)),
        _job(3, "AM", SW1A),
    ]

    route, warnings = route_service.build_route(1, BOOKING_DATE, jobs)

    assert [stop.booking_id for stop in route.stops] == [3, 2, 1]
    assert route.stops[-1].coordinates is None
    assert route.stops[-1].travel_minutes_from_previous is None
    assert len(warnings) == 1
    assert warnings[0].kind == ErrorKind.GEO_LOOKUP_UNAVAILABLE


def test_single_job_route(route_service):
    route, _ = route_service.build_route(1, BOOKING_DATE, [_job(4, "AM", SW1A)])
    assert [stop.booking_id for stop in route.stops] == [4]
    assert route.total_distance_km == 0.0
    assert route.efficiency_rating == 100


def test_optimize_route_reads_active_jobs(route_service, repository, pat, make_engineer):
    engineer_id = make_engineer("Route Engineer", pat.service_id, SW1A)
    far = north_of(SW1A, 4.0)
    far_site = repository.create_site(pat.customer_id, "SW1P 3JA", far.latitude, far.longitude)
    confirmed = repository.create_booking(
        pat.service_id, pat.site_id, pat.customer_id, BOOKING_DATE, "AM",
        status=BookingStatus.CONFIRMED, engineer_id=engineer_id,
    )
    in_progress = repository.create_booking(
        pat.service_id, far_site, pat.customer_id, BOOKING_DATE, "PM",
        status=BookingStatus.IN_PROGRESS, engineer_id=engineer_id,
    )
    repository.create_booking(
        pat.service_id, far_site, pat.customer_id, BOOKING_DATE, "PM",
        status=BookingStatus.COMPLETED, engineer_id=engineer_id,
    )
    repository.create_booking(
        pat.service_id, far_site, pat.customer_id, BOOKING_DATE + timedelta(days=1), "AM",
        status=BookingStatus.CONFIRMED, engineer_id=engineer_id,
    )

    result = route_service.optimize_route(engineer_id, BOOKING_DATE)

    assert result.success
    assert [stop.booking_id for stop in result.route.stops] == [confirmed, in_progress]


def test_optimize_route_empty_day(route_service, pat, make_engineer):
    engineer_id = make_engineer("Idle Engineer", pat.service_id, SW1A)
    result = route_service.optimize_route(engineer_id, BOOKING_DATE)
    assert result.success
    assert result.route.stops == ()
    assert result.route.total_day_minutes == 0


def test_optimize_route_unknown_engineer(route_service):
    result = route_service.optimize_route(999, BOOKING_DATE)
    assert not result.success
    assert result.error.kind == ErrorKind.ENGINEER_NOT_FOUND
