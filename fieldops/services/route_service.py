"""Single-engineer, single-day job ordering by nearest neighbour."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from typing import Optional, Sequence

from fieldops.domain.models import Coordinates, OptimizedRoute, RouteStop, ScheduledJob
from fieldops.domain.results import EngineError, ErrorKind, RouteResult
from fieldops.repository.data_repository import DataRepository
from fieldops.services.geo_service import GeoEstimator, distance_matrix_km, estimate_travel_minutes
from fieldops.utils.config import Settings, get_settings
from fieldops.utils.logger import get_logger


logger = get_logger(__name__)

_CLOCK_PATTERN = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")
UNKNOWN_SLOT_MINUTES = 24 * 60


@dataclass(frozen=True)
class _LocatedJob:
    job: ScheduledJob
    coordinates: Optional[Coordinates]
    slot_minutes: int


def slot_start_minutes(slot: str, named_slots: dict[str, str]) -> int:
    """Minutes after midnight for "AM"/"PM"/"FULL_DAY" or a literal "HH:MM"."""
    clock = named_slots.get(slot.strip().upper(), slot.strip())
    match = _CLOCK_PATTERN.match(clock)
    if match is None:
        return UNKNOWN_SLOT_MINUTES
    return int(match.group(1)) * 60 + int(match.group(2))


def efficiency_rating(total_distance_km: float, transitions: int) -> int:
    if transitions <= 0:
        return 100
    average = total_distance_km / transitions
    if average < 3:
        rating = 95 + (3 - average) / 3 * 5
    elif average < 5:
        rating = 80 + (5 - average) / 2 * 15
    elif average < 10:
        rating = 50 + (10 - average) / 5 * 30
    else:
        rating = max(20.0, 50 - (average - 10) * 2)
    return int(round(min(100.0, rating)))


def order_jobs(jobs: Sequence[_LocatedJob]) -> list[tuple[_LocatedJob, Optional[float]]]:
    """Nearest-neighbour from the earliest slot; jobs without a position go last.

    Returns each job with its distance from the previous located stop.
    """
    located = [item for item in jobs if item.coordinates is not None]
    unlocated = sorted(
        (item for item in jobs if item.coordinates is None),
        key=lambda item: (item.slot_minutes, item.job.booking_id),
    )
    ordered: list[tuple[_LocatedJob, Optional[float]]] = []

    if located:
        matrix = distance_matrix_km([item.coordinates for item in located])
        unvisited = set(range(len(located)))
        current = min(unvisited, key=lambda index: (located[index].slot_minutes, located[index].job.booking_id))
        unvisited.remove(current)
        ordered.append((located[current], None))
        while unvisited:
            previous = current
            current = min(
                unvisited,
                key=lambda index: (
                    float(matrix[previous, index]),
                    located[index].slot_minutes,
                    located[index].job.booking_id,
                ),
            )
            unvisited.remove(current)
            ordered.append((located[current], float(matrix[previous, current])))

    ordered.extend((item, None) for item in unlocated)
    return ordered


class RouteService:
    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        geo: Optional[GeoEstimator] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._geo = geo or GeoEstimator(repository=self._repository, settings=self._settings)
        self._named_slots = dict(self._settings.route_slot_start_times)

    def build_route(
        self,
        engineer_id: int,
        route_date: date,
        jobs: Sequence[ScheduledJob],
    ) -> tuple[OptimizedRoute, tuple[EngineError, ...]]:
        warnings: list[EngineError] = []
        located_jobs: list[_LocatedJob] = []
        for job in self._geo.locate_jobs(jobs):
            coordinates = job.coordinates
            if coordinates is None:
                warnings.append(
                    EngineError(
                        ErrorKind.GEO_LOOKUP_UNAVAILABLE,
                        f"No coordinates for booking {job.booking_id} ({job.postcode}); placed last",
                        retryable=True,
                    )
                )
            located_jobs.append(
                _LocatedJob(
                    job=job,
                    coordinates=coordinates,
                    slot_minutes=slot_start_minutes(job.time_slot, self._named_slots),
                )
            )

        stops: list[RouteStop] = []
        total_distance = 0.0
        total_travel = 0
        transitions = 0
        for order, (item, distance) in enumerate(order_jobs(located_jobs), start=1):
            travel = None
            if distance is not None:
                travel = estimate_travel_minutes(distance)
                total_distance += distance
                total_travel += travel
                transitions += 1
            stops.append(
                RouteStop(
                    booking_id=item.job.booking_id,
                    suggested_order=order,
                    time_slot=item.job.time_slot,
                    postcode=item.job.postcode,
                    coordinates=item.coordinates,
                    distance_from_previous_km=None if distance is None else round(distance, 2),
                    travel_minutes_from_previous=travel,
                )
            )

        route = OptimizedRoute(
            engineer_id=engineer_id,
            route_date=route_date,
            stops=tuple(stops),
            total_distance_km=round(total_distance, 2),
            total_travel_minutes=total_travel,
            total_day_minutes=total_travel + len(stops) * self._settings.route_default_job_minutes,
            efficiency_rating=efficiency_rating(total_distance, transitions),
        )
        return route, tuple(warnings)

    def optimize_route(self, engineer_id: int, route_date: date) -> RouteResult:
        if self._repository.get_engineer_profile(engineer_id) is None:
            return RouteResult(
                success=False,
                error=EngineError(ErrorKind.ENGINEER_NOT_FOUND, f"Engineer {engineer_id} not found"),
            )
        jobs = self._repository.list_engineer_jobs(engineer_id, route_date, route_date)
        route, warnings = self.build_route(engineer_id, route_date, jobs)
        logger.info(
            "Route optimized | engineer_id=%s | date=%s | stops=%s | distance_km=%.2f | efficiency=%s",
            engineer_id,
            route_date.isoformat(),
            len(route.stops),
            route.total_distance_km,
            route.efficiency_rating,
        )
        return RouteResult(success=True, route=route, warnings=warnings)
