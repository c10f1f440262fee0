"""Postcode geocoding and static distance/travel-time estimates."""

from __future__ import annotations

import math
import re
from collections import OrderedDict
from dataclasses import dataclass, replace
from typing import Mapping, Optional, Protocol, Sequence

import numpy as np
import requests

from fieldops.domain.models import Coordinates, ScheduledJob, Site
from fieldops.domain.results import EngineError, ErrorKind
from fieldops.repository.data_repository import DataRepository
from fieldops.utils.config import Settings, get_settings
from fieldops.utils.logger import get_logger


logger = get_logger(__name__)

EARTH_RADIUS_KM = 6371.0
# UK inward codes ("1AA") are always three characters.
INWARD_CODE_LENGTH = 3

_AREA_PATTERN = re.compile(r"^[A-Z]{1,2}")


class GeoLookupUnavailableError(Exception):
    """Raised when the postcode lookup cannot be reached or answers badly."""


def normalize_postcode(postcode: str) -> str:
    return "".join(postcode.split()).upper()


def postcode_district(postcode: str) -> str:
    """Outward code: ``"SW1A 1AA" -> "SW1A"``."""
    cleaned = normalize_postcode(postcode)
    if len(cleaned) > INWARD_CODE_LENGTH + 1:
        return cleaned[:-INWARD_CODE_LENGTH]
    return cleaned


def postcode_area(postcode: str) -> str:
    """Leading letters only: ``"SW1A 1AA" -> "SW"``."""
    match = _AREA_PATTERN.match(normalize_postcode(postcode))
    return match.group(0) if match else ""


def prefix_covers(prefix: str, postcode: str) -> bool:
    """True when a coverage prefix names the postcode's area or district.

    ``"SW1"`` covers ``SW1A`` and ``SW1P`` but not ``SW10``.
    """
    prefix = normalize_postcode(prefix)
    if not prefix:
        return False
    district = postcode_district(postcode)
    if prefix == district or prefix == postcode_area(postcode):
        return True
    if district.startswith(prefix) and prefix[-1].isdigit():
        return district[len(prefix):].isalpha()
    return False


def haversine_km(a: Coordinates, b: Coordinates) -> float:
    lat1, lat2 = math.radians(a.latitude), math.radians(b.latitude)
    d_lat = lat2 - lat1
    d_lon = math.radians(b.longitude - a.longitude)
    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(h)))


def estimate_travel_minutes(distance_km: float) -> int:
    """Static urban speed bands; no live traffic."""
    if distance_km <= 10:
        speed_kmh = 30.0
    elif distance_km <= 50:
        speed_kmh = 40.0
    else:
        speed_kmh = 50.0
    return int(round(distance_km / speed_kmh * 60))


def distance_matrix_km(points: Sequence[Coordinates]) -> np.ndarray:
    """Pairwise haversine distances as an ``N x N`` array."""
    if not points:
        return np.zeros((0, 0))
    lat = np.radians(np.array([point.latitude for point in points]))
    lon = np.radians(np.array([point.longitude for point in points]))
    d_lat = lat[:, None] - lat[None, :]
    d_lon = lon[:, None] - lon[None, :]
    h = np.sin(d_lat / 2) ** 2 + np.cos(lat)[:, None] * np.cos(lat)[None, :] * np.sin(d_lon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * np.arcsin(np.sqrt(np.clip(h, 0.0, 1.0)))


class CoordinateLookup(Protocol):
    def lookup(self, postcode: str) -> Optional[Coordinates]:
        """Return coordinates, None for an unknown postcode.

        Raises GeoLookupUnavailableError when the answer is unknowable.
        """


class StaticCoordinateLookup:
    """Fixed postcode table, used for seed data and tests."""

    def __init__(self, table: Optional[Mapping[str, Coordinates]] = None) -> None:
        self._table = {normalize_postcode(key): value for key, value in (table or {}).items()}

    def lookup(self, postcode: str) -> Optional[Coordinates]:
        return self._table.get(normalize_postcode(postcode))


class PostcodesIoLookup:
    """Client for the public postcodes.io API."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._session = session or requests.Session()

    def lookup(self, postcode: str) -> Optional[Coordinates]:
        cleaned = normalize_postcode(postcode)
        if not cleaned:
            return None
        url = f"{self._base_url}/postcodes/{cleaned}"
        try:
            response = self._session.get(url, timeout=self._timeout)
        except requests.exceptions.RequestException as exc:
            raise GeoLookupUnavailableError(f"postcode lookup failed for {cleaned}: {exc}") from exc

        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise GeoLookupUnavailableError(
                f"postcode lookup returned HTTP {response.status_code} for {cleaned}"
            )
        try:
            result = response.json()["result"]
            return Coordinates(latitude=float(result["latitude"]), longitude=float(result["longitude"]))
        except (ValueError, KeyError, TypeError) as exc:
            raise GeoLookupUnavailableError(f"malformed postcode lookup response for {cleaned}") from exc


class CachingCoordinateLookup:
    """Bounded memory LRU then database cache in front of another lookup.

    Only resolved postcodes are cached, so an unknown postcode is asked
    again on the next lookup.
    """

    def __init__(
        self,
        inner: CoordinateLookup,
        repository: Optional[DataRepository] = None,
        max_entries: int = 2048,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._inner = inner
        self._repository = repository
        self._max_entries = max_entries
        self._memory: OrderedDict[str, Coordinates] = OrderedDict()

    def _remember(self, postcode: str, coordinates: Coordinates) -> None:
        self._memory[postcode] = coordinates
        self._memory.move_to_end(postcode)
        while len(self._memory) > self._max_entries:
            self._memory.popitem(last=False)

    def lookup(self, postcode: str) -> Optional[Coordinates]:
        cleaned = normalize_postcode(postcode)
        if cleaned in self._memory:
            self._memory.move_to_end(cleaned)
            return self._memory[cleaned]
        if self._repository is not None:
            cached = self._repository.get_cached_postcode(cleaned)
            if cached is not None:
                self._remember(cleaned, cached)
                return cached

        coordinates = self._inner.lookup(cleaned)
        if coordinates is None:
            return None
        self._remember(cleaned, coordinates)
        if self._repository is not None:
            self._repository.save_cached_postcode(cleaned, coordinates)
        return coordinates


@dataclass(frozen=True)
class GeoResolution:
    coordinates: Optional[Coordinates]
    error: Optional[EngineError] = None

    @property
    def degraded(self) -> bool:
        return self.coordinates is None


class GeoEstimator:
    def __init__(
        self,
        lookup: Optional[CoordinateLookup] = None,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        if lookup is None:
            lookup = CachingCoordinateLookup(
                PostcodesIoLookup(
                    base_url=self._settings.geo_lookup_base_url,
                    timeout_seconds=self._settings.geo_lookup_timeout_seconds,
                ),
                repository=repository,
                max_entries=self._settings.geo_cache_max_entries,
            )
        self._lookup = lookup

    def resolve_site(self, site: Site) -> GeoResolution:
        """Stored site coordinates first, then the lookup; never raises."""
        if site.coordinates is not None:
            return GeoResolution(coordinates=site.coordinates)
        try:
            coordinates = self._lookup.lookup(site.postcode)
        except GeoLookupUnavailableError as exc:
            logger.warning("Geo lookup unavailable | site_id=%s | error=%s", site.site_id, exc)
            return GeoResolution(
                coordinates=None,
                error=EngineError(ErrorKind.GEO_LOOKUP_UNAVAILABLE, str(exc), retryable=True),
            )
        if coordinates is None:
            logger.warning("Postcode not found | site_id=%s | postcode=%s", site.site_id, site.postcode)
            return GeoResolution(
                coordinates=None,
                error=EngineError(
                    ErrorKind.GEO_LOOKUP_UNAVAILABLE,
                    f"postcode {site.postcode} could not be geocoded",
                    retryable=False,
                ),
            )
        return GeoResolution(coordinates=coordinates)

    def resolve_postcode(self, postcode: str) -> Optional[Coordinates]:
        try:
            return self._lookup.lookup(postcode)
        except GeoLookupUnavailableError as exc:
            logger.warning("Geo lookup unavailable | postcode=%s | error=%s", postcode, exc)
            return None

    def locate_jobs(self, jobs: Sequence[ScheduledJob]) -> list[ScheduledJob]:
        """Fill in coordinates for jobs whose site has none stored."""
        return [
            job if job.coordinates is not None else replace(job, coordinates=self.resolve_postcode(job.postcode))
            for job in jobs
        ]
