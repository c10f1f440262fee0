from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date
from typing import Callable, Optional

import pytest

from fieldops.domain.models import Coordinates, EngineerStatus
from fieldops.repository.data_repository import DataRepository
from fieldops.services.geo_service import GeoEstimator, StaticCoordinateLookup
from fieldops.utils.config import get_settings


SW1A = Coordinates(latitude=51.501009, longitude=-0.141588)
KM_PER_DEGREE_LATITUDE = 111.195
BOOKING_DATE = date(2025, 3, 10)  # a Monday


def north_of(origin: Coordinates, km: float) -> Coordinates:
    return Coordinates(latitude=origin.latitude + km / KM_PER_DEGREE_LATITUDE, longitude=origin.longitude)


@dataclass(frozen=True)
class PatFixture:
    service_id: int
    customer_id: int
    site_id: int


@pytest.fixture
def settings(tmp_path):
    get_settings.cache_clear()
    return replace(
        get_settings(),
        database_path=tmp_path / "fieldops_test.db",
        seed_demo_data=False,
    )


@pytest.fixture
def repository(settings) -> DataRepository:
    repo = DataRepository(settings)
    repo.initialize_database()
    return repo


@pytest.fixture
def geo(settings) -> GeoEstimator:
    return GeoEstimator(lookup=StaticCoordinateLookup({"SW1A 1AA": SW1A}), settings=settings)


@pytest.fixture
def pat(repository) -> PatFixture:
    service_id = repository.create_service(
        "PAT Testing",
        base_price=2.5,
        min_charge=60.0,
        requires_certification=True,
        qualification_keywords=("pat", "portable"),
    )
    customer_id = repository.create_customer("Acme Offices Ltd")
    site_id = repository.create_site(customer_id, "SW1A 1AA", SW1A.latitude, SW1A.longitude)
    return PatFixture(service_id=service_id, customer_id=customer_id, site_id=site_id)


@pytest.fixture
def make_engineer(repository) -> Callable[..., int]:
    def _make(
        name: str,
        service_id: int,
        center: Optional[Coordinates],
        prefix: str = "SW1",
        radius_km: float = 25.0,
        years: int = 5,
        status: EngineerStatus = EngineerStatus.APPROVED,
        certified: bool = True,
        qualification: Optional[str] = "PAT Testing Certificate",
        expiry: Optional[date] = date(2030, 1, 1),
        verified: bool = True,
    ) -> int:
        engineer_id = repository.create_engineer(name, status, years)
        repository.add_competency(engineer_id, service_id, certified=certified, experience_years=years)
        if qualification is not None:
            repository.add_qualification(engineer_id, qualification, expiry, verified=verified)
        repository.add_coverage_area(engineer_id, prefix, center, radius_km)
        return engineer_id

    return _make
