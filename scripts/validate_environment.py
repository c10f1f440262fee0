#!/usr/bin/env python3
"""Validate local FieldOps environment readiness."""

from __future__ import annotations

import importlib
import shutil
import sys
import tempfile
from dataclasses import replace
from datetime import date
from pathlib import Path
from typing import Callable

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from fieldops.repository.data_repository import DataRepository
from fieldops.services.allocation_service import AllocationService
from fieldops.services.geo_service import GeoEstimator, StaticCoordinateLookup
from fieldops.services.route_service import RouteService
from fieldops.utils.config import get_settings

SEPARATOR_LINE = "=" * 44
SEED_DATE = date(2026, 3, 2)
REQUIRED_MODULES = ("fastapi", "uvicorn", "pydantic", "numpy", "requests", "httpx", "pytest")


class CheckFailed(Exception):
    pass


def _check_python() -> str:
    version = sys.version.split()[0]
    if sys.version_info < (3, 11):
        raise CheckFailed(f"Python >= 3.11 required, found {version}")
    return version


def _check_imports() -> str:
    missing: list[str] = []
    for module_name in REQUIRED_MODULES:
        try:
            importlib.import_module(module_name)
        except ImportError as exc:
            missing.append(f"{module_name} ({exc})")
    if missing:
        raise CheckFailed("missing/unimportable -> " + "; ".join(missing))
    return f"{len(REQUIRED_MODULES)} importable"


def _run(name: str, check: Callable[[], str], lines: list[str]) -> bool:
    try:
        detail = check()
    except Exception as exc:
        lines.append(f"[FAIL] {name}: {exc}")
        return False
    lines.append(f"[PASS] {name}: {detail}")
    return True


def main() -> int:
    lines: list[str] = []
    temp_dir = tempfile.mkdtemp(prefix="fieldops-env-")
    try:
        settings = replace(get_settings(), database_path=Path(temp_dir) / "fieldops_validation.db")
        repository = DataRepository(settings)
        # Seeded sites carry coordinates, so no network lookup is needed.
        geo = GeoEstimator(lookup=StaticCoordinateLookup(), settings=settings)

        def init_database() -> str:
            repository.initialize_database()
            return str(repository.database_path.name)

        def seed() -> str:
            seeded = repository.seed_demo_data(today=SEED_DATE)
            if seeded <= 0:
                raise CheckFailed("expected demo bookings to be created")
            return f"{seeded} bookings"

        def allocate() -> str:
            result = AllocationService(repository=repository, settings=settings, geo=geo).allocate(
                1, today=SEED_DATE
            )
            if not result.success:
                raise CheckFailed(result.error.message if result.error else "unknown failure")
            return f"engineer={result.selected_engineer_id} price={result.quoted_price:.2f}"

        def route() -> str:
            booking = repository.get_booking(1)
            if booking is None or booking.engineer_id is None:
                raise CheckFailed("booking 1 is not assigned")
            result = RouteService(repository=repository, settings=settings, geo=geo).optimize_route(
                booking.engineer_id, booking.scheduled_date
            )
            if not result.success or not result.route.stops:
                raise CheckFailed("route has no stops")
            return f"{len(result.route.stops)} stop(s)"

        checks = [
            ("Python", _check_python),
            ("Required packages", _check_imports),
            ("Database initialization", init_database),
            ("Demo data seeding", seed),
            ("Allocation", allocate),
            ("Route optimization", route),
        ]
        outcomes = [_run(name, check, lines) for name, check in checks]
    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)

    print(SEPARATOR_LINE)
    print(" FieldOps Environment Validation")
    print(SEPARATOR_LINE)
    for line in lines:
        print(f" {line}")
    print(SEPARATOR_LINE)
    if all(outcomes):
        print(" All checks passed. Environment is ready.")
        print(SEPARATOR_LINE)
        return 0
    print(" One or more checks failed.")
    print(SEPARATOR_LINE)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
