"""Runtime configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {value!r}") from exc


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {value!r}") from exc


@dataclass(frozen=True)
class Settings:
    """Process-level settings. Tests override fields with dataclasses.replace."""

    app_name: str
    app_version: str
    log_level: str
    database_path: Path
    seed_demo_data: bool

    # Composite scorer
    scoring_weight_customer: float
    scoring_weight_engineer: float
    scoring_weight_platform: float
    scoring_tie_epsilon: float
    scoring_daily_penalty_per_job: float
    scoring_weekly_penalty_per_job: float
    scoring_max_jobs_per_day: int
    scoring_cluster_radius_km: float
    scoring_cluster_bonus_per_job: float
    scoring_cluster_bonus_cap: float
    scoring_efficiency_partial_day: float
    scoring_efficiency_free_day: float

    # Geo estimator
    geo_lookup_base_url: str
    geo_lookup_timeout_seconds: float
    geo_cache_max_entries: int

    # Pricing rule engine
    pricing_min_margin_ratio: float

    # Route optimizer
    route_default_job_minutes: int
    route_slot_start_times: tuple[tuple[str, str], ...]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Build settings once per process."""
    return Settings(
        app_name=_env_str("FIELDOPS_APP_NAME", "FieldOps Allocation Engine"),
        app_version=_env_str("FIELDOPS_APP_VERSION", "1.0.0"),
        log_level=_env_str("FIELDOPS_LOG_LEVEL", "INFO"),
        database_path=Path(_env_str("FIELDOPS_DATABASE_PATH", "data/fieldops.db")),
        seed_demo_data=_env_str("FIELDOPS_SEED_DEMO_DATA", "true").lower() == "true",
        scoring_weight_customer=_env_float("FIELDOPS_WEIGHT_CUSTOMER", 0.4),
        scoring_weight_engineer=_env_float("FIELDOPS_WEIGHT_ENGINEER", 0.3),
        scoring_weight_platform=_env_float("FIELDOPS_WEIGHT_PLATFORM", 0.3),
        scoring_tie_epsilon=_env_float("FIELDOPS_SCORE_TIE_EPSILON", 1e-6),
        scoring_daily_penalty_per_job=_env_float("FIELDOPS_DAILY_PENALTY_PER_JOB", 5.0),
        scoring_weekly_penalty_per_job=_env_float("FIELDOPS_WEEKLY_PENALTY_PER_JOB", 1.0),
        scoring_max_jobs_per_day=_env_int("FIELDOPS_MAX_JOBS_PER_DAY", 7),
        scoring_cluster_radius_km=_env_float("FIELDOPS_CLUSTER_RADIUS_KM", 5.0),
        scoring_cluster_bonus_per_job=_env_float("FIELDOPS_CLUSTER_BONUS_PER_JOB", 20.0),
        scoring_cluster_bonus_cap=_env_float("FIELDOPS_CLUSTER_BONUS_CAP", 60.0),
        scoring_efficiency_partial_day=_env_float("FIELDOPS_EFFICIENCY_PARTIAL_DAY", 40.0),
        scoring_efficiency_free_day=_env_float("FIELDOPS_EFFICIENCY_FREE_DAY", 20.0),
        geo_lookup_base_url=_env_str("FIELDOPS_GEO_LOOKUP_URL", "https://api.postcodes.io"),
        geo_lookup_timeout_seconds=_env_float("FIELDOPS_GEO_LOOKUP_TIMEOUT", 3.0),
        geo_cache_max_entries=_env_int("FIELDOPS_GEO_CACHE_SIZE", 2048),
        pricing_min_margin_ratio=_env_float("FIELDOPS_MIN_MARGIN_RATIO", 0.70),
        route_default_job_minutes=_env_int("FIELDOPS_DEFAULT_JOB_MINUTES", 60),
        route_slot_start_times=(("AM", "09:00"), ("PM", "13:00"), ("FULL_DAY", "09:00")),
    )
