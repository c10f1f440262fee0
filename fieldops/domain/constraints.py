"""Domain-level validation rules for scoring and pricing configuration."""

from __future__ import annotations

import math
from dataclasses import dataclass

from fieldops.domain.models import ScoringWeights
from fieldops.utils.config import Settings


WEIGHT_SUM_TOLERANCE = 1e-6


@dataclass(frozen=True)
class ScoringConfig:
    tie_epsilon: float
    daily_penalty_per_job: float
    weekly_penalty_per_job: float
    max_jobs_per_day: int
    cluster_radius_km: float
    cluster_bonus_per_job: float
    cluster_bonus_cap: float
    efficiency_partial_day: float
    efficiency_free_day: float

    @classmethod
    def from_settings(cls, settings: Settings) -> "ScoringConfig":
        return cls(
            tie_epsilon=settings.scoring_tie_epsilon,
            daily_penalty_per_job=settings.scoring_daily_penalty_per_job,
            weekly_penalty_per_job=settings.scoring_weekly_penalty_per_job,
            max_jobs_per_day=settings.scoring_max_jobs_per_day,
            cluster_radius_km=settings.scoring_cluster_radius_km,
            cluster_bonus_per_job=settings.scoring_cluster_bonus_per_job,
            cluster_bonus_cap=settings.scoring_cluster_bonus_cap,
            efficiency_partial_day=settings.scoring_efficiency_partial_day,
            efficiency_free_day=settings.scoring_efficiency_free_day,
        )


def default_weights(settings: Settings) -> ScoringWeights:
    return ScoringWeights(
        customer=settings.scoring_weight_customer,
        engineer=settings.scoring_weight_engineer,
        platform=settings.scoring_weight_platform,
    )


def validate_scoring_weights(weights: ScoringWeights) -> None:
    values = (weights.customer, weights.engineer, weights.platform)
    if any(not math.isfinite(value) for value in values):
        raise ValueError("scoring weights must be finite numbers")
    if any(value < 0.0 for value in values):
        raise ValueError("scoring weights must be non-negative")
    if abs(sum(values) - 1.0) > WEIGHT_SUM_TOLERANCE:
        raise ValueError("scoring weights must sum to 1.0")


def validate_scoring_config(config: ScoringConfig) -> None:
    if config.tie_epsilon < 0.0:
        raise ValueError("tie_epsilon must be >= 0")
    if config.daily_penalty_per_job < 0.0 or config.weekly_penalty_per_job < 0.0:
        raise ValueError("workload penalties must be >= 0")
    if config.max_jobs_per_day <= 0:
        raise ValueError("max_jobs_per_day must be > 0")
    if config.cluster_radius_km <= 0.0:
        raise ValueError("cluster_radius_km must be > 0")
    if config.cluster_bonus_per_job < 0.0:
        raise ValueError("cluster_bonus_per_job must be >= 0")
    if not 0.0 <= config.cluster_bonus_cap <= 100.0:
        raise ValueError("cluster_bonus_cap must be between 0 and 100")
    if config.cluster_bonus_cap + config.efficiency_partial_day > 100.0:
        raise ValueError("cluster_bonus_cap + efficiency_partial_day must not exceed 100")
    if not 0.0 <= config.efficiency_free_day <= config.efficiency_partial_day:
        raise ValueError("efficiency_free_day must be between 0 and efficiency_partial_day")


def validate_min_margin_ratio(ratio: float) -> None:
    if not 0.0 <= ratio <= 1.0:
        raise ValueError("pricing_min_margin_ratio must be between 0 and 1")
