"""Composite candidate scoring: customer, engineer and platform sub-scores."""

from __future__ import annotations

from typing import Mapping, Optional, Sequence

from fieldops.domain.constraints import ScoringConfig, validate_scoring_config, validate_scoring_weights
from fieldops.domain.models import (
    Booking,
    CandidateScore,
    Coordinates,
    EngineerProfile,
    EngineerWorkload,
    ScoreFactor,
    ScoringWeights,
    SubScore,
)
from fieldops.services.geo_service import haversine_km
from fieldops.utils.config import Settings, get_settings
from fieldops.utils.logger import get_logger


logger = get_logger(__name__)

# (max km, points); anything further scores 0.
PROXIMITY_TIERS: tuple[tuple[float, float], ...] = (
    (5.0, 30.0),
    (15.0, 25.0),
    (30.0, 15.0),
    (50.0, 5.0),
)
CERTIFICATION_POINTS = 20.0
EXPERIENCE_POINTS_PER_YEAR = 2.0
EXPERIENCE_POINTS_CAP = 10.0
CUSTOMER_RAW_MAX = PROXIMITY_TIERS[0][1] + CERTIFICATION_POINTS + EXPERIENCE_POINTS_CAP


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def proximity_points(distance_km: Optional[float]) -> float:
    if distance_km is None:
        return 0.0
    for limit, points in PROXIMITY_TIERS:
        if distance_km <= limit:
            return points
    return 0.0


def engineer_distance_km(
    engineer: EngineerProfile,
    site_coordinates: Optional[Coordinates],
) -> Optional[float]:
    """Closest coverage-area centre to the site, None if unknown."""
    if site_coordinates is None:
        return None
    distances = [
        haversine_km(area.center, site_coordinates)
        for area in engineer.coverage_areas
        if area.center is not None
    ]
    return min(distances) if distances else None


def customer_score(
    distance_km: Optional[float],
    certified: bool,
    experience_years: int,
) -> SubScore:
    scale = 100.0 / CUSTOMER_RAW_MAX
    proximity = proximity_points(distance_km)
    certification = CERTIFICATION_POINTS if certified else 0.0
    experience = min(experience_years * EXPERIENCE_POINTS_PER_YEAR, EXPERIENCE_POINTS_CAP)
    proximity_detail = "distance unavailable" if distance_km is None else f"{distance_km:.1f} km"
    factors = (
        ScoreFactor("proximity", round(proximity * scale, 2), proximity_detail),
        ScoreFactor("certification", round(certification * scale, 2), "certified" if certified else "uncertified"),
        ScoreFactor("experience", round(experience * scale, 2), f"{experience_years} year(s)"),
    )
    return SubScore(score=_clamp((proximity + certification + experience) * scale), factors=factors)


def engineer_score(workload: EngineerWorkload, config: ScoringConfig) -> SubScore:
    if workload.jobs_today >= config.max_jobs_per_day:
        return SubScore(
            score=0.0,
            factors=(
                ScoreFactor(
                    "workload",
                    -100.0,
                    f"{workload.jobs_today} job(s) today, at daily capacity {config.max_jobs_per_day}",
                ),
            ),
        )
    daily = workload.jobs_today * config.daily_penalty_per_job
    weekly = workload.jobs_this_week * config.weekly_penalty_per_job
    factors = (
        ScoreFactor("baseline", 100.0),
        ScoreFactor("workload", -daily, f"{workload.jobs_today} job(s) today"),
        ScoreFactor("weekly_workload", -weekly, f"{workload.jobs_this_week} job(s) this week"),
    )
    return SubScore(score=_clamp(100.0 - daily - weekly), factors=factors)


def platform_score(
    workload: EngineerWorkload,
    site_coordinates: Optional[Coordinates],
    config: ScoringConfig,
) -> SubScore:
    nearby = 0
    if site_coordinates is not None:
        nearby = sum(
            1
            for job in workload.same_day_jobs
            if job.coordinates is not None
            and haversine_km(job.coordinates, site_coordinates) <= config.cluster_radius_km
        )
    cluster = min(nearby * config.cluster_bonus_per_job, config.cluster_bonus_cap)

    if workload.jobs_today >= config.max_jobs_per_day:
        efficiency, efficiency_detail = 0.0, "day at capacity"
    elif workload.jobs_today > 0:
        efficiency, efficiency_detail = config.efficiency_partial_day, "consolidates a started day"
    else:
        efficiency, efficiency_detail = config.efficiency_free_day, "opens a free day"

    cluster_detail = (
        "distance unavailable"
        if site_coordinates is None
        else f"{nearby} job(s) within {config.cluster_radius_km:g} km"
    )
    factors = (
        ScoreFactor("cluster", cluster, cluster_detail),
        ScoreFactor("schedule_efficiency", efficiency, efficiency_detail),
    )
    return SubScore(score=_clamp(cluster + efficiency), factors=factors)


def rank_candidates(candidates: Sequence[CandidateScore], epsilon: float) -> list[CandidateScore]:
    """Order by composite; near-equal composites fall back to the tie-break keys.

    Selection is done best-first so the epsilon band is always measured from
    the current best, which keeps the order reproducible.
    """
    remaining = list(candidates)
    ranked: list[CandidateScore] = []
    while remaining:
        best = max(candidate.composite for candidate in remaining)
        tied = [candidate for candidate in remaining if best - candidate.composite <= epsilon]
        winner = min(
            tied,
            key=lambda candidate: (
                -candidate.certified_experience_years,
                candidate.jobs_today,
                candidate.engineer_id,
            ),
        )
        ranked.append(winner)
        remaining.remove(winner)
    return ranked


class ScoringService:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._config = ScoringConfig.from_settings(self._settings)
        validate_scoring_config(self._config)

    @property
    def config(self) -> ScoringConfig:
        return self._config

    def score_candidate(
        self,
        engineer: EngineerProfile,
        booking: Booking,
        site_coordinates: Optional[Coordinates],
        workload: EngineerWorkload,
        weights: ScoringWeights,
    ) -> CandidateScore:
        competency = engineer.certified_competency(booking.service_id)
        certified_years = competency.experience_years if competency is not None else 0
        distance = engineer_distance_km(engineer, site_coordinates)

        customer = customer_score(distance, competency is not None, engineer.experience_years)
        engineer_sub = engineer_score(workload, self._config)
        platform = platform_score(workload, site_coordinates, self._config)
        composite = (
            weights.customer * customer.score
            + weights.engineer * engineer_sub.score
            + weights.platform * platform.score
        )
        return CandidateScore(
            engineer_id=engineer.engineer_id,
            engineer_name=engineer.name,
            customer=customer,
            engineer=engineer_sub,
            platform=platform,
            composite=composite,
            certified_experience_years=certified_years,
            jobs_today=workload.jobs_today,
            distance_km=distance,
        )

    def score_candidates(
        self,
        engineers: Sequence[EngineerProfile],
        booking: Booking,
        site_coordinates: Optional[Coordinates],
        workloads: Mapping[int, EngineerWorkload],
        weights: ScoringWeights,
    ) -> list[CandidateScore]:
        """Score every engineer and return them best first."""
        validate_scoring_weights(weights)
        scored = [
            self.score_candidate(
                engineer,
                booking,
                site_coordinates,
                workloads.get(
                    engineer.engineer_id,
                    EngineerWorkload(engineer_id=engineer.engineer_id, jobs_today=0, jobs_this_week=0),
                ),
                weights,
            )
            for engineer in engineers
        ]
        ranked = rank_candidates(scored, self._config.tie_epsilon)
        if ranked:
            logger.debug(
                "Candidates ranked | booking_id=%s | count=%s | top_engineer_id=%s | top_composite=%.3f",
                booking.booking_id,
                len(ranked),
                ranked[0].engineer_id,
                ranked[0].composite,
            )
        return ranked
