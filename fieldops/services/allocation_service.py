"""Booking-to-engineer allocation with an audit trail per decision."""

from __future__ import annotations

from dataclasses import asdict, replace
from datetime import date, timedelta
from typing import Any, Optional, Sequence

from fieldops.domain.constraints import default_weights, validate_scoring_weights
from fieldops.domain.models import (
    AllocationExplanation,
    AllocationLog,
    Booking,
    BookingStatus,
    CandidateScore,
    EngineerProfile,
    EngineerWorkload,
    ScoringWeights,
)
from fieldops.domain.results import AllocationResult, EngineError, ErrorKind
from fieldops.repository.data_repository import DataRepository
from fieldops.services.eligibility_service import EligibilityService, check_engineer
from fieldops.services.geo_service import GeoEstimator
from fieldops.services.pricing_service import PricingService
from fieldops.services.scoring_service import ScoringService
from fieldops.utils.config import Settings, get_settings
from fieldops.utils.logger import get_logger


logger = get_logger(__name__)

REASSIGNABLE_STATUSES = (BookingStatus.PENDING, BookingStatus.CONFIRMED)


def explanation_payload(explanation: AllocationExplanation) -> dict[str, Any]:
    return asdict(explanation)


def describe_selection(ranked: Sequence[CandidateScore], epsilon: float, geo_degraded: bool) -> str:
    top = ranked[0]
    parts = [
        f"Selected {top.engineer_name} (engineer {top.engineer_id}) with composite score "
        f"{top.composite:.2f} from {len(ranked)} eligible candidate(s)"
    ]
    if top.distance_km is not None:
        parts.append(f"{top.distance_km:.1f} km from site")
    if len(ranked) > 1:
        runner_up = ranked[1]
        if top.composite - runner_up.composite <= epsilon:
            parts.append(
                f"tied with engineer {runner_up.engineer_id}; tie broken on certified experience, "
                "then current workload, then engineer id"
            )
        else:
            parts.append(
                f"ahead of engineer {runner_up.engineer_id} by {top.composite - runner_up.composite:.2f}"
            )
    if geo_degraded:
        parts.append("site location unavailable, distance factors scored at lowest tier")
    return "; ".join(parts)


class AllocationService:
    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        geo: Optional[GeoEstimator] = None,
        eligibility: Optional[EligibilityService] = None,
        scoring: Optional[ScoringService] = None,
        pricing: Optional[PricingService] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._geo = geo or GeoEstimator(repository=self._repository, settings=self._settings)
        self._eligibility = eligibility or EligibilityService()
        self._scoring = scoring or ScoringService(settings=self._settings)
        self._pricing = pricing or PricingService(
            repository=self._repository,
            settings=self._settings,
            geo=self._geo,
        )

    def _workloads(
        self,
        engineers: Sequence[EngineerProfile],
        booking: Booking,
    ) -> dict[int, EngineerWorkload]:
        week_start = booking.scheduled_date - timedelta(days=booking.scheduled_date.weekday())
        week_end = week_start + timedelta(days=6)
        workloads: dict[int, EngineerWorkload] = {}
        for engineer in engineers:
            jobs = self._repository.list_engineer_jobs(
                engineer.engineer_id,
                week_start,
                week_end,
                exclude_booking_id=booking.booking_id,
            )
            same_day = tuple(
                self._geo.locate_jobs([job for job in jobs if job.scheduled_date == booking.scheduled_date])
            )
            workloads[engineer.engineer_id] = EngineerWorkload(
                engineer_id=engineer.engineer_id,
                jobs_today=len(same_day),
                jobs_this_week=len(jobs),
                same_day_jobs=same_day,
            )
        return workloads

    def allocate(
        self,
        booking_id: int,
        weights: Optional[ScoringWeights] = None,
        today: Optional[date] = None,
    ) -> AllocationResult:
        """Assign the best eligible engineer to a pending booking.

        Weights are validated up front and a ValueError is raised for bad
        weights; every booking-level failure comes back as a result value.
        """
        weights = weights or default_weights(self._settings)
        validate_scoring_weights(weights)

        booking = self._repository.get_booking(booking_id)
        if booking is None:
            return AllocationResult(
                success=False,
                booking_id=booking_id,
                error=EngineError(ErrorKind.BOOKING_NOT_FOUND, f"Booking {booking_id} not found"),
            )
        if booking.engineer_id is not None:
            return self._already_allocated(booking)
        if booking.status != BookingStatus.PENDING:
            return AllocationResult(
                success=False,
                booking_id=booking_id,
                error=EngineError(
                    ErrorKind.INVALID_TRANSITION,
                    f"Cannot allocate booking in status {booking.status.value}",
                ),
            )

        service = self._repository.get_service(booking.service_id)
        site = self._repository.get_site(booking.site_id)
        if service is None or site is None:
            return self._missing_reference(booking)

        resolution = self._geo.resolve_site(site)
        warnings = (resolution.error,) if resolution.error is not None else ()

        engineers = self._repository.list_engineer_profiles()
        eligible = self._eligibility.filter_eligible(
            booking,
            service,
            site,
            engineers,
            site_coordinates=resolution.coordinates,
        )
        if not eligible:
            logger.info(
                "Allocation failed | booking_id=%s | reason=no_eligible_engineer | pool=%s",
                booking_id,
                len(engineers),
            )
            return AllocationResult(
                success=False,
                booking_id=booking_id,
                error=EngineError(
                    ErrorKind.NO_ELIGIBLE_ENGINEER,
                    f"No eligible engineer for booking {booking_id}",
                ),
                warnings=warnings,
            )

        ranked = self._scoring.score_candidates(
            eligible,
            booking,
            resolution.coordinates,
            self._workloads(eligible, booking),
            weights,
        )
        top = ranked[0]
        quote = self._pricing.quote(
            booking,
            site,
            engineer_id=top.engineer_id,
            site_coordinates=resolution.coordinates,
            today=today,
        )
        if not quote.success:
            return AllocationResult(success=False, booking_id=booking_id, error=quote.error, warnings=warnings)
        warnings = warnings + quote.skipped_rules

        reason = describe_selection(ranked, self._scoring.config.tie_epsilon, resolution.degraded)
        explanation = AllocationExplanation(
            booking_id=booking_id,
            selected_engineer_id=top.engineer_id,
            reason=reason,
            weights=weights,
            candidates=tuple(replace(candidate, selected=(index == 0)) for index, candidate in enumerate(ranked)),
            geo_degraded=resolution.degraded,
        )

        assigned = self._repository.assign_booking(
            booking_id=booking_id,
            engineer_id=top.engineer_id,
            quoted_price=quote.price,
            original_price=quote.original_price,
            reason=reason,
            explanation=explanation_payload(explanation),
        )
        if not assigned:
            logger.info("Allocation lost race | booking_id=%s", booking_id)
            current = self._repository.get_booking(booking_id) or booking
            return self._already_allocated(current)

        logger.info(
            "Allocation completed | booking_id=%s | engineer_id=%s | composite=%.3f | candidates=%s | price=%.2f | geo_degraded=%s",
            booking_id,
            top.engineer_id,
            top.composite,
            len(ranked),
            quote.price,
            resolution.degraded,
        )
        return AllocationResult(
            success=True,
            booking_id=booking_id,
            selected_engineer_id=top.engineer_id,
            composite_score=round(top.composite, 4),
            quoted_price=quote.price,
            explanation=explanation,
            warnings=warnings,
        )

    def _already_allocated(self, booking: Booking) -> AllocationResult:
        return AllocationResult(
            success=False,
            booking_id=booking.booking_id,
            selected_engineer_id=booking.engineer_id,
            error=EngineError(
                ErrorKind.ALREADY_ALLOCATED,
                f"Booking {booking.booking_id} is already allocated"
                + (f" to engineer {booking.engineer_id}" if booking.engineer_id is not None else ""),
            ),
        )

    def _missing_reference(self, booking: Booking) -> AllocationResult:
        logger.warning(
            "Allocation failed | booking_id=%s | reason=reference_data_missing | service_id=%s | site_id=%s",
            booking.booking_id,
            booking.service_id,
            booking.site_id,
        )
        return AllocationResult(
            success=False,
            booking_id=booking.booking_id,
            error=EngineError(
                ErrorKind.REFERENCE_DATA_MISSING,
                f"Booking {booking.booking_id} references a missing service or site",
            ),
        )

    def explain(self, booking_id: int) -> list[AllocationLog]:
        """Stored decisions for the booking, newest first."""
        return self._repository.list_allocation_logs(booking_id)

    def reallocate(
        self,
        booking_id: int,
        engineer_id: int,
        actor_id: str,
        reason: Optional[str] = None,
        today: Optional[date] = None,
    ) -> AllocationResult:
        """Admin override: move the booking to a chosen engineer."""
        booking = self._repository.get_booking(booking_id)
        if booking is None:
            return AllocationResult(
                success=False,
                booking_id=booking_id,
                error=EngineError(ErrorKind.BOOKING_NOT_FOUND, f"Booking {booking_id} not found"),
            )
        if booking.status not in REASSIGNABLE_STATUSES:
            return AllocationResult(
                success=False,
                booking_id=booking_id,
                error=EngineError(
                    ErrorKind.INVALID_TRANSITION,
                    f"Cannot reallocate booking in status {booking.status.value}",
                ),
            )
        if booking.engineer_id == engineer_id:
            return self._already_allocated(booking)

        engineer = self._repository.get_engineer_profile(engineer_id)
        if engineer is None:
            return AllocationResult(
                success=False,
                booking_id=booking_id,
                error=EngineError(ErrorKind.ENGINEER_NOT_FOUND, f"Engineer {engineer_id} not found"),
            )

        service = self._repository.get_service(booking.service_id)
        site = self._repository.get_site(booking.site_id)
        if service is None or site is None:
            return self._missing_reference(booking)
        resolution = self._geo.resolve_site(site)
        check = check_engineer(engineer, booking, service, site, resolution.coordinates)
        if not check.eligible:
            return AllocationResult(
                success=False,
                booking_id=booking_id,
                error=EngineError(
                    ErrorKind.INELIGIBLE_ENGINEER,
                    f"Engineer {engineer_id} is not eligible: {check.failed_rule}",
                ),
            )

        weights = default_weights(self._settings)
        candidate = self._scoring.score_candidate(
            engineer,
            booking,
            resolution.coordinates,
            self._workloads([engineer], booking)[engineer_id],
            weights,
        )
        quote = self._pricing.quote(
            booking,
            site,
            engineer_id=engineer_id,
            site_coordinates=resolution.coordinates,
            today=today,
        )
        if not quote.success:
            return AllocationResult(success=False, booking_id=booking_id, error=quote.error)
        log_reason = reason or f"Manually reassigned by {actor_id}"
        explanation = AllocationExplanation(
            booking_id=booking_id,
            selected_engineer_id=engineer_id,
            reason=log_reason,
            weights=weights,
            candidates=(replace(candidate, selected=True),),
            geo_degraded=resolution.degraded,
        )
        moved = self._repository.reassign_booking(
            booking_id=booking_id,
            expected_engineer_id=booking.engineer_id,
            expected_status=booking.status,
            new_engineer_id=engineer_id,
            quoted_price=quote.price,
            original_price=quote.original_price,
            actor_id=actor_id,
            reason=log_reason,
            explanation=explanation_payload(explanation),
        )
        if not moved:
            logger.info("Reallocation lost race | booking_id=%s", booking_id)
            return AllocationResult(
                success=False,
                booking_id=booking_id,
                error=EngineError(
                    ErrorKind.ALREADY_ALLOCATED,
                    f"Booking {booking_id} changed while reallocating",
                    retryable=True,
                ),
            )

        logger.info(
            "Reallocation completed | booking_id=%s | from_engineer_id=%s | to_engineer_id=%s | actor=%s",
            booking_id,
            booking.engineer_id,
            engineer_id,
            actor_id,
        )
        updated = self._repository.get_booking(booking_id)
        return AllocationResult(
            success=True,
            booking_id=booking_id,
            selected_engineer_id=engineer_id,
            composite_score=round(candidate.composite, 4),
            quoted_price=updated.quoted_price if updated is not None else quote.price,
            explanation=explanation,
        )
