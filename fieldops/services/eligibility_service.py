"""Hard filters deciding which engineers may take a booking."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from fieldops.domain.models import (
    Booking,
    Coordinates,
    EngineerProfile,
    EngineerStatus,
    Qualification,
    Service,
    Site,
)
from fieldops.services.geo_service import haversine_km, prefix_covers
from fieldops.utils.logger import get_logger


logger = get_logger(__name__)

FULL_DAY_SLOT = "FULL_DAY"


@dataclass(frozen=True)
class EligibilityCheck:
    engineer_id: int
    eligible: bool
    failed_rule: Optional[str] = None


def is_qualification_relevant(qualification: Qualification, service: Service) -> bool:
    if not service.qualification_keywords:
        return True
    name = qualification.name.lower()
    return any(keyword in name for keyword in service.qualification_keywords)


def has_valid_qualification(engineer: EngineerProfile, booking: Booking, service: Service) -> bool:
    if not service.requires_certification:
        return True
    for qualification in engineer.qualifications:
        if not qualification.verified or not is_qualification_relevant(qualification, service):
            continue
        if qualification.expiry_date is None or qualification.expiry_date > booking.scheduled_date:
            return True
    return False


def covers_site(
    engineer: EngineerProfile,
    site: Site,
    site_coordinates: Optional[Coordinates],
) -> bool:
    for area in engineer.coverage_areas:
        if prefix_covers(area.postcode_prefix, site.postcode):
            return True
        if site_coordinates is not None and area.center is not None:
            if haversine_km(area.center, site_coordinates) <= area.radius_km:
                return True
    return False


def is_available(engineer: EngineerProfile, booking: Booking) -> bool:
    """Only an explicit unavailable entry excludes; no entry means available."""
    for entry in engineer.availability:
        if entry.available_date != booking.scheduled_date:
            continue
        if entry.slot in (booking.time_slot, FULL_DAY_SLOT) and not entry.is_available:
            return False
    return True


def check_engineer(
    engineer: EngineerProfile,
    booking: Booking,
    service: Service,
    site: Site,
    site_coordinates: Optional[Coordinates],
) -> EligibilityCheck:
    if engineer.status != EngineerStatus.APPROVED:
        return EligibilityCheck(engineer.engineer_id, False, "not_approved")
    if engineer.certified_competency(booking.service_id) is None:
        return EligibilityCheck(engineer.engineer_id, False, "no_certified_competency")
    if not has_valid_qualification(engineer, booking, service):
        return EligibilityCheck(engineer.engineer_id, False, "no_valid_qualification")
    if not covers_site(engineer, site, site_coordinates):
        return EligibilityCheck(engineer.engineer_id, False, "outside_coverage")
    if not is_available(engineer, booking):
        return EligibilityCheck(engineer.engineer_id, False, "unavailable")
    return EligibilityCheck(engineer.engineer_id, True)


class EligibilityService:
    """Stateless filter; callers supply the pool and the resolved site position."""

    def filter_eligible(
        self,
        booking: Booking,
        service: Service,
        site: Site,
        engineers: Iterable[EngineerProfile],
        site_coordinates: Optional[Coordinates] = None,
    ) -> list[EngineerProfile]:
        eligible: list[EngineerProfile] = []
        rejected = 0
        for engineer in engineers:
            check = check_engineer(engineer, booking, service, site, site_coordinates)
            if check.eligible:
                eligible.append(engineer)
            else:
                rejected += 1
        eligible.sort(key=lambda engineer: engineer.engineer_id)
        logger.debug(
            "Eligibility filter | booking_id=%s | eligible=%s | rejected=%s",
            booking.booking_id,
            len(eligible),
            rejected,
        )
        return eligible
