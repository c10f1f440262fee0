"""Domain models for engineer allocation, pricing and routing."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Optional


class BookingStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    EN_ROUTE = "EN_ROUTE"
    ON_SITE = "ON_SITE"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    DECLINED = "DECLINED"
    CANCELLED = "CANCELLED"
    REQUIRES_REVISIT = "REQUIRES_REVISIT"


# Statuses in which a booking occupies its engineer's day.
ACTIVE_STATUSES: tuple[BookingStatus, ...] = (
    BookingStatus.CONFIRMED,
    BookingStatus.EN_ROUTE,
    BookingStatus.ON_SITE,
    BookingStatus.IN_PROGRESS,
)


class EngineerStatus(str, Enum):
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    SUSPENDED = "SUSPENDED"


class TransitionAction(str, Enum):
    ACCEPT = "ACCEPT"
    START_TRAVEL = "START_TRAVEL"
    ARRIVE = "ARRIVE"
    START_WORK = "START_WORK"
    COMPLETE = "COMPLETE"
    DECLINE = "DECLINE"
    CANCEL = "CANCEL"
    REVISIT = "REVISIT"
    REOPEN = "REOPEN"


@dataclass(frozen=True)
class Coordinates:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class Service:
    service_id: int
    name: str
    base_price: float
    min_charge: float
    requires_certification: bool
    qualification_keywords: tuple[str, ...] = ()


@dataclass(frozen=True)
class Site:
    site_id: int
    customer_id: int
    postcode: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @property
    def coordinates(self) -> Optional[Coordinates]:
        if self.latitude is None or self.longitude is None:
            return None
        return Coordinates(latitude=self.latitude, longitude=self.longitude)


@dataclass(frozen=True)
class Booking:
    booking_id: int
    service_id: int
    site_id: int
    customer_id: int
    scheduled_date: date
    time_slot: str
    estimated_qty: int
    status: BookingStatus
    engineer_id: Optional[int] = None
    quoted_price: Optional[float] = None
    original_price: Optional[float] = None
    is_flexible: bool = False
    customer_signature_url: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    en_route_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    declined_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


@dataclass(frozen=True)
class Competency:
    service_id: int
    certified: bool
    experience_years: int


@dataclass(frozen=True)
class Qualification:
    name: str
    expiry_date: Optional[date]
    verified: bool


@dataclass(frozen=True)
class CoverageArea:
    postcode_prefix: str
    center: Optional[Coordinates]
    radius_km: float


@dataclass(frozen=True)
class Availability:
    available_date: date
    slot: str
    is_available: bool


@dataclass(frozen=True)
class EngineerProfile:
    engineer_id: int
    name: str
    status: EngineerStatus
    experience_years: int
    competencies: tuple[Competency, ...] = ()
    qualifications: tuple[Qualification, ...] = ()
    coverage_areas: tuple[CoverageArea, ...] = ()
    availability: tuple[Availability, ...] = ()

    def certified_competency(self, service_id: int) -> Optional[Competency]:
        for competency in self.competencies:
            if competency.service_id == service_id and competency.certified:
                return competency
        return None


@dataclass(frozen=True)
class ScheduledJob:
    """An already-assigned booking, as seen by scoring, pricing and routing."""

    booking_id: int
    engineer_id: int
    scheduled_date: date
    time_slot: str
    postcode: str
    coordinates: Optional[Coordinates]
    service_id: int
    estimated_qty: int = 1


@dataclass(frozen=True)
class EngineerWorkload:
    engineer_id: int
    jobs_today: int
    jobs_this_week: int
    same_day_jobs: tuple[ScheduledJob, ...] = ()


@dataclass(frozen=True)
class ScoringWeights:
    customer: float
    engineer: float
    platform: float

    def as_dict(self) -> dict[str, float]:
        return {
            "customer": self.customer,
            "engineer": self.engineer,
            "platform": self.platform,
        }


@dataclass(frozen=True)
class ScoreFactor:
    name: str
    points: float
    detail: str = ""


@dataclass(frozen=True)
class SubScore:
    score: float
    factors: tuple[ScoreFactor, ...]


@dataclass(frozen=True)
class CandidateScore:
    engineer_id: int
    engineer_name: str
    customer: SubScore
    engineer: SubScore
    platform: SubScore
    composite: float
    certified_experience_years: int
    jobs_today: int
    distance_km: Optional[float]
    selected: bool = False


@dataclass(frozen=True)
class AllocationExplanation:
    """Decision snapshot captured at allocation time."""

    booking_id: int
    selected_engineer_id: Optional[int]
    reason: str
    weights: ScoringWeights
    candidates: tuple[CandidateScore, ...]
    geo_degraded: bool = False


@dataclass(frozen=True)
class AllocationLog:
    log_id: int
    booking_id: int
    action: str
    selected_engineer_id: Optional[int]
    previous_engineer_id: Optional[int]
    actor_id: Optional[str]
    reason: str
    explanation: dict
    created_at: str


@dataclass(frozen=True)
class StatusLogEntry:
    log_id: int
    booking_id: int
    action: str
    from_status: BookingStatus
    to_status: BookingStatus
    actor_id: str
    reason: Optional[str]
    created_at: str


@dataclass(frozen=True)
class PricingRuleRecord:
    """Stored rule row; the config payload is parsed by the pricing engine."""

    rule_id: int
    name: str
    rule_type: str
    enabled: bool
    priority: int
    config: dict = field(default_factory=dict)


@dataclass(frozen=True)
class RouteStop:
    booking_id: int
    suggested_order: int
    time_slot: str
    postcode: str
    coordinates: Optional[Coordinates]
    distance_from_previous_km: Optional[float]
    travel_minutes_from_previous: Optional[int]


@dataclass(frozen=True)
class OptimizedRoute:
    engineer_id: int
    route_date: date
    stops: tuple[RouteStop, ...]
    total_distance_km: float
    total_travel_minutes: int
    total_day_minutes: int
    efficiency_rating: int
