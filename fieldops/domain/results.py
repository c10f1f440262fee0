"""Typed outcomes returned by the engine's public operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from fieldops.domain.models import (
    AllocationExplanation,
    BookingStatus,
    OptimizedRoute,
)


class ErrorKind(str, Enum):
    NO_ELIGIBLE_ENGINEER = "NoEligibleEngineer"
    ALREADY_ALLOCATED = "AlreadyAllocated"
    INVALID_TRANSITION = "InvalidTransition"
    MISSING_SIGNATURE = "MissingSignature"
    GEO_LOOKUP_UNAVAILABLE = "GeoLookupUnavailable"
    RULE_CONFIG_INVALID = "RuleConfigInvalid"
    BOOKING_NOT_FOUND = "BookingNotFound"
    ENGINEER_NOT_FOUND = "EngineerNotFound"
    INELIGIBLE_ENGINEER = "IneligibleEngineer"
    REFERENCE_DATA_MISSING = "ReferenceDataMissing"


@dataclass(frozen=True)
class EngineError:
    kind: ErrorKind
    message: str
    retryable: bool = False


@dataclass(frozen=True)
class AllocationResult:
    success: bool
    booking_id: int
    selected_engineer_id: Optional[int] = None
    composite_score: Optional[float] = None
    quoted_price: Optional[float] = None
    explanation: Optional[AllocationExplanation] = None
    error: Optional[EngineError] = None
    warnings: tuple[EngineError, ...] = ()


@dataclass(frozen=True)
class PriceAdjustment:
    rule_id: int
    rule_type: str
    kind: str
    percent: float
    price_before: float
    price_after: float
    detail: str


@dataclass(frozen=True)
class QuoteResult:
    success: bool
    price: float
    original_price: float
    floor_price: float
    clamped: bool
    adjustments: tuple[PriceAdjustment, ...] = ()
    skipped_rules: tuple[EngineError, ...] = ()
    error: Optional[EngineError] = None


@dataclass(frozen=True)
class FlexSavings:
    standard: QuoteResult
    flexible: QuoteResult

    @property
    def potential_saving(self) -> float:
        return round(max(0.0, self.standard.price - self.flexible.price), 2)


@dataclass(frozen=True)
class TransitionResult:
    success: bool
    booking_id: int
    action: str
    from_status: Optional[BookingStatus] = None
    to_status: Optional[BookingStatus] = None
    engineer_id: Optional[int] = None
    error: Optional[EngineError] = None


@dataclass(frozen=True)
class RouteResult:
    success: bool
    route: Optional[OptimizedRoute] = None
    error: Optional[EngineError] = None
    warnings: tuple[EngineError, ...] = field(default_factory=tuple)
