"""HTTP controller layer for allocation, audit logs and quoting."""

from __future__ import annotations

from datetime import date
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, field_validator, model_validator

from fieldops.controllers.dependencies import (
    get_allocation_service,
    get_pricing_service,
    raise_engine_error,
)
from fieldops.domain.models import ScoringWeights
from fieldops.domain.results import AllocationResult, QuoteResult
from fieldops.services.allocation_service import AllocationService
from fieldops.services.pricing_service import PricingService
from fieldops.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["allocation"])


class ScoringWeightsRequest(BaseModel):
    customer: float = Field(ge=0.0, le=1.0)
    engineer: float = Field(ge=0.0, le=1.0)
    platform: float = Field(ge=0.0, le=1.0)

    @model_validator(mode="after")
    def validate_sum(self) -> "ScoringWeightsRequest":
        if abs(self.customer + self.engineer + self.platform - 1.0) > 1e-6:
            raise ValueError("weights must sum to 1.0")
        return self

    def to_domain(self) -> ScoringWeights:
        return ScoringWeights(customer=self.customer, engineer=self.engineer, platform=self.platform)


class AllocateRequest(BaseModel):
    weights: Optional[ScoringWeightsRequest] = None
    today: Optional[date] = None


class ScoreFactorResponse(BaseModel):
    name: str
    points: float
    detail: str


class SubScoreResponse(BaseModel):
    score: float = Field(ge=0.0, le=100.0)
    factors: list[ScoreFactorResponse]


class CandidateResponse(BaseModel):
    engineer_id: int
    engineer_name: str
    customer: SubScoreResponse
    engineer: SubScoreResponse
    platform: SubScoreResponse
    composite: float
    distance_km: Optional[float]
    selected: bool


class ExplanationResponse(BaseModel):
    selected_engineer_id: Optional[int]
    reason: str
    weights: dict[str, float]
    geo_degraded: bool
    candidates: list[CandidateResponse]


class WarningResponse(BaseModel):
    error: str
    message: str
    retryable: bool


class AllocationResponse(BaseModel):
    booking_id: int
    selected_engineer_id: int
    composite_score: float
    quoted_price: Optional[float]
    explanation: Optional[ExplanationResponse]
    warnings: list[WarningResponse]


class ReallocateRequest(BaseModel):
    engineer_id: int = Field(gt=0)
    actor_id: str = Field(min_length=1)
    reason: Optional[str] = None
    today: Optional[date] = None

    @field_validator("actor_id")
    @classmethod
    def validate_actor(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("actor_id must be non-empty")
        return value.strip()


class AllocationLogResponse(BaseModel):
    log_id: int
    action: str
    selected_engineer_id: Optional[int]
    previous_engineer_id: Optional[int]
    actor_id: Optional[str]
    reason: str
    explanation: dict[str, Any]
    created_at: str


class QuoteRequest(BaseModel):
    engineer_id: Optional[int] = Field(default=None, gt=0)
    today: Optional[date] = None
    include_flex_savings: bool = False


class PriceAdjustmentResponse(BaseModel):
    rule_id: int
    rule_type: str
    kind: str
    percent: float
    price_before: float
    price_after: float
    detail: str


class QuoteResponse(BaseModel):
    price: float = Field(ge=0.0)
    original_price: float = Field(ge=0.0)
    floor_price: float = Field(ge=0.0)
    clamped: bool
    adjustments: list[PriceAdjustmentResponse]
    skipped_rules: list[WarningResponse]
    flexible_price: Optional[float] = None
    potential_saving: Optional[float] = None


def _warning(error) -> WarningResponse:
    return WarningResponse(error=error.kind.value, message=error.message, retryable=error.retryable)


def _allocation_response(result: AllocationResult) -> AllocationResponse:
    explanation = None
    if result.explanation is not None:
        explanation = ExplanationResponse(
            selected_engineer_id=result.explanation.selected_engineer_id,
            reason=result.explanation.reason,
            weights=result.explanation.weights.as_dict(),
            geo_degraded=result.explanation.geo_degraded,
            candidates=[
                CandidateResponse(
                    engineer_id=candidate.engineer_id,
                    engineer_name=candidate.engineer_name,
                    customer=SubScoreResponse(
                        score=round(candidate.customer.score, 2),
                        factors=[ScoreFactorResponse(name=f.name, points=f.points, detail=f.detail) for f in candidate.customer.factors],
                    ),
                    engineer=SubScoreResponse(
                        score=round(candidate.engineer.score, 2),
                        factors=[ScoreFactorResponse(name=f.name, points=f.points, detail=f.detail) for f in candidate.engineer.factors],
                    ),
                    platform=SubScoreResponse(
                        score=round(candidate.platform.score, 2),
                        factors=[ScoreFactorResponse(name=f.name, points=f.points, detail=f.detail) for f in candidate.platform.factors],
                    ),
                    composite=round(candidate.composite, 4),
                    distance_km=None if candidate.distance_km is None else round(candidate.distance_km, 2),
                    selected=candidate.selected,
                )
                for candidate in result.explanation.candidates
            ],
        )
    return AllocationResponse(
        booking_id=result.booking_id,
        selected_engineer_id=result.selected_engineer_id,
        composite_score=result.composite_score,
        quoted_price=result.quoted_price,
        explanation=explanation,
        warnings=[_warning(item) for item in result.warnings],
    )


def _quote_response(result: QuoteResult) -> QuoteResponse:
    return QuoteResponse(
        price=result.price,
        original_price=result.original_price,
        floor_price=result.floor_price,
        clamped=result.clamped,
        adjustments=[
            PriceAdjustmentResponse(
                rule_id=item.rule_id,
                rule_type=item.rule_type,
                kind=item.kind,
                percent=item.percent,
                price_before=item.price_before,
                price_after=item.price_after,
                detail=item.detail,
            )
            for item in result.adjustments
        ],
        skipped_rules=[_warning(item) for item in result.skipped_rules],
    )


@router.post(
    "/bookings/{booking_id}/allocate",
    response_model=AllocationResponse,
    status_code=status.HTTP_200_OK,
)
async def allocate_booking(
    booking_id: int,
    payload: Optional[AllocateRequest] = None,
    service: AllocationService = Depends(get_allocation_service),
) -> AllocationResponse:
    """Pick, price and persist the best eligible engineer for a pending booking."""
    payload = payload or AllocateRequest()
    try:
        result = service.allocate(
            booking_id,
            weights=payload.weights.to_domain() if payload.weights else None,
            today=payload.today,
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected allocation failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to allocate booking",
        ) from exc
    if not result.success:
        raise_engine_error(result.error)
    return _allocation_response(result)


@router.post(
    "/bookings/{booking_id}/reallocate",
    response_model=AllocationResponse,
    status_code=status.HTTP_200_OK,
)
async def reallocate_booking(
    booking_id: int,
    payload: ReallocateRequest,
    service: AllocationService = Depends(get_allocation_service),
) -> AllocationResponse:
    """Admin override to move a booking to a named engineer."""
    result = service.reallocate(
        booking_id,
        engineer_id=payload.engineer_id,
        actor_id=payload.actor_id,
        reason=payload.reason,
        today=payload.today,
    )
    if not result.success:
        raise_engine_error(result.error)
    return _allocation_response(result)


@router.get(
    "/bookings/{booking_id}/allocation_logs",
    response_model=list[AllocationLogResponse],
)
async def list_allocation_logs(
    booking_id: int,
    service: AllocationService = Depends(get_allocation_service),
) -> list[AllocationLogResponse]:
    return [
        AllocationLogResponse(
            log_id=log.log_id,
            action=log.action,
            selected_engineer_id=log.selected_engineer_id,
            previous_engineer_id=log.previous_engineer_id,
            actor_id=log.actor_id,
            reason=log.reason,
            explanation=log.explanation,
            created_at=log.created_at,
        )
        for log in service.explain(booking_id)
    ]


@router.post(
    "/bookings/{booking_id}/quote",
    response_model=QuoteResponse,
    status_code=status.HTTP_200_OK,
)
async def quote_booking(
    booking_id: int,
    payload: Optional[QuoteRequest] = None,
    service: PricingService = Depends(get_pricing_service),
) -> QuoteResponse:
    """Price a booking without assigning it."""
    payload = payload or QuoteRequest()
    result = service.quote_booking(booking_id, engineer_id=payload.engineer_id, today=payload.today)
    if not result.success:
        raise_engine_error(result.error)
    response = _quote_response(result)
    if payload.include_flex_savings:
        savings = service.simulate_flexibility_savings(
            booking_id,
            engineer_id=payload.engineer_id,
            today=payload.today,
        )
        if savings is not None:
            response.flexible_price = savings.flexible.price
            response.potential_saving = savings.potential_saving
    return response
