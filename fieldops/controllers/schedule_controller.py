"""HTTP controller layer for booking lifecycle and daily routes."""

from __future__ import annotations

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field, field_validator

from fieldops.controllers.dependencies import (
    get_booking_state_service,
    get_route_service,
    raise_engine_error,
)
from fieldops.domain.models import TransitionAction
from fieldops.services.booking_state_service import BookingStateService
from fieldops.services.route_service import RouteService


router = APIRouter(tags=["schedule"])


class TransitionRequest(BaseModel):
    action: TransitionAction
    actor_id: str = Field(min_length=1)
    reason: Optional[str] = Field(default=None, max_length=500)
    engineer_id: Optional[int] = Field(default=None, ge=1)

    @field_validator("action", mode="before")
    @classmethod
    def normalize_action(cls, value):
        if isinstance(value, str):
            return value.strip().upper()
        return value


class TransitionResponse(BaseModel):
    booking_id: int
    action: str
    from_status: str
    to_status: str
    engineer_id: Optional[int]


class StatusLogResponse(BaseModel):
    action: str
    from_status: str
    to_status: str
    actor_id: str
    reason: Optional[str]
    created_at: str


class RouteStopResponse(BaseModel):
    booking_id: int
    suggested_order: int = Field(ge=1)
    time_slot: str
    postcode: str
    latitude: Optional[float]
    longitude: Optional[float]
    distance_from_previous_km: Optional[float]
    travel_minutes_from_previous: Optional[int]


class RouteResponse(BaseModel):
    engineer_id: int
    date: date
    stops: list[RouteStopResponse]
    total_distance_km: float = Field(ge=0.0)
    total_travel_minutes: int = Field(ge=0)
    total_day_minutes: int = Field(ge=0)
    efficiency_rating: int = Field(ge=0, le=100)
    warnings: list[str]


@router.post(
    "/bookings/{booking_id}/transitions",
    response_model=TransitionResponse,
    status_code=status.HTTP_200_OK,
)
async def apply_transition(
    booking_id: int,
    payload: TransitionRequest,
    service: BookingStateService = Depends(get_booking_state_service),
) -> TransitionResponse:
    result = service.apply_transition(
        booking_id,
        payload.action,
        actor_id=payload.actor_id,
        reason=payload.reason,
        engineer_id=payload.engineer_id,
    )
    if not result.success:
        raise_engine_error(result.error)
    return TransitionResponse(
        booking_id=result.booking_id,
        action=result.action,
        from_status=result.from_status.value,
        to_status=result.to_status.value,
        engineer_id=result.engineer_id,
    )


@router.get(
    "/bookings/{booking_id}/status_history",
    response_model=list[StatusLogResponse],
)
async def status_history(
    booking_id: int,
    service: BookingStateService = Depends(get_booking_state_service),
) -> list[StatusLogResponse]:
    return [
        StatusLogResponse(
            action=entry.action,
            from_status=entry.from_status.value,
            to_status=entry.to_status.value,
            actor_id=entry.actor_id,
            reason=entry.reason,
            created_at=entry.created_at,
        )
        for entry in service.history(booking_id)
    ]


@router.get(
    "/engineers/{engineer_id}/route",
    response_model=RouteResponse,
)
async def engineer_route(
    engineer_id: int,
    route_date: date = Query(alias="date"),
    service: RouteService = Depends(get_route_service),
) -> RouteResponse:
    """Suggested visiting order for one engineer's day."""
    result = service.optimize_route(engineer_id, route_date)
    if not result.success:
        raise_engine_error(result.error)
    route = result.route
    return RouteResponse(
        engineer_id=route.engineer_id,
        date=route.route_date,
        stops=[
            RouteStopResponse(
                booking_id=stop.booking_id,
                suggested_order=stop.suggested_order,
                time_slot=stop.time_slot,
                postcode=stop.postcode,
                latitude=stop.coordinates.latitude if stop.coordinates else None,
                longitude=stop.coordinates.longitude if stop.coordinates else None,
                distance_from_previous_km=stop.distance_from_previous_km,
                travel_minutes_from_previous=stop.travel_minutes_from_previous,
            )
            for stop in route.stops
        ],
        total_distance_km=route.total_distance_km,
        total_travel_minutes=route.total_travel_minutes,
        total_day_minutes=route.total_day_minutes,
        efficiency_rating=route.efficiency_rating,
        warnings=[warning.message for warning in result.warnings],
    )
