"""Shared FastAPI dependency providers and error mapping for the controller layer."""

from __future__ import annotations

from typing import NoReturn

from fastapi import HTTPException, Request, status

from fieldops.domain.results import EngineError, ErrorKind
from fieldops.services.allocation_service import AllocationService
from fieldops.services.booking_state_service import BookingStateService
from fieldops.services.pricing_service import PricingService
from fieldops.services.route_service import RouteService


UNPROCESSABLE = 422

ERROR_STATUS_CODES: dict[ErrorKind, int] = {
    ErrorKind.BOOKING_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.ENGINEER_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.ALREADY_ALLOCATED: status.HTTP_409_CONFLICT,
    ErrorKind.INVALID_TRANSITION: status.HTTP_409_CONFLICT,
    ErrorKind.NO_ELIGIBLE_ENGINEER: UNPROCESSABLE,
    ErrorKind.INELIGIBLE_ENGINEER: UNPROCESSABLE,
    ErrorKind.MISSING_SIGNATURE: UNPROCESSABLE,
    ErrorKind.RULE_CONFIG_INVALID: UNPROCESSABLE,
    ErrorKind.REFERENCE_DATA_MISSING: UNPROCESSABLE,
    ErrorKind.GEO_LOOKUP_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def raise_engine_error(error: EngineError) -> NoReturn:
    raise HTTPException(
        status_code=ERROR_STATUS_CODES.get(error.kind, status.HTTP_400_BAD_REQUEST),
        detail={
            "error": error.kind.value,
            "message": error.message,
            "retryable": error.retryable,
        },
    )


def _service_from_state(request: Request, attribute: str, label: str):
    service = getattr(request.app.state, attribute, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} service is not initialized",
        )
    return service


def get_allocation_service(request: Request) -> AllocationService:
    return _service_from_state(request, "allocation_service", "Allocation")


def get_pricing_service(request: Request) -> PricingService:
    return _service_from_state(request, "pricing_service", "Pricing")


def get_route_service(request: Request) -> RouteService:
    return _service_from_state(request, "route_service", "Route")


def get_booking_state_service(request: Request) -> BookingStateService:
    return _service_from_state(request, "booking_state_service", "Booking state")
