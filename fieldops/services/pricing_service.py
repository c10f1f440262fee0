"""Rule-priority pricing with a minimum-margin floor."""

from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime, timezone
from typing import Optional, Sequence

from fieldops.domain.constraints import validate_min_margin_ratio
from fieldops.domain.models import Booking, Coordinates, PricingRuleRecord, Service, Site
from fieldops.domain.pricing_rules import (
    PricingContext,
    RuleConfigInvalidError,
    evaluate_rule,
    parse_rule,
)
from fieldops.domain.results import EngineError, ErrorKind, FlexSavings, PriceAdjustment, QuoteResult
from fieldops.repository.data_repository import DataRepository
from fieldops.services.geo_service import GeoEstimator, haversine_km
from fieldops.utils.config import Settings, get_settings
from fieldops.utils.logger import get_logger


logger = get_logger(__name__)


class PricingValidationError(Exception):
    """Raised when a quote cannot be built from the stored records."""


class BookingNotFoundError(Exception):
    """Raised when the booking to quote does not exist."""


def failed_quote(error: EngineError) -> QuoteResult:
    return QuoteResult(
        success=False,
        price=0.0,
        original_price=0.0,
        floor_price=0.0,
        clamped=False,
        error=error,
    )


def base_price(service: Service, quantity: int) -> float:
    return round(max(service.base_price * quantity, service.min_charge), 2)


def floor_price(service: Service, original_price: float, min_margin_ratio: float) -> float:
    return round(max(service.min_charge, original_price * min_margin_ratio), 2)


def compute_quote(
    context: PricingContext,
    rules: Sequence[PricingRuleRecord],
    min_margin_ratio: float,
) -> QuoteResult:
    """Apply enabled rules in ascending priority, each on the running price."""
    original = base_price(context.service, context.quantity)
    price = original
    adjustments: list[PriceAdjustment] = []
    skipped: list[EngineError] = []

    for record in sorted(rules, key=lambda item: (item.priority, item.rule_id)):
        if not record.enabled:
            continue
        try:
            rule = parse_rule(record)
        except RuleConfigInvalidError as exc:
            logger.warning("Skipping pricing rule | rule_id=%s | error=%s", record.rule_id, exc)
            skipped.append(EngineError(ErrorKind.RULE_CONFIG_INVALID, str(exc)))
            continue

        effect = evaluate_rule(rule, context)
        if effect is None:
            continue
        before = price
        price = effect.apply(price)
        adjustments.append(
            PriceAdjustment(
                rule_id=record.rule_id,
                rule_type=record.rule_type,
                kind=effect.kind,
                percent=round(effect.percent, 4),
                price_before=round(before, 2),
                price_after=round(price, 2),
                detail=effect.detail,
            )
        )

    floor = floor_price(context.service, original, min_margin_ratio)
    final = round(price, 2)
    clamped = final < floor
    if clamped:
        logger.info(
            "Quote clamped to floor | service_id=%s | computed=%.2f | floor=%.2f",
            context.service.service_id,
            final,
            floor,
        )
        final = floor
    return QuoteResult(
        success=True,
        price=final,
        original_price=original,
        floor_price=floor,
        clamped=clamped,
        adjustments=tuple(adjustments),
        skipped_rules=tuple(skipped),
    )


class PricingService:
    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        geo: Optional[GeoEstimator] = None,
    ) -> None:
        self._settings = settings or get_settings()
        validate_min_margin_ratio(self._settings.pricing_min_margin_ratio)
        self._repository = repository or DataRepository(self._settings)
        self._geo = geo or GeoEstimator(repository=self._repository, settings=self._settings)

    def build_context(
        self,
        booking: Booking,
        service: Service,
        site: Site,
        engineer_id: Optional[int] = None,
        site_coordinates: Optional[Coordinates] = None,
        today: Optional[date] = None,
        is_flexible: Optional[bool] = None,
    ) -> PricingContext:
        today = today or datetime.now(timezone.utc).date()
        if site_coordinates is None:
            site_coordinates = self._geo.resolve_site(site).coordinates

        distances: tuple[float, ...] = ()
        if engineer_id is not None and site_coordinates is not None:
            jobs = self._geo.locate_jobs(
                self._repository.list_engineer_jobs(
                    engineer_id,
                    booking.scheduled_date,
                    booking.scheduled_date,
                    exclude_booking_id=booking.booking_id,
                )
            )
            distances = tuple(
                haversine_km(job.coordinates, site_coordinates)
                for job in jobs
                if job.coordinates is not None
            )

        return PricingContext(
            service=service,
            quantity=booking.estimated_qty,
            scheduled_date=booking.scheduled_date,
            today=today,
            is_flexible=booking.is_flexible if is_flexible is None else is_flexible,
            customer_completed_bookings=self._repository.count_completed_bookings(booking.customer_id),
            engineer_job_distances_km=distances,
        )

    def quote_context(self, context: PricingContext) -> QuoteResult:
        return compute_quote(
            context,
            self._repository.list_pricing_rules(enabled_only=True),
            self._settings.pricing_min_margin_ratio,
        )

    def quote(
        self,
        booking: Booking,
        site: Site,
        engineer_id: Optional[int] = None,
        site_coordinates: Optional[Coordinates] = None,
        today: Optional[date] = None,
    ) -> QuoteResult:
        service = self._repository.get_service(booking.service_id)
        if service is None:
            logger.warning(
                "Quote failed | booking_id=%s | reason=service_missing | service_id=%s",
                booking.booking_id,
                booking.service_id,
            )
            return failed_quote(
                EngineError(ErrorKind.REFERENCE_DATA_MISSING, f"Service {booking.service_id} not found")
            )
        context = self.build_context(
            booking,
            service,
            site,
            engineer_id=engineer_id if engineer_id is not None else booking.engineer_id,
            site_coordinates=site_coordinates,
            today=today,
        )
        result = self.quote_context(context)
        logger.info(
            "Quote computed | booking_id=%s | original=%.2f | price=%.2f | rules_applied=%s | skipped=%s",
            booking.booking_id,
            result.original_price,
            result.price,
            len(result.adjustments),
            len(result.skipped_rules),
        )
        return result

    def _load(self, booking_id: int) -> tuple[Booking, Site]:
        booking = self._repository.get_booking(booking_id)
        if booking is None:
            raise BookingNotFoundError(f"Booking {booking_id} not found")
        site = self._repository.get_site(booking.site_id)
        if site is None:
            raise PricingValidationError(f"Site {booking.site_id} not found")
        return booking, site

    def quote_booking(
        self,
        booking_id: int,
        engineer_id: Optional[int] = None,
        today: Optional[date] = None,
    ) -> QuoteResult:
        """Quote a stored booking; missing records come back as a failed result."""
        try:
            booking, site = self._load(booking_id)
        except BookingNotFoundError as exc:
            return failed_quote(EngineError(ErrorKind.BOOKING_NOT_FOUND, str(exc)))
        except PricingValidationError as exc:
            return failed_quote(EngineError(ErrorKind.REFERENCE_DATA_MISSING, str(exc)))
        return self.quote(booking, site, engineer_id=engineer_id, today=today)

    def simulate_flexibility_savings(
        self,
        booking_id: int,
        engineer_id: Optional[int] = None,
        today: Optional[date] = None,
    ) -> Optional[FlexSavings]:
        """Quote the booking with and without the flexible-date opt-in."""
        try:
            booking, site = self._load(booking_id)
        except (BookingNotFoundError, PricingValidationError):
            return None
        standard = self.quote(replace(booking, is_flexible=False), site, engineer_id=engineer_id, today=today)
        flexible = self.quote(replace(booking, is_flexible=True), site, engineer_id=engineer_id, today=today)
        if not (standard.success and flexible.success):
            return None
        return FlexSavings(standard=standard, flexible=flexible)
