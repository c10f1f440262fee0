from __future__ import annotations

from datetime import date, timedelta

import pytest

from fieldops.domain.models import BookingStatus, PricingRuleRecord, Service
from fieldops.domain.pricing_rules import PricingContext
from fieldops.domain.results import ErrorKind
from fieldops.services.geo_service import GeoEstimator, StaticCoordinateLookup
from fieldops.services.pricing_service import PricingService, base_price, compute_quote, floor_price

from conftest import BOOKING_DATE, SW1A, north_of


SERVICE = Service(
    service_id=1,
    name="EICR",
    base_price=100.0,
    min_charge=50.0,
    requires_certification=True,
)


def _context(**overrides) -> PricingContext:
    values = dict(
        service=SERVICE,
        quantity=1,
        scheduled_date=BOOKING_DATE,
        today=BOOKING_DATE - timedelta(days=14),
        is_flexible=False,
        customer_completed_bookings=0,
        engineer_job_distances_km=(),
    )
    values.update(overrides)
    return PricingContext(**values)


def _rule(rule_id: int, rule_type: str, config: dict, priority: int, enabled: bool = True) -> PricingRuleRecord:
    return PricingRuleRecord(
        rule_id=rule_id,
        name=f"{rule_type}-{rule_id}",
        rule_type=rule_type,
        enabled=enabled,
        priority=priority,
        config=config,
    )


CLUSTER = _rule(1, "cluster", {"radiusKm": 5, "minJobs": 1, "discountPercent": 10}, priority=10)
URGENCY = _rule(2, "urgency", {"daysThreshold": 2, "premiumPercent": 15}, priority=20)


def test_base_price_respects_minimum_charge():
    pat = Service(service_id=2, name="PAT", base_price=2.5, min_charge=60.0, requires_certification=True)
    assert base_price(pat, 10) == 60.0
    assert base_price(pat, 40) == 100.0
    assert floor_price(pat, 100.0, 0.7) == 70.0
    assert floor_price(pat, 60.0, 0.7) == 60.0


def test_rules_compound_in_priority_order():
    context = _context(today=BOOKING_DATE, engineer_job_distances_km=(1.2,))

    result = compute_quote(context, [URGENCY, CLUSTER], min_margin_ratio=0.7)

    assert result.success
    assert result.original_price == 100.0
    assert result.price == pytest.approx(103.50)
    assert [adjustment.rule_type for adjustment in result.adjustments] == ["cluster", "urgency"]
    assert result.adjustments[0].price_after == pytest.approx(90.0)
    assert not result.clamped


def test_price_is_clamped_to_minimum_margin():
    rules = [
        _rule(1, "loyalty", {"minBookings": 1, "discountPercent": 20}, priority=1),
        _rule(2, "flex", {"discountPercent": 20}, priority=2),
    ]
    context = _context(is_flexible=True, customer_completed_bookings=3)

    result = compute_quote(context, rules, min_margin_ratio=0.7)

    assert result.clamped
    assert result.price == 70.0
    assert result.floor_price == 70.0
    assert result.adjustments[-1].price_after == pytest.approx(64.0)


def test_disabled_rules_are_ignored():
    disabled = _rule(3, "offpeak", {"days": [0], "discountPercent": 50}, priority=1, enabled=False)
    result = compute_quote(_context(), [disabled], min_margin_ratio=0.7)
    assert result.price == 100.0
    assert result.adjustments == ()


def test_malformed_rule_is_skipped_with_warning():
    broken = _rule(4, "cluster", {"discountPercent": "a lot"}, priority=1)
    offpeak = _rule(5, "offpeak", {"days": [0], "discountPercent": 5}, priority=2)

    result = compute_quote(_context(), [broken, offpeak], min_margin_ratio=0.7)

    assert result.success
    assert result.price == pytest.approx(95.0)
    assert len(result.skipped_rules) == 1
    assert result.skipped_rules[0].kind == ErrorKind.RULE_CONFIG_INVALID
    assert "pricing rule 4" in result.skipped_rules[0].message


@pytest.mark.parametrize(
    ("days_until", "expected_price"),
    [(0, 115.0), (1, 110.0), (2, 105.0), (3, 100.0)],
)
def test_urgency_premium_scales_with_notice(days_until, expected_price):
    context = _context(today=BOOKING_DATE - timedelta(days=days_until))
    result = compute_quote(context, [URGENCY], min_margin_ratio=0.7)
    assert result.price == pytest.approx(expected_price)


def test_offpeak_uses_weekday_of_scheduled_date():
    offpeak = _rule(6, "offpeak", {"days": [0, 4], "discountPercent": 5}, priority=1)
    monday = compute_quote(_context(), [offpeak], min_margin_ratio=0.7)
    wednesday = compute_quote(_context(scheduled_date=date(2025, 3, 12)), [offpeak], min_margin_ratio=0.7)
    assert monday.price == pytest.approx(95.0)
    assert wednesday.price == 100.0


def test_cluster_needs_minimum_nearby_jobs():
    rule = _rule(7, "cluster", {"radiusKm": 5, "minJobs": 2, "discountPercent": 10}, priority=1)
    one_near = compute_quote(_context(engineer_job_distances_km=(1.0, 9.0)), [rule], min_margin_ratio=0.7)
    two_near = compute_quote(_context(engineer_job_distances_km=(1.0, 4.0)), [rule], min_margin_ratio=0.7)
    assert one_near.price == 100.0
    assert two_near.price == pytest.approx(90.0)


def test_loyalty_counts_completed_bookings():
    rule = _rule(8, "loyalty", {"minBookings": 5, "discountPercent": 5}, priority=1)
    assert compute_quote(_context(customer_completed_bookings=4), [rule], 0.7).price == 100.0
    assert compute_quote(_context(customer_completed_bookings=5), [rule], 0.7).price == pytest.approx(95.0)


def test_quote_booking_uses_engineer_same_day_jobs(repository, pat, make_engineer, settings, geo):
    engineer_id = make_engineer("Asha Patel", pat.service_id, SW1A)
    nearby = north_of(SW1A, 1.0)
    nearby_site = repository.create_site(pat.customer_id, "SW1A 2AA", nearby.latitude, nearby.longitude)
    repository.create_booking(
        pat.service_id,
        nearby_site,
        pat.customer_id,
        BOOKING_DATE,
        "PM",
        status=BookingStatus.CONFIRMED,
        engineer_id=engineer_id,
    )
    booking_id = repository.create_booking(pat.service_id, pat.site_id, pat.customer_id, BOOKING_DATE, "AM",
                                           estimated_qty=40)
    repository.create_pricing_rule("Cluster", "cluster", {"radiusKm": 5, "discountPercent": 10}, priority=10)

    service = PricingService(repository=repository, settings=settings, geo=geo)
    today = BOOKING_DATE - timedelta(days=10)

    without_engineer = service.quote_booking(booking_id, today=today)
    with_engineer = service.quote_booking(booking_id, engineer_id=engineer_id, today=today)

    assert without_engineer.price == 100.0
    assert with_engineer.price == pytest.approx(90.0)


def test_quote_booking_missing_booking(repository, settings, geo):
    result = PricingService(repository=repository, settings=settings, geo=geo).quote_booking(999)
    assert not result.success
    assert result.error.kind == ErrorKind.BOOKING_NOT_FOUND


def test_flexibility_savings(repository, pat, settings, geo):
    booking_id = repository.create_booking(pat.service_id, pat.site_id, pat.customer_id, BOOKING_DATE, "AM",
                                           estimated_qty=40)
    repository.create_pricing_rule("Flexible", "flex", {"daysFlexible": 3, "discountPercent": 7}, priority=10)
    service = PricingService(repository=repository, settings=settings, geo=geo)

    savings = service.simulate_flexibility_savings(booking_id, today=BOOKING_DATE - timedelta(days=10))

    assert savings.standard.price == 100.0
    assert savings.flexible.price == pytest.approx(93.0)
    assert savings.potential_saving == pytest.approx(7.0)
    assert service.simulate_flexibility_savings(999) is None


@pytest.mark.parametrize("lookup", ["get_service", "get_site"])
def test_quote_with_missing_reference_data(repository, pat, settings, geo, monkeypatch, lookup):
    booking_id = repository.create_booking(pat.service_id, pat.site_id, pat.customer_id, BOOKING_DATE, "AM")
    monkeypatch.setattr(repository, lookup, lambda record_id: None)
    service = PricingService(repository=repository, settings=settings, geo=geo)

    result = service.quote_booking(booking_id)

    assert not result.success
    assert result.error.kind == ErrorKind.REFERENCE_DATA_MISSING
    assert service.simulate_flexibility_savings(booking_id) is None


def test_cluster_counts_jobs_at_sites_without_stored_coordinates(repository, pat, make_engineer, settings):
    engineer_id = make_engineer("Asha Patel", pat.service_id, SW1A)
    unlocated_site = repository.create_site(pat.customer_id, "SW1A 2AA")
    repository.create_booking(
        pat.service_id,
        unlocated_site,
        pat.customer_id,
        BOOKING_DATE,
        "PM",
        status=BookingStatus.CONFIRMED,
        engineer_id=engineer_id,
    )
    booking_id = repository.create_booking(pat.service_id, pat.site_id, pat.customer_id, BOOKING_DATE, "AM",
                                           estimated_qty=40)
    repository.create_pricing_rule("Cluster", "cluster", {"radiusKm": 5, "discountPercent": 10}, priority=10)
    geo = GeoEstimator(lookup=StaticCoordinateLookup({"SW1A 2AA": north_of(SW1A, 1.0)}), settings=settings)

    result = PricingService(repository=repository, settings=settings, geo=geo).quote_booking(
        booking_id, engineer_id=engineer_id, today=BOOKING_DATE - timedelta(days=10)
    )

    assert result.price == pytest.approx(90.0)
