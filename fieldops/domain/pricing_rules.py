"""Pricing rule variants and their evaluators.

Each stored rule row carries a ``type`` tag and a JSON payload. The payload is
parsed into exactly one of the pydantic models below via a discriminated union,
and every model has exactly one evaluator in ``_EVALUATORS``. Adding a variant
without an evaluator fails at import time.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Annotated, Any, Callable, Literal, Optional, Union, get_args

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from fieldops.domain.models import PricingRuleRecord, Service


WEEKDAY_NAMES = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")


class RuleConfigInvalidError(ValueError):
    """Raised when a stored pricing rule payload cannot be parsed."""


class _RuleConfig(BaseModel):
    # Payloads are stored camelCase (radiusKm); snake_case is accepted too.
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )


class ClusterRule(_RuleConfig):
    type: Literal["cluster"]
    radius_km: float = Field(default=5.0, gt=0.0)
    min_jobs: int = Field(default=1, ge=1)
    discount_percent: float = Field(default=10.0, ge=0.0, le=100.0)


class UrgencyRule(_RuleConfig):
    type: Literal["urgency"]
    days_threshold: int = Field(default=2, ge=0)
    premium_percent: float = Field(default=15.0, ge=0.0, le=200.0)


class OffPeakRule(_RuleConfig):
    type: Literal["offpeak"]
    days: tuple[int, ...] = Field(default=(0, 4))
    discount_percent: float = Field(default=5.0, ge=0.0, le=100.0)

    @field_validator("days")
    @classmethod
    def validate_weekdays(cls, value: tuple[int, ...]) -> tuple[int, ...]:
        for day in value:
            if not 0 <= day <= 6:
                raise ValueError("days must contain weekday numbers 0 (Mon) to 6 (Sun)")
        return value


class FlexRule(_RuleConfig):
    type: Literal["flex"]
    days_flexible: int = Field(default=3, ge=1)
    discount_percent: float = Field(default=7.0, ge=0.0, le=100.0)


class LoyaltyRule(_RuleConfig):
    type: Literal["loyalty"]
    min_bookings: int = Field(default=5, ge=1)
    discount_percent: float = Field(default=5.0, ge=0.0, le=100.0)


RuleConfig = Annotated[
    Union[ClusterRule, UrgencyRule, OffPeakRule, FlexRule, LoyaltyRule],
    Field(discriminator="type"),
]

_RULE_ADAPTER: TypeAdapter[Any] = TypeAdapter(RuleConfig)


@dataclass(frozen=True)
class PricingContext:
    """Everything a rule may look at; built by the pricing service."""

    service: Service
    quantity: int
    scheduled_date: date
    today: date
    is_flexible: bool
    customer_completed_bookings: int
    # Distances from the site to the engineer's other jobs that day.
    engineer_job_distances_km: tuple[float, ...] = ()

    @property
    def days_until(self) -> int:
        return max(0, (self.scheduled_date - self.today).days)


@dataclass(frozen=True)
class RuleEffect:
    kind: str
    percent: float
    detail: str

    def apply(self, price: float) -> float:
        if self.kind == "premium":
            return price * (1.0 + self.percent / 100.0)
        return price * (1.0 - self.percent / 100.0)


def parse_rule(record: PricingRuleRecord) -> Any:
    payload = dict(record.config)
    payload["type"] = record.rule_type
    try:
        return _RULE_ADAPTER.validate_python(payload)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        )
        raise RuleConfigInvalidError(
            f"pricing rule {record.rule_id} ({record.rule_type}) is invalid: {problems}"
        ) from exc


def _evaluate_cluster(rule: ClusterRule, context: PricingContext) -> Optional[RuleEffect]:
    nearby = sum(1 for distance in context.engineer_job_distances_km if distance <= rule.radius_km)
    if nearby < rule.min_jobs:
        return None
    return RuleEffect(
        kind="discount",
        percent=rule.discount_percent,
        detail=f"{nearby} job(s) within {rule.radius_km:g} km on the same day",
    )


def _evaluate_urgency(rule: UrgencyRule, context: PricingContext) -> Optional[RuleEffect]:
    days_until = context.days_until
    if days_until > rule.days_threshold:
        return None
    # Same day pays the full premium; each later day within the threshold pays less.
    percent = rule.premium_percent * (1.0 - days_until / (rule.days_threshold + 1))
    if percent <= 0.0:
        return None
    label = "same day" if days_until == 0 else f"{days_until} day(s) notice"
    return RuleEffect(kind="premium", percent=percent, detail=label)


def _evaluate_offpeak(rule: OffPeakRule, context: PricingContext) -> Optional[RuleEffect]:
    weekday = context.scheduled_date.weekday()
    if weekday not in rule.days:
        return None
    return RuleEffect(
        kind="discount",
        percent=rule.discount_percent,
        detail=f"off-peak day ({WEEKDAY_NAMES[weekday]})",
    )


def _evaluate_flex(rule: FlexRule, context: PricingContext) -> Optional[RuleEffect]:
    if not context.is_flexible:
        return None
    return RuleEffect(
        kind="discount",
        percent=rule.discount_percent,
        detail=f"flexible within {rule.days_flexible} day(s)",
    )


def _evaluate_loyalty(rule: LoyaltyRule, context: PricingContext) -> Optional[RuleEffect]:
    if context.customer_completed_bookings < rule.min_bookings:
        return None
    return RuleEffect(
        kind="discount",
        percent=rule.discount_percent,
        detail=f"{context.customer_completed_bookings} completed bookings",
    )


_EVALUATORS: dict[type, Callable[[Any, PricingContext], Optional[RuleEffect]]] = {
    ClusterRule: _evaluate_cluster,
    UrgencyRule: _evaluate_urgency,
    OffPeakRule: _evaluate_offpeak,
    FlexRule: _evaluate_flex,
    LoyaltyRule: _evaluate_loyalty,
}

_RULE_VARIANTS = get_args(get_args(RuleConfig)[0])
_unhandled = [variant.__name__ for variant in _RULE_VARIANTS if variant not in _EVALUATORS]
if _unhandled:
    raise RuntimeError(f"pricing rule variants without evaluator: {', '.join(_unhandled)}")


def evaluate_rule(rule: Any, context: PricingContext) -> Optional[RuleEffect]:
    return _EVALUATORS[type(rule)](rule, context)
