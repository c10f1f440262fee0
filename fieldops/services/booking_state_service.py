"""Booking lifecycle transitions guarded by the current status."""

from __future__ import annotations

from typing import Any, Optional, Union

from fieldops.domain.models import Booking, BookingStatus, StatusLogEntry, TransitionAction
from fieldops.domain.results import EngineError, ErrorKind, TransitionResult
from fieldops.repository.data_repository import DataRepository, utc_now_iso
from fieldops.utils.config import Settings, get_settings
from fieldops.utils.logger import get_logger


logger = get_logger(__name__)

S = BookingStatus
A = TransitionAction

# REOPEN is resolved separately because its target depends on the booking.
TRANSITIONS: dict[TransitionAction, dict[BookingStatus, BookingStatus]] = {
    A.ACCEPT: {S.PENDING: S.CONFIRMED},
    A.START_TRAVEL: {S.CONFIRMED: S.EN_ROUTE},
    A.ARRIVE: {S.EN_ROUTE: S.ON_SITE},
    A.START_WORK: {S.ON_SITE: S.IN_PROGRESS},
    A.COMPLETE: {S.IN_PROGRESS: S.COMPLETED},
    A.DECLINE: {S.CONFIRMED: S.DECLINED},
    A.CANCEL: {S.PENDING: S.CANCELLED, S.CONFIRMED: S.CANCELLED, S.IN_PROGRESS: S.CANCELLED},
    A.REVISIT: {S.IN_PROGRESS: S.REQUIRES_REVISIT},
    A.REOPEN: {S.CANCELLED: S.PENDING, S.DECLINED: S.PENDING, S.REQUIRES_REVISIT: S.CONFIRMED},
}

TIMESTAMP_COLUMNS: dict[TransitionAction, str] = {
    A.ACCEPT: "accepted_at",
    A.START_TRAVEL: "en_route_at",
    A.ARRIVE: "arrived_at",
    A.START_WORK: "started_at",
    A.COMPLETE: "completed_at",
    A.DECLINE: "declined_at",
    A.CANCEL: "cancelled_at",
}


def resolve_target(action: TransitionAction, booking: Booking) -> Optional[BookingStatus]:
    target = TRANSITIONS[action].get(booking.status)
    if target is None:
        return None
    if action == A.REOPEN and booking.status == S.REQUIRES_REVISIT and booking.engineer_id is None:
        return S.PENDING
    return target


def allowed_actions(status: BookingStatus) -> list[TransitionAction]:
    return [action for action, table in TRANSITIONS.items() if status in table]


def accepting_engineer(
    booking: Booking,
    actor_id: str,
    engineer_id: Optional[int] = None,
) -> Optional[int]:
    """Explicit id first, then a numeric actor id, then the stored engineer."""
    if engineer_id is not None:
        return engineer_id
    if actor_id.strip().isdigit():
        return int(actor_id)
    return booking.engineer_id


def transition_updates(
    action: TransitionAction,
    booking: Booking,
    reason: Optional[str],
    engineer_id: Optional[int] = None,
) -> dict[str, Any]:
    """Column writes that accompany the status change."""
    updates: dict[str, Any] = {}
    column = TIMESTAMP_COLUMNS.get(action)
    if column is not None:
        updates[column] = utc_now_iso()
    if action == A.ACCEPT:
        updates["engineer_id"] = engineer_id
        if booking.confirmed_at is None:
            updates["confirmed_at"] = updates["accepted_at"]
    elif action == A.DECLINE:
        updates["engineer_id"] = None
        updates["declined_reason"] = reason
    elif action == A.CANCEL:
        updates["engineer_id"] = None
    elif action == A.REOPEN and booking.status in (S.CANCELLED, S.DECLINED):
        updates["engineer_id"] = None
    return updates


class BookingStateService:
    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)

    def _refused(
        self,
        booking: Booking,
        action: TransitionAction,
        error: EngineError,
    ) -> TransitionResult:
        logger.info(
            "Transition refused | booking_id=%s | action=%s | status=%s | error=%s",
            booking.booking_id,
            action.value,
            booking.status.value,
            error.kind.value,
        )
        return TransitionResult(
            success=False,
            booking_id=booking.booking_id,
            action=action.value,
            from_status=booking.status,
            engineer_id=booking.engineer_id,
            error=error,
        )

    def _acceptance_error(self, booking: Booking, engineer_id: Optional[int]) -> Optional[EngineError]:
        if engineer_id is None:
            return EngineError(
                ErrorKind.INVALID_TRANSITION,
                f"Booking {booking.booking_id} cannot be accepted without an engineer",
            )
        if booking.engineer_id is not None and booking.engineer_id != engineer_id:
            return EngineError(
                ErrorKind.ALREADY_ALLOCATED,
                f"Booking {booking.booking_id} is already allocated to engineer {booking.engineer_id}",
            )
        if self._repository.get_engineer_profile(engineer_id) is None:
            return EngineError(ErrorKind.ENGINEER_NOT_FOUND, f"Engineer {engineer_id} not found")
        return None

    def apply_transition(
        self,
        booking_id: int,
        action: Union[TransitionAction, str],
        actor_id: str,
        reason: Optional[str] = None,
        engineer_id: Optional[int] = None,
    ) -> TransitionResult:
        """Move the booking along the lifecycle if ``action`` is legal from its status.

        ACCEPT records the accepting engineer (``engineer_id``, else a numeric
        ``actor_id``, else the engineer already on the booking) and is refused
        when another engineer holds the booking.
        """
        action_name = action.value if isinstance(action, TransitionAction) else str(action).upper()
        try:
            parsed = TransitionAction(action_name)
        except ValueError:
            return TransitionResult(
                success=False,
                booking_id=booking_id,
                action=action_name,
                error=EngineError(ErrorKind.INVALID_TRANSITION, f"Unknown action {action_name}"),
            )

        booking = self._repository.get_booking(booking_id)
        if booking is None:
            return TransitionResult(
                success=False,
                booking_id=booking_id,
                action=parsed.value,
                error=EngineError(ErrorKind.BOOKING_NOT_FOUND, f"Booking {booking_id} not found"),
            )

        target = resolve_target(parsed, booking)
        if target is None:
            return self._refused(
                booking,
                parsed,
                EngineError(
                    ErrorKind.INVALID_TRANSITION,
                    f"InvalidTransition({parsed.value}, {booking.status.value})",
                ),
            )

        acceptor: Optional[int] = None
        if parsed == A.ACCEPT:
            acceptor = accepting_engineer(booking, actor_id, engineer_id)
            error = self._acceptance_error(booking, acceptor)
            if error is not None:
                return self._refused(booking, parsed, error)

        if parsed == A.COMPLETE and not (booking.customer_signature_url or "").strip():
            return self._refused(
                booking,
                parsed,
                EngineError(
                    ErrorKind.MISSING_SIGNATURE,
                    "Customer signature is required to complete the booking",
                ),
            )

        updates = transition_updates(parsed, booking, reason, engineer_id=acceptor)
        applied = self._repository.apply_status_change(
            booking_id=booking_id,
            action=parsed.value,
            expected_status=booking.status,
            new_status=target,
            actor_id=actor_id,
            reason=reason,
            updates=updates,
            expected_engineer_id=acceptor,
        )
        if not applied:
            current = self._repository.get_booking(booking_id) or booking
            logger.info(
                "Transition lost race | booking_id=%s | action=%s | expected=%s | current=%s",
                booking_id,
                parsed.value,
                booking.status.value,
                current.status.value,
            )
            if acceptor is not None and current.engineer_id not in (None, acceptor):
                error = EngineError(
                    ErrorKind.ALREADY_ALLOCATED,
                    f"Booking {booking_id} is already allocated to engineer {current.engineer_id}",
                )
            else:
                error = EngineError(
                    ErrorKind.INVALID_TRANSITION,
                    f"InvalidTransition({parsed.value}, {current.status.value})",
                    retryable=True,
                )
            return TransitionResult(
                success=False,
                booking_id=booking_id,
                action=parsed.value,
                from_status=current.status,
                engineer_id=current.engineer_id,
                error=error,
            )

        assigned_engineer = updates["engineer_id"] if "engineer_id" in updates else booking.engineer_id
        logger.info(
            "Transition applied | booking_id=%s | action=%s | from=%s | to=%s | actor=%s",
            booking_id,
            parsed.value,
            booking.status.value,
            target.value,
            actor_id,
        )
        return TransitionResult(
            success=True,
            booking_id=booking_id,
            action=parsed.value,
            from_status=booking.status,
            to_status=target,
            engineer_id=assigned_engineer,
        )

    def history(self, booking_id: int) -> list[StatusLogEntry]:
        return self._repository.list_status_logs(booking_id)
