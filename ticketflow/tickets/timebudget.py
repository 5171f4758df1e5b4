"""Time budget tracking and the minute conventions shared by the whole engine.

Days are *work* days of eight hours, so one day is 480 minutes rather than 1440.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime
from enum import Enum

from .collaborators import TimeEntryStore
from .errors import ValidationFailedError
from .models import Ticket, TicketDelay, TimeEntry, TimeVariance

MINUTES_PER_HOUR = 60
WORK_DAY_MINUTES = 8 * MINUTES_PER_HOUR


class TimeUnit(str, Enum):
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"


def hours_to_minutes(hours: float) -> int:
    return round(hours * MINUTES_PER_HOUR)


def minutes_to_hours(minutes: int) -> float:
    return minutes / MINUTES_PER_HOUR


def minutes_from_days(days: float) -> int:
    return round(days * WORK_DAY_MINUTES)


def days_from_minutes(minutes: int) -> float:
    return minutes / WORK_DAY_MINUTES


def to_minutes(value: float, unit: TimeUnit | str) -> int:
    unit = TimeUnit(unit)
    if unit is TimeUnit.DAYS:
        return minutes_from_days(value)
    if unit is TimeUnit.HOURS:
        return hours_to_minutes(value)
    return round(value)


def format_minutes(total_minutes: int | None) -> str:
    """Render minutes as work days, hours and minutes, e.g. ``1 d 2 h 5 min``."""

    if total_minutes is None:
        return "not set"
    minutes = max(0, int(total_minutes))
    if minutes < MINUTES_PER_HOUR:
        return f"{minutes} min"
    if minutes < WORK_DAY_MINUTES:
        hours, mins = divmod(minutes, MINUTES_PER_HOUR)
        return f"{hours} h {mins} min" if mins else f"{hours} h"

    days, remainder = divmod(minutes, WORK_DAY_MINUTES)
    hours, mins = divmod(remainder, MINUTES_PER_HOUR)
    parts = [f"{days} d"]
    if hours:
        parts.append(f"{hours} h")
    if mins:
        parts.append(f"{mins} min")
    return " ".join(parts)


def ensure_minutes(minutes: int, *, field: str) -> int:
    if minutes < 0:
        raise ValidationFailedError(field, "must not be negative")
    return int(minutes)


class TimeBudgetTracker:
    """Owns the estimated and actual minutes stored on a ticket."""

    def __init__(self, entries: TimeEntryStore, *, count_unvalidated: bool = True) -> None:
        self._entries = entries
        self._count_unvalidated = count_unvalidated

    def set_estimate(self, ticket: Ticket, minutes: int, *, now: datetime) -> Ticket:
        minutes = ensure_minutes(minutes, field="estimated_minutes")
        if ticket.estimated_minutes is not None:
            raise ValidationFailedError("estimated_minutes", "an estimate already exists")
        return replace(ticket, estimated_minutes=minutes, updated_at=now)

    def update_estimate(self, ticket: Ticket, minutes: int, *, now: datetime) -> Ticket:
        minutes = ensure_minutes(minutes, field="estimated_minutes")
        if ticket.estimated_minutes is None:
            raise ValidationFailedError("estimated_minutes", "no estimate to update")
        return replace(ticket, estimated_minutes=minutes, updated_at=now)

    async def projected_actual(self, ticket_id: str, minutes: int) -> int:
        """Actual minutes once an entry of ``minutes`` is recorded, without recording it."""

        minutes = _spent_minutes(minutes)
        current = await self.actual_minutes(ticket_id)
        # new entries start unvalidated
        return current + minutes if self._count_unvalidated else current

    async def record_actual(self, ticket_id: str, user_id: str, minutes: int, spent_on: date) -> TimeEntry:
        minutes = _spent_minutes(minutes)
        return await self._entries.record(ticket_id=ticket_id, user_id=user_id, minutes=minutes, spent_on=spent_on)

    async def actual_minutes(self, ticket_id: str) -> int:
        return await self._entries.sum_minutes(ticket_id, include_unvalidated=self._count_unvalidated)

    @staticmethod
    def variance(ticket: Ticket) -> TimeVariance:
        estimated = ticket.estimated_minutes
        actual = ticket.actual_minutes or 0
        if estimated is None:
            return TimeVariance(estimated=None, actual=actual, delta_minutes=None, percent_consumed=None)

        percent = round(actual / estimated * 100, 2) if estimated > 0 else None
        return TimeVariance(
            estimated=estimated,
            actual=actual,
            delta_minutes=actual - estimated,
            percent_consumed=percent,
        )

    @staticmethod
    def delay(ticket: Ticket) -> TicketDelay | None:
        """Return the overrun when more time was spent than estimated."""

        estimated = ticket.estimated_minutes
        actual = ticket.actual_minutes or 0
        if estimated is None or actual <= estimated:
            return None
        overrun = actual - estimated
        return TicketDelay(
            ticket_id=ticket.id,
            estimated_minutes=estimated,
            actual_minutes=actual,
            delay_minutes=overrun,
            delay_percentage=round(overrun / estimated * 100, 2) if estimated > 0 else None,
        )

    @staticmethod
    def overrun_started(before: Ticket, after: Ticket) -> bool:
        return TimeBudgetTracker.delay(before) is None and TimeBudgetTracker.delay(after) is not None


def _spent_minutes(minutes: int) -> int:
    minutes = ensure_minutes(minutes, field="minutes_spent")
    if minutes == 0:
        raise ValidationFailedError("minutes_spent", "must be positive")
    return minutes
