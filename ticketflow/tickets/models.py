from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Mapping

from .state import TicketPriority, TicketStatus


class HistoryAction(str, Enum):
    CREATED = "created"
    STATUS_CHANGED = "status_changed"
    ASSIGNED = "assigned"
    REASSIGNED = "reassigned"
    VALIDATED = "validated"
    INVALIDATED = "invalidated"
    CLOSED = "closed"
    REOPENED = "reopened"
    FIELD_UPDATED = "field_updated"
    COMMENTED = "commented"
    DELAY_DETECTED = "delay_detected"
    DELETED = "deleted"


@dataclass(slots=True)
class Ticket:
    """Aggregate representing a support ticket entry."""

    id: str
    title: str
    description: str
    category: str
    priority: TicketPriority
    status: TicketStatus
    requester_id: str | None
    requester_name: str | None
    requester_department: str
    created_by: str
    created_at: datetime
    updated_at: datetime
    closed_at: datetime | None = None
    validated_at: datetime | None = None
    validated_by: str | None = None
    estimated_minutes: int | None = None
    actual_minutes: int | None = None
    version: int = 1
    history_sequence: int = 0

    @property
    def resolved_at(self) -> datetime | None:
        """Timestamp used for SLA elapsed time: validation first, closure otherwise."""

        return self.validated_at or self.closed_at


@dataclass(frozen=True, slots=True)
class Assignee:
    user_id: str
    is_lead: bool = False


@dataclass(frozen=True, slots=True)
class Assignment:
    """The assignee set of a ticket together with its optional lead."""

    ticket_id: str
    members: tuple[Assignee, ...] = ()

    @property
    def user_ids(self) -> tuple[str, ...]:
        return tuple(member.user_id for member in self.members)

    @property
    def lead_id(self) -> str | None:
        for member in self.members:
            if member.is_lead:
                return member.user_id
        return None

    def includes(self, user_id: str) -> bool:
        return user_id in self.user_ids

    def describe(self) -> str:
        return ",".join(self.user_ids)


@dataclass(frozen=True, slots=True)
class TicketHistoryEvent:
    """History entry describing one mutation of a ticket. Never modified once written."""

    ticket_id: str
    sequence: int
    actor_id: str
    action: HistoryAction
    timestamp: datetime
    field_name: str | None = None
    old_value: str | None = None
    new_value: str | None = None
    metadata: Mapping[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class TicketRecord:
    """A ticket loaded together with its assignment."""

    ticket: Ticket
    assignment: Assignment


@dataclass(frozen=True, slots=True)
class TimeEntry:
    ticket_id: str
    user_id: str
    minutes_spent: int
    spent_on: date
    validated: bool = False


@dataclass(frozen=True, slots=True)
class TimeVariance:
    estimated: int | None
    actual: int
    delta_minutes: int | None
    percent_consumed: float | None


@dataclass(frozen=True, slots=True)
class TicketDelay:
    """Overrun of the actual time over the estimate."""

    ticket_id: str
    estimated_minutes: int
    actual_minutes: int
    delay_minutes: int
    delay_percentage: float | None


@dataclass(frozen=True, slots=True)
class TicketComment:
    id: str
    ticket_id: str
    sequence: int
    author_id: str
    body: str
    created_at: datetime
    is_internal: bool = False
