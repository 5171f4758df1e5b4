from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Mapping

from .models import HistoryAction, Ticket, TicketHistoryEvent
from .state import TicketAction, TicketStatus


class TicketHistoryLog:
    """Collect the history events produced by one operation on one ticket.

    Sequence numbers continue from ``ticket.history_sequence`` so that events of a
    ticket are numbered 1, 2, 3... without gaps. The events are only persisted
    together with the state change that produced them.
    """

    def __init__(self, ticket_id: str, *, last_sequence: int, actor_id: str, timestamp: datetime) -> None:
        self._ticket_id = ticket_id
        self._sequence = last_sequence
        self._actor_id = actor_id
        self._timestamp = timestamp
        self._events: list[TicketHistoryEvent] = []

    @classmethod
    def for_ticket(cls, ticket: Ticket, *, actor_id: str, timestamp: datetime) -> "TicketHistoryLog":
        return cls(ticket.id, last_sequence=ticket.history_sequence, actor_id=actor_id, timestamp=timestamp)

    @property
    def events(self) -> tuple[TicketHistoryEvent, ...]:
        return tuple(self._events)

    @property
    def last_sequence(self) -> int:
        return self._sequence

    def append(
        self,
        action: HistoryAction,
        *,
        field_name: str | None = None,
        old_value: str | None = None,
        new_value: str | None = None,
        metadata: Mapping[str, str] | None = None,
    ) -> TicketHistoryEvent:
        self._sequence += 1
        event = TicketHistoryEvent(
            ticket_id=self._ticket_id,
            sequence=self._sequence,
            actor_id=self._actor_id,
            action=action,
            timestamp=self._timestamp,
            field_name=field_name,
            old_value=old_value,
            new_value=new_value,
            metadata=dict(metadata or {}),
        )
        self._events.append(event)
        return event

    def status_changed(
        self,
        old: TicketStatus,
        new: TicketStatus,
        *,
        trigger: TicketAction,
        extra: Mapping[str, str] | None = None,
    ) -> TicketHistoryEvent:
        return self.append(
            HistoryAction.STATUS_CHANGED,
            field_name="status",
            old_value=old.value,
            new_value=new.value,
            metadata={"trigger": trigger.value, **(extra or {})},
        )

    def field_updated(self, field_name: str, old: object, new: object) -> TicketHistoryEvent:
        return self.append(
            HistoryAction.FIELD_UPDATED,
            field_name=field_name,
            old_value=_stringify(old),
            new_value=_stringify(new),
        )


def _stringify(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)
