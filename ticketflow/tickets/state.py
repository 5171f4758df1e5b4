from __future__ import annotations

from enum import Enum
from typing import Mapping

from .errors import InvalidTransitionError


class TicketStatus(str, Enum):
    """Supported states for a ticket's lifecycle."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    PENDING = "pending"
    RESOLVED = "resolved"
    CLOSED = "closed"


class TicketPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class TicketAction(str, Enum):
    """Caller intents that may move a ticket between states."""

    SET_ESTIMATE = "set_estimate"
    SUBMIT_FOR_VALIDATION = "submit_for_validation"
    VALIDATE = "validate"
    INVALIDATE = "invalidate"
    REOPEN = "reopen"
    CLOSE = "close"
    MANUAL_STATUS_CHANGE = "manual_status_change"


_ALL = frozenset(TicketStatus)
_NOT_CLOSED = _ALL - {TicketStatus.CLOSED}


class TicketStateMachine:
    """Validate ticket lifecycle transitions.

    Each action maps to the statuses it may start from and the status it leads to.
    A target of ``None`` means the action keeps the current status, except for the
    auto-advance from ``open`` performed by ``set_estimate``.
    """

    _TRANSITIONS: Mapping[TicketAction, tuple[frozenset[TicketStatus], TicketStatus | None]] = {
        TicketAction.SET_ESTIMATE: (
            frozenset({TicketStatus.OPEN, TicketStatus.IN_PROGRESS, TicketStatus.PENDING}),
            None,
        ),
        TicketAction.SUBMIT_FOR_VALIDATION: (
            frozenset({TicketStatus.OPEN, TicketStatus.IN_PROGRESS}),
            TicketStatus.PENDING,
        ),
        TicketAction.VALIDATE: (frozenset({TicketStatus.PENDING}), TicketStatus.RESOLVED),
        TicketAction.INVALIDATE: (
            frozenset({TicketStatus.PENDING, TicketStatus.RESOLVED}),
            TicketStatus.OPEN,
        ),
        TicketAction.REOPEN: (frozenset({TicketStatus.RESOLVED, TicketStatus.CLOSED}), TicketStatus.OPEN),
        TicketAction.CLOSE: (_NOT_CLOSED, TicketStatus.CLOSED),
        TicketAction.MANUAL_STATUS_CHANGE: (_ALL, None),
    }

    @classmethod
    def initial_state(cls) -> TicketStatus:
        return TicketStatus.OPEN

    @classmethod
    def target_for(
        cls,
        action: TicketAction,
        current: TicketStatus,
        requested: TicketStatus | None = None,
    ) -> TicketStatus:
        """Return the status ``action`` leads to from ``current`` or raise."""

        sources, target = cls._TRANSITIONS[action]
        if current not in sources:
            raise InvalidTransitionError(f"Cannot {action.value} a ticket in status {current.value}")

        if action is TicketAction.MANUAL_STATUS_CHANGE:
            if requested is None:
                raise InvalidTransitionError("A target status is required for a manual status change")
            if requested == current:
                raise InvalidTransitionError(f"Ticket is already {current.value}")
            return requested

        if action is TicketAction.SET_ESTIMATE:
            return TicketStatus.IN_PROGRESS if current is TicketStatus.OPEN else current

        assert target is not None
        return target

    @classmethod
    def can_apply(
        cls,
        action: TicketAction,
        current: TicketStatus,
        requested: TicketStatus | None = None,
    ) -> bool:
        try:
            cls.target_for(action, current, requested)
        except InvalidTransitionError:
            return False
        return True

    @classmethod
    def allowed_actions(cls, current: TicketStatus) -> tuple[TicketAction, ...]:
        return tuple(action for action, (sources, _) in cls._TRANSITIONS.items() if current in sources)
