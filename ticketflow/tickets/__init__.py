"""Ticket lifecycle: states, assignment, time budget, history and SLA."""

from .collaborators import (
    DepartmentInfo,
    FilialeInfo,
    InMemoryTimeEntryStore,
    LoggingNotifier,
    StaticDepartmentDirectory,
    StaticPermissionResolver,
)
from .errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    SLARuleNotFoundError,
    TicketEngineError,
    TicketNotFoundError,
    ValidationFailedError,
)
from .models import (
    Assignee,
    Assignment,
    HistoryAction,
    Ticket,
    TicketComment,
    TicketDelay,
    TicketHistoryEvent,
    TicketRecord,
)
from .permissions import CallerContext, GateAction, Permission, PermissionGate
from .repository import InMemoryTicketRepository, SQLTicketRepository, TicketRepository
from .service import TicketCollaborators, TicketService
from .sla import ComplianceReport, SLAComplianceCalculator, SLARule, SLAState, SLAViolation
from .state import TicketAction, TicketPriority, TicketStateMachine, TicketStatus
from .timebudget import TimeUnit, format_minutes

__all__ = [
    "Assignee",
    "Assignment",
    "CallerContext",
    "ComplianceReport",
    "ConflictError",
    "DepartmentInfo",
    "FilialeInfo",
    "GateAction",
    "HistoryAction",
    "InMemoryTicketRepository",
    "InMemoryTimeEntryStore",
    "InvalidTransitionError",
    "LoggingNotifier",
    "NotFoundError",
    "Permission",
    "PermissionDeniedError",
    "PermissionGate",
    "SLAComplianceCalculator",
    "SLARule",
    "SLARuleNotFoundError",
    "SLAState",
    "SLAViolation",
    "SQLTicketRepository",
    "StaticDepartmentDirectory",
    "StaticPermissionResolver",
    "Ticket",
    "TicketAction",
    "TicketCollaborators",
    "TicketComment",
    "TicketDelay",
    "TicketEngineError",
    "TicketHistoryEvent",
    "TicketNotFoundError",
    "TicketPriority",
    "TicketRecord",
    "TicketRepository",
    "TicketService",
    "TicketStateMachine",
    "TicketStatus",
    "TimeUnit",
    "ValidationFailedError",
    "format_minutes",
]
