from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .collaborators import DepartmentInfo
from .errors import PermissionDeniedError
from .models import Assignment, Ticket


class Permission(str, Enum):
    """Permission keys understood by the engine."""

    CREATE = "tickets.create"
    UPDATE = "tickets.update"
    ASSIGN = "tickets.assign"
    VALIDATE = "tickets.validate"
    VALIDATE_OWN = "tickets.validate_own"
    OVERRIDE_STATUS = "tickets.override_status"
    DELETE = "tickets.delete"
    MANAGE_SLA = "sla.manage"


class GateAction(str, Enum):
    """Every operation that has to pass the gate."""

    CREATE = "create"
    UPDATE_FIELDS = "update_fields"
    DELETE = "delete"
    ASSIGN = "assign"
    SET_ESTIMATE = "set_estimate"
    RECORD_TIME = "record_time"
    SUBMIT_FOR_VALIDATION = "submit_for_validation"
    VALIDATE = "validate"
    INVALIDATE = "invalidate"
    REOPEN = "reopen"
    CLOSE = "close"
    MANUAL_STATUS_CHANGE = "manual_status_change"
    MANAGE_SLA = "manage_sla"
    COMMENT = "comment"
    INTERNAL_COMMENTS = "internal_comments"


@dataclass(frozen=True, slots=True)
class CallerContext:
    """Identity of the caller plus everything the gate needs to know about them."""

    caller_id: str
    permissions: frozenset[str]
    department: DepartmentInfo | None = None

    def has(self, permission: Permission | str) -> bool:
        key = permission.value if isinstance(permission, Permission) else permission
        return key in self.permissions

    @property
    def is_resolver(self) -> bool:
        return self.department is not None and self.department.is_resolver_department


class PermissionGate:
    """Single place deciding whether a caller may perform an action on a ticket."""

    def __init__(self, *, override_permission: str = Permission.OVERRIDE_STATUS.value) -> None:
        self._override_permission = override_permission

    @property
    def override_permission(self) -> str:
        return self._override_permission

    def allows(
        self,
        caller: CallerContext,
        action: GateAction,
        ticket: Ticket | None = None,
        assignment: Assignment | None = None,
    ) -> bool:
        if action is GateAction.CREATE:
            return caller.has(Permission.CREATE)
        if action in (GateAction.UPDATE_FIELDS, GateAction.REOPEN, GateAction.CLOSE):
            return caller.has(Permission.UPDATE)
        if action is GateAction.DELETE:
            return caller.has(Permission.DELETE)
        if action is GateAction.ASSIGN:
            return caller.has(Permission.ASSIGN)
        if action is GateAction.MANAGE_SLA:
            return caller.has(Permission.MANAGE_SLA)
        if action is GateAction.MANUAL_STATUS_CHANGE:
            return caller.has(self._override_permission)
        if action is GateAction.SET_ESTIMATE:
            return caller.is_resolver
        if action is GateAction.SUBMIT_FOR_VALIDATION:
            return caller.is_resolver and assignment is not None and assignment.includes(caller.caller_id)
        if action is GateAction.RECORD_TIME:
            is_assignee = assignment is not None and assignment.includes(caller.caller_id)
            return is_assignee or caller.has(Permission.UPDATE)
        if action is GateAction.INTERNAL_COMMENTS:
            return caller.is_resolver or caller.has(Permission.UPDATE)
        if action is GateAction.COMMENT:
            if caller.is_resolver or caller.has(Permission.UPDATE):
                return True
            is_assignee = assignment is not None and assignment.includes(caller.caller_id)
            return is_assignee or (ticket is not None and caller.caller_id in (ticket.requester_id, ticket.created_by))
        if action in (GateAction.VALIDATE, GateAction.INVALIDATE):
            if caller.has(Permission.VALIDATE):
                return True
            is_requester = (
                ticket is not None
                and ticket.requester_id is not None
                and ticket.requester_id == caller.caller_id
            )
            return is_requester and caller.has(Permission.VALIDATE_OWN)
        return False

    def require(
        self,
        caller: CallerContext,
        action: GateAction,
        ticket: Ticket | None = None,
        assignment: Assignment | None = None,
    ) -> None:
        if not self.allows(caller, action, ticket, assignment):
            raise PermissionDeniedError(f"{caller.caller_id} may not {action.value}")
