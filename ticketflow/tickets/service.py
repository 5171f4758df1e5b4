from __future__ import annotations

import asyncio
import logging
import uuid
import weakref
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from typing import Any, AsyncIterator, Callable, Iterable, Iterator, Mapping, Sequence

from opentelemetry import trace

from ticketflow.metrics import MetricsRegistry, metrics_registry as default_metrics_registry

from .assignment import AssignmentManager
from .collaborators import DepartmentDirectory, Notifier, PermissionResolver, TimeEntryStore
from .errors import (
    ConflictError,
    InvalidTransitionError,
    SLARuleNotFoundError,
    TicketEngineError,
    TicketNotFoundError,
    ValidationFailedError,
)
from .history import TicketHistoryLog
from .models import (
    Assignment,
    HistoryAction,
    Ticket,
    TicketComment,
    TicketDelay,
    TicketHistoryEvent,
    TicketRecord,
    TimeVariance,
)
from .permissions import CallerContext, GateAction, Permission, PermissionGate
from .repository import TicketRepository
from .sla import ComplianceReport, SLAComplianceCalculator, SLARule, TicketSLAStatus
from .state import TicketAction, TicketPriority, TicketStateMachine, TicketStatus
from .timebudget import TimeBudgetTracker, TimeUnit

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

_EDITABLE_FIELDS = (
    "title",
    "description",
    "category",
    "priority",
    "requester_id",
    "requester_name",
    "requester_department",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class TicketCollaborators:
    """External systems the engine consumes."""

    permissions: PermissionResolver
    departments: DepartmentDirectory
    notifier: Notifier
    time_entries: TimeEntryStore


class TicketLockRegistry:
    """Hand out one ``asyncio.Lock`` per ticket, dropped once nobody holds it."""

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def lock_for(self, ticket_id: str) -> asyncio.Lock:
        lock = self._locks.get(ticket_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[ticket_id] = lock
        return lock


class TicketService:
    """High level orchestration for the ticket lifecycle, assignment, time budget and SLA."""

    def __init__(
        self,
        repository: TicketRepository,
        collaborators: TicketCollaborators,
        *,
        gate: PermissionGate | None = None,
        count_unvalidated_time_entries: bool = True,
        sla_at_risk_ratio: float = 0.8,
        metrics: MetricsRegistry | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._collaborators = collaborators
        self._gate = gate or PermissionGate()
        self._tracker = TimeBudgetTracker(
            collaborators.time_entries, count_unvalidated=count_unvalidated_time_entries
        )
        self._sla_at_risk_ratio = sla_at_risk_ratio
        self._metrics = metrics or default_metrics_registry
        self._clock = clock or _utcnow
        self._locks = TicketLockRegistry()
        self._pending_notifications: set[asyncio.Task[None]] = set()
        self._permission_keys = tuple(
            dict.fromkeys([*(permission.value for permission in Permission), self._gate.override_permission])
        )

    @property
    def metrics(self) -> MetricsRegistry:
        return self._metrics

    async def ensure_schema(self) -> None:
        await self._repository.ensure_schema()

    # -- tickets -----------------------------------------------------------

    async def create_ticket(
        self,
        *,
        caller_id: str,
        category: str,
        requester_department: str,
        priority: TicketPriority | str = TicketPriority.MEDIUM,
        requester_id: str | None = None,
        requester_name: str | None = None,
        title: str = "",
        description: str = "",
    ) -> TicketRecord:
        with self._operation("create"):
            caller = await self._caller(caller_id)
            self._gate.require(caller, GateAction.CREATE)
            if not category.strip():
                raise ValidationFailedError("category", "is required")
            if not requester_department.strip():
                raise ValidationFailedError("requester_department", "is required")
            if not requester_id and not (requester_name or "").strip():
                raise ValidationFailedError("requester", "requester_id or requester_name is required")

            now = self._clock()
            ticket = Ticket(
                id=str(uuid.uuid4()),
                title=title.strip(),
                description=description,
                category=category.strip(),
                priority=_priority(priority),
                status=TicketStateMachine.initial_state(),
                requester_id=requester_id or None,
                requester_name=(requester_name or "").strip() or None,
                requester_department=requester_department.strip(),
                created_by=caller_id,
                created_at=now,
                updated_at=now,
            )
            history = TicketHistoryLog.for_ticket(ticket, actor_id=caller_id, timestamp=now)
            history.append(
                HistoryAction.CREATED,
                new_value=ticket.status.value,
                metadata={"category": ticket.category, "priority": ticket.priority.value},
            )
            ticket = replace(ticket, history_sequence=history.last_sequence)
            saved = await self._repository.add_ticket(ticket, history.events)
            logger.info("Ticket %s created by %s in category %s", saved.id, caller_id, saved.category)
            return TicketRecord(ticket=saved, assignment=Assignment(ticket_id=saved.id))

    async def get_ticket(self, ticket_id: str) -> TicketRecord:
        record = await self._repository.get_ticket(ticket_id)
        if record is None:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")
        return record

    async def list_tickets(
        self,
        *,
        status: TicketStatus | None = None,
        category: str | None = None,
        assignee_id: str | None = None,
        requested_by: str | None = None,
    ) -> list[Ticket]:
        return await self._repository.list_tickets(
            status=status, category=category, assignee_id=assignee_id, requested_by=requested_by
        )

    async def my_tickets(self, caller_id: str, *, status: TicketStatus | None = None) -> list[Ticket]:
        """Tickets the caller requested or created."""

        return await self._repository.list_tickets(status=status, requested_by=caller_id)

    async def basket(self, caller_id: str) -> list[Ticket]:
        """Work queue of the caller: tickets assigned to them that are not closed yet."""

        return await self._repository.list_tickets(assignee_id=caller_id, include_closed=False)

    async def update_fields(
        self,
        ticket_id: str,
        caller_id: str,
        changes: Mapping[str, Any],
        *,
        expected_version: int | None = None,
    ) -> TicketRecord:
        unknown = sorted(set(changes) - set(_EDITABLE_FIELDS))
        if unknown:
            raise ValidationFailedError(unknown[0], "cannot be edited")

        with self._operation("update_fields"):
            caller = await self._caller(caller_id)
            async with self._locked(ticket_id, expected_version) as record:
                ticket = record.ticket
                self._gate.require(caller, GateAction.UPDATE_FIELDS, ticket, record.assignment)

                normalized = {name: _normalize_field(name, value) for name, value in changes.items()}
                updated = replace(ticket, **normalized)
                if not updated.requester_id and not updated.requester_name:
                    raise ValidationFailedError("requester", "requester_id or requester_name is required")

                now = self._clock()
                history = TicketHistoryLog.for_ticket(ticket, actor_id=caller_id, timestamp=now)
                for name in _EDITABLE_FIELDS:
                    if name in normalized and getattr(ticket, name) != normalized[name]:
                        history.field_updated(name, getattr(ticket, name), normalized[name])
                if not history.events:
                    return record
                return await self._save(replace(updated, updated_at=now), record, history)

    async def delete_ticket(self, ticket_id: str, caller_id: str, *, expected_version: int | None = None) -> None:
        with self._operation("delete"):
            caller = await self._caller(caller_id)
            async with self._locked(ticket_id, expected_version) as record:
                ticket = record.ticket
                self._gate.require(caller, GateAction.DELETE, ticket, record.assignment)
                history = TicketHistoryLog.for_ticket(ticket, actor_id=caller_id, timestamp=self._clock())
                event = history.append(HistoryAction.DELETED, old_value=ticket.status.value)
                await self._repository.delete_ticket(ticket_id, expected_version=ticket.version, event=event)
            logger.warning("Ticket %s deleted by %s", ticket_id, caller_id)

    # -- status transitions ------------------------------------------------

    async def change_status(
        self,
        ticket_id: str,
        target_status: TicketStatus | str,
        caller_id: str,
        *,
        expected_version: int | None = None,
    ) -> TicketRecord:
        """Administrative override that bypasses the regular guard table."""

        return await self._transition(
            ticket_id,
            caller_id,
            TicketAction.MANUAL_STATUS_CHANGE,
            requested=_status(target_status),
            expected_version=expected_version,
        )

    async def submit_for_validation(
        self, ticket_id: str, caller_id: str, *, expected_version: int | None = None
    ) -> TicketRecord:
        record = await self._transition(
            ticket_id, caller_id, TicketAction.SUBMIT_FOR_VALIDATION, expected_version=expected_version
        )
        ticket = record.ticket
        if ticket.requester_id:
            self._dispatch(
                ticket.requester_id,
                {"type": "ticket.validation_requested", "ticket_id": ticket.id, "submitted_by": caller_id},
            )
        else:
            logger.info("Ticket %s has an external requester; no validation notification sent", ticket.id)
        return record

    async def validate(self, ticket_id: str, caller_id: str, *, expected_version: int | None = None) -> TicketRecord:
        return await self._transition(ticket_id, caller_id, TicketAction.VALIDATE, expected_version=expected_version)

    async def invalidate(
        self, ticket_id: str, caller_id: str, *, expected_version: int | None = None
    ) -> TicketRecord:
        record = await self._transition(
            ticket_id, caller_id, TicketAction.INVALIDATE, expected_version=expected_version
        )
        for user_id in record.assignment.user_ids:
            self._dispatch(user_id, {"type": "ticket.invalidated", "ticket_id": ticket_id, "by": caller_id})
        return record

    async def close(self, ticket_id: str, caller_id: str, *, expected_version: int | None = None) -> TicketRecord:
        return await self._transition(ticket_id, caller_id, TicketAction.CLOSE, expected_version=expected_version)

    async def reopen(self, ticket_id: str, caller_id: str, *, expected_version: int | None = None) -> TicketRecord:
        return await self._transition(ticket_id, caller_id, TicketAction.REOPEN, expected_version=expected_version)

    async def _transition(
        self,
        ticket_id: str,
        caller_id: str,
        action: TicketAction,
        *,
        requested: TicketStatus | None = None,
        expected_version: int | None = None,
    ) -> TicketRecord:
        with self._operation(action.value):
            caller = await self._caller(caller_id)
            async with self._locked(ticket_id, expected_version) as record:
                ticket = record.ticket
                self._gate.require(caller, GateAction(action.value), ticket, record.assignment)
                target = TicketStateMachine.target_for(action, ticket.status, requested)

                now = self._clock()
                history = TicketHistoryLog.for_ticket(ticket, actor_id=caller_id, timestamp=now)
                history.status_changed(ticket.status, target, trigger=action)
                updated = self._apply_status(ticket, target, action=action, caller_id=caller_id, now=now)
                saved = await self._save(updated, record, history)

            if action is TicketAction.MANUAL_STATUS_CHANGE:
                logger.warning(
                    "Manual status override on ticket %s by %s: %s -> %s",
                    ticket_id,
                    caller_id,
                    ticket.status.value,
                    target.value,
                )
            else:
                logger.info(
                    "Ticket %s %s by %s: %s -> %s",
                    ticket_id,
                    action.value,
                    caller_id,
                    ticket.status.value,
                    target.value,
                )
            return saved

    @staticmethod
    def _apply_status(
        ticket: Ticket,
        target: TicketStatus,
        *,
        action: TicketAction,
        caller_id: str,
        now: datetime,
    ) -> Ticket:
        updated = replace(
            ticket,
            status=target,
            updated_at=now,
            closed_at=now if target is TicketStatus.CLOSED else None,
        )
        if action is TicketAction.VALIDATE:
            updated = replace(updated, validated_at=now, validated_by=caller_id)
        # a validation only survives while the ticket stays resolved or closed
        if target not in (TicketStatus.RESOLVED, TicketStatus.CLOSED):
            updated = replace(updated, validated_at=None, validated_by=None)
        return updated

    # -- assignment --------------------------------------------------------

    async def assign(
        self,
        ticket_id: str,
        user_ids: Iterable[str],
        caller_id: str,
        *,
        lead_id: str | None = None,
        expected_version: int | None = None,
    ) -> TicketRecord:
        with self._operation("assign"):
            caller = await self._caller(caller_id)
            async with self._locked(ticket_id, expected_version) as record:
                ticket = record.ticket
                self._gate.require(caller, GateAction.ASSIGN, ticket, record.assignment)
                if ticket.status is TicketStatus.CLOSED:
                    raise InvalidTransitionError("Cannot assign a closed ticket")
                assignment = AssignmentManager.replace(record.assignment, user_ids, lead_id)

                now = self._clock()
                history = TicketHistoryLog.for_ticket(ticket, actor_id=caller_id, timestamp=now)
                history.append(
                    HistoryAction.REASSIGNED if record.assignment.members else HistoryAction.ASSIGNED,
                    field_name="assignees",
                    old_value=record.assignment.describe() or None,
                    new_value=assignment.describe(),
                    metadata={"lead_id": assignment.lead_id} if assignment.lead_id else {},
                )
                saved = await self._save(replace(ticket, updated_at=now), record, history, assignment=assignment)

            for user_id in AssignmentManager.added_members(record.assignment, assignment):
                self._dispatch(
                    user_id,
                    {"type": "ticket.assigned", "ticket_id": ticket_id, "is_lead": user_id == assignment.lead_id},
                )
            logger.info("Ticket %s assigned to %s by %s", ticket_id, assignment.describe(), caller_id)
            return saved

    async def assignee_candidates(self, caller_id: str, candidate_ids: Sequence[str]) -> list[str]:
        """Filter candidate assignees; resolvers only see their own department."""

        caller = await self._caller(caller_id)
        restrict_to = caller.department.id if caller.is_resolver and caller.department else None
        candidates = [
            (user_id, await self._collaborators.departments.get_department(user_id))
            for user_id in dict.fromkeys(candidate_ids)
        ]
        return AssignmentManager.filter_candidates(candidates, restrict_to_department_id=restrict_to)

    # -- time budget -------------------------------------------------------

    async def set_estimate(
        self, ticket_id: str, minutes: int, caller_id: str, *, expected_version: int | None = None
    ) -> TicketRecord:
        """Set the estimate; the first estimate on an open ticket starts work on it."""

        return await self._estimate(ticket_id, minutes, caller_id, update_only=False, expected_version=expected_version)

    async def update_estimate(
        self, ticket_id: str, minutes: int, caller_id: str, *, expected_version: int | None = None
    ) -> TicketRecord:
        return await self._estimate(ticket_id, minutes, caller_id, update_only=True, expected_version=expected_version)

    async def _estimate(
        self,
        ticket_id: str,
        minutes: int,
        caller_id: str,
        *,
        update_only: bool,
        expected_version: int | None,
    ) -> TicketRecord:
        with self._operation("set_estimate"):
            caller = await self._caller(caller_id)
            async with self._locked(ticket_id, expected_version) as record:
                ticket = record.ticket
                self._gate.require(caller, GateAction.SET_ESTIMATE, ticket, record.assignment)
                target = TicketStateMachine.target_for(TicketAction.SET_ESTIMATE, ticket.status)

                now = self._clock()
                history = TicketHistoryLog.for_ticket(ticket, actor_id=caller_id, timestamp=now)
                first_time = ticket.estimated_minutes is None and not update_only
                if first_time:
                    updated = self._tracker.set_estimate(ticket, minutes, now=now)
                else:
                    updated = self._tracker.update_estimate(ticket, minutes, now=now)
                    if updated.estimated_minutes == ticket.estimated_minutes:
                        return record

                if first_time and target != ticket.status:
                    history.status_changed(
                        ticket.status,
                        target,
                        trigger=TicketAction.SET_ESTIMATE,
                        extra={"estimated_minutes": str(updated.estimated_minutes)},
                    )
                    updated = self._apply_status(
                        updated, target, action=TicketAction.SET_ESTIMATE, caller_id=caller_id, now=now
                    )
                else:
                    history.field_updated("estimated_minutes", ticket.estimated_minutes, updated.estimated_minutes)
                saved = await self._save(updated, record, history)
            logger.info("Ticket %s estimate set to %s minutes by %s", ticket_id, minutes, caller_id)
            return saved

    async def record_time(
        self,
        ticket_id: str,
        caller_id: str,
        minutes: int,
        *,
        spent_on: date | None = None,
        expected_version: int | None = None,
    ) -> TicketRecord:
        with self._operation("record_time"):
            caller = await self._caller(caller_id)
            async with self._locked(ticket_id, expected_version) as record:
                ticket = record.ticket
                self._gate.require(caller, GateAction.RECORD_TIME, ticket, record.assignment)
                if ticket.status is TicketStatus.CLOSED:
                    raise InvalidTransitionError("Cannot record time on a closed ticket")

                now = self._clock()
                actual = await self._tracker.projected_actual(ticket_id, minutes)
                updated = replace(ticket, actual_minutes=actual, updated_at=now)
                history = TicketHistoryLog.for_ticket(ticket, actor_id=caller_id, timestamp=now)
                history.field_updated("actual_minutes", ticket.actual_minutes, actual)
                delay = self._tracker.delay(updated) if self._tracker.overrun_started(ticket, updated) else None
                if delay is not None:
                    history.append(
                        HistoryAction.DELAY_DETECTED,
                        field_name="actual_minutes",
                        old_value=str(delay.estimated_minutes),
                        new_value=str(delay.actual_minutes),
                        metadata={"delay_minutes": str(delay.delay_minutes)},
                    )
                saved = await self._save(updated, record, history)
                # the entry is only written once the ticket commit went through
                await self._tracker.record_actual(ticket_id, caller_id, minutes, spent_on or now.date())

            if delay is not None:
                logger.info("Ticket %s is %s minutes over its estimate", ticket_id, delay.delay_minutes)
                for user_id in record.assignment.user_ids:
                    self._dispatch(
                        user_id,
                        {"type": "ticket.delay_detected", "ticket_id": ticket_id, "delay_minutes": delay.delay_minutes},
                    )
            return saved

    async def variance(self, ticket_id: str) -> TimeVariance:
        record = await self.get_ticket(ticket_id)
        return self._tracker.variance(record.ticket)

    async def delay(self, ticket_id: str) -> TicketDelay | None:
        record = await self.get_ticket(ticket_id)
        return self._tracker.delay(record.ticket)

    async def list_delays(self, *, assignee_id: str | None = None) -> list[TicketDelay]:
        """Overrunning tickets, largest overrun first."""

        tickets = await self._repository.list_tickets(assignee_id=assignee_id)
        delays = [delay for delay in map(self._tracker.delay, tickets) if delay is not None]
        return sorted(delays, key=lambda delay: delay.delay_minutes, reverse=True)

    # -- comments ----------------------------------------------------------

    async def add_comment(
        self,
        ticket_id: str,
        caller_id: str,
        body: str,
        *,
        is_internal: bool = False,
        expected_version: int | None = None,
    ) -> TicketComment:
        body = body.strip()
        if not body:
            raise ValidationFailedError("body", "is required")

        with self._operation("comment"):
            caller = await self._caller(caller_id)
            async with self._locked(ticket_id, expected_version) as record:
                ticket = record.ticket
                self._gate.require(caller, GateAction.COMMENT, ticket, record.assignment)
                if is_internal:
                    self._gate.require(caller, GateAction.INTERNAL_COMMENTS, ticket, record.assignment)

                now = self._clock()
                history = TicketHistoryLog.for_ticket(ticket, actor_id=caller_id, timestamp=now)
                comment_id = str(uuid.uuid4())
                event = history.append(
                    HistoryAction.COMMENTED,
                    metadata={"comment_id": comment_id, "is_internal": str(is_internal).lower()},
                )
                comment = TicketComment(
                    id=comment_id,
                    ticket_id=ticket_id,
                    sequence=event.sequence,
                    author_id=caller_id,
                    body=body,
                    created_at=now,
                    is_internal=is_internal,
                )
                await self._save(replace(ticket, updated_at=now), record, history, comments=(comment,))
            return comment

    async def list_comments(self, ticket_id: str, caller_id: str) -> list[TicketComment]:
        """Comments visible to the caller; internal ones only reach resolvers and agents."""

        record = await self.get_ticket(ticket_id)
        comments = await self._repository.list_comments(ticket_id)
        caller = await self._caller(caller_id)
        if self._gate.allows(caller, GateAction.INTERNAL_COMMENTS, record.ticket, record.assignment):
            return comments
        return [comment for comment in comments if not comment.is_internal]

    # -- history -----------------------------------------------------------

    async def get_history(self, ticket_id: str) -> list[TicketHistoryEvent]:
        events = await self._repository.get_history(ticket_id)
        if not events:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")
        return events

    # -- SLA ---------------------------------------------------------------

    async def compute_sla_compliance(
        self,
        period_start: datetime,
        period_end: datetime,
        *,
        category: str | None = None,
        as_of: datetime | None = None,
    ) -> ComplianceReport:
        period_start, period_end = _as_utc(period_start), _as_utc(period_end)
        if period_end <= period_start:
            raise ValidationFailedError("period_end", "must be after period_start")
        as_of = _as_utc(as_of or self._clock())
        with tracer.start_as_current_span("sla.compute_compliance"):
            with self._metrics.time_distribution("sla_compliance_duration_seconds"):
                rules, tickets = await self._repository.sla_snapshot(
                    period_start=period_start, period_end=period_end, category=category
                )
                calculator = SLAComplianceCalculator(rules, at_risk_ratio=self._sla_at_risk_ratio)
                report = calculator.compute(
                    tickets, period_start=period_start, period_end=period_end, as_of=as_of, category=category
                )
        logger.info(
            "SLA compliance %.2f%% over %d tickets (%d violations)",
            report.overall_compliance,
            report.total_tickets,
            report.total_violations,
        )
        return report

    async def ticket_sla_status(self, ticket_id: str, *, as_of: datetime | None = None) -> TicketSLAStatus:
        record = await self.get_ticket(ticket_id)
        calculator = SLAComplianceCalculator(
            await self._repository.list_sla_rules(), at_risk_ratio=self._sla_at_risk_ratio
        )
        status = calculator.ticket_status(record.ticket, as_of=_as_utc(as_of or self._clock()))
        if status is None:
            raise SLARuleNotFoundError(f"No SLA rule applies to ticket {ticket_id}")
        return status

    async def create_sla_rule(
        self,
        caller_id: str,
        *,
        name: str,
        category: str,
        target_time: float,
        unit: TimeUnit | str = TimeUnit.MINUTES,
        priority: TicketPriority | str | None = None,
        description: str | None = None,
        is_active: bool = True,
    ) -> SLARule:
        with self._operation("create_sla_rule"):
            self._gate.require(await self._caller(caller_id), GateAction.MANAGE_SLA)
            rule = SLARule(
                id=str(uuid.uuid4()),
                name=name,
                category=category,
                target_time=target_time,
                unit=_unit(unit),
                priority=_priority(priority) if priority is not None else None,
                description=description,
                is_active=is_active,
            )
            _check_rule(rule)
            return await self._repository.add_sla_rule(rule)

    async def list_sla_rules(self) -> list[SLARule]:
        return await self._repository.list_sla_rules()

    async def get_sla_rule(self, rule_id: str) -> SLARule:
        rule = await self._repository.get_sla_rule(rule_id)
        if rule is None:
            raise SLARuleNotFoundError(f"SLA rule {rule_id} not found")
        return rule

    async def update_sla_rule(self, rule_id: str, caller_id: str, changes: Mapping[str, Any]) -> SLARule:
        with self._operation("update_sla_rule"):
            self._gate.require(await self._caller(caller_id), GateAction.MANAGE_SLA)
            rule = await self.get_sla_rule(rule_id)
            for name, value in changes.items():
                if value is None and name not in ("description", "priority"):
                    raise ValidationFailedError(name, "must not be null")
                if name == "unit":
                    value = _unit(value)
                elif name == "priority" and value is not None:
                    value = _priority(value)
                elif name not in ("name", "description", "category", "target_time", "is_active"):
                    raise ValidationFailedError(name, "cannot be edited")
                setattr(rule, name, value)
            _check_rule(rule)
            if not await self._repository.update_sla_rule(rule):
                raise SLARuleNotFoundError(f"SLA rule {rule_id} not found")
            return rule

    async def delete_sla_rule(self, rule_id: str, caller_id: str) -> None:
        with self._operation("delete_sla_rule"):
            self._gate.require(await self._caller(caller_id), GateAction.MANAGE_SLA)
            if not await self._repository.delete_sla_rule(rule_id):
                raise SLARuleNotFoundError(f"SLA rule {rule_id} not found")

    # -- notifications -----------------------------------------------------

    def _dispatch(self, user_id: str, event: Mapping[str, Any]) -> None:
        task = asyncio.get_running_loop().create_task(self._deliver(user_id, dict(event)))
        self._pending_notifications.add(task)
        task.add_done_callback(self._pending_notifications.discard)

    async def _deliver(self, user_id: str, event: Mapping[str, Any]) -> None:
        try:
            await self._collaborators.notifier.notify(user_id, event)
        except Exception:
            logger.exception("Notification %s for %s failed", event.get("type"), user_id)
            self._metrics.counter("ticket_notification_failures_total").inc()

    async def drain_notifications(self) -> None:
        """Wait for notifications dispatched so far."""

        if self._pending_notifications:
            await asyncio.gather(*list(self._pending_notifications))

    # -- helpers -----------------------------------------------------------

    async def _caller(self, caller_id: str) -> CallerContext:
        granted = [
            key
            for key in self._permission_keys
            if await self._collaborators.permissions.has_permission(caller_id, key)
        ]
        department = await self._collaborators.departments.get_department(caller_id)
        return CallerContext(caller_id=caller_id, permissions=frozenset(granted), department=department)

    @asynccontextmanager
    async def _locked(self, ticket_id: str, expected_version: int | None) -> AsyncIterator[TicketRecord]:
        async with self._locks.lock_for(ticket_id):
            record = await self.get_ticket(ticket_id)
            if expected_version is not None and record.ticket.version != expected_version:
                raise ConflictError(
                    ticket_id, expected_version=expected_version, actual_version=record.ticket.version
                )
            yield record

    async def _save(
        self,
        ticket: Ticket,
        record: TicketRecord,
        history: TicketHistoryLog,
        *,
        assignment: Assignment | None = None,
        comments: Sequence[TicketComment] = (),
    ) -> TicketRecord:
        saved = await self._repository.commit(
            replace(ticket, history_sequence=history.last_sequence),
            expected_version=record.ticket.version,
            events=history.events,
            assignment=assignment,
            comments=comments,
        )
        return TicketRecord(ticket=saved, assignment=assignment or record.assignment)

    @contextmanager
    def _operation(self, name: str) -> Iterator[None]:
        with tracer.start_as_current_span(f"tickets.{name}"):
            try:
                yield
            except TicketEngineError as exc:
                self._metrics.counter(
                    "ticket_operation_failures_total", label_names=("operation", "reason")
                ).inc(labels={"operation": name, "reason": type(exc).__name__})
                if isinstance(exc, ConflictError):
                    self._metrics.counter("ticket_conflicts_total").inc()
                logger.debug("Operation %s failed: %s", name, exc)
                raise
            self._metrics.counter("ticket_operations_total", label_names=("operation",)).inc(
                labels={"operation": name}
            )


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def _priority(value: TicketPriority | str) -> TicketPriority:
    try:
        return TicketPriority(value)
    except ValueError as exc:
        raise ValidationFailedError("priority", f"unknown priority {value!r}") from exc


def _status(value: TicketStatus | str) -> TicketStatus:
    try:
        return TicketStatus(value)
    except ValueError as exc:
        raise ValidationFailedError("status", f"unknown status {value!r}") from exc


def _unit(value: TimeUnit | str) -> TimeUnit:
    try:
        return TimeUnit(value)
    except ValueError as exc:
        raise ValidationFailedError("unit", f"unknown unit {value!r}") from exc


def _normalize_field(name: str, value: Any) -> Any:
    if name == "priority":
        return _priority(value)
    if name in ("title", "description", "category", "requester_department"):
        text = str(value or "").strip()
        if name not in ("title", "description") and not text:
            raise ValidationFailedError(name, "is required")
        return text
    if name in ("requester_id", "requester_name"):
        return str(value).strip() or None if value is not None else None
    return value


def _check_rule(rule: SLARule) -> None:
    if not rule.name.strip():
        raise ValidationFailedError("name", "is required")
    if not rule.category.strip():
        raise ValidationFailedError("category", "is required")
    if rule.target_time <= 0:
        raise ValidationFailedError("target_time", "must be positive")
