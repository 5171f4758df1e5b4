from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Iterable, Protocol, Sequence

from sqlalchemy import delete, func, or_, update
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlmodel import SQLModel, select

from packages.db.models import (
    SLARuleTable,
    TicketAssigneeTable,
    TicketCommentTable,
    TicketHistoryTable,
    TicketTable,
)

from .errors import ConflictError, TicketNotFoundError
from .models import Assignee, Assignment, HistoryAction, Ticket, TicketComment, TicketHistoryEvent, TicketRecord
from .sla import SLARule
from .state import TicketPriority, TicketStatus
from .timebudget import TimeUnit

logger = logging.getLogger(__name__)


class TicketRepository(Protocol):
    """Storage contract used by :class:`~ticketflow.tickets.service.TicketService`.

    ``commit`` is the only way to change a stored ticket. It writes the ticket, the
    optional new assignment, new comments and the history events in one transaction,
    and only if the stored version still equals ``expected_version``.
    """

    async def ensure_schema(self) -> None: ...

    async def add_ticket(self, ticket: Ticket, events: Sequence[TicketHistoryEvent]) -> Ticket: ...

    async def get_ticket(self, ticket_id: str) -> TicketRecord | None: ...

    async def list_tickets(
        self,
        *,
        status: TicketStatus | None = None,
        category: str | None = None,
        assignee_id: str | None = None,
        requested_by: str | None = None,
        include_closed: bool = True,
    ) -> list[Ticket]: ...

    async def commit(
        self,
        ticket: Ticket,
        *,
        expected_version: int,
        events: Sequence[TicketHistoryEvent],
        assignment: Assignment | None = None,
        comments: Sequence[TicketComment] = (),
    ) -> Ticket: ...

    async def delete_ticket(
        self, ticket_id: str, *, expected_version: int, event: TicketHistoryEvent
    ) -> None: ...

    async def get_history(self, ticket_id: str) -> list[TicketHistoryEvent]: ...

    async def list_comments(self, ticket_id: str) -> list[TicketComment]: ...

    async def resolved_tickets(
        self, *, period_start: datetime, period_end: datetime, category: str | None = None
    ) -> list[Ticket]: ...

    async def sla_snapshot(
        self, *, period_start: datetime, period_end: datetime, category: str | None = None
    ) -> tuple[list[SLARule], list[Ticket]]: ...

    async def add_sla_rule(self, rule: SLARule) -> SLARule: ...

    async def get_sla_rule(self, rule_id: str) -> SLARule | None: ...

    async def list_sla_rules(self) -> list[SLARule]: ...

    async def update_sla_rule(self, rule: SLARule) -> bool: ...

    async def delete_sla_rule(self, rule_id: str) -> bool: ...


class InMemoryTicketRepository:
    """Process-local storage for tests and single-instance deployments."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tickets: dict[str, Ticket] = {}
        self._assignments: dict[str, Assignment] = {}
        self._history: dict[str, list[TicketHistoryEvent]] = {}
        self._rules: dict[str, SLARule] = {}
        self._comments: dict[str, list[TicketComment]] = {}

    async def ensure_schema(self) -> None:
        return None

    async def add_ticket(self, ticket: Ticket, events: Sequence[TicketHistoryEvent]) -> Ticket:
        with self._lock:
            self._tickets[ticket.id] = replace(ticket)
            self._assignments[ticket.id] = Assignment(ticket_id=ticket.id)
            self._history.setdefault(ticket.id, []).extend(events)
        return replace(ticket)

    async def get_ticket(self, ticket_id: str) -> TicketRecord | None:
        with self._lock:
            ticket = self._tickets.get(ticket_id)
            if ticket is None:
                return None
            return TicketRecord(ticket=replace(ticket), assignment=self._assignments[ticket_id])

    async def list_tickets(
        self,
        *,
        status: TicketStatus | None = None,
        category: str | None = None,
        assignee_id: str | None = None,
        requested_by: str | None = None,
        include_closed: bool = True,
    ) -> list[Ticket]:
        with self._lock:
            tickets = [
                replace(ticket)
                for ticket in self._tickets.values()
                if assignee_id is None or self._assignments[ticket.id].includes(assignee_id)
            ]
        tickets = [
            ticket
            for ticket in tickets
            if (status is None or ticket.status == status)
            and (category is None or ticket.category == category)
            and (requested_by is None or requested_by in (ticket.requester_id, ticket.created_by))
            and (include_closed or ticket.status is not TicketStatus.CLOSED)
        ]
        return sorted(tickets, key=lambda ticket: ticket.created_at, reverse=True)

    async def commit(
        self,
        ticket: Ticket,
        *,
        expected_version: int,
        events: Sequence[TicketHistoryEvent],
        assignment: Assignment | None = None,
        comments: Sequence[TicketComment] = (),
    ) -> Ticket:
        with self._lock:
            stored = self._tickets.get(ticket.id)
            if stored is None:
                raise TicketNotFoundError(f"Ticket {ticket.id} not found")
            if stored.version != expected_version:
                raise ConflictError(ticket.id, expected_version=expected_version, actual_version=stored.version)
            saved = replace(ticket, version=expected_version + 1)
            self._tickets[ticket.id] = saved
            if assignment is not None:
                self._assignments[ticket.id] = assignment
            self._comments.setdefault(ticket.id, []).extend(comments)
            self._history.setdefault(ticket.id, []).extend(events)
            return replace(saved)

    async def delete_ticket(self, ticket_id: str, *, expected_version: int, event: TicketHistoryEvent) -> None:
        with self._lock:
            stored = self._tickets.get(ticket_id)
            if stored is None:
                raise TicketNotFoundError(f"Ticket {ticket_id} not found")
            if stored.version != expected_version:
                raise ConflictError(ticket_id, expected_version=expected_version, actual_version=stored.version)
            del self._tickets[ticket_id]
            self._assignments.pop(ticket_id, None)
            self._comments.pop(ticket_id, None)
            self._history.setdefault(ticket_id, []).append(event)

    async def get_history(self, ticket_id: str) -> list[TicketHistoryEvent]:
        with self._lock:
            return sorted(self._history.get(ticket_id, ()), key=lambda event: event.sequence)

    async def list_comments(self, ticket_id: str) -> list[TicketComment]:
        with self._lock:
            return list(self._comments.get(ticket_id, ()))

    async def resolved_tickets(
        self, *, period_start: datetime, period_end: datetime, category: str | None = None
    ) -> list[Ticket]:
        with self._lock:
            return self._resolved(period_start, period_end, category)

    async def sla_snapshot(
        self, *, period_start: datetime, period_end: datetime, category: str | None = None
    ) -> tuple[list[SLARule], list[Ticket]]:
        with self._lock:
            rules = [replace(rule) for rule in self._rules.values()]
            return rules, self._resolved(period_start, period_end, category)

    def _resolved(self, period_start: datetime, period_end: datetime, category: str | None) -> list[Ticket]:
        return [
            replace(ticket)
            for ticket in self._tickets.values()
            if ticket.resolved_at is not None
            and period_start <= ticket.resolved_at < period_end
            and (category is None or ticket.category == category)
        ]

    async def add_sla_rule(self, rule: SLARule) -> SLARule:
        with self._lock:
            self._rules[rule.id] = replace(rule)
        return rule

    async def get_sla_rule(self, rule_id: str) -> SLARule | None:
        with self._lock:
            rule = self._rules.get(rule_id)
            return replace(rule) if rule is not None else None

    async def list_sla_rules(self) -> list[SLARule]:
        with self._lock:
            return [replace(rule) for rule in self._rules.values()]

    async def update_sla_rule(self, rule: SLARule) -> bool:
        with self._lock:
            if rule.id not in self._rules:
                return False
            self._rules[rule.id] = replace(rule)
            return True

    async def delete_sla_rule(self, rule_id: str) -> bool:
        with self._lock:
            return self._rules.pop(rule_id, None) is not None


class SQLTicketRepository:
    """Persistence helper wrapping ``tickets``, ``ticket_assignees``, ``ticket_history`` and ``sla_rules``."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        engine: AsyncEngine | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._engine: AsyncEngine | None = engine
        # postgres reads each statement of a READ COMMITTED transaction from a new snapshot
        self._snapshot_options: dict[str, Any] = (
            {"isolation_level": "REPEATABLE READ"}
            if engine is not None and engine.dialect.name == "postgresql"
            else {}
        )

    async def ensure_schema(self) -> None:
        if self._engine is None:
            raise RuntimeError("Session factory is not bound to an async engine")
        async with self._engine.begin() as connection:
            await connection.run_sync(SQLModel.metadata.create_all)

    async def add_ticket(self, ticket: Ticket, events: Sequence[TicketHistoryEvent]) -> Ticket:
        async with self._session_factory() as session:
            async with session.begin():
                session.add(self._ticket_to_table(ticket))
                session.add_all([self._event_to_table(event) for event in events])
        return ticket

    async def get_ticket(self, ticket_id: str) -> TicketRecord | None:
        async with self._session_factory() as session:
            row = await session.get(TicketTable, ticket_id)
            if row is None:
                return None
            result = await session.execute(
                select(TicketAssigneeTable)
                .where(TicketAssigneeTable.ticket_id == ticket_id)
                .order_by(TicketAssigneeTable.position.asc())
            )
            members = tuple(
                Assignee(user_id=member.user_id, is_lead=bool(member.is_lead)) for member in result.scalars().all()
            )
        return TicketRecord(ticket=self._table_to_ticket(row), assignment=Assignment(ticket_id, members))

    async def list_tickets(
        self,
        *,
        status: TicketStatus | None = None,
        category: str | None = None,
        assignee_id: str | None = None,
        requested_by: str | None = None,
        include_closed: bool = True,
    ) -> list[Ticket]:
        statement = select(TicketTable)
        if status is not None:
            statement = statement.where(TicketTable.status == status.value)
        if category is not None:
            statement = statement.where(TicketTable.category == category)
        if assignee_id is not None:
            assigned = select(TicketAssigneeTable.ticket_id).where(TicketAssigneeTable.user_id == assignee_id)
            statement = statement.where(TicketTable.id.in_(assigned))
        if requested_by is not None:
            statement = statement.where(
                or_(TicketTable.requester_id == requested_by, TicketTable.created_by == requested_by)
            )
        if not include_closed:
            statement = statement.where(TicketTable.status != TicketStatus.CLOSED.value)
        async with self._session_factory() as session:
            result = await session.execute(statement.order_by(TicketTable.created_at.desc()))
            return [self._table_to_ticket(row) for row in result.scalars().all()]

    async def commit(
        self,
        ticket: Ticket,
        *,
        expected_version: int,
        events: Sequence[TicketHistoryEvent],
        assignment: Assignment | None = None,
        comments: Sequence[TicketComment] = (),
    ) -> Ticket:
        saved = replace(ticket, version=expected_version + 1)
        values = self._ticket_values(saved)
        values.pop("id")
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(TicketTable)
                    .where(TicketTable.id == ticket.id, TicketTable.version == expected_version)
                    .values(**values)
                )
                if result.rowcount != 1:
                    await self._raise_missing_or_conflict(session, ticket.id, expected_version)
                if assignment is not None:
                    await session.execute(delete(TicketAssigneeTable).where(TicketAssigneeTable.ticket_id == ticket.id))
                    session.add_all(self._assignment_to_rows(assignment))
                session.add_all([self._comment_to_table(comment) for comment in comments])
                session.add_all([self._event_to_table(event) for event in events])
        return saved

    async def delete_ticket(self, ticket_id: str, *, expected_version: int, event: TicketHistoryEvent) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(TicketTable).where(TicketTable.id == ticket_id, TicketTable.version == expected_version)
                )
                if result.rowcount != 1:
                    await self._raise_missing_or_conflict(session, ticket_id, expected_version)
                await session.execute(delete(TicketAssigneeTable).where(TicketAssigneeTable.ticket_id == ticket_id))
                await session.execute(delete(TicketCommentTable).where(TicketCommentTable.ticket_id == ticket_id))
                session.add(self._event_to_table(event))

    async def get_history(self, ticket_id: str) -> list[TicketHistoryEvent]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(TicketHistoryTable)
                .where(TicketHistoryTable.ticket_id == ticket_id)
                .order_by(TicketHistoryTable.sequence.asc())
            )
            return [self._table_to_event(row) for row in result.scalars().all()]

    async def list_comments(self, ticket_id: str) -> list[TicketComment]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(TicketCommentTable)
                .where(TicketCommentTable.ticket_id == ticket_id)
                .order_by(TicketCommentTable.sequence.asc())
            )
            return [self._table_to_comment(row) for row in result.scalars().all()]

    async def resolved_tickets(
        self, *, period_start: datetime, period_end: datetime, category: str | None = None
    ) -> list[Ticket]:
        async with self._session_factory() as session:
            result = await session.execute(self._resolved_statement(period_start, period_end, category))
            return [self._table_to_ticket(row) for row in result.scalars().all()]

    async def sla_snapshot(
        self, *, period_start: datetime, period_end: datetime, category: str | None = None
    ) -> tuple[list[SLARule], list[Ticket]]:
        async with self._session_factory() as session:
            async with session.begin():
                await session.connection(execution_options=self._snapshot_options)
                rules = await session.execute(select(SLARuleTable).order_by(SLARuleTable.created_at.asc()))
                tickets = await session.execute(self._resolved_statement(period_start, period_end, category))
                return (
                    [self._table_to_rule(row) for row in rules.scalars().all()],
                    [self._table_to_ticket(row) for row in tickets.scalars().all()],
                )

    @staticmethod
    def _resolved_statement(period_start: datetime, period_end: datetime, category: str | None):
        resolved_at = func.coalesce(TicketTable.validated_at, TicketTable.closed_at)
        statement = select(TicketTable).where(resolved_at >= period_start, resolved_at < period_end)
        if category is not None:
            statement = statement.where(TicketTable.category == category)
        return statement

    async def add_sla_rule(self, rule: SLARule) -> SLARule:
        async with self._session_factory() as session:
            async with session.begin():
                session.add(
                    SLARuleTable(
                        id=rule.id,
                        name=rule.name,
                        description=rule.description,
                        category=rule.category,
                        priority=rule.priority.value if rule.priority else None,
                        target_time=float(rule.target_time),
                        unit=rule.unit.value,
                        is_active=rule.is_active,
                    )
                )
        return rule

    async def get_sla_rule(self, rule_id: str) -> SLARule | None:
        async with self._session_factory() as session:
            row = await session.get(SLARuleTable, rule_id)
            return self._table_to_rule(row) if row is not None else None

    async def list_sla_rules(self) -> list[SLARule]:
        async with self._session_factory() as session:
            result = await session.execute(select(SLARuleTable).order_by(SLARuleTable.created_at.asc()))
            return [self._table_to_rule(row) for row in result.scalars().all()]

    async def update_sla_rule(self, rule: SLARule) -> bool:
        async with self._session_factory() as session:
            row = await session.get(SLARuleTable, rule.id)
            if row is None:
                return False
            row.name = rule.name
            row.description = rule.description
            row.category = rule.category
            row.priority = rule.priority.value if rule.priority else None
            row.target_time = float(rule.target_time)
            row.unit = rule.unit.value
            row.is_active = rule.is_active
            row.updated_at = datetime.now(timezone.utc)
            await session.commit()
            return True

    async def delete_sla_rule(self, rule_id: str) -> bool:
        async with self._session_factory() as session:
            row = await session.get(SLARuleTable, rule_id)
            if row is None:
                return False
            await session.delete(row)
            await session.commit()
            return True

    @staticmethod
    async def _raise_missing_or_conflict(session: AsyncSession, ticket_id: str, expected_version: int) -> None:
        result = await session.execute(select(TicketTable.version).where(TicketTable.id == ticket_id))
        actual = result.scalar_one_or_none()
        if actual is None:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")
        logger.info("Version conflict on ticket %s: expected %s, found %s", ticket_id, expected_version, actual)
        raise ConflictError(ticket_id, expected_version=expected_version, actual_version=actual)

    @staticmethod
    def _ticket_values(ticket: Ticket) -> dict[str, Any]:
        return {
            "id": ticket.id,
            "title": ticket.title,
            "description": ticket.description,
            "category": ticket.category,
            "priority": ticket.priority.value,
            "status": ticket.status.value,
            "requester_id": ticket.requester_id,
            "requester_name": ticket.requester_name,
            "requester_department": ticket.requester_department,
            "created_by": ticket.created_by,
            "estimated_minutes": ticket.estimated_minutes,
            "actual_minutes": ticket.actual_minutes,
            "created_at": ticket.created_at,
            "updated_at": ticket.updated_at,
            "closed_at": ticket.closed_at,
            "validated_at": ticket.validated_at,
            "validated_by": ticket.validated_by,
            "version": ticket.version,
            "history_sequence": ticket.history_sequence,
        }

    @classmethod
    def _ticket_to_table(cls, ticket: Ticket) -> TicketTable:
        return TicketTable(**cls._ticket_values(ticket))

    @staticmethod
    def _assignment_to_rows(assignment: Assignment) -> Iterable[TicketAssigneeTable]:
        return [
            TicketAssigneeTable(
                ticket_id=assignment.ticket_id,
                user_id=member.user_id,
                is_lead=member.is_lead,
                position=position,
            )
            for position, member in enumerate(assignment.members)
        ]

    @staticmethod
    def _event_to_table(event: TicketHistoryEvent) -> TicketHistoryTable:
        return TicketHistoryTable(
            ticket_id=event.ticket_id,
            sequence=event.sequence,
            actor_id=event.actor_id,
            action=event.action.value,
            field_name=event.field_name,
            old_value=event.old_value,
            new_value=event.new_value,
            metadata_=dict(event.metadata),
            created_at=event.timestamp,
        )

    @staticmethod
    def _table_to_ticket(row: TicketTable) -> Ticket:
        return Ticket(
            id=row.id,
            title=row.title,
            description=row.description,
            category=row.category,
            priority=TicketPriority(row.priority),
            status=TicketStatus(row.status),
            requester_id=row.requester_id,
            requester_name=row.requester_name,
            requester_department=row.requester_department,
            created_by=row.created_by,
            created_at=_ensure_datetime(row.created_at),
            updated_at=_ensure_datetime(row.updated_at),
            closed_at=_optional_datetime(row.closed_at),
            validated_at=_optional_datetime(row.validated_at),
            validated_by=row.validated_by,
            estimated_minutes=row.estimated_minutes,
            actual_minutes=row.actual_minutes,
            version=row.version,
            history_sequence=row.history_sequence,
        )

    @staticmethod
    def _table_to_event(row: TicketHistoryTable) -> TicketHistoryEvent:
        return TicketHistoryEvent(
            ticket_id=row.ticket_id,
            sequence=row.sequence,
            actor_id=row.actor_id,
            action=HistoryAction(row.action),
            timestamp=_ensure_datetime(row.created_at),
            field_name=row.field_name,
            old_value=row.old_value,
            new_value=row.new_value,
            metadata={str(key): str(value) for key, value in (row.metadata_ or {}).items()},
        )

    @staticmethod
    def _comment_to_table(comment: TicketComment) -> TicketCommentTable:
        return TicketCommentTable(
            id=comment.id,
            ticket_id=comment.ticket_id,
            sequence=comment.sequence,
            author_id=comment.author_id,
            body=comment.body,
            is_internal=comment.is_internal,
            created_at=comment.created_at,
        )

    @staticmethod
    def _table_to_comment(row: TicketCommentTable) -> TicketComment:
        return TicketComment(
            id=row.id,
            ticket_id=row.ticket_id,
            sequence=row.sequence,
            author_id=row.author_id,
            body=row.body,
            created_at=_ensure_datetime(row.created_at),
            is_internal=bool(row.is_internal),
        )

    @staticmethod
    def _table_to_rule(row: SLARuleTable) -> SLARule:
        return SLARule(
            id=row.id,
            name=row.name,
            description=row.description,
            category=row.category,
            priority=TicketPriority(row.priority) if row.priority else None,
            target_time=row.target_time,
            unit=TimeUnit(row.unit),
            is_active=bool(row.is_active),
        )


def _ensure_datetime(value: datetime | None) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    raise TypeError("Expected datetime value from database")


def _optional_datetime(value: datetime | None) -> datetime | None:
    return _ensure_datetime(value) if value is not None else None
