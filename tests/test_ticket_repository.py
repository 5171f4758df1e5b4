from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from ticketflow.metrics import MetricsRegistry
from ticketflow.tickets import (
    ConflictError,
    HistoryAction,
    SLARule,
    SQLTicketRepository,
    TicketNotFoundError,
    TicketService,
    TicketStatus,
    TimeUnit,
)
from ticketflow.tickets.models import Assignee, Assignment

from .conftest import T0, FrozenClock, build_collaborators


@pytest_asyncio.fixture
async def engine() -> AsyncEngine:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def sql_repository(engine: AsyncEngine) -> SQLTicketRepository:
    repository = SQLTicketRepository(async_sessionmaker(engine, expire_on_commit=False), engine=engine)
    await repository.ensure_schema()
    return repository


@pytest.fixture
def sql_service(sql_repository: SQLTicketRepository) -> TicketService:
    return TicketService(sql_repository, build_collaborators(), metrics=MetricsRegistry(), clock=FrozenClock())


async def _create(service: TicketService):
    return await service.create_ticket(
        caller_id="requester",
        title="Laptop will not boot",
        category="incident",
        requester_id="requester",
        requester_department="Finance",
    )


@pytest.mark.asyncio
async def test_ensure_schema_creates_tables(engine: AsyncEngine, sql_repository: SQLTicketRepository):
    async with engine.begin() as conn:
        tables = await conn.run_sync(lambda sync_conn: set(sa_inspect(sync_conn).get_table_names()))

    assert {"tickets", "ticket_assignees", "ticket_history", "ticket_comments", "sla_rules"} <= tables


@pytest.mark.asyncio
async def test_ticket_round_trip_with_assignment(sql_service: TicketService, sql_repository: SQLTicketRepository):
    record = await _create(sql_service)
    ticket_id = record.ticket.id
    await sql_service.assign(ticket_id, ["agent", "agent2"], "manager", lead_id="agent2")
    await sql_service.set_estimate(ticket_id, 90, "agent")

    stored = await sql_repository.get_ticket(ticket_id)
    assert stored is not None
    assert stored.ticket.status is TicketStatus.IN_PROGRESS
    assert stored.ticket.estimated_minutes == 90
    assert stored.ticket.version == 3
    assert stored.ticket.history_sequence == 3
    assert stored.ticket.created_at.tzinfo is not None
    assert stored.assignment.user_ids == ("agent", "agent2")
    assert stored.assignment.lead_id == "agent2"

    listed = await sql_repository.list_tickets(status=TicketStatus.IN_PROGRESS, category="incident")
    assert [ticket.id for ticket in listed] == [ticket_id]
    assert await sql_repository.list_tickets(status=TicketStatus.CLOSED) == []


@pytest.mark.asyncio
async def test_commit_with_stale_version_conflicts(sql_service: TicketService, sql_repository: SQLTicketRepository):
    record = await _create(sql_service)
    ticket = record.ticket

    await sql_repository.commit(replace(ticket, title="First"), expected_version=1, events=())
    with pytest.raises(ConflictError) as exc:
        await sql_repository.commit(replace(ticket, title="Second"), expected_version=1, events=())

    assert exc.value.actual_version == 2
    stored = await sql_repository.get_ticket(ticket.id)
    assert stored is not None and stored.ticket.title == "First"


@pytest.mark.asyncio
async def test_commit_unknown_ticket_raises_not_found(sql_service: TicketService, sql_repository: SQLTicketRepository):
    record = await _create(sql_service)
    ghost = replace(record.ticket, id="missing")
    with pytest.raises(TicketNotFoundError):
        await sql_repository.commit(
            ghost, expected_version=1, events=(), assignment=Assignment("missing", (Assignee("a"),))
        )


@pytest.mark.asyncio
async def test_history_survives_delete(sql_service: TicketService, sql_repository: SQLTicketRepository):
    record = await _create(sql_service)
    ticket_id = record.ticket.id
    await sql_service.close(ticket_id, "agent")
    await sql_service.delete_ticket(ticket_id, "admin")

    assert await sql_repository.get_ticket(ticket_id) is None
    history = await sql_repository.get_history(ticket_id)
    assert [event.sequence for event in history] == [1, 2, 3]
    assert history[1].metadata == {"trigger": "close"}
    assert history[-1].action is HistoryAction.DELETED


@pytest.mark.asyncio
async def test_resolved_tickets_window(sql_service: TicketService, sql_repository: SQLTicketRepository):
    record = await _create(sql_service)
    await sql_service.close(record.ticket.id, "agent")
    await _create(sql_service)

    inside = await sql_repository.resolved_tickets(period_start=T0, period_end=T0 + timedelta(days=1))
    assert [ticket.id for ticket in inside] == [record.ticket.id]

    later = await sql_repository.resolved_tickets(
        period_start=T0 + timedelta(minutes=1), period_end=T0 + timedelta(days=1)
    )
    assert later == []


@pytest.mark.asyncio
async def test_sla_rule_crud(sql_repository: SQLTicketRepository):
    rule = SLARule(id="r-1", name="Incidents", category="incident", target_time=4, unit=TimeUnit.HOURS)
    await sql_repository.add_sla_rule(rule)

    fetched = await sql_repository.get_sla_rule("r-1")
    assert fetched is not None and fetched.target_minutes == 240

    fetched.is_active = False
    assert await sql_repository.update_sla_rule(fetched) is True
    assert [item.is_active for item in await sql_repository.list_sla_rules()] == [False]

    assert await sql_repository.delete_sla_rule("r-1") is True
    assert await sql_repository.delete_sla_rule("r-1") is False
    assert await sql_repository.update_sla_rule(rule) is False


@pytest.mark.asyncio
async def test_comments_are_stored_with_the_commit(sql_service: TicketService, sql_repository: SQLTicketRepository):
    record = await _create(sql_service)
    ticket_id = record.ticket.id
    first = await sql_service.add_comment(ticket_id, "requester", "Screen stays black")
    second = await sql_service.add_comment(ticket_id, "agent", "Replace the PSU", is_internal=True)

    stored = await sql_repository.list_comments(ticket_id)
    assert [(comment.id, comment.is_internal) for comment in stored] == [(first.id, False), (second.id, True)]
    assert stored[0].created_at.tzinfo is not None
    assert (await sql_repository.get_ticket(ticket_id)).ticket.version == 3

    await sql_service.delete_ticket(ticket_id, "admin")
    assert await sql_repository.list_comments(ticket_id) == []


@pytest.mark.asyncio
async def test_list_filters_by_assignee_and_requester(sql_service: TicketService, sql_repository: SQLTicketRepository):
    mine = await _create(sql_service)
    other = await sql_service.create_ticket(
        caller_id="agent", category="request", requester_name="Reception", requester_department="Front desk"
    )
    await sql_service.assign(mine.ticket.id, ["agent"], "manager")
    await sql_service.assign(other.ticket.id, ["agent"], "manager")
    await sql_service.close(other.ticket.id, "agent")

    assigned = await sql_repository.list_tickets(assignee_id="agent")
    assert {ticket.id for ticket in assigned} == {mine.ticket.id, other.ticket.id}
    basket = await sql_repository.list_tickets(assignee_id="agent", include_closed=False)
    assert [ticket.id for ticket in basket] == [mine.ticket.id]
    assert [ticket.id for ticket in await sql_repository.list_tickets(requested_by="agent")] == [other.ticket.id]
    assert await sql_repository.list_tickets(assignee_id="agent2") == []


@pytest.mark.asyncio
async def test_sla_snapshot_returns_rules_and_resolved_tickets(
    sql_service: TicketService, sql_repository: SQLTicketRepository
):
    await sql_repository.add_sla_rule(SLARule(id="r-1", name="Incidents", category="incident", target_time=60))
    record = await _create(sql_service)
    await sql_service.close(record.ticket.id, "agent")
    await _create(sql_service)

    rules, tickets = await sql_repository.sla_snapshot(period_start=T0, period_end=T0 + timedelta(days=1))
    assert [rule.id for rule in rules] == ["r-1"]
    assert [ticket.id for ticket in tickets] == [record.ticket.id]

    report = await sql_service.compute_sla_compliance(T0, T0 + timedelta(days=1))
    assert report.total_tickets == 1
