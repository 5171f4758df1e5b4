from __future__ import annotations

from datetime import date, datetime
from typing import Any

from fastapi import APIRouter, HTTPException, Query, Response, status
from pydantic import BaseModel, Field

from ticketflow.api.errors import http_error
from ticketflow.dependencies.auth import CurrentCaller
from ticketflow.dependencies.tickets import ExpectedVersion, TicketServiceDep
from ticketflow.tickets.errors import TicketEngineError
from ticketflow.tickets.models import (
    Ticket,
    TicketComment,
    TicketDelay,
    TicketHistoryEvent,
    TicketRecord,
    TimeVariance,
)
from ticketflow.tickets.sla import SLAState, TicketSLAStatus
from ticketflow.tickets.state import TicketPriority, TicketStatus
from ticketflow.tickets.timebudget import TimeUnit, format_minutes, to_minutes

router = APIRouter(prefix="/tickets", tags=["tickets"])


class AssigneeModel(BaseModel):
    user_id: str
    is_lead: bool


class TicketModel(BaseModel):
    id: str
    title: str
    description: str
    category: str
    priority: TicketPriority
    status: TicketStatus
    requester_id: str | None = None
    requester_name: str | None = None
    requester_department: str
    created_by: str
    created_at: str
    updated_at: str
    closed_at: str | None = None
    validated_at: str | None = None
    validated_by: str | None = None
    estimated_minutes: int | None = None
    estimated_display: str
    actual_minutes: int | None = None
    version: int
    assignees: list[AssigneeModel] = Field(default_factory=list)

    @classmethod
    def from_ticket(cls, ticket: Ticket, assignees: list[AssigneeModel] | None = None) -> "TicketModel":
        return cls(
            id=ticket.id,
            title=ticket.title,
            description=ticket.description,
            category=ticket.category,
            priority=ticket.priority,
            status=ticket.status,
            requester_id=ticket.requester_id,
            requester_name=ticket.requester_name,
            requester_department=ticket.requester_department,
            created_by=ticket.created_by,
            created_at=ticket.created_at.isoformat(),
            updated_at=ticket.updated_at.isoformat(),
            closed_at=_isoformat(ticket.closed_at),
            validated_at=_isoformat(ticket.validated_at),
            validated_by=ticket.validated_by,
            estimated_minutes=ticket.estimated_minutes,
            estimated_display=format_minutes(ticket.estimated_minutes),
            actual_minutes=ticket.actual_minutes,
            version=ticket.version,
            assignees=assignees or [],
        )

    @classmethod
    def from_record(cls, record: TicketRecord) -> "TicketModel":
        return cls.from_ticket(
            record.ticket,
            [AssigneeModel(user_id=member.user_id, is_lead=member.is_lead) for member in record.assignment.members],
        )


class HistoryEventModel(BaseModel):
    sequence: int
    actor_id: str
    action: str
    field_name: str | None = None
    old_value: str | None = None
    new_value: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)
    timestamp: str

    @classmethod
    def from_event(cls, event: TicketHistoryEvent) -> "HistoryEventModel":
        return cls(
            sequence=event.sequence,
            actor_id=event.actor_id,
            action=event.action.value,
            field_name=event.field_name,
            old_value=event.old_value,
            new_value=event.new_value,
            metadata=dict(event.metadata),
            timestamp=event.timestamp.isoformat(),
        )


class VarianceModel(BaseModel):
    estimated: int | None
    actual: int
    delta_minutes: int | None
    percent_consumed: float | None

    @classmethod
    def from_variance(cls, variance: TimeVariance) -> "VarianceModel":
        return cls(
            estimated=variance.estimated,
            actual=variance.actual,
            delta_minutes=variance.delta_minutes,
            percent_consumed=variance.percent_consumed,
        )


class DelayModel(BaseModel):
    ticket_id: str
    estimated_minutes: int
    actual_minutes: int
    delay_minutes: int
    delay_percentage: float | None
    delay_display: str

    @classmethod
    def from_delay(cls, delay: TicketDelay) -> "DelayModel":
        return cls(
            ticket_id=delay.ticket_id,
            estimated_minutes=delay.estimated_minutes,
            actual_minutes=delay.actual_minutes,
            delay_minutes=delay.delay_minutes,
            delay_percentage=delay.delay_percentage,
            delay_display=format_minutes(delay.delay_minutes),
        )


class CommentModel(BaseModel):
    id: str
    author_id: str
    body: str
    is_internal: bool
    created_at: str

    @classmethod
    def from_comment(cls, comment: TicketComment) -> "CommentModel":
        return cls(
            id=comment.id,
            author_id=comment.author_id,
            body=comment.body,
            is_internal=comment.is_internal,
            created_at=comment.created_at.isoformat(),
        )


class TicketSLAStatusModel(BaseModel):
    ticket_id: str
    sla_rule_id: str
    state: SLAState
    deadline: str
    elapsed_minutes: int
    remaining_minutes: int
    violated_at: str | None = None

    @classmethod
    def from_status(cls, sla_status: TicketSLAStatus) -> "TicketSLAStatusModel":
        return cls(
            ticket_id=sla_status.ticket_id,
            sla_rule_id=sla_status.sla_rule_id,
            state=sla_status.state,
            deadline=sla_status.deadline.isoformat(),
            elapsed_minutes=sla_status.elapsed_minutes,
            remaining_minutes=sla_status.remaining_minutes,
            violated_at=_isoformat(sla_status.violated_at),
        )


class TicketCreateRequest(BaseModel):
    title: str = ""
    description: str = ""
    category: str
    priority: TicketPriority = TicketPriority.MEDIUM
    requester_id: str | None = None
    requester_name: str | None = None
    requester_department: str


class TicketUpdateRequest(BaseModel):
    title: str | None = None
    description: str | None = None
    category: str | None = None
    priority: TicketPriority | None = None
    requester_id: str | None = None
    requester_name: str | None = None
    requester_department: str | None = None


class TicketStatusChangeRequest(BaseModel):
    status: TicketStatus


class AssignRequest(BaseModel):
    user_ids: list[str]
    lead_id: str | None = None


class EstimateRequest(BaseModel):
    value: float = Field(ge=0)
    unit: TimeUnit = TimeUnit.MINUTES


class TimeEntryRequest(BaseModel):
    minutes: int
    spent_on: date | None = None


class CommentRequest(BaseModel):
    body: str
    is_internal: bool = False


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@router.get("", response_model=list[TicketModel], summary="List tickets")
async def list_tickets(
    service: TicketServiceDep,
    _caller: CurrentCaller,
    status_filter: TicketStatus | None = Query(default=None, alias="status"),
    category: str | None = None,
    assignee_id: str | None = None,
    requested_by: str | None = None,
) -> list[TicketModel]:
    tickets = await service.list_tickets(
        status=status_filter, category=category, assignee_id=assignee_id, requested_by=requested_by
    )
    return [TicketModel.from_ticket(ticket) for ticket in tickets]


@router.get("/mine", response_model=list[TicketModel], summary="Tickets requested or created by the caller")
async def my_tickets(
    service: TicketServiceDep,
    caller: CurrentCaller,
    status_filter: TicketStatus | None = Query(default=None, alias="status"),
) -> list[TicketModel]:
    tickets = await service.my_tickets(caller.caller_id, status=status_filter)
    return [TicketModel.from_ticket(ticket) for ticket in tickets]


@router.get("/basket", response_model=list[TicketModel], summary="Open tickets assigned to the caller")
async def basket(service: TicketServiceDep, caller: CurrentCaller) -> list[TicketModel]:
    return [TicketModel.from_ticket(ticket) for ticket in await service.basket(caller.caller_id)]


@router.get("/delays", response_model=list[DelayModel], summary="Tickets over their estimate")
async def list_delays(
    service: TicketServiceDep,
    _caller: CurrentCaller,
    assignee_id: str | None = None,
) -> list[DelayModel]:
    return [DelayModel.from_delay(delay) for delay in await service.list_delays(assignee_id=assignee_id)]


@router.post("", response_model=TicketModel, status_code=status.HTTP_201_CREATED)
async def create_ticket(
    payload: TicketCreateRequest,
    service: TicketServiceDep,
    caller: CurrentCaller,
) -> TicketModel:
    try:
        record = await service.create_ticket(
            caller_id=caller.caller_id,
            title=payload.title,
            description=payload.description,
            category=payload.category,
            priority=payload.priority,
            requester_id=payload.requester_id,
            requester_name=payload.requester_name,
            requester_department=payload.requester_department,
        )
    except TicketEngineError as exc:
        raise http_error(exc) from exc
    return TicketModel.from_record(record)


@router.get("/assignee-candidates", response_model=list[str], summary="Filter assignable users")
async def assignee_candidates(
    service: TicketServiceDep,
    caller: CurrentCaller,
    user_ids: list[str] | None = Query(default=None, alias="user_id"),
) -> list[str]:
    return await service.assignee_candidates(caller.caller_id, user_ids or [])


@router.get("/{ticket_id}", response_model=TicketModel)
async def get_ticket(ticket_id: str, service: TicketServiceDep, _caller: CurrentCaller) -> TicketModel:
    try:
        record = await service.get_ticket(ticket_id)
    except TicketEngineError as exc:
        raise http_error(exc) from exc
    return TicketModel.from_record(record)


@router.patch("/{ticket_id}", response_model=TicketModel)
async def update_ticket(
    ticket_id: str,
    payload: TicketUpdateRequest,
    service: TicketServiceDep,
    caller: CurrentCaller,
    expected_version: ExpectedVersion,
) -> TicketModel:
    changes: dict[str, Any] = payload.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=422, detail={"field": "body", "reason": "no fields to update"})
    try:
        record = await service.update_fields(
            ticket_id, caller.caller_id, changes, expected_version=expected_version
        )
    except TicketEngineError as exc:
        raise http_error(exc) from exc
    return TicketModel.from_record(record)


@router.delete("/{ticket_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_ticket(
    ticket_id: str,
    service: TicketServiceDep,
    caller: CurrentCaller,
    expected_version: ExpectedVersion,
) -> Response:
    try:
        await service.delete_ticket(ticket_id, caller.caller_id, expected_version=expected_version)
    except TicketEngineError as exc:
        raise http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{ticket_id}/status", response_model=TicketModel, summary="Manual status override")
async def change_ticket_status(
    ticket_id: str,
    payload: TicketStatusChangeRequest,
    service: TicketServiceDep,
    caller: CurrentCaller,
    expected_version: ExpectedVersion,
) -> TicketModel:
    try:
        record = await service.change_status(
            ticket_id, payload.status, caller.caller_id, expected_version=expected_version
        )
    except TicketEngineError as exc:
        raise http_error(exc) from exc
    return TicketModel.from_record(record)


@router.post("/{ticket_id}/submit", response_model=TicketModel, summary="Submit for requester validation")
async def submit_ticket(
    ticket_id: str,
    service: TicketServiceDep,
    caller: CurrentCaller,
    expected_version: ExpectedVersion,
) -> TicketModel:
    try:
        record = await service.submit_for_validation(
            ticket_id, caller.caller_id, expected_version=expected_version
        )
    except TicketEngineError as exc:
        raise http_error(exc) from exc
    return TicketModel.from_record(record)


@router.post("/{ticket_id}/validate", response_model=TicketModel)
async def validate_ticket(
    ticket_id: str,
    service: TicketServiceDep,
    caller: CurrentCaller,
    expected_version: ExpectedVersion,
) -> TicketModel:
    try:
        record = await service.validate(ticket_id, caller.caller_id, expected_version=expected_version)
    except TicketEngineError as exc:
        raise http_error(exc) from exc
    return TicketModel.from_record(record)


@router.post("/{ticket_id}/invalidate", response_model=TicketModel)
async def invalidate_ticket(
    ticket_id: str,
    service: TicketServiceDep,
    caller: CurrentCaller,
    expected_version: ExpectedVersion,
) -> TicketModel:
    try:
        record = await service.invalidate(ticket_id, caller.caller_id, expected_version=expected_version)
    except TicketEngineError as exc:
        raise http_error(exc) from exc
    return TicketModel.from_record(record)


@router.post("/{ticket_id}/close", response_model=TicketModel)
async def close_ticket(
    ticket_id: str,
    service: TicketServiceDep,
    caller: CurrentCaller,
    expected_version: ExpectedVersion,
) -> TicketModel:
    try:
        record = await service.close(ticket_id, caller.caller_id, expected_version=expected_version)
    except TicketEngineError as exc:
        raise http_error(exc) from exc
    return TicketModel.from_record(record)


@router.post("/{ticket_id}/reopen", response_model=TicketModel)
async def reopen_ticket(
    ticket_id: str,
    service: TicketServiceDep,
    caller: CurrentCaller,
    expected_version: ExpectedVersion,
) -> TicketModel:
    try:
        record = await service.reopen(ticket_id, caller.caller_id, expected_version=expected_version)
    except TicketEngineError as exc:
        raise http_error(exc) from exc
    return TicketModel.from_record(record)


@router.post("/{ticket_id}/assign", response_model=TicketModel)
async def assign_ticket(
    ticket_id: str,
    payload: AssignRequest,
    service: TicketServiceDep,
    caller: CurrentCaller,
    expected_version: ExpectedVersion,
) -> TicketModel:
    try:
        record = await service.assign(
            ticket_id,
            payload.user_ids,
            caller.caller_id,
            lead_id=payload.lead_id,
            expected_version=expected_version,
        )
    except TicketEngineError as exc:
        raise http_error(exc) from exc
    return TicketModel.from_record(record)


@router.put("/{ticket_id}/estimate", response_model=TicketModel)
async def set_ticket_estimate(
    ticket_id: str,
    payload: EstimateRequest,
    service: TicketServiceDep,
    caller: CurrentCaller,
    expected_version: ExpectedVersion,
) -> TicketModel:
    try:
        record = await service.set_estimate(
            ticket_id,
            to_minutes(payload.value, payload.unit),
            caller.caller_id,
            expected_version=expected_version,
        )
    except TicketEngineError as exc:
        raise http_error(exc) from exc
    return TicketModel.from_record(record)


@router.post("/{ticket_id}/time-entries", response_model=TicketModel, status_code=status.HTTP_201_CREATED)
async def record_ticket_time(
    ticket_id: str,
    payload: TimeEntryRequest,
    service: TicketServiceDep,
    caller: CurrentCaller,
    expected_version: ExpectedVersion,
) -> TicketModel:
    try:
        record = await service.record_time(
            ticket_id,
            caller.caller_id,
            payload.minutes,
            spent_on=payload.spent_on,
            expected_version=expected_version,
        )
    except TicketEngineError as exc:
        raise http_error(exc) from exc
    return TicketModel.from_record(record)


@router.get("/{ticket_id}/history", response_model=list[HistoryEventModel])
async def ticket_history(
    ticket_id: str, service: TicketServiceDep, _caller: CurrentCaller
) -> list[HistoryEventModel]:
    try:
        events = await service.get_history(ticket_id)
    except TicketEngineError as exc:
        raise http_error(exc) from exc
    return [HistoryEventModel.from_event(event) for event in events]


@router.get("/{ticket_id}/variance", response_model=VarianceModel)
async def ticket_variance(ticket_id: str, service: TicketServiceDep, _caller: CurrentCaller) -> VarianceModel:
    try:
        variance = await service.variance(ticket_id)
    except TicketEngineError as exc:
        raise http_error(exc) from exc
    return VarianceModel.from_variance(variance)


@router.get("/{ticket_id}/delay", response_model=DelayModel | None)
async def ticket_delay(ticket_id: str, service: TicketServiceDep, _caller: CurrentCaller) -> DelayModel | None:
    try:
        delay = await service.delay(ticket_id)
    except TicketEngineError as exc:
        raise http_error(exc) from exc
    return DelayModel.from_delay(delay) if delay is not None else None


@router.post("/{ticket_id}/comments", response_model=CommentModel, status_code=status.HTTP_201_CREATED)
async def add_ticket_comment(
    ticket_id: str,
    payload: CommentRequest,
    service: TicketServiceDep,
    caller: CurrentCaller,
    expected_version: ExpectedVersion,
) -> CommentModel:
    try:
        comment = await service.add_comment(
            ticket_id,
            caller.caller_id,
            payload.body,
            is_internal=payload.is_internal,
            expected_version=expected_version,
        )
    except TicketEngineError as exc:
        raise http_error(exc) from exc
    return CommentModel.from_comment(comment)


@router.get("/{ticket_id}/comments", response_model=list[CommentModel])
async def ticket_comments(ticket_id: str, service: TicketServiceDep, caller: CurrentCaller) -> list[CommentModel]:
    try:
        comments = await service.list_comments(ticket_id, caller.caller_id)
    except TicketEngineError as exc:
        raise http_error(exc) from exc
    return [CommentModel.from_comment(comment) for comment in comments]


@router.get("/{ticket_id}/sla", response_model=TicketSLAStatusModel)
async def ticket_sla(
    ticket_id: str,
    service: TicketServiceDep,
    _caller: CurrentCaller,
    as_of: datetime | None = None,
) -> TicketSLAStatusModel:
    try:
        sla_status = await service.ticket_sla_status(ticket_id, as_of=as_of)
    except TicketEngineError as exc:
        raise http_error(exc) from exc
    return TicketSLAStatusModel.from_status(sla_status)
