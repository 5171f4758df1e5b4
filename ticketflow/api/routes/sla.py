from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Response, status
from pydantic import BaseModel, Field

from ticketflow.api.errors import http_error
from ticketflow.dependencies.auth import CurrentCaller
from ticketflow.dependencies.tickets import TicketServiceDep
from ticketflow.tickets.errors import TicketEngineError
from ticketflow.tickets.sla import ComplianceReport, SLARule, SLAViolation
from ticketflow.tickets.state import TicketPriority
from ticketflow.tickets.timebudget import TimeUnit

router = APIRouter(prefix="/sla", tags=["sla"])


class SLARuleModel(BaseModel):
    id: str
    name: str
    description: str | None = None
    category: str
    priority: TicketPriority | None = None
    target_time: float
    unit: TimeUnit
    target_minutes: int
    is_active: bool

    @classmethod
    def from_rule(cls, rule: SLARule) -> "SLARuleModel":
        return cls(
            id=rule.id,
            name=rule.name,
            description=rule.description,
            category=rule.category,
            priority=rule.priority,
            target_time=rule.target_time,
            unit=rule.unit,
            target_minutes=rule.target_minutes,
            is_active=rule.is_active,
        )


class SLARuleCreateRequest(BaseModel):
    name: str
    description: str | None = None
    category: str
    priority: TicketPriority | None = None
    target_time: float = Field(gt=0)
    unit: TimeUnit = TimeUnit.MINUTES
    is_active: bool = True


class SLARuleUpdateRequest(BaseModel):
    name: str | None = None
    description: str | None = None
    category: str | None = None
    priority: TicketPriority | None = None
    target_time: float | None = Field(default=None, gt=0)
    unit: TimeUnit | None = None
    is_active: bool | None = None


class SLAViolationModel(BaseModel):
    ticket_id: str
    sla_rule_id: str
    violation_minutes: int
    violated_at: str

    @classmethod
    def from_violation(cls, violation: SLAViolation) -> "SLAViolationModel":
        return cls(
            ticket_id=violation.ticket_id,
            sla_rule_id=violation.sla_rule_id,
            violation_minutes=violation.violation_minutes,
            violated_at=violation.violated_at.isoformat(),
        )


class RuleComplianceModel(BaseModel):
    sla_rule_id: str
    compliance_rate: float
    total_tickets: int
    compliant: int
    violations: int


class ComplianceReportModel(BaseModel):
    overall_compliance: float
    total_tickets: int
    total_violations: int
    compliant: int
    period_start: str
    period_end: str
    as_of: str
    by_category: dict[str, float]
    by_priority: dict[str, float]
    by_rule: list[RuleComplianceModel]
    violations: list[SLAViolationModel]

    @classmethod
    def from_report(cls, report: ComplianceReport) -> "ComplianceReportModel":
        return cls(
            overall_compliance=report.overall_compliance,
            total_tickets=report.total_tickets,
            total_violations=report.total_violations,
            compliant=report.compliant,
            period_start=report.period_start.isoformat(),
            period_end=report.period_end.isoformat(),
            as_of=report.as_of.isoformat(),
            by_category=dict(report.by_category),
            by_priority=dict(report.by_priority),
            by_rule=[
                RuleComplianceModel(
                    sla_rule_id=item.sla_rule_id,
                    compliance_rate=item.compliance_rate,
                    total_tickets=item.total_tickets,
                    compliant=item.compliant,
                    violations=item.violations,
                )
                for item in report.by_rule
            ],
            violations=[SLAViolationModel.from_violation(item) for item in report.violations],
        )


@router.get("/rules", response_model=list[SLARuleModel])
async def list_rules(service: TicketServiceDep, _caller: CurrentCaller) -> list[SLARuleModel]:
    return [SLARuleModel.from_rule(rule) for rule in await service.list_sla_rules()]


@router.post("/rules", response_model=SLARuleModel, status_code=status.HTTP_201_CREATED)
async def create_rule(
    payload: SLARuleCreateRequest, service: TicketServiceDep, caller: CurrentCaller
) -> SLARuleModel:
    try:
        rule = await service.create_sla_rule(caller.caller_id, **payload.model_dump())
    except TicketEngineError as exc:
        raise http_error(exc) from exc
    return SLARuleModel.from_rule(rule)


@router.get("/rules/{rule_id}", response_model=SLARuleModel)
async def get_rule(rule_id: str, service: TicketServiceDep, _caller: CurrentCaller) -> SLARuleModel:
    try:
        rule = await service.get_sla_rule(rule_id)
    except TicketEngineError as exc:
        raise http_error(exc) from exc
    return SLARuleModel.from_rule(rule)


@router.put("/rules/{rule_id}", response_model=SLARuleModel)
async def update_rule(
    rule_id: str, payload: SLARuleUpdateRequest, service: TicketServiceDep, caller: CurrentCaller
) -> SLARuleModel:
    try:
        rule = await service.update_sla_rule(rule_id, caller.caller_id, payload.model_dump(exclude_unset=True))
    except TicketEngineError as exc:
        raise http_error(exc) from exc
    return SLARuleModel.from_rule(rule)


@router.delete("/rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_rule(rule_id: str, service: TicketServiceDep, caller: CurrentCaller) -> Response:
    try:
        await service.delete_sla_rule(rule_id, caller.caller_id)
    except TicketEngineError as exc:
        raise http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/compliance", response_model=ComplianceReportModel, summary="SLA compliance over a period")
async def compliance(
    period_start: datetime,
    period_end: datetime,
    service: TicketServiceDep,
    _caller: CurrentCaller,
    category: str | None = None,
    as_of: datetime | None = None,
) -> ComplianceReportModel:
    try:
        report = await service.compute_sla_compliance(
            period_start, period_end, category=category, as_of=as_of
        )
    except TicketEngineError as exc:
        raise http_error(exc) from exc
    return ComplianceReportModel.from_report(report)


@router.get("/violations", response_model=list[SLAViolationModel])
async def violations(
    period_start: datetime,
    period_end: datetime,
    service: TicketServiceDep,
    _caller: CurrentCaller,
    category: str | None = None,
    as_of: datetime | None = None,
) -> list[SLAViolationModel]:
    try:
        report = await service.compute_sla_compliance(
            period_start, period_end, category=category, as_of=as_of
        )
    except TicketEngineError as exc:
        raise http_error(exc) from exc
    return [SLAViolationModel.from_violation(item) for item in report.violations]
