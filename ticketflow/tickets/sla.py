"""SLA rules and compliance computation.

The calculator is a pure function of its inputs: the same rules, tickets, period and
``as_of`` always yield the same report.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, Mapping, Sequence

from .models import Ticket
from .state import TicketPriority
from .timebudget import TimeUnit, to_minutes

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SLARule:
    """Maximum resolution time allowed for a ticket category."""

    id: str
    name: str
    category: str
    target_time: float
    unit: TimeUnit = TimeUnit.MINUTES
    priority: TicketPriority | None = None
    description: str | None = None
    is_active: bool = True

    @property
    def target_minutes(self) -> int:
        return to_minutes(self.target_time, self.unit)


@dataclass(frozen=True, slots=True)
class SLAViolation:
    ticket_id: str
    sla_rule_id: str
    violation_minutes: int
    violated_at: datetime


class SLAState(str, Enum):
    ON_TIME = "on_time"
    AT_RISK = "at_risk"
    VIOLATED = "violated"


@dataclass(frozen=True, slots=True)
class TicketSLAStatus:
    ticket_id: str
    sla_rule_id: str
    deadline: datetime
    elapsed_minutes: int
    remaining_minutes: int
    state: SLAState
    violated_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class RuleCompliance:
    sla_rule_id: str
    compliance_rate: float
    total_tickets: int
    compliant: int
    violations: int


@dataclass(frozen=True, slots=True)
class ComplianceReport:
    overall_compliance: float
    total_tickets: int
    total_violations: int
    compliant: int
    period_start: datetime
    period_end: datetime
    as_of: datetime
    by_category: Mapping[str, float] = field(default_factory=dict)
    by_priority: Mapping[str, float] = field(default_factory=dict)
    by_rule: Sequence[RuleCompliance] = ()
    violations: Sequence[SLAViolation] = ()


def compliance_rate(total: int, violations: int) -> float:
    """Percentage of compliant tickets; 100 when nothing was measured."""

    if total <= 0:
        return 100.0
    rate = (total - violations) / total * 100
    return round(min(100.0, max(0.0, rate)), 2)


def elapsed_minutes(start: datetime, end: datetime) -> int:
    return max(0, int((end - start).total_seconds() // 60))


class SLAComplianceCalculator:
    """Match tickets against SLA rules and aggregate compliance."""

    def __init__(self, rules: Iterable[SLARule], *, at_risk_ratio: float = 0.8) -> None:
        self._rules = [rule for rule in rules if rule.is_active]
        self._at_risk_ratio = at_risk_ratio

    def rule_for(self, ticket: Ticket) -> SLARule | None:
        """Return the priority-specific rule for the category, else the category-wide one."""

        fallback: SLARule | None = None
        for rule in self._rules:
            if rule.category != ticket.category:
                continue
            if rule.priority is not None and rule.priority == ticket.priority:
                return rule
            if rule.priority is None and fallback is None:
                fallback = rule
        return fallback

    def violation_for(self, ticket: Ticket, rule: SLARule) -> SLAViolation | None:
        resolved_at = ticket.resolved_at
        if resolved_at is None:
            return None
        target = rule.target_minutes
        elapsed = elapsed_minutes(ticket.created_at, resolved_at)
        if elapsed <= target:
            return None
        return SLAViolation(
            ticket_id=ticket.id,
            sla_rule_id=rule.id,
            violation_minutes=elapsed - target,
            violated_at=ticket.created_at + timedelta(minutes=target),
        )

    def compute(
        self,
        tickets: Iterable[Ticket],
        *,
        period_start: datetime,
        period_end: datetime,
        as_of: datetime,
        category: str | None = None,
    ) -> ComplianceReport:
        totals: dict[str, int] = defaultdict(int)
        failures: dict[str, int] = defaultdict(int)
        by_category: dict[str, list[int]] = defaultdict(lambda: [0, 0])
        by_priority: dict[str, list[int]] = defaultdict(lambda: [0, 0])
        violations: list[SLAViolation] = []

        for ticket in sorted(tickets, key=lambda item: item.id):
            resolved_at = ticket.resolved_at
            if resolved_at is None or resolved_at > as_of:
                continue
            if not period_start <= resolved_at < period_end:
                continue
            if category is not None and ticket.category != category:
                continue
            rule = self.rule_for(ticket)
            if rule is None:
                continue

            violation = self.violation_for(ticket, rule)
            totals[rule.id] += 1
            by_category[ticket.category][0] += 1
            by_priority[ticket.priority.value][0] += 1
            if violation is not None:
                violations.append(violation)
                failures[rule.id] += 1
                by_category[ticket.category][1] += 1
                by_priority[ticket.priority.value][1] += 1

        total = sum(totals.values())
        violated = len(violations)
        logger.debug("SLA compliance computed over %d tickets with %d violations", total, violated)
        return ComplianceReport(
            overall_compliance=compliance_rate(total, violated),
            total_tickets=total,
            total_violations=violated,
            compliant=total - violated,
            period_start=period_start,
            period_end=period_end,
            as_of=as_of,
            by_category={key: compliance_rate(*counts) for key, counts in sorted(by_category.items())},
            by_priority={key: compliance_rate(*counts) for key, counts in sorted(by_priority.items())},
            by_rule=tuple(
                RuleCompliance(
                    sla_rule_id=rule_id,
                    compliance_rate=compliance_rate(count, failures[rule_id]),
                    total_tickets=count,
                    compliant=count - failures[rule_id],
                    violations=failures[rule_id],
                )
                for rule_id, count in sorted(totals.items())
            ),
            violations=tuple(violations),
        )

    def ticket_status(self, ticket: Ticket, *, as_of: datetime) -> TicketSLAStatus | None:
        """Where a single ticket stands against its rule, open or resolved."""

        rule = self.rule_for(ticket)
        if rule is None:
            return None
        target = rule.target_minutes
        end = ticket.resolved_at or as_of
        elapsed = elapsed_minutes(ticket.created_at, end)
        deadline = ticket.created_at + timedelta(minutes=target)

        if elapsed > target:
            state = SLAState.VIOLATED
        elif target > 0 and elapsed >= target * self._at_risk_ratio and ticket.resolved_at is None:
            state = SLAState.AT_RISK
        else:
            state = SLAState.ON_TIME
        return TicketSLAStatus(
            ticket_id=ticket.id,
            sla_rule_id=rule.id,
            deadline=deadline,
            elapsed_minutes=elapsed,
            remaining_minutes=target - elapsed,
            state=state,
            violated_at=deadline if state is SLAState.VIOLATED else None,
        )
