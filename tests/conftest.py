from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

import pytest

from ticketflow.metrics import MetricsRegistry, register_default_metrics
from ticketflow.tickets import (
    DepartmentInfo,
    FilialeInfo,
    InMemoryTicketRepository,
    InMemoryTimeEntryStore,
    StaticDepartmentDirectory,
    StaticPermissionResolver,
    TicketCollaborators,
    TicketService,
)

T0 = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)

PROVIDER = FilialeInfo(id="provider", name="Provider", is_software_provider=True)
CUSTOMER = FilialeInfo(id="customer", name="Customer")
IT_DEPARTMENT = DepartmentInfo(id="it", name="IT", is_it_department=True, filiale=PROVIDER)
SUPPORT_DEPARTMENT = DepartmentInfo(id="support", name="Support", is_it_department=True, filiale=PROVIDER)
FINANCE_DEPARTMENT = DepartmentInfo(id="finance", name="Finance", filiale=CUSTOMER)
CUSTOMER_IT_DEPARTMENT = DepartmentInfo(id="customer-it", name="Customer IT", is_it_department=True, filiale=CUSTOMER)

ALL_PERMISSIONS = (
    "tickets.create",
    "tickets.update",
    "tickets.assign",
    "tickets.validate",
    "tickets.validate_own",
    "tickets.override_status",
    "tickets.delete",
    "sla.manage",
)


class FrozenClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, dict[str, Any]]] = []

    async def notify(self, user_id: str, event: Mapping[str, Any]) -> None:
        self.sent.append((user_id, dict(event)))

    def recipients(self, event_type: str) -> list[str]:
        return [user_id for user_id, event in self.sent if event["type"] == event_type]


def build_collaborators(notifier: Any | None = None) -> TicketCollaborators:
    permissions = StaticPermissionResolver(
        {
            "admin": ALL_PERMISSIONS,
            "agent": ("tickets.create", "tickets.update"),
            "agent2": ("tickets.update",),
            "requester": ("tickets.create", "tickets.validate_own"),
            "manager": ("tickets.create", "tickets.assign", "tickets.validate"),
        }
    )
    departments = StaticDepartmentDirectory(
        {
            "admin": IT_DEPARTMENT,
            "agent": IT_DEPARTMENT,
            "agent2": IT_DEPARTMENT,
            "support-agent": SUPPORT_DEPARTMENT,
            "requester": FINANCE_DEPARTMENT,
            "manager": FINANCE_DEPARTMENT,
            "customer-tech": CUSTOMER_IT_DEPARTMENT,
        }
    )
    return TicketCollaborators(
        permissions=permissions,
        departments=departments,
        notifier=notifier or RecordingNotifier(),
        time_entries=InMemoryTimeEntryStore(),
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def collaborators(notifier: RecordingNotifier) -> TicketCollaborators:
    return build_collaborators(notifier)


@pytest.fixture
def metrics() -> MetricsRegistry:
    return register_default_metrics(MetricsRegistry())


@pytest.fixture
def repository() -> InMemoryTicketRepository:
    return InMemoryTicketRepository()


@pytest.fixture
def service(
    repository: InMemoryTicketRepository,
    collaborators: TicketCollaborators,
    metrics: MetricsRegistry,
    clock: FrozenClock,
) -> TicketService:
    return TicketService(repository, collaborators, metrics=metrics, clock=clock)
