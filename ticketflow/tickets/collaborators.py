"""Contracts for the systems the engine relies on, with in-memory adapters.

Permissions, the department directory, notification delivery and time entries are
owned elsewhere. The engine only talks to them through the protocols below.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from typing import Any, Iterable, Mapping, Protocol

from .models import TimeEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class FilialeInfo:
    id: str
    name: str = ""
    is_software_provider: bool = False


@dataclass(frozen=True, slots=True)
class DepartmentInfo:
    id: str
    name: str = ""
    is_it_department: bool = False
    filiale: FilialeInfo | None = None

    @property
    def is_resolver_department(self) -> bool:
        """IT departments of the software-provider filiale resolve tickets."""

        return self.is_it_department and self.filiale is not None and self.filiale.is_software_provider


class PermissionResolver(Protocol):
    async def has_permission(self, caller_id: str, permission: str) -> bool:  # pragma: no cover - protocol
        ...


class DepartmentDirectory(Protocol):
    async def get_department(self, user_id: str) -> DepartmentInfo | None:  # pragma: no cover - protocol
        ...


class Notifier(Protocol):
    async def notify(self, user_id: str, event: Mapping[str, Any]) -> None:  # pragma: no cover - protocol
        ...


class TimeEntryStore(Protocol):
    async def record(
        self, *, ticket_id: str, user_id: str, minutes: int, spent_on: date
    ) -> TimeEntry:  # pragma: no cover - protocol
        ...

    async def sum_minutes(self, ticket_id: str, *, include_unvalidated: bool = True) -> int:  # pragma: no cover
        ...


class StaticPermissionResolver:
    """Resolve permissions from a fixed caller -> permission keys mapping."""

    def __init__(self, grants: Mapping[str, Iterable[str]] | None = None) -> None:
        self._grants: dict[str, frozenset[str]] = {
            caller: frozenset(keys) for caller, keys in (grants or {}).items()
        }

    def grant(self, caller_id: str, *permissions: str) -> None:
        self._grants[caller_id] = self._grants.get(caller_id, frozenset()) | frozenset(permissions)

    async def has_permission(self, caller_id: str, permission: str) -> bool:
        return permission in self._grants.get(caller_id, frozenset())


class StaticDepartmentDirectory:
    def __init__(self, departments: Mapping[str, DepartmentInfo] | None = None) -> None:
        self._departments = dict(departments or {})

    def place(self, user_id: str, department: DepartmentInfo) -> None:
        self._departments[user_id] = department

    async def get_department(self, user_id: str) -> DepartmentInfo | None:
        return self._departments.get(user_id)


class LoggingNotifier:
    """Default notifier that only writes the event to the log."""

    async def notify(self, user_id: str, event: Mapping[str, Any]) -> None:
        logger.info("Notification for %s: %s", user_id, dict(event))


class InMemoryTimeEntryStore:
    def __init__(self) -> None:
        self._entries: dict[str, list[TimeEntry]] = defaultdict(list)

    async def record(self, *, ticket_id: str, user_id: str, minutes: int, spent_on: date) -> TimeEntry:
        entry = TimeEntry(ticket_id=ticket_id, user_id=user_id, minutes_spent=minutes, spent_on=spent_on)
        self._entries[ticket_id].append(entry)
        return entry

    def add(self, entry: TimeEntry) -> None:
        self._entries[entry.ticket_id].append(entry)

    def entries_for(self, ticket_id: str) -> list[TimeEntry]:
        return list(self._entries.get(ticket_id, ()))

    async def sum_minutes(self, ticket_id: str, *, include_unvalidated: bool = True) -> int:
        return sum(
            entry.minutes_spent
            for entry in self._entries.get(ticket_id, ())
            if include_unvalidated or entry.validated
        )
