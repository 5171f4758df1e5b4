from __future__ import annotations

from typing import Iterable, Sequence

from .collaborators import DepartmentInfo
from .errors import ValidationFailedError
from .models import Assignee, Assignment


class AssignmentManager:
    """Replace assignee sets while keeping the lead a member of the set."""

    @staticmethod
    def replace(current: Assignment, user_ids: Iterable[str], lead_id: str | None = None) -> Assignment:
        selection = list(dict.fromkeys(user_id for user_id in user_ids if user_id))
        if not selection:
            raise ValidationFailedError("user_ids", "EmptySelection")
        if lead_id is not None and lead_id not in selection:
            raise ValidationFailedError("lead_id", "LeadNotInSelection")

        members = tuple(Assignee(user_id=user_id, is_lead=user_id == lead_id) for user_id in selection)
        return Assignment(ticket_id=current.ticket_id, members=members)

    @staticmethod
    def added_members(previous: Assignment, updated: Assignment) -> tuple[str, ...]:
        return tuple(user_id for user_id in updated.user_ids if not previous.includes(user_id))

    @staticmethod
    def filter_candidates(
        candidates: Sequence[tuple[str, DepartmentInfo | None]],
        *,
        restrict_to_department_id: str | None = None,
    ) -> list[str]:
        """Return the candidate user ids visible for selection."""

        if restrict_to_department_id is None:
            return [user_id for user_id, _ in candidates]
        return [
            user_id
            for user_id, department in candidates
            if department is not None and department.id == restrict_to_department_id
        ]
