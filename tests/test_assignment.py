import pytest

from ticketflow.tickets.assignment import AssignmentManager
from ticketflow.tickets.errors import ValidationFailedError
from ticketflow.tickets.models import Assignment

from .conftest import FINANCE_DEPARTMENT, IT_DEPARTMENT, SUPPORT_DEPARTMENT


def test_replace_sets_members_and_lead():
    assignment = AssignmentManager.replace(Assignment("t-1"), ["a", "b", "a"], lead_id="b")
    assert assignment.user_ids == ("a", "b")
    assert assignment.lead_id == "b"
    assert assignment.describe() == "a,b"


def test_empty_selection_is_rejected():
    with pytest.raises(ValidationFailedError) as exc:
        AssignmentManager.replace(Assignment("t-1"), [])
    assert exc.value.reason == "EmptySelection"


def test_lead_must_be_a_member():
    with pytest.raises(ValidationFailedError) as exc:
        AssignmentManager.replace(Assignment("t-1"), ["a"], lead_id="z")
    assert exc.value.reason == "LeadNotInSelection"


def test_reassignment_without_lead_clears_it():
    first = AssignmentManager.replace(Assignment("t-1"), ["a", "b"], lead_id="a")
    second = AssignmentManager.replace(first, ["b", "c"])
    assert second.lead_id is None
    assert sum(member.is_lead for member in second.members) == 0
    assert AssignmentManager.added_members(first, second) == ("c",)


def test_filter_candidates_by_department():
    candidates = [("a", IT_DEPARTMENT), ("b", SUPPORT_DEPARTMENT), ("c", None), ("d", FINANCE_DEPARTMENT)]
    assert AssignmentManager.filter_candidates(candidates) == ["a", "b", "c", "d"]
    assert AssignmentManager.filter_candidates(candidates, restrict_to_department_id="it") == ["a"]
