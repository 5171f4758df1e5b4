import pytest

from ticketflow.tickets.errors import InvalidTransitionError
from ticketflow.tickets.state import TicketAction, TicketStateMachine, TicketStatus


EXPECTED = {
    (TicketAction.SET_ESTIMATE, TicketStatus.OPEN): TicketStatus.IN_PROGRESS,
    (TicketAction.SET_ESTIMATE, TicketStatus.IN_PROGRESS): TicketStatus.IN_PROGRESS,
    (TicketAction.SET_ESTIMATE, TicketStatus.PENDING): TicketStatus.PENDING,
    (TicketAction.SUBMIT_FOR_VALIDATION, TicketStatus.OPEN): TicketStatus.PENDING,
    (TicketAction.SUBMIT_FOR_VALIDATION, TicketStatus.IN_PROGRESS): TicketStatus.PENDING,
    (TicketAction.VALIDATE, TicketStatus.PENDING): TicketStatus.RESOLVED,
    (TicketAction.INVALIDATE, TicketStatus.PENDING): TicketStatus.OPEN,
    (TicketAction.INVALIDATE, TicketStatus.RESOLVED): TicketStatus.OPEN,
    (TicketAction.REOPEN, TicketStatus.RESOLVED): TicketStatus.OPEN,
    (TicketAction.REOPEN, TicketStatus.CLOSED): TicketStatus.OPEN,
    (TicketAction.CLOSE, TicketStatus.OPEN): TicketStatus.CLOSED,
    (TicketAction.CLOSE, TicketStatus.IN_PROGRESS): TicketStatus.CLOSED,
    (TicketAction.CLOSE, TicketStatus.PENDING): TicketStatus.CLOSED,
    (TicketAction.CLOSE, TicketStatus.RESOLVED): TicketStatus.CLOSED,
}


def test_initial_state_is_open():
    assert TicketStateMachine.initial_state() is TicketStatus.OPEN


@pytest.mark.parametrize("action", [a for a in TicketAction if a is not TicketAction.MANUAL_STATUS_CHANGE])
@pytest.mark.parametrize("current", list(TicketStatus))
def test_every_pair_is_either_defined_or_rejected(action: TicketAction, current: TicketStatus):
    expected = EXPECTED.get((action, current))
    if expected is None:
        assert not TicketStateMachine.can_apply(action, current)
        with pytest.raises(InvalidTransitionError):
            TicketStateMachine.target_for(action, current)
    else:
        assert TicketStateMachine.target_for(action, current) is expected


def test_manual_change_accepts_any_other_status():
    for current in TicketStatus:
        for requested in TicketStatus:
            if requested is current:
                with pytest.raises(InvalidTransitionError):
                    TicketStateMachine.target_for(TicketAction.MANUAL_STATUS_CHANGE, current, requested)
            else:
                target = TicketStateMachine.target_for(TicketAction.MANUAL_STATUS_CHANGE, current, requested)
                assert target is requested


def test_manual_change_requires_a_target():
    with pytest.raises(InvalidTransitionError):
        TicketStateMachine.target_for(TicketAction.MANUAL_STATUS_CHANGE, TicketStatus.OPEN)


def test_allowed_actions_for_closed_ticket():
    assert set(TicketStateMachine.allowed_actions(TicketStatus.CLOSED)) == {
        TicketAction.REOPEN,
        TicketAction.MANUAL_STATUS_CHANGE,
    }
