from .auth import Caller, CurrentCaller, get_current_caller
from .tickets import ExpectedVersion, TicketServiceDep, get_ticket_service

__all__ = [
    "Caller",
    "CurrentCaller",
    "ExpectedVersion",
    "TicketServiceDep",
    "get_current_caller",
    "get_ticket_service",
]
