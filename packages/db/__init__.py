"""Database models and utilities."""

from .models import SLARuleTable, TicketAssigneeTable, TicketCommentTable, TicketHistoryTable, TicketTable

__all__ = [
    "SLARuleTable",
    "TicketAssigneeTable",
    "TicketCommentTable",
    "TicketHistoryTable",
    "TicketTable",
]
