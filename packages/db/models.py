"""SQLModel table definitions for the Ticketflow data layer."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, JSON, String, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    """Return a timezone aware UTC timestamp."""

    return datetime.now(timezone.utc)


def _uuid_str() -> str:
    """Generate a random UUID string."""

    return str(uuid.uuid4())


class TicketTable(SQLModel, table=True):
    """Current state of each ticket. ``version`` is the optimistic concurrency token."""

    __tablename__ = "tickets"

    id: str = Field(primary_key=True, index=True)
    title: str = Field(sa_column=Column(String(255), nullable=False))
    description: str = Field(default="", sa_column=Column(Text, nullable=False))
    category: str = Field(sa_column=Column(String(100), nullable=False, index=True))
    priority: str = Field(sa_column=Column(String(50), nullable=False))
    status: str = Field(sa_column=Column(String(50), nullable=False, index=True))
    requester_id: str | None = Field(default=None, sa_column=Column(String(255), nullable=True))
    requester_name: str | None = Field(default=None, sa_column=Column(String(255), nullable=True))
    requester_department: str = Field(sa_column=Column(String(255), nullable=False))
    created_by: str = Field(sa_column=Column(String(255), nullable=False))
    estimated_minutes: int | None = Field(default=None, sa_column=Column(Integer, nullable=True))
    actual_minutes: int | None = Field(default=None, sa_column=Column(Integer, nullable=True))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    closed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    validated_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    validated_by: str | None = Field(default=None, sa_column=Column(String(255), nullable=True))
    version: int = Field(default=1, sa_column=Column(Integer, nullable=False))
    history_sequence: int = Field(default=0, sa_column=Column(Integer, nullable=False))


class TicketAssigneeTable(SQLModel, table=True):
    """Members of a ticket's assignee set."""

    __tablename__ = "ticket_assignees"

    ticket_id: str = Field(sa_column=Column(String(36), primary_key=True))
    user_id: str = Field(sa_column=Column(String(255), primary_key=True))
    is_lead: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))
    position: int = Field(default=0, sa_column=Column(Integer, nullable=False))


class TicketHistoryTable(SQLModel, table=True):
    """Append-only history of ticket mutations. Rows outlive the ticket they describe."""

    __tablename__ = "ticket_history"
    __table_args__ = (UniqueConstraint("ticket_id", "sequence", name="uq_ticket_history_sequence"),)

    id: str = Field(default_factory=_uuid_str, primary_key=True, index=True)
    ticket_id: str = Field(sa_column=Column(String(36), nullable=False, index=True))
    sequence: int = Field(sa_column=Column(Integer, nullable=False))
    actor_id: str = Field(sa_column=Column(String(255), nullable=False))
    action: str = Field(sa_column=Column(String(50), nullable=False))
    field_name: str | None = Field(default=None, sa_column=Column(String(100), nullable=True))
    old_value: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    new_value: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    metadata_: dict[str, Any] = Field(
        default_factory=dict, sa_column=Column("metadata", JSON, nullable=False)
    )
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class SLARuleTable(SQLModel, table=True):
    """Per-category resolution targets."""

    __tablename__ = "sla_rules"

    id: str = Field(default_factory=_uuid_str, primary_key=True, index=True)
    name: str = Field(sa_column=Column(String(255), nullable=False))
    description: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    category: str = Field(sa_column=Column(String(100), nullable=False, index=True))
    priority: str | None = Field(default=None, sa_column=Column(String(50), nullable=True))
    target_time: float = Field(sa_column=Column(Float, nullable=False))
    unit: str = Field(default="minutes", sa_column=Column(String(20), nullable=False))
    is_active: bool = Field(default=True, sa_column=Column(Boolean, nullable=False, default=True))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class TicketCommentTable(SQLModel, table=True):
    """Comments posted on a ticket; internal ones are hidden from requesters."""

    __tablename__ = "ticket_comments"

    id: str = Field(default_factory=_uuid_str, primary_key=True, index=True)
    ticket_id: str = Field(sa_column=Column(String(36), nullable=False, index=True))
    sequence: int = Field(sa_column=Column(Integer, nullable=False))
    author_id: str = Field(sa_column=Column(String(255), nullable=False))
    body: str = Field(sa_column=Column(Text, nullable=False))
    is_internal: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
