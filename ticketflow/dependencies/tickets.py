from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request

from ticketflow.tickets.service import TicketService


async def get_ticket_service(request: Request) -> TicketService:
    service = getattr(request.app.state, "ticket_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Ticket service is not configured")
    return service


async def get_expected_version(if_match: Annotated[str | None, Header()] = None) -> int | None:
    """Read the optimistic concurrency token from ``If-Match`` (``"3"``, ``W/"3"`` or ``3``)."""

    if if_match is None:
        return None
    value = if_match.strip()
    if value.startswith("W/"):
        value = value[2:]
    value = value.strip('"')
    if not value.isdigit():
        raise HTTPException(status_code=400, detail="If-Match must carry a ticket version")
    return int(value)


TicketServiceDep = Annotated[TicketService, Depends(get_ticket_service)]
ExpectedVersion = Annotated[int | None, Depends(get_expected_version)]
