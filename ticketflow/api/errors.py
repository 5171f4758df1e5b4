"""Translate ticket engine errors into HTTP responses."""

from __future__ import annotations

import logging

from fastapi import HTTPException, status

from ticketflow.tickets.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    TicketEngineError,
    ValidationFailedError,
)

logger = logging.getLogger(__name__)


def http_error(exc: TicketEngineError) -> HTTPException:
    if isinstance(exc, PermissionDeniedError):
        # the reason stays in the logs
        logger.info("Permission denied: %s", exc)
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Action not allowed")
    if isinstance(exc, ConflictError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Ticket changed, please retry",
            headers={"Retry-After": "0"},
        )
    if isinstance(exc, InvalidTransitionError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, ValidationFailedError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"field": exc.field, "reason": exc.reason},
        )
    logger.error("Unmapped ticket engine error: %r", exc)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal error")
