"""Resolve the caller identity once per request."""

from __future__ import annotations

from typing import Awaitable, Callable, Mapping

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from starlette.types import ASGIApp

from ticketflow.dependencies.auth import resolve_caller_from_token


class CallerIdentityMiddleware(BaseHTTPMiddleware):
    """Populate ``request.state.caller`` from the bearer token, or ``None`` when anonymous."""

    def __init__(self, app: ASGIApp, *, tokens: Mapping[str, str]) -> None:
        super().__init__(app)
        self._tokens = dict(tokens)

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        authorization = request.headers.get("Authorization")
        token: str | None = None

        if authorization:
            scheme, _, credentials = authorization.partition(" ")
            if scheme.lower() != "bearer":
                return JSONResponse(
                    status_code=401, content={"detail": "Invalid authentication credentials"}
                )
            token = credentials.strip() or None

        try:
            request.state.caller = resolve_caller_from_token(token, self._tokens)
        except HTTPException as exc:
            return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

        return await call_next(request)
