from dataclasses import dataclass
from typing import Annotated, Mapping

from fastapi import Depends, HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer


@dataclass(frozen=True, slots=True)
class Caller:
    """Opaque identity handed to the ticket engine."""

    caller_id: str


bearer_scheme = HTTPBearer(auto_error=False)


def resolve_caller_from_token(token: str | None, tokens: Mapping[str, str]) -> Caller | None:
    """Map a bearer token to a caller; ``None`` for anonymous requests."""

    if token is None:
        return None
    caller_id = tokens.get(token)
    if caller_id is None:
        raise HTTPException(status_code=401, detail="Invalid authentication credentials")
    return Caller(caller_id=caller_id)


async def get_current_caller(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Security(bearer_scheme)],
    request: Request,
) -> Caller:
    cached = getattr(request.state, "caller", None)
    if isinstance(cached, Caller):
        return cached

    token = credentials.credentials if credentials is not None else None
    caller = resolve_caller_from_token(token, getattr(request.app.state, "api_tokens", {}))
    if caller is None:
        raise HTTPException(
            status_code=401,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    request.state.caller = caller
    return caller


CurrentCaller = Annotated[Caller, Depends(get_current_caller)]
