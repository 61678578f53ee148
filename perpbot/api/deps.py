"""Shared API dependencies."""

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from perpbot.engine.runtime import Runtime
from perpbot.services.auth import decode_access_token

bearer_scheme = HTTPBearer()


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def get_current_operator(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    runtime: Runtime = Depends(get_runtime),
) -> str:
    """Validate JWT and return the operator name it was issued to."""
    operator = decode_access_token(credentials.credentials, runtime.settings)
    if not operator:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    return operator
