from __future__ import annotations

from typing import Optional

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

DEFAULT_USER_ID = "default_user"


class AuthError(HTTPException):
    def __init__(self, status_code: int = 401, detail: str = "Unauthorized") -> None:
        super().__init__(status_code=status_code, detail=detail)


_http_bearer = HTTPBearer(auto_error=False)


def current_user_id(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_http_bearer),
) -> str:
    """
    FastAPI dependency resolving the caller's user id.

    The bearer token is used as the user id verbatim; it is never validated.
    Requests without a bearer token, including other auth schemes, share
    ``default_user``. Only a ``Bearer`` header with an empty token gets 401.
    """
    if credentials is not None and credentials.credentials.strip():
        return credentials.credentials.strip()
    scheme, _, token = request.headers.get("authorization", "").strip().partition(" ")
    if scheme.lower() == "bearer" and not token.strip():
        raise AuthError(401, "Unauthorized")
    return DEFAULT_USER_ID


# A convenience dependency alias for readability in route signatures
UserIdDependency = Depends(current_user_id)
