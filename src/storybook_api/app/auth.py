from __future__ import annotations

import jwt
from fastapi import Header, Request

from .errors import AuthenticationRequiredError

JWT_ALGORITHM = "HS256"


def decode_user_id(token: str, *, secret: str) -> str:
    """Return the user id carried by a signed session token."""
    if not token or not secret:
        raise AuthenticationRequiredError()
    try:
        payload = jwt.decode(token, secret, algorithms=[JWT_ALGORITHM])
    except jwt.InvalidTokenError as exc:
        raise AuthenticationRequiredError("Invalid or expired session token") from exc

    user_id = payload.get("userId") or payload.get("sub")
    if not isinstance(user_id, str) or not user_id:
        raise AuthenticationRequiredError("Session token has no user id")
    return user_id


def current_user_id(request: Request, authorization: str | None = Header(None)) -> str:
    """FastAPI dependency: resolve the caller from ``Authorization: Bearer <jwt>``."""
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthenticationRequiredError()
    token = authorization[len("Bearer ") :].strip()
    return decode_user_id(token, secret=request.app.state.jwt_secret)
