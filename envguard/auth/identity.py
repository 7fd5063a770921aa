"""
Caller identity: who is performing a mutation.

The HTTP layer resolves a bearer token into a CallerIdentity and passes it
explicitly into every mutating core call; there is no ambient "current user".
"""

import hmac
from typing import Optional

from fastapi import HTTPException, Request
from pydantic import BaseModel

from envguard.errors import ValidationError


class CallerIdentity(BaseModel):
    """Authenticated caller, trusted verbatim for audit attribution."""
    id: str
    username: str = ""


def require_identity(caller: Optional[CallerIdentity]) -> CallerIdentity:
    """Reject mutations that arrive without an identity."""
    if caller is None or not caller.id:
        raise ValidationError("Caller identity is required")
    return caller


def resolve_bearer_token(authorization: str, app_settings) -> Optional[CallerIdentity]:
    """
    Map an Authorization header to the configured API caller.

    Without API_TOKEN any non-empty token is accepted in dev; outside dev
    every request is rejected.
    """
    if not authorization.startswith("Bearer "):
        return None
    token = authorization[7:].strip()
    if not token:
        return None
    expected = app_settings.api_token
    if not expected:
        if not app_settings.is_dev:
            return None
    elif not hmac.compare_digest(token.encode(), expected.encode()):
        return None
    return CallerIdentity(id=app_settings.api_user_id, username=app_settings.api_user_name)


def get_caller(request: Request) -> CallerIdentity:
    """FastAPI dependency: the identity attached by AuthMiddleware."""
    caller = getattr(request.state, "user", None)
    if caller is None:
        raise HTTPException(401, "Authentication required")
    return caller
