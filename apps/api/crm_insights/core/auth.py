from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from jose import JWTError, jwt
from starlette.requests import Request

from crm_insights.core.config import get_settings

ANONYMOUS = "anonymous"


@dataclass
class AuthUser:
    sub: str
    roles: list[str] = field(default_factory=list)

    @property
    def is_anonymous(self) -> bool:
        return self.sub == ANONYMOUS


def decode_bearer_claims(authorization: str) -> dict[str, Any] | None:
    """Claims of a valid bearer token, or ``None`` when the header is absent or the token does not verify."""
    token = authorization.removeprefix("Bearer ") if authorization.startswith("Bearer ") else ""
    if not token:
        return None
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


async def get_current_user(request: Request) -> AuthUser:
    payload = decode_bearer_claims(request.headers.get("authorization", ""))
    if payload is None:
        return AuthUser(sub=ANONYMOUS, roles=["guest"])

    subject = str(payload.get("sub", ANONYMOUS))
    roles = payload.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = subject
    return AuthUser(sub=subject, roles=[str(role) for role in roles])
