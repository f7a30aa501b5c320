from dataclasses import dataclass
from typing import Any

from jose import JWTError, jwt
from starlette.requests import Request

from callgenie.core.config import get_settings

ANONYMOUS_SUBJECT = "anonymous"


@dataclass
class AuthUser:
    sub: str
    roles: list[str]

    @property
    def is_anonymous(self) -> bool:
        return self.sub == ANONYMOUS_SUBJECT


def bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header.removeprefix("Bearer ") if auth_header.startswith("Bearer ") else ""


def decode_token(token: str) -> dict[str, Any] | None:
    """Claims of a valid token signed with the configured secret, else None."""
    if not token:
        return None
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


async def get_current_user(request: Request) -> AuthUser:
    claims = decode_token(bearer_token(request))
    if claims is None or claims.get("sub") is None:
        return AuthUser(sub=ANONYMOUS_SUBJECT, roles=["guest"])

    roles = claims.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    subject = str(claims["sub"])
    request.state.user_id = subject
    return AuthUser(sub=subject, roles=[str(role) for role in roles])
