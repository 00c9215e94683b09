from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from charterdesk.app.settings import Settings

security = HTTPBearer(auto_error=False)

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class AuthContext:
    email: str
    roles: set[str]


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def _developer_context(settings: Settings) -> AuthContext:
    return AuthContext(email=settings.dev_admin_email, roles={ADMIN_ROLE})


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_auth_context(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> AuthContext:
    settings = get_settings(request)
    if not settings.auth_enabled:
        return _developer_context(settings)

    if not credentials or credentials.scheme.lower() != "bearer":
        raise _unauthorized("missing bearer token")

    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
        )
    except jwt.InvalidTokenError as exc:
        raise _unauthorized("invalid auth token") from exc

    subject = payload.get("sub")
    roles = payload.get("roles", [])
    if not isinstance(subject, str) or "@" not in subject:
        raise _unauthorized("token subject must be an admin email")
    if not isinstance(roles, list):
        raise _unauthorized("token roles must be a list")
    role_set = {str(role).strip() for role in roles if str(role).strip()}
    if not role_set:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="token has no roles",
        )
    return AuthContext(email=subject.strip().lower(), roles=role_set)


def require_roles(*required_roles: str) -> Callable[[AuthContext], AuthContext]:
    required = {role.strip() for role in required_roles if role.strip()}

    def dependency(context: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if required and context.roles.isdisjoint(required):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"insufficient role. required any of: {sorted(required)}",
            )
        return context

    return dependency


require_admin = require_roles(ADMIN_ROLE)
