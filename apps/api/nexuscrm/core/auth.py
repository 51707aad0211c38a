from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from fastapi import Depends, HTTPException, Request, status

from nexuscrm.errors import UpstreamServiceError

if TYPE_CHECKING:
    from nexuscrm.clients.auth import AuthClient


logger = logging.getLogger("nexuscrm.auth")


@dataclass(frozen=True, slots=True)
class AuthPrincipal:
    """A caller whose bearer token the auth service has verified.

    Only ``AuthClient.verify_token`` builds these, so holding one is proof of
    authentication and the tenant id is always present.
    """

    user_id: str
    email: str
    organization_id: uuid.UUID
    role: str
    token: str
    permissions: frozenset[str] = field(default_factory=frozenset)

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions or "*" in self.permissions

    @property
    def user_uuid(self) -> uuid.UUID:
        return coerce_user_uuid(self.user_id)


def coerce_user_uuid(value: str) -> uuid.UUID:
    """UUID column value for a platform user id.

    The auth service is expected to issue UUIDs. Any other id is mapped to a
    stable uuid5 so owner columns stay typed, and a warning is logged because
    the stored value can then only be traced back through this mapping.
    """
    try:
        return uuid.UUID(value)
    except ValueError:
        mapped = uuid.uuid5(uuid.NAMESPACE_URL, f"nexus-user:{value}")
        logger.warning("auth.user_id_not_uuid", extra={"user_id": value, "mapped_user_id": str(mapped)})
        return mapped


def _auth_client(request: Request) -> AuthClient:
    return request.app.state.container.auth_client


async def require_auth(request: Request) -> AuthPrincipal:
    header = request.headers.get("authorization")
    if not header:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="No authorization token provided")

    try:
        principal = await _auth_client(request).verify_token(header)
    except UpstreamServiceError as exc:
        logger.error("auth.verify_failed", extra={"error": str(exc)})
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication failed") from exc

    if principal is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")
    request.state.auth = principal
    return principal


def require_permission(permission: str):
    async def dependency(request: Request, principal: AuthPrincipal = Depends(require_auth)) -> AuthPrincipal:
        if principal.has_permission(permission):
            return principal
        allowed = await _auth_client(request).has_permission(principal.user_id, permission)
        if not allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Permission denied")
        return principal

    return dependency
