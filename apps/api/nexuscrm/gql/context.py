from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from fastapi import Request
from strawberry.fastapi import BaseContext
from strawberry.permission import BasePermission

from nexuscrm.core.auth import AuthPrincipal
from nexuscrm.errors import NotAuthenticatedError, UpstreamServiceError

if TYPE_CHECKING:
    from nexuscrm.container import ServiceContainer


logger = logging.getLogger("nexuscrm.graphql")


class CRMContext(BaseContext):
    """Per-request GraphQL context. ``auth`` is ``None`` for anonymous callers."""

    def __init__(self, container: ServiceContainer, auth: AuthPrincipal | None) -> None:
        super().__init__()
        self.container = container
        self.auth = auth

    @property
    def principal(self) -> AuthPrincipal:
        if self.auth is None:
            raise NotAuthenticatedError()
        return self.auth


class IsAuthenticated(BasePermission):
    message = "Not authenticated"
    error_extensions = {"code": "UNAUTHENTICATED"}

    def has_permission(self, source: Any, info: Any, **kwargs: Any) -> bool:
        return info.context.auth is not None


async def get_context(request: Request) -> CRMContext:
    container = request.app.state.container
    header = request.headers.get("authorization")
    auth: AuthPrincipal | None = None
    if header:
        try:
            auth = await container.auth_client.verify_token(header)
        except UpstreamServiceError as exc:
            logger.warning("auth.verify_failed", extra={"error": str(exc)})
    return CRMContext(container=container, auth=auth)
