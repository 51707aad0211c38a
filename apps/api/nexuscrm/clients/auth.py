from __future__ import annotations

import logging
import re
import uuid

from pydantic import ValidationError as PydanticValidationError

from nexuscrm.clients.base import ServiceClient
from nexuscrm.clients.schemas import AuthUser, Organization, UsageCheck
from nexuscrm.core.auth import AuthPrincipal
from nexuscrm.errors import UpstreamServiceError


logger = logging.getLogger("nexuscrm.auth")

_BEARER_RE = re.compile(r"^Bearer\s+", re.IGNORECASE)


def strip_bearer(value: str) -> str:
    return _BEARER_RE.sub("", value.strip())


class AuthClient(ServiceClient):
    service_name = "auth"
    display_name = "Auth"
    default_timeout = 5.0

    async def verify_token(self, token: str) -> AuthPrincipal | None:
        """Verify a bearer token. Returns ``None`` when the token is rejected."""
        clean_token = strip_bearer(token)
        if not clean_token:
            return None

        data = await self._request(
            "POST",
            "/api/auth/verify",
            operation="token verification",
            json={"token": clean_token},
            allow_statuses=(401,),
        )
        if data is None:
            logger.warning("auth.token_rejected")
            return None
        if not data.get("valid"):
            return None

        try:
            user = AuthUser.model_validate(data.get("user") or {})
            organization_id = uuid.UUID(user.organization_id)
        except (PydanticValidationError, ValueError) as exc:
            raise UpstreamServiceError(
                self.service_name,
                f"Auth token verification failed: malformed user payload ({exc})",
            ) from exc

        return AuthPrincipal(
            user_id=user.id,
            email=user.email,
            organization_id=organization_id,
            role=user.role,
            token=clean_token,
            permissions=frozenset(user.permissions),
        )

    async def has_permission(self, user_id: str, permission: str) -> bool:
        try:
            data = await self._request(
                "POST",
                "/api/auth/check-permission",
                operation="permission check",
                json={"userId": user_id, "permission": permission},
            )
        except UpstreamServiceError:
            return False
        return bool(data.get("hasPermission"))

    async def get_user(self, user_id: str) -> AuthUser | None:
        data = await self._request("GET", f"/api/users/{user_id}", operation="get user", allow_statuses=(404,))
        return None if data is None else AuthUser.model_validate(data)

    async def get_organization(self, organization_id: str) -> Organization | None:
        data = await self._request(
            "GET",
            f"/api/organizations/{organization_id}",
            operation="get organization",
            allow_statuses=(404,),
        )
        return None if data is None else Organization.model_validate(data)

    async def has_feature(self, organization_id: str, feature: str) -> bool:
        try:
            organization = await self.get_organization(organization_id)
        except UpstreamServiceError:
            return False
        return organization is not None and feature in organization.features

    async def check_usage_limit(self, organization_id: str, limit_type: str, requested_amount: float) -> UsageCheck:
        data = await self._request(
            "POST",
            "/api/usage/check",
            operation="usage check",
            json={"organizationId": organization_id, "limitType": limit_type, "requestedAmount": requested_amount},
        )
        return UsageCheck.model_validate(data)
