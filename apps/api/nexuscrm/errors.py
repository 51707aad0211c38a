from __future__ import annotations

from typing import Any


class CRMError(Exception):
    """Base error whose message is safe to show to API callers."""

    code = "INTERNAL_SERVER_ERROR"

    @property
    def extensions(self) -> dict[str, Any]:
        return {"code": self.code}


class NotFoundError(CRMError):
    code = "NOT_FOUND"


class ValidationError(CRMError):
    code = "BAD_USER_INPUT"


class NotAuthenticatedError(CRMError):
    code = "UNAUTHENTICATED"

    def __init__(self, message: str = "Not authenticated") -> None:
        super().__init__(message)


class PermissionDeniedError(CRMError):
    code = "FORBIDDEN"


class FeatureDisabledError(CRMError):
    code = "FEATURE_DISABLED"


class UpstreamServiceError(CRMError):
    """A platform service call failed or returned a non-2xx response."""

    code = "UPSTREAM_SERVICE_ERROR"

    def __init__(self, service: str, message: str, *, status_code: int | None = None) -> None:
        self.service = service
        self.status_code = status_code
        super().__init__(message)

    @property
    def extensions(self) -> dict[str, Any]:
        return {"code": self.code, "service": self.service}


class SchemaMissingError(RuntimeError):
    pass


class DependencyUnavailableError(RuntimeError):
    """A platform service the API cannot start without is down."""
