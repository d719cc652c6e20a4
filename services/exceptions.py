"""
Workspace Engine Exceptions

Errors raised by the authorization, quota and billing services.
Routes turn them into JSON error responses using status_code and code.
"""


class WorkspaceError(Exception):
    """Base exception for all workspace engine errors."""
    status_code = 500
    code = 'internal_error'

    def __init__(self, message: str = None):
        super().__init__(message or self.__class__.__doc__)

    @property
    def message(self) -> str:
        return str(self)


class AuthorizationDenied(WorkspaceError):
    """You do not have permission to perform this action."""
    status_code = 403
    code = 'forbidden'


class QuotaExceeded(WorkspaceError):
    """
    Raised when a creation is blocked by the workspace's plan ceiling.

    Kept distinct from AuthorizationDenied so the caller can offer an upgrade.
    """
    status_code = 403
    code = 'quota_exceeded'

    def __init__(self, kind: str, limit: int = None):
        self.kind = kind
        self.limit = limit
        if limit is not None:
            message = f"{kind.capitalize()} limit reached ({limit}). Upgrade your plan to add more."
        else:
            message = f"{kind.capitalize()} limit reached. Upgrade your plan to add more."
        super().__init__(message)


class InvalidTierOrStatus(WorkspaceError):
    """Unknown subscription tier or status."""
    status_code = 400
    code = 'invalid_input'


class NotFound(WorkspaceError):
    """Resource not found."""
    status_code = 404
    code = 'not_found'


class UpstreamFailure(WorkspaceError):
    """Storage layer error."""
    status_code = 503
    code = 'service_unavailable'


class WebhookVerificationError(WorkspaceError):
    """
    Raised when an inbound billing event fails signature verification
    or is missing the fields needed to route it.
    """
    status_code = 400
    code = 'invalid_webhook'


class Conflict(WorkspaceError):
    """The resource already exists or was changed by another request."""
    status_code = 409
    code = 'conflict'


# Result-dict error code -> HTTP status, for services that return
# {'success': False, 'code': ...} instead of raising
STATUS_BY_CODE = {
    cls.code: cls.status_code
    for cls in (AuthorizationDenied, QuotaExceeded, InvalidTierOrStatus, NotFound,
                UpstreamFailure, WebhookVerificationError, Conflict)
}


def status_for_code(code: str) -> int:
    return STATUS_BY_CODE.get(code, 400)
