"""
Domain error hierarchy shared by all apps.

Services raise these; callers (management commands, API layers) map them to
exit codes or HTTP statuses by type.
"""


class DomainError(Exception):
    """Base exception for business-rule failures."""
    def __init__(self, message: str, code: str = None, details: dict = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class ValidationFailedError(DomainError):
    """Raised when input is malformed. Never retried automatically."""
    def __init__(self, message: str, issues: list = None, code: str = 'ValidationFailed'):
        super().__init__(message, code=code, details={'issues': issues or []})
        self.issues = issues or []


class NotFoundError(DomainError):
    """Raised when a referenced resource does not exist in the caller's scope."""
    def __init__(self, message: str, code: str = 'NotFound'):
        super().__init__(message, code=code)


class ConflictError(DomainError):
    """Raised when the resource state does not allow the action."""
    def __init__(self, message: str, code: str = 'Conflict', details: dict = None):
        super().__init__(message, code=code, details=details)


class ForbiddenError(DomainError):
    """
    Raised when the action is not allowed.
    public_message is safe to show to end users; code is for programs.
    """
    def __init__(self, message: str, code: str = 'Forbidden', public_message: str = None, details: dict = None):
        super().__init__(message, code=code, details=details)
        self.public_message = public_message or message


class UpstreamError(DomainError):
    """Raised when a collaborator (e.g. invoicing) fails."""
    def __init__(self, message: str, code: str = 'UpstreamFailed', details: dict = None):
        super().__init__(message, code=code, details=details)


def issue(message: str, *members) -> dict:
    """Build a single validation issue entry."""
    return {'message': message, 'members': list(members)}
