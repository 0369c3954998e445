"""Exception hierarchy shared by every HealthGate service.

Services raise these; the HTTP layer maps each class to a stable error
code and status (see ``healthgate.main``).
"""


class HealthGateError(Exception):
    """Base exception for all HealthGate errors."""

    code = "error"
    status_code = 500


class ValidationError(HealthGateError):
    """Raised when required input is missing or malformed."""

    code = "validation_error"
    status_code = 400


class AuthenticationError(HealthGateError):
    """Raised when the caller credential header is absent."""

    code = "authentication_error"
    status_code = 401


class AuthorizationError(HealthGateError):
    """Raised when the caller lacks the role or ownership an operation needs."""

    code = "authorization_error"
    status_code = 403


class NotFoundError(HealthGateError):
    """Raised when an account, grant, case or record does not exist."""

    code = "not_found"
    status_code = 404


class ConflictError(HealthGateError):
    """Raised on uniqueness violations (UID, display name, credential)."""

    code = "conflict"
    status_code = 409


class StateTransitionError(ConflictError):
    """Raised when a lifecycle transition is not allowed from the current state."""

    code = "invalid_transition"


class StorageError(HealthGateError):
    """Raised when the underlying persistence layer fails."""

    code = "storage_error"
