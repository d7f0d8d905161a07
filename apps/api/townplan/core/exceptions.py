"""Error taxonomy shared by services and mapped to HTTP responses in main.py."""


class TownplanError(Exception):
    """Base exception for domain errors."""

    status_code = 500
    error_code = "internal"

    def __init__(self, message: str = "Internal error"):
        super().__init__(message)
        self.message = message


class ValidationError(TownplanError):
    """Malformed input, missing required field or invalid enum value."""

    status_code = 400
    error_code = "validation"


class NotFoundError(TownplanError):
    """Referenced entity does not exist or is inactive."""

    status_code = 404
    error_code = "not_found"


class ForbiddenError(TownplanError):
    """Actor lacks the capability required for the action."""

    status_code = 403
    error_code = "forbidden"


class ConflictError(TownplanError):
    """Action conflicts with the current state of the entity."""

    status_code = 409
    error_code = "conflict"


class InternalError(TownplanError):
    """Transaction or store failure."""

    status_code = 500
    error_code = "internal"
