"""Error taxonomy for the lending engine.

Every rejected operation carries a human readable ``message`` and a stable
``code`` so the calling UI can tell "not allowed right now" (conflict) from
"not allowed for you" (forbidden) from "doesn't exist" (not found).
"""

from http import HTTPStatus


class LendingError(Exception):
    status_code = HTTPStatus.BAD_REQUEST
    default_code = "invalid"

    def __init__(self, message: str, code: str = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code

    def to_dict(self):
        return {"detail": self.message, "code": self.code}


class NotFoundError(LendingError):
    status_code = HTTPStatus.NOT_FOUND
    default_code = "not_found"


class ConflictError(LendingError):
    status_code = HTTPStatus.CONFLICT
    default_code = "conflict"


class ForbiddenError(LendingError):
    status_code = HTTPStatus.FORBIDDEN
    default_code = "forbidden"


class ConfigurationError(LendingError):
    """The deployment is misconfigured (e.g. no lending policy record)."""
    status_code = HTTPStatus.INTERNAL_SERVER_ERROR
    default_code = "configuration"


class RollbackError(LendingError):
    """A failed transition could not undo all of its writes."""
    status_code = HTTPStatus.INTERNAL_SERVER_ERROR
    default_code = "rollback_incomplete"
