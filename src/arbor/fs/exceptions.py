"""Custom exception hierarchy for the Arbor storage layer."""


class ArborError(Exception):
    """Base exception for all Arbor errors."""


class NotFoundError(ArborError):
    """Raised when a node, grant, or user does not exist (or is hidden from the caller)."""


class ForbiddenError(ArborError):
    """Raised when the caller is known but lacks the required access."""


class ConflictError(ArborError):
    """Raised on naming collisions, duplicate grants, or exhausted code retries."""


class InvalidArgumentError(ArborError):
    """Raised on malformed ids, depth violations, cyclic moves, or self-shares."""


class DependencyUnavailableError(ArborError):
    """Raised when the blob store (or another collaborator) fails."""


class InvalidShareLinkError(NotFoundError):
    """Single generic failure for unauthenticated public-link flows."""

    def __init__(self, message: str = "Invalid or expired share link.") -> None:
        super().__init__(message)
