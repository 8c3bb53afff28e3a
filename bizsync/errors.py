"""Error taxonomy for bizsync.

Two families:

- ``RemoteError`` subclasses are reported by the transport collaborator
  (the server or the network said no). Reads record them on cache entries,
  writes propagate them to the caller unchanged.
- ``LocalGuardError`` subclasses are raised by local consistency checks
  before any network call is made. They are never worth retrying as-is.
"""

from typing import Any, Optional


class BizSyncError(Exception):
    """Base class for every error raised by bizsync."""

    retryable = False

    def __init__(self, message: str, detail: Any = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class RemoteError(BizSyncError):
    """Failure reported by the transport collaborator."""

    retryable = True

    def __init__(self, message: str, detail: Any = None, status: Optional[int] = None):
        super().__init__(message, detail)
        self.status = status


class NetworkError(RemoteError):
    """The transport could not reach the server, or the server is unavailable."""


class AuthError(RemoteError):
    """The credential was rejected. The session should be torn down."""

    retryable = False


class ValidationError(RemoteError):
    """The server rejected the payload shape or a business rule."""

    retryable = False


class NotFoundError(RemoteError):
    """A referenced parent id no longer exists."""

    retryable = False


class LocalGuardError(BizSyncError):
    """Raised before submission when local state is inconsistent."""


class DanglingReferenceError(LocalGuardError):
    """A default-branch reference names a branch that is not in the collection."""

    def __init__(self, message: str, business_id: Any = None, branch_id: Any = None):
        super().__init__(message, detail={"business_id": business_id, "branch_id": branch_id})
        self.business_id = business_id
        self.branch_id = branch_id


class UnknownBranchError(LocalGuardError):
    """An operation targeted a branch that is not in the collection."""


class InvalidPayloadError(LocalGuardError):
    """A write payload failed a local precondition (e.g. a blank branch name)."""


def classify_http_error(status: Optional[int], detail: Any = None) -> RemoteError:
    """Map an HTTP status onto the error taxonomy.

    Args:
        status: Response status code, or None when no response arrived
        detail: Server-provided detail, kept on the error

    Returns:
        The classified RemoteError instance (not raised)
    """
    if status is None:
        return NetworkError("Could not reach the server", detail=detail)
    message = str(detail) if detail else f"Request failed with status {status}"
    if status in (401, 403):
        return AuthError(message, detail=detail, status=status)
    if status in (404, 410):
        return NotFoundError(message, detail=detail, status=status)
    if 400 <= status < 500:
        return ValidationError(message, detail=detail, status=status)
    return NetworkError(message, detail=detail, status=status)
