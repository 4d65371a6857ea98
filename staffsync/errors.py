"""Exception taxonomy for the sync core.

Every failure raised to callers derives from SyncError and carries both a
developer-facing message and a short message suitable for end users.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import Record


class SyncError(Exception):
    """Base class for all sync core failures."""

    default_user_message = "Something went wrong."

    def __init__(self, message: str, user_message: str | None = None):
        super().__init__(message)
        self.message = message
        self.user_message = user_message or self.default_user_message
        # Pre-mutation row, attached by SyncRepository after compensation
        self.snapshot: "Record | None" = None

    def __str__(self) -> str:
        return self.message


class NotFound(SyncError):
    """The local row targeted by a mutation does not exist."""

    default_user_message = "Record not found."


class PreconditionFailed(SyncError):
    """The mutation request is invalid before any work is attempted."""

    default_user_message = "Request failed. Please check your input."


class StoreError(SyncError):
    """A LocalStore write failed."""

    default_user_message = "Local storage error."


class RemoteError(SyncError):
    """Base class for failures reported by the remote service."""

    default_user_message = "Request failed."

    def __init__(
        self,
        message: str,
        user_message: str | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message, user_message)
        self.status_code = status_code


class RemoteRejected(RemoteError):
    """The remote service answered but did not accept the request."""

    default_user_message = "Request failed. Please check your input."


class RateLimited(RemoteRejected):
    default_user_message = "Rate limit exceeded. Please try again later."

    def __init__(self, message: str = "Rate limit exceeded"):
        super().__init__(message, status_code=429)


class ServerError(RemoteRejected):
    default_user_message = "Server error. Please try again later."


class ClientError(RemoteRejected):
    default_user_message = "Request failed. Please check your input."


class InvalidResponse(RemoteRejected):
    """Response envelope was not a success or its payload was unusable."""

    default_user_message = "Unexpected response from server."


class RemoteUnreachable(RemoteError):
    """Network-class failure: the request never got an answer."""

    default_user_message = "No internet connection."


class RemoteTimeout(RemoteUnreachable):
    default_user_message = "Connection timeout. Check your internet."

    def __init__(self, message: str = "Connection timeout"):
        super().__init__(message)


class ConnectionFailed(RemoteUnreachable):
    def __init__(self, message: str = "No internet connection"):
        super().__init__(message)


class InconsistentStateError(SyncError):
    """A compensating LocalStore write failed after a remote failure.

    The local mirror may now disagree with both the pre-mutation state and
    the remote service. ``original_error`` is the failure that triggered the
    rollback; the store failure is available as ``__cause__``.
    """

    default_user_message = "Local data may be out of date. Please refresh."

    def __init__(self, message: str, original_error: BaseException):
        super().__init__(message)
        self.original_error = original_error
