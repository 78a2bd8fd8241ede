"""Exception taxonomy for profile, environment and operation handling.

Profile and environment misuse is always raised at the call that breaks the
invariant. Remote faults are azure-core exceptions (AzureError and its
subclasses); see faults.py for classifying and formatting them.
"""

from __future__ import annotations


class ProfileError(Exception):
    """Base class for profile, environment and subscription management misuse."""

    pass


class NotFoundError(ProfileError):
    """Raised when a named environment or subscription does not exist."""

    pass


class AlreadyExistsError(ProfileError):
    """Raised when adding an environment or subscription whose name is taken."""

    pass


class InvalidOperationError(ProfileError):
    """Raised when an operation is not allowed on the addressed object."""

    pass


class BuiltinEnvironmentError(InvalidOperationError, AlreadyExistsError):
    """Raised for any attempt to add, change or remove a built-in environment."""

    pass


class OperationFailedError(Exception):
    """A tracked operation reached the Failed state on the server."""

    def __init__(self, status: str, message: str | None, code: str | None = None) -> None:
        self.status = status
        self.code = code
        self.server_message = message
        super().__init__(f"{status}: {message or ''}".rstrip())


class OperationTimeoutError(Exception):
    """Polling stopped because a configured attempt cap or deadline was reached."""

    pass
