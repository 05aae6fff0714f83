"""
Exception types shared by the external function adapters.

Batch-level errors (configuration, decode, authentication) fail the whole
request and are answered with an aligned, fully-errored batch. Row-level
errors (downstream, row shape) are confined to the row that raised them.
"""

import enum
from typing import Optional


class ExternalFunctionError(Exception):
    """Base class for every error raised by the adapters."""
    pass


class ConfigurationError(ExternalFunctionError):
    """Exception to be raised when a required application setting is missing or invalid."""
    pass


class DecodeError(ExternalFunctionError):
    """Exception to be raised when the inbound batch envelope can't be decoded."""
    pass


class AuthErrorKind(enum.Enum):
    INSUFFICIENT_PERMISSIONS = "InsufficientPermissions"
    INVALID_SCOPE = "InvalidScope"
    UNKNOWN = "Unknown"


class AuthError(ExternalFunctionError):
    """
    Exception to be raised when a bearer credential can't be acquired.

    InsufficientPermissions needs an admin consent and InvalidScope needs a
    configuration change before a retry can succeed. Unknown failures may be
    transient.
    """

    def __init__(self, kind: AuthErrorKind, message: str):
        super().__init__(f"{kind.value}: {message}")
        self.kind = kind

    @property
    def retryable(self) -> bool:
        return self.kind is AuthErrorKind.UNKNOWN


class DownstreamError(ExternalFunctionError):
    """Exception to be raised when a single downstream call fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RowShapeError(ExternalFunctionError):
    """Exception to be raised if a row lacks the expected positional parameter."""
    pass
