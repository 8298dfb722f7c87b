"""
Error taxonomy for the dashboard data layer.
"""
from typing import Optional


class LMSError(Exception):
    """Base class for every failure talking to the LMS."""

    def __init__(self, message: str, wsfunction: Optional[str] = None):
        super().__init__(message)
        self.wsfunction = wsfunction


class LMSTransportError(LMSError):
    """Network failure, timeout or non-2xx status."""

    def __init__(
        self,
        message: str,
        wsfunction: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, wsfunction)
        self.status_code = status_code


class LMSRemoteError(LMSError):
    """The LMS answered with its exception envelope."""

    def __init__(
        self,
        message: str,
        wsfunction: Optional[str] = None,
        errorcode: Optional[str] = None,
        exception: Optional[str] = None,
    ):
        super().__init__(message, wsfunction)
        self.errorcode = errorcode
        self.exception = exception


class LMSResponseError(LMSError):
    """The payload did not match the expected response schema."""


class OperationCancelled(Exception):
    """Raised into a queued operation's future when its token was cancelled."""
