"""Exception types surfaced by the dialer core."""
from typing import Optional


class DialerError(Exception):
    """Base class for dialer errors."""


class InvalidTokenError(DialerError):
    """A signed token failed verification."""


class WebhookAttributionError(DialerError):
    """A provider callback could not be attributed to a user."""


class DialError(DialerError):
    """Call placement failed with a caller-visible cause."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 502,
        provider_code: Optional[int] = None,
        line_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.provider_code = provider_code
        self.line_id = line_id

    def to_dict(self) -> dict:
        return {
            "message": self.message,
            "code": self.code,
            "providerCode": self.provider_code,
            "lineId": self.line_id,
        }


class CommandError(DialerError):
    """A command-surface request was refused."""

    def __init__(self, code: str, message: str, status_code: int = 400):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
