"""Exception hierarchy for the relay."""
from typing import Optional


class RelayError(Exception):
    """Base class for relay errors."""


class VkApiError(RelayError):
    """Error payload returned by the VK API."""

    def __init__(self, code: int, message: str, method: Optional[str] = None):
        self.code = code
        self.message = message
        self.method = method
        where = f" in {method}" if method else ""
        super().__init__(f"VK API error {code}{where}: {message}")


class TransientFetchError(RelayError):
    """Network or platform failure while talking to the source platform."""


class CursorExpiredError(RelayError):
    """The stored cursor can no longer be used and must be re-initialized."""


class FatalStartupError(RelayError):
    """Credentials are invalid or the initial connection cannot be established."""
