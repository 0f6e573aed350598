"""Exceptions raised by the wallet-connect client."""

from typing import Optional


class NWCError(Exception):
    """Base class for wallet-connect failures."""


class InvalidUriError(NWCError, ValueError):
    """The connection URI is missing a required field or is malformed."""


class NWCTimeoutError(NWCError):
    """No response envelope arrived before the deadline."""

    def __init__(self, method: Optional[str], timeout: float):
        self.method = method
        self.timeout = timeout
        super().__init__(f"No response to {method or 'request'} within {timeout:g}s")


class DecryptError(NWCError):
    """A response arrived but could not be decrypted or decoded.

    This does not prove the remote operation failed.
    """


class RemoteError(NWCError):
    """The wallet service answered with an explicit error payload."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


class RelayError(NWCError):
    """The relay could not be reached or refused the request."""

    def __init__(self, message: str, published: bool = False):
        self.published = published
        super().__init__(message)


def outcome_unknown(error: Exception) -> bool:
    """True when the wallet may have carried out the request despite ``error``.

    A timeout or an unreadable response after publishing leaves the result
    open; an explicit error payload or a relay failure before publishing
    does not.
    """
    if isinstance(error, (NWCTimeoutError, DecryptError)):
        return True
    return isinstance(error, RelayError) and error.published
