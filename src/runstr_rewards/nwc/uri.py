"""Wallet-connect URI parsing and serialization.

A connection URI looks like::

    nostr+walletconnect://<wallet-pubkey>?relay=wss://relay.example&secret=<hex>

Some producers put the wallet pubkey in the path (``nostr+walletconnect:<pubkey>``)
instead of the host segment; both forms are accepted.
"""

import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qs, quote, urlsplit

from .errors import InvalidUriError

DEFAULT_RELAY = "wss://relay.damus.io"

URI_SCHEMES = ("nostr+walletconnect", "nostrwalletconnect")

_HEX_KEY = re.compile(r"^[0-9a-f]{64}$")


@dataclass(frozen=True)
class ConnectionDescriptor:
    """Everything needed to talk to one remote wallet service."""

    relay_url: str
    wallet_pubkey: str
    secret: str
    lud16: Optional[str] = None

    @property
    def client_pubkey(self) -> str:
        """x-only public key belonging to ``secret``."""
        from .events import derive_public_key

        return derive_public_key(self.secret)

    def to_uri(self) -> str:
        """Serialize back to the canonical ``nostr+walletconnect://`` form."""
        uri = (
            f"{URI_SCHEMES[0]}://{self.wallet_pubkey}"
            f"?relay={quote(self.relay_url, safe='')}&secret={self.secret}"
        )
        if self.lud16:
            uri += f"&lud16={quote(self.lud16, safe='')}"
        return uri

    def __repr__(self) -> str:
        return (
            f"ConnectionDescriptor(relay_url={self.relay_url!r}, "
            f"wallet_pubkey={self.wallet_pubkey!r}, secret='***')"
        )


def _first(query: dict, name: str) -> Optional[str]:
    values = query.get(name)
    if not values:
        return None
    return values[0].strip() or None


def parse_connection_uri(uri: str, default_relay: str = DEFAULT_RELAY) -> ConnectionDescriptor:
    """Parse a wallet-connect URI.

    Args:
        uri: The connection string as shared by the wallet.
        default_relay: Relay to use when the URI names none.

    Returns:
        An immutable ConnectionDescriptor.

    Raises:
        InvalidUriError: If the scheme is wrong, the wallet pubkey or secret
            is missing or malformed, or the relay is not a websocket URL.
    """
    if not uri or not isinstance(uri, str):
        raise InvalidUriError("Empty connection URI")

    parts = urlsplit(uri.strip())
    if parts.scheme.lower() not in URI_SCHEMES:
        raise InvalidUriError(f"Unsupported URI scheme: {parts.scheme or '(none)'}")

    wallet_pubkey = parts.path.strip("/") or parts.netloc
    if not wallet_pubkey:
        raise InvalidUriError("Connection URI does not name a wallet pubkey")
    wallet_pubkey = wallet_pubkey.lower()
    if not _HEX_KEY.match(wallet_pubkey):
        raise InvalidUriError("Wallet pubkey must be 64 hex characters")

    query = parse_qs(parts.query)

    secret = _first(query, "secret")
    if not secret:
        raise InvalidUriError("Connection URI is missing the secret parameter")
    secret = secret.lower()
    if not _HEX_KEY.match(secret):
        raise InvalidUriError("Secret must be 64 hex characters")

    relay_url = _first(query, "relay") or default_relay
    if urlsplit(relay_url).scheme not in ("ws", "wss"):
        raise InvalidUriError(f"Relay must be a ws:// or wss:// URL: {relay_url}")

    return ConnectionDescriptor(
        relay_url=relay_url,
        wallet_pubkey=wallet_pubkey,
        secret=secret,
        lud16=_first(query, "lud16"),
    )
