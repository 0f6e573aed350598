"""Nostr keys, signed events and NIP-04 payloads.

Thin helpers over nostr-sdk so the rest of the package deals in hex keys,
plain tag lists and relay JSON.
"""

import json
from typing import Any, Dict, List, Optional

from nostr_sdk import (
    Event,
    EventBuilder,
    Keys,
    Kind,
    NostrSdkError,
    PublicKey,
    Tag,
    Timestamp,
    nip04_decrypt,
    nip04_encrypt,
)

from .errors import DecryptError


def generate_secret() -> str:
    """Return a fresh random secret key as hex."""
    return Keys.generate().secret_key().to_hex()


def derive_public_key(secret_hex: str) -> str:
    return Keys.parse(secret_hex).public_key().to_hex()


def sign_event(
    secret_hex: str,
    kind: int,
    content: str,
    tags: Optional[List[List[str]]] = None,
    created_at: Optional[int] = None,
) -> Event:
    """Build and sign an event with ``secret_hex``."""
    builder = EventBuilder(Kind(kind), content).tags([Tag.parse(tag) for tag in tags or []])
    if created_at is not None:
        builder = builder.custom_created_at(Timestamp.from_secs(created_at))
    return builder.sign_with_keys(Keys.parse(secret_hex))


def event_to_dict(event: Event) -> Dict[str, Any]:
    """Relay JSON object for ``event``."""
    return json.loads(event.as_json())


def parse_event(data: Any) -> Optional[Event]:
    """Parse a relay event object, checking its id and signature.

    Returns None for anything malformed or with a bad signature.
    """
    if not isinstance(data, dict):
        return None
    try:
        event = Event.from_json(json.dumps(data))
        if not event.verify():
            return None
    except (NostrSdkError, ValueError, TypeError):
        return None
    return event


def tag_values(event: Event, name: str) -> List[str]:
    values = []
    for tag in event.tags().to_vec():
        vec = tag.as_vec()
        if len(vec) > 1 and vec[0] == name:
            values.append(vec[1])
    return values


def encrypt(plaintext: str, secret_hex: str, pubkey_hex: str) -> str:
    """NIP-04 encrypt ``plaintext`` from ``secret_hex`` to ``pubkey_hex``.

    Returns:
        ``base64(ciphertext)?iv=base64(iv)``
    """
    return nip04_encrypt(Keys.parse(secret_hex).secret_key(), PublicKey.parse(pubkey_hex), plaintext)


def decrypt(payload: str, secret_hex: str, pubkey_hex: str) -> str:
    """Reverse of :func:`encrypt`.

    Raises:
        DecryptError: If the payload is malformed or the key is wrong.
    """
    try:
        return nip04_decrypt(Keys.parse(secret_hex).secret_key(), PublicKey.parse(pubkey_hex), payload)
    except (NostrSdkError, ValueError, TypeError) as e:
        raise DecryptError(f"Could not decrypt payload: {e}") from e
