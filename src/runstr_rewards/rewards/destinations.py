"""Destination resolution: identity -> ordered list of payable strings.

Directly payable identities (lightning addresses, LNURLs, bolt11 invoices,
wallet-connect URIs) are returned as-is. Anything else is treated as a user
key and resolved through a profile lookup, with results cached (including
empty ones). Destinations that failed payment are recorded separately for
diagnostics; they are never filtered out of a resolution.
"""

import asyncio
import json
import re
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

import bech32
import websockets

from runstr_rewards.cache import CacheBackend, MemoryCache
from runstr_rewards.logging_utils import get_logger
from runstr_rewards.nwc.relay import query_relay
from runstr_rewards.nwc.uri import URI_SCHEMES

logger = get_logger(__name__)

DIRECT_PREFIXES = ("lnurl", "lightning:", "lnbc", "lntb", "lnbcrt") + tuple(
    f"{scheme}:" for scheme in URI_SCHEMES
)

PROFILE_KIND = 0

_HEX_PUBKEY = re.compile(r"^[0-9a-f]{64}$")


def is_direct_destination(identity: str) -> bool:
    value = identity.strip().lower()
    return "@" in value or value.startswith(DIRECT_PREFIXES)


def normalize_destination(destination: str) -> str:
    """Strip whitespace and a ``lightning:`` scheme prefix."""
    value = destination.strip()
    if value.lower().startswith("lightning:"):
        value = value[len("lightning:"):]
    return value


def pubkey_from_identity(identity: str) -> Optional[str]:
    """Return a hex pubkey for a hex or ``npub1`` identity, else None."""
    value = identity.strip().lower()
    if _HEX_PUBKEY.match(value):
        return value
    if value.startswith("npub1"):
        hrp, data = bech32.bech32_decode(value)
        if hrp != "npub" or data is None:
            return None
        decoded = bech32.convertbits(data, 5, 8, False)
        if decoded is None or len(decoded) != 32:
            return None
        return bytes(decoded).hex()
    return None


def npub_from_pubkey(pubkey: str) -> str:
    """bech32 ``npub1`` form of a hex pubkey."""
    data = bech32.convertbits(bytes.fromhex(pubkey), 8, 5, True)
    return bech32.bech32_encode("npub", data)


def canonical_identity(identity: str) -> str:
    """Key under which state for ``identity`` is stored.

    Hex and npub forms of one user key collapse to the lowercase hex key.
    Other identities are only stripped.
    """
    return pubkey_from_identity(identity) or identity.strip()


def destinations_from_profile(metadata: Dict[str, Any]) -> List[str]:
    """Pull payable candidates out of kind-0 profile metadata.

    Order: ``lud16``, then the ``lightning_addresses`` list, then ``lud06``
    only when there is no ``lud16``. Duplicates are dropped.
    """
    candidates: List[str] = []
    lud16 = metadata.get("lud16")
    if isinstance(lud16, str) and lud16.strip():
        candidates.append(lud16.strip())
    extra = metadata.get("lightning_addresses")
    if isinstance(extra, list):
        candidates.extend(a.strip() for a in extra if isinstance(a, str) and a.strip())
    lud06 = metadata.get("lud06")
    if not lud16 and isinstance(lud06, str) and lud06.strip():
        candidates.append(lud06.strip())

    seen = set()
    ordered = []
    for candidate in candidates:
        key = candidate.lower()
        if key not in seen:
            seen.add(key)
            ordered.append(candidate)
    return ordered


class ProfileLookup(ABC):
    """Finds candidate payment destinations for a user key."""

    @abstractmethod
    async def fetch_destinations(self, identity: str) -> List[str]:
        """Return zero or more destinations, best first."""


class RelayProfileLookup(ProfileLookup):
    """Reads the newest kind-0 profile from a set of relays."""

    def __init__(
        self,
        relays: List[str],
        timeout: float = 3.0,
        connect: Callable[..., Any] = websockets.connect,
    ):
        self.relays = list(relays)
        self.timeout = timeout
        self._connect = connect

    async def fetch_destinations(self, identity: str) -> List[str]:
        pubkey = pubkey_from_identity(identity)
        if pubkey is None:
            logger.debug(f"Identity {identity} is not a pubkey, no profile to look up")
            return []

        profile_filter = {"kinds": [PROFILE_KIND], "authors": [pubkey], "limit": 1}
        results = await asyncio.gather(
            *(query_relay(relay, profile_filter, self.timeout, self._connect) for relay in self.relays)
        )
        profiles = [
            event
            for found in results
            for event in found
            if event.kind().as_u16() == PROFILE_KIND and event.author().to_hex() == pubkey
        ]
        if not profiles:
            logger.info(f"No profile found for {pubkey[:12]} on {len(self.relays)} relays")
            return []

        newest = max(profiles, key=lambda event: event.created_at().as_secs())
        try:
            metadata = json.loads(newest.content() or "{}")
        except ValueError:
            logger.warning(f"Profile for {pubkey[:12]} has unparseable content")
            return []
        if not isinstance(metadata, dict):
            return []
        return destinations_from_profile(metadata)


class DestinationResolver:
    """Resolves identities to payable destinations with caching."""

    def __init__(
        self,
        profile_lookup: ProfileLookup,
        cache: Optional[CacheBackend] = None,
        failures: Optional[CacheBackend] = None,
        ttl_seconds: float = 3600,
    ):
        """Initialize the resolver.

        Args:
            profile_lookup: Collaborator that maps user keys to destinations.
            cache: Positive cache of resolved lists, keyed by identity.
            failures: Set of destinations that failed payment, for diagnostics.
            ttl_seconds: Age bound of cached resolutions.
        """
        self.profile_lookup = profile_lookup
        self.cache = cache or MemoryCache()
        self.failures = failures or MemoryCache()
        self.ttl_seconds = ttl_seconds

    async def resolve(self, identity: str) -> List[str]:
        """Return payable destinations for ``identity``, best first."""
        if is_direct_destination(identity):
            return [normalize_destination(identity)]

        cached = await self.cache.get(identity)
        if cached is not None:
            logger.debug(f"Resolver cache hit for {identity}: {len(cached)} destination(s)")
            return list(cached)

        destinations = await self.profile_lookup.fetch_destinations(identity)
        destinations = [normalize_destination(d) for d in destinations]
        await self.cache.put(identity, destinations, ttl=self.ttl_seconds)
        logger.info(f"Resolved {identity} to {len(destinations)} destination(s)")
        return destinations

    async def invalidate(self, identity: str) -> None:
        """Drop the cached resolution so the next call looks up again."""
        if await self.cache.delete(identity):
            logger.info(f"Invalidated resolver cache for {identity}")

    async def record_failure(self, destination: str, error: str) -> None:
        await self.failures.put(destination, {"error": error, "failed_at": time.time()})

    async def record_success(self, destination: str) -> None:
        await self.failures.delete(destination)

    async def has_failed(self, destination: str) -> bool:
        return await self.failures.contains(destination)

    async def failed_destinations(self) -> List[str]:
        return await self.failures.list_keys()
