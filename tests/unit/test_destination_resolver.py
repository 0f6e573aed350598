"""Unit tests for identity to destination resolution."""

import asyncio
import json

import bech32
import pytest

from runstr_rewards.cache import MemoryCache
from runstr_rewards.nwc import events
from runstr_rewards.rewards.destinations import (
    DestinationResolver,
    ProfileLookup,
    RelayProfileLookup,
    destinations_from_profile,
    canonical_identity,
    is_direct_destination,
    npub_from_pubkey,
    pubkey_from_identity,
)


class CountingLookup(ProfileLookup):
    def __init__(self, result):
        self.result = result
        self.calls = 0

    async def fetch_destinations(self, identity):
        self.calls += 1
        return list(self.result)


class FakeProfileRelay:
    """Relay that serves stored kind-0 events and then EOSE."""

    def __init__(self, events=(), fail=False):
        self.events = list(events)
        self.fail = fail
        self.sent = []
        self._queue = asyncio.Queue()

    def connect(self, url, **kwargs):
        if self.fail:
            raise OSError(f"cannot reach {url}")
        return self

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None

    async def send(self, raw):
        message = json.loads(raw)
        self.sent.append(message)
        if message[0] == "REQ":
            for event in self.events:
                await self._queue.put(json.dumps(["EVENT", message[1], event]))
            await self._queue.put(json.dumps(["EOSE", message[1]]))

    async def recv(self):
        return await self._queue.get()


def profile_event(secret, metadata, created_at):
    return events.event_to_dict(
        events.sign_event(secret, kind=0, content=json.dumps(metadata), created_at=created_at)
    )


@pytest.mark.unit
class TestIdentityForms:
    @pytest.mark.parametrize(
        "identity",
        [
            "runner@getalby.com",
            "LNURL1DP68GURN8GHJ7",
            "lightning:runner@getalby.com",
            "lnbc10n1pexample",
            "nostr+walletconnect://" + "ab" * 32 + "?secret=" + "cd" * 32,
            "nostrwalletconnect://" + "ab" * 32 + "?secret=" + "cd" * 32,
        ],
    )
    def test_direct_forms(self, identity):
        assert is_direct_destination(identity)

    def test_pubkey_is_not_direct(self):
        assert not is_direct_destination("ab" * 32)

    def test_npub_decodes_to_hex(self):
        pubkey = "7e" * 32
        npub = bech32.bech32_encode("npub", bech32.convertbits(bytes.fromhex(pubkey), 8, 5))
        assert pubkey_from_identity(npub) == pubkey
        assert pubkey_from_identity(pubkey.upper()) == pubkey
        assert pubkey_from_identity("npub1invalid") is None
        assert pubkey_from_identity("someone") is None

    def test_npub_encoding_round_trips(self):
        pubkey = "7e" * 32
        assert npub_from_pubkey(pubkey).startswith("npub1")
        assert pubkey_from_identity(npub_from_pubkey(pubkey)) == pubkey

    def test_canonical_identity_collapses_key_forms(self):
        pubkey = "7e" * 32
        assert canonical_identity(npub_from_pubkey(pubkey)) == pubkey
        assert canonical_identity(" " + pubkey.upper() + " ") == pubkey
        assert canonical_identity(" runner@x.test ") == "runner@x.test"

    def test_profile_destination_order(self):
        metadata = {
            "lud16": "main@x.test",
            "lightning_addresses": ["alt@x.test", "MAIN@x.test"],
            "lud06": "lnurl1ignored",
        }
        assert destinations_from_profile(metadata) == ["main@x.test", "alt@x.test"]
        assert destinations_from_profile({"lud06": "lnurl1abc"}) == ["lnurl1abc"]
        assert destinations_from_profile({}) == []


@pytest.mark.unit
class TestResolver:
    """Test caching and failure bookkeeping."""

    @pytest.mark.asyncio
    async def test_direct_identity_skips_lookup(self):
        lookup = CountingLookup(["other@x.test"])
        resolver = DestinationResolver(lookup)
        assert await resolver.resolve("lightning:runner@x.test") == ["runner@x.test"]
        assert lookup.calls == 0

    @pytest.mark.asyncio
    async def test_alternate_wallet_connect_scheme_resolves_directly(self):
        lookup = CountingLookup(["other@x.test"])
        resolver = DestinationResolver(lookup)
        uri = "nostrwalletconnect://" + "ab" * 32 + "?relay=wss://r.test&secret=" + "cd" * 32

        assert await resolver.resolve(uri) == [uri]
        assert lookup.calls == 0

    @pytest.mark.asyncio
    async def test_result_is_cached(self):
        lookup = CountingLookup(["runner@x.test"])
        resolver = DestinationResolver(lookup)
        assert await resolver.resolve("ab" * 32) == ["runner@x.test"]
        assert await resolver.resolve("ab" * 32) == ["runner@x.test"]
        assert lookup.calls == 1

    @pytest.mark.asyncio
    async def test_empty_result_is_cached(self):
        lookup = CountingLookup([])
        resolver = DestinationResolver(lookup)
        assert await resolver.resolve("ab" * 32) == []
        assert await resolver.resolve("ab" * 32) == []
        assert lookup.calls == 1

    @pytest.mark.asyncio
    async def test_cache_expires(self):
        now = [1000.0]
        lookup = CountingLookup(["runner@x.test"])
        resolver = DestinationResolver(lookup, cache=MemoryCache(clock=lambda: now[0]), ttl_seconds=60)
        await resolver.resolve("ab" * 32)
        now[0] += 61
        await resolver.resolve("ab" * 32)
        assert lookup.calls == 2

    @pytest.mark.asyncio
    async def test_invalidate_forces_lookup(self):
        lookup = CountingLookup(["runner@x.test"])
        resolver = DestinationResolver(lookup)
        await resolver.resolve("ab" * 32)
        await resolver.invalidate("ab" * 32)
        await resolver.resolve("ab" * 32)
        assert lookup.calls == 2

    @pytest.mark.asyncio
    async def test_failed_destinations_are_still_returned(self):
        lookup = CountingLookup(["a@x.test", "b@x.test"])
        resolver = DestinationResolver(lookup)
        await resolver.record_failure("a@x.test", "no route")
        assert await resolver.has_failed("a@x.test")
        assert await resolver.resolve("ab" * 32) == ["a@x.test", "b@x.test"]

        await resolver.record_success("a@x.test")
        assert await resolver.failed_destinations() == []


@pytest.mark.unit
class TestRelayProfileLookup:
    @pytest.mark.asyncio
    async def test_newest_profile_across_relays_wins(self):
        secret = events.generate_secret()
        pubkey = events.derive_public_key(secret)
        old = FakeProfileRelay([profile_event(secret, {"lud16": "old@x.test"}, 100)])
        new = FakeProfileRelay([profile_event(secret, {"lud16": "new@x.test"}, 200)])
        relays = {"wss://old.test": old, "wss://new.test": new}

        lookup = RelayProfileLookup(
            list(relays), timeout=1, connect=lambda url, **kw: relays[url].connect(url, **kw)
        )

        assert await lookup.fetch_destinations(pubkey) == ["new@x.test"]
        assert old.sent[0][2]["authors"] == [pubkey]
        assert old.sent[-1][0] == "CLOSE"

    @pytest.mark.asyncio
    async def test_unreachable_relays_give_nothing(self):
        relay = FakeProfileRelay(fail=True)
        lookup = RelayProfileLookup(["wss://down.test"], timeout=1, connect=relay.connect)
        assert await lookup.fetch_destinations("ab" * 32) == []

    @pytest.mark.asyncio
    async def test_non_key_identity_is_not_looked_up(self):
        relay = FakeProfileRelay()
        lookup = RelayProfileLookup(["wss://relay.test"], timeout=1, connect=relay.connect)
        assert await lookup.fetch_destinations("runner") == []
        assert relay.sent == []

    @pytest.mark.asyncio
    async def test_forged_profile_is_ignored(self):
        secret = events.generate_secret()
        pubkey = events.derive_public_key(secret)
        forged = profile_event(secret, {"lud16": "thief@x.test"}, 300)
        forged["content"] = json.dumps({"lud16": "thief@x.test", "name": "edited"})
        genuine = profile_event(secret, {"lud16": "runner@x.test"}, 100)
        relay = FakeProfileRelay([forged, genuine])
        lookup = RelayProfileLookup(["wss://relay.test"], timeout=1, connect=relay.connect)

        assert await lookup.fetch_destinations(pubkey) == ["runner@x.test"]
