"""Unit tests for subscription receipts and the receipt-backed tier lookup."""

import asyncio
import json
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from runstr_rewards.models import Subscription, TierInfo, VerificationMethod, VerificationResult
from runstr_rewards.nwc import events
from runstr_rewards.nwc.types import Invoice
from runstr_rewards.rewards.destinations import npub_from_pubkey
from runstr_rewards.rewards.receipts import (
    RECEIPT_KIND,
    ReceiptPublisher,
    month_tag,
    parse_receipt,
    receipt_tags,
)
from runstr_rewards.rewards.subscriptions import SubscriptionService
from runstr_rewards.rewards.tiers import ChainedTierLookup, ReceiptTierLookup, StaticTierLookup

RUNNER = "ab" * 32
ACTIVATED = datetime(2025, 7, 11, 12, 0, 0)


class FakeReceiptRelay:
    """Relay that stores published events, answers OK and serves them back."""

    def __init__(self, accept=True, fail=False):
        self.accept = accept
        self.fail = fail
        self.stored = []
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
        if message[0] == "EVENT":
            event = message[1]
            if self.accept:
                self.stored.append(event)
            await self._queue.put(json.dumps(["OK", event["id"], self.accept, "" if self.accept else "blocked"]))
        elif message[0] == "REQ":
            for event in self.stored:
                await self._queue.put(json.dumps(["EVENT", message[1], event]))
            await self._queue.put(json.dumps(["EOSE", message[1]]))

    async def recv(self):
        return await self._queue.get()


def subscription(tier="member", activated_at=ACTIVATED, days=30):
    return Subscription(
        identity=RUNNER, tier=tier, activated_at=activated_at, expires_at=activated_at + timedelta(days=days)
    )


@pytest.mark.unit
class TestReceiptEvent:
    def test_tags(self):
        tags = receipt_tags(subscription("captain"), 10000, "aa" * 32)
        by_name = {}
        for name, value in tags:
            by_name.setdefault(name, []).append(value)

        assert by_name["d"] == [f"runstr-subscription-07-2025-{RUNNER}"]
        assert by_name["tier"] == ["captain"]
        assert by_name["amount"] == ["10000"]
        assert by_name["payment_hash"] == ["aa" * 32]
        assert by_name["purchaser"] == [npub_from_pubkey(RUNNER)]
        assert by_name["p"] == [RUNNER]
        assert int(by_name["expires"][0]) - int(by_name["purchase_date"][0]) == 30 * 86400
        assert by_name["t"] == ["subscription", "runstr", "runstr_captain"]

    def test_month_tag(self):
        assert month_tag(datetime(2025, 1, 31)) == "01-2025"

    def test_signed_receipt_parses_back(self):
        publisher = ReceiptPublisher(events.generate_secret(), [])
        event = publisher.build(subscription("captain"), 10000)

        receipt = parse_receipt(event)

        assert event.kind().as_u16() == RECEIPT_KIND
        assert "team creation" in event.content()
        assert receipt.tier == "captain"
        assert receipt.purchaser_pubkey == RUNNER
        assert receipt.purchased_at == ACTIVATED
        assert receipt.payment_hash is None


@pytest.mark.unit
class TestReceiptPublisher:
    @pytest.mark.asyncio
    async def test_counts_accepting_relays(self):
        relays = {
            "wss://a.test": FakeReceiptRelay(),
            "wss://b.test": FakeReceiptRelay(accept=False),
            "wss://c.test": FakeReceiptRelay(fail=True),
        }
        publisher = ReceiptPublisher(
            events.generate_secret(),
            list(relays),
            timeout=1,
            connect=lambda url, **kw: relays[url].connect(url, **kw),
        )

        accepted = await publisher.publish(subscription(), 5000, "aa" * 32)

        assert accepted == 1
        assert relays["wss://a.test"].stored[0]["pubkey"] == publisher.pubkey
        assert relays["wss://b.test"].stored == []

    @pytest.mark.asyncio
    async def test_activation_publishes_receipt(self, test_db):
        relay = FakeReceiptRelay()
        publisher = ReceiptPublisher(events.generate_secret(), ["wss://relay.test"], timeout=1, connect=relay.connect)
        wallet = MagicMock()
        wallet.make_invoice = AsyncMock(return_value=Invoice(invoice="lnbc50u1psub", payment_hash="aa" * 32))
        verifier = MagicMock()
        verifier.verify = AsyncMock(return_value=VerificationResult(status="paid", method=VerificationMethod.DIRECT))
        service = SubscriptionService(test_db, wallet, verifier, receipts=publisher)

        await service.issue_invoice(npub_from_pubkey(RUNNER), "member")
        result = await service.verify(RUNNER)

        assert result.status == "activated"
        assert result.receipt_relays == 1
        receipt = parse_receipt(events.parse_event(relay.stored[0]))
        assert (receipt.tier, receipt.amount_sats, receipt.payment_hash) == ("member", 5000, "aa" * 32)

    @pytest.mark.asyncio
    async def test_unpublished_receipt_does_not_block_activation(self, test_db):
        relay = FakeReceiptRelay(fail=True)
        publisher = ReceiptPublisher(events.generate_secret(), ["wss://down.test"], timeout=1, connect=relay.connect)
        wallet = MagicMock()
        wallet.make_invoice = AsyncMock(return_value=Invoice(invoice="lnbc50u1psub", payment_hash="aa" * 32))
        verifier = MagicMock()
        verifier.verify = AsyncMock(return_value=VerificationResult(status="paid", method=VerificationMethod.DIRECT))
        service = SubscriptionService(test_db, wallet, verifier, receipts=publisher)

        await service.issue_invoice(RUNNER, "captain")
        result = await service.verify(RUNNER)

        assert result.status == "activated"
        assert result.receipt_relays == 0
        assert (await test_db.get_subscription(RUNNER)).tier == "captain"


@pytest.mark.unit
class TestReceiptTierLookup:
    @pytest.mark.asyncio
    async def test_newest_unexpired_receipt_wins(self):
        issuer = ReceiptPublisher(events.generate_secret(), [])
        now = datetime.utcnow()
        relay = FakeReceiptRelay()
        relay.stored = [
            events.event_to_dict(issuer.build(subscription("captain", now - timedelta(days=40)), 10000)),
            events.event_to_dict(issuer.build(subscription("member", now - timedelta(days=2)), 5000)),
        ]
        lookup = ReceiptTierLookup(issuer.pubkey, ["wss://relay.test"], timeout=1, connect=relay.connect)

        info = await lookup.lookup(npub_from_pubkey(RUNNER))

        assert info == TierInfo(tier="member")
        req = next(m for m in relay.sent if m[0] == "REQ")
        assert req[2] == {"kinds": [RECEIPT_KIND], "authors": [issuer.pubkey], "#p": [RUNNER]}

    @pytest.mark.asyncio
    async def test_receipts_from_other_issuers_are_ignored(self):
        issuer = ReceiptPublisher(events.generate_secret(), [])
        stranger = ReceiptPublisher(events.generate_secret(), [])
        relay = FakeReceiptRelay()
        relay.stored = [events.event_to_dict(stranger.build(subscription("captain", datetime.utcnow()), 10000))]
        lookup = ReceiptTierLookup(issuer.pubkey, ["wss://relay.test"], timeout=1, connect=relay.connect)

        assert await lookup.lookup(RUNNER) is None

    @pytest.mark.asyncio
    async def test_non_key_identity_is_not_looked_up(self):
        relay = FakeReceiptRelay()
        lookup = ReceiptTierLookup("cd" * 32, ["wss://relay.test"], timeout=1, connect=relay.connect)

        assert await lookup.lookup("runner@x.test") is None
        assert relay.sent == []

    @pytest.mark.asyncio
    async def test_chained_lookup_prefers_first_answer(self):
        chained = ChainedTierLookup(
            StaticTierLookup(members=[RUNNER]), StaticTierLookup(captains={RUNNER: 3, "cd" * 32: 1})
        )

        assert (await chained.lookup(RUNNER)).tier == "member"
        assert (await chained.lookup("cd" * 32)).tier == "captain"
        assert await chained.lookup("ef" * 32) is None
