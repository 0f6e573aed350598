"""Subscription receipts published as Nostr events.

A receipt is a parameterized replaceable event (kind 33407) signed by the
service key when a subscription activates. Its ``d`` tag names the month and
the purchaser, so a renewal in the same month replaces the earlier receipt.
Receipts let other RUNSTR clients see who holds which tier without access to
this service's database.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional

import websockets
from nostr_sdk import Event
from pydantic import BaseModel

from runstr_rewards.logging_utils import get_logger
from runstr_rewards.models import Subscription, Tier
from runstr_rewards.nwc import events
from runstr_rewards.nwc.relay import publish_event

from .destinations import npub_from_pubkey, pubkey_from_identity

logger = get_logger(__name__)

RECEIPT_KIND = 33407
CLIENT_NAME = "runstr"
CLIENT_VERSION = "1.0.0"

_EPOCH = datetime(1970, 1, 1)


class Receipt(BaseModel):
    """Fields read back from a receipt event."""

    tier: Tier
    amount_sats: int
    purchaser: str
    purchaser_pubkey: Optional[str] = None
    purchased_at: datetime
    expires_at: datetime
    payment_hash: Optional[str] = None


def _timestamp(moment: datetime) -> int:
    return int((moment - _EPOCH).total_seconds())


def month_tag(moment: datetime) -> str:
    """``MM-YYYY`` label of the month ``moment`` falls in."""
    return moment.strftime("%m-%Y")


def receipt_tags(
    subscription: Subscription, amount_sats: int, payment_hash: Optional[str] = None
) -> List[List[str]]:
    """Tag list of the receipt for ``subscription``."""
    tier = subscription.tier
    pubkey = pubkey_from_identity(subscription.identity)
    purchaser = npub_from_pubkey(pubkey) if pubkey else subscription.identity
    tags = [
        ["d", f"runstr-subscription-{month_tag(subscription.activated_at)}-{pubkey or purchaser}"],
        ["name", f"RUNSTR {tier.capitalize()} Subscription"],
        ["tier", tier],
        ["amount", str(amount_sats)],
        ["purchase_date", str(_timestamp(subscription.activated_at))],
        ["expires", str(_timestamp(subscription.expires_at))],
        ["payment_hash", payment_hash or ""],
        ["currency", "sats"],
        ["purchaser", purchaser],
        ["client", CLIENT_NAME],
        ["client_version", CLIENT_VERSION],
        ["subscription_type", "monthly"],
        ["t", "subscription"],
        ["t", "runstr"],
        ["t", f"runstr_{tier}"],
    ]
    if pubkey:
        tags.append(["p", pubkey])
    return tags


def receipt_content(tier: Tier) -> str:
    extras = "team creation and " if tier == "captain" else ""
    return f"RUNSTR {tier.capitalize()} Subscription - Monthly subscription with {extras}rewards"


def parse_receipt(event: Event) -> Optional[Receipt]:
    """Read a receipt event. None when it is not a well-formed receipt."""
    if event.kind().as_u16() != RECEIPT_KIND:
        return None

    def first(name: str) -> Optional[str]:
        values = events.tag_values(event, name)
        return values[0] if values else None

    tier = first("tier")
    purchaser = first("purchaser")
    if tier not in ("member", "captain") or not purchaser:
        return None
    try:
        amount = int(first("amount") or 0)
        purchased_at = _EPOCH + timedelta(seconds=int(first("purchase_date") or 0))
        expires_at = _EPOCH + timedelta(seconds=int(first("expires") or 0))
    except ValueError:
        return None
    return Receipt(
        tier=tier,
        amount_sats=amount,
        purchaser=purchaser,
        purchaser_pubkey=pubkey_from_identity(purchaser),
        purchased_at=purchased_at,
        expires_at=expires_at,
        payment_hash=first("payment_hash") or None,
    )


class ReceiptPublisher:
    """Signs subscription receipts and publishes them to relays."""

    def __init__(
        self,
        secret: str,
        relays: List[str],
        timeout: float = 5.0,
        connect: Callable[..., Any] = websockets.connect,
    ):
        """Initialize the publisher.

        Args:
            secret: Hex secret key the receipts are signed with.
            relays: Relays to publish to.
            timeout: Per-relay bound on connect plus OK.
            connect: Websocket connect factory, replaceable in tests.
        """
        self.secret = secret
        self.relays = list(relays)
        self.timeout = timeout
        self._connect = connect

    @property
    def pubkey(self) -> str:
        return events.derive_public_key(self.secret)

    def build(
        self, subscription: Subscription, amount_sats: int, payment_hash: Optional[str] = None
    ) -> Event:
        return events.sign_event(
            self.secret,
            kind=RECEIPT_KIND,
            content=receipt_content(subscription.tier),
            tags=receipt_tags(subscription, amount_sats, payment_hash),
            created_at=_timestamp(subscription.activated_at),
        )

    async def publish(
        self, subscription: Subscription, amount_sats: int, payment_hash: Optional[str] = None
    ) -> int:
        """Publish the receipt for ``subscription``.

        Returns:
            The number of relays that accepted it.
        """
        event = self.build(subscription, amount_sats, payment_hash)
        results = await asyncio.gather(
            *(publish_event(relay, event, self.timeout, self._connect) for relay in self.relays)
        )
        accepted = sum(1 for ok in results if ok)
        if accepted:
            logger.info(
                f"Published {subscription.tier} receipt {event.id().to_hex()} for "
                f"{subscription.identity} to {accepted}/{len(self.relays)} relays"
            )
        else:
            logger.warning(f"No relay accepted the receipt for {subscription.identity}")
        return accepted
