"""Subscription tier lookup used to price rewards."""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

import websockets

from runstr_rewards.database import Database
from runstr_rewards.logging_utils import get_logger
from runstr_rewards.models import TierInfo
from runstr_rewards.nwc.relay import query_relay

from .destinations import pubkey_from_identity
from .receipts import RECEIPT_KIND, parse_receipt

logger = get_logger(__name__)


class TierLookup(ABC):
    """Read-only view of who is subscribed at which tier."""

    @abstractmethod
    async def lookup(self, identity: str) -> Optional[TierInfo]:
        """Return the identity's tier, or None when it has no subscription."""


class DatabaseTierLookup(TierLookup):
    """Tier from the locally recorded, unexpired subscription."""

    def __init__(self, database: Database):
        self.database = database

    async def lookup(self, identity: str) -> Optional[TierInfo]:
        subscription = await self.database.get_subscription(identity)
        if subscription is None:
            return None
        if subscription.expires_at <= datetime.utcnow():
            logger.info(f"Subscription for {identity} expired at {subscription.expires_at.isoformat()}")
            return None
        return TierInfo(tier=subscription.tier, member_count=subscription.member_count)


class StaticTierLookup(TierLookup):
    """Fixed tier assignment. Captain wins when an identity is listed twice."""

    def __init__(
        self,
        members: Iterable[str] = (),
        captains: Optional[Dict[str, int]] = None,
    ):
        """Initialize the lookup.

        Args:
            members: Identities holding the member tier.
            captains: Captain identities mapped to their team member count.
        """
        self.members = set(members)
        self.captains = dict(captains or {})

    async def lookup(self, identity: str) -> Optional[TierInfo]:
        if identity in self.captains:
            return TierInfo(tier="captain", member_count=self.captains[identity])
        if identity in self.members:
            return TierInfo(tier="member")
        return None


class ReceiptTierLookup(TierLookup):
    """Tier from the newest unexpired receipt an issuer published on relays.

    Receipts carry no team size, so captains found this way get no bonus.
    """

    def __init__(
        self,
        issuer_pubkey: str,
        relays: List[str],
        timeout: float = 3.0,
        connect: Callable[..., Any] = websockets.connect,
    ):
        self.issuer_pubkey = issuer_pubkey
        self.relays = list(relays)
        self.timeout = timeout
        self._connect = connect

    async def lookup(self, identity: str) -> Optional[TierInfo]:
        pubkey = pubkey_from_identity(identity)
        if pubkey is None:
            return None

        receipt_filter = {"kinds": [RECEIPT_KIND], "authors": [self.issuer_pubkey], "#p": [pubkey]}
        results = await asyncio.gather(
            *(query_relay(relay, receipt_filter, self.timeout, self._connect) for relay in self.relays)
        )
        now = datetime.utcnow()
        live = []
        for found in results:
            for event in found:
                if event.author().to_hex() != self.issuer_pubkey:
                    continue
                receipt = parse_receipt(event)
                if receipt and receipt.purchaser_pubkey == pubkey and receipt.expires_at > now:
                    live.append(receipt)
        if not live:
            return None

        newest = max(live, key=lambda receipt: receipt.purchased_at)
        logger.info(
            f"Receipt gives {identity} the {newest.tier} tier until {newest.expires_at.isoformat()}"
        )
        return TierInfo(tier=newest.tier)


class ChainedTierLookup(TierLookup):
    """First answer from a sequence of lookups."""

    def __init__(self, *lookups: TierLookup):
        self.lookups = lookups

    async def lookup(self, identity: str) -> Optional[TierInfo]:
        for tier_lookup in self.lookups:
            info = await tier_lookup.lookup(identity)
            if info is not None:
                return info
        return None
