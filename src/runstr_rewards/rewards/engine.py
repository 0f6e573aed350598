"""Streak reward accrual and payout orchestration.

``accrue_and_pay`` is safe to call any number of times: the only mutation
that makes a reward non-repeatable is advancing ``last_rewarded_day``, and
that happens only after a payout succeeded. A payout whose outcome is unknown
blocks further payouts for that identity until the treasury wallet reports
it settled or failed. Calls for the same identity are serialized; different
identities proceed concurrently. Hex and npub forms of a key share state.
"""

import asyncio
import uuid
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Dict, List, Optional, Tuple

from runstr_rewards.database import Database
from runstr_rewards.logging_utils import CorrelationIdContext, get_correlation_id, get_logger
from runstr_rewards.models import PayoutRecord, RewardOutcome, RewardStatus, StreakRecord

from . import streaks
from .destinations import canonical_identity
from .payout import (
    AllAttemptsFailedError,
    NoDestinationError,
    PayoutEngine,
    PayoutOutcomeUnknownError,
)
from .streaks import StreakPolicy
from .tiers import TierLookup

logger = get_logger(__name__)

UNKNOWN_MESSAGE = "Reward payout is being confirmed with the wallet and will not be sent twice."


class _IdentityLock:
    """Lock plus the number of callers holding or waiting for it."""

    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class RewardEngine:
    """Accrues streak days and pays out what is owed."""

    def __init__(
        self,
        database: Database,
        payout_engine: PayoutEngine,
        tier_lookup: TierLookup,
        policy: Optional[StreakPolicy] = None,
    ):
        self.database = database
        self.payout_engine = payout_engine
        self.tier_lookup = tier_lookup
        self.policy = policy or StreakPolicy()
        self._locks: Dict[str, _IdentityLock] = {}

    @asynccontextmanager
    async def _serialized(self, identity: str):
        """Hold the lock for ``identity``, dropping it once nobody needs it."""
        entry = self._locks.get(identity)
        if entry is None:
            entry = self._locks[identity] = _IdentityLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[identity]

    async def _load(self, identity: str) -> StreakRecord:
        return await self.database.get_streak(identity) or StreakRecord(identity=identity)

    async def accrue_and_pay(
        self, identity: str, activity_day: Optional[date] = None
    ) -> RewardOutcome:
        """Record an activity and pay any newly owed streak days.

        Args:
            identity: User identity.
            activity_day: UTC calendar day of the activity, today if omitted.

        Returns:
            Informational outcome. Payout failures leave the reward owed and
            are reported through ``status`` rather than raised.
        """
        identity = canonical_identity(identity)
        activity_day = activity_day or datetime.utcnow().date()
        with CorrelationIdContext():
            async with self._serialized(identity):
                previous = await self._load(identity)
                record = streaks.accrue(previous, activity_day)
                if record != previous:
                    await self.database.save_streak(record)
                    logger.info(
                        f"Streak for {identity} now {record.current_streak_days} day(s) "
                        f"after activity on {activity_day.isoformat()}"
                    )
                return await self._settle(record)

    async def sync_streak(self, identity: str, streak_days: int) -> RewardOutcome:
        """Adopt a streak length computed elsewhere and pay what it makes owed.

        A shorter external streak never lowers the stored one.
        """
        if streak_days < 0:
            raise ValueError("streak_days must not be negative")
        identity = canonical_identity(identity)
        with CorrelationIdContext():
            async with self._serialized(identity):
                record = await self._load(identity)
                if streak_days > record.current_streak_days:
                    record = record.model_copy(update={"current_streak_days": streak_days})
                    await self.database.save_streak(record)
                    logger.info(f"Synced streak for {identity} to {streak_days} day(s)")
                return await self._settle(record)

    async def pay_owed(self, identity: str) -> RewardOutcome:
        """Retry payment of owed days without recording new activity."""
        identity = canonical_identity(identity)
        with CorrelationIdContext():
            async with self._serialized(identity):
                return await self._settle(await self._load(identity))

    async def reconcile(self) -> List[RewardOutcome]:
        """Pay every stored identity that still has owed days."""
        outcomes = []
        for record in await self.database.list_streaks():
            if streaks.owed_days(record, self.policy.cap_days) > 0:
                outcomes.append(await self.pay_owed(record.identity))
        logger.info(f"Reconciliation pass handled {len(outcomes)} identities")
        return outcomes

    async def status(self, identity: str) -> Optional[Tuple[StreakRecord, int]]:
        """Stored record and owed days, or None for unknown identities."""
        identity = canonical_identity(identity)
        record = await self.database.get_streak(identity)
        if record is None:
            return None
        return record, streaks.owed_days(record, self.policy.cap_days)

    async def reset(self, identity: str) -> bool:
        """Delete all streak state for an identity."""
        identity = canonical_identity(identity)
        async with self._serialized(identity):
            return await self.database.delete_streak(identity)

    async def _settle(self, record: StreakRecord) -> RewardOutcome:
        """Eligibility, pricing, payout and finalization. Caller holds the lock."""
        identity = record.identity
        policy = self.policy

        unresolved = await self.database.get_unresolved_payout(identity)
        if unresolved is not None:
            record, still_open = await self._resolve_unknown(record, unresolved)
            if still_open:
                return RewardOutcome(
                    identity=identity,
                    status=RewardStatus.PAYOUT_UNKNOWN,
                    streak=record,
                    owed_days=streaks.owed_days(record, policy.cap_days),
                    effective_days=streaks.effective_days(record.current_streak_days, policy.cap_days),
                    amount_sats=unresolved.amount_sats,
                    payout=unresolved,
                    message=UNKNOWN_MESSAGE,
                )

        effective = streaks.effective_days(record.current_streak_days, policy.cap_days)
        owed = streaks.owed_days(record, policy.cap_days)

        outcome = RewardOutcome(
            identity=identity,
            status=RewardStatus.NOTHING_OWED,
            streak=record,
            owed_days=owed,
            effective_days=effective,
        )
        if owed == 0:
            outcome.message = streaks.reward_message(record, policy, 0)
            return outcome

        tier_info = await self.tier_lookup.lookup(identity)
        amount = streaks.reward_amount(policy, owed, tier_info)
        outcome.tier = tier_info.tier if tier_info else None
        outcome.amount_sats = amount
        outcome.message = streaks.reward_message(record, policy, amount)
        if amount == 0:
            outcome.status = RewardStatus.NO_TIER
            logger.info(f"{identity} is owed {owed} day(s) but has no subscription tier")
            return outcome

        payout = PayoutRecord(
            payout_id=f"payout-{uuid.uuid4().hex[:12]}",
            identity=identity,
            amount_sats=amount,
            effective_days=effective,
            correlation_id=get_correlation_id(),
        )
        await self.database.save_payout(payout)

        memo = f"RUNSTR streak reward: day {effective} ({owed} new day(s))"
        try:
            await self.payout_engine.send_reward(identity, amount, memo, payout)
        except NoDestinationError as e:
            payout.status = "failed"
            payout.error_message = str(e)
            await self.database.save_payout(payout)
            outcome.status = RewardStatus.NO_DESTINATION
            outcome.payout = payout
            outcome.message = "Reward owed, but no lightning address is set to receive it."
            return outcome
        except AllAttemptsFailedError as e:
            payout.status = "failed"
            payout.error_message = str(e)
            await self.database.save_payout(payout)
            outcome.status = RewardStatus.FAILED
            outcome.payout = payout
            outcome.message = "Reward payout did not go through. It will be retried on your next activity."
            logger.warning(f"Payout {payout.payout_id} failed for {identity}, reward stays owed")
            return outcome
        except PayoutOutcomeUnknownError as e:
            payout.status = "unknown"
            payout.error_message = str(e)
            await self.database.save_payout(payout)
            outcome.status = RewardStatus.PAYOUT_UNKNOWN
            outcome.payout = payout
            outcome.message = UNKNOWN_MESSAGE
            logger.error(
                f"Payout {payout.payout_id} to {e.destination} has an unknown outcome, "
                f"holding rewards for {identity} until the wallet confirms it"
            )
            return outcome

        finalized = record.model_copy(
            update={"last_rewarded_day": max(record.last_rewarded_day, effective)}
        )
        await self.database.save_streak(finalized)

        payout.status = "completed"
        payout.completed_at = datetime.utcnow()
        await self.database.save_payout(payout)

        logger.info(
            f"Rewarded {identity} {amount} sats for streak day {effective} via {payout.destination}"
        )
        outcome.status = RewardStatus.PAID
        outcome.streak = finalized
        outcome.payout = payout
        return outcome

    async def _resolve_unknown(
        self, record: StreakRecord, payout: PayoutRecord
    ) -> Tuple[StreakRecord, bool]:
        """Ask the treasury about a payout whose outcome was unknown.

        Returns the possibly finalized record and whether the payout is
        still unresolved.
        """
        settled = None
        if payout.invoice:
            settled = await self.payout_engine.payment_settled(payout.invoice)
        if settled is None:
            logger.warning(f"Payout {payout.payout_id} for {record.identity} is still unconfirmed")
            return record, True

        if settled:
            effective = streaks.effective_days(record.current_streak_days, self.policy.cap_days)
            rewarded = max(record.last_rewarded_day, min(payout.effective_days, effective))
            record = record.model_copy(update={"last_rewarded_day": rewarded})
            await self.database.save_streak(record)
            payout.status = "completed"
            payout.completed_at = datetime.utcnow()
            logger.info(f"Treasury confirmed payout {payout.payout_id} to {payout.destination}")
        else:
            payout.status = "failed"
            payout.error_message = f"Wallet reports payment to {payout.destination} did not settle"
            logger.info(f"Payout {payout.payout_id} did not settle, reward stays owed")
        await self.database.save_payout(payout)
        return record, False
