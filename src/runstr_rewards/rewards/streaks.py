"""Streak accrual, eligibility and reward pricing.

Pure functions over :class:`StreakRecord`; persistence and payout live in
:mod:`runstr_rewards.rewards.engine`.
"""

import math
from dataclasses import dataclass
from datetime import date
from typing import Optional

from runstr_rewards.config import Config
from runstr_rewards.models import StreakRecord, TierInfo


@dataclass(frozen=True)
class StreakPolicy:
    """Reward constants."""

    base_rate_sats: int = 100
    cap_days: int = 7
    member_multiplier: float = 2.85
    captain_multiplier: float = 3.0
    captain_bonus_per_member_sats: int = 10
    captain_bonus_max_members: int = 50

    @classmethod
    def from_config(cls, cfg: Config) -> "StreakPolicy":
        return cls(
            base_rate_sats=cfg.streak_base_rate_sats,
            cap_days=cfg.streak_cap_days,
            member_multiplier=cfg.member_multiplier,
            captain_multiplier=cfg.captain_multiplier,
            captain_bonus_per_member_sats=cfg.captain_bonus_per_member_sats,
            captain_bonus_max_members=cfg.captain_bonus_max_members,
        )


def accrue(record: StreakRecord, activity_day: date) -> StreakRecord:
    """Apply one activity to a streak record.

    Same-day activity changes nothing. The next calendar day extends the
    streak. A gap, or an activity dated before the last one, starts a new
    streak at day 1; the reward counter restarts with it so that
    ``last_rewarded_day`` stays within the new streak.

    Args:
        record: Current state.
        activity_day: UTC calendar day of the new activity.

    Returns:
        A new record; ``record`` is not modified.
    """
    if record.last_activity_day is None:
        return record.model_copy(
            update={"current_streak_days": 1, "last_rewarded_day": 0, "last_activity_day": activity_day}
        )

    delta = (activity_day - record.last_activity_day).days
    if delta == 0:
        return record.model_copy()
    if delta == 1:
        return record.model_copy(
            update={
                "current_streak_days": record.current_streak_days + 1,
                "last_activity_day": activity_day,
            }
        )
    return record.model_copy(
        update={"current_streak_days": 1, "last_rewarded_day": 0, "last_activity_day": activity_day}
    )


def effective_days(current_streak_days: int, cap_days: int) -> int:
    return min(current_streak_days, cap_days)


def owed_days(record: StreakRecord, cap_days: int) -> int:
    """Streak days reached but not yet paid, never negative."""
    return max(0, effective_days(record.current_streak_days, cap_days) - record.last_rewarded_day)


def daily_rate(policy: StreakPolicy, tier: Optional[str]) -> int:
    """Sats per owed day for a tier, rounded down. No tier earns nothing."""
    if tier == "captain":
        multiplier = policy.captain_multiplier
    elif tier == "member":
        multiplier = policy.member_multiplier
    else:
        return 0
    # round first so 100 * 2.85 does not floor to 284
    return math.floor(round(policy.base_rate_sats * multiplier, 6))


def captain_bonus(policy: StreakPolicy, member_count: int) -> int:
    """Per-day bonus for captains, scaled by team size up to the cap."""
    members = max(0, min(member_count, policy.captain_bonus_max_members))
    return members * policy.captain_bonus_per_member_sats


def reward_amount(policy: StreakPolicy, days: int, tier_info: Optional[TierInfo]) -> int:
    """Total sats for ``days`` owed days."""
    if tier_info is None or days <= 0:
        return 0
    amount = days * daily_rate(policy, tier_info.tier)
    if tier_info.tier == "captain":
        amount += days * captain_bonus(policy, tier_info.member_count)
    return amount


def reward_message(record: StreakRecord, policy: StreakPolicy, amount: int) -> str:
    """Describe the reward position of a streak for the user."""
    effective = effective_days(record.current_streak_days, policy.cap_days)
    days = owed_days(record, policy.cap_days)

    if record.current_streak_days == 0:
        return "No current streak."
    if days > 0 and amount > 0:
        return (
            f"Eligible for {amount} sats for reaching a {effective}-day streak "
            f"({days} new day(s))."
        )
    if days > 0:
        return (
            f"Streak at {record.current_streak_days} days. Subscribe to earn "
            f"rewards for {days} unpaid day(s)."
        )
    if effective == policy.cap_days and record.last_rewarded_day >= policy.cap_days:
        return (
            f"Streak at {record.current_streak_days} days "
            f"(reward cap of {policy.cap_days} days reached)."
        )
    return (
        f"Current streak: {record.current_streak_days} days. "
        f"Last rewarded for day {record.last_rewarded_day}."
    )
