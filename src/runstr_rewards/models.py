"""Shared data models for the reward service.

All Pydantic models persisted by the database or returned by the engine.
"""

from datetime import date, datetime
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

Tier = Literal["member", "captain"]


class StreakRecord(BaseModel):
    """Per-identity streak state.

    ``last_rewarded_day`` never exceeds ``min(current_streak_days, cap_days)``
    after a completed accrual and payout cycle.
    """

    identity: str = Field(description="User identity (hex pubkey, npub or lightning address)")
    current_streak_days: int = Field(default=0, ge=0)
    last_rewarded_day: int = Field(default=0, ge=0, description="Highest streak day paid out")
    last_activity_day: Optional[date] = Field(default=None, description="UTC day of the last activity")
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class PendingPayment(BaseModel):
    """Subscription invoice waiting for payment."""

    identity: str
    invoice: str
    payment_hash: Optional[str] = None
    tier: Tier
    amount_sats: int
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Subscription(BaseModel):
    """Active paid subscription."""

    identity: str
    tier: Tier
    member_count: int = Field(default=0, ge=0, description="Team size, used for the captain bonus")
    activated_at: datetime = Field(default_factory=datetime.utcnow)
    expires_at: datetime
    verification_method: Optional[str] = None


class TierInfo(BaseModel):
    """What the subscription lookup knows about an identity."""

    tier: Tier
    member_count: int = 0


class PayoutAttempt(BaseModel):
    """One try of one destination."""

    destination: str
    success: bool
    error: Optional[str] = None
    preimage: Optional[str] = None
    outcome_unknown: bool = False
    attempted_at: datetime = Field(default_factory=datetime.utcnow)


class PayoutRecord(BaseModel):
    """One payout sequence and its attempt log."""

    payout_id: str
    identity: str
    amount_sats: int
    effective_days: int
    status: Literal["pending", "completed", "failed", "unknown"] = Field(default="pending")
    destination: Optional[str] = Field(
        default=None, description="Destination that succeeded or whose outcome is unknown"
    )
    invoice: Optional[str] = Field(default=None, description="Invoice paid to the destination")
    preimage: Optional[str] = None
    attempts: List[PayoutAttempt] = Field(default_factory=list)
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    correlation_id: Optional[str] = None


class RewardStatus(str, Enum):
    NOTHING_OWED = "nothing_owed"
    NO_TIER = "no_tier"
    PAID = "paid"
    NO_DESTINATION = "no_destination"
    FAILED = "failed"
    PAYOUT_UNKNOWN = "payout_unknown"


class RewardOutcome(BaseModel):
    """Informational result of one accrue-and-pay pass."""

    identity: str
    status: RewardStatus
    streak: StreakRecord
    owed_days: int = 0
    effective_days: int = 0
    amount_sats: int = 0
    tier: Optional[Tier] = None
    message: str = ""
    payout: Optional[PayoutRecord] = None


class VerificationMethod(str, Enum):
    DIRECT = "direct"
    SCANNED = "scanned"
    OPTIMISTIC = "optimistic"


class VerificationResult(BaseModel):
    """Outcome of the payment verification chain.

    ``paid`` and ``unpaid`` results carry the method that decided them;
    ``optimistic`` ones were not confirmed by the wallet and should be audited.
    """

    status: Literal["paid", "unpaid", "unreachable"]
    method: Optional[VerificationMethod] = None
    payment_hash: Optional[str] = None
    detail: Optional[str] = None

    @property
    def paid(self) -> bool:
        return self.status == "paid"

    @property
    def needs_audit(self) -> bool:
        return self.method == VerificationMethod.OPTIMISTIC
