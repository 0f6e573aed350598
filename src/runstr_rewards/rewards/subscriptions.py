"""Subscription invoices: issue, verify and activate.

An issued invoice is kept as a PendingPayment per identity until it is
verified as paid or passes its age bound, after which a new invoice has to
be generated. Activation optionally publishes a receipt event; a receipt
that no relay accepts is logged and does not undo the activation.
"""

from datetime import datetime, timedelta
from typing import Literal, Optional

from pydantic import BaseModel

from runstr_rewards.database import Database
from runstr_rewards.logging_utils import get_logger
from runstr_rewards.models import PendingPayment, Subscription, Tier, VerificationMethod
from runstr_rewards.nwc.client import NWCClient

from .destinations import canonical_identity
from .receipts import ReceiptPublisher
from .verification import PaymentVerifier

logger = get_logger(__name__)


class SubscriptionVerification(BaseModel):
    """Result of checking a pending subscription payment."""

    status: Literal["activated", "unpaid", "expired", "not_found", "unreachable"]
    tier: Optional[Tier] = None
    method: Optional[VerificationMethod] = None
    needs_audit: bool = False
    subscription: Optional[Subscription] = None
    receipt_relays: int = 0
    message: str = ""


class SubscriptionService:
    """Sells member and captain subscriptions through the treasury wallet."""

    def __init__(
        self,
        database: Database,
        client: NWCClient,
        verifier: PaymentVerifier,
        member_price_sats: int = 5000,
        captain_price_sats: int = 10000,
        max_pending_age: timedelta = timedelta(hours=24),
        period: timedelta = timedelta(days=30),
        receipts: Optional[ReceiptPublisher] = None,
    ):
        self.database = database
        self.client = client
        self.verifier = verifier
        self.prices = {"member": member_price_sats, "captain": captain_price_sats}
        self.max_pending_age = max_pending_age
        self.period = period
        self.receipts = receipts

    def price_for(self, tier: str) -> int:
        if tier not in self.prices:
            raise ValueError(f"Invalid subscription tier {tier!r}. Must be 'member' or 'captain'")
        return self.prices[tier]

    async def issue_invoice(self, identity: str, tier: Tier) -> PendingPayment:
        """Create an invoice for ``tier`` and remember it as pending.

        Raises:
            ValueError: Unknown tier.
            NWCError: The treasury wallet could not issue the invoice.
        """
        identity = canonical_identity(identity)
        amount = self.price_for(tier)
        invoice = await self.client.make_invoice(
            amount, memo=f"RUNSTR {tier.capitalize()} Subscription - {identity[:16]}"
        )
        pending = PendingPayment(
            identity=identity,
            invoice=invoice.invoice,
            payment_hash=invoice.payment_hash,
            tier=tier,
            amount_sats=amount,
        )
        await self.database.save_pending_payment(pending)
        logger.info(f"Issued {amount} sat {tier} invoice for {identity}")
        return pending

    async def verify(self, identity: str) -> SubscriptionVerification:
        """Check the pending invoice of ``identity`` and activate on payment."""
        identity = canonical_identity(identity)
        pending = await self.database.get_pending_payment(identity)
        if pending is None:
            return SubscriptionVerification(
                status="not_found", message="No pending payment. Generate an invoice first."
            )

        if datetime.utcnow() - pending.created_at > self.max_pending_age:
            await self.database.delete_pending_payment(identity)
            logger.info(f"Pending {pending.tier} invoice for {identity} expired")
            return SubscriptionVerification(
                status="expired",
                tier=pending.tier,
                message="Payment expired. Please generate a new invoice.",
            )

        issued_at = (pending.created_at - datetime(1970, 1, 1)).total_seconds()
        result = await self.verifier.verify(pending.invoice, pending.payment_hash, issued_at)

        if result.status == "unreachable":
            return SubscriptionVerification(
                status="unreachable",
                tier=pending.tier,
                message="Could not reach the wallet to verify payment. Try again shortly.",
            )
        if result.status == "unpaid":
            return SubscriptionVerification(
                status="unpaid",
                tier=pending.tier,
                method=result.method,
                message="Invoice has not been paid yet.",
            )

        now = datetime.utcnow()
        subscription = Subscription(
            identity=identity,
            tier=pending.tier,
            activated_at=now,
            expires_at=now + self.period,
            verification_method=result.method.value if result.method else None,
        )
        await self.database.save_subscription(subscription)
        await self.database.delete_pending_payment(identity)

        receipt_relays = 0
        if self.receipts is not None:
            receipt_relays = await self.receipts.publish(
                subscription, pending.amount_sats, pending.payment_hash
            )

        if result.needs_audit:
            logger.warning(f"Subscription for {identity} activated without settlement proof")
        return SubscriptionVerification(
            status="activated",
            tier=pending.tier,
            method=result.method,
            needs_audit=result.needs_audit,
            subscription=await self.database.get_subscription(identity),
            receipt_relays=receipt_relays,
            message=f"{pending.tier.capitalize()} subscription active until {subscription.expires_at.date().isoformat()}.",
        )
