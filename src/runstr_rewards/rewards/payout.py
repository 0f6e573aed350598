"""Payout engine for sending rewards from the treasury wallet.

Destinations are tried one at a time in resolver order and the first
success ends the sequence. A payment whose outcome is unknown also ends it,
so one reward never reaches two destinations. Every try is appended to the
payout's attempt log.
"""

from typing import List, Optional

from runstr_rewards.logging_utils import get_logger
from runstr_rewards.models import PayoutAttempt, PayoutRecord
from runstr_rewards.nwc.client import NWCClient
from runstr_rewards.nwc.errors import NWCError, outcome_unknown
from runstr_rewards.nwc.lnurl import LightningAddressClient, LnurlError
from runstr_rewards.nwc.types import PaymentConfirmation
from runstr_rewards.nwc.uri import URI_SCHEMES

from .destinations import DestinationResolver, normalize_destination

logger = get_logger(__name__)

BOLT11_PREFIXES = ("lnbc", "lntb", "lnbcrt")

FAILED_PAYMENT_STATES = ("failed", "expired", "canceled", "cancelled")


class NoDestinationError(Exception):
    """The identity resolved to nothing payable."""

    def __init__(self, identity: str):
        self.identity = identity
        super().__init__(f"No payable destination for {identity}")


class AllAttemptsFailedError(Exception):
    """Every destination candidate failed."""

    def __init__(self, attempts: List[PayoutAttempt]):
        self.attempts = attempts
        summary = "; ".join(f"{a.destination}: {a.error}" for a in attempts)
        super().__init__(f"All {len(attempts)} payout attempts failed: {summary}")


class PayoutOutcomeUnknownError(Exception):
    """The treasury may have paid a destination, so no other one may be tried."""

    def __init__(self, destination: str, invoice: str, cause: Exception):
        self.destination = destination
        self.invoice = invoice
        self.cause = cause
        super().__init__(
            f"Outcome of payment to {destination} is unknown: {type(cause).__name__}: {cause}"
        )


class PayoutEngine:
    """Sends reward payments from the treasury wallet."""

    def __init__(
        self,
        client: NWCClient,
        resolver: DestinationResolver,
        lnurl: Optional[LightningAddressClient] = None,
    ):
        """Initialize the payout engine.

        Args:
            client: Treasury wallet client.
            resolver: Destination resolver for recipient identities.
            lnurl: LNURL-pay client for lightning address destinations.
        """
        self.client = client
        self.resolver = resolver
        self.lnurl = lnurl or LightningAddressClient()

    async def invoice_for(self, destination: str, amount_sats: int, memo: str) -> str:
        """Obtain a bolt11 invoice for one destination.

        Bolt11 invoices are returned as given. Lightning addresses and LNURLs
        go through LNURL-pay. A recipient wallet-connect URI is asked to
        ``make_invoice``.

        Raises:
            NWCError: The recipient wallet failed.
            LnurlError: No invoice could be obtained.
        """
        target = normalize_destination(destination)
        lowered = target.lower()

        if lowered.startswith(tuple(f"{scheme}:" for scheme in URI_SCHEMES)):
            recipient = NWCClient.from_uri(target, timeout=self.client.timeout)
            return (await recipient.make_invoice(amount_sats, memo)).invoice
        if "@" in target or lowered.startswith("lnurl"):
            return await self.lnurl.fetch_invoice(target, amount_sats, comment=memo)
        if lowered.startswith(BOLT11_PREFIXES):
            return target
        raise LnurlError(f"Unsupported destination format: {destination}")

    async def payment_settled(self, invoice: str) -> Optional[bool]:
        """Ask the treasury whether it paid ``invoice``.

        Returns:
            True when settled, False when the wallet reports the payment as
            failed or expired, None when it cannot tell.
        """
        try:
            lookup = await self.client.lookup_invoice(invoice=invoice)
        except NWCError as e:
            logger.warning(f"Could not look up payment of {invoice[:24]}: {type(e).__name__}: {e}")
            return None
        if lookup.settled:
            return True
        if lookup.state in FAILED_PAYMENT_STATES:
            return False
        return None

    async def send_reward(
        self, identity: str, amount_sats: int, memo: str, payout: PayoutRecord
    ) -> PayoutRecord:
        """Pay ``amount_sats`` to the first destination of ``identity`` that works.

        A destination is abandoned for the next one only when its failure is
        definite. When the treasury may have paid it, the wallet is asked
        about the invoice; if it cannot confirm either way the sequence stops.

        Args:
            identity: Recipient identity.
            amount_sats: Amount to send.
            memo: Invoice description / LNURL comment.
            payout: Record whose attempt log is extended in place.

        Returns:
            ``payout`` with ``destination``, ``invoice`` and ``preimage`` set.

        Raises:
            NoDestinationError: Nothing to pay.
            PayoutOutcomeUnknownError: A payment may have gone through.
                ``payout.destination`` and ``payout.invoice`` name it.
            AllAttemptsFailedError: Every candidate failed. The resolver cache
                for ``identity`` has been invalidated.
        """
        destinations = await self.resolver.resolve(identity)
        if not destinations:
            raise NoDestinationError(identity)

        logger.info(
            f"Initiating payout of {amount_sats} sats to {identity} "
            f"({len(destinations)} candidate(s))"
        )

        failed: List[PayoutAttempt] = []
        for destination in destinations:
            if await self.resolver.has_failed(destination):
                logger.info(f"Retrying {destination}, which failed previously")
            invoice: Optional[str] = None
            try:
                invoice = await self.invoice_for(destination, amount_sats, memo)
                confirmation = await self.client.pay_invoice(invoice)
            except NWCError as e:
                if invoice is None or not outcome_unknown(e):
                    failed.append(await self._record_failure(payout, destination, e))
                    continue
                preimage = await self._confirm_ambiguous(payout, destination, invoice, e)
                confirmation = PaymentConfirmation(preimage=preimage)
            except (LnurlError, ValueError) as e:
                failed.append(await self._record_failure(payout, destination, e))
                continue

            payout.attempts.append(
                PayoutAttempt(destination=destination, success=True, preimage=confirmation.preimage)
            )
            payout.destination = destination
            payout.invoice = invoice
            payout.preimage = confirmation.preimage
            await self.resolver.record_success(destination)
            logger.info(f"Paid {amount_sats} sats to {destination}")
            return payout

        await self.resolver.invalidate(identity)
        raise AllAttemptsFailedError(failed)

    async def _record_failure(
        self, payout: PayoutRecord, destination: str, error: Exception
    ) -> PayoutAttempt:
        logger.warning(f"Payout to {destination} failed: {type(error).__name__}: {error}")
        attempt = PayoutAttempt(destination=destination, success=False, error=str(error))
        payout.attempts.append(attempt)
        await self.resolver.record_failure(destination, str(error))
        return attempt

    async def _confirm_ambiguous(
        self, payout: PayoutRecord, destination: str, invoice: str, error: NWCError
    ) -> Optional[str]:
        """Resolve a payment that may have gone through.

        Returns the preimage the wallet reports when it confirms settlement.

        Raises:
            PayoutOutcomeUnknownError: The wallet could not confirm it.
        """
        logger.warning(
            f"Payment to {destination} may have succeeded ({type(error).__name__}: {error}), "
            f"checking with the treasury wallet"
        )
        try:
            lookup = await self.client.lookup_invoice(invoice=invoice)
        except NWCError as e:
            logger.warning(f"Lookup of ambiguous payment to {destination} failed: {e}")
            lookup = None
        if lookup is not None and lookup.settled:
            logger.info(f"Treasury confirmed payment to {destination} after {type(error).__name__}")
            return lookup.preimage

        payout.attempts.append(
            PayoutAttempt(
                destination=destination, success=False, error=str(error), outcome_unknown=True
            )
        )
        payout.destination = destination
        payout.invoice = invoice
        raise PayoutOutcomeUnknownError(destination, invoice, error)
