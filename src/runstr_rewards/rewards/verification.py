"""Payment verification for invoices issued by the treasury wallet.

Tries, in order, a direct ``lookup_invoice``, a scan of recent incoming
transactions, and finally a reachability check. Only the first two confirm
settlement; the last one is an optimistic answer that callers should flag.
"""

import time
from typing import Optional

from runstr_rewards.cache import CacheBackend
from runstr_rewards.logging_utils import get_logger
from runstr_rewards.models import VerificationMethod, VerificationResult
from runstr_rewards.nwc.client import NWCClient, TransactionDirection
from runstr_rewards.nwc.errors import NWCError

logger = get_logger(__name__)


class PaymentVerifier:
    """Decides whether an invoice has been paid."""

    def __init__(
        self,
        client: NWCClient,
        scan_limit: int = 50,
        scan_window_seconds: int = 30 * 60,
        cache: Optional[CacheBackend] = None,
    ):
        """Initialize the verifier.

        Args:
            client: Client for the wallet that issued the invoices. Give it a
                short timeout, these checks sit on interactive paths.
            scan_limit: How many recent incoming transactions to scan.
            scan_window_seconds: How long after issuance a settlement still
                counts as a match during the scan.
            cache: Optional store of confirmed payment hashes.
        """
        self.client = client
        self.scan_limit = scan_limit
        self.scan_window_seconds = scan_window_seconds
        self.cache = cache

    async def verify(
        self,
        invoice: str,
        payment_hash: Optional[str] = None,
        issued_at: Optional[float] = None,
    ) -> VerificationResult:
        """Run the verification chain.

        Args:
            invoice: The bolt11 invoice that was issued.
            payment_hash: Its payment hash, if known.
            issued_at: Unix time the invoice was issued.

        Returns:
            ``paid`` with the deciding method, ``unpaid`` when the wallet
            conclusively reports no settlement, or ``unreachable`` when the
            wallet cannot be reached at all.
        """
        cache_key = payment_hash or invoice
        if self.cache is not None:
            cached = await self.cache.get(cache_key)
            if cached is not None:
                return VerificationResult.model_validate(cached)

        result = await self._lookup(invoice, payment_hash)
        if result is None:
            result = await self._scan(invoice, payment_hash, issued_at)
        if result is None:
            result = await self._reachability(payment_hash)

        if self.cache is not None and result.paid and result.method != VerificationMethod.OPTIMISTIC:
            await self.cache.put(cache_key, result.model_dump(mode="json"))
        return result

    async def _lookup(self, invoice: str, payment_hash: Optional[str]) -> Optional[VerificationResult]:
        try:
            if payment_hash:
                lookup = await self.client.lookup_invoice(payment_hash=payment_hash)
            else:
                lookup = await self.client.lookup_invoice(invoice=invoice)
        except NWCError as e:
            logger.info(f"lookup_invoice unavailable ({type(e).__name__}: {e}), scanning transactions")
            return None

        if lookup.settled is None:
            logger.info("lookup_invoice returned no settlement field, scanning transactions")
            return None

        status = "paid" if lookup.settled else "unpaid"
        logger.info(f"Invoice {payment_hash or invoice[:24]} is {status} (direct lookup)")
        return VerificationResult(
            status=status,
            method=VerificationMethod.DIRECT,
            payment_hash=lookup.payment_hash or payment_hash,
        )

    async def _scan(
        self, invoice: str, payment_hash: Optional[str], issued_at: Optional[float]
    ) -> Optional[VerificationResult]:
        try:
            transactions = await self.client.list_transactions(
                limit=self.scan_limit, direction=TransactionDirection.INCOMING
            )
        except NWCError as e:
            logger.info(f"list_transactions unavailable ({type(e).__name__}: {e})")
            return None

        if issued_at is None:
            window_start = time.time() - self.scan_window_seconds
            window_end = None
        else:
            window_start = issued_at
            window_end = issued_at + self.scan_window_seconds

        for tx in transactions:
            matches = (payment_hash and tx.payment_hash == payment_hash) or (
                tx.invoice and tx.invoice == invoice
            )
            if not matches or not tx.settled:
                continue
            if tx.settled_at is not None:
                if tx.settled_at < window_start or (window_end is not None and tx.settled_at > window_end):
                    continue
            logger.info(f"Invoice {payment_hash or invoice[:24]} found settled in transaction list")
            return VerificationResult(
                status="paid",
                method=VerificationMethod.SCANNED,
                payment_hash=tx.payment_hash or payment_hash,
            )

        logger.info(f"No settled match among {len(transactions)} recent transactions")
        return None

    async def _reachability(self, payment_hash: Optional[str]) -> VerificationResult:
        try:
            await self.client.get_info()
        except NWCError as e:
            logger.warning(f"Wallet unreachable during verification: {e}")
            return VerificationResult(
                status="unreachable", payment_hash=payment_hash, detail=str(e)
            )

        logger.warning(
            f"Treating {payment_hash or 'invoice'} as paid without settlement proof (optimistic)"
        )
        return VerificationResult(
            status="paid",
            method=VerificationMethod.OPTIMISTIC,
            payment_hash=payment_hash,
            detail="Wallet reachable but settlement could not be confirmed",
        )
