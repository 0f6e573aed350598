"""Typed wallet-connect RPC client.

Each public coroutine maps to one wallet method, builds its parameters,
sends them through :class:`RelayTransport` and decodes the result into a
model from :mod:`runstr_rewards.nwc.types`. Nothing is retried here.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from runstr_rewards.logging_utils import get_logger

from .errors import RemoteError
from .transport import DEFAULT_TIMEOUT, RelayTransport
from .types import Invoice, InvoiceLookup, PaymentConfirmation, Transaction, WalletInfo
from .uri import DEFAULT_RELAY, ConnectionDescriptor, parse_connection_uri

logger = get_logger(__name__)


class Method(str, Enum):
    """Wallet methods this client knows how to call."""

    GET_INFO = "get_info"
    GET_BALANCE = "get_balance"
    MAKE_INVOICE = "make_invoice"
    PAY_INVOICE = "pay_invoice"
    LOOKUP_INVOICE = "lookup_invoice"
    LIST_TRANSACTIONS = "list_transactions"


class TransactionDirection(str, Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


SETTLED_STATES = ("settled", "paid", "complete", "completed")


def _state(result: Dict[str, Any]) -> Optional[str]:
    state = result.get("state") or result.get("status")
    return state.lower() if isinstance(state, str) else None


def _settlement_flag(result: Dict[str, Any]) -> Optional[bool]:
    """Read whatever settlement signal a wallet returned.

    An explicit state wins, then ``settled``/``paid`` booleans, then the
    presence of a ``settled_at`` key (null meaning unsettled). A preimage
    alone is not a settlement signal.
    Returns None when the result carries no settlement field at all.
    """
    state = _state(result)
    if state is not None:
        return state in SETTLED_STATES
    if "settled" in result:
        return bool(result["settled"])
    if "paid" in result:
        return bool(result["paid"])
    if "settled_at" in result:
        return bool(result["settled_at"])
    return None


class NWCClient:
    """RPC client for one remote wallet."""

    def __init__(
        self,
        descriptor: ConnectionDescriptor,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[RelayTransport] = None,
    ):
        """Initialize the client.

        Args:
            descriptor: Parsed wallet-connect URI.
            timeout: Per-call response deadline in seconds.
            transport: Pre-built transport, mainly for tests.
        """
        self.descriptor = descriptor
        self.transport = transport or RelayTransport(descriptor, timeout=timeout)

    @classmethod
    def from_uri(
        cls, uri: str, timeout: float = DEFAULT_TIMEOUT, default_relay: str = DEFAULT_RELAY
    ) -> "NWCClient":
        return cls(parse_connection_uri(uri, default_relay=default_relay), timeout=timeout)

    @property
    def timeout(self) -> float:
        return self.transport.timeout

    async def call(self, method: Method, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Invoke ``method`` and return its ``result`` object.

        Raises:
            NWCError: Any transport, decrypt or remote failure.
        """
        body = await self.transport.send_request(
            {"method": method.value, "params": params or {}}
        )
        result_type = body.get("result_type")
        if result_type and result_type != method.value:
            logger.warning(f"Wallet answered {method.value} with result_type {result_type}")
        result = body.get("result")
        return result if isinstance(result, dict) else {}

    async def get_info(self) -> WalletInfo:
        """Fetch wallet alias, capabilities and, when advertised, balance."""
        result = await self.call(Method.GET_INFO)
        methods = result.get("methods") or []
        info = WalletInfo(
            alias=result.get("alias"),
            pubkey=result.get("pubkey"),
            network=result.get("network"),
            methods=[m for m in methods if isinstance(m, str)],
        )
        if info.supports(Method.GET_BALANCE.value):
            try:
                info.balance_msat = await self.get_balance()
            except RemoteError as e:
                logger.warning(f"Wallet advertises get_balance but refused it: {e}")
        return info

    async def get_balance(self) -> Optional[int]:
        """Return the wallet balance in millisats."""
        result = await self.call(Method.GET_BALANCE)
        return _as_int(result.get("balance"))

    async def make_invoice(
        self, amount_sats: int, memo: str = "", expiry: Optional[int] = None
    ) -> Invoice:
        """Ask the wallet to issue an invoice.

        Args:
            amount_sats: Positive amount in sats. Wallet-specific minimums are
                left to the wallet.
            memo: Invoice description.
            expiry: Optional expiry in seconds.

        Returns:
            The invoice string and, if the wallet provides one, its payment hash.
        """
        if isinstance(amount_sats, bool) or not isinstance(amount_sats, int) or amount_sats <= 0:
            raise ValueError(f"Invoice amount must be a positive integer, got {amount_sats!r}")

        params: Dict[str, Any] = {"amount": amount_sats * 1000, "description": memo}
        if expiry:
            params["expiry"] = expiry
        result = await self.call(Method.MAKE_INVOICE, params)

        invoice = result.get("invoice")
        if not invoice:
            raise RemoteError("INVALID_RESPONSE", "make_invoice returned no invoice")
        return Invoice(
            invoice=invoice,
            payment_hash=result.get("payment_hash"),
            amount_msat=_as_int(result.get("amount")),
            created_at=_as_int(result.get("created_at")),
            expires_at=_as_int(result.get("expires_at")),
        )

    async def pay_invoice(self, invoice: str) -> PaymentConfirmation:
        """Pay a bolt11 invoice. A missing preimage is not an error."""
        result = await self.call(Method.PAY_INVOICE, {"invoice": invoice})
        return PaymentConfirmation(
            preimage=result.get("preimage"),
            fees_paid_msat=_as_int(result.get("fees_paid")),
        )

    async def lookup_invoice(
        self, payment_hash: Optional[str] = None, invoice: Optional[str] = None
    ) -> InvoiceLookup:
        """Look up settlement state of an invoice.

        ``settled`` on the result is None when the wallet gave no settlement
        field, which callers must read as "unsupported" rather than "unpaid".
        """
        if not payment_hash and not invoice:
            raise ValueError("lookup_invoice needs a payment hash or an invoice")
        params = {"payment_hash": payment_hash} if payment_hash else {"invoice": invoice}
        result = await self.call(Method.LOOKUP_INVOICE, params)
        return InvoiceLookup(
            payment_hash=result.get("payment_hash") or payment_hash,
            settled=_settlement_flag(result),
            state=_state(result),
            settled_at=_as_int(result.get("settled_at")),
            preimage=result.get("preimage"),
            raw=result,
        )

    async def list_transactions(
        self,
        limit: int = 50,
        direction: Optional[TransactionDirection] = None,
        since: Optional[int] = None,
    ) -> List[Transaction]:
        """List recent wallet transactions, newest first as the wallet returns them."""
        params: Dict[str, Any] = {"limit": limit}
        if direction is not None:
            params["type"] = direction.value
        if since is not None:
            params["from"] = since
        result = await self.call(Method.LIST_TRANSACTIONS, params)

        transactions = []
        for entry in result.get("transactions") or []:
            if not isinstance(entry, dict):
                continue
            transactions.append(
                Transaction(
                    type=entry.get("type"),
                    payment_hash=entry.get("payment_hash"),
                    invoice=entry.get("invoice"),
                    amount_msat=_as_int(entry.get("amount")),
                    settled=bool(_settlement_flag(entry)),
                    settled_at=_as_int(entry.get("settled_at")),
                    created_at=_as_int(entry.get("created_at")),
                    description=entry.get("description"),
                )
            )
        return transactions
