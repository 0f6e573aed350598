"""Pydantic models for the wallet-connect client."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

REQUEST_KIND = 23194
RESPONSE_KIND = 23195
INFO_KIND = 13194


class WalletInfo(BaseModel):
    """Result of ``get_info`` (plus ``get_balance`` when advertised)."""

    alias: Optional[str] = None
    pubkey: Optional[str] = None
    network: Optional[str] = None
    methods: List[str] = Field(default_factory=list)
    balance_msat: Optional[int] = Field(default=None, description="Balance in millisats")

    @property
    def balance_sats(self) -> Optional[int]:
        if self.balance_msat is None:
            return None
        return self.balance_msat // 1000

    def supports(self, method: str) -> bool:
        return method in self.methods


class Invoice(BaseModel):
    """Result of ``make_invoice``."""

    invoice: str
    payment_hash: Optional[str] = None
    amount_msat: Optional[int] = None
    created_at: Optional[int] = None
    expires_at: Optional[int] = None


class PaymentConfirmation(BaseModel):
    """Result of ``pay_invoice``. Wallets are not required to return a preimage."""

    preimage: Optional[str] = None
    fees_paid_msat: Optional[int] = None


class InvoiceLookup(BaseModel):
    """Result of ``lookup_invoice``.

    ``settled`` is None when the wallet returned no settlement field at all,
    which means the wallet cannot answer the question.
    """

    payment_hash: Optional[str] = None
    settled: Optional[bool] = None
    settled_at: Optional[int] = None
    preimage: Optional[str] = None
    state: Optional[str] = Field(None, description="Lowercased state or status string, when given")
    raw: Dict[str, Any] = Field(default_factory=dict)


class Transaction(BaseModel):
    """One entry of ``list_transactions``."""

    type: Optional[str] = None
    payment_hash: Optional[str] = None
    invoice: Optional[str] = None
    amount_msat: Optional[int] = None
    settled: bool = False
    settled_at: Optional[int] = None
    created_at: Optional[int] = None
    description: Optional[str] = None
