"""LNURL-pay invoice fetching for lightning addresses and bech32 LNURLs."""

from typing import Any, Dict, Optional

import bech32
import httpx

from runstr_rewards.logging_utils import get_logger

logger = get_logger(__name__)


class LnurlError(Exception):
    """The LNURL-pay service could not produce an invoice."""


def decode_lnurl(lnurl: str) -> str:
    """Decode a bech32 ``lnurl1...`` string to its https URL.

    LNURLs exceed the 90 character limit of ``bech32.bech32_decode``, so the
    checksum is verified directly.
    """
    lnurl = lnurl.strip().lower()
    if lnurl.startswith("lightning:"):
        lnurl = lnurl[len("lightning:"):]
    pos = lnurl.rfind("1")
    if pos < 1 or pos + 7 > len(lnurl):
        raise LnurlError("Malformed LNURL")
    hrp = lnurl[:pos]
    try:
        data = [bech32.CHARSET.index(c) for c in lnurl[pos + 1:]]
    except ValueError as e:
        raise LnurlError("LNURL contains invalid characters") from e
    if hrp != "lnurl" or not bech32.bech32_verify_checksum(hrp, data):
        raise LnurlError("LNURL checksum mismatch")
    decoded = bech32.convertbits(data[:-6], 5, 8, False)
    if decoded is None:
        raise LnurlError("LNURL payload is not byte aligned")
    return bytes(decoded).decode("utf-8")


def lnurlp_url(destination: str) -> str:
    """Return the LNURL-pay metadata URL for a lightning address or LNURL."""
    if "@" in destination:
        name, _, host = destination.strip().partition("@")
        if not name or not host:
            raise LnurlError(f"Malformed lightning address: {destination}")
        return f"https://{host}/.well-known/lnurlp/{name}"
    return decode_lnurl(destination)


class LightningAddressClient:
    """Fetch invoices from LNURL-pay endpoints."""

    def __init__(self, timeout: float = 10.0, http: Optional[httpx.AsyncClient] = None):
        self._http = http or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    async def close(self):
        await self._http.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            response = await self._http.get(url, params=params)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise LnurlError(f"LNURL request to {url} failed: {e}") from e
        except ValueError as e:
            raise LnurlError(f"LNURL response from {url} is not JSON") from e

        if not isinstance(data, dict):
            raise LnurlError(f"LNURL response from {url} is not an object")
        if str(data.get("status", "")).upper() == "ERROR":
            raise LnurlError(data.get("reason") or "LNURL service returned an error")
        return data

    async def fetch_invoice(self, destination: str, amount_sats: int, comment: str = "") -> str:
        """Request a bolt11 invoice for ``amount_sats`` from ``destination``.

        Args:
            destination: Lightning address (``name@host``) or bech32 LNURL.
            amount_sats: Amount to request.
            comment: Optional payer comment, trimmed to what the service allows.

        Returns:
            The bolt11 invoice.

        Raises:
            LnurlError: Lookup failed, the amount is out of range, or no invoice came back.
        """
        meta = await self._get_json(lnurlp_url(destination))

        callback = meta.get("callback")
        if not callback:
            raise LnurlError(f"No callback advertised for {destination}")

        amount_msat = amount_sats * 1000
        min_sendable = meta.get("minSendable")
        max_sendable = meta.get("maxSendable")
        if min_sendable is not None and amount_msat < int(min_sendable):
            raise LnurlError(f"{amount_sats} sats is below the minimum for {destination}")
        if max_sendable is not None and amount_msat > int(max_sendable):
            raise LnurlError(f"{amount_sats} sats is above the maximum for {destination}")

        params: Dict[str, Any] = {"amount": amount_msat}
        comment_allowed = int(meta.get("commentAllowed") or 0)
        if comment and comment_allowed > 0:
            params["comment"] = comment[:comment_allowed]

        logger.debug(f"Requesting {amount_sats} sat invoice from {destination}")
        result = await self._get_json(callback, params=params)

        invoice = result.get("pr")
        if not invoice:
            raise LnurlError(f"LNURL callback for {destination} returned no invoice")
        return invoice
