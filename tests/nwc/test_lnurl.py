"""Unit tests for LNURL-pay invoice fetching."""

import bech32
import httpx
import pytest

from runstr_rewards.nwc.lnurl import LightningAddressClient, LnurlError, decode_lnurl, lnurlp_url


def encode_lnurl(url: str) -> str:
    data = bech32.convertbits(url.encode(), 8, 5, True)
    checksum = bech32.bech32_create_checksum("lnurl", data)
    return "lnurl1" + "".join(bech32.CHARSET[d] for d in data + checksum)


def lnurl_service(meta=None, callback=None):
    """MockTransport serving a lightning address at getalby.test."""
    meta = meta or {
        "callback": "https://getalby.test/callback",
        "minSendable": 1000,
        "maxSendable": 10_000_000,
        "commentAllowed": 10,
        "tag": "payRequest",
    }
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path == "/.well-known/lnurlp/runner":
            return httpx.Response(200, json=meta)
        if request.url.path == "/callback":
            return httpx.Response(200, json=callback or {"pr": "lnbc1invoice", "routes": []})
        return httpx.Response(404)

    return httpx.MockTransport(handler), seen


@pytest.mark.unit
class TestLnurl:
    """Test lightning address resolution and callback handling."""

    def test_lightning_address_url(self):
        assert lnurlp_url("runner@getalby.test") == "https://getalby.test/.well-known/lnurlp/runner"

    def test_decode_bech32_lnurl(self):
        url = "https://service.test/api/v1/lnurl/pay/some-long-identifier-that-exceeds-ninety-chars"
        assert decode_lnurl(encode_lnurl(url)) == url

    def test_decode_rejects_bad_checksum(self):
        encoded = encode_lnurl("https://service.test/pay")
        broken = encoded[:-1] + ("q" if encoded[-1] != "q" else "p")
        with pytest.raises(LnurlError):
            decode_lnurl(broken)

    @pytest.mark.asyncio
    async def test_fetch_invoice(self):
        transport, seen = lnurl_service()
        async with LightningAddressClient(http=httpx.AsyncClient(transport=transport)) as client:
            invoice = await client.fetch_invoice("runner@getalby.test", 21, comment="streak reward day 3")

        assert invoice == "lnbc1invoice"
        callback = seen[-1]
        assert callback.url.params["amount"] == "21000"
        assert callback.url.params["comment"] == "streak rew"

    @pytest.mark.asyncio
    async def test_amount_below_minimum(self):
        transport, _ = lnurl_service(
            meta={"callback": "https://getalby.test/callback", "minSendable": 100_000, "maxSendable": 1_000_000}
        )
        async with LightningAddressClient(http=httpx.AsyncClient(transport=transport)) as client:
            with pytest.raises(LnurlError):
                await client.fetch_invoice("runner@getalby.test", 10)

    @pytest.mark.asyncio
    async def test_error_status(self):
        transport, _ = lnurl_service(callback={"status": "ERROR", "reason": "Amount too large"})
        async with LightningAddressClient(http=httpx.AsyncClient(transport=transport)) as client:
            with pytest.raises(LnurlError, match="Amount too large"):
                await client.fetch_invoice("runner@getalby.test", 21)

    @pytest.mark.asyncio
    async def test_unknown_user(self):
        transport, _ = lnurl_service()
        async with LightningAddressClient(http=httpx.AsyncClient(transport=transport)) as client:
            with pytest.raises(LnurlError):
                await client.fetch_invoice("nobody@getalby.test", 21)
