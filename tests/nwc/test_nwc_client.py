"""Unit tests for the typed RPC client."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from runstr_rewards.nwc.client import Method, NWCClient, TransactionDirection
from runstr_rewards.nwc.errors import NWCTimeoutError, RemoteError


def client_returning(*bodies):
    """NWCClient whose transport answers with ``bodies`` in order."""
    transport = MagicMock()
    transport.timeout = 30.0
    transport.send_request = AsyncMock(side_effect=list(bodies))
    return NWCClient(MagicMock(), transport=transport), transport


@pytest.mark.unit
class TestNWCClient:
    """Test request building and result decoding per method."""

    @pytest.mark.asyncio
    async def test_get_info_with_balance(self):
        client, transport = client_returning(
            {"result_type": "get_info", "result": {"alias": "Alby", "methods": ["get_info", "get_balance"]}},
            {"result_type": "get_balance", "result": {"balance": 2_500_000}},
        )

        info = await client.get_info()

        assert info.alias == "Alby"
        assert info.balance_msat == 2_500_000
        assert info.balance_sats == 2500
        assert transport.send_request.await_args_list[1].args[0]["method"] == "get_balance"

    @pytest.mark.asyncio
    async def test_get_info_without_balance_method(self):
        client, transport = client_returning(
            {"result_type": "get_info", "result": {"alias": "mini", "methods": ["pay_invoice"]}}
        )

        info = await client.get_info()

        assert info.balance_msat is None
        assert transport.send_request.await_count == 1

    @pytest.mark.asyncio
    async def test_make_invoice_sends_millisats(self):
        client, transport = client_returning(
            {"result_type": "make_invoice", "result": {"invoice": "lnbc50n1", "payment_hash": "ab" * 32}}
        )

        invoice = await client.make_invoice(5, memo="test")

        assert invoice.invoice == "lnbc50n1"
        assert invoice.payment_hash == "ab" * 32
        sent = transport.send_request.await_args.args[0]
        assert sent == {"method": "make_invoice", "params": {"amount": 5000, "description": "test"}}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5, 1.5, True])
    async def test_make_invoice_rejects_bad_amounts(self, amount):
        client, transport = client_returning()
        with pytest.raises(ValueError):
            await client.make_invoice(amount)
        transport.send_request.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_make_invoice_without_invoice_is_remote_error(self):
        client, _ = client_returning({"result_type": "make_invoice", "result": {}})
        with pytest.raises(RemoteError):
            await client.make_invoice(10)

    @pytest.mark.asyncio
    async def test_pay_invoice_without_preimage(self):
        client, _ = client_returning({"result_type": "pay_invoice", "result": {}})
        confirmation = await client.pay_invoice("lnbc1")
        assert confirmation.preimage is None

    @pytest.mark.asyncio
    async def test_lookup_invoice_without_settlement_field(self):
        client, _ = client_returning(
            {"result_type": "lookup_invoice", "result": {"payment_hash": "ab" * 32, "amount": 1000}}
        )
        lookup = await client.lookup_invoice(payment_hash="ab" * 32)
        assert lookup.settled is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "result,expected",
        [
            ({"settled_at": 1700000000}, True),
            ({"settled": False}, False),
            ({"paid": True}, True),
            ({"state": "pending"}, False),
            ({"status": "settled"}, True),
            ({"state": "failed", "settled_at": 1700000000}, False),
            ({"settled_at": None}, False),
        ],
    )
    async def test_lookup_invoice_settlement_signals(self, result, expected):
        client, _ = client_returning({"result_type": "lookup_invoice", "result": result})
        lookup = await client.lookup_invoice(invoice="lnbc1")
        assert lookup.settled is expected

    @pytest.mark.asyncio
    async def test_unpaid_incoming_invoice_with_preimage_is_not_settled(self):
        client, _ = client_returning(
            {
                "result_type": "lookup_invoice",
                "result": {"type": "incoming", "preimage": "11" * 32, "settled_at": None},
            }
        )
        lookup = await client.lookup_invoice(invoice="lnbc1")
        assert lookup.settled is False
        assert lookup.preimage == "11" * 32

    @pytest.mark.asyncio
    async def test_preimage_alone_is_no_settlement_signal(self):
        client, _ = client_returning(
            {"result_type": "lookup_invoice", "result": {"preimage": "11" * 32}}
        )
        lookup = await client.lookup_invoice(invoice="lnbc1")
        assert lookup.settled is None

    @pytest.mark.asyncio
    async def test_lookup_invoice_keeps_state(self):
        client, _ = client_returning(
            {"result_type": "lookup_invoice", "result": {"state": "EXPIRED"}}
        )
        lookup = await client.lookup_invoice(invoice="lnbc1")
        assert lookup.settled is False
        assert lookup.state == "expired"

    @pytest.mark.asyncio
    async def test_list_transactions(self):
        client, transport = client_returning(
            {
                "result_type": "list_transactions",
                "result": {
                    "transactions": [
                        {"type": "incoming", "payment_hash": "aa", "amount": 5000, "settled_at": 1700000000},
                        {"type": "incoming", "payment_hash": "bb", "amount": 1000},
                        "junk",
                    ]
                },
            }
        )

        transactions = await client.list_transactions(limit=50, direction=TransactionDirection.INCOMING)

        assert [t.payment_hash for t in transactions] == ["aa", "bb"]
        assert transactions[0].settled and not transactions[1].settled
        assert transport.send_request.await_args.args[0]["params"] == {"limit": 50, "type": "incoming"}

    @pytest.mark.asyncio
    async def test_errors_are_not_retried(self):
        client, transport = client_returning(NWCTimeoutError("get_info", 30.0))
        with pytest.raises(NWCTimeoutError):
            await client.call(Method.GET_INFO)
        assert transport.send_request.await_count == 1
