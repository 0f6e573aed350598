"""Quick debug script to check the treasury wallet connection."""

import asyncio
import sys

from runstr_rewards.config import config, validate_config_for_service
from runstr_rewards.nwc.client import NWCClient
from runstr_rewards.nwc.errors import NWCError


async def check_wallet(invoice_sats: int = 0):
    """Call get_info and, optionally, make_invoice on the treasury wallet."""
    print("🔍 Checking treasury wallet...\n")

    validate_config_for_service("wallet")
    client = NWCClient.from_uri(
        config.funding_nwc_uri,
        timeout=config.rpc_timeout_seconds,
        default_relay=config.default_relay,
    )
    print(f"Relay: {client.descriptor.relay_url}")
    print(f"Wallet pubkey: {client.descriptor.wallet_pubkey}")
    print(f"Client pubkey: {client.descriptor.client_pubkey}\n")

    try:
        info = await client.get_info()
    except NWCError as e:
        print(f"❌ get_info failed: {type(e).__name__}: {e}")
        return False

    print(f"✅ Alias: {info.alias or '(none)'}")
    print(f"Methods: {', '.join(info.methods) or '(none advertised)'}")
    print(f"Balance: {info.balance_sats if info.balance_sats is not None else 'unknown'} sats\n")

    if invoice_sats:
        try:
            invoice = await client.make_invoice(invoice_sats, memo="RUNSTR wallet check")
        except NWCError as e:
            print(f"❌ make_invoice failed: {type(e).__name__}: {e}")
            return False
        print(f"✅ Invoice: {invoice.invoice[:60]}...")
        print(f"Payment hash: {invoice.payment_hash or '(not provided)'}")

    return True


if __name__ == "__main__":
    amount = int(sys.argv[1]) if len(sys.argv) > 1 else 0
    ok = asyncio.run(check_wallet(amount))
    sys.exit(0 if ok else 1)
