"""RUNSTR reward service.

FastAPI application exposing:
- streak activity intake and reward payout
- streak status, reset and payout history
- subscription invoices and payment verification
- treasury wallet health
"""

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional

import uvicorn
from fastapi import FastAPI, Header, HTTPException, Request
from pydantic import BaseModel, Field

from runstr_rewards.cache import SqliteCache
from runstr_rewards.config import config, validate_config_for_service
from runstr_rewards.database import Database, db
from runstr_rewards.logging_utils import CorrelationIdContext, get_logger, setup_logging
from runstr_rewards.models import Tier
from runstr_rewards.nwc.client import NWCClient
from runstr_rewards.nwc.errors import NWCError
from runstr_rewards.nwc.lnurl import LightningAddressClient

from .destinations import DestinationResolver, RelayProfileLookup, canonical_identity
from .engine import RewardEngine
from .payout import PayoutEngine
from .streaks import StreakPolicy
from .subscriptions import SubscriptionService
from .receipts import ReceiptPublisher
from .tiers import ChainedTierLookup, DatabaseTierLookup, ReceiptTierLookup, TierLookup
from .verification import PaymentVerifier

logger = get_logger(__name__)


class ActivityRequest(BaseModel):
    identity: str = Field(min_length=1)
    activity_day: Optional[date] = Field(default=None, description="UTC day, defaults to today")


class SyncRequest(BaseModel):
    streak_days: int = Field(ge=0)


class InvoiceRequest(BaseModel):
    identity: str = Field(min_length=1)
    tier: Tier


class VerifyRequest(BaseModel):
    identity: str = Field(min_length=1)


class MemberCountRequest(BaseModel):
    member_count: int = Field(ge=0)


@dataclass
class Services:
    """Everything the endpoints need, built once at startup."""

    database: Database
    wallet: NWCClient
    engine: RewardEngine
    subscriptions: SubscriptionService


def build_services(database: Database = db) -> Services:
    """Wire the service graph from configuration."""
    wallet = NWCClient.from_uri(
        config.funding_nwc_uri,
        timeout=config.rpc_timeout_seconds,
        default_relay=config.default_relay,
    )
    verification_wallet = NWCClient(wallet.descriptor, timeout=config.verification_timeout_seconds)

    resolver = DestinationResolver(
        RelayProfileLookup(config.profile_relays, timeout=config.profile_lookup_timeout_seconds),
        cache=SqliteCache(database, "destinations"),
        failures=SqliteCache(database, "failed_destinations"),
        ttl_seconds=config.resolver_cache_ttl_seconds,
    )
    payout_engine = PayoutEngine(wallet, resolver, LightningAddressClient())
    receipts = ReceiptPublisher(
        config.receipt_secret.lower() or wallet.descriptor.secret,
        config.receipt_relays,
        timeout=config.receipt_timeout_seconds,
    )
    tier_lookup: TierLookup = DatabaseTierLookup(database)
    if config.receipt_tier_lookup:
        tier_lookup = ChainedTierLookup(
            tier_lookup,
            ReceiptTierLookup(
                receipts.pubkey, config.receipt_relays, timeout=config.profile_lookup_timeout_seconds
            ),
        )
    engine = RewardEngine(database, payout_engine, tier_lookup, StreakPolicy.from_config(config))
    verifier = PaymentVerifier(
        verification_wallet,
        scan_limit=config.transaction_scan_limit,
        scan_window_seconds=config.transaction_scan_window_minutes * 60,
        cache=SqliteCache(database, "verified_payments"),
    )
    subscriptions = SubscriptionService(
        database,
        wallet,
        verifier,
        member_price_sats=config.member_price_sats,
        captain_price_sats=config.captain_price_sats,
        max_pending_age=timedelta(hours=config.pending_payment_max_age_hours),
        period=timedelta(days=config.subscription_period_days),
        receipts=receipts if config.publish_receipts else None,
    )
    return Services(database=database, wallet=wallet, engine=engine, subscriptions=subscriptions)


app = FastAPI(
    title="RUNSTR Rewards",
    description="Streak rewards and subscriptions paid over Nostr Wallet Connect",
)


@app.on_event("startup")
async def startup():
    """Validate configuration, create tables and wire services."""
    setup_logging(config.log_level, config.log_format)
    validate_config_for_service("server")
    logger.info("Initializing reward service...")
    await db.initialize()
    app.state.services = build_services(db)
    logger.info("Reward service initialized")


def _services(request: Request) -> Services:
    return request.app.state.services


@app.get("/health")
async def health_check() -> dict:
    """Health check endpoint."""
    return {"status": "ok", "service": "runstr-rewards"}


@app.post("/activity")
async def record_activity(
    body: ActivityRequest,
    request: Request,
    x_correlation_id: Optional[str] = Header(None),
):
    """Record an activity for a user and pay any newly owed streak reward."""
    with CorrelationIdContext(x_correlation_id):
        outcome = await _services(request).engine.accrue_and_pay(body.identity, body.activity_day)
        return outcome.model_dump(mode="json")


@app.post("/streaks/{identity}/sync")
async def sync_streak(
    identity: str,
    body: SyncRequest,
    request: Request,
    x_correlation_id: Optional[str] = Header(None),
):
    """Adopt an externally computed streak length."""
    with CorrelationIdContext(x_correlation_id):
        outcome = await _services(request).engine.sync_streak(identity, body.streak_days)
        return outcome.model_dump(mode="json")


@app.get("/streaks/{identity}")
async def get_streak(identity: str, request: Request):
    """Current streak and owed days."""
    status = await _services(request).engine.status(identity)
    if status is None:
        raise HTTPException(status_code=404, detail=f"No streak recorded for {identity}")
    record, owed = status
    return {"streak": record.model_dump(mode="json"), "owed_days": owed}


@app.delete("/streaks/{identity}")
async def reset_streak(identity: str, request: Request):
    """Explicit full reset of an identity's streak."""
    if not await _services(request).engine.reset(identity):
        raise HTTPException(status_code=404, detail=f"No streak recorded for {identity}")
    return {"status": "reset", "identity": identity}


@app.get("/payouts/{identity}")
async def list_payouts(identity: str, request: Request):
    payouts = await _services(request).database.list_payouts(canonical_identity(identity))
    return {"payouts": [p.model_dump(mode="json") for p in payouts]}


@app.post("/reconcile")
async def reconcile(request: Request, x_correlation_id: Optional[str] = Header(None)):
    """Retry payout for every identity with owed days."""
    with CorrelationIdContext(x_correlation_id):
        outcomes = await _services(request).engine.reconcile()
        return {"outcomes": [o.model_dump(mode="json") for o in outcomes]}


@app.get("/wallet/info")
async def wallet_info(request: Request):
    """Treasury wallet alias, capabilities and balance."""
    try:
        info = await _services(request).wallet.get_info()
    except NWCError as e:
        logger.error(f"Treasury wallet check failed: {e}", exc_info=True)
        raise HTTPException(status_code=502, detail=str(e))
    return {**info.model_dump(), "balance_sats": info.balance_sats}


@app.post("/subscriptions/invoice")
async def create_subscription_invoice(
    body: InvoiceRequest,
    request: Request,
    x_correlation_id: Optional[str] = Header(None),
):
    """Issue a subscription invoice for a tier."""
    with CorrelationIdContext(x_correlation_id):
        try:
            pending = await _services(request).subscriptions.issue_invoice(body.identity, body.tier)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except NWCError as e:
            logger.error(f"Invoice creation failed for {body.identity}: {e}", exc_info=True)
            raise HTTPException(status_code=502, detail=str(e))
        return pending.model_dump(mode="json")


@app.post("/subscriptions/verify")
async def verify_subscription(
    body: VerifyRequest,
    request: Request,
    x_correlation_id: Optional[str] = Header(None),
):
    """Verify the pending subscription payment of an identity."""
    with CorrelationIdContext(x_correlation_id):
        result = await _services(request).subscriptions.verify(body.identity)
        return result.model_dump(mode="json")


@app.get("/subscriptions/{identity}")
async def get_subscription(identity: str, request: Request):
    subscription = await _services(request).database.get_subscription(canonical_identity(identity))
    if subscription is None:
        raise HTTPException(status_code=404, detail=f"No subscription for {identity}")
    return subscription.model_dump(mode="json")


@app.put("/subscriptions/{identity}/members")
async def set_member_count(identity: str, body: MemberCountRequest, request: Request):
    """Record a captain's team size for the per-member bonus."""
    identity = canonical_identity(identity)
    if not await _services(request).database.set_member_count(identity, body.member_count):
        raise HTTPException(status_code=404, detail=f"No subscription for {identity}")
    return {"identity": identity, "member_count": body.member_count}


def main() -> None:
    uvicorn.run(
        "runstr_rewards.rewards.server:app",
        host=config.server_host,
        port=config.server_port,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    main()
