"""SQLite persistence for the reward service.

Holds streak records, payout attempt logs, pending subscription invoices,
active subscriptions and the key/value cache entries used by the
destination resolver. Every record is written whole in a single statement.
"""

import asyncio
import json
from datetime import date, datetime
from typing import List, Optional, Tuple

import aiosqlite

from .config import config
from .logging_utils import get_logger
from .models import (
    PayoutAttempt,
    PayoutRecord,
    PendingPayment,
    StreakRecord,
    Subscription,
)

logger = get_logger(__name__)

# SQL Schema
SCHEMA_SQL = """
-- Streak state, one row per identity
CREATE TABLE IF NOT EXISTS streaks (
    identity TEXT PRIMARY KEY,
    current_streak_days INTEGER NOT NULL DEFAULT 0,
    last_rewarded_day INTEGER NOT NULL DEFAULT 0,
    last_activity_day TEXT,
    updated_at TEXT NOT NULL,
    CHECK (last_rewarded_day >= 0 AND current_streak_days >= 0)
);

-- Payout sequences with their attempt logs
CREATE TABLE IF NOT EXISTS payouts (
    payout_id TEXT PRIMARY KEY,
    identity TEXT NOT NULL,
    amount_sats INTEGER NOT NULL,
    effective_days INTEGER NOT NULL,
    status TEXT NOT NULL CHECK(status IN ('pending', 'completed', 'failed', 'unknown')),
    destination TEXT,
    invoice TEXT,
    preimage TEXT,
    attempts TEXT NOT NULL DEFAULT '[]',
    error_message TEXT,
    created_at TEXT NOT NULL,
    completed_at TEXT,
    correlation_id TEXT
);

-- Key/value cache entries (resolver caches)
CREATE TABLE IF NOT EXISTS cache_entries (
    namespace TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    stored_at REAL NOT NULL,
    PRIMARY KEY (namespace, key)
);

-- Subscription invoices awaiting payment
CREATE TABLE IF NOT EXISTS pending_payments (
    identity TEXT PRIMARY KEY,
    invoice TEXT NOT NULL,
    payment_hash TEXT,
    tier TEXT NOT NULL CHECK(tier IN ('member', 'captain')),
    amount_sats INTEGER NOT NULL,
    created_at TEXT NOT NULL
);

-- Paid subscriptions
CREATE TABLE IF NOT EXISTS subscriptions (
    identity TEXT PRIMARY KEY,
    tier TEXT NOT NULL CHECK(tier IN ('member', 'captain')),
    member_count INTEGER NOT NULL DEFAULT 0,
    activated_at TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    verification_method TEXT
);

CREATE INDEX IF NOT EXISTS idx_payouts_identity ON payouts(identity);
CREATE INDEX IF NOT EXISTS idx_payouts_status ON payouts(status);
"""


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class Database:
    """Async database interface for reward state."""

    def __init__(self, db_path: str = None):
        """Initialize database connection settings.

        Args:
            db_path: Path to SQLite database file. Defaults to config.database_path.
        """
        self.db_path = db_path or config.database_path
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Create tables and indexes."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.executescript(SCHEMA_SQL)
            await db.commit()
        logger.info(f"Database initialized at {self.db_path}")

    # Streak operations
    async def get_streak(self, identity: str) -> Optional[StreakRecord]:
        """Get the streak record for an identity.

        Args:
            identity: User identity.

        Returns:
            StreakRecord if found, None otherwise.
        """
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM streaks WHERE identity = ?", (identity,))
            row = await cursor.fetchone()

            if row:
                return StreakRecord(
                    identity=row["identity"],
                    current_streak_days=row["current_streak_days"],
                    last_rewarded_day=row["last_rewarded_day"],
                    last_activity_day=(
                        date.fromisoformat(row["last_activity_day"])
                        if row["last_activity_day"]
                        else None
                    ),
                    updated_at=datetime.fromisoformat(row["updated_at"]),
                )
            return None

    async def save_streak(self, record: StreakRecord) -> None:
        """Write a full streak record, replacing any previous row.

        Args:
            record: Record to persist.
        """
        record.updated_at = datetime.utcnow()
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO streaks
                (identity, current_streak_days, last_rewarded_day, last_activity_day, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(identity) DO UPDATE SET
                    current_streak_days = excluded.current_streak_days,
                    last_rewarded_day = excluded.last_rewarded_day,
                    last_activity_day = excluded.last_activity_day,
                    updated_at = excluded.updated_at
                """,
                (
                    record.identity,
                    record.current_streak_days,
                    record.last_rewarded_day,
                    record.last_activity_day.isoformat() if record.last_activity_day else None,
                    record.updated_at.isoformat(),
                ),
            )
            await db.commit()
        logger.debug(
            f"Saved streak for {record.identity}: days={record.current_streak_days} "
            f"last_rewarded={record.last_rewarded_day}"
        )

    async def delete_streak(self, identity: str) -> bool:
        """Remove a streak record.

        Returns:
            True if a record existed.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("DELETE FROM streaks WHERE identity = ?", (identity,))
            await db.commit()
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info(f"Reset streak for {identity}")
        return deleted

    async def list_streaks(self) -> List[StreakRecord]:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("SELECT identity FROM streaks ORDER BY identity")
            identities = [row[0] for row in await cursor.fetchall()]
        records = []
        for identity in identities:
            record = await self.get_streak(identity)
            if record:
                records.append(record)
        return records

    # Payout operations
    async def save_payout(self, payout: PayoutRecord) -> None:
        """Insert or overwrite a payout record with its attempt log.

        Args:
            payout: Payout to persist.
        """
        attempts = json.dumps([attempt.model_dump(mode="json") for attempt in payout.attempts])
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT OR REPLACE INTO payouts
                (payout_id, identity, amount_sats, effective_days, status, destination,
                 invoice, preimage, attempts, error_message, created_at, completed_at,
                 correlation_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    payout.payout_id,
                    payout.identity,
                    payout.amount_sats,
                    payout.effective_days,
                    payout.status,
                    payout.destination,
                    payout.invoice,
                    payout.preimage,
                    attempts,
                    payout.error_message,
                    payout.created_at.isoformat(),
                    _iso(payout.completed_at),
                    payout.correlation_id,
                ),
            )
            await db.commit()
        logger.info(f"Saved payout {payout.payout_id} for {payout.identity}: {payout.status}")

    def _row_to_payout(self, row) -> PayoutRecord:
        return PayoutRecord(
            payout_id=row["payout_id"],
            identity=row["identity"],
            amount_sats=row["amount_sats"],
            effective_days=row["effective_days"],
            status=row["status"],
            destination=row["destination"],
            invoice=row["invoice"],
            preimage=row["preimage"],
            attempts=[PayoutAttempt(**a) for a in json.loads(row["attempts"])],
            error_message=row["error_message"],
            created_at=datetime.fromisoformat(row["created_at"]),
            completed_at=_parse_dt(row["completed_at"]),
            correlation_id=row["correlation_id"],
        )

    async def get_payout(self, payout_id: str) -> Optional[PayoutRecord]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM payouts WHERE payout_id = ?", (payout_id,))
            row = await cursor.fetchone()
            return self._row_to_payout(row) if row else None

    async def list_payouts(self, identity: str, limit: int = 50) -> List[PayoutRecord]:
        """Payout history for an identity, newest first."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM payouts WHERE identity = ? ORDER BY created_at DESC LIMIT ?",
                (identity, limit),
            )
            return [self._row_to_payout(row) for row in await cursor.fetchall()]

    async def get_unresolved_payout(self, identity: str) -> Optional[PayoutRecord]:
        """Newest payout for ``identity`` whose outcome is still unknown."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM payouts WHERE identity = ? AND status = 'unknown' "
                "ORDER BY created_at DESC LIMIT 1",
                (identity,),
            )
            row = await cursor.fetchone()
            return self._row_to_payout(row) if row else None

    # Cache operations
    async def cache_get(self, namespace: str, key: str) -> Optional[Tuple[str, float]]:
        """Return ``(value, stored_at)`` for a cache entry, or None."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "SELECT value, stored_at FROM cache_entries WHERE namespace = ? AND key = ?",
                (namespace, key),
            )
            row = await cursor.fetchone()
            return (row[0], row[1]) if row else None

    async def cache_put(self, namespace: str, key: str, value: str, stored_at: float) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "INSERT OR REPLACE INTO cache_entries (namespace, key, value, stored_at) "
                "VALUES (?, ?, ?, ?)",
                (namespace, key, value, stored_at),
            )
            await db.commit()

    async def cache_delete(self, namespace: str, key: str) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "DELETE FROM cache_entries WHERE namespace = ? AND key = ?", (namespace, key)
            )
            await db.commit()

    async def cache_keys(self, namespace: str) -> List[str]:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "SELECT key FROM cache_entries WHERE namespace = ? ORDER BY key", (namespace,)
            )
            return [row[0] for row in await cursor.fetchall()]

    # Pending payment operations
    async def save_pending_payment(self, pending: PendingPayment) -> None:
        """Store a pending invoice, replacing any earlier one for the identity."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT OR REPLACE INTO pending_payments
                (identity, invoice, payment_hash, tier, amount_sats, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    pending.identity,
                    pending.invoice,
                    pending.payment_hash,
                    pending.tier,
                    pending.amount_sats,
                    pending.created_at.isoformat(),
                ),
            )
            await db.commit()
        logger.info(f"Stored pending {pending.tier} invoice for {pending.identity}")

    async def get_pending_payment(self, identity: str) -> Optional[PendingPayment]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM pending_payments WHERE identity = ?", (identity,)
            )
            row = await cursor.fetchone()

            if row:
                return PendingPayment(
                    identity=row["identity"],
                    invoice=row["invoice"],
                    payment_hash=row["payment_hash"],
                    tier=row["tier"],
                    amount_sats=row["amount_sats"],
                    created_at=datetime.fromisoformat(row["created_at"]),
                )
            return None

    async def delete_pending_payment(self, identity: str) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("DELETE FROM pending_payments WHERE identity = ?", (identity,))
            await db.commit()

    # Subscription operations
    async def save_subscription(self, subscription: Subscription) -> None:
        """Activate or renew a subscription.

        A renewal keeps the stored member count.
        """
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT INTO subscriptions
                    (identity, tier, member_count, activated_at, expires_at, verification_method)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(identity) DO UPDATE SET
                        tier = excluded.tier,
                        activated_at = excluded.activated_at,
                        expires_at = excluded.expires_at,
                        verification_method = excluded.verification_method
                    """,
                    (
                        subscription.identity,
                        subscription.tier,
                        subscription.member_count,
                        subscription.activated_at.isoformat(),
                        subscription.expires_at.isoformat(),
                        subscription.verification_method,
                    ),
                )
                await db.commit()
        logger.info(
            f"Activated {subscription.tier} subscription for {subscription.identity} "
            f"until {subscription.expires_at.isoformat()}"
        )

    async def get_subscription(self, identity: str) -> Optional[Subscription]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM subscriptions WHERE identity = ?", (identity,)
            )
            row = await cursor.fetchone()

            if row:
                return Subscription(
                    identity=row["identity"],
                    tier=row["tier"],
                    member_count=row["member_count"],
                    activated_at=datetime.fromisoformat(row["activated_at"]),
                    expires_at=datetime.fromisoformat(row["expires_at"]),
                    verification_method=row["verification_method"],
                )
            return None

    async def set_member_count(self, identity: str, member_count: int) -> bool:
        """Record a captain's team size.

        Returns:
            True if the identity has a subscription row.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "UPDATE subscriptions SET member_count = ? WHERE identity = ?",
                (member_count, identity),
            )
            await db.commit()
            return cursor.rowcount > 0


# Global database instance
db = Database()
