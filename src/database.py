"""SQLite persistence for payment intents and coupon disclosures.

Every record is written through a version-checked UPDATE so concurrent
writers, in this process or another one, can never overwrite each other's
transitions. There is deliberately no application-level lock here.
"""

import sqlite3
from datetime import datetime, timezone
from typing import Generic, Optional, Type, TypeVar

import aiosqlite
from pydantic import BaseModel

from .config import config
from .logging_utils import get_logger
from .models import CouponDisclosure, CouponState, PaymentIntent, PaymentStatus, utcnow

logger = get_logger(__name__)

# SQL Schema
SCHEMA_SQL = """
-- Payment intents (never deleted; terminal rows are the audit trail)
CREATE TABLE IF NOT EXISTS payment_intents (
    id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    currency TEXT NOT NULL,
    tx_hash TEXT,
    deadline TEXT NOT NULL,
    version INTEGER NOT NULL,
    body TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Coupon disclosures
CREATE TABLE IF NOT EXISTS coupon_disclosures (
    id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    receipt_id TEXT NOT NULL,
    holder_address TEXT NOT NULL,
    deadline TEXT NOT NULL,
    version INTEGER NOT NULL,
    body TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Indexes for common queries
CREATE INDEX IF NOT EXISTS idx_payment_intents_status_deadline ON payment_intents(status, deadline);
CREATE INDEX IF NOT EXISTS idx_payment_intents_tx_hash ON payment_intents(tx_hash);
CREATE INDEX IF NOT EXISTS idx_coupon_disclosures_status_deadline ON coupon_disclosures(status, deadline);
CREATE INDEX IF NOT EXISTS idx_coupon_disclosures_receipt_id ON coupon_disclosures(receipt_id);
"""

RecordT = TypeVar("RecordT", bound=BaseModel)


def _ts(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


class VersionedStore(Generic[RecordT]):
    """Optimistic-concurrency key/value table for one record type."""

    table: str = ""
    model: Type[BaseModel] = BaseModel
    live_statuses: tuple[str, ...] = ()

    def __init__(self, db_path: str):
        self.db_path = db_path

    def _status(self, record: RecordT) -> str:
        raise NotImplementedError

    def _deadline(self, record: RecordT) -> datetime:
        raise NotImplementedError

    def _extra_columns(self, record: RecordT) -> dict:
        return {}

    def _row_values(self, record: RecordT) -> dict:
        values = {
            "id": record.id,
            "status": self._status(record),
            "deadline": _ts(self._deadline(record)),
            "version": record.version,
            "body": record.model_dump_json(),
            "updated_at": _ts(record.updated_at),
        }
        values.update(self._extra_columns(record))
        return values

    async def get(self, record_id: str) -> Optional[RecordT]:
        """Get a record by ID.

        Args:
            record_id: Record identifier.

        Returns:
            The record with ``version`` set to the stored version, or None.
        """
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                f"SELECT body, version FROM {self.table} WHERE id = ?",
                (record_id,),
            )
            row = await cursor.fetchone()

        if row:
            record = self.model.model_validate_json(row["body"])
            record.version = row["version"]
            return record
        return None

    async def insert(self, record: RecordT) -> bool:
        """Insert a new record at version 1.

        Args:
            record: Record to create.

        Returns:
            True if the record was created, False if the ID already exists.
        """
        record.version = 1
        values = self._row_values(record)
        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    f"INSERT INTO {self.table} ({columns}) VALUES ({placeholders})",
                    tuple(values.values()),
                )
                await db.commit()
        except sqlite3.IntegrityError:
            logger.info(f"{self.table}: {record.id} already exists")
            return False
        logger.debug(f"{self.table}: inserted {record.id} at version 1")
        return True

    async def put_if_version(self, record: RecordT, expected_version: int) -> bool:
        """Write ``record`` only if the stored version is still ``expected_version``.

        Args:
            record: The next state of the record.
            expected_version: Version the caller read before computing ``record``.

        Returns:
            True if the write won, False if another writer got there first.
        """
        record.version = expected_version + 1
        record.updated_at = utcnow()
        values = self._row_values(record)
        record_id = values.pop("id")
        assignments = ", ".join(f"{column} = ?" for column in values)

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                f"UPDATE {self.table} SET {assignments} WHERE id = ? AND version = ?",
                (*values.values(), record_id, expected_version),
            )
            await db.commit()
            won = cursor.rowcount == 1

        if not won:
            record.version = expected_version
            logger.debug(
                f"{self.table}: version conflict on {record_id} (expected v{expected_version})"
            )
        return won

    async def list_due(self, now: datetime, limit: int = 100) -> list[RecordT]:
        """Non-terminal records whose deadline has passed.

        Args:
            now: Reference time.
            limit: Maximum number of records to return.
        """
        placeholders = ", ".join("?" for _ in self.live_statuses)
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                f"""
                SELECT body, version FROM {self.table}
                WHERE status IN ({placeholders}) AND deadline < ?
                ORDER BY deadline
                LIMIT ?
                """,
                (*self.live_statuses, _ts(now), limit),
            )
            rows = await cursor.fetchall()

        records = []
        for row in rows:
            record = self.model.model_validate_json(row["body"])
            record.version = row["version"]
            records.append(record)
        return records


class PaymentIntentStore(VersionedStore[PaymentIntent]):
    table = "payment_intents"
    model = PaymentIntent
    live_statuses = (
        PaymentStatus.CREATED.value,
        PaymentStatus.AWAITING_TX.value,
        PaymentStatus.CONFIRMING.value,
    )

    def _status(self, record: PaymentIntent) -> str:
        return record.status.value

    def _deadline(self, record: PaymentIntent) -> datetime:
        return record.expires_at

    def _extra_columns(self, record: PaymentIntent) -> dict:
        return {"currency": record.currency.value, "tx_hash": record.tx_hash}

    async def list_by_status(self, status: PaymentStatus, limit: int = 100) -> list[PaymentIntent]:
        """Intents currently in ``status``, newest first."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                f"""
                SELECT body, version FROM {self.table}
                WHERE status = ?
                ORDER BY updated_at DESC
                LIMIT ?
                """,
                (status.value, limit),
            )
            rows = await cursor.fetchall()

        intents = []
        for row in rows:
            intent = PaymentIntent.model_validate_json(row["body"])
            intent.version = row["version"]
            intents.append(intent)
        return intents


class DisclosureStore(VersionedStore[CouponDisclosure]):
    table = "coupon_disclosures"
    model = CouponDisclosure
    live_statuses = (CouponState.LOCKED.value, CouponState.REVEALED.value)

    def _status(self, record: CouponDisclosure) -> str:
        return record.state.value

    def _deadline(self, record: CouponDisclosure) -> datetime:
        return record.valid_until

    def _extra_columns(self, record: CouponDisclosure) -> dict:
        return {"receipt_id": record.receipt_id, "holder_address": record.holder_address}

    async def receipt_holder(self, receipt_id: str) -> Optional[str]:
        """Address recorded as the holder of ``receipt_id``, or None if unknown."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                f"SELECT holder_address FROM {self.table} WHERE receipt_id = ? ORDER BY rowid LIMIT 1",
                (receipt_id,),
            )
            row = await cursor.fetchone()
        return row[0] if row else None


class Database:
    """Async database interface for the settlement ledger."""

    def __init__(self, db_path: str = None):
        """Initialize database handles.

        Args:
            db_path: Path to SQLite database file. Defaults to config.database_path.
        """
        self.db_path = db_path or config.database_path
        self.intents = PaymentIntentStore(self.db_path)
        self.coupons = DisclosureStore(self.db_path)

    async def initialize(self) -> None:
        """Initialize database schema."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.executescript(SCHEMA_SQL)
            await db.commit()
        logger.info(f"Database initialized at {self.db_path}")


# Global database instance
db = Database()
