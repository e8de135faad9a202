"""
Database Backends

The backend is picked by DATABASE_BACKEND:
- sqlite: aiosqlite file database (default)
- json: flat JSON files, one per table (handy for local development)

Both expose the same async methods and speak in model records, so the
cache, the payment store and the scheduler never see SQL or file layout.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Dict, List, Optional

import aiosqlite

from errors import PersistenceError
from models import (
    PaymentRecord,
    ReceiptRecord,
    TelegramUser,
    UsernameRecord,
    STATUS_CONFIRMED,
    STATUS_PENDING,
)

logger = logging.getLogger(__name__)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS usernames (
        username TEXT PRIMARY KEY,
        address TEXT NOT NULL,
        registered_at INTEGER DEFAULT (strftime('%s', 'now')),
        is_premium INTEGER DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_usernames_address ON usernames(address COLLATE NOCASE)",
    """
    CREATE TABLE IF NOT EXISTS payments (
        tx_hash TEXT PRIMARY KEY,
        from_address TEXT NOT NULL,
        to_address TEXT NOT NULL,
        from_username TEXT,
        to_username TEXT,
        token_address TEXT NOT NULL,
        amount TEXT NOT NULL,
        fee TEXT DEFAULT '0',
        status TEXT DEFAULT 'pending',
        memo TEXT,
        created_at INTEGER DEFAULT (strftime('%s', 'now')),
        notified_at INTEGER,
        reminded_at INTEGER
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_payments_from ON payments(from_address COLLATE NOCASE, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_payments_to ON payments(to_address COLLATE NOCASE, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_payments_status ON payments(status, created_at)",
    """
    CREATE TABLE IF NOT EXISTS receipts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        tx_hash TEXT UNIQUE NOT NULL,
        share_link TEXT,
        created_at INTEGER DEFAULT (strftime('%s', 'now'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS telegram_users (
        telegram_id INTEGER PRIMARY KEY,
        wallet_address TEXT,
        username TEXT,
        created_at INTEGER DEFAULT (strftime('%s', 'now'))
    )
    """,
]

PAYMENT_COLUMNS = (
    "tx_hash", "from_address", "to_address", "from_username", "to_username",
    "token_address", "amount", "fee", "status", "memo", "created_at",
    "notified_at", "reminded_at",
)

# Columns a repeated upsert may overwrite. created_at and the scheduler
# bookkeeping belong to the first insert.
PAYMENT_UPSERT_COLUMNS = (
    "from_address", "to_address", "from_username", "to_username",
    "token_address", "amount", "fee", "status", "memo",
)

PAYMENT_UPDATABLE = ("status", "notified_at", "reminded_at", "memo")


class Database:
    """Interface shared by the backends."""

    backend = "base"

    async def connect(self):
        """Open the connection / load the files and create missing tables."""
        raise NotImplementedError

    async def close(self):
        """Release the connection; safe to call twice."""
        raise NotImplementedError

    # usernames
    async def get_username(self, username: str) -> Optional[UsernameRecord]:
        """Exact (lowercase) username lookup."""
        raise NotImplementedError

    async def get_username_by_address(self, address: str) -> Optional[UsernameRecord]:
        """Case-insensitive reverse lookup."""
        raise NotImplementedError

    async def upsert_username(self, record: UsernameRecord):
        """Insert or replace by username."""
        raise NotImplementedError

    # payments
    async def get_payment(self, tx_hash: str) -> Optional[PaymentRecord]:
        """Payment by lowercase hash, or None."""
        raise NotImplementedError

    async def upsert_payment(self, record: PaymentRecord):
        """Insert, or overwrite PAYMENT_UPSERT_COLUMNS of an existing row."""
        raise NotImplementedError

    async def update_payment(self, tx_hash: str, **fields) -> bool:
        """Set PAYMENT_UPDATABLE columns; False when the row is missing."""
        raise NotImplementedError

    async def list_payments_from(self, address: str, limit: int) -> List[PaymentRecord]:
        """Sent by address, newest first."""
        raise NotImplementedError

    async def list_payments_to(self, address: str, limit: int) -> List[PaymentRecord]:
        """Received by address, newest first."""
        raise NotImplementedError

    async def list_stale_pending(self, created_before: int, reminded_before: int, limit: int) -> List[PaymentRecord]:
        """Pending rows created and last reminded at or before the cutoffs, oldest first."""
        raise NotImplementedError

    async def list_unnotified_confirmed(self, limit: int) -> List[PaymentRecord]:
        """Confirmed rows with no notified_at, oldest first."""
        raise NotImplementedError

    # receipts
    async def upsert_receipt(self, receipt: ReceiptRecord):
        """Insert or replace by tx_hash."""
        raise NotImplementedError

    async def get_receipt(self, tx_hash: str) -> Optional[ReceiptRecord]:
        """Receipt by hash, or None."""
        raise NotImplementedError

    # telegram users
    async def upsert_telegram_user(self, user: TelegramUser):
        """Insert or replace by telegram_id."""
        raise NotImplementedError

    async def get_telegram_user(self, telegram_id: int) -> Optional[TelegramUser]:
        """Linked user by telegram id, or None."""
        raise NotImplementedError

    async def get_telegram_user_by_wallet(self, address: str) -> Optional[TelegramUser]:
        """Linked user by wallet (case-insensitive), or None."""
        raise NotImplementedError


def _check_update_fields(fields: Dict):
    unknown = set(fields) - set(PAYMENT_UPDATABLE)
    if unknown:
        raise ValueError(f"Cannot update payment columns: {sorted(unknown)}")


class SQLiteDatabase(Database):
    """aiosqlite backend. One connection, shared by every coroutine."""

    backend = "sqlite"

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._connection: Optional[aiosqlite.Connection] = None

    async def connect(self):
        if self._connection is not None:
            return
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._connection = await aiosqlite.connect(self.db_path)
            self._connection.row_factory = aiosqlite.Row
            for statement in SCHEMA:
                await self._connection.execute(statement)
            await self._connection.commit()
        except aiosqlite.Error as e:
            self._connection = None
            raise PersistenceError(f"Failed to open database {self.db_path}: {e}") from e
        logger.info(f"✓ Connected to SQLite database: {self.db_path}")

    async def close(self):
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info("SQLite connection closed")

    @property
    def connection(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise PersistenceError("Database connection not initialized")
        return self._connection

    async def _fetchone(self, query: str, params=()) -> Optional[Dict]:
        try:
            async with self.connection.execute(query, params) as cursor:
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise PersistenceError(str(e)) from e
        return dict(row) if row is not None else None

    async def _fetchall(self, query: str, params=()) -> List[Dict]:
        try:
            async with self.connection.execute(query, params) as cursor:
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise PersistenceError(str(e)) from e
        return [dict(row) for row in rows]

    async def _run(self, query: str, params=()) -> int:
        try:
            cursor = await self.connection.execute(query, params)
            await self.connection.commit()
            return cursor.rowcount
        except aiosqlite.Error as e:
            raise PersistenceError(str(e)) from e

    async def get_username(self, username: str) -> Optional[UsernameRecord]:
        row = await self._fetchone("SELECT * FROM usernames WHERE username = ?", (username,))
        return UsernameRecord.from_dict(row) if row else None

    async def get_username_by_address(self, address: str) -> Optional[UsernameRecord]:
        row = await self._fetchone(
            "SELECT * FROM usernames WHERE LOWER(address) = LOWER(?) ORDER BY registered_at DESC LIMIT 1",
            (address,)
        )
        return UsernameRecord.from_dict(row) if row else None

    async def upsert_username(self, record: UsernameRecord):
        await self._run(
            "INSERT OR REPLACE INTO usernames (username, address, registered_at, is_premium) VALUES (?, ?, ?, ?)",
            (record.username, record.address, record.registered_at, int(record.is_premium))
        )

    async def get_payment(self, tx_hash: str) -> Optional[PaymentRecord]:
        row = await self._fetchone("SELECT * FROM payments WHERE LOWER(tx_hash) = LOWER(?)", (tx_hash,))
        return PaymentRecord.from_dict(row) if row else None

    async def upsert_payment(self, record: PaymentRecord):
        data = record.to_dict()
        columns = ", ".join(PAYMENT_COLUMNS)
        placeholders = ", ".join("?" for _ in PAYMENT_COLUMNS)
        updates = ", ".join(f"{col} = excluded.{col}" for col in PAYMENT_UPSERT_COLUMNS)
        await self._run(
            f"INSERT INTO payments ({columns}) VALUES ({placeholders}) "
            f"ON CONFLICT(tx_hash) DO UPDATE SET {updates}",
            tuple(data[col] for col in PAYMENT_COLUMNS)
        )

    async def update_payment(self, tx_hash: str, **fields) -> bool:
        _check_update_fields(fields)
        if not fields:
            return False
        assignments = ", ".join(f"{col} = ?" for col in fields)
        changed = await self._run(
            f"UPDATE payments SET {assignments} WHERE LOWER(tx_hash) = LOWER(?)",
            tuple(fields.values()) + (tx_hash,)
        )
        return changed > 0

    async def list_payments_from(self, address: str, limit: int) -> List[PaymentRecord]:
        rows = await self._fetchall(
            "SELECT * FROM payments WHERE LOWER(from_address) = LOWER(?) ORDER BY created_at DESC LIMIT ?",
            (address, limit)
        )
        return [PaymentRecord.from_dict(row) for row in rows]

    async def list_payments_to(self, address: str, limit: int) -> List[PaymentRecord]:
        rows = await self._fetchall(
            "SELECT * FROM payments WHERE LOWER(to_address) = LOWER(?) ORDER BY created_at DESC LIMIT ?",
            (address, limit)
        )
        return [PaymentRecord.from_dict(row) for row in rows]

    async def list_stale_pending(self, created_before: int, reminded_before: int, limit: int) -> List[PaymentRecord]:
        rows = await self._fetchall(
            """
            SELECT * FROM payments
            WHERE status = ?
              AND created_at <= ?
              AND (reminded_at IS NULL OR reminded_at <= ?)
            ORDER BY created_at ASC
            LIMIT ?
            """,
            (STATUS_PENDING, created_before, reminded_before, limit)
        )
        return [PaymentRecord.from_dict(row) for row in rows]

    async def list_unnotified_confirmed(self, limit: int) -> List[PaymentRecord]:
        rows = await self._fetchall(
            "SELECT * FROM payments WHERE status = ? AND notified_at IS NULL ORDER BY created_at ASC LIMIT ?",
            (STATUS_CONFIRMED, limit)
        )
        return [PaymentRecord.from_dict(row) for row in rows]

    async def upsert_receipt(self, receipt: ReceiptRecord):
        await self._run(
            "INSERT OR REPLACE INTO receipts (tx_hash, share_link, created_at) VALUES (?, ?, ?)",
            (receipt.tx_hash, receipt.share_link, receipt.created_at)
        )

    async def get_receipt(self, tx_hash: str) -> Optional[ReceiptRecord]:
        row = await self._fetchone("SELECT * FROM receipts WHERE tx_hash = ?", (tx_hash,))
        return ReceiptRecord.from_dict(row) if row else None

    async def upsert_telegram_user(self, user: TelegramUser):
        await self._run(
            "INSERT OR REPLACE INTO telegram_users (telegram_id, wallet_address, username, created_at) VALUES (?, ?, ?, ?)",
            (user.telegram_id, user.wallet_address, user.username, user.created_at)
        )

    async def get_telegram_user(self, telegram_id: int) -> Optional[TelegramUser]:
        row = await self._fetchone("SELECT * FROM telegram_users WHERE telegram_id = ?", (telegram_id,))
        return TelegramUser.from_dict(row) if row else None

    async def get_telegram_user_by_wallet(self, address: str) -> Optional[TelegramUser]:
        row = await self._fetchone(
            "SELECT * FROM telegram_users WHERE LOWER(wallet_address) = LOWER(?) LIMIT 1",
            (address,)
        )
        return TelegramUser.from_dict(row) if row else None


class JsonDatabase(Database):
    """
    JSON file backend.

    Each table is a dict held in memory and written back to
    <data_dir>/<table>.json after every change.
    """

    backend = "json"
    TABLES = ("usernames", "payments", "receipts", "telegram_users")

    def __init__(self, data_dir: str):
        self.data_dir = Path(data_dir)
        self.tables: Dict[str, Dict[str, Dict]] = {table: {} for table in self.TABLES}
        self._lock = asyncio.Lock()

    def _path(self, table: str) -> Path:
        return self.data_dir / f"{table}.json"

    async def connect(self):
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(f"Cannot create data directory {self.data_dir}: {e}") from e
        for table in self.TABLES:
            self.load_table(table)
        logger.info(f"✓ Using JSON storage in {self.data_dir}")

    async def close(self):
        pass

    def load_table(self, table: str):
        path = self._path(table)
        if not path.exists():
            return
        try:
            with open(path, 'r') as f:
                self.tables[table] = json.load(f)
            logger.info(f"Loaded {len(self.tables[table])} rows from {path.name}")
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Error loading {path}: {e}") from e

    def save_table(self, table: str):
        path = self._path(table)
        try:
            with open(path, 'w') as f:
                json.dump(self.tables[table], f, indent=2)
        except OSError as e:
            raise PersistenceError(f"Error saving {path}: {e}") from e

    async def get_username(self, username: str) -> Optional[UsernameRecord]:
        row = self.tables["usernames"].get(username)
        return UsernameRecord.from_dict(row) if row else None

    async def get_username_by_address(self, address: str) -> Optional[UsernameRecord]:
        matches = [
            row for row in self.tables["usernames"].values()
            if row["address"].lower() == address.lower()
        ]
        if not matches:
            return None
        matches.sort(key=lambda row: row.get("registered_at") or 0, reverse=True)
        return UsernameRecord.from_dict(matches[0])

    async def upsert_username(self, record: UsernameRecord):
        async with self._lock:
            self.tables["usernames"][record.username] = record.to_dict()
            self.save_table("usernames")

    async def get_payment(self, tx_hash: str) -> Optional[PaymentRecord]:
        row = self.tables["payments"].get(tx_hash.lower())
        return PaymentRecord.from_dict(row) if row else None

    async def upsert_payment(self, record: PaymentRecord):
        async with self._lock:
            key = record.tx_hash.lower()
            data = record.to_dict()
            existing = self.tables["payments"].get(key)
            if existing:
                merged = dict(existing)
                for col in PAYMENT_UPSERT_COLUMNS:
                    merged[col] = data[col]
                data = merged
            self.tables["payments"][key] = data
            self.save_table("payments")

    async def update_payment(self, tx_hash: str, **fields) -> bool:
        _check_update_fields(fields)
        async with self._lock:
            row = self.tables["payments"].get(tx_hash.lower())
            if row is None or not fields:
                return False
            row.update(fields)
            self.save_table("payments")
            return True

    def _payments(self) -> List[PaymentRecord]:
        return [PaymentRecord.from_dict(row) for row in self.tables["payments"].values()]

    async def list_payments_from(self, address: str, limit: int) -> List[PaymentRecord]:
        rows = [p for p in self._payments() if p.from_address.lower() == address.lower()]
        rows.sort(key=lambda p: p.created_at, reverse=True)
        return rows[:limit]

    async def list_payments_to(self, address: str, limit: int) -> List[PaymentRecord]:
        rows = [p for p in self._payments() if p.to_address.lower() == address.lower()]
        rows.sort(key=lambda p: p.created_at, reverse=True)
        return rows[:limit]

    async def list_stale_pending(self, created_before: int, reminded_before: int, limit: int) -> List[PaymentRecord]:
        rows = [
            p for p in self._payments()
            if p.status == STATUS_PENDING
            and p.created_at <= created_before
            and (p.reminded_at is None or p.reminded_at <= reminded_before)
        ]
        rows.sort(key=lambda p: p.created_at)
        return rows[:limit]

    async def list_unnotified_confirmed(self, limit: int) -> List[PaymentRecord]:
        rows = [p for p in self._payments() if p.status == STATUS_CONFIRMED and p.notified_at is None]
        rows.sort(key=lambda p: p.created_at)
        return rows[:limit]

    async def upsert_receipt(self, receipt: ReceiptRecord):
        async with self._lock:
            self.tables["receipts"][receipt.tx_hash] = receipt.to_dict()
            self.save_table("receipts")

    async def get_receipt(self, tx_hash: str) -> Optional[ReceiptRecord]:
        row = self.tables["receipts"].get(tx_hash)
        return ReceiptRecord.from_dict(row) if row else None

    async def upsert_telegram_user(self, user: TelegramUser):
        async with self._lock:
            self.tables["telegram_users"][str(user.telegram_id)] = user.to_dict()
            self.save_table("telegram_users")

    async def get_telegram_user(self, telegram_id: int) -> Optional[TelegramUser]:
        row = self.tables["telegram_users"].get(str(telegram_id))
        return TelegramUser.from_dict(row) if row else None

    async def get_telegram_user_by_wallet(self, address: str) -> Optional[TelegramUser]:
        for row in self.tables["telegram_users"].values():
            wallet = row.get("wallet_address")
            if wallet and wallet.lower() == address.lower():
                return TelegramUser.from_dict(row)
        return None


def create_database(backend: str, db_path: str = None, data_dir: str = None) -> Database:
    """Build the backend named by DATABASE_BACKEND."""
    if backend == "sqlite":
        return SQLiteDatabase(db_path)
    if backend == "json":
        return JsonDatabase(data_dir)
    raise ValueError(f"Unknown DATABASE_BACKEND: {backend!r} (expected 'sqlite' or 'json')")
