"""SQLite storage for groups, buyers, schedules and transactions."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator

from splgiver.models import Buyer, Group, Schedule, Status, Transaction

_log = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS groups (
    id INTEGER PRIMARY KEY,
    spl_share_percent REAL NOT NULL,
    spl_total REAL NOT NULL DEFAULT 0,
    spl_price REAL NOT NULL,
    initial_unlock_percent REAL NOT NULL,
    unlock_interval_seconds INTEGER NOT NULL,
    unlock_percent_per_interval REAL NOT NULL,
    unlock_task_spawned INTEGER NOT NULL DEFAULT 0,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);
CREATE TABLE IF NOT EXISTS buyers (
    wallet TEXT PRIMARY KEY,
    paid_sol REAL NOT NULL,
    group_id INTEGER NOT NULL,
    received_spl REAL NOT NULL DEFAULT 0,
    received_percent REAL NOT NULL DEFAULT 0,
    pending_spl REAL NOT NULL DEFAULT 0,
    error TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);
CREATE TABLE IF NOT EXISTS transactions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    buyer_wallet TEXT NOT NULL,
    group_id INTEGER NOT NULL,
    amount REAL NOT NULL,
    percent REAL NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    error_message TEXT,
    sent_at TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);
CREATE TABLE IF NOT EXISTS schedule (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    group_id INTEGER NOT NULL,
    buyer_wallet TEXT NOT NULL,
    scheduled_at TEXT NOT NULL,
    amount REAL NOT NULL,
    percent REAL NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    error_message TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);
"""


class DatabaseError(Exception):
    """Raised when a database operation fails or finds nothing."""


@contextmanager
def _guard(message: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as exc:
        raise DatabaseError(f"{message}: {exc}") from exc


def _sqlite_path(database_url: str) -> str:
    for prefix in ("sqlite://", "sqlite:"):
        if database_url.startswith(prefix):
            database_url = database_url[len(prefix):]
            break
    database_url = database_url.split("?", 1)[0]
    return database_url or ":memory:"


def _format_dt(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat(sep=" ", timespec="microseconds")


def _parse_dt(value: str | None) -> datetime | None:
    return None if value is None else datetime.fromisoformat(value)


def _row_to_group(row: sqlite3.Row) -> Group:
    return Group(
        id=row["id"],
        spl_share_percent=row["spl_share_percent"],
        spl_price=row["spl_price"],
        initial_unlock_percent=row["initial_unlock_percent"],
        unlock_interval_seconds=row["unlock_interval_seconds"],
        unlock_percent_per_interval=row["unlock_percent_per_interval"],
        spl_total=row["spl_total"],
        unlock_task_spawned=bool(row["unlock_task_spawned"]),
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _row_to_buyer(row: sqlite3.Row) -> Buyer:
    return Buyer(
        wallet=row["wallet"],
        paid_sol=row["paid_sol"],
        group_id=row["group_id"],
        received_spl=row["received_spl"],
        received_percent=row["received_percent"],
        pending_spl=row["pending_spl"],
        error=row["error"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _row_to_transaction(row: sqlite3.Row) -> Transaction:
    return Transaction(
        id=row["id"],
        buyer_wallet=row["buyer_wallet"],
        group_id=row["group_id"],
        amount=row["amount"],
        percent=row["percent"],
        status=Status(row["status"]),
        error_message=row["error_message"],
        sent_at=_parse_dt(row["sent_at"]),
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _row_to_schedule(row: sqlite3.Row) -> Schedule:
    return Schedule(
        id=row["id"],
        group_id=row["group_id"],
        buyer_wallet=row["buyer_wallet"],
        scheduled_at=datetime.fromisoformat(row["scheduled_at"]),
        amount=row["amount"],
        percent=row["percent"],
        status=Status(row["status"]),
        error_message=row["error_message"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


class Database:
    """A connection to the distribution database, created on first use."""

    def __init__(self, database_url: str) -> None:
        path = _sqlite_path(database_url)
        with _guard(f"Failed to open database {database_url!r}"):
            self._conn = sqlite3.connect(path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(_SCHEMA)

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> Database:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _fetch_all(self, message: str, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with _guard(message):
            return self._conn.execute(sql, params).fetchall()

    def _fetch_one(self, message: str, sql: str, params: tuple = ()) -> sqlite3.Row:
        with _guard(message):
            row = self._conn.execute(sql, params).fetchone()
        if row is None:
            raise DatabaseError(f"{message}: no rows returned")
        return row

    # --- groups ---

    def save_group(self, group: Group) -> Group | None:
        """Insert a group; return it as stored, or None if the id exists."""
        with _guard("Failed to save group to database"), self._conn:
            cursor = self._conn.execute(
                """
                INSERT OR IGNORE INTO groups (
                    id, spl_share_percent, spl_total, spl_price,
                    initial_unlock_percent, unlock_interval_seconds,
                    unlock_percent_per_interval
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    group.id,
                    group.spl_share_percent,
                    int(group.spl_total),
                    group.spl_price,
                    group.initial_unlock_percent,
                    group.unlock_interval_seconds,
                    group.unlock_percent_per_interval,
                ),
            )
            if cursor.rowcount == 0:
                _log.debug("Group with id %s already exists, not inserted.", group.id)
                return None
            row = self._conn.execute("SELECT * FROM groups WHERE id = ?", (group.id,)).fetchone()
        saved = _row_to_group(row)
        _log.debug("Saved group to database: %r", saved)
        return saved

    def get_groups(self) -> list[Group]:
        rows = self._fetch_all("Failed to get all groups from database", "SELECT * FROM groups")
        groups = [_row_to_group(row) for row in rows]
        _log.debug("Retrieved groups from database: %r", groups)
        return groups

    def get_group(self, group_id: int) -> Group:
        row = self._fetch_one(
            f"Failed to get group with id {group_id}",
            "SELECT * FROM groups WHERE id = ?",
            (group_id,),
        )
        return _row_to_group(row)

    # --- buyers ---

    def save_buyer(self, buyer: Buyer) -> Buyer | None:
        """Insert a buyer; return it as stored, or None if the wallet exists."""
        with _guard("Failed to save buyer to database"), self._conn:
            cursor = self._conn.execute(
                """
                INSERT OR IGNORE INTO buyers (
                    wallet, paid_sol, group_id, received_spl,
                    received_percent, pending_spl, error
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    buyer.wallet,
                    buyer.paid_sol,
                    buyer.group_id,
                    buyer.received_spl,
                    buyer.received_percent,
                    buyer.pending_spl,
                    buyer.error,
                ),
            )
            if cursor.rowcount == 0:
                _log.debug("Buyer with wallet %s already exists, not inserted.", buyer.wallet)
                return None
            row = self._conn.execute(
                "SELECT * FROM buyers WHERE wallet = ?", (buyer.wallet,)
            ).fetchone()
        saved = _row_to_buyer(row)
        _log.debug("Saved buyer to database: %r", saved)
        return saved

    def get_buyers_by_group(self, group_id: int) -> list[Buyer]:
        rows = self._fetch_all(
            f"Failed to get buyers for group with ID: {group_id}",
            "SELECT * FROM buyers WHERE group_id = ?",
            (group_id,),
        )
        buyers = [_row_to_buyer(row) for row in rows]
        _log.debug("Retrieved buyers for group %s: %r", group_id, buyers)
        return buyers

    def update_buyer(
        self, wallet: str, received_spl: float, received_percent: float, pending_spl: float
    ) -> Buyer:
        message = "Failed to update buyer in database"
        with _guard(message), self._conn:
            cursor = self._conn.execute(
                """
                UPDATE buyers
                SET received_spl = ?, received_percent = ?, pending_spl = ?
                WHERE wallet = ?
                """,
                (received_spl, received_percent, pending_spl, wallet),
            )
            if cursor.rowcount == 0:
                raise DatabaseError(f"{message}: no buyer with wallet {wallet}")
            row = self._conn.execute("SELECT * FROM buyers WHERE wallet = ?", (wallet,)).fetchone()
        updated = _row_to_buyer(row)
        _log.debug("Updated buyer in database: %r", updated)
        return updated

    def get_buyer_by_wallet(self, wallet: str) -> Buyer:
        row = self._fetch_one(
            f"Failed to get buyer with wallet {wallet}",
            "SELECT * FROM buyers WHERE wallet = ?",
            (wallet,),
        )
        return _row_to_buyer(row)

    # --- transactions ---

    def save_transaction(self, transaction: Transaction) -> Transaction:
        with _guard("Failed to save transaction"), self._conn:
            cursor = self._conn.execute(
                """
                INSERT INTO transactions (
                    buyer_wallet, group_id, amount, percent, status, error_message, sent_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    transaction.buyer_wallet,
                    transaction.group_id,
                    transaction.amount,
                    transaction.percent,
                    Status(transaction.status).value,
                    transaction.error_message,
                    _format_dt(transaction.sent_at),
                ),
            )
            row = self._conn.execute(
                "SELECT * FROM transactions WHERE id = ?", (cursor.lastrowid,)
            ).fetchone()
        saved = _row_to_transaction(row)
        _log.debug("Saved transaction to database: %r", saved)
        return saved

    def get_failed_transactions(self) -> list[Transaction]:
        rows = self._fetch_all(
            "Failed to get failed transactions",
            "SELECT * FROM transactions WHERE status = ? ORDER BY id",
            (Status.FAILED.value,),
        )
        return [_row_to_transaction(row) for row in rows]

    def get_all_transactions(self) -> list[Transaction]:
        rows = self._fetch_all(
            "Failed to get all transactions", "SELECT * FROM transactions ORDER BY id"
        )
        return [_row_to_transaction(row) for row in rows]

    # --- schedules ---

    def add_schedule(self, schedule: Schedule) -> Schedule:
        with _guard("Failed to add schedule"), self._conn:
            cursor = self._conn.execute(
                """
                INSERT INTO schedule (
                    group_id, buyer_wallet, scheduled_at, amount, percent, status
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    schedule.group_id,
                    schedule.buyer_wallet,
                    _format_dt(schedule.scheduled_at),
                    schedule.amount,
                    schedule.percent,
                    Status(schedule.status).value,
                ),
            )
            row = self._conn.execute(
                "SELECT * FROM schedule WHERE id = ?", (cursor.lastrowid,)
            ).fetchone()
        saved = _row_to_schedule(row)
        _log.debug("Added schedule to database: %r", saved)
        return saved

    def get_schedules_by_status(self, status: Status | str) -> list[Schedule]:
        rows = self._fetch_all(
            "Failed to get schedules by status",
            "SELECT * FROM schedule WHERE status = ? ORDER BY id",
            (Status(status).value,),
        )
        return [_row_to_schedule(row) for row in rows]

    def get_all_schedules(self) -> list[Schedule]:
        rows = self._fetch_all("Failed to get all schedules", "SELECT * FROM schedule ORDER BY id")
        return [_row_to_schedule(row) for row in rows]

    def get_schedules_due(self, now: datetime) -> list[Schedule]:
        """Pending schedules whose time is at or before ``now``."""
        rows = self._fetch_all(
            "Failed to get schedules due",
            "SELECT * FROM schedule WHERE scheduled_at <= ? AND status = ? ORDER BY id",
            (_format_dt(now), Status.PENDING.value),
        )
        return [_row_to_schedule(row) for row in rows]

    def get_schedules_by_buyer_and_group(self, buyer_wallet: str, group_id: int) -> list[Schedule]:
        rows = self._fetch_all(
            "Failed to get schedules by buyer and group",
            "SELECT * FROM schedule WHERE buyer_wallet = ? AND group_id = ? ORDER BY id",
            (buyer_wallet, group_id),
        )
        return [_row_to_schedule(row) for row in rows]

    def update_schedule_status(
        self, schedule_id: int, status: Status | str, error_message: str | None
    ) -> None:
        with _guard(f"Failed to update schedule status for id {schedule_id}"), self._conn:
            self._conn.execute(
                """
                UPDATE schedule
                SET status = ?, updated_at = CURRENT_TIMESTAMP, error_message = ?
                WHERE id = ?
                """,
                (Status(status).value, error_message, schedule_id),
            )
        _log.debug("Updated schedule status for id %s: %s", schedule_id, status)

    def delete_schedule(self, schedule_id: int) -> None:
        with _guard(f"Failed to delete schedule with id {schedule_id}"), self._conn:
            self._conn.execute("DELETE FROM schedule WHERE id = ?", (schedule_id,))
        _log.debug("Deleted schedule with id %s", schedule_id)