from __future__ import annotations

import sqlite3
import threading
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from dlmm_pilot.core.models import (
    AgentMode,
    PositionStatus,
    RebalanceContext,
    StrategyConfig,
    StrategyShape,
    TokenSide,
)


def _utc_epoch_s() -> int:
    return int(time.time())


@dataclass(frozen=True)
class PositionRecord:
    id: int
    wallet_address: str
    pool_address: str
    pool_name: str
    position_address: str
    mode: AgentMode
    home_side: TokenSide
    deposit_amount: float
    shape: StrategyShape
    min_bin_id: int
    max_bin_id: int
    status: PositionStatus
    rebalance_count: int
    total_fees_earned: float
    created_at: int
    closed_at: int | None

    @property
    def strategy(self) -> StrategyConfig:
        return StrategyConfig(
            shape=self.shape, min_bin_id=self.min_bin_id, max_bin_id=self.max_bin_id
        )

    def rebalance_context(self) -> RebalanceContext:
        return RebalanceContext(
            prev_min_bin_id=self.min_bin_id,
            prev_max_bin_id=self.max_bin_id,
            prev_created_at=datetime.fromtimestamp(self.created_at, UTC),
            rebalance_count=self.rebalance_count,
        )


@dataclass(frozen=True)
class NotificationRow:
    id: int
    wallet_address: str
    position_id: int | None
    type: str
    title: str
    message: str
    action_type: str | None
    read: bool
    created_at: int


@dataclass(frozen=True)
class NewPosition:
    wallet_address: str
    pool_address: str
    pool_name: str
    position_address: str
    mode: AgentMode
    home_side: TokenSide
    deposit_amount: float
    strategy: StrategyConfig
    rebalance_count: int = 0


def _position_from_row(row: sqlite3.Row) -> PositionRecord:
    return PositionRecord(
        id=int(row["id"]),
        wallet_address=str(row["wallet_address"]),
        pool_address=str(row["pool_address"]),
        pool_name=str(row["pool_name"]),
        position_address=str(row["position_address"]),
        mode=AgentMode(row["mode"]),
        home_side=TokenSide(row["home_side"]),
        deposit_amount=float(row["deposit_amount"]),
        shape=StrategyShape(row["shape"]),
        min_bin_id=int(row["min_bin_id"]),
        max_bin_id=int(row["max_bin_id"]),
        status=PositionStatus(row["status"]),
        rebalance_count=int(row["rebalance_count"] or 0),
        total_fees_earned=float(row["total_fees_earned"] or 0.0),
        created_at=int(row["created_at"]),
        closed_at=int(row["closed_at"]) if row["closed_at"] is not None else None,
    )


def _notification_from_row(row: sqlite3.Row) -> NotificationRow:
    return NotificationRow(
        id=int(row["id"]),
        wallet_address=str(row["wallet_address"]),
        position_id=int(row["position_id"])
        if row["position_id"] is not None
        else None,
        type=str(row["type"]),
        title=str(row["title"]),
        message=str(row["message"]),
        action_type=str(row["action_type"])
        if row["action_type"] is not None
        else None,
        read=bool(row["read"]),
        created_at=int(row["created_at"]),
    )


class PositionStore:
    """Single source of truth for position status.

    Every status change goes through ``transition_status`` (or
    ``replace_position``), which only applies when the row still holds the
    expected status. Callers never cache status across ticks.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            isolation_level=None,  # autocommit
        )
        self._conn.row_factory = sqlite3.Row
        with self._lock:
            self._init_schema()

    @property
    def path(self) -> Path:
        return self._db_path

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _init_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute("PRAGMA journal_mode=WAL;")
        cur.execute("PRAGMA foreign_keys=ON;")
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS positions (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              wallet_address TEXT NOT NULL,
              pool_address TEXT NOT NULL,
              pool_name TEXT NOT NULL,
              position_address TEXT NOT NULL,
              mode TEXT NOT NULL,
              home_side TEXT NOT NULL,
              deposit_amount REAL NOT NULL,
              shape TEXT NOT NULL,
              min_bin_id INTEGER NOT NULL,
              max_bin_id INTEGER NOT NULL,
              status TEXT NOT NULL,
              rebalance_count INTEGER NOT NULL DEFAULT 0,
              total_fees_earned REAL NOT NULL DEFAULT 0,
              replaced_by INTEGER,
              created_at INTEGER NOT NULL,
              closed_at INTEGER
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS notifications (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              wallet_address TEXT NOT NULL,
              position_id INTEGER,
              type TEXT NOT NULL,
              title TEXT NOT NULL,
              message TEXT NOT NULL,
              action_type TEXT,
              read INTEGER NOT NULL DEFAULT 0,
              created_at INTEGER NOT NULL,
              FOREIGN KEY(position_id) REFERENCES positions(id) ON DELETE SET NULL
            );
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_positions_wallet_status ON positions(wallet_address, status);"
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_notifications_dedup ON notifications(wallet_address, position_id, type, created_at);"
        )

    # ── positions ──────────────────────────────────────────────────────────

    def _insert_position(
        self, cur: sqlite3.Cursor, new: NewPosition, *, now: int
    ) -> int:
        cur.execute(
            """
            INSERT INTO positions(wallet_address, pool_address, pool_name, position_address,
                                  mode, home_side, deposit_amount, shape, min_bin_id, max_bin_id,
                                  status, rebalance_count, total_fees_earned, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
            """,
            (
                new.wallet_address,
                new.pool_address,
                new.pool_name,
                new.position_address,
                str(new.mode),
                str(new.home_side),
                float(new.deposit_amount),
                str(new.strategy.shape),
                int(new.strategy.min_bin_id),
                int(new.strategy.max_bin_id),
                str(PositionStatus.ACTIVE),
                int(new.rebalance_count),
                now,
            ),
        )
        return int(cur.lastrowid)

    def create_position(self, new: NewPosition) -> int:
        now = _utc_epoch_s()
        with self._lock:
            return self._insert_position(self._conn.cursor(), new, now=now)

    def get_position(self, position_id: int) -> PositionRecord:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("SELECT * FROM positions WHERE id = ?", (int(position_id),))
            row = cur.fetchone()
        if row is None:
            raise KeyError(f"Position not found: {position_id}")
        return _position_from_row(row)

    def list_positions(
        self, wallet_address: str, *, status: PositionStatus | None = None
    ) -> list[PositionRecord]:
        sql = "SELECT * FROM positions WHERE wallet_address = ?"
        params: list[Any] = [wallet_address]
        if status is not None:
            sql += " AND status = ?"
            params.append(str(status))
        sql += " ORDER BY id ASC"
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(sql, params)
            rows = cur.fetchall()
        return [_position_from_row(r) for r in rows]

    def list_active_positions(self, wallet_address: str) -> list[PositionRecord]:
        return self.list_positions(wallet_address, status=PositionStatus.ACTIVE)

    def list_monitored_wallets(self) -> list[str]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                "SELECT DISTINCT wallet_address FROM positions WHERE status = ? ORDER BY wallet_address",
                (str(PositionStatus.ACTIVE),),
            )
            rows = cur.fetchall()
        return [str(r["wallet_address"]) for r in rows]

    def transition_status(
        self,
        position_id: int,
        *,
        expected: PositionStatus,
        new: PositionStatus,
    ) -> bool:
        """Compare-and-set on ``status``. Returns False if the row moved on."""
        if expected == PositionStatus.CLOSED:
            return False
        closed_at = _utc_epoch_s() if new == PositionStatus.CLOSED else None
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                """
                UPDATE positions
                SET status = ?, closed_at = COALESCE(?, closed_at)
                WHERE id = ? AND status = ?
                """,
                (str(new), closed_at, int(position_id), str(expected)),
            )
            return cur.rowcount == 1

    def replace_position(self, old_position_id: int, new: NewPosition) -> int:
        """Close a rebalancing record and open its successor in one transaction.

        The old record's counter is bumped to the successor's count so the
        audit trail shows how many rebalances each record went through.
        """
        now = _utc_epoch_s()
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                cur.execute(
                    """
                    UPDATE positions
                    SET status = ?, closed_at = ?, rebalance_count = ?
                    WHERE id = ? AND status = ?
                    """,
                    (
                        str(PositionStatus.CLOSED),
                        now,
                        int(new.rebalance_count),
                        int(old_position_id),
                        str(PositionStatus.REBALANCING),
                    ),
                )
                if cur.rowcount != 1:
                    raise KeyError(
                        f"Position {old_position_id} is not rebalancing; cannot replace"
                    )
                new_id = self._insert_position(cur, new, now=now)
                cur.execute(
                    "UPDATE positions SET replaced_by = ? WHERE id = ?",
                    (new_id, int(old_position_id)),
                )
                cur.execute("COMMIT")
            except Exception:
                cur.execute("ROLLBACK")
                raise
            return new_id

    def add_earned_fees(self, position_id: int, amount: float) -> None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                "UPDATE positions SET total_fees_earned = total_fees_earned + ? WHERE id = ?",
                (float(amount), int(position_id)),
            )
            if cur.rowcount == 0:
                raise KeyError(f"Position not found: {position_id}")

    def revert_stale_rebalancing(self) -> int:
        """Return rows left in ``rebalancing`` by a crashed process to ``active``."""
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                "UPDATE positions SET status = ? WHERE status = ?",
                (str(PositionStatus.ACTIVE), str(PositionStatus.REBALANCING)),
            )
            return int(cur.rowcount or 0)

    # ── notifications ──────────────────────────────────────────────────────

    def add_notification(
        self,
        *,
        wallet_address: str,
        type: str,
        title: str,
        message: str,
        position_id: int | None = None,
        action_type: str | None = None,
    ) -> int:
        now = _utc_epoch_s()
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                """
                INSERT INTO notifications(wallet_address, position_id, type, title, message, action_type, read, created_at)
                VALUES (?, ?, ?, ?, ?, ?, 0, ?)
                """,
                (wallet_address, position_id, type, title, message, action_type, now),
            )
            return int(cur.lastrowid)

    notify = add_notification

    def recent_notification_exists(
        self,
        *,
        wallet_address: str,
        position_id: int,
        type: str,
        within_s: float,
        now: int | None = None,
    ) -> bool:
        cutoff = (now if now is not None else _utc_epoch_s()) - int(within_s)
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                """
                SELECT 1 FROM notifications
                WHERE wallet_address = ? AND position_id = ? AND type = ? AND created_at >= ?
                LIMIT 1
                """,
                (wallet_address, int(position_id), type, cutoff),
            )
            return cur.fetchone() is not None

    def list_notifications(
        self, wallet_address: str, *, unread_only: bool = False, limit: int = 50
    ) -> list[NotificationRow]:
        sql = "SELECT * FROM notifications WHERE wallet_address = ?"
        if unread_only:
            sql += " AND read = 0"
        sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(sql, (wallet_address, int(limit)))
            rows = cur.fetchall()
        return [_notification_from_row(r) for r in rows]

    def mark_notifications_read(
        self, wallet_address: str, *, ids: list[int] | None = None
    ) -> int:
        with self._lock:
            cur = self._conn.cursor()
            if ids:
                placeholders = ", ".join("?" for _ in ids)
                cur.execute(
                    f"UPDATE notifications SET read = 1 WHERE wallet_address = ? AND id IN ({placeholders})",
                    (wallet_address, *[int(i) for i in ids]),
                )
            else:
                cur.execute(
                    "UPDATE notifications SET read = 1 WHERE wallet_address = ?",
                    (wallet_address,),
                )
            return int(cur.rowcount or 0)
