import json
import sqlite3
import threading
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterable, List, Optional

from .logging_setup import logger
from .models import BalanceSnapshot, BotSettings, TradeStatus
from .position import Trade

SETTINGS_KEY = "MAIN_SETTINGS"


class SQLitePersistence:
    """SQLite-backed store of trades, the settings singleton and balance history.

    APIs:
    - `get_trade(id)`, `save_trade(trade)` (upsert, assigns id on insert)
    - `find_all_trades()`, `find_trades(predicate)`, `find_open_trades()`
    - `delete_trades(ids)`, `purge_closed_trades()`
    - `get_settings()` / `save_settings(settings)`
    - `save_snapshot(snapshot)` / `list_snapshots()`

    All writes use transactions for atomicity. One connection is shared by
    the scheduler's worker threads, serialized by a lock.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self.conn = sqlite3.connect(str(self.path), timeout=30, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._init_db()

    def _init_db(self):
        from .db_migrations import apply_migrations

        apply_migrations(self.conn)

    # --- Trade APIs ---
    @staticmethod
    def _row_to_trade(row) -> Trade:
        d = json.loads(row["value"])
        d["id"] = row["id"]
        return Trade.from_dict(d)

    def get_trade(self, trade_id: int) -> Optional[Trade]:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("SELECT id, value FROM trades WHERE id = ?", (trade_id,))
            row = cur.fetchone()
        return self._row_to_trade(row) if row else None

    def save_trade(self, trade: Trade) -> Trade:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                if trade.id is None:
                    cur.execute(
                        "INSERT INTO trades(asset, status, value, updated_at) VALUES(?, ?, ?, strftime('%s','now'))",
                        (trade.asset, trade.status.value, json.dumps(trade.to_dict())),
                    )
                    trade.id = cur.lastrowid
                cur.execute(
                    "INSERT OR REPLACE INTO trades(id, asset, status, value, updated_at) VALUES(?, ?, ?, ?, strftime('%s','now'))",
                    (trade.id, trade.asset, trade.status.value, json.dumps(trade.to_dict())),
                )
                self.conn.commit()
            except sqlite3.Error:
                self.conn.rollback()
                raise
        return trade

    def find_all_trades(self) -> List[Trade]:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("SELECT id, value FROM trades ORDER BY id")
            rows = cur.fetchall()
        return [self._row_to_trade(r) for r in rows]

    def find_trades(self, predicate: Callable[[Trade], bool]) -> List[Trade]:
        return [t for t in self.find_all_trades() if predicate(t)]

    def find_open_trades(self) -> List[Trade]:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("SELECT id, value FROM trades WHERE status = ? ORDER BY id", (TradeStatus.OPEN.value,))
            rows = cur.fetchall()
        return [self._row_to_trade(r) for r in rows]

    def delete_trades(self, trade_ids: Iterable[int]) -> int:
        ids = list(trade_ids)
        if not ids:
            return 0
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            cur.executemany("DELETE FROM trades WHERE id = ?", [(i,) for i in ids])
            deleted = cur.rowcount
            self.conn.commit()
        return deleted

    def purge_closed_trades(self) -> int:
        """Delete every CLOSED trade. OPEN and ERROR trades are kept."""
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            cur.execute("DELETE FROM trades WHERE status = ?", (TradeStatus.CLOSED.value,))
            deleted = cur.rowcount
            self.conn.commit()
        return deleted

    # --- Settings APIs ---
    def get_settings(self) -> BotSettings:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("SELECT value FROM settings WHERE key = ?", (SETTINGS_KEY,))
            row = cur.fetchone()
        if not row:
            return BotSettings()
        return BotSettings.from_dict(json.loads(row[0]))

    def save_settings(self, settings: BotSettings) -> None:
        data = json.dumps(settings.to_dict())
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            cur.execute("INSERT OR REPLACE INTO settings(key, value, updated_at) VALUES(?, ?, strftime('%s','now'))", (SETTINGS_KEY, data))
            self.conn.commit()

    # --- Balance history APIs ---
    def save_snapshot(self, snapshot: BalanceSnapshot) -> BalanceSnapshot:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            cur.execute(
                "INSERT INTO balance_history(balance, timestamp) VALUES(?, ?)",
                (str(snapshot.balance), snapshot.timestamp.isoformat()),
            )
            snapshot.id = cur.lastrowid
            self.conn.commit()
        return snapshot

    def list_snapshots(self, limit: Optional[int] = None) -> List[BalanceSnapshot]:
        """Snapshots oldest first; with ``limit`` only the most recent ones."""
        with self._lock:
            cur = self.conn.cursor()
            if limit is None:
                cur.execute("SELECT id, balance, timestamp FROM balance_history ORDER BY id")
            else:
                cur.execute(
                    "SELECT * FROM (SELECT id, balance, timestamp FROM balance_history ORDER BY id DESC LIMIT ?) ORDER BY id",
                    (limit,),
                )
            rows = cur.fetchall()
        return [
            BalanceSnapshot(balance=Decimal(r["balance"]), timestamp=datetime.fromisoformat(r["timestamp"]), id=r["id"])
            for r in rows
        ]

    def close(self):
        try:
            self.conn.close()
        except sqlite3.Error as e:
            logger.warning(f"Error closing database {self.path}: {e}")
