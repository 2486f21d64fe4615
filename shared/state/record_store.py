"""SQLite 交易记录存储（订单 / 成交 / 信号）。

设计
----
- SQLite（WAL），append-only 三张表：orders / trades / signals；
- 交易路径只调用 `RecordWriter.submit`，写库在后台任务中完成，
  写库失败只记录日志，不影响交易。
"""

from __future__ import annotations

import asyncio
import logging
import math
import sqlite3
from pathlib import Path

from shared.models.models import OrderRecord, SignalRecord, TradeRecord

logger = logging.getLogger(__name__)

Record = OrderRecord | TradeRecord | SignalRecord


class RecordStore:
    def __init__(self, path: str | Path):
        self.path = Path(path)
        if str(path) != ":memory:":
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(path), isolation_level=None)
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._ensure_schema()

    def close(self) -> None:
        try:
            self._conn.close()
        except sqlite3.Error as exc:
            logger.warning(f"⚠️ Error closing record store: {exc}")

    def _ensure_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS orders (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              order_id TEXT NOT NULL,
              timestamp TEXT NOT NULL,
              product TEXT NOT NULL,
              price REAL NOT NULL,
              size REAL NOT NULL,
              side TEXT NOT NULL CHECK (side IN ('buy', 'sell')),
              type TEXT NOT NULL CHECK (type IN ('open', 'close'))
            );
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS trades (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              order_id TEXT NOT NULL,
              timestamp TEXT NOT NULL,
              side TEXT NOT NULL,
              price REAL NOT NULL,
              size REAL NOT NULL
            );
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS signals (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              voi REAL,
              delta_price REAL,
              timestamp TEXT NOT NULL
            );
            """
        )
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_trades_oid ON trades(order_id);")

    def save_order(self, rec: OrderRecord) -> None:
        self._conn.execute(
            "INSERT INTO orders (order_id, timestamp, product, price, size, side, type) VALUES (?, ?, ?, ?, ?, ?, ?);",
            (rec.order_id, rec.timestamp, rec.product, float(rec.price), float(rec.size), rec.side, rec.type),
        )

    def save_trade(self, rec: TradeRecord) -> None:
        self._conn.execute(
            "INSERT INTO trades (order_id, timestamp, side, price, size) VALUES (?, ?, ?, ?, ?);",
            (rec.order_id, rec.timestamp, rec.side, float(rec.price), float(rec.size)),
        )

    def save_signal(self, rec: SignalRecord) -> None:
        # nan/inf 不是合法的 SQL 数值，存为 NULL
        self._conn.execute(
            "INSERT INTO signals (voi, delta_price, timestamp) VALUES (?, ?, ?);",
            (_finite_or_none(rec.voi), _finite_or_none(rec.delta_price), rec.timestamp),
        )

    def save(self, rec: Record) -> None:
        if isinstance(rec, OrderRecord):
            self.save_order(rec)
        elif isinstance(rec, TradeRecord):
            self.save_trade(rec)
        elif isinstance(rec, SignalRecord):
            self.save_signal(rec)
        else:
            raise TypeError(f"unsupported record type: {type(rec).__name__}")

    def list_orders(self) -> list[OrderRecord]:
        rows = self._conn.execute(
            "SELECT order_id, timestamp, product, price, size, side, type FROM orders ORDER BY id;"
        ).fetchall()
        return [OrderRecord(*row) for row in rows]

    def list_trades(self) -> list[TradeRecord]:
        rows = self._conn.execute(
            "SELECT order_id, timestamp, side, price, size FROM trades ORDER BY id;"
        ).fetchall()
        return [TradeRecord(*row) for row in rows]

    def list_signals(self) -> list[SignalRecord]:
        rows = self._conn.execute("SELECT voi, delta_price, timestamp FROM signals ORDER BY id;").fetchall()
        return [
            SignalRecord(
                voi=float("nan") if voi is None else voi,
                delta_price=float("nan") if dp is None else dp,
                timestamp=ts,
            )
            for voi, dp, ts in rows
        ]


def _finite_or_none(value: float) -> float | None:
    v = float(value)
    return v if math.isfinite(v) else None


class RecordWriter:
    """后台写库（fire-and-forget）。

    `submit` 从不阻塞交易路径：队列满时丢弃记录并告警。
    `store` 为 None 时所有记录直接丢弃（storage.enabled = false）。
    """

    def __init__(self, store: RecordStore | None, *, maxsize: int = 10_000):
        self.store = store
        self.queue: asyncio.Queue[Record] = asyncio.Queue(maxsize=maxsize)
        self.running = False
        self.written = 0
        self._task: asyncio.Task | None = None

    def submit(self, rec: Record) -> bool:
        if self.store is None:
            return False
        try:
            self.queue.put_nowait(rec)
        except asyncio.QueueFull:
            logger.warning(f"⚠️ Record queue full, dropping {type(rec).__name__}")
            return False
        return True

    def _write(self, rec: Record) -> None:
        if self.store is None:
            return
        try:
            self.store.save(rec)
            self.written += 1
        except (sqlite3.Error, TypeError) as exc:
            logger.error(f"❌ Failed to save {type(rec).__name__}: {exc}")

    def flush(self) -> int:
        """同步写入队列中的全部记录，返回写入条数。"""
        count = 0
        while not self.queue.empty():
            self._write(self.queue.get_nowait())
            self.queue.task_done()
            count += 1
        return count

    async def _run(self) -> None:
        while self.running:
            rec = await self.queue.get()
            self._write(rec)
            self.queue.task_done()

    async def start(self) -> None:
        self.running = True
        self._task = asyncio.create_task(self._run())

    async def close(self) -> None:
        self.running = False
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self.flush()
        if self.store is not None:
            self.store.close()
