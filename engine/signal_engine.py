"""信号引擎：成交累计 → 定时快照 → 环形缓冲 → 线性模型。"""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime
from typing import Deque

from factors.microstructure import derive_snapshot
from factors.regression import build_linear_data, fit_linear_model
from market.order_book import LiveOrderBook
from shared.models.models import LinearData, LinearModel, Snapshot, TradeEvent

logger = logging.getLogger(__name__)


class BookNotReadyError(RuntimeError):
    """盘口任一侧为空，无法生成快照。"""


class SignalEngine:
    """订单流信号引擎。

    职责：
    1. 累计每个采样 tick 内的成交量/成交额（`ingest`）
    2. 每个采样间隔读取盘口生成一条快照并写入定长环形缓冲（`build_snapshot`）
    3. 缓冲区填满后对齐数据并拟合线性模型（`refit`）

    Args:
        order_book: 只读的本地盘口
        record_size: 环形缓冲容量
        lags: 回归数据头部裁剪条数
        delay: 标签前瞻窗口（tick 数）
        max_book_age_s: 盘口超过该秒数未更新视为未就绪（None 不检查）
    """

    def __init__(
        self,
        order_book: LiveOrderBook,
        *,
        record_size: int,
        lags: int,
        delay: int,
        max_book_age_s: float | None = None,
    ):
        if record_size <= 0:
            raise ValueError("record_size must be > 0")
        if lags < 0 or delay < 0:
            raise ValueError("lags/delay must be >= 0")
        self.order_book = order_book
        self.record_size = int(record_size)
        self.lags = int(lags)
        self.delay = int(delay)
        self.max_book_age_s = max_book_age_s

        # 超出容量时自动淘汰最旧的一条（O(1)）
        self._records: Deque[Snapshot] = deque(maxlen=self.record_size)
        self._volume = 0.0
        self._turnover = 0.0
        self._tick_open = False
        self._model: LinearModel | None = None
        self.tick_count = 0

    @property
    def model(self) -> LinearModel | None:
        return self._model

    @property
    def records(self) -> tuple[Snapshot, ...]:
        """缓冲区的不可变拷贝（拟合时读这个，避免边读边写）。"""
        return tuple(self._records)

    @property
    def last_snapshot(self) -> Snapshot | None:
        return self._records[-1] if self._records else None

    @property
    def is_full(self) -> bool:
        return len(self._records) == self.record_size

    def ingest(self, trade: TradeEvent) -> None:
        """累计一笔成交。新 tick 的第一笔成交会重置累计值。"""
        notional = float(trade.price) * float(trade.size)
        if not self._tick_open:
            self._volume = float(trade.size)
            self._turnover = notional
            self._tick_open = True
        else:
            self._volume += float(trade.size)
            self._turnover += notional

    def build_snapshot(self, ts: datetime | None = None) -> Snapshot:
        """生成当前 tick 的快照并写入缓冲区。

        Raises
        ------
        BookNotReadyError
            盘口尚未就绪或已过期。
        """
        book = self.order_book
        if not book.is_ready():
            raise BookNotReadyError(f"order book for {book.product} is not ready")
        age = book.age()
        if self.max_book_age_s is not None and age > self.max_book_age_s:
            raise BookNotReadyError(f"order book for {book.product} is stale ({age:.1f}s)")
        best_bid = book.best_bid()
        best_ask = book.best_ask()

        snapshot = derive_snapshot(
            best_bid,
            best_ask,
            volume=self._volume,
            turnover=self._turnover,
            prev=self.last_snapshot,
            ts=ts,
        )
        self._records.append(snapshot)
        self._tick_open = False
        self.tick_count += 1
        return snapshot

    def build_linear_data(self) -> LinearData:
        return build_linear_data(
            self.records,
            record_size=self.record_size,
            lags=self.lags,
            delay=self.delay,
        )

    def build_linear_model(self, data: LinearData) -> LinearModel:
        logger.info("[SignalEngine] Building new model from %d samples...", len(data))
        return fit_linear_model(data)

    def refit(self) -> LinearModel | None:
        """缓冲区填满时重新拟合并整体替换模型；未填满返回 None。"""
        if not self.is_full:
            return None
        model = self.build_linear_model(self.build_linear_data())
        self._model = model
        logger.info(
            "[SignalEngine] Model updated: b=%.6g voi=%.6g oir=%.6g mpb=%.6g",
            model.b,
            model.voi_coeff,
            model.oir_coeff,
            model.mpb_coeff,
        )
        return model
