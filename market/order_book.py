"""本地实时盘口（只维护最优一档）。"""

from __future__ import annotations

import time
from typing import Callable

from shared.models.models import BookLevel


class LiveOrderBook:
    """最优买卖一档的本地缓存。

    行情客户端写入，SignalEngine / 策略只读。
    """

    def __init__(self, product: str, *, now_fn: Callable[[], float] | None = None):
        self.product = product
        self._now = now_fn or time.time
        self._bid: BookLevel | None = None
        self._ask: BookLevel | None = None
        self._ts: float | None = None

    def apply_book_ticker(self, bid: float, bid_qty: float, ask: float, ask_qty: float) -> None:
        """应用一条最优挂单更新（Binance bookTicker 语义）。"""
        self._bid = BookLevel(price=float(bid), size=float(bid_qty))
        self._ask = BookLevel(price=float(ask), size=float(ask_qty))
        self._ts = self._now()

    def best_bid(self) -> BookLevel | None:
        return self._bid

    def best_ask(self) -> BookLevel | None:
        return self._ask

    def is_ready(self) -> bool:
        return self._bid is not None and self._ask is not None

    def age(self) -> float:
        """距上次更新的秒数；从未更新返回 inf。"""
        if self._ts is None:
            return float("inf")
        return self._now() - self._ts
