"""纸面交易所（dry-run / paper）。

不触网：挂单按本地盘口撮合，余额在本地维护。
撮合规则（maker 语义）：
- 买单：最优卖价 <= 挂单价时成交，成交量不超过卖一挂单量；
- 卖单：最优买价 >= 挂单价时成交，成交量不超过买一挂单量；
- post-only 订单若下单即会吃单，直接拒单。
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Mapping

from broker.base import ExchangeAPI, InsufficientFundsError
from market.order_book import LiveOrderBook
from shared.models.models import LiveOrder, OrderEvent, OrderEventKind

logger = logging.getLogger(__name__)


class PaperExchange(ExchangeAPI):
    """本地模拟交易所。

    Args:
        product: 交易对（如 'BTC/USDT'）
        order_book: 用于撮合的本地盘口
        balances: 初始余额 {currency: amount}
        poll_interval_s: 后台撮合间隔
    """

    def __init__(
        self,
        product: str,
        order_book: LiveOrderBook,
        *,
        balances: Mapping[str, float] | None = None,
        poll_interval_s: float = 0.5,
    ):
        self.product = product
        self.order_book = order_book
        self.base_currency, self.quote_currency = product.split("/")
        self.balances: dict[str, float] = {k: float(v) for k, v in (balances or {}).items()}
        self.balances.setdefault(self.base_currency, 0.0)
        self.balances.setdefault(self.quote_currency, 0.0)
        self.poll_interval_s = float(poll_interval_s)
        self.events: asyncio.Queue[OrderEvent] = asyncio.Queue()
        self.running = False
        self._open: dict[str, LiveOrder] = {}
        self._ids = itertools.count(1)
        self._task: asyncio.Task | None = None

    def open_orders(self) -> list[LiveOrder]:
        return list(self._open.values())

    def _locked(self, side: str) -> float:
        if side == "buy":
            return sum(o.price * o.remaining_size for o in self._open.values() if o.side == "buy")
        return sum(o.remaining_size for o in self._open.values() if o.side == "sell")

    def _would_cross(self, side: str, price: float) -> bool:
        if side == "buy":
            ask = self.order_book.best_ask()
            return ask is not None and price >= ask.price
        bid = self.order_book.best_bid()
        return bid is not None and price <= bid.price

    def _event(self, kind: OrderEventKind, order: LiveOrder, **overrides) -> None:
        fields = {
            "order_id": order.id,
            "side": order.side,
            "price": order.price,
            "size": order.size,
            "remaining_size": order.remaining_size,
            "reason": order.reject_reason,
        }
        fields.update(overrides)
        self.events.put_nowait(OrderEvent(kind=kind, **fields))

    async def place_order(
        self,
        side: str,
        price: float,
        size: float,
        order_type: str = "limit",
        post_only: bool = True,
    ) -> LiveOrder:
        price, size = float(price), float(size)
        if side == "buy":
            available = self.balances[self.quote_currency] - self._locked("buy")
            required = price * size
        else:
            available = self.balances[self.base_currency] - self._locked("sell")
            required = size
        if required > available + 1e-12:
            raise InsufficientFundsError(f"{side} {size}@{price} needs {required:.8f}, available {available:.8f}")

        order = LiveOrder(
            id=f"paper-{next(self._ids)}",
            product=self.product,
            side=side,
            price=price,
            size=size,
            remaining_size=size,
        )
        if post_only and self._would_cross(side, price):
            order.status = "rejected"
            order.reject_reason = "post only"
            self._event(OrderEventKind.REJECTED, order)
            return order

        self._open[order.id] = order
        self._event(OrderEventKind.PLACED, order)
        logger.info(f"📝 Paper order: {order.id} {side} {size}@{price}")
        return order

    async def cancel_all_orders(self) -> list[str]:
        ids = list(self._open.keys())
        for order_id in ids:
            order = self._open.pop(order_id)
            order.status = "cancelled"
            self._event(OrderEventKind.CANCELLED, order)
        return ids

    async def load_balances(self) -> dict[str, float]:
        return dict(self.balances)

    def match(self) -> int:
        """按当前盘口撮合全部挂单，返回本次成交笔数。"""
        fills = 0
        for order in list(self._open.values()):
            if order.side == "buy":
                level = self.order_book.best_ask()
                crossed = level is not None and level.price <= order.price
            else:
                level = self.order_book.best_bid()
                crossed = level is not None and level.price >= order.price
            if not crossed or level is None:
                continue

            qty = min(order.remaining_size, level.size)
            if qty <= 0:
                continue
            notional = qty * order.price
            if order.side == "buy":
                self.balances[self.quote_currency] -= notional
                self.balances[self.base_currency] += qty
            else:
                self.balances[self.base_currency] -= qty
                self.balances[self.quote_currency] += notional
            order.remaining_size -= qty
            fills += 1
            self._event(OrderEventKind.FILLED, order, size=qty)

            if order.remaining_size <= 1e-12:
                order.remaining_size = 0.0
                order.status = "done"
                self._open.pop(order.id, None)
                self._event(OrderEventKind.DONE, order)
        return fills

    async def _match_loop(self) -> None:
        while self.running:
            self.match()
            await asyncio.sleep(self.poll_interval_s)

    async def start(self) -> None:
        self.running = True
        self._task = asyncio.create_task(self._match_loop())

    async def close(self) -> None:
        self.running = False
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
