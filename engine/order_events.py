"""订单生命周期事件处理。

交易所（实盘轮询 / 纸面撮合）把订单状态变化写入 `ExchangeAPI.events`，
`OrderLifecycleHandler` 逐个消费并更新 PositionManager 与持久化记录。
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from broker.base import ExchangeAPI
from risk.position_manager import FLAT, LONG, PositionManager
from shared.models.models import OrderEvent, OrderEventKind, TradeRecord, iso_ts

logger = logging.getLogger(__name__)


class OrderLifecycleHandler:
    """Args:
        manager: 持仓管理器
        exchange: 交易所接口（用于读取本地挂单视图）
        writer: 记录写入器（可选）
    """

    def __init__(self, manager: PositionManager, exchange: ExchangeAPI, *, writer: Any = None):
        self.manager = manager
        self.exchange = exchange
        self.writer = writer
        self.handled = 0
        self._handlers = {
            OrderEventKind.PLACED: self._on_placed,
            OrderEventKind.REJECTED: self._on_rejected,
            OrderEventKind.CANCELLED: self._on_cancelled,
            OrderEventKind.FILLED: self._on_filled,
            OrderEventKind.DONE: self._on_done,
            OrderEventKind.FAILED: self._on_failed,
        }

    def handle(self, event: OrderEvent) -> None:
        self._handlers[event.kind](event)
        self.handled += 1

    async def pump(self) -> None:
        """持续消费交易所事件队列（由引擎作为后台任务运行）。"""
        while True:
            event = await self.exchange.events.get()
            self.handle(event)

    def _on_placed(self, event: OrderEvent) -> None:
        logger.info(f"📝 Order placed: {event.order_id} {event.side} {event.size}@{event.price}")
        m = self.manager

        other_buys = [o for o in self.exchange.open_orders() if o.side == "buy" and o.id != event.order_id]
        if (event.side == "buy" and other_buys) or (event.side == "sell" and m.settled_position == FLAT):
            logger.error("🚨 Strategy attempting to open another order matching position")
            m.on_fatal("Order placed on the same side as the current position")
            return

        if event.side == "buy" and m.open_order_id != event.order_id:
            m.track_open_order(event.price, event.size, event.remaining_size, order_id=event.order_id)

    def _on_rejected(self, event: OrderEvent) -> None:
        logger.warning(f"⚠️ Order rejected: {event.side} {event.size}@{event.price} reason={event.reason}")

    def _on_cancelled(self, event: OrderEvent) -> None:
        logger.info(f"🗑️ Order cancelled: {event.order_id}")
        if event.side != "buy":
            return
        m = self.manager
        if m.remaining_order_size != 0:
            # 部分成交的开仓单：只保留已成交部分
            m.open_order_size = m.open_order_size - m.remaining_order_size
            m.remaining_order_size = 0.0

    def _on_filled(self, event: OrderEvent) -> None:
        logger.info(f"💰 Fill: {event.order_id} {event.side} {event.size}@{event.price}")
        if self.writer is not None:
            self.writer.submit(
                TradeRecord(
                    order_id=event.order_id,
                    timestamp=iso_ts(event.ts),
                    side=event.side,
                    price=event.price,
                    size=event.size,
                )
            )
        if event.side == "buy":
            m = self.manager
            m.remaining_order_size = event.remaining_size
            m.confirm_position(LONG)

    def _on_done(self, event: OrderEvent) -> None:
        logger.info(f"🏁 Order done: {event.order_id} {event.side}")
        m = self.manager
        if event.side == "sell":
            cumulative = m.calculate_loss(event.price)
            logger.info(f"Running losses: {cumulative}")
            m.close_position()
        else:
            m.remaining_order_size = 0.0

    def _on_failed(self, event: OrderEvent) -> None:
        logger.error(f"❌ Place order failed: {event.side} {event.size}@{event.price} cause: {event.reason}")
        if (event.reason or "").lower() == "insufficient funds":
            logger.error("🚨 Attempting to place order larger than current balance, shutting down")
            self.manager.on_fatal("Insufficient funds")


def drain(handler: OrderLifecycleHandler, queue: asyncio.Queue[OrderEvent]) -> int:
    """同步处理队列中已有的全部事件（测试与收尾时使用）。"""
    count = 0
    while not queue.empty():
        handler.handle(queue.get_nowait())
        count += 1
    return count
