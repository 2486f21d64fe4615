"""线性三因子策略（EFPC 状态机）。

EFPC（expected forward price change）= (模型预测 + 上一次 EFPC) / 2。
- 空仓且 EFPC ≥ threshold：在买一挂 post-only 限价买单开多；
- 持多且 EFPC ≤ -threshold：在卖一挂卖单平仓；
- 持多且仍有挂单、EFPC ≥ threshold、挂单价偏离买一：撤单后在卖一 - tick 重新挂买单。

决策同步返回，下单/撤单在事件循环中异步执行（`pending`）。
下单前持仓被乐观地写入，请求结束后（无论成功、拒单、失败或超时）
回滚到调用前的持仓；真实持仓由成交事件确立，请求期间已到达的成交/完结
事件优先于回滚。
"""

from __future__ import annotations

import asyncio
import logging
import math
from typing import Any, Awaitable

from broker.base import ExchangeAPI, ExchangeError, InsufficientFundsError
from factors.regression import predict
from market.order_book import LiveOrderBook
from risk.position_manager import FLAT, LONG, PositionManager, RequestInFlightError
from shared.models.models import LinearModel, LiveOrder, OrderRecord, SignalRecord, Snapshot, iso_ts
from shared.utils.precision import floor_to_decimals, snap_to_decimals
from strategy.base import Action, Decision, Strategy

logger = logging.getLogger(__name__)


class LinearStrategy(Strategy):
    """Args:
        manager: 持仓管理器（持仓/余额/单飞约束）
        exchange: 交易所接口
        order_book: 实时盘口
        writer: 记录写入器（可选，需提供 `submit(record)`）
        threshold: EFPC 开/平仓阈值
        min_order_size: 最小下单量（含等于）以下不下单
        price_tick: 重新挂单时相对卖一的价格偏移
        price_precision / size_precision: 价格与数量的小数位
    """

    def __init__(
        self,
        manager: PositionManager,
        exchange: ExchangeAPI,
        order_book: LiveOrderBook,
        *,
        writer: Any = None,
        threshold: float = 0.2,
        min_order_size: float = 0.001,
        price_tick: float = 0.01,
        price_precision: int = 6,
        size_precision: int = 6,
    ):
        self.manager = manager
        self.exchange = exchange
        self.order_book = order_book
        self.writer = writer
        self.threshold = float(threshold)
        self.min_order_size = float(min_order_size)
        self.price_tick = float(price_tick)
        self.price_precision = int(price_precision)
        self.size_precision = int(size_precision)

        self.last_efpc = 0.0
        self.last_mid: float | None = None
        self.pending: asyncio.Task | None = None

    @property
    def product(self) -> str:
        return self.exchange.product

    # -- 信号
    def calculate_efpc(self, snapshot: Snapshot, model: LinearModel) -> float:
        """平滑后的预测：`(predict + last_efpc) / 2`。非有限值不更新 `last_efpc`。"""
        efpc = (predict(model, snapshot) + self.last_efpc) / 2
        if math.isfinite(efpc):
            self.last_efpc = efpc
        return efpc

    def save_signal(self, snapshot: Snapshot) -> None:
        delta = 0.0 if self.last_mid is None else snapshot.mid_price - self.last_mid
        self.last_mid = snapshot.mid_price
        if self.writer is None:
            return
        self.writer.submit(SignalRecord(voi=snapshot.voi, delta_price=delta, timestamp=iso_ts(snapshot.ts)))

    def on_signal(self, snapshot: Snapshot, model: LinearModel | None) -> Decision:
        if model is None:
            return Decision(Action.HOLD, reason="no model")

        efpc = self.calculate_efpc(snapshot, model)
        if not math.isfinite(efpc):
            logger.warning(f"⚠️ Non-finite EFPC ({efpc}), holding")
            return Decision(Action.HOLD, efpc=efpc, reason="non-finite efpc")

        m = self.manager
        if m.active_request:
            return Decision(Action.HOLD, efpc=efpc, reason="request in flight")

        bid = self.order_book.best_bid()
        ask = self.order_book.best_ask()
        if bid is None or ask is None:
            return Decision(Action.HOLD, efpc=efpc, reason="book not ready")

        has_open = self.exchange.has_open_orders()

        if m.position == LONG and has_open and efpc >= self.threshold and m.open_order_price != bid.price:
            return self._reposition(efpc, ask.price)

        if m.position == FLAT and efpc >= self.threshold:
            if has_open:
                return self._cancel(efpc)
            return self._open_long(efpc, bid.price)

        if m.position == LONG and efpc <= -self.threshold:
            if has_open:
                return self._cancel(efpc)
            return self._close_long(efpc, ask.price)

        return Decision(Action.HOLD, efpc=efpc)

    # -- 决策
    def _order_size(self, price: float) -> float:
        quote = self.manager.get_balance(self.manager.quote_currency)
        size = self.manager.risk * quote / price
        logger.debug(f"[LinearStrategy] Attempting order size {size} @ {price}")
        return floor_to_decimals(size, self.size_precision)

    def _open_long(self, efpc: float, bid: float) -> Decision:
        price = snap_to_decimals(bid, self.price_precision)
        size = self._order_size(price)
        if not size > self.min_order_size:
            logger.warning(f"⚠️ Order size {size} too small, skipping")
            return Decision(Action.HOLD, efpc=efpc, size=size, reason="size too small")

        self.manager.set_optimistic(LONG)
        self._schedule(self._place("buy", price, size))
        logger.info(f"📈 EFPC {efpc:.6f} ≥ {self.threshold}: buy {size} @ {price}")
        return Decision(Action.OPEN, efpc=efpc, price=price, size=size)

    def _close_long(self, efpc: float, ask: float) -> Decision:
        m = self.manager
        filled = m.open_order_size - m.remaining_order_size
        size = filled if filled > 0 else m.open_order_size
        if not (math.isfinite(size) and size > 0):
            logger.warning(f"⚠️ Close size {size} invalid, skipping")
            return Decision(Action.HOLD, efpc=efpc, size=size, reason="nothing to close")

        price = snap_to_decimals(ask, self.price_precision)
        size = snap_to_decimals(size, self.size_precision)
        m.set_optimistic(FLAT)
        self._schedule(self._place("sell", price, size))
        logger.info(f"📉 EFPC {efpc:.6f} ≤ {-self.threshold}: sell {size} @ {price}")
        return Decision(Action.CLOSE, efpc=efpc, price=price, size=size)

    def _reposition(self, efpc: float, ask: float) -> Decision:
        price = snap_to_decimals(ask - self.price_tick, self.price_precision)
        size = self._order_size(price)
        if not size > self.min_order_size:
            logger.warning(f"⚠️ Order size {size} too small, skipping reposition")
            return Decision(Action.HOLD, efpc=efpc, size=size, reason="size too small")

        self._schedule(self._cancel_then_place("buy", price, size))
        logger.info(f"🔁 Repositioning buy {size} @ {price}")
        return Decision(Action.REPOSITION, efpc=efpc, price=price, size=size)

    def _cancel(self, efpc: float) -> Decision:
        self._schedule(self._cancel_all())
        return Decision(Action.CANCEL, efpc=efpc)

    # -- 执行
    def _schedule(self, coro: Awaitable[Any]) -> asyncio.Task:
        self.pending = asyncio.ensure_future(coro)
        return self.pending

    async def _cancel_all(self) -> list[str] | None:
        """撤销全部挂单；失败返回 None（挂单可能仍在）。"""
        try:
            ids = await self.manager.call(self.exchange.cancel_all_orders)
        except RequestInFlightError:
            logger.warning("⚠️ Cancel skipped: request in flight")
            return None
        except (ExchangeError, asyncio.TimeoutError) as exc:
            logger.error(f"❌ Cancel orders failed: {exc!r}")
            return None
        logger.info(f"🗑️ Cancelled orders: {ids}")
        return ids

    async def _cancel_then_place(self, side: str, price: float, size: float) -> LiveOrder | None:
        if await self._cancel_all() is None:
            logger.warning("⚠️ Reposition aborted: previous order may still be resting")
            return None
        self.manager.set_optimistic(LONG)
        return await self._place(side, price, size)

    async def _place(self, side: str, price: float, size: float) -> LiveOrder | None:
        m = self.manager
        try:
            order = await m.call(self.exchange.place_order, side, price, size, "limit", True)
        except InsufficientFundsError as exc:
            logger.error(f"❌ Attempting to place order larger than current balance: {exc}")
            m.settle_position()
            m.on_fatal("Insufficient funds")
            return None
        except RequestInFlightError:
            logger.warning(f"⚠️ {side} order skipped: request in flight")
            m.settle_position()
            return None
        except (ExchangeError, asyncio.TimeoutError) as exc:
            logger.error(f"❌ Place {side} order failed: {exc!r}")
            m.settle_position()
            return None

        if order.is_rejected:
            logger.warning(f"⚠️ Order rejected: {order.reject_reason}")
        else:
            logger.info(f"✅ Order placed: {order.id} {side} {order.size}@{order.price}")
            if side == "buy" and m.open_order_id != order.id:
                m.track_open_order(order.price, order.size, order.remaining_size, order_id=order.id)
            if self.writer is not None:
                self.writer.submit(
                    OrderRecord(
                        order_id=order.id,
                        timestamp=iso_ts(order.time),
                        product=order.product,
                        price=order.price,
                        size=order.size,
                        side=side,
                        type="open" if side == "buy" else "close",
                    )
                )
        m.settle_position()
        return order
