"""实盘交易所适配（ccxt.async_support）。

说明：
- 只跟踪本策略自己下的订单（本地挂单视图）；
- 订单状态通过轮询 `fetch_order` 获取，状态变化转成 OrderEvent 写入事件队列。
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import ccxt.async_support as ccxt
from ccxt.base.errors import BaseError, InsufficientFunds, InvalidOrder

from broker.base import ExchangeAPI, ExchangeError, InsufficientFundsError
from shared.models.models import LiveOrder, OrderEvent, OrderEventKind

logger = logging.getLogger(__name__)

_STATUS_MAP = {
    "open": "open",
    "closed": "done",
    "canceled": "cancelled",
    "cancelled": "cancelled",
    "expired": "cancelled",
    "rejected": "rejected",
}


def _to_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value) if value is not None else default
    except (TypeError, ValueError):
        return default


class CcxtExchange(ExchangeAPI):
    """基于 ccxt 的单品种交易所客户端。

    Args:
        product: 交易对（ccxt 格式，如 'BTC/USDT'）
        exchange_name: ccxt 交易所 ID（默认 binance）
        api_key / api_secret: API 凭证
        poll_interval_s: 订单轮询间隔
        client: 可注入的 ccxt 实例（测试用）
    """

    def __init__(
        self,
        product: str,
        *,
        exchange_name: str = "binance",
        api_key: str | None = None,
        api_secret: str | None = None,
        poll_interval_s: float = 1.0,
        client: Any = None,
    ):
        self.product = product
        self.poll_interval_s = float(poll_interval_s)
        if client is None:
            if not api_key or not api_secret:
                raise ValueError(f"Missing API key for LIVE trading on {exchange_name}")
            exchange_cls = getattr(ccxt, exchange_name)
            client = exchange_cls(
                {
                    "apiKey": api_key,
                    "secret": api_secret,
                    "enableRateLimit": True,
                    "options": {"defaultType": "spot"},
                }
            )
        self.client = client
        self.events: asyncio.Queue[OrderEvent] = asyncio.Queue()
        self.running = False
        self._open: dict[str, LiveOrder] = {}
        self._monitor_task: asyncio.Task | None = None

    def open_orders(self) -> list[LiveOrder]:
        return list(self._open.values())

    def _emit(self, kind: OrderEventKind, order: LiveOrder, **overrides: Any) -> None:
        fields: dict[str, Any] = {
            "order_id": order.id,
            "side": order.side,
            "price": order.price,
            "size": order.size,
            "remaining_size": order.remaining_size,
            "reason": order.reject_reason,
        }
        fields.update(overrides)
        self.events.put_nowait(OrderEvent(kind=kind, **fields))

    def _to_live_order(self, raw: dict[str, Any], *, side: str, price: float, size: float) -> LiveOrder:
        amount = _to_float(raw.get("amount"), size)
        filled = _to_float(raw.get("filled"))
        remaining = raw.get("remaining")
        status = _STATUS_MAP.get(str(raw.get("status") or "open").lower(), "open")
        info = raw.get("info") if isinstance(raw.get("info"), dict) else {}
        return LiveOrder(
            id=str(raw.get("id") or ""),
            product=str(raw.get("symbol") or self.product),
            side=str(raw.get("side") or side),
            price=_to_float(raw.get("price"), price),
            size=amount,
            remaining_size=_to_float(remaining, amount - filled),
            status=status,
            reject_reason=info.get("reject_reason") if status == "rejected" else None,
        )

    async def place_order(
        self,
        side: str,
        price: float,
        size: float,
        order_type: str = "limit",
        post_only: bool = True,
    ) -> LiveOrder:
        params = {"postOnly": True} if post_only else {}
        try:
            raw = await self.client.create_order(self.product, order_type, side, size, price, params)
        except InsufficientFunds as exc:
            # 余额不足只抛异常，由调用方按致命错误处理
            raise InsufficientFundsError(str(exc)) from exc
        except InvalidOrder as exc:
            # post-only 会吃单、精度不合法等：视为拒单
            order = LiveOrder(
                id="",
                product=self.product,
                side=side,
                price=price,
                size=size,
                remaining_size=size,
                status="rejected",
                reject_reason=str(exc),
            )
            self._emit(OrderEventKind.REJECTED, order)
            return order
        except BaseError as exc:
            self.events.put_nowait(
                OrderEvent(OrderEventKind.FAILED, order_id="", side=side, price=price, size=size, reason=str(exc))
            )
            raise ExchangeError(str(exc)) from exc

        order = self._to_live_order(raw, side=side, price=price, size=size)
        if order.is_rejected:
            self._emit(OrderEventKind.REJECTED, order)
            return order
        self._open[order.id] = order
        self._emit(OrderEventKind.PLACED, order)
        return order

    async def cancel_all_orders(self) -> list[str]:
        ids = list(self._open.keys())
        try:
            await self.client.cancel_all_orders(self.product)
        except BaseError as exc:
            raise ExchangeError(str(exc)) from exc
        for order_id in ids:
            order = self._open.pop(order_id, None)
            if order is not None:
                order.status = "cancelled"
                self._emit(OrderEventKind.CANCELLED, order)
        return ids

    async def load_balances(self) -> dict[str, float]:
        try:
            raw = await self.client.fetch_balance()
        except BaseError as exc:
            raise ExchangeError(str(exc)) from exc
        free = raw.get("free") if isinstance(raw, dict) else None
        if not isinstance(free, dict):
            raise ExchangeError("unexpected balance payload")
        return {str(cur): _to_float(amount) for cur, amount in free.items()}

    async def poll_orders(self) -> None:
        """轮询一次全部本地挂单，把状态变化转换成事件。"""
        for order_id in list(self._open.keys()):
            order = self._open.get(order_id)
            if order is None:
                continue
            try:
                raw = await self.client.fetch_order(order_id, self.product)
            except BaseError as exc:
                logger.error(f"❌ 查询订单{order_id}失败: {exc}")
                continue

            latest = self._to_live_order(raw, side=order.side, price=order.price, size=order.size)
            fill_delta = order.remaining_size - latest.remaining_size
            if fill_delta > 0:
                fill_price = _to_float(raw.get("average"), latest.price) or latest.price
                order.remaining_size = latest.remaining_size
                self._emit(OrderEventKind.FILLED, order, price=fill_price, size=fill_delta)

            if latest.status == "done":
                self._open.pop(order_id, None)
                order.status = "done"
                self._emit(OrderEventKind.DONE, order, remaining_size=0.0)
            elif latest.status == "cancelled":
                self._open.pop(order_id, None)
                order.status = "cancelled"
                self._emit(OrderEventKind.CANCELLED, order)

    async def _monitor_loop(self) -> None:
        logger.info("🔍 启动订单轮询监控...")
        while self.running:
            try:
                await self.poll_orders()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"❌ 订单监控循环错误: {exc}")
            await asyncio.sleep(self.poll_interval_s)

    async def start(self) -> None:
        self.running = True
        self._monitor_task = asyncio.create_task(self._monitor_loop())

    async def close(self) -> None:
        self.running = False
        if self._monitor_task is not None and not self._monitor_task.done():
            self._monitor_task.cancel()
            try:
                await self._monitor_task
            except asyncio.CancelledError:
                pass
        try:
            await self.client.close()
            logger.info("✅ Exchange client closed")
        except Exception as exc:
            logger.warning(f"⚠️ Error closing exchange client: {exc}")
