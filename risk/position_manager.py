"""持仓与风险预算管理（PositionManager）。

持仓只有两种状态：0（空仓）/ 1（多头），策略不做空。
所有持仓/挂单跟踪字段只能通过本类的方法修改。
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Iterator, TypeVar

from broker.base import ExchangeAPI, ExchangeError

logger = logging.getLogger(__name__)

FLAT = 0
LONG = 1

T = TypeVar("T")


class RequestInFlightError(RuntimeError):
    """已有交易所请求在途（单飞约束）。"""


def exit_process(reason: str) -> None:
    """默认的致命错误处理：记录后退出进程。"""
    logger.critical(f"🚨 {reason} - shutting down")
    raise SystemExit(1)


class PositionManager:
    """持仓管理器。

    职责：
    1. 维护当前/上一个持仓（每次写入自动记录上一个值，支持一步回滚）
    2. 维护开仓订单的价格/数量/未成交量，计算已实现盈亏
    3. 加载账户余额，按风险比例提供下单资金
    4. 交易所请求的单飞约束（`request` / `call`）

    Args:
        api: 交易所接口
        risk_tolerance: 每笔订单使用计价货币余额的比例 (0, 1]
        quote_currency: 计价货币（如 'USDT'）
        base_currency: 基础货币（如 'BTC'）
        request_timeout_s: 单次交易所调用超时
        on_fatal: 致命错误回调，默认退出进程
    """

    def __init__(
        self,
        api: ExchangeAPI,
        *,
        risk_tolerance: float,
        quote_currency: str = "USDT",
        base_currency: str = "BTC",
        request_timeout_s: float = 10.0,
        on_fatal: Callable[[str], Any] | None = None,
    ):
        if not 0 < risk_tolerance <= 1:
            raise ValueError("risk_tolerance must be in (0, 1]")
        self.api = api
        self._risk_tolerance = float(risk_tolerance)
        self.quote_currency = quote_currency
        self.base_currency = base_currency
        self.request_timeout_s = float(request_timeout_s)
        self.on_fatal = on_fatal or exit_process

        self._position = FLAT
        self._previous_position = FLAT
        self._optimistic = False
        self.open_order_id: str | None = None
        self.open_order_price = 0.0
        self.open_order_size = 0.0
        self.remaining_order_size = 0.0
        self._active_request = False
        self._cum_losses = 0.0
        self._can_short = False
        self._balances: dict[str, float] | None = None
        self._refresh_task: asyncio.Task | None = None

        logger.info(f"[PositionManager] Risk tolerance: {self._risk_tolerance * 100}%")

    # -- 持仓
    @property
    def position(self) -> int:
        return self._position

    @position.setter
    def position(self, pos: int) -> None:
        self._previous_position = self._position
        self._position = pos

    @property
    def previous_position(self) -> int:
        return self._previous_position

    @property
    def risk(self) -> float:
        return self._risk_tolerance

    @property
    def cumulative_loss(self) -> float:
        return self._cum_losses

    @property
    def can_short(self) -> bool:
        return self._can_short

    @property
    def active_request(self) -> bool:
        return self._active_request

    @property
    def refresh_task(self) -> asyncio.Task | None:
        return self._refresh_task

    @property
    def settled_position(self) -> int:
        """不含在途乐观写入的持仓（请求未结束时为写入前的值）。"""
        return self._previous_position if self._optimistic else self._position

    def rollback_position(self) -> None:
        self._optimistic = False
        self.position = self._previous_position

    def set_optimistic(self, pos: int) -> None:
        """下单前乐观写入持仓，请求结束时由 `settle_position` 回滚。"""
        self.position = pos
        self._optimistic = True

    def confirm_position(self, pos: int) -> None:
        """成交/完结事件确立的真实持仓，在途的乐观写入随之作废。"""
        self._optimistic = False
        if self._position != pos:
            self.position = pos

    def settle_position(self) -> None:
        """请求结束：乐观持仓仍未被事件确认时回滚到写入前的值。"""
        if self._optimistic:
            self.rollback_position()

    # -- 单飞约束
    @contextmanager
    def request(self) -> Iterator[None]:
        """占用在途请求标记，任何退出路径（含异常）都会释放。"""
        if self._active_request:
            raise RequestInFlightError("an exchange request is already in flight")
        self._active_request = True
        try:
            yield
        finally:
            self._active_request = False

    async def call(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """在单飞约束与超时保护下调用交易所接口。

        Raises
        ------
        RequestInFlightError
            已有请求在途。
        asyncio.TimeoutError
            超过 `request_timeout_s`。
        """
        with self.request():
            return await asyncio.wait_for(fn(*args, **kwargs), timeout=self.request_timeout_s)

    # -- 余额
    async def load_balances(self) -> dict[str, float]:
        """启动时加载余额；失败为致命错误（没有余额真值不能交易）。"""
        try:
            balances = await self.call(self.api.load_balances)
        except (ExchangeError, asyncio.TimeoutError, RequestInFlightError) as exc:
            logger.error(f"[PositionManager] {exc!r}")
            self.on_fatal("Exiting app due to error retrieving balances")
            return {}

        self._balances = dict(balances)
        if self._balances.get(self.base_currency, 0.0) >= self._balances.get(self.quote_currency, 0.0):
            self._can_short = True
        self.print_balances()
        return self._balances

    async def refresh_balances(self) -> dict[str, float] | None:
        """刷新余额；失败只记录日志，下一次刷新自然重试。"""
        try:
            balances = await self.call(self.api.load_balances)
        except RequestInFlightError:
            logger.warning("[PositionManager] Balance refresh skipped: request in flight")
            return None
        except (ExchangeError, asyncio.TimeoutError) as exc:
            logger.error(f"[PositionManager] Balance refresh failed: {exc!r}")
            return None
        self._balances = dict(balances)
        self.print_balances()
        return self._balances

    def print_balances(self) -> None:
        logger.info("[PositionManager] --------- Balances ---------")
        for currency, amount in sorted((self._balances or {}).items()):
            if amount:
                logger.info(f"[PositionManager] {currency}: {amount}")

    def get_balance(self, currency: str) -> float:
        """按币种取余额。余额未加载或币种未知为致命错误。"""
        if self._balances is None or currency not in self._balances:
            logger.error(f"[PositionManager] Unable to load balances for {currency}")
            self.on_fatal(f"Unknown balance for {currency}")
            return 0.0
        return float(self._balances[currency])

    # -- 盈亏与平仓
    def calculate_loss(self, closing_price: float) -> float:
        """累计已实现盈亏：`(closing − open_price) × 已成交数量`，返回累计值。"""
        price_diff = float(closing_price) - self.open_order_price
        size = self.open_order_size
        if self.remaining_order_size > 0:
            size -= self.remaining_order_size

        profit = size * price_diff
        self._cum_losses += profit

        logger.info(f"[PositionManager] Trade Profit: {profit}")
        logger.info(f"[PositionManager] Running Profit: {self._cum_losses}")
        return self._cum_losses

    def track_open_order(
        self,
        price: float,
        size: float,
        remaining_size: float | None = None,
        order_id: str | None = None,
    ) -> None:
        self.open_order_id = order_id
        self.open_order_price = float(price)
        self.open_order_size = float(size)
        self.remaining_order_size = float(size if remaining_size is None else remaining_size)

    def close_position(self) -> None:
        """清空持仓与挂单跟踪字段，并异步刷新余额。"""
        self.confirm_position(FLAT)
        self.open_order_id = None
        self.open_order_price = 0.0
        self.open_order_size = 0.0
        self.remaining_order_size = 0.0

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("[PositionManager] No running loop, balance refresh deferred")
            return
        if self._refresh_task is not None and not self._refresh_task.done():
            return
        self._refresh_task = loop.create_task(self.refresh_balances())
