"""交易所接口抽象、运行模式与错误分类。"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from enum import Enum

from shared.models.models import LiveOrder, OrderEvent


class BrokerMode(Enum):
    """运行模式枚举。"""

    DRY_RUN = "dry-run"
    PAPER = "paper"
    LIVE = "live"


class ExchangeError(Exception):
    """可重试的交易所错误（网络/超时/鉴权等）。"""


class InsufficientFundsError(ExchangeError):
    """余额不足。按致命错误处理，不重试。"""


class ExchangeAPI(ABC):
    """单品种的交易所下单接口。

    实现方需要维护本策略自己的挂单视图（`open_orders`），并把订单生命周期
    事件写入 `events` 队列，由引擎统一消费。

    Attributes
    ----------
    product:
        交易对，如 "BTC/USDT"。
    events:
        订单事件队列（OrderEvent）。
    """

    product: str
    events: asyncio.Queue[OrderEvent]

    @abstractmethod
    async def place_order(
        self,
        side: str,
        price: float,
        size: float,
        order_type: str = "limit",
        post_only: bool = True,
    ) -> LiveOrder:
        """下单。被交易所拒绝时返回 `status == "rejected"` 的订单而不是抛异常。

        Raises
        ------
        InsufficientFundsError
            余额不足。
        ExchangeError
            传输/鉴权等可重试错误。
        """
        ...

    @abstractmethod
    async def cancel_all_orders(self) -> list[str]:
        """撤销本策略的全部挂单，返回被撤订单 ID。"""
        ...

    @abstractmethod
    async def load_balances(self) -> dict[str, float]:
        """拉取账户余额 {currency: amount}。"""
        ...

    @abstractmethod
    def open_orders(self) -> list[LiveOrder]:
        """本地维护的挂单视图（不触网）。"""
        ...

    def has_open_orders(self) -> bool:
        return len(self.open_orders()) > 0

    async def start(self) -> None:
        """启动订单监控等后台任务（可选）。"""
        return None

    async def close(self) -> None:
        return None
