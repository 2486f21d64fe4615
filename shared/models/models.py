"""核心数据结构：盘口/成交/快照/线性模型/订单与持久化记录。"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso_ts(ts: datetime | None = None) -> str:
    """UTC ISO8601 字符串（`Z` 结尾）。"""
    ts = ts or utc_now()
    return ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class BookLevel:
    """盘口一档（最优价 + 挂单量）。"""
    price: float
    size: float


@dataclass(frozen=True)
class TradeEvent:
    """行情流中的一笔公开成交。"""
    price: float
    size: float
    side: str | None = None
    ts: datetime | None = None


@dataclass(frozen=True)
class Snapshot:
    """一个采样 tick 的盘口/成交快照及派生信号。

    所有派生字段只依赖当前快照与缓冲区中紧邻的上一条快照。
    创建后不再修改。
    """
    bid: float
    ask: float
    bid_volume: float
    ask_volume: float
    spread: float
    mid_price: float
    volume: float       # 本 tick 累计成交量
    turnover: float     # 本 tick 累计成交额
    d_bid: float
    d_ask: float
    bid_cv: float
    ask_cv: float
    d_vol: float        # 最近一次正的成交量增量
    d_to: float         # 最近一次正的成交额增量
    avg_trade: float
    mpb: float
    oir: float
    voi: float
    ts: datetime = field(default_factory=utc_now)


@dataclass
class LinearData:
    """回归输入：三个特征序列 + 前瞻中间价漂移标签，长度一致。"""
    voi: list[float] = field(default_factory=list)
    oir: list[float] = field(default_factory=list)
    mpb: list[float] = field(default_factory=list)
    d_mid: list[float] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.voi)


@dataclass(frozen=True)
class LinearModel:
    """三因子线性模型（整体替换，不做局部更新）。"""
    b: float
    voi_coeff: float
    oir_coeff: float
    mpb_coeff: float


@dataclass
class LiveOrder:
    """交易所视角的订单。"""
    id: str
    product: str
    side: str
    price: float
    size: float
    remaining_size: float
    status: str = "open"   # open | rejected | done | cancelled
    time: datetime = field(default_factory=utc_now)
    reject_reason: str | None = None

    @property
    def filled_size(self) -> float:
        return self.size - self.remaining_size

    @property
    def is_rejected(self) -> bool:
        return self.status == "rejected"


@dataclass(frozen=True)
class OrderRecord:
    """订单落库记录。"""
    order_id: str
    timestamp: str
    product: str
    price: float
    size: float
    side: str
    type: str   # "open" | "close"


@dataclass(frozen=True)
class TradeRecord:
    """成交落库记录。"""
    order_id: str
    timestamp: str
    side: str
    price: float
    size: float


@dataclass(frozen=True)
class SignalRecord:
    """每 tick 的 VOI 信号记录。"""
    voi: float
    delta_price: float
    timestamp: str


class OrderEventKind(Enum):
    """订单生命周期的有限结果集。"""

    PLACED = "placed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    FILLED = "filled"        # 一次撮合（部分或全部）
    DONE = "done"            # 订单终结（全部成交）
    FAILED = "failed"        # 下单失败（传输/鉴权/余额不足）


@dataclass(frozen=True)
class OrderEvent:
    """交易所推送（或轮询得到）的订单事件。"""
    kind: OrderEventKind
    order_id: str
    side: str
    price: float = 0.0
    size: float = 0.0            # FILLED：本次成交量；其余：订单数量
    remaining_size: float = 0.0
    reason: str | None = None
    ts: datetime = field(default_factory=utc_now)
