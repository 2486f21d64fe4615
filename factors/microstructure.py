"""订单流微观结构因子（VOI / OIR / MPB）。

纯计算：输入当前盘口 + 本 tick 成交累计 + 上一条快照，输出一条完整的
`Snapshot`。除零不做保护，按 IEEE 语义得到 nan/inf 并向下游传播。
"""

from __future__ import annotations

from datetime import datetime

import numpy as np

from shared.models.models import BookLevel, Snapshot, utc_now

# 成交均价的缩放常数（与历史信号保持一致，不要修改）
AVG_TRADE_SCALE = 300.0


def safe_div(num: float, den: float) -> float:
    """浮点除法，除零返回 nan/±inf 而不是抛异常。"""
    with np.errstate(divide="ignore", invalid="ignore"):
        return float(np.float64(num) / np.float64(den))


def price_deltas(bid: float, ask: float, prev: Snapshot | None) -> tuple[float, float]:
    if prev is None:
        return 0.0, 0.0
    return bid - prev.bid, ask - prev.ask


def volume_contributions(
    bid_volume: float,
    ask_volume: float,
    d_bid: float,
    d_ask: float,
    prev: Snapshot | None,
) -> tuple[float, float]:
    """买卖两侧的挂单量变化贡献（bid_cv, ask_cv）。"""
    if prev is None:
        return 0.0, 0.0
    bid_cv = bid_volume - (prev.bid_volume if d_bid == 0 else 0.0) * float(d_bid >= 0)
    ask_cv = ask_volume - (prev.ask_volume if d_ask == 0 else 0.0) * float(d_ask <= 0)
    return bid_cv, ask_cv


def last_positive_delta(current: float, prev_value: float | None, prev_delta: float | None) -> float:
    """正增量则返回增量，否则沿用上一条的增量。"""
    if prev_value is None or prev_delta is None:
        return 0.0
    delta = current - prev_value
    return delta if delta > 0 else prev_delta


def average_trade(
    volume: float,
    d_vol: float,
    d_to: float,
    mid_price: float,
    prev: Snapshot | None,
) -> float:
    if prev is None:
        return mid_price
    if prev.volume != volume:
        return safe_div(safe_div(d_to, d_vol), AVG_TRADE_SCALE)
    return prev.avg_trade


def mid_price_basis(avg_trade: float, mid_price: float, spread: float, prev: Snapshot | None) -> float:
    if prev is None:
        return safe_div(avg_trade - mid_price, spread)
    return safe_div(avg_trade - (mid_price + prev.mid_price) / 2, spread)


def order_imbalance_ratio(bid_volume: float, ask_volume: float, spread: float) -> float:
    return safe_div(safe_div(bid_volume - ask_volume, bid_volume + ask_volume), spread)


def derive_snapshot(
    best_bid: BookLevel,
    best_ask: BookLevel,
    *,
    volume: float,
    turnover: float,
    prev: Snapshot | None,
    ts: datetime | None = None,
) -> Snapshot:
    """由盘口与成交累计计算一条快照。

    Parameters
    ----------
    best_bid, best_ask:
        当前最优买/卖一档。
    volume, turnover:
        本 tick 累计成交量/成交额。
    prev:
        缓冲区中紧邻的上一条快照；首条为 None。
    ts:
        采样时间，默认当前 UTC。

    Returns
    -------
    Snapshot
        含全部派生字段的不可变快照。
    """
    bid, ask = float(best_bid.price), float(best_ask.price)
    bid_volume, ask_volume = float(best_bid.size), float(best_ask.size)
    spread = ask - bid
    mid_price = (ask + bid) / 2

    d_bid, d_ask = price_deltas(bid, ask, prev)
    bid_cv, ask_cv = volume_contributions(bid_volume, ask_volume, d_bid, d_ask, prev)
    d_vol = last_positive_delta(
        volume,
        prev.volume if prev else None,
        prev.d_vol if prev else None,
    )
    d_to = last_positive_delta(
        turnover,
        prev.turnover if prev else None,
        prev.d_to if prev else None,
    )
    avg_trade = average_trade(volume, d_vol, d_to, mid_price, prev)

    return Snapshot(
        bid=bid,
        ask=ask,
        bid_volume=bid_volume,
        ask_volume=ask_volume,
        spread=spread,
        mid_price=mid_price,
        volume=float(volume),
        turnover=float(turnover),
        d_bid=d_bid,
        d_ask=d_ask,
        bid_cv=bid_cv,
        ask_cv=ask_cv,
        d_vol=d_vol,
        d_to=d_to,
        avg_trade=avg_trade,
        mpb=mid_price_basis(avg_trade, mid_price, spread, prev),
        oir=order_imbalance_ratio(bid_volume, ask_volume, spread),
        voi=bid_cv - ask_cv,
        ts=ts or utc_now(),
    )
