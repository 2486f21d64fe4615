"""价格/数量的小数位处理（下单前裁剪，避免 float 噪声进入交易所请求）。"""

from __future__ import annotations

import math
from decimal import ROUND_FLOOR, Decimal, InvalidOperation


def decimals_from_step(step: float) -> int:
    """根据 step（通常是 10 的负次幂）推导小数位数，如 0.01 -> 2。"""
    try:
        d = Decimal(str(step))
    except InvalidOperation:
        return 0
    if d == 0:
        return 0
    return max(0, -int(d.as_tuple().exponent))


def snap_to_decimals(value: float, decimals: int) -> float:
    """四舍五入到指定小数位，避免 repr 出现 0.30000000000004 这类噪声。"""
    if decimals < 0 or not math.isfinite(value):
        return float(value)
    return float(f"{float(value):.{int(decimals)}f}")


def floor_to_step(value: float, step: float) -> float:
    """把 value 向下裁剪到 step 的整数倍。"""
    if step is None or float(step) <= 0 or not math.isfinite(value):
        return float(value)

    v = Decimal(str(value))
    sd = Decimal(str(step))
    out = (v / sd).to_integral_value(rounding=ROUND_FLOOR) * sd
    decs = decimals_from_step(step)
    return snap_to_decimals(float(out.quantize(Decimal(1).scaleb(-decs))), decs)


def floor_to_decimals(value: float, decimals: int) -> float:
    """向下裁剪到指定小数位（下单数量不能向上取整，否则可能超出余额）。"""
    if decimals < 0:
        return float(value)
    return floor_to_step(value, float(Decimal(1).scaleb(-int(decimals))))
