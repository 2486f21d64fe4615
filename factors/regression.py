"""VOI/OIR/MPB 线性回归（对齐 + 拟合 + 预测）。

说明：
- 拟合是“逐因子单变量回归”的简化形式：每个系数各自用
  `(ΣXY − ΣXΣY/N) / (ΣX² − (ΣX)²/N)` 计算，截距为 `ΣY/N − Σ(coeff·ΣX)/N`；
- 这不是真正的多元 OLS（忽略因子间相关性），历史模型/阈值都基于这一形式标定，
  不要替换成矩阵求解。
"""

from __future__ import annotations

from typing import Sequence

import numpy as np
import pandas as pd

from shared.models.models import LinearData, LinearModel, Snapshot

FEATURES = ("voi", "oir", "mpb")


def forward_mid_drift(mid: pd.Series, delay: int) -> pd.Series:
    """前瞻中间价漂移：`mean(mid[k : k+delay]) − mid[k]`。

    非有限值用上一个有限值前向填充；窗口越界的尾部为 nan（调用方会裁掉）。
    """
    if delay <= 0:
        raise ValueError("delay must be > 0")
    rolling = mid.rolling(delay, min_periods=delay).mean().shift(-(delay - 1))
    drift = rolling - mid
    return drift.where(np.isfinite(drift)).ffill()


def build_linear_data(
    records: Sequence[Snapshot],
    *,
    record_size: int,
    lags: int,
    delay: int,
) -> LinearData:
    """把快照缓冲区对齐成回归数据。

    Parameters
    ----------
    records:
        按时间顺序的快照（缓冲区的不可变拷贝）。
    record_size:
        缓冲区容量；未填满时返回空数据。
    lags:
        头部裁掉的条数。
    delay:
        标签的前瞻窗口；同时裁掉尾部 `delay` 条。

    Returns
    -------
    LinearData
        四个等长序列，覆盖区间 `[lags, record_size - delay)`。
    """
    if len(records) != record_size:
        return LinearData()

    df = pd.DataFrame(
        {
            "voi": [s.voi for s in records],
            "oir": [s.oir for s in records],
            "mpb": [s.mpb for s in records],
            "mid": [s.mid_price for s in records],
        }
    )
    start = max(int(lags), 0)
    end = record_size - max(int(delay), 0)
    if end <= start:
        return LinearData()

    if delay > 0:
        d_mid = forward_mid_drift(df["mid"], delay).iloc[start:end].tolist()
    else:
        # 无前瞻窗口：没有可用标签
        d_mid = [0.0] * (end - start)

    window = df.iloc[start:end]
    return LinearData(
        voi=window["voi"].tolist(),
        oir=window["oir"].tolist(),
        mpb=window["mpb"].tolist(),
        d_mid=d_mid,
    )


def _single_coeff(x: np.ndarray, y: np.ndarray, n: int) -> np.float64:
    sum_x = x.sum()
    return (np.sum(x * y) - sum_x * y.sum() / n) / (np.sum(x * x) - sum_x * sum_x / n)


def fit_linear_model(data: LinearData) -> LinearModel:
    """单次遍历的求和式拟合（纯函数，无隐藏状态）。"""
    x_voi = np.asarray(data.voi, dtype=float)
    x_oir = np.asarray(data.oir, dtype=float)
    x_mpb = np.asarray(data.mpb, dtype=float)
    y = np.asarray(data.d_mid, dtype=float)
    n = np.float64(len(x_voi))

    with np.errstate(divide="ignore", invalid="ignore"):
        voi_coeff = _single_coeff(x_voi, y, n)
        oir_coeff = _single_coeff(x_oir, y, n)
        mpb_coeff = _single_coeff(x_mpb, y, n)
        b = (
            y.sum() / n
            - voi_coeff * x_voi.sum() / n
            - oir_coeff * x_oir.sum() / n
            - mpb_coeff * x_mpb.sum() / n
        )

    return LinearModel(
        b=float(b),
        voi_coeff=float(voi_coeff),
        oir_coeff=float(oir_coeff),
        mpb_coeff=float(mpb_coeff),
    )


def predict(model: LinearModel, snapshot: Snapshot) -> float:
    """模型对单条快照的原始预测值（未平滑）。"""
    return (
        model.b
        + model.voi_coeff * snapshot.voi
        + model.oir_coeff * snapshot.oir
        + model.mpb_coeff * snapshot.mpb
    )
