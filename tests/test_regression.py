import math

import numpy as np
import pandas as pd
import pytest

from factors.regression import build_linear_data, fit_linear_model, forward_mid_drift, predict
from shared.models.models import LinearData, LinearModel, Snapshot


def _snapshot(i: int, mid: float) -> Snapshot:
    return Snapshot(
        bid=mid - 0.5,
        ask=mid + 0.5,
        bid_volume=1.0,
        ask_volume=1.0,
        spread=1.0,
        mid_price=mid,
        volume=0.0,
        turnover=0.0,
        d_bid=0.0,
        d_ask=0.0,
        bid_cv=0.0,
        ask_cv=0.0,
        d_vol=0.0,
        d_to=0.0,
        avg_trade=mid,
        mpb=0.01 * i,
        oir=(-1) ** i * 0.1,
        voi=float(i % 7) - 3.0,
    )


def _records(n: int) -> list[Snapshot]:
    return [_snapshot(i, 100.0 + 0.1 * i) for i in range(n)]


def test_forward_mid_drift_window_starts_at_current_tick():
    mid = pd.Series([1.0, 2.0, 3.0, 4.0, 5.0])
    drift = forward_mid_drift(mid, 2)

    # mean(mid[k:k+2]) - mid[k] = 0.5；尾部越界的 nan 由前值填充
    assert drift.tolist() == [0.5, 0.5, 0.5, 0.5, 0.5]


def test_forward_mid_drift_fills_non_finite_from_last_finite():
    mid = pd.Series([1.0, 2.0, np.inf, 4.0, 5.0, 6.0])
    drift = forward_mid_drift(mid, 1)

    assert all(math.isfinite(v) for v in drift)


def test_linear_data_empty_until_buffer_full():
    data = build_linear_data(_records(10), record_size=11, lags=2, delay=3)
    assert len(data) == 0
    assert data.d_mid == []


def test_linear_data_series_have_equal_length():
    data = build_linear_data(_records(30), record_size=30, lags=5, delay=4)

    assert len(data.voi) == len(data.oir) == len(data.mpb) == len(data.d_mid) == 30 - 5 - 4


def test_linear_data_lags_greater_than_delay():
    data = build_linear_data(_records(20), record_size=20, lags=8, delay=2)

    assert len(data.voi) == len(data.d_mid) == 10
    assert data.voi[0] == _records(20)[8].voi


def test_zero_lags_and_delay_use_raw_series():
    records = _records(12)
    data = build_linear_data(records, record_size=12, lags=0, delay=0)

    assert data.voi == [s.voi for s in records]
    assert data.oir == [s.oir for s in records]
    assert data.mpb == [s.mpb for s in records]
    assert data.d_mid == [0.0] * 12


def test_fit_matches_per_factor_least_squares():
    rng = np.random.default_rng(3)
    voi, oir, mpb = rng.normal(size=(3, 200))
    y = 0.5 * voi - 0.2 * oir + 0.1 * mpb + rng.normal(scale=0.01, size=200)
    data = LinearData(voi=voi.tolist(), oir=oir.tolist(), mpb=mpb.tolist(), d_mid=y.tolist())

    model = fit_linear_model(data)

    assert model.voi_coeff == pytest.approx(np.polyfit(voi, y, 1)[0])
    assert model.oir_coeff == pytest.approx(np.polyfit(oir, y, 1)[0])
    assert model.mpb_coeff == pytest.approx(np.polyfit(mpb, y, 1)[0])
    expected_b = y.mean() - model.voi_coeff * voi.mean() - model.oir_coeff * oir.mean() - model.mpb_coeff * mpb.mean()
    assert model.b == pytest.approx(expected_b)


def test_fit_is_pure():
    data = build_linear_data(_records(40), record_size=40, lags=3, delay=5)
    snapshot = LinearData(voi=list(data.voi), oir=list(data.oir), mpb=list(data.mpb), d_mid=list(data.d_mid))

    first = fit_linear_model(data)
    second = fit_linear_model(data)

    assert first == second
    assert data == snapshot


def test_constant_feature_gives_non_finite_coefficient():
    data = LinearData(voi=[1.0, 1.0, 1.0], oir=[1.0, 2.0, 3.0], mpb=[0.0, 1.0, 0.0], d_mid=[0.1, 0.2, 0.3])
    model = fit_linear_model(data)

    assert not math.isfinite(model.voi_coeff)
    assert math.isfinite(model.oir_coeff)


def test_predict_is_linear_combination():
    model = LinearModel(b=0.1, voi_coeff=2.0, oir_coeff=-1.0, mpb_coeff=0.5)
    s = _snapshot(4, 100.0)

    assert predict(model, s) == pytest.approx(0.1 + 2.0 * s.voi - 1.0 * s.oir + 0.5 * s.mpb)
