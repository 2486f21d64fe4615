import math

import pytest

from factors.microstructure import AVG_TRADE_SCALE, derive_snapshot, safe_div
from shared.models.models import BookLevel


def _snap(bid, bid_qty, ask, ask_qty, *, volume=0.0, turnover=0.0, prev=None):
    return derive_snapshot(
        BookLevel(bid, bid_qty),
        BookLevel(ask, ask_qty),
        volume=volume,
        turnover=turnover,
        prev=prev,
    )


def test_first_snapshot_has_no_history():
    s = _snap(100.0, 2.0, 101.0, 1.0)

    assert s.spread == 1.0
    assert s.mid_price == 100.5
    assert (s.d_bid, s.d_ask) == (0.0, 0.0)
    assert (s.bid_cv, s.ask_cv) == (0.0, 0.0)
    assert (s.d_vol, s.d_to) == (0.0, 0.0)
    # 没有上一条时成交均价取中间价
    assert s.avg_trade == s.mid_price
    assert s.mpb == 0.0
    assert s.oir == pytest.approx(1 / 3)
    assert s.voi == 0.0


def test_volume_contributions_follow_price_moves():
    first = _snap(100.0, 2.0, 101.0, 1.0)
    # 买一不变：扣掉上一条的挂单量；卖一上移：卖方贡献为当前挂单量
    second = _snap(100.0, 3.0, 101.5, 4.0, volume=2.0, turnover=201.0, prev=first)

    assert second.d_bid == 0.0
    assert second.d_ask == 0.5
    assert second.bid_cv == 1.0
    assert second.ask_cv == 4.0
    assert second.voi == -3.0


def test_bid_up_and_ask_unchanged():
    first = _snap(100.0, 2.0, 101.0, 1.0)
    second = _snap(100.5, 5.0, 101.0, 3.0, prev=first)

    assert second.bid_cv == 5.0
    # d_ask == 0：扣掉上一条的卖一挂单量
    assert second.ask_cv == 2.0
    assert second.voi == 3.0


def test_average_trade_and_mid_price_basis():
    first = _snap(100.0, 2.0, 101.0, 1.0)
    second = _snap(100.0, 3.0, 101.5, 4.0, volume=2.0, turnover=201.0, prev=first)

    assert second.d_vol == 2.0
    assert second.d_to == 201.0
    assert second.avg_trade == pytest.approx(201.0 / 2.0 / AVG_TRADE_SCALE)
    expected_mpb = (second.avg_trade - (second.mid_price + first.mid_price) / 2) / second.spread
    assert second.mpb == pytest.approx(expected_mpb)


def test_last_positive_delta_carries_forward():
    first = _snap(100.0, 2.0, 101.0, 1.0)
    second = _snap(100.0, 2.0, 101.0, 1.0, volume=2.0, turnover=201.0, prev=first)
    third = _snap(100.0, 2.0, 101.0, 1.0, volume=1.0, turnover=100.0, prev=second)

    assert third.d_vol == second.d_vol == 2.0
    assert third.d_to == second.d_to == 201.0
    assert third.d_vol >= 0 and third.d_to >= 0


def test_unchanged_volume_keeps_previous_average_trade():
    first = _snap(100.0, 2.0, 101.0, 1.0)
    second = _snap(100.0, 2.0, 101.0, 1.0, volume=2.0, turnover=201.0, prev=first)
    third = _snap(100.5, 2.0, 101.5, 1.0, volume=2.0, turnover=201.0, prev=second)

    assert third.avg_trade == second.avg_trade


def test_zero_spread_propagates_non_finite_values():
    s = _snap(100.0, 2.0, 100.0, 1.0)

    assert s.spread == 0.0
    assert not math.isfinite(s.oir)
    assert math.isnan(s.mpb)


def test_safe_div_follows_ieee_semantics():
    assert safe_div(1.0, 0.0) == math.inf
    assert safe_div(-1.0, 0.0) == -math.inf
    assert math.isnan(safe_div(0.0, 0.0))
    assert safe_div(3.0, 2.0) == 1.5
