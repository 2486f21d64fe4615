from unittest.mock import AsyncMock, MagicMock

import pytest
from ccxt.base.errors import InsufficientFunds, InvalidOrder, NetworkError

from broker.base import ExchangeError, InsufficientFundsError
from broker.ccxt_exchange import CcxtExchange
from shared.models.models import OrderEventKind


def _raw(status="open", filled=0.0, amount=1.0, oid="123"):
    return {
        "id": oid,
        "symbol": "BTC/USDT",
        "side": "buy",
        "price": 100.0,
        "amount": amount,
        "filled": filled,
        "remaining": amount - filled,
        "status": status,
        "average": 100.0 if filled else None,
    }


def _events(ex):
    out = []
    while not ex.events.empty():
        out.append(ex.events.get_nowait())
    return out


@pytest.fixture
def client():
    c = MagicMock()
    c.create_order = AsyncMock(return_value=_raw())
    c.cancel_all_orders = AsyncMock(return_value=[])
    c.fetch_balance = AsyncMock(return_value={"free": {"USDT": "1000.5", "BTC": 0.25}, "total": {}})
    c.fetch_order = AsyncMock(return_value=_raw(status="closed", filled=1.0))
    c.close = AsyncMock()
    return c


@pytest.fixture
def exchange(client):
    return CcxtExchange("BTC/USDT", client=client)


def test_requires_credentials_without_client():
    with pytest.raises(ValueError):
        CcxtExchange("BTC/USDT", exchange_name="binance")


@pytest.mark.asyncio
async def test_place_order_is_post_only_limit(exchange, client):
    order = await exchange.place_order("buy", 100.0, 1.0)

    client.create_order.assert_awaited_once_with("BTC/USDT", "limit", "buy", 1.0, 100.0, {"postOnly": True})
    assert order.id == "123"
    assert exchange.has_open_orders()
    assert [e.kind for e in _events(exchange)] == [OrderEventKind.PLACED]


@pytest.mark.asyncio
async def test_invalid_order_becomes_rejection(exchange, client):
    client.create_order.side_effect = InvalidOrder("Order would immediately match and take.")

    order = await exchange.place_order("buy", 100.0, 1.0)

    assert order.is_rejected
    assert "immediately match" in order.reject_reason
    assert not exchange.has_open_orders()
    assert [e.kind for e in _events(exchange)] == [OrderEventKind.REJECTED]


@pytest.mark.asyncio
async def test_insufficient_funds_raises(exchange, client):
    client.create_order.side_effect = InsufficientFunds("Account has insufficient balance")

    with pytest.raises(InsufficientFundsError):
        await exchange.place_order("buy", 100.0, 1.0)

    assert _events(exchange) == []


@pytest.mark.asyncio
async def test_network_error_is_transient(exchange, client):
    client.create_order.side_effect = NetworkError("timeout")

    with pytest.raises(ExchangeError):
        await exchange.place_order("buy", 100.0, 1.0)


@pytest.mark.asyncio
async def test_poll_orders_emits_fill_and_done(exchange):
    await exchange.place_order("buy", 100.0, 1.0)
    _events(exchange)

    await exchange.poll_orders()

    events = _events(exchange)
    assert [e.kind for e in events] == [OrderEventKind.FILLED, OrderEventKind.DONE]
    assert events[0].size == pytest.approx(1.0)
    assert not exchange.has_open_orders()


@pytest.mark.asyncio
async def test_cancel_all_orders_emits_cancelled(exchange, client):
    await exchange.place_order("buy", 100.0, 1.0)
    _events(exchange)

    ids = await exchange.cancel_all_orders()

    assert ids == ["123"]
    client.cancel_all_orders.assert_awaited_once_with("BTC/USDT")
    assert [e.kind for e in _events(exchange)] == [OrderEventKind.CANCELLED]


@pytest.mark.asyncio
async def test_load_balances_reads_free_amounts(exchange):
    balances = await exchange.load_balances()
    assert balances == {"USDT": 1000.5, "BTC": 0.25}


@pytest.mark.asyncio
async def test_close_closes_client(exchange, client):
    await exchange.start()
    await exchange.close()
    client.close.assert_awaited_once()
