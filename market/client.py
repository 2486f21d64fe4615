"""行情客户端（实时 Binance / 本地假数据）。

行情客户端把盘口更新写入 `LiveOrderBook`，把公开成交交给回调（SignalEngine.ingest）。
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable

import numpy as np
import requests
import websockets

from market.order_book import LiveOrderBook
from shared.models.models import TradeEvent

logger = logging.getLogger(__name__)

TradeHandler = Callable[[TradeEvent], None]

DEFAULT_WS_BASE = "wss://stream.binance.com:9443"
DEFAULT_REST_BASE = "https://api.binance.com"


def to_stream_symbol(symbol: str) -> str:
    """'BTC/USDT' -> 'btcusdt'"""
    return symbol.replace("/", "").replace("-", "").lower()


class MarketClient(ABC):
    """行情客户端抽象基类。"""

    running: bool = False

    @abstractmethod
    async def run(self, symbol: str, order_book: LiveOrderBook, on_trade: TradeHandler) -> None:
        """持续推送行情直到 `stop()` 或任务被取消。"""
        raise NotImplementedError

    def stop(self) -> None:
        self.running = False


class FakeMarketClient(MarketClient):
    """本地随机游走行情，便于离线开发/测试（dry-run）。

    Parameters
    ----------
    start_price:
        初始中间价。
    interval_s:
        每步间隔。
    volatility:
        中间价每步的标准差（价格单位）。
    seed:
        随机种子，便于复现。
    max_steps:
        最多推送的步数；None 表示无限。
    """

    def __init__(
        self,
        *,
        start_price: float = 30000.0,
        interval_s: float = 0.1,
        volatility: float = 1.0,
        price_tick: float = 0.01,
        seed: int | None = None,
        max_steps: int | None = None,
    ):
        self.start_price = float(start_price)
        self.interval_s = float(interval_s)
        self.volatility = float(volatility)
        self.price_tick = float(price_tick)
        self.max_steps = max_steps
        self.rng = np.random.default_rng(seed)
        self.steps = 0

    def step(self, mid: float, order_book: LiveOrderBook, on_trade: TradeHandler) -> float:
        """推进一步：更新盘口并生成 0~N 笔成交，返回新的中间价。"""
        mid = max(self.price_tick, mid + float(self.rng.normal(0.0, self.volatility)))
        half = self.price_tick * int(self.rng.integers(1, 5))
        bid, ask = round(mid - half, 2), round(mid + half, 2)
        order_book.apply_book_ticker(
            bid,
            float(self.rng.uniform(0.1, 5.0)),
            ask,
            float(self.rng.uniform(0.1, 5.0)),
        )
        for _ in range(int(self.rng.poisson(1.5))):
            side = "buy" if self.rng.random() < 0.5 else "sell"
            price = ask if side == "buy" else bid
            on_trade(
                TradeEvent(
                    price=price,
                    size=float(self.rng.exponential(0.05)),
                    side=side,
                    ts=datetime.now(timezone.utc),
                )
            )
        self.steps += 1
        return mid

    async def run(self, symbol: str, order_book: LiveOrderBook, on_trade: TradeHandler) -> None:
        self.running = True
        mid = self.start_price
        logger.info(f"🧪 Fake market feed started for {symbol} @ {mid}")
        while self.running:
            if self.max_steps is not None and self.steps >= self.max_steps:
                break
            mid = self.step(mid, order_book, on_trade)
            await asyncio.sleep(self.interval_s)
        self.running = False


class BinanceMarketClient(MarketClient):
    """Binance 实时行情客户端（组合流：bookTicker + trade）。"""

    def __init__(
        self,
        ws_base: str | None = DEFAULT_WS_BASE,
        *,
        rest_base: str = DEFAULT_REST_BASE,
        reconnect_delay_s: float = 3.0,
    ):
        self.ws_base = (ws_base or DEFAULT_WS_BASE).rstrip("/")
        if self.ws_base.endswith("/ws"):
            self.ws_base = self.ws_base[: -len("/ws")]
        self.rest_base = rest_base.rstrip("/")
        self.reconnect_delay_s = float(reconnect_delay_s)

    def stream_url(self, symbol: str) -> str:
        s = to_stream_symbol(symbol)
        return f"{self.ws_base}/stream?streams={s}@bookTicker/{s}@trade"

    def rest_book_ticker(self, symbol: str) -> dict[str, float]:
        """通过 REST 拉取最优买卖价（用于连接前预热盘口）。"""
        url = f"{self.rest_base}/api/v3/ticker/bookTicker"
        resp = requests.get(url, params={"symbol": to_stream_symbol(symbol).upper()}, timeout=5)
        resp.raise_for_status()
        data = resp.json()
        return {
            "bid": float(data["bidPrice"]),
            "bid_qty": float(data["bidQty"]),
            "ask": float(data["askPrice"]),
            "ask_qty": float(data["askQty"]),
        }

    @staticmethod
    def handle_message(raw: str | bytes, order_book: LiveOrderBook, on_trade: TradeHandler) -> str | None:
        """解析一条组合流消息，返回消息类型（'book' / 'trade'），无法识别时返回 None。"""
        msg: dict[str, Any] = json.loads(raw)
        data = msg.get("data", msg)
        stream = str(msg.get("stream", ""))

        if data.get("e") == "trade" or stream.endswith("@trade"):
            ts_ms = data.get("T")
            ts = datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc) if ts_ms else datetime.now(timezone.utc)
            # m=True: 买方是 maker，即主动卖出
            side = "sell" if data.get("m") else "buy"
            on_trade(TradeEvent(price=float(data["p"]), size=float(data["q"]), side=side, ts=ts))
            return "trade"

        if stream.endswith("@bookTicker") or ("b" in data and "a" in data and "B" in data):
            order_book.apply_book_ticker(float(data["b"]), float(data["B"]), float(data["a"]), float(data["A"]))
            return "book"
        return None

    async def _warm_up(self, symbol: str, order_book: LiveOrderBook) -> None:
        try:
            top = await asyncio.to_thread(self.rest_book_ticker, symbol)
        except (requests.RequestException, KeyError, ValueError) as exc:
            logger.warning(f"⚠️ REST bookTicker failed, waiting for WS: {exc}")
            return
        order_book.apply_book_ticker(top["bid"], top["bid_qty"], top["ask"], top["ask_qty"])

    async def run(self, symbol: str, order_book: LiveOrderBook, on_trade: TradeHandler) -> None:
        self.running = True
        url = self.stream_url(symbol)
        await self._warm_up(symbol, order_book)
        while self.running:
            try:
                async with websockets.connect(url, ping_interval=20) as ws:
                    logger.info(f"✅ Connected to Binance WS: {url}")
                    async for raw in ws:
                        try:
                            self.handle_message(raw, order_book, on_trade)
                        except (KeyError, ValueError, TypeError) as exc:
                            logger.warning(f"⚠️ Bad WS message skipped: {exc}")
                        if not self.running:
                            break
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - 网络异常重连
                logger.warning(f"⚠️ WS error {exc}, reconnecting in {self.reconnect_delay_s}s...")
                await asyncio.sleep(self.reconnect_delay_s)


def get_market_client(mode: str, exchange_name: str, ws_url: str | None = None) -> MarketClient:
    """根据运行模式选择行情客户端。

    Parameters
    ----------
    mode:
        运行模式（live / paper / dry-run）。
    exchange_name:
        交易所名称（实时行情当前仅支持 binance）。
    ws_url:
        可选 WebSocket 根地址。
    """
    mode_l = mode.lower().replace("_", "-")
    ex_l = exchange_name.lower()

    if mode_l in {"live", "paper"}:
        if ex_l == "binance":
            return BinanceMarketClient(ws_base=ws_url)
        raise ValueError(f"Unsupported exchange for live/paper mode: {exchange_name}")

    if mode_l == "dry-run":
        return FakeMarketClient()

    raise ValueError(f"Unsupported market mode: {mode}")
