"""实盘/纸面/干跑交易引擎（TradingEngine）。

配置 → 盘口/行情 → 信号引擎 → 策略/持仓管理 → 交易所 → 订单事件 → 总结。
全部组件运行在同一个 asyncio 事件循环里：
- feed：行情客户端写盘口、把成交交给 SignalEngine.ingest；
- sampler：每 `interval_ms` 生成一条快照、记录信号、按节奏重拟合、做策略决策；
- pump：消费交易所订单事件，交给 OrderLifecycleHandler。
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from typing import Any, Callable

from broker.base import BrokerMode, ExchangeAPI
from broker.ccxt_exchange import CcxtExchange
from broker.paper_exchange import PaperExchange
from engine.base_engine import BaseEngine, EngineResult
from engine.order_events import OrderLifecycleHandler, drain
from engine.signal_engine import BookNotReadyError, SignalEngine
from market.client import MarketClient, get_market_client
from market.order_book import LiveOrderBook
from risk.position_manager import PositionManager
from shared.config.config_loader import load_config
from shared.config.schema import AppConfig
from shared.state.record_store import RecordStore, RecordWriter
from shared.utils.logging import setup_logger
from strategy.base import Decision
from strategy.linear import LinearStrategy

logger = logging.getLogger(__name__)

_NOT_READY_LOG_EVERY = 20


class TradingEngine(BaseEngine):
    """Args:
        cfg_path: 配置文件路径
        cfg_obj: 直接传入的配置（优先于 cfg_path）
        max_ticks: 采样多少个 tick 后退出（None 表示一直运行）
        market_client / exchange: 可注入的行情与交易所（测试用）
        on_fatal: 致命错误回调，默认退出进程
    """

    def __init__(
        self,
        *,
        cfg_path: str = "config/config.yml",
        cfg_obj: AppConfig | None = None,
        max_ticks: int | None = None,
        market_client: MarketClient | None = None,
        exchange: ExchangeAPI | None = None,
        on_fatal: Callable[[str], Any] | None = None,
    ):
        self._cfg_path = cfg_path
        self._cfg_obj = cfg_obj
        self._max_ticks = max_ticks
        self._market_client = market_client
        self._exchange = exchange
        self._on_fatal = on_fatal

        self.cfg: AppConfig | None = None
        self.ticks = 0
        self.decisions: Counter[str] = Counter()
        self._not_ready = 0
        self._last_refit_tick: int | None = None

    def run(self) -> EngineResult:
        return asyncio.run(self.run_async())

    def _load_cfg(self) -> AppConfig:
        return self._cfg_obj or load_config(self._cfg_path)

    @staticmethod
    def _build_exchange(cfg: AppConfig, order_book: LiveOrderBook) -> ExchangeAPI:
        mode = BrokerMode(cfg.mode)
        if mode is BrokerMode.LIVE:
            return CcxtExchange(
                cfg.symbol,
                exchange_name=cfg.exchange.name,
                api_key=cfg.exchange.api_key,
                api_secret=cfg.exchange.api_secret,
                poll_interval_s=cfg.exchange.poll_interval_s,
            )
        return PaperExchange(
            cfg.symbol,
            order_book,
            balances=cfg.paper.balances,
            poll_interval_s=cfg.exchange.poll_interval_s,
        )

    async def run_async(self) -> EngineResult:
        cfg = self._load_cfg()
        self.cfg = cfg
        setup_logger(None, cfg.log_level)
        logger.info(f"🚀 Starting {cfg.mode} trading on {cfg.symbol}")

        order_book = LiveOrderBook(cfg.symbol)
        signal_engine = SignalEngine(
            order_book,
            record_size=cfg.signal.record_size,
            lags=cfg.signal.lags,
            delay=cfg.signal.delay,
            max_book_age_s=cfg.signal.max_book_age_s,
        )
        exchange = self._exchange or self._build_exchange(cfg, order_book)
        manager = PositionManager(
            exchange,
            risk_tolerance=cfg.strategy.risk_tolerance,
            quote_currency=cfg.quote_currency,
            base_currency=cfg.base_currency,
            request_timeout_s=cfg.exchange.request_timeout_s,
            on_fatal=self._on_fatal,
        )
        writer = RecordWriter(RecordStore(cfg.storage.path) if cfg.storage.enabled else None)
        strategy = LinearStrategy(
            manager,
            exchange,
            order_book,
            writer=writer,
            threshold=cfg.strategy.threshold,
            min_order_size=cfg.strategy.min_order_size,
            price_tick=cfg.strategy.price_tick,
            price_precision=cfg.strategy.price_precision,
            size_precision=cfg.strategy.size_precision,
        )
        handler = OrderLifecycleHandler(manager, exchange, writer=writer)
        market_client = self._market_client or get_market_client(cfg.mode, cfg.exchange.name, cfg.exchange.ws_url)

        await manager.load_balances()
        await writer.start()
        await exchange.start()

        feed_task = asyncio.create_task(market_client.run(cfg.symbol, order_book, signal_engine.ingest))
        pump_task = asyncio.create_task(handler.pump())
        try:
            await self._sample_loop(cfg, signal_engine, strategy, feed_task)
        finally:
            await self._shutdown(market_client, [feed_task, pump_task], strategy, exchange, handler, writer)

        model = signal_engine.model
        summary = {
            "mode": cfg.mode,
            "symbol": cfg.symbol,
            "ticks": self.ticks,
            "snapshots": signal_engine.tick_count,
            "decisions": dict(self.decisions),
            "model": None
            if model is None
            else {"b": model.b, "voi": model.voi_coeff, "oir": model.oir_coeff, "mpb": model.mpb_coeff},
            "position": manager.position,
            "cumulative_loss": manager.cumulative_loss,
            "order_events": handler.handled,
            "records_written": writer.written,
        }
        logger.info(f"📊 Summary: {summary}")
        return EngineResult(summary=summary)

    async def _sample_loop(
        self,
        cfg: AppConfig,
        signal_engine: SignalEngine,
        strategy: LinearStrategy,
        feed_task: asyncio.Task,
    ) -> None:
        interval_s = cfg.signal.interval_ms / 1000.0
        while self._max_ticks is None or self.ticks < self._max_ticks:
            await asyncio.sleep(interval_s)
            if feed_task.done() and not feed_task.cancelled():
                exc = feed_task.exception()
                if exc is not None:
                    raise exc
            self.ticks += 1
            self.sample_once(cfg, signal_engine, strategy)

    def sample_once(
        self,
        cfg: AppConfig,
        signal_engine: SignalEngine,
        strategy: LinearStrategy,
    ) -> Decision | None:
        """一个采样 tick：快照 → 记录信号 → 按节奏重拟合 → 策略决策。"""
        try:
            snapshot = signal_engine.build_snapshot()
        except BookNotReadyError as exc:
            self._not_ready += 1
            if self._not_ready % _NOT_READY_LOG_EVERY == 1:
                logger.warning(f"⚠️ {exc}, skipping tick ({self._not_ready} skipped)")
            return None

        strategy.save_signal(snapshot)

        if signal_engine.is_full:
            due = (
                self._last_refit_tick is None
                or signal_engine.tick_count - self._last_refit_tick >= cfg.signal.refit_every
            )
            if due:
                signal_engine.refit()
                self._last_refit_tick = signal_engine.tick_count

        decision = strategy.on_signal(snapshot, signal_engine.model)
        self.decisions[decision.action.value] += 1
        return decision

    @staticmethod
    async def _shutdown(
        market_client: MarketClient,
        tasks: list[asyncio.Task],
        strategy: LinearStrategy,
        exchange: ExchangeAPI,
        handler: OrderLifecycleHandler,
        writer: RecordWriter,
    ) -> None:
        market_client.stop()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        if strategy.pending is not None and not strategy.pending.done():
            try:
                await asyncio.wait_for(strategy.pending, timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning("⚠️ Pending order request did not settle before shutdown")

        await exchange.close()
        drain(handler, exchange.events)
        await writer.close()
        logger.info("✅ Trading engine stopped")
