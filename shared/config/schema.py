"""配置架构定义（Pydantic Schema）。

启动阶段尽早失败：未知字段（typo）与类型错误直接报错，
业务代码只读取强类型字段，不做 `cfg.get(...)`。
"""

from __future__ import annotations

from typing import Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class ExchangeConfig(BaseModel):
    """交易所配置。"""
    name: str = "binance"
    ws_url: str = "wss://stream.binance.com:9443"
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    request_timeout_s: float = Field(default=10.0, gt=0)
    poll_interval_s: float = Field(default=1.0, gt=0)

    model_config = ConfigDict(extra="forbid")


class SignalConfig(BaseModel):
    """信号/回归配置。"""
    interval_ms: int = Field(default=500, gt=0)
    record_size: int = Field(default=1620, gt=0)
    lags: int = Field(default=5, ge=0)
    delay: int = Field(default=20, ge=0)
    refit_every: int = Field(default=20, gt=0)
    max_book_age_s: float = Field(default=30.0, gt=0)

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _check_window(self) -> "SignalConfig":
        # 回归窗口 [lags, record_size - delay) 不能为空
        if self.lags + self.delay >= self.record_size:
            raise ValueError("signal.lags + signal.delay must be < signal.record_size")
        return self


class StrategyConfig(BaseModel):
    """策略参数。"""
    threshold: float = Field(default=0.2, gt=0)
    risk_tolerance: float = Field(default=0.1, gt=0, le=1)
    min_order_size: float = Field(default=0.001, ge=0)
    price_tick: float = Field(default=0.01, gt=0)
    price_precision: int = Field(default=6, ge=0)
    size_precision: int = Field(default=6, ge=0)

    model_config = ConfigDict(extra="forbid")


class StorageConfig(BaseModel):
    """交易记录持久化配置。"""
    enabled: bool = True
    path: str = "dataset/state/records.sqlite3"

    model_config = ConfigDict(extra="forbid")


class PaperConfig(BaseModel):
    """纸面交易（dry-run / paper）的初始余额。"""
    balances: Dict[str, float] = Field(default_factory=lambda: {"USDT": 1000.0, "BTC": 0.0})

    model_config = ConfigDict(extra="forbid")


class AppConfig(BaseModel):
    """应用总配置。"""
    mode: Literal["dry-run", "paper", "live"] = "paper"
    symbol: str = "BTC/USDT"
    quote_currency: str = "USDT"
    base_currency: str = "BTC"
    log_level: str = "INFO"

    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    signal: SignalConfig = Field(default_factory=SignalConfig)
    strategy: StrategyConfig = Field(default_factory=StrategyConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    paper: PaperConfig = Field(default_factory=PaperConfig)

    model_config = ConfigDict(extra="forbid")

    @field_validator("mode", mode="before")
    @classmethod
    def _normalize_mode(cls, v):
        if isinstance(v, str):
            return v.replace("_", "-").lower()
        return v

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, v: str) -> str:
        return v.upper()

    @model_validator(mode="after")
    def _check_symbol(self) -> "AppConfig":
        if self.symbol.count("/") != 1:
            raise ValueError(f"symbol must look like BASE/QUOTE, got {self.symbol!r}")
        base, quote = self.symbol.split("/")
        if (base, quote) != (self.base_currency, self.quote_currency):
            raise ValueError(
                f"symbol {self.symbol} does not match base_currency/quote_currency "
                f"{self.base_currency}/{self.quote_currency}"
            )
        return self

    @model_validator(mode="after")
    def _check_live_credentials(self) -> "AppConfig":
        if self.mode == "live" and not (self.exchange.api_key and self.exchange.api_secret):
            raise ValueError("live mode requires exchange.api_key and exchange.api_secret")
        return self
