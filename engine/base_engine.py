"""执行引擎基类。

引擎内部是 asyncio 程序（行情、采样、订单事件并发运行），
对外仍保持同步的 `run() -> EngineResult` 入口，便于 CLI 与测试调用。
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class EngineResult:
    """引擎运行结果（统一出口）。"""

    summary: dict[str, Any]
    artifacts: dict[str, Any] | None = None


class BaseEngine(ABC):
    @abstractmethod
    async def run_async(self) -> EngineResult:
        raise NotImplementedError

    @abstractmethod
    def run(self) -> EngineResult:
        raise NotImplementedError
