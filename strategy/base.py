from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum

from shared.models.models import LinearModel, Snapshot


class Action(Enum):
    HOLD = "hold"
    OPEN = "open"
    CLOSE = "close"
    REPOSITION = "reposition"
    CANCEL = "cancel"


@dataclass(frozen=True)
class Decision:
    """一次信号评估的结果。下单/撤单本身异步执行。"""

    action: Action
    efpc: float | None = None
    price: float | None = None
    size: float | None = None
    reason: str = ""


class Strategy(ABC):
    @abstractmethod
    def on_signal(self, snapshot: Snapshot, model: LinearModel | None) -> Decision:
        """
        输入最新快照与当前模型，输出一个决策。
        """
        ...
