"""日志工具。"""

from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"


def setup_logger(name: str | None = None, level: int | str = logging.INFO) -> logging.Logger:
    """
    创建或获取命名 logger。

    Parameters
    ----------
    name:
        Logger 名称；None 表示根 logger（各模块 `getLogger(__name__)` 的日志都会汇总到这里）。
    level:
        日志级别，支持 int 或 "INFO"/"DEBUG" 等名称。

    Returns
    -------
    logging.Logger
        已配置的 logger（重复调用不会重复添加 handler）。
    """
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            raise ValueError(f"Unknown log level: {level}")
        level = resolved

    logger = logging.getLogger(name)
    logger.setLevel(level)
    if name is not None:
        logger.propagate = False

    has_stream = any(isinstance(h, logging.StreamHandler) for h in logger.handlers)
    if not has_stream:
        ch = logging.StreamHandler()
        ch.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(ch)
    return logger
