"""配置加载。

支持 YAML 配置、环境变量占位符 `${VAR}` 展开，以及 .env/.env.local 自动加载；
解析结果由 `shared.config.schema.AppConfig` 做强类型校验。
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from shared.config.schema import AppConfig

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")


def _load_envs(cfg_path: Path) -> None:
    """加载配置文件目录与其上一级目录下的 .env/.env.local（不覆盖已有环境变量）。"""
    candidates = [
        cfg_path.parent / ".env",
        cfg_path.parent / ".env.local",
        cfg_path.parent.parent / ".env",
        cfg_path.parent.parent / ".env.local",
    ]
    for env_file in candidates:
        if env_file.exists():
            load_dotenv(env_file, override=False)


def expand_env(value: Any) -> Any:
    """递归展开 `${VAR}`；变量缺失时报错而不是静默替换为空。"""
    if isinstance(value, str):
        def replacer(match: re.Match) -> str:
            var_name = match.group(1)
            if var_name not in os.environ:
                raise ValueError(f"Missing environment variable: {var_name}")
            return os.environ[var_name]

        return _ENV_PATTERN.sub(replacer, value)
    if isinstance(value, dict):
        return {k: expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_env(v) for v in value]
    return value


def load_config(path: str | Path, load_env: bool = True, expand: bool = True) -> AppConfig:
    """从 YAML 读取并解析配置。

    Parameters
    ----------
    path:
        配置文件路径。
    load_env:
        是否自动加载 .env/.env.local。
    expand:
        是否展开 `${VAR}` 占位符。

    Returns
    -------
    AppConfig
        校验后的配置对象。

    Raises
    ------
    FileNotFoundError
        配置文件不存在。
    ValueError
        缺失环境变量、顶层不是映射，或字段校验失败（pydantic ValidationError）。
    """
    cfg_path = Path(path)
    if not cfg_path.exists():
        raise FileNotFoundError(f"Config file not found: {cfg_path}")

    if load_env:
        _load_envs(cfg_path)

    with cfg_path.open("r", encoding="utf-8") as f:
        raw_cfg = yaml.safe_load(f) or {}
    if not isinstance(raw_cfg, dict):
        raise ValueError(f"Config root must be a mapping: {cfg_path}")

    if expand:
        raw_cfg = expand_env(raw_cfg)
    return AppConfig.model_validate(raw_cfg)
