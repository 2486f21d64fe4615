"""统一命令行入口。

子命令：

- `runner`：实时/纸面/干跑主循环。连接行情与交易所，执行 VOI 线性策略。
- `config`：加载并校验配置，打印解析结果（不连接任何服务）。
- `test`：运行 pytest。
"""

from __future__ import annotations

import argparse
import json
from dataclasses import dataclass
from typing import Any

from engine.trading_engine import TradingEngine
from shared.config.config_loader import load_config
from shared.config.schema import AppConfig


@dataclass
class CliArgs:
    """命令行参数结构。

    config: 配置文件路径
    task: 要运行的任务类型 (runner/config/test)
    """
    config: str
    task: str
    max_ticks: int | None = None  # 仅用于 debug，限制采样多少个 tick 就停止
    mode: str | None = None       # 覆盖配置中的运行模式


def build_parser() -> argparse.ArgumentParser:
    """构建 CLI 参数解析器。"""
    parser = argparse.ArgumentParser(prog="voi-trader", description="订单流不平衡（VOI）线性策略")

    def _add_config_arg(p: argparse.ArgumentParser, *, default: Any) -> None:
        p.add_argument(
            "--config",
            default=default,
            help="配置文件路径 (默认: config/config.yml)",
        )

    # 允许 `python main.py --config ... runner`（全局）与 `python main.py runner --config ...`（子命令）
    _add_config_arg(parser, default="config/config.yml")

    sub = parser.add_subparsers(dest="task")

    p_runner = sub.add_parser("runner", help="实盘/纸面/干跑主循环")
    _add_config_arg(p_runner, default=argparse.SUPPRESS)
    p_runner.add_argument(
        "--max-ticks",
        type=int,
        default=None,
        help="采样多少个 tick 后退出（用于 dry-run/测试）",
    )
    p_runner.add_argument(
        "--mode",
        choices=["dry-run", "paper", "live"],
        default=None,
        help="覆盖配置文件中的 mode",
    )

    p_config = sub.add_parser("config", help="校验并打印配置")
    _add_config_arg(p_config, default=argparse.SUPPRESS)

    p_test = sub.add_parser("test", help="运行 pytest")
    _add_config_arg(p_test, default=argparse.SUPPRESS)

    return parser


def parse_args(argv: list[str] | None = None) -> CliArgs:
    """解析命令行参数；argv 为 None 时读取 sys.argv。"""
    ns = build_parser().parse_args(argv)
    return CliArgs(
        config=str(getattr(ns, "config", "config/config.yml")),
        task=ns.task or "runner",
        max_ticks=getattr(ns, "max_ticks", None),
        mode=getattr(ns, "mode", None),
    )


def main(argv: list[str] | None = None) -> Any:
    """程序主入口，返回对应子命令的结果（runner 返回 summary dict）。"""
    args = parse_args(argv)

    if args.task == "runner":
        if args.mode:
            cfg = load_config(args.config)
            cfg = AppConfig.model_validate({**cfg.model_dump(), "mode": args.mode})
            return TradingEngine(cfg_path=args.config, cfg_obj=cfg, max_ticks=args.max_ticks).run().summary
        return TradingEngine(cfg_path=args.config, max_ticks=args.max_ticks).run().summary

    if args.task == "config":
        cfg = load_config(args.config)
        dumped = cfg.model_dump()
        # 不打印凭证
        for key in ("api_key", "api_secret"):
            if dumped["exchange"].get(key):
                dumped["exchange"][key] = "***"
        print(json.dumps(dumped, indent=2, ensure_ascii=False))
        return dumped

    if args.task == "test":
        import pytest

        return pytest.main(["-q"])

    raise ValueError(f"Unknown task: {args.task}")


if __name__ == "__main__":
    main()
