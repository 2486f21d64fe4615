from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest

import main as app_main

ROOT = Path(__file__).resolve().parents[1]


@dataclass
class _Res:
    summary: dict[str, Any]


class _FakeEngine:
    def __init__(self, *, cfg_path: str, max_ticks: int | None = None, cfg_obj=None, **_kwargs):
        self.cfg_path = cfg_path
        self.max_ticks = max_ticks
        self.cfg_obj = cfg_obj

    def run(self):
        mode = self.cfg_obj.mode if self.cfg_obj is not None else None
        return _Res(summary={"cfg_path": self.cfg_path, "max_ticks": self.max_ticks, "mode": mode})


def test_main_runner_uses_trading_engine(monkeypatch):
    monkeypatch.setattr(app_main, "TradingEngine", _FakeEngine)
    res = app_main.main(["--config", "config/config.yml", "runner", "--max-ticks", "12"])
    assert res == {"cfg_path": "config/config.yml", "max_ticks": 12, "mode": None}


def test_main_defaults_to_runner(monkeypatch):
    monkeypatch.setattr(app_main, "TradingEngine", _FakeEngine)
    res = app_main.main([])
    assert res["cfg_path"] == "config/config.yml"
    assert res["max_ticks"] is None


def test_main_runner_mode_override(monkeypatch):
    monkeypatch.setattr(app_main, "TradingEngine", _FakeEngine)
    cfg_path = str(ROOT / "config" / "config.yml")
    res = app_main.main(["runner", "--config", cfg_path, "--mode", "dry-run"])
    assert res["mode"] == "dry-run"


def test_main_config_masks_credentials(tmp_path, capsys):
    cfg = tmp_path / "config.yml"
    cfg.write_text("mode: live\nexchange:\n  api_key: abc\n  api_secret: def\n", encoding="utf-8")

    dumped = app_main.main(["config", "--config", str(cfg)])

    assert dumped["exchange"]["api_key"] == "***"
    assert dumped["mode"] == "live"
    assert "abc" not in capsys.readouterr().out


def test_parse_args_accepts_config_after_subcommand():
    args = app_main.parse_args(["runner", "--config", "x.yml", "--max-ticks", "3"])
    assert args.config == "x.yml"
    assert args.task == "runner"
    assert args.max_ticks == 3


def test_main_runner_mode_override_is_validated(tmp_path, monkeypatch):
    monkeypatch.setattr(app_main, "TradingEngine", _FakeEngine)
    cfg = tmp_path / "config.yml"
    cfg.write_text("mode: paper\n", encoding="utf-8")

    # 切到 live 时同样要求凭证
    with pytest.raises(ValueError):
        app_main.main(["runner", "--config", str(cfg), "--mode", "live"])
