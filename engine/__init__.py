"""执行引擎层（engine）。

- `SignalEngine`：快照缓冲与线性模型；
- `OrderLifecycleHandler`：订单事件 → 持仓状态；
- `TradingEngine.run() -> EngineResult`：把行情、策略、交易所串成一个 asyncio 程序。

命令行入口由仓库根目录 `main.py` 统一承载。
"""
