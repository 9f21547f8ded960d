from __future__ import annotations

from typing import Any, Optional

import numpy as np

from strategy_search.engine import indicators as ind

from .base import Strategy, StrategyContext


class SMACrossStrategy(Strategy):
    """Long when the fast SMA crosses above the slow SMA, flat on the cross back."""

    name = "sma_cross"

    def __init__(self, params: dict[str, Any] | None = None) -> None:
        super().__init__(params)
        self.fast_period = int(self.params.get("FastPeriod", 10))
        self.slow_period = int(self.params.get("SlowPeriod", 20))

    def set_parameters(self, params: dict[str, Any]) -> None:
        super().set_parameters(params)
        self.fast_period = int(round(float(self.params.get("FastPeriod", self.fast_period))))
        self.slow_period = int(round(float(self.params.get("SlowPeriod", self.slow_period))))

    def warmup_bars(self) -> int:
        return self.slow_period + 1

    def _pair(self, ctx: StrategyContext) -> tuple[np.ndarray, np.ndarray] | None:
        if ctx.idx + 1 < self.warmup_bars():
            return None
        fast = ctx.indicator(f"sma_{self.fast_period}", lambda df: ind.sma(df["close"], self.fast_period))
        slow = ctx.indicator(f"sma_{self.slow_period}", lambda df: ind.sma(df["close"], self.slow_period))
        if np.isnan(fast[-2:]).any() or np.isnan(slow[-2:]).any():
            return None
        return fast, slow

    def should_enter(self, ctx: StrategyContext) -> Optional[bool]:
        pair = self._pair(ctx)
        if pair is None:
            return None
        fast, slow = pair
        return bool(fast[-2] <= slow[-2] and fast[-1] > slow[-1])

    def should_exit(self, ctx: StrategyContext) -> Optional[bool]:
        pair = self._pair(ctx)
        if pair is None:
            return None
        fast, slow = pair
        return bool(fast[-2] >= slow[-2] and fast[-1] < slow[-1])
