from __future__ import annotations

import math
from typing import Any, Callable, Optional

import numpy as np
import pandas as pd

from strategy_search.engine import indicators as ind
from strategy_search.engine.types import TradeDirection

from .base import Strategy, StrategyContext
from .theory import ALL_PRICE_FIELDS, Condition, ConditionType, Indicator, IndicatorType, Signal, Theory

# Output used when an operand names a multi-output indicator without a suffix.
DEFAULT_OUTPUT = {
    IndicatorType.MACD: "macd",
    IndicatorType.BOLLINGER: "middle",
}

EQUALS_REL_TOL = 1e-9


class SignalEvaluationError(ValueError):
    pass


def _param(params: dict[str, float], key: str, default: float) -> float:
    return float(params.get(key, default))


def indicator_compute(indicator: Indicator, output: Optional[str] = None) -> Callable[[pd.DataFrame], pd.Series]:
    p = indicator.parameters
    kind = indicator.type
    if output and kind not in DEFAULT_OUTPUT:
        raise SignalEvaluationError(f"{indicator.name} ({kind.value}) has no output '{output}'")

    if kind == IndicatorType.SMA:
        return lambda df: ind.sma(df["close"], _param(p, "period", 20))
    if kind == IndicatorType.EMA:
        return lambda df: ind.ema(df["close"], _param(p, "period", 20))
    if kind == IndicatorType.RSI:
        return lambda df: ind.rsi(df["close"], _param(p, "period", 14))
    if kind == IndicatorType.ATR:
        return lambda df: ind.atr(df["high"], df["low"], df["close"], _param(p, "period", 14))
    if kind == IndicatorType.MACD:
        col = output or DEFAULT_OUTPUT[kind]
        if col not in ("macd", "signal", "histogram"):
            raise SignalEvaluationError(f"Unknown MACD output: {col}")
        return lambda df: ind.macd(
            df["close"],
            _param(p, "fast_period", 12),
            _param(p, "slow_period", 26),
            _param(p, "signal_period", 9),
        )[col]
    if kind == IndicatorType.BOLLINGER:
        col = output or DEFAULT_OUTPUT[kind]
        if col not in ("middle", "upper", "lower"):
            raise SignalEvaluationError(f"Unknown Bollinger output: {col}")
        return lambda df: ind.bollinger(df["close"], _param(p, "period", 20), _param(p, "multiplier", 2.0))[col]
    raise SignalEvaluationError(f"Unsupported indicator type: {kind}")


class TheoryStrategy(Strategy):
    """
    Evaluates a theory's entry/exit signals bar by bar.

    Each condition compares two operands (indicator output or price field)
    at the current bar; cross conditions also look at the previous bar.
    A signal fires when all of its conditions hold. Indicator values come
    from the context's per-run cache, so each indicator is computed once
    per bar series.
    """

    def __init__(self, theory: Theory, params: dict[str, Any] | None = None) -> None:
        super().__init__(params if params is not None else theory.parameters)
        self.theory = theory
        self.name = f"Theory_{theory.name}"
        self._by_name = {i.name: i for i in theory.indicators}
        self._resolved: dict[str, tuple[str, Callable[[pd.DataFrame], pd.Series] | None]] = {}
        for signal in (theory.entry_signal, theory.exit_signal):
            for cond in signal.conditions:
                for operand in cond.operands():
                    self._resolve(operand)
        self.direction = TradeDirection.SHORT if _param(self.params, "Direction", 1.0) < 0 else TradeDirection.LONG

    def set_parameters(self, params: dict[str, Any]) -> None:
        super().set_parameters(params)
        self.direction = TradeDirection.SHORT if _param(self.params, "Direction", 1.0) < 0 else TradeDirection.LONG

    def _resolve(self, operand: str) -> tuple[str, Callable[[pd.DataFrame], pd.Series] | None]:
        hit = self._resolved.get(operand)
        if hit is not None:
            return hit
        if operand in ALL_PRICE_FIELDS:
            out = (operand, None)
        else:
            base, _, output = operand.partition(".")
            indicator = self._by_name.get(base)
            if indicator is None:
                raise SignalEvaluationError(
                    f"Theory {self.theory.name}: operand '{operand}' is neither a price field nor an indicator"
                )
            out = (operand, indicator_compute(indicator, output or None))
        self._resolved[operand] = out
        return out

    def warmup_bars(self) -> int:
        longest = 1
        for i in self.theory.indicators:
            periods = [v for k, v in i.parameters.items() if k.endswith("period")]
            if i.type == IndicatorType.MACD:
                periods = [_param(i.parameters, "slow_period", 26) + _param(i.parameters, "signal_period", 9)]
            if periods:
                longest = max(longest, int(math.ceil(max(periods))) + 1)
        return longest

    def _values(self, ctx: StrategyContext, operand: str) -> np.ndarray:
        key, compute = self._resolve(operand)
        if compute is None:
            return ctx.history(key).astype(float)
        return ctx.indicator(key, compute)

    def evaluate_condition(self, cond: Condition, ctx: StrategyContext) -> Optional[bool]:
        left = self._values(ctx, cond.left)
        right = self._values(ctx, cond.right)
        l_now, r_now = left[-1], right[-1]
        if np.isnan(l_now) or np.isnan(r_now):
            return None

        if cond.type == ConditionType.PRICE_ABOVE:
            return bool(l_now > r_now)
        if cond.type == ConditionType.PRICE_BELOW:
            return bool(l_now < r_now)
        if cond.type == ConditionType.EQUALS:
            return math.isclose(float(l_now), float(r_now), rel_tol=EQUALS_REL_TOL)

        if len(left) < 2:
            return None
        l_prev, r_prev = left[-2], right[-2]
        if np.isnan(l_prev) or np.isnan(r_prev):
            return None
        if cond.type == ConditionType.CROSS_OVER:
            return bool(l_prev <= r_prev and l_now > r_now)
        if cond.type == ConditionType.CROSS_UNDER:
            return bool(l_prev >= r_prev and l_now < r_now)
        raise SignalEvaluationError(f"Unsupported condition type: {cond.type}")

    def evaluate_signal(self, signal: Signal, ctx: StrategyContext) -> Optional[bool]:
        if not signal.conditions:
            return None
        for cond in signal.conditions:
            hit = self.evaluate_condition(cond, ctx)
            if hit is None:
                return None
            if not hit:
                return False
        return True

    def should_enter(self, ctx: StrategyContext) -> Optional[bool]:
        return self.evaluate_signal(self.theory.entry_signal, ctx)

    def should_exit(self, ctx: StrategyContext) -> Optional[bool]:
        return self.evaluate_signal(self.theory.exit_signal, ctx)
