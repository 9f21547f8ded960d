from __future__ import annotations

import itertools
from datetime import datetime, timezone
from typing import Optional, Sequence

import numpy as np

from .theory import (
    PRICE_FIELDS,
    Condition,
    ConditionType,
    Indicator,
    IndicatorType,
    Signal,
    SignalKind,
    Theory,
)

INDICATOR_TYPES = tuple(IndicatorType)

SIGNAL_CONDITION_TYPES = (
    ConditionType.PRICE_ABOVE,
    ConditionType.PRICE_BELOW,
    ConditionType.CROSS_OVER,
    ConditionType.CROSS_UNDER,
)

DEFAULT_THEORY_PARAMETERS = {
    "RiskPerTrade": 0.02,
    "MaxDrawdown": 0.10,
    "MinProfitFactor": 1.5,
}

MIN_INDICATORS = 2
MAX_INDICATORS = 4
MIN_CONDITIONS = 1
MAX_CONDITIONS = 2


def _base_name(operand: str) -> str:
    return operand.partition(".")[0]


def _referenced(signal: Signal) -> set[str]:
    names: set[str] = set()
    for cond in signal.conditions:
        for operand in cond.operands():
            if operand not in PRICE_FIELDS and operand != "volume":
                names.add(_base_name(operand))
    return names


class TheoryGenerator:
    """
    Random theories plus the mutation and crossover operators over them.

    All operators return new Theory objects and never touch their inputs.
    """

    def __init__(self, seed: Optional[int] = None, rng: Optional[np.random.Generator] = None) -> None:
        self.rng = rng if rng is not None else np.random.default_rng(seed)
        self._seq = itertools.count(1)

    def _name(self, prefix: str) -> str:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        return f"{prefix}_{stamp}_{next(self._seq)}"

    def _coin(self) -> bool:
        return bool(self.rng.integers(2) == 0)

    def _indicator_parameters(self, kind: IndicatorType) -> dict[str, float]:
        r = self.rng
        if kind in (IndicatorType.SMA, IndicatorType.EMA, IndicatorType.RSI):
            return {"period": float(r.integers(5, 50))}
        if kind == IndicatorType.MACD:
            return {
                "fast_period": float(r.integers(8, 15)),
                "slow_period": float(r.integers(20, 30)),
                "signal_period": float(r.integers(5, 10)),
            }
        if kind == IndicatorType.BOLLINGER:
            return {"period": float(r.integers(10, 30)), "multiplier": float(round(r.uniform(1.5, 2.5), 2))}
        return {"period": float(r.integers(10, 20))}

    def generate_indicators(self) -> list[Indicator]:
        count = int(self.rng.integers(MIN_INDICATORS, MAX_INDICATORS + 1))
        out: list[Indicator] = []
        for i in range(count):
            kind = INDICATOR_TYPES[int(self.rng.integers(len(INDICATOR_TYPES)))]
            out.append(Indicator(name=f"{kind.value}_{i}", type=kind, parameters=self._indicator_parameters(kind)))
        return out

    def _operand(self, indicators: Sequence[Indicator]) -> str:
        if indicators and self._coin():
            return indicators[int(self.rng.integers(len(indicators)))].name
        return PRICE_FIELDS[int(self.rng.integers(len(PRICE_FIELDS)))]

    def generate_signal(self, kind: SignalKind, indicators: Sequence[Indicator]) -> Signal:
        count = int(self.rng.integers(MIN_CONDITIONS, MAX_CONDITIONS + 1))
        conditions: list[Condition] = []
        for _ in range(count):
            left = self._operand(indicators)
            right = self._operand(indicators)
            ctype = SIGNAL_CONDITION_TYPES[int(self.rng.integers(len(SIGNAL_CONDITION_TYPES)))]
            conditions.append(Condition(left=left, right=right, type=ctype))
        return Signal(name=kind.value, kind=kind, conditions=conditions)

    def generate_parameters(self) -> dict[str, float]:
        return dict(DEFAULT_THEORY_PARAMETERS)

    def generate_theory(self, symbols: Sequence[str]) -> Theory:
        if not symbols:
            raise ValueError("generate_theory needs at least one symbol")
        indicators = self.generate_indicators()
        return Theory(
            name=self._name("Theory"),
            symbols=list(symbols),
            indicators=indicators,
            entry_signal=self.generate_signal(SignalKind.ENTRY, indicators),
            exit_signal=self.generate_signal(SignalKind.EXIT, indicators),
            parameters=self.generate_parameters(),
        )

    def generate_theories(self, symbols: Sequence[str], count: int) -> list[Theory]:
        return [self.generate_theory(symbols) for _ in range(max(0, int(count)))]

    def _repair_signal(self, signal: Signal, indicators: Sequence[Indicator]) -> Signal:
        known = {i.name for i in indicators}

        def fix(operand: str) -> str:
            if operand in PRICE_FIELDS or operand == "volume" or _base_name(operand) in known:
                return operand
            return self._operand(indicators)

        return Signal(
            name=signal.name,
            kind=signal.kind,
            conditions=[Condition(left=fix(c.left), right=fix(c.right), type=c.type) for c in signal.conditions],
        )

    def mutate_theory(self, theory: Theory) -> Theory:
        """Copy of `theory` with exactly one of indicators, parameters or signals re-drawn."""
        child = theory.copy()
        choice = int(self.rng.integers(3))
        if choice == 0:
            child.indicators = self.generate_indicators()
            child.entry_signal = self._repair_signal(child.entry_signal, child.indicators)
            child.exit_signal = self._repair_signal(child.exit_signal, child.indicators)
        elif choice == 1:
            child.parameters = self.generate_parameters()
        else:
            child.entry_signal = self.generate_signal(SignalKind.ENTRY, child.indicators)
            child.exit_signal = self.generate_signal(SignalKind.EXIT, child.indicators)
        return child

    def crossover_theories(self, first: Theory, second: Theory) -> Theory:
        indicators: list[Indicator] = []
        seen: set[str] = set()
        for indicator in list(first.indicators) + list(second.indicators):
            if self._coin() and indicator.name not in seen:
                indicators.append(indicator)
                seen.add(indicator.name)

        parameters: dict[str, float] = {}
        for key, value in list(first.parameters.items()) + list(second.parameters.items()):
            if self._coin():
                parameters[key] = value

        entry_parent = first if self._coin() else second
        exit_parent = first if self._coin() else second

        # Signals must still resolve against the child's indicator list.
        for parent, signal in ((entry_parent, entry_parent.entry_signal), (exit_parent, exit_parent.exit_signal)):
            by_name = {i.name: i for i in parent.indicators}
            for name in sorted(_referenced(signal)):
                if name not in seen and name in by_name:
                    indicators.append(by_name[name])
                    seen.add(name)

        if not indicators:
            pool = list(first.indicators) + list(second.indicators)
            if pool:
                indicators.append(pool[int(self.rng.integers(len(pool)))])

        child = Theory(
            name=self._name("Cross"),
            symbols=list(first.symbols),
            indicators=indicators,
            entry_signal=entry_parent.entry_signal,
            exit_signal=exit_parent.exit_signal,
            parameters=parameters,
        )
        return child.copy()
