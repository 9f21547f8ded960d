from __future__ import annotations

import asyncio

import pandas as pd
import pytest

from strategy_search.config import GeneticConfig
from strategy_search.engine.types import BacktestResult, OptimizationSettings, ParameterRange
from strategy_search.optimizer.genetic import StrategyOptimizer, randomize_parameter
from strategy_search.strategies.theory import (
    Condition,
    ConditionType,
    Indicator,
    IndicatorType,
    Signal,
    SignalKind,
    Theory,
)

START = pd.Timestamp("2023-01-01", tz="UTC")
END = pd.Timestamp("2023-12-31", tz="UTC")


class _PeriodBacktester:
    """Final equity peaks when SMA_0's period is 20."""

    def __init__(self) -> None:
        self.calls = 0
        self.symbols: list[str] = []

    async def run_backtest_async(self, strategy, symbol, start, end, parameters=None) -> BacktestResult:
        self.calls += 1
        self.symbols.append(symbol)
        period = strategy.theory.indicators[0].parameters["period"]
        r = BacktestResult(start_date=start, end_date=end, strategy_name=strategy.name)
        r.final_equity = 10_000.0 - abs(period - 20.0) * 10.0
        return r


def _theory(period: float = 30.0) -> Theory:
    return Theory(
        name="base",
        symbols=["ETHUSD", "BTCUSD"],
        indicators=[
            Indicator("SMA_0", IndicatorType.SMA, {"period": period}),
            Indicator("RSI_1", IndicatorType.RSI, {"period": 14.0}),
        ],
        entry_signal=Signal("Entry", SignalKind.ENTRY, [Condition("close", "SMA_0", ConditionType.CROSS_OVER)]),
        exit_signal=Signal("Exit", SignalKind.EXIT, [Condition("close", "SMA_0", ConditionType.CROSS_UNDER)]),
        parameters={"RiskPerTrade": 0.02},
    )


def test_optimize_tracks_best_so_far() -> None:
    bt = _PeriodBacktester()
    opt = StrategyOptimizer(bt, GeneticConfig(population_size=8, generations=6, mutation_rate=0.3), seed=1)
    base = _theory()
    result = asyncio.run(opt.optimize(base, START, END))

    assert len(result.generation_results) == 6
    assert bt.calls == 6 * 8
    assert set(bt.symbols) == {"ETHUSD"}
    best = [g.best_fitness for g in result.generation_results]
    assert best == sorted(best)
    for g in result.generation_results:
        assert g.worst_fitness - 1e-12 <= g.average_fitness <= g.generation_best_fitness + 1e-12
        assert g.generation_best_fitness <= g.best_fitness
    assert result.final_fitness == best[-1]
    assert result.final_fitness >= result.initial_fitness
    assert result.initial_fitness == pytest.approx(-0.01)
    assert result.backtest_result is not None
    assert base.indicators[0].parameters["period"] == 30.0


def test_children_keep_signals_and_parameters() -> None:
    opt = StrategyOptimizer(_PeriodBacktester(), seed=2)
    a, b = _theory(10.0), _theory(40.0)
    c1, c2 = opt.crossover(a, b)
    for child in (c1, c2):
        assert child.entry_signal == a.entry_signal
        assert child.parameters == a.parameters
        assert 10.0 <= child.indicators[0].parameters["period"] <= 40.0
    # Blend weights are complementary.
    assert c1.indicators[0].parameters["period"] + c2.indicators[0].parameters["period"] == pytest.approx(50.0)


def test_misaligned_parents_are_rejected() -> None:
    opt = StrategyOptimizer(_PeriodBacktester(), seed=3)
    other = _theory()
    other.indicators = other.indicators[:1]
    with pytest.raises(ValueError):
        opt.crossover(_theory(), other)


def test_population_size_must_be_positive() -> None:
    opt = StrategyOptimizer(_PeriodBacktester(), GeneticConfig(population_size=0, generations=2), seed=4)
    with pytest.raises(ValueError):
        asyncio.run(opt.optimize(_theory(), START, END))


def test_single_member_population_runs() -> None:
    opt = StrategyOptimizer(_PeriodBacktester(), GeneticConfig(population_size=1, generations=3), seed=5)
    result = asyncio.run(opt.optimize(_theory(), START, END))
    assert len(result.generation_results) == 3


def test_deadline_stops_after_current_generation() -> None:
    cfg = GeneticConfig(population_size=4, generations=50, deadline_seconds=0.0)
    result = asyncio.run(StrategyOptimizer(_PeriodBacktester(), cfg, seed=6).optimize(_theory(), START, END))
    assert len(result.generation_results) == 1
    assert result.notes


def test_randomize_parameter_stays_in_range() -> None:
    prange = ParameterRange(min=5.0, max=50.0, variation=0.5)
    for u in (0.0, 0.25, 0.5, 0.75, 1.0):
        v = randomize_parameter(45.0, u, prange)
        assert 5.0 <= v <= 50.0
    assert randomize_parameter(20.0, 0.5, prange) == pytest.approx(20.0)


def test_optimize_parameters_only_moves_ranged_parameters() -> None:
    bt = _PeriodBacktester()
    opt = StrategyOptimizer(bt, seed=7)
    settings = OptimizationSettings(
        start_date=START,
        end_date=END,
        generations=4,
        population_size=6,
        initial_population_size=6,
        mutation_rate=0.5,
        parameter_ranges={"period": ParameterRange(min=5.0, max=50.0, variation=0.5)},
    )
    result = asyncio.run(opt.optimize_parameters(_theory(), settings))
    assert len(result.generation_results) == 4
    for ind in result.best_theory.indicators:
        assert 5.0 <= ind.parameters["period"] <= 50.0

    settings.parameter_ranges = {"multiplier": ParameterRange(min=1.0, max=3.0)}
    fixed = asyncio.run(opt.optimize_parameters(_theory(), settings))
    assert fixed.best_theory.indicators[0].parameters["period"] == pytest.approx(30.0)
