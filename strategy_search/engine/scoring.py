from __future__ import annotations

from .types import BacktestResult

PROFIT_FACTOR_CAP = 3.0


def fitness(result: BacktestResult, base_equity: float = 10_000.0) -> float:
    """Optimizer fitness: return on base equity, drawdown penalty, Sharpe and capped profit factor."""
    ret = (result.final_equity - base_equity) / base_equity if base_equity else 0.0
    return float(
        ret
        - 2.0 * result.max_drawdown
        + result.sharpe_ratio / 2.0
        + min(result.profit_factor, PROFIT_FACTOR_CAP) / PROFIT_FACTOR_CAP
    )


def search_fitness(result: BacktestResult, base_equity: float = 10_000.0) -> float:
    return fitness(result, base_equity) + (result.win_rate - 0.5)


def improvement_percentage(initial: float, final: float) -> float:
    if initial == 0:
        return 0.0
    return (final - initial) / abs(initial) * 100.0
