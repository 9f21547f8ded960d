from __future__ import annotations

import asyncio
from typing import Any, Mapping, Optional

import pandas as pd

from shared.logger import log_event
from strategy_search.config import SearchConfig
from strategy_search.engine.concurrency import gather_all
from strategy_search.engine.executor import TradeExecutor
from strategy_search.engine.grid import generate_parameter_sets
from strategy_search.engine.metrics import calculate_metrics
from strategy_search.engine.types import BacktestResult
from strategy_search.engine.validator import ValidationReport, annotate_result, validate_backtest_result
from strategy_search.strategies.base import Strategy
from strategy_search.strategies.evaluator import TheoryStrategy
from strategy_search.strategies.theory import Theory

from .market_data import MarketDataError, MarketDataProvider
from .risk import RiskManager

# Backtest parameters consumed by the simulation itself; anything else is a strategy parameter.
RISK_PARAMETER_KEYS = ("InitialEquity", "RiskPerTrade", "StopLossMultiplier", "TakeProfitMultiplier")

BAR_CACHE_SIZE = 64


def split_parameters(parameters: Mapping[str, Any] | None) -> tuple[dict[str, Any], dict[str, Any]]:
    risk: dict[str, Any] = {}
    strategy: dict[str, Any] = {}
    for key, value in dict(parameters or {}).items():
        (risk if key in RISK_PARAMETER_KEYS else strategy)[key] = value
    return risk, strategy


class Backtester:
    """
    Async front end over the trade executor.

    Simulations run in worker threads; at most `max_parallel_backtests`
    run at once. Bars are fetched once per (symbol, start, end, timeframe);
    the oldest window is dropped once `bar_cache_size` windows are held.
    """

    def __init__(
        self,
        provider: MarketDataProvider,
        risk_manager: Optional[RiskManager] = None,
        cfg: Optional[SearchConfig] = None,
        bar_cache_size: int = BAR_CACHE_SIZE,
    ) -> None:
        if bar_cache_size < 1:
            raise ValueError("bar_cache_size must be >= 1")
        self.provider = provider
        self.cfg = cfg or SearchConfig()
        self.risk_manager = risk_manager or RiskManager(self.cfg.risk)
        self.executor = TradeExecutor(self.risk_manager, warmup_bars=self.cfg.warmup_bars)
        self.bar_cache_size = int(bar_cache_size)
        self._bars: dict[tuple[str, str, str, str], pd.DataFrame] = {}
        self._sem: Optional[asyncio.Semaphore] = None
        self._sem_loop: Optional[asyncio.AbstractEventLoop] = None

    def _semaphore(self) -> asyncio.Semaphore:
        loop = asyncio.get_running_loop()
        if self._sem is None or self._sem_loop is not loop:
            self._sem = asyncio.Semaphore(max(int(self.cfg.max_parallel_backtests), 1))
            self._sem_loop = loop
        return self._sem

    async def get_bars(
        self,
        symbol: str,
        start: pd.Timestamp,
        end: pd.Timestamp,
        timeframe: Optional[str] = None,
    ) -> pd.DataFrame:
        tf = timeframe or self.cfg.timeframe
        key = (symbol, str(pd.Timestamp(start)), str(pd.Timestamp(end)), tf)
        bars = self._bars.get(key)
        if bars is None:
            bars = await asyncio.to_thread(self.provider.get_historical_bars, symbol, start, end, tf)
            if bars is None or bars.empty:
                raise MarketDataError(f"{symbol}: provider returned no bars for {start} -> {end}")
            while len(self._bars) >= self.bar_cache_size:
                self._bars.pop(next(iter(self._bars)))
            self._bars[key] = bars
        return bars

    def _simulate(
        self,
        strategy: Strategy,
        frames: dict[str, pd.DataFrame],
        start: pd.Timestamp,
        end: pd.Timestamp,
        parameters: Mapping[str, Any] | None,
        record_symbol_errors: bool,
    ) -> BacktestResult:
        risk_params, strategy_params = split_parameters(parameters)
        run_strategy = strategy.with_parameters(strategy_params) if strategy_params else strategy
        initial_equity = float(risk_params.get("InitialEquity", self.cfg.initial_equity))

        result = BacktestResult(
            start_date=pd.Timestamp(start),
            end_date=pd.Timestamp(end),
            strategy_name=run_strategy.name,
            parameters={k: float(v) for k, v in dict(parameters or {}).items()},
        )
        equity = initial_equity
        warmup = self.executor.warmup_bars
        for symbol, bars in frames.items():
            try:
                if len(bars) < warmup:
                    raise MarketDataError(
                        f"{symbol}: {len(bars)} bars between {start} and {end}, warm-up needs at least {warmup}"
                    )
                equity = self.executor.execute_trades(
                    result, symbol, bars, run_strategy, equity, risk_overrides=risk_params
                )
            except Exception as e:
                if not record_symbol_errors:
                    raise
                result.symbol_errors[symbol] = f"{type(e).__name__}: {e}"
                log_event("ERROR", "backtester", f"{run_strategy.name} on {symbol} failed: {e}")

        return calculate_metrics(
            result,
            final_equity=equity,
            base_equity=initial_equity,
            risk_free_rate=self.cfg.metrics.risk_free_rate,
        )

    async def run_backtest_async(
        self,
        strategy: Strategy,
        symbol: str,
        start: pd.Timestamp,
        end: pd.Timestamp,
        parameters: dict[str, float] | None = None,
    ) -> BacktestResult:
        async with self._semaphore():
            bars = await self.get_bars(symbol, start, end)
            return await asyncio.to_thread(
                self._simulate, strategy, {symbol: bars}, start, end, parameters, False
            )

    async def run_backtest(self, theory: Theory, start: pd.Timestamp, end: pd.Timestamp) -> BacktestResult:
        """All of the theory's symbols in order, one equity pool; a failing symbol is recorded and skipped."""
        if not theory.symbols:
            raise ValueError(f"Theory {theory.name} has no symbols")
        strategy = TheoryStrategy(theory)
        risk_params = {k: v for k, v in theory.parameters.items() if k in RISK_PARAMETER_KEYS}
        async with self._semaphore():
            frames = {symbol: await self.get_bars(symbol, start, end) for symbol in theory.symbols}
            return await asyncio.to_thread(self._simulate, strategy, frames, start, end, risk_params, True)

    async def run_parallel_backtests(
        self,
        strategy: Strategy,
        symbol: str,
        start: pd.Timestamp,
        end: pd.Timestamp,
        parameter_sets: list[dict[str, float]],
    ) -> list[BacktestResult]:
        tasks = [self.run_backtest_async(strategy, symbol, start, end, params) for params in parameter_sets]
        return await gather_all(tasks)

    async def optimize_parameters_async(
        self,
        strategy: Strategy,
        symbol: str,
        start: pd.Timestamp,
        end: pd.Timestamp,
        parameter_ranges: Mapping[str, tuple[float, float, float]],
    ) -> tuple[dict[str, float], BacktestResult]:
        """Grid sweep; the set with the highest Sharpe wins (first one on ties)."""
        sets = generate_parameter_sets(parameter_ranges)
        results = await self.run_parallel_backtests(strategy, symbol, start, end, sets)
        best = 0
        for i, r in enumerate(results):
            if r.sharpe_ratio > results[best].sharpe_ratio:
                best = i
        log_event(
            "INFO",
            "backtester",
            f"{strategy.name} {symbol}: {len(sets)} parameter sets, best sharpe "
            f"{results[best].sharpe_ratio:.3f} with {sets[best]}",
        )
        return sets[best], results[best]

    def validate_strategy(self, result: BacktestResult) -> ValidationReport:
        report = validate_backtest_result(result, self.cfg.validation)
        annotate_result(result, report)
        return report
