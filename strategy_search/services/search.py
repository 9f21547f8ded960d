from __future__ import annotations

import asyncio
from typing import Optional

import pandas as pd

from shared.logger import log_event
from strategy_search.config import PromisingConfig, SearchConfig
from strategy_search.engine.scoring import improvement_percentage, search_fitness
from strategy_search.engine.types import BacktestResult, OptimizationResult
from strategy_search.optimizer.genetic import StrategyOptimizer
from strategy_search.strategies.generator import TheoryGenerator
from strategy_search.strategies.theory import Theory

from .backtester import Backtester
from .market_data import MarketDataError
from .risk import RiskManager
from .store import ResultStore

# Theory parameter -> risk manager limit fed back after optimization.
RISK_FEEDBACK_KEYS = {
    "RiskPerTrade": "MaxRiskPerTrade",
    "MaxDrawdown": "MaxDrawdown",
}


def is_promising(result: BacktestResult, cfg: Optional[PromisingConfig] = None) -> bool:
    cfg = cfg or PromisingConfig()
    return (
        result.sharpe_ratio > cfg.min_sharpe
        and result.max_drawdown < cfg.max_drawdown
        and result.profit_factor > cfg.min_profit_factor
        and result.win_rate > cfg.min_win_rate
    )


class StrategySearchService:
    """
    End-to-end search: generate theories, screen them with a backtest,
    evolve the promising ones and rank what survives.
    """

    def __init__(
        self,
        backtester: Backtester,
        generator: TheoryGenerator,
        optimizer: StrategyOptimizer,
        risk_manager: Optional[RiskManager] = None,
        cfg: Optional[SearchConfig] = None,
        store: Optional[ResultStore] = None,
    ) -> None:
        self.backtester = backtester
        self.generator = generator
        self.optimizer = optimizer
        self.risk_manager = risk_manager or backtester.risk_manager
        self.cfg = cfg or backtester.cfg
        self.store = store

    def _feed_risk_manager(self, theory: Theory, result: BacktestResult) -> None:
        limits = {
            target: theory.parameters[source]
            for source, target in RISK_FEEDBACK_KEYS.items()
            if source in theory.parameters
        }
        if limits:
            self.risk_manager.update_risk_parameters(limits)
        by_symbol: dict[str, list] = {}
        for trade in result.trades:
            by_symbol.setdefault(trade.symbol, []).append(trade)
        for symbol, trades in by_symbol.items():
            self.risk_manager.update_risk_metrics(symbol, trades)

    async def _search_one(
        self,
        theory: Theory,
        start: pd.Timestamp,
        end: pd.Timestamp,
    ) -> Optional[OptimizationResult]:
        initial = await self.backtester.run_backtest(theory, start, end)
        if not is_promising(initial, self.cfg.promising):
            log_event(
                "INFO",
                "search",
                f"{theory.name} screened out: sharpe={initial.sharpe_ratio:.2f} "
                f"dd={initial.max_drawdown:.2%} pf={initial.profit_factor:.2f} wr={initial.win_rate:.1%}",
            )
            return None

        opt = await self.optimizer.optimize(theory, start, end)
        opt.base_theory = theory
        opt.initial_backtest = initial
        # Report fitness on the ranking scale: screened run vs optimized run.
        base = self.cfg.initial_equity
        opt.initial_fitness = search_fitness(initial, base)
        if opt.backtest_result is not None:
            opt.final_fitness = search_fitness(opt.backtest_result, base)
        opt.improvement_percentage = improvement_percentage(opt.initial_fitness, opt.final_fitness)
        if opt.backtest_result is not None:
            self._feed_risk_manager(opt.best_theory, opt.backtest_result)
            self.backtester.validate_strategy(opt.backtest_result)
        if self.store is not None:
            await asyncio.to_thread(self.store.save_optimization, opt)
        return opt

    async def search_strategies(
        self,
        start: pd.Timestamp,
        end: pd.Timestamp,
        number_of_theories: int,
    ) -> list[OptimizationResult]:
        theories = self.generator.generate_theories(list(self.cfg.symbols), number_of_theories)
        log_event("INFO", "search", f"Generated {len(theories)} theories for {', '.join(self.cfg.symbols)}")

        results: list[OptimizationResult] = []
        for theory in theories:
            try:
                opt = await self._search_one(theory, start, end)
            except MarketDataError:
                log_event("CRITICAL", "search", f"Market data failure while testing {theory.name}; aborting search")
                raise
            except Exception as e:
                log_event("ERROR", "search", f"{theory.name} failed: {type(e).__name__}: {e}")
                continue
            if opt is not None:
                results.append(opt)

        results.sort(
            key=lambda r: search_fitness(r.backtest_result, self.cfg.initial_equity)
            if r.backtest_result is not None
            else float("-inf"),
            reverse=True,
        )
        log_event("INFO", "search", f"Search finished: {len(results)}/{len(theories)} theories optimized")
        return results
