from __future__ import annotations

import time
from typing import Optional, Protocol

import numpy as np
import pandas as pd

from shared.logger import log_event
from strategy_search.config import GeneticConfig
from strategy_search.engine.concurrency import gather_all
from strategy_search.engine.scoring import fitness as default_fitness
from strategy_search.engine.scoring import improvement_percentage
from strategy_search.engine.types import (
    BacktestResult,
    GenerationResult,
    OptimizationResult,
    OptimizationSettings,
    ParameterRange,
)
from strategy_search.strategies.base import Strategy
from strategy_search.strategies.evaluator import TheoryStrategy
from strategy_search.strategies.theory import Indicator, Theory


class SymbolBacktester(Protocol):
    async def run_backtest_async(
        self,
        strategy: Strategy,
        symbol: str,
        start: pd.Timestamp,
        end: pd.Timestamp,
        parameters: dict[str, float] | None = None,
    ) -> BacktestResult: ...


def randomize_parameter(value: float, rng_value: float, prange: ParameterRange) -> float:
    """Scale the distance above `min` by (1 + u), u in [-variation, variation], clamped to the range."""
    u = (2.0 * rng_value - 1.0) * prange.variation
    out = prange.min + (value - prange.min) * (1.0 + u)
    return float(min(max(out, prange.min), prange.max))


def indicators_aligned(a: Theory, b: Theory) -> bool:
    if len(a.indicators) != len(b.indicators):
        return False
    return all(x.name == y.name and x.type == y.type for x, y in zip(a.indicators, b.indicators))


class StrategyOptimizer:
    """
    Genetic search over the indicator parameters of one theory.

    Structure (indicator set and signals) stays fixed; only numeric
    indicator parameters evolve. Every generation is evaluated with one
    backtest per member on the theory's first symbol.
    """

    def __init__(
        self,
        backtester: SymbolBacktester,
        cfg: Optional[GeneticConfig] = None,
        seed: Optional[int] = None,
        base_equity: float = 10_000.0,
        fitness_fn=None,
    ) -> None:
        self.backtester = backtester
        self.cfg = cfg or GeneticConfig()
        self.rng = np.random.default_rng(seed)
        self.base_equity = float(base_equity)
        self.fitness_fn = fitness_fn or (lambda r: default_fitness(r, self.base_equity))

    # Population

    def _variant(self, theory: Theory, name: str, ranges: dict[str, ParameterRange] | None) -> Theory:
        indicators: list[Indicator] = []
        for ind in theory.indicators:
            params: dict[str, float] = {}
            for key, value in ind.parameters.items():
                if ranges is not None:
                    prange = ranges.get(key)
                    params[key] = value if prange is None else randomize_parameter(value, self.rng.random(), prange)
                else:
                    v = self.cfg.init_variation
                    params[key] = float(value * (1.0 + self.rng.uniform(-v, v)))
            indicators.append(Indicator(name=ind.name, type=ind.type, parameters=params))
        return theory.copy(name=name, indicators=indicators)

    def initialize_population(
        self,
        theory: Theory,
        size: int,
        ranges: dict[str, ParameterRange] | None = None,
    ) -> list[Theory]:
        if size < 1:
            raise ValueError("population size must be >= 1")
        population = [theory.copy()]
        while len(population) < size:
            population.append(self._variant(theory, f"{theory.name}_variant_{len(population)}", ranges))
        return population

    # Operators

    def select_parent(self, population: list[Theory], scores: list[float]) -> Theory:
        k = min(self.cfg.tournament_size, len(population))
        picks = self.rng.choice(len(population), size=k, replace=False)
        best = max(picks, key=lambda i: scores[int(i)])
        return population[int(best)]

    def crossover(self, first: Theory, second: Theory, generation: int = 0) -> tuple[Theory, Theory]:
        """Blend crossover of aligned indicator parameters; child two takes the complement weight."""
        if not indicators_aligned(first, second):
            raise ValueError(f"Cannot cross {first.name} with {second.name}: indicator lists are not aligned")
        ind1: list[Indicator] = []
        ind2: list[Indicator] = []
        for a, b in zip(first.indicators, second.indicators):
            p1 = dict(a.parameters)
            p2 = dict(b.parameters)
            for key in a.parameters:
                if key not in b.parameters:
                    continue
                w = float(self.rng.random())
                p1[key] = w * a.parameters[key] + (1.0 - w) * b.parameters[key]
                p2[key] = w * b.parameters[key] + (1.0 - w) * a.parameters[key]
            ind1.append(Indicator(name=a.name, type=a.type, parameters=p1))
            ind2.append(Indicator(name=b.name, type=b.type, parameters=p2))
        child1 = first.copy(name=f"{_root_name(first)}_g{generation}", indicators=ind1)
        child2 = second.copy(name=f"{_root_name(second)}_g{generation}", indicators=ind2)
        return child1, child2

    def mutate(
        self,
        theory: Theory,
        mutation_rate: float,
        ranges: dict[str, ParameterRange] | None = None,
    ) -> Theory:
        indicators: list[Indicator] = []
        for ind in theory.indicators:
            params = dict(ind.parameters)
            for key in list(params):
                if self.rng.random() >= mutation_rate:
                    continue
                if ranges is not None:
                    prange = ranges.get(key)
                    if prange is not None:
                        params[key] = randomize_parameter(params[key], self.rng.random(), prange)
                else:
                    v = self.cfg.mutation_variation
                    params[key] = float(params[key] * (1.0 + self.rng.uniform(-v, v)))
            indicators.append(Indicator(name=ind.name, type=ind.type, parameters=params))
        return theory.copy(indicators=indicators)

    # Evaluation

    async def _evaluate(self, theory: Theory, start: pd.Timestamp, end: pd.Timestamp) -> BacktestResult:
        strategy = TheoryStrategy(theory)
        return await self.backtester.run_backtest_async(strategy, theory.primary_symbol, start, end)

    async def evaluate_population(
        self,
        population: list[Theory],
        start: pd.Timestamp,
        end: pd.Timestamp,
    ) -> list[tuple[BacktestResult, float]]:
        results = await gather_all(self._evaluate(t, start, end) for t in population)
        return [(r, float(self.fitness_fn(r))) for r in results]

    async def _run(
        self,
        theory: Theory,
        start: pd.Timestamp,
        end: pd.Timestamp,
        generations: int,
        population_size: int,
        initial_population_size: int,
        mutation_rate: float,
        ranges: dict[str, ParameterRange] | None,
    ) -> OptimizationResult:
        if population_size < 1:
            raise ValueError("population size must be >= 1")
        t0 = time.monotonic()
        deadline = None if self.cfg.deadline_seconds is None else t0 + float(self.cfg.deadline_seconds)

        population = self.initialize_population(theory, initial_population_size, ranges)
        best_theory: Theory = population[0]
        best_result: BacktestResult | None = None
        best_fitness = float("-inf")
        initial_fitness: float | None = None
        history: list[GenerationResult] = []
        notes: list[str] = []

        for generation in range(generations):
            evaluated = await self.evaluate_population(population, start, end)
            scores = [f for _, f in evaluated]
            if initial_fitness is None:
                initial_fitness = scores[0]

            gen_best = int(np.argmax(scores))
            if scores[gen_best] > best_fitness:
                best_fitness = scores[gen_best]
                best_theory = population[gen_best]
                best_result = evaluated[gen_best][0]

            history.append(
                GenerationResult(
                    generation=generation,
                    best_fitness=best_fitness,
                    generation_best_fitness=scores[gen_best],
                    average_fitness=float(np.mean(scores)),
                    worst_fitness=float(np.min(scores)),
                )
            )

            if deadline is not None and time.monotonic() >= deadline:
                notes.append(f"deadline reached after generation {generation}")
                break
            if generation == generations - 1:
                break

            next_generation: list[Theory] = []
            while len(next_generation) < population_size:
                p1 = self.select_parent(population, scores)
                p2 = self.select_parent(population, scores)
                c1, c2 = self.crossover(p1, p2, generation + 1)
                next_generation.append(self.mutate(c1, mutation_rate, ranges))
                next_generation.append(self.mutate(c2, mutation_rate, ranges))
            population = next_generation[:population_size]

        if best_result is None:
            # No generation ran; score the starting theory alone.
            best_result, best_fitness = (await self.evaluate_population([best_theory], start, end))[0]
            initial_fitness = best_fitness

        initial = float(initial_fitness if initial_fitness is not None else best_fitness)
        return OptimizationResult(
            best_theory=best_theory,
            backtest_result=best_result,
            generation_results=history,
            optimization_seconds=time.monotonic() - t0,
            initial_fitness=initial,
            final_fitness=float(best_fitness),
            improvement_percentage=improvement_percentage(initial, float(best_fitness)),
            notes=notes,
        )

    async def optimize(self, base_theory: Theory, start: pd.Timestamp, end: pd.Timestamp) -> OptimizationResult:
        cfg = self.cfg
        result = await self._run(
            base_theory,
            start,
            end,
            generations=cfg.generations,
            population_size=cfg.population_size,
            initial_population_size=cfg.population_size,
            mutation_rate=cfg.mutation_rate,
            ranges=None,
        )
        log_event(
            "INFO",
            "optimizer",
            f"{base_theory.name}: {len(result.generation_results)} generations, "
            f"fitness {result.initial_fitness:.4f} -> {result.final_fitness:.4f} "
            f"in {result.optimization_seconds:.1f}s",
        )
        return result

    async def optimize_parameters(self, theory: Theory, settings: OptimizationSettings) -> OptimizationResult:
        """Same loop, but variants and mutations are re-drawn inside `settings.parameter_ranges`."""
        if settings.initial_population_size < 1:
            raise ValueError("initial population size must be >= 1")
        return await self._run(
            theory,
            settings.start_date,
            settings.end_date,
            generations=settings.generations,
            population_size=settings.population_size,
            initial_population_size=settings.initial_population_size,
            mutation_rate=settings.mutation_rate,
            ranges=dict(settings.parameter_ranges),
        )


def _root_name(theory: Theory) -> str:
    name = theory.name
    for marker in ("_g", "_variant_"):
        head, sep, tail = name.rpartition(marker)
        if sep and tail.isdigit():
            name = head
    return name
