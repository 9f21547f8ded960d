from __future__ import annotations

import argparse
import asyncio
import datetime as dt
import json
from dataclasses import asdict, replace
from pathlib import Path
from typing import Any

import pandas as pd

from shared.config import load_settings
from shared.db import init_schema
from shared.logger import log_event
from strategy_search.config import SearchConfig, load_search_config
from strategy_search.engine.types import BacktestResult, OptimizationResult
from strategy_search.optimizer.genetic import StrategyOptimizer
from strategy_search.reports.search_report import write_search_report
from strategy_search.services.backtester import Backtester
from strategy_search.services.market_data import (
    FrameMarketDataProvider,
    MarketDataProvider,
    SimulatedMarketDataProvider,
)
from strategy_search.services.risk import RiskManager
from strategy_search.services.search import StrategySearchService
from strategy_search.services.store import ResultStore
from strategy_search.strategies.base import Strategy
from strategy_search.strategies.evaluator import TheoryStrategy
from strategy_search.strategies.generator import TheoryGenerator
from strategy_search.strategies.sma_cross import SMACrossStrategy
from strategy_search.strategies.theory import Theory, theory_id


def _run_id() -> str:
    return dt.datetime.now(dt.timezone.utc).strftime("%Y%m%d-%H%M%S")


def _parse_ts(value: str) -> pd.Timestamp:
    ts = pd.Timestamp(value)
    return ts.tz_localize("UTC") if ts.tzinfo is None else ts.tz_convert("UTC")


def _parse_params(items: list[str]) -> dict[str, float]:
    out: dict[str, float] = {}
    for item in items:
        key, sep, value = item.partition("=")
        if not sep:
            raise ValueError(f"Parameter must look like KEY=VALUE: {item}")
        out[key.strip()] = float(value)
    return out


def _load_cfg(path: str | None) -> SearchConfig:
    settings = load_settings()
    cfg_path = Path(path) if path else settings.search_config_path
    cfg = load_search_config(cfg_path if cfg_path.exists() else None)
    if settings.max_parallel_backtests > 0:
        cfg = replace(cfg, max_parallel_backtests=settings.max_parallel_backtests)
    return cfg


def _provider(cfg: SearchConfig, data_dir: str | None) -> MarketDataProvider:
    if data_dir:
        return FrameMarketDataProvider.from_directory(data_dir)
    return SimulatedMarketDataProvider(symbols=cfg.symbols, seed=cfg.seed or 0)


def _trade_rows(label: str, result: BacktestResult) -> list[dict[str, Any]]:
    rows = []
    for t in result.trades:
        row = t.as_dict()
        row["label"] = label
        rows.append(row)
    return rows


def _write_run_artifacts(run_dir: Path, results: list[OptimizationResult], cfg_path: Path | None) -> None:
    run_dir.mkdir(parents=True, exist_ok=True)
    if cfg_path is not None and cfg_path.exists():
        (run_dir / "config_snapshot.yml").write_text(cfg_path.read_text(encoding="utf-8"), encoding="utf-8")

    payload = []
    trade_rows: list[dict[str, Any]] = []
    for opt in results:
        theory: Theory = opt.best_theory
        payload.append(
            {
                "theory_id": theory_id(theory),
                "theory": theory.to_dict(),
                "base_theory": opt.base_theory.to_dict() if opt.base_theory is not None else None,
                "initial_backtest": opt.initial_backtest.as_dict() if opt.initial_backtest is not None else None,
                "backtest": opt.backtest_result.as_dict() if opt.backtest_result is not None else None,
                "initial_fitness": opt.initial_fitness,
                "final_fitness": opt.final_fitness,
                "improvement_percentage": opt.improvement_percentage,
                "optimization_seconds": opt.optimization_seconds,
                "generations": [asdict(g) for g in opt.generation_results],
                "notes": list(opt.notes),
            }
        )
        if opt.backtest_result is not None:
            trade_rows.extend(_trade_rows(theory.name, opt.backtest_result))
    (run_dir / "results.json").write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")
    if trade_rows:
        pd.DataFrame(trade_rows).to_parquet(run_dir / "trades.parquet", index=False)


def _build_strategy(args: argparse.Namespace) -> Strategy:
    if args.theory_json:
        raw = json.loads(Path(args.theory_json).read_text(encoding="utf-8"))
        return TheoryStrategy(Theory.from_dict(raw))
    return SMACrossStrategy()


def _cmd_search(args: argparse.Namespace) -> None:
    settings = load_settings()
    cfg = _load_cfg(args.config)
    seed = cfg.seed if args.seed is None else int(args.seed)

    risk = RiskManager(cfg.risk)
    backtester = Backtester(_provider(cfg, args.data_dir), risk, cfg)
    generator = TheoryGenerator(seed=seed)
    optimizer = StrategyOptimizer(backtester, cfg.genetic, seed=seed, base_equity=cfg.initial_equity)
    store = ResultStore(settings.db_path) if args.persist else None
    service = StrategySearchService(backtester, generator, optimizer, risk, cfg, store)

    start, end = _parse_ts(args.start), _parse_ts(args.end)
    results = asyncio.run(service.search_strategies(start, end, int(args.theories)))

    run_id = _run_id()
    run_dir = settings.runs_dir / run_id
    cfg_path = Path(args.config) if args.config else settings.search_config_path
    _write_run_artifacts(run_dir, results, cfg_path)
    report = write_search_report(
        run_dir,
        {
            "run_id": run_id,
            "symbols": ", ".join(cfg.symbols),
            "start": start,
            "end": end,
            "theories": args.theories,
            "seed": seed,
            "population_size": cfg.genetic.population_size,
            "generations": cfg.genetic.generations,
        },
        results,
        base_equity=cfg.initial_equity,
    )
    print(f"run_dir={run_dir}")
    print(f"report={report}")


def _cmd_backtest(args: argparse.Namespace) -> None:
    cfg = _load_cfg(args.config)
    backtester = Backtester(_provider(cfg, args.data_dir), RiskManager(cfg.risk), cfg)
    strategy = _build_strategy(args)
    result = asyncio.run(
        backtester.run_backtest_async(
            strategy, args.symbol, _parse_ts(args.start), _parse_ts(args.end), _parse_params(args.param)
        )
    )
    backtester.validate_strategy(result)
    print(result.summary())
    for msg in result.validation.get("messages", {}).values():
        print(f"  gate: {msg}")


def _cmd_grid(args: argparse.Namespace) -> None:
    cfg = _load_cfg(args.config)
    if not cfg.grid:
        raise ValueError("search config has no grid section")
    backtester = Backtester(_provider(cfg, args.data_dir), RiskManager(cfg.risk), cfg)
    strategy = _build_strategy(args)
    params, result = asyncio.run(
        backtester.optimize_parameters_async(
            strategy, args.symbol, _parse_ts(args.start), _parse_ts(args.end), cfg.grid
        )
    )
    print(f"best parameters: {params}")
    print(result.summary())


def _cmd_report(args: argparse.Namespace) -> None:
    settings = load_settings()
    report_path = settings.runs_dir / str(args.run_id) / "report.md"
    if not report_path.exists():
        raise FileNotFoundError(f"Report not found: {report_path}")
    print(report_path)


def main() -> None:
    parser = argparse.ArgumentParser(description="Strategy search and backtesting CLI")
    sub = parser.add_subparsers(dest="cmd", required=True)

    def _common(p: argparse.ArgumentParser) -> None:
        p.add_argument("--config", default=None, help="search config YAML (default: STRATSEARCH_CONFIG)")
        p.add_argument("--data-dir", default=None, help="directory of <SYMBOL>.csv/.parquet bars")
        p.add_argument("--start", required=True)
        p.add_argument("--end", required=True)

    p_search = sub.add_parser("search", help="Generate, screen and optimize theories")
    _common(p_search)
    p_search.add_argument("--theories", type=int, default=10)
    p_search.add_argument("--seed", type=int, default=None)
    p_search.add_argument("--persist", action="store_true", help="write results to the sqlite store")

    p_bt = sub.add_parser("backtest", help="Backtest one strategy on one symbol")
    _common(p_bt)
    p_bt.add_argument("--symbol", required=True)
    p_bt.add_argument("--theory-json", default=None, help="theory file; default is the SMA cross strategy")
    p_bt.add_argument("--param", action="append", default=[], help="KEY=VALUE, repeatable")

    p_grid = sub.add_parser("grid", help="Grid sweep over the config's grid section")
    _common(p_grid)
    p_grid.add_argument("--symbol", required=True)
    p_grid.add_argument("--theory-json", default=None)

    sub.add_parser("init_db", help="Create the sqlite schema")

    p_report = sub.add_parser("report", help="Show report path for run id")
    p_report.add_argument("--run_id", required=True)

    args = parser.parse_args()

    if args.cmd == "init_db":
        settings = load_settings()
        path = init_schema(settings.db_path)
        log_event("INFO", "cli", f"Schema ready at {path}")
        return
    if args.cmd == "search":
        _cmd_search(args)
        return
    if args.cmd == "backtest":
        _cmd_backtest(args)
        return
    if args.cmd == "grid":
        _cmd_grid(args)
        return
    if args.cmd == "report":
        _cmd_report(args)
        return


if __name__ == "__main__":
    main()
