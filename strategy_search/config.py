from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

DEFAULT_SYMBOLS = ("BTCUSD", "ETHUSD", "LTCUSD")


@dataclass(frozen=True)
class GeneticConfig:
    population_size: int = 50
    generations: int = 100
    mutation_rate: float = 0.1
    tournament_size: int = 3
    init_variation: float = 0.2
    mutation_variation: float = 0.1
    deadline_seconds: Optional[float] = None


@dataclass(frozen=True)
class ValidationConfig:
    min_trades: int = 30
    min_win_rate: float = 0.4
    min_sharpe: float = 1.0
    max_drawdown: float = 0.2


@dataclass(frozen=True)
class PromisingConfig:
    min_sharpe: float = 0.5
    max_drawdown: float = 0.2
    min_profit_factor: float = 1.2
    min_win_rate: float = 0.4


@dataclass(frozen=True)
class RiskConfig:
    max_risk_per_trade: float = 0.02
    max_portfolio_risk: float = 0.06
    max_drawdown: float = 0.20
    min_position_size: float = 0.001
    max_position_size: float = 10.0
    default_stop_loss_pct: float = 0.02
    default_take_profit_pct: float = 0.04
    min_risk_reward_ratio: float = 1.5
    max_leverage: float = 3.0
    initial_account_equity: float = 10_000.0
    symbol_max_position_size: dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class MetricsConfig:
    risk_free_rate: float = 0.02


@dataclass(frozen=True)
class SearchConfig:
    symbols: tuple[str, ...] = DEFAULT_SYMBOLS
    timeframe: str = "1d"
    initial_equity: float = 10_000.0
    warmup_bars: int = 50
    max_parallel_backtests: int = 4
    seed: Optional[int] = 42
    genetic: GeneticConfig = field(default_factory=GeneticConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    promising: PromisingConfig = field(default_factory=PromisingConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    grid: dict[str, tuple[float, float, float]] = field(default_factory=dict)


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return int(default)


def _as_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return float(default)


def _section(root: dict[str, Any], key: str) -> dict[str, Any]:
    value = root.get(key, {})
    return value if isinstance(value, dict) else {}


def _grid_from_cfg(raw: dict[str, Any]) -> dict[str, tuple[float, float, float]]:
    out: dict[str, tuple[float, float, float]] = {}
    for name, spec in raw.items():
        if isinstance(spec, dict):
            lo, hi, step = spec.get("min"), spec.get("max"), spec.get("step")
        elif isinstance(spec, (list, tuple)) and len(spec) == 3:
            lo, hi, step = spec
        else:
            raise ValueError(f"grid.{name} must be a mapping with min/max/step or a 3-item list")
        out[str(name)] = (float(lo), float(hi), float(step))
    return out


def search_config_from_dict(root: dict[str, Any]) -> SearchConfig:
    if not isinstance(root, dict):
        raise ValueError("search config root must be a mapping")
    base = SearchConfig()

    symbols_raw = root.get("symbols", list(base.symbols))
    symbols = tuple(str(s).strip() for s in symbols_raw if str(s).strip())
    if not symbols:
        raise ValueError("search config needs at least one symbol")

    seed_raw = root.get("seed", base.seed)
    seed = None if seed_raw is None else _as_int(seed_raw, 42)

    g = _section(root, "genetic")
    deadline_raw = g.get("deadline_seconds")
    genetic = GeneticConfig(
        population_size=_as_int(g.get("population_size", 50), 50),
        generations=max(_as_int(g.get("generations", 100), 100), 0),
        mutation_rate=min(max(_as_float(g.get("mutation_rate", 0.1), 0.1), 0.0), 1.0),
        tournament_size=max(_as_int(g.get("tournament_size", 3), 3), 1),
        init_variation=max(_as_float(g.get("init_variation", 0.2), 0.2), 0.0),
        mutation_variation=max(_as_float(g.get("mutation_variation", 0.1), 0.1), 0.0),
        deadline_seconds=None if deadline_raw is None else _as_float(deadline_raw, 0.0),
    )

    v = _section(root, "validation")
    validation = ValidationConfig(
        min_trades=_as_int(v.get("min_trades", 30), 30),
        min_win_rate=_as_float(v.get("min_win_rate", 0.4), 0.4),
        min_sharpe=_as_float(v.get("min_sharpe", 1.0), 1.0),
        max_drawdown=_as_float(v.get("max_drawdown", 0.2), 0.2),
    )

    p = _section(root, "promising")
    promising = PromisingConfig(
        min_sharpe=_as_float(p.get("min_sharpe", 0.5), 0.5),
        max_drawdown=_as_float(p.get("max_drawdown", 0.2), 0.2),
        min_profit_factor=_as_float(p.get("min_profit_factor", 1.2), 1.2),
        min_win_rate=_as_float(p.get("min_win_rate", 0.4), 0.4),
    )

    r = _section(root, "risk")
    symbol_limits = r.get("symbol_max_position_size", {})
    risk = RiskConfig(
        max_risk_per_trade=_as_float(r.get("max_risk_per_trade", 0.02), 0.02),
        max_portfolio_risk=_as_float(r.get("max_portfolio_risk", 0.06), 0.06),
        max_drawdown=_as_float(r.get("max_drawdown", 0.20), 0.20),
        min_position_size=_as_float(r.get("min_position_size", 0.001), 0.001),
        max_position_size=_as_float(r.get("max_position_size", 10.0), 10.0),
        default_stop_loss_pct=_as_float(r.get("default_stop_loss_pct", 0.02), 0.02),
        default_take_profit_pct=_as_float(r.get("default_take_profit_pct", 0.04), 0.04),
        min_risk_reward_ratio=_as_float(r.get("min_risk_reward_ratio", 1.5), 1.5),
        max_leverage=_as_float(r.get("max_leverage", 3.0), 3.0),
        initial_account_equity=_as_float(r.get("initial_account_equity", 10_000.0), 10_000.0),
        symbol_max_position_size={
            str(k): float(val) for k, val in (symbol_limits.items() if isinstance(symbol_limits, dict) else [])
        },
    )

    m = _section(root, "metrics")
    metrics = MetricsConfig(
        risk_free_rate=_as_float(m.get("risk_free_rate", 0.02), 0.02),
    )

    return SearchConfig(
        symbols=symbols,
        timeframe=str(root.get("timeframe", base.timeframe)),
        initial_equity=_as_float(root.get("initial_equity", base.initial_equity), base.initial_equity),
        warmup_bars=max(_as_int(root.get("warmup_bars", base.warmup_bars), base.warmup_bars), 1),
        max_parallel_backtests=max(_as_int(root.get("max_parallel_backtests", 4), 4), 1),
        seed=seed,
        genetic=genetic,
        validation=validation,
        promising=promising,
        risk=risk,
        metrics=metrics,
        grid=_grid_from_cfg(_section(root, "grid")),
    )


def load_search_config(path: str | Path | None = None) -> SearchConfig:
    if path is None:
        return SearchConfig()
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    if data is None:
        return SearchConfig()
    if not isinstance(data, dict):
        raise ValueError(f"YAML root must be mapping: {path}")
    return search_config_from_dict(data)
