from __future__ import annotations

import math
import threading
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Iterable, Optional

import numpy as np

from shared.logger import log_event
from strategy_search.config import RiskConfig
from strategy_search.engine.types import Trade, TradeDirection

# Keys accepted by update_risk_parameters, mapped to RiskConfig fields.
UPDATABLE_PARAMETERS = {
    "MaxRiskPerTrade": "max_risk_per_trade",
    "MaxPortfolioRisk": "max_portfolio_risk",
    "MaxDrawdown": "max_drawdown",
    "MinPositionSize": "min_position_size",
    "MaxPositionSize": "max_position_size",
    "MaxLeverage": "max_leverage",
}

_FRACTION_KEYS = {"MaxRiskPerTrade", "MaxPortfolioRisk", "MaxDrawdown"}


@dataclass
class RiskMetrics:
    symbol: str
    trades: int = 0
    win_rate: float = 0.0
    profit_factor: float = 0.0
    average_win: float = 0.0
    average_loss: float = 0.0
    expected_value: float = 0.0
    max_consecutive_losses: int = 0
    max_drawdown: float = 0.0
    position_sizes: dict[str, float] = field(default_factory=dict)


class RiskManager:
    """
    Sizing, stop and target rules for simulated entries.

    Safe to call from worker threads: configuration changes are guarded by
    one lock and each symbol's metrics by its own lock.
    """

    def __init__(self, cfg: Optional[RiskConfig] = None) -> None:
        self._cfg = cfg or RiskConfig()
        self._cfg_lock = threading.Lock()
        self._metrics: dict[str, RiskMetrics] = {}
        self._symbol_locks: dict[str, threading.Lock] = {}
        self._symbol_locks_guard = threading.Lock()

    @property
    def config(self) -> RiskConfig:
        with self._cfg_lock:
            return self._cfg

    def _symbol_lock(self, symbol: str) -> threading.Lock:
        with self._symbol_locks_guard:
            lock = self._symbol_locks.get(symbol)
            if lock is None:
                lock = threading.Lock()
                self._symbol_locks[symbol] = lock
            return lock

    def _max_position(self, cfg: RiskConfig, symbol: str) -> float:
        return float(cfg.symbol_max_position_size.get(symbol, cfg.max_position_size))

    def calculate_position_size(
        self,
        symbol: str,
        price: float,
        risk_per_trade: Optional[float] = None,
        equity: Optional[float] = None,
        stop_multiplier: float = 1.0,
    ) -> float:
        """
        Units to buy so that a stop-out loses `risk_per_trade` of equity.

        The result is capped by the per-symbol maximum and by leverage;
        anything below the minimum size returns 0 (no trade).
        """
        cfg = self.config
        if price <= 0 or not math.isfinite(price):
            return 0.0
        eq = cfg.initial_account_equity if equity is None else float(equity)
        if eq <= 0:
            return 0.0
        risk = cfg.max_risk_per_trade if risk_per_trade is None else min(float(risk_per_trade), cfg.max_risk_per_trade)
        stop_distance = price * cfg.default_stop_loss_pct * max(float(stop_multiplier), 0.0)
        if risk <= 0 or stop_distance <= 0:
            return 0.0

        qty = eq * risk / stop_distance
        qty = min(qty, self._max_position(cfg, symbol))
        if cfg.max_leverage > 0:
            qty = min(qty, eq * cfg.max_leverage / price)
        if qty < cfg.min_position_size:
            return 0.0
        return float(qty)

    def calculate_stop_loss(
        self,
        symbol: str,
        entry_price: float,
        reference_price: float,
        direction: TradeDirection = TradeDirection.LONG,
        multiplier: float = 1.0,
    ) -> float:
        cfg = self.config
        distance = reference_price * cfg.default_stop_loss_pct * float(multiplier)
        return float(entry_price - int(direction) * distance)

    def calculate_take_profit(
        self,
        symbol: str,
        entry_price: float,
        reference_price: float,
        direction: TradeDirection = TradeDirection.LONG,
        multiplier: float = 1.0,
    ) -> float:
        cfg = self.config
        distance = reference_price * cfg.default_take_profit_pct * float(multiplier)
        return float(entry_price + int(direction) * distance)

    def get_risk_limits(self) -> dict[str, float]:
        cfg = self.config
        return {key: float(getattr(cfg, attr)) for key, attr in UPDATABLE_PARAMETERS.items()}

    def update_risk_parameters(self, parameters: dict[str, Any]) -> None:
        """Apply limit changes atomically; an invalid mapping changes nothing."""
        errors: list[str] = []
        changes: dict[str, float] = {}
        for key, raw in parameters.items():
            attr = UPDATABLE_PARAMETERS.get(key)
            if attr is None:
                errors.append(f"unknown parameter {key}")
                continue
            try:
                value = float(raw)
            except (TypeError, ValueError):
                errors.append(f"{key} is not numeric")
                continue
            if not math.isfinite(value) or value <= 0:
                errors.append(f"{key} must be > 0")
            elif key in _FRACTION_KEYS and value > 1:
                errors.append(f"{key} must be <= 1")
            else:
                changes[attr] = value

        with self._cfg_lock:
            if not errors:
                candidate = replace(self._cfg, **changes)
                if candidate.min_position_size > candidate.max_position_size:
                    errors.append("MinPositionSize must be <= MaxPositionSize")
            if errors:
                raise ValueError(f"Invalid risk parameters: {', '.join(errors)}")
            self._cfg = candidate

        log_event(
            "INFO",
            "risk",
            "Updated risk parameters: " + ", ".join(f"{k}={v}" for k, v in parameters.items()),
        )

    def update_risk_metrics(self, symbol: str, trades: Iterable[Trade]) -> RiskMetrics:
        closed = [t for t in trades if t.realized_pnl is not None]
        closed.sort(key=lambda t: t.open_time)
        pnl = np.array([float(t.realized_pnl) for t in closed], dtype=float)
        wins = pnl[pnl > 0]
        losses = pnl[pnl <= 0]

        longest = current = 0
        for value in pnl:
            current = current + 1 if value <= 0 else 0
            longest = max(longest, current)

        base = self.config.initial_account_equity
        max_dd = 0.0
        if pnl.size and base > 0:
            equity = base + np.cumsum(pnl)
            peak = np.maximum.accumulate(np.concatenate(([base], equity)))[1:]
            max_dd = float(max(((peak - equity) / peak).max(), 0.0))

        gross_loss = abs(float(losses.sum()))
        metrics = RiskMetrics(
            symbol=symbol,
            trades=int(pnl.size),
            win_rate=float(wins.size / pnl.size) if pnl.size else 0.0,
            profit_factor=float(wins.sum() / gross_loss) if gross_loss > 0 else 0.0,
            average_win=float(wins.mean()) if wins.size else 0.0,
            average_loss=abs(float(losses.mean())) if losses.size else 0.0,
            expected_value=float(pnl.mean()) if pnl.size else 0.0,
            max_consecutive_losses=longest,
            max_drawdown=max_dd,
            position_sizes={t.id: float(t.quantity) for t in closed},
        )
        with self._symbol_lock(symbol):
            self._metrics[symbol] = metrics
        return metrics

    def get_risk_metrics(self, symbol: str) -> Optional[RiskMetrics]:
        with self._symbol_lock(symbol):
            return self._metrics.get(symbol)

    def snapshot(self) -> dict[str, Any]:
        cfg = self.config
        out = asdict(cfg)
        out["metrics"] = {}
        with self._symbol_locks_guard:
            symbols = sorted(self._symbol_locks)
        for symbol in symbols:
            m = self.get_risk_metrics(symbol)
            if m is not None:
                out["metrics"][symbol] = asdict(m)
        return out
