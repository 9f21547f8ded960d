from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import pandas as pd

CANDLE_COLUMNS = ["ts_utc", "open", "high", "low", "close", "volume"]


class TradeStatus(str, Enum):
    OPEN = "Open"
    CLOSED = "Closed"
    CANCELLED = "Cancelled"
    PENDING = "Pending"
    PARTIALLY_FILLED = "PartiallyFilled"
    ERROR = "Error"


class TradeDirection(int, Enum):
    LONG = 1
    SHORT = -1


@dataclass
class Trade:
    symbol: str
    entry_price: float
    quantity: float
    open_time: pd.Timestamp
    direction: TradeDirection = TradeDirection.LONG
    status: TradeStatus = TradeStatus.OPEN
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    exit_price: Optional[float] = None
    close_time: Optional[pd.Timestamp] = None
    realized_pnl: Optional[float] = None
    exit_reason: str = ""
    strategy_name: str = ""
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def side(self) -> int:
        return int(self.direction)

    @property
    def value(self) -> float:
        return self.entry_price * self.quantity

    def close(self, price: float, ts_utc: pd.Timestamp, reason: str) -> None:
        self.status = TradeStatus.CLOSED
        self.exit_price = float(price)
        self.close_time = ts_utc
        self.exit_reason = reason
        self.realized_pnl = (self.exit_price - self.entry_price) * self.quantity * self.side

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "direction": self.direction.name,
            "status": self.status.value,
            "entry_price": self.entry_price,
            "exit_price": self.exit_price,
            "quantity": self.quantity,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "open_time": self.open_time,
            "close_time": self.close_time,
            "realized_pnl": self.realized_pnl,
            "exit_reason": self.exit_reason,
            "strategy_name": self.strategy_name,
        }


@dataclass
class BacktestResult:
    start_date: pd.Timestamp
    end_date: pd.Timestamp
    trades: list[Trade] = field(default_factory=list)
    strategy_name: str = ""
    parameters: dict[str, float] = field(default_factory=dict)
    final_equity: float = 0.0

    # Trade stats
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    profit_factor: float = 0.0
    average_win: float = 0.0
    average_loss: float = 0.0
    largest_win: float = 0.0
    largest_loss: float = 0.0
    max_consecutive_wins: int = 0
    max_consecutive_losses: int = 0
    average_holding_period: float = 0.0

    # Risk-adjusted
    max_drawdown: float = 0.0
    sharpe_ratio: float = 0.0
    sortino_ratio: float = 0.0

    symbol_performance: dict[str, float] = field(default_factory=dict)
    symbol_errors: dict[str, str] = field(default_factory=dict)
    skipped_entries: int = 0

    # Reserved for validator annotations.
    validation: dict[str, Any] = field(default_factory=dict)

    def metrics(self) -> dict[str, Any]:
        return {
            "final_equity": self.final_equity,
            "total_trades": self.total_trades,
            "winning_trades": self.winning_trades,
            "losing_trades": self.losing_trades,
            "win_rate": self.win_rate,
            "profit_factor": self.profit_factor,
            "max_drawdown": self.max_drawdown,
            "sharpe_ratio": self.sharpe_ratio,
            "sortino_ratio": self.sortino_ratio,
            "average_win": self.average_win,
            "average_loss": self.average_loss,
            "largest_win": self.largest_win,
            "largest_loss": self.largest_loss,
            "max_consecutive_wins": self.max_consecutive_wins,
            "max_consecutive_losses": self.max_consecutive_losses,
            "average_holding_period": self.average_holding_period,
            "skipped_entries": self.skipped_entries,
        }

    def as_dict(self) -> dict[str, Any]:
        out = {
            "start_date": str(self.start_date),
            "end_date": str(self.end_date),
            "strategy_name": self.strategy_name,
            "parameters": dict(self.parameters),
            "symbol_performance": dict(self.symbol_performance),
            "symbol_errors": dict(self.symbol_errors),
            "validation": dict(self.validation),
        }
        out.update(self.metrics())
        return out

    def summary(self) -> str:
        lines = [
            "=== Backtest Results ===",
            f"  Strategy:       {self.strategy_name}",
            f"  Window:         {self.start_date} -> {self.end_date}",
            f"  Final Equity:   ${self.final_equity:,.2f}",
            f"  Sharpe:         {self.sharpe_ratio:.2f}",
            f"  Sortino:        {self.sortino_ratio:.2f}",
            f"  Max Drawdown:   {self.max_drawdown:.2%}",
            "",
            f"  Trades:         {self.total_trades}",
            f"  Win Rate:       {self.win_rate:.1%}",
            f"  Profit Factor:  {self.profit_factor:.2f}",
            f"  Avg Win:        ${self.average_win:.2f}",
            f"  Avg Loss:       ${self.average_loss:.2f}",
            f"  Largest Win:    ${self.largest_win:.2f}",
            f"  Largest Loss:   ${self.largest_loss:.2f}",
            f"  Streaks W/L:    {self.max_consecutive_wins}/{self.max_consecutive_losses}",
            f"  Avg Holding:    {self.average_holding_period:.1f} days",
        ]
        for symbol, pnl in sorted(self.symbol_performance.items()):
            lines.append(f"    {symbol:<12} ${pnl:,.2f}")
        return "\n".join(lines)


@dataclass(frozen=True)
class GenerationResult:
    generation: int
    best_fitness: float  # best seen so far across the run
    generation_best_fitness: float
    average_fitness: float
    worst_fitness: float


@dataclass(frozen=True)
class ParameterRange:
    min: float
    max: float
    variation: float = 0.2


@dataclass
class OptimizationSettings:
    start_date: pd.Timestamp
    end_date: pd.Timestamp
    generations: int = 100
    population_size: int = 50
    initial_population_size: int = 50
    mutation_rate: float = 0.1
    parameter_ranges: dict[str, ParameterRange] = field(default_factory=dict)


@dataclass
class OptimizationResult:
    best_theory: Any
    backtest_result: Optional[BacktestResult]
    generation_results: list[GenerationResult] = field(default_factory=list)
    optimization_seconds: float = 0.0
    initial_fitness: float = 0.0
    final_fitness: float = 0.0
    improvement_percentage: float = 0.0
    base_theory: Any = None
    initial_backtest: Optional[BacktestResult] = None
    notes: list[str] = field(default_factory=list)
