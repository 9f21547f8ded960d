from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from strategy_search.config import ValidationConfig

from .types import BacktestResult


@dataclass(frozen=True)
class ValidationReport:
    is_valid: bool
    metrics: dict[str, float] = field(default_factory=dict)
    messages: dict[str, str] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {"is_valid": self.is_valid, "metrics": dict(self.metrics), "messages": dict(self.messages)}


def validate_backtest_result(result: BacktestResult, cfg: Optional[ValidationConfig] = None) -> ValidationReport:
    """Quality gates on a finished backtest. Failures are reported, never raised."""
    cfg = cfg or ValidationConfig()
    metrics: dict[str, float] = {}
    messages: dict[str, str] = {}

    trades_ok = result.total_trades >= cfg.min_trades
    metrics["TotalTradesValid"] = 1.0 if trades_ok else 0.0
    if not trades_ok:
        messages["TotalTrades"] = f"Insufficient trades: {result.total_trades} (minimum {cfg.min_trades})"

    win_ok = result.win_rate >= cfg.min_win_rate
    metrics["WinRateValid"] = 1.0 if win_ok else 0.0
    if not win_ok:
        messages["WinRate"] = f"Low win rate: {result.win_rate:.2%} (minimum {cfg.min_win_rate:.2%})"

    sharpe_ok = result.sharpe_ratio >= cfg.min_sharpe
    metrics["SharpeRatioValid"] = 1.0 if sharpe_ok else 0.0
    if not sharpe_ok:
        messages["SharpeRatio"] = f"Low Sharpe ratio: {result.sharpe_ratio:.2f} (minimum {cfg.min_sharpe:.2f})"

    dd_ok = result.max_drawdown <= cfg.max_drawdown
    metrics["MaxDrawdownValid"] = 1.0 if dd_ok else 0.0
    if not dd_ok:
        messages["MaxDrawdown"] = f"High drawdown: {result.max_drawdown:.2%} (maximum {cfg.max_drawdown:.2%})"

    is_valid = not messages
    metrics["ValidationStatus"] = 1.0 if is_valid else 0.0
    return ValidationReport(is_valid=is_valid, metrics=metrics, messages=messages)


def annotate_result(result: BacktestResult, report: ValidationReport) -> BacktestResult:
    result.validation = report.as_dict()
    return result
