from __future__ import annotations

import numpy as np
import pandas as pd

from .types import BacktestResult, Trade

SECONDS_PER_DAY = 86_400.0


def _safe_div(a: float, b: float) -> float:
    if b == 0:
        return 0.0
    return float(a / b)


def _pnl(trade: Trade) -> float:
    return float(trade.realized_pnl or 0.0)


def _max_drawdown(pnl: np.ndarray, base_equity: float) -> float:
    if pnl.size == 0:
        return 0.0
    equity = base_equity + np.cumsum(pnl)
    peak = np.maximum.accumulate(np.concatenate(([base_equity], equity)))[1:]
    dd = np.where(peak > 0, (peak - equity) / np.where(peak > 0, peak, 1.0), 0.0)
    return float(max(dd.max(), 0.0))


def _streaks(pnl: np.ndarray) -> tuple[int, int]:
    best_win = best_loss = cur_win = cur_loss = 0
    for value in pnl:
        if value > 0:
            cur_win += 1
            cur_loss = 0
        else:
            cur_loss += 1
            cur_win = 0
        best_win = max(best_win, cur_win)
        best_loss = max(best_loss, cur_loss)
    return best_win, best_loss


def _average_holding_days(trades: list[Trade]) -> float:
    spans = [
        (pd.Timestamp(t.close_time) - pd.Timestamp(t.open_time)).total_seconds() / SECONDS_PER_DAY
        for t in trades
        if t.close_time is not None
    ]
    return float(np.mean(spans)) if spans else 0.0


def sharpe_ratio(returns: np.ndarray, risk_free_rate: float) -> float:
    if returns.size == 0:
        return 0.0
    sd = float(returns.std(ddof=0))
    if sd <= 0:
        return 0.0
    return (float(returns.mean()) - risk_free_rate) / sd


def sortino_ratio(returns: np.ndarray, risk_free_rate: float) -> float:
    if returns.size == 0:
        return 0.0
    mu = float(returns.mean())
    downside = returns[returns < 0]
    if downside.size == 0:
        return 0.0
    dd = float(np.sqrt(np.mean((downside - mu) ** 2)))
    if dd <= 0:
        return 0.0
    return (mu - risk_free_rate) / dd


def calculate_metrics(
    result: BacktestResult,
    final_equity: float,
    base_equity: float = 10_000.0,
    risk_free_rate: float = 0.02,
) -> BacktestResult:
    """
    Fill the statistics of `result` from its trade list and return it.

    Per-trade returns are `pnl / base_equity`. Drawdown walks the equity
    curve that starts at `base_equity`, trades taken in open-time order.
    """
    result.final_equity = float(final_equity)
    trades = sorted(result.trades, key=lambda t: pd.Timestamp(t.open_time))
    pnl = np.array([_pnl(t) for t in trades], dtype=float)

    n = int(pnl.size)
    wins = pnl[pnl > 0]
    losses = pnl[pnl <= 0]
    gross_profit = float(wins.sum())
    gross_loss = abs(float(losses.sum()))

    result.total_trades = n
    result.winning_trades = int(wins.size)
    result.losing_trades = int(losses.size)
    result.win_rate = _safe_div(wins.size, n)
    result.profit_factor = _safe_div(gross_profit, gross_loss)
    result.average_win = float(wins.mean()) if wins.size else 0.0
    result.average_loss = abs(float(losses.mean())) if losses.size else 0.0
    result.largest_win = float(wins.max()) if wins.size else 0.0
    result.largest_loss = abs(float(losses.min())) if losses.size else 0.0
    result.max_consecutive_wins, result.max_consecutive_losses = _streaks(pnl)
    result.average_holding_period = _average_holding_days(trades)

    result.max_drawdown = _max_drawdown(pnl, float(base_equity))
    returns = pnl / float(base_equity) if base_equity else np.zeros_like(pnl)
    result.sharpe_ratio = sharpe_ratio(returns, risk_free_rate)
    result.sortino_ratio = sortino_ratio(returns, risk_free_rate)
    return result
