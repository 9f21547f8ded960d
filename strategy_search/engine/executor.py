from __future__ import annotations

from typing import Any, Optional, Protocol

import pandas as pd

from strategy_search.strategies.base import IndicatorCache, Strategy, StrategyContext

from .types import BacktestResult, Trade, TradeDirection

DEFAULT_WARMUP_BARS = 50


class RiskSizer(Protocol):
    def calculate_position_size(
        self,
        symbol: str,
        price: float,
        risk_per_trade: Optional[float] = None,
        equity: Optional[float] = None,
        stop_multiplier: float = 1.0,
    ) -> float: ...

    def calculate_stop_loss(
        self,
        symbol: str,
        entry_price: float,
        reference_price: float,
        direction: TradeDirection = TradeDirection.LONG,
        multiplier: float = 1.0,
    ) -> float: ...

    def calculate_take_profit(
        self,
        symbol: str,
        entry_price: float,
        reference_price: float,
        direction: TradeDirection = TradeDirection.LONG,
        multiplier: float = 1.0,
    ) -> float: ...


def _stop_hit(trade: Trade, close: float) -> bool:
    if trade.stop_loss is None:
        return False
    if trade.direction == TradeDirection.SHORT:
        return close >= trade.stop_loss
    return close <= trade.stop_loss


def _target_hit(trade: Trade, close: float) -> bool:
    if trade.take_profit is None:
        return False
    if trade.direction == TradeDirection.SHORT:
        return close <= trade.take_profit
    return close >= trade.take_profit


class TradeExecutor:
    """
    Bar-by-bar simulation of one strategy on one symbol.

    The state machine is Flat -> InPosition -> Flat. Entries fill at the
    close of the signal bar; exits fire on the strategy's exit signal, on a
    stop or on a target, all judged on the bar close. Equity is cash
    accounting, so a round trip moves equity by exactly its realized P&L.
    """

    def __init__(self, risk_manager: RiskSizer, warmup_bars: int = DEFAULT_WARMUP_BARS) -> None:
        if warmup_bars < 1:
            raise ValueError("warmup_bars must be >= 1")
        self.risk_manager = risk_manager
        self.warmup_bars = int(warmup_bars)

    def execute_trades(
        self,
        result: BacktestResult,
        symbol: str,
        bars: pd.DataFrame,
        strategy: Strategy,
        initial_equity: float,
        risk_overrides: dict[str, Any] | None = None,
    ) -> float:
        equity = float(initial_equity)
        if len(bars) < self.warmup_bars:
            return equity
        if not bars["ts_utc"].is_monotonic_increasing:
            raise ValueError(f"{symbol}: bars must be sorted ascending by ts_utc")

        frame = bars.reset_index(drop=True)
        overrides = dict(risk_overrides or {})
        risk_per_trade = overrides.get("RiskPerTrade")
        stop_mult = float(overrides.get("StopLossMultiplier", 1.0))
        target_mult = float(overrides.get("TakeProfitMultiplier", 1.0))

        closes = frame["close"].to_numpy(dtype=float)
        stamps = pd.to_datetime(frame["ts_utc"], utc=True)
        cache = IndicatorCache(frame)
        direction = TradeDirection(strategy.direction)

        open_trade: Trade | None = None
        for i in range(self.warmup_bars, len(frame)):
            close = float(closes[i])
            ts = stamps.iloc[i]
            ctx = StrategyContext(frame, i, cache)

            if open_trade is None:
                if not strategy.should_enter(ctx):
                    continue
                qty = self.risk_manager.calculate_position_size(
                    symbol,
                    close,
                    risk_per_trade=None if risk_per_trade is None else float(risk_per_trade),
                    equity=equity,
                    stop_multiplier=stop_mult,
                )
                if qty <= 0:
                    result.skipped_entries += 1
                    continue
                open_trade = Trade(
                    symbol=symbol,
                    entry_price=close,
                    quantity=float(qty),
                    open_time=ts,
                    direction=direction,
                    stop_loss=self.risk_manager.calculate_stop_loss(symbol, close, close, direction, stop_mult),
                    take_profit=self.risk_manager.calculate_take_profit(symbol, close, close, direction, target_mult),
                    strategy_name=strategy.name,
                )
                equity -= open_trade.side * open_trade.quantity * open_trade.entry_price
                continue

            reason = ""
            if strategy.should_exit(ctx):
                reason = "signal"
            elif _stop_hit(open_trade, close):
                reason = "stop_loss"
            elif _target_hit(open_trade, close):
                reason = "take_profit"
            if reason:
                equity = self._close(result, open_trade, close, ts, reason, equity)
                open_trade = None

        if open_trade is not None:
            equity = self._close(result, open_trade, float(closes[-1]), stamps.iloc[-1], "end_of_data", equity)

        return equity

    @staticmethod
    def _close(
        result: BacktestResult,
        trade: Trade,
        price: float,
        ts: pd.Timestamp,
        reason: str,
        equity: float,
    ) -> float:
        trade.close(price, ts, reason)
        result.trades.append(trade)
        result.symbol_performance[trade.symbol] = (
            result.symbol_performance.get(trade.symbol, 0.0) + float(trade.realized_pnl or 0.0)
        )
        return equity + trade.side * trade.quantity * price
