from __future__ import annotations

import pandas as pd
import pytest

from strategy_search.config import RiskConfig
from strategy_search.engine.executor import TradeExecutor
from strategy_search.engine.types import BacktestResult, TradeDirection, TradeStatus
from strategy_search.services.risk import RiskManager
from strategy_search.strategies.base import Strategy, StrategyContext


def _bars(closes: list[float]) -> pd.DataFrame:
    return pd.DataFrame(
        {
            "ts_utc": pd.date_range("2024-01-01", periods=len(closes), freq="D", tz="UTC"),
            "open": closes,
            "high": closes,
            "low": closes,
            "close": closes,
            "volume": [1.0] * len(closes),
        }
    )


def _result() -> BacktestResult:
    return BacktestResult(start_date=pd.Timestamp("2024-01-01", tz="UTC"), end_date=pd.Timestamp("2024-02-01", tz="UTC"))


class _EnterAt(Strategy):
    name = "enter_at"

    def __init__(self, enter_idx: int, exit_idx: int | None = None, direction=TradeDirection.LONG) -> None:
        super().__init__()
        self.enter_idx = enter_idx
        self.exit_idx = exit_idx
        self.direction = direction

    def should_enter(self, ctx: StrategyContext) -> bool:
        return ctx.idx == self.enter_idx

    def should_exit(self, ctx: StrategyContext) -> bool:
        return self.exit_idx is not None and ctx.idx == self.exit_idx


def test_fewer_bars_than_warmup_leaves_equity_untouched() -> None:
    result = _result()
    ex = TradeExecutor(RiskManager(), warmup_bars=50)
    final = ex.execute_trades(result, "BTCUSD", _bars([100.0] * 10), _EnterAt(0), 10_000.0)
    assert final == 10_000.0
    assert result.trades == []


def test_long_take_profit_moves_equity_by_realized_pnl() -> None:
    result = _result()
    ex = TradeExecutor(RiskManager(), warmup_bars=2)
    final = ex.execute_trades(result, "BTCUSD", _bars([100, 100, 100, 105, 105]), _EnterAt(2), 10_000.0)

    assert len(result.trades) == 1
    t = result.trades[0]
    assert t.status == TradeStatus.CLOSED
    assert t.quantity == pytest.approx(10.0)  # capped by max_position_size
    assert t.stop_loss == pytest.approx(98.0)
    assert t.take_profit == pytest.approx(104.0)
    assert t.exit_reason == "take_profit"
    assert t.realized_pnl == pytest.approx(50.0)
    assert final == pytest.approx(10_050.0)
    assert result.symbol_performance["BTCUSD"] == pytest.approx(50.0)


def test_long_stop_loss_on_close() -> None:
    result = _result()
    ex = TradeExecutor(RiskManager(), warmup_bars=2)
    final = ex.execute_trades(result, "BTCUSD", _bars([100, 100, 100, 99, 97.5, 97.5]), _EnterAt(2), 10_000.0)
    t = result.trades[0]
    assert t.exit_reason == "stop_loss"
    assert t.exit_price == pytest.approx(97.5)
    assert final == pytest.approx(10_000.0 - 25.0)


def test_short_stop_uses_inverted_comparison() -> None:
    result = _result()
    ex = TradeExecutor(RiskManager(), warmup_bars=2)
    strat = _EnterAt(2, direction=TradeDirection.SHORT)
    final = ex.execute_trades(result, "ETHUSD", _bars([100, 100, 100, 103, 103]), strat, 10_000.0)
    t = result.trades[0]
    assert t.direction == TradeDirection.SHORT
    assert t.stop_loss == pytest.approx(102.0)
    assert t.take_profit == pytest.approx(96.0)
    assert t.exit_reason == "stop_loss"
    assert t.realized_pnl == pytest.approx(-30.0)
    assert final == pytest.approx(9_970.0)


def test_short_take_profit() -> None:
    result = _result()
    ex = TradeExecutor(RiskManager(), warmup_bars=2)
    strat = _EnterAt(2, direction=TradeDirection.SHORT)
    final = ex.execute_trades(result, "ETHUSD", _bars([100, 100, 100, 95, 95]), strat, 10_000.0)
    assert result.trades[0].exit_reason == "take_profit"
    assert final == pytest.approx(10_050.0)


def test_exit_signal_closes_before_stop_or_target() -> None:
    result = _result()
    ex = TradeExecutor(RiskManager(), warmup_bars=2)
    final = ex.execute_trades(result, "BTCUSD", _bars([100, 100, 100, 101, 101]), _EnterAt(2, exit_idx=3), 10_000.0)
    t = result.trades[0]
    assert t.exit_reason == "signal"
    assert final == pytest.approx(10_010.0)


def test_open_position_is_closed_at_end_of_data() -> None:
    result = _result()
    ex = TradeExecutor(RiskManager(), warmup_bars=2)
    final = ex.execute_trades(result, "BTCUSD", _bars([100, 100, 100, 100.5, 101]), _EnterAt(2), 10_000.0)
    t = result.trades[0]
    assert t.exit_reason == "end_of_data"
    assert t.exit_price == pytest.approx(101.0)
    assert final == pytest.approx(10_010.0)


def test_zero_quantity_skips_entry() -> None:
    result = _result()
    ex = TradeExecutor(RiskManager(RiskConfig(min_position_size=1_000.0, max_position_size=5_000.0)), warmup_bars=2)
    final = ex.execute_trades(result, "BTCUSD", _bars([100, 100, 100, 105]), _EnterAt(2), 10_000.0)
    assert result.trades == []
    assert result.skipped_entries == 1
    assert final == 10_000.0


def test_unsorted_bars_raise() -> None:
    bars = _bars([100.0] * 5).iloc[::-1].reset_index(drop=True)
    ex = TradeExecutor(RiskManager(), warmup_bars=2)
    with pytest.raises(ValueError):
        ex.execute_trades(_result(), "BTCUSD", bars, _EnterAt(2), 10_000.0)


def test_strategy_exceptions_propagate() -> None:
    class _Boom(_EnterAt):
        def should_enter(self, ctx: StrategyContext) -> bool:
            raise RuntimeError("boom")

    ex = TradeExecutor(RiskManager(), warmup_bars=2)
    with pytest.raises(RuntimeError, match="boom"):
        ex.execute_trades(_result(), "BTCUSD", _bars([100.0] * 5), _Boom(2), 10_000.0)
