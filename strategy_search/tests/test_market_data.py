from __future__ import annotations

import pandas as pd
import pytest

from strategy_search.services.market_data import (
    SIM_EPOCH,
    FrameMarketDataProvider,
    MarketDataError,
    SimulatedMarketDataProvider,
    validate_candles_frame,
)


def _frame(n: int = 10) -> pd.DataFrame:
    close = [100.0 + i for i in range(n)]
    return pd.DataFrame(
        {
            "ts_utc": pd.date_range("2024-01-01", periods=n, freq="D", tz="UTC"),
            "open": close,
            "high": [c + 1.0 for c in close],
            "low": [c - 1.0 for c in close],
            "close": close,
            "volume": [10.0] * n,
        }
    )


def test_simulated_bars_are_deterministic_and_window_consistent() -> None:
    a = SimulatedMarketDataProvider(seed=1)
    b = SimulatedMarketDataProvider(seed=1)
    wide = a.get_historical_bars("BTCUSD", "2022-01-01", "2023-12-31")
    again = b.get_historical_bars("BTCUSD", "2022-01-01", "2023-12-31")
    pd.testing.assert_frame_equal(wide, again)

    narrow = SimulatedMarketDataProvider(seed=1).get_historical_bars("BTCUSD", "2022-06-01", "2022-06-30")
    assert len(narrow) == 30
    merged = wide.merge(narrow, on="ts_utc", suffixes=("_w", "_n"))
    assert len(merged) == 30
    for col in ("open", "high", "low", "close"):
        assert (merged[f"{col}_w"] == merged[f"{col}_n"]).all()

    assert validate_candles_frame(wide).ok
    assert wide["ts_utc"].iloc[0] == pd.Timestamp("2022-01-01", tz="UTC")
    assert wide["ts_utc"].iloc[-1] == pd.Timestamp("2023-12-31", tz="UTC")
    steps = wide["close"].pct_change().dropna().abs()
    assert (steps <= 0.02 + 1e-12).all()


def test_simulated_symbols_and_seeds_differ() -> None:
    p = SimulatedMarketDataProvider(seed=1)
    btc = p.get_historical_bars("BTCUSD", "2023-01-01", "2023-01-31")
    eth = p.get_historical_bars("ETHUSD", "2023-01-01", "2023-01-31")
    other = SimulatedMarketDataProvider(seed=2).get_historical_bars("BTCUSD", "2023-01-01", "2023-01-31")
    assert not btc["close"].equals(eth["close"])
    assert not btc["close"].equals(other["close"])


def test_simulated_intraday_timeframe() -> None:
    bars = SimulatedMarketDataProvider().get_historical_bars("ETHUSD", "2023-01-01", "2023-01-02", timeframe="4h")
    assert len(bars) == 7
    assert (bars["ts_utc"].diff().dropna() == pd.Timedelta(hours=4)).all()


def test_simulated_errors() -> None:
    p = SimulatedMarketDataProvider()
    with pytest.raises(MarketDataError):
        p.get_historical_bars("DOGEUSD", "2023-01-01", "2023-02-01")
    with pytest.raises(MarketDataError):
        p.get_historical_bars("BTCUSD", "2023-02-01", "2023-01-01")
    with pytest.raises(MarketDataError):
        p.get_historical_bars("BTCUSD", "2023-01-01", "2023-02-01", timeframe="1m")
    with pytest.raises(MarketDataError):
        p.get_historical_bars("BTCUSD", SIM_EPOCH - pd.Timedelta(days=30), SIM_EPOCH - pd.Timedelta(days=1))


def test_frame_provider_windows_and_symbols() -> None:
    p = FrameMarketDataProvider({"BTCUSD": _frame()})
    assert p.symbols == ("BTCUSD",)
    bars = p.get_historical_bars("BTCUSD", pd.Timestamp("2024-01-03"), pd.Timestamp("2024-01-05"))
    assert list(bars["close"]) == [102.0, 103.0, 104.0]
    with pytest.raises(MarketDataError):
        p.get_historical_bars("ETHUSD", "2024-01-01", "2024-01-05")
    with pytest.raises(MarketDataError):
        p.get_historical_bars("BTCUSD", "2025-01-01", "2025-01-05")


def test_frame_provider_rejects_bad_frames() -> None:
    unsorted = _frame().iloc[::-1].reset_index(drop=True)
    with pytest.raises(MarketDataError, match="not sorted"):
        FrameMarketDataProvider({"BTCUSD": unsorted})

    broken = _frame()
    broken.loc[3, "high"] = 50.0
    with pytest.raises(MarketDataError, match="high<low"):
        FrameMarketDataProvider({"BTCUSD": broken})


def test_from_directory_reads_csv(tmp_path) -> None:
    _frame().to_csv(tmp_path / "BTCUSD.csv", index=False)
    (tmp_path / "notes.txt").write_text("ignored", encoding="utf-8")
    p = FrameMarketDataProvider.from_directory(tmp_path)
    assert p.symbols == ("BTCUSD",)
    assert len(p.get_historical_bars("BTCUSD", "2024-01-01", "2024-01-10")) == 10

    with pytest.raises(MarketDataError):
        FrameMarketDataProvider.from_directory(tmp_path / "missing")


def test_validate_candles_frame_reports_problems() -> None:
    df = _frame()
    df.loc[2, "close"] = None
    df.loc[5, "ts_utc"] = df.loc[4, "ts_utc"]
    check = validate_candles_frame(df)
    assert not check.ok
    assert any("NaN" in e for e in check.errors)
    assert any("Duplicate" in e for e in check.errors)

    missing = validate_candles_frame(df.drop(columns=["volume"]))
    assert missing.errors == ["Missing required columns: ['volume']"]
