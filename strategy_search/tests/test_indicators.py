from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from strategy_search.engine import indicators as ind


def _close(n: int = 60, seed: int = 3) -> pd.Series:
    rng = np.random.default_rng(seed)
    return pd.Series(100.0 * np.cumprod(1.0 + rng.uniform(-0.02, 0.02, size=n)))


def test_sma_matches_rolling_mean() -> None:
    close = pd.Series([1.0, 2.0, 3.0, 4.0, 5.0])
    out = ind.sma(close, 3)
    assert np.isnan(out.iloc[1])
    assert out.iloc[2] == pytest.approx(2.0)
    assert out.iloc[4] == pytest.approx(4.0)


def test_fractional_period_is_rounded() -> None:
    close = _close()
    assert ind.sma(close, 9.6).equals(ind.sma(close, 10))


def test_rsi_bounds_and_one_way_market() -> None:
    close = _close(200)
    r = ind.rsi(close, 14).dropna()
    assert ((r >= 0) & (r <= 100)).all()

    rising = pd.Series(np.arange(1.0, 40.0))
    assert ind.rsi(rising, 14).iloc[-1] == pytest.approx(100.0)


def test_macd_and_bollinger_columns() -> None:
    close = _close(120)
    m = ind.macd(close, 12, 26, 9)
    assert list(m.columns) == ["macd", "signal", "histogram"]
    assert np.allclose((m["macd"] - m["signal"]).dropna(), m["histogram"].dropna())

    b = ind.bollinger(close, 20, 2.0)
    valid = b.dropna()
    assert (valid["upper"] >= valid["middle"]).all()
    assert (valid["lower"] <= valid["middle"]).all()


def test_atr_is_positive() -> None:
    close = _close(80)
    high = close * 1.01
    low = close * 0.99
    a = ind.atr(high, low, close, 14).dropna()
    assert len(a) == 80 - 13
    assert (a > 0).all()


@pytest.mark.parametrize(
    "fn",
    [
        lambda c: ind.sma(c, 10),
        lambda c: ind.ema(c, 10),
        lambda c: ind.rsi(c, 14),
        lambda c: ind.macd(c, 12, 26, 9)["signal"],
        lambda c: ind.bollinger(c, 20, 2.0)["upper"],
    ],
)
def test_indicators_are_causal(fn) -> None:
    close = _close(100)
    full = fn(close).to_numpy()
    prefix = fn(close.iloc[:70]).to_numpy()
    np.testing.assert_allclose(prefix, full[:70], equal_nan=True)
