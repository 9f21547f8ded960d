from __future__ import annotations

import numpy as np
import pandas as pd

# Every function here is causal: the value at index i only reads rows <= i,
# so a full-frame computation can be sliced at any bar without look-ahead.


def _period(value: float, minimum: int = 1) -> int:
    return max(int(round(float(value))), minimum)


def sma(close: pd.Series, period: float) -> pd.Series:
    n = _period(period)
    return close.rolling(n, min_periods=n).mean()


def ema(close: pd.Series, period: float) -> pd.Series:
    n = _period(period)
    out = close.ewm(span=n, adjust=False, min_periods=n).mean()
    return out


def rsi(close: pd.Series, period: float) -> pd.Series:
    n = _period(period, minimum=2)
    delta = close.diff()
    gain = delta.clip(lower=0.0)
    loss = -delta.clip(upper=0.0)
    avg_gain = gain.ewm(alpha=1.0 / n, adjust=False, min_periods=n).mean()
    avg_loss = loss.ewm(alpha=1.0 / n, adjust=False, min_periods=n).mean()
    rs = avg_gain / avg_loss.replace(0.0, np.nan)
    out = 100.0 - 100.0 / (1.0 + rs)
    # No losses in the window: fully overbought.
    out = out.mask((avg_loss == 0.0) & avg_gain.notna(), 100.0)
    return out


def macd(close: pd.Series, fast_period: float, slow_period: float, signal_period: float) -> pd.DataFrame:
    fast = _period(fast_period)
    slow = _period(slow_period)
    sig = _period(signal_period)
    fast_ema = close.ewm(span=fast, adjust=False, min_periods=fast).mean()
    slow_ema = close.ewm(span=slow, adjust=False, min_periods=slow).mean()
    line = fast_ema - slow_ema
    signal = line.ewm(span=sig, adjust=False, min_periods=sig).mean()
    return pd.DataFrame({"macd": line, "signal": signal, "histogram": line - signal})


def bollinger(close: pd.Series, period: float, multiplier: float) -> pd.DataFrame:
    n = _period(period, minimum=2)
    mid = close.rolling(n, min_periods=n).mean()
    sd = close.rolling(n, min_periods=n).std(ddof=0)
    k = float(multiplier)
    return pd.DataFrame({"middle": mid, "upper": mid + k * sd, "lower": mid - k * sd})


def atr(high: pd.Series, low: pd.Series, close: pd.Series, period: float) -> pd.Series:
    n = _period(period)
    prev_close = close.shift(1)
    tr = pd.concat(
        [
            high - low,
            (high - prev_close).abs(),
            (low - prev_close).abs(),
        ],
        axis=1,
    ).max(axis=1)  # skipna: first bar falls back to high - low
    return tr.rolling(n, min_periods=n).mean()
