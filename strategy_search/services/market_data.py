from __future__ import annotations

import hashlib
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping, Protocol

import numpy as np
import pandas as pd

from strategy_search.config import DEFAULT_SYMBOLS
from strategy_search.engine.types import CANDLE_COLUMNS

TIMEFRAME_FREQ = {"1h": "1h", "4h": "4h", "1d": "1D"}

SIM_EPOCH = pd.Timestamp("2015-01-01", tz="UTC")


class MarketDataError(RuntimeError):
    pass


class MarketDataProvider(Protocol):
    def get_historical_bars(
        self,
        symbol: str,
        start: pd.Timestamp,
        end: pd.Timestamp,
        timeframe: str = "1d",
    ) -> pd.DataFrame: ...


@dataclass
class IntegrityResult:
    ok: bool
    summary: dict[str, Any]
    errors: list[str] = field(default_factory=list)


def validate_candles_frame(df: pd.DataFrame) -> IntegrityResult:
    errors: list[str] = []
    missing = [c for c in CANDLE_COLUMNS if c not in df.columns]
    if missing:
        errors.append(f"Missing required columns: {missing}")
        return IntegrityResult(ok=False, summary={"rows": int(len(df))}, errors=errors)

    nulls = int(df[CANDLE_COLUMNS].isna().sum().sum())
    if nulls > 0:
        errors.append(f"NaN values in required candle fields: {nulls}")
    ts = pd.to_datetime(df["ts_utc"], utc=True, errors="coerce")
    if not ts.is_monotonic_increasing:
        errors.append("ts_utc is not sorted ascending")
    dupes = int(ts.duplicated().sum())
    if dupes > 0:
        errors.append(f"Duplicate timestamps: {dupes}")
    bad_range = int(((df["high"] < df["low"]) | (df["close"] <= 0)).sum())
    if bad_range > 0:
        errors.append(f"Rows with high<low or non-positive close: {bad_range}")

    summary = {
        "rows": int(len(df)),
        "start_ts_utc": str(ts.min()) if len(ts) else None,
        "end_ts_utc": str(ts.max()) if len(ts) else None,
        "ok": not errors,
    }
    return IntegrityResult(ok=not errors, summary=summary, errors=errors)


def _as_utc(value: Any) -> pd.Timestamp:
    ts = pd.Timestamp(value)
    return ts.tz_localize("UTC") if ts.tzinfo is None else ts.tz_convert("UTC")


def _window(df: pd.DataFrame, symbol: str, start: Any, end: Any) -> pd.DataFrame:
    lo, hi = _as_utc(start), _as_utc(end)
    if lo > hi:
        raise MarketDataError(f"{symbol}: start {lo} is after end {hi}")
    out = df[(df["ts_utc"] >= lo) & (df["ts_utc"] <= hi)].reset_index(drop=True)
    if out.empty:
        raise MarketDataError(f"{symbol}: no bars between {lo} and {hi}")
    return out


def _symbol_seed(symbol: str, seed: int) -> int:
    digest = hashlib.sha256(f"{symbol}:{seed}".encode("utf-8")).hexdigest()
    return int(digest[:16], 16)


class SimulatedMarketDataProvider:
    """
    Deterministic random-walk bars per symbol.

    Each symbol's path starts at SIM_EPOCH from a seeded price and moves by
    up to +-2% per bar, so any window of the same symbol always sees the
    same prices. One path is kept per (symbol, timeframe) and regenerated
    when a later end is requested; access is serialized by a lock since
    backtests fetch from worker threads.
    """

    def __init__(
        self,
        symbols: Iterable[str] = DEFAULT_SYMBOLS,
        seed: int = 0,
        max_step: float = 0.02,
    ) -> None:
        self.symbols = tuple(symbols)
        self.seed = int(seed)
        self.max_step = float(max_step)
        self._paths: dict[tuple[str, str], pd.DataFrame] = {}
        self._lock = threading.Lock()

    def _path(self, symbol: str, timeframe: str, end: pd.Timestamp) -> pd.DataFrame:
        freq = TIMEFRAME_FREQ.get(timeframe)
        if freq is None:
            raise MarketDataError(f"Unsupported timeframe: {timeframe}")
        key = (symbol, timeframe)
        cached = self._paths.get(key)
        if cached is not None and cached["ts_utc"].iloc[-1] >= end:
            return cached

        ts = pd.date_range(SIM_EPOCH, end.floor(freq), freq=freq, tz="UTC")
        if len(ts) == 0:
            raise MarketDataError(f"{symbol}: window ends before {SIM_EPOCH}")
        rng = np.random.default_rng(_symbol_seed(symbol, self.seed))
        first = float(rng.uniform(1_000.0, 50_000.0))
        # One row of draws per bar keeps every prefix identical whatever the path length.
        draws = rng.random(size=(len(ts), 4))
        steps = (2.0 * draws[:, 0] - 1.0) * self.max_step
        steps[0] = 0.0
        close = first * np.cumprod(1.0 + steps)
        open_ = np.concatenate(([first], close[:-1]))
        high = np.maximum(open_, close) * (1.0 + draws[:, 1] * self.max_step / 2.0)
        low = np.minimum(open_, close) * (1.0 - draws[:, 2] * self.max_step / 2.0)
        volume = 100.0 + draws[:, 3] * 900.0

        df = pd.DataFrame(
            {"ts_utc": ts, "open": open_, "high": high, "low": low, "close": close, "volume": volume}
        )
        self._paths[key] = df
        return df

    def get_historical_bars(
        self,
        symbol: str,
        start: pd.Timestamp,
        end: pd.Timestamp,
        timeframe: str = "1d",
    ) -> pd.DataFrame:
        if symbol not in self.symbols:
            raise MarketDataError(f"Unknown symbol: {symbol}")
        with self._lock:
            path = self._path(symbol, timeframe, _as_utc(end))
        return _window(path, symbol, start, end)


def _normalize_frame(df: pd.DataFrame, symbol: str) -> pd.DataFrame:
    out = df.copy()
    if "ts_utc" not in out.columns:
        raise MarketDataError(f"{symbol}: frame has no ts_utc column")
    out["ts_utc"] = pd.to_datetime(out["ts_utc"], utc=True, errors="coerce")
    for c in CANDLE_COLUMNS[1:]:
        if c in out.columns:
            out[c] = pd.to_numeric(out[c], errors="coerce")
    check = validate_candles_frame(out)
    if not check.ok:
        raise MarketDataError(f"{symbol}: integrity check failed: {'; '.join(check.errors)}")
    return out[CANDLE_COLUMNS].reset_index(drop=True)


class FrameMarketDataProvider:
    """Serves bars from in-memory frames, one per symbol, already at the wanted timeframe."""

    def __init__(self, frames: Mapping[str, pd.DataFrame]) -> None:
        self._frames = {str(sym): _normalize_frame(df, str(sym)) for sym, df in frames.items()}

    @property
    def symbols(self) -> tuple[str, ...]:
        return tuple(sorted(self._frames))

    @classmethod
    def from_directory(cls, path: str | Path) -> "FrameMarketDataProvider":
        root = Path(path)
        if not root.is_dir():
            raise MarketDataError(f"Market data directory not found: {root}")
        frames: dict[str, pd.DataFrame] = {}
        for file in sorted(root.iterdir()):
            if file.suffix == ".parquet":
                frames[file.stem] = pd.read_parquet(file)
            elif file.suffix == ".csv" and file.stem not in frames:
                frames[file.stem] = pd.read_csv(file)
        if not frames:
            raise MarketDataError(f"No .csv or .parquet files in {root}")
        return cls(frames)

    def get_historical_bars(
        self,
        symbol: str,
        start: pd.Timestamp,
        end: pd.Timestamp,
        timeframe: str = "1d",
    ) -> pd.DataFrame:
        df = self._frames.get(symbol)
        if df is None:
            raise MarketDataError(f"Unknown symbol: {symbol}")
        return _window(df, symbol, start, end)
