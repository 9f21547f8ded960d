from __future__ import annotations

import copy
from typing import Any, Callable, Optional

import numpy as np
import pandas as pd

from strategy_search.engine.types import TradeDirection


class IndicatorCache:
    """
    Full-series indicator values for one bar frame, computed once per key.
    """

    def __init__(self, frame: pd.DataFrame) -> None:
        self._frame = frame
        self._values: dict[str, np.ndarray] = {}

    def __len__(self) -> int:
        return len(self._values)

    def get(self, key: str, compute: Callable[[pd.DataFrame], pd.Series]) -> np.ndarray:
        arr = self._values.get(key)
        if arr is None:
            series = compute(self._frame)
            arr = np.asarray(series, dtype=float)
            if len(arr) != len(self._frame):
                raise ValueError(f"Indicator {key} produced {len(arr)} values for {len(self._frame)} bars")
            self._values[key] = arr
        return arr


class StrategyContext:
    """
    Strict no-lookahead context: exposes data only up to current bar index.
    """

    def __init__(self, frame: pd.DataFrame, idx: int, cache: Optional[IndicatorCache] = None) -> None:
        if idx < 0 or idx >= len(frame):
            raise IndexError("context index out of bounds")
        self._frame = frame
        self._idx = idx
        self._cache = cache if cache is not None else IndicatorCache(frame)

    @property
    def idx(self) -> int:
        return self._idx

    @property
    def ts_utc(self) -> pd.Timestamp:
        return pd.Timestamp(self._frame.iloc[self._idx]["ts_utc"])

    def current(self, field: str) -> float:
        return float(self._frame.iloc[self._idx][field])

    def history(self, field: str, length: int | None = None) -> np.ndarray:
        if field not in self._frame.columns:
            raise KeyError(f"Unknown field: {field}")
        if length is None:
            start = 0
        else:
            start = max(0, self._idx - int(length) + 1)
        arr = self._frame.iloc[start : self._idx + 1][field].to_numpy()
        return arr

    def indicator(self, key: str, compute: Callable[[pd.DataFrame], pd.Series]) -> np.ndarray:
        """Cached indicator values for bars [0, idx]."""
        return self._cache.get(key, compute)[: self._idx + 1]

    def future(self, *_: Any, **__: Any) -> np.ndarray:
        raise RuntimeError("Future access is forbidden by no-lookahead policy")


class Strategy:
    name: str = "base"

    def __init__(self, params: dict[str, Any] | None = None) -> None:
        self.params: dict[str, Any] = dict(params or {})
        self.direction = TradeDirection.LONG

    def warmup_bars(self) -> int:
        return 1

    def should_enter(self, ctx: StrategyContext) -> Optional[bool]:
        raise NotImplementedError

    def should_exit(self, ctx: StrategyContext) -> Optional[bool]:
        raise NotImplementedError

    def get_parameters(self) -> dict[str, Any]:
        return dict(self.params)

    def set_parameters(self, params: dict[str, Any]) -> None:
        self.params.update(params)

    def with_parameters(self, params: dict[str, Any]) -> "Strategy":
        """Independent copy with `params` applied; the receiver is left untouched."""
        clone = copy.deepcopy(self)
        if params:
            clone.set_parameters(params)
        return clone
