from __future__ import annotations

import math
from typing import Mapping

MAX_PARAMETER_SETS = 100_000

# Absorbs float noise when deciding whether `max` is reachable by whole steps.
_STEP_EPS = 1e-9


def _axis(name: str, lo: float, hi: float, step: float) -> list[float]:
    lo, hi, step = float(lo), float(hi), float(step)
    if not all(math.isfinite(v) for v in (lo, hi, step)):
        raise ValueError(f"{name}: bounds and step must be finite")
    if step <= 0:
        raise ValueError(f"{name}: step must be > 0")
    if lo > hi:
        raise ValueError(f"{name}: min {lo} > max {hi}")
    count = int(math.floor((hi - lo) / step + _STEP_EPS)) + 1
    return [round(lo + k * step, 10) for k in range(count)]


def generate_parameter_sets(
    ranges: Mapping[str, tuple[float, float, float]],
    max_sets: int = MAX_PARAMETER_SETS,
) -> list[dict[str, float]]:
    """
    Cartesian product of inclusive `(min, max, step)` ranges.

    Enumeration is odometer style: the first parameter varies fastest.
    An empty mapping yields a single empty set.
    """
    names = list(ranges)
    axes = [_axis(name, *ranges[name]) for name in names]

    total = 1
    for axis in axes:
        total *= len(axis)
    if total > max_sets:
        raise ValueError(f"parameter grid has {total} sets, limit is {max_sets}")

    out: list[dict[str, float]] = []
    counters = [0] * len(axes)
    for _ in range(total):
        out.append({name: axes[j][counters[j]] for j, name in enumerate(names)})
        for j in range(len(axes)):
            counters[j] += 1
            if counters[j] < len(axes[j]):
                break
            counters[j] = 0
    return out
