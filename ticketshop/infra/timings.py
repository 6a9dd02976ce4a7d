# ticketshop/infra/timings.py
from __future__ import annotations
import os
import time
from collections import deque
from typing import Deque, Dict, List
import statistics

# newest samples kept per kind; older ones only count towards "total"
TIMINGS_WINDOW = int(os.getenv("TIMINGS_WINDOW", "10000"))

# ------------ hot path: append only ------------
# one bounded deque per kind; no locks, single-threaded event loop
_TIMINGS: Dict[str, Deque[float]] = {}
_TOTALS: Dict[str, int] = {}


def now_ts() -> float:
    # monotonic for durations
    return time.perf_counter()


def record_timing(kind: str, value: float) -> None:
    lst = _TIMINGS.get(kind)
    if lst is None:
        lst = deque(maxlen=max(1, TIMINGS_WINDOW))
        _TIMINGS[kind] = lst
    lst.append(float(value))
    _TOTALS[kind] = _TOTALS.get(kind, 0) + 1


class timeit:
    """async usage:
        async with timeit("cart.add"):
            await fn()
    """
    __slots__ = ("_kind", "_t0")

    def __init__(self, kind: str):
        self._kind = kind
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = now_ts()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        record_timing(self._kind, now_ts() - self._t0)


# ------------ stats only on request ------------

def _mean_std(values: Deque[float]) -> tuple[float, float]:
    if not values:
        return 0.0, 0.0
    return (
        statistics.mean(values),
        statistics.stdev(values) if len(values) > 1 else 0.0
    )


def snapshot(reset: bool = False) -> List[Dict[str, float]]:
    """
    One record per kind: {"kind", "n", "total", "mean", "std"} (seconds).
    mean/std cover the last `n` samples, `total` counts all of them.
    """
    out = []
    for kind, vals in sorted(_TIMINGS.items()):
        mean, std = _mean_std(vals)
        out.append({"kind": kind, "n": len(vals), "total": _TOTALS[kind],
                    "mean": mean, "std": std})
    if reset:
        _TIMINGS.clear()
        _TOTALS.clear()
    return out
