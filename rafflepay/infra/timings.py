# rafflepay/infra/timings.py
from __future__ import annotations
import statistics
import time
from typing import Any, Dict, List


def now_ts() -> float:
    # monotonic for durations
    return time.perf_counter()


def _mean_std(values: list[float]) -> tuple[float, float]:
    if not values:
        return 0.0, 0.0
    return (
        statistics.mean(values),
        statistics.stdev(values) if len(values) > 1 else 0.0
    )


class Timings:
    """Per-process duration samples, one list per kind.

    Append-only on the hot path; no locks, single-threaded event loop.
    """

    def __init__(self) -> None:
        self._samples: Dict[str, List[float]] = {}

    def record(self, kind: str, value: float) -> None:
        lst = self._samples.get(kind)
        if lst is None:
            lst = []
            self._samples[kind] = lst
        lst.append(float(value))

    def timeit(self, kind: str) -> "timeit":
        return timeit(self, kind)

    def summary(self) -> List[Dict[str, Any]]:
        out = []
        for kind in sorted(self._samples):
            vals = self._samples[kind]
            mean, std = _mean_std(vals)
            out.append({"kind": kind, "n": len(vals), "mean": mean,
                        "std": std})
        return out

    def clear(self) -> None:
        self._samples.clear()


class timeit:
    """async usage:
        async with timings.timeit("review.approve"):
            await fn()
    """
    __slots__ = ("_timings", "_kind", "_t0")

    def __init__(self, timings: Timings, kind: str):
        self._timings = timings
        self._kind = kind
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = now_ts()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self._timings.record(self._kind, now_ts() - self._t0)
