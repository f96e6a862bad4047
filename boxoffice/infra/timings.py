# boxoffice/infra/timings.py
"""
In-process latency samples per operation kind, served by
GET /api/admin/timings.

Each kind keeps a bounded window of recent samples, so a long-running
server reports how it behaves now rather than averaged over its uptime.
"""
from __future__ import annotations
import time
from collections import deque
from typing import Any, Deque, Dict, List
import statistics

WINDOW = 2048

# ------------ hot path: append only ------------
# single-threaded event loop, no locks
_TIMINGS: Dict[str, Deque[float]] = {}
_ERRORS: Dict[str, int] = {}


def record_timing(kind: str, value: float) -> None:
    window = _TIMINGS.get(kind)
    if window is None:
        window = _TIMINGS[kind] = deque(maxlen=WINDOW)
    window.append(float(value))


class timeit:
    """
        async with timeit("orders.create"):
            ...

    A block that raises is still timed, and counted under `errors`.
    """
    __slots__ = ("_kind", "_t0")

    def __init__(self, kind: str):
        self._kind = kind
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = time.perf_counter()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        record_timing(self._kind, time.perf_counter() - self._t0)
        if exc_type is not None:
            _ERRORS[self._kind] = _ERRORS.get(self._kind, 0) + 1


# ------------ stats only on read ------------

def _summary(values: List[float]) -> Dict[str, float]:
    ordered = sorted(values)
    return {
        "mean": statistics.mean(ordered),
        "std": statistics.stdev(ordered) if len(ordered) > 1 else 0.0,
        "p50": statistics.median(ordered),
        "p95": ordered[min(len(ordered) - 1, int(len(ordered) * 0.95))],
        "max": ordered[-1],
    }


def snapshot() -> List[Dict[str, Any]]:
    out = []
    for kind, window in sorted(_TIMINGS.items()):
        if not window:
            continue
        out.append({
            "kind": kind,
            "n": len(window),
            "errors": _ERRORS.get(kind, 0),
            **_summary(list(window)),
        })
    return out


def reset() -> None:
    _TIMINGS.clear()
    _ERRORS.clear()
