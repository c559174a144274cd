from __future__ import annotations
import time
from contextlib import contextmanager
from typing import Callable, Dict, Optional
from loguru import logger

_PROM = None


def _maybe_init_prom():
    global _PROM
    if _PROM is not None:
        return _PROM
    try:
        from prometheus_client import Counter, Gauge, Histogram
        _PROM = {
            "tiles": Counter("pumpkinscan_tiles_total", "Tile checks reported by workers", ["outcome"]),
            "pumpkins": Gauge("pumpkinscan_pumpkins", "Pumpkins currently in the store"),
            "pass_duration": Histogram("pumpkinscan_pass_seconds", "Duration of a full scan pass", ["status"]),
        }
        logger.debug("[metrics] prometheus initialized")
    except ImportError:
        # Optional dependency; this is informational and not an error.
        logger.debug("[metrics] prometheus optional; client not installed - skipping export")
        _PROM = {}
    return _PROM


def count_tile(outcome: str) -> None:
    c = _maybe_init_prom().get("tiles")
    if c:
        c.labels(outcome=outcome).inc()


def set_pumpkins(n: int) -> None:
    g = _maybe_init_prom().get("pumpkins")
    if g:
        g.set(n)


@contextmanager
def pass_timer():
    h = _maybe_init_prom().get("pass_duration")
    start = time.time()
    status = "success"
    try:
        yield
    except BaseException:
        status = "error"
        raise
    finally:
        if h:
            h.labels(status=status).observe(time.time() - start)


class ThroughputMeter:
    """Counts tile results between two :meth:`tick` calls."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._count = 0
        self._since = clock()
        self.totals: Dict[str, int] = {}

    def add(self, outcome: str, n: int = 1) -> None:
        self._count += n
        self.totals[outcome] = self.totals.get(outcome, 0) + n
        count_tile(outcome)

    def tick(self) -> tuple[int, float]:
        """Return ``(tiles, tiles_per_second)`` since the previous tick and reset."""
        now = self._clock()
        elapsed = now - self._since
        count, self._count, self._since = self._count, 0, now
        rate = count / elapsed if elapsed > 0 else 0.0
        return count, rate

    def reset_totals(self) -> Dict[str, int]:
        totals, self.totals = self.totals, {}
        return totals


__all__ = ["ThroughputMeter", "count_tile", "set_pumpkins", "pass_timer"]
