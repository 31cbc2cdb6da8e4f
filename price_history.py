"""
price_history.py -- Bounded per-instrument price series.

Every strategy reads from this store.  The ingest tick is the only writer;
readers get tuples so nothing downstream can mutate a series in place.
"""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass
from typing import Callable

import numpy as np

log = logging.getLogger(__name__)

DEFAULT_CAPACITY = 200


@dataclass(frozen=True)
class PricePoint:
    timestamp: float
    price: float
    time_bucket: int


Listener = Callable[[str, tuple], None]


def time_bucket(timestamp: float, tick_period: float) -> int:
    """Align a timestamp to the decision cadence."""
    if tick_period <= 0:
        raise ValueError("tick_period must be positive")
    return int(math.floor(timestamp / tick_period))


class PriceHistoryStore:
    def __init__(self, capacity: int = DEFAULT_CAPACITY, tick_period: float = 0.5):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = int(capacity)
        self.tick_period = float(tick_period)
        self._series: dict[str, deque[PricePoint]] = {}
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> None:
        """Register a callback fired with (name, snapshot) after every record."""
        self._listeners.append(listener)

    def record(self, name: str, price: float, now: float) -> PricePoint | None:
        try:
            px = float(price)
        except (TypeError, ValueError):
            px = float("nan")
        if not math.isfinite(px) or px <= 0:
            log.warning("Ignoring invalid price for %s: %r", name, price)
            return None

        series = self._series.get(name)
        if series is None:
            series = deque(maxlen=self.capacity)
            self._series[name] = series

        point = PricePoint(timestamp=float(now), price=px, time_bucket=time_bucket(now, self.tick_period))
        series.append(point)

        snap = tuple(series)
        for listener in self._listeners:
            listener(name, snap)
        return point

    def snapshot(self, name: str) -> tuple[PricePoint, ...]:
        series = self._series.get(name)
        return tuple(series) if series else ()

    def prices(self, name: str) -> np.ndarray:
        series = self._series.get(name)
        if not series:
            return np.empty(0, dtype=float)
        return np.fromiter((p.price for p in series), dtype=float, count=len(series))

    def last_price(self, name: str) -> float | None:
        series = self._series.get(name)
        return series[-1].price if series else None

    def names(self) -> list[str]:
        return sorted(self._series.keys())

    def __len__(self) -> int:
        return len(self._series)
