"""
In-process metering.

Stats aggregates counters and timer samples keyed by name + tags.
Meter is the thread-safe, fail-open facade injected into the processor:
metering problems are logged and never reach the caller.

Snapshot keys look like: "stage.entered{pipeline=default,stage=validate}"
"""

import copy
import logging
import math
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional

from domain.errors import MeteringError

logger = logging.getLogger(__name__)


def metric_key(name: str, tags: Optional[Dict[str, Any]] = None) -> str:
    """Build the snapshot key for a metric name and its tags."""
    if not tags:
        return name
    rendered = ','.join(f"{k}={tags[k]}" for k in sorted(tags))
    return f"{name}{{{rendered}}}"


@dataclass
class TimerStats:
    """Aggregated samples of one timer/histogram."""
    count: int = 0
    total: float = 0.0
    min: float = math.inf
    max: float = -math.inf

    @property
    def mean(self) -> float:
        return self.total / self.count if self.count else 0.0

    def add(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.min = min(self.min, value)
        self.max = max(self.max, value)

    def to_dict(self) -> Dict[str, float]:
        return {
            'count': self.count,
            'sum': self.total,
            'min': self.min if self.count else 0.0,
            'max': self.max if self.count else 0.0,
            'mean': self.mean,
        }


class Stats:
    """
    Counter and timer aggregation. Not thread-safe on its own.

    Metrics are created on first use and live as long as the instance.
    """

    def __init__(self):
        self.counters: Dict[str, int] = {}
        self.timers: Dict[str, TimerStats] = {}

    def record_count(self, key: str, value: int = 1) -> None:
        if not isinstance(value, int) or isinstance(value, bool):
            raise MeteringError(f"Counter increment must be an int, got {value!r}")
        self.counters[key] = self.counters.get(key, 0) + value

    def record_sample(self, key: str, value: float) -> None:
        if isinstance(value, bool) or not isinstance(value, (int, float)) or math.isnan(value):
            raise MeteringError(f"Sample must be a number, got {value!r}")
        self.timers.setdefault(key, TimerStats()).add(float(value))

    def as_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = dict(self.counters)
        for key, timer in self.timers.items():
            result[key] = timer.to_dict()
        return result


class Meter:
    """
    Thread-safe, fail-open metering facade.

    Explicitly constructed and injected; there is no module-level instance.
    """

    def __init__(self, stats: Optional[Stats] = None):
        self._stats = stats if stats is not None else Stats()
        self._lock = threading.Lock()

    def increment(self, name: str, tags: Optional[Dict[str, Any]] = None, value: int = 1) -> None:
        """Add value to the counter name{tags}."""
        try:
            with self._lock:
                self._stats.record_count(metric_key(name, tags), value)
        except Exception as e:
            logger.warning(f"Failed to increment metric {name}: {e}")

    def observe(self, name: str, value: float, tags: Optional[Dict[str, Any]] = None) -> None:
        """Record one timer/histogram sample for name{tags}."""
        try:
            with self._lock:
                self._stats.record_sample(metric_key(name, tags), value)
        except Exception as e:
            logger.warning(f"Failed to observe metric {name}: {e}")

    @contextmanager
    def timer(self, name: str, tags: Optional[Dict[str, Any]] = None) -> Iterator[None]:
        """Observe the elapsed milliseconds of the with-block."""
        started = time.perf_counter()
        try:
            yield
        finally:
            self.observe(name, (time.perf_counter() - started) * 1000, tags)

    def count(self, name: str, tags: Optional[Dict[str, Any]] = None) -> int:
        """Current value of one counter (0 if never incremented)."""
        try:
            with self._lock:
                return self._stats.counters.get(metric_key(name, tags), 0)
        except Exception as e:
            logger.warning(f"Failed to read metric {name}: {e}")
            return 0

    def snapshot(self) -> Dict[str, Any]:
        """
        Copy of every aggregated metric.

        Returns:
            Dict mapping metric key to an int (counters) or a dict with
            count/sum/min/max/mean (timers). Empty dict if metering is broken.
        """
        try:
            with self._lock:
                return copy.deepcopy(self._stats.as_dict())
        except Exception as e:
            logger.warning(f"Failed to snapshot metrics: {e}")
            return {}
