"""Timing utilities for the BEV detection pipeline.

This module provides:
- Timer for wall-clock measurement of a single call
- Profiler for per-stage timings accumulated over many frames
- A timing decorator that logs elapsed time

All timers optionally synchronize CUDA so device work is included.
"""

import functools
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import numpy as np
import torch

logger = logging.getLogger(__name__)


def _cuda_sync(enabled: bool) -> None:
    if enabled and torch.cuda.is_available():
        torch.cuda.synchronize()


@dataclass
class TimingResult:
    """Container for timing results."""

    name: str
    total_time: float
    call_count: int
    times: List[float] = field(default_factory=list)

    @property
    def avg_time(self) -> float:
        """Average time per call."""
        return self.total_time / self.call_count if self.call_count > 0 else 0

    @property
    def min_time(self) -> float:
        return min(self.times) if self.times else 0

    @property
    def max_time(self) -> float:
        return max(self.times) if self.times else 0

    @property
    def p95_time(self) -> float:
        """95th percentile of recorded times."""
        return float(np.percentile(self.times, 95)) if self.times else 0

    def to_dict(self) -> Dict[str, float]:
        return {
            "name": self.name,
            "total_time": self.total_time,
            "call_count": self.call_count,
            "avg_time": self.avg_time,
            "min_time": self.min_time,
            "max_time": self.max_time,
            "p95_time": self.p95_time,
        }


class Timer:
    """High-precision timer.

    Example:
        >>> with Timer() as timer:
        ...     detector.do_infer(frame)
        >>> timer.elapsed
    """

    def __init__(self, use_cuda_sync: bool = True):
        """Initialize timer.

        Args:
            use_cuda_sync: Synchronize CUDA before reading the clock.
        """
        self.use_cuda_sync = use_cuda_sync and torch.cuda.is_available()
        self._start_time: Optional[float] = None
        self._elapsed: float = 0

    def start(self) -> "Timer":
        _cuda_sync(self.use_cuda_sync)
        self._start_time = time.perf_counter()
        return self

    def stop(self) -> float:
        """Stop the timer and return elapsed seconds."""
        _cuda_sync(self.use_cuda_sync)
        if self._start_time is None:
            return 0
        self._elapsed = time.perf_counter() - self._start_time
        self._start_time = None
        return self._elapsed

    @property
    def elapsed(self) -> float:
        return self._elapsed

    def __enter__(self) -> "Timer":
        return self.start()

    def __exit__(self, *args):
        self.stop()


class Profiler:
    """Accumulates timings of named stages.

    Example:
        >>> profiler = Profiler()
        >>> with profiler.profile("engine"):
        ...     outputs = engine(inputs)
        >>> profiler.summary()["engine"]["avg_time"]
    """

    def __init__(self, use_cuda_sync: bool = True):
        self.use_cuda_sync = use_cuda_sync
        self._timings: Dict[str, TimingResult] = {}

    @contextmanager
    def profile(self, name: str):
        """Time the enclosed block under `name`."""
        _cuda_sync(self.use_cuda_sync)
        start_time = time.perf_counter()
        try:
            yield
        finally:
            _cuda_sync(self.use_cuda_sync)
            elapsed = time.perf_counter() - start_time

            if name not in self._timings:
                self._timings[name] = TimingResult(name=name, total_time=0, call_count=0)
            self._timings[name].total_time += elapsed
            self._timings[name].call_count += 1
            self._timings[name].times.append(elapsed)

    def get_timing(self, name: str) -> Optional[TimingResult]:
        return self._timings.get(name)

    def last_time(self, name: str) -> float:
        """Most recent elapsed seconds for `name` (0 if never timed)."""
        result = self._timings.get(name)
        return result.times[-1] if result is not None and result.times else 0.0

    def get_all_timings(self) -> Dict[str, TimingResult]:
        return self._timings.copy()

    def reset(self) -> None:
        self._timings.clear()

    def summary(self) -> Dict[str, Dict[str, float]]:
        """Get summary of all timings."""
        return {name: result.to_dict() for name, result in self._timings.items()}

    def log_summary(self, level: int = logging.INFO) -> None:
        """Log one line per stage, slowest first."""
        if not self._timings:
            logger.log(level, "No timings recorded.")
            return

        total_time = sum(t.total_time for t in self._timings.values())
        for name, result in sorted(self._timings.items(), key=lambda x: -x[1].total_time):
            pct = (result.total_time / total_time * 100) if total_time > 0 else 0
            logger.log(
                level,
                f"{name:<16} calls={result.call_count:<6} avg={result.avg_time * 1000:.2f}ms "
                f"max={result.max_time * 1000:.2f}ms ({pct:.1f}%)",
            )


def timed(name: Optional[str] = None, log_level: int = logging.DEBUG):
    """Decorator that logs the execution time of a function.

    Args:
        name: Optional name for the operation (defaults to function name).
        log_level: Logging level for timing output.
    """

    def decorator(func: Callable) -> Callable:
        op_name = name or func.__name__

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            _cuda_sync(True)
            start_time = time.perf_counter()
            result = func(*args, **kwargs)
            _cuda_sync(True)

            elapsed = time.perf_counter() - start_time
            logger.log(log_level, f"{op_name} took {elapsed * 1000:.2f}ms")
            return result

        return wrapper

    return decorator
