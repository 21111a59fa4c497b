"""
Per-step timing for the render loop.

Public API:
    TimingStats : rolling per-step averages (milliseconds)
    FpsMeter    : exponentially smoothed frames-per-second
"""

import time
from collections import deque


class TimingStats:
    """Track rolling timing statistics for different processing steps."""

    def __init__(self, max_samples: int = 100):
        self.max_samples = max_samples
        self._timings: dict[str, deque] = {}

    def add_timing(self, step_name: str, duration_ms: float):
        if step_name not in self._timings:
            self._timings[step_name] = deque(maxlen=self.max_samples)
        self._timings[step_name].append(duration_ms)

    def get_average_timings(self) -> dict[str, float]:
        return {
            step: (sum(times) / len(times)) if times else 0.0
            for step, times in self._timings.items()
        }

    def get_stats_summary(self) -> str:
        """One-line summary of every step except the frame total."""
        averages = self.get_average_timings()
        return " ".join(
            f"{step}={avg:.1f}ms"
            for step, avg in averages.items()
            if step != "total_frame"
        )

    def measure(self, step_name: str):
        """Context manager recording the wall time of a block under ``step_name``."""
        return _Measure(self, step_name)


class _Measure:
    def __init__(self, stats: TimingStats, step_name: str):
        self.stats = stats
        self.step_name = step_name
        self.start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self):
        self.start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.elapsed_ms = (time.perf_counter() - self.start) * 1000
        self.stats.add_timing(self.step_name, self.elapsed_ms)
        return False


class FpsMeter:
    """Smoothed FPS: ``fps = 0.9 * fps + 0.1 * instantaneous``."""

    def __init__(self, smoothing: float = 0.9):
        self.smoothing = smoothing
        self.fps = 0.0
        self._last = None

    def tick(self, now: float = None) -> float:
        now = time.time() if now is None else now
        if self._last is not None and now > self._last:
            instant = 1.0 / (now - self._last)
            self.fps = self.smoothing * self.fps + (1 - self.smoothing) * instant
        self._last = now
        return self.fps
