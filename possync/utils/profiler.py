"""
Profiling utilities for the POS offline sync engine.

Provides:
- ``current_rss_bytes`` for the queue manager's memory ceiling and the
  orchestrator's health check.
- ``profile_block``, a context manager used around operator-triggered
  operations (full resync, retry-all) to capture wall-clock duration, peak RSS
  and CPU usage for the operation history.

Usage examples:
    from possync.utils.profiler import profile_block

    with profile_block("force_full_sync") as stats:
        await orchestrator.delta.force_full_sync()

    print(stats.duration_seconds, stats.peak_rss_bytes)
"""

from __future__ import annotations

import contextlib
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Generator, Optional

import psutil


def current_rss_bytes() -> Optional[int]:
    """Resident set size of this process, or None if it cannot be read."""
    try:
        return psutil.Process().memory_info().rss
    except psutil.Error:
        return None


@dataclass
class ProfileStats:
    """
    Container for profiling measurements.
    """

    label: str
    start_ts: float = field(default=0.0)
    end_ts: float = field(default=0.0)
    duration_seconds: float = field(default=0.0)
    peak_rss_bytes: Optional[int] = field(default=None)
    cpu_percent: Optional[float] = field(default=None)
    extra: dict[str, Any] = field(default_factory=dict)

    def as_detail(self) -> dict[str, Any]:
        """Rounded view suitable for logs and the operation history."""
        return {
            "duration_seconds": round(self.duration_seconds, 3),
            "peak_rss_bytes": self.peak_rss_bytes,
            "cpu_percent": round(self.cpu_percent, 1) if self.cpu_percent is not None else None,
            **self.extra,
        }


@contextlib.contextmanager
def profile_block(
    label: str, sample_interval_ms: int = 50, sample_rss: bool = True
) -> Generator[ProfileStats, None, None]:
    """
    Context manager to profile a block of code.

    Measures:
    - Wall-clock duration (perf_counter)
    - Peak RSS via background sampling thread (psutil)
    - CPU percent (psutil, best-effort snapshot)

    Parameters
    ----------
    label : str
        Human-friendly label for the profiled block.
    sample_interval_ms : int
        Interval in milliseconds for RSS sampling.
    sample_rss : bool
        Whether to run the background RSS sampler. Short operations only need
        the start/end snapshot.

    Notes
    -----
    The block may contain ``await`` points; the sampler runs on its own thread
    and does not touch the event loop.
    """
    stats = ProfileStats(label=label)
    process = psutil.Process()
    peak_rss = process.memory_info().rss
    stop_sampling = threading.Event()

    def _sample_memory() -> None:
        nonlocal peak_rss
        while not stop_sampling.is_set():
            try:
                peak_rss = max(peak_rss, process.memory_info().rss)
            except psutil.Error:
                return
            stop_sampling.wait(timeout=sample_interval_ms / 1000.0)

    # CPU percent needs a priming call
    process.cpu_percent(interval=None)

    sampler: Optional[threading.Thread] = None
    if sample_rss:
        sampler = threading.Thread(target=_sample_memory, daemon=True)
        sampler.start()

    stats.start_ts = time.perf_counter()
    try:
        yield stats
    finally:
        stats.end_ts = time.perf_counter()
        stats.duration_seconds = stats.end_ts - stats.start_ts

        stop_sampling.set()
        if sampler is not None:
            sampler.join(timeout=1.0)
        else:
            peak_rss = max(peak_rss, process.memory_info().rss)

        stats.peak_rss_bytes = peak_rss if peak_rss > 0 else None
        stats.cpu_percent = process.cpu_percent(interval=None)


__all__ = ["ProfileStats", "current_rss_bytes", "profile_block"]
