"""Performance monitoring for workflow operations and floor-mapping builds."""
import functools
import logging
import sys
import threading
import time
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger("defects-api.perf")


def timed_async(name: Optional[str] = None, failed: Optional[Callable[[Any], bool]] = None) -> Callable:
    """
    Decorator that measures an async operation, logs it at DEBUG and records
    it in the module-level tracker.  An error is counted when the call raises,
    or when ``failed(result)`` is true for operations that report failure in
    their return value instead.

    Usage::

        @timed_async("change_status")
        async def change_status(...):
            ...
    """
    def decorator(func: Callable) -> Callable:
        op_name = name or func.__name__

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            start = time.perf_counter()
            ok = False
            try:
                result = await func(*args, **kwargs)
                ok = failed is None or not failed(result)
                return result
            finally:
                duration_ms = round((time.perf_counter() - start) * 1000, 2)
                tracker.record_operation(op_name, duration_ms, ok)
                logger.debug(
                    f"{op_name} timed",
                    extra={"duration_ms": duration_ms},
                )
        return wrapper
    return decorator


class PerformanceTracker:
    """
    Thread-safe in-memory tracker.

    Tracks per operation name:
    - call count and average duration
    - failure count
    plus the slowest operation seen.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._durations: Dict[str, list] = {}   # op_name -> [duration_ms, ...]
        self._error_counts: Dict[str, int] = {}  # op_name -> count
        self._slowest_op: Optional[str] = None
        self._slowest_op_ms: float = 0.0

    def record_operation(self, op_name: str, duration_ms: float, ok: bool = True) -> None:
        with self._lock:
            self._durations.setdefault(op_name, []).append(duration_ms)
            if not ok:
                self._error_counts[op_name] = self._error_counts.get(op_name, 0) + 1
            if duration_ms > self._slowest_op_ms:
                self._slowest_op_ms = duration_ms
                self._slowest_op = op_name

    def get_metrics(self) -> Dict[str, Any]:
        """
        Snapshot of all collected metrics.

        Returns
        -------
        dict with keys:
            operations_processed   : int   (all calls, failed included)
            error_count            : int
            error_count_by_op      : dict  {op_name: count}
            op_counts              : dict  {op_name: calls}
            op_avg_durations_ms    : dict  {op_name: avg_ms}
            slowest_op             : str | None
            slowest_op_ms          : float
        """
        with self._lock:
            avgs = {
                op: round(sum(d) / len(d), 2) if d else 0.0
                for op, d in self._durations.items()
            }
            return {
                "operations_processed": sum(len(d) for d in self._durations.values()),
                "error_count": sum(self._error_counts.values()),
                "error_count_by_op": dict(self._error_counts),
                "op_counts": {op: len(d) for op, d in self._durations.items()},
                "op_avg_durations_ms": avgs,
                "slowest_op": self._slowest_op,
                "slowest_op_ms": round(self._slowest_op_ms, 2),
            }

    def reset(self) -> None:
        """Reset all counters (useful in tests)."""
        with self._lock:
            self._durations.clear()
            self._error_counts.clear()
            self._slowest_op = None
            self._slowest_op_ms = 0.0


# Module-level singleton; import this instance everywhere else.
tracker = PerformanceTracker()


def peak_rss_mb() -> float:
    """Peak resident set size of this process in MB; 0.0 where ``resource`` is unavailable."""
    try:
        import resource
    except ImportError:
        return 0.0
    peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # kilobytes on Linux, bytes on macOS
    divisor = 1024 * 1024 if sys.platform == "darwin" else 1024
    return round(peak / divisor, 2)
