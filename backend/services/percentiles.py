"""Nearest-rank latency percentiles.

The index rule (``ceil(p / 100 * n) - 1``) matches the numbers the
dashboards have always shown, so it is not interpolated.
"""

import math
from typing import Dict, Iterable

PERCENTILES = {
    "p50": 50,
    "p95": 95,
    "p99": 99,
    "p999": 99.9,
}


def empty_percentiles() -> Dict[str, float]:
    """Zero-filled result used when there are no samples."""
    result = {key: 0 for key in PERCENTILES}
    result.update({"min": 0, "max": 0, "avg": 0})
    return result


def percentile_index(p: float, n: int) -> int:
    """Nearest-rank index of percentile ``p`` in a sorted list of length ``n``."""
    index = math.ceil(p / 100 * n) - 1
    return min(max(index, 0), n - 1)


def calculate_percentiles(latencies: Iterable[float]) -> Dict[str, float]:
    """Summarize latencies (milliseconds) into p50/p95/p99/p999/min/max/avg.

    Empty input returns zeros rather than raising.
    """
    ordered = sorted(latencies)
    n = len(ordered)
    if n == 0:
        return empty_percentiles()

    result = {key: ordered[percentile_index(p, n)] for key, p in PERCENTILES.items()}
    result["min"] = ordered[0]
    result["max"] = ordered[-1]
    result["avg"] = sum(ordered) / n
    return result
