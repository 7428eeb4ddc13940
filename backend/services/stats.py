"""Per-job streaming statistics.

A StatsAccumulator is owned by exactly one work loop. The loop records each
unit of work, calls ``maybe_flush()`` right after, and publishes
``snapshot()`` whenever a flush happened. Memory stays bounded: latency
samples are reservoir-sampled and the throughput history is a fixed-size
window.
"""

import random
import time
from collections import deque
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from config import settings
from services.error_classifier import ErrorCategory, ErrorClassifier, default_classifier
from services.percentiles import calculate_percentiles

BYTES_PER_MB = 1024 * 1024


def _iso(epoch_seconds: Optional[float]) -> Optional[str]:
    if epoch_seconds is None:
        return None
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).isoformat()


class LatencySampleSet:
    """Latency samples with reservoir sampling (Algorithm R) past ``limit``.

    Below the limit every value is kept, so percentiles are exact; above it
    each seen value has an equal chance of being retained.
    """

    def __init__(self, limit: int, rng: Optional[random.Random] = None):
        self.limit = max(1, limit)
        self.seen = 0
        self._samples: List[float] = []
        self._rng = rng or random.Random()

    def add(self, value: float) -> None:
        self.seen += 1
        if len(self._samples) < self.limit:
            self._samples.append(value)
            return
        slot = self._rng.randrange(self.seen)
        if slot < self.limit:
            self._samples[slot] = value

    def values(self) -> List[float]:
        return list(self._samples)

    def __len__(self) -> int:
        return len(self._samples)


class StatsAccumulator:
    """Counters, latency samples and throughput history for one producer job.

    ``style`` picks the counter names in snapshots: ``"unit"`` gives
    ``success``/``failed`` (produce jobs), ``"records"`` gives
    ``totalRecords``/``successRecords``/``failedRecords`` (load tests).
    ``total`` is always present.
    """

    def __init__(
        self,
        record_size: int = 0,
        style: str = "unit",
        flush_interval: Optional[float] = None,
        history_limit: Optional[int] = None,
        sample_limit: Optional[int] = None,
        classifier: Optional[ErrorClassifier] = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ):
        self.record_size = record_size or 0
        self.style = style
        self.flush_interval = (
            flush_interval if flush_interval is not None else settings.stats_flush_interval_seconds
        )
        history_limit = history_limit or settings.throughput_history_limit
        sample_limit = sample_limit or settings.latency_sample_limit
        self.classifier = classifier or default_classifier
        self._clock = clock
        self._wall_clock = wall_clock

        self.total = 0
        self.success = 0
        self.failed = 0
        self.bytes_total = 0
        self.errors: Dict[ErrorCategory, int] = {category: 0 for category in ErrorCategory}
        self.latencies = LatencySampleSet(sample_limit)
        self.ack_latencies = LatencySampleSet(sample_limit)
        self.throughput_history: deque = deque(maxlen=history_limit)
        self.error_rate_history: deque = deque(maxlen=history_limit)
        self.records_per_sec = 0.0
        self.mb_per_sec = 0.0

        self.started_at = self._wall_clock()
        self.ended_at: Optional[float] = None
        self._started_mono = self._clock()
        self._last_flush = self._started_mono
        self._since_flush_count = 0
        self._since_flush_bytes = 0
        self._final: Optional[dict] = None

    @property
    def frozen(self) -> bool:
        return self._final is not None

    @property
    def error_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return self.failed / self.total * 100

    def _completed(self) -> int:
        """Units counted toward throughput."""
        return self.success

    def record_success(
        self,
        latency_ms: Optional[float] = None,
        ack_latency_ms: Optional[float] = None,
        nbytes: Optional[int] = None,
        count: int = 1,
    ) -> None:
        """Absorb ``count`` successfully sent records."""
        if self.frozen:
            return
        if nbytes is None:
            nbytes = self.record_size * count
        self.total += count
        self.success += count
        self.bytes_total += nbytes
        self._since_flush_count += count
        self._since_flush_bytes += nbytes
        if latency_ms is not None:
            self.latencies.add(latency_ms)
            self.ack_latencies.add(latency_ms if ack_latency_ms is None else ack_latency_ms)

    def record_failure(self, error: BaseException, count: int = 1) -> Optional[ErrorCategory]:
        """Absorb ``count`` failed records and bump the matching error bucket."""
        if self.frozen:
            return None
        category = self.classifier.classify(error)
        self.total += count
        self.failed += count
        self.errors[category] += count
        return category

    def maybe_flush(self, now: Optional[float] = None) -> bool:
        """Append a throughput point if a flush interval has elapsed.

        Throughput is amortized over the time since the previous flush, not
        measured instantaneously. Returns True when a point was appended.
        """
        if self.frozen:
            return False
        now = self._clock() if now is None else now
        elapsed = now - self._last_flush
        if elapsed < self.flush_interval or elapsed <= 0:
            return False

        timestamp = int(self._wall_clock() * 1000)
        records_per_sec = self._since_flush_count / elapsed
        self.throughput_history.append({
            "timestamp": timestamp,
            "recordsPerSec": records_per_sec,
            "mbPerSec": self._since_flush_bytes / elapsed / BYTES_PER_MB,
        })
        self.error_rate_history.append({
            "timestamp": timestamp,
            "errorRate": self.error_rate,
            **self._error_counts(),
        })

        run_elapsed = now - self._started_mono
        if run_elapsed > 0:
            self.records_per_sec = self._completed() / run_elapsed
            self.mb_per_sec = self._completed_bytes() / run_elapsed / BYTES_PER_MB

        self._since_flush_count = 0
        self._since_flush_bytes = 0
        self._last_flush = now
        return True

    def _completed_bytes(self) -> int:
        if self.record_size:
            return self._completed() * self.record_size
        return self.bytes_total

    def _error_counts(self) -> Dict[str, int]:
        return {
            "timeoutErrors": self.errors[ErrorCategory.TIMEOUT],
            "networkErrors": self.errors[ErrorCategory.NETWORK],
            "brokerErrors": self.errors[ErrorCategory.BROKER],
            "otherErrors": self.errors[ErrorCategory.OTHER],
        }

    def _counters(self) -> dict:
        if self.style == "records":
            return {
                "total": self.total,
                "totalRecords": self.total,
                "successRecords": self.success,
                "failedRecords": self.failed,
            }
        return {
            "total": self.total,
            "success": self.success,
            "failed": self.failed,
        }

    def snapshot(self, include_samples: bool = False) -> dict:
        """Current counters plus percentiles computed from the samples."""
        if self._final is not None:
            return dict(self._final)

        latencies = self.latencies.values()
        ack_latencies = self.ack_latencies.values()
        snapshot = {
            **self._counters(),
            "running": True,
            "startTime": _iso(self.started_at),
            "endTime": _iso(self.ended_at),
            "recordsPerSec": self.records_per_sec,
            "mbPerSec": self.mb_per_sec,
            "bytes": self.bytes_total,
            "errorRate": self.error_rate,
            **self._error_counts(),
            "latencySamples": len(latencies),
            "percentiles": calculate_percentiles(latencies),
            "ackPercentiles": calculate_percentiles(ack_latencies),
            "throughputHistory": list(self.throughput_history),
            "errorRateHistory": list(self.error_rate_history),
        }
        if include_samples:
            snapshot["latencies"] = latencies
            snapshot["ackLatencies"] = ack_latencies
        return snapshot

    def finalize(self, end_time: Optional[float] = None) -> dict:
        """Freeze the accumulator and return the final snapshot.

        Runs shorter than a second are rated as if they took one second.
        Calling it again returns the same frozen snapshot.
        """
        if self._final is not None:
            return dict(self._final)

        self.ended_at = end_time if end_time is not None else self._wall_clock()
        if end_time is not None:
            elapsed = end_time - self.started_at
        else:
            elapsed = self._clock() - self._started_mono
        if elapsed < 1:
            elapsed = 1

        self.records_per_sec = self._completed() / elapsed
        self.mb_per_sec = self._completed_bytes() / (elapsed * BYTES_PER_MB)

        final = self.snapshot()
        final["running"] = False
        final["durationSeconds"] = elapsed
        self._final = final
        return dict(final)


class ConsumerStatsAccumulator(StatsAccumulator):
    """Receive-side variant: message counts, sequence set and lag."""

    def __init__(self, message_size: int = 0, **kwargs):
        kwargs.setdefault("style", "records")
        super().__init__(record_size=message_size, **kwargs)
        self.received = 0
        self.parse_errors = 0
        self.lag: Optional[int] = None
        self._sequences = set()

    def _completed(self) -> int:
        return self.received

    def record_message(
        self,
        nbytes: Optional[int] = None,
        sequence: Optional[int] = None,
        lag: Optional[int] = None,
    ) -> None:
        """Count one delivered message."""
        if self.frozen:
            return
        if nbytes is None:
            nbytes = self.record_size
        self.total += 1
        self.received += 1
        self.bytes_total += nbytes
        self._since_flush_count += 1
        self._since_flush_bytes += nbytes
        if sequence is not None:
            self._sequences.add(sequence)
        if lag is not None:
            self.lag = lag

    def record_parse_error(self) -> None:
        if not self.frozen:
            self.parse_errors += 1

    def observed_sequences(self) -> set:
        return set(self._sequences)

    def _counters(self) -> dict:
        return {
            "total": self.total,
            "totalRecords": self.total,
            "received": self.received,
        }

    def snapshot(self, include_samples: bool = False) -> dict:
        if self._final is not None:
            return dict(self._final)
        return {
            **self._counters(),
            "running": True,
            "startTime": _iso(self.started_at),
            "endTime": _iso(self.ended_at),
            "recordsPerSec": self.records_per_sec,
            "mbPerSec": self.mb_per_sec,
            "bytes": self.bytes_total,
            "errorRate": 0.0,
            "lag": self.lag if self.lag is not None else 0,
            "uniqueSequences": len(self._sequences),
            "parseErrors": self.parse_errors,
            "throughputHistory": list(self.throughput_history),
        }
