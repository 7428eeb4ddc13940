"""Tests for the per-job stats accumulators."""

import random

import pytest

from services.stats import ConsumerStatsAccumulator, LatencySampleSet, StatsAccumulator


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_accumulator(clock, **kwargs):
    kwargs.setdefault("flush_interval", 1.0)
    kwargs.setdefault("history_limit", 300)
    kwargs.setdefault("sample_limit", 1000)
    return StatsAccumulator(clock=clock, wall_clock=clock, **kwargs)


class TestLatencySampleSet:
    def test_keeps_everything_below_limit(self):
        samples = LatencySampleSet(limit=10)
        for n in range(5):
            samples.add(n)
        assert samples.values() == [0, 1, 2, 3, 4]

    def test_reservoir_stays_bounded(self):
        samples = LatencySampleSet(limit=100, rng=random.Random(42))
        for n in range(10_000):
            samples.add(n)
        assert len(samples) == 100
        assert samples.seen == 10_000
        assert all(0 <= v < 10_000 for v in samples.values())


class TestStatsAccumulator:
    def test_counters_and_error_rate(self):
        clock = FakeClock()
        acc = make_accumulator(clock)
        acc.record_success(latency_ms=5)
        acc.record_success(latency_ms=15)
        acc.record_failure(TimeoutError("Request timeout"))
        acc.record_failure(ValueError("bad"))

        snapshot = acc.snapshot()
        assert snapshot["total"] == 4
        assert snapshot["success"] == 2
        assert snapshot["failed"] == 2
        assert snapshot["errorRate"] == pytest.approx(50.0)
        assert snapshot["timeoutErrors"] == 1
        assert snapshot["otherErrors"] == 1
        assert snapshot["latencySamples"] == 2
        assert snapshot["percentiles"]["max"] == 15

    def test_error_rate_zero_without_records(self):
        acc = make_accumulator(FakeClock())
        assert acc.snapshot()["errorRate"] == 0

    def test_record_style_counter_names(self):
        acc = make_accumulator(FakeClock(), style="records")
        acc.record_success(latency_ms=1, count=10)
        acc.record_failure(ConnectionError(), count=5)

        snapshot = acc.snapshot()
        assert snapshot["totalRecords"] == 15
        assert snapshot["successRecords"] == 10
        assert snapshot["failedRecords"] == 5
        assert snapshot["networkErrors"] == 5
        assert "success" not in snapshot

    def test_flush_waits_for_interval(self):
        clock = FakeClock()
        acc = make_accumulator(clock, record_size=100)
        acc.record_success(latency_ms=1)
        clock.advance(0.5)
        assert acc.maybe_flush() is False
        assert len(acc.throughput_history) == 0

    def test_flush_amortizes_over_elapsed_time(self):
        clock = FakeClock()
        acc = make_accumulator(clock, record_size=1024)
        for _ in range(20):
            acc.record_success(latency_ms=1)
        clock.advance(2.0)

        assert acc.maybe_flush() is True
        point = acc.throughput_history[-1]
        assert point["recordsPerSec"] == pytest.approx(10.0)
        assert point["mbPerSec"] == pytest.approx(20 * 1024 / 2.0 / (1024 * 1024))
        assert acc.error_rate_history[-1]["errorRate"] == 0

    def test_history_is_bounded(self):
        clock = FakeClock()
        acc = make_accumulator(clock, history_limit=5)
        for _ in range(20):
            acc.record_success(latency_ms=1)
            clock.advance(1.0)
            acc.maybe_flush()
        assert len(acc.throughput_history) == 5
        assert len(acc.error_rate_history) == 5

    def test_total_never_decreases(self):
        clock = FakeClock()
        acc = make_accumulator(clock)
        last = 0
        for n in range(50):
            if n % 3:
                acc.record_success(latency_ms=n)
            else:
                acc.record_failure(Exception("network down"))
            total = acc.snapshot()["total"]
            assert total >= last
            last = total

    def test_finalize_short_run_counts_as_one_second(self):
        clock = FakeClock()
        acc = make_accumulator(clock, record_size=1024 * 1024)
        for _ in range(4):
            acc.record_success(latency_ms=1)
        clock.advance(0.2)

        final = acc.finalize()
        assert final["running"] is False
        assert final["recordsPerSec"] == pytest.approx(4.0)
        assert final["mbPerSec"] == pytest.approx(4.0)
        assert final["durationSeconds"] == 1

    def test_finalize_uses_elapsed_time(self):
        clock = FakeClock()
        acc = make_accumulator(clock)
        for _ in range(100):
            acc.record_success(latency_ms=1)
        clock.advance(4.0)
        assert acc.finalize()["recordsPerSec"] == pytest.approx(25.0)

    def test_finalize_is_frozen(self):
        clock = FakeClock()
        acc = make_accumulator(clock)
        acc.record_success(latency_ms=1)
        first = acc.finalize()

        acc.record_success(latency_ms=1)
        acc.record_failure(Exception("late"))
        clock.advance(10)

        assert acc.finalize() == first
        assert acc.snapshot() == first
        assert acc.maybe_flush() is False

    def test_samples_only_on_request(self):
        acc = make_accumulator(FakeClock())
        acc.record_success(latency_ms=3, ack_latency_ms=2)
        assert "latencies" not in acc.snapshot()

        snapshot = acc.snapshot(include_samples=True)
        assert snapshot["latencies"] == [3]
        assert snapshot["ackLatencies"] == [2]


class TestConsumerStatsAccumulator:
    def test_counts_messages_and_sequences(self):
        clock = FakeClock()
        acc = ConsumerStatsAccumulator(
            message_size=100, clock=clock, wall_clock=clock, flush_interval=1.0
        )
        for seq in (1, 2, 2, 4):
            acc.record_message(sequence=seq, lag=7)
        acc.record_parse_error()

        snapshot = acc.snapshot()
        assert snapshot["received"] == 4
        assert snapshot["totalRecords"] == 4
        assert snapshot["uniqueSequences"] == 3
        assert snapshot["lag"] == 7
        assert snapshot["parseErrors"] == 1
        assert acc.observed_sequences() == {1, 2, 4}

    def test_throughput_counts_received(self):
        clock = FakeClock()
        acc = ConsumerStatsAccumulator(
            message_size=100, clock=clock, wall_clock=clock, flush_interval=1.0
        )
        for _ in range(30):
            acc.record_message()
        clock.advance(3.0)
        final = acc.finalize()
        assert final["recordsPerSec"] == pytest.approx(10.0)
        assert final["running"] is False
