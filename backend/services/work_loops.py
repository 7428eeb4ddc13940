"""Scheduling strategies for each job type.

Every loop runs in its own task, owns its job's accumulator, and ends the
job by asking the registry to stop it from a separate task (a loop never
awaits its own stop).
"""

import asyncio
import json
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Optional, Set

from config import settings
from services.broker import BrokerMessage, BrokerRecord
from services.cancellation import Ticker
from services.events import (
    CONSUME,
    LOADTEST_STATS,
    PRODUCE,
    EventBroadcaster,
    make_event,
)
from services.job_configs import (
    Accumulation,
    ConsumeConfig,
    LoadTestConsumerConfig,
    LoadTestProducerConfig,
    ProduceConfig,
)
from services.job_logs import JobLogBook
from services.job_registry import JobRegistry, LiveJob
from services.sequences import format_sequence

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _log_id() -> str:
    return uuid.uuid4().hex


class WorkLoops:
    """Runs job loops against the shared registry, broadcaster and log book."""

    def __init__(
        self,
        registry: JobRegistry,
        broadcaster: EventBroadcaster,
        log_book: JobLogBook,
        count_send_delay_ms: Optional[int] = None,
    ):
        self.registry = registry
        self.broadcaster = broadcaster
        self.log_book = log_book
        self.count_send_delay = (
            count_send_delay_ms if count_send_delay_ms is not None else settings.count_send_delay_ms
        ) / 1000
        self._timers: Set[asyncio.Task] = set()

    def launch(self, entry: LiveJob, work) -> asyncio.Task:
        """Start ``work`` as the job's loop task."""
        entry.task = asyncio.create_task(self.run(entry, work))
        return entry.task

    async def run(self, entry: LiveJob, work) -> None:
        """Await a loop coroutine; a crash fails the job instead of leaking."""
        try:
            await work
        except Exception as e:
            logger.error(f"[{entry.job_id[:8]}] {entry.job_type} loop crashed: {e}", exc_info=True)
            entry.error = str(e)[:500]
            self.registry.request_stop(entry.job_id, status="failed", reason="loop crashed")

    def start_deadline(self, entry: LiveJob, seconds: float) -> asyncio.Task:
        """Stop the job after ``seconds`` unless its token is cancelled first."""
        timer = asyncio.ensure_future(self._deadline(entry, seconds))
        self._timers.add(timer)
        timer.add_done_callback(self._timers.discard)
        return timer

    async def _deadline(self, entry: LiveJob, seconds: float) -> None:
        if await entry.token.sleep(seconds):
            logger.info(f"[{entry.job_id[:8]}] Duration of {seconds}s elapsed")
            self.registry.request_stop(entry.job_id, reason="duration elapsed")

    async def _persist_flush(self, entry: LiveJob) -> dict:
        snapshot = entry.accumulator.snapshot()
        await self.registry.update_stats(entry.job_id, snapshot)
        return snapshot

    # ------------------------------------------------------------------
    # Produce
    # ------------------------------------------------------------------

    async def send_unit(
        self,
        entry: LiveJob,
        topic: str,
        label: str,
        sequence: int,
        progress: Optional[dict] = None,
    ) -> bool:
        """Send one sequenced record, log it and publish a ``produce`` event."""
        timestamp = _now_iso()
        record = BrokerRecord(
            key=f"key-{sequence}",
            value=json.dumps({"message": label, "timestamp": timestamp, "sequence": sequence}),
        )
        accumulator = entry.accumulator
        log_entry = {
            "id": _log_id(),
            "timestamp": timestamp,
            "event": label,
            "sequence": sequence,
        }

        started = time.monotonic()
        try:
            await entry.handle.send(topic, [record])
        except Exception as e:
            accumulator.record_failure(e)
            log_entry.update({"status": "failed", "error": str(e)})
            logger.debug(f"[{entry.job_id[:8]}] Send failed for sequence {sequence}: {e}")
            ok = False
        else:
            latency_ms = (time.monotonic() - started) * 1000
            accumulator.record_success(latency_ms=latency_ms, nbytes=record.size)
            log_entry["status"] = "success"
            ok = True

        if progress is not None:
            log_entry["progress"] = progress
        self.log_book.append(entry.job_id, log_entry)
        self.broadcaster.publish(make_event(PRODUCE, {"jobId": entry.job_id, **log_entry}))

        if accumulator.maybe_flush():
            await self._persist_flush(entry)
        return ok

    async def produce_continuous(self, entry: LiveJob, config: ProduceConfig) -> None:
        """One record per interval until stopped or past ``accumulation.end``."""
        accumulation = config.accumulation or Accumulation()
        counter = accumulation.start
        end = accumulation.end
        ticker = Ticker(accumulation.interval / 1000, entry.token)

        while await ticker.wait_next():
            if config.accumulating:
                label = format_sequence(accumulation.prefix, counter, accumulation.padding)
            else:
                label = config.message
            await self.send_unit(entry, config.topic, label, counter)
            counter += 1

            if end is not None and counter > end:
                logger.info(f"[{entry.job_id[:8]}] Reached end of sequence ({end})")
                self.registry.request_stop(entry.job_id, reason="sequence end reached")
                return

    async def produce_count(
        self,
        entry: LiveJob,
        config: ProduceConfig,
        count: int,
        finish: bool = True,
    ) -> None:
        """Send ``count`` records back to back, reporting progress on each."""
        for n in range(1, count + 1):
            if entry.token.cancelled:
                return
            await self.send_unit(
                entry,
                config.topic,
                config.message,
                n,
                progress={"current": n, "total": count},
            )
            if n < count and not await entry.token.sleep(self.count_send_delay):
                return

        if finish:
            self.registry.request_stop(entry.job_id, reason="count reached")

    # ------------------------------------------------------------------
    # Consume
    # ------------------------------------------------------------------

    async def consume(self, entry: LiveJob, config: ConsumeConfig) -> None:
        """Receive until stopped, tracking sequence numbers for gap analysis."""
        accumulator = entry.accumulator

        async def on_message(message: BrokerMessage) -> None:
            timestamp = _now_iso()
            raw = message.value.decode("utf-8", errors="replace") if message.value else ""
            try:
                payload = json.loads(raw)
            except ValueError as e:
                accumulator.record_parse_error()
                log_entry = {
                    "id": _log_id(),
                    "timestamp": timestamp,
                    "event": raw,
                    "status": "error",
                    "error": str(e),
                }
            else:
                sequence = payload.get("sequence") if isinstance(payload, dict) else None
                if not isinstance(sequence, int) or isinstance(sequence, bool):
                    sequence = None
                accumulator.record_message(nbytes=message.size, sequence=sequence, lag=message.lag)
                event = payload.get("message") if isinstance(payload, dict) else None
                log_entry = {
                    "id": _log_id(),
                    "timestamp": timestamp,
                    "receivedAt": timestamp,
                    "event": event or raw,
                    "status": "received",
                    "sequence": sequence,
                    "partition": message.partition,
                    "offset": message.offset,
                    "topic": message.topic,
                }

            self.log_book.append(entry.job_id, log_entry)
            self.broadcaster.publish(make_event(CONSUME, {"jobId": entry.job_id, **log_entry}))
            if accumulator.maybe_flush():
                await self._persist_flush(entry)

        await entry.token.guard(entry.handle.run(on_message))

    # ------------------------------------------------------------------
    # Load tests
    # ------------------------------------------------------------------

    async def _publish_load_stats(self, entry: LiveJob) -> None:
        snapshot = await self._persist_flush(entry)
        self.broadcaster.publish(make_event(LOADTEST_STATS, {
            "jobId": entry.job_id,
            "type": entry.job_type,
            "stats": snapshot,
        }))

    async def load_test_producer(self, entry: LiveJob, config: LoadTestProducerConfig) -> None:
        """Send ``batchSize`` records per tick at the target rate until the duration elapses."""
        accumulator = entry.accumulator
        batch_size = config.resolved_batch_size
        record_size = config.resolved_record_size
        duration = config.resolved_duration
        payload = "x" * record_size
        sequence = 0

        deadline = time.monotonic() + duration
        self.start_deadline(entry, duration)
        ticker = Ticker(config.tick_interval, entry.token)

        while await ticker.wait_next():
            if time.monotonic() >= deadline:
                self.registry.request_stop(entry.job_id, reason="duration elapsed")
                return

            timestamp = _now_iso()
            records = []
            for _ in range(batch_size):
                records.append(BrokerRecord(
                    key=f"key-{sequence}",
                    value=json.dumps({"message": payload, "timestamp": timestamp, "sequence": sequence}),
                ))
                sequence += 1

            started = time.monotonic()
            try:
                await entry.handle.send(config.topic, records)
            except Exception as e:
                accumulator.record_failure(e, count=batch_size)
            else:
                # the batch round trip is the ack latency too
                latency_ms = (time.monotonic() - started) * 1000
                accumulator.record_success(
                    latency_ms=latency_ms,
                    ack_latency_ms=latency_ms,
                    nbytes=record_size * batch_size,
                    count=batch_size,
                )

            if accumulator.maybe_flush():
                await self._publish_load_stats(entry)

    async def load_test_consumer(self, entry: LiveJob, config: LoadTestConsumerConfig) -> None:
        """Count messages and throughput until the duration elapses."""
        accumulator = entry.accumulator
        duration = config.resolved_duration
        deadline = time.monotonic() + duration
        self.start_deadline(entry, duration)

        async def on_message(message: BrokerMessage) -> None:
            accumulator.record_message(nbytes=message.size or None, lag=message.lag)
            if accumulator.maybe_flush():
                await self._publish_load_stats(entry)
            if time.monotonic() >= deadline and not entry.token.cancelled:
                self.registry.request_stop(entry.job_id, reason="duration elapsed")

        await entry.token.guard(entry.handle.run(on_message))
