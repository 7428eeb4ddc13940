"""Start/stop façade over the broker connection, registry and work loops.

Start sequence for every job type:
    validate setup -> create record (running) -> connect broker resource
    -> register live entry -> launch loop task
A failed connect closes the record as ``failed`` and nothing is registered.
"""

import logging
import time
from typing import Callable, Dict, List, Optional

from fastapi import Request

from errors import BrokerError, JobNotFoundError
from services.broker import BrokerClient, BrokerConnection, ConnectionInfo
from services.events import EventBroadcaster
from services.job_configs import (
    ConsumeConfig,
    LoadTestConsumerConfig,
    LoadTestProducerConfig,
    ProduceConfig,
)
from services.job_logs import JobLogBook
from services.job_registry import JobRegistry, LiveJob
from services.job_store import JobStore
from services.kafka_client import KafkaBrokerClient, SaslSettings
from services.perf_tools import PerfToolRunner
from services.sequences import find_missing_sequences
from services.stats import ConsumerStatsAccumulator, StatsAccumulator
from services.work_loops import WorkLoops

logger = logging.getLogger(__name__)

ClientFactory = Callable[..., BrokerClient]


class JobEngine:
    """Owns every collaborator the jobs share. One instance per application."""

    def __init__(
        self,
        connection: Optional[BrokerConnection] = None,
        store: Optional[JobStore] = None,
        broadcaster: Optional[EventBroadcaster] = None,
        log_book: Optional[JobLogBook] = None,
        registry: Optional[JobRegistry] = None,
        client_factory: Optional[ClientFactory] = None,
        count_send_delay_ms: Optional[int] = None,
        perf_tools: Optional[PerfToolRunner] = None,
    ):
        self.connection = connection or BrokerConnection()
        self.store = store or JobStore()
        self.broadcaster = broadcaster or EventBroadcaster()
        self.log_book = log_book or JobLogBook()
        self.registry = registry or JobRegistry(self.store, self.broadcaster)
        self.loops = WorkLoops(
            self.registry,
            self.broadcaster,
            self.log_book,
            count_send_delay_ms=count_send_delay_ms,
        )
        self.client_factory = client_factory or KafkaBrokerClient
        self.perf_tools = perf_tools or PerfToolRunner(self.connection, self.broadcaster)

    # ------------------------------------------------------------------
    # Broker connection
    # ------------------------------------------------------------------

    async def connect_broker(
        self,
        brokers: List[str],
        client_id: Optional[str] = None,
        sasl: Optional[SaslSettings] = None,
    ) -> List[str]:
        """Connect to a cluster and make it the current one. Returns its topics."""
        client = self.client_factory(brokers, client_id=client_id, sasl=sasl)
        info = ConnectionInfo(
            brokers=list(brokers),
            client_id=client_id,
            sasl_mechanism=sasl.mechanism if sasl else None,
        )
        try:
            return await self.connection.connect(client, info)
        except Exception as e:
            logger.error(f"Kafka connection to {','.join(brokers)} failed: {e}")
            raise BrokerError(f"Failed to connect to Kafka: {e}", operation="connect")

    async def list_topics(self) -> List[str]:
        client = self.connection.require_client()
        try:
            return await client.list_topics()
        except Exception as e:
            raise BrokerError(f"Failed to list topics: {e}", operation="list_topics")

    async def describe_topic(self, name: str) -> dict:
        client = self.connection.require_client()
        try:
            return await client.describe_topic(name)
        except BrokerError:
            raise
        except Exception as e:
            raise BrokerError(f"Failed to describe topic {name}: {e}", operation="describe_topic")

    # ------------------------------------------------------------------
    # Starting jobs
    # ------------------------------------------------------------------

    async def _open_record(self, job_type: str, job_name: Optional[str], config: dict) -> dict:
        record = await self.store.create(job_type, job_name, config)
        logger.info(f"[{record['id'][:8]}] Created {job_type} job '{record['name']}'")
        return record

    async def _fail_start(self, record: dict, resource, error: Exception) -> None:
        job_id = record["id"]
        logger.error(f"[{job_id[:8]}] Failed to start {record['type']} job: {error}")
        try:
            await self.store.mark_failed(job_id, f"Failed to connect: {error}")
        except Exception as e:
            logger.error(f"[{job_id[:8]}] Could not mark job as failed: {e}")
        if resource is None:
            return
        try:
            await resource.disconnect()
        except Exception as e:
            logger.warning(f"[{job_id[:8]}] Error disconnecting after failed start: {e}")

    def _started(self, entry: LiveJob, **extra) -> dict:
        return {
            "success": True,
            "jobId": entry.job_id,
            "name": entry.name,
            "type": entry.job_type,
            "status": "running",
            **extra,
        }

    async def start_produce(self, config: ProduceConfig) -> dict:
        """Start a continuous or count-bounded producer.

        With ``count == 1`` the single record is sent before returning and the
        response carries the final stats.
        """
        config.validate_setup()
        client = self.connection.require_client()
        job_type = "produce"

        record = await self._open_record(job_type, config.job_name, config.job_config())
        job_id = record["id"]
        producer = None
        try:
            producer = client.producer(job_id, compression=config.compression, acks=config.acks)
            await producer.connect()
        except Exception as e:
            await self._fail_start(record, producer, e)
            raise BrokerError(f"Failed to connect producer: {e}", operation="connect")

        entry = self.registry.register(
            job_id,
            job_type,
            producer,
            record["config"],
            StatsAccumulator(style="unit"),
            name=record["name"],
        )

        if config.count == 1:
            await self.loops.produce_count(entry, config, 1, finish=False)
            stats = await self.registry.stop(job_id, reason="count reached")
            return {**self._started(entry), "status": "completed", "stats": stats}

        if config.count:
            self.loops.launch(entry, self.loops.produce_count(entry, config, config.count))
        else:
            self.loops.launch(entry, self.loops.produce_continuous(entry, config))
        return self._started(entry, message="Produce job started")

    async def start_consume(self, config: ConsumeConfig) -> dict:
        config.validate_setup()
        client = self.connection.require_client()
        job_type = "consume"
        group_id = config.group_id or f"kafka-test-group-{int(time.time() * 1000)}"

        record = await self._open_record(
            job_type, config.job_name, {**config.job_config(), "groupId": group_id}
        )
        job_id = record["id"]
        consumer = None
        try:
            consumer = client.consumer(group_id, job_id)
            await consumer.subscribe(config.topic, from_beginning=config.from_beginning)
        except Exception as e:
            await self._fail_start(record, consumer, e)
            raise BrokerError(f"Failed to connect consumer: {e}", operation="subscribe")

        entry = self.registry.register(
            job_id,
            job_type,
            consumer,
            record["config"],
            ConsumerStatsAccumulator(),
            name=record["name"],
        )
        self.loops.launch(entry, self.loops.consume(entry, config))
        return self._started(entry, groupId=group_id, message="Consume job started")

    async def start_load_test_producer(self, config: LoadTestProducerConfig) -> dict:
        config.validate_setup()
        client = self.connection.require_client()
        job_type = "loadtest-producer"

        record = await self._open_record(job_type, config.job_name, config.job_config())
        job_id = record["id"]
        producer = None
        try:
            producer = client.producer(job_id, compression=config.compression, acks=config.acks)
            await producer.connect()
        except Exception as e:
            await self._fail_start(record, producer, e)
            raise BrokerError(f"Failed to connect producer: {e}", operation="connect")

        entry = self.registry.register(
            job_id,
            job_type,
            producer,
            record["config"],
            StatsAccumulator(record_size=config.resolved_record_size, style="records"),
            name=record["name"],
        )
        self.loops.launch(entry, self.loops.load_test_producer(entry, config))
        return self._started(entry, message="Load test started")

    async def start_load_test_consumer(self, config: LoadTestConsumerConfig) -> dict:
        config.validate_setup()
        client = self.connection.require_client()
        job_type = "loadtest-consumer"

        record = await self._open_record(job_type, config.job_name, config.job_config())
        job_id = record["id"]
        consumer = None
        try:
            consumer = client.consumer(config.group_id, job_id)
            await consumer.subscribe(config.topic, from_beginning=config.from_beginning)
        except Exception as e:
            await self._fail_start(record, consumer, e)
            raise BrokerError(f"Failed to connect consumer: {e}", operation="subscribe")

        entry = self.registry.register(
            job_id,
            job_type,
            consumer,
            record["config"],
            ConsumerStatsAccumulator(message_size=config.resolved_message_size),
            name=record["name"],
        )
        self.loops.launch(entry, self.loops.load_test_consumer(entry, config))
        return self._started(entry, message="Load test started")

    # ------------------------------------------------------------------
    # Stopping and inspecting jobs
    # ------------------------------------------------------------------

    async def stop_job(self, job_id: str, job_type: Optional[str] = None) -> dict:
        """Stop one job and return its final status and stats.

        Stopping a job that already finished is not an error: a manual stop
        can lose the race against the job's own completion. The stored
        result is returned with ``alreadyStopped`` set. Raises
        JobNotFoundError only when no such job (of this type) exists, and
        JobPersistenceError when the final write failed.
        """
        entry = self.registry.get(job_id)
        if entry is not None:
            if job_type and entry.job_type != job_type:
                raise JobNotFoundError(job_id, "Job not found")
            stats = await self.registry.stop(job_id)
            if stats is not None:
                return {
                    "jobId": job_id,
                    "status": entry.final_status,
                    "stats": stats,
                    "alreadyStopped": False,
                }

        record = await self.store.get_by_id(job_id)
        if record is None or (job_type and record["type"] != job_type):
            raise JobNotFoundError(job_id, "Job not found")
        logger.info(f"[{job_id[:8]}] Stop requested for job that already ended ({record['status']})")
        return {
            "jobId": job_id,
            "status": record["status"],
            "stats": record["stats"],
            "alreadyStopped": True,
        }

    async def stop_all(self, job_type: Optional[str] = None) -> Dict[str, Optional[dict]]:
        return await self.registry.stop_all(job_type)

    async def list_running(self, job_type: Optional[str] = None) -> List[dict]:
        return await self.registry.list_running(job_type)

    async def get_running(self, job_id: str) -> dict:
        for job in await self.registry.list_running():
            if job["jobId"] == job_id:
                return job
        raise JobNotFoundError(job_id)

    async def get_stats(
        self,
        job_id: str,
        job_type: Optional[str] = None,
        include_samples: bool = False,
    ) -> dict:
        """Live snapshot for running jobs, otherwise the stored final stats."""
        entry = self.registry.get(job_id)
        if entry is not None and (job_type is None or entry.job_type == job_type):
            return {
                "jobId": job_id,
                "type": entry.job_type,
                "status": entry.status,
                "stats": entry.accumulator.snapshot(include_samples=include_samples),
            }

        record = await self.store.get_by_id(job_id)
        if record is None or (job_type and record["type"] != job_type):
            raise JobNotFoundError(job_id, "Job not found")
        return {
            "jobId": job_id,
            "type": record["type"],
            "status": record["status"],
            "stats": record["stats"],
        }

    async def missing_sequences(
        self,
        job_id: str,
        start: Optional[int] = None,
        end: Optional[int] = None,
    ) -> dict:
        """Gap analysis over the sequence numbers a consume job has seen.

        Finished jobs fall back to the sequences still held in the job log.
        """
        entry = self.registry.get(job_id)
        if entry is not None and isinstance(entry.accumulator, ConsumerStatsAccumulator):
            observed = entry.accumulator.observed_sequences()
        elif self.log_book.has(job_id):
            observed = {
                log["sequence"]
                for log in self.log_book.get(job_id, limit=self.log_book.count(job_id))
                if isinstance(log.get("sequence"), int)
            }
        else:
            raise JobNotFoundError(job_id, "No sequences recorded for this job")
        return {"jobId": job_id, **find_missing_sequences(observed, start, end)}

    async def get_logs(self, job_id: str, limit: int = 1000, offset: int = 0) -> dict:
        entry = self.registry.get(job_id)
        if entry is not None:
            stats = entry.accumulator.snapshot()
        else:
            record = await self.store.get_by_id(job_id)
            if record is None and not self.log_book.has(job_id):
                raise JobNotFoundError(job_id, "Job not found")
            stats = record["stats"] if record else None
        return {
            "jobId": job_id,
            "logs": self.log_book.get(job_id, limit=limit, offset=offset),
            "total": self.log_book.count(job_id),
            "stats": stats,
        }

    def clear_logs(self, job_id: str) -> bool:
        return self.log_book.clear(job_id)

    async def delete_job(self, job_id: str) -> bool:
        """Delete a job record. Live jobs are stopped first."""
        if job_id in self.registry:
            await self.registry.stop(job_id)
        self.log_book.clear(job_id)
        return await self.store.delete(job_id)

    async def shutdown(self) -> None:
        """Stop every live job and drop the broker connection."""
        stopped = await self.registry.stop_all()
        if stopped:
            logger.info(f"Stopped {len(stopped)} running job(s) on shutdown")
        await self.connection.disconnect()


def get_engine(request: Request) -> JobEngine:
    """FastAPI dependency returning the application's engine."""
    return request.app.state.engine
