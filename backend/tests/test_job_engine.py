"""End-to-end tests for starting, running and stopping jobs against a fake broker."""

import asyncio
import json
from unittest.mock import patch

import pytest

from conftest import drain
from errors import BrokerError, BrokerNotConnectedError, JobConfigError, JobNotFoundError
from services.broker import BrokerConnection
from services.job_configs import (
    ConsumeConfig,
    LoadTestConsumerConfig,
    LoadTestProducerConfig,
    ProduceConfig,
)


async def wait_until_stopped(engine, job_id, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while job_id in engine.registry:
        if loop.time() > deadline:
            raise AssertionError(f"job {job_id} still running")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
class TestSetupValidation:
    async def test_missing_topic(self, job_engine, job_store):
        with pytest.raises(JobConfigError):
            await job_engine.start_produce(ProduceConfig(message="hi"))
        assert await job_store.count_all() == 0

    async def test_missing_message_without_accumulation(self, job_engine):
        with pytest.raises(JobConfigError):
            await job_engine.start_produce(ProduceConfig(topic="orders"))

    async def test_load_consumer_requires_group_id(self, job_engine, job_store):
        with pytest.raises(JobConfigError) as exc_info:
            await job_engine.start_load_test_consumer(LoadTestConsumerConfig(topic="orders"))
        assert exc_info.value.message == "Topic and Group ID are required"
        assert await job_store.count_all() == 0

    async def test_not_connected(self, job_engine, job_store):
        job_engine.connection = BrokerConnection()
        with pytest.raises(BrokerNotConnectedError):
            await job_engine.start_consume(ConsumeConfig(topic="orders"))
        assert await job_store.count_all() == 0

    async def test_connect_failure_leaves_failed_record(self, job_engine, job_store, fake_client):
        fake_client.producer_connect_error = ConnectionRefusedError("ECONNREFUSED")

        with pytest.raises(BrokerError):
            await job_engine.start_load_test_producer(LoadTestProducerConfig(topic="orders"))

        jobs = await job_store.list_all()
        assert len(jobs) == 1
        assert jobs[0]["status"] == "failed"
        assert "ECONNREFUSED" in jobs[0]["stats"]["error"]
        assert len(job_engine.registry) == 0


@pytest.mark.asyncio
class TestProduce:
    async def test_single_record_returns_final_stats(self, job_engine, job_store, fake_client, broadcaster):
        subscription = broadcaster.subscribe()

        result = await job_engine.start_produce(ProduceConfig(topic="orders", message="hello", count=1))

        assert result["status"] == "completed"
        assert result["stats"]["total"] == 1
        assert result["stats"]["success"] == 1
        assert result["jobId"] not in job_engine.registry

        record = await job_store.get_by_id(result["jobId"])
        assert record["status"] == "completed"
        assert record["stats"]["total"] == 1

        producer = fake_client.producers[-1]
        assert producer.disconnects == 1
        payload = json.loads(producer.sent[0].value)
        assert payload["message"] == "hello"
        assert payload["sequence"] == 1
        assert producer.sent[0].key == "key-1"

        types = [e["type"] for e in drain(subscription)]
        assert types == ["produce", "produce-complete"]

    async def test_count_reports_progress_then_completes(self, job_engine, job_store, broadcaster):
        subscription = broadcaster.subscribe()

        result = await job_engine.start_produce(ProduceConfig(topic="orders", message="m", count=5))
        assert result["status"] == "running"
        await wait_until_stopped(job_engine, result["jobId"])

        events = drain(subscription)
        produce_events = [e for e in events if e["type"] == "produce"]
        assert [e["data"]["progress"] for e in produce_events] == [
            {"current": n, "total": 5} for n in range(1, 6)
        ]
        assert events[-1]["type"] == "produce-complete"
        assert sum(1 for e in events if e["type"] == "produce-complete") == 1

        record = await job_store.get_by_id(result["jobId"])
        assert record["status"] == "completed"
        assert record["stats"]["total"] == 5

    async def test_accumulation_stops_after_end(self, job_engine, job_store, fake_client):
        config = ProduceConfig(
            topic="orders",
            accumulation={"enabled": True, "start": 1, "end": 3, "interval": 10, "prefix": "ORD"},
        )

        result = await job_engine.start_produce(config)
        await wait_until_stopped(job_engine, result["jobId"])

        producer = fake_client.producers[-1]
        labels = [json.loads(r.value)["message"] for r in producer.sent]
        assert labels == ["ORD01", "ORD02", "ORD03"]
        assert [r.key for r in producer.sent] == ["key-1", "key-2", "key-3"]
        record = await job_store.get_by_id(result["jobId"])
        assert record["stats"]["total"] == 3
        assert record["status"] == "completed"

    async def test_send_errors_are_counted_not_fatal(self, job_engine, fake_client):
        result = await job_engine.start_produce(
            ProduceConfig(topic="orders", message="m", accumulation={"interval": 10})
        )
        producer = fake_client.producers[-1]
        producer.send_error = TimeoutError("Request timeout")
        await asyncio.sleep(0.1)

        stats = (await job_engine.stop_job(result["jobId"]))["stats"]

        assert stats["failed"] >= 1
        assert stats["success"] == 0
        assert stats["total"] == stats["failed"]

    async def test_stop_twice(self, job_engine, broadcaster):
        subscription = broadcaster.subscribe()
        result = await job_engine.start_produce(
            ProduceConfig(topic="orders", message="m", accumulation={"interval": 10})
        )
        first = await job_engine.stop_job(result["jobId"])
        second = await job_engine.stop_job(result["jobId"])

        assert first["alreadyStopped"] is False
        assert first["status"] == "completed"
        assert second["alreadyStopped"] is True
        assert second["status"] == "completed"
        assert second["stats"]["total"] == first["stats"]["total"]

        completes = [e for e in drain(subscription) if e["type"] == "produce-complete"]
        assert len(completes) == 1

    async def test_stop_after_natural_completion(self, job_engine):
        result = await job_engine.start_produce(ProduceConfig(topic="orders", message="m", count=2))
        await wait_until_stopped(job_engine, result["jobId"])

        stopped = await job_engine.stop_job(result["jobId"], job_type="produce")

        assert stopped["alreadyStopped"] is True
        assert stopped["status"] == "completed"
        assert stopped["stats"]["total"] == 2

    async def test_stop_unknown_job(self, job_engine):
        with pytest.raises(JobNotFoundError):
            await job_engine.stop_job("no-such-job")

    async def test_unknown_compression_rejected_before_record(self, job_engine, job_store, fake_client):
        with pytest.raises(JobConfigError) as exc_info:
            await job_engine.start_produce(
                ProduceConfig(topic="orders", message="m", compression="bogus")
            )
        assert exc_info.value.field == "compression"
        assert await job_store.count_all() == 0
        assert fake_client.producers == []

    async def test_stop_checks_job_type(self, job_engine):
        result = await job_engine.start_produce(
            ProduceConfig(topic="orders", message="m", accumulation={"interval": 10})
        )
        with pytest.raises(JobNotFoundError):
            await job_engine.stop_job(result["jobId"], job_type="consume")
        assert result["jobId"] in job_engine.registry

    async def test_logs(self, job_engine):
        result = await job_engine.start_produce(ProduceConfig(topic="orders", message="hi", count=1))

        logs = await job_engine.get_logs(result["jobId"])
        assert logs["total"] == 1
        assert logs["logs"][0]["status"] == "success"
        assert logs["stats"]["total"] == 1

        assert job_engine.clear_logs(result["jobId"]) is True
        assert (await job_engine.get_logs(result["jobId"]))["total"] == 0


@pytest.mark.asyncio
class TestConsume:
    async def test_tracks_sequences_and_gaps(self, job_engine, fake_client, broadcaster):
        subscription = broadcaster.subscribe()
        result = await job_engine.start_consume(ConsumeConfig(topic="orders"))
        assert result["groupId"].startswith("kafka-test-group-")

        consumer = fake_client.consumers[-1]
        for seq in (1, 2, 4, 5, 9):
            consumer.feed({"message": f"TEST0{seq}", "sequence": seq})
        consumer.feed("not json")
        await asyncio.sleep(0.05)

        gaps = await job_engine.missing_sequences(result["jobId"], 1, 10)
        assert gaps["missing"] == [3, 6, 7, 8, 10]
        assert gaps["ranges"] == ["3", "6-8", "10"]

        stats = (await job_engine.stop_job(result["jobId"]))["stats"]
        assert stats["received"] == 5
        assert stats["parseErrors"] == 1
        assert stats["uniqueSequences"] == 5
        assert consumer.disconnects == 1

        events = drain(subscription)
        consume_events = [e for e in events if e["type"] == "consume"]
        assert len(consume_events) == 6
        assert consume_events[-1]["data"]["status"] == "error"
        assert events[-1]["type"] == "consume-complete"

        # still answerable from the job log after the job has stopped
        gaps = await job_engine.missing_sequences(result["jobId"])
        assert gaps["missing"] == [3, 6, 7, 8]

    async def test_subscribe_failure(self, job_engine, job_store, fake_client):
        fake_client.consumer_subscribe_error = RuntimeError("LEADER_NOT_AVAILABLE")

        with pytest.raises(BrokerError):
            await job_engine.start_consume(ConsumeConfig(topic="orders", groupId="g1"))

        jobs = await job_store.list_all(job_type="consume")
        assert jobs[0]["status"] == "failed"
        assert len(job_engine.registry) == 0


@pytest.mark.asyncio
class TestLoadTests:
    async def test_producer_hits_target_rate_and_completes_once(
        self, job_engine, job_store, fake_client, broadcaster
    ):
        subscription = broadcaster.subscribe()
        config = LoadTestProducerConfig(
            topic="orders", targetThroughput=100, duration=2, recordSize=100
        )

        result = await job_engine.start_load_test_producer(config)
        await wait_until_stopped(job_engine, result["jobId"], timeout=6)

        record = await job_store.get_by_id(result["jobId"])
        stats = record["stats"]
        assert record["status"] == "completed"
        assert 150 <= stats["totalRecords"] <= 210
        assert stats["successRecords"] == stats["totalRecords"]
        assert stats["percentiles"]["p50"] >= 0
        assert stats["running"] is False
        assert len(stats["throughputHistory"]) >= 1

        producer = fake_client.producers[-1]
        payloads = [json.loads(r.value) for r in producer.sent]
        assert all(len(p["message"]) == 100 for p in payloads)
        assert [p["sequence"] for p in payloads[:3]] == [0, 1, 2]
        assert [r.key for r in producer.sent[:3]] == ["key-0", "key-1", "key-2"]
        assert producer.disconnects == 1

        events = drain(subscription)
        assert sum(1 for e in events if e["type"] == "loadtest-complete") == 1
        assert any(e["type"] == "loadtest-stats" for e in events)

    async def test_producer_batches(self, job_engine, fake_client):
        config = LoadTestProducerConfig(
            topic="orders", targetThroughput=200, duration=1, recordSize=10, batchSize=10
        )
        result = await job_engine.start_load_test_producer(config)
        await wait_until_stopped(job_engine, result["jobId"], timeout=4)

        producer = fake_client.producers[-1]
        assert len(producer.sent) == producer.batches * 10
        assert 10 <= producer.batches <= 21

    async def test_manual_stop_before_deadline(self, job_engine, broadcaster):
        subscription = broadcaster.subscribe()
        result = await job_engine.start_load_test_producer(
            LoadTestProducerConfig(topic="orders", targetThroughput=50, duration=30)
        )
        await asyncio.sleep(0.1)

        stats = (await job_engine.stop_job(result["jobId"], job_type="loadtest-producer"))["stats"]
        await asyncio.sleep(0.05)

        assert stats["running"] is False
        completes = [e for e in drain(subscription) if e["type"] == "loadtest-complete"]
        assert len(completes) == 1

    async def test_consumer_stops_at_deadline(self, job_engine, job_store, fake_client):
        config = LoadTestConsumerConfig(topic="orders", groupId="load-group", duration=0.2)
        result = await job_engine.start_load_test_consumer(config)
        consumer = fake_client.consumers[-1]
        assert consumer.group_id == "load-group"

        consumer.feed("x" * 10)
        consumer.feed("x" * 10)
        await asyncio.sleep(0.3)
        consumer.feed("x" * 10)
        await wait_until_stopped(job_engine, result["jobId"])

        record = await job_store.get_by_id(result["jobId"])
        assert record["status"] == "completed"
        assert 2 <= record["stats"]["received"] <= 3
        assert consumer.disconnects == 1

    async def test_consumer_notices_deadline_on_next_message(
        self, job_engine, job_store, fake_client, broadcaster
    ):
        subscription = broadcaster.subscribe()
        with patch.object(job_engine.loops, "start_deadline"):
            result = await job_engine.start_load_test_consumer(
                LoadTestConsumerConfig(topic="orders", groupId="load-group", duration=0.1)
            )
            consumer = fake_client.consumers[-1]

            consumer.feed("x" * 10)
            await asyncio.sleep(0.2)
            assert result["jobId"] in job_engine.registry

            consumer.feed("x" * 10)
            await wait_until_stopped(job_engine, result["jobId"])

        record = await job_store.get_by_id(result["jobId"])
        assert record["status"] == "completed"
        assert record["stats"]["received"] == 2
        completes = [e for e in drain(subscription) if e["type"] == "loadtest-complete"]
        assert len(completes) == 1

    async def test_invalid_acks_rejected_before_record(self, job_engine, job_store):
        with pytest.raises(JobConfigError) as exc_info:
            await job_engine.start_load_test_producer(
                LoadTestProducerConfig(topic="orders", acks="7")
            )
        assert exc_info.value.field == "acks"
        assert await job_store.count_all() == 0

    async def test_running_list_and_stats(self, job_engine):
        result = await job_engine.start_load_test_producer(
            LoadTestProducerConfig(topic="orders", targetThroughput=20, duration=30)
        )
        await asyncio.sleep(0.1)

        running = await job_engine.list_running("loadtest-producer")
        assert [j["jobId"] for j in running] == [result["jobId"]]

        live = await job_engine.get_stats(result["jobId"], include_samples=True)
        assert live["status"] == "running"
        assert "latencies" in live["stats"]

        await job_engine.stop_all("loadtest-producer")
        assert await job_engine.list_running() == []

        stored = await job_engine.get_stats(result["jobId"])
        assert stored["status"] == "completed"
