"""Start parameters for each job type.

Request bodies use camelCase (``targetThroughput``, ``groupId``) and the
same names are stored in the job record's ``config``. Missing or invalid
values are reported as JobConfigError by ``validate_setup()`` so they are
rejected before any job record exists.
"""

from typing import Optional, Union

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from config import settings
from errors import JobConfigError
from services.kafka_client import normalize_acks, normalize_compression


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def job_config(self) -> dict:
        """Parameters as stored on the job record."""
        return self.model_dump(by_alias=True, exclude_none=True, exclude={"job_name"})


def _check_delivery(compression, acks) -> None:
    """Reject compression and acks values the producer would refuse."""
    try:
        normalize_compression(compression)
    except ValueError as e:
        raise JobConfigError(str(e), field="compression")
    try:
        normalize_acks(acks)
    except ValueError as e:
        raise JobConfigError(str(e), field="acks")


class Accumulation(CamelModel):
    """Sequence-numbered message generation for the continuous producer."""

    enabled: bool = False
    start: int = 1
    end: Optional[int] = None
    prefix: str = "TEST"
    padding: int = 2
    interval: int = 1000  # ms between records


class ProduceConfig(CamelModel):
    topic: Optional[str] = None
    message: Optional[str] = None
    accumulation: Optional[Accumulation] = None
    count: Optional[int] = None
    compression: Union[int, str, None] = None
    acks: Union[int, str, None] = None
    job_name: Optional[str] = None

    @property
    def accumulating(self) -> bool:
        return bool(self.accumulation and self.accumulation.enabled)

    def validate_setup(self) -> None:
        if not self.topic:
            raise JobConfigError("Topic is required", field="topic")
        if not self.message and not self.accumulating:
            raise JobConfigError("Topic and message are required", field="message")
        if self.count is not None and self.count < 1:
            raise JobConfigError("count must be at least 1", field="count")
        if self.accumulation is not None:
            if self.accumulation.interval < 0:
                raise JobConfigError("interval cannot be negative", field="interval")
            if self.accumulation.end is not None and self.accumulation.end < self.accumulation.start:
                raise JobConfigError("end must not be before start", field="end")
        _check_delivery(self.compression, self.acks)


class ConsumeConfig(CamelModel):
    topic: Optional[str] = None
    group_id: Optional[str] = None
    from_beginning: bool = False
    job_name: Optional[str] = None

    def validate_setup(self) -> None:
        if not self.topic:
            raise JobConfigError("Topic is required", field="topic")


class LoadTestProducerConfig(CamelModel):
    topic: Optional[str] = None
    target_throughput: Optional[float] = None  # records/sec, <= 0 means unbounded
    duration: Optional[float] = None  # seconds
    record_size: Optional[int] = None  # bytes
    batch_size: Optional[int] = None
    compression: Union[int, str, None] = None
    acks: Union[int, str, None] = None
    job_name: Optional[str] = None

    @property
    def resolved_duration(self) -> float:
        return self.duration or settings.default_loadtest_duration_seconds

    @property
    def resolved_record_size(self) -> int:
        return self.record_size if self.record_size is not None else settings.default_record_size

    @property
    def resolved_batch_size(self) -> int:
        return self.batch_size or 1

    @property
    def tick_interval(self) -> float:
        """Seconds between batches; 0 when the rate is unbounded."""
        if not self.target_throughput or self.target_throughput <= 0:
            return 0.0
        return self.resolved_batch_size / self.target_throughput

    def validate_setup(self) -> None:
        if not self.topic:
            raise JobConfigError("Topic is required", field="topic")
        if self.duration is not None and self.duration <= 0:
            raise JobConfigError("duration must be positive", field="duration")
        if self.record_size is not None and self.record_size < 0:
            raise JobConfigError("recordSize cannot be negative", field="recordSize")
        if self.batch_size is not None and self.batch_size < 1:
            raise JobConfigError("batchSize must be at least 1", field="batchSize")
        _check_delivery(self.compression, self.acks)

    def job_config(self) -> dict:
        config = super().job_config()
        config.update({
            "targetThroughput": self.target_throughput if self.target_throughput else -1,
            "duration": self.resolved_duration,
            "recordSize": self.resolved_record_size,
            "batchSize": self.resolved_batch_size,
        })
        return config


class LoadTestConsumerConfig(CamelModel):
    topic: Optional[str] = None
    group_id: Optional[str] = None
    from_beginning: bool = False
    duration: Optional[float] = None
    message_size: Optional[int] = None
    job_name: Optional[str] = None

    @property
    def resolved_duration(self) -> float:
        return self.duration or settings.default_loadtest_duration_seconds

    @property
    def resolved_message_size(self) -> int:
        return self.message_size if self.message_size is not None else settings.default_record_size

    def validate_setup(self) -> None:
        if not self.topic or not self.group_id:
            raise JobConfigError("Topic and Group ID are required", field="topic")
        if self.duration is not None and self.duration <= 0:
            raise JobConfigError("duration must be positive", field="duration")

    def job_config(self) -> dict:
        config = super().job_config()
        config.update({
            "duration": self.resolved_duration,
            "messageSize": self.resolved_message_size,
        })
        return config


class PerfProducerConfig(CamelModel):
    """Arguments for kafka-producer-perf-test.sh."""

    topic: Optional[str] = None
    num_records: int = -1  # -1 runs until the timeout
    record_size: int = 1024
    throughput: float = -1  # records/sec, -1 is unthrottled
    compression: Union[int, str] = "none"
    batch_size: int = 16384  # bytes
    acks: Union[int, str] = "all"
    timeout: Optional[float] = None  # ms

    @property
    def timeout_seconds(self) -> float:
        return self.timeout / 1000 if self.timeout else settings.perf_test_timeout_seconds

    def validate_setup(self) -> None:
        if not self.topic:
            raise JobConfigError("Topic is required", field="topic")
        if self.record_size < 1:
            raise JobConfigError("recordSize must be at least 1", field="recordSize")
        _check_delivery(self.compression, self.acks)


class PerfConsumerConfig(CamelModel):
    """Arguments for kafka-consumer-perf-test.sh."""

    topic: Optional[str] = None
    num_messages: int = 1000000
    threads: int = 1
    group_id: Optional[str] = None
    from_beginning: bool = True
    timeout: Optional[float] = None  # ms

    @property
    def timeout_seconds(self) -> float:
        return self.timeout / 1000 if self.timeout else settings.perf_test_timeout_seconds

    def validate_setup(self) -> None:
        if not self.topic:
            raise JobConfigError("Topic is required", field="topic")
        if self.num_messages < 1:
            raise JobConfigError("numMessages must be at least 1", field="numMessages")
        if self.threads < 1:
            raise JobConfigError("threads must be at least 1", field="threads")
