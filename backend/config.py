"""Application configuration from environment variables."""

from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_url: str = "sqlite+aiosqlite:///./data/kafka_test.db"

    # Kafka client defaults
    kafka_client_id: str = "kafka-test-client"
    kafka_request_timeout_ms: int = 30000

    # Scheduler settings
    enable_scheduler: bool = True  # Set ENABLE_SCHEDULER=false to skip history reconciliation
    reconcile_interval_minutes: int = 5

    # Stats accumulation
    stats_flush_interval_seconds: float = 1.0
    throughput_history_limit: int = 300  # ~5 minutes of 1s points
    latency_sample_limit: int = 100_000  # Reservoir size per latency series

    # Job logs (per-unit produce/consume log entries)
    job_log_limit: int = 1000
    job_log_jobs: int = 50  # Most recent jobs whose logs are kept

    # Work loop tuning
    count_send_delay_ms: int = 10  # Gap between records of a count-bounded produce
    stop_grace_seconds: float = 5.0  # Wait for an in-flight tick before cancelling it
    default_loadtest_duration_seconds: int = 60
    default_record_size: int = 1024

    # Event stream
    event_queue_size: int = 1000  # Per-observer backlog before it is dropped

    # Kafka perf-test scripts (kafka-producer-perf-test.sh and friends)
    kafka_home: Optional[str] = None  # Also read from KAFKA_HOME
    perf_test_timeout_seconds: float = 300.0
    perf_result_limit: int = 100

    # Logging
    log_level: str = "INFO"

    # System status endpoint access control
    enable_system_status: bool = True  # Set ENABLE_SYSTEM_STATUS=false to disable

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
