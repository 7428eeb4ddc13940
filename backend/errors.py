"""Centralized exception hierarchy for the Kafka load tester.

Provides a structured exception hierarchy for consistent error handling
across the application. All exceptions inherit from KafkaTesterError.
"""


class KafkaTesterError(Exception):
    """Base exception for all Kafka load tester errors."""

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} ({self.details})"
        return self.message


class BrokerNotConnectedError(KafkaTesterError):
    """No broker connection has been established yet."""

    def __init__(self, message: str = "Kafka not connected"):
        super().__init__(message)


class BrokerError(KafkaTesterError):
    """Error from a broker-side operation (connect, metadata, send)."""

    def __init__(self, message: str, operation: str = None):
        super().__init__(message, {"operation": operation} if operation else None)
        self.operation = operation


class JobConfigError(KafkaTesterError):
    """Invalid or missing job parameters, rejected before a job exists."""

    def __init__(self, message: str, field: str = None):
        super().__init__(message)
        self.field = field


class JobNotFoundError(KafkaTesterError):
    """Job is unknown or no longer running."""

    def __init__(self, job_id: str, message: str = "Job not found or not running"):
        super().__init__(message, {"job_id": job_id})
        self.job_id = job_id


class JobPersistenceError(KafkaTesterError):
    """Final job record could not be written.

    Carries the finalized stats so callers can still report them.
    """

    def __init__(self, job_id: str, stats: dict, cause: Exception = None):
        super().__init__(
            f"Failed to persist final stats for job {job_id}",
            {"job_id": job_id, "cause": str(cause) if cause else None},
        )
        self.job_id = job_id
        self.stats = stats
        self.cause = cause


class ConfigurationError(KafkaTesterError):
    """Invalid or missing configuration."""

    def __init__(self, message: str, setting: str = None):
        super().__init__(message, {"setting": setting})
        self.setting = setting


class PerfToolNotFoundError(KafkaTesterError):
    """Kafka's bundled perf-test scripts are not installed."""

    def __init__(self, tool: str):
        super().__init__(
            "Kafka performance test tools not found. Install Kafka or set "
            "KAFKA_HOME, or use the built-in load test instead.",
            {"tool": tool},
        )
        self.tool = tool


class PerfToolError(KafkaTesterError):
    """A perf-test script failed or timed out."""

    def __init__(self, message: str, output: str = None):
        super().__init__(message)
        self.output = output


class PerfResultNotFoundError(KafkaTesterError):
    """No stored perf-test result with this id."""

    def __init__(self, result_id: int):
        super().__init__("Test result not found", {"result_id": result_id})
        self.result_id = result_id
