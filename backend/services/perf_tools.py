"""Runs Kafka's bundled perf-test scripts and keeps their results.

``kafka-producer-perf-test.sh`` and ``kafka-consumer-perf-test.sh`` ship with
every Kafka distribution. They are run as subprocesses with an argument
list (never through a shell) against the currently connected cluster, and
their summary output is parsed into the same field names the built-in load
tests report.
"""

import asyncio
import logging
import os
import re
import shutil
import tempfile
import time
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from config import settings
from errors import PerfResultNotFoundError, PerfToolError, PerfToolNotFoundError
from services.broker import BrokerConnection
from services.events import EventBroadcaster, make_event
from services.kafka_client import normalize_acks, normalize_compression

logger = logging.getLogger(__name__)

PRODUCER_TOOL = "kafka-producer-perf-test.sh"
CONSUMER_TOOL = "kafka-consumer-perf-test.sh"

PERF_RESULT = "loadtest"

COMMON_KAFKA_HOMES = ("/opt/kafka", "/usr/local/kafka")

# "1000 records sent, 998.0 records/sec (0.97 MB/sec), 2.10 ms avg latency,
#  40.00 ms max latency, 2 ms 50th, 4 ms 95th, 9 ms 99th, 40 ms 99.9th."
_NUMBER = r"(\d+(?:\.\d+)?)"
_PRODUCER_PATTERNS = {
    "recordsSent": re.compile(rf"{_NUMBER} records sent"),
    "recordsPerSec": re.compile(rf"{_NUMBER} records/sec"),
    "mbPerSec": re.compile(rf"\({_NUMBER} MB/sec\)"),
    "avgLatency": re.compile(rf"{_NUMBER} ms avg latency"),
    "maxLatency": re.compile(rf"{_NUMBER} ms max latency"),
    "p50Latency": re.compile(rf"{_NUMBER} ms 50th"),
    "p95Latency": re.compile(rf"{_NUMBER} ms 95th"),
    "p99Latency": re.compile(rf"{_NUMBER} ms 99th"),
    "p999Latency": re.compile(rf"{_NUMBER} ms 99\.9th"),
}

_CONSUMER_COLUMNS = {
    "data.consumed.in.MB": "totalMB",
    "MB.sec": "mbPerSec",
    "data.consumed.in.nMsg": "totalMessages",
    "nMsg.sec": "recordsPerSec",
    "rebalance.time.ms": "rebalanceTime",
    "fetch.time.ms": "fetchTime",
}


def parse_producer_output(output: str) -> dict:
    """Pull the final summary line out of producer perf-test output.

    The tool prints a progress line every few seconds and the summary last,
    so the last matching value wins.
    """
    result = {key: 0 for key in _PRODUCER_PATTERNS}
    for line in output.splitlines():
        if "records sent" not in line:
            continue
        for key, pattern in _PRODUCER_PATTERNS.items():
            match = pattern.search(line)
            if match:
                result[key] = float(match.group(1))
    return result


def parse_consumer_output(output: str) -> dict:
    """Read the CSV header and data row printed by consumer perf-test."""
    result = {key: 0 for key in _CONSUMER_COLUMNS.values()}
    header: Optional[List[str]] = None
    for line in output.splitlines():
        columns = [c.strip() for c in line.split(",")]
        if "MB.sec" in columns:
            header = columns
            continue
        if header is None or len(columns) != len(header):
            continue
        for name, value in zip(header, columns):
            key = _CONSUMER_COLUMNS.get(name)
            if key is None:
                continue
            try:
                result[key] = float(value)
            except ValueError:
                pass
    return result


def sasl_properties(sasl) -> List[str]:
    """Client properties for a SASL connection, one ``key=value`` per item."""
    if sasl is None:
        return []
    mechanism = (sasl.mechanism or "PLAIN").upper()
    if mechanism.startswith("SCRAM"):
        module = "org.apache.kafka.common.security.scram.ScramLoginModule"
    else:
        module = "org.apache.kafka.common.security.plain.PlainLoginModule"
    return [
        "security.protocol=SASL_PLAINTEXT",
        f"sasl.mechanism={mechanism}",
        f'sasl.jaas.config={module} required username="{sasl.username}" password="{sasl.password}";',
    ]


def producer_command(tool: str, brokers: List[str], config, sasl=None) -> List[str]:
    return [
        tool,
        "--topic", config.topic,
        "--num-records", str(config.num_records),
        "--record-size", str(config.record_size),
        "--throughput", f"{config.throughput:g}",
        "--producer-props",
        f"bootstrap.servers={','.join(brokers)}",
        f"compression.type={normalize_compression(config.compression) or 'none'}",
        f"batch.size={config.batch_size}",
        f"acks={normalize_acks(config.acks)}",
        *sasl_properties(sasl),
    ]


def consumer_command(
    tool: str,
    brokers: List[str],
    config,
    group_id: str,
    properties_file: Optional[str] = None,
) -> List[str]:
    args = [
        tool,
        "--topic", config.topic,
        "--messages", str(config.num_messages),
        "--threads", str(config.threads),
        "--group", group_id,
        "--bootstrap-server", ",".join(brokers),
    ]
    if not config.from_beginning:
        args.append("--from-latest")
    if properties_file:
        args.extend(["--consumer.config", properties_file])
    return args


class PerfResultStore:
    """Most recent perf-test results, newest last."""

    def __init__(self, limit: Optional[int] = None):
        self._results: deque = deque(maxlen=limit or settings.perf_result_limit)
        self._last_id = 0

    def next_id(self) -> int:
        # epoch ms, bumped when two runs finish in the same millisecond
        self._last_id = max(int(time.time() * 1000), self._last_id + 1)
        return self._last_id

    def add(self, result: dict) -> None:
        self._results.append(result)

    def list(self, limit: int = 50, result_type: Optional[str] = None) -> List[dict]:
        results = [r for r in self._results if result_type is None or r["type"] == result_type]
        return list(reversed(results[-limit:])) if limit > 0 else []

    def get(self, result_id: int) -> dict:
        for result in self._results:
            if result["id"] == result_id:
                return result
        raise PerfResultNotFoundError(result_id)

    def delete(self, result_id: int) -> None:
        self._results.remove(self.get(result_id))

    def __len__(self) -> int:
        return len(self._results)


class PerfToolRunner:
    """Locates and runs the perf-test scripts against the current connection."""

    def __init__(
        self,
        connection: BrokerConnection,
        broadcaster: EventBroadcaster,
        results: Optional[PerfResultStore] = None,
        kafka_home: Optional[str] = None,
    ):
        self.connection = connection
        self.broadcaster = broadcaster
        self.results = results or PerfResultStore()
        self.kafka_home = kafka_home or settings.kafka_home or os.environ.get("KAFKA_HOME")

    def find_tool(self, name: str) -> Optional[str]:
        candidates = []
        if self.kafka_home:
            candidates.append(Path(self.kafka_home) / "bin" / name)
        found = shutil.which(name)
        if found:
            candidates.append(Path(found))
        candidates.extend(Path(home) / "bin" / name for home in COMMON_KAFKA_HOMES)

        for path in candidates:
            if path.is_file() and os.access(path, os.X_OK):
                return str(path)
        return None

    def check_tools(self) -> dict:
        tools = {}
        for kind, name in (("producer", PRODUCER_TOOL), ("consumer", CONSUMER_TOOL)):
            path = self.find_tool(name)
            tools[kind] = {"available": path is not None, "path": path}
        return tools

    def _brokers(self) -> List[str]:
        client = self.connection.require_client()
        info = self.connection.info
        if info and info.brokers:
            return list(info.brokers)
        return list(getattr(client, "brokers", []) or [])

    def _require_tool(self, name: str) -> str:
        path = self.find_tool(name)
        if path is None:
            raise PerfToolNotFoundError(name)
        return path

    async def run_producer(self, config) -> dict:
        brokers = self._brokers()
        tool = self._require_tool(PRODUCER_TOOL)
        sasl = getattr(self.connection.client, "sasl", None)
        args = producer_command(tool, brokers, config, sasl)
        output, errors, started, ended = await self._execute(args, config.timeout_seconds)
        return self._record("producer", config, parse_producer_output(output), output, errors, started, ended)

    async def run_consumer(self, config) -> dict:
        brokers = self._brokers()
        tool = self._require_tool(CONSUMER_TOOL)
        sasl = getattr(self.connection.client, "sasl", None)
        group_id = config.group_id or f"perf-test-group-{int(time.time() * 1000)}"

        properties_file = None
        if sasl is not None:
            with tempfile.NamedTemporaryFile("w", suffix=".properties", delete=False) as f:
                f.write("\n".join(sasl_properties(sasl)) + "\n")
                properties_file = f.name
        try:
            args = consumer_command(tool, brokers, config, group_id, properties_file)
            output, errors, started, ended = await self._execute(args, config.timeout_seconds)
        finally:
            if properties_file:
                os.unlink(properties_file)

        stored_config = {**config.job_config(), "groupId": group_id}
        return self._record(
            "consumer", config, parse_consumer_output(output), output, errors, started, ended,
            stored_config=stored_config,
        )

    async def _execute(self, args: List[str], timeout: float):
        name = os.path.basename(args[0])
        logger.info(f"Running {name} against {args[args.index('--topic') + 1]}")
        started = datetime.now(timezone.utc)
        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise PerfToolError(f"{name} timed out after {timeout:g}s")
        ended = datetime.now(timezone.utc)

        output = stdout.decode("utf-8", errors="replace")
        errors = stderr.decode("utf-8", errors="replace")
        if process.returncode != 0:
            logger.error(f"{name} exited with code {process.returncode}")
            raise PerfToolError(
                f"{name} exited with code {process.returncode}",
                output=errors or output,
            )
        return output, errors, started, ended

    def _record(self, kind, config, parsed, output, errors, started, ended, stored_config=None) -> dict:
        result = {
            "id": self.results.next_id(),
            "type": kind,
            "config": stored_config or config.job_config(),
            "results": parsed,
            "duration": (ended - started).total_seconds(),
            "startTime": started.isoformat(),
            "endTime": ended.isoformat(),
            "rawOutput": output,
            "error": errors or None,
        }
        self.results.add(result)
        self.broadcaster.publish(make_event(PERF_RESULT, result))
        logger.info(f"{kind} perf test finished in {result['duration']:.1f}s")
        return result
