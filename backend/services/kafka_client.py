"""Kafka implementation of the broker capability interface (aiokafka)."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer, TopicPartition
from aiokafka.admin import AIOKafkaAdminClient
from aiokafka.admin.config_resource import ConfigResource, ConfigResourceType

from config import settings
from errors import BrokerError
from services.broker import (
    BrokerClient,
    BrokerConsumer,
    BrokerMessage,
    BrokerProducer,
    BrokerRecord,
    MessageHandler,
)

logger = logging.getLogger(__name__)

# Numeric compression codes sent by older dashboards
COMPRESSION_CODES = {0: None, 1: "gzip", 2: "snappy", 3: "lz4", 4: "zstd"}
COMPRESSION_NAMES = {"gzip", "snappy", "lz4", "zstd"}


@dataclass
class SaslSettings:
    mechanism: str = "PLAIN"
    username: Optional[str] = None
    password: Optional[str] = None


def normalize_compression(value: Union[int, str, None]) -> Optional[str]:
    """Map a dashboard compression value to an aiokafka ``compression_type``."""
    if value is None or value == "":
        return None
    if isinstance(value, int) or (isinstance(value, str) and value.isdigit()):
        return COMPRESSION_CODES.get(int(value))
    name = value.lower()
    if name == "none":
        return None
    if name not in COMPRESSION_NAMES:
        raise ValueError(f"Unsupported compression type: {value}")
    return name


def normalize_acks(value: Union[int, str, None]) -> Union[int, str]:
    """Map acks (-1/all, 0, 1) to what aiokafka accepts."""
    if value is None or value == "":
        return "all"
    if str(value).lower() in ("all", "-1"):
        return "all"
    acks = int(value)
    if acks not in (0, 1):
        raise ValueError(f"Unsupported acks value: {value}")
    return acks


def parse_topic_metadata(name: str, raw_topic: Any, raw_configs: Optional[Dict[str, Any]] = None) -> dict:
    """Flatten admin-client topic metadata into the dashboard shape."""
    partitions = []
    for p in (raw_topic or {}).get("partitions", []):
        partitions.append({
            "partition": p.get("partition"),
            "leader": p.get("leader"),
            "replicas": list(p.get("replicas") or []),
            "isr": list(p.get("isr") or []),
        })
    partitions.sort(key=lambda p: p["partition"])
    replication_factor = max((len(p["replicas"]) for p in partitions), default=0)
    return {
        "name": name,
        "partitionCount": len(partitions),
        "replicationFactor": replication_factor,
        "partitions": partitions,
        "configEntries": raw_configs or {},
    }


def _parse_config_entries(responses: Any) -> Dict[str, Any]:
    """Pull ``{name: value}`` out of DescribeConfigs responses."""
    entries: Dict[str, Any] = {}
    for response in responses or []:
        for resource in getattr(response, "resources", []):
            # (error_code, error_message, resource_type, resource_name, config_entries)
            for entry in resource[4]:
                entries[entry[0]] = entry[1]
    return entries


class KafkaProducerHandle(BrokerProducer):
    """Producer dedicated to one job, with its own client id."""

    def __init__(self, client_kwargs: dict, compression: Optional[str], acks: Union[int, str]):
        self._client_kwargs = client_kwargs
        self._compression = compression
        self._acks = acks
        self._producer: Optional[AIOKafkaProducer] = None

    async def connect(self) -> None:
        self._producer = AIOKafkaProducer(
            **self._client_kwargs,
            acks=self._acks,
            compression_type=self._compression,
            enable_idempotence=self._acks == "all",
        )
        await self._producer.start()

    async def send(self, topic: str, records: List[BrokerRecord]) -> list:
        if self._producer is None:
            raise BrokerError("Producer is not connected", operation="send")
        futures = []
        for record in records:
            value = record.value.encode("utf-8") if isinstance(record.value, str) else record.value
            key = record.key.encode("utf-8") if record.key else None
            futures.append(await self._producer.send(topic, value=value, key=key))
        return await asyncio.gather(*futures)

    async def disconnect(self) -> None:
        producer, self._producer = self._producer, None
        if producer is not None:
            await producer.stop()


class KafkaConsumerHandle(BrokerConsumer):
    """Consumer-group member dedicated to one job."""

    def __init__(self, client_kwargs: dict, group_id: str):
        self._client_kwargs = client_kwargs
        self.group_id = group_id
        self._consumer: Optional[AIOKafkaConsumer] = None

    async def subscribe(self, topic: str, from_beginning: bool = False) -> None:
        self._consumer = AIOKafkaConsumer(
            topic,
            **self._client_kwargs,
            group_id=self.group_id,
            auto_offset_reset="earliest" if from_beginning else "latest",
        )
        await self._consumer.start()

    async def run(self, on_message: MessageHandler) -> None:
        consumer = self._consumer
        if consumer is None:
            raise BrokerError("Consumer is not subscribed", operation="consume")
        async for msg in consumer:
            highwater = consumer.highwater(TopicPartition(msg.topic, msg.partition))
            lag = highwater - msg.offset - 1 if highwater is not None else None
            await on_message(BrokerMessage(
                topic=msg.topic,
                partition=msg.partition,
                offset=msg.offset,
                value=msg.value,
                key=msg.key,
                timestamp=msg.timestamp,
                lag=lag,
            ))

    async def disconnect(self) -> None:
        consumer, self._consumer = self._consumer, None
        if consumer is not None:
            await consumer.stop()


class KafkaBrokerClient(BrokerClient):
    """Client for a Kafka cluster.

    Holds one admin connection for metadata; producers and consumers are
    created per job so each job can be disconnected independently.
    """

    def __init__(
        self,
        brokers: List[str],
        client_id: Optional[str] = None,
        sasl: Optional[SaslSettings] = None,
    ):
        self.brokers = brokers
        self.client_id = client_id or settings.kafka_client_id
        self.sasl = sasl
        self._admin: Optional[AIOKafkaAdminClient] = None

    def _client_kwargs(self, client_id: Optional[str] = None) -> dict:
        kwargs = {
            "bootstrap_servers": ",".join(self.brokers),
            "client_id": client_id or self.client_id,
            "request_timeout_ms": settings.kafka_request_timeout_ms,
        }
        if self.sasl is not None:
            kwargs.update({
                "security_protocol": "SASL_PLAINTEXT",
                "sasl_mechanism": (self.sasl.mechanism or "PLAIN").upper(),
                "sasl_plain_username": self.sasl.username,
                "sasl_plain_password": self.sasl.password,
            })
        return kwargs

    def _require_admin(self) -> AIOKafkaAdminClient:
        if self._admin is None:
            raise BrokerError("Kafka admin client is not connected", operation="metadata")
        return self._admin

    async def connect(self) -> None:
        admin = AIOKafkaAdminClient(**self._client_kwargs())
        await admin.start()
        self._admin = admin
        logger.info(f"Connected to Kafka at {','.join(self.brokers)}")

    async def list_topics(self) -> List[str]:
        topics = await self._require_admin().list_topics()
        return sorted(topics)

    async def describe_topic(self, name: str) -> dict:
        admin = self._require_admin()
        described = await admin.describe_topics([name])
        raw_topic = next(
            (t for t in described if t.get("topic") == name),
            None,
        )
        if raw_topic is None or raw_topic.get("error_code"):
            raise BrokerError(f"Topic not found: {name}", operation="describe_topic")

        try:
            responses = await admin.describe_configs(
                [ConfigResource(ConfigResourceType.TOPIC, name)]
            )
            configs = _parse_config_entries(responses)
        except Exception as e:
            logger.warning(f"Could not describe configs for topic {name}: {e}")
            configs = {}
        return parse_topic_metadata(name, raw_topic, configs)

    def producer(
        self,
        client_suffix: str,
        compression: Union[int, str, None] = None,
        acks: Union[int, str, None] = None,
    ) -> KafkaProducerHandle:
        return KafkaProducerHandle(
            self._client_kwargs(f"{self.client_id}-producer-{client_suffix}"),
            normalize_compression(compression),
            normalize_acks(acks),
        )

    def consumer(self, group_id: str, client_suffix: str) -> KafkaConsumerHandle:
        return KafkaConsumerHandle(
            self._client_kwargs(f"{self.client_id}-consumer-{client_suffix}"),
            group_id,
        )

    async def disconnect(self) -> None:
        admin, self._admin = self._admin, None
        if admin is not None:
            await admin.close()
