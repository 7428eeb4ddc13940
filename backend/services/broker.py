"""Broker capability interface used by the job engine.

The engine only talks to Kafka through these classes, so tests (and any
other broker) can plug in their own implementation.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Union

from errors import BrokerNotConnectedError

logger = logging.getLogger(__name__)


@dataclass
class BrokerRecord:
    """One record to produce."""

    value: Union[str, bytes]
    key: Optional[str] = None

    @property
    def size(self) -> int:
        value = self.value.encode("utf-8") if isinstance(self.value, str) else self.value
        return len(value) + (len(self.key) if self.key else 0)


@dataclass
class BrokerMessage:
    """One consumed message as delivered to a consumer callback."""

    topic: str
    partition: int
    offset: int
    value: bytes
    key: Optional[bytes] = None
    timestamp: Optional[int] = None  # epoch ms from the broker
    lag: Optional[int] = None  # high watermark minus this offset, when known

    @property
    def size(self) -> int:
        return len(self.value or b"")


MessageHandler = Callable[[BrokerMessage], Awaitable[None]]


class BrokerProducer(ABC):
    """A producer connection owned by one job."""

    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def send(self, topic: str, records: List[BrokerRecord]) -> Any:
        """Send a batch and wait for the broker acknowledgment."""
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        ...


class BrokerConsumer(ABC):
    """A consumer-group member owned by one job."""

    @abstractmethod
    async def subscribe(self, topic: str, from_beginning: bool = False) -> None:
        """Connect and join the group for ``topic``."""
        ...

    @abstractmethod
    async def run(self, on_message: MessageHandler) -> None:
        """Deliver messages to ``on_message`` until disconnected or cancelled."""
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        ...


class BrokerClient(ABC):
    """Cluster-level capabilities: metadata plus per-job producers/consumers."""

    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def list_topics(self) -> List[str]:
        ...

    @abstractmethod
    async def describe_topic(self, name: str) -> dict:
        """Partitions (leader/replicas/isr), replication factor and config entries."""
        ...

    @abstractmethod
    def producer(
        self,
        client_suffix: str,
        compression: Optional[str] = None,
        acks: Union[int, str, None] = None,
    ) -> BrokerProducer:
        ...

    @abstractmethod
    def consumer(self, group_id: str, client_suffix: str) -> BrokerConsumer:
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        ...


@dataclass
class ConnectionInfo:
    brokers: List[str] = field(default_factory=list)
    client_id: Optional[str] = None
    sasl_mechanism: Optional[str] = None


class BrokerConnection:
    """Holds the currently connected broker client, if any.

    Connecting again replaces the previous client (which is disconnected).
    """

    def __init__(self):
        self._client: Optional[BrokerClient] = None
        self.info: Optional[ConnectionInfo] = None

    @property
    def connected(self) -> bool:
        return self._client is not None

    @property
    def client(self) -> Optional[BrokerClient]:
        return self._client

    def require_client(self) -> BrokerClient:
        if self._client is None:
            raise BrokerNotConnectedError()
        return self._client

    async def connect(self, client: BrokerClient, info: Optional[ConnectionInfo] = None) -> List[str]:
        """Connect ``client``, verify it by listing topics, then make it current."""
        await client.connect()
        try:
            topics = await client.list_topics()
        except Exception:
            await self._safe_disconnect(client)
            raise

        previous = self._client
        self._client = client
        self.info = info or ConnectionInfo()
        if previous is not None and previous is not client:
            await self._safe_disconnect(previous)
        return topics

    async def disconnect(self) -> None:
        client, self._client = self._client, None
        self.info = None
        if client is not None:
            await self._safe_disconnect(client)

    async def _safe_disconnect(self, client: BrokerClient) -> None:
        try:
            await client.disconnect()
        except Exception as e:
            logger.warning(f"Broker disconnect failed: {e}")
