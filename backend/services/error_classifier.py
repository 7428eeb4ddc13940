"""Best-effort classification of per-operation broker errors.

Categories feed the load-test error breakdown only. They never change how a
work loop behaves.
"""

import asyncio
import socket
from enum import Enum


class ErrorCategory(str, Enum):
    TIMEOUT = "timeout"
    NETWORK = "network"
    BROKER = "broker"
    OTHER = "other"


# Exception class-name fragments raised by Kafka client libraries
TIMEOUT_TYPE_HINTS = ("Timeout",)
NETWORK_TYPE_HINTS = ("ConnectionError", "NodeNotReady", "NoBrokersAvailable")
BROKER_TYPE_HINTS = ("NotLeader", "LeaderNotAvailable", "NotEnoughReplicas", "BrokerNotAvailable")

TIMEOUT_MESSAGE_HINTS = ("timeout", "TIMEOUT", "timed out")
NETWORK_MESSAGE_HINTS = ("network", "ECONNREFUSED", "ENOTFOUND", "Connection refused")
BROKER_MESSAGE_HINTS = ("broker", "NOT_LEADER", "LEADER_NOT_AVAILABLE")


class ErrorClassifier:
    """Map an exception to a timeout/network/broker/other bucket.

    Typed checks run first; message and ``code`` sniffing is the fallback
    for clients that only give us strings.
    """

    def classify(self, error: BaseException) -> ErrorCategory:
        category = self._classify_type(error)
        if category is not None:
            return category
        return self._classify_message(error)

    def _classify_type(self, error: BaseException):
        if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
            return ErrorCategory.TIMEOUT
        if isinstance(error, (ConnectionError, socket.gaierror)):
            return ErrorCategory.NETWORK

        type_name = type(error).__name__
        if any(hint in type_name for hint in TIMEOUT_TYPE_HINTS):
            return ErrorCategory.TIMEOUT
        if any(hint in type_name for hint in NETWORK_TYPE_HINTS):
            return ErrorCategory.NETWORK
        if any(hint in type_name for hint in BROKER_TYPE_HINTS):
            return ErrorCategory.BROKER
        return None

    def _classify_message(self, error: BaseException) -> ErrorCategory:
        message = str(error) or repr(error)
        code = str(getattr(error, "code", "") or "")

        if any(hint in message for hint in TIMEOUT_MESSAGE_HINTS) or code == "ETIMEDOUT":
            return ErrorCategory.TIMEOUT
        if any(hint in message for hint in NETWORK_MESSAGE_HINTS) or code.startswith("E"):
            return ErrorCategory.NETWORK
        if any(hint in message for hint in BROKER_MESSAGE_HINTS) or "KAFKA" in code:
            return ErrorCategory.BROKER
        return ErrorCategory.OTHER


default_classifier = ErrorClassifier()
