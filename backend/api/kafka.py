"""Kafka connection and topic metadata endpoints."""

import logging
from typing import List, Optional, Union

from fastapi import APIRouter, Depends

from errors import ConfigurationError
from services.job_configs import CamelModel
from services.job_engine import JobEngine, get_engine
from services.kafka_client import SaslSettings

logger = logging.getLogger(__name__)

router = APIRouter()


# ============================================================================
# Request Schemas
# ============================================================================

class SaslRequest(CamelModel):
    enabled: bool = False
    mechanism: str = "plain"
    username: Optional[str] = None
    password: Optional[str] = None


class ApiKeyRequest(CamelModel):
    enabled: bool = False
    key: Optional[str] = None
    secret: Optional[str] = None


class ConnectRequest(CamelModel):
    """Brokers may be a comma-separated string or a list."""

    brokers: Union[str, List[str], None] = None
    client_id: Optional[str] = None
    sasl: Optional[SaslRequest] = None
    api_key: Optional[ApiKeyRequest] = None

    def broker_list(self) -> List[str]:
        raw = self.brokers or []
        if isinstance(raw, str):
            raw = raw.split(",")
        return [b.strip() for b in raw if b and b.strip()]

    def sasl_settings(self) -> Optional[SaslSettings]:
        if self.api_key and self.api_key.enabled:
            return SaslSettings("PLAIN", self.api_key.key, self.api_key.secret)
        if self.sasl and self.sasl.enabled:
            return SaslSettings(self.sasl.mechanism, self.sasl.username, self.sasl.password)
        return None


# ============================================================================
# Endpoints
# ============================================================================

@router.post("/connect")
async def connect(
    request: ConnectRequest,
    engine: JobEngine = Depends(get_engine),
):
    """Connect to a cluster; replaces any previous connection."""
    brokers = request.broker_list()
    if not brokers:
        raise ConfigurationError("At least one broker is required", setting="brokers")

    topics = await engine.connect_broker(
        brokers,
        client_id=request.client_id,
        sasl=request.sasl_settings(),
    )
    logger.info(f"Connected to Kafka ({len(topics)} topics)")
    return {
        "success": True,
        "message": "Connected successfully",
        "topics": topics,
        "config": {
            "brokers": brokers,
            "clientId": request.client_id,
        },
    }


@router.get("/status")
async def status(engine: JobEngine = Depends(get_engine)):
    """Connection status, with topics when the cluster is reachable."""
    if not engine.connection.connected:
        return {"connected": False, "topics": []}

    info = engine.connection.info
    try:
        topics = await engine.list_topics()
    except Exception as e:
        logger.warning(f"Could not list topics for status: {e}")
        topics = []
    return {
        "connected": True,
        "config": {
            "brokers": info.brokers if info else [],
            "clientId": info.client_id if info else None,
            "saslMechanism": info.sasl_mechanism if info else None,
        },
        "topics": topics,
    }


@router.get("/topics")
async def list_topics(engine: JobEngine = Depends(get_engine)):
    return {"topics": await engine.list_topics()}


@router.get("/topics/{name}")
async def describe_topic(name: str, engine: JobEngine = Depends(get_engine)):
    """Partition layout and config entries for one topic."""
    return await engine.describe_topic(name)
