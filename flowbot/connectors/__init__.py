from flowbot.connectors.base import Connector
from flowbot.connectors.base import ConnectorResult
from flowbot.connectors.registry import ConnectorRegistry
from flowbot.connectors.registry import build_connector_registry
from flowbot.connectors.registry import build_llm_client

__all__ = [
    "Connector",
    "ConnectorResult",
    "ConnectorRegistry",
    "build_connector_registry",
    "build_llm_client",
]
