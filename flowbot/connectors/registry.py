"""Closed mapping from step kind to connector instance."""

from __future__ import annotations

import logging
from typing import Dict
from typing import Optional

import httpx
import openai

from flowbot.config import Settings
from flowbot.connectors.base import Connector
from flowbot.connectors.http import HttpConnector
from flowbot.connectors.inbox import InboxConnector
from flowbot.connectors.messaging import MessagingConnector
from flowbot.connectors.page_store import PageStoreConnector
from flowbot.connectors.text_generation import TextGenerationConnector
from flowbot.models.enums import StepKind

logger = logging.getLogger(__name__)


class ConnectorRegistry:
    """Holds exactly one connector per :class:`StepKind`.

    Construction fails when a kind has no connector (or a connector is
    registered under the wrong kind), so dispatch never needs a default
    branch.
    """

    def __init__(self, connectors: Dict[StepKind, Connector]):
        missing = [kind.value for kind in StepKind if kind not in connectors]
        if missing:
            raise ValueError(f"No connector registered for step kinds: {missing}")
        for kind, connector in connectors.items():
            if connector.kind != kind:
                raise ValueError(f"{type(connector).__name__} registered for '{kind.value}' but handles '{connector.kind.value}'")
        self._connectors = dict(connectors)

    def get(self, kind: StepKind) -> Connector:
        return self._connectors[StepKind(kind)]

    @property
    def inbox(self) -> InboxConnector:
        return self._connectors[StepKind.INBOX]

    @property
    def messaging(self) -> MessagingConnector:
        return self._connectors[StepKind.MESSAGING]


def build_llm_client(settings: Settings) -> Optional[openai.AsyncOpenAI]:
    """OpenAI-compatible client, or None when no API key is configured."""
    if not settings.llm_api_key:
        logger.warning("[Connectors] No LLM API key configured; text generation steps will fail")
        return None
    return openai.AsyncOpenAI(
        api_key=settings.llm_api_key,
        base_url=settings.llm_base_url,
        timeout=settings.step_timeout_seconds,
        max_retries=0,
    )


def build_connector_registry(
    settings: Settings,
    http_client: httpx.AsyncClient,
    llm_client: Optional[openai.AsyncOpenAI] = None,
) -> ConnectorRegistry:
    """Wire every connector variant to the shared clients."""
    return ConnectorRegistry(
        {
            StepKind.TEXT_GENERATION: TextGenerationConnector(llm_client, settings),
            StepKind.INBOX: InboxConnector(http_client),
            StepKind.PAGE_STORE: PageStoreConnector(http_client),
            StepKind.MESSAGING: MessagingConnector(http_client),
            StepKind.HTTP: HttpConnector(http_client),
        }
    )
