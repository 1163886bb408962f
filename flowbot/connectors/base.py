"""Shared connector interface.

Every step kind maps to exactly one :class:`Connector`. A connector receives
the already-interpolated step config, the current execution context and the
user's active connections, and returns a :class:`ConnectorResult`. Failures
are raised as :class:`~flowbot.exceptions.ConnectorError` subclasses, or (when
the connector still has output worth recording) returned in
``ConnectorResult.error``.
"""

from __future__ import annotations

import logging
from abc import ABC
from abc import abstractmethod
from dataclasses import dataclass
from typing import Any
from typing import ClassVar
from typing import Dict
from typing import Mapping
from typing import Optional

import httpx

from flowbot.exceptions import ConfigError
from flowbot.exceptions import ConnectionMissingError
from flowbot.exceptions import ConnectorAPIError
from flowbot.exceptions import ConnectorError
from flowbot.exceptions import StepTimeoutError
from flowbot.models.enums import ServiceType
from flowbot.models.enums import StepKind
from flowbot.schemas.workflow import ConnectionMap
from flowbot.schemas.workflow import ServiceCredentials

logger = logging.getLogger(__name__)

USER_AGENT = "FlowBot/1.0"


@dataclass
class ConnectorResult:
    output: Dict[str, Any]
    error: Optional[ConnectorError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class Connector(ABC):
    """One external capability a workflow step can use."""

    kind: ClassVar[StepKind]
    service_type: ClassVar[Optional[ServiceType]] = None

    @abstractmethod
    async def execute(
        self,
        config: Mapping[str, Any],
        context: Mapping[str, Any],
        connections: ConnectionMap,
    ) -> ConnectorResult:
        """Perform the step's external action."""

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    def require_connection(self, connections: ConnectionMap) -> ServiceCredentials:
        assert self.service_type is not None, f"{type(self).__name__} has no service type"
        credentials = connections.get(self.service_type)
        if credentials is None or not credentials.access_token:
            raise ConnectionMissingError(self.service_type.value)
        return credentials

    @staticmethod
    def require(config: Mapping[str, Any], *names: str) -> Any:
        """Return the first non-blank value among *names* or raise ConfigError."""
        for name in names:
            value = config.get(name)
            if value is not None and not (isinstance(value, str) and not value.strip()):
                return value
        raise ConfigError(names[0])


class HTTPConnector(Connector):
    """Base for connectors talking to a REST API through a shared client."""

    service_name: ClassVar[str] = "HTTP"

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    async def send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Issue one request, mapping transport failures to connector errors."""
        try:
            return await self.client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise StepTimeoutError(message=f"{self.service_name} request timed out") from exc
        except httpx.HTTPError as exc:
            raise ConnectorAPIError(None, f"{self.service_name} request failed: {exc}") from exc

    async def send_checked(self, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        """Like :meth:`send` but raise ConnectorAPIError on non-2xx and decode JSON."""
        response = await self.send(method, url, **kwargs)
        if not response.is_success:
            raise self.api_error(response)
        try:
            return response.json()
        except ValueError as exc:
            raise ConnectorAPIError(response.status_code, f"{self.service_name} returned invalid JSON") from exc

    def api_error(self, response: httpx.Response) -> ConnectorAPIError:
        message = _error_message(response)

        # Provide helpful error messages
        if response.status_code == 401:
            message = f"Authentication failed: {message}"
        elif response.status_code == 403:
            message = f"Permission denied: {message}"
        elif response.status_code == 404:
            message = f"Resource not found: {message}"
        elif response.status_code == 429:
            message = f"Rate limit exceeded: {message}"

        logger.warning(f"[{self.service_name}] API error {response.status_code}: {message}")
        return ConnectorAPIError(response.status_code, f"{self.service_name} API error ({response.status_code}): {message}")


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        for key in ("message", "description", "error"):
            if data.get(key):
                return str(data[key])
    return response.text or response.reason_phrase
