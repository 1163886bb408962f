"""Generic HTTP connector: call an arbitrary endpoint with the step payload."""

from __future__ import annotations

import logging
from typing import Any
from typing import Dict
from typing import Mapping

import httpx

from flowbot.connectors.base import USER_AGENT
from flowbot.connectors.base import ConnectorResult
from flowbot.connectors.base import HTTPConnector
from flowbot.exceptions import ConfigError
from flowbot.exceptions import ConnectorAPIError
from flowbot.models.enums import StepKind
from flowbot.schemas.workflow import ConnectionMap

logger = logging.getLogger(__name__)

ALLOWED_METHODS = {"GET", "HEAD", "POST", "PUT", "PATCH", "DELETE"}
BODYLESS_METHODS = {"GET", "HEAD"}


class HttpConnector(HTTPConnector):
    kind = StepKind.HTTP
    service_name = "HTTP"

    def __init__(self, client: httpx.AsyncClient):
        super().__init__(client)

    async def execute(self, config: Mapping[str, Any], context: Mapping[str, Any], connections: ConnectionMap) -> ConnectorResult:
        url = str(self.require(config, "url", "webhook_url"))
        method = str(config.get("method") or "POST").upper()
        if method not in ALLOWED_METHODS:
            raise ConfigError("method", f"Unsupported HTTP method '{method}'")

        extra_headers = config.get("headers") or {}
        if not isinstance(extra_headers, Mapping):
            raise ConfigError("headers", "Config field 'headers' must be an object")
        headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
        headers.update({str(k): str(v) for k, v in extra_headers.items()})

        # Without an explicit payload the whole upstream context is sent
        payload = config["payload"] if config.get("payload") is not None else dict(context)

        request_kwargs: Dict[str, Any] = {"headers": headers}
        if config.get("params"):
            request_kwargs["params"] = config["params"]
        if method not in BODYLESS_METHODS:
            if isinstance(payload, str):
                request_kwargs["content"] = payload.encode("utf-8")
            else:
                request_kwargs["json"] = payload

        response = await self.send(method, url, **request_kwargs)

        try:
            body: Any = response.json()
        except ValueError:
            body = response.text

        output = {
            "status": response.status_code,
            "response": body,
            "url": url,
            "payload_sent": None if method in BODYLESS_METHODS else payload,
        }
        if not response.is_success:
            logger.warning(f"[HTTP] {method} {url} returned {response.status_code}")
            error = ConnectorAPIError(response.status_code, f"HTTP {response.status_code}: {response.reason_phrase}")
            return ConnectorResult(output=output, error=error)

        logger.info(f"[HTTP] {method} {url} returned {response.status_code}")
        return ConnectorResult(output=output)
