"""Messaging connector (Telegram Bot API): send messages and read updates."""

from __future__ import annotations

import logging
from typing import Any
from typing import Dict
from typing import List
from typing import Mapping
from typing import Optional

import httpx

from flowbot.connectors.base import ConnectorResult
from flowbot.connectors.base import HTTPConnector
from flowbot.exceptions import ConfigError
from flowbot.exceptions import ConnectorAPIError
from flowbot.models.enums import ServiceType
from flowbot.models.enums import StepKind
from flowbot.schemas.workflow import ConnectionMap
from flowbot.schemas.workflow import ServiceCredentials
from flowbot.services.variable_resolver import stringify

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"


def normalise_update(update: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
    """Flatten a Telegram update carrying a text message; other updates give None."""
    message = update.get("message") or update.get("channel_post")
    if not message or "text" not in message:
        return None
    sender = message.get("from") or {}
    return {
        "update_id": update.get("update_id"),
        "message_id": message.get("message_id"),
        "chat_id": (message.get("chat") or {}).get("id"),
        "from": sender.get("username") or sender.get("first_name"),
        "text": message.get("text"),
        "date": message.get("date"),
    }


class MessagingConnector(HTTPConnector):
    kind = StepKind.MESSAGING
    service_type = ServiceType.TELEGRAM
    service_name = "Telegram"

    def __init__(self, client: httpx.AsyncClient, api_base: str = TELEGRAM_API_BASE):
        super().__init__(client)
        self.api_base = api_base.rstrip("/")

    async def execute(self, config: Mapping[str, Any], context: Mapping[str, Any], connections: ConnectionMap) -> ConnectorResult:
        credentials = self.require_connection(connections)

        chat_id = config.get("chat_id") or credentials.service_config.get("chat_id")
        if chat_id in (None, ""):
            raise ConfigError("chat_id")
        text = stringify(self.require(config, "message", "text"))

        data = await self._call(
            credentials,
            "sendMessage",
            {"chat_id": chat_id, "text": text, "parse_mode": config.get("parse_mode") or "HTML"},
        )
        message_id = (data or {}).get("message_id")
        logger.info(f"[Messaging] Sent message {message_id} to chat {chat_id}")
        return ConnectorResult(output={"message_id": message_id, "chat_id": chat_id})

    async def fetch_updates(self, credentials: ServiceCredentials, *, offset: Optional[int] = None) -> List[Dict[str, Any]]:
        """Return raw updates newer than *offset* (Telegram ``getUpdates``)."""
        params: Dict[str, Any] = {"timeout": 0}
        if offset is not None:
            params["offset"] = offset
        return list(await self._call(credentials, "getUpdates", params) or [])

    async def _call(self, credentials: ServiceCredentials, method: str, payload: Dict[str, Any]) -> Any:
        data = await self.send_checked(
            "POST", f"{self.api_base}/bot{credentials.access_token}/{method}", json=payload
        )
        if not data.get("ok", False):
            raise ConnectorAPIError(data.get("error_code"), f"Telegram API error: {data.get('description', 'unknown error')}")
        return data.get("result")
