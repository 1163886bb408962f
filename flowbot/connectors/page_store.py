"""Page-store connector (Notion API): create one titled page per step."""

from __future__ import annotations

import logging
from typing import Any
from typing import Dict
from typing import Mapping

import httpx

from flowbot.connectors.base import ConnectorResult
from flowbot.connectors.base import HTTPConnector
from flowbot.exceptions import ConfigError
from flowbot.models.enums import ServiceType
from flowbot.models.enums import StepKind
from flowbot.schemas.workflow import ConnectionMap
from flowbot.services.variable_resolver import stringify

logger = logging.getLogger(__name__)

NOTION_API_BASE = "https://api.notion.com/v1"
NOTION_VERSION = "2022-06-28"
# Notion rejects rich_text content longer than this
MAX_TEXT_LENGTH = 2000


def _rich_text(text: str) -> list:
    chunks = [text[i : i + MAX_TEXT_LENGTH] for i in range(0, len(text), MAX_TEXT_LENGTH)] or [""]
    return [{"type": "text", "text": {"content": chunk}} for chunk in chunks]


class PageStoreConnector(HTTPConnector):
    kind = StepKind.PAGE_STORE
    service_type = ServiceType.NOTION
    service_name = "Notion"

    def __init__(self, client: httpx.AsyncClient, api_base: str = NOTION_API_BASE):
        super().__init__(client)
        self.api_base = api_base.rstrip("/")

    async def execute(self, config: Mapping[str, Any], context: Mapping[str, Any], connections: ConnectionMap) -> ConnectorResult:
        credentials = self.require_connection(connections)
        meta = credentials.service_config

        parent: Dict[str, str]
        if config.get("database_id"):
            parent = {"database_id": str(config["database_id"])}
        elif config.get("parent_page_id"):
            parent = {"page_id": str(config["parent_page_id"])}
        elif meta.get("database_id"):
            parent = {"database_id": str(meta["database_id"])}
        elif meta.get("parent_page_id"):
            parent = {"page_id": str(meta["parent_page_id"])}
        else:
            raise ConfigError("parent_page_id", "Notion step needs a database_id or parent_page_id")

        title = stringify(config.get("title") or "New Page")
        content = stringify(config.get("content") or config.get("body") or "")
        title_property = config.get("title_property") or "title"

        body = {
            "parent": parent,
            "properties": {title_property: {"title": _rich_text(title)}},
            "children": [
                {
                    "object": "block",
                    "type": "paragraph",
                    "paragraph": {"rich_text": _rich_text(content)},
                }
            ],
        }

        data = await self.send_checked(
            "POST",
            f"{self.api_base}/pages",
            headers={
                "Authorization": f"Bearer {credentials.access_token}",
                "Notion-Version": NOTION_VERSION,
                "Content-Type": "application/json",
            },
            json=body,
        )
        logger.info(f"[PageStore] Created page {data.get('id')}")
        return ConnectorResult(output={"page_id": data.get("id"), "url": data.get("url"), "title": title})
