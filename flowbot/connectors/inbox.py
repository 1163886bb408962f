"""Inbox connector (Gmail REST API): send messages and fetch recent ones."""

from __future__ import annotations

import base64
import logging
from email.message import EmailMessage
from typing import Any
from typing import Dict
from typing import List
from typing import Mapping
from typing import Optional

import httpx

from flowbot.connectors.base import ConnectorResult
from flowbot.connectors.base import HTTPConnector
from flowbot.exceptions import ConfigError
from flowbot.models.enums import ServiceType
from flowbot.models.enums import StepKind
from flowbot.schemas.workflow import ConnectionMap
from flowbot.schemas.workflow import ServiceCredentials
from flowbot.services.variable_resolver import stringify

logger = logging.getLogger(__name__)

GMAIL_API_BASE = "https://gmail.googleapis.com/gmail/v1/users/me"


def build_raw_message(to: str, subject: str, body: str, *, sender: Optional[str] = None) -> str:
    """RFC 2822 message, base64url encoded as the Gmail API expects."""
    message = EmailMessage()
    message["To"] = to
    message["Subject"] = subject
    if sender:
        message["From"] = sender
    message.set_content(body)
    return base64.urlsafe_b64encode(message.as_bytes()).decode("ascii")


def _decode_part(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8", errors="replace")


def _plain_text_body(payload: Mapping[str, Any]) -> Optional[str]:
    if payload.get("mimeType") == "text/plain" and (payload.get("body") or {}).get("data"):
        return _decode_part(payload["body"]["data"])
    for part in payload.get("parts") or []:
        text = _plain_text_body(part)
        if text:
            return text
    return None


def normalise_message(raw: Mapping[str, Any]) -> Dict[str, Any]:
    """Flatten a ``messages.get`` response into the shape steps consume."""
    payload = raw.get("payload") or {}
    headers = {h.get("name", "").lower(): h.get("value", "") for h in payload.get("headers") or []}
    snippet = raw.get("snippet", "")
    return {
        "id": raw.get("id"),
        "thread_id": raw.get("threadId"),
        "from": headers.get("from"),
        "to": headers.get("to"),
        "subject": headers.get("subject"),
        "date": headers.get("date"),
        "snippet": snippet,
        "body": _plain_text_body(payload) or snippet,
        "label_ids": list(raw.get("labelIds") or []),
        "internal_date": int(raw.get("internalDate") or 0),
    }


class InboxConnector(HTTPConnector):
    kind = StepKind.INBOX
    service_type = ServiceType.GMAIL
    service_name = "Gmail"

    def __init__(self, client: httpx.AsyncClient, api_base: str = GMAIL_API_BASE):
        super().__init__(client)
        self.api_base = api_base.rstrip("/")

    async def execute(self, config: Mapping[str, Any], context: Mapping[str, Any], connections: ConnectionMap) -> ConnectorResult:
        credentials = self.require_connection(connections)
        action = str(config.get("action") or "send").lower()

        if action == "send":
            return await self._send(config, credentials)
        if action == "fetch":
            emails = await self.fetch_messages(
                credentials,
                query=config.get("query"),
                max_results=int(config.get("max_results") or 10),
            )
            return ConnectorResult(output={"emails": emails, "email_count": len(emails)})
        raise ConfigError("action", f"Unsupported inbox action '{action}'")

    async def _send(self, config: Mapping[str, Any], credentials: ServiceCredentials) -> ConnectorResult:
        to = stringify(self.require(config, "to"))
        subject = stringify(config.get("subject") or "Message from FlowBot")
        body = stringify(config.get("body") or config.get("content") or "")

        data = await self.send_checked(
            "POST",
            f"{self.api_base}/messages/send",
            headers=self._headers(credentials),
            json={"raw": build_raw_message(to, subject, body, sender=config.get("from"))},
        )
        logger.info(f"[Inbox] Sent message {data.get('id')} to {to}")
        return ConnectorResult(
            output={
                "message_id": data.get("id"),
                "thread_id": data.get("threadId"),
                "to": to,
                "subject": subject,
            }
        )

    # ------------------------------------------------------------------
    # Fetch (also used by the trigger evaluator)
    # ------------------------------------------------------------------

    async def fetch_messages(
        self,
        credentials: ServiceCredentials,
        *,
        query: Optional[str] = None,
        label: Optional[str] = None,
        max_results: int = 10,
        newer_than: Optional[int] = None,
        max_pages: int = 1,
    ) -> List[Dict[str, Any]]:
        """Return normalised messages matching *query*, newest first.

        *max_results* is the listing page size. When *newer_than* (epoch ms)
        is given, ``nextPageToken`` is followed until a page reaches a message
        at or below it, the listing ends, or *max_pages* pages have been read.
        """
        params: Dict[str, Any] = {"maxResults": max_results}
        if query:
            params["q"] = query
        if label:
            params["labelIds"] = label

        emails: List[Dict[str, Any]] = []
        for _ in range(max_pages):
            listing = await self.send_checked(
                "GET", f"{self.api_base}/messages", headers=self._headers(credentials), params=params
            )
            page = []
            for ref in listing.get("messages") or []:
                raw = await self.send_checked(
                    "GET",
                    f"{self.api_base}/messages/{ref['id']}",
                    headers=self._headers(credentials),
                    params={"format": "full"},
                )
                page.append(normalise_message(raw))
            emails.extend(page)

            next_token = listing.get("nextPageToken")
            if newer_than is None or not next_token:
                break
            if any(email["internal_date"] <= newer_than for email in page):
                break
            params["pageToken"] = next_token
        else:
            logger.warning(f"[Inbox] Listing still had pages after {max_pages}; older matching messages were not fetched")
        return emails

    @staticmethod
    def _headers(credentials: ServiceCredentials) -> Dict[str, str]:
        return {"Authorization": f"Bearer {credentials.access_token}"}
