"""Text-generation connector backed by an OpenAI-compatible chat API."""

from __future__ import annotations

import logging
from typing import Any
from typing import Mapping
from typing import Optional

import openai

from flowbot.config import Settings
from flowbot.connectors.base import Connector
from flowbot.connectors.base import ConnectorResult
from flowbot.exceptions import ConfigError
from flowbot.exceptions import ConnectorAPIError
from flowbot.exceptions import StepTimeoutError
from flowbot.models.enums import StepKind
from flowbot.schemas.workflow import ConnectionMap
from flowbot.services.variable_resolver import stringify
from flowbot.services.variable_resolver import to_json

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are a helpful assistant that processes content according to user instructions."
DEFAULT_PROMPT = "Summarize the following content:"


def content_for_prompt(context: Mapping[str, Any]) -> str:
    """Pick the material the prompt operates on.

    First email body (or snippet), then ``content``, ``text``, ``summary``,
    and finally the whole context as JSON.
    """
    emails = context.get("emails")
    if isinstance(emails, list) and emails and isinstance(emails[0], Mapping):
        first = emails[0].get("body") or emails[0].get("snippet")
        if first:
            return stringify(first)

    for key in ("content", "text", "summary"):
        value = context.get(key)
        if value:
            return stringify(value)

    return to_json(dict(context))


class TextGenerationConnector(Connector):
    kind = StepKind.TEXT_GENERATION

    def __init__(self, client: Optional[openai.AsyncOpenAI], settings: Settings):
        self.client = client
        self.settings = settings

    async def execute(self, config: Mapping[str, Any], context: Mapping[str, Any], connections: ConnectionMap) -> ConnectorResult:
        if self.client is None:
            raise ConfigError("llm_api_key", "Text generation is not configured (missing API key)")

        prompt = stringify(config.get("prompt") or config.get("template") or DEFAULT_PROMPT)
        model = config.get("model") or self.settings.llm_model
        max_tokens = _number(config, "max_tokens", self.settings.llm_max_tokens, int)
        temperature = _number(config, "temperature", self.settings.llm_temperature, float)

        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": f"{prompt}\n\nContent to process:\n{content_for_prompt(context)}"},
        ]

        try:
            completion = await self.client.chat.completions.create(
                model=model,
                messages=messages,
                max_tokens=max_tokens,
                temperature=temperature,
            )
        except openai.APITimeoutError as exc:
            raise StepTimeoutError(message="Text generation request timed out") from exc
        except openai.APIStatusError as exc:
            raise ConnectorAPIError(exc.status_code, f"Text generation API error: {exc.message}") from exc
        except openai.APIConnectionError as exc:
            raise ConnectorAPIError(None, f"Text generation request failed: {exc}") from exc

        if not completion.choices:
            raise ConnectorAPIError(None, "Text generation returned no choices")
        result = completion.choices[0].message.content or ""

        logger.debug(f"[TextGeneration] {model} produced {len(result)} characters")
        return ConnectorResult(
            output={
                "result": result,
                "summary": result,
                "content": result,
                "text": result,
                "llm_result": result,
                "model": model,
            }
        )


def _number(config: Mapping[str, Any], key: str, default, cast):
    value = config.get(key)
    if value is None or value == "":
        return default
    try:
        return cast(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(key, f"Config field '{key}' must be a number") from exc
