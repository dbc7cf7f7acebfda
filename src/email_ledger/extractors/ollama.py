"""
Ollama extraction invoker.

Calls {ollama_url}/api/chat with the stored prompt as system message and
the rendered email as user message, constraining the reply with the
output JSON schema when one is given.

Never logs prompts or email content at INFO level.
"""

from __future__ import annotations

import json
import logging
import re
from decimal import Decimal
from typing import Any

import httpx

from ..config import LLMConfig
from ..schemas.extraction import ExtractionResult
from ..state_store import SourceRecord
from .base import (
    ExtractionAPIError,
    ExtractionInvoker,
    ExtractionParseError,
    ExtractionTimeoutError,
)
from .prompts import render_email_message

logger = logging.getLogger(__name__)

_OBJECT_RE = re.compile(r"\{[\s\S]*\}")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


def parse_json_response(content: str) -> dict[str, Any]:
    """Parse a JSON object from a model reply, tolerating common damage.

    Handles:
    - Markdown code fences (```json ... ```)
    - Prose around the object
    - Control characters and trailing commas

    Floats are parsed as Decimal.

    Raises:
        ExtractionParseError: If no JSON object can be recovered.
    """
    if not content or not content.strip():
        raise ExtractionParseError("Could not parse JSON: empty response")

    content = content.strip()
    if content.startswith("```json"):
        content = content[7:]
    elif content.startswith("```"):
        content = content[3:]
    if content.endswith("```"):
        content = content[:-3]
    content = content.strip()

    candidates = [content]
    match = _OBJECT_RE.search(content)
    if match and match.group() != content:
        candidates.append(match.group())

    for candidate in list(candidates):
        cleaned = _CONTROL_CHARS_RE.sub("", candidate)
        cleaned = _TRAILING_COMMA_RE.sub(r"\1", cleaned)
        if cleaned != candidate:
            candidates.append(cleaned)

    for candidate in candidates:
        try:
            data = json.loads(candidate, parse_float=Decimal)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data

    raise ExtractionParseError(f"Could not parse JSON from response: {content[:200]}")


class OllamaExtractor(ExtractionInvoker):
    """Extraction invoker backed by an Ollama server.

    Usable as an async context manager; the underlying client is shared
    by every concurrent call in a window.
    """

    def __init__(self, config: LLMConfig, client: httpx.AsyncClient | None = None):
        """
        Args:
            config: LLM settings (URL, auth header, timeout)
            client: Optional preconfigured client (tests inject a MockTransport here)
        """
        self.config = config
        headers = {}
        if config.auth_header:
            headers["Authorization"] = config.auth_header
        self._client = client or httpx.AsyncClient(headers=headers)
        self._owns_client = client is None
        self._timeout = httpx.Timeout(
            connect=10.0,
            read=float(config.timeout_seconds),
            write=30.0,
            pool=10.0,
        )

    @property
    def name(self) -> str:
        return "ollama"

    async def extract(
        self,
        record: SourceRecord,
        model_id: str,
        prompt_text: str,
        output_schema: dict[str, Any] | None = None,
    ) -> ExtractionResult:
        url = f"{self.config.ollama_url.rstrip('/')}/api/chat"
        payload = {
            "model": model_id,
            "messages": [
                {"role": "system", "content": prompt_text},
                {"role": "user", "content": render_email_message(record)},
            ],
            "stream": False,
            "format": output_schema or "json",
            "options": {"temperature": 0},
        }
        logger.debug("Calling Ollama model %s for email %s", model_id, record.id)

        try:
            response = await self._client.post(url, json=payload, timeout=self._timeout)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise ExtractionTimeoutError(
                f"Ollama request timed out after {self.config.timeout_seconds}s"
            ) from e
        except httpx.HTTPStatusError as e:
            raise ExtractionAPIError(
                f"Ollama API error {e.response.status_code} for model '{model_id}'",
                status_code=e.response.status_code,
            ) from e
        except httpx.RequestError as e:
            raise ExtractionAPIError(f"Ollama API request failed: {e}") from e

        try:
            content = response.json().get("message", {}).get("content", "")
        except (ValueError, AttributeError) as e:
            raise ExtractionParseError(f"Could not parse Ollama JSON envelope: {e}") from e

        logger.debug("Ollama %s returned %d chars", model_id, len(content))
        return ExtractionResult.from_dict(parse_json_response(content))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> OllamaExtractor:
        return self

    async def __aexit__(self, *args) -> None:
        await self.aclose()
