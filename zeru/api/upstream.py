"""Upstream model session: streams one turn from the OpenAI Responses API.

Direct httpx calls, no SDK. The server keeps the turn history (store=true),
so a continuation only sends new input items plus previous_response_id.
The provider's SSE events are narrowed to the handful of kinds the
engine understands; everything else is dropped here.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from typing import Any

import httpx

from zeru.config import Settings

logger = logging.getLogger(__name__)


class UpstreamError(RuntimeError):
    """Transport failure or in-stream error reported by the model provider."""


@dataclass
class UpstreamRequest:
    """One turn's worth of input."""

    model: str
    input: list[dict[str, Any]]
    tools: list[dict[str, Any]] = field(default_factory=list)
    previous_turn_id: str | None = None
    tool_choice: str = "auto"
    reasoning_effort: str = "medium"

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "input": self.input,
            "stream": True,
            "store": True,
            "tool_choice": self.tool_choice,
            "reasoning": {"effort": self.reasoning_effort, "summary": "auto"},
        }
        if self.tools:
            payload["tools"] = self.tools
        if self.previous_turn_id:
            payload["previous_response_id"] = self.previous_turn_id
        return payload


@dataclass
class UpstreamEvent:
    """A single event from the streaming API response."""

    type: str  # reasoning_delta, text_delta, tool_call_added, tool_call_done, turn_completed, error
    text: str = ""
    item_id: str = ""
    call_id: str = ""
    name: str = ""
    arguments: dict[str, Any] = field(default_factory=dict)
    turn_id: str = ""
    output: list[dict[str, Any]] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0


def _parse_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    try:
        parsed = json.loads(raw or "{}")
    except (TypeError, json.JSONDecodeError):
        logger.warning("Unparseable tool arguments, using {}: %r", raw)
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _parse_sse_event(data: dict[str, Any]) -> UpstreamEvent | None:
    """Parse a Responses API SSE event dict into an UpstreamEvent.

    Function-call items are reported twice: once when added (no
    arguments yet) and once when done (complete arguments). Their
    call_id is what a later function_call_output must reference.
    """
    event_type = data.get("type")

    if event_type == "response.reasoning_summary_text.delta":
        return UpstreamEvent(type="reasoning_delta", text=str(data.get("delta", "")))

    if event_type == "response.output_text.delta":
        return UpstreamEvent(type="text_delta", text=str(data.get("delta", "")))

    if event_type in ("response.output_item.added", "response.output_item.done"):
        item = data.get("item") or {}
        if item.get("type") != "function_call":
            return None
        item_id = str(item.get("id", ""))
        event = UpstreamEvent(
            type="tool_call_added" if event_type.endswith(".added") else "tool_call_done",
            item_id=item_id,
            call_id=str(item.get("call_id") or item_id),
            name=str(item.get("name", "")),
        )
        if event.type == "tool_call_done":
            event.arguments = _parse_arguments(item.get("arguments"))
        return event

    if event_type == "response.completed":
        response = data.get("response") or {}
        usage = response.get("usage") or {}
        return UpstreamEvent(
            type="turn_completed",
            turn_id=str(response.get("id", "")),
            output=list(response.get("output") or []),
            input_tokens=int(usage.get("input_tokens") or 0),
            output_tokens=int(usage.get("output_tokens") or 0),
        )

    if event_type == "response.failed":
        error = (data.get("response") or {}).get("error") or {}
        return UpstreamEvent(type="error", text=str(error.get("message") or "Model response failed"))

    if event_type == "error":
        return UpstreamEvent(type="error", text=str(data.get("message") or data.get("code") or "Upstream error"))

    return None


class UpstreamClient:
    """Shared httpx client for the model provider. Credentials are per request."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._http: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize the httpx client with timeout settings."""
        settings = self._settings
        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(
            max_connections=20,
            max_keepalive_connections=10,
        )
        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers={"content-type": "application/json"},
            timeout=timeout,
            limits=limits,
        )
        logger.info("Upstream client initialized (%s)", settings.api_base_url)

    async def close(self) -> None:
        """Clean up httpx client."""
        if self._http:
            await self._http.aclose()
            self._http = None

    async def stream(self, request: UpstreamRequest, api_key: str) -> AsyncGenerator[UpstreamEvent, None]:
        """Stream one turn. Yields UpstreamEvents in arrival order.

        HTTP errors and in-stream errors are yielded as a single error
        event, after which the generator stops. Closing the generator
        closes the HTTP response, which cancels the turn upstream.
        """
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")

        headers = {"authorization": f"Bearer {api_key}"}
        async with self._http.stream("POST", "/responses", json=request.to_payload(), headers=headers) as response:
            if response.status_code != 200:
                error_body = await response.aread()
                yield UpstreamEvent(type="error", text=_error_message(response.status_code, error_body))
                return

            async for line in response.aiter_lines():
                if not line.startswith("data: "):
                    continue
                payload = line[6:].strip()
                if not payload or payload == "[DONE]":
                    continue
                try:
                    data = json.loads(payload)
                except json.JSONDecodeError:
                    logger.warning("Skipping malformed SSE line: %s", payload[:200])
                    continue
                event = _parse_sse_event(data)
                if event:
                    yield event
                    if event.type == "error":
                        return


def _error_message(status_code: int, body: bytes) -> str:
    try:
        message = json.loads(body)["error"]["message"]
    except (ValueError, KeyError, TypeError):
        message = body.decode(errors="replace")[:500]
    return f"Upstream returned {status_code}: {message}"
