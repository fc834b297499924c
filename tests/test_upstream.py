"""Tests for the upstream Responses API client: SSE parsing and streaming."""

import json

import httpx
import pytest

from zeru.api.providers import ProviderNotConfiguredError, SettingsProviderResolver, require_provider
from zeru.api.upstream import UpstreamClient, UpstreamRequest, _parse_sse_event
from zeru.config import Settings


def _sse(*events) -> bytes:
    lines = []
    for event in events:
        payload = event if isinstance(event, str) else json.dumps(event)
        lines.append(f"data: {payload}\n\n")
    return "".join(lines).encode()


def _client(handler) -> UpstreamClient:
    client = UpstreamClient(Settings())
    client._http = httpx.AsyncClient(base_url="https://api.test/v1", transport=httpx.MockTransport(handler))
    return client


async def _collect(client: UpstreamClient, request: UpstreamRequest | None = None) -> list:
    request = request or UpstreamRequest(model="gpt-test", input=[{"role": "user", "content": "hi"}])
    return [event async for event in client.stream(request, "sk-test")]


# ---------------------------------------------------------------------------
# Request payload
# ---------------------------------------------------------------------------


class TestUpstreamRequest:
    def test_first_turn_payload(self):
        payload = UpstreamRequest(model="gpt-test", input=[{"role": "user", "content": "hi"}]).to_payload()

        assert payload["stream"] is True
        assert payload["store"] is True
        assert payload["reasoning"] == {"effort": "medium", "summary": "auto"}
        assert "previous_response_id" not in payload
        assert "tools" not in payload

    def test_continuation_payload(self):
        payload = UpstreamRequest(
            model="gpt-test",
            input=[{"type": "function_call_output", "call_id": "call_1", "output": "{}"}],
            tools=[{"type": "function", "name": "list_accounts"}],
            previous_turn_id="resp_1",
            reasoning_effort="low",
        ).to_payload()

        assert payload["previous_response_id"] == "resp_1"
        assert payload["tools"] == [{"type": "function", "name": "list_accounts"}]
        assert payload["reasoning"]["effort"] == "low"


# ---------------------------------------------------------------------------
# SSE event parsing
# ---------------------------------------------------------------------------


class TestParseSseEvent:
    def test_text_and_reasoning_deltas(self):
        text = _parse_sse_event({"type": "response.output_text.delta", "delta": "Hello"})
        thinking = _parse_sse_event({"type": "response.reasoning_summary_text.delta", "delta": "Hmm"})
        assert (text.type, text.text) == ("text_delta", "Hello")
        assert (thinking.type, thinking.text) == ("reasoning_delta", "Hmm")

    def test_function_call_added_has_no_arguments(self):
        event = _parse_sse_event(
            {
                "type": "response.output_item.added",
                "item": {"type": "function_call", "id": "fc_1", "call_id": "call_1", "name": "list_accounts"},
            }
        )
        assert event.type == "tool_call_added"
        assert event.call_id == "call_1"
        assert event.arguments == {}

    def test_function_call_done_parses_arguments(self):
        event = _parse_sse_event(
            {
                "type": "response.output_item.done",
                "item": {
                    "type": "function_call",
                    "id": "fc_1",
                    "call_id": "call_1",
                    "name": "get_trial_balance",
                    "arguments": '{"fiscalPeriodId": "fp-1"}',
                },
            }
        )
        assert event.type == "tool_call_done"
        assert event.arguments == {"fiscalPeriodId": "fp-1"}

    def test_malformed_arguments_become_empty(self):
        event = _parse_sse_event(
            {
                "type": "response.output_item.done",
                "item": {"type": "function_call", "id": "fc_1", "name": "x", "arguments": "{not json"},
            }
        )
        assert event.arguments == {}
        assert event.call_id == "fc_1"

    def test_non_function_items_are_dropped(self):
        assert _parse_sse_event({"type": "response.output_item.added", "item": {"type": "message"}}) is None
        assert _parse_sse_event({"type": "response.created"}) is None

    def test_completed_carries_usage_and_output(self):
        event = _parse_sse_event(
            {
                "type": "response.completed",
                "response": {
                    "id": "resp_9",
                    "output": [{"type": "message"}],
                    "usage": {"input_tokens": 120, "output_tokens": 30},
                },
            }
        )
        assert event.type == "turn_completed"
        assert event.turn_id == "resp_9"
        assert event.output == [{"type": "message"}]
        assert (event.input_tokens, event.output_tokens) == (120, 30)

    def test_failed_and_error(self):
        failed = _parse_sse_event({"type": "response.failed", "response": {"error": {"message": "quota"}}})
        error = _parse_sse_event({"type": "error", "code": "rate_limited"})
        assert (failed.type, failed.text) == ("error", "quota")
        assert (error.type, error.text) == ("error", "rate_limited")


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


class TestStream:
    @pytest.mark.asyncio
    async def test_stream_yields_known_events_in_order(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            body = _sse(
                {"type": "response.created"},
                {"type": "response.output_text.delta", "delta": "Hi"},
                "{broken",
                {"type": "response.completed", "response": {"id": "resp_1", "output": []}},
                "[DONE]",
            )
            return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

        client = _client(handler)
        events = await _collect(client)
        await client.close()

        assert [e.type for e in events] == ["text_delta", "turn_completed"]
        assert seen["auth"] == "Bearer sk-test"
        assert seen["body"]["model"] == "gpt-test"

    @pytest.mark.asyncio
    async def test_http_error_is_one_error_event(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"error": {"message": "Incorrect API key"}})

        client = _client(handler)
        events = await _collect(client)
        await client.close()

        assert len(events) == 1
        assert events[0].type == "error"
        assert events[0].text == "Upstream returned 401: Incorrect API key"

    @pytest.mark.asyncio
    async def test_stream_stops_after_in_stream_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            body = _sse(
                {"type": "error", "message": "server overloaded"},
                {"type": "response.output_text.delta", "delta": "never"},
            )
            return httpx.Response(200, content=body)

        client = _client(handler)
        events = await _collect(client)
        await client.close()

        assert [(e.type, e.text) for e in events] == [("error", "server overloaded")]

    @pytest.mark.asyncio
    async def test_stream_requires_start(self):
        client = UpstreamClient(Settings())
        with pytest.raises(RuntimeError):
            await _collect(client)


# ---------------------------------------------------------------------------
# Provider resolution
# ---------------------------------------------------------------------------


class TestProviders:
    @pytest.mark.asyncio
    async def test_missing_key_is_not_configured(self):
        resolver = SettingsProviderResolver(Settings(OPENAI_API_KEY=""))
        with pytest.raises(ProviderNotConfiguredError, match="AI provider not configured"):
            await require_provider(resolver, "tenant-1")

    @pytest.mark.asyncio
    async def test_key_and_model_from_settings(self):
        resolver = SettingsProviderResolver(Settings(OPENAI_API_KEY="sk-live", model="gpt-x"))
        config = await require_provider(resolver, "tenant-1")
        assert (config.api_key, config.model) == ("sk-live", "gpt-x")
        assert "sk-live" not in repr(config)
