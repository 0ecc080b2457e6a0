"""Tests for the Anthropic transport: SSE parsing, wire format, httpx calls."""

import json

import httpx
import pytest

from colloquy.api.transport import AnthropicTransport, parse_sse_event, turns_to_wire
from colloquy.conversation.models import (
    DocumentBlock,
    ImageBlock,
    ReasoningBlock,
    TextBlock,
    ToolInvocationBlock,
    ToolResultBlock,
    Turn,
    user_turn,
)
from colloquy.errors import TransportError, TransportTimeout

# ---------------------------------------------------------------------------
# parse_sse_event
# ---------------------------------------------------------------------------


class TestParseSSEEvent:
    def test_text_delta(self):
        event = parse_sse_event({
            "type": "content_block_delta",
            "index": 0,
            "delta": {"type": "text_delta", "text": "Hello world"},
        })
        assert event.type == "text_delta"
        assert event.text == "Hello world"

    def test_thinking_and_signature(self):
        thinking = parse_sse_event({"type": "content_block_delta", "index": 0, "delta": {"type": "thinking_delta", "thinking": "hmm"}})
        signature = parse_sse_event({"type": "content_block_delta", "index": 0, "delta": {"type": "signature_delta", "signature": "abc"}})
        assert (thinking.type, thinking.text) == ("reasoning_delta", "hmm")
        assert (signature.type, signature.text) == ("reasoning_signature", "abc")

    def test_tool_use_start(self):
        event = parse_sse_event({
            "type": "content_block_start",
            "index": 1,
            "content_block": {"type": "tool_use", "id": "toolu_1", "name": "echo", "input": {}},
        })
        assert event.type == "tool_call_start"
        assert (event.tool_id, event.tool_name, event.index) == ("toolu_1", "echo", 1)

    def test_text_block_start_ignored(self):
        assert parse_sse_event({"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}}) is None

    def test_input_json_delta(self):
        event = parse_sse_event({
            "type": "content_block_delta",
            "index": 1,
            "delta": {"type": "input_json_delta", "partial_json": '{"a":'},
        })
        assert event.type == "tool_call_input_delta"
        assert event.text == '{"a":'
        assert event.index == 1

    def test_message_delta_carries_stop_reason(self):
        event = parse_sse_event({"type": "message_delta", "delta": {"stop_reason": "tool_use"}})
        assert event.type == "done"
        assert event.stop_reason == "tool_use"

    def test_ping_skipped(self):
        assert parse_sse_event({"type": "ping"}) is None

    def test_error_raises(self):
        with pytest.raises(TransportError, match="overloaded_error"):
            parse_sse_event({"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})


# ---------------------------------------------------------------------------
# Wire format
# ---------------------------------------------------------------------------


class TestWireFormat:
    def test_block_conversion(self):
        turns = [
            Turn(role="user", content=[
                ImageBlock(format="jpg", data=b"img"),
                DocumentBlock(format="pdf", data=b"%PDF", name="a.pdf"),
                DocumentBlock(format="md", data=b"# Title", name="notes.md"),
                TextBlock(text="Summarize"),
            ]),
            Turn(role="assistant", content=[
                ReasoningBlock(text="think", signature="sig"),
                TextBlock(text="Calling"),
                ToolInvocationBlock(id="t1", name="echo", input={"message": "x"}),
            ]),
            Turn(role="user", content=[ToolResultBlock(id="t1", result="bad", status="error")]),
        ]
        wire = turns_to_wire(turns)

        image, pdf, md, text = wire[0]["content"]
        assert image["source"] == {"type": "base64", "media_type": "image/jpeg", "data": "aW1n"}
        assert pdf["source"]["media_type"] == "application/pdf"
        assert pdf["title"] == "a.pdf"
        assert md["source"] == {"type": "text", "media_type": "text/plain", "data": "# Title"}
        assert text == {"type": "text", "text": "Summarize"}

        thinking, _, tool_use = wire[1]["content"]
        assert thinking == {"type": "thinking", "thinking": "think", "signature": "sig"}
        assert tool_use == {"type": "tool_use", "id": "t1", "name": "echo", "input": {"message": "x"}}

        assert wire[2]["content"] == [{"type": "tool_result", "tool_use_id": "t1", "content": "bad", "is_error": True}]

    def test_unsigned_reasoning_dropped(self):
        wire = turns_to_wire([Turn(role="assistant", content=[ReasoningBlock(text="t"), TextBlock(text="hi")])])
        assert wire[0]["content"] == [{"type": "text", "text": "hi"}]


# ---------------------------------------------------------------------------
# httpx integration
# ---------------------------------------------------------------------------


def _sse(*events: dict) -> bytes:
    lines = []
    for event in events:
        lines.append(f"event: {event['type']}")
        lines.append(f"data: {json.dumps(event)}")
        lines.append("")
    return ("\n".join(lines) + "\n").encode()


def _transport(settings, handler) -> AnthropicTransport:
    client = httpx.AsyncClient(base_url="https://api.test", transport=httpx.MockTransport(handler))
    return AnthropicTransport(settings, http=client)


class TestAnthropicTransport:
    @pytest.mark.asyncio
    async def test_stream_completion(self, settings):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["payload"] = json.loads(request.content)
            body = _sse(
                {"type": "message_start", "message": {}},
                {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
                {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hi"}},
                {"type": "content_block_stop", "index": 0},
                {"type": "ping"},
                {"type": "content_block_start", "index": 1, "content_block": {"type": "tool_use", "id": "t1", "name": "echo"}},
                {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": "{}"}},
                {"type": "content_block_stop", "index": 1},
                {"type": "message_delta", "delta": {"stop_reason": "tool_use"}},
                {"type": "message_stop"},
            )
            return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

        transport = _transport(settings, handler)
        tools = [{"name": "echo", "description": "", "input_schema": {"type": "object"}}]
        events = [e async for e in transport.stream_completion([user_turn("hello")], tools=tools)]
        await transport.close()

        assert [e.type for e in events] == [
            "text_delta",
            "tool_call_start",
            "tool_call_input_delta",
            "tool_call_end",
            "done",
        ]
        assert events[3].index == 1
        payload = captured["payload"]
        assert payload["stream"] is True
        assert payload["tools"] == tools
        assert payload["messages"] == [{"role": "user", "content": [{"type": "text", "text": "hello"}]}]
        assert payload["system"][0]["text"] == settings.system_prompt

    @pytest.mark.asyncio
    async def test_stream_http_error(self, settings):
        transport = _transport(settings, lambda request: httpx.Response(400, json={"error": {"type": "invalid_request_error"}}))
        with pytest.raises(TransportError, match="400"):
            async for _ in transport.stream_completion([user_turn("x")]):
                pass

    @pytest.mark.asyncio
    async def test_stream_timeout(self, settings):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        transport = _transport(settings, handler)
        with pytest.raises(TransportTimeout):
            async for _ in transport.stream_completion([user_turn("x")]):
                pass

    @pytest.mark.asyncio
    async def test_in_stream_error(self, settings):
        def handler(request):
            return httpx.Response(200, content=_sse({"type": "error", "error": {"type": "overloaded_error", "message": "busy"}}))

        transport = _transport(settings, handler)
        with pytest.raises(TransportError, match="busy"):
            async for _ in transport.stream_completion([user_turn("x")]):
                pass

    @pytest.mark.asyncio
    async def test_complete(self, settings):
        def handler(request):
            payload = json.loads(request.content)
            assert payload["model"] == "claude-haiku"
            assert "stream" not in payload
            return httpx.Response(200, json={
                "content": [
                    {"type": "thinking", "thinking": "hm", "signature": "s1"},
                    {"type": "text", "text": "Short "},
                    {"type": "text", "text": "title"},
                ],
                "stop_reason": "end_turn",
            })

        transport = _transport(settings, handler)
        completion = await transport.complete([user_turn("x")], model="claude-haiku")
        assert completion.text == "Short title"
        assert completion.reasoning == "hm"
        assert completion.signature == "s1"
        assert completion.stop_reason == "end_turn"

    @pytest.mark.asyncio
    async def test_complete_retries_once_on_overload(self, settings):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(529, json={"error": {"type": "overloaded_error", "message": "busy"}}, headers={"retry-after": "0"})
            return httpx.Response(200, json={"content": [{"type": "text", "text": "ok"}], "stop_reason": "end_turn"})

        transport = _transport(settings, handler)
        completion = await transport.complete([user_turn("x")])
        assert completion.text == "ok"
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_complete_client_error_not_retried(self, settings):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(401, json={"error": {"type": "authentication_error", "message": "bad key"}})

        transport = _transport(settings, handler)
        with pytest.raises(TransportError, match="authentication_error"):
            await transport.complete([user_turn("x")])
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_not_started(self, settings):
        transport = AnthropicTransport(settings)
        with pytest.raises(TransportError, match="start"):
            await transport.complete([user_turn("x")])


class TestPayload:
    def test_thinking_enabled_only_for_primary_model(self, settings):
        transport = AnthropicTransport(settings.model_copy(update={"thinking_budget": 2048}))
        assert transport.build_payload([user_turn("x")])["thinking"] == {"type": "enabled", "budget_tokens": 2048}
        assert "thinking" not in transport.build_payload([user_turn("x")], model="claude-haiku")
