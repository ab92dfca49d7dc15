"""tests for ai clients with mocked transports."""

import json

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from thinkflow.config import EndpointConfig
from thinkflow.core.client import (
    AIRequestError,
    ClaudeClient,
    ClientProtocol,
    ErrorKind,
    MockClient,
    OpenAIClient,
    classify_error,
    describe_error,
    extract_image_url,
    parse_sse_line,
)


CHAT = EndpointConfig(base_url="https://ai.test/v1/chat/completions", model="test-model", api_key="sk-test")
IMAGE = EndpointConfig(base_url="https://ai.test/v1/images/generations", model="img", api_key="sk-img")


def sse_body(*contents, reasoning=None):
    lines = [": keep-alive", ""]
    if reasoning:
        lines += [f"data: {json.dumps({'choices': [{'delta': {'reasoning': reasoning}}]})}", ""]
    for content in contents:
        lines += [f"data: {json.dumps({'choices': [{'delta': {'content': content}}]})}", ""]
    lines += ["data: [DONE]", "", "data: " + json.dumps({"choices": [{"delta": {"content": "after done"}}]}), ""]
    return "\n".join(lines).encode()


def client_for(handler):
    return OpenAIClient(CHAT, IMAGE, transport=httpx.MockTransport(handler))


class TestSSEParsing:
    def test_content_delta(self):
        delta = parse_sse_line('data: {"choices": [{"delta": {"content": "hi"}}]}')
        assert delta.content == "hi"

    def test_reasoning_delta(self):
        delta = parse_sse_line('data: {"choices": [{"delta": {"reasoning_content": "hmm"}}]}')
        assert delta.reasoning == "hmm"
        assert delta.content == ""

    @pytest.mark.parametrize("line", [
        "",
        ": ping",
        "event: x",
        "data: [DONE]",
        "data: {not json",
        'data: {"choices": []}',
        "data: [1, 2]",
        "data: 42",
        'data: "text"',
        'data: {"choices": "x"}',
        'data: {"choices": ["x"]}',
        'data: {"choices": [{"delta": "x"}]}',
        'data: {"choices": [{"delta": {"content": 5}}]}',
    ])
    def test_ignored_lines(self, line):
        assert parse_sse_line(line) is None


class TestErrorClassification:
    @pytest.mark.parametrize("status,kind", [
        (429, ErrorKind.RATE_LIMIT),
        (400, ErrorKind.BAD_REQUEST),
        (500, ErrorKind.SERVER),
        (503, ErrorKind.SERVER),
        (404, ErrorKind.UNKNOWN),
    ])
    def test_from_status(self, status, kind):
        assert AIRequestError.from_status(status).kind == kind

    def test_transport_error_is_network(self):
        assert classify_error(httpx.ConnectError("refused")) == ErrorKind.NETWORK

    def test_describe_known_kind(self):
        message = describe_error(AIRequestError("x", kind=ErrorKind.RATE_LIMIT))
        assert "rate limited" in message

    def test_describe_unknown_uses_message(self):
        assert describe_error(RuntimeError("odd failure")) == "odd failure"


class TestOpenAIClient:
    """http behaviour against a mock transport."""

    @pytest.mark.asyncio
    async def test_stream_yields_until_done(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            seen["auth"] = request.headers["authorization"]
            return httpx.Response(200, content=sse_body("hel", "lo"), headers={"content-type": "text/event-stream"})

        deltas = [d async for d in client_for(handler).stream([{"role": "user", "content": "x"}], json_mode=True)]
        assert "".join(d.content for d in deltas) == "hello"
        assert seen["body"]["stream"] is True
        assert seen["body"]["model"] == "test-model"
        assert seen["body"]["response_format"] == {"type": "json_object"}
        assert seen["auth"] == "Bearer sk-test"

    @pytest.mark.asyncio
    async def test_stream_passes_reasoning(self):
        def handler(request):
            return httpx.Response(200, content=sse_body("a", reasoning="thinking"))

        deltas = [d async for d in client_for(handler).stream([])]
        assert deltas[0].reasoning == "thinking"

    @pytest.mark.asyncio
    async def test_stream_rate_limited(self):
        def handler(request):
            return httpx.Response(429, text="slow down")

        with pytest.raises(AIRequestError) as exc:
            async for _ in client_for(handler).stream([]):
                pass
        assert exc.value.kind == ErrorKind.RATE_LIMIT
        assert exc.value.status == 429

    @pytest.mark.asyncio
    async def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(AIRequestError) as exc:
            await client_for(handler).complete([])
        assert exc.value.kind == ErrorKind.NETWORK

    @pytest.mark.asyncio
    async def test_complete(self):
        def handler(request):
            assert json.loads(request.content)["stream"] is False
            return httpx.Response(200, json={"choices": [{"message": {"content": "answer"}}]})

        assert await client_for(handler).complete([]) == "answer"

    @pytest.mark.asyncio
    async def test_complete_server_error(self):
        def handler(request):
            return httpx.Response(502, text="bad gateway")

        with pytest.raises(AIRequestError) as exc:
            await client_for(handler).complete([])
        assert exc.value.kind == ErrorKind.SERVER

    @pytest.mark.asyncio
    async def test_complete_body_not_json(self):
        def handler(request):
            return httpx.Response(200, text="<html>proxy page</html>")

        with pytest.raises(AIRequestError) as exc:
            await client_for(handler).complete([])
        assert exc.value.kind == ErrorKind.UNKNOWN

    @pytest.mark.asyncio
    async def test_image_body_not_json(self):
        def handler(request):
            return httpx.Response(200, text="not json")

        with pytest.raises(AIRequestError):
            await client_for(handler).generate_image("a cat")

    @pytest.mark.asyncio
    async def test_image_uses_image_endpoint(self):
        def handler(request):
            assert str(request.url) == IMAGE.base_url
            assert request.headers["authorization"] == "Bearer sk-img"
            return httpx.Response(200, json={"data": [{"url": "https://img.test/a.png"}]})

        assert await client_for(handler).generate_image("a cat") == "https://img.test/a.png"


class TestImageExtraction:
    def test_images_shape(self):
        assert extract_image_url({"data": [{"url": "https://x/y.png"}]}) == "https://x/y.png"

    def test_markdown_in_chat(self):
        data = {"choices": [{"message": {"content": "here: ![img](https://x/z.png)"}}]}
        assert extract_image_url(data) == "https://x/z.png"

    def test_bare_url_in_chat(self):
        data = {"choices": [{"message": {"content": "see https://x/w.png."}}]}
        assert extract_image_url(data) == "https://x/w.png"

    def test_missing(self):
        with pytest.raises(AIRequestError):
            extract_image_url({"choices": [{"message": {"content": "no image"}}]})

    @pytest.mark.parametrize("data", [[1, 2], "x", {"data": ["x"]}])
    def test_odd_shapes(self, data):
        with pytest.raises(AIRequestError):
            extract_image_url(data)


class TestMockClient:
    """tests for MockClient."""

    @pytest.mark.asyncio
    async def test_matched_response(self):
        client = MockClient(responses={"hello": "world"})
        assert await client.complete([{"role": "user", "content": "say HELLO"}]) == "world"

    @pytest.mark.asyncio
    async def test_stream_chunks(self):
        client = MockClient(responses={"x": "abcdefghij"}, chunk_size=3)
        chunks = [d.content async for d in client.stream([{"role": "user", "content": "x"}])]
        assert chunks == ["abc", "def", "ghi", "j"]

    @pytest.mark.asyncio
    async def test_error_raised_once(self):
        client = MockClient()
        client.error = AIRequestError("boom", kind=ErrorKind.SERVER)
        with pytest.raises(AIRequestError):
            await client.complete([])
        assert await client.complete([]) == client.default_response
        assert len(client.calls) == 2

    def test_satisfies_protocol(self):
        assert isinstance(MockClient(), ClientProtocol)


class FakeBlock:
    def __init__(self, text):
        self.text = text


class FakeMessage:
    def __init__(self, *texts):
        self.content = [FakeBlock(t) for t in texts]


class TestClaudeClient:
    """tests for ClaudeClient."""

    def _sdk(self, *messages):
        async def receive():
            for message in messages:
                yield message

        instance = MagicMock()
        instance.connect = AsyncMock()
        instance.query = AsyncMock()
        instance.disconnect = AsyncMock()
        instance.receive_response = receive
        return instance

    @pytest.mark.asyncio
    async def test_streams_text_blocks(self):
        """each text block becomes one delta."""
        instance = self._sdk(FakeMessage("hello ", "world"))
        with patch("thinkflow.core.client.ClaudeSDKClient", return_value=instance), \
                patch("thinkflow.core.client.ClaudeAgentOptions"):
            client = ClaudeClient()
            deltas = [d.content async for d in client.stream([{"role": "user", "content": "hi"}])]
        assert deltas == ["hello ", "world"]
        instance.query.assert_awaited_once()
        instance.disconnect.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_complete_joins(self):
        instance = self._sdk(FakeMessage("a"), FakeMessage("b"))
        with patch("thinkflow.core.client.ClaudeSDKClient", return_value=instance), \
                patch("thinkflow.core.client.ClaudeAgentOptions"):
            assert await ClaudeClient().complete([]) == "ab"

    @pytest.mark.asyncio
    async def test_sdk_failure_wrapped(self):
        instance = self._sdk()
        instance.connect = AsyncMock(side_effect=RuntimeError("no cli"))
        with patch("thinkflow.core.client.ClaudeSDKClient", return_value=instance), \
                patch("thinkflow.core.client.ClaudeAgentOptions"):
            with pytest.raises(AIRequestError):
                await ClaudeClient().complete([])
        instance.disconnect.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_no_images(self):
        with pytest.raises(AIRequestError) as exc:
            await ClaudeClient().generate_image("x")
        assert exc.value.kind == ErrorKind.BAD_REQUEST
