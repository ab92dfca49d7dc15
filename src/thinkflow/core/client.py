"""ai clients: openai-compatible http endpoints, claude-agent-sdk, and a mock.

every client speaks the same protocol: a one-shot completion, a streamed
completion yielding deltas, and image generation.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Optional, Protocol, runtime_checkable

import httpx
from claude_agent_sdk import (
    ClaudeAgentOptions,
    ClaudeSDKClient,
)

from ..config import EndpointConfig

logger = logging.getLogger(__name__)


# --- configuration ---

REQUEST_TIMEOUT = 120.0
DEFAULT_TEMPERATURE = 0.8
SSE_DONE = "[DONE]"


class ErrorKind(Enum):
    NETWORK = "network"        # could not reach the endpoint (dns, cors, refused)
    RATE_LIMIT = "rate_limit"  # 429
    BAD_REQUEST = "bad_request"  # 400
    SERVER = "server"          # 5xx
    UNKNOWN = "unknown"


ERROR_MESSAGES = {
    ErrorKind.NETWORK: "network error: could not reach the ai endpoint",
    ErrorKind.RATE_LIMIT: "rate limited: too many requests, try again shortly",
    ErrorKind.BAD_REQUEST: "bad request: check the model and endpoint settings",
    ErrorKind.SERVER: "the ai service is having trouble, try again later",
    ErrorKind.UNKNOWN: "something went wrong",
}


class AIRequestError(Exception):
    """an ai call failed; carries the classified kind and http status."""

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.UNKNOWN, status: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.status = status

    @classmethod
    def from_status(cls, status: int, body: str = "") -> AIRequestError:
        if status == 429:
            kind = ErrorKind.RATE_LIMIT
        elif status == 400:
            kind = ErrorKind.BAD_REQUEST
        elif status >= 500:
            kind = ErrorKind.SERVER
        else:
            kind = ErrorKind.UNKNOWN
        return cls(f"ai request failed with status {status}: {body[:200]}", kind=kind, status=status)


def classify_error(error: BaseException) -> ErrorKind:
    if isinstance(error, AIRequestError):
        return error.kind
    if isinstance(error, httpx.TransportError):
        return ErrorKind.NETWORK
    if isinstance(error, httpx.HTTPStatusError):
        return AIRequestError.from_status(error.response.status_code).kind
    return ErrorKind.UNKNOWN


def describe_error(error: BaseException) -> str:
    """short user-facing message for a failed ai call."""
    kind = classify_error(error)
    if kind == ErrorKind.UNKNOWN and str(error):
        return str(error)[:200]
    return ERROR_MESSAGES[kind]


@dataclass
class StreamDelta:
    """one decoded sse event."""

    content: str = ""
    reasoning: str = ""


def parse_sse_line(line: str) -> Optional[StreamDelta]:
    """decode one sse line. returns None for comments, keep-alives and junk."""
    line = line.strip()
    if not line.startswith("data:"):
        return None
    payload = line[5:].strip()
    if not payload or payload == SSE_DONE:
        return None
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        logger.debug("skipping malformed sse payload: %s", payload[:80])
        return None
    if not isinstance(data, dict):
        return None
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    delta = choices[0].get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content") or ""
    reasoning = delta.get("reasoning") or delta.get("reasoning_content") or ""
    if not isinstance(content, str) or not isinstance(reasoning, str):
        return None
    if not content and not reasoning:
        return None
    return StreamDelta(content=content, reasoning=reasoning)


_IMAGE_URL_RE = re.compile(r"!\[[^\]]*\]\((\S+?)\)|(https?://\S+)")


def extract_image_url(data: dict) -> str:
    """find the image url in an images- or chat-completion-shaped response."""
    if not isinstance(data, dict):
        raise AIRequestError("image response was not an object", kind=ErrorKind.UNKNOWN)
    items = data.get("data")
    if isinstance(items, list) and items and isinstance(items[0], dict) and items[0].get("url"):
        return items[0]["url"]
    try:
        content = data["choices"][0]["message"]["content"] or ""
    except (KeyError, IndexError, TypeError):
        content = ""
    if not isinstance(content, str):
        content = ""
    match = _IMAGE_URL_RE.search(content)
    if match:
        return (match.group(1) or match.group(2)).rstrip(").,")
    raise AIRequestError("no image url in response", kind=ErrorKind.UNKNOWN)


@runtime_checkable
class ClientProtocol(Protocol):
    """protocol for ai clients (real or mock)."""

    async def complete(self, messages: list[dict], json_mode: bool = False) -> str:
        """send messages and return the full response text."""
        ...

    def stream(self, messages: list[dict], json_mode: bool = False) -> AsyncIterator[StreamDelta]:
        """send messages and yield deltas as they arrive."""
        ...

    async def generate_image(self, prompt: str) -> str:
        """return an image url."""
        ...


class OpenAIClient:
    """client for openai-compatible chat and image endpoints."""

    def __init__(
        self,
        chat: EndpointConfig,
        image: Optional[EndpointConfig] = None,
        timeout: float = REQUEST_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.chat = chat
        self.image = image or chat
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    @staticmethod
    def _headers(endpoint: EndpointConfig) -> dict:
        return {
            "Authorization": f"Bearer {endpoint.api_key}",
            "Content-Type": "application/json",
        }

    def _chat_body(self, messages: list[dict], json_mode: bool, stream: bool) -> dict:
        body = {
            "model": self.chat.model,
            "messages": messages,
            "temperature": DEFAULT_TEMPERATURE,
            "stream": stream,
        }
        if json_mode:
            body["response_format"] = {"type": "json_object"}
        return body

    async def complete(self, messages: list[dict], json_mode: bool = False) -> str:
        try:
            async with self._client() as client:
                response = await client.post(
                    self.chat.base_url,
                    headers=self._headers(self.chat),
                    json=self._chat_body(messages, json_mode, stream=False),
                )
        except httpx.TransportError as e:
            raise AIRequestError(f"network error: {e}", kind=ErrorKind.NETWORK) from e

        if response.status_code >= 400:
            raise AIRequestError.from_status(response.status_code, response.text)
        try:
            return response.json()["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise AIRequestError("unexpected completion shape", kind=ErrorKind.UNKNOWN) from e

    async def stream(self, messages: list[dict], json_mode: bool = False) -> AsyncIterator[StreamDelta]:
        try:
            async with self._client() as client:
                async with client.stream(
                    "POST",
                    self.chat.base_url,
                    headers=self._headers(self.chat),
                    json=self._chat_body(messages, json_mode, stream=True),
                ) as response:
                    if response.status_code >= 400:
                        body = (await response.aread()).decode(errors="replace")
                        raise AIRequestError.from_status(response.status_code, body)

                    async for line in response.aiter_lines():
                        if line.strip() == f"data: {SSE_DONE}":
                            break
                        delta = parse_sse_line(line)
                        if delta is not None:
                            yield delta
        except httpx.TransportError as e:
            raise AIRequestError(f"network error: {e}", kind=ErrorKind.NETWORK) from e

    async def generate_image(self, prompt: str) -> str:
        try:
            async with self._client() as client:
                response = await client.post(
                    self.image.base_url,
                    headers=self._headers(self.image),
                    json={"model": self.image.model, "prompt": prompt},
                )
        except httpx.TransportError as e:
            raise AIRequestError(f"network error: {e}", kind=ErrorKind.NETWORK) from e

        if response.status_code >= 400:
            raise AIRequestError.from_status(response.status_code, response.text)
        try:
            data = response.json()
        except ValueError as e:
            raise AIRequestError("image response was not json", kind=ErrorKind.UNKNOWN) from e
        return extract_image_url(data)


def _flatten_messages(messages: list[dict]) -> str:
    """claude-agent-sdk takes one prompt; fold the chat into it."""
    parts = []
    for message in messages:
        role = message.get("role", "user")
        content = message.get("content", "")
        parts.append(content if role == "user" else f"[{role}]\n{content}")
    return "\n\n".join(parts)


class ClaudeClient:
    """client for claude using claude-agent-sdk.

    creates a fresh connection per query to avoid state conflicts. text is
    streamed one assistant content block at a time.
    """

    def __init__(self, cwd: Optional[Path] = None, model: str = "sonnet"):
        self.cwd = cwd or Path.cwd()
        self.model = model

    async def complete(self, messages: list[dict], json_mode: bool = False) -> str:
        parts = [delta.content async for delta in self.stream(messages, json_mode)]
        return "".join(parts)

    async def stream(self, messages: list[dict], json_mode: bool = False) -> AsyncIterator[StreamDelta]:
        # clear API key so SDK uses subscription auth, not API credits
        os.environ.pop("ANTHROPIC_API_KEY", None)

        options = ClaudeAgentOptions(
            cwd=str(self.cwd),
            model=self.model,
            tools=[],
            allowed_tools=[],
        )
        prompt = _flatten_messages(messages)
        if json_mode:
            prompt += "\n\nRespond with a raw JSON object only."

        client: Optional[ClaudeSDKClient] = None
        try:
            client = ClaudeSDKClient(options)
            await client.connect()
            await client.query(prompt)

            async for event in client.receive_response():
                if hasattr(event, "message") and hasattr(event.message, "content"):
                    blocks = event.message.content
                elif hasattr(event, "content") and isinstance(event.content, list):
                    blocks = event.content
                else:
                    continue
                for block in blocks:
                    text = getattr(block, "text", None)
                    if text:
                        logger.debug("claude block: %s...", text[:50])
                        yield StreamDelta(content=text)
        except AIRequestError:
            raise
        except Exception as e:
            raise AIRequestError(f"claude api error: {e}", kind=ErrorKind.UNKNOWN) from e
        finally:
            if client:
                try:
                    await client.disconnect()
                except Exception:
                    pass  # ignore cleanup errors

    async def generate_image(self, prompt: str) -> str:
        raise AIRequestError("image generation is not available with the claude provider", kind=ErrorKind.BAD_REQUEST)


class MockClient:
    """mock client for testing without api calls."""

    def __init__(
        self,
        responses: Optional[dict[str, str]] = None,
        delay: float = 0.0,
        chunk_size: int = 7,
        image_url: str = "https://example.com/mock.png",
    ):
        """init with optional response mapping.

        responses: dict mapping prompt substrings to responses.
        if the last message contains key (case-insensitive), return value.
        chunk_size: characters per streamed delta.
        """
        self.responses = responses or {}
        self.calls: list[list[dict]] = []  # track all message lists sent
        self.delay = delay
        self.chunk_size = chunk_size
        self.image_url = image_url
        self.error: Optional[Exception] = None  # raise this on the next call
        self.default_response = json.dumps({
            "overview": "mock overview",
            "nodes": [
                {"text": "first angle", "description": "a simulated suggestion"},
                {"text": "second angle", "description": "another simulated suggestion"},
            ],
        })

    def _respond(self, messages: list[dict]) -> str:
        self.calls.append(messages)
        if self.error is not None:
            error, self.error = self.error, None
            raise error
        prompt = (messages[-1].get("content", "") if messages else "").lower()
        for key, response in self.responses.items():
            if key.lower() in prompt:
                return response
        return self.default_response

    async def complete(self, messages: list[dict], json_mode: bool = False) -> str:
        await asyncio.sleep(self.delay)
        return self._respond(messages)

    async def stream(self, messages: list[dict], json_mode: bool = False) -> AsyncIterator[StreamDelta]:
        text = self._respond(messages)
        for start in range(0, len(text), self.chunk_size):
            await asyncio.sleep(self.delay)
            yield StreamDelta(content=text[start:start + self.chunk_size])

    async def generate_image(self, prompt: str) -> str:
        self.calls.append([{"role": "user", "content": prompt}])
        await asyncio.sleep(self.delay)
        if self.error is not None:
            error, self.error = self.error, None
            raise error
        return self.image_url
