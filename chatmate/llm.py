"""Streaming chat completions against an OpenAI-compatible API."""

import inspect
import json
import logging
import threading
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping, Sequence
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any

import httpx

from .errors import ProviderError
from .store import ChatMessage

logger = logging.getLogger(__name__)

SUMMARY_PREFIX = "[Previous conversation summary]\n"

DeltaCallback = Callable[[str], Awaitable[None] | None]


@dataclass
class StreamedToolCall:
    """A tool call assembled from streaming chunks."""

    id: str = ""
    name: str = ""
    arguments: str = ""


@dataclass
class StreamResult:
    """Everything collected from one streamed chat completion."""

    text: str = ""
    tool_calls: list[StreamedToolCall] = field(default_factory=list)
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None


class LlmClient:
    """Chat completion client whose model settings can be swapped at runtime."""

    def __init__(self, api_key: str, api_base: str, model: str,
                 temperature: float = 0.7, max_tokens: int = 4096,
                 client: httpx.AsyncClient | None = None) -> None:
        self.api_key = api_key
        self.api_base = api_base.rstrip("/")
        self._client = client
        self._lock = threading.Lock()
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens

    @property
    def model(self) -> str:
        with self._lock:
            return self._model

    @property
    def temperature(self) -> float:
        with self._lock:
            return self._temperature

    @property
    def max_tokens(self) -> int:
        with self._lock:
            return self._max_tokens

    def set_model(self, model: str, temperature: float | None = None,
                  max_tokens: int | None = None) -> None:
        """Hot-swap the model; temperature and max_tokens change only if given."""
        with self._lock:
            self._model = model
            if temperature is not None:
                self._temperature = temperature
            if max_tokens is not None:
                self._max_tokens = max_tokens
        logger.info("LLM model hot-swapped: %s", model)

    def current_settings(self) -> str:
        """Current settings as a one-line summary."""
        with self._lock:
            return (f"model={self._model}, temperature={self._temperature}, "
                    f"max_tokens={self._max_tokens}")

    async def stream_chat(self, request: Mapping[str, Any],
                          on_delta: DeltaCallback | None = None) -> StreamResult:
        """Stream a chat completion, passing each text delta to `on_delta`.

        Returns the full text, the tool calls that carry a name, and usage.
        """
        body = {**request, "stream": True}
        url = f"{self.api_base}/chat/completions"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Accept": "text/event-stream",
        }
        try:
            if self._client is not None:
                return await self._stream(self._client, url, headers, body, on_delta)
            async with httpx.AsyncClient(timeout=None) as client:
                return await self._stream(client, url, headers, body, on_delta)
        except httpx.HTTPError as exc:
            logger.error("LLM stream error: %s", exc)
            raise ProviderError(str(exc)) from exc

    async def _stream(self, client: httpx.AsyncClient, url: str,
                      headers: dict[str, str], body: dict[str, Any],
                      on_delta: DeltaCallback | None) -> StreamResult:
        result = StreamResult()
        text_parts: list[str] = []

        async with client.stream("POST", url, headers=headers, json=body) as response:
            if not response.is_success:
                detail = (await response.aread()).decode("utf-8", "replace")
                raise ProviderError(
                    f"{response.status_code} {response.reason_phrase}: {detail}"
                )
            async with aclosing(_sse_data(response.aiter_lines())) as events:
                async for payload in events:
                    if payload.strip() == "[DONE]":
                        break
                    chunk = _decode_chunk(payload)
                    await _apply_chunk(chunk, result, text_parts, on_delta)

        result.text = "".join(text_parts)
        result.tool_calls = [call for call in result.tool_calls if call.name]
        return result


async def _sse_data(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """Yield the data payload of each server-sent event."""
    data: list[str] = []
    async for line in lines:
        if not line:
            if data:
                yield "\n".join(data)
                data = []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if name == "data":
            data.append(value[1:] if value.startswith(" ") else value)
    if data:
        yield "\n".join(data)


def _decode_chunk(payload: str) -> dict[str, Any]:
    try:
        chunk = json.loads(payload)
    except json.JSONDecodeError as exc:
        logger.error("LLM stream error: %s", exc)
        raise ProviderError(f"invalid stream chunk: {exc}") from exc
    if not isinstance(chunk, dict):
        raise ProviderError("invalid stream chunk: not an object")
    error = chunk.get("error")
    if error:
        message = error.get("message", error) if isinstance(error, dict) else error
        logger.error("LLM stream error: %s", message)
        raise ProviderError(str(message))
    return chunk


async def _apply_chunk(chunk: dict[str, Any], result: StreamResult,
                       text_parts: list[str], on_delta: DeltaCallback | None) -> None:
    usage = chunk.get("usage")
    if isinstance(usage, dict):
        result.prompt_tokens = usage.get("prompt_tokens")
        result.completion_tokens = usage.get("completion_tokens")
        result.total_tokens = usage.get("total_tokens")

    for choice in chunk.get("choices") or []:
        delta = choice.get("delta") or {}

        content = delta.get("content")
        if content is not None:
            text_parts.append(content)
            if on_delta is not None:
                outcome = on_delta(content)
                if inspect.isawaitable(outcome):
                    await outcome

        for piece in delta.get("tool_calls") or []:
            index = int(piece.get("index", 0))
            while len(result.tool_calls) <= index:
                result.tool_calls.append(StreamedToolCall())
            call = result.tool_calls[index]
            if piece.get("id") is not None:
                call.id = piece["id"]
            function = piece.get("function") or {}
            if function.get("name") is not None:
                call.name = function["name"]
            if function.get("arguments") is not None:
                call.arguments += function["arguments"]

        reason = choice.get("finish_reason")
        if reason is not None:
            logger.debug("stream finished: %s", reason)
            if reason == "tool_calls":
                logger.debug("tool calls in stream: %d", len(result.tool_calls))


def build_messages(system_prompt: str, history: Sequence[ChatMessage],
                   user_message: str,
                   image_urls: Sequence[str] = ()) -> list[dict[str, Any]]:
    """Build the chat message list: system prompt, history, then the new user turn."""
    messages: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]

    for msg in history:
        if msg.role == "user":
            messages.append({"role": "user", "content": msg.content})
        elif msg.role == "assistant":
            messages.append({"role": "assistant", "content": msg.content})
        elif msg.role == "system":
            # A compressed history summary goes in as user context.
            messages.append({"role": "user", "content": SUMMARY_PREFIX + msg.content})

    if not image_urls:
        messages.append({"role": "user", "content": user_message})
        return messages

    parts: list[dict[str, Any]] = []
    if user_message:
        parts.append({"type": "text", "text": user_message})
    parts.extend({"type": "image_url", "image_url": {"url": url}} for url in image_urls)
    messages.append({"role": "user", "content": parts})
    return messages