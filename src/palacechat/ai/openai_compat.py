"""Streaming transport for OpenAI-compatible chat completion endpoints.

Chat completions have no content blocks, so this adapter converts the
conversation into chat messages on the way out and rebuilds block events on the
way in: assistant text becomes one text block, and each streamed tool call
becomes a ``tool_use`` block in the order it first appears.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, AsyncIterator, Dict, List, Mapping, Sequence

import httpx
from openai import (
    APIConnectionError,
    APIError,
    APIStatusError,
    AsyncOpenAI,
    InternalServerError,
    RateLimitError,
)

from ..utils.logging import redact_secret
from .client import ClientSettings, ModelRequest, build_retrying, _close_client, _get, _log_payload
from .errors import ConfigurationError, TransportError
from .types import (
    BlockDelta,
    BlockStart,
    InputJsonDelta,
    Message,
    MessageDelta,
    MessageStop,
    StopReason,
    StreamEvent,
    TextBlock,
    TextDelta,
    ToolResultBlock,
    ToolUseBlock,
)

__all__ = ["OpenAICompatClient", "to_chat_messages", "map_finish_reason"]

LOGGER = logging.getLogger(__name__)

_FINISH_REASONS: Mapping[str, str] = {
    "tool_calls": StopReason.TOOL_USE,
    "function_call": StopReason.TOOL_USE,
    "stop": StopReason.END_TURN,
    "length": StopReason.MAX_TOKENS,
}

_RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    APIConnectionError,
    RateLimitError,
    InternalServerError,
    httpx.TimeoutException,
)


def map_finish_reason(reason: str | None) -> str | None:
    if reason is None:
        return None
    return _FINISH_REASONS.get(reason, reason)


def to_chat_messages(system_prompt: str, messages: Sequence[Message]) -> List[Dict[str, Any]]:
    """Convert block-structured messages into chat completion message params."""

    converted: List[Dict[str, Any]] = []
    if system_prompt:
        converted.append({"role": "system", "content": system_prompt})

    for message in messages:
        texts = [block.text for block in message.content if isinstance(block, TextBlock)]
        if message.role == "assistant":
            entry: Dict[str, Any] = {"role": "assistant", "content": "".join(texts) or None}
            tool_calls = [
                {
                    "id": block.id,
                    "type": "function",
                    "function": {
                        "name": block.name,
                        "arguments": json.dumps(block.input or {}, ensure_ascii=False),
                    },
                }
                for block in message.content
                if isinstance(block, ToolUseBlock)
            ]
            if tool_calls:
                entry["tool_calls"] = tool_calls
            converted.append(entry)
            continue

        # Tool results must directly follow the assistant message that requested them.
        for block in message.content:
            if isinstance(block, ToolResultBlock):
                converted.append(
                    {"role": "tool", "tool_call_id": block.tool_use_id, "content": block.content}
                )
        if texts:
            converted.append({"role": "user", "content": "".join(texts)})
    return converted


class _ChunkTranslator:
    """Rebuilds block events from chat completion chunks."""

    def __init__(self) -> None:
        self._next_index = 0
        self._text_index: int | None = None
        self._tool_indices: dict[int, int] = {}

    def _allocate(self) -> int:
        index = self._next_index
        self._next_index += 1
        return index

    def translate(self, chunk: Any) -> List[StreamEvent]:
        events: List[StreamEvent] = []
        for choice in _get(chunk, "choices") or ():
            delta = _get(choice, "delta")
            if delta is not None:
                events.extend(self._text_events(_get(delta, "content")))
                for call in _get(delta, "tool_calls") or ():
                    events.extend(self._tool_events(call))
            finish_reason = _get(choice, "finish_reason")
            if finish_reason:
                events.append(MessageDelta(stop_reason=map_finish_reason(finish_reason)))
        return events

    def _text_events(self, content: str | None) -> List[StreamEvent]:
        if not content:
            return []
        events: List[StreamEvent] = []
        if self._text_index is None:
            self._text_index = self._allocate()
            events.append(BlockStart(index=self._text_index, block_kind="text", block={"type": "text", "text": ""}))
        events.append(BlockDelta(index=self._text_index, delta=TextDelta(text=content)))
        return events

    def _tool_events(self, call: Any) -> List[StreamEvent]:
        events: List[StreamEvent] = []
        position = int(_get(call, "index", 0) or 0)
        function = _get(call, "function")
        index = self._tool_indices.get(position)
        if index is None:
            index = self._allocate()
            self._tool_indices[position] = index
            call_id = _get(call, "id") or f"call_{position}_{uuid.uuid4().hex[:8]}"
            events.append(
                BlockStart(
                    index=index,
                    block_kind="tool_use",
                    block={"type": "tool_use", "id": call_id, "name": _get(function, "name") or ""},
                )
            )
        arguments = _get(function, "arguments")
        if arguments:
            events.append(BlockDelta(index=index, delta=InputJsonDelta(partial_json=arguments)))
        return events


class OpenAICompatClient:
    """Streams chat completions as normalized block events."""

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        if client is None and not settings.api_key:
            raise ConfigurationError("OpenAI API key not configured", setting="api_key")
        self._settings = settings
        self._client = client or self._build_client(settings)
        LOGGER.debug(
            "OpenAI-compatible client ready (base_url=%s, key=%s)",
            settings.base_url or "default",
            redact_secret(settings.api_key),
        )

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            timeout=settings.request_timeout,
            max_retries=0,
            default_headers=settings.headers(),
        )

    def build_payload(self, request: ModelRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": request.model,
            "messages": to_chat_messages(request.system_prompt, request.messages),
            "stream": True,
            "max_completion_tokens": request.max_output_tokens,
        }
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.tools:
            payload["tools"] = [tool.to_openai_tool() for tool in request.tools]
        return payload

    async def stream(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        """Send ``request`` and yield block events rebuilt from the chunks."""

        payload = self.build_payload(request)
        LOGGER.debug(
            "Starting streamed chat completion via %s with %s message(s)",
            request.model,
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            _log_payload(payload)

        translator = _ChunkTranslator()
        try:
            stream = await self._open_stream(payload)
            async with stream:
                async for chunk in stream:
                    for event in translator.translate(chunk):
                        yield event
            yield MessageStop()
        except (asyncio.CancelledError, TransportError):
            raise
        except APIStatusError as exc:
            raise TransportError(
                f"OpenAI API error: {exc.status_code} - {exc.message}",
                details={"status_code": exc.status_code},
            ) from exc
        except (APIError, httpx.HTTPError) as exc:
            raise TransportError(f"OpenAI request failed: {exc}") from exc

    async def _open_stream(self, payload: Mapping[str, Any]) -> Any:
        async for attempt in build_retrying(self._settings, _RETRYABLE_ERRORS):
            with attempt:
                return await self._client.chat.completions.create(**payload)
        raise TransportError("Stream could not be opened")  # pragma: no cover - reraise=True

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""
        await _close_client(self._client)
