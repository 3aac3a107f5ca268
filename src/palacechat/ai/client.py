"""Async streaming client for the Anthropic Messages API.

The client sends one request and yields the response as normalized
:mod:`palacechat.ai.types` stream events. Connection setup is retried with
exponential backoff; once events are flowing, failures are surfaced as
:class:`~palacechat.ai.errors.TransportError` instead of being retried, since a
replay would duplicate content the caller has already seen.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Mapping, Protocol, runtime_checkable

import httpx
from anthropic import (
    APIConnectionError,
    APIError,
    APIStatusError,
    AsyncAnthropic,
    InternalServerError,
    RateLimitError,
)
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..utils.logging import redact_secret
from .errors import ConfigurationError, TransportError
from .types import (
    BlockDelta,
    BlockStart,
    Delta,
    ErrorEvent,
    InputJsonDelta,
    Message,
    MessageDelta,
    MessageStop,
    StreamEvent,
    TextDelta,
    ToolDeclaration,
    UnknownDelta,
)

__all__ = [
    "ClientSettings",
    "ModelRequest",
    "StreamTransport",
    "AnthropicClient",
    "build_retrying",
    "normalize_anthropic_event",
]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ClientSettings:
    """Explicit dependencies of a transport client.

    Frozen and hashable so it can key the transport cache: changing any field
    (for example the API key) yields a different client.
    """

    provider: str = "anthropic"
    api_key: str = ""
    base_url: str | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: tuple[tuple[str, str], ...] = ()
    debug_logging: bool = False

    def headers(self) -> dict[str, str] | None:
        return dict(self.default_headers) if self.default_headers else None


@dataclass(slots=True, frozen=True)
class ModelRequest:
    """One outgoing streaming request.

    Attributes:
        model: Model identifier.
        max_output_tokens: Maximum number of tokens to generate.
        temperature: Sampling temperature.
        system_prompt: System prompt produced by the context provider.
        messages: Conversation so far, user/assistant roles only.
        tools: Tool declarations the model may invoke.
    """

    model: str
    max_output_tokens: int
    temperature: float | None
    system_prompt: str
    messages: tuple[Message, ...]
    tools: tuple[ToolDeclaration, ...] = ()
    stream: bool = field(default=True, init=False)

    def to_anthropic_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_output_tokens,
            "stream": self.stream,
            "messages": [message.to_param() for message in self.messages],
        }
        if self.temperature is not None:
            payload["temperature"] = self.temperature
        if self.system_prompt:
            payload["system"] = self.system_prompt
        if self.tools:
            payload["tools"] = [tool.to_param() for tool in self.tools]
        return payload


@runtime_checkable
class StreamTransport(Protocol):
    """Anything that turns a :class:`ModelRequest` into stream events."""

    def stream(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        ...

    async def aclose(self) -> None:
        ...


def build_retrying(settings: ClientSettings, retry_on: tuple[type[BaseException], ...]) -> AsyncRetrying:
    """Return the retry policy used while a stream is being opened."""

    return AsyncRetrying(
        reraise=True,
        stop=stop_after_attempt(max(1, settings.max_retries)),
        wait=wait_exponential(
            multiplier=settings.retry_min_seconds,
            max=settings.retry_max_seconds,
        ),
        retry=retry_if_exception_type(retry_on),
    )


def _log_payload(payload: Mapping[str, Any]) -> None:
    try:
        serialized = json.dumps(payload, ensure_ascii=False, indent=2)
    except (TypeError, ValueError):
        LOGGER.debug("Request payload (unserializable): %s", payload)
    else:
        LOGGER.debug("Request payload:\n%s", serialized)


async def _close_client(client: Any) -> None:
    close = getattr(client, "close", None)
    if close is None:
        return
    try:
        result = close()
    except Exception as exc:  # pragma: no cover - defensive guard
        LOGGER.debug("Client close failed to start: %s", exc)
        return
    if inspect.isawaitable(result):
        await result


_RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    APIConnectionError,
    RateLimitError,
    InternalServerError,
    httpx.TimeoutException,
)


class AnthropicClient:
    """Streams Messages API responses as normalized events."""

    def __init__(self, settings: ClientSettings, *, client: AsyncAnthropic | None = None) -> None:
        if client is None and not settings.api_key:
            raise ConfigurationError(
                "Anthropic API key not configured",
                setting="api_key",
            )
        self._settings = settings
        self._client = client or self._build_client(settings)
        LOGGER.debug(
            "Anthropic client ready (base_url=%s, key=%s)",
            settings.base_url or "default",
            redact_secret(settings.api_key),
        )

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    def _build_client(self, settings: ClientSettings) -> AsyncAnthropic:
        # Retries are handled here so that only the connection phase is retried.
        return AsyncAnthropic(
            api_key=settings.api_key,
            base_url=settings.base_url,
            timeout=settings.request_timeout,
            max_retries=0,
            default_headers=settings.headers(),
        )

    async def stream(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        """Send ``request`` and yield its normalized stream events."""

        payload = request.to_anthropic_payload()
        LOGGER.debug(
            "Starting streamed message via %s with %s message(s)",
            request.model,
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            _log_payload(payload)

        try:
            stream = await self._open_stream(payload)
            async with stream:
                async for raw in stream:
                    event = normalize_anthropic_event(raw)
                    if event is not None:
                        yield event
        except (asyncio.CancelledError, TransportError):
            raise
        except APIStatusError as exc:
            raise TransportError(
                f"Anthropic API error: {exc.status_code} - {exc.message}",
                details={"status_code": exc.status_code},
            ) from exc
        except (APIError, httpx.HTTPError) as exc:
            raise TransportError(f"Anthropic request failed: {exc}") from exc

    async def _open_stream(self, payload: Mapping[str, Any]) -> Any:
        async for attempt in build_retrying(self._settings, _RETRYABLE_ERRORS):
            with attempt:
                return await self._client.messages.create(**payload)
        raise TransportError("Stream could not be opened")  # pragma: no cover - reraise=True

    async def aclose(self) -> None:
        """Close the underlying SDK client to release network resources."""
        await _close_client(self._client)


# -----------------------------------------------------------------------------
# Event normalization
# -----------------------------------------------------------------------------


def _as_dict(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, Mapping):
        return dict(value)
    dump = getattr(value, "model_dump", None)
    if callable(dump):
        return dict(dump(exclude_none=True))
    return {key: item for key, item in vars(value).items() if not key.startswith("_")}


def _get(value: Any, name: str, default: Any = None) -> Any:
    if isinstance(value, Mapping):
        return value.get(name, default)
    return getattr(value, name, default)


def normalize_delta(raw: Any) -> Delta:
    """Map one raw block delta to a :data:`Delta`."""

    kind = _get(raw, "type")
    if kind == "text_delta":
        return TextDelta(text=str(_get(raw, "text") or ""))
    if kind == "input_json_delta":
        return InputJsonDelta(partial_json=str(_get(raw, "partial_json") or ""))
    fields = {key: value for key, value in _as_dict(raw).items() if key != "type"}
    return UnknownDelta(kind=str(kind or "unknown"), fields=fields)


def normalize_anthropic_event(raw: Any) -> StreamEvent | None:
    """Map one raw Messages API stream event to a :data:`StreamEvent`.

    Works with SDK event objects and with plain dictionaries. Events that carry
    no content for the assembler (``message_start``, ``content_block_stop``,
    ``ping``) map to ``None``.
    """

    kind = _get(raw, "type")
    if kind == "content_block_start":
        block = _as_dict(_get(raw, "content_block"))
        return BlockStart(
            index=int(_get(raw, "index", 0)),
            block_kind=str(block.get("type") or "unknown"),
            block=block,
        )
    if kind == "content_block_delta":
        return BlockDelta(index=int(_get(raw, "index", 0)), delta=normalize_delta(_get(raw, "delta")))
    if kind == "message_delta":
        return MessageDelta(stop_reason=_get(_get(raw, "delta"), "stop_reason"))
    if kind == "message_stop":
        return MessageStop()
    if kind == "error":
        error = _get(raw, "error")
        message = _get(error, "message") if error is not None else None
        return ErrorEvent(message=str(message or "unknown error"))
    return None
