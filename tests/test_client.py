"""Tests for the Anthropic streaming client."""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any, Iterable, cast

import httpx
import pytest
from anthropic import APIConnectionError, AsyncAnthropic

from palacechat.ai.client import AnthropicClient, ClientSettings, ModelRequest, normalize_anthropic_event
from palacechat.ai.errors import ConfigurationError, TransportError
from palacechat.ai.tools import TOOL_DECLARATIONS
from palacechat.ai.types import (
    BlockDelta,
    BlockStart,
    ErrorEvent,
    InputJsonDelta,
    Message,
    MessageDelta,
    MessageStop,
    TextDelta,
    UnknownDelta,
)


def _raw(kind: str, **fields: Any) -> SimpleNamespace:
    return SimpleNamespace(type=kind, **fields)


_RAW_EVENTS = [
    _raw("message_start", message=SimpleNamespace(id="msg_1")),
    _raw("content_block_start", index=0, content_block={"type": "text", "text": ""}),
    _raw("content_block_delta", index=0, delta=SimpleNamespace(type="text_delta", text="Sure!")),
    _raw("content_block_stop", index=0),
    _raw(
        "content_block_start",
        index=1,
        content_block={"type": "tool_use", "id": "toolu_1", "name": "create_room", "input": {}},
    ),
    _raw("content_block_delta", index=1, delta=SimpleNamespace(type="input_json_delta", partial_json='{"name"')),
    _raw("content_block_delta", index=1, delta=SimpleNamespace(type="input_json_delta", partial_json=': "Library"}')),
    _raw("content_block_stop", index=1),
    _raw("message_delta", delta=SimpleNamespace(stop_reason="tool_use"), usage=SimpleNamespace(output_tokens=12)),
    _raw("message_stop"),
]


class _FakeStream:
    def __init__(self, events: Iterable[Any]):
        self._iterator = iter(list(events))
        self.closed = False

    def __aiter__(self) -> "_FakeStream":
        return self

    async def __anext__(self) -> Any:
        try:
            return next(self._iterator)
        except StopIteration as exc:  # pragma: no cover - exhaust iterator
            raise StopAsyncIteration from exc

    async def __aenter__(self) -> "_FakeStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        self.closed = True
        return False


class _FakeMessages:
    def __init__(self, events: Iterable[Any], failures: Iterable[BaseException] = ()):
        self._events = list(events)
        self._failures = list(failures)
        self.calls: list[dict[str, Any]] = []
        self.streams: list[_FakeStream] = []

    async def create(self, **kwargs: Any) -> _FakeStream:
        self.calls.append(kwargs)
        if self._failures:
            raise self._failures.pop(0)
        stream = _FakeStream(self._events)
        self.streams.append(stream)
        return stream


def _make_client(events: Iterable[Any], failures: Iterable[BaseException] = ()) -> SimpleNamespace:
    return SimpleNamespace(messages=_FakeMessages(events, failures))


def _settings(**overrides: Any) -> ClientSettings:
    values: dict[str, Any] = {"api_key": "sk-ant-test", "max_retries": 3, "retry_min_seconds": 0.0, "retry_max_seconds": 0.0}
    values.update(overrides)
    return ClientSettings(**values)


def _request(**overrides: Any) -> ModelRequest:
    values: dict[str, Any] = {
        "model": "claude-3-5-haiku-latest",
        "max_output_tokens": 4000,
        "temperature": 0.7,
        "system_prompt": "You are a Memory Palace AI assistant.",
        "messages": (Message.user("hello"),),
        "tools": TOOL_DECLARATIONS[:2],
    }
    values.update(overrides)
    return ModelRequest(**values)


async def _collect(client: AnthropicClient, request: ModelRequest) -> list[Any]:
    return [event async for event in client.stream(request)]


# -----------------------------------------------------------------------------
# Payload
# -----------------------------------------------------------------------------


def test_payload_matches_messages_api_shape() -> None:
    payload = _request().to_anthropic_payload()

    assert payload == {
        "model": "claude-3-5-haiku-latest",
        "max_tokens": 4000,
        "temperature": 0.7,
        "stream": True,
        "system": "You are a Memory Palace AI assistant.",
        "messages": [{"role": "user", "content": [{"type": "text", "text": "hello"}]}],
        "tools": [TOOL_DECLARATIONS[0].to_param(), TOOL_DECLARATIONS[1].to_param()],
    }


def test_payload_omits_empty_tools_and_system() -> None:
    payload = _request(tools=(), system_prompt="").to_anthropic_payload()

    assert "tools" not in payload
    assert "system" not in payload


# -----------------------------------------------------------------------------
# Streaming
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_stream_normalizes_sdk_events() -> None:
    fake = _make_client(_RAW_EVENTS)
    client = AnthropicClient(_settings(), client=cast(AsyncAnthropic, fake))

    events = await _collect(client, _request())

    assert events == [
        BlockStart(index=0, block_kind="text", block={"type": "text", "text": ""}),
        BlockDelta(index=0, delta=TextDelta(text="Sure!")),
        BlockStart(
            index=1,
            block_kind="tool_use",
            block={"type": "tool_use", "id": "toolu_1", "name": "create_room", "input": {}},
        ),
        BlockDelta(index=1, delta=InputJsonDelta(partial_json='{"name"')),
        BlockDelta(index=1, delta=InputJsonDelta(partial_json=': "Library"}')),
        MessageDelta(stop_reason="tool_use"),
        MessageStop(),
    ]
    assert fake.messages.calls[0]["stream"] is True
    assert fake.messages.streams[0].closed


@pytest.mark.asyncio
async def test_connection_failures_are_retried_before_streaming() -> None:
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    fake = _make_client(
        [_raw("message_stop")],
        failures=[APIConnectionError(request=request)],
    )
    client = AnthropicClient(_settings(), client=cast(AsyncAnthropic, fake))

    events = await _collect(client, _request())

    assert events == [MessageStop()]
    assert len(fake.messages.calls) == 2


@pytest.mark.asyncio
async def test_exhausted_retries_raise_transport_error() -> None:
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    failures = [APIConnectionError(request=request) for _ in range(3)]
    fake = _make_client([], failures=failures)
    client = AnthropicClient(_settings(), client=cast(AsyncAnthropic, fake))

    with pytest.raises(TransportError) as excinfo:
        await _collect(client, _request())

    assert isinstance(excinfo.value.__cause__, APIConnectionError)
    assert len(fake.messages.calls) == 3


@pytest.mark.asyncio
async def test_httpx_errors_mid_stream_are_not_retried() -> None:
    class _BrokenStream(_FakeStream):
        async def __anext__(self) -> Any:
            raise httpx.ReadError("connection reset")

    class _Messages(_FakeMessages):
        async def create(self, **kwargs: Any) -> _FakeStream:
            self.calls.append(kwargs)
            return _BrokenStream([])

    fake = SimpleNamespace(messages=_Messages([]))
    client = AnthropicClient(_settings(), client=cast(AsyncAnthropic, fake))

    with pytest.raises(TransportError, match="connection reset"):
        await _collect(client, _request())

    assert len(fake.messages.calls) == 1


def test_missing_api_key_is_a_configuration_error() -> None:
    with pytest.raises(ConfigurationError) as excinfo:
        AnthropicClient(ClientSettings(api_key=""))

    assert excinfo.value.setting == "api_key"


@pytest.mark.asyncio
async def test_debug_logging_captures_payload(caplog: pytest.LogCaptureFixture) -> None:
    fake = _make_client([_raw("message_stop")])
    client = AnthropicClient(_settings(debug_logging=True), client=cast(AsyncAnthropic, fake))

    with caplog.at_level("DEBUG", logger="palacechat.ai.client"):
        await _collect(client, _request())

    assert any("Request payload" in record.getMessage() for record in caplog.records)


@pytest.mark.asyncio
async def test_aclose_closes_underlying_client() -> None:
    class _StubAnthropic:
        def __init__(self) -> None:
            self.closed = False

        async def close(self) -> None:
            self.closed = True

    stub = _StubAnthropic()
    client = AnthropicClient(_settings(), client=cast(AsyncAnthropic, stub))

    await client.aclose()

    assert stub.closed


# -----------------------------------------------------------------------------
# Event normalization
# -----------------------------------------------------------------------------


def test_normalize_skips_events_without_content() -> None:
    assert normalize_anthropic_event(_raw("ping")) is None
    assert normalize_anthropic_event(_raw("content_block_stop", index=0)) is None


def test_normalize_handles_plain_dictionaries() -> None:
    event = normalize_anthropic_event({"type": "content_block_delta", "index": 2, "delta": {"type": "text_delta", "text": "x"}})

    assert event == BlockDelta(index=2, delta=TextDelta(text="x"))


def test_normalize_maps_unknown_deltas_and_errors() -> None:
    delta_event = normalize_anthropic_event(
        _raw("content_block_delta", index=0, delta={"type": "signature_delta", "signature": "sig"})
    )
    error_event = normalize_anthropic_event({"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})

    assert delta_event == BlockDelta(index=0, delta=UnknownDelta(kind="signature_delta", fields={"signature": "sig"}))
    assert error_event == ErrorEvent(message="Overloaded")
