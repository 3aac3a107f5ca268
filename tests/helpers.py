"""Shared test helpers and stub classes.

Import from here instead of duplicating these fakes in individual test files:

    from tests.helpers import ScriptedTransport, text_turn
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Mapping, Sequence

from palacechat.ai.client import ModelRequest
from palacechat.ai.types import (
    BlockDelta,
    BlockStart,
    InputJsonDelta,
    Message,
    MessageDelta,
    MessageStop,
    SessionStatus,
    StreamEvent,
    TextDelta,
)


# -----------------------------------------------------------------------------
# Event builders
# -----------------------------------------------------------------------------


def text_events(index: int, *chunks: str) -> list[StreamEvent]:
    events: list[StreamEvent] = [BlockStart(index=index, block_kind="text", block={"type": "text", "text": ""})]
    events.extend(BlockDelta(index=index, delta=TextDelta(text=chunk)) for chunk in chunks)
    return events


def tool_events(index: int, tool_id: str, name: str, *json_chunks: str) -> list[StreamEvent]:
    events: list[StreamEvent] = [
        BlockStart(index=index, block_kind="tool_use", block={"type": "tool_use", "id": tool_id, "name": name})
    ]
    events.extend(BlockDelta(index=index, delta=InputJsonDelta(partial_json=chunk)) for chunk in json_chunks)
    return events


def finish(stop_reason: str | None) -> list[StreamEvent]:
    return [MessageDelta(stop_reason=stop_reason), MessageStop()]


def text_turn(text: str, stop_reason: str = "end_turn") -> list[StreamEvent]:
    return [*text_events(0, text), *finish(stop_reason)]


def tool_turn(
    calls: Sequence[tuple[str, str, Mapping[str, Any] | str]],
    *,
    text: str | None = None,
) -> list[StreamEvent]:
    """Build one model turn requesting ``calls`` given as ``(id, name, input)``."""

    events: list[StreamEvent] = []
    index = 0
    if text is not None:
        events.extend(text_events(index, text))
        index += 1
    for tool_id, name, payload in calls:
        raw = payload if isinstance(payload, str) else json.dumps(payload)
        events.extend(tool_events(index, tool_id, name, raw))
        index += 1
    events.extend(finish("tool_use"))
    return events


# -----------------------------------------------------------------------------
# Transports
# -----------------------------------------------------------------------------


class ScriptedTransport:
    """Replays one scripted turn per streaming request.

    A turn item that is an exception is raised at that point of the stream.
    """

    def __init__(self, *turns: Sequence[StreamEvent | BaseException]) -> None:
        self.turns = [list(turn) for turn in turns]
        self.requests: list[ModelRequest] = []
        self.closed = False

    async def stream(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        self.requests.append(request)
        if not self.turns:
            raise AssertionError("Unexpected extra request")
        for item in self.turns.pop(0):
            await asyncio.sleep(0)
            if isinstance(item, BaseException):
                raise item
            yield item

    async def aclose(self) -> None:
        self.closed = True


class StallingTransport:
    """Yields ``prefix`` and then waits until it is cancelled."""

    def __init__(self, prefix: Sequence[StreamEvent]) -> None:
        self.prefix = list(prefix)
        self.reached_stall = asyncio.Event()
        self.cancelled = False
        self.requests: list[ModelRequest] = []

    async def stream(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        self.requests.append(request)
        for event in self.prefix:
            yield event
        self.reached_stall.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        yield MessageStop()  # pragma: no cover - never reached

    async def aclose(self) -> None:
        return None


# -----------------------------------------------------------------------------
# Tool backends
# -----------------------------------------------------------------------------


@dataclass
class RecordingBackend:
    """Tool backend that records calls and answers from a handler table."""

    handlers: dict[str, Callable[[Mapping[str, Any]], Any]] = field(default_factory=dict)
    ready: bool = True
    calls: list[tuple[str, dict[str, Any]]] = field(default_factory=list)

    def is_ready(self) -> bool:
        return self.ready

    def execute(self, name: str, input: Mapping[str, Any]) -> Any:
        self.calls.append((name, dict(input)))
        handler = self.handlers.get(name)
        if handler is None:
            return f"ok: {name}"
        return handler(input)


class GatedBackend:
    """Async backend whose calls block until :meth:`release` is called."""

    def __init__(self, result: str = "done") -> None:
        self.result = result
        self.started = asyncio.Event()
        self._gate = asyncio.Event()
        self.completed = False

    def is_ready(self) -> bool:
        return True

    async def execute(self, name: str, input: Mapping[str, Any]) -> str:
        self.started.set()
        await self._gate.wait()
        self.completed = True
        return self.result

    def release(self) -> None:
        self._gate.set()


# -----------------------------------------------------------------------------
# Observers
# -----------------------------------------------------------------------------


class RecordingObserver:
    """Conversation observer that records every callback."""

    def __init__(self) -> None:
        self.messages: list[Message] = []
        self.previews: list[list[dict[str, Any]] | None] = []
        self.statuses: list[SessionStatus] = []

    def on_message_appended(self, message: Message) -> None:
        self.messages.append(message)

    def on_live_preview_update(self, blocks: Sequence[dict[str, Any]] | None) -> None:
        self.previews.append(None if blocks is None else list(blocks))

    def on_status_change(self, status: SessionStatus) -> None:
        self.statuses.append(status)
