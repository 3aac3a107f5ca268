"""Block assembler: rebuilds one message from an ordered stream of events.

The assembler keys every draft block by its server-assigned index, so deltas
for different blocks may interleave freely. Partial tool input is buffered as
raw text and only parsed once the message is finalized.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from .errors import ProtocolError, StreamError
from .types import (
    AssembledMessage,
    BlockDelta,
    BlockStart,
    ContentBlock,
    ErrorEvent,
    InputJsonDelta,
    Message,
    MessageDelta,
    MessageStop,
    StreamEvent,
    TextBlock,
    TextDelta,
    ToolUseBlock,
    UnknownBlock,
    UnknownDelta,
)

__all__ = ["BlockAssembler"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class _DraftBlock:
    """Mutable per-index state while a block is streaming."""

    kind: str
    fields: dict[str, Any] = field(default_factory=dict)
    input_buffer: str | None = None

    def to_preview(self, *, streaming: bool) -> dict[str, Any]:
        preview = dict(self.fields)
        preview["type"] = self.kind
        if self.input_buffer is not None:
            preview["partial_json"] = self.input_buffer
        preview["streaming"] = streaming
        return preview


class BlockAssembler:
    """Incrementally reconstructs a message from stream events.

    One instance serves exactly one streamed response and is discarded after
    ``finalize()`` or an abort.

    Example:
        assembler = BlockAssembler()
        async for event in transport.stream(request):
            assembler.on_event(event)
        result = assembler.finalize()
    """

    def __init__(self) -> None:
        self._blocks: dict[int, _DraftBlock] = {}
        self._stop_reason: str | None = None
        self._result: AssembledMessage | None = None
        self._stopped = False

    @property
    def stop_reason(self) -> str | None:
        return self._stop_reason

    @property
    def stopped(self) -> bool:
        """Whether a ``MessageStop`` event has been observed."""
        return self._stopped

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    def on_event(self, event: StreamEvent) -> None:
        """Apply one stream event to the in-progress message.

        Raises:
            StreamError: If the event is an in-band error event.
            ProtocolError: If ``event`` is not a stream event at all.
        """
        if isinstance(event, BlockStart):
            self._start_block(event)
        elif isinstance(event, BlockDelta):
            self._apply_delta(event)
        elif isinstance(event, MessageDelta):
            if event.stop_reason:
                self._stop_reason = event.stop_reason
        elif isinstance(event, MessageStop):
            self._stopped = True
            self.finalize()
        elif isinstance(event, ErrorEvent):
            raise StreamError(f"Stream error: {event.message}")
        else:
            raise ProtocolError(f"Unsupported stream event: {type(event).__name__}")

    def _start_block(self, event: BlockStart) -> None:
        if self._result is not None:
            LOGGER.warning("Ignoring block_start(%s) received after finalize", event.index)
            return
        if event.index in self._blocks:
            LOGGER.warning("Duplicate block_start for index %s; restarting block", event.index)

        kind = event.block_kind or "unknown"
        initial = {key: value for key, value in event.block.items() if key != "type"}
        draft = _DraftBlock(kind=kind)

        if kind == "text":
            draft.fields["text"] = str(initial.get("text") or "")
        elif kind == "tool_use":
            draft.fields["id"] = str(initial.get("id") or "")
            draft.fields["name"] = str(initial.get("name") or "")
            draft.input_buffer = ""
            seeded = initial.get("input")
            if seeded:
                # Some servers send the complete input up front instead of deltas.
                draft.fields["input"] = seeded
        else:
            LOGGER.warning("Unrecognized block kind %r at index %s; accumulating as-is", kind, event.index)
            draft.fields.update(initial)

        self._blocks[event.index] = draft

    def _apply_delta(self, event: BlockDelta) -> None:
        draft = self._blocks.get(event.index)
        if draft is None:
            LOGGER.warning("Dropping delta for index %s received before block_start", event.index)
            return

        delta = event.delta
        if isinstance(delta, TextDelta):
            draft.fields["text"] = str(draft.fields.get("text") or "") + delta.text
        elif isinstance(delta, InputJsonDelta):
            draft.input_buffer = (draft.input_buffer or "") + delta.partial_json
        elif isinstance(delta, UnknownDelta):
            LOGGER.warning("Unhandled delta type %r for index %s; merging fields", delta.kind, event.index)
            draft.fields.update(delta.fields)
        else:
            LOGGER.warning("Unhandled delta object %r for index %s", type(delta).__name__, event.index)

    # ------------------------------------------------------------------
    # Preview
    # ------------------------------------------------------------------

    def preview(self) -> list[dict[str, Any]]:
        """Return a non-authoritative snapshot of the blocks seen so far.

        Blocks are ordered by index and the most recent one is flagged with
        ``streaming=True``.
        """
        if not self._blocks:
            return []
        latest = max(self._blocks)
        return [
            self._blocks[index].to_preview(streaming=index == latest)
            for index in sorted(self._blocks)
        ]

    # ------------------------------------------------------------------
    # Finalize
    # ------------------------------------------------------------------

    def finalize(self) -> AssembledMessage:
        """Produce the finished message; repeated calls return the same result."""
        if self._result is not None:
            return self._result

        content: list[ContentBlock] = [
            self._finalize_block(index, self._blocks[index]) for index in sorted(self._blocks)
        ]
        self._result = AssembledMessage(
            message=Message.assistant(content),
            stop_reason=self._stop_reason,
        )
        # The draft table is never reused once finalized.
        self._blocks = {}
        return self._result

    def _finalize_block(self, index: int, draft: _DraftBlock) -> ContentBlock:
        if draft.kind == "text":
            return TextBlock(text=str(draft.fields.get("text") or ""))
        if draft.kind == "tool_use":
            return ToolUseBlock(
                id=str(draft.fields.get("id") or ""),
                name=str(draft.fields.get("name") or ""),
                input=self._parse_input(index, draft),
            )
        return UnknownBlock(kind=draft.kind, fields=dict(draft.fields))

    @staticmethod
    def _parse_input(index: int, draft: _DraftBlock) -> dict[str, Any] | None:
        buffer = draft.input_buffer or ""
        if not buffer.strip():
            seeded = draft.fields.get("input")
            if isinstance(seeded, dict):
                return dict(seeded)
            # An empty buffer means the tool takes no arguments.
            return {}
        try:
            parsed = json.loads(buffer)
        except json.JSONDecodeError as exc:
            LOGGER.warning("Tool input for block %s is not valid JSON: %s", index, exc)
            return None
        if not isinstance(parsed, dict):
            LOGGER.warning("Tool input for block %s is not a JSON object", index)
            return None
        return parsed
