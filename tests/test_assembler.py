"""Tests for ai/assembler.py."""

from __future__ import annotations

import pytest

from palacechat.ai.assembler import BlockAssembler
from palacechat.ai.errors import ProtocolError, StreamError, TransportError
from palacechat.ai.types import (
    BlockDelta,
    BlockStart,
    ErrorEvent,
    InputJsonDelta,
    MessageDelta,
    MessageStop,
    TextBlock,
    TextDelta,
    ToolUseBlock,
    UnknownBlock,
    UnknownDelta,
)
from tests.helpers import finish, text_events, tool_events


def _feed(assembler: BlockAssembler, events) -> None:
    for event in events:
        assembler.on_event(event)


# -----------------------------------------------------------------------------
# Text and tool blocks
# -----------------------------------------------------------------------------


def test_text_deltas_are_concatenated_in_order() -> None:
    assembler = BlockAssembler()
    _feed(assembler, [*text_events(0, "Sure", ", ", "done!"), *finish("end_turn")])

    result = assembler.finalize()

    assert result.message.role == "assistant"
    assert result.message.content == (TextBlock(text="Sure, done!"),)
    assert result.stop_reason == "end_turn"
    assert assembler.stopped is True


def test_tool_input_is_buffered_and_parsed_on_finalize() -> None:
    assembler = BlockAssembler()
    _feed(assembler, tool_events(0, "toolu_1", "create_room", '{"name": "Lib', 'rary"}'))

    preview = assembler.preview()
    assert preview == [
        {
            "type": "tool_use",
            "id": "toolu_1",
            "name": "create_room",
            "partial_json": '{"name": "Library"}',
            "streaming": True,
        }
    ]

    _feed(assembler, finish("tool_use"))
    block = assembler.finalize().message.content[0]

    assert block == ToolUseBlock(id="toolu_1", name="create_room", input={"name": "Library"})


def test_blocks_are_ordered_by_index_not_arrival() -> None:
    assembler = BlockAssembler()
    _feed(
        assembler,
        [
            BlockStart(index=1, block_kind="tool_use", block={"id": "t1", "name": "list_rooms"}),
            BlockStart(index=0, block_kind="text"),
            BlockDelta(index=1, delta=InputJsonDelta(partial_json="{}")),
            BlockDelta(index=0, delta=TextDelta(text="Listing rooms")),
            *finish("tool_use"),
        ],
    )

    content = assembler.finalize().message.content

    assert isinstance(content[0], TextBlock)
    assert content[0].text == "Listing rooms"
    assert isinstance(content[1], ToolUseBlock)
    assert content[1].input == {}


def test_preview_flags_only_the_latest_block_as_streaming() -> None:
    assembler = BlockAssembler()
    _feed(assembler, [*text_events(0, "Hi"), *tool_events(1, "t1", "narrate")])

    preview = assembler.preview()

    assert [block["streaming"] for block in preview] == [False, True]
    assert preview[0]["text"] == "Hi"


# -----------------------------------------------------------------------------
# Finalize
# -----------------------------------------------------------------------------


def test_finalize_is_idempotent() -> None:
    assembler = BlockAssembler()
    _feed(assembler, [*text_events(0, "Done."), *finish("end_turn")])

    first = assembler.finalize()
    second = assembler.finalize()

    assert first is second


def test_finalize_without_message_stop_still_produces_message() -> None:
    assembler = BlockAssembler()
    _feed(assembler, [*text_events(0, "partial"), MessageDelta(stop_reason="max_tokens")])

    result = assembler.finalize()

    assert result.message.text == "partial"
    assert result.stop_reason == "max_tokens"
    assert assembler.stopped is False


def test_empty_stream_finalizes_to_empty_message() -> None:
    assembler = BlockAssembler()
    _feed(assembler, finish("end_turn"))

    result = assembler.finalize()

    assert result.is_empty
    assert assembler.preview() == []


@pytest.mark.parametrize("raw", ['{"name": "Lib', "[1, 2]", "not json"])
def test_unparseable_tool_input_becomes_none(raw: str) -> None:
    assembler = BlockAssembler()
    _feed(assembler, [*tool_events(0, "t1", "create_room", raw), *finish("tool_use")])

    block = assembler.finalize().message.content[0]

    assert isinstance(block, ToolUseBlock)
    assert block.input is None


def test_seeded_tool_input_is_kept_when_no_deltas_arrive() -> None:
    assembler = BlockAssembler()
    _feed(
        assembler,
        [
            BlockStart(
                index=0,
                block_kind="tool_use",
                block={"type": "tool_use", "id": "t1", "name": "go_to_room", "input": {"roomName": "Hall"}},
            ),
            *finish("tool_use"),
        ],
    )

    block = assembler.finalize().message.content[0]

    assert isinstance(block, ToolUseBlock)
    assert block.input == {"roomName": "Hall"}


# -----------------------------------------------------------------------------
# Unknown kinds and errors
# -----------------------------------------------------------------------------


def test_unknown_block_kind_keeps_accumulated_fields() -> None:
    assembler = BlockAssembler()
    _feed(
        assembler,
        [
            BlockStart(index=0, block_kind="thinking", block={"type": "thinking", "thinking": ""}),
            BlockDelta(index=0, delta=UnknownDelta(kind="signature_delta", fields={"signature": "abc"})),
            *text_events(1, "answer"),
            *finish("end_turn"),
        ],
    )

    content = assembler.finalize().message.content

    assert content[0] == UnknownBlock(kind="thinking", fields={"thinking": "", "signature": "abc"})
    assert content[1] == TextBlock(text="answer")


def test_unknown_delta_on_text_block_does_not_abort() -> None:
    assembler = BlockAssembler()
    _feed(
        assembler,
        [
            *text_events(0, "Hello"),
            BlockDelta(index=0, delta=UnknownDelta(kind="citations_delta", fields={"citation": {"id": 1}})),
            BlockDelta(index=0, delta=TextDelta(text=" world")),
            *finish("end_turn"),
        ],
    )

    assert assembler.finalize().message.text == "Hello world"


def test_delta_for_unknown_index_is_dropped() -> None:
    assembler = BlockAssembler()
    _feed(assembler, [BlockDelta(index=3, delta=TextDelta(text="stray")), *text_events(0, "ok"), *finish(None)])

    assert assembler.finalize().message.content == (TextBlock(text="ok"),)


def test_error_event_raises_stream_error() -> None:
    assembler = BlockAssembler()

    with pytest.raises(StreamError) as excinfo:
        assembler.on_event(ErrorEvent(message="overloaded"))

    assert isinstance(excinfo.value, TransportError)
    assert "overloaded" in excinfo.value.message


def test_non_event_raises_protocol_error() -> None:
    assembler = BlockAssembler()

    with pytest.raises(ProtocolError):
        assembler.on_event({"type": "content_block_start"})  # type: ignore[arg-type]


def test_message_stop_finalizes_immediately() -> None:
    assembler = BlockAssembler()
    _feed(assembler, text_events(0, "x"))

    assembler.on_event(MessageStop())

    assert assembler.stopped
    assert assembler.preview() == []
    assert assembler.finalize().message.text == "x"
