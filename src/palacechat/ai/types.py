"""Core type definitions for the conversation runtime.

This module defines the message model that flows through the conversation loop
and the normalized stream event vocabulary produced by every transport.
Messages and content blocks are frozen so history entries can be shared with
observers safely.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, Sequence, Union

__all__ = [
    # Content blocks
    "TextBlock",
    "ToolUseBlock",
    "ToolResultBlock",
    "UnknownBlock",
    "ContentBlock",
    "block_from_param",
    # Messages
    "Message",
    "MessageRole",
    "AssembledMessage",
    # Stream events
    "TextDelta",
    "InputJsonDelta",
    "UnknownDelta",
    "Delta",
    "BlockStart",
    "BlockDelta",
    "MessageDelta",
    "MessageStop",
    "ErrorEvent",
    "StreamEvent",
    # Session and tools
    "SessionStatus",
    "StopReason",
    "ToolDeclaration",
]


# -----------------------------------------------------------------------------
# Content Blocks
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class TextBlock:
    """Free text produced by the model or typed by the user."""

    text: str = ""

    kind: Literal["text"] = field(default="text", init=False)

    def to_param(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass(slots=True, frozen=True)
class ToolUseBlock:
    """A request from the model to run a tool.

    Attributes:
        id: Server-assigned identifier echoed back by the matching result.
        name: Name of the requested tool.
        input: Parsed JSON input, or ``None`` when the streamed input could
            not be parsed.
    """

    id: str
    name: str
    input: Mapping[str, Any] | None = None

    kind: Literal["tool_use"] = field(default="tool_use", init=False)

    def to_param(self) -> dict[str, Any]:
        return {
            "type": "tool_use",
            "id": self.id,
            "name": self.name,
            "input": dict(self.input) if self.input is not None else {},
        }


@dataclass(slots=True, frozen=True)
class ToolResultBlock:
    """The outcome of a tool call, sent back to the model in a user message."""

    tool_use_id: str
    content: str
    is_error: bool = False

    kind: Literal["tool_result"] = field(default="tool_result", init=False)

    def to_param(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": self.tool_use_id,
            "content": self.content,
        }
        if self.is_error:
            payload["is_error"] = True
        return payload


@dataclass(slots=True, frozen=True)
class UnknownBlock:
    """A block whose kind was not recognized, kept with all accumulated fields."""

    kind: str
    fields: Mapping[str, Any] = field(default_factory=dict)

    def to_param(self) -> dict[str, Any]:
        payload = dict(self.fields)
        payload["type"] = self.kind
        return payload


ContentBlock = Union[TextBlock, ToolUseBlock, ToolResultBlock, UnknownBlock]


def block_from_param(param: Mapping[str, Any]) -> ContentBlock:
    """Build a content block from its wire representation."""

    kind = param.get("type")
    if kind == "text":
        return TextBlock(text=str(param.get("text") or ""))
    if kind == "tool_use":
        raw_input = param.get("input")
        return ToolUseBlock(
            id=str(param.get("id") or ""),
            name=str(param.get("name") or ""),
            input=dict(raw_input) if isinstance(raw_input, Mapping) else None,
        )
    if kind == "tool_result":
        return ToolResultBlock(
            tool_use_id=str(param.get("tool_use_id") or ""),
            content=str(param.get("content") or ""),
            is_error=bool(param.get("is_error", False)),
        )
    fields = {key: value for key, value in param.items() if key != "type"}
    return UnknownBlock(kind=str(kind or "unknown"), fields=fields)


# -----------------------------------------------------------------------------
# Messages
# -----------------------------------------------------------------------------

MessageRole = Literal["user", "assistant"]


@dataclass(slots=True, frozen=True)
class Message:
    """Immutable conversation message.

    Attributes:
        role: Either ``"user"`` or ``"assistant"``.
        content: Ordered content blocks.
        metadata: Host-side annotations, never sent to the model.
    """

    role: MessageRole
    content: tuple[ContentBlock, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def user(cls, text: str, **metadata: Any) -> Message:
        """Create a user message holding a single text block."""
        return cls(role="user", content=(TextBlock(text=text),), metadata=metadata)

    @classmethod
    def assistant(cls, content: Sequence[ContentBlock], **metadata: Any) -> Message:
        """Create an assistant message."""
        return cls(role="assistant", content=tuple(content), metadata=metadata)

    @classmethod
    def tool_results(cls, results: Sequence[ToolResultBlock], **metadata: Any) -> Message:
        """Create the user message that carries a turn's tool results."""
        return cls(role="user", content=tuple(results), metadata=metadata)

    @classmethod
    def from_param(cls, param: Mapping[str, Any]) -> Message:
        """Create a Message from its wire representation."""
        content = param.get("content", ())
        if isinstance(content, str):
            blocks: tuple[ContentBlock, ...] = (TextBlock(text=content),)
        else:
            blocks = tuple(block_from_param(item) for item in content)
        return cls(role=param.get("role", "user"), content=blocks)  # type: ignore[arg-type]

    def to_param(self) -> dict[str, Any]:
        """Convert to the ``{role, content}`` request format."""
        return {
            "role": self.role,
            "content": [block.to_param() for block in self.content],
        }

    @property
    def text(self) -> str:
        """Concatenated text of every text block."""
        return "".join(block.text for block in self.content if isinstance(block, TextBlock))

    @property
    def tool_uses(self) -> tuple[ToolUseBlock, ...]:
        """Tool-use blocks in array order."""
        return tuple(block for block in self.content if isinstance(block, ToolUseBlock))


@dataclass(slots=True, frozen=True)
class AssembledMessage:
    """Result of finalizing a streamed response."""

    message: Message
    stop_reason: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.message.content


# -----------------------------------------------------------------------------
# Deltas
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class TextDelta:
    text: str


@dataclass(slots=True, frozen=True)
class InputJsonDelta:
    partial_json: str


@dataclass(slots=True, frozen=True)
class UnknownDelta:
    """A delta kind this client does not know; its fields are merged as-is."""

    kind: str
    fields: Mapping[str, Any] = field(default_factory=dict)


Delta = Union[TextDelta, InputJsonDelta, UnknownDelta]


# -----------------------------------------------------------------------------
# Stream Events
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class BlockStart:
    """A new content block begins at ``index``.

    Attributes:
        index: Server-assigned block position.
        block_kind: Declared kind (``"text"``, ``"tool_use"`` or anything else).
        block: Initial fields sent with the start event (tool id and name).
    """

    index: int
    block_kind: str
    block: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class BlockDelta:
    index: int
    delta: Delta


@dataclass(slots=True, frozen=True)
class MessageDelta:
    stop_reason: str | None = None


@dataclass(slots=True, frozen=True)
class MessageStop:
    pass


@dataclass(slots=True, frozen=True)
class ErrorEvent:
    message: str


StreamEvent = Union[BlockStart, BlockDelta, MessageDelta, MessageStop, ErrorEvent]


# -----------------------------------------------------------------------------
# Session Status
# -----------------------------------------------------------------------------


class SessionStatus(str, enum.Enum):
    """Lifecycle states of a conversation session."""

    IDLE = "idle"
    THINKING = "thinking"
    STREAMING = "streaming"
    TOOL_USE = "tool_use"


class StopReason:
    """Stop reasons the conversation loop reacts to."""

    TOOL_USE = "tool_use"
    END_TURN = "end_turn"
    MAX_TOKENS = "max_tokens"
    STOP_SEQUENCE = "stop_sequence"


# -----------------------------------------------------------------------------
# Tool Declarations
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolDeclaration:
    """Declaration of a tool the model may invoke.

    Attributes:
        name: Unique tool name.
        description: Human-readable description shown to the model.
        input_schema: JSON Schema describing the tool input.
    """

    name: str
    description: str
    input_schema: Mapping[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})

    def to_param(self) -> dict[str, Any]:
        """Convert to the request's tool declaration format."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": dict(self.input_schema),
        }

    def to_openai_tool(self) -> dict[str, Any]:
        """Convert to OpenAI tool definition format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": dict(self.input_schema),
            },
        }
