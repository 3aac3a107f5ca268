"""Structured error types raised by the conversation runtime.

Every error carries a machine-readable ``error_code`` and serializes through
``to_dict()`` so host applications can render or log failures without parsing
messages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .types import Message


# -----------------------------------------------------------------------------
# Error Code Constants
# -----------------------------------------------------------------------------


class ErrorCode:
    """Constants for error codes attached to runtime errors."""

    # Transport errors
    TRANSPORT_FAILURE = "transport_failure"
    STREAM_ERROR = "stream_error"
    CANCELLED = "cancelled"

    # Protocol errors
    PROTOCOL_VIOLATION = "protocol_violation"

    # Tool errors
    TOOL_FAILED = "tool_failed"
    INVALID_TOOL_INPUT = "invalid_tool_input"

    # Session errors
    EXCHANGE_IN_PROGRESS = "exchange_in_progress"
    TURN_LIMIT_REACHED = "turn_limit_reached"

    # Setup errors
    CONFIGURATION = "configuration"


# -----------------------------------------------------------------------------
# Base Error Class
# -----------------------------------------------------------------------------


@dataclass(eq=False)
class ConversationError(Exception):
    """Base exception class for every error raised by the runtime.

    Attributes:
        message: Human-readable error description.
        details: Additional structured error information.
    """

    message: str
    details: dict[str, Any] = field(default_factory=dict)

    error_code = "conversation_error"

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dictionary for logs and host applications."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = dict(self.details)
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


# -----------------------------------------------------------------------------
# Transport Errors
# -----------------------------------------------------------------------------


@dataclass(eq=False)
class TransportError(ConversationError):
    """Network or stream failure while talking to the model service."""

    error_code = ErrorCode.TRANSPORT_FAILURE


@dataclass(eq=False)
class StreamError(TransportError):
    """The service reported an error event in the middle of a stream."""

    error_code = ErrorCode.STREAM_ERROR


@dataclass(eq=False)
class ExchangeCancelledError(TransportError):
    """The exchange was cancelled by the caller."""

    message: str = "Aborted by user"

    error_code = ErrorCode.CANCELLED


# -----------------------------------------------------------------------------
# Protocol Errors
# -----------------------------------------------------------------------------


@dataclass(eq=False)
class ProtocolError(ConversationError):
    """The transport produced something that is not a stream event at all.

    Unknown block or delta kinds are tolerated and never raise this error.
    """

    error_code = ErrorCode.PROTOCOL_VIOLATION


# -----------------------------------------------------------------------------
# Tool Errors
# -----------------------------------------------------------------------------


@dataclass(eq=False)
class ToolExecutionError(ConversationError):
    """A tool call failed; converted into an error tool result by the loop."""

    tool_name: str = ""

    error_code = ErrorCode.TOOL_FAILED

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.tool_name:
            result["tool_name"] = self.tool_name
        return result


@dataclass(eq=False)
class ToolInputError(ToolExecutionError):
    """The tool input was missing or could not be parsed as an object."""

    error_code = ErrorCode.INVALID_TOOL_INPUT


# -----------------------------------------------------------------------------
# Session Errors
# -----------------------------------------------------------------------------


@dataclass(eq=False)
class ReentrancyError(ConversationError):
    """An exchange was requested while another one is still in flight."""

    message: str = "Stream already in progress"
    status: str = ""

    error_code = ErrorCode.EXCHANGE_IN_PROGRESS


@dataclass(eq=False)
class TurnLimitError(ConversationError):
    """The model kept requesting tools past the configured turn limit.

    Attributes:
        limit: The configured maximum number of model turns.
        messages: Messages appended to history before the limit was hit.
    """

    limit: int = 0
    messages: "tuple[Message, ...]" = ()

    error_code = ErrorCode.TURN_LIMIT_REACHED

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["limit"] = self.limit
        result["message_count"] = len(self.messages)
        return result


# -----------------------------------------------------------------------------
# Setup Errors
# -----------------------------------------------------------------------------


@dataclass(eq=False)
class ConfigurationError(ConversationError):
    """Missing credentials or invalid settings, detected before any request."""

    setting: str = ""

    error_code = ErrorCode.CONFIGURATION


__all__ = [
    "ErrorCode",
    "ConversationError",
    "TransportError",
    "StreamError",
    "ExchangeCancelledError",
    "ProtocolError",
    "ToolExecutionError",
    "ToolInputError",
    "ReentrancyError",
    "TurnLimitError",
    "ConfigurationError",
]
