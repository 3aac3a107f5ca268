"""Conversation runtime: streaming assembly, tool loop and transports."""

from .assembler import BlockAssembler
from .client import AnthropicClient, ClientSettings, ModelRequest, StreamTransport
from .conversation import ConversationController
from .errors import (
    ConfigurationError,
    ConversationError,
    ExchangeCancelledError,
    ProtocolError,
    ReentrancyError,
    StreamError,
    ToolExecutionError,
    ToolInputError,
    TransportError,
    TurnLimitError,
)
from .openai_compat import OpenAICompatClient
from .session import Session
from .tools import ToolBackend, ToolDispatcher
from .transports import TransportCache, build_transport
from .types import Message, SessionStatus

__all__ = [
    "AnthropicClient",
    "BlockAssembler",
    "ClientSettings",
    "ConfigurationError",
    "ConversationController",
    "ConversationError",
    "ExchangeCancelledError",
    "Message",
    "ModelRequest",
    "OpenAICompatClient",
    "ProtocolError",
    "ReentrancyError",
    "Session",
    "SessionStatus",
    "StreamError",
    "StreamTransport",
    "ToolBackend",
    "ToolDispatcher",
    "ToolExecutionError",
    "ToolInputError",
    "TransportCache",
    "TransportError",
    "TurnLimitError",
    "build_transport",
]
