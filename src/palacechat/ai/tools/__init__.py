"""Memory palace tool declarations and dispatch."""

from .declarations import TOOL_DECLARATIONS, declarations_as_params, get_declaration
from .dispatcher import DispatchListener, DispatchResult, ToolBackend, ToolDispatcher

__all__ = [
    "TOOL_DECLARATIONS",
    "declarations_as_params",
    "get_declaration",
    "DispatchListener",
    "DispatchResult",
    "ToolBackend",
    "ToolDispatcher",
]
