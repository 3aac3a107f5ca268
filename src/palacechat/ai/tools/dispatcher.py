"""Tool Dispatcher for the conversation loop.

Routes ``(name, input)`` requests from the model to the attached tool backend
and turns the outcome into the text that goes back into the conversation.

- Unknown tool names produce a labeled "unknown tool" result
- Missing or invalid input is reported as a tool error, never forwarded
- Without a ready backend, canned degraded responses keep the conversation going
"""

from __future__ import annotations

import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Mapping, Protocol, Sequence, runtime_checkable

from ..errors import ToolExecutionError, ToolInputError
from ..types import ToolDeclaration
from .declarations import TOOL_DECLARATIONS

LOGGER = logging.getLogger(__name__)

_NOT_CONNECTED = "Memory Palace core not connected."


# -----------------------------------------------------------------------------
# Dispatch Result
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class DispatchResult:
    """Result of a tool dispatch, reported to listeners.

    Attributes:
        tool_name: Name of the tool executed.
        content: Text returned to the model.
        success: Whether the tool executed successfully.
        degraded: Whether a canned fallback answered instead of the backend.
        execution_time_ms: Execution time in milliseconds.
    """

    tool_name: str
    content: str
    success: bool = True
    degraded: bool = False
    execution_time_ms: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        data: dict[str, Any] = {
            "tool_name": self.tool_name,
            "success": self.success,
            "content": self.content,
            "execution_time_ms": self.execution_time_ms,
        }
        if self.degraded:
            data["degraded"] = True
        if self.metadata:
            data["metadata"] = self.metadata
        return data


# -----------------------------------------------------------------------------
# Collaborator Protocols
# -----------------------------------------------------------------------------


@runtime_checkable
class ToolBackend(Protocol):
    """Domain backend that actually performs memory palace operations."""

    def is_ready(self) -> bool:
        """Return whether the backend can accept tool calls right now."""
        ...

    def execute(self, name: str, input: Mapping[str, Any]) -> str | Awaitable[str]:
        """Run the named tool and return a conversational result string.

        Implementations should raise an exception with a descriptive message
        when the operation fails.
        """
        ...


class DispatchListener(Protocol):
    """Callback protocol for dispatch events."""

    def on_tool_start(self, tool_name: str, arguments: Mapping[str, Any] | None) -> None:
        ...

    def on_tool_complete(self, result: DispatchResult) -> None:
        ...

    def on_tool_error(self, tool_name: str, error: ToolExecutionError) -> None:
        ...


# -----------------------------------------------------------------------------
# Degraded Responses
# -----------------------------------------------------------------------------

_DEGRADED_RESPONSES: Mapping[str, str] = {
    "create_room": 'Room creation scheduled: "{name}" with description: {description}. ' + _NOT_CONNECTED,
    "edit_room": "Room editing scheduled: {description}. " + _NOT_CONNECTED,
    "go_to_room": "Navigation scheduled to room: {roomName}. " + _NOT_CONNECTED,
    "add_object": 'Object creation scheduled: "{name}" with info: {info}. ' + _NOT_CONNECTED,
    "remove_object": "Object removal scheduled: {name}. " + _NOT_CONNECTED,
    "list_rooms": "Room listing not available - " + _NOT_CONNECTED,
    "get_room_info": "Room information not available - " + _NOT_CONNECTED,
    "regenerate_room_image": "Image regeneration not available - " + _NOT_CONNECTED,
    "add_object_at_position": 'Object creation scheduled: "{name}" at the selected position. ' + _NOT_CONNECTED,
    "create_door_at_position": 'Door creation scheduled to new room "{targetRoomName}". ' + _NOT_CONNECTED,
    "narrate": "Narration not available - " + _NOT_CONNECTED,
}


class _BlankDefaults(dict):
    def __missing__(self, key: str) -> str:
        return ""


def degraded_response(tool_name: str, arguments: Mapping[str, Any]) -> str | None:
    """Return the canned response for ``tool_name`` or ``None`` if it has none."""

    template = _DEGRADED_RESPONSES.get(tool_name)
    if template is None:
        return None
    return template.format_map(_BlankDefaults(arguments))


def unknown_tool_response(tool_name: str) -> str:
    return f"Unknown tool: {tool_name}"


# -----------------------------------------------------------------------------
# Tool Dispatcher
# -----------------------------------------------------------------------------


class ToolDispatcher:
    """Dispatches tool calls to the attached backend.

    Example:
        dispatcher = ToolDispatcher(backend=palace_backend)
        text = await dispatcher.execute("create_room", {"name": "Library", "description": "..."})
    """

    def __init__(
        self,
        *,
        backend: ToolBackend | None = None,
        declarations: Sequence[ToolDeclaration] = TOOL_DECLARATIONS,
        listener: DispatchListener | None = None,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            backend: Domain backend; canned responses are used while it is absent.
            declarations: Tools this dispatcher recognizes.
            listener: Dispatch event listener.
        """
        self._backend = backend
        self._declarations = tuple(declarations)
        self._by_name = {declaration.name: declaration for declaration in self._declarations}
        self._listener = listener

    @property
    def declarations(self) -> tuple[ToolDeclaration, ...]:
        """The read-only tool registry sent to the model."""
        return self._declarations

    @property
    def backend(self) -> ToolBackend | None:
        return self._backend

    def attach_backend(self, backend: ToolBackend | None) -> None:
        """Attach, replace or detach (``None``) the domain backend."""
        self._backend = backend

    def set_listener(self, listener: DispatchListener | None) -> None:
        self._listener = listener

    def backend_ready(self) -> bool:
        backend = self._backend
        if backend is None:
            return False
        try:
            return bool(backend.is_ready())
        except Exception:
            LOGGER.warning("Tool backend readiness check failed", exc_info=True)
            return False

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def execute(self, name: str, input: Mapping[str, Any] | None) -> str:
        """Execute one tool call and return its conversational result.

        Args:
            name: Tool name requested by the model.
            input: Parsed tool input, ``None`` when it could not be parsed.

        Returns:
            Text for the tool result block.

        Raises:
            ToolInputError: If the input is missing or not an object.
            ToolExecutionError: If the backend fails.
        """
        started = time.perf_counter()
        self._notify("on_tool_start", name, input)

        declaration = self._by_name.get(name)
        if declaration is None:
            LOGGER.warning("Model requested unknown tool %r", name)
            return self._complete(name, unknown_tool_response(name), started, success=False)

        try:
            arguments = self._validate_input(declaration, input)
            backend = self._backend
            if backend is not None and self.backend_ready():
                content = await self._execute_backend(backend, name, arguments)
                return self._complete(name, content, started)
        except ToolExecutionError as error:
            self._notify("on_tool_error", name, error)
            raise

        LOGGER.info("Tool backend unavailable; returning degraded response for %s", name)
        content = degraded_response(name, arguments) or unknown_tool_response(name)
        return self._complete(name, content, started, degraded=True)

    async def _execute_backend(self, backend: ToolBackend, name: str, arguments: Mapping[str, Any]) -> str:
        LOGGER.debug("Executing tool %s with %s", name, arguments)
        try:
            result = backend.execute(name, dict(arguments))
            if inspect.isawaitable(result):
                result = await result
        except ToolExecutionError:
            raise
        except Exception as exc:
            LOGGER.exception("Tool %s failed", name)
            raise ToolExecutionError(str(exc) or type(exc).__name__, tool_name=name) from exc
        return result if isinstance(result, str) else str(result)

    @staticmethod
    def _validate_input(
        declaration: ToolDeclaration,
        input: Mapping[str, Any] | None,
    ) -> Mapping[str, Any]:
        if input is None:
            raise ToolInputError(
                f"Tool input for '{declaration.name}' was missing or could not be parsed as JSON.",
                tool_name=declaration.name,
            )
        if not isinstance(input, Mapping):
            raise ToolInputError(
                f"Tool input for '{declaration.name}' must be a JSON object.",
                tool_name=declaration.name,
            )
        return input

    # ------------------------------------------------------------------
    # Listener plumbing
    # ------------------------------------------------------------------

    def _complete(
        self,
        name: str,
        content: str,
        started: float,
        *,
        success: bool = True,
        degraded: bool = False,
    ) -> str:
        result = DispatchResult(
            tool_name=name,
            content=content,
            success=success,
            degraded=degraded,
            execution_time_ms=(time.perf_counter() - started) * 1000,
        )
        self._notify("on_tool_complete", result)
        return content

    def _notify(self, hook: str, *args: Any) -> None:
        listener = self._listener
        if listener is None:
            return
        try:
            getattr(listener, hook)(*args)
        except Exception:
            LOGGER.debug("Listener %s failed", hook, exc_info=True)


__all__ = [
    "DispatchResult",
    "DispatchListener",
    "ToolBackend",
    "ToolDispatcher",
    "degraded_response",
    "unknown_tool_response",
]
