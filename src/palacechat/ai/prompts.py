"""System prompt construction for memory palace conversations."""

from __future__ import annotations

from typing import Any, Callable, Mapping, Sequence

from .tools.declarations import TOOL_DECLARATIONS
from .types import ToolDeclaration

__all__ = ["DEFAULT_SYSTEM_PROMPT", "ContextProvider", "build_system_prompt", "format_tool_list"]

DEFAULT_SYSTEM_PROMPT = (
    "You are a Memory Palace AI assistant. Help users create immersive 3D memory spaces "
    "using voice commands."
)

ContextProvider = Callable[[Mapping[str, Any] | None], str]
"""Returns the system prompt for one outgoing request given the host context."""

_TOOL_SUMMARIES: Mapping[str, str] = {
    "create_room": "Create a new memory room",
    "edit_room": "Modify current room description",
    "go_to_room": "Navigate to another room",
    "add_object": "Add memory object to current room",
    "remove_object": "Remove object from room",
    "list_rooms": "Show available rooms",
    "get_room_info": "Get details about current room",
}


def _field(item: Any, name: str) -> str:
    if isinstance(item, Mapping):
        value = item.get(name)
    else:
        value = getattr(item, name, None)
    return "" if value is None else str(value)


def format_tool_list(declarations: Sequence[ToolDeclaration] = TOOL_DECLARATIONS) -> str:
    lines = [
        f"- {declaration.name}: {_TOOL_SUMMARIES.get(declaration.name, declaration.description)}"
        for declaration in declarations
    ]
    return "\n".join(lines)


def build_system_prompt(
    context: Mapping[str, Any] | None = None,
    *,
    base_prompt: str | None = None,
    declarations: Sequence[ToolDeclaration] = TOOL_DECLARATIONS,
) -> str:
    """Render the system prompt for the current palace state.

    ``context`` may carry ``current_room`` (``name``/``description``), ``rooms``
    (each with ``name``/``description``) and ``objects`` (each with
    ``name``/``info``). Items can be mappings or objects exposing attributes.
    """

    context = context or {}
    parts = [(base_prompt or DEFAULT_SYSTEM_PROMPT) + "\n\n"]

    current_room = context.get("current_room")
    if current_room:
        parts.append(f"CURRENT ROOM: {_field(current_room, 'name')}\n")
        parts.append(f"ROOM DESCRIPTION: {_field(current_room, 'description')}\n")

    rooms = context.get("rooms") or ()
    if rooms:
        listing = "\n".join(f"- {_field(room, 'name')}: {_field(room, 'description')}" for room in rooms)
        parts.append(f"\nAVAILABLE ROOMS:\n{listing}\n")

    objects = context.get("objects") or ()
    if objects:
        listing = "\n".join(f"- {_field(obj, 'name')}: {_field(obj, 'info')}" for obj in objects)
        parts.append(f"\nOBJECTS IN CURRENT ROOM:\n{listing}\n")

    parts.append(
        "\nMEMORY PALACE TOOLS AVAILABLE:\n"
        f"{format_tool_list(declarations)}\n\n"
        "Use these tools to help users build and navigate their memory palace."
    )
    return "".join(parts)
