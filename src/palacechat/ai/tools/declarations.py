"""Static declarations of the memory palace tools offered to the model.

The registry is read-only and independent of dispatch: the request builder
sends it to the model, while the dispatcher uses it to recognize tool names.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Any, Mapping

from ..types import ToolDeclaration

__all__ = [
    "TOOL_DECLARATIONS",
    "get_declaration",
    "declarations_as_params",
]


def _string(description: str) -> dict[str, Any]:
    return {"type": "string", "description": description}


_POSITION_SCHEMA: Mapping[str, Any] = {
    "type": "object",
    "description": "Spatial position coordinates",
    "properties": {
        "x": {"type": "number"},
        "y": {"type": "number"},
        "z": {"type": "number"},
    },
    "required": ["x", "y", "z"],
}

_NO_INPUT: Mapping[str, Any] = {"type": "object", "properties": {}}


TOOL_DECLARATIONS: tuple[ToolDeclaration, ...] = (
    ToolDeclaration(
        name="create_room",
        description="Create a new memory room in the palace",
        input_schema={
            "type": "object",
            "properties": {
                "name": _string("Name of the new room"),
                "description": _string(
                    "Detailed description of the room for image generation and memory association"
                ),
            },
            "required": ["name", "description"],
        },
    ),
    ToolDeclaration(
        name="edit_room",
        description="Modify the description of the current room",
        input_schema={
            "type": "object",
            "properties": {"description": _string("Updated detailed room description")},
            "required": ["description"],
        },
    ),
    ToolDeclaration(
        name="go_to_room",
        description="Navigate to another room in the memory palace",
        input_schema={
            "type": "object",
            "properties": {"roomName": _string("Name of the room to navigate to")},
            "required": ["roomName"],
        },
    ),
    ToolDeclaration(
        name="add_object",
        description="Add a memory object to the current room",
        input_schema={
            "type": "object",
            "properties": {
                "name": _string("Name of the memory object"),
                "info": _string("Information or memory to associate with this object"),
            },
            "required": ["name", "info"],
        },
    ),
    ToolDeclaration(
        name="remove_object",
        description="Remove an object from the current room",
        input_schema={
            "type": "object",
            "properties": {"name": _string("Name of the object to remove")},
            "required": ["name"],
        },
    ),
    ToolDeclaration(
        name="list_rooms",
        description="List all available rooms in the memory palace",
        input_schema=_NO_INPUT,
    ),
    ToolDeclaration(
        name="get_room_info",
        description="Get detailed information about the current room and its objects",
        input_schema=_NO_INPUT,
    ),
    ToolDeclaration(
        name="regenerate_room_image",
        description="Regenerate the skybox image for the current room using its existing description",
        input_schema=_NO_INPUT,
    ),
    ToolDeclaration(
        name="add_object_at_position",
        description="Add a memory object at a specific spatial position (used when user double-clicks skybox)",
        input_schema={
            "type": "object",
            "properties": {
                "name": _string("Name of the memory object"),
                "info": _string("Information or memory to associate with this object"),
                "position": _POSITION_SCHEMA,
            },
            "required": ["name", "info", "position"],
        },
    ),
    ToolDeclaration(
        name="create_door_at_position",
        description="Create a door/connection at a specific spatial position (used when user double-clicks skybox)",
        input_schema={
            "type": "object",
            "properties": {
                "description": _string("Description of the door/entrance"),
                "targetRoomName": _string("Name of the new room to create and connect to"),
                "targetRoomDescription": _string("Description of the new room to create"),
                "position": _POSITION_SCHEMA,
            },
            "required": ["description", "targetRoomName", "targetRoomDescription", "position"],
        },
    ),
    ToolDeclaration(
        name="narrate",
        description="Speak text aloud with speech synthesis and closed captions",
        input_schema={
            "type": "object",
            "properties": {"text": _string("Text to speak aloud to the user")},
            "required": ["text"],
        },
    ),
)

_BY_NAME: Mapping[str, ToolDeclaration] = MappingProxyType(
    {declaration.name: declaration for declaration in TOOL_DECLARATIONS}
)


def get_declaration(name: str) -> ToolDeclaration | None:
    """Return the declaration registered under ``name``, if any."""

    return _BY_NAME.get(name)


def declarations_as_params(
    declarations: tuple[ToolDeclaration, ...] = TOOL_DECLARATIONS,
) -> list[dict[str, Any]]:
    """Render declarations in the ``{name, description, input_schema}`` wire format."""

    return [declaration.to_param() for declaration in declarations]
