"""Pydantic models for the realtime relay wire protocol.

Field names on the wire are camelCase to stay compatible with existing
clients; the models expose them as snake_case attributes.
"""

from typing import Annotated, Any, Union

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StringConstraints

# Workspace ids arrive as non-empty strings or integers and are kept as sent.
WorkspaceId = Union[Annotated[str, StringConstraints(min_length=1)], StrictInt]


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class Envelope(BaseModel):
    """One WebSocket text frame: ``{"event": ..., "data": ...}``."""
    event: str
    data: Any = None


# --- Inbound events ---

class JoinWorkspace(WireModel):
    workspace_id: WorkspaceId = Field(alias="workspaceId")
    user_name: Any = Field(default=None, alias="userName")
    user_id: Any = Field(default=None, alias="userId")
    avatar_color: Any = Field(default=None, alias="avatarColor")


class SignalOffer(WireModel):
    target_id: str = Field(alias="targetId")
    offer: Any = None
    from_label: Any = Field(default=None, alias="from")


class SignalAnswer(WireModel):
    target_id: str = Field(alias="targetId")
    answer: Any = None


class SignalIce(WireModel):
    target_id: str = Field(alias="targetId")
    candidate: Any = None


class CursorUpdate(WireModel):
    workspace_id: WorkspaceId = Field(alias="workspaceId")
    position: Any = None
    user_name: Any = Field(default=None, alias="userName")
    avatar_color: Any = Field(default=None, alias="avatarColor")


class DocUpdate(WireModel):
    workspace_id: WorkspaceId = Field(alias="workspaceId")
    doc_id: Any = Field(default=None, alias="docId")
    update: Any = None


# --- Connection state ---

class Presence(WireModel):
    """Display metadata broadcast in ``presence-update``."""
    workspace_id: WorkspaceId = Field(alias="workspaceId")
    user_name: Any = Field(default=None, alias="userName")
    user_id: Any = Field(default=None, alias="userId")
    avatar_color: Any = Field(default=None, alias="avatarColor")

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


class ConnectedClient:
    """A live relay connection. ``presence`` is None until it joins a room."""

    def __init__(self, connection_id: str, websocket) -> None:
        self.connection_id = connection_id
        self.websocket = websocket
        self.presence: Presence | None = None

    @property
    def room_id(self) -> str | int | None:
        return self.presence.workspace_id if self.presence else None
