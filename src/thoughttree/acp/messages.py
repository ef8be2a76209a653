"""Events pushed from an agent session to the caller's UI sink."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any, ClassVar, Protocol


class EventName(StrEnum):
    STREAM_CHUNK = "stream-chunk"
    THOUGHT_CHUNK = "thought-chunk"
    TOOL_CALL = "tool-call"
    PERMISSION_REQUEST = "permission-request"


class EventSink(Protocol):
    """UI emission collaborator. ``emit`` raises when the event cannot be delivered."""

    def emit(self, event: str, payload: dict[str, Any]) -> None: ...


class AgentEvent:
    """Base class for all session events."""

    event: ClassVar[EventName]

    def payload(self) -> dict[str, Any]:
        return asdict(self)  # type: ignore[call-overload]

    def emit_to(self, sink: EventSink) -> None:
        sink.emit(self.event.value, self.payload())


@dataclass(slots=True)
class StreamChunk(AgentEvent):
    """Agent sent message text."""

    event: ClassVar[EventName] = EventName.STREAM_CHUNK

    node_id: str
    chunk: str


@dataclass(slots=True)
class ThoughtChunk(AgentEvent):
    """Agent thinking/reasoning text."""

    event: ClassVar[EventName] = EventName.THOUGHT_CHUNK

    node_id: str
    chunk: str


@dataclass(slots=True)
class ToolCallNotice(AgentEvent):
    """Agent started or updated a tool call."""

    event: ClassVar[EventName] = EventName.TOOL_CALL

    node_id: str
    tool_call_id: str
    title: str
    status: str | None = None


@dataclass(slots=True)
class PermissionOptionPayload:
    id: str
    label: str


@dataclass(slots=True)
class PermissionPrompt(AgentEvent):
    """A permission request escalated to the human."""

    event: ClassVar[EventName] = EventName.PERMISSION_REQUEST

    id: str
    tool_type: str
    tool_name: str
    description: str
    options: list[PermissionOptionPayload] = field(default_factory=list)


__all__ = [
    "AgentEvent",
    "EventName",
    "EventSink",
    "PermissionOptionPayload",
    "PermissionPrompt",
    "StreamChunk",
    "ThoughtChunk",
    "ToolCallNotice",
]
