"""
Event envelope and payload variants.

An event row is `{id, project_id, session_id, event_type, event_data, created_at}`.
`event_data` is JSON whose shape is fixed by `event_type`; each shape has one
payload model here. Assistant events come in two shapes (text and tool use),
told apart by the presence of `toolName`.
"""

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field


class EventType(str, Enum):
    """Kinds of event in the append-only log."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL_RESULT = "tool_result"
    RESULT = "result"


class ResultSubtype(str, Enum):
    """Well-known terminal result subtypes. Backends may report others."""

    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"
    PROCESS_VANISHED = "error_process_vanished"


class ResultSource(str, Enum):
    """Who produced a result event."""

    AGENT = "agent"
    ASSISTANT_STOP = "assistant-stop"
    FALLBACK = "fallback"
    USER_STOP = "user-stop"
    LIVENESS = "liveness"


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    event_type: ClassVar[EventType]

    def to_data(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class SystemPayload(_Payload):
    event_type: ClassVar[EventType] = EventType.SYSTEM

    message: str
    subtype: Literal["info", "success", "error", "warning", "init"] = "info"
    tool_use: str | None = Field(None, alias="toolUse")
    tool_context: str | None = Field(None, alias="toolContext")
    session_id: str | None = Field(None, alias="sessionId")
    preview_url: str | None = Field(None, alias="previewUrl")


class UserPayload(_Payload):
    event_type: ClassVar[EventType] = EventType.USER

    content: str
    client_message_id: str | None = Field(None, alias="clientMessageId")


class AssistantTextPayload(_Payload):
    event_type: ClassVar[EventType] = EventType.ASSISTANT

    text: str


class AssistantToolPayload(_Payload):
    event_type: ClassVar[EventType] = EventType.ASSISTANT

    tool_name: str = Field(alias="toolName")
    tool_context: str = Field("", alias="toolContext")
    raw_input: dict[str, Any] = Field(default_factory=dict, alias="rawInput")


class ToolResultPayload(_Payload):
    event_type: ClassVar[EventType] = EventType.TOOL_RESULT

    content: str
    is_error: bool = Field(False, alias="isError")
    source: str = "agent"
    tool_use_id: str | None = Field(None, alias="toolUseId")


class ResultPayload(_Payload):
    event_type: ClassVar[EventType] = EventType.RESULT

    subtype: str
    source: str = ResultSource.AGENT.value
    message: str | None = None
    result: str | None = None

    @property
    def is_success(self) -> bool:
        return self.subtype == ResultSubtype.SUCCESS.value


EventPayload = (
    SystemPayload
    | UserPayload
    | AssistantTextPayload
    | AssistantToolPayload
    | ToolResultPayload
    | ResultPayload
)


def parse_payload(event_type: EventType | str, data: dict[str, Any]) -> EventPayload:
    """Validate `event_data` against the variant selected by `event_type`."""
    kind = EventType(event_type)
    if kind == EventType.SYSTEM:
        return SystemPayload.model_validate(data)
    if kind == EventType.USER:
        return UserPayload.model_validate(data)
    if kind == EventType.ASSISTANT:
        if "toolName" in data:
            return AssistantToolPayload.model_validate(data)
        return AssistantTextPayload.model_validate(data)
    if kind == EventType.TOOL_RESULT:
        return ToolResultPayload.model_validate(data)
    return ResultPayload.model_validate(data)


class Event(BaseModel):
    """One immutable row of the event log."""

    model_config = ConfigDict(frozen=True)

    id: str | None = None
    project_id: str
    session_id: str | None = None
    event_type: EventType
    event_data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    @property
    def payload(self) -> EventPayload:
        return parse_payload(self.event_type, self.event_data)

    @property
    def sort_key(self) -> tuple[datetime, str]:
        return (self.created_at, self.id or "")


def build_row(
    project_id: str,
    payload: EventPayload,
    session_id: str | None = None,
) -> dict[str, Any]:
    """Row to insert for a payload. `id` and `created_at` are assigned by the store."""
    return {
        "project_id": project_id,
        "session_id": session_id,
        "event_type": payload.event_type.value,
        "event_data": payload.to_data(),
    }
