"""Rendered chat messages derived from events."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel

from ..events.models import (
    AssistantTextPayload,
    AssistantToolPayload,
    Event,
    ResultPayload,
    SystemPayload,
    ToolResultPayload,
    UserPayload,
)


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"
    SYSTEM = "system"
    RESULT = "result"


class ChatMessage(BaseModel):
    """
    One line of the conversation view.

    `id` is the event id for confirmed messages and the client correlation id
    for optimistic ones (`pending=True`, no `created_at` yet).
    """

    id: str
    role: MessageRole
    content: str
    created_at: datetime | None = None
    session_id: str | None = None
    tool_use: str | None = None
    tool_context: str | None = None
    preview_url: str | None = None
    is_error: bool = False
    pending: bool = False
    failed: bool = False
    client_message_id: str | None = None

    @property
    def sort_key(self) -> tuple[datetime, str]:
        return (self.created_at or datetime.max, self.id)


def render_event(event: Event) -> ChatMessage:
    """
    Map one event to its message.

    Raises:
        pydantic.ValidationError: `event_data` does not match `event_type`.
        ValueError: the payload has no message form.
    """
    payload = event.payload
    base = {
        "id": event.id or "",
        "created_at": event.created_at,
        "session_id": event.session_id,
    }

    if isinstance(payload, UserPayload):
        return ChatMessage(
            role=MessageRole.USER,
            content=payload.content,
            client_message_id=payload.client_message_id,
            **base,
        )
    if isinstance(payload, AssistantTextPayload):
        return ChatMessage(role=MessageRole.ASSISTANT, content=payload.text, **base)
    if isinstance(payload, AssistantToolPayload):
        return ChatMessage(
            role=MessageRole.TOOL,
            content=payload.tool_name,
            tool_use=payload.tool_name,
            tool_context=payload.tool_context or None,
            **base,
        )
    if isinstance(payload, ToolResultPayload):
        return ChatMessage(
            role=MessageRole.TOOL,
            content=payload.content,
            is_error=payload.is_error,
            **base,
        )
    if isinstance(payload, ResultPayload):
        content = payload.message or payload.result or payload.subtype
        return ChatMessage(
            role=MessageRole.RESULT,
            content=content,
            is_error=not payload.is_success and payload.subtype != "cancelled",
            **base,
        )
    if isinstance(payload, SystemPayload):
        return ChatMessage(
            role=MessageRole.SYSTEM,
            content=payload.message,
            tool_use=payload.tool_use,
            tool_context=payload.tool_context,
            preview_url=payload.preview_url,
            is_error=payload.subtype == "error",
            **base,
        )
    raise ValueError(f"Cannot render event payload {type(payload).__name__}")
