"""Bus envelope and typed payload models."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any, Literal, Self, TypeAlias

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Reserved unit names
ROUTER = "router"
ASSISTANT = "assistant"
AUTO_RESPONDER = "auto-responder"
DEBUG = "debug"
SYSTEM = "system"

# Request/response message types
CHAT_MESSAGE = "chat-message"
ASSISTANT_RESPONSE = "assistant-response"
AUTO_RESPONSE = "auto-response"
ERROR = "error"
SESSION_RESET = "session-reset"
TASKS_STOPPED = "tasks-stopped"

# Normalized system command types
RESET_SESSION = "reset-session"
STOP_TASKS = "stop-tasks"
SHUTDOWN = "shutdown"
EXECUTE_COMMAND = "execute-command"

# Emit-only notifications
STREAM_STARTED = "stream-started"
STREAM_PARTIAL = "stream-partial"
STREAM_COMPLETED = "stream-completed"
STREAM_ERROR = "stream-error"
MESSAGE_ACCEPTED = "message-accepted"
MESSAGE_COMPLETED = "message-completed"

STREAM_EVENT_TYPES = frozenset({STREAM_STARTED, STREAM_PARTIAL, STREAM_COMPLETED, STREAM_ERROR})

UpdateMode: TypeAlias = Literal["edit", "append"]


def new_message_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class BusMessage:
    """Envelope for all inter-unit communication.

    ``sender`` and ``recipient`` are the ``from`` and ``to`` unit names.
    Responses use the same shape; ``None`` stands for "no reply".
    """

    id: str
    sender: str
    recipient: str
    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self) -> None:
        if not self.sender:
            raise ValueError("bus message sender must not be empty")
        if not self.recipient:
            raise ValueError("bus message recipient must not be empty")

    def with_recipient(self, recipient: str) -> BusMessage:
        return replace(self, recipient=recipient)

    def reply(self, sender: str, type: str, payload: dict[str, Any] | None = None) -> BusMessage:
        """Build a response addressed back to this message's sender."""
        return BusMessage(
            id=f"{self.id}-response",
            sender=sender,
            recipient=self.sender,
            type=type,
            payload=payload or {},
        )

    @property
    def is_stream_event(self) -> bool:
        return self.type in STREAM_EVENT_TYPES


BusResponse: TypeAlias = BusMessage


class Payload(BaseModel):
    """Base for payload models; camelCase keys on the bus, snake_case in code."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    @classmethod
    def of(cls, message: BusMessage) -> Self:
        return cls.model_validate(message.payload)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ChatPayload(Payload):
    text: str | None = None
    author_id: str | None = None
    channel_id: str | None = None
    original_message_id: str | None = None


class CommandPayload(Payload):
    command: str
    args: str = ""
    original_message_id: str | None = None
    channel_id: str | None = None


class TurnPayload(Payload):
    original_message_id: str
    channel_id: str = ""


class StreamStartedPayload(TurnPayload):
    meta: dict[str, Any] = Field(default_factory=dict)


class StreamPartialPayload(TurnPayload):
    text_delta: str | None = None
    tool_chunk: str | None = None


class StreamCompletedPayload(TurnPayload):
    full_text: str = ""
    session_id: str | None = None


class StreamErrorPayload(TurnPayload):
    message: str = "Unknown error"
    fatal: bool = False


class NoticePayload(TurnPayload):
    text: str


class AssistantReplyPayload(Payload):
    text: str
    session_id: str | None = None


class ErrorPayload(Payload):
    error: str
