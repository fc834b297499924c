"""Pydantic DTOs for the chat engine: requests, continuity state and stream events.

Every event the engine yields is one of the ``ChatEvent`` variants. The
transport serializes them as-is; ordering is generation order.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

MessageRole = Literal["user", "assistant", "tool", "question"]


class CamelModel(BaseModel):
    """Wire model: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Requests ---


class ChatRequest(CamelModel):
    """One inbound chat message, already authenticated by the gateway."""

    tenant_id: str
    user_id: str
    message: str = Field(min_length=1)
    conversation_id: UUID | None = None
    question_tool_call_id: str | None = None  # Set when answering a pending question
    document_ids: list[str] = []


# --- Question tool payload ---


class QuestionOption(CamelModel):
    id: str
    label: str


class QuestionPayload(CamelModel):
    question: str
    options: list[QuestionOption] = []
    allow_free_text: bool = True


# --- Continuity ---


class ToolOutputItem(BaseModel):
    """Output of one tool call, waiting to be submitted upstream."""

    call_id: str
    output: str

    @classmethod
    def from_result(cls, call_id: str, data: Any) -> ToolOutputItem:
        return cls(call_id=call_id, output=json.dumps(data if data is not None else {}, default=str))

    def to_upstream(self) -> dict[str, Any]:
        """Provider wire shape (function_call_output input item)."""
        return {"type": "function_call_output", "call_id": self.call_id, "output": self.output}

    @classmethod
    def from_upstream(cls, item: dict[str, Any]) -> ToolOutputItem:
        return cls(call_id=str(item["call_id"]), output=str(item.get("output", "")))


class ConversationState(BaseModel):
    """A conversation row plus the fields needed to resume its next turn."""

    id: UUID
    tenant_id: str
    user_id: str
    title: str
    last_turn_id: str | None = None
    parent_turn_id: str | None = None
    last_turn_output: list[dict[str, Any]] = []
    pending_tool_outputs: list[ToolOutputItem] = []
    pending_question_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_paused(self) -> bool:
        return self.pending_question_id is not None


class MessageDetail(BaseModel):
    id: UUID
    conversation_id: UUID
    role: MessageRole
    content: dict[str, Any] | None = None
    tool_name: str | None = None
    tool_input: dict[str, Any] | None = None
    tool_output: Any = None
    created_at: datetime | None = None


# --- Stream events ---


class Usage(CamelModel):
    input_tokens: int = 0
    output_tokens: int = 0


class ThinkingEvent(CamelModel):
    type: Literal["thinking"] = "thinking"
    delta: str


class TextDeltaEvent(CamelModel):
    type: Literal["text_delta"] = "text_delta"
    delta: str


class ToolStartEvent(CamelModel):
    type: Literal["tool_start"] = "tool_start"
    tool_call_id: str
    name: str
    args: dict[str, Any] = {}
    label: str


class ToolDoneEvent(CamelModel):
    type: Literal["tool_done"] = "tool_done"
    tool_call_id: str
    name: str
    success: bool
    result: Any = None
    summary: str


class QuestionEvent(CamelModel):
    type: Literal["question"] = "question"
    tool_call_id: str
    payload: QuestionPayload
    conversation_id: UUID


class TitleUpdateEvent(CamelModel):
    type: Literal["title_update"] = "title_update"
    title: str
    conversation_id: UUID


class DoneEvent(CamelModel):
    type: Literal["done"] = "done"
    turn_id: str
    conversation_id: UUID
    usage: Usage = Field(default_factory=Usage)


class ErrorEvent(CamelModel):
    type: Literal["error"] = "error"
    message: str
    conversation_id: UUID | None = None


ChatEvent = Annotated[
    ThinkingEvent
    | TextDeltaEvent
    | ToolStartEvent
    | ToolDoneEvent
    | QuestionEvent
    | TitleUpdateEvent
    | DoneEvent
    | ErrorEvent,
    Field(discriminator="type"),
]
