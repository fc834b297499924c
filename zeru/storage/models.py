"""SQLAlchemy ORM models for the agent schema (conversations, messages, memories)."""

import uuid
from datetime import datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

EMBEDDING_DIMENSIONS = 1536


class Base(DeclarativeBase):
    """Single declarative base for the agent schema."""

    pass


class Conversation(Base):
    """A chat thread plus the continuity state needed to resume it upstream."""

    __tablename__ = "conversations"
    __table_args__ = {"schema": "agent"}

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid())
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False)
    user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    title: Mapped[str] = mapped_column(
        String(200), nullable=False, default="New conversation", server_default="New conversation"
    )

    # Continuity state
    last_turn_id: Mapped[str | None] = mapped_column(String(200))
    parent_turn_id: Mapped[str | None] = mapped_column(String(200))
    last_turn_output: Mapped[list] = mapped_column(JSONB, nullable=False, default=list, server_default="[]")
    pending_tool_outputs: Mapped[list] = mapped_column(JSONB, nullable=False, default=list, server_default="[]")
    pending_question_id: Mapped[str | None] = mapped_column(String(200))

    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    messages: Mapped[list["Message"]] = relationship(
        back_populates="conversation", cascade="all, delete-orphan", passive_deletes=True
    )


class Message(Base):
    """Append-only log entry. Never updated after insert."""

    __tablename__ = "messages"
    __table_args__ = (
        CheckConstraint(
            "role IN ('user', 'assistant', 'tool', 'question')",
            name="ck_messages_role",
        ),
        {"schema": "agent"},
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid())
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("agent.conversations.id", ondelete="CASCADE"),
        nullable=False,
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[dict | None] = mapped_column(JSONB)
    tool_name: Mapped[str | None] = mapped_column(String(100))
    tool_input: Mapped[dict | None] = mapped_column(JSONB)
    tool_output = mapped_column(JSONB, nullable=True)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    conversation: Mapped["Conversation"] = relationship(back_populates="messages")


class Memory(Base):
    """Tenant- or user-scoped fact. Embedding is attached asynchronously."""

    __tablename__ = "memories"
    __table_args__ = (
        CheckConstraint(
            "category IN ('PREFERENCE', 'FACT', 'PROCEDURE', 'DECISION', 'CONTEXT')",
            name="ck_memories_category",
        ),
        CheckConstraint("importance BETWEEN 1 AND 10", name="ck_memories_importance"),
        {"schema": "agent"},
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid())
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(100))  # NULL = organization-wide
    content: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(20), nullable=False)
    importance: Mapped[int] = mapped_column(Integer, nullable=False, server_default="5")
    embedding = mapped_column(Vector(EMBEDDING_DIMENSIONS), nullable=True)
    document_id: Mapped[str | None] = mapped_column(String(100))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), server_default=func.now())
