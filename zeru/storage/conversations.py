"""Conversation persistence: continuity state and the append-only message log.

Every lookup is scoped by tenant and owning user. Methods follow the
session injection pattern: pass a session to join a caller's transaction,
omit it to get a committed unit of work of your own.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from zeru.api.schemas import ConversationState, MessageDetail, MessageRole, ToolOutputItem
from zeru.storage.database import Database
from zeru.storage.models import Conversation, Message

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New conversation"

# Sentinel for "leave this continuity field as it is"
_UNSET: Any = object()


class ConversationStore:
    """Reads and writes conversations and their messages."""

    def __init__(self, db: Database) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # find_or_create()
    # ------------------------------------------------------------------

    async def find_or_create(
        self,
        conversation_id: UUID | None,
        tenant_id: str,
        user_id: str,
        session: AsyncSession | None = None,
    ) -> ConversationState:
        """Load the caller's conversation, or start a new one.

        An id that does not belong to this tenant/user starts a new
        conversation instead of leaking someone else's thread.
        """
        if session is None:
            async with self.db.session() as session:
                result = await self._find_or_create(conversation_id, tenant_id, user_id, session)
                await session.commit()
                return result
        return await self._find_or_create(conversation_id, tenant_id, user_id, session)

    async def _find_or_create(
        self,
        conversation_id: UUID | None,
        tenant_id: str,
        user_id: str,
        session: AsyncSession,
    ) -> ConversationState:
        if conversation_id is not None:
            existing = await self._get_orm(conversation_id, tenant_id, user_id, session)
            if existing is not None:
                return self._to_state(existing)
            logger.info("Conversation %s not found for user %s, starting a new one", conversation_id, user_id)

        conversation = Conversation(
            tenant_id=tenant_id,
            user_id=user_id,
            title=DEFAULT_TITLE,
            last_turn_id=None,
            parent_turn_id=None,
            last_turn_output=[],
            pending_tool_outputs=[],
            pending_question_id=None,
        )
        session.add(conversation)
        await session.flush()
        return self._to_state(conversation)

    # ------------------------------------------------------------------
    # get() / list_for_user()
    # ------------------------------------------------------------------

    async def get(
        self,
        conversation_id: UUID,
        tenant_id: str,
        user_id: str,
        session: AsyncSession | None = None,
    ) -> ConversationState | None:
        if session is None:
            async with self.db.session() as session:
                return await self._get(conversation_id, tenant_id, user_id, session)
        return await self._get(conversation_id, tenant_id, user_id, session)

    async def _get(
        self, conversation_id: UUID, tenant_id: str, user_id: str, session: AsyncSession
    ) -> ConversationState | None:
        conversation = await self._get_orm(conversation_id, tenant_id, user_id, session)
        return self._to_state(conversation) if conversation is not None else None

    async def list_for_user(
        self,
        tenant_id: str,
        user_id: str,
        limit: int = 50,
        session: AsyncSession | None = None,
    ) -> list[ConversationState]:
        """Most recently updated first."""
        if session is None:
            async with self.db.session() as session:
                return await self._list_for_user(tenant_id, user_id, limit, session)
        return await self._list_for_user(tenant_id, user_id, limit, session)

    async def _list_for_user(
        self, tenant_id: str, user_id: str, limit: int, session: AsyncSession
    ) -> list[ConversationState]:
        result = await session.execute(
            select(Conversation)
            .where(Conversation.tenant_id == tenant_id)
            .where(Conversation.user_id == user_id)
            .order_by(Conversation.updated_at.desc())
            .limit(limit)
        )
        return [self._to_state(c) for c in result.scalars().all()]

    # ------------------------------------------------------------------
    # update_continuity() / update_title()
    # ------------------------------------------------------------------

    async def update_continuity(
        self,
        conversation_id: UUID,
        *,
        last_turn_id: str | None = _UNSET,
        parent_turn_id: str | None = _UNSET,
        last_turn_output: list[dict[str, Any]] = _UNSET,
        pending_tool_outputs: list[ToolOutputItem] = _UNSET,
        pending_question_id: str | None = _UNSET,
        session: AsyncSession | None = None,
    ) -> None:
        """Write the given continuity fields. Omitted fields are left untouched."""
        fields: dict[str, Any] = {}
        if last_turn_id is not _UNSET:
            fields["last_turn_id"] = last_turn_id
        if parent_turn_id is not _UNSET:
            fields["parent_turn_id"] = parent_turn_id
        if last_turn_output is not _UNSET:
            fields["last_turn_output"] = list(last_turn_output)
        if pending_tool_outputs is not _UNSET:
            fields["pending_tool_outputs"] = [item.model_dump() for item in pending_tool_outputs]
        if pending_question_id is not _UNSET:
            fields["pending_question_id"] = pending_question_id

        if session is None:
            async with self.db.session() as session:
                await self._apply(conversation_id, fields, session)
                await session.commit()
                return
        await self._apply(conversation_id, fields, session)

    async def update_title(self, conversation_id: UUID, title: str, session: AsyncSession | None = None) -> None:
        if session is None:
            async with self.db.session() as session:
                await self._apply(conversation_id, {"title": title[:200]}, session)
                await session.commit()
                return
        await self._apply(conversation_id, {"title": title[:200]}, session)

    async def _apply(self, conversation_id: UUID, fields: dict[str, Any], session: AsyncSession) -> None:
        conversation = await session.get(Conversation, conversation_id)
        if conversation is None:
            raise ValueError(f"Conversation {conversation_id} not found")
        for name, value in fields.items():
            setattr(conversation, name, value)
        conversation.updated_at = datetime.now(UTC)
        await session.flush()

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def append_message(
        self,
        conversation_id: UUID,
        role: MessageRole,
        content: dict[str, Any] | None,
        tool_name: str | None = None,
        tool_input: dict[str, Any] | None = None,
        tool_output: Any = None,
        session: AsyncSession | None = None,
    ) -> MessageDetail:
        if session is None:
            async with self.db.session() as session:
                result = await self._append_message(
                    conversation_id, role, content, tool_name, tool_input, tool_output, session
                )
                await session.commit()
                return result
        return await self._append_message(conversation_id, role, content, tool_name, tool_input, tool_output, session)

    async def _append_message(
        self,
        conversation_id: UUID,
        role: MessageRole,
        content: dict[str, Any] | None,
        tool_name: str | None,
        tool_input: dict[str, Any] | None,
        tool_output: Any,
        session: AsyncSession,
    ) -> MessageDetail:
        message = Message(
            conversation_id=conversation_id,
            role=role,
            content=content,
            tool_name=tool_name,
            tool_input=tool_input,
            tool_output=tool_output,
        )
        session.add(message)
        await session.flush()
        return MessageDetail.model_validate(message, from_attributes=True)

    async def list_messages(
        self,
        conversation_id: UUID,
        tenant_id: str,
        user_id: str,
        session: AsyncSession | None = None,
    ) -> list[MessageDetail] | None:
        """Oldest first. None when the conversation is not the caller's."""
        if session is None:
            async with self.db.session() as session:
                return await self._list_messages(conversation_id, tenant_id, user_id, session)
        return await self._list_messages(conversation_id, tenant_id, user_id, session)

    async def _list_messages(
        self, conversation_id: UUID, tenant_id: str, user_id: str, session: AsyncSession
    ) -> list[MessageDetail] | None:
        if await self._get_orm(conversation_id, tenant_id, user_id, session) is None:
            return None
        result = await session.execute(
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.created_at.asc(), Message.id.asc())
        )
        return [MessageDetail.model_validate(m, from_attributes=True) for m in result.scalars().all()]

    # ------------------------------------------------------------------
    # delete()
    # ------------------------------------------------------------------

    async def delete(
        self,
        conversation_id: UUID,
        tenant_id: str,
        user_id: str,
        session: AsyncSession | None = None,
    ) -> bool:
        """Hard-delete a conversation and its messages. False if not the caller's."""
        if session is None:
            async with self.db.session() as session:
                deleted = await self._delete(conversation_id, tenant_id, user_id, session)
                await session.commit()
                return deleted
        return await self._delete(conversation_id, tenant_id, user_id, session)

    async def _delete(self, conversation_id: UUID, tenant_id: str, user_id: str, session: AsyncSession) -> bool:
        result = await session.execute(
            delete(Conversation)
            .where(Conversation.id == conversation_id)
            .where(Conversation.tenant_id == tenant_id)
            .where(Conversation.user_id == user_id)
        )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _get_orm(
        self, conversation_id: UUID, tenant_id: str, user_id: str, session: AsyncSession
    ) -> Conversation | None:
        result = await session.execute(
            select(Conversation)
            .where(Conversation.id == conversation_id)
            .where(Conversation.tenant_id == tenant_id)
            .where(Conversation.user_id == user_id)
        )
        return result.scalars().first()

    def _to_state(self, conversation: Conversation) -> ConversationState:
        return ConversationState(
            id=conversation.id,
            tenant_id=conversation.tenant_id,
            user_id=conversation.user_id,
            title=conversation.title,
            last_turn_id=conversation.last_turn_id,
            parent_turn_id=conversation.parent_turn_id,
            last_turn_output=list(conversation.last_turn_output or []),
            pending_tool_outputs=[ToolOutputItem.model_validate(item) for item in conversation.pending_tool_outputs or []],
            pending_question_id=conversation.pending_question_id,
            created_at=conversation.created_at,
            updated_at=conversation.updated_at,
        )
