"""Memory Store: long-lived facts and preferences, tenant- or user-scoped.

Records are written without an embedding and become visible to list()
immediately. The embedding is attached later by a background job, so
search() ranks by cosine similarity only over records that already have
one, and degrades to list() when no query embedding can be produced.

All methods follow the session injection pattern.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import and_, exists, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from zeru.api.providers import ProviderResolver
from zeru.jobs import JobQueue
from zeru.memory.embeddings import EmbeddingClientCache, EmbeddingUnavailableError
from zeru.memory.schemas import MemoryDetail, MemoryInput, MemoryScope, MemoryUpdate
from zeru.storage.database import Database
from zeru.storage.models import Memory

logger = logging.getLogger(__name__)


class MemoryNotFoundError(ValueError):
    """Memory record is missing, inactive, or belongs to another tenant."""

    def __init__(self, memory_id: Any) -> None:
        super().__init__(f"Memory {memory_id} not found")
        self.memory_id = memory_id


class MemoryStore:
    """Stores memory records and answers list/similarity queries."""

    DEFAULT_LIST_LIMIT = 20
    DEFAULT_SEARCH_LIMIT = 5
    CONTEXT_LIMIT = 8

    def __init__(
        self,
        db: Database,
        providers: ProviderResolver,
        queue: JobQueue,
        embeddings: EmbeddingClientCache,
        context_limit: int = CONTEXT_LIMIT,
    ) -> None:
        self.db = db
        self.providers = providers
        self.queue = queue
        self.embeddings = embeddings
        self.context_limit = context_limit

    # ------------------------------------------------------------------
    # store()
    # ------------------------------------------------------------------

    async def store(self, input: MemoryInput, session: AsyncSession | None = None) -> MemoryDetail:
        """Insert a record and schedule its embedding. Never waits on the provider."""
        if session is None:
            async with self.db.session() as session:
                result = await self._store(input, session)
                await session.commit()
        else:
            result = await self._store(input, session)

        self._enqueue_embedding(result.id, input.tenant_id, input.content)
        return result

    async def _store(self, input: MemoryInput, session: AsyncSession) -> MemoryDetail:
        memory = Memory(
            tenant_id=input.tenant_id,
            user_id=input.user_id,
            content=input.content,
            category=input.category,
            importance=input.importance,
            document_id=input.document_id or None,
            embedding=None,
            is_active=True,
        )
        session.add(memory)
        await session.flush()
        return self._to_detail(memory)

    # ------------------------------------------------------------------
    # update()
    # ------------------------------------------------------------------

    async def update(
        self,
        memory_id: UUID | str,
        tenant_id: str,
        patch: MemoryUpdate,
        session: AsyncSession | None = None,
    ) -> MemoryDetail:
        """Apply a partial update. Re-embeds when the content changes."""
        if session is None:
            async with self.db.session() as session:
                result, content_changed = await self._update(memory_id, tenant_id, patch, session)
                await session.commit()
        else:
            result, content_changed = await self._update(memory_id, tenant_id, patch, session)

        if content_changed:
            self._enqueue_embedding(result.id, tenant_id, result.content)
        return result

    async def _update(
        self,
        memory_id: UUID | str,
        tenant_id: str,
        patch: MemoryUpdate,
        session: AsyncSession,
    ) -> tuple[MemoryDetail, bool]:
        memory = await self._get_active_orm(memory_id, tenant_id, session)
        if memory is None:
            raise MemoryNotFoundError(memory_id)

        content_changed = patch.content is not None and patch.content != memory.content
        if patch.content is not None:
            memory.content = patch.content
        if patch.category is not None:
            memory.category = patch.category
        if patch.importance is not None:
            memory.importance = patch.importance
        memory.updated_at = datetime.now(UTC)
        await session.flush()

        return self._to_detail(memory), content_changed

    # ------------------------------------------------------------------
    # delete()
    # ------------------------------------------------------------------

    async def delete(self, memory_id: UUID | str, tenant_id: str, session: AsyncSession | None = None) -> None:
        """Soft-delete. Raises MemoryNotFoundError if absent or already inactive."""
        if session is None:
            async with self.db.session() as session:
                await self._delete(memory_id, tenant_id, session)
                await session.commit()
                return
        await self._delete(memory_id, tenant_id, session)

    async def _delete(self, memory_id: UUID | str, tenant_id: str, session: AsyncSession) -> None:
        memory = await self._get_active_orm(memory_id, tenant_id, session)
        if memory is None:
            raise MemoryNotFoundError(memory_id)
        memory.is_active = False
        memory.updated_at = datetime.now(UTC)
        await session.flush()

    # ------------------------------------------------------------------
    # list()
    # ------------------------------------------------------------------

    async def list(
        self,
        tenant_id: str,
        user_id: str | None,
        scope: MemoryScope = "all",
        limit: int = DEFAULT_LIST_LIMIT,
        offset: int = 0,
        session: AsyncSession | None = None,
    ) -> list[MemoryDetail]:
        """Active records in scope, most important first, then newest."""
        if session is None:
            async with self.db.session() as session:
                return await self._list(tenant_id, user_id, scope, limit, offset, session)
        return await self._list(tenant_id, user_id, scope, limit, offset, session)

    async def _list(
        self,
        tenant_id: str,
        user_id: str | None,
        scope: MemoryScope,
        limit: int,
        offset: int,
        session: AsyncSession,
    ) -> list[MemoryDetail]:
        scope_filter = _scope_filter(tenant_id, user_id, scope)
        if scope_filter is None:
            return []

        result = await session.execute(
            select(Memory)
            .where(Memory.is_active.is_(True))
            .where(scope_filter)
            .order_by(Memory.importance.desc(), Memory.created_at.desc(), Memory.id)
            .limit(limit)
            .offset(offset)
        )
        return [self._to_detail(m) for m in result.scalars().all()]

    # ------------------------------------------------------------------
    # search()
    # ------------------------------------------------------------------

    async def search(
        self,
        tenant_id: str,
        user_id: str | None,
        query: str,
        scope: MemoryScope = "all",
        limit: int = DEFAULT_SEARCH_LIMIT,
        session: AsyncSession | None = None,
    ) -> list[MemoryDetail]:
        """Nearest records by cosine similarity, or list() when embedding fails."""
        if session is None:
            async with self.db.session() as session:
                return await self._search(tenant_id, user_id, query, scope, limit, session)
        return await self._search(tenant_id, user_id, query, scope, limit, session)

    async def _search(
        self,
        tenant_id: str,
        user_id: str | None,
        query: str,
        scope: MemoryScope,
        limit: int,
        session: AsyncSession,
    ) -> list[MemoryDetail]:
        try:
            embedding = await self._embed(tenant_id, query)
        except EmbeddingUnavailableError:
            logger.warning("No embedding provider for tenant %s, search falls back to list", tenant_id)
            return await self._list(tenant_id, user_id, scope, limit, 0, session)
        except Exception as e:
            logger.warning("Query embedding failed for tenant %s, search falls back to list: %s", tenant_id, e)
            return await self._list(tenant_id, user_id, scope, limit, 0, session)

        scope_filter = _scope_filter(tenant_id, user_id, scope)
        if scope_filter is None:
            return []

        distance = Memory.embedding.cosine_distance(embedding).label("distance")
        result = await session.execute(
            select(Memory, distance)
            .where(Memory.is_active.is_(True))
            .where(Memory.embedding.is_not(None))
            .where(scope_filter)
            .order_by(distance)
            .limit(limit)
        )

        results = []
        for memory, dist in result.all():
            detail = self._to_detail(memory)
            detail.similarity = 1.0 - float(dist)
            results.append(detail)
        return results

    # ------------------------------------------------------------------
    # get_context_for_conversation()
    # ------------------------------------------------------------------

    async def get_context_for_conversation(self, tenant_id: str, user_id: str, user_message: str) -> str | None:
        """Render relevant memories for a system preamble. None when there are none.

        Never raises: context injection is best effort.
        """
        try:
            memories = await self.search(tenant_id, user_id, user_message, scope="all", limit=self.context_limit)
        except Exception:
            logger.exception("Memory context lookup failed for tenant %s", tenant_id)
            return None

        if not memories:
            return None

        tenant_memories = [m for m in memories if m.user_id is None]
        user_memories = [m for m in memories if m.user_id is not None]

        lines: list[str] = []
        if tenant_memories:
            lines.append("### Organization context")
            lines.extend(f"- [{m.category}] {m.content}" for m in tenant_memories)
        if user_memories:
            if lines:
                lines.append("")
            lines.append("### User preferences")
            lines.extend(f"- [{m.category}] {m.content}" for m in user_memories)

        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Embedding job
    # ------------------------------------------------------------------

    def _enqueue_embedding(self, memory_id: UUID, tenant_id: str, content: str) -> None:
        async def job() -> None:
            await self.attach_embedding(memory_id, tenant_id, content)

        self.queue.enqueue(f"memory-embedding:{memory_id}", job)

    async def attach_embedding(self, memory_id: UUID, tenant_id: str, content: str) -> bool:
        """Embed ``content`` and store it on the record if the content is still current.

        Returns True when written. A record whose content changed since
        this job was submitted is skipped: the newer submission carries
        its own job. A record that is not visible yet raises, so the
        queue retries it.
        """
        try:
            embedding = await self._embed(tenant_id, content)
        except EmbeddingUnavailableError:
            logger.warning("No embedding provider for tenant %s, memory %s stays unembedded", tenant_id, memory_id)
            return False

        async with self.db.session() as session:
            result = await session.execute(
                update(Memory)
                .where(Memory.id == memory_id)
                .where(Memory.is_active.is_(True))
                .where(Memory.content == content)
                .values(embedding=embedding)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                await session.commit()
                logger.debug("Embedding attached to memory %s", memory_id)
                return True

            found = await session.scalar(select(exists().where(Memory.id == memory_id)))
            if not found:
                raise LookupError(f"Memory {memory_id} not visible yet")

        logger.debug("Memory %s changed or was deleted, dropping stale embedding", memory_id)
        return False

    async def _embed(self, tenant_id: str, text: str) -> list[float]:
        config = await self.providers.resolve(tenant_id)
        if config is None or not config.api_key:
            raise EmbeddingUnavailableError(f"No embedding provider for tenant {tenant_id}")
        provider = self.embeddings.get(config.api_key)
        return await provider.embed(text)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _get_active_orm(self, memory_id: UUID | str, tenant_id: str, session: AsyncSession) -> Memory | None:
        try:
            uid = memory_id if isinstance(memory_id, UUID) else UUID(str(memory_id))
        except ValueError:
            return None
        result = await session.execute(
            select(Memory)
            .where(Memory.id == uid)
            .where(Memory.tenant_id == tenant_id)
            .where(Memory.is_active.is_(True))
        )
        return result.scalars().first()

    def _to_detail(self, memory: Memory) -> MemoryDetail:
        return MemoryDetail(
            id=memory.id,
            tenant_id=memory.tenant_id,
            user_id=memory.user_id,
            content=memory.content,
            category=memory.category,
            importance=memory.importance,
            document_id=memory.document_id,
            has_embedding=memory.embedding is not None,
            is_active=memory.is_active,
            created_at=memory.created_at,
            updated_at=memory.updated_at,
        )


def _scope_filter(tenant_id: str, user_id: str | None, scope: MemoryScope):
    """WHERE clause for a scope, or None when the scope cannot match anything."""
    if scope == "tenant":
        return and_(Memory.tenant_id == tenant_id, Memory.user_id.is_(None))
    if scope == "user":
        if not user_id:
            return None
        return and_(Memory.tenant_id == tenant_id, Memory.user_id == user_id)
    if user_id:
        return and_(Memory.tenant_id == tenant_id, or_(Memory.user_id.is_(None), Memory.user_id == user_id))
    return and_(Memory.tenant_id == tenant_id, Memory.user_id.is_(None))
