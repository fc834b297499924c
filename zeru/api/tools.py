"""Tool dispatcher and memory tools.

Provides:
- ToolDispatcher: registers tools, executes calls, returns a uniform envelope
- 3 memory tool closures backed by the Memory Store:
  - memory_store: save a fact or preference
  - memory_search: semantic lookup (falls back to importance order)
  - memory_delete: soft-delete a record the user corrected

Handlers catch their own domain errors and answer with a failed
ToolResult. The dispatcher catches anything that still escapes, so a tool
failure is always fed back to the model instead of aborting the turn.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from zeru.api.tool_definitions import QUESTION_TOOL, TITLE_TOOL, TOOL_SCHEMAS, tool_label
from zeru.memory.schemas import MemoryInput
from zeru.memory.store import MemoryNotFoundError, MemoryStore

logger = logging.getLogger(__name__)


@dataclass
class ToolResult:
    """Envelope returned for every tool call."""

    success: bool
    data: Any = None
    summary: str = ""

    @classmethod
    def failure(cls, message: str, summary: str | None = None) -> ToolResult:
        return cls(success=False, data={"error": message}, summary=summary or f"Error: {message}")


@dataclass
class ToolContext:
    """Who is calling, and from which conversation."""

    tenant_id: str
    user_id: str | None = None
    conversation_id: UUID | None = None
    extra: dict[str, Any] = field(default_factory=dict)


ToolHandler = Callable[[dict[str, Any], ToolContext], Awaitable[ToolResult]]


# ---------------------------------------------------------------------------
# ToolDispatcher
# ---------------------------------------------------------------------------


class ToolDispatcher:
    """Registers tool handlers and executes tool calls from the model.

    Each handler is an async callable ``(args, ctx) -> ToolResult``.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, ToolHandler] = {}
        self._schemas: dict[str, dict[str, Any]] = {}

    def register(self, name: str, handler: ToolHandler, schema: dict[str, Any] | None = None) -> None:
        """Register a tool handler. The schema defaults to the catalogue entry."""
        if schema is None:
            schema = TOOL_SCHEMAS[name]
        self._handlers[name] = handler
        self._schemas[name] = schema

    def has(self, name: str) -> bool:
        return name in self._handlers

    def label(self, name: str) -> str:
        return tool_label(name)

    async def execute(
        self,
        name: str,
        args: dict[str, Any],
        tenant_id: str,
        user_id: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> ToolResult:
        """Run one tool call. Never raises."""
        handler = self._handlers.get(name)
        if handler is None:
            logger.warning("Unknown tool requested: %s", name)
            return ToolResult(success=False, data=None, summary=f"Unknown tool: {name}")

        context = dict(context or {})
        ctx = ToolContext(
            tenant_id=tenant_id,
            user_id=user_id,
            conversation_id=context.pop("conversation_id", None),
            extra=context,
        )
        try:
            result = await handler(args, ctx)
        except Exception as e:
            logger.exception("Tool execution error for %s", name)
            return ToolResult.failure(str(e) or type(e).__name__)

        if not isinstance(result, ToolResult):
            logger.error("Tool %s returned %s instead of ToolResult", name, type(result).__name__)
            return ToolResult.failure(f"Tool {name} returned an invalid result")
        return result

    def tool_definitions(self) -> list[dict[str, Any]]:
        """Return all tool definitions in Responses API function-tool format."""
        return list(self._schemas.values())


# ---------------------------------------------------------------------------
# Conversation-control tools (intercepted by the chat engine)
# ---------------------------------------------------------------------------


def create_engine_tools() -> dict[str, ToolHandler]:
    """Placeholders for tools the engine intercepts before dispatch.

    They are registered so their schemas reach the model. If one is ever
    dispatched directly it acknowledges without side effects.
    """

    async def ask_user_question(args: dict[str, Any], ctx: ToolContext) -> ToolResult:
        return ToolResult(success=True, data=None, summary="Question sent to the user")

    async def update_conversation_title(args: dict[str, Any], ctx: ToolContext) -> ToolResult:
        return ToolResult(success=True, data={"title": str(args.get("title", "")).strip()}, summary="Title noted")

    return {
        QUESTION_TOOL: ask_user_question,
        TITLE_TOOL: update_conversation_title,
    }


def register_engine_tools(dispatcher: ToolDispatcher) -> None:
    for name, handler in create_engine_tools().items():
        dispatcher.register(name, handler)


# ---------------------------------------------------------------------------
# Memory tool closures
# ---------------------------------------------------------------------------


def create_memory_tools(memory: MemoryStore, search_limit: int = 6) -> dict[str, ToolHandler]:
    """Create memory tool closures with the Memory Store captured in closure context."""

    async def memory_store(args: dict[str, Any], ctx: ToolContext) -> ToolResult:
        """Store a memory. scope=user binds it to the caller, scope=tenant shares it."""
        try:
            scope = "user" if args.get("scope") == "user" else "tenant"
            if scope == "user" and not ctx.user_id:
                return ToolResult.failure("user scope requires a user", "Cannot store a personal memory without a user")

            importance = min(10, max(1, int(round(float(args.get("importance") or 5)))))
            record = await memory.store(
                MemoryInput(
                    tenant_id=ctx.tenant_id,
                    user_id=ctx.user_id if scope == "user" else None,
                    content=str(args.get("content", "")),
                    category=args.get("category"),
                    importance=importance,
                    document_id=args.get("documentId") or None,
                )
            )
            return ToolResult(
                success=True,
                data={"id": str(record.id), "content": record.content, "category": record.category, "scope": scope},
                summary=f"Memory saved ({record.category}, importance {record.importance})",
            )
        except Exception as e:
            logger.exception("memory_store tool failed")
            return ToolResult.failure(str(e), "Could not save the memory")

    async def memory_search(args: dict[str, Any], ctx: ToolContext) -> ToolResult:
        try:
            scope = args.get("scope") if args.get("scope") in ("tenant", "user", "all") else "all"
            results = await memory.search(
                ctx.tenant_id,
                ctx.user_id,
                str(args.get("query", "")),
                scope=scope,
                limit=search_limit,
            )
            return ToolResult(
                success=True,
                data=[
                    {
                        "id": str(m.id),
                        "content": m.content,
                        "category": m.category,
                        "importance": m.importance,
                        "scope": m.scope,
                        "similarity": m.similarity,
                        "createdAt": m.created_at.isoformat() if m.created_at else None,
                    }
                    for m in results
                ],
                summary=f"{len(results)} memory record(s) found",
            )
        except Exception as e:
            logger.exception("memory_search tool failed")
            return ToolResult.failure(str(e), "Memory search failed")

    async def memory_delete(args: dict[str, Any], ctx: ToolContext) -> ToolResult:
        memory_id = str(args.get("memoryId", ""))
        try:
            await memory.delete(memory_id, ctx.tenant_id)
        except MemoryNotFoundError:
            return ToolResult(success=False, data={"memoryId": memory_id, "deleted": False}, summary="Memory not found")
        except Exception as e:
            logger.exception("memory_delete tool failed")
            return ToolResult.failure(str(e), "Could not delete the memory")

        logger.info("Memory %s deleted by agent: %s", memory_id, args.get("reason", ""))
        return ToolResult(success=True, data={"memoryId": memory_id, "deleted": True}, summary="Memory deleted")

    return {
        "memory_store": memory_store,
        "memory_search": memory_search,
        "memory_delete": memory_delete,
    }


def register_memory_tools(dispatcher: ToolDispatcher, memory: MemoryStore, search_limit: int = 6) -> None:
    """Create memory tools and register them with the dispatcher."""
    for name, handler in create_memory_tools(memory, search_limit).items():
        dispatcher.register(name, handler)
