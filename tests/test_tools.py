"""Tests for ToolDispatcher and the memory tool closures."""

import uuid
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from zeru.api.tool_definitions import QUESTION_TOOL, TITLE_TOOL, TOOL_SCHEMAS
from zeru.api.tools import (
    ToolContext,
    ToolDispatcher,
    ToolResult,
    create_memory_tools,
    register_engine_tools,
    register_memory_tools,
)
from zeru.memory import MemoryDetail, MemoryNotFoundError, MemoryStore


def _ctx(user_id: str | None = "user-1") -> ToolContext:
    return ToolContext(tenant_id="tenant-1", user_id=user_id)


def _record(content: str = "Monthly close is on the 5th", user_id: str | None = None) -> MemoryDetail:
    return MemoryDetail(
        id=uuid.uuid4(),
        tenant_id="tenant-1",
        user_id=user_id,
        content=content,
        category="PROCEDURE",
        importance=8,
        created_at=datetime(2026, 1, 5, tzinfo=UTC),
    )


# ---------------------------------------------------------------------------
# ToolDispatcher
# ---------------------------------------------------------------------------


class TestToolDispatcher:
    @pytest.mark.asyncio
    async def test_unknown_tool_is_a_failed_result(self):
        dispatcher = ToolDispatcher()
        result = await dispatcher.execute("does_not_exist", {}, "tenant-1")
        assert result.success is False
        assert result.data is None
        assert result.summary == "Unknown tool: does_not_exist"

    @pytest.mark.asyncio
    async def test_handler_receives_context(self):
        seen = {}

        async def handler(args, ctx):
            seen["args"] = args
            seen["ctx"] = ctx
            return ToolResult(success=True, data={"ok": True}, summary="done")

        conversation_id = uuid.uuid4()
        dispatcher = ToolDispatcher()
        dispatcher.register("list_accounts", handler)

        result = await dispatcher.execute(
            "list_accounts",
            {"a": 1},
            "tenant-1",
            "user-1",
            context={"conversation_id": conversation_id, "trace": "x"},
        )

        assert result.success is True
        assert seen["args"] == {"a": 1}
        assert seen["ctx"].tenant_id == "tenant-1"
        assert seen["ctx"].user_id == "user-1"
        assert seen["ctx"].conversation_id == conversation_id
        assert seen["ctx"].extra == {"trace": "x"}

    @pytest.mark.asyncio
    async def test_exceptions_are_contained(self):
        async def boom(args, ctx):
            raise RuntimeError("backend unreachable")

        dispatcher = ToolDispatcher()
        dispatcher.register("list_accounts", boom)

        result = await dispatcher.execute("list_accounts", {}, "tenant-1")

        assert result.success is False
        assert result.data == {"error": "backend unreachable"}
        assert result.summary == "Error: backend unreachable"

    @pytest.mark.asyncio
    async def test_non_result_return_is_a_failure(self):
        async def sloppy(args, ctx):
            return {"ok": True}

        dispatcher = ToolDispatcher()
        dispatcher.register("list_accounts", sloppy)

        result = await dispatcher.execute("list_accounts", {}, "tenant-1")

        assert result.success is False
        assert "invalid result" in result.data["error"]

    def test_definitions_follow_registration(self):
        dispatcher = ToolDispatcher()
        register_engine_tools(dispatcher)
        definitions = dispatcher.tool_definitions()

        assert [d["name"] for d in definitions] == [QUESTION_TOOL, TITLE_TOOL]
        assert definitions[0] is TOOL_SCHEMAS[QUESTION_TOOL]
        assert dispatcher.has(TITLE_TOOL)
        assert not dispatcher.has("memory_store")

    def test_label_falls_back_to_name(self):
        dispatcher = ToolDispatcher()
        assert dispatcher.label("memory_search") == "Searching memory"
        assert dispatcher.label("mystery") == "mystery"

    def test_every_schema_is_strict(self):
        for name, schema in TOOL_SCHEMAS.items():
            params = schema["parameters"]
            assert schema["strict"] is True, name
            assert sorted(params["required"]) == sorted(params["properties"]), name
            assert params["additionalProperties"] is False, name


# ---------------------------------------------------------------------------
# Memory tools
# ---------------------------------------------------------------------------


class TestMemoryTools:
    def _tools(self, memory=None, search_limit=6):
        memory = memory or MagicMock(spec=MemoryStore)
        return memory, create_memory_tools(memory, search_limit)

    @pytest.mark.asyncio
    async def test_store_tenant_scope(self):
        memory, tools = self._tools()
        memory.store = AsyncMock(return_value=_record())

        result = await tools["memory_store"](
            {
                "content": "Monthly close is on the 5th",
                "category": "PROCEDURE",
                "importance": 8,
                "scope": "tenant",
                "documentId": "",
            },
            _ctx(),
        )

        assert result.success is True
        assert result.data["scope"] == "tenant"
        stored = memory.store.call_args.args[0]
        assert stored.user_id is None
        assert stored.importance == 8
        assert stored.document_id is None

    @pytest.mark.asyncio
    async def test_store_user_scope_binds_caller(self):
        memory, tools = self._tools()
        memory.store = AsyncMock(return_value=_record(user_id="user-1"))

        await tools["memory_store"](
            {"content": "Prefers whole numbers", "category": "PREFERENCE", "importance": 5, "scope": "user"},
            _ctx(),
        )

        assert memory.store.call_args.args[0].user_id == "user-1"

    @pytest.mark.asyncio
    async def test_store_user_scope_without_user_fails(self):
        memory, tools = self._tools()
        memory.store = AsyncMock()

        result = await tools["memory_store"](
            {"content": "x", "category": "FACT", "importance": 5, "scope": "user"}, _ctx(user_id=None)
        )

        assert result.success is False
        memory.store.assert_not_called()

    @pytest.mark.asyncio
    async def test_store_clamps_importance(self):
        memory, tools = self._tools()
        memory.store = AsyncMock(return_value=_record())

        await tools["memory_store"]({"content": "x", "category": "FACT", "importance": 42, "scope": "tenant"}, _ctx())

        assert memory.store.call_args.args[0].importance == 10

    @pytest.mark.asyncio
    async def test_store_invalid_category_is_a_failure(self):
        memory, tools = self._tools()
        memory.store = AsyncMock()

        result = await tools["memory_store"]({"content": "x", "category": "GOSSIP", "scope": "tenant"}, _ctx())

        assert result.success is False
        assert result.summary == "Could not save the memory"
        memory.store.assert_not_called()

    @pytest.mark.asyncio
    async def test_search_uses_limit_and_serializes(self):
        memory, tools = self._tools(search_limit=3)
        record = _record()
        record.similarity = 0.91
        memory.search = AsyncMock(return_value=[record])

        result = await tools["memory_search"]({"query": "closing", "scope": "all"}, _ctx())

        memory.search.assert_awaited_once_with("tenant-1", "user-1", "closing", scope="all", limit=3)
        assert result.success is True
        assert result.data == [
            {
                "id": str(record.id),
                "content": "Monthly close is on the 5th",
                "category": "PROCEDURE",
                "importance": 8,
                "scope": "tenant",
                "similarity": 0.91,
                "createdAt": "2026-01-05T00:00:00+00:00",
            }
        ]
        assert result.summary == "1 memory record(s) found"

    @pytest.mark.asyncio
    async def test_search_unknown_scope_means_all(self):
        memory, tools = self._tools()
        memory.search = AsyncMock(return_value=[])

        await tools["memory_search"]({"query": "q", "scope": "galaxy"}, _ctx())

        assert memory.search.call_args.kwargs["scope"] == "all"

    @pytest.mark.asyncio
    async def test_delete_success(self):
        memory, tools = self._tools()
        memory.delete = AsyncMock(return_value=None)
        memory_id = str(uuid.uuid4())

        result = await tools["memory_delete"]({"memoryId": memory_id, "reason": "user corrected it"}, _ctx())

        memory.delete.assert_awaited_once_with(memory_id, "tenant-1")
        assert result.success is True
        assert result.data == {"memoryId": memory_id, "deleted": True}

    @pytest.mark.asyncio
    async def test_delete_not_found(self):
        memory, tools = self._tools()
        memory.delete = AsyncMock(side_effect=MemoryNotFoundError("m-1"))

        result = await tools["memory_delete"]({"memoryId": "m-1", "reason": ""}, _ctx())

        assert result.success is False
        assert result.summary == "Memory not found"
        assert result.data == {"memoryId": "m-1", "deleted": False}

    def test_register_memory_tools(self):
        dispatcher = ToolDispatcher()
        register_memory_tools(dispatcher, MagicMock(spec=MemoryStore))
        assert [d["name"] for d in dispatcher.tool_definitions()] == ["memory_store", "memory_search", "memory_delete"]
