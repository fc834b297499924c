"""REST API for the agent.

Endpoints:
  POST   /ai/chat                          - Send message, SSE stream of ChatEvents
  GET    /ai/conversations                 - Caller's conversations, newest first
  GET    /ai/conversations/{id}            - Conversation detail
  GET    /ai/conversations/{id}/messages   - Message log, oldest first
  DELETE /ai/conversations/{id}            - Delete conversation and messages
  GET    /ai/memory?scope=all              - Active memories in scope
  PATCH  /ai/memory/{id}                   - Edit a memory
  DELETE /ai/memory/{id}                   - Soft-delete a memory
  GET    /health                           - Health check (DB connectivity)

Tenant and user come from the X-Tenant-Id / X-User-Id headers set by the
auth gateway in front of this service.
"""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy import text
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Route

from zeru.api.runner import AgentRunner
from zeru.api.schemas import ChatRequest
from zeru.memory import MemoryNotFoundError, MemoryStore, MemoryUpdate
from zeru.storage.conversations import ConversationStore
from zeru.storage.database import Database

logger = logging.getLogger(__name__)

MEMORY_PAGE_LIMIT = 100
MEMORY_SCOPES = ("tenant", "user", "all")
# Identity comes from the gateway headers only
IDENTITY_KEYS = frozenset({"tenant_id", "tenantId", "user_id", "userId"})


def _identity(request: Request) -> tuple[str, str] | None:
    tenant_id = request.headers.get("x-tenant-id")
    user_id = request.headers.get("x-user-id")
    if not tenant_id or not user_id:
        return None
    return tenant_id, user_id


def _missing_identity() -> JSONResponse:
    return JSONResponse({"error": "Missing X-Tenant-Id or X-User-Id header"}, status_code=400)


def _conversation_id(request: Request) -> UUID | None:
    try:
        return UUID(request.path_params["id"])
    except ValueError:
        return None


def _validation_error(e: ValidationError) -> JSONResponse:
    return JSONResponse(
        {"error": "Invalid request", "details": e.errors(include_url=False, include_context=False)},
        status_code=400,
    )


def create_app(
    runner: AgentRunner,
    conversations: ConversationStore,
    memory: MemoryStore,
    database: Database,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    async def chat(request: Request) -> Response:
        """POST /ai/chat - SSE streaming chat."""
        identity = _identity(request)
        if identity is None:
            return _missing_identity()
        try:
            body = await request.json()
        except Exception:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        if not isinstance(body, dict):
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        tenant_id, user_id = identity
        fields = {k: v for k, v in body.items() if k not in IDENTITY_KEYS}
        try:
            chat_request = ChatRequest.model_validate({**fields, "tenantId": tenant_id, "userId": user_id})
        except ValidationError as e:
            return _validation_error(e)

        async def event_generator():
            async for event in runner.stream_chat(chat_request):
                yield f"data: {event.model_dump_json(by_alias=True)}\n\n"
            yield "data: [DONE]\n\n"

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def list_conversations(request: Request) -> JSONResponse:
        """GET /ai/conversations?limit=50 - Caller's conversations."""
        identity = _identity(request)
        if identity is None:
            return _missing_identity()
        try:
            limit = int(request.query_params.get("limit", "50"))
        except ValueError:
            return JSONResponse({"error": "limit must be an integer"}, status_code=400)

        try:
            items = await conversations.list_for_user(*identity, limit=limit)
            return JSONResponse(
                {
                    "conversations": [
                        c.model_dump(mode="json", include={"id", "title", "created_at", "updated_at"})
                        for c in items
                    ],
                }
            )
        except Exception as e:
            logger.error("List conversations error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)

    async def get_conversation(request: Request) -> JSONResponse:
        """GET /ai/conversations/{id} - Conversation detail."""
        identity = _identity(request)
        if identity is None:
            return _missing_identity()
        conversation_id = _conversation_id(request)
        if conversation_id is None:
            return JSONResponse({"error": "Invalid conversation ID"}, status_code=400)

        try:
            state = await conversations.get(conversation_id, *identity)
            if state is None:
                return JSONResponse({"error": "Conversation not found"}, status_code=404)
            data = state.model_dump(mode="json", exclude={"last_turn_output", "pending_tool_outputs"})
            data["is_paused"] = state.is_paused
            return JSONResponse(data)
        except Exception as e:
            logger.error("Get conversation error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)

    async def list_messages(request: Request) -> JSONResponse:
        """GET /ai/conversations/{id}/messages - Message log."""
        identity = _identity(request)
        if identity is None:
            return _missing_identity()
        conversation_id = _conversation_id(request)
        if conversation_id is None:
            return JSONResponse({"error": "Invalid conversation ID"}, status_code=400)

        try:
            messages = await conversations.list_messages(conversation_id, *identity)
            if messages is None:
                return JSONResponse({"error": "Conversation not found"}, status_code=404)
            return JSONResponse({"messages": [m.model_dump(mode="json") for m in messages]})
        except Exception as e:
            logger.error("List messages error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)

    async def delete_conversation(request: Request) -> JSONResponse:
        """DELETE /ai/conversations/{id}."""
        identity = _identity(request)
        if identity is None:
            return _missing_identity()
        conversation_id = _conversation_id(request)
        if conversation_id is None:
            return JSONResponse({"error": "Invalid conversation ID"}, status_code=400)

        try:
            deleted = await conversations.delete(conversation_id, *identity)
            if not deleted:
                return JSONResponse({"error": "Conversation not found"}, status_code=404)
            return JSONResponse({"deleted": True})
        except Exception as e:
            logger.error("Delete conversation error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)

    # ------------------------------------------------------------------
    # Memory
    # ------------------------------------------------------------------

    async def list_memories(request: Request) -> JSONResponse:
        """GET /ai/memory?scope=all - Active memories, most important first."""
        identity = _identity(request)
        if identity is None:
            return _missing_identity()
        scope = request.query_params.get("scope", "all")
        if scope not in MEMORY_SCOPES:
            return JSONResponse({"error": f"scope must be one of {', '.join(MEMORY_SCOPES)}"}, status_code=400)

        try:
            memories = await memory.list(*identity, scope=scope, limit=MEMORY_PAGE_LIMIT)
            return JSONResponse({"memories": [m.model_dump(mode="json") for m in memories]})
        except Exception as e:
            logger.error("List memories error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)

    async def update_memory(request: Request) -> JSONResponse:
        """PATCH /ai/memory/{id} - Edit content, category or importance."""
        identity = _identity(request)
        if identity is None:
            return _missing_identity()
        try:
            body = await request.json()
        except Exception:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        try:
            patch = MemoryUpdate.model_validate(body)
        except ValidationError as e:
            return _validation_error(e)

        tenant_id, _ = identity
        try:
            detail = await memory.update(request.path_params["id"], tenant_id, patch)
            return JSONResponse(detail.model_dump(mode="json"))
        except MemoryNotFoundError as e:
            return JSONResponse({"error": str(e)}, status_code=404)
        except Exception as e:
            logger.error("Update memory error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)

    async def delete_memory(request: Request) -> JSONResponse:
        """DELETE /ai/memory/{id} - Soft delete."""
        identity = _identity(request)
        if identity is None:
            return _missing_identity()

        tenant_id, _ = identity
        try:
            await memory.delete(request.path_params["id"], tenant_id)
            return JSONResponse({"deleted": True})
        except MemoryNotFoundError as e:
            return JSONResponse({"error": str(e)}, status_code=404)
        except Exception as e:
            logger.error("Delete memory error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        try:
            async with database.session() as session:
                await session.execute(text("SELECT 1"))
            return JSONResponse({"status": "healthy"})
        except Exception as e:
            return JSONResponse({"status": "unhealthy", "error": str(e)}, status_code=503)

    routes = [
        Route("/ai/chat", chat, methods=["POST"]),
        Route("/ai/conversations", list_conversations),
        Route("/ai/conversations/{id}", get_conversation),
        Route("/ai/conversations/{id}", delete_conversation, methods=["DELETE"]),
        Route("/ai/conversations/{id}/messages", list_messages),
        Route("/ai/memory", list_memories),
        Route("/ai/memory/{id}", update_memory, methods=["PATCH"]),
        Route("/ai/memory/{id}", delete_memory, methods=["DELETE"]),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
