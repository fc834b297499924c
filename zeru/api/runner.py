"""Agent runner -- drives the tool-using chat loop for one inbound message.

One call to stream_chat() is one turn-cycle:

  IDLE -> STREAMING -> TOOLS_PENDING -> STREAMING -> ... -> DONE
                    \\-> PAUSED_ON_QUESTION

Each STREAMING step is one upstream turn. Tool calls are dispatched as
soon as their arguments are complete; their outputs become the input of
the next turn. The question tool pauses the cycle: the turn id and every
other tool output of that turn are persisted so the user's answer can be
submitted later against the same upstream turn.

Turn-cycles on the same conversation are serialized with a per-id lock.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import AsyncExitStack, aclosing, asynccontextmanager
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from pydantic import ValidationError

from zeru.api.attachments import AttachmentResolver, ResolvedDocument, build_user_content, document_references
from zeru.api.prompts import build_system_preamble
from zeru.api.providers import ProviderConfig, ProviderNotConfiguredError, ProviderResolver, require_provider
from zeru.api.skills import SkillsProvider
from zeru.api.schemas import (
    ChatEvent,
    ChatRequest,
    ConversationState,
    DoneEvent,
    ErrorEvent,
    QuestionEvent,
    QuestionPayload,
    TextDeltaEvent,
    ThinkingEvent,
    TitleUpdateEvent,
    ToolDoneEvent,
    ToolOutputItem,
    ToolStartEvent,
    Usage,
)
from zeru.api.tool_definitions import QUESTION_TOOL, TITLE_TOOL
from zeru.api.tools import ToolDispatcher
from zeru.api.upstream import UpstreamClient, UpstreamError, UpstreamEvent, UpstreamRequest
from zeru.config import Settings
from zeru.memory.store import MemoryStore
from zeru.storage.conversations import ConversationStore

logger = logging.getLogger(__name__)

WAITING_FOR_ANSWER = "Waiting for the user's answer"


class StaleQuestionError(RuntimeError):
    """An answer arrived for a question that is not the one pending."""

    def __init__(self, conversation_id: UUID, expected: str | None, received: str | None) -> None:
        super().__init__("That question is no longer pending. Please send your message again.")
        self.conversation_id = conversation_id
        self.expected = expected
        self.received = received


class IterationLimitError(RuntimeError):
    """The model kept calling tools past the per-message iteration cap."""


# ---------------------------------------------------------------------------
# Per-conversation serialization
# ---------------------------------------------------------------------------


@dataclass
class _LockEntry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


class ConversationLocks:
    """Keyed asyncio locks. An entry lives only while someone holds or waits on it."""

    def __init__(self) -> None:
        self._entries: dict[UUID, _LockEntry] = {}

    @asynccontextmanager
    async def hold(self, conversation_id: UUID) -> AsyncIterator[None]:
        entry = self._entries.get(conversation_id)
        if entry is None:
            entry = self._entries[conversation_id] = _LockEntry()
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                self._entries.pop(conversation_id, None)

    def is_locked(self, conversation_id: UUID) -> bool:
        entry = self._entries.get(conversation_id)
        return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class _TurnState:
    """What one upstream turn produced besides its stream events."""

    outputs: list[ToolOutputItem] = field(default_factory=list)
    question_call_id: str | None = None
    thinking: list[str] = field(default_factory=list)
    text: list[str] = field(default_factory=list)
    completed: UpstreamEvent | None = None


# ---------------------------------------------------------------------------
# AgentRunner
# ---------------------------------------------------------------------------


class AgentRunner:
    """Runs turn-cycles against the upstream model and streams ChatEvents."""

    def __init__(
        self,
        conversations: ConversationStore,
        memory: MemoryStore,
        dispatcher: ToolDispatcher,
        upstream: UpstreamClient,
        providers: ProviderResolver,
        settings: Settings,
        attachments: AttachmentResolver | None = None,
        skills: SkillsProvider | None = None,
    ) -> None:
        self._conversations = conversations
        self._memory = memory
        self._dispatcher = dispatcher
        self._upstream = upstream
        self._providers = providers
        self._settings = settings
        self._attachments = attachments
        self._skills = skills
        self.locks = ConversationLocks()

    async def stream_chat(self, request: ChatRequest) -> AsyncGenerator[ChatEvent, None]:
        """Run one turn-cycle and yield its events in generation order.

        Every failure ends the stream with a single ErrorEvent. Closing
        the generator early closes the upstream response, which abandons
        the turn; continuity saved before that point is kept.
        """
        conversation_id: UUID | None = request.conversation_id
        try:
            provider = await require_provider(self._providers, request.tenant_id)

            async with AsyncExitStack() as stack:
                if request.conversation_id is not None:
                    await stack.enter_async_context(self.locks.hold(request.conversation_id))

                state = await self._conversations.find_or_create(
                    request.conversation_id, request.tenant_id, request.user_id
                )
                conversation_id = state.id
                if state.id != request.conversation_id:
                    await stack.enter_async_context(self.locks.hold(state.id))

                async with aclosing(self._run_cycle(request, provider, state)) as events:
                    async for event in events:
                        yield event

        except (ProviderNotConfiguredError, StaleQuestionError, IterationLimitError) as e:
            logger.warning("Turn-cycle ended early for conversation %s: %s", conversation_id, e)
            yield ErrorEvent(message=str(e), conversation_id=conversation_id)
        except Exception as e:
            logger.exception("Turn-cycle failed for conversation %s", conversation_id)
            yield ErrorEvent(message=str(e) or type(e).__name__, conversation_id=conversation_id)

    # ------------------------------------------------------------------
    # Turn-cycle
    # ------------------------------------------------------------------

    async def _run_cycle(
        self, request: ChatRequest, provider: ProviderConfig, state: ConversationState
    ) -> AsyncGenerator[ChatEvent, None]:
        resuming = request.question_tool_call_id is not None or state.is_paused
        if resuming:
            self._check_answer(state, request)

        user_content: dict[str, Any] = {"type": "text", "text": request.message}
        if request.document_ids:
            user_content["document_ids"] = list(request.document_ids)
        await self._conversations.append_message(state.id, "user", user_content)

        if resuming:
            input_items = await self._resume_input(request, state)
            logger.info("Resuming conversation %s after question %s", state.id, state.pending_question_id)
        else:
            input_items = await self._fresh_input(request, provider, state)
        previous_turn_id = state.last_turn_id

        tools = self._dispatcher.tool_definitions()
        usage = Usage()

        for iteration in range(self._settings.max_iterations):
            turn = _TurnState()
            upstream_request = UpstreamRequest(
                model=provider.model,
                input=input_items,
                tools=tools,
                previous_turn_id=previous_turn_id,
                reasoning_effort=self._settings.reasoning_effort,
            )

            async with aclosing(self._upstream.stream(upstream_request, provider.api_key)) as events:
                async for event in events:
                    async for chat_event in self._handle_upstream_event(event, request, state, turn):
                        yield chat_event

            if turn.completed is None:
                raise UpstreamError("Model stream ended before the turn completed")
            completed = turn.completed
            usage.input_tokens += completed.input_tokens
            usage.output_tokens += completed.output_tokens

            await self._save_assistant_text(state.id, turn)

            if turn.question_call_id is not None:
                await self._conversations.update_continuity(
                    state.id,
                    last_turn_id=completed.turn_id,
                    parent_turn_id=previous_turn_id,
                    last_turn_output=completed.output,
                    pending_tool_outputs=turn.outputs,
                    pending_question_id=turn.question_call_id,
                )
                logger.info(
                    "Conversation %s paused on question %s (%d pending output(s))",
                    state.id,
                    turn.question_call_id,
                    len(turn.outputs),
                )
                return

            if turn.outputs:
                logger.debug("Iteration %d: submitting %d tool output(s)", iteration, len(turn.outputs))
                input_items = [item.to_upstream() for item in turn.outputs]
                previous_turn_id = completed.turn_id
                continue

            await self._conversations.update_continuity(
                state.id,
                last_turn_id=completed.turn_id,
                parent_turn_id=None,
                last_turn_output=completed.output,
                pending_tool_outputs=[],
                pending_question_id=None,
            )
            yield DoneEvent(turn_id=completed.turn_id, conversation_id=state.id, usage=usage)
            return

        logger.warning("Conversation %s reached max_iterations=%d", state.id, self._settings.max_iterations)
        raise IterationLimitError(
            f"Stopped after {self._settings.max_iterations} tool iterations without a final answer"
        )

    def _check_answer(self, state: ConversationState, request: ChatRequest) -> None:
        """A question answer must target the question that is pending right now."""
        if state.pending_question_id is None:
            raise StaleQuestionError(state.id, None, request.question_tool_call_id)
        if request.question_tool_call_id is not None and request.question_tool_call_id != state.pending_question_id:
            raise StaleQuestionError(state.id, state.pending_question_id, request.question_tool_call_id)

    async def _resume_input(self, request: ChatRequest, state: ConversationState) -> list[dict[str, Any]]:
        """Pending outputs of the paused turn, then the answer to its question.

        A tool output carries text only, so documents sent with the answer
        are linked to the conversation and referenced by id in the answer.
        """
        answer = request.message
        if request.document_ids:
            if self._attachments is not None:
                await self._attachments.attach_to_conversation(request.tenant_id, request.document_ids, state.id)
            docs = [
                ResolvedDocument(doc_id=doc_id, name=doc_id, mime_type="application/octet-stream")
                for doc_id in request.document_ids
            ]
            answer = f"{document_references(docs)}\n\n{answer}"

        items = [item.to_upstream() for item in state.pending_tool_outputs]
        items.append(ToolOutputItem.from_result(state.pending_question_id, {"answer": answer}).to_upstream())
        return items

    async def _fresh_input(
        self, request: ChatRequest, provider: ProviderConfig, state: ConversationState
    ) -> list[dict[str, Any]]:
        docs = await self._resolve_documents(request, provider, state)
        items: list[dict[str, Any]] = []
        if state.last_turn_id is None:
            memory_context, skills_prompt = await asyncio.gather(
                self._memory.get_context_for_conversation(request.tenant_id, request.user_id, request.message),
                self._skills_prompt(request.tenant_id),
            )
            items.append({"role": "system", "content": build_system_preamble(memory_context, skills_prompt)})
        items.append({"role": "user", "content": build_user_content(request.message, docs)})
        return items

    async def _skills_prompt(self, tenant_id: str) -> str:
        if self._skills is None:
            return ""
        try:
            return await self._skills.get_active_skills_prompt(tenant_id)
        except Exception as e:
            logger.warning("Skills prompt failed for tenant %s: %s", tenant_id, e)
            return ""

    async def _resolve_documents(
        self, request: ChatRequest, provider: ProviderConfig, state: ConversationState
    ) -> list[ResolvedDocument]:
        if not request.document_ids:
            return []
        if self._attachments is None:
            return [
                ResolvedDocument(doc_id=doc_id, name=doc_id, mime_type="application/octet-stream")
                for doc_id in request.document_ids
            ]
        return await self._attachments.resolve(request.tenant_id, request.document_ids, state.id, provider.api_key)

    # ------------------------------------------------------------------
    # Stream event handling
    # ------------------------------------------------------------------

    async def _handle_upstream_event(
        self, event: UpstreamEvent, request: ChatRequest, state: ConversationState, turn: _TurnState
    ) -> AsyncGenerator[ChatEvent, None]:
        if event.type == "reasoning_delta":
            turn.thinking.append(event.text)
            yield ThinkingEvent(delta=event.text)

        elif event.type == "text_delta":
            turn.text.append(event.text)
            yield TextDeltaEvent(delta=event.text)

        elif event.type == "tool_call_added":
            yield ToolStartEvent(
                tool_call_id=event.item_id, name=event.name, args={}, label=self._dispatcher.label(event.name)
            )

        elif event.type == "tool_call_done":
            # Re-announce with complete arguments
            yield ToolStartEvent(
                tool_call_id=event.item_id,
                name=event.name,
                args=event.arguments,
                label=self._dispatcher.label(event.name),
            )
            if event.name == TITLE_TOOL:
                handler = self._handle_title
            elif event.name == QUESTION_TOOL:
                handler = self._handle_question
            else:
                handler = self._handle_tool
            async for chat_event in handler(event, request, state, turn):
                yield chat_event

        elif event.type == "turn_completed":
            turn.completed = event

        elif event.type == "error":
            raise UpstreamError(event.text)

    async def _handle_title(
        self, event: UpstreamEvent, request: ChatRequest, state: ConversationState, turn: _TurnState
    ) -> AsyncGenerator[ChatEvent, None]:
        title = str(event.arguments.get("title") or "").strip()[:200]
        if title:
            await self._conversations.update_title(state.id, title)
            yield TitleUpdateEvent(title=title, conversation_id=state.id)
            data: dict[str, Any] = {"success": True, "title": title}
            summary = f'Title updated: "{title}"'
        else:
            data = {"success": False, "error": "Title is empty"}
            summary = "Empty title ignored"

        yield ToolDoneEvent(
            tool_call_id=event.item_id, name=event.name, success=bool(title), result=data, summary=summary
        )
        turn.outputs.append(ToolOutputItem.from_result(event.call_id, data))

    async def _handle_question(
        self, event: UpstreamEvent, request: ChatRequest, state: ConversationState, turn: _TurnState
    ) -> AsyncGenerator[ChatEvent, None]:
        if turn.question_call_id is not None:
            data = {"error": "A question is already pending. Wait for the user's answer before asking another."}
            yield ToolDoneEvent(
                tool_call_id=event.item_id, name=event.name, success=False, result=data, summary="Question skipped"
            )
            turn.outputs.append(ToolOutputItem.from_result(event.call_id, data))
            return

        try:
            payload = QuestionPayload.model_validate(event.arguments)
        except ValidationError as e:
            logger.warning("Malformed question arguments: %s", e)
            payload = None
        if payload is None or not payload.question.strip():
            data = {"error": "The question needs a non-empty 'question' field"}
            yield ToolDoneEvent(
                tool_call_id=event.item_id, name=event.name, success=False, result=data, summary="Invalid question"
            )
            turn.outputs.append(ToolOutputItem.from_result(event.call_id, data))
            return

        turn.question_call_id = event.call_id
        yield QuestionEvent(tool_call_id=event.call_id, payload=payload, conversation_id=state.id)
        await self._conversations.append_message(
            state.id,
            "question",
            {"type": "question", "payload": payload.model_dump(by_alias=True), "call_id": event.call_id},
            tool_name=event.name,
            tool_input=event.arguments,
        )
        yield ToolDoneEvent(
            tool_call_id=event.item_id, name=event.name, success=True, result=None, summary=WAITING_FOR_ANSWER
        )

    async def _handle_tool(
        self, event: UpstreamEvent, request: ChatRequest, state: ConversationState, turn: _TurnState
    ) -> AsyncGenerator[ChatEvent, None]:
        result = await self._dispatcher.execute(
            event.name,
            event.arguments,
            request.tenant_id,
            request.user_id,
            context={"conversation_id": state.id},
        )
        data = result.data
        if data is None and not result.success:
            data = {"error": result.summary}

        yield ToolDoneEvent(
            tool_call_id=event.item_id,
            name=event.name,
            success=result.success,
            result=result.data,
            summary=result.summary,
        )

        output = ToolOutputItem.from_result(event.call_id, data)
        await self._conversations.append_message(
            state.id,
            "tool",
            {"type": "tool", "success": result.success, "summary": result.summary},
            tool_name=event.name,
            tool_input=event.arguments,
            tool_output=json.loads(output.output),
        )
        turn.outputs.append(output)

    async def _save_assistant_text(self, conversation_id: UUID, turn: _TurnState) -> None:
        thinking = "".join(turn.thinking)
        if thinking:
            await self._conversations.append_message(
                conversation_id, "assistant", {"type": "thinking", "text": thinking}
            )
        text = "".join(turn.text)
        if text:
            await self._conversations.append_message(conversation_id, "assistant", {"type": "text", "text": text})
