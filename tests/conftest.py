"""Shared fixtures: in-memory fakes for the engine, real Postgres for storage tests."""

import hashlib
import random
import uuid
from datetime import UTC, datetime

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession

from zeru.api.providers import ProviderConfig
from zeru.api.schemas import ConversationState, MessageDetail
from zeru.api.upstream import UpstreamEvent
from zeru.config import Settings
from zeru.storage.database import Database
from zeru.storage.migrator import run_migrations

# ---------------------------------------------------------------------------
# Mock embedding provider (PRNG-seeded, L2-normalized vectors)
# ---------------------------------------------------------------------------


class MockEmbeddingProvider:
    """Returns deterministic, L2-normalized embeddings seeded from text hash.

    Identical texts produce identical vectors; unrelated texts are close
    to orthogonal.
    """

    def __init__(self) -> None:
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        h = hashlib.sha256(text.encode()).hexdigest()
        rng = random.Random(h)
        vec = [rng.gauss(0, 1) for _ in range(1536)]
        norm = sum(x * x for x in vec) ** 0.5
        return [x / norm for x in vec]

    async def close(self) -> None:
        pass


class FakeEmbeddingCache:
    """EmbeddingClientCache stand-in that hands out one provider for every key."""

    def __init__(self, provider) -> None:
        self.provider = provider
        self.keys: list[str] = []

    def get(self, api_key: str):
        self.keys.append(api_key)
        return self.provider


class StaticProviderResolver:
    """Resolves every tenant to one fixed config, or to None."""

    def __init__(self, api_key: str | None = "sk-test", model: str = "gpt-test") -> None:
        self.config = ProviderConfig(api_key=api_key, model=model) if api_key else None

    async def resolve(self, tenant_id: str) -> ProviderConfig | None:
        return self.config


# ---------------------------------------------------------------------------
# Conversation collaborator fake
# ---------------------------------------------------------------------------


class FakeConversationStore:
    """In-memory ConversationStore with the same method signatures."""

    def __init__(self) -> None:
        self.states: dict[uuid.UUID, ConversationState] = {}
        self.messages: list[MessageDetail] = []
        self.continuity_updates: list[dict] = []
        self.title_updates: list[tuple[uuid.UUID, str]] = []

    def seed(self, tenant_id: str = "tenant-1", user_id: str = "user-1", **fields) -> ConversationState:
        state = ConversationState(
            id=uuid.uuid4(), tenant_id=tenant_id, user_id=user_id, title="New conversation", **fields
        )
        self.states[state.id] = state
        return state

    async def find_or_create(self, conversation_id, tenant_id, user_id, session=None) -> ConversationState:
        state = self.states.get(conversation_id) if conversation_id else None
        if state is not None and state.tenant_id == tenant_id and state.user_id == user_id:
            return state.model_copy(deep=True)
        return self.seed(tenant_id, user_id).model_copy(deep=True)

    async def get(self, conversation_id, tenant_id, user_id, session=None):
        state = self.states.get(conversation_id)
        if state is None or state.tenant_id != tenant_id or state.user_id != user_id:
            return None
        return state.model_copy(deep=True)

    async def update_continuity(self, conversation_id, session=None, **fields) -> None:
        self.continuity_updates.append(fields)
        self.states[conversation_id] = self.states[conversation_id].model_copy(update=fields)

    async def update_title(self, conversation_id, title, session=None) -> None:
        self.title_updates.append((conversation_id, title))
        self.states[conversation_id] = self.states[conversation_id].model_copy(update={"title": title})

    async def append_message(
        self,
        conversation_id,
        role,
        content,
        tool_name=None,
        tool_input=None,
        tool_output=None,
        session=None,
    ) -> MessageDetail:
        message = MessageDetail(
            id=uuid.uuid4(),
            conversation_id=conversation_id,
            role=role,
            content=content,
            tool_name=tool_name,
            tool_input=tool_input,
            tool_output=tool_output,
            created_at=datetime.now(UTC),
        )
        self.messages.append(message)
        return message

    def roles(self) -> list[str]:
        return [m.role for m in self.messages]


# ---------------------------------------------------------------------------
# Scripted upstream model
# ---------------------------------------------------------------------------


def text_delta(text: str) -> UpstreamEvent:
    return UpstreamEvent(type="text_delta", text=text)


def reasoning_delta(text: str) -> UpstreamEvent:
    return UpstreamEvent(type="reasoning_delta", text=text)


def tool_call(name: str, arguments: dict, call_id: str) -> list[UpstreamEvent]:
    """The added/done pair the provider reports for one function call."""
    item_id = f"fc_{call_id}"
    return [
        UpstreamEvent(type="tool_call_added", item_id=item_id, call_id=call_id, name=name),
        UpstreamEvent(type="tool_call_done", item_id=item_id, call_id=call_id, name=name, arguments=arguments),
    ]


def completed(turn_id: str, input_tokens: int = 10, output_tokens: int = 5) -> UpstreamEvent:
    return UpstreamEvent(
        type="turn_completed",
        turn_id=turn_id,
        output=[{"type": "message", "id": f"msg_{turn_id}"}],
        input_tokens=input_tokens,
        output_tokens=output_tokens,
    )


class ScriptedUpstream:
    """UpstreamClient stand-in that replays one scripted event list per turn."""

    def __init__(self, turns: list[list[UpstreamEvent]] | None = None, repeat_last: bool = False) -> None:
        self.turns = list(turns or [])
        self.repeat_last = repeat_last
        self.requests = []
        self.closed_streams = 0

    async def stream(self, request, api_key):
        self.requests.append(request)
        if self.turns:
            events = self.turns.pop(0) if not (self.repeat_last and len(self.turns) == 1) else self.turns[0]
        else:
            events = []
        try:
            for event in events:
                yield event
        finally:
            self.closed_streams += 1


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def mock_embeddings() -> MockEmbeddingProvider:
    """Mock embedding provider for tests needing deterministic vectors."""
    return MockEmbeddingProvider()


# ---------------------------------------------------------------------------
# Database fixtures (skipped when Postgres is not reachable)
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def db(settings):
    """Connection pool against the configured database, migrated."""
    database = Database(settings)
    try:
        await database.connect()
        await run_migrations(database.engine)
    except Exception as e:
        await database.disconnect()
        pytest.skip(f"Postgres not reachable: {e}")
    yield database
    await database.disconnect()


@pytest_asyncio.fixture
async def session(db):
    """Function-scoped session with SAVEPOINT isolation.

    Tests can call session.commit() freely; everything is rolled back
    after each test via the outer transaction.
    """
    async with db.engine.connect() as conn:
        trans = await conn.begin()
        session = AsyncSession(bind=conn, expire_on_commit=False)

        nested = await conn.begin_nested()

        @event.listens_for(session.sync_session, "after_transaction_end")
        def restart_savepoint(sess, transaction):
            nonlocal nested
            if transaction.nested and not transaction._parent.nested:
                nested = conn.sync_connection.begin_nested()

        yield session

        await session.close()
        await trans.rollback()
