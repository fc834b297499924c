"""Zeru agent service entry point.

Initializes all components and starts the server:
  Settings -> Database -> migrations -> JobQueue -> embedding cache -> MemoryStore
  -> ConversationStore -> ToolDispatcher -> service clients -> UpstreamClient
  -> AgentRunner -> App -> Uvicorn

Uses Starlette lifespan to manage component lifecycle on the same
event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette

from zeru.api.accounting_tools import HttpAccountingBackend, register_accounting_tools
from zeru.api.attachments import HttpAttachmentResolver
from zeru.api.providers import SettingsProviderResolver
from zeru.api.rest import create_app
from zeru.api.runner import AgentRunner
from zeru.api.skills import HttpSkillsProvider
from zeru.api.tools import ToolDispatcher, register_engine_tools, register_memory_tools
from zeru.api.upstream import UpstreamClient
from zeru.config import Settings
from zeru.jobs import JobQueue
from zeru.memory import EmbeddingClientCache, MemoryStore
from zeru.storage.conversations import ConversationStore
from zeru.storage.database import Database
from zeru.storage.migrator import run_migrations

logger = logging.getLogger(__name__)


async def create_components(settings: Settings) -> dict:
    """Initialize all components in dependency order.

    Returns dict with all components for lifespan storage.
    """
    database = Database(settings)
    await database.connect()
    await run_migrations(database.engine)

    queue = JobQueue(
        max_concurrency=settings.job_max_concurrency,
        max_retries=settings.job_max_retries,
        base_delay=settings.job_base_delay,
    )
    embeddings = EmbeddingClientCache(
        queue,
        max_size=settings.embedding_client_cache_size,
        model=settings.embedding_model,
        dimensions=settings.embedding_dimensions,
        base_url=settings.api_base_url,
    )
    providers = SettingsProviderResolver(settings)
    memory = MemoryStore(database, providers, queue, embeddings, context_limit=settings.memory_context_limit)
    conversations = ConversationStore(database)

    # Create tool dispatcher and register all tools
    dispatcher = ToolDispatcher()
    register_engine_tools(dispatcher)
    register_memory_tools(dispatcher, memory, search_limit=settings.memory_search_tool_limit)

    accounting = None
    if settings.accounting_api_url:
        accounting = HttpAccountingBackend(settings.accounting_api_url, timeout=settings.internal_api_timeout)
        register_accounting_tools(dispatcher, accounting)
    else:
        logger.warning("ZERU_ACCOUNTING_API_URL not set -- accounting tools are disabled")

    attachments = None
    if settings.files_api_url:
        attachments = HttpAttachmentResolver(
            settings.files_api_url,
            provider_base_url=settings.api_base_url,
            timeout=settings.internal_api_timeout,
        )
    else:
        logger.warning("ZERU_FILES_API_URL not set -- attachments are referenced by id only")

    skills = None
    if settings.skills_api_url:
        skills = HttpSkillsProvider(settings.skills_api_url, timeout=settings.internal_api_timeout)
    else:
        logger.info("ZERU_SKILLS_API_URL not set -- no skills in the system prompt")

    upstream = UpstreamClient(settings)
    await upstream.start()

    runner = AgentRunner(
        conversations,
        memory,
        dispatcher,
        upstream,
        providers,
        settings,
        attachments=attachments,
        skills=skills,
    )

    return {
        "database": database,
        "queue": queue,
        "embeddings": embeddings,
        "memory": memory,
        "conversations": conversations,
        "dispatcher": dispatcher,
        "accounting": accounting,
        "attachments": attachments,
        "skills": skills,
        "upstream": upstream,
        "runner": runner,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down Zeru agent...")

    upstream = components.get("upstream")
    if upstream:
        await upstream.close()

    attachments = components.get("attachments")
    if attachments:
        await attachments.close()

    skills = components.get("skills")
    if skills:
        await skills.close()

    accounting = components.get("accounting")
    if accounting:
        await accounting.close()

    # Drain before closing the clients the jobs use
    queue = components.get("queue")
    if queue:
        await queue.shutdown()

    embeddings = components.get("embeddings")
    if embeddings:
        await embeddings.close()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("Zeru agent shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app.

    Uses Starlette lifespan for component lifecycle management.
    """
    # Closure to share components between lifespan and app
    components: dict = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings))

        # Store on app.state for access in tests
        app.state.components = components

        logger.info(
            "Zeru agent started: model=%s, max_iterations=%d, tools=%d",
            settings.model,
            settings.max_iterations,
            len(components["dispatcher"].tool_definitions()),
        )
        yield

        await shutdown_components(components)

    return create_app(
        runner=_lazy_component(components, "runner"),
        conversations=_lazy_component(components, "conversations"),
        memory=_lazy_component(components, "memory"),
        database=_lazy_component(components, "database"),
        lifespan=lifespan,
    )


class _LazyProxy:
    """Proxy that defers attribute access to a dict-backed component.

    Allows create_app() to receive component references before lifespan
    has initialized them.
    """

    def __init__(self, components: dict, key: str) -> None:
        object.__setattr__(self, "_components", components)
        object.__setattr__(self, "_key", key)

    def _resolve(self):
        components = object.__getattribute__(self, "_components")
        key = object.__getattribute__(self, "_key")
        obj = components.get(key)
        if obj is None:
            raise RuntimeError(f"Component '{key}' not yet initialized -- lifespan hasn't started")
        return obj

    def __getattr__(self, name):
        return getattr(self._resolve(), name)


def _lazy_component(components: dict, key: str) -> _LazyProxy:
    """Create a lazy proxy for a component that will be initialized in lifespan."""
    return _LazyProxy(components, key)


def main() -> None:
    """Entry point -- parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting Zeru agent")
    logger.info("Model: %s", settings.model)
    logger.info("Database: %s:%s/%s", settings.db_host, settings.db_port, settings.db_name)

    if not settings.openai_api_key:
        logger.warning("OPENAI_API_KEY is not set -- chat answers 'AI provider not configured'")

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
