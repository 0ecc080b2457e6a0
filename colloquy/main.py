"""colloquy entry point.

Initializes all components and starts the server:
  Settings -> Database -> HistoryStore -> Transport -> Tools -> Runner -> App -> Uvicorn

Uses Starlette lifespan to manage component lifecycle on the same
event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from starlette.applications import Starlette

from colloquy.api.builtin_tools import register_builtin_tools
from colloquy.api.compaction import ConversationCompactor
from colloquy.api.notices import NoticeLog
from colloquy.api.rest import create_app
from colloquy.api.runner import ConversationRunner
from colloquy.api.tools import ToolDispatcher
from colloquy.api.transport import AnthropicTransport
from colloquy.config import Settings
from colloquy.conversation.dedup import DeduplicationGuard
from colloquy.conversation.store import SqlHistoryStore
from colloquy.conversation.window import WindowManager
from colloquy.storage.database import Database

logger = logging.getLogger(__name__)


async def create_components(settings: Settings) -> dict[str, Any]:
    """Initialize all components in dependency order.

    Returns dict with all components for lifespan storage.
    """
    database = Database(settings)
    await database.connect()
    store = SqlHistoryStore(database)

    transport = AnthropicTransport(settings)
    await transport.start()

    dispatcher = ToolDispatcher()
    if settings.builtin_tools_enabled:
        register_builtin_tools(dispatcher, settings)

    guard = DeduplicationGuard(window_seconds=settings.duplicate_window_seconds)
    notices = NoticeLog()
    window = WindowManager(settings, transport)
    runner = ConversationRunner(settings, store, transport, dispatcher, window, guard, notices)
    compactor = ConversationCompactor(settings, store, transport, guard)

    return {
        "database": database,
        "store": store,
        "transport": transport,
        "dispatcher": dispatcher,
        "guard": guard,
        "notices": notices,
        "runner": runner,
        "compactor": compactor,
    }


async def shutdown_components(components: dict[str, Any]) -> None:
    """Close resources in reverse order."""
    await components["transport"].close()
    await components["database"].disconnect()


def build_app(settings: Settings) -> Starlette:
    """Build the app; components are created inside the lifespan."""
    components: dict[str, Any] = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings))

        # Store on app.state for access in tests
        app.state.components = components
        logger.info("colloquy started (model=%s)", settings.model)
        yield

        await shutdown_components(components)
        logger.info("colloquy shutdown complete.")

    return create_app(
        runner=_lazy_component(components, "runner"),
        compactor=_lazy_component(components, "compactor"),
        store=_lazy_component(components, "store"),
        notices=_lazy_component(components, "notices"),
        guard=_lazy_component(components, "guard"),
        lifespan=lifespan,
    )


class _LazyProxy:
    """Forwards attribute access to a component created in the lifespan.

    create_app() needs references before startup has built anything.
    """

    def __init__(self, components: dict, key: str) -> None:
        object.__setattr__(self, "_components", components)
        object.__setattr__(self, "_key", key)

    def _resolve(self):
        components = object.__getattribute__(self, "_components")
        key = object.__getattribute__(self, "_key")
        obj = components.get(key)
        if obj is None:
            raise RuntimeError(f"Component '{key}' not initialized -- lifespan has not started")
        return obj

    def __getattr__(self, name):
        return getattr(self._resolve(), name)


def _lazy_component(components: dict, key: str) -> Any:
    return _LazyProxy(components, key)


def main() -> None:
    """Entry point -- parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting colloquy")
    logger.info("Model: %s", settings.model)
    logger.info("Database: %s", settings.db_url.split("@")[-1])
    logger.info(
        "Window: budget=%d recent=%d, max tool rounds=%d",
        settings.window_budget,
        settings.window_recent_turns,
        settings.max_tool_rounds,
    )

    if not settings.anthropic_api_key and not settings.anthropic_auth_token:
        logger.warning(
            "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
            "/chat endpoints will fail"
        )

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
