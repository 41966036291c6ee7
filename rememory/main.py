"""Rememory backend entry point.

Initializes all components and starts the server:
  Settings -> Database -> Store -> CompletionClient -> Notifier ->
  Lifecycle services -> TurnOrchestrator -> ExpirationSweep -> App -> Uvicorn

Uses Starlette lifespan to manage component lifecycle on the same event
loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from starlette.applications import Starlette

from rememory.api.auth import IdentityVerifier, StaticTokenVerifier
from rememory.api.completion import CompletionClient
from rememory.config import Settings
from rememory.conversation.compaction import ConversationCompactor
from rememory.conversation.orchestrator import TurnOrchestrator
from rememory.conversation.window import ConversationWindow
from rememory.handlers.expiration_sweep import ExpirationSweep
from rememory.handlers.notifier import EmailNotifier
from rememory.lifecycle.guidance import GuidanceEscalator
from rememory.lifecycle.personas import PersonaManager
from rememory.lifecycle.timer import SessionTimer
from rememory.storage.database import Database
from rememory.storage.store import PersonaStore

logger = logging.getLogger(__name__)


async def create_components(
    settings: Settings,
    completion: Any | None = None,
    notifier: Any | None = None,
) -> dict:
    """Initialize all components in dependency order.

    ``completion`` and ``notifier`` replace the HTTP-backed defaults when
    given (tests pass fakes).
    """
    database = Database(settings)
    await database.connect()
    store = PersonaStore(database)

    if completion is None:
        completion = CompletionClient(settings)
        await completion.start()
    if notifier is None:
        notifier = EmailNotifier(store, settings)
        await notifier.start()

    personas = PersonaManager(store, settings)
    timer = SessionTimer(store, settings)
    escalator = GuidanceEscalator(store)
    window = ConversationWindow(store, settings)
    compactor = ConversationCompactor(store, completion, settings)
    orchestrator = TurnOrchestrator(
        store=store,
        personas=personas,
        timer=timer,
        escalator=escalator,
        window=window,
        compactor=compactor,
        completion=completion,
        settings=settings,
        notifier=notifier,
    )

    sweep = ExpirationSweep(store, personas, notifier, settings)
    if settings.sweep_enabled:
        await sweep.start()

    return {
        "database": database,
        "store": store,
        "completion": completion,
        "notifier": notifier,
        "personas": personas,
        "timer": timer,
        "escalator": escalator,
        "window": window,
        "compactor": compactor,
        "orchestrator": orchestrator,
        "sweep": sweep,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down Rememory...")

    sweep = components.get("sweep")
    if sweep:
        await sweep.stop()

    compactor = components.get("compactor")
    if compactor:
        await compactor.drain()

    notifier = components.get("notifier")
    if notifier and hasattr(notifier, "close"):
        await notifier.close()

    completion = components.get("completion")
    if completion and hasattr(completion, "close"):
        await completion.close()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("Rememory shutdown complete.")


def build_app(
    settings: Settings,
    verifier: IdentityVerifier | None = None,
    completion: Any | None = None,
    notifier: Any | None = None,
) -> Starlette:
    """Build the Starlette app; components are created in its lifespan."""
    components: dict = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(
            await create_components(settings, completion=completion, notifier=notifier)
        )
        app.state.components = components
        logger.info("Rememory started (model=%s)", settings.llm_model)
        yield
        await shutdown_components(components)

    from rememory.api.rest import create_app

    return create_app(
        personas=_lazy_component(components, "personas"),
        timer=_lazy_component(components, "timer"),
        orchestrator=_lazy_component(components, "orchestrator"),
        store=_lazy_component(components, "store"),
        database=_lazy_component(components, "database"),
        verifier=verifier or StaticTokenVerifier(settings),
        settings=settings,
        lifespan=lifespan,
    )


class _LazyProxy:
    """Proxy that defers attribute access to a dict-backed component.

    Lets create_app() receive component references before the lifespan
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
            raise RuntimeError(f"Component '{key}' not yet initialized, lifespan hasn't started")
        return obj

    def __getattr__(self, name):
        return getattr(self._resolve(), name)


def _lazy_component(components: dict, key: str) -> _LazyProxy:
    return _LazyProxy(components, key)


def main() -> None:
    """Entry point: parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting Rememory backend")
    logger.info("Model: %s (fallbacks: %s)", settings.llm_model, settings.llm_fallback_models)
    logger.info("Database: %s:%s/%s", settings.db_host, settings.db_port, settings.db_name)
    logger.info("Sweep: %s", settings.sweep_cron if settings.sweep_enabled else "disabled")

    if not settings.llm_api_key:
        logger.warning("LLM_API_KEY is not set -- chat endpoints will fail")
    if not settings.dev_static_bearer:
        logger.warning(
            "DEV_STATIC_BEARER is not set and no identity verifier is configured -- "
            "all /api requests will be rejected"
        )
    if not settings.email_api_key:
        logger.warning("SENDGRID_API_KEY is not set -- notifications will not be delivered")

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
