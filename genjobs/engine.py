"""Wires the store, pipelines, worker, dispatcher and watchdog together."""

import logging
from typing import Optional

from genjobs.config import settings
from genjobs.database import SessionLocal
from genjobs.pipelines.base import PipelineContext
from genjobs.pipelines.registry import PipelineRegistry, build_registry
from genjobs.services.blob_store import BlobStore, build_blob_store
from genjobs.services.dispatcher import Dispatcher, ThreadDispatcher, build_dispatcher
from genjobs.services.llm_client import PlannerClient
from genjobs.services.providers import ProviderSet
from genjobs.watchdog import Watchdog
from genjobs.worker import Worker

logger = logging.getLogger(__name__)


class Engine:
    """Everything one process needs to run jobs."""

    def __init__(
        self,
        session_factory,
        registry: PipelineRegistry,
        dispatcher: Dispatcher,
        config=settings,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.dispatcher = dispatcher
        self.worker = Worker(session_factory, registry, dispatcher)
        self.watchdog = Watchdog(session_factory, registry, dispatcher, config)
        if isinstance(dispatcher, ThreadDispatcher) and dispatcher.target is None:
            dispatcher.bind(self.worker.invoke)


def build_engine(
    session_factory=None,
    blobs: Optional[BlobStore] = None,
    providers: Optional[ProviderSet] = None,
    planner_client=None,
    dispatcher: Optional[Dispatcher] = None,
    config=settings,
) -> Engine:
    """Build an engine from settings, with optional overrides for each collaborator."""
    ctx = PipelineContext(
        blobs=blobs or build_blob_store(),
        providers=providers or ProviderSet.from_settings(),
        settings=config,
    )
    registry = build_registry(ctx, planner_client or PlannerClient())
    engine = Engine(session_factory or SessionLocal, registry, dispatcher or build_dispatcher(), config)
    logger.info(f"Engine ready with pipelines: {', '.join(name for name, _ in registry.items())}")
    return engine


_engine: Optional[Engine] = None


def get_engine() -> Engine:
    """Process-wide engine, built on first use."""
    global _engine
    if _engine is None:
        _engine = build_engine()
    return _engine
