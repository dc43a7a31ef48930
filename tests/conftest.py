"""Shared pytest configuration and fixtures."""

import asyncio
from types import SimpleNamespace
from typing import List, Sequence

import pytest
from sqlalchemy.pool import NullPool

from docembed.db import init_models, make_engine, make_session_factory
from docembed.embeddings import EmbeddingClient
from docembed.jobs import JobOrchestrator
from docembed.queue import InMemoryJobQueue
from docembed.storage import reset_storage
from docembed.vector_index import NullVectorIndex
from docembed.worker import EmbeddingWorker

OWNER = "user-1"
OTHER_OWNER = "user-2"


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: marks tests requiring external services")


class FakeEmbedder(EmbeddingClient):
    """Deterministic vectors; ``failures`` is consumed one entry per call (None = succeed)."""

    def __init__(self, dim: int = 4, failures: Sequence = (), delay: float = 0.0):
        self.dim = dim
        self.failures = list(failures)
        self.delay = delay
        self.calls: List[List[str]] = []

    async def embed(self, texts, model):
        self.calls.append(list(texts))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            exc = self.failures.pop(0)
            if exc is not None:
                raise exc
        return [[float(len(t) % 7), float(i), 1.0, 0.5][: self.dim] for i, t in enumerate(texts)]


@pytest.fixture
def session_factory(tmp_path):
    # NullPool: every asyncio.run() gets fresh connections on its own loop
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'docembed.db'}", poolclass=NullPool)
    asyncio.run(init_models(engine))
    yield make_session_factory(engine)
    asyncio.run(engine.dispose())


@pytest.fixture
def make_embedder():
    return FakeEmbedder


@pytest.fixture
def pipeline(session_factory):
    queue = InMemoryJobQueue()
    embedder = FakeEmbedder()
    worker = EmbeddingWorker(session_factory, embedder, NullVectorIndex(), model="test-model", batch_size=2)
    orchestrator = JobOrchestrator(session_factory, queue, worker, max_attempts=3, backoff_base=0, backoff_max=0)

    async def drain():
        outcomes = []
        while True:
            queued = await queue.dequeue(timeout=0)
            if queued is None:
                return outcomes
            outcomes.append(await orchestrator.handle(queued))

    return SimpleNamespace(
        session_factory=session_factory,
        queue=queue,
        embedder=embedder,
        worker=worker,
        orchestrator=orchestrator,
        drain=drain,
    )


@pytest.fixture(autouse=True)
def _clean_storage_registry():
    yield
    reset_storage()
