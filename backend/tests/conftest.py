"""
Shared pytest fixtures: a private in-memory SQLite database per test and a
factory for memory search managers wired to fake collaborators.
"""

import pytest

from agentmem.db.database import build_engine
from agentmem.db.models import Base
from agentmem.services.memory.embeddings import ProviderSelection
from agentmem.services.memory.manager import MemorySearchManager
from tests.fakes import (
    TENANT,
    FakeEmbeddingProvider,
    InMemoryChatHistory,
    InMemoryLister,
    make_config,
)


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def provider():
    return FakeEmbeddingProvider()


@pytest.fixture
def lister():
    return InMemoryLister()


@pytest.fixture
def history():
    return InMemoryChatHistory()


@pytest.fixture
def make_manager(engine, provider, lister, history):
    """Build an initialized manager; ``overrides`` are merged into the quiet test config."""

    def _make(overrides=None, provider_override=None, tenant=TENANT):
        selected = provider_override or provider
        manager = MemorySearchManager(
            tenant,
            make_config(overrides),
            ProviderSelection(provider=selected, requested=selected.id),
            engine,
            lister=lister,
            history=history,
        )
        manager.initialize()
        return manager

    return _make
