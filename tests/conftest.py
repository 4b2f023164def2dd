"""Pytest configuration and fixtures for ontology engine tests."""
import pytest
from datetime import datetime, timedelta

from ontology.core.db import create_session_factory, create_test_engine
from ontology.core.models import ScopeEnum
from ontology.core.store import OntologyStore
from ontology.learning import (
    LearningLoop,
    LearningLoopConfig,
    LevelManager,
    PatternMiner,
    Synthesizer,
)


class FrozenClock:
    """Manually advanced clock for decay and age rules."""

    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2024, 6, 3, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def engine():
    """Create an initialised in-memory SQLite engine per test."""
    engine = create_test_engine()
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine):
    return OntologyStore(create_session_factory(engine))


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def level_manager(store, clock):
    return LevelManager(store, clock=clock)


@pytest.fixture
def miner(store):
    return PatternMiner(store)


@pytest.fixture
def synthesizer(store, level_manager):
    return Synthesizer(store, level_manager)


@pytest.fixture
def loop(store, level_manager, miner, synthesizer):
    loop = LearningLoop(
        store,
        LearningLoopConfig(),
        level_manager=level_manager,
        miner=miner,
        synthesizer=synthesizer,
    )
    yield loop
    loop.stop_auto_loop()


@pytest.fixture
def make_document(store, level_manager):
    """Factory creating a document, optionally with a level record."""
    counter = {"n": 0}

    def _make(
        content: str = "Sample content for testing.",
        kind: str = "note",
        tags=(),
        created_at: datetime | None = None,
        level: int | None = None,
        confidence: float | None = None,
        document_id: str | None = None,
        scope: ScopeEnum = ScopeEnum.COMMON,
    ):
        counter["n"] += 1
        doc = store.create_document(
            content=content,
            kind=kind,
            tags=list(tags),
            scope=scope,
            document_id=document_id or f"doc-{counter['n']}",
            created_at=created_at,
        )
        if level is not None:
            level_manager.set_level(doc.id, level, confidence)
        return doc

    return _make
