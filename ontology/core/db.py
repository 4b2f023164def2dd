"""
Ontology Engine - Database Utilities
=====================================

Database connection management, session handling and schema
initialisation for the knowledge store.

Usage:
    from ontology.core.db import get_engine, get_session, init_db

    engine = get_engine()
    init_db(engine)

    with get_session() as session:
        session.add(Document(id="doc-1", kind="note", content="..."))
"""

import logging
from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import create_engine, event, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from ..config import get_settings
from .models import (
    DEFAULT_DECAY_RULES,
    DEFAULT_PROMOTION_RULES,
    Base,
    DecayRule,
    PromotionRule,
)

logger = logging.getLogger(__name__)

# =============================================================================
# CONFIGURATION
# =============================================================================


def get_database_url() -> str:
    """
    Get database URL from settings.

    Environment variables:
    - ONTOLOGY_DATABASE_URL: Full connection string (also read from .env)
    """
    return get_settings().DATABASE_URL


# =============================================================================
# ENGINE AND SESSION MANAGEMENT
# =============================================================================

_engine: Engine | None = None
_SessionFactory: sessionmaker | None = None


def _enable_sqlite_foreign_keys(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def build_engine(
    url: str,
    pool_size: int = 5,
    max_overflow: int = 10,
    echo: bool = False,
) -> Engine:
    """
    Create a new SQLAlchemy engine for ``url``.

    In-memory SQLite URLs share one connection across threads so the
    learning loop's timer thread sees the same database.
    """
    is_sqlite = url.startswith("sqlite")
    engine_kwargs = {"echo": echo}

    if is_sqlite:
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
            engine_kwargs["poolclass"] = StaticPool
    else:
        engine_kwargs["poolclass"] = QueuePool
        engine_kwargs["pool_size"] = pool_size
        engine_kwargs["max_overflow"] = max_overflow
        engine_kwargs["pool_pre_ping"] = True

    engine = create_engine(url, **engine_kwargs)
    if is_sqlite:
        _enable_sqlite_foreign_keys(engine)
    return engine


def get_engine(url: str | None = None, echo: bool | None = None) -> Engine:
    """Get or create the process-wide engine."""
    global _engine

    if _engine is None:
        _engine = build_engine(
            url or get_database_url(),
            echo=get_settings().DB_ECHO if echo is None else echo,
        )

    return _engine


def create_session_factory(engine: Engine) -> sessionmaker:
    """
    Session factory bound to ``engine``.

    Objects stay readable after commit so stores can hand them back to
    callers outside the transaction.
    """
    return sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )


def get_session_factory(engine: Engine | None = None) -> sessionmaker:
    """Get or create the process-wide session factory."""
    global _SessionFactory

    if _SessionFactory is None:
        _SessionFactory = create_session_factory(engine or get_engine())

    return _SessionFactory


@contextmanager
def get_session(factory: sessionmaker | None = None) -> Generator[Session, None, None]:
    """
    Transactional session scope: commit on success, rollback on error.

    Usage:
        with get_session() as session:
            session.query(Document).all()
    """
    session = (factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# =============================================================================
# DATABASE INITIALIZATION
# =============================================================================


def seed_default_rules(session: Session) -> int:
    """
    Insert the default promotion and decay rules when none exist.

    Returns:
        Number of rules inserted
    """
    inserted = 0

    if session.scalars(select(PromotionRule).limit(1)).first() is None:
        for rule in DEFAULT_PROMOTION_RULES:
            session.add(PromotionRule(to_level=rule["from_level"] + 1, enabled=True, **rule))
            inserted += 1

    if session.scalars(select(DecayRule).limit(1)).first() is None:
        for rule in DEFAULT_DECAY_RULES:
            session.add(DecayRule(enabled=True, **rule))
            inserted += 1

    return inserted


def init_db(engine: Engine | None = None, seed_rules: bool = True) -> None:
    """
    Initialize the database schema and default rules.

    Safe to call repeatedly.
    """
    engine = engine or get_engine()
    Base.metadata.create_all(engine)

    if seed_rules:
        with get_session(create_session_factory(engine)) as session:
            inserted = seed_default_rules(session)
        if inserted:
            logger.info(f"Seeded {inserted} default knowledge rules")


# =============================================================================
# TESTING UTILITIES
# =============================================================================


def create_test_engine(echo: bool = False) -> Engine:
    """Create an initialised in-memory SQLite engine for testing."""
    engine = build_engine("sqlite:///:memory:", echo=echo)
    init_db(engine)
    return engine
