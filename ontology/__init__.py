"""
Ontology Engine
===============

A self-learning knowledge store: documents move through a four-level
confidence hierarchy, patterns are mined across the corpus, new
knowledge is synthesized from old, and a learning loop runs it all.

Modules:
    - core: Database models, schemas, store and utilities
    - learning: Level manager, pattern miner, synthesizer, learning loop
    - extraction: Rule-based entity extraction
    - observability: Logging and context propagation
    - resilience: Error taxonomy
    - interface: CLI
"""

__version__ = "0.1.0"

from .core.db import get_engine, get_session, init_db
from .core.models import (
    Base,
    DetectedPattern,
    Document,
    KnowledgeConflict,
    KnowledgeLevel,
    KnowledgeLevelEnum,
    Observation,
)
from .core.store import OntologyStore
from .learning import LearningLoop, LevelManager, PatternMiner, Synthesizer

__all__ = [
    # Core models
    "Base",
    "Document",
    "KnowledgeLevel",
    "KnowledgeLevelEnum",
    "DetectedPattern",
    "KnowledgeConflict",
    "Observation",
    # Database
    "get_engine",
    "get_session",
    "init_db",
    "OntologyStore",
    # Learning
    "LevelManager",
    "PatternMiner",
    "Synthesizer",
    "LearningLoop",
]
