"""
Ontology Engine - SQLAlchemy Data Models
=========================================

Schema for the self-learning knowledge store. Documents are never
deleted; supersession leaves a forward pointer and a relationship edge.

Tables Defined:
- Document / DocumentRelationship: knowledge entries and their edges
- KnowledgeLevel: per-document level, confidence and usage
- PromotionRule / DecayRule: level transition and decay policy
- DetectedPattern / KnowledgeConflict / SynthesisHistory: learning layer
- Observation: learning loop input queue
- Entity: entities discovered by rule-based extraction

Usage:
    from ontology.core.models import Base, Document
    from sqlalchemy import create_engine

    engine = create_engine("sqlite:///ontology.db")
    Base.metadata.create_all(engine)
"""

import enum
import hashlib
import json
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


# =============================================================================
# ENUMS - closed state sets
# =============================================================================

class KnowledgeLevelEnum(enum.IntEnum):
    """Four-tier refinement hierarchy."""
    RAW = 1
    EXTRACTED = 2
    SYNTHESIZED = 3
    CORE = 4

    @property
    def label(self) -> str:
        return f"L{self.value} {self.name.title()}"


MIN_LEVEL = KnowledgeLevelEnum.RAW
MAX_LEVEL = KnowledgeLevelEnum.CORE


class ScopeEnum(enum.Enum):
    """Document sharing scope."""
    COMMON = "common"
    PERSONAL = "personal"


class RelationshipTypeEnum(enum.Enum):
    """Edges between documents."""
    SUPERSEDES = "supersedes"
    UPDATES = "updates"
    EXTENDS = "extends"
    DERIVES = "derives"
    RELATES_TO = "relates_to"


class PromotionRuleTypeEnum(enum.Enum):
    CONFIDENCE = "confidence"
    USAGE = "usage"
    ENTITY_COUNT = "entity_count"
    VALIDATION = "validation"
    AGE = "age"


class DecayFunctionEnum(enum.Enum):
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    NONE = "none"


class PatternTypeEnum(enum.Enum):
    CO_OCCURRENCE = "co-occurrence"
    TEMPORAL = "temporal"
    SEMANTIC = "semantic"
    CONTRADICTION = "contradiction"
    EVOLUTION = "evolution"


class PatternStatusEnum(enum.Enum):
    DETECTED = "detected"
    VALIDATED = "validated"
    REJECTED = "rejected"
    APPLIED = "applied"


class ConflictResolutionEnum(enum.Enum):
    PENDING = "pending"
    MERGED = "merged"
    SUPERSEDED = "superseded"
    COEXIST = "coexist"
    REJECTED = "rejected"


class SynthesisTypeEnum(enum.Enum):
    MERGE = "merge"
    DISTILL = "distill"
    SUMMARIZE = "summarize"
    ABSTRACT = "abstract"


class ObservationTypeEnum(enum.Enum):
    CONVERSATION = "conversation"
    FILE_CHANGE = "file_change"
    SEARCH = "search"
    FEEDBACK = "feedback"
    EXTERNAL = "external"
    GITHUB_REPO = "github_repo"


class ProcessingStageEnum(enum.Enum):
    RAW = "raw"
    EXTRACTING = "extracting"
    EXTRACTED = "extracted"
    SYNTHESIZING = "synthesizing"
    SYNTHESIZED = "synthesized"
    PROMOTING = "promoting"
    COMPLETED = "completed"
    FAILED = "failed"


# =============================================================================
# TRANSITION TABLES
# =============================================================================

PATTERN_STATUS_TRANSITIONS: dict[PatternStatusEnum, frozenset[PatternStatusEnum]] = {
    PatternStatusEnum.DETECTED: frozenset({PatternStatusEnum.VALIDATED, PatternStatusEnum.REJECTED}),
    PatternStatusEnum.VALIDATED: frozenset({PatternStatusEnum.APPLIED}),
    PatternStatusEnum.REJECTED: frozenset(),
    PatternStatusEnum.APPLIED: frozenset(),
}

_ANY_FAILURE = frozenset({ProcessingStageEnum.FAILED})

PROCESSING_STAGE_TRANSITIONS: dict[ProcessingStageEnum, frozenset[ProcessingStageEnum]] = {
    ProcessingStageEnum.RAW: frozenset({ProcessingStageEnum.EXTRACTING}) | _ANY_FAILURE,
    ProcessingStageEnum.EXTRACTING: frozenset({ProcessingStageEnum.EXTRACTED}) | _ANY_FAILURE,
    ProcessingStageEnum.EXTRACTED: frozenset(
        {ProcessingStageEnum.SYNTHESIZING, ProcessingStageEnum.COMPLETED}
    ) | _ANY_FAILURE,
    ProcessingStageEnum.SYNTHESIZING: frozenset({ProcessingStageEnum.SYNTHESIZED}) | _ANY_FAILURE,
    ProcessingStageEnum.SYNTHESIZED: frozenset(
        {ProcessingStageEnum.PROMOTING, ProcessingStageEnum.COMPLETED}
    ) | _ANY_FAILURE,
    ProcessingStageEnum.PROMOTING: frozenset({ProcessingStageEnum.COMPLETED}) | _ANY_FAILURE,
    ProcessingStageEnum.COMPLETED: frozenset(),
    ProcessingStageEnum.FAILED: frozenset(),
}

TERMINAL_STAGES = frozenset({ProcessingStageEnum.COMPLETED, ProcessingStageEnum.FAILED})


def can_transition_pattern(current: PatternStatusEnum, target: PatternStatusEnum) -> bool:
    return target in PATTERN_STATUS_TRANSITIONS[current]


def can_transition_stage(current: ProcessingStageEnum, target: ProcessingStageEnum) -> bool:
    return target in PROCESSING_STAGE_TRANSITIONS[current]


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def utcnow() -> datetime:
    """Naive UTC timestamp, the representation used in every table."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def compute_pattern_signature(
    pattern_type: PatternTypeEnum, document_ids: list[str], description: str | None
) -> str:
    """
    Deterministic hash identifying a mined pattern.

    Re-mining an unchanged corpus yields the same signatures, which keeps
    pattern persistence idempotent across cycles.
    """
    normalized = json.dumps(
        {
            "type": pattern_type.value,
            "documents": sorted(document_ids),
            "description": description or "",
        },
        sort_keys=True,
    )
    return hashlib.sha256(normalized.encode()).hexdigest()


# =============================================================================
# DOCUMENTS
# =============================================================================

class Document(Base):
    """
    Primary knowledge entry.

    Never deleted: ``superseded_by`` is the only retirement path.
    """
    __tablename__ = "documents"

    id = Column(String(128), primary_key=True)
    kind = Column(String(50), nullable=False, index=True)
    scope = Column(Enum(ScopeEnum), nullable=False, default=ScopeEnum.COMMON)
    source = Column(String(1000), nullable=False, default="")
    content = Column(Text, nullable=False, default="")
    tags = Column(JSON, nullable=False, default=list)

    superseded_by = Column(String(128), ForeignKey("documents.id"), nullable=True, index=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_docs_kind_scope", "kind", "scope"),
        Index("idx_docs_created", "created_at"),
    )

    @property
    def is_superseded(self) -> bool:
        return self.superseded_by is not None

    def __repr__(self):
        return f"<Document(id='{self.id}', kind='{self.kind}', tags={self.tags})>"


class DocumentRelationship(Base):
    """Directed edge between two documents."""
    __tablename__ = "document_relationships"

    id = Column(Integer, primary_key=True, autoincrement=True)
    source_id = Column(String(128), ForeignKey("documents.id"), nullable=False, index=True)
    target_id = Column(String(128), ForeignKey("documents.id"), nullable=False, index=True)
    relationship_type = Column("type", Enum(RelationshipTypeEnum), nullable=False, index=True)
    confidence = Column(Float, nullable=False, default=1.0)
    extra_data = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return (
            f"<DocumentRelationship({self.source_id} -{self.relationship_type.value}-> "
            f"{self.target_id})>"
        )


# =============================================================================
# KNOWLEDGE LEVELS & RULES
# =============================================================================

class KnowledgeLevel(Base):
    """Per-document level record: one row per document."""
    __tablename__ = "knowledge_levels"

    document_id = Column(String(128), ForeignKey("documents.id"), primary_key=True)
    level = Column(Integer, nullable=False, default=int(KnowledgeLevelEnum.RAW), index=True)
    confidence = Column(Float, nullable=False, default=0.5, index=True)
    usage_count = Column(Integer, nullable=False, default=0)
    promoted_from_id = Column(String(128), ForeignKey("documents.id"), nullable=True)
    last_promoted_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    @property
    def knowledge_level(self) -> KnowledgeLevelEnum:
        return KnowledgeLevelEnum(self.level)

    def __repr__(self):
        return (
            f"<KnowledgeLevel(document_id='{self.document_id}', level={self.level}, "
            f"confidence={self.confidence:.3f})>"
        )


class PromotionRule(Base):
    """A single condition that makes a document eligible for promotion."""
    __tablename__ = "promotion_rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    from_level = Column(Integer, nullable=False, index=True)
    to_level = Column(Integer, nullable=False)
    rule_type = Column(Enum(PromotionRuleTypeEnum), nullable=False)
    threshold_value = Column(Float, nullable=False)
    description = Column(Text, nullable=True)
    enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return (
            f"<PromotionRule(L{self.from_level}->L{self.to_level}, "
            f"{self.rule_type.value}>={self.threshold_value})>"
        )


class DecayRule(Base):
    """Confidence decay policy for one level."""
    __tablename__ = "decay_rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    level = Column(Integer, nullable=False, unique=True)
    decay_function = Column(Enum(DecayFunctionEnum), nullable=False)
    half_life_days = Column(Float, nullable=False, default=0)
    min_value = Column(Float, nullable=False, default=0.1)
    enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return f"<DecayRule(L{self.level}, {self.decay_function.value}, half_life={self.half_life_days})>"


# =============================================================================
# LEARNING LAYER
# =============================================================================

class DetectedPattern(Base):
    """Corpus-wide structural observation awaiting validation."""
    __tablename__ = "detected_patterns"

    id = Column(Integer, primary_key=True, autoincrement=True)
    pattern_type = Column(Enum(PatternTypeEnum), nullable=False, index=True)
    confidence = Column(Float, nullable=False, default=0.5)
    document_ids = Column(JSON, nullable=False, default=list)
    description = Column(Text, nullable=True)
    extra_data = Column("metadata", JSON, nullable=True)
    status = Column(Enum(PatternStatusEnum), nullable=False, default=PatternStatusEnum.DETECTED, index=True)
    signature = Column(String(64), nullable=False, unique=True)
    validated_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return (
            f"<DetectedPattern(id={self.id}, type='{self.pattern_type.value}', "
            f"status='{self.status.value}', confidence={self.confidence:.2f})>"
        )


class KnowledgeConflict(Base):
    """Pair of documents believed to disagree. Resolved exactly once."""
    __tablename__ = "knowledge_conflicts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    document_a_id = Column(String(128), ForeignKey("documents.id"), nullable=False)
    document_b_id = Column(String(128), ForeignKey("documents.id"), nullable=False)
    conflict_type = Column(String(50), nullable=False)
    description = Column(Text, nullable=True)
    resolution = Column(
        Enum(ConflictResolutionEnum), nullable=False, default=ConflictResolutionEnum.PENDING, index=True
    )
    resolved_document_id = Column(String(128), ForeignKey("documents.id"), nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    @property
    def is_pending(self) -> bool:
        return self.resolution == ConflictResolutionEnum.PENDING

    def __repr__(self):
        return (
            f"<KnowledgeConflict(id={self.id}, {self.document_a_id} vs {self.document_b_id}, "
            f"resolution='{self.resolution.value}')>"
        )


class SynthesisHistory(Base):
    """Immutable audit record written for every synthesized document."""
    __tablename__ = "synthesis_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    result_document_id = Column(String(128), ForeignKey("documents.id"), nullable=False, index=True)
    source_document_ids = Column(JSON, nullable=False, default=list)
    synthesis_type = Column(Enum(SynthesisTypeEnum), nullable=False)
    extra_data = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


# =============================================================================
# OBSERVATIONS & ENTITIES
# =============================================================================

class Observation(Base):
    """Raw input consumed by the first learning loop stage."""
    __tablename__ = "observations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    observation_type = Column(Enum(ObservationTypeEnum), nullable=False, index=True)
    content = Column(Text, nullable=False)
    source_id = Column(String(255), nullable=True)
    extra_data = Column("metadata", JSON, nullable=True)

    processed = Column(Boolean, nullable=False, default=False, index=True)
    processing_stage = Column(
        Enum(ProcessingStageEnum), nullable=False, default=ProcessingStageEnum.RAW, index=True
    )
    processed_at = Column(DateTime, nullable=True)
    result_document_ids = Column(JSON, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return (
            f"<Observation(id={self.id}, type='{self.observation_type.value}', "
            f"stage='{self.processing_stage.value}')>"
        )


class Entity(Base):
    """Entity discovered in document content."""
    __tablename__ = "entities"

    id = Column(String(255), primary_key=True)
    name = Column(String(255), nullable=False)
    entity_type = Column(String(50), nullable=False, index=True)
    normalized_name = Column(String(255), nullable=True, index=True)
    mention_count = Column(Integer, nullable=False, default=0)
    first_seen = Column(DateTime, nullable=True)
    last_seen = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


# =============================================================================
# DEFAULT RULES
# =============================================================================

DEFAULT_PROMOTION_RULES: list[dict[str, Any]] = [
    {"from_level": 1, "rule_type": PromotionRuleTypeEnum.CONFIDENCE, "threshold_value": 0.6,
     "description": "Promote L1->L2 when entities extracted and confidence >= 0.6"},
    {"from_level": 1, "rule_type": PromotionRuleTypeEnum.ENTITY_COUNT, "threshold_value": 1,
     "description": "Promote L1->L2 when at least 1 tag extracted"},
    {"from_level": 2, "rule_type": PromotionRuleTypeEnum.CONFIDENCE, "threshold_value": 0.7,
     "description": "Promote L2->L3 when confidence >= 0.7"},
    {"from_level": 2, "rule_type": PromotionRuleTypeEnum.USAGE, "threshold_value": 5,
     "description": "Promote L2->L3 when accessed 5+ times"},
    {"from_level": 3, "rule_type": PromotionRuleTypeEnum.CONFIDENCE, "threshold_value": 0.9,
     "description": "Promote L3->L4 (Core) when confidence >= 0.9"},
    {"from_level": 3, "rule_type": PromotionRuleTypeEnum.USAGE, "threshold_value": 10,
     "description": "Promote L3->L4 (Core) when accessed 10+ times"},
    {"from_level": 3, "rule_type": PromotionRuleTypeEnum.VALIDATION, "threshold_value": 1,
     "description": "Promote L3->L4 (Core) when explicitly validated"},
]

DEFAULT_DECAY_RULES: list[dict[str, Any]] = [
    {"level": 1, "decay_function": DecayFunctionEnum.EXPONENTIAL, "half_life_days": 7, "min_value": 0.1},
    {"level": 2, "decay_function": DecayFunctionEnum.EXPONENTIAL, "half_life_days": 30, "min_value": 0.2},
    {"level": 3, "decay_function": DecayFunctionEnum.LINEAR, "half_life_days": 90, "min_value": 0.3},
    {"level": 4, "decay_function": DecayFunctionEnum.NONE, "half_life_days": 0, "min_value": 1.0},
]
