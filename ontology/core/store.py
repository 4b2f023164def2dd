"""
Ontology Engine - Knowledge Store
==================================

SQLAlchemy-backed implementation of the collaborator interfaces the
learning components depend on: documents, levels, rules, patterns,
conflicts, synthesis history, observations and entities.

Every public method runs in its own transaction, so each mutation is
atomic. Returned ORM objects are detached snapshots.

Usage:
    from ontology.core.store import OntologyStore

    store = OntologyStore()
    doc = store.create_document("Postgres tuning notes", kind="note", tags=["postgres"])
"""

import logging
from collections.abc import Generator, Iterable
from contextlib import contextmanager
from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy.orm import Session, sessionmaker

from ..resilience.error_handler import InvalidStateError, NotFoundError, handle_errors
from .db import get_session, get_session_factory
from .models import (
    ConflictResolutionEnum,
    DecayFunctionEnum,
    DecayRule,
    DetectedPattern,
    Document,
    DocumentRelationship,
    Entity,
    KnowledgeConflict,
    KnowledgeLevel,
    KnowledgeLevelEnum,
    Observation,
    ObservationTypeEnum,
    PatternStatusEnum,
    PatternTypeEnum,
    ProcessingStageEnum,
    PromotionRule,
    PromotionRuleTypeEnum,
    RelationshipTypeEnum,
    ScopeEnum,
    SynthesisHistory,
    SynthesisTypeEnum,
    TERMINAL_STAGES,
    can_transition_pattern,
    can_transition_stage,
    compute_pattern_signature,
    utcnow,
)

logger = logging.getLogger(__name__)


def _unique_tags(tags: Iterable[str] | None) -> list[str]:
    """Drop blanks and duplicates, keeping first-seen order."""
    seen: dict[str, None] = {}
    for tag in tags or []:
        tag = str(tag).strip()
        if tag:
            seen.setdefault(tag, None)
    return list(seen)


class OntologyStore:
    """
    Data access for the ontology engine.

    No policy lives here: level arithmetic, mining and synthesis belong
    to the learning components.
    """

    def __init__(self, session_factory: sessionmaker | None = None):
        self._factory = session_factory or get_session_factory()

    @contextmanager
    def transaction(self) -> Generator[Session, None, None]:
        with get_session(self._factory) as session:
            yield session

    # =========================================================================
    # DOCUMENTS
    # =========================================================================

    @handle_errors(logger=logger)
    def create_document(
        self,
        content: str,
        kind: str,
        tags: Iterable[str] | None = None,
        scope: ScopeEnum = ScopeEnum.COMMON,
        source: str = "",
        document_id: str | None = None,
        created_at: datetime | None = None,
    ) -> Document:
        now = created_at or utcnow()
        doc = Document(
            id=document_id or f"doc-{uuid4().hex[:16]}",
            kind=kind,
            scope=scope,
            source=source,
            content=content or "",
            tags=_unique_tags(tags),
            created_at=now,
            updated_at=now,
        )
        with self.transaction() as session:
            session.add(doc)
        return doc

    @handle_errors(logger=logger)
    def get_document(self, document_id: str) -> Document | None:
        with self.transaction() as session:
            return session.get(Document, document_id)

    def require_document(self, document_id: str) -> Document:
        doc = self.get_document(document_id)
        if doc is None:
            raise NotFoundError(f"Document not found: {document_id}")
        return doc

    @handle_errors(logger=logger)
    def list_documents(
        self,
        limit: int = 500,
        scope: ScopeEnum | None = None,
        include_superseded: bool = True,
    ) -> list[Document]:
        """Documents newest first."""
        with self.transaction() as session:
            query = session.query(Document)
            if scope is not None:
                query = query.filter(Document.scope == scope)
            if not include_superseded:
                query = query.filter(Document.superseded_by.is_(None))
            return query.order_by(Document.created_at.desc(), Document.id).limit(limit).all()

    def get_documents_by_tag(self, tag: str, limit: int = 100) -> list[Document]:
        # JSON containment is not portable across dialects; filter in Python.
        return [doc for doc in self.list_documents(limit=10000) if tag in (doc.tags or [])][:limit]

    @handle_errors(logger=logger)
    def supersede_document(self, old_id: str, new_id: str) -> None:
        """Set the forward pointer on ``old_id`` and record a ``supersedes`` edge."""
        with self.transaction() as session:
            old_doc = session.get(Document, old_id)
            if old_doc is None:
                raise NotFoundError(f"Document not found: {old_id}")
            if session.get(Document, new_id) is None:
                raise NotFoundError(f"Document not found: {new_id}")
            if old_id == new_id:
                raise InvalidStateError(f"Document cannot supersede itself: {old_id}")

            now = utcnow()
            old_doc.superseded_by = new_id
            old_doc.updated_at = now
            session.add(
                DocumentRelationship(
                    source_id=new_id,
                    target_id=old_id,
                    relationship_type=RelationshipTypeEnum.SUPERSEDES,
                    confidence=1.0,
                    created_at=now,
                )
            )

    @handle_errors(logger=logger)
    def add_relationship(
        self,
        source_id: str,
        target_id: str,
        relationship_type: RelationshipTypeEnum,
        confidence: float = 1.0,
        metadata: dict[str, Any] | None = None,
    ) -> DocumentRelationship:
        edge = DocumentRelationship(
            source_id=source_id,
            target_id=target_id,
            relationship_type=relationship_type,
            confidence=confidence,
            extra_data=metadata,
            created_at=utcnow(),
        )
        with self.transaction() as session:
            session.add(edge)
        return edge

    @handle_errors(logger=logger)
    def get_relationships(self, document_id: str) -> list[DocumentRelationship]:
        with self.transaction() as session:
            return (
                session.query(DocumentRelationship)
                .filter(
                    (DocumentRelationship.source_id == document_id)
                    | (DocumentRelationship.target_id == document_id)
                )
                .order_by(DocumentRelationship.id)
                .all()
            )

    # =========================================================================
    # KNOWLEDGE LEVELS
    # =========================================================================

    @handle_errors(logger=logger)
    def get_level(self, document_id: str) -> KnowledgeLevel | None:
        with self.transaction() as session:
            return session.get(KnowledgeLevel, document_id)

    @handle_errors(logger=logger)
    def set_level(
        self,
        document_id: str,
        level: int,
        confidence: float,
        promoted_from_id: str | None = None,
        last_promoted_at: datetime | None = None,
        usage_count: int | None = None,
        now: datetime | None = None,
    ) -> KnowledgeLevel:
        """Upsert the level record; ``updated_at`` is always refreshed."""
        now = now or utcnow()
        with self.transaction() as session:
            record = session.get(KnowledgeLevel, document_id)
            if record is None:
                if session.get(Document, document_id) is None:
                    raise NotFoundError(f"Document not found: {document_id}")
                record = KnowledgeLevel(document_id=document_id, usage_count=0, created_at=now)
                session.add(record)
            record.level = int(level)
            record.confidence = confidence
            record.promoted_from_id = promoted_from_id
            record.last_promoted_at = last_promoted_at
            if usage_count is not None:
                record.usage_count = usage_count
            record.updated_at = now
            return record

    @handle_errors(logger=logger)
    def increment_usage(self, document_id: str) -> KnowledgeLevel:
        with self.transaction() as session:
            record = session.get(KnowledgeLevel, document_id)
            if record is None:
                raise NotFoundError(f"No knowledge level for document: {document_id}")
            record.usage_count = (record.usage_count or 0) + 1
            record.updated_at = utcnow()
            return record

    @handle_errors(logger=logger)
    def get_document_ids_by_level(self, level: int, limit: int = 100) -> list[str]:
        """Document ids at ``level``, highest confidence first."""
        with self.transaction() as session:
            rows = (
                session.query(KnowledgeLevel.document_id)
                .filter(KnowledgeLevel.level == int(level))
                .order_by(KnowledgeLevel.confidence.desc(), KnowledgeLevel.document_id)
                .limit(limit)
                .all()
            )
            return [row.document_id for row in rows]

    @handle_errors(logger=logger)
    def get_levels(self, level: int, limit: int = 10000) -> list[KnowledgeLevel]:
        with self.transaction() as session:
            return (
                session.query(KnowledgeLevel)
                .filter(KnowledgeLevel.level == int(level))
                .order_by(KnowledgeLevel.confidence.desc())
                .limit(limit)
                .all()
            )

    # =========================================================================
    # RULES
    # =========================================================================

    @handle_errors(logger=logger)
    def get_promotion_rules(self, from_level: int | None = None) -> list[PromotionRule]:
        """Enabled promotion rules, optionally for one source level."""
        with self.transaction() as session:
            query = session.query(PromotionRule).filter(PromotionRule.enabled.is_(True))
            if from_level is not None:
                query = query.filter(PromotionRule.from_level == int(from_level))
            return query.order_by(PromotionRule.from_level, PromotionRule.id).all()

    @handle_errors(logger=logger)
    def add_promotion_rule(
        self,
        from_level: int,
        rule_type: PromotionRuleTypeEnum,
        threshold_value: float,
        description: str | None = None,
        enabled: bool = True,
    ) -> PromotionRule:
        if not KnowledgeLevelEnum.RAW <= from_level < KnowledgeLevelEnum.CORE:
            raise InvalidStateError(f"Promotion rules must start at L1-L3, got L{from_level}")
        rule = PromotionRule(
            from_level=int(from_level),
            to_level=int(from_level) + 1,
            rule_type=rule_type,
            threshold_value=threshold_value,
            description=description,
            enabled=enabled,
            created_at=utcnow(),
        )
        with self.transaction() as session:
            session.add(rule)
        return rule

    @handle_errors(logger=logger)
    def set_promotion_rule_enabled(self, rule_id: int, enabled: bool) -> PromotionRule:
        with self.transaction() as session:
            rule = session.get(PromotionRule, rule_id)
            if rule is None:
                raise NotFoundError(f"Promotion rule not found: {rule_id}")
            rule.enabled = enabled
            return rule

    @handle_errors(logger=logger)
    def get_decay_rules(self) -> list[DecayRule]:
        with self.transaction() as session:
            return (
                session.query(DecayRule)
                .filter(DecayRule.enabled.is_(True))
                .order_by(DecayRule.level)
                .all()
            )

    def get_decay_rule(self, level: int) -> DecayRule | None:
        for rule in self.get_decay_rules():
            if rule.level == int(level):
                return rule
        return None

    @handle_errors(logger=logger)
    def set_decay_rule(
        self,
        level: int,
        decay_function: DecayFunctionEnum,
        half_life_days: float,
        min_value: float,
    ) -> DecayRule:
        with self.transaction() as session:
            rule = session.query(DecayRule).filter(DecayRule.level == int(level)).first()
            if rule is None:
                rule = DecayRule(level=int(level), created_at=utcnow(), enabled=True)
                session.add(rule)
            rule.decay_function = decay_function
            rule.half_life_days = half_life_days
            rule.min_value = min_value
            return rule

    # =========================================================================
    # PATTERNS
    # =========================================================================

    @handle_errors(logger=logger)
    def save_pattern(
        self,
        pattern_type: PatternTypeEnum,
        confidence: float,
        document_ids: list[str],
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> tuple[DetectedPattern, bool]:
        """
        Persist a mined pattern unless an identical one already exists.

        Returns:
            Tuple of (DetectedPattern, created)
        """
        signature = compute_pattern_signature(pattern_type, document_ids, description)
        with self.transaction() as session:
            existing = (
                session.query(DetectedPattern)
                .filter(DetectedPattern.signature == signature)
                .first()
            )
            if existing:
                return existing, False

            now = utcnow()
            pattern = DetectedPattern(
                pattern_type=pattern_type,
                confidence=confidence,
                document_ids=list(document_ids),
                description=description,
                extra_data=metadata,
                status=PatternStatusEnum.DETECTED,
                signature=signature,
                created_at=now,
                updated_at=now,
            )
            session.add(pattern)
            session.flush()
            return pattern, True

    @handle_errors(logger=logger)
    def get_pattern(self, pattern_id: int) -> DetectedPattern | None:
        with self.transaction() as session:
            return session.get(DetectedPattern, pattern_id)

    @handle_errors(logger=logger)
    def get_patterns(
        self,
        status: PatternStatusEnum | None = None,
        pattern_type: PatternTypeEnum | None = None,
        limit: int = 50,
    ) -> list[DetectedPattern]:
        """Patterns newest first."""
        with self.transaction() as session:
            query = session.query(DetectedPattern)
            if status is not None:
                query = query.filter(DetectedPattern.status == status)
            if pattern_type is not None:
                query = query.filter(DetectedPattern.pattern_type == pattern_type)
            return (
                query.order_by(DetectedPattern.created_at.desc(), DetectedPattern.id.desc())
                .limit(limit)
                .all()
            )

    @handle_errors(logger=logger)
    def update_pattern_status(self, pattern_id: int, status: PatternStatusEnum) -> DetectedPattern:
        with self.transaction() as session:
            pattern = session.get(DetectedPattern, pattern_id)
            if pattern is None:
                raise NotFoundError(f"Pattern not found: {pattern_id}")
            if not can_transition_pattern(pattern.status, status):
                raise InvalidStateError(
                    f"Pattern {pattern_id} cannot move from {pattern.status.value} to {status.value}"
                )
            now = utcnow()
            pattern.status = status
            if status == PatternStatusEnum.VALIDATED:
                pattern.validated_at = now
            pattern.updated_at = now
            return pattern

    # =========================================================================
    # CONFLICTS
    # =========================================================================

    @handle_errors(logger=logger)
    def save_conflict(
        self,
        document_a_id: str,
        document_b_id: str,
        conflict_type: str,
        description: str | None = None,
    ) -> KnowledgeConflict:
        conflict = KnowledgeConflict(
            document_a_id=document_a_id,
            document_b_id=document_b_id,
            conflict_type=conflict_type,
            description=description,
            resolution=ConflictResolutionEnum.PENDING,
            created_at=utcnow(),
        )
        with self.transaction() as session:
            session.add(conflict)
        return conflict

    @handle_errors(logger=logger)
    def get_conflict(self, conflict_id: int) -> KnowledgeConflict | None:
        with self.transaction() as session:
            return session.get(KnowledgeConflict, conflict_id)

    @handle_errors(logger=logger)
    def get_conflicts(
        self, resolution: ConflictResolutionEnum | None = None, limit: int = 50
    ) -> list[KnowledgeConflict]:
        """Conflicts oldest first."""
        with self.transaction() as session:
            query = session.query(KnowledgeConflict)
            if resolution is not None:
                query = query.filter(KnowledgeConflict.resolution == resolution)
            return (
                query.order_by(KnowledgeConflict.created_at, KnowledgeConflict.id)
                .limit(limit)
                .all()
            )

    @handle_errors(logger=logger)
    def count_conflicts(self, resolution: ConflictResolutionEnum | None = None) -> int:
        with self.transaction() as session:
            query = session.query(func.count(KnowledgeConflict.id))
            if resolution is not None:
                query = query.filter(KnowledgeConflict.resolution == resolution)
            return query.scalar() or 0

    @handle_errors(logger=logger)
    def resolve_conflict(
        self,
        conflict_id: int,
        resolution: ConflictResolutionEnum,
        resolved_document_id: str | None = None,
    ) -> KnowledgeConflict:
        """Record the resolution of a pending conflict."""
        if resolution == ConflictResolutionEnum.PENDING:
            raise InvalidStateError("A conflict cannot be resolved as pending")
        with self.transaction() as session:
            conflict = session.get(KnowledgeConflict, conflict_id)
            if conflict is None or not conflict.is_pending:
                raise NotFoundError(f"Conflict not found or already resolved: {conflict_id}")
            conflict.resolution = resolution
            conflict.resolved_document_id = resolved_document_id
            conflict.resolved_at = utcnow()
            return conflict

    # =========================================================================
    # SYNTHESIS HISTORY
    # =========================================================================

    @handle_errors(logger=logger)
    def save_synthesis(
        self,
        result_document_id: str,
        source_document_ids: list[str],
        synthesis_type: SynthesisTypeEnum,
        metadata: dict[str, Any] | None = None,
    ) -> SynthesisHistory:
        entry = SynthesisHistory(
            result_document_id=result_document_id,
            source_document_ids=list(source_document_ids),
            synthesis_type=synthesis_type,
            extra_data=metadata,
            created_at=utcnow(),
        )
        with self.transaction() as session:
            session.add(entry)
        return entry

    @handle_errors(logger=logger)
    def get_synthesis_history(
        self, document_id: str | None = None, limit: int = 50
    ) -> list[SynthesisHistory]:
        with self.transaction() as session:
            query = session.query(SynthesisHistory)
            if document_id is not None:
                query = query.filter(SynthesisHistory.result_document_id == document_id)
            return (
                query.order_by(SynthesisHistory.created_at.desc(), SynthesisHistory.id.desc())
                .limit(limit)
                .all()
            )

    # =========================================================================
    # OBSERVATIONS
    # =========================================================================

    @handle_errors(logger=logger)
    def save_observation(
        self,
        content: str,
        observation_type: ObservationTypeEnum,
        source_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        processing_stage: ProcessingStageEnum = ProcessingStageEnum.RAW,
        created_at: datetime | None = None,
    ) -> Observation:
        now = created_at or utcnow()
        terminal = processing_stage in TERMINAL_STAGES
        obs = Observation(
            observation_type=observation_type,
            content=content,
            source_id=source_id,
            extra_data=metadata,
            processed=terminal,
            processing_stage=processing_stage,
            processed_at=now if terminal else None,
            created_at=now,
        )
        with self.transaction() as session:
            session.add(obs)
        return obs

    @handle_errors(logger=logger)
    def get_observation(self, observation_id: int) -> Observation | None:
        with self.transaction() as session:
            return session.get(Observation, observation_id)

    @handle_errors(logger=logger)
    def get_observations(
        self,
        limit: int = 100,
        processed: bool | None = None,
        observation_type: ObservationTypeEnum | None = None,
    ) -> list[Observation]:
        with self.transaction() as session:
            query = session.query(Observation)
            if processed is not None:
                query = query.filter(Observation.processed.is_(processed))
            if observation_type is not None:
                query = query.filter(Observation.observation_type == observation_type)
            return query.order_by(Observation.created_at.desc(), Observation.id.desc()).limit(limit).all()

    @handle_errors(logger=logger)
    def get_unprocessed_observations(self, limit: int = 50) -> list[Observation]:
        """Observations not yet claimed by the loop, oldest first."""
        with self.transaction() as session:
            return (
                session.query(Observation)
                .filter(Observation.processing_stage == ProcessingStageEnum.RAW)
                .order_by(Observation.created_at, Observation.id)
                .limit(limit)
                .all()
            )

    @handle_errors(logger=logger)
    def update_observation_stage(
        self,
        observation_id: int,
        stage: ProcessingStageEnum,
        result_document_ids: list[str] | None = None,
    ) -> Observation:
        with self.transaction() as session:
            obs = session.get(Observation, observation_id)
            if obs is None:
                raise NotFoundError(f"Observation not found: {observation_id}")
            if not can_transition_stage(obs.processing_stage, stage):
                raise InvalidStateError(
                    f"Observation {observation_id} cannot move from "
                    f"{obs.processing_stage.value} to {stage.value}"
                )
            obs.processing_stage = stage
            if stage in TERMINAL_STAGES:
                obs.processed = True
                obs.processed_at = utcnow()
            if result_document_ids is not None:
                obs.result_document_ids = list(result_document_ids)
            return obs

    # =========================================================================
    # ENTITIES
    # =========================================================================

    @handle_errors(logger=logger)
    def upsert_entity(
        self,
        entity_id: str,
        name: str,
        entity_type: str,
        normalized_name: str | None = None,
    ) -> Entity:
        """Insert a new entity or bump the mention count of an existing one."""
        now = utcnow()
        with self.transaction() as session:
            entity = session.get(Entity, entity_id)
            if entity is None:
                entity = Entity(
                    id=entity_id,
                    name=name,
                    entity_type=entity_type,
                    normalized_name=normalized_name,
                    mention_count=1,
                    first_seen=now,
                    last_seen=now,
                    created_at=now,
                    updated_at=now,
                )
                session.add(entity)
            else:
                entity.mention_count = (entity.mention_count or 0) + 1
                entity.last_seen = now
                entity.updated_at = now
            return entity

    @handle_errors(logger=logger)
    def get_entity(self, entity_id: str) -> Entity | None:
        with self.transaction() as session:
            return session.get(Entity, entity_id)

    # =========================================================================
    # STATISTICS
    # =========================================================================

    @handle_errors(logger=logger)
    def get_ontology_stats(self) -> dict[str, Any]:
        with self.transaction() as session:
            level_counts = dict(
                session.query(KnowledgeLevel.level, func.count(KnowledgeLevel.document_id))
                .group_by(KnowledgeLevel.level)
                .all()
            )
            pattern_counts = dict(
                session.query(DetectedPattern.status, func.count(DetectedPattern.id))
                .group_by(DetectedPattern.status)
                .all()
            )
            conflict_counts = dict(
                session.query(KnowledgeConflict.resolution, func.count(KnowledgeConflict.id))
                .group_by(KnowledgeConflict.resolution)
                .all()
            )
            observations_total = session.query(func.count(Observation.id)).scalar() or 0
            observations_raw = (
                session.query(func.count(Observation.id))
                .filter(Observation.processing_stage == ProcessingStageEnum.RAW)
                .scalar()
                or 0
            )
            documents_total = session.query(func.count(Document.id)).scalar() or 0
            documents_superseded = (
                session.query(func.count(Document.id))
                .filter(Document.superseded_by.is_not(None))
                .scalar()
                or 0
            )
            entities_total = session.query(func.count(Entity.id)).scalar() or 0

        pending = conflict_counts.get(ConflictResolutionEnum.PENDING, 0)
        return {
            "documents": {"total": documents_total, "superseded": documents_superseded},
            "knowledge_levels": {f"L{level.value}": level_counts.get(level.value, 0) for level in KnowledgeLevelEnum},
            "patterns": {status.value: pattern_counts.get(status, 0) for status in PatternStatusEnum},
            "conflicts": {"pending": pending, "resolved": sum(conflict_counts.values()) - pending},
            "observations": {"unprocessed": observations_raw, "total": observations_total},
            "entities": entities_total,
        }
