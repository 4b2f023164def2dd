"""
Synthesizer - New knowledge from existing documents
====================================================

Operations:
- merge: combine related documents into one synthesized document
- distill: extract the essence of a verbose document
- supersede: retire an old document in favour of a newer one
- resolve_conflict / auto_resolve_conflicts: settle contradicting documents
- apply_pattern: turn a validated pattern into one of the above

Documents are versioned, never deleted: sources of a merge are
superseded (forward pointer plus ``supersedes`` edge), or linked by a
``derives`` edge when preserved, and every synthesized document gets a
history entry naming its sources.

Usage:
    from ontology.learning import Synthesizer
    from ontology.core.schemas import MergeOptions, MergeStrategy

    synthesizer = Synthesizer(store, level_manager)
    result = synthesizer.merge(["doc-a", "doc-b"], MergeOptions(strategy=MergeStrategy.DEDUPE))
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from ..core.models import (
    ConflictResolutionEnum,
    DetectedPattern,
    Document,
    KnowledgeConflict,
    KnowledgeLevelEnum,
    ObservationTypeEnum,
    PatternStatusEnum,
    PatternTypeEnum,
    ProcessingStageEnum,
    RelationshipTypeEnum,
    SynthesisHistory,
    SynthesisTypeEnum,
)
from ..core.schemas import ConflictResolutionOptions, DistillOptions, MergeOptions, MergeStrategy
from ..core.store import OntologyStore
from ..resilience.error_handler import InvalidStateError, NotFoundError, OntologyError
from .level_manager import LevelManager
from .results import OperationResult

logger = logging.getLogger(__name__)

CONCAT_SEPARATOR = "\n\n---\n\n"
SUMMARY_SENTENCES_PER_SOURCE = 3
SUMMARY_MIN_SENTENCE_LENGTH = 20
DISTILL_MIN_SENTENCE_LENGTH = 10
DISTILL_MAX_DEFAULT_LENGTH = 500
SUPERSEDED_CONFIDENCE_FLOOR = 0.1
DEFAULT_LEVEL_CONFIDENCE = 0.5


@dataclass
class SynthesizerConfig:
    """Configuration for synthesis"""

    default_confidence: float = 0.7
    result_level: int = int(KnowledgeLevelEnum.SYNTHESIZED)


@dataclass
class SynthesisResult(OperationResult):
    """Outcome of merge, distill, supersede or pattern application."""

    operation: str = ""
    synthesis_type: SynthesisTypeEnum | None = None
    result_document_id: str | None = None
    source_document_ids: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update({
            "operation": self.operation,
            "synthesis_type": self.synthesis_type.value if self.synthesis_type else None,
            "result_document_id": self.result_document_id,
            "source_document_ids": self.source_document_ids,
            "metadata": self.metadata,
        })
        return data


@dataclass
class ConflictResolutionResult(OperationResult):
    conflict_id: int | None = None
    resolution: ConflictResolutionEnum | None = None
    result_document_id: str | None = None
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update({
            "conflict_id": self.conflict_id,
            "resolution": self.resolution.value if self.resolution else None,
            "result_document_id": self.result_document_id,
            "description": self.description,
        })
        return data


@dataclass
class AutoResolveResult:
    resolved: int = 0
    failed: int = 0
    results: list[ConflictResolutionResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"resolved": self.resolved, "failed": self.failed}


# =============================================================================
# TEXT HELPERS
# =============================================================================

def _split_sentences(content: str) -> list[str]:
    return re.split(r"[.!?]+", content)


def dedupe_paragraphs(contents: list[str]) -> str:
    """Drop repeated paragraphs (case-insensitive), keeping first occurrences in order."""
    seen = set()
    result = []
    for content in contents:
        for paragraph in re.split(r"\n\n+", content):
            normalized = paragraph.strip().lower()
            if normalized and normalized not in seen:
                seen.add(normalized)
                result.append(paragraph.strip())
    return "\n\n".join(result)


def summarize_sentences(contents: list[str]) -> str:
    """Leading long sentences of each source, deduplicated."""
    sentences = []
    for content in contents:
        long_ones = [s for s in _split_sentences(content) if len(s.strip()) > SUMMARY_MIN_SENTENCE_LENGTH]
        sentences.extend(long_ones[:SUMMARY_SENTENCES_PER_SOURCE])

    seen = set()
    unique = []
    for sentence in sentences:
        normalized = sentence.strip().lower()
        if normalized not in seen:
            seen.add(normalized)
            unique.append(sentence.strip())
    return ". ".join(unique) + "."


def distill_sentences(content: str, max_length: float) -> str:
    """Greedily keep sentences until the running length would exceed ``max_length``."""
    kept = []
    total = 0
    for sentence in _split_sentences(content):
        if len(sentence.strip()) <= DISTILL_MIN_SENTENCE_LENGTH:
            continue
        if total + len(sentence) > max_length:
            break
        kept.append(sentence.strip())
        total += len(sentence)
    return ". ".join(kept) + ("." if kept else "")


def _new_document_id(operation: str) -> str:
    return f"synth-{operation}-{uuid4().hex[:12]}"


class Synthesizer:
    """
    Produces and retires documents under the version-don't-delete rule.

    Every public operation returns a result object; expected failures
    (missing documents, wrong state) never raise.
    """

    def __init__(
        self,
        store: OntologyStore,
        level_manager: LevelManager | None = None,
        config: SynthesizerConfig | None = None,
    ):
        self.store = store
        self.level_manager = level_manager or LevelManager(store)
        self.config = config or SynthesizerConfig()

    def _resolve_documents(self, document_ids: list[str]) -> list[Document]:
        docs = []
        for document_id in document_ids:
            doc = self.store.get_document(document_id)
            if doc is not None:
                docs.append(doc)
        return docs

    # =========================================================================
    # MERGE
    # =========================================================================

    def merge(self, document_ids: list[str], options: MergeOptions | None = None) -> SynthesisResult:
        """Combine two or more documents into a new level-3 document."""
        options = options or MergeOptions()
        document_ids = list(dict.fromkeys(document_ids))
        base = {"operation": "merge", "source_document_ids": document_ids}

        try:
            if len(document_ids) < 2:
                raise InvalidStateError("Need at least 2 documents to merge")
            docs = self._resolve_documents(document_ids)
            if len(docs) < 2:
                raise InvalidStateError("Could not find enough valid documents to merge")

            contents = [doc.content or "" for doc in docs]
            if options.strategy == MergeStrategy.CONCAT:
                merged_content = CONCAT_SEPARATOR.join(contents)
            elif options.strategy == MergeStrategy.SUMMARIZE:
                merged_content = summarize_sentences(contents)
            else:
                merged_content = dedupe_paragraphs(contents)

            tags = [tag for doc in docs for tag in doc.tags or []] + list(options.extra_tags)
            new_doc = self.store.create_document(
                content=merged_content,
                kind=options.new_kind or docs[0].kind,
                tags=tags,
                scope=docs[0].scope,
                source=f"synthesized:{','.join(d.id for d in docs)}",
                document_id=_new_document_id("merge"),
            )
            self.level_manager.set_level(new_doc.id, self.config.result_level, self.config.default_confidence)

            metadata = {"strategy": options.strategy.value, "source_count": len(docs)}
            self.store.save_synthesis(new_doc.id, [d.id for d in docs], SynthesisTypeEnum.MERGE, metadata)

            for doc in docs:
                if options.preserve_originals:
                    self.store.add_relationship(new_doc.id, doc.id, RelationshipTypeEnum.DERIVES)
                else:
                    self.store.supersede_document(doc.id, new_doc.id)
        except OntologyError as e:
            logger.warning(f"Merge of {document_ids} failed: {e.message}")
            return SynthesisResult.failed(e, synthesis_type=SynthesisTypeEnum.MERGE, **base)

        logger.info(f"Merged {len(docs)} documents into {new_doc.id} ({options.strategy.value})")
        return SynthesisResult(
            synthesis_type=SynthesisTypeEnum.MERGE,
            result_document_id=new_doc.id,
            metadata={**metadata, "tag_count": len(new_doc.tags), "content_length": len(merged_content)},
            **base,
        )

    # =========================================================================
    # DISTILL
    # =========================================================================

    def distill(self, document_id: str, options: DistillOptions | None = None) -> SynthesisResult:
        """Create a shorter document from the key sentences of ``document_id``."""
        options = options or DistillOptions()
        base = {"operation": "distill", "source_document_ids": [document_id]}

        try:
            doc = self.store.get_document(document_id)
            if doc is None:
                raise NotFoundError(f"Document not found: {document_id}")

            content = doc.content or ""
            max_length = options.max_length or min(len(content) / 2, DISTILL_MAX_DEFAULT_LENGTH)
            distilled = distill_sentences(content, max_length)

            new_doc = self.store.create_document(
                content=distilled,
                kind=doc.kind,
                tags=doc.tags,
                scope=doc.scope,
                source=f"distilled:{document_id}",
                document_id=_new_document_id("distill"),
            )
            self.level_manager.set_level(new_doc.id, options.target_level, self.config.default_confidence)

            metadata = {
                "original_length": len(content),
                "distilled_length": len(distilled),
                "compression_ratio": len(distilled) / len(content) if content else 0.0,
            }
            self.store.save_synthesis(new_doc.id, [document_id], SynthesisTypeEnum.DISTILL, metadata)
            self.store.add_relationship(new_doc.id, document_id, RelationshipTypeEnum.DERIVES)
        except OntologyError as e:
            logger.warning(f"Distill of {document_id} failed: {e.message}")
            return SynthesisResult.failed(e, synthesis_type=SynthesisTypeEnum.DISTILL, **base)

        logger.info(f"Distilled {document_id} into {new_doc.id} ({len(content)} -> {len(distilled)} chars)")
        return SynthesisResult(
            synthesis_type=SynthesisTypeEnum.DISTILL,
            result_document_id=new_doc.id,
            metadata=metadata,
            **base,
        )

    # =========================================================================
    # SUPERSEDE
    # =========================================================================

    def supersede(self, old_id: str, new_id: str, reason: str | None = None) -> SynthesisResult:
        """Retire ``old_id`` in favour of ``new_id`` and halve its confidence."""
        base = {"operation": "supersede", "source_document_ids": [old_id]}

        try:
            if self.store.get_document(old_id) is None:
                raise NotFoundError(f"Old document not found: {old_id}")
            if self.store.get_document(new_id) is None:
                raise NotFoundError(f"New document not found: {new_id}")

            self.store.supersede_document(old_id, new_id)

            record = self.store.get_level(old_id)
            if record is not None:
                self.level_manager.set_level(
                    old_id, record.level, max(SUPERSEDED_CONFIDENCE_FLOOR, record.confidence * 0.5)
                )

            self.store.save_observation(
                content=f"Document {old_id} superseded by {new_id}" + (f": {reason}" if reason else ""),
                observation_type=ObservationTypeEnum.FEEDBACK,
                source_id=old_id,
                metadata={"action": "supersede", "superseded_by": new_id, "reason": reason},
                processing_stage=ProcessingStageEnum.COMPLETED,
            )
        except OntologyError as e:
            logger.warning(f"Supersede {old_id} -> {new_id} failed: {e.message}")
            return SynthesisResult.failed(e, **base)

        logger.info(f"Superseded {old_id} by {new_id}" + (f" ({reason})" if reason else ""))
        return SynthesisResult(result_document_id=new_id, metadata={"reason": reason}, **base)

    # =========================================================================
    # CONFLICT RESOLUTION
    # =========================================================================

    def resolve_conflict(
        self,
        conflict_id: int,
        resolution: ConflictResolutionEnum,
        options: ConflictResolutionOptions | None = None,
    ) -> ConflictResolutionResult:
        """
        Resolve a pending conflict exactly once.

        If the merge or supersede the resolution calls for fails, the
        conflict stays pending.
        """
        options = options or ConflictResolutionOptions()
        resolution = ConflictResolutionEnum(resolution)
        result_document_id = None

        try:
            conflict = self.store.get_conflict(conflict_id)
            if conflict is None or not conflict.is_pending:
                raise NotFoundError(f"Conflict not found or already resolved: {conflict_id}")
            if resolution == ConflictResolutionEnum.PENDING:
                raise InvalidStateError("A conflict cannot be resolved as pending")

            if resolution == ConflictResolutionEnum.MERGED and options.merge_documents:
                merged = self.merge(
                    [conflict.document_a_id, conflict.document_b_id],
                    MergeOptions(strategy=MergeStrategy.DEDUPE),
                )
                if not merged.success:
                    raise InvalidStateError(f"Merge failed: {merged.error}")
                result_document_id = merged.result_document_id

            elif resolution == ConflictResolutionEnum.SUPERSEDED and options.keep_document:
                result_document_id = self._supersede_loser(conflict, options.keep_document)

            self.store.resolve_conflict(conflict_id, resolution, result_document_id)
        except OntologyError as e:
            logger.warning(f"Conflict {conflict_id} not resolved: {e.message}")
            return ConflictResolutionResult.failed(
                e, conflict_id=conflict_id, resolution=resolution,
                description="Conflict not found or already resolved" if isinstance(e, NotFoundError) else e.message,
            )

        logger.info(f"Resolved conflict {conflict_id} as {resolution.value}")
        return ConflictResolutionResult(
            conflict_id=conflict_id,
            resolution=resolution,
            result_document_id=result_document_id,
            description=f"Conflict resolved with strategy: {resolution.value}",
        )

    def _supersede_loser(self, conflict: KnowledgeConflict, keep_document: str) -> str:
        if keep_document == conflict.document_a_id:
            loser = conflict.document_b_id
        elif keep_document == conflict.document_b_id:
            loser = conflict.document_a_id
        else:
            raise InvalidStateError(f"Document {keep_document} is not part of conflict {conflict.id}")

        superseded = self.supersede(loser, keep_document, "Conflict resolution")
        if not superseded.success:
            raise InvalidStateError(f"Supersede failed: {superseded.error}")
        return keep_document

    def _pick_winner(self, conflict: KnowledgeConflict, doc_a: Document, doc_b: Document):
        """Level beats confidence beats recency; a full tie coexists."""
        level_a = self.store.get_level(doc_a.id)
        level_b = self.store.get_level(doc_b.id)
        rank_a = level_a.level if level_a else int(KnowledgeLevelEnum.RAW)
        rank_b = level_b.level if level_b else int(KnowledgeLevelEnum.RAW)
        conf_a = level_a.confidence if level_a else DEFAULT_LEVEL_CONFIDENCE
        conf_b = level_b.confidence if level_b else DEFAULT_LEVEL_CONFIDENCE

        if rank_a != rank_b:
            keep = doc_a.id if rank_a > rank_b else doc_b.id
        elif conf_a != conf_b:
            keep = doc_a.id if conf_a > conf_b else doc_b.id
        elif doc_a.created_at != doc_b.created_at:
            keep = doc_a.id if doc_a.created_at > doc_b.created_at else doc_b.id
        else:
            return ConflictResolutionEnum.COEXIST, None
        return ConflictResolutionEnum.SUPERSEDED, keep

    def auto_resolve_conflicts(self, max_conflicts: int = 10) -> AutoResolveResult:
        """Resolve up to ``max_conflicts`` pending conflicts, oldest first."""
        result = AutoResolveResult()

        for conflict in self.store.get_conflicts(ConflictResolutionEnum.PENDING, max_conflicts):
            doc_a = self.store.get_document(conflict.document_a_id)
            doc_b = self.store.get_document(conflict.document_b_id)

            if doc_a is None or doc_b is None:
                self.store.resolve_conflict(conflict.id, ConflictResolutionEnum.REJECTED)
                result.failed += 1
                continue

            resolution, keep = self._pick_winner(conflict, doc_a, doc_b)
            outcome = self.resolve_conflict(
                conflict.id, resolution, ConflictResolutionOptions(keep_document=keep)
            )
            result.results.append(outcome)
            if outcome.success:
                result.resolved += 1
            else:
                result.failed += 1

        if result.resolved or result.failed:
            logger.info(f"Auto-resolved {result.resolved} conflicts ({result.failed} failed)")
        return result

    # =========================================================================
    # PATTERN APPLICATION
    # =========================================================================

    def apply_pattern(self, pattern: DetectedPattern) -> SynthesisResult:
        """Synthesize from a validated pattern. Marking it applied is the caller's job."""
        base = {"operation": "apply_pattern", "source_document_ids": list(pattern.document_ids or [])}
        metadata = pattern.extra_data or {}

        if pattern.status != PatternStatusEnum.VALIDATED:
            return SynthesisResult.failed(
                InvalidStateError(f"Pattern {pattern.id} must be validated before applying"), **base
            )

        if pattern.pattern_type in (PatternTypeEnum.CO_OCCURRENCE, PatternTypeEnum.SEMANTIC):
            # An earlier pattern in the same batch may already have merged these sources.
            live_ids = [
                doc.id for doc in self._resolve_documents(pattern.document_ids) if doc.superseded_by is None
            ]
            if len(live_ids) < 2:
                logger.info(f"Pattern {pattern.id} skipped: sources already superseded")
                return SynthesisResult(metadata={"skipped": True, "live_sources": live_ids}, **base)
            merged = self.merge(
                live_ids,
                MergeOptions(
                    strategy=MergeStrategy.DEDUPE,
                    extra_tags=metadata.get("common_concepts") or [],
                ),
            )
            merged.operation = "apply_pattern"
            return merged

        if pattern.pattern_type == PatternTypeEnum.EVOLUTION:
            return self._apply_evolution(pattern, base)

        if pattern.pattern_type == PatternTypeEnum.CONTRADICTION:
            if len(pattern.document_ids) < 2:
                return SynthesisResult.failed(
                    InvalidStateError(f"Contradiction pattern {pattern.id} needs two documents"), **base
                )
            try:
                conflict = self.store.save_conflict(
                    pattern.document_ids[0],
                    pattern.document_ids[1],
                    conflict_type=metadata.get("conflict_type") or "unknown",
                    description=pattern.description,
                )
            except OntologyError as e:
                return SynthesisResult.failed(e, **base)
            return SynthesisResult(metadata={"conflict_created": True, "conflict_id": conflict.id}, **base)

        # Temporal patterns are informational
        return SynthesisResult(metadata={"informational": True}, **base)

    def _apply_evolution(self, pattern: DetectedPattern, base: dict[str, Any]) -> SynthesisResult:
        docs = self._resolve_documents(pattern.document_ids)
        if not docs:
            return SynthesisResult.failed(
                NotFoundError("No documents found for evolution pattern"),
                synthesis_type=SynthesisTypeEnum.SUMMARIZE,
                **base,
            )

        docs.sort(key=lambda d: (d.created_at, d.id), reverse=True)
        latest = docs[0]
        for doc in docs[1:]:
            outcome = self.supersede(doc.id, latest.id, "Evolution: superseded by newer version")
            if not outcome.success:
                return SynthesisResult.failed(outcome.error, outcome.error_code, **base)

        return SynthesisResult(
            synthesis_type=SynthesisTypeEnum.SUMMARIZE,
            result_document_id=latest.id,
            metadata={"direction": (pattern.extra_data or {}).get("direction"), "evolved_documents": len(docs)},
            **base,
        )

    # =========================================================================
    # HISTORY
    # =========================================================================

    def get_synthesis_history(self, document_id: str | None = None, limit: int = 50) -> list[SynthesisHistory]:
        return self.store.get_synthesis_history(document_id, limit)
