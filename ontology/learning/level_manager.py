"""
Level Manager - Knowledge level transitions and confidence decay
=================================================================

Manages the four-level knowledge hierarchy:
- L1 Raw: fresh observations and unprocessed content
- L2 Extracted: entities extracted, initial processing done
- L3 Synthesized: multiple sources merged, patterns applied
- L4 Core: validated, high-confidence knowledge

Handles promotion (rule driven), demotion (explicit, audited), decay
(level specific, time based) and per-level statistics.

Usage:
    from ontology.learning import LevelManager

    manager = LevelManager(store)
    manager.initialize_document("doc-1")
    candidate = manager.evaluate_for_promotion("doc-1")
    if candidate:
        manager.promote("doc-1")
"""

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..core.models import (
    MAX_LEVEL,
    MIN_LEVEL,
    DecayFunctionEnum,
    KnowledgeLevel,
    KnowledgeLevelEnum,
    ObservationTypeEnum,
    ProcessingStageEnum,
    PromotionRule,
    PromotionRuleTypeEnum,
    utcnow,
)
from ..core.store import OntologyStore
from ..resilience.error_handler import InvalidStateError, NotFoundError, OntologyError
from .results import OperationResult

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400.0
PROMOTION_CONFIDENCE_STEP = 0.1
DEMOTION_CONFIDENCE_STEP = 0.2
DEMOTION_CONFIDENCE_FLOOR = 0.1
DECAYING_LEVELS = (KnowledgeLevelEnum.RAW, KnowledgeLevelEnum.EXTRACTED, KnowledgeLevelEnum.SYNTHESIZED)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


@dataclass
class LevelManagerConfig:
    """Configuration for level transitions"""

    initial_confidence: float = 0.5
    candidate_scan_limit: int = 50      # Documents inspected per level
    decay_scan_limit: int = 1000        # Documents decayed per level per batch


@dataclass
class PromotionCandidate:
    """
    A document eligible for promotion.

    ``score`` is the sum of matched rule thresholds. It orders candidates
    and is not a probability.
    """

    document_id: str
    current_level: int
    target_level: int
    confidence: float
    usage_count: int
    matched_rules: list[PromotionRule] = field(default_factory=list)
    score: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "document_id": self.document_id,
            "current_level": self.current_level,
            "target_level": self.target_level,
            "confidence": round(self.confidence, 4),
            "usage_count": self.usage_count,
            "matched_rules": [rule.rule_type.value for rule in self.matched_rules],
            "score": self.score,
        }


@dataclass
class LevelChangeResult(OperationResult):
    document_id: str | None = None
    previous_level: int | None = None
    new_level: int | None = None
    confidence: float | None = None

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update({
            "document_id": self.document_id,
            "previous_level": self.previous_level,
            "new_level": self.new_level,
            "confidence": self.confidence,
        })
        return data


@dataclass
class DecayResult:
    document_id: str
    level: int
    previous_confidence: float
    new_confidence: float

    @property
    def decay_applied(self) -> float:
        return self.previous_confidence - self.new_confidence

    def to_dict(self) -> dict[str, Any]:
        return {
            "document_id": self.document_id,
            "level": self.level,
            "previous_confidence": round(self.previous_confidence, 4),
            "new_confidence": round(self.new_confidence, 4),
            "decay_applied": round(self.decay_applied, 4),
        }


@dataclass
class BatchPromoteResult:
    promoted: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


@dataclass
class BatchDecayResult:
    processed: int = 0
    decayed: list[DecayResult] = field(default_factory=list)


@dataclass
class LevelStats:
    level: int
    count: int = 0
    avg_confidence: float = 0.0
    avg_usage: float = 0.0
    oldest_days: float = 0.0
    newest_days: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "level": self.level,
            "label": KnowledgeLevelEnum(self.level).label,
            "count": self.count,
            "avg_confidence": round(self.avg_confidence, 4),
            "avg_usage": round(self.avg_usage, 2),
            "oldest_days": round(self.oldest_days, 2),
            "newest_days": round(self.newest_days, 2),
        }


class LevelManager:
    """
    Decides and executes level transitions.

    The clock is injectable so decay and age rules can be exercised
    deterministically.
    """

    def __init__(
        self,
        store: OntologyStore,
        config: LevelManagerConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.config = config or LevelManagerConfig()
        self.clock = clock

    # =========================================================================
    # LEVEL OPERATIONS
    # =========================================================================

    def get_level(self, document_id: str) -> KnowledgeLevel | None:
        return self.store.get_level(document_id)

    def set_level(
        self,
        document_id: str,
        level: int,
        confidence: float | None = None,
        promoted_from_id: str | None = None,
    ) -> KnowledgeLevel:
        """
        Set or initialize the level record for a document.

        Lineage and promotion time are kept unless the level increases.
        """
        level = KnowledgeLevelEnum(level)
        existing = self.store.get_level(document_id)
        now = self.clock()

        if confidence is None:
            confidence = existing.confidence if existing else self.config.initial_confidence

        promoted = existing is not None and level > existing.level
        return self.store.set_level(
            document_id,
            level=level,
            confidence=_clamp(confidence),
            promoted_from_id=promoted_from_id or (existing.promoted_from_id if existing else None),
            last_promoted_at=now if promoted else (existing.last_promoted_at if existing else None),
            now=now,
        )

    def initialize_document(self, document_id: str, confidence: float | None = None) -> KnowledgeLevel:
        """Place a document at L1 Raw."""
        return self.set_level(
            document_id,
            KnowledgeLevelEnum.RAW,
            self.config.initial_confidence if confidence is None else confidence,
        )

    def record_access(self, document_id: str) -> KnowledgeLevel:
        """Count one access toward usage-based promotion."""
        return self.store.increment_usage(document_id)

    # =========================================================================
    # PROMOTION
    # =========================================================================

    def evaluate_for_promotion(self, document_id: str) -> PromotionCandidate | None:
        record = self.store.get_level(document_id)
        if record is None or record.level >= MAX_LEVEL:
            return None

        matched = [
            rule
            for rule in self.store.get_promotion_rules(record.level)
            if self._rule_satisfied(rule, record)
        ]
        if not matched:
            return None

        return PromotionCandidate(
            document_id=document_id,
            current_level=record.level,
            target_level=record.level + 1,
            confidence=record.confidence,
            usage_count=record.usage_count,
            matched_rules=matched,
            score=sum(rule.threshold_value for rule in matched),
        )

    def _rule_satisfied(self, rule: PromotionRule, record: KnowledgeLevel) -> bool:
        if rule.rule_type == PromotionRuleTypeEnum.CONFIDENCE:
            return record.confidence >= rule.threshold_value
        elif rule.rule_type == PromotionRuleTypeEnum.USAGE:
            return record.usage_count >= rule.threshold_value
        elif rule.rule_type == PromotionRuleTypeEnum.ENTITY_COUNT:
            # Tag count stands in for extracted structure
            doc = self.store.get_document(record.document_id)
            return doc is not None and len(doc.tags or []) >= rule.threshold_value
        elif rule.rule_type == PromotionRuleTypeEnum.AGE:
            return self._age_days(record.created_at) >= rule.threshold_value
        # Validation needs an explicit external decision
        return False

    def promote(self, document_id: str, new_confidence: float | None = None) -> LevelChangeResult:
        """Move a document up one level."""
        try:
            record = self.store.get_level(document_id)
            if record is None:
                raise NotFoundError(f"Document has no knowledge level data: {document_id}")
            if record.level >= MAX_LEVEL:
                raise InvalidStateError(f"Document is already at maximum level (L4 Core): {document_id}")

            previous = record.level
            confidence = (
                new_confidence
                if new_confidence is not None
                else min(1.0, record.confidence + PROMOTION_CONFIDENCE_STEP)
            )
            # Plain promotion happens in place, so lineage points at the document itself
            updated = self.set_level(document_id, previous + 1, confidence, promoted_from_id=document_id)
        except OntologyError as e:
            return LevelChangeResult.failed(e, document_id=document_id)

        logger.info(f"Promoted {document_id}: L{previous} -> L{updated.level} (confidence {updated.confidence:.2f})")
        return LevelChangeResult(
            document_id=document_id,
            previous_level=previous,
            new_level=updated.level,
            confidence=updated.confidence,
        )

    def demote(self, document_id: str, reason: str) -> LevelChangeResult:
        """Move a document down one level and record why."""
        try:
            record = self.store.get_level(document_id)
            if record is None:
                raise NotFoundError(f"Document has no knowledge level data: {document_id}")
            if record.level <= MIN_LEVEL:
                raise InvalidStateError(f"Document is already at minimum level (L1 Raw): {document_id}")

            previous = record.level
            confidence = max(DEMOTION_CONFIDENCE_FLOOR, record.confidence - DEMOTION_CONFIDENCE_STEP)
            updated = self.set_level(document_id, previous - 1, confidence)

            self.store.save_observation(
                content=f"Document {document_id} demoted from L{previous} to L{updated.level}: {reason}",
                observation_type=ObservationTypeEnum.FEEDBACK,
                source_id=document_id,
                metadata={"action": "demote", "reason": reason},
                processing_stage=ProcessingStageEnum.COMPLETED,
            )
        except OntologyError as e:
            return LevelChangeResult.failed(e, document_id=document_id)

        logger.info(f"Demoted {document_id}: L{previous} -> L{updated.level} ({reason})")
        return LevelChangeResult(
            document_id=document_id,
            previous_level=previous,
            new_level=updated.level,
            confidence=updated.confidence,
        )

    def find_promotion_candidates(self, limit: int | None = None) -> list[PromotionCandidate]:
        """Eligible documents across L1-L3, highest score first."""
        scan_limit = max(limit or 0, self.config.candidate_scan_limit)
        candidates = []
        for level in DECAYING_LEVELS:
            for document_id in self.store.get_document_ids_by_level(level, scan_limit):
                candidate = self.evaluate_for_promotion(document_id)
                if candidate:
                    candidates.append(candidate)

        candidates.sort(key=lambda c: c.score, reverse=True)
        return candidates[:limit] if limit else candidates

    def batch_promote(self, max_promotions: int = 10) -> BatchPromoteResult:
        """Promote up to ``max_promotions`` candidates; the rest wait for the next call."""
        result = BatchPromoteResult()
        for candidate in self.find_promotion_candidates(max_promotions):
            outcome = self.promote(candidate.document_id)
            if outcome.success:
                result.promoted.append(candidate.document_id)
            else:
                result.failed.append(candidate.document_id)
        return result

    # =========================================================================
    # DECAY
    # =========================================================================

    def _age_days(self, since: datetime | None) -> float:
        if since is None:
            return 0.0
        return max(0.0, (self.clock() - since).total_seconds() / SECONDS_PER_DAY)

    def apply_decay(self, document_id: str) -> DecayResult | None:
        """
        Decay one document's confidence.

        Age counts from the record's last update, so any write resets the
        decay clock. Returns None when the level does not decay.
        """
        record = self.store.get_level(document_id)
        if record is None:
            return None

        rule = self.store.get_decay_rule(record.level)
        if rule is None or rule.decay_function == DecayFunctionEnum.NONE or rule.half_life_days <= 0:
            return None

        age_days = self._age_days(record.updated_at)
        confidence = record.confidence

        if rule.decay_function == DecayFunctionEnum.EXPONENTIAL:
            decay = confidence * (1 - math.exp(-math.log(2) / rule.half_life_days * age_days))
        else:
            decay = (confidence / rule.half_life_days) * age_days

        # Never raise confidence that already sits below the floor
        new_confidence = min(confidence, max(rule.min_value, confidence - decay))

        if new_confidence != confidence:
            self.store.set_level(
                document_id,
                level=record.level,
                confidence=new_confidence,
                promoted_from_id=record.promoted_from_id,
                last_promoted_at=record.last_promoted_at,
                now=self.clock(),
            )

        return DecayResult(
            document_id=document_id,
            level=record.level,
            previous_confidence=confidence,
            new_confidence=new_confidence,
        )

    def batch_decay(self, level: int | None = None) -> BatchDecayResult:
        """Decay every document at ``level``, or at L1-L3 when omitted."""
        levels = [KnowledgeLevelEnum(level)] if level else list(DECAYING_LEVELS)
        result = BatchDecayResult()
        for lvl in levels:
            document_ids = self.store.get_document_ids_by_level(lvl, self.config.decay_scan_limit)
            result.processed += len(document_ids)
            for document_id in document_ids:
                decayed = self.apply_decay(document_id)
                if decayed and decayed.decay_applied > 0:
                    result.decayed.append(decayed)
        if result.decayed:
            logger.info(f"Decayed {len(result.decayed)} of {result.processed} documents")
        return result

    # =========================================================================
    # STATISTICS
    # =========================================================================

    def get_level_stats(self) -> list[LevelStats]:
        stats = []
        for level in KnowledgeLevelEnum:
            records = self.store.get_levels(level)
            if not records:
                stats.append(LevelStats(level=int(level)))
                continue

            created = [r.created_at for r in records]
            count = len(records)
            stats.append(
                LevelStats(
                    level=int(level),
                    count=count,
                    avg_confidence=sum(r.confidence for r in records) / count,
                    avg_usage=sum(r.usage_count for r in records) / count,
                    oldest_days=self._age_days(min(created)),
                    newest_days=self._age_days(max(created)),
                )
            )
        return stats

    def get_summary(self) -> dict[str, Any]:
        stats = self.get_level_stats()
        total = sum(s.count for s in stats)
        weighted = sum(s.avg_confidence * s.count for s in stats)
        return {
            "total": total,
            "distribution": {KnowledgeLevelEnum(s.level).label: s.count for s in stats},
            "avg_confidence": round(weighted / total, 4) if total else 0.0,
            "ready_for_promotion": len(self.find_promotion_candidates(1000)),
        }
