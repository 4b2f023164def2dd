"""
Pattern Miner - Corpus-wide structural pattern detection
=========================================================

Five independent, stateless scans over the document corpus:
- Co-occurrence: tag pairs that appear together frequently
- Temporal: days of the week and hours of the day with unusual activity
- Semantic: clusters of documents sharing a primary tag
- Contradiction: same-topic documents of different kinds created close together
- Evolution: how the documents around one tag changed over time

Each scan reads a bounded number of non-superseded documents. Findings
are persisted as ``detected`` patterns; re-mining an unchanged corpus
does not duplicate them.

Usage:
    from ontology.learning import PatternMiner

    miner = PatternMiner(store)
    result = miner.detect_all()
    print(result.stats)
"""

import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from ..core.models import (
    DetectedPattern,
    Document,
    PatternStatusEnum,
    PatternTypeEnum,
)
from ..core.store import OntologyStore
from ..resilience.error_handler import OntologyError
from .results import OperationResult

logger = logging.getLogger(__name__)

DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]
SECONDS_PER_DAY = 86400.0


@dataclass
class PatternMinerConfig:
    """Configuration for pattern detection thresholds"""

    min_confidence: float = 0.5
    min_co_occurrence: int = 3
    temporal_window_days: float = 30.0
    min_cluster_size: int = 3
    common_concept_ratio: float = 0.5
    weekly_ratio_threshold: float = 1.5
    daily_ratio_threshold: float = 2.0
    min_evolution_length: int = 3
    min_evolution_span_days: float = 7.0
    contradiction_docs_per_kind: int = 5

    # Document caps per scan
    co_occurrence_scan_limit: int = 1000
    temporal_scan_limit: int = 1000
    semantic_scan_limit: int = 500
    contradiction_scan_limit: int = 500
    evolution_scan_limit: int = 500

    # Document ids stored per pattern
    temporal_max_ids: int = 50
    evolution_max_ids: int = 20


@dataclass
class PatternCandidate:
    """A pattern found by a scan, not yet persisted."""

    pattern_type: PatternTypeEnum
    confidence: float
    document_ids: list[str]
    description: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class DetectionResult:
    patterns: list[DetectedPattern] = field(default_factory=list)
    stats: dict[str, int] = field(default_factory=dict)
    new_patterns: int = 0
    processing_time_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "pattern_ids": [p.id for p in self.patterns],
            "stats": self.stats,
            "new_patterns": self.new_patterns,
            "processing_time_ms": self.processing_time_ms,
        }


@dataclass
class PatternStatusResult(OperationResult):
    pattern_id: int | None = None
    status: PatternStatusEnum | None = None


def _days_between(a, b) -> float:
    return abs((a - b).total_seconds()) / SECONDS_PER_DAY


def _day_of_week(dt) -> int:
    """Sunday=0 .. Saturday=6."""
    return (dt.weekday() + 1) % 7


class PatternMiner:
    """
    Runs the five scans and manages pattern status.

    Scans are pure functions of the corpus; only ``detect_all`` and
    ``detect`` write.
    """

    def __init__(self, store: OntologyStore, config: PatternMinerConfig | None = None):
        self.store = store
        self.config = config or PatternMinerConfig()

    def _corpus(self, limit: int) -> list[Document]:
        docs = self.store.list_documents(limit=limit, include_superseded=False)
        return sorted(docs, key=lambda d: (d.created_at, d.id))

    # =========================================================================
    # DETECTION ENTRY POINTS
    # =========================================================================

    def scan(self, pattern_type: PatternTypeEnum) -> list[PatternCandidate]:
        """Run one scan without persisting anything."""
        scanners = {
            PatternTypeEnum.CO_OCCURRENCE: self.detect_co_occurrence,
            PatternTypeEnum.TEMPORAL: self.detect_temporal,
            PatternTypeEnum.SEMANTIC: self.detect_semantic,
            PatternTypeEnum.CONTRADICTION: self.detect_contradictions,
            PatternTypeEnum.EVOLUTION: self.detect_evolution,
        }
        return scanners[PatternTypeEnum(pattern_type)]()

    def detect(self, pattern_type: PatternTypeEnum) -> DetectionResult:
        """Run and persist a single scan."""
        return self._persist({PatternTypeEnum(pattern_type): self.scan(pattern_type)}, time.monotonic())

    def detect_all(self) -> DetectionResult:
        """Run all five scans and persist every finding in one pass."""
        started = time.monotonic()
        found = {pattern_type: self.scan(pattern_type) for pattern_type in PatternTypeEnum}
        return self._persist(found, started)

    def _persist(self, found: dict[PatternTypeEnum, list[PatternCandidate]], started: float) -> DetectionResult:
        result = DetectionResult()
        for pattern_type, candidates in found.items():
            result.stats[pattern_type.value] = len(candidates)
            for candidate in candidates:
                pattern, created = self.store.save_pattern(
                    pattern_type=candidate.pattern_type,
                    confidence=candidate.confidence,
                    document_ids=candidate.document_ids,
                    description=candidate.description,
                    metadata=candidate.metadata,
                )
                result.patterns.append(pattern)
                if created:
                    result.new_patterns += 1

        result.stats["total"] = len(result.patterns)
        result.processing_time_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Pattern detection found {result.stats['total']} patterns "
            f"({result.new_patterns} new) in {result.processing_time_ms}ms"
        )
        return result

    # =========================================================================
    # CO-OCCURRENCE
    # =========================================================================

    def detect_co_occurrence(self) -> list[PatternCandidate]:
        pairs: dict[tuple[str, str], dict[str, None]] = defaultdict(dict)

        for doc in self._corpus(self.config.co_occurrence_scan_limit):
            tags = doc.tags or []
            for i in range(len(tags)):
                for j in range(i + 1, len(tags)):
                    pair = tuple(sorted((tags[i], tags[j])))
                    pairs[pair][doc.id] = None

        patterns = []
        for (entity_a, entity_b), doc_ids in pairs.items():
            count = len(doc_ids)
            if count < self.config.min_co_occurrence:
                continue
            confidence = min(1.0, count / 10)
            if confidence < self.config.min_confidence:
                continue
            patterns.append(
                PatternCandidate(
                    pattern_type=PatternTypeEnum.CO_OCCURRENCE,
                    confidence=confidence,
                    document_ids=list(doc_ids),
                    description=f'Concepts "{entity_a}" and "{entity_b}" co-occur in {count} documents',
                    metadata={"entity_a": entity_a, "entity_b": entity_b, "count": count},
                )
            )
        return patterns

    # =========================================================================
    # TEMPORAL
    # =========================================================================

    def detect_temporal(self) -> list[PatternCandidate]:
        docs = self._corpus(self.config.temporal_scan_limit)
        if not docs:
            return []

        by_day: dict[int, list[str]] = defaultdict(list)
        by_hour: dict[int, list[str]] = defaultdict(list)
        for doc in docs:
            by_day[_day_of_week(doc.created_at)].append(doc.id)
            by_hour[doc.created_at.hour].append(doc.id)

        patterns = []
        avg_per_day = len(docs) / 7
        for day, doc_ids in sorted(by_day.items()):
            ratio = len(doc_ids) / avg_per_day
            if ratio > self.config.weekly_ratio_threshold:
                patterns.append(
                    PatternCandidate(
                        pattern_type=PatternTypeEnum.TEMPORAL,
                        confidence=min(1.0, (ratio - 1) / 2),
                        document_ids=doc_ids[: self.config.temporal_max_ids],
                        description=f"High activity on {DAY_NAMES[day]}s ({round(ratio * 100)}% of average)",
                        metadata={"type": "weekly", "day_of_week": day, "ratio": ratio},
                    )
                )

        avg_per_hour = len(docs) / 24
        for hour, doc_ids in sorted(by_hour.items()):
            ratio = len(doc_ids) / avg_per_hour
            if ratio > self.config.daily_ratio_threshold:
                patterns.append(
                    PatternCandidate(
                        pattern_type=PatternTypeEnum.TEMPORAL,
                        confidence=min(1.0, (ratio - 1) / 3),
                        document_ids=doc_ids[: self.config.temporal_max_ids],
                        description=f"Peak activity at {hour}:00 ({round(ratio * 100)}% of average)",
                        metadata={"type": "daily", "hour_of_day": hour, "ratio": ratio},
                    )
                )
        return patterns

    # =========================================================================
    # SEMANTIC
    # =========================================================================

    def detect_semantic(self) -> list[PatternCandidate]:
        # The first tag acts as the cluster centroid
        clusters: dict[str, list[Document]] = defaultdict(list)
        for doc in self._corpus(self.config.semantic_scan_limit):
            if doc.tags:
                clusters[doc.tags[0]].append(doc)

        patterns = []
        for concept, members in clusters.items():
            size = len(members)
            if size < self.config.min_cluster_size:
                continue

            counts: dict[str, int] = defaultdict(int)
            for doc in members:
                for tag in doc.tags:
                    counts[tag] += 1
            common = [tag for tag, n in counts.items() if n >= size * self.config.common_concept_ratio]

            confidence = min(1.0, size / 10)
            if confidence < self.config.min_confidence:
                continue
            patterns.append(
                PatternCandidate(
                    pattern_type=PatternTypeEnum.SEMANTIC,
                    confidence=confidence,
                    document_ids=[d.id for d in members],
                    description=f'Semantic cluster around "{concept}" with {size} documents',
                    metadata={"primary_concept": concept, "common_concepts": common, "member_count": size},
                )
            )
        return patterns

    # =========================================================================
    # CONTRADICTION
    # =========================================================================

    def detect_contradictions(self) -> list[PatternCandidate]:
        groups: dict[str, list[Document]] = defaultdict(list)
        for doc in self._corpus(self.config.contradiction_scan_limit):
            if doc.tags:
                groups["|".join(sorted(doc.tags[:3]))].append(doc)

        window = self.config.temporal_window_days
        per_kind = self.config.contradiction_docs_per_kind
        patterns = []
        for group in groups.values():
            if len(group) < 2:
                continue

            by_kind: dict[str, list[Document]] = defaultdict(list)
            for doc in group:
                by_kind[doc.kind].append(doc)
            kinds = list(by_kind)

            for i in range(len(kinds)):
                for j in range(i + 1, len(kinds)):
                    for doc_a in by_kind[kinds[i]][:per_kind]:
                        for doc_b in by_kind[kinds[j]][:per_kind]:
                            gap = _days_between(doc_a.created_at, doc_b.created_at)
                            if gap >= window:
                                continue
                            patterns.append(
                                PatternCandidate(
                                    pattern_type=PatternTypeEnum.CONTRADICTION,
                                    confidence=max(0.3, 1 - gap / window),
                                    document_ids=[doc_a.id, doc_b.id],
                                    description=(
                                        f'Potential contradiction: "{doc_a.kind}" vs "{doc_b.kind}" '
                                        f"for same concepts"
                                    ),
                                    metadata={
                                        "conflict_type": "temporal",
                                        "kind_a": doc_a.kind,
                                        "kind_b": doc_b.kind,
                                        "time_diff_days": gap,
                                    },
                                )
                            )
        return patterns

    # =========================================================================
    # EVOLUTION
    # =========================================================================

    def detect_evolution(self) -> list[PatternCandidate]:
        timelines: dict[str, list[Document]] = defaultdict(list)
        for doc in self._corpus(self.config.evolution_scan_limit):
            for tag in doc.tags or []:
                timelines[tag].append(doc)

        patterns = []
        for concept, timeline in timelines.items():
            if len(timeline) < self.config.min_evolution_length:
                continue

            timeline.sort(key=lambda d: (d.created_at, d.id))
            span = _days_between(timeline[-1].created_at, timeline[0].created_at)
            if span <= self.config.min_evolution_span_days:
                continue

            first = set(timeline[0].tags or [])
            last = set(timeline[-1].tags or [])
            if len(last) > len(first) * 1.5:
                direction = "growth"
            elif len(last - first) > len(last & first):
                direction = "divergence"
            else:
                direction = "refinement"

            patterns.append(
                PatternCandidate(
                    pattern_type=PatternTypeEnum.EVOLUTION,
                    confidence=min(1.0, len(timeline) / 10),
                    document_ids=[d.id for d in timeline][: self.config.evolution_max_ids],
                    description=f'Evolution of "{concept}" over {round(span)} days ({direction})',
                    metadata={
                        "concept": concept,
                        "direction": direction,
                        "time_span_days": span,
                        "document_count": len(timeline),
                    },
                )
            )
        return patterns

    # =========================================================================
    # STATUS MANAGEMENT
    # =========================================================================

    def get_pattern(self, pattern_id: int) -> DetectedPattern | None:
        return self.store.get_pattern(pattern_id)

    def _set_status(self, pattern_id: int, status: PatternStatusEnum) -> PatternStatusResult:
        try:
            pattern = self.store.update_pattern_status(pattern_id, status)
        except OntologyError as e:
            logger.warning(f"Pattern {pattern_id} not moved to {status.value}: {e.message}")
            return PatternStatusResult.failed(e, pattern_id=pattern_id)
        return PatternStatusResult(pattern_id=pattern.id, status=pattern.status)

    def validate_pattern(self, pattern_id: int, valid: bool) -> PatternStatusResult:
        """Record an external decision on a detected pattern."""
        status = PatternStatusEnum.VALIDATED if valid else PatternStatusEnum.REJECTED
        return self._set_status(pattern_id, status)

    def mark_as_applied(self, pattern_id: int) -> PatternStatusResult:
        return self._set_status(pattern_id, PatternStatusEnum.APPLIED)

    def get_pending_patterns(self, limit: int = 50) -> list[DetectedPattern]:
        return self.store.get_patterns(status=PatternStatusEnum.DETECTED, limit=limit)

    def get_validated_patterns(
        self, pattern_type: PatternTypeEnum | None = None, limit: int = 50
    ) -> list[DetectedPattern]:
        return self.store.get_patterns(
            status=PatternStatusEnum.VALIDATED, pattern_type=pattern_type, limit=limit
        )
