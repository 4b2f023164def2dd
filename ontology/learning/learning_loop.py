"""
Learning Loop - Six-stage knowledge refinement cycle
=====================================================

OBSERVE     -> turn raw observations into level-1 documents
EXTRACT     -> run rule-based entity extraction, nudge confidence
SYNTHESIZE  -> mine patterns, apply the validated ones
PROMOTE     -> move eligible documents up a level
CORRECT     -> auto-resolve pending conflicts
DECAY       -> reduce confidence of stale knowledge

At most one cycle runs at a time. A call made while a cycle is in
flight returns immediately with ``success=False``; nothing is queued.
Direct component operations are not blocked by a running cycle.

Usage:
    from ontology.learning import LearningLoop

    loop = LearningLoop(store)
    loop.add_observation("Switched the cache to Redis", ObservationTypeEnum.CONVERSATION)
    result = loop.run_once()

    loop.start_auto_loop()   # runs now, then every AUTO_LOOP_INTERVAL_SECONDS
    loop.stop_auto_loop()
"""

import enum
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import uuid4

from ..config import Settings, get_settings
from ..core.models import (
    ConflictResolutionEnum,
    KnowledgeLevelEnum,
    Observation,
    ObservationTypeEnum,
    ProcessingStageEnum,
    utcnow,
)
from ..core.schemas import ObservationCreate
from ..core.store import OntologyStore
from ..extraction.entity_extractor import EntityExtractor
from ..observability.logging_config import CycleLogger, log_exception, stage_context
from ..resilience.error_handler import AlreadyRunningError, ErrorCode, error_code_of
from .level_manager import LevelChangeResult, LevelManager
from .pattern_miner import DetectionResult, PatternMiner, PatternMinerConfig, PatternStatusResult
from .synthesizer import Synthesizer, SynthesizerConfig

logger = logging.getLogger(__name__)

EXTRACTION_CONFIDENCE_STEP = 0.1


class LoopStageEnum(enum.Enum):
    IDLE = "idle"
    OBSERVING = "observing"
    EXTRACTING = "extracting"
    SYNTHESIZING = "synthesizing"
    PROMOTING = "promoting"
    CORRECTING = "correcting"
    DECAYING = "decaying"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class LearningLoopConfig:
    """Configuration for the learning loop"""

    auto_loop_interval_seconds: float = 3600.0
    max_observations_per_cycle: int = 50
    max_promotions_per_cycle: int = 20
    max_syntheses_per_cycle: int = 10
    max_conflicts_per_cycle: int = 10
    max_extractions_per_cycle: int = 100
    enable_decay: bool = True
    enable_pattern_detection: bool = True
    enable_auto_conflict_resolution: bool = True
    observation_confidence: float = 0.5
    stop_timeout_seconds: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "LearningLoopConfig":
        settings = settings or get_settings()
        return cls(
            auto_loop_interval_seconds=settings.AUTO_LOOP_INTERVAL_SECONDS,
            max_observations_per_cycle=settings.MAX_OBSERVATIONS_PER_CYCLE,
            max_promotions_per_cycle=settings.MAX_PROMOTIONS_PER_CYCLE,
            max_syntheses_per_cycle=settings.MAX_SYNTHESES_PER_CYCLE,
            max_conflicts_per_cycle=settings.MAX_CONFLICTS_PER_CYCLE,
            enable_decay=settings.ENABLE_DECAY,
            enable_pattern_detection=settings.ENABLE_PATTERN_DETECTION,
            enable_auto_conflict_resolution=settings.ENABLE_AUTO_CONFLICT_RESOLUTION,
        )


@dataclass
class LoopStatus:
    stage: LoopStageEnum = LoopStageEnum.IDLE
    is_running: bool = False
    cycle_count: int = 0
    last_run_at: datetime | None = None
    last_run_duration_ms: int | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage.value,
            "is_running": self.is_running,
            "cycle_count": self.cycle_count,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_run_duration_ms": self.last_run_duration_ms,
            "error": self.error,
        }


def _empty_stages() -> dict[str, dict[str, int]]:
    return {
        "observe": {"processed": 0, "created": 0, "failed": 0},
        "extract": {"documents": 0, "entities": 0, "failed": 0},
        "synthesize": {"patterns": 0, "applied": 0},
        "promote": {"promoted": 0, "failed": 0},
        "correct": {"conflicts": 0, "resolved": 0},
        "decay": {"processed": 0, "decayed": 0},
    }


@dataclass
class LoopResult:
    success: bool = True
    cycle_id: str | None = None
    duration_ms: int = 0
    stages: dict[str, dict[str, int]] = field(default_factory=_empty_stages)
    errors: list[str] = field(default_factory=list)
    error_code: ErrorCode | None = None

    @classmethod
    def failed(cls, error: Exception) -> "LoopResult":
        return cls(success=False, errors=[str(error)], error_code=error_code_of(error))

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "cycle_id": self.cycle_id,
            "duration_ms": self.duration_ms,
            "stages": self.stages,
            "errors": self.errors,
            "error_code": self.error_code.value if self.error_code else None,
        }


class LearningLoop:
    """
    Orchestrates the level manager, pattern miner and synthesizer.

    The only state owned here is the run status; every entity write goes
    through the components.
    """

    def __init__(
        self,
        store: OntologyStore | None = None,
        config: LearningLoopConfig | None = None,
        level_manager: LevelManager | None = None,
        miner: PatternMiner | None = None,
        synthesizer: Synthesizer | None = None,
        extractor: EntityExtractor | None = None,
    ):
        self.store = store or OntologyStore()
        self.config = config or LearningLoopConfig()
        self.level_manager = level_manager or LevelManager(self.store)
        self.miner = miner or PatternMiner(self.store)
        self.synthesizer = synthesizer or Synthesizer(self.store, self.level_manager)
        self.extractor = extractor or EntityExtractor()

        self._status = LoopStatus()
        self._cycle_guard = threading.Lock()
        self._auto_thread: threading.Thread | None = None
        self._auto_stop = threading.Event()
        self._auto_lock = threading.Lock()

    @classmethod
    def from_settings(cls, store: OntologyStore | None = None, settings: Settings | None = None) -> "LearningLoop":
        """Build a loop and its components from ``Settings``."""
        settings = settings or get_settings()
        store = store or OntologyStore()
        level_manager = LevelManager(store)
        miner = PatternMiner(
            store,
            PatternMinerConfig(
                min_confidence=settings.PATTERN_MIN_CONFIDENCE,
                min_co_occurrence=settings.PATTERN_MIN_CO_OCCURRENCE,
                temporal_window_days=settings.PATTERN_TEMPORAL_WINDOW_DAYS,
            ),
        )
        synthesizer = Synthesizer(
            store, level_manager, SynthesizerConfig(default_confidence=settings.SYNTHESIS_DEFAULT_CONFIDENCE)
        )
        return cls(
            store,
            LearningLoopConfig.from_settings(settings),
            level_manager=level_manager,
            miner=miner,
            synthesizer=synthesizer,
        )

    # =========================================================================
    # CYCLE GUARD
    # =========================================================================

    def try_begin_cycle(self) -> bool:
        """Claim the loop; False if a cycle is already in flight."""
        if not self._cycle_guard.acquire(blocking=False):
            return False
        self._status.is_running = True
        self._status.error = None
        return True

    def end_cycle(self) -> None:
        self._status.is_running = False
        self._status.stage = LoopStageEnum.IDLE
        self._cycle_guard.release()

    @property
    def is_running(self) -> bool:
        return self._status.is_running

    # =========================================================================
    # MAIN LOOP
    # =========================================================================

    def _stages(self) -> list[tuple[LoopStageEnum, str, Callable[[], dict[str, int]]]]:
        return [
            (LoopStageEnum.OBSERVING, "observe", self._stage_observe),
            (LoopStageEnum.EXTRACTING, "extract", self._stage_extract),
            (LoopStageEnum.SYNTHESIZING, "synthesize", self._stage_synthesize),
            (LoopStageEnum.PROMOTING, "promote", self._stage_promote),
            (LoopStageEnum.CORRECTING, "correct", self._stage_correct),
            (LoopStageEnum.DECAYING, "decay", self._stage_decay),
        ]

    def run_once(self) -> LoopResult:
        """Run one complete learning cycle."""
        if not self.try_begin_cycle():
            return LoopResult.failed(AlreadyRunningError("Loop is already running"))

        started = time.monotonic()
        cycle_id = f"cycle-{uuid4().hex[:12]}"
        result = LoopResult(cycle_id=cycle_id)

        try:
            with CycleLogger(logger, cycle_id) as cycle_log:
                try:
                    for stage, key, run_stage in self._stages():
                        self._status.stage = stage
                        with stage_context(key):
                            result.stages[key] = run_stage()
                    self._status.stage = LoopStageEnum.COMPLETED
                except Exception as e:
                    failed_stage = self._status.stage.value
                    self._status.stage = LoopStageEnum.ERROR
                    self._status.error = str(e)
                    result.success = False
                    result.error_code = error_code_of(e)
                    result.errors.append(f"{failed_stage}: {e}")
                    log_exception(
                        logger, "Learning cycle stage failed", e, cycle_id=cycle_id, stage=failed_stage
                    )
                    cycle_log.mark_failed(result.errors[-1])
        finally:
            result.duration_ms = int((time.monotonic() - started) * 1000)
            self._status.last_run_at = utcnow()
            self._status.last_run_duration_ms = result.duration_ms
            self._status.cycle_count += 1
            self.end_cycle()

        return result

    # =========================================================================
    # STAGES
    # =========================================================================

    def _stage_observe(self) -> dict[str, int]:
        """Create a level-1 document per unprocessed observation."""
        counts = {"processed": 0, "created": 0, "failed": 0}

        for obs in self.store.get_unprocessed_observations(self.config.max_observations_per_cycle):
            try:
                self.store.update_observation_stage(obs.id, ProcessingStageEnum.EXTRACTING)
                doc = self.store.create_document(
                    content=obs.content,
                    kind=obs.observation_type.value,
                    source=f"observation:{obs.id}",
                    document_id=f"obs-{obs.id}-{uuid4().hex[:8]}",
                )
                self.level_manager.initialize_document(doc.id, self.config.observation_confidence)
                self.store.update_observation_stage(obs.id, ProcessingStageEnum.EXTRACTED, [doc.id])
                counts["processed"] += 1
                counts["created"] += 1
            except Exception as e:
                counts["failed"] += 1
                log_exception(
                    logger, f"Observation {obs.id} failed", e, logging.WARNING, observation_id=obs.id
                )
                self._fail_observation(obs)

        return counts

    def _fail_observation(self, obs: Observation) -> None:
        try:
            self.store.update_observation_stage(obs.id, ProcessingStageEnum.FAILED)
        except Exception as e:
            logger.warning(f"Could not mark observation {obs.id} as failed: {e}")

    def _stage_extract(self) -> dict[str, int]:
        """Extract entities from level-1 documents and raise their confidence."""
        counts = {"documents": 0, "entities": 0, "failed": 0}

        document_ids = self.store.get_document_ids_by_level(
            KnowledgeLevelEnum.RAW, self.config.max_extractions_per_cycle
        )
        for document_id in document_ids:
            try:
                doc = self.store.get_document(document_id)
                if doc is None or not doc.content:
                    continue

                entities = self.extractor.extract(doc.content)
                for entity in entities:
                    self.store.upsert_entity(
                        entity.entity_id,
                        name=entity.name,
                        entity_type=entity.entity_type,
                        normalized_name=entity.normalized_name,
                    )
                counts["entities"] += len(entities)

                concepts = {entity.normalized_name for entity in entities}
                if concepts:
                    record = self.store.get_level(document_id)
                    if record is not None:
                        self.level_manager.set_level(
                            document_id,
                            record.level,
                            min(1.0, record.confidence + EXTRACTION_CONFIDENCE_STEP * len(concepts)),
                        )
                counts["documents"] += 1
            except Exception as e:
                counts["failed"] += 1
                log_exception(logger, "Extraction failed", e, logging.WARNING, document_id=document_id)

        return counts

    def _stage_synthesize(self) -> dict[str, int]:
        if not self.config.enable_pattern_detection:
            return {"patterns": 0, "applied": 0}

        detection = self.miner.detect_all()
        applied = 0
        for pattern in self.miner.get_validated_patterns(limit=self.config.max_syntheses_per_cycle):
            outcome = self.synthesizer.apply_pattern(pattern)
            if outcome.success:
                self.miner.mark_as_applied(pattern.id)
                applied += 1
            else:
                logger.warning(f"Pattern {pattern.id} not applied: {outcome.error}")

        return {"patterns": detection.stats.get("total", 0), "applied": applied}

    def _stage_promote(self) -> dict[str, int]:
        result = self.level_manager.batch_promote(self.config.max_promotions_per_cycle)
        return {"promoted": len(result.promoted), "failed": len(result.failed)}

    def _stage_correct(self) -> dict[str, int]:
        if not self.config.enable_auto_conflict_resolution:
            return {"conflicts": 0, "resolved": 0}

        pending = self.store.count_conflicts(ConflictResolutionEnum.PENDING)
        result = self.synthesizer.auto_resolve_conflicts(self.config.max_conflicts_per_cycle)
        return {"conflicts": pending, "resolved": result.resolved}

    def _stage_decay(self) -> dict[str, int]:
        if not self.config.enable_decay:
            return {"processed": 0, "decayed": 0}

        result = self.level_manager.batch_decay()
        return {"processed": result.processed, "decayed": len(result.decayed)}

    # =========================================================================
    # AUTO LOOP
    # =========================================================================

    def _auto_worker(self) -> None:
        while not self._auto_stop.is_set():
            try:
                self.run_once()
            except Exception as e:
                log_exception(logger, "Auto loop cycle raised", e)
            self._auto_stop.wait(self.config.auto_loop_interval_seconds)

    def start_auto_loop(self) -> dict[str, Any]:
        """Run a cycle now and then on every interval. No-op if already started."""
        with self._auto_lock:
            if self._auto_thread is not None and self._auto_thread.is_alive():
                return {"success": False, "interval_seconds": self.config.auto_loop_interval_seconds}

            self._auto_stop.clear()
            self._auto_thread = threading.Thread(target=self._auto_worker, name="ontology-learning-loop", daemon=True)
            self._auto_thread.start()

        logger.info(f"Auto loop started (interval {self.config.auto_loop_interval_seconds}s)")
        return {"success": True, "interval_seconds": self.config.auto_loop_interval_seconds}

    def stop_auto_loop(self) -> dict[str, Any]:
        """Cancel the timer. A cycle already in flight runs to completion."""
        with self._auto_lock:
            thread = self._auto_thread
            if thread is None:
                return {"success": True, "was_stopped": False}

            self._auto_stop.set()
            self._auto_thread = None

        if thread is not threading.current_thread():
            thread.join(self.config.stop_timeout_seconds)
        logger.info("Auto loop stopped")
        return {"success": True, "was_stopped": True}

    def is_auto_loop_running(self) -> bool:
        thread = self._auto_thread
        return thread is not None and thread.is_alive()

    # =========================================================================
    # STATUS & STATS
    # =========================================================================

    def get_status(self) -> LoopStatus:
        status = self._status
        return LoopStatus(
            stage=status.stage,
            is_running=status.is_running,
            cycle_count=status.cycle_count,
            last_run_at=status.last_run_at,
            last_run_duration_ms=status.last_run_duration_ms,
            error=status.error,
        )

    def get_stats(self) -> dict[str, Any]:
        return {
            "loop": self.get_status().to_dict(),
            "levels": self.level_manager.get_summary(),
            "ontology": self.store.get_ontology_stats(),
            "auto_loop": {
                "running": self.is_auto_loop_running(),
                "interval_seconds": self.config.auto_loop_interval_seconds,
            },
        }

    # =========================================================================
    # MANUAL OPERATIONS
    # =========================================================================

    def add_observation(
        self,
        content: str,
        observation_type: ObservationTypeEnum = ObservationTypeEnum.CONVERSATION,
        source_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Observation:
        """Queue an observation for the next cycle."""
        payload = ObservationCreate(
            content=content, observation_type=observation_type, source_id=source_id, metadata=metadata
        )
        return self.store.save_observation(
            content=payload.content,
            observation_type=payload.observation_type,
            source_id=payload.source_id,
            metadata=payload.metadata,
        )

    def force_promote(self, document_id: str) -> LevelChangeResult:
        return self.level_manager.promote(document_id)

    def force_decay(self) -> dict[str, int]:
        result = self.level_manager.batch_decay()
        return {"processed": result.processed, "decayed": len(result.decayed)}

    def detect_patterns(self) -> DetectionResult:
        return self.miner.detect_all()

    def validate_pattern(self, pattern_id: int, valid: bool) -> PatternStatusResult:
        return self.miner.validate_pattern(pattern_id, valid)
