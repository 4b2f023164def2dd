"""Tests for the learning loop: stages, reentrancy guard and auto loop."""
import pytest
import logging
import time

from ontology.config import Settings
from ontology.core.models import (
    ObservationTypeEnum,
    PatternStatusEnum,
    PatternTypeEnum,
    ProcessingStageEnum,
)
from ontology.learning import LearningLoop, LearningLoopConfig, LoopStageEnum
from ontology.resilience import ErrorCode

# Nothing in this text matches an extraction rule
PLAIN_TEXT = "hello there, just checking in"


def _wait_for_cycles(loop, count, timeout=5.0):
    deadline = time.monotonic() + timeout
    while loop.get_status().cycle_count < count and time.monotonic() < deadline:
        time.sleep(0.01)


class TestRunOnce:
    """Tests for a full cycle."""

    def test_observation_becomes_level_one_document(self, store, loop, level_manager):
        """An observation becomes a level-1 document and is marked extracted."""
        obs = loop.add_observation(PLAIN_TEXT)

        result = loop.run_once()

        assert result.success
        assert result.cycle_id.startswith("cycle-")
        assert result.stages["observe"] == {"processed": 1, "created": 1, "failed": 0}

        (doc,) = store.list_documents()
        assert doc.content == PLAIN_TEXT
        assert doc.kind == "conversation"
        assert doc.source == f"observation:{obs.id}"

        record = level_manager.get_level(doc.id)
        assert record.level == 1
        assert record.confidence == pytest.approx(0.5)

        processed = store.get_observation(obs.id)
        assert processed.processing_stage == ProcessingStageEnum.EXTRACTED
        assert processed.result_document_ids == [doc.id]

    def test_confident_document_promoted_next_cycle(self, store, loop, level_manager):
        """A level-1 document above the confidence rule is promoted."""
        loop.add_observation(PLAIN_TEXT)
        loop.run_once()
        (doc,) = store.list_documents()

        level_manager.set_level(doc.id, 1, 0.65)
        result = loop.run_once()

        assert result.stages["promote"]["promoted"] == 1
        assert level_manager.get_level(doc.id).level == 2

    def test_extraction_raises_confidence(self, store, loop, level_manager):
        """Extraction records entities and raises confidence per distinct concept."""
        loop.add_observation("Deployed Python and Docker today")

        result = loop.run_once()

        assert result.stages["extract"]["entities"] == 3
        assert store.get_entity("technology-python").mention_count == 1
        assert store.get_entity("time-today") is not None

        # 0.5 + 3 * 0.1 clears the L1 confidence rule in the same cycle
        (doc,) = store.list_documents()
        record = level_manager.get_level(doc.id)
        assert record.level == 2
        assert record.confidence == pytest.approx(0.9)

    def test_empty_run_succeeds(self, loop):
        """A cycle over an empty store succeeds and returns to idle."""
        result = loop.run_once()

        assert result.success
        assert result.stages["observe"]["processed"] == 0
        assert loop.get_status().cycle_count == 1
        assert loop.get_status().stage == LoopStageEnum.IDLE

    def test_validated_pattern_applied(self, store, loop, make_document):
        """A validated pattern is applied and marked applied."""
        for _ in range(6):
            make_document(tags=["x", "y"])
        loop.detect_patterns()
        (pattern,) = store.get_patterns(pattern_type=PatternTypeEnum.CO_OCCURRENCE)
        loop.validate_pattern(pattern.id, True)

        result = loop.run_once()

        assert result.stages["synthesize"]["applied"] == 1
        assert store.get_pattern(pattern.id).status == PatternStatusEnum.APPLIED
        assert store.get_ontology_stats()["documents"]["superseded"] == 6

    def test_pending_conflicts_resolved(self, store, loop, make_document):
        """The correct stage resolves pending conflicts in favour of the higher level."""
        a = make_document("a", level=3, confidence=0.8)
        b = make_document("b", level=1, confidence=0.8)
        store.save_conflict(a.id, b.id, "temporal")

        result = loop.run_once()

        assert result.stages["correct"] == {"conflicts": 1, "resolved": 1}
        assert store.get_document(b.id).superseded_by == a.id

    def test_disabled_stages_do_nothing(self, store, make_document, level_manager, clock):
        """Disabled stages report zero counts and write nothing."""
        loop = LearningLoop(
            store,
            LearningLoopConfig(
                enable_pattern_detection=False, enable_decay=False, enable_auto_conflict_resolution=False
            ),
            level_manager=level_manager,
        )
        doc = make_document(level=1, confidence=0.3)
        clock.advance(days=30)

        result = loop.run_once()

        assert result.success
        assert store.get_patterns() == []
        assert result.stages["decay"] == {"processed": 0, "decayed": 0}
        assert level_manager.get_level(doc.id).confidence == pytest.approx(0.3)


class TestFailureHandling:
    """Tests for per-item isolation and stage aborts."""

    def test_failed_observation_does_not_block_others(self, store, loop, monkeypatch):
        """One failing observation is marked failed while the rest proceed."""
        first = loop.add_observation("first")
        second = loop.add_observation("second")
        original = loop.level_manager.initialize_document
        calls = {"n": 0}

        def flaky(document_id, confidence=None):
            calls["n"] += 1
            if calls["n"] == 1:
                raise ValueError("boom")
            return original(document_id, confidence)

        monkeypatch.setattr(loop.level_manager, "initialize_document", flaky)
        result = loop.run_once()

        assert result.success
        assert result.stages["observe"] == {"processed": 1, "created": 1, "failed": 1}
        assert store.get_observation(first.id).processing_stage == ProcessingStageEnum.FAILED
        assert store.get_observation(second.id).processing_stage == ProcessingStageEnum.EXTRACTED

    def test_stage_error_aborts_cycle(self, loop, monkeypatch):
        """An exception in a stage skips the remaining stages of that cycle."""
        loop.add_observation(PLAIN_TEXT)

        def boom(*args, **kwargs):
            raise RuntimeError("promotion exploded")

        monkeypatch.setattr(loop.level_manager, "batch_promote", boom)
        result = loop.run_once()

        assert not result.success
        assert result.error_code == ErrorCode.INTERNAL
        assert result.errors == ["promoting: promotion exploded"]
        assert result.stages["observe"]["created"] == 1
        assert result.stages["correct"] == {"conflicts": 0, "resolved": 0}

        status = loop.get_status()
        assert status.error == "promotion exploded"
        assert status.cycle_count == 1
        assert not status.is_running
        assert status.stage == LoopStageEnum.IDLE

    def test_stage_error_logged_with_cycle_and_stage(self, loop, monkeypatch, caplog):
        """The abort is logged at ERROR with the traceback, cycle ID and failed stage."""
        def boom(*args, **kwargs):
            raise RuntimeError("promotion exploded")

        monkeypatch.setattr(loop.level_manager, "batch_promote", boom)
        with caplog.at_level(logging.INFO, logger="ontology.learning.learning_loop"):
            result = loop.run_once()

        (record,) = [r for r in caplog.records if r.getMessage() == "Learning cycle stage failed: promotion exploded"]
        assert record.levelno == logging.ERROR
        assert record.exc_info[0] is RuntimeError
        assert record.extra_data == {"cycle_id": result.cycle_id, "stage": "promoting"}
        assert any(getattr(r, "extra_data", {}).get("event") == "cycle_aborted" for r in caplog.records)

    def test_failed_observation_logged_as_warning(self, loop, monkeypatch, caplog):
        """Per-item failures are warnings naming the observation."""
        obs = loop.add_observation("first")

        def boom(document_id, confidence=None):
            raise ValueError("boom")

        monkeypatch.setattr(loop.level_manager, "initialize_document", boom)
        with caplog.at_level(logging.WARNING, logger="ontology.learning.learning_loop"):
            loop.run_once()

        (record,) = [r for r in caplog.records if r.getMessage().startswith(f"Observation {obs.id} failed")]
        assert record.levelno == logging.WARNING
        assert record.extra_data == {"observation_id": obs.id}

    def test_loop_recovers_after_abort(self, loop, monkeypatch):
        """The cycle after an abort runs normally."""
        def boom():
            raise RuntimeError("mining exploded")

        monkeypatch.setattr(loop.miner, "detect_all", boom)
        assert not loop.run_once().success

        monkeypatch.undo()
        assert loop.run_once().success


class TestCycleGuard:
    """Tests for the single-cycle guard."""

    def test_concurrent_call_is_rejected(self, store, loop):
        """A cycle requested while one is running is rejected, not queued."""
        obs = loop.add_observation(PLAIN_TEXT)
        assert loop.try_begin_cycle()

        result = loop.run_once()

        assert not result.success
        assert result.error_code == ErrorCode.ALREADY_RUNNING
        assert result.errors == ["Loop is already running"]
        assert store.get_observation(obs.id).processing_stage == ProcessingStageEnum.RAW
        assert store.list_documents() == []
        assert loop.get_status().cycle_count == 0

        loop.end_cycle()
        assert loop.run_once().success

    def test_manual_operations_not_blocked(self, loop, make_document):
        """Direct operations still work while a cycle holds the guard."""
        doc = make_document(level=1, confidence=0.5)
        assert loop.try_begin_cycle()
        try:
            assert loop.force_promote(doc.id).success
        finally:
            loop.end_cycle()


class TestAutoLoop:
    """Tests for the timer."""

    def test_start_runs_immediately_and_stops(self, loop):
        """Should run a cycle on start and stop cleanly."""
        started = loop.start_auto_loop()
        assert started["success"]
        _wait_for_cycles(loop, 1)

        assert loop.get_status().cycle_count >= 1
        assert loop.is_auto_loop_running()
        assert not loop.start_auto_loop()["success"]

        stopped = loop.stop_auto_loop()
        assert stopped == {"success": True, "was_stopped": True}
        assert not loop.is_auto_loop_running()

    def test_stop_without_start(self, loop):
        """Stopping a loop that never started is a no-op."""
        assert loop.stop_auto_loop() == {"success": True, "was_stopped": False}


class TestStatsAndConfig:
    """Tests for statistics and settings wiring."""

    def test_stats_sections(self, loop):
        """Stats combine loop, level, ontology and timer sections."""
        loop.run_once()
        stats = loop.get_stats()

        assert set(stats) == {"loop", "levels", "ontology", "auto_loop"}
        assert stats["loop"]["cycle_count"] == 1
        assert stats["auto_loop"]["running"] is False

    def test_force_decay(self, loop, make_document, clock):
        """Should decay on demand."""
        make_document(level=1, confidence=0.8)
        clock.advance(days=7)
        assert loop.force_decay() == {"processed": 1, "decayed": 1}

    def test_add_observation_rejects_empty_content(self, loop):
        """Empty observation content is rejected."""
        with pytest.raises(ValueError):
            loop.add_observation("")

    def test_config_from_settings(self):
        """Loop caps and intervals come from Settings."""
        settings = Settings(MAX_PROMOTIONS_PER_CYCLE=5, ENABLE_DECAY=False)
        config = LearningLoopConfig.from_settings(settings)

        assert config.max_promotions_per_cycle == 5
        assert config.enable_decay is False

    def test_loop_from_settings(self, store):
        """Should build a loop wired to the configured components."""
        settings = Settings(PATTERN_MIN_CONFIDENCE=0.2, SYNTHESIS_DEFAULT_CONFIDENCE=0.6)
        loop = LearningLoop.from_settings(store, settings)

        assert loop.miner.config.min_confidence == pytest.approx(0.2)
        assert loop.synthesizer.config.default_confidence == pytest.approx(0.6)
        assert loop.synthesizer.level_manager is loop.level_manager

    def test_observation_types(self, store, loop):
        """The observation type becomes the document kind."""
        loop.add_observation("changed file", ObservationTypeEnum.FILE_CHANGE, source_id="src/app.py")
        loop.run_once()
        (doc,) = store.list_documents()
        assert doc.kind == "file_change"
