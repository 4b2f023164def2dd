"""Tests for the five pattern scans and pattern status management."""
import pytest
from datetime import datetime, timedelta

from ontology.core.models import PatternStatusEnum, PatternTypeEnum
from ontology.learning import PatternMiner, PatternMinerConfig
from ontology.resilience import ErrorCode

# 2024-06-03 is a Monday
MONDAY = datetime(2024, 6, 3, 9, 0, 0)


def _tagged(make_document, count, tags, start=MONDAY, step=timedelta(days=1)):
    return [make_document(tags=tags, created_at=start + i * step) for i in range(count)]


class TestCoOccurrence:
    """Tests for tag pair mining."""

    def test_below_min_confidence_is_suppressed(self, miner, make_document):
        """3 of 10 documents give confidence 0.3, under the 0.5 default."""
        _tagged(make_document, 3, ["x", "y"])
        _tagged(make_document, 7, ["z"])
        assert miner.detect_co_occurrence() == []

    def test_lower_threshold_reports_pair(self, store, make_document):
        """Should report the pair once min_confidence allows it."""
        _tagged(make_document, 3, ["x", "y"])
        _tagged(make_document, 7, ["z"])

        candidates = PatternMiner(store, PatternMinerConfig(min_confidence=0.3)).detect_co_occurrence()
        assert len(candidates) == 1
        assert candidates[0].confidence == pytest.approx(0.3)

    def test_frequent_pair_detected(self, miner, make_document):
        """A tag pair shared by most documents is reported with its support."""
        docs = _tagged(make_document, 6, ["x", "y"])
        _tagged(make_document, 4, ["z"])

        result = miner.detect(PatternTypeEnum.CO_OCCURRENCE)

        assert result.stats["co-occurrence"] == 1
        pattern = result.patterns[0]
        assert pattern.confidence == pytest.approx(0.6)
        assert pattern.status == PatternStatusEnum.DETECTED
        assert sorted(pattern.document_ids) == sorted(d.id for d in docs)
        assert pattern.extra_data == {"entity_a": "x", "entity_b": "y", "count": 6}

    def test_min_co_occurrence_count(self, store, make_document):
        """Pairs seen fewer times than the minimum are dropped."""
        _tagged(make_document, 2, ["x", "y"])
        miner = PatternMiner(store, PatternMinerConfig(min_confidence=0.0))
        assert miner.detect_co_occurrence() == []

    def test_superseded_documents_are_ignored(self, store, miner, make_document):
        """Superseded documents are outside the mining corpus."""
        docs = _tagged(make_document, 5, ["x", "y"])
        replacement = make_document(content="replacement")
        store.supersede_document(docs[0].id, replacement.id)

        assert miner.detect_co_occurrence() == []


class TestTemporal:
    """Tests for weekly and daily activity mining."""

    def test_weekly_and_daily_peaks(self, miner, make_document):
        """Activity bunched on one day and hour gives one weekly and one daily pattern."""
        _tagged(make_document, 4, ["x"], step=timedelta(minutes=5))

        candidates = miner.detect_temporal()
        weekly = [c for c in candidates if c.metadata["type"] == "weekly"]
        daily = [c for c in candidates if c.metadata["type"] == "daily"]

        assert len(weekly) == 1
        assert weekly[0].metadata["day_of_week"] == 1
        assert "Mondays" in weekly[0].description
        assert weekly[0].confidence == 1.0

        assert len(daily) == 1
        assert daily[0].metadata["hour_of_day"] == 9
        assert "9:00" in daily[0].description

    def test_empty_corpus(self, miner):
        """Should find nothing in an empty store."""
        assert miner.detect_temporal() == []


class TestSemantic:
    """Tests for primary-tag clustering."""

    def test_cluster_with_common_concepts(self, miner, make_document):
        """A tag cluster reports the tags most of its members share."""
        docs = _tagged(make_document, 3, ["python", "web"])
        docs += _tagged(make_document, 2, ["python", "ml"])

        candidates = miner.detect_semantic()

        assert len(candidates) == 1
        cluster = candidates[0]
        assert cluster.confidence == pytest.approx(0.5)
        assert cluster.metadata["primary_concept"] == "python"
        assert cluster.metadata["common_concepts"] == ["python", "web"]
        assert cluster.metadata["member_count"] == 5
        assert sorted(cluster.document_ids) == sorted(d.id for d in docs)

    def test_small_cluster_suppressed(self, miner, make_document):
        """Clusters under the minimum size are dropped."""
        _tagged(make_document, 3, ["python"])
        assert miner.detect_semantic() == []


class TestContradiction:
    """Tests for same-topic, different-kind detection."""

    def test_close_documents_of_different_kinds(self, miner, make_document):
        """Documents of different kinds on the same topic within the window conflict."""
        decision = make_document(kind="decision", tags=["db", "postgres"], created_at=MONDAY)
        note = make_document(kind="note", tags=["postgres", "db"], created_at=MONDAY + timedelta(days=3))
        make_document(kind="decision", tags=["db", "postgres"], created_at=MONDAY + timedelta(days=40))

        candidates = miner.detect_contradictions()

        assert len(candidates) == 1
        found = candidates[0]
        assert found.document_ids == [decision.id, note.id]
        assert found.confidence == pytest.approx(0.9)
        assert found.metadata["conflict_type"] == "temporal"
        assert found.metadata["time_diff_days"] == pytest.approx(3.0)

    def test_window_is_exclusive(self, miner, make_document):
        """A gap of exactly the window is too far apart; just inside it scores the 0.3 floor."""
        make_document(kind="decision", tags=["db"], created_at=MONDAY)
        make_document(kind="note", tags=["db"], created_at=MONDAY + timedelta(days=30))
        assert miner.detect_contradictions() == []

        inside = make_document(kind="note", tags=["db"], created_at=MONDAY + timedelta(days=29, hours=23))
        (found,) = miner.detect_contradictions()
        assert found.document_ids[1] == inside.id
        assert found.confidence == pytest.approx(0.3)

    def test_same_kind_is_not_a_contradiction(self, miner, make_document):
        """Should not flag documents of one kind."""
        _tagged(make_document, 3, ["db"])
        assert miner.detect_contradictions() == []


class TestEvolution:
    """Tests for concept timelines."""

    def test_growth(self, miner, make_document):
        """Tags accumulating over time read as growth."""
        make_document(tags=["api"], created_at=MONDAY)
        make_document(tags=["api", "rest"], created_at=MONDAY + timedelta(days=5))
        make_document(tags=["api", "rest", "auth"], created_at=MONDAY + timedelta(days=10))

        candidates = miner.detect_evolution()

        assert len(candidates) == 1
        assert candidates[0].metadata["concept"] == "api"
        assert candidates[0].metadata["direction"] == "growth"
        assert candidates[0].confidence == pytest.approx(0.3)
        assert candidates[0].document_ids == ["doc-1", "doc-2", "doc-3"]

    def test_divergence(self, miner, make_document):
        """Tags drifting away from the first document read as divergence."""
        make_document(tags=["api", "a", "b"], created_at=MONDAY)
        make_document(tags=["api"], created_at=MONDAY + timedelta(days=5))
        make_document(tags=["api", "c", "d"], created_at=MONDAY + timedelta(days=10))

        (candidate,) = miner.detect_evolution()
        assert candidate.metadata["direction"] == "divergence"

    def test_refinement(self, miner, make_document):
        """A stable tag set over time reads as refinement."""
        _tagged(make_document, 3, ["api", "x"], step=timedelta(days=5))
        directions = {c.metadata["concept"]: c.metadata["direction"] for c in miner.detect_evolution()}
        assert directions == {"api": "refinement", "x": "refinement"}

    def test_short_span_skipped(self, miner, make_document):
        """Timelines shorter than the minimum span are skipped."""
        _tagged(make_document, 3, ["api"], step=timedelta(days=3.5))
        assert miner.detect_evolution() == []


class TestDetectAll:
    """Tests for persistence across scans."""

    def test_rerun_does_not_duplicate(self, store, miner, make_document):
        """Mining an unchanged corpus twice stores nothing new."""
        _tagged(make_document, 6, ["x", "y"])

        first = miner.detect_all()
        second = miner.detect_all()

        assert first.new_patterns > 0
        assert second.new_patterns == 0
        assert second.stats["total"] == first.stats["total"]
        assert len(store.get_patterns(limit=100)) == first.new_patterns
        assert set(first.stats) == {t.value for t in PatternTypeEnum} | {"total"}


class TestPatternStatus:
    """Tests for validation, rejection and application."""

    @pytest.fixture
    def pattern(self, store):
        pattern, _ = store.save_pattern(PatternTypeEnum.SEMANTIC, 0.5, [], "cluster")
        return pattern

    def test_validate(self, miner, pattern):
        """Should move a detected pattern to validated."""
        result = miner.validate_pattern(pattern.id, True)
        assert result.success
        assert result.status == PatternStatusEnum.VALIDATED
        assert [p.id for p in miner.get_validated_patterns()] == [pattern.id]
        assert miner.get_pending_patterns() == []

    def test_reject_after_validate_fails(self, miner, pattern):
        """Validated patterns cannot be rejected."""
        miner.validate_pattern(pattern.id, True)
        result = miner.validate_pattern(pattern.id, False)

        assert not result.success
        assert result.error_code == ErrorCode.INVALID_STATE
        assert miner.get_pattern(pattern.id).status == PatternStatusEnum.VALIDATED

    def test_apply_requires_validation(self, miner, pattern):
        """Only validated patterns can be marked applied."""
        assert not miner.mark_as_applied(pattern.id).success
        miner.validate_pattern(pattern.id, True)
        assert miner.mark_as_applied(pattern.id).status == PatternStatusEnum.APPLIED

    def test_missing_pattern(self, miner):
        """Unknown pattern IDs fail as not found."""
        result = miner.validate_pattern(9999, True)
        assert result.error_code == ErrorCode.NOT_FOUND

    def test_validated_filter_by_type(self, store, miner, pattern):
        """Validated patterns can be filtered by type."""
        other, _ = store.save_pattern(PatternTypeEnum.EVOLUTION, 0.3, [], "timeline")
        miner.validate_pattern(pattern.id, True)
        miner.validate_pattern(other.id, True)

        evolution = miner.get_validated_patterns(PatternTypeEnum.EVOLUTION)
        assert [p.id for p in evolution] == [other.id]
