"""Tests for knowledge level promotion, demotion, decay and statistics."""
import pytest

from ontology.core.models import (
    KnowledgeLevelEnum,
    ObservationTypeEnum,
    ProcessingStageEnum,
    PromotionRuleTypeEnum,
)
from ontology.resilience import ErrorCode


class TestLevelRecords:
    """Tests for initialising and touching level records."""

    def test_initialize_document_starts_at_raw(self, level_manager, make_document):
        """New documents start at L1 with confidence 0.5."""
        doc = make_document()
        record = level_manager.initialize_document(doc.id)

        assert record.level == KnowledgeLevelEnum.RAW
        assert record.confidence == pytest.approx(0.5)
        assert record.usage_count == 0

    def test_record_access_increments_usage(self, level_manager, make_document):
        """Each access adds one to the usage count."""
        doc = make_document(level=1)
        level_manager.record_access(doc.id)
        level_manager.record_access(doc.id)

        assert level_manager.get_level(doc.id).usage_count == 2

    def test_set_level_clamps_confidence(self, level_manager, make_document):
        """Confidence is kept inside [0, 1]."""
        doc = make_document()
        record = level_manager.set_level(doc.id, 2, 1.7)
        assert record.confidence == 1.0


class TestEvaluateForPromotion:
    """Tests for rule matching and candidate scoring."""

    def test_no_record_is_not_a_candidate(self, level_manager, make_document):
        """Documents without a level record are not evaluated."""
        doc = make_document()
        assert level_manager.evaluate_for_promotion(doc.id) is None

    def test_core_documents_are_never_candidates(self, level_manager, make_document):
        """Level-4 documents have nowhere to go."""
        doc = make_document(level=4, confidence=1.0)
        assert level_manager.evaluate_for_promotion(doc.id) is None

    def test_unsatisfied_rules_yield_none(self, level_manager, make_document):
        """No candidate when no rule matches."""
        doc = make_document(level=1, confidence=0.5)
        assert level_manager.evaluate_for_promotion(doc.id) is None

    def test_confidence_rule_matches(self, level_manager, make_document):
        """A single satisfied rule is enough to be eligible."""
        doc = make_document(level=1, confidence=0.6)
        candidate = level_manager.evaluate_for_promotion(doc.id)

        assert candidate is not None
        assert candidate.target_level == 2
        assert [r.rule_type for r in candidate.matched_rules] == [PromotionRuleTypeEnum.CONFIDENCE]
        assert candidate.score == pytest.approx(0.6)

    def test_score_sums_matched_thresholds(self, level_manager, make_document):
        """Tag count and confidence both match at L1."""
        doc = make_document(tags=["postgres"], level=1, confidence=0.6)
        candidate = level_manager.evaluate_for_promotion(doc.id)

        assert len(candidate.matched_rules) == 2
        assert candidate.score == pytest.approx(1.6)

    def test_usage_rule_matches(self, level_manager, make_document):
        """Should match the usage rule once accessed often enough."""
        doc = make_document(level=2, confidence=0.3)
        for _ in range(5):
            level_manager.record_access(doc.id)

        candidate = level_manager.evaluate_for_promotion(doc.id)
        assert [r.rule_type for r in candidate.matched_rules] == [PromotionRuleTypeEnum.USAGE]

    def test_validation_rule_never_auto_matches(self, store, level_manager, make_document):
        """Only the validation rule is left enabled for L3; it never fires by itself."""
        doc = make_document(level=3, confidence=0.95)
        for rule in store.get_promotion_rules(3):
            if rule.rule_type != PromotionRuleTypeEnum.VALIDATION:
                store.set_promotion_rule_enabled(rule.id, False)

        assert level_manager.evaluate_for_promotion(doc.id) is None

    def test_age_rule_uses_record_creation_time(self, store, level_manager, clock, make_document):
        """The age rule counts from the level record's creation."""
        store.add_promotion_rule(1, PromotionRuleTypeEnum.AGE, 3)
        doc = make_document(level=1, confidence=0.2)

        assert level_manager.evaluate_for_promotion(doc.id) is None
        clock.advance(days=4)
        candidate = level_manager.evaluate_for_promotion(doc.id)
        assert [r.rule_type for r in candidate.matched_rules] == [PromotionRuleTypeEnum.AGE]


class TestPromote:
    """Tests for promotion."""

    def test_promote_raises_level_and_confidence(self, level_manager, clock, make_document):
        """Promotion moves up one level with a confidence bump."""
        doc = make_document(level=1, confidence=0.6)
        result = level_manager.promote(doc.id)

        assert result.success
        assert result.previous_level == 1
        assert result.new_level == 2
        assert result.confidence == pytest.approx(0.7)

        record = level_manager.get_level(doc.id)
        assert record.level == 2
        assert record.promoted_from_id == doc.id
        assert record.last_promoted_at == clock.now

    def test_promote_with_explicit_confidence(self, level_manager, make_document):
        """An explicit confidence replaces the bump."""
        doc = make_document(level=2, confidence=0.7)
        result = level_manager.promote(doc.id, new_confidence=0.95)

        assert result.new_level == 3
        assert level_manager.get_level(doc.id).confidence == pytest.approx(0.95)

    def test_promote_caps_confidence_at_one(self, level_manager, make_document):
        """Confidence never exceeds 1.0."""
        doc = make_document(level=3, confidence=0.96)
        level_manager.promote(doc.id)
        assert level_manager.get_level(doc.id).confidence == 1.0

    def test_promote_at_core_fails(self, level_manager, make_document):
        """Promoting a core document fails as invalid state."""
        doc = make_document(level=4, confidence=0.9)
        result = level_manager.promote(doc.id)

        assert not result.success
        assert result.error_code == ErrorCode.INVALID_STATE
        assert level_manager.get_level(doc.id).level == 4

    def test_promote_missing_record_fails(self, level_manager, make_document):
        """Should fail as not found without a level record."""
        doc = make_document()
        result = level_manager.promote(doc.id)

        assert not result.success
        assert result.error_code == ErrorCode.NOT_FOUND


class TestDemote:
    """Tests for demotion."""

    def test_demote_lowers_level_and_confidence(self, level_manager, make_document):
        """Demotion moves down one level and lowers confidence."""
        doc = make_document(level=3, confidence=0.5)
        result = level_manager.demote(doc.id, "contradicted by newer source")

        assert result.success
        assert result.new_level == 2
        assert level_manager.get_level(doc.id).confidence == pytest.approx(0.3)

    def test_demote_confidence_floor(self, level_manager, make_document):
        """Demoted confidence is floored."""
        doc = make_document(level=2, confidence=0.15)
        level_manager.demote(doc.id, "stale")
        assert level_manager.get_level(doc.id).confidence == pytest.approx(0.1)

    def test_demote_at_raw_fails(self, level_manager, make_document):
        """Level-1 documents cannot be demoted."""
        doc = make_document(level=1, confidence=0.5)
        result = level_manager.demote(doc.id, "irrelevant")

        assert not result.success
        assert result.error_code == ErrorCode.INVALID_STATE

    def test_demote_writes_completed_audit_observation(self, store, level_manager, make_document):
        """Each demotion leaves a feedback observation with the reason."""
        doc = make_document(level=2, confidence=0.5)
        level_manager.demote(doc.id, "wrong")

        audits = store.get_observations(observation_type=ObservationTypeEnum.FEEDBACK)
        assert len(audits) == 1
        assert audits[0].processing_stage == ProcessingStageEnum.COMPLETED
        assert audits[0].processed is True
        assert "wrong" in audits[0].content
        assert audits[0].source_id == doc.id

    def test_demote_keeps_audit_out_of_loop_queue(self, store, level_manager, make_document):
        """Audit observations are never picked up by the loop."""
        doc = make_document(level=2, confidence=0.5)
        level_manager.demote(doc.id, "wrong")
        assert store.get_unprocessed_observations() == []


class TestDecay:
    """Tests for confidence decay."""

    def test_core_does_not_decay(self, level_manager, clock, make_document):
        """Should leave core knowledge untouched."""
        doc = make_document(level=4, confidence=0.9)
        clock.advance(days=365)
        assert level_manager.apply_decay(doc.id) is None

    def test_exponential_decay_halves_after_half_life(self, level_manager, clock, make_document):
        """Exponential decay halves confidence after one half-life."""
        doc = make_document(level=1, confidence=0.8)
        clock.advance(days=7)
        result = level_manager.apply_decay(doc.id)

        assert result.new_confidence == pytest.approx(0.4)
        assert level_manager.get_level(doc.id).confidence == pytest.approx(0.4)

    def test_linear_decay(self, level_manager, clock, make_document):
        """Linear decay falls proportionally to elapsed time."""
        doc = make_document(level=3, confidence=0.9)
        clock.advance(days=45)
        result = level_manager.apply_decay(doc.id)
        assert result.new_confidence == pytest.approx(0.45)

    def test_decay_is_bounded_by_min_value(self, level_manager, clock, make_document):
        """Decay stops at the rule's minimum."""
        doc = make_document(level=1, confidence=0.8)
        clock.advance(days=200)
        assert level_manager.apply_decay(doc.id).new_confidence == pytest.approx(0.1)

    def test_decay_twice_without_elapsed_time_is_noop(self, level_manager, clock, make_document):
        """A second decay with no elapsed time changes nothing."""
        doc = make_document(level=2, confidence=0.8)
        clock.advance(days=30)
        first = level_manager.apply_decay(doc.id)
        second = level_manager.apply_decay(doc.id)

        assert first.decay_applied > 0
        assert second.decay_applied == 0
        assert second.new_confidence == pytest.approx(first.new_confidence)

    def test_decay_never_raises_confidence(self, level_manager, clock, make_document):
        """Confidence already below the floor stays where it is."""
        doc = make_document(level=1, confidence=0.05)
        clock.advance(days=10)
        result = level_manager.apply_decay(doc.id)
        assert result.new_confidence == pytest.approx(0.05)

    def test_update_resets_decay_clock(self, level_manager, clock, make_document):
        """Any level write restarts the decay clock."""
        doc = make_document(level=1, confidence=0.8)
        clock.advance(days=7)
        level_manager.set_level(doc.id, 1, 0.8)
        assert level_manager.apply_decay(doc.id).decay_applied == 0

    def test_batch_decay_covers_levels_one_to_three(self, level_manager, clock, make_document):
        """Batch decay visits every decaying level."""
        make_document(level=1, confidence=0.8)
        make_document(level=2, confidence=0.8)
        make_document(level=3, confidence=0.8)
        make_document(level=4, confidence=0.8)
        clock.advance(days=10)

        result = level_manager.batch_decay()
        assert result.processed == 3
        assert len(result.decayed) == 3


class TestBatchPromote:
    """Tests for candidate ranking and bounded batches."""

    def test_candidates_ranked_by_score(self, level_manager, make_document):
        """Candidates are ordered by score, best first."""
        low = make_document(level=1, confidence=0.6)
        high = make_document(tags=["a"], level=1, confidence=0.6)

        candidates = level_manager.find_promotion_candidates()
        assert [c.document_id for c in candidates] == [high.id, low.id]

    def test_batch_promote_respects_cap(self, level_manager, make_document):
        """Should promote no more than the cap."""
        low = make_document(level=1, confidence=0.6)
        high = make_document(tags=["a"], level=1, confidence=0.6)

        result = level_manager.batch_promote(max_promotions=1)

        assert result.promoted == [high.id]
        assert level_manager.get_level(low.id).level == 1


class TestLevelStats:
    """Tests for statistics."""

    def test_level_stats_per_level(self, level_manager, make_document):
        """Stats report count and average confidence for each level, empty ones included."""
        make_document(level=1, confidence=0.4)
        make_document(level=1, confidence=0.6)
        make_document(level=3, confidence=0.9)

        stats = {s.level: s for s in level_manager.get_level_stats()}
        assert stats[1].count == 2
        assert stats[1].avg_confidence == pytest.approx(0.5)
        assert stats[2].count == 0
        assert stats[3].count == 1

    def test_summary_distribution(self, level_manager, make_document):
        """The summary labels levels and counts promotion-ready documents."""
        make_document(level=1, confidence=0.6)
        make_document(level=4, confidence=1.0)

        summary = level_manager.get_summary()
        assert summary["total"] == 2
        assert summary["distribution"]["L1 Raw"] == 1
        assert summary["distribution"]["L4 Core"] == 1
        assert summary["ready_for_promotion"] == 1
