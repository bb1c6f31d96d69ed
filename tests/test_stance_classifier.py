"""Tests for stance classification, signal detection and exclusion rules."""
import numpy as np
import pytest

from evidence_graph.config import ClassifierConfig
from evidence_graph.dataclass import STANCE_PRIORITY, Signal, Signals, Stance, stance_priority
from evidence_graph.embeddings import LabelEmbeddings
from evidence_graph.modules.exclusion_rules import get_exclusion_violations, is_excluded
from evidence_graph.modules.stance_classifier import (
    StanceClassifier,
    classify_stance,
    compute_signal_weight,
    detect_signals,
)

DIMS = 10
SIGNAL_AXES = {Signal.ORDERING: 6, Signal.TENSION: 7, Signal.CONDITIONAL: 8}


def basis(i: int) -> np.ndarray:
    vec = np.zeros(DIMS, dtype=np.float32)
    vec[i] = 1.0
    return vec


@pytest.fixture
def labels():
    """One axis per stance (0-5) and per signal (6-8); axis 9 matches nothing."""
    stances = {stance: np.vstack([basis(i)] * 3) for i, stance in enumerate(STANCE_PRIORITY)}
    signals = {signal: np.vstack([basis(axis)] * 3) for signal, axis in SIGNAL_AXES.items()}
    relationships = {name: np.vstack([basis(9)] * 3) for name in ("conflict", "support", "tradeoff")}
    return LabelEmbeddings(model_id="test", dimensions=DIMS, stances=stances, signals=signals, relationships=relationships)


class TestPatternStance:

    def test_warning(self):
        assert classify_stance("Avoid running your own cluster.") == (Stance.WARNING, 0.65, 1)

    def test_directive_counts_matches(self):
        stance, confidence, matches = classify_stance("You should use a managed database.")
        assert stance == Stance.DIRECTIVE
        assert matches == 2
        assert confidence == pytest.approx(0.8)

    def test_priority_precondition_over_directive(self):
        stance, _, _ = classify_stance("Before deploying, you must configure secrets.")
        assert stance == Stance.PRECONDITION

    def test_default_is_factual(self):
        assert classify_stance("Blue skies overhead today friends.") == (Stance.FACTUAL, 0.5, 0)

    def test_stance_priority_values(self):
        assert stance_priority(Stance.PRECONDITION) == 6
        assert stance_priority(Stance.FACTUAL) == 1


class TestSignals:

    def test_all_three_signals(self):
        signals = detect_signals("If you're a startup, first set up CI, but keep it simple.")
        assert signals == Signals(ordering=True, tension=True, conditional=True)
        assert signals.tags() == ["SEQ", "TENS", "COND"]

    def test_no_signals(self):
        assert detect_signals("Postgres stores rows in heap files.") == Signals()

    def test_signal_weight(self):
        assert compute_signal_weight(Signals(ordering=True, tension=True, conditional=True)) == 6
        assert compute_signal_weight(Signals(conditional=True)) == 3
        assert compute_signal_weight(Signals()) == 0


class TestStanceClassifier:

    def test_falls_back_without_labels(self):
        decision = StanceClassifier(ClassifierConfig()).classify("You should use a managed database.", basis(0))
        assert decision.stance == Stance.DIRECTIVE
        assert decision.meta.method == "pattern"
        assert decision.meta.fallback_reason == "label_embeddings_unavailable"

    def test_embeddings_disabled(self, labels):
        classifier = StanceClassifier(ClassifierConfig(prefer_embeddings=False), labels)
        assert classifier.classify("Avoid this.", basis(0)).meta.fallback_reason == "embeddings_disabled"

    def test_missing_vector_and_dimension_mismatch(self, labels):
        classifier = StanceClassifier(ClassifierConfig(), labels)
        assert classifier.classify("Avoid this.").meta.fallback_reason == "statement_embedding_unavailable"
        assert classifier.classify("Avoid this.", np.ones(4)).meta.fallback_reason == "dimension_mismatch"

    def test_embedding_strategy(self, labels):
        directive_axis = STANCE_PRIORITY.index(Stance.DIRECTIVE)
        vector = 0.9 * basis(directive_axis) + 0.436 * basis(SIGNAL_AXES[Signal.CONDITIONAL])
        vector = vector / np.linalg.norm(vector)

        decision = StanceClassifier(ClassifierConfig(), labels).classify("Blue skies overhead today friends.", vector)
        assert decision.stance == Stance.DIRECTIVE
        assert decision.meta.method == "embedding"
        assert decision.meta.fallback_reason is None
        assert decision.signals.conditional
        assert not decision.signals.tension
        assert not decision.meta.ambiguous
        # Remaining stances tie at zero; the highest priority one is runner-up
        assert decision.meta.runner_up == Stance.PRECONDITION

    def test_below_min_similarity_uses_patterns(self, labels):
        decision = StanceClassifier(ClassifierConfig(), labels).classify("Avoid running your own cluster.", basis(9))
        assert decision.stance == Stance.WARNING
        assert decision.meta.method == "pattern"
        assert decision.meta.fallback_reason == "below_min_similarity"


class TestExclusionRules:

    def test_question_is_excluded_for_every_stance(self):
        for stance in Stance:
            assert is_excluded("Is this the right approach for our team?", stance)

    def test_too_short(self):
        assert is_excluded("Too short here.", Stance.FACTUAL)

    def test_soft_rule_reported_not_excluded(self):
        text = "This would be faster with caching enabled."
        assert not is_excluded(text, Stance.FACTUAL)
        violations = get_exclusion_violations(text, Stance.FACTUAL)
        assert [v["id"] for v in violations] == ["factual_hypothetical_would"]
        assert violations[0]["severity"] == "soft"

    def test_rules_are_stance_scoped(self):
        text = "You should have used a queue for this workload."
        assert [v["id"] for v in get_exclusion_violations(text, Stance.DIRECTIVE)] == ["directive_past_tense"]
        assert get_exclusion_violations(text, Stance.FACTUAL) == []

    def test_narrative_first_is_hard_for_preconditions(self):
        assert is_excluded("The first time we deployed it went badly wrong.", Stance.PRECONDITION)
