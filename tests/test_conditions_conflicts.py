"""Tests for condition extraction, conflict derivation and the traversal summary."""
import numpy as np
import pytest

from conftest import EMBEDDING_X, make_claim, make_statement
from evidence_graph.dataclass import DerivedConditionalGate, Stance, StanceAsymmetry
from evidence_graph.modules.conditional_finder import (
    analyze_claim_stances,
    extract_clause,
    find_conditionals,
    format_question,
)
from evidence_graph.modules.conflict_deriver import classify_stance_asymmetry, derive_conflicts, find_blocking_gates
from evidence_graph.modules.mechanical_traversal import build_mechanical_traversal
from evidence_graph.schemas import ConflictClaimRef, ConflictInfoInput, EdgeInput, StructuralPatterns


@pytest.fixture
def statements():
    return [
        make_statement("s_0", "If you are a startup, use a managed database.", Stance.DIRECTIVE, conditional=True),
        make_statement("s_1", "If you are a startup, skip the service mesh.", Stance.DIRECTIVE, conditional=True),
        make_statement("s_2", "Service meshes add latency to every request.", Stance.WARNING),
        make_statement("s_3", "When the data is regulated, backups are encrypted at rest.", conditional=True),
        make_statement("s_4", "Self-hosted databases give full control."),
        make_statement("s_5", "If budgets are tight, reserved instances save money.", Stance.DIRECTIVE,
                       model_index=2, conditional=True),
    ]


@pytest.fixture
def claims():
    return [
        make_claim("c1", ["s_0"], label="Managed database", type="conditional"),
        make_claim("c2", ["s_1", "s_2"], label="No service mesh", type="conditional"),
        make_claim("c3", ["s_3"], label="Encrypted backups", type="conditional"),
        make_claim("c4", ["s_4"], label="Self-host the database"),
    ]


def conflict(a: str, b: str, significance: float = 0.5, **kwargs) -> ConflictInfoInput:
    return ConflictInfoInput(
        claim_a=ConflictClaimRef(id=a, label=f"{a} label"),
        claim_b=ConflictClaimRef(id=b, label=f"{b} label"),
        significance=significance,
        **kwargs,
    )


# =============================================================================
# Conditional finder
# =============================================================================

class TestClauses:

    def test_leading_if(self):
        clause = extract_clause("If you are a startup, use a managed database.")
        assert clause.raw_clause == "you are a startup"
        assert clause.extraction_method == "regex"

    def test_trailing_if(self):
        assert extract_clause("Use a CDN, if traffic is global, for static assets.").raw_clause == "traffic is global"

    def test_fallback_prefix(self):
        clause = extract_clause("Caching helps a lot with read-heavy workloads overall.")
        assert clause.extraction_method == "fallback"
        assert clause.raw_clause == "Caching helps a lot with read-heavy workloads overall."

    @pytest.mark.parametrize("clause,question", [
        ("you are a startup", "Are you a startup?"),
        ("you're on AWS", "Are you on AWS?"),
        ("you need HIPAA compliance", "Do you need HIPAA compliance?"),
        ("running Kubernetes already", "Are you running Kubernetes already?"),
        ("budget is tight", "Does this apply to you: budget is tight?"),
    ])
    def test_format_question(self, clause, question):
        assert format_question(clause) == question


class TestConditionalFinder:

    def test_groups_equal_clauses(self, claims, statements):
        result = find_conditionals(claims, statements)

        assert [c.id for c in result.conditions] == ["cond_0", "cond_1"]
        startup, regulated = result.conditions
        assert startup.canonical_clause == "you are a startup"
        assert startup.question == "Are you a startup?"
        assert startup.affected_claim_ids == ["c1", "c2"]
        assert [s.id for s in startup.source_statements] == ["s_0", "s_1"]
        assert startup.cluster_similarity == 1.0
        assert startup.gate_strength == "strong"

        assert regulated.canonical_clause == "the data is regulated"
        assert regulated.gate_strength == "weak"

    def test_verdicts(self, claims, statements):
        startup = find_conditionals(claims, statements).conditions[0]
        verdicts = {a.claim_id: a.stance_analysis.verdict for a in startup.affected_claims}
        assert verdicts == {"c1": "would_prune", "c2": "would_keep"}

    def test_prerequisite_edges_extend_affected_claims(self, claims, statements):
        edges = [EdgeInput(**{"from": "c1", "to": "c4", "type": "prerequisite"})]
        startup = find_conditionals(claims, statements, edges).conditions[0]
        downstream = startup.affected_claims[-1]
        assert downstream.claim_id == "c4"
        assert downstream.connection_type == "prerequisite_downstream"

    def test_vectors_merge_different_clauses(self, claims, statements):
        vectors = {s.id: np.array(EMBEDDING_X) for s in statements}
        result = find_conditionals(claims, statements, statement_vectors=vectors)
        assert len(result.conditions) == 1
        assert result.conditions[0].canonical_clause == "you are a startup"
        assert result.conditions[0].affected_claim_ids == ["c1", "c2", "c3"]

    def test_orphans_and_meta(self, claims, statements):
        result = find_conditionals(claims, statements)
        assert [o["statement_id"] for o in result.orphaned_conditional_statements] == ["s_5"]
        assert result.orphaned_conditional_statements[0]["reason"] == "Model 2 has no conditional-type claims"
        assert result.meta == {
            "total_conditional_claims": 3,
            "conditions_produced": 2,
            "conditional_statements_in_claims": 3,
            "conditional_statements_total": 4,
        }

    def test_no_conditional_claims(self, statements):
        result = find_conditionals([make_claim("c4", ["s_4"])], statements)
        assert result.conditions == []
        assert result.meta["conditions_produced"] == 0

    def test_no_evidence_verdict(self):
        verdict = analyze_claim_stances(make_claim("c9", ["missing"]), {})
        assert verdict.verdict == "no_evidence"
        assert verdict.total_source_statements == 0


# =============================================================================
# Conflicts
# =============================================================================

def stmts(prefix: str, stance: Stance, n: int, confidence: float = 0.8):
    return [make_statement(f"{prefix}_{i}", f"Statement {prefix} {i}", stance, confidence=confidence) for i in range(n)]


class TestStanceAsymmetry:

    def test_contextual(self):
        reading = classify_stance_asymmetry(stmts("a", Stance.DIRECTIVE, 3), stmts("b", Stance.FACTUAL, 3))
        assert reading.asymmetry == StanceAsymmetry.CONTEXTUAL
        assert reading.situational_side == "a"
        assert reading.score == pytest.approx(1.0)

    def test_normative(self):
        reading = classify_stance_asymmetry(stmts("a", Stance.DIRECTIVE, 2), stmts("b", Stance.PRECONDITION, 2))
        assert reading.asymmetry == StanceAsymmetry.NORMATIVE
        assert reading.situational_side == "neither"

    def test_epistemic(self):
        side_b = stmts("b", Stance.FACTUAL, 3) + stmts("h", Stance.HEDGED, 1)
        reading = classify_stance_asymmetry(stmts("a", Stance.FACTUAL, 4), side_b)
        assert reading.asymmetry == StanceAsymmetry.EPISTEMIC

    def test_empty_side_is_mixed(self):
        reading = classify_stance_asymmetry(stmts("a", Stance.DIRECTIVE, 2), [])
        assert reading.asymmetry == StanceAsymmetry.MIXED
        assert reading.reason == "insufficient evidence on side b"

    def test_only_most_confident_statements_are_read(self):
        side_a = stmts("f", Stance.FACTUAL, 12, confidence=0.9) + stmts("d", Stance.DIRECTIVE, 20, confidence=0.5)
        reading = classify_stance_asymmetry(side_a, stmts("b", Stance.DIRECTIVE, 3))
        assert reading.asymmetry == StanceAsymmetry.CONTEXTUAL
        assert reading.situational_side == "b"


class TestDeriveConflicts:

    @pytest.fixture
    def patterns(self):
        return StructuralPatterns(conflicts=[
            conflict("c4", "c1", 0.6, axis="Managed vs self-hosted"),
            conflict("c2", "c3", 0.1, axis="unknown"),
            conflict("c5", "c6", 0.2, involves_challenger=True),
        ])

    @pytest.fixture
    def gate(self):
        return DerivedConditionalGate(
            id="derived_gate_0", question="Are you a startup?", condition="startup", affected_claims=["c1"],
            anchor_terms=[], source_statement_ids=["s_0"], confidence=0.9, exclusivity_ratio=1.0,
            context_specificity=1.0, exclusive_footprint=1,
        )

    def test_filter_and_order(self, patterns, claims, statements):
        result = derive_conflicts(patterns, claims, statements)

        assert [c.id for c in result.conflicts] == ["conflict_c1__c4", "conflict_c5__c6", "conflict_c2__c3"]
        assert [c.passed_filter for c in result.conflicts] == [True, True, False]
        assert result.conflicts[0].question == "Managed vs self-hosted"
        assert result.conflicts[2].question == "c2 label vs c3 label"

    def test_override_reasons(self, patterns, claims, statements):
        result = derive_conflicts(patterns, claims, statements)
        challenger = result.conflicts[1]
        assert challenger.filter_details["override_reason"] == "Passed despite low significance due to: challenger involved"
        assert challenger.selection_reason == ["Challenger position contests consensus"]
        assert result.filtered_out_reasons == {
            "Significance 0.10 below threshold 0.3, not high-support vs high-support, no challenger involved": 1,
        }

    def test_asymmetry_from_sources(self, patterns, claims, statements):
        first = derive_conflicts(patterns, claims, statements).conflicts[0]
        assert first.stance_asymmetry == StanceAsymmetry.CONTEXTUAL
        assert first.analysis["stance_asymmetry"]["situational_side"] == "b"
        assert [s["id"] for s in first.analysis["source_statements_a"]] == ["s_4"]

    def test_blocking_gates(self, patterns, claims, statements, gate):
        edges = [EdgeInput(**{"from": "c4", "to": "c1", "type": "conflicts"})]
        result = derive_conflicts(patterns, claims, statements, gates=[gate], edges=edges)

        blocks = result.conflicts[0].blocked_by_gates
        assert [(b.gate_id, b.which_side_blocked) for b in blocks] == [("derived_gate_0", "claim_b")]
        assert blocks[0].gate_question == "Are you a startup?"
        assert result.meta == {
            "total_conflict_edges": 1,
            "enriched_conflicts": 3,
            "passing_filter": 2,
            "blocked_by_gates": 1,
        }

    @pytest.mark.parametrize("affected, which, reason", [
        (["c1"], "claim_a", "c1 appears in derived_gate_0's affected claims"),
        (["c4"], "claim_b", "c4 appears in derived_gate_0's affected claims"),
        (["c1", "c4"], "both", "c1 and c4 appear in derived_gate_0's affected claims"),
    ])
    def test_block_reason_names_the_blocked_side(self, gate, affected, which, reason):
        gate.affected_claims = affected
        blocks = find_blocking_gates("c1", "c4", [gate])
        assert [(b.which_side_blocked, b.reason) for b in blocks] == [(which, reason)]

    def test_unrelated_gate_does_not_block(self, gate):
        assert find_blocking_gates("c2", "c3", [gate]) == []


# =============================================================================
# Mechanical traversal
# =============================================================================

class TestMechanicalTraversal:

    def test_summary(self, claims, statements):
        patterns = StructuralPatterns(conflicts=[conflict("c1", "c4", 0.5)])
        result = build_mechanical_traversal(claims, statements, patterns=patterns)
        summary = result["summary"]

        assert summary["summary"]["strong_gates"] == 1
        assert summary["summary"]["passing_conflicts"] == 1
        assert summary["summary"]["conflicts_blocked_by_gates"] == 1
        assert summary["summary"]["conflicts_unblocked"] == 0
        assert summary["summary"]["prunability_assessment"] == "moderate"
        assert summary["summary"]["would_pause_traversal"]
        assert summary["conflict_asymmetry"]["contextual_count"] == 1

        pruned = {c["id"]: c["statements_pruned_on_no"] for c in summary["conditions"]}
        assert pruned == {"cond_0": 1, "cond_1": 0}

        blocks = result["conflicts"].conflicts[0].blocked_by_gates
        assert [b.gate_id for b in blocks] == ["cond_0"]

    def test_nothing_to_traverse(self, statements):
        result = build_mechanical_traversal([make_claim("c4", ["s_4"])], statements)
        assert result["summary"]["summary"]["prunability_assessment"] == "none"
        assert not result["summary"]["summary"]["would_pause_traversal"]
