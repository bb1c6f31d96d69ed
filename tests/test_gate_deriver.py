"""Tests for conditional gate derivation."""
import numpy as np
import pytest

from conftest import EMBEDDING_X, make_claim, make_statement
from evidence_graph.config import GateConfig
from evidence_graph.dataclass import TermClass
from evidence_graph.embeddings import EmbeddingRegistry
from evidence_graph.modules.gate_deriver import (
    GateDeriver,
    build_question,
    derive_conditional_gates,
    extract_conditional_clause,
    extract_proper_noun_terms,
)
from evidence_graph.schemas import EdgeInput, StructuralPatterns


@pytest.fixture
def statements():
    return [
        make_statement("s_0", "If you are an early-stage startup, ship on a managed platform."),
        make_statement("s_1", "When the team is small, managed platforms remove operations work."),
        make_statement("s_2", "Heroku works well for a first product launch."),
        make_statement("s_3", "Costs rise quickly at larger scale."),
        make_statement("s_4", "Vendor lock-in is a real concern for many companies."),
        make_statement("s_5", "Kubernetes gives full control over infrastructure."),
        make_statement("s_6", "If you need strict compliance, run on dedicated hosts."),
        make_statement("s_7", "When audits are frequent, dedicated hosts simplify evidence collection."),
    ]


@pytest.fixture
def claims():
    return [
        make_claim("X", ["s_0", "s_1", "s_2", "s_3", "s_4"], label="Use a managed platform"),
        make_claim("Y", ["s_3", "s_4", "s_5"], label="Run your own cluster"),
    ]


class TestClauseAndQuestion:

    def test_clause_stops_at_boundary(self):
        clause = extract_conditional_clause("Use Redis when latency matters, otherwise skip it.")
        assert clause.keyword == "when"
        assert clause.rest == "latency matters"
        assert clause.clause == "when latency matters"

    def test_no_clause(self):
        assert extract_conditional_clause("Redis is an in-memory store.") is None

    def test_proper_nouns(self):
        assert extract_proper_noun_terms("we chose AWS Lambda over Google Cloud Run.") == [
            "AWS", "Lambda", "Google Cloud Run",
        ]

    def test_question_from_nouns(self):
        question, condition, anchors = build_question("label", None, ["Kafka"])
        assert question == "Does your situation involve Kafka?"
        assert condition == "Kafka"
        assert anchors == ["Kafka"]

    def test_question_fallback(self):
        assert build_question("Pick a queue", None, []) == ('Does "Pick a queue" depend on your context?', "context", [])


class TestGateDeriver:

    def test_startup_gate(self, claims, statements):
        result = GateDeriver().derive(claims, statements)

        assert len(result.gates) == 1
        gate = result.gates[0]
        assert gate.id == "derived_gate_0"
        assert gate.affected_claims == ["X"]
        assert "startup" in gate.question
        assert gate.question == "Does this apply if you are an early-stage startup?"
        assert gate.source_statement_ids == ["s_0", "s_1", "s_2"]
        assert gate.exclusivity_ratio == pytest.approx(0.6)
        assert gate.context_specificity == pytest.approx(2 / 3)
        assert gate.confidence == pytest.approx(0.4)

        per_claim = {entry["claim_id"]: entry for entry in result.debug["per_claim"]}
        assert per_claim["X"]["classification"] == "gate_candidate"
        assert per_claim["Y"]["classification"] == "below_footprint"

    def test_gate_sources_are_exclusive(self, claims, statements):
        gate = GateDeriver().derive(claims, statements).gates[0]
        y_sources = set(claims[1].source_statement_ids)
        assert not y_sources & set(gate.source_statement_ids)

    def test_conflict_edge_boosts_ranking(self, claims, statements):
        edges = [EdgeInput(**{"from": "X", "to": "Y", "type": "conflicts"})]
        gate = GateDeriver().derive(claims, statements, edges=edges).gates[0]
        assert gate.confidence == pytest.approx(0.52)

    def test_cap_keeps_highest_ranked(self, claims, statements):
        claims = claims + [make_claim("Z", ["s_6", "s_7"], label="Use dedicated hosts")]
        result = GateDeriver(GateConfig(max_gates=1)).derive(claims, statements)

        assert [g.affected_claims for g in result.gates] == [["Z"]]
        assert result.gates[0].id == "derived_gate_0"
        selected = {entry["claim_id"]: entry["selected"] for entry in result.debug["gates"]}
        assert selected == {"Z": True, "X": False}

    def test_no_claims(self, statements):
        result = derive_conditional_gates([], statements)
        assert result.gates == []
        assert result.debug["short_circuit_reason"] == "no_claims"

    def test_convergent_landscape(self, claims, statements):
        patterns = StructuralPatterns(convergence_ratio=0.9)
        result = GateDeriver().derive(claims, statements, patterns=patterns)
        assert result.debug["short_circuit_reason"] == "convergent_landscape"

    def test_convergence_ignored_when_conflicts_exist(self, claims, statements):
        patterns = StructuralPatterns(convergence_ratio=0.9)
        edges = [EdgeInput(**{"from": "X", "to": "Y", "type": "conflicts"})]
        result = GateDeriver().derive(claims, statements, edges=edges, patterns=patterns)
        assert result.debug["short_circuit_reason"] is None
        assert len(result.gates) == 1

    def test_no_exclusive_evidence(self, statements):
        claims = [make_claim("A", ["s_0", "s_1"]), make_claim("B", ["s_0", "s_1"])]
        result = GateDeriver().derive(claims, statements)
        assert result.debug["short_circuit_reason"] == "no_exclusive_evidence"
        assert {e["classification"] for e in result.debug["per_claim"]} == {"below_footprint"}


class TestContrastiveTerms:

    @pytest.fixture
    def kafka(self):
        statements = [
            make_statement("a_0", "Kafka handles event streams reliably."),
            make_statement("a_1", "Kafka clusters need careful partition planning."),
            make_statement("b_0", "Postgres stores relational data."),
            make_statement("b_1", "Postgres replication is simple to configure."),
        ]
        claims = [make_claim("W", ["a_0", "a_1"]), make_claim("V", ["b_0", "b_1"])]
        return claims, statements

    def test_coherent_term_anchors_gate(self, kafka):
        claims, statements = kafka
        vectors = {s.id: np.array(EMBEDDING_X) for s in statements}
        result = GateDeriver().derive(claims, statements, statement_vectors=vectors)

        gates = {g.affected_claims[0]: g for g in result.gates}
        gate = gates["W"]
        assert gate.question == "Does your situation involve Kafka?"
        assert [t.term for t in gate.terms] == ["kafka"]
        assert gate.terms[0].term_class == TermClass.CONTEXT_ANCHOR

    def test_without_vectors_terms_are_ambiguous(self, kafka):
        claims, statements = kafka
        result = GateDeriver().derive(claims, statements)
        assert result.gates == []
        per_claim = {entry["claim_id"]: entry for entry in result.debug["per_claim"]}
        assert per_claim["W"]["classification"] == "low_context_specificity"
        assert per_claim["W"]["term_specificity"] == pytest.approx(0.25)

    def test_term_index_is_cached_per_turn(self, kafka, fake_provider):
        claims, statements = kafka
        registry = EmbeddingRegistry(fake_provider)
        GateDeriver(registry=registry).derive(claims, statements, turn_id="turn-1")
        assert "turn-1" in registry.term_indexes
        assert "kafka" in registry.term_indexes.get("turn-1")["index"]
