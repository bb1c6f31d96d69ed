"""Tests for the shadow delta audit and claim provenance."""
import pytest

from conftest import make_claim, make_statement
from evidence_graph.dataclass import ShadowExtractionResult, Stance
from evidence_graph.modules.claim_provenance import (
    compute_claim_exclusivity,
    compute_claim_overlap,
    compute_statement_ownership,
    jaccard,
)
from evidence_graph.modules.shadow_delta import (
    compute_shadow_delta,
    extract_referenced_ids,
    format_audit_summary,
    format_unreferenced_for_prompt,
    high_signal_unreferenced,
    query_relevance,
    referenced_ids_from_claims,
    significant_words,
    top_unreferenced,
    unreferenced_by_stance,
)

QUERY = "Which database should we use for our startup?"


@pytest.fixture
def extraction():
    statements = [
        make_statement("s_0", "Use managed Postgres for the database.", Stance.DIRECTIVE, confidence=0.8),
        make_statement("s_1", "If traffic spikes, autoscaling keeps latency stable.", confidence=0.5, conditional=True),
        make_statement("s_2", "Avoid self-hosting the database cluster.", Stance.WARNING, confidence=0.65),
        make_statement("s_3", "Migrations require a staging environment first.", Stance.PRECONDITION,
                       confidence=0.8, ordering=True),
    ]
    return ShadowExtractionResult(statements=statements, meta={"sentences_processed": 8, "candidates_processed": 5})


class TestQueryRelevance:

    def test_significant_words(self):
        assert significant_words(QUERY) == {"database", "use", "our", "startup"}

    def test_jaccard_overlap(self):
        assert query_relevance("Avoid self-hosting the database cluster.", QUERY) == pytest.approx(1 / 8)

    def test_empty_query(self):
        assert query_relevance("Anything at all here.", "") == 0.0


class TestShadowDelta:

    def test_ranks_unreferenced(self, extraction):
        delta = compute_shadow_delta(extraction, {"s_0"}, QUERY)

        assert [u.statement.id for u in delta.unreferenced] == ["s_3", "s_1", "s_2"]
        scores = [u.adjusted_score for u in delta.unreferenced]
        assert scores == pytest.approx([1.12, 0.8, 0.73125])
        assert [u.signal_weight for u in delta.unreferenced] == [2, 3, 0]

    def test_audit(self, extraction):
        audit = compute_shadow_delta(extraction, {"s_0"}, QUERY).audit

        assert audit["statement_count"] == 4
        assert audit["referenced_count"] == 1
        assert audit["unreferenced_count"] == 3
        assert audit["high_signal_unreferenced_count"] == 2
        assert audit["by_stance"]["directive"] == {"total": 1, "unreferenced": 0}
        assert audit["gaps"] == {"conflicts": 0, "preconditions": 1, "directives": 1}
        assert audit["survival_rate"] == pytest.approx(0.5)
        assert audit["candidates_processed"] == 5

    def test_everything_referenced(self, extraction):
        delta = compute_shadow_delta(extraction, ["s_0", "s_1", "s_2", "s_3"])
        assert delta.unreferenced == []
        assert format_unreferenced_for_prompt(delta.unreferenced) == ""

    def test_high_signal_filter(self, extraction):
        delta = compute_shadow_delta(extraction, set())
        assert [u.statement.id for u in high_signal_unreferenced(delta)] == ["s_3", "s_1"]

    def test_top_and_by_stance(self, extraction):
        delta = compute_shadow_delta(extraction, set())
        assert [u.statement.id for u in top_unreferenced(delta, limit=1)] == ["s_3"]
        assert len(top_unreferenced(delta)) == 4
        assert [u.statement.id for u in unreferenced_by_stance(delta, Stance.WARNING)] == ["s_2"]

    def test_prompt_block(self, extraction):
        delta = compute_shadow_delta(extraction, {"s_0"}, QUERY)
        block = format_unreferenced_for_prompt(delta.unreferenced, limit=1)
        assert block.startswith("## Additional Context")
        assert '- (precondition [SEQ]): "Migrations require a staging environment first."' in block
        assert "s_1" not in block

    def test_audit_summary(self, extraction):
        text = format_audit_summary(compute_shadow_delta(extraction, {"s_0"}))
        assert "Unreferenced: 3" in text
        assert "warning: 1/1 (100% unreferenced)" in text


class TestReferencedIds:

    def test_from_claims(self):
        claims = [make_claim("c1", ["s_0", "s_1"]), make_claim("c2", ["s_1", ""])]
        assert referenced_ids_from_claims(claims) == {"s_0", "s_1"}

    def test_from_mapper_text(self):
        assert extract_referenced_ids("Claims cite s_1 and s_12, then s_1 again; ss_3 is noise") == {"s_1", "s_12"}


class TestClaimProvenance:

    @pytest.fixture
    def claims(self):
        return [
            make_claim("c1", ["s_0", "s_1"]),
            make_claim("c2", ["s_1", "s_2"]),
            make_claim("c3", ["s_3"]),
            make_claim("  ", ["s_0"]),
        ]

    def test_ownership_skips_blank_claim_ids(self, claims):
        ownership = compute_statement_ownership(claims)
        assert ownership == {"s_0": {"c1"}, "s_1": {"c1", "c2"}, "s_2": {"c2"}, "s_3": {"c3"}}

    def test_exclusivity(self, claims):
        exclusivity = compute_claim_exclusivity(claims, compute_statement_ownership(claims))
        assert exclusivity["c1"].exclusive_ids == ["s_0"]
        assert exclusivity["c1"].shared_ids == ["s_1"]
        assert exclusivity["c1"].exclusivity_ratio == 0.5
        assert exclusivity["c3"].exclusivity_ratio == 1.0
        assert "  " not in exclusivity

    def test_overlap_keeps_positive_pairs(self, claims):
        overlap = compute_claim_overlap(claims)
        assert len(overlap) == 1
        assert (overlap[0].claim_a, overlap[0].claim_b) == ("c1", "c2")
        assert overlap[0].jaccard == pytest.approx(1 / 3)

    def test_overlap_is_symmetric(self, claims):
        forward = compute_claim_overlap(claims)[0].jaccard
        backward = compute_claim_overlap(list(reversed(claims)))[0].jaccard
        assert forward == backward

    def test_jaccard_edge_cases(self):
        assert jaccard(set(), set()) == 1.0
        assert jaccard({"s_0"}, set()) == 0.0
