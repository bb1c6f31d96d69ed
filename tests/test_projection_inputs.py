"""Tests for paragraph projection, input schemas and lenient JSON parsing."""
import pytest

from conftest import make_statement
from evidence_graph.dataclass import Stance
from evidence_graph.errors import InputValidationError
from evidence_graph.modules.paragraph_projector import (
    MAX_STATEMENT_CHARS,
    compute_dominant_stance,
    project_paragraphs,
    to_clusterable_items,
)
from evidence_graph.parsing import extract_statement_ids, safe_json_loads
from evidence_graph.schemas import PartitionInput, validate_bundle, validate_claims, validate_responses


# =============================================================================
# Paragraph projection
# =============================================================================

@pytest.fixture
def statements():
    return [
        make_statement("s_2", "Serverless scales to zero at night.", model_index=1, confidence=0.5),
        make_statement("s_0", "You should pick a managed database.", Stance.DIRECTIVE, sentence_index=1, confidence=0.8,
                       conditional=True),
        make_statement("s_1", "Avoid hosting it yourself early on.", Stance.WARNING, sentence_index=0, confidence=0.6),
        make_statement("s_3", "Use provisioned concurrency for APIs.", Stance.DIRECTIVE, model_index=1,
                       sentence_index=1, confidence=0.4),
        make_statement("s_4", "Billing is per invocation and duration.", model_index=1, sentence_index=2,
                       confidence=0.3, tension=True),
        make_statement("s_5", "Set up CI before adding services.", Stance.PRECONDITION, paragraph_index=1),
    ]


class TestDominantStance:

    def test_contested_takes_highest_priority(self):
        stance, contested, hints = compute_dominant_stance(
            [Stance.DIRECTIVE, Stance.WARNING], {Stance.DIRECTIVE: 0.9, Stance.WARNING: 0.1}
        )
        assert (stance, contested) == (Stance.WARNING, True)
        assert hints == [Stance.WARNING, Stance.DIRECTIVE]

    def test_confidence_sum_wins(self):
        stance, contested, _ = compute_dominant_stance(
            [Stance.FACTUAL, Stance.DIRECTIVE, Stance.FACTUAL], {Stance.FACTUAL: 0.8, Stance.DIRECTIVE: 0.4}
        )
        assert (stance, contested) == (Stance.FACTUAL, False)

    def test_tie_goes_to_priority(self):
        stance, _, _ = compute_dominant_stance(
            [Stance.DIRECTIVE, Stance.PRECONDITION], {Stance.DIRECTIVE: 0.5, Stance.PRECONDITION: 0.5}
        )
        assert stance == Stance.PRECONDITION

    def test_empty(self):
        assert compute_dominant_stance([], {}) == (Stance.FACTUAL, False, [])


class TestProjectParagraphs:

    def test_grouping_and_order(self, statements):
        result = project_paragraphs(statements)
        paragraphs = result.paragraphs

        assert [p.id for p in paragraphs] == ["p_0", "p_1", "p_2"]
        assert [(p.model_index, p.paragraph_index) for p in paragraphs] == [(0, 0), (0, 1), (1, 0)]
        assert paragraphs[0].statement_ids == ["s_1", "s_0"]
        assert paragraphs[2].statement_ids == ["s_2", "s_3", "s_4"]

    def test_paragraph_attributes(self, statements):
        first, second, third = project_paragraphs(statements).paragraphs

        assert first.dominant_stance == Stance.WARNING
        assert first.contested
        assert first.confidence == 0.8
        assert first.signals.conditional
        assert [s.signals for s in first.statements] == [[], ["COND"]]

        assert second.dominant_stance == Stance.PRECONDITION
        assert third.dominant_stance == Stance.FACTUAL
        assert not third.contested
        assert third.signals.tension

    def test_meta(self, statements):
        meta = project_paragraphs(statements).meta
        assert meta == {"total_paragraphs": 3, "by_model": {"0": 2, "1": 1}, "contested_count": 1}

    def test_surface_text_is_clipped_but_clusterable_text_is_not(self):
        long_text = "word " * 100
        statements = [make_statement("s_0", long_text)]
        paragraph = project_paragraphs(statements).paragraphs[0]

        assert len(paragraph.statements[0].text) <= MAX_STATEMENT_CHARS
        assert to_clusterable_items([paragraph], statements) == [("p_0", long_text)]


# =============================================================================
# Schemas
# =============================================================================

class TestSchemas:

    def test_bundle_defaults_and_edge_alias(self):
        bundle = validate_bundle({
            "responses": [{"model_index": 0, "text": "Use Postgres."}],
            "edges": [{"from": "c1", "to": "c2", "type": "conflicts"}],
        })
        assert bundle.query == ""
        assert bundle.claims == []
        assert bundle.patterns.conflicts == []
        assert (bundle.edges[0].from_id, bundle.edges[0].to_id) == ("c1", "c2")

    def test_bad_edge_type(self):
        with pytest.raises(InputValidationError) as exc_info:
            validate_bundle({"responses": [], "edges": [{"from": "a", "to": "b", "type": "blocks"}]})
        assert exc_info.value.kind == "bundle"

    def test_missing_responses(self):
        with pytest.raises(InputValidationError):
            validate_bundle({"query": "anything"})

    def test_lists_required(self):
        with pytest.raises(InputValidationError):
            validate_responses({"model_index": 0})
        with pytest.raises(InputValidationError):
            validate_claims("c1")

    def test_claim_defaults(self):
        claim = validate_claims([{"id": "c1"}])[0]
        assert claim.type == "factual"
        assert claim.source_statement_ids == []

    def test_partition_prefers_advocacy(self):
        partition = PartitionInput(
            id="P0",
            side_a_statement_ids=["s_0", "s_1"],
            side_a_advocacy_statement_ids=["s_1"],
            side_b_statement_ids=["s_2", ""],
        )
        assert partition.side_a() == ["s_1"]
        assert partition.side_b() == ["s_2"]


# =============================================================================
# Parsing
# =============================================================================

class TestSafeJsonLoads:

    def test_fenced_block_with_trailing_comma(self):
        assert safe_json_loads('Here:\n```json\n{"a": [1, 2,],}\n```') == {"a": [1, 2]}

    def test_unquoted_keys(self):
        assert safe_json_loads('{query: "x", claims: []}') == {"query": "x", "claims": []}

    def test_repairs_leave_string_values_alone(self):
        text = '{note: "see a: b", tags: ["x,]"], count: 2,}'
        assert safe_json_loads(text) == {"note": "see a: b", "tags": ["x,]"], "count": 2}

    def test_passthrough_and_fallbacks(self):
        assert safe_json_loads({"a": 1}) == {"a": 1}
        assert safe_json_loads("[oops") == []
        assert safe_json_loads("nonsense") == {}
        assert safe_json_loads(None) == {}

    def test_statement_ids(self):
        assert extract_statement_ids(["s_3", "see s_1 and s_3"]) == ["s_3", "s_1"]
        assert extract_statement_ids(42) == []
