"""End-to-end tests for the runner and the command-line entry point."""
import json
import os

import pytest

from conftest import SAMPLE_RESPONSES, FakeEmbeddingProvider, make_claim
from evidence_graph.cli import main
from evidence_graph.config import ClassifierConfig
from evidence_graph.dataclass import QuestionType
from evidence_graph.engine import EvidenceGraphArguments, EvidenceGraphRunner
from evidence_graph.errors import EmbeddingError
from evidence_graph.schemas import ModelResponse, PartitionInput

STAGE_FILES = [
    "statements.json",
    "shadow_delta.json",
    "paragraphs.json",
    "clusters.json",
    "gates.json",
    "conditions.json",
    "conflicts.json",
    "traversal_questions.json",
]

QUERY = "How should a startup deploy its web app?"


class ShortVectorProvider(FakeEmbeddingProvider):
    """Returns vectors of the wrong dimensionality."""

    async def _fetch_batch(self, texts):
        return [[1.0, 0.0] for _ in texts]


@pytest.fixture
def responses():
    return [ModelResponse(**r) for r in SAMPLE_RESPONSES]


@pytest.fixture
def claims():
    return [
        make_claim("c1", ["s_0", "s_1"], label="Managed services", type="conditional"),
        make_claim("c2", ["s_2", "s_3"], label="Avoid self-managed Kubernetes"),
    ]


@pytest.fixture
def partitions():
    return [PartitionInput(id="P0", hinge_question="Managed or serverless?",
                           side_a_statement_ids=["s_0"], side_b_statement_ids=["s_4"])]


def hashing_runner(tmp_path, **kwargs) -> EvidenceGraphRunner:
    args = EvidenceGraphArguments(output_dir=str(tmp_path), query=QUERY, embedding_model_type="hashing")
    return EvidenceGraphRunner(args, **kwargs)


class TestEvidenceGraphRunner:

    @pytest.mark.asyncio
    async def test_pattern_run(self, tmp_path, responses, claims, partitions):
        runner = hashing_runner(tmp_path, classifier_config=ClassifierConfig(prefer_embeddings=False))
        results = await runner.run(responses, claims=claims, partitions=partitions)

        assert len(results.extraction.statements) == 7
        assert results.shadow_delta.audit["unreferenced_count"] == 3

        assert len(results.gates.gates) == 1
        gate = results.gates.gates[0]
        assert gate.question == "Does this apply if you're a startup?"
        assert gate.affected_claims == ["c1"]

        assert [c.question for c in results.conditionals.conditions] == ["Are you a startup?"]

        questions = results.traversal.questions
        assert [q.id for q in questions] == ["tq_0", "tq_1"]
        assert questions[0].type == QuestionType.PARTITION
        assert questions[1].gate_id == "derived_gate_0"
        # Both questions touch the paragraph holding s_0
        assert questions[1].blocked_by == ["tq_0"]

        assert results.statistics["total_statements"] == 7
        assert results.statistics["active_questions"] == 2

    @pytest.mark.asyncio
    async def test_writes_outputs(self, tmp_path, responses, claims):
        runner = hashing_runner(tmp_path, classifier_config=ClassifierConfig(prefer_embeddings=False))
        await runner.run(responses, claims=claims)

        for filename in STAGE_FILES + ["evidence_graph_results.json", "traversal_report.md"]:
            assert os.path.exists(tmp_path / filename), filename

        with open(tmp_path / "evidence_graph_results.json") as f:
            saved = json.load(f)
        assert saved["query"] == QUERY
        assert saved["statistics"]["total_statements"] == 7

        report = (tmp_path / "traversal_report.md").read_text()
        assert report.startswith("# Evidence Graph Report")
        assert "## Traversal Questions" in report

    @pytest.mark.asyncio
    async def test_no_intermediate_files(self, tmp_path, responses):
        args = EvidenceGraphArguments(output_dir=str(tmp_path), embedding_model_type="hashing",
                                      save_intermediate_results=False)
        await EvidenceGraphRunner(args).run(responses)
        assert not os.path.exists(tmp_path / "statements.json")
        assert os.path.exists(tmp_path / "evidence_graph_results.json")

    @pytest.mark.asyncio
    async def test_embedding_classification_reuses_sentence_vectors(self, tmp_path, responses):
        provider = FakeEmbeddingProvider(dimensions=16, batch_size=64)
        runner = EvidenceGraphRunner(EvidenceGraphArguments(output_dir=str(tmp_path)), provider=provider)
        results = await runner.run(responses)

        methods = {s.classification.method for s in results.extraction.statements}
        assert methods <= {"embedding", "pattern"}
        assert all(s.classification.fallback_reason != "label_embeddings_unavailable"
                   for s in results.extraction.statements)
        # Label prototypes and candidate sentences; statements reuse sentence vectors
        assert len(provider.calls) == 2
        assert runner.registry.cached_label_embeddings() is not None

    @pytest.mark.asyncio
    async def test_embedding_failure_propagates(self, tmp_path, responses):
        provider = ShortVectorProvider(dimensions=16)
        runner = EvidenceGraphRunner(EvidenceGraphArguments(output_dir=str(tmp_path)), provider=provider)
        with pytest.raises(EmbeddingError):
            await runner.run(responses)

    @pytest.mark.asyncio
    async def test_empty_input(self, tmp_path):
        runner = hashing_runner(tmp_path)
        results = await runner.run([])
        assert results.extraction.statements == []
        assert results.traversal.questions == []
        assert results.statistics["prunability"] == "none"

    def test_unknown_preset(self, tmp_path):
        with pytest.raises(ValueError):
            EvidenceGraphRunner(EvidenceGraphArguments(output_dir=str(tmp_path), preset="nope",
                                                       embedding_model_type="hashing"))


class TestCli:

    def write_bundle(self, tmp_path, data) -> str:
        path = tmp_path / "bundle.json"
        path.write_text(json.dumps(data))
        return str(path)

    def test_main_runs_offline(self, tmp_path, capsys):
        bundle = {
            "query": QUERY,
            "responses": SAMPLE_RESPONSES,
            "claims": [{"id": "c1", "label": "Managed services", "type": "conditional",
                        "source_statement_ids": ["s_0", "s_1"]}],
        }
        out_dir = tmp_path / "out"
        main(["--input", self.write_bundle(tmp_path, bundle), "--output-dir", str(out_dir), "--preset", "fast"])

        assert os.path.exists(out_dir / "evidence_graph_results.json")
        assert "EVIDENCE GRAPH SUMMARY" in capsys.readouterr().out

    def test_query_override(self, tmp_path):
        out_dir = tmp_path / "out"
        bundle_path = self.write_bundle(tmp_path, {"query": "old", "responses": SAMPLE_RESPONSES})
        main(["--input", bundle_path, "--output-dir", str(out_dir), "--query", "new question", "--no-intermediate"])

        with open(out_dir / "evidence_graph_results.json") as f:
            assert json.load(f)["query"] == "new question"
        assert not os.path.exists(out_dir / "statements.json")

    def test_invalid_bundle_exits_2(self, tmp_path):
        bundle_path = self.write_bundle(tmp_path, {"responses": [{"text": "missing model index"}]})
        with pytest.raises(SystemExit) as exc_info:
            main(["--input", bundle_path, "--output-dir", str(tmp_path / "out")])
        assert exc_info.value.code == 2

    def test_missing_file_exits_2(self, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            main(["--input", str(tmp_path / "absent.json"), "--output-dir", str(tmp_path / "out")])
        assert exc_info.value.code == 2
