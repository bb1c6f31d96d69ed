"""
Evidence Graph Engine

Main execution engine orchestrating every pipeline stage:
1. Statement extraction and shadow delta audit
2. Paragraph projection
3. Embeddings and paragraph clustering
4. Conditional gate derivation
5. Mechanical traversal (conditions and conflicts)
6. Traversal question merge
"""
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional, Sequence

import numpy as np

from .config import (
    ClassifierConfig,
    ConditionalFinderConfig,
    ConflictConfig,
    ExtractionConfig,
    GateConfig,
    TraversalConfig,
    get_preset,
    merge_config,
)
from .dataclass import EvidenceGraphResults, ShadowStatement
from .embeddings import (
    EmbeddingProvider,
    EmbeddingRegistry,
    create_embedding_provider,
    embed_items,
    embed_statements,
    pool_to_paragraph_embeddings,
)
from .modules.claim_provenance import compute_statement_ownership
from .modules.clustering_engine import build_clusters
from .modules.gate_deriver import GateDeriver
from .modules.mechanical_traversal import build_mechanical_traversal
from .modules.paragraph_projector import project_paragraphs
from .modules.question_merge import compute_region_centroids, merge_traversal_questions, regions_for_statements
from .modules.shadow_delta import compute_shadow_delta, query_relevance, referenced_ids_from_claims
from .modules.statement_extractor import StatementExtractor, sentence_embedding_items
from .schemas import ClaimInput, EdgeInput, InputBundle, ModelResponse, PartitionInput, StructuralPatterns

logger = logging.getLogger(__name__)


@dataclass
class EvidenceGraphArguments:
    """
    Arguments for the evidence graph runner.

    Embeddings go through litellm by default; `embedding_model_type="hashing"`
    runs fully offline.
    """
    output_dir: str
    query: str = ""
    preset: str = "balanced"
    save_intermediate_results: bool = True

    # Embedding configuration
    embedding_model_type: str = "litellm"  # "litellm" or "hashing"
    embedding_model_name: str = "text-embedding-3-small"
    embedding_dimensions: Optional[int] = None  # None: take the preset's dimensions
    embedding_api_key: Optional[str] = None  # Or set via the provider's env var
    embedding_api_base: Optional[str] = None
    embedding_batch_size: int = 64

    # Key for the term index cache; one per conversational turn
    turn_id: Optional[str] = None


class EvidenceGraphRunner:
    """
    Main runner for the evidence graph pipeline.

    Usage:
        runner = EvidenceGraphRunner(EvidenceGraphArguments(output_dir="out"))
        results = await runner.run(responses, claims=claims, patterns=patterns)
        runner.summary()
    """

    def __init__(
        self,
        args: EvidenceGraphArguments,
        provider: Optional[EmbeddingProvider] = None,
        extraction_config: Optional[ExtractionConfig] = None,
        classifier_config: Optional[ClassifierConfig] = None,
        gate_config: Optional[GateConfig] = None,
        conditional_config: Optional[ConditionalFinderConfig] = None,
        conflict_config: Optional[ConflictConfig] = None,
        traversal_config: Optional[TraversalConfig] = None,
    ):
        self.args = args

        # Create output directory
        Path(args.output_dir).mkdir(parents=True, exist_ok=True)

        self.clustering_config = get_preset(args.preset)
        if args.embedding_dimensions is not None:
            self.clustering_config = merge_config(self.clustering_config, embedding_dimensions=args.embedding_dimensions)

        if provider is None:
            provider = create_embedding_provider(
                args.embedding_model_type,
                model=args.embedding_model_name,
                dimensions=self.clustering_config.embedding_dimensions,
                api_key=args.embedding_api_key,
                api_base=args.embedding_api_base,
                batch_size=args.embedding_batch_size,
            )
        self.registry = EmbeddingRegistry(provider)

        self.extraction_config = extraction_config or ExtractionConfig()
        self.classifier_config = classifier_config or ClassifierConfig()
        self.gate_config = gate_config or GateConfig()
        self.conditional_config = conditional_config or ConditionalFinderConfig()
        self.conflict_config = conflict_config or ConflictConfig()
        self.traversal_config = traversal_config or TraversalConfig()

        self.results: Optional[EvidenceGraphResults] = None

    @property
    def provider(self) -> EmbeddingProvider:
        return self.registry.provider

    def _save_stage(self, filename: str, payload) -> None:
        if not self.args.save_intermediate_results:
            return
        path = os.path.join(self.args.output_dir, filename)
        logger.info(f"Saving {filename} to {path}")
        with open(path, 'w') as f:
            json.dump(payload, f, indent=2)

    async def _statement_vectors(
        self,
        statements: Sequence[ShadowStatement],
        sentence_vectors: Mapping[str, np.ndarray],
    ) -> Dict[str, np.ndarray]:
        """Reuse the sentence vectors fetched for classification; embed the rest."""
        vectors = {s.id: sentence_vectors[s.text] for s in statements if s.text in sentence_vectors}
        missing = [s for s in statements if s.id not in vectors]
        if missing:
            vectors.update(await embed_statements(self.provider, missing))
        return vectors

    async def run_bundle(self, bundle: InputBundle) -> EvidenceGraphResults:
        """Run the pipeline over a validated input bundle."""
        return await self.run(
            bundle.responses,
            claims=bundle.claims,
            edges=bundle.edges,
            patterns=bundle.patterns,
            partitions=bundle.partitions,
            query=bundle.query or None,
            statement_disruption_scores=bundle.statement_disruption_scores or None,
            pruned_statement_ids=bundle.pruned_statement_ids,
            referenced_statement_ids=bundle.referenced_statement_ids,
        )

    async def run(
        self,
        responses: Sequence[ModelResponse],
        claims: Sequence[ClaimInput] = (),
        edges: Sequence[EdgeInput] = (),
        patterns: Optional[StructuralPatterns] = None,
        partitions: Sequence[PartitionInput] = (),
        query: Optional[str] = None,
        statement_disruption_scores: Optional[Mapping[str, float]] = None,
        pruned_statement_ids: Sequence[str] = (),
        referenced_statement_ids: Sequence[str] = (),
    ) -> EvidenceGraphResults:
        """
        Run the complete pipeline.

        Args:
            responses: Model responses in model order
            claims: Upstream claims with source statement ids
            edges: Claim graph edges
            patterns: Structural patterns holding conflict records
            partitions: Two-sided evidence splits
            query: The user's question (defaults to `args.query`)
            statement_disruption_scores: Statement id -> disruption score;
                defaults to the number of claims citing each statement
            pruned_statement_ids: Statements pruned by earlier decisions
            referenced_statement_ids: Statement ids a mapper referenced, in
                addition to the claims' own sources

        Returns:
            EvidenceGraphResults object

        Raises:
            EmbeddingError: An embedding batch failed or came back misaligned
        """
        query = self.args.query if query is None else query
        patterns = patterns or StructuralPatterns()

        logger.info("="*80)
        logger.info("EVIDENCE GRAPH: statements, clusters, gates and traversal")
        logger.info(f"Query: {query or '(none)'}")
        logger.info(f"Responses: {len(responses)}, claims: {len(claims)}, partitions: {len(partitions)}")
        logger.info("="*80)

        # Stage 1: Extraction
        labels = await self.registry.get_label_embeddings() if self.classifier_config.prefer_embeddings else None
        extractor = StatementExtractor(self.extraction_config, self.classifier_config, labels)
        sentence_vectors: Dict[str, np.ndarray] = {}
        if labels is not None:
            sentences = extractor.candidate_sentences(responses)
            logger.info(f"Embedding {len(sentences)} candidate sentences for classification")
            sentence_vectors = await embed_items(self.provider, sentence_embedding_items(sentences))
        extraction = extractor.extract(responses, sentence_vectors)
        statements = extraction.statements
        self._save_stage("statements.json", extraction.to_dict())

        referenced = set(referenced_statement_ids) | referenced_ids_from_claims(claims)
        shadow_delta = compute_shadow_delta(extraction, referenced, query)
        self._save_stage("shadow_delta.json", shadow_delta.to_dict())

        # Stage 2: Projection
        projection = project_paragraphs(statements)
        self._save_stage("paragraphs.json", projection.to_dict())

        # Stage 3: Embeddings and clustering
        statement_vectors = await self._statement_vectors(statements, sentence_vectors)
        paragraph_vectors = pool_to_paragraph_embeddings(
            projection.paragraphs, statements, statement_vectors, self.provider.dimensions
        )
        clustering = build_clusters(projection.paragraphs, paragraph_vectors, self.clustering_config)
        self._save_stage("clusters.json", clustering.to_dict())

        # Stage 4: Gates
        relevance = {s.id: query_relevance(s.text, query) for s in statements} if query else None
        gates = GateDeriver(self.gate_config, self.registry).derive(
            claims, statements, edges, patterns, statement_vectors, relevance, self.args.turn_id
        )
        self._save_stage("gates.json", gates.to_dict())

        # Stage 5: Conditions and conflicts
        traversal = build_mechanical_traversal(
            claims, statements, edges, patterns, statement_vectors, gates.gates,
            self.conditional_config, self.conflict_config,
        )
        self._save_stage("conditions.json", traversal["conditionals"].to_dict())
        self._save_stage("conflicts.json", traversal["conflicts"].to_dict())

        # Stage 6: Question merge
        if statement_disruption_scores is None:
            statement_disruption_scores = {
                sid: float(len(owners)) for sid, owners in compute_statement_ownership(claims).items()
            }
        clusters = clustering.clusters
        merged = merge_traversal_questions(
            partitions,
            gates.gates,
            region_centroids=compute_region_centroids(clusters, paragraph_vectors),
            pruned_statement_ids=set(pruned_statement_ids),
            partition_regions={p.id: regions_for_statements(p.side_a() + p.side_b(), clusters) for p in partitions},
            gate_regions={g.id: regions_for_statements(g.source_statement_ids, clusters) for g in gates.gates},
            statement_disruption_scores=statement_disruption_scores,
            config=self.traversal_config,
        )
        self._save_stage("traversal_questions.json", merged.to_dict())

        self.results = EvidenceGraphResults(
            query=query,
            extraction=extraction,
            shadow_delta=shadow_delta,
            projection=projection,
            clustering=clustering,
            gates=gates,
            conditionals=traversal["conditionals"],
            conflicts=traversal["conflicts"],
            traversal=merged,
            prunability=traversal["summary"],
        )
        self.results.statistics = self._compute_statistics()
        self._save_results()

        logger.info("="*80)
        logger.info("EVIDENCE GRAPH COMPLETED SUCCESSFULLY")
        logger.info("="*80)

        return self.results

    def _compute_statistics(self) -> dict:
        """Compute statistics about the results."""
        if not self.results:
            return {}

        r = self.results
        clustering_meta = r.clustering.meta
        return {
            "total_statements": len(r.extraction.statements),
            "total_paragraphs": len(r.projection.paragraphs),
            "total_clusters": clustering_meta.get("total_clusters", len(r.clustering.clusters)),
            "uncertain_clusters": clustering_meta.get("uncertain_count", 0),
            "unreferenced_statements": r.shadow_delta.audit.get("unreferenced_count", 0),
            "derived_gates": len(r.gates.gates),
            "extracted_conditions": len(r.conditionals.conditions),
            "passing_conflicts": r.conflicts.meta.get("passing_filter", 0),
            "active_questions": len(r.traversal.questions),
            "auto_resolved_questions": len(r.traversal.auto_resolved),
            "prunability": r.prunability.get("summary", {}).get("prunability_assessment", "none"),
        }

    def _save_results(self):
        """Save final results to disk."""
        if not self.results:
            return

        # Complete results as JSON
        results_path = os.path.join(self.args.output_dir, "evidence_graph_results.json")
        logger.info(f"Saving complete results to {results_path}")
        with open(results_path, 'w') as f:
            json.dump(self.results.to_dict(), f, indent=2)

        # Human-readable report
        report_path = os.path.join(self.args.output_dir, "traversal_report.md")
        logger.info(f"Saving traversal report to {report_path}")
        self._generate_markdown_report(report_path)

    def _generate_markdown_report(self, output_path: str):
        """Generate markdown report."""
        if not self.results:
            return

        stats = self.results.statistics

        report = f"""# Evidence Graph Report

**Query**: {self.results.query or "(none)"}

**Analysis Date**: {self.results.generation_date.strftime("%Y-%m-%d %H:%M:%S")}

---

## Summary Statistics

- **Statements**: {stats.get('total_statements', 0)}
- **Paragraphs**: {stats.get('total_paragraphs', 0)}
- **Clusters**: {stats.get('total_clusters', 0)} ({stats.get('uncertain_clusters', 0)} uncertain)
- **Unreferenced Statements**: {stats.get('unreferenced_statements', 0)}
- **Derived Gates**: {stats.get('derived_gates', 0)}
- **Extracted Conditions**: {stats.get('extracted_conditions', 0)}
- **Passing Conflicts**: {stats.get('passing_conflicts', 0)}
- **Prunability**: {stats.get('prunability', 'none')}

## Traversal Questions

"""

        if not self.results.traversal.questions:
            report += "No questions for this landscape.\n\n"
        for q in self.results.traversal.questions:
            report += f"""### {q.id}: {q.question}
- **Type**: {q.type.value}
- **Status**: {q.status.value}
- **Priority**: {q.priority:.3f}
- **Affected Statements**: {len(q.affected_statement_ids)}
"""
            if q.blocked_by:
                report += f"- **Blocked By**: {', '.join(q.blocked_by)}\n"
            report += "\n"

        if self.results.traversal.auto_resolved:
            report += "## Auto-resolved Questions\n\n"
            for q in self.results.traversal.auto_resolved:
                report += f"- **{q.id}**: {q.question} ({q.auto_resolved_reason})\n"
            report += "\n"

        passing = [c for c in self.results.conflicts.conflicts if c.passed_filter]
        if passing:
            report += "## Conflicts\n\n"
            for c in passing:
                blocked = " (blocked by gates)" if c.blocked_by_gates else ""
                report += (
                    f"- **{c.claim_a.label or c.claim_a.id}** vs **{c.claim_b.label or c.claim_b.id}**: "
                    f"{c.question}, significance {c.significance:.2f}, {c.stance_asymmetry.value}{blocked}\n"
                )
            report += "\n"

        evidence = self.results.prunability.get("summary", {}).get("assessment_evidence", [])
        if evidence:
            report += "## Prunability Evidence\n\n"
            for line in evidence:
                report += f"- {line}\n"

        with open(output_path, 'w') as f:
            f.write(report)

    def summary(self):
        """Print summary of results."""
        if not self.results:
            logger.warning("No results available")
            return

        stats = self.results.statistics

        print("\n" + "="*80)
        print("EVIDENCE GRAPH SUMMARY")
        print("="*80)
        print(f"\nQuery: {self.results.query or '(none)'}")
        print(f"\nExtracted {stats.get('total_statements', 0)} statements in {stats.get('total_paragraphs', 0)} paragraphs")
        print(f"Clusters: {stats.get('total_clusters', 0):4d} ({stats.get('uncertain_clusters', 0)} uncertain)")
        print(f"\nTraversal:")
        print(f"  Gates:          {stats.get('derived_gates', 0):4d}")
        print(f"  Conditions:     {stats.get('extracted_conditions', 0):4d}")
        print(f"  Conflicts:      {stats.get('passing_conflicts', 0):4d}")
        print(f"  Questions:      {stats.get('active_questions', 0):4d} ({stats.get('auto_resolved_questions', 0)} auto-resolved)")
        print(f"\nPrunability: {stats.get('prunability', 'none')}")
        print(f"\nResults saved to: {self.args.output_dir}")
        print("="*80 + "\n")
