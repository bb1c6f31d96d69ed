"""
Traversal question merge.

Normalizes partitions and derived gates into one TraversalQuestion queue:
priority from disruption scores, blocking from region-centroid similarity,
auto-resolution from already-pruned evidence, then a capped, renumbered
active list.
"""
import logging
from typing import Dict, List, Mapping, Optional, Sequence, Set

import numpy as np

from ..config import TraversalConfig
from ..dataclass import (
    DerivedConditionalGate,
    ParagraphCluster,
    QuestionStatus,
    QuestionType,
    TraversalQuestion,
    TraversalQuestionMergeResult,
)
from ..distance import cosine_similarity, mean_vector
from ..schemas import PartitionInput

logger = logging.getLogger(__name__)


# ============================================================================
# Regions
# ============================================================================

def compute_region_centroids(
    clusters: Sequence[ParagraphCluster],
    paragraph_vectors: Mapping[str, np.ndarray],
) -> Dict[str, np.ndarray]:
    """Cluster id -> normalized mean of its paragraph vectors."""
    centroids = {}
    for cluster in clusters:
        centroid = mean_vector([paragraph_vectors[pid] for pid in cluster.paragraph_ids if pid in paragraph_vectors])
        if centroid is not None:
            centroids[cluster.id] = centroid
    return centroids


def regions_for_statements(statement_ids: Sequence[str], clusters: Sequence[ParagraphCluster]) -> List[str]:
    """Ids of the clusters holding any of the statements, in cluster order."""
    wanted = set(statement_ids)
    return [c.id for c in clusters if wanted.intersection(c.statement_ids)]


# ============================================================================
# Conversion
# ============================================================================

class DisruptionScorer:
    """Per-question disruption, rescaled against the largest score in play."""

    def __init__(self, scores: Mapping[str, float], affected_ids: Sequence[str]):
        self.scores = {k: v for k, v in scores.items() if np.isfinite(v)}
        self.max_score = max((self.scores.get(sid.strip(), 0.0) for sid in affected_ids if sid.strip()), default=0.0)
        if self.max_score <= 0:
            self.max_score = 0.0

    def __call__(self, statement_ids: Sequence[str]) -> float:
        if not statement_ids or self.max_score <= 0:
            return 0.0
        best = max((self.scores.get(sid.strip(), 0.0) for sid in statement_ids if sid.strip()), default=0.0)
        return max(0.0, min(1.0, best / self.max_score))


def partition_to_question(
    partition: PartitionInput,
    index: int,
    region_ids: Sequence[str],
    disruption: float,
    config: TraversalConfig,
) -> TraversalQuestion:
    side_a, side_b = partition.side_a(), partition.side_b()
    return TraversalQuestion(
        id=f"tq_partition_{index}",
        type=QuestionType.PARTITION,
        question=partition.hinge_question or "Which perspective applies?",
        condition=partition.hinge_question,
        priority=disruption + config.partition_type_boost,
        confidence=config.partition_confidence,
        affected_statement_ids=sorted(set(side_a) | set(side_b)),
        source_region_ids=list(region_ids),
        partition_id=partition.id,
        side_a_statement_ids=side_a,
        side_b_statement_ids=side_b,
        default_side=partition.default_side,
    )


def gate_to_question(
    gate: DerivedConditionalGate,
    index: int,
    region_ids: Sequence[str],
    disruption: float,
) -> TraversalQuestion:
    return TraversalQuestion(
        id=f"tq_conditional_{index}",
        type=QuestionType.CONDITIONAL,
        question=gate.question,
        condition=gate.condition,
        priority=disruption,
        confidence=gate.confidence,
        affected_statement_ids=list(gate.source_statement_ids),
        source_region_ids=list(region_ids),
        anchor_terms=list(gate.anchor_terms),
        gate_id=gate.id,
        affected_claims=list(gate.affected_claims),
        exclusivity_ratio=gate.exclusivity_ratio,
    )


# ============================================================================
# Blocking and auto-resolution
# ============================================================================

def compute_blocked_by(
    conditional_questions: Sequence[TraversalQuestion],
    partition_questions: Sequence[TraversalQuestion],
    region_centroids: Mapping[str, np.ndarray],
    threshold: float = 0.5,
) -> None:
    """Block a conditional behind every partition whose regions sit close to its own."""
    for gate in conditional_questions:
        blockers = []
        for partition in partition_questions:
            max_sim = 0.0
            for gate_rid in gate.source_region_ids:
                gate_centroid = region_centroids.get(gate_rid)
                if gate_centroid is None:
                    continue
                for part_rid in partition.source_region_ids:
                    part_centroid = region_centroids.get(part_rid)
                    if part_centroid is None:
                        continue
                    max_sim = max(max_sim, cosine_similarity(gate_centroid, part_centroid))
            if max_sim > threshold:
                blockers.append(partition.id)
        gate.blocked_by = blockers
        if blockers:
            gate.status = QuestionStatus.BLOCKED


def auto_resolve(
    questions: Sequence[TraversalQuestion],
    pruned_statement_ids: Set[str],
    ratio_threshold: float = 0.8,
) -> List[TraversalQuestion]:
    """
    Resolve conditionals whose evidence is already mostly pruned.

    Answered and already auto-resolved questions are skipped, and so is
    any question without affected statements.

    Returns:
        The questions resolved by this call
    """
    resolved = []
    for q in questions:
        if q.type != QuestionType.CONDITIONAL:
            continue
        if q.status in (QuestionStatus.ANSWERED, QuestionStatus.AUTO_RESOLVED):
            continue
        if not q.affected_statement_ids:
            continue
        pruned = sum(1 for sid in q.affected_statement_ids if sid in pruned_statement_ids)
        ratio = pruned / len(q.affected_statement_ids)
        if ratio >= ratio_threshold:
            q.status = QuestionStatus.AUTO_RESOLVED
            q.answer = "yes"
            q.auto_resolved_reason = f"{ratio * 100:.0f}% of affected statements already pruned"
            resolved.append(q)
    return resolved


# ============================================================================
# Merge
# ============================================================================

def merge_traversal_questions(
    partitions: Sequence[PartitionInput],
    gates: Sequence[DerivedConditionalGate],
    region_centroids: Optional[Mapping[str, np.ndarray]] = None,
    pruned_statement_ids: Optional[Set[str]] = None,
    partition_regions: Optional[Mapping[str, Sequence[str]]] = None,
    gate_regions: Optional[Mapping[str, Sequence[str]]] = None,
    statement_disruption_scores: Optional[Mapping[str, float]] = None,
    config: Optional[TraversalConfig] = None,
) -> TraversalQuestionMergeResult:
    """
    Build the capped traversal question queue.

    Args:
        partitions: Two-sided evidence splits
        gates: Derived conditional gates
        region_centroids: Region id -> centroid vector, used for blocking
        pruned_statement_ids: Statements pruned by earlier decisions
        partition_regions: Partition id -> region ids
        gate_regions: Gate id -> region ids
        statement_disruption_scores: Statement id -> disruption score
        config: Traversal configuration

    Returns:
        TraversalQuestionMergeResult with active questions `tq_0..` and the
        auto-resolved questions under their pre-merge ids
    """
    config = config or TraversalConfig()
    region_centroids = region_centroids or {}
    partition_regions = partition_regions or {}
    gate_regions = gate_regions or {}

    affected_ids: List[str] = []
    for p in partitions:
        affected_ids.extend(p.side_a() + p.side_b())
    for g in gates:
        affected_ids.extend(g.source_statement_ids)
    disruption = DisruptionScorer(statement_disruption_scores or {}, affected_ids)

    partition_questions = [
        partition_to_question(p, i, partition_regions.get(p.id, []), disruption(p.side_a() + p.side_b()), config)
        for i, p in enumerate(partitions)
    ]

    conditional_questions = [
        gate_to_question(g, i, gate_regions.get(g.id, []), disruption(g.source_statement_ids))
        for i, g in enumerate(gates)
    ]

    compute_blocked_by(conditional_questions, partition_questions, region_centroids, config.blocked_by_cosine_threshold)

    questions = partition_questions + conditional_questions
    questions.sort(key=lambda q: (-q.priority, q.id))
    total_before_cap = len(questions)

    resolved = auto_resolve(questions, pruned_statement_ids, config.auto_resolve_pruned_ratio) if pruned_statement_ids else []

    active = [q for q in questions if q.status != QuestionStatus.AUTO_RESOLVED][:config.max_questions]
    auto_resolved = [q for q in questions if q.status == QuestionStatus.AUTO_RESOLVED]

    id_mapping = {q.id: f"tq_{i}" for i, q in enumerate(active)}
    for q in active:
        q.id = id_mapping[q.id]
        q.blocked_by = [id_mapping[b] for b in q.blocked_by if b in id_mapping]
        if q.status == QuestionStatus.BLOCKED and not q.blocked_by:
            q.status = QuestionStatus.PENDING
    for q in auto_resolved:
        q.blocked_by = [id_mapping[b] for b in q.blocked_by if b in id_mapping]

    meta = {
        "partition_count": len(partition_questions),
        "conditional_count": len(conditional_questions),
        "total_before_cap": total_before_cap,
        "total_after_cap": len(active),
        "auto_resolved_count": len(resolved),
        "blocked_count": sum(1 for q in active if q.status == QuestionStatus.BLOCKED),
    }
    logger.info(
        f"Merged {total_before_cap} questions into {len(active)} active "
        f"({len(resolved)} auto-resolved, {meta['blocked_count']} blocked)"
    )
    if total_before_cap - len(resolved) > config.max_questions:
        logger.warning(f"Question cap {config.max_questions} hit, dropped {total_before_cap - len(resolved) - len(active)}")
    return TraversalQuestionMergeResult(questions=active, auto_resolved=auto_resolved, meta=meta)
