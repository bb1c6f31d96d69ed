"""
Clustering Engine

Groups ShadowParagraphs into semantic clusters:
1. Distance matrix from paragraph embeddings (stance/model adjusted)
2. Average-linkage HAC with optional mutual kNN discount
3. Centroid, cohesion and uncertainty per cluster
4. Bounded raw-text expansion for uncertain clusters

Output is deterministic for identical inputs and configuration.
"""
import logging
import math
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from ..config import ClusteringConfig
from ..dataclass import (
    ClusterExpansionMember,
    ClusteringResult,
    ParagraphCluster,
    ShadowParagraph,
    UncertaintyReason,
)
from ..distance import build_distance_matrix, compute_cohesion, cosine_similarity, mean_vector, pairwise_cohesion, quantize
from .hac import build_mutual_knn_graph, hierarchical_cluster

logger = logging.getLogger(__name__)


def _clip(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars].strip() + "..."


def find_centroid(member_ids: Sequence[str], vectors: Mapping[str, np.ndarray]) -> Tuple[str, float]:
    """
    The member closest to the normalized mean vector.

    Ties go to the lexically smallest id.

    Returns:
        (centroid_id, quantized similarity to the mean)
    """
    if len(member_ids) == 1:
        return member_ids[0], 1.0
    present = [mid for mid in member_ids if mid in vectors]
    mean = mean_vector([vectors[mid] for mid in present])
    if mean is None:
        return member_ids[0], 0.0

    best_id, best_sim = None, -math.inf
    for mid in present:
        sim = quantize(cosine_similarity(vectors[mid], mean))
        if sim > best_sim or (sim == best_sim and mid < best_id):
            best_id, best_sim = mid, sim
    return best_id, best_sim


def detect_uncertainty(
    member_ids: Sequence[str],
    paragraphs_by_id: Mapping[str, ShadowParagraph],
    cohesion: float,
    pairwise: float,
    config: ClusteringConfig,
    missing_vectors: bool = False,
) -> List[UncertaintyReason]:
    """
    Every applicable uncertainty reason, evaluated in a fixed order.

    A cluster whose centroid has no vector reports `missing_vectors`
    instead of a cohesion reason.
    """
    reasons = []
    members = [paragraphs_by_id[mid] for mid in member_ids if mid in paragraphs_by_id]

    if missing_vectors:
        reasons.append(UncertaintyReason.MISSING_VECTORS)
    elif cohesion < config.low_cohesion_threshold:
        reasons.append(UncertaintyReason.LOW_COHESION)

    # Two sub-groups both near the centroid but far from each other
    if (
        len(member_ids) >= config.dumbbell_min_members
        and cohesion >= config.low_cohesion_threshold
        and pairwise < config.low_cohesion_threshold
        and cohesion - pairwise >= config.dumbbell_gap
    ):
        reasons.append(UncertaintyReason.DUMBBELL_CLUSTER)

    if len(member_ids) > config.max_cluster_size:
        reasons.append(UncertaintyReason.OVERSIZED)

    if len({p.dominant_stance for p in members}) >= config.stance_diversity_threshold:
        reasons.append(UncertaintyReason.STANCE_DIVERSITY)

    contested = sum(1 for p in members if p.contested)
    if member_ids and contested / len(member_ids) > config.contested_ratio_threshold:
        reasons.append(UncertaintyReason.HIGH_CONTESTED_RATIO)

    has_tension = any(p.signals.tension for p in members)
    has_conditional = any(p.signals.conditional for p in members)
    if has_tension and has_conditional and len(member_ids) > 1:
        reasons.append(UncertaintyReason.CONFLICTING_SIGNALS)

    return reasons


def build_expansion(
    member_ids: Sequence[str],
    centroid_id: str,
    paragraphs_by_id: Mapping[str, ShadowParagraph],
    vectors: Mapping[str, np.ndarray],
    config: ClusteringConfig,
) -> List[ClusterExpansionMember]:
    """
    Raw paragraph text for an uncertain cluster.

    Centroid first, then the members least similar to it, until the member
    count or the character budget runs out.
    """
    centroid_vec = vectors.get(centroid_id)
    if centroid_vec is None:
        return []

    by_distance = sorted(
        (
            (quantize(cosine_similarity(vectors[mid], centroid_vec)) if mid in vectors else 0.0, mid)
            for mid in member_ids
        ),
        key=lambda pair: (pair[0], pair[1]),
    )
    ordered = [centroid_id] + [mid for _, mid in by_distance if mid != centroid_id]
    selected = ordered[:config.max_expansion_members]

    members = []
    budget = config.max_expansion_chars_total
    for mid in selected:
        para = paragraphs_by_id.get(mid)
        if para is None:
            continue
        text = _clip(para.full_paragraph, config.max_member_text_chars)
        if budget - len(text) < 0:
            break
        budget -= len(text)
        members.append(ClusterExpansionMember(paragraph_id=mid, text=text))
    return members


def _singleton_clusters(paragraphs: Sequence[ShadowParagraph], config: ClusteringConfig) -> ClusteringResult:
    clusters = [
        ParagraphCluster(
            id=f"pc_{i}",
            paragraph_ids=[p.id],
            statement_ids=list(p.statement_ids),
            representative_paragraph_id=p.id,
            representative_text=_clip(p.full_paragraph, config.max_member_text_chars),
            cohesion=1.0,
            pairwise_cohesion=1.0,
            uncertain=False,
        )
        for i, p in enumerate(paragraphs)
    ]
    return ClusteringResult(clusters=clusters, meta=_build_meta(clusters, len(paragraphs)))


def _build_meta(clusters: Sequence[ParagraphCluster], paragraph_count: int) -> Dict:
    sizes = [c.size for c in clusters]
    return {
        "total_clusters": len(clusters),
        "singleton_count": sum(1 for s in sizes if s == 1),
        "uncertain_count": sum(1 for c in clusters if c.uncertain),
        "avg_cluster_size": sum(sizes) / len(sizes) if sizes else 0,
        "max_cluster_size": max(sizes) if sizes else 0,
        "compression_ratio": len(clusters) / paragraph_count if paragraph_count else 1,
    }


def _log_similarity_distribution(ids: Sequence[str], distances: List[List[float]], threshold: float) -> None:
    sims = []
    for i in range(len(ids)):
        for j in range(i + 1, len(ids)):
            if math.isfinite(distances[i][j]):
                sims.append((1 - distances[i][j], ids[i], ids[j]))
    if not sims:
        return
    max_sim = max(s for s, _, _ in sims)
    above = sum(1 for s, _, _ in sims if s >= threshold)
    top = sorted(sims, key=lambda x: -x[0])[:5]
    logger.debug(f"Similarity distribution: max={max_sim:.3f}, threshold={threshold}, pairs above={above}/{len(sims)}")
    logger.debug(f"Top pairs: {[f'{a}-{b}: {s:.3f}' for s, a, b in top]}")
    if max_sim < threshold:
        logger.warning(f"Max similarity {max_sim:.3f} is below threshold {threshold}, all singletons expected")


def build_clusters(
    paragraphs: Sequence[ShadowParagraph],
    vectors: Mapping[str, np.ndarray],
    config: Optional[ClusteringConfig] = None,
    mutual_edges=None,
) -> ClusteringResult:
    """
    Cluster paragraphs by embedding similarity.

    Args:
        paragraphs: Projected paragraphs
        vectors: Paragraph vectors by paragraph id (unit length)
        config: Clustering configuration
        mutual_edges: Precomputed mutual kNN edges; built from `vectors`
            when omitted and `config.use_mutual_knn` is set

    Returns:
        ClusteringResult with clusters sorted uncertain-first, then by size
    """
    config = config or ClusteringConfig()

    if len(paragraphs) < config.min_paragraphs_for_clustering or not vectors:
        logger.info(f"Clustering skipped for {len(paragraphs)} paragraphs, returning singletons")
        return _singleton_clusters(paragraphs, config)

    paragraphs_by_id = {p.id: p for p in paragraphs}
    ids = [p.id for p in paragraphs]

    distances = build_distance_matrix(
        ids, vectors, paragraphs if config.adjust_distance_by_paragraph_meta else None
    )
    _log_similarity_distribution(ids, distances, config.similarity_threshold)

    if mutual_edges is None and config.use_mutual_knn:
        mutual_edges = build_mutual_knn_graph(ids, vectors, k=config.mutual_knn_k)

    groups = hierarchical_cluster(ids, distances, config, mutual_edges)

    clusters: List[ParagraphCluster] = []
    for indices in groups:
        member_ids = [ids[i] for i in indices]
        centroid_id, _ = find_centroid(member_ids, vectors)
        cohesion = compute_cohesion(member_ids, centroid_id, vectors)
        pairwise = pairwise_cohesion(member_ids, vectors)
        missing = len(member_ids) > 1 and centroid_id not in vectors
        reasons = detect_uncertainty(member_ids, paragraphs_by_id, cohesion, pairwise, config, missing)

        statement_ids: List[str] = []
        for mid in member_ids:
            for sid in paragraphs_by_id[mid].statement_ids:
                if sid not in statement_ids:
                    statement_ids.append(sid)

        cluster = ParagraphCluster(
            id="",
            paragraph_ids=member_ids,
            statement_ids=statement_ids,
            representative_paragraph_id=centroid_id,
            representative_text=_clip(paragraphs_by_id[centroid_id].full_paragraph, config.max_member_text_chars),
            cohesion=cohesion,
            pairwise_cohesion=pairwise,
            uncertain=bool(reasons),
            uncertainty_reasons=reasons,
        )
        if reasons:
            cluster.expansion = build_expansion(member_ids, centroid_id, paragraphs_by_id, vectors, config)
        clusters.append(cluster)

    # Stable sort keeps HAC order among equals
    clusters.sort(key=lambda c: (not c.uncertain, -c.size))
    for i, cluster in enumerate(clusters):
        cluster.id = f"pc_{i}"

    meta = _build_meta(clusters, len(paragraphs))
    logger.info(
        f"Built {meta['total_clusters']} clusters from {len(paragraphs)} paragraphs "
        f"({meta['uncertain_count']} uncertain, {meta['singleton_count']} singletons)"
    )
    return ClusteringResult(clusters=clusters, meta=meta)
