"""
Hierarchical agglomerative clustering with a hard similarity stop.

Cluster count is emergent: merging stops when nothing left is similar
enough, and the safety ceiling on cluster count is only logged, never
enforced with forced merges.
"""
import logging
import math
from typing import Dict, FrozenSet, List, Mapping, Optional, Sequence, Set

import numpy as np

from ..config import ClusteringConfig
from ..distance import cosine_similarity, quantize

logger = logging.getLogger(__name__)


def build_mutual_knn_graph(
    ids: Sequence[str],
    vectors: Mapping[str, np.ndarray],
    k: int = 5,
) -> Set[FrozenSet[str]]:
    """
    Mutual k-nearest-neighbor edges.

    Each item's top-k neighbors are ranked by quantized similarity with a
    lexical id tie-break. An edge is kept only when each endpoint is in the
    other's top-k.

    Returns:
        Set of unordered id pairs
    """
    present = [i for i in ids if i in vectors]
    neighbors: Dict[str, Set[str]] = {}
    for a in present:
        ranked = sorted(
            (b for b in present if b != a),
            key=lambda b: (-quantize(cosine_similarity(vectors[a], vectors[b])), b),
        )
        neighbors[a] = set(ranked[:k])

    edges: Set[FrozenSet[str]] = set()
    for a in present:
        for b in neighbors[a]:
            if a in neighbors.get(b, ()):
                edges.add(frozenset((a, b)))
    logger.debug(f"Mutual kNN graph (k={k}): {len(edges)} edges over {len(present)} items")
    return edges


def _average_linkage(a: Set[int], b: Set[int], distances: List[List[float]]) -> float:
    total = 0.0
    count = 0
    for i in a:
        for j in b:
            total += distances[i][j]
            count += 1
    return total / count if count else math.inf


def hierarchical_cluster(
    ids: Sequence[str],
    distances: List[List[float]],
    config: Optional[ClusteringConfig] = None,
    mutual_edges: Optional[Set[FrozenSet[str]]] = None,
) -> List[List[int]]:
    """
    Average-linkage HAC.

    At every step the globally closest pair of active clusters is merged,
    ties going to the lowest (i, j) index pair. Pairs sharing a mutual kNN
    edge get their linkage distance discounted. Merging stops as soon as the
    closest pair is farther than `1 - similarity_threshold`.

    Args:
        ids: Item ids in matrix order
        distances: Symmetric distance matrix (see build_distance_matrix)
        config: Clustering configuration
        mutual_edges: Optional mutual kNN edges between ids

    Returns:
        Clusters as sorted lists of item indices, ordered by first index
    """
    config = config or ClusteringConfig()
    n = len(ids)
    if n < config.min_paragraphs_for_clustering:
        return [[i] for i in range(n)]

    clusters: Dict[int, Set[int]] = {i: {i} for i in range(n)}
    threshold = quantize(1 - config.similarity_threshold)

    def has_mutual_edge(a: Set[int], b: Set[int]) -> bool:
        return any(frozenset((ids[i], ids[j])) in mutual_edges for i in a for j in b)

    while len(clusters) > 1:
        min_dist = math.inf
        min_i = min_j = -1
        active = sorted(clusters)

        for ai in range(len(active)):
            for aj in range(ai + 1, len(active)):
                i, j = active[ai], active[aj]
                dist = quantize(_average_linkage(clusters[i], clusters[j], distances))
                if mutual_edges and has_mutual_edge(clusters[i], clusters[j]):
                    dist = quantize(dist * config.mutual_edge_discount)
                # Strict comparison keeps the first (lowest) pair on ties
                if dist < min_dist:
                    min_dist, min_i, min_j = dist, i, j

        if min_dist > threshold:
            if len(clusters) > config.max_clusters * 0.8:
                logger.debug(
                    f"Stopping at {len(clusters)} clusters (threshold exceeded). "
                    f"Consider lowering similarity_threshold if more clusters are needed."
                )
            break

        clusters[min_i] |= clusters.pop(min_j)

    if len(clusters) > config.max_clusters:
        logger.warning(
            f"Produced {len(clusters)} clusters (exceeds max {config.max_clusters}). "
            f"Data is genuinely fragmented at threshold {config.similarity_threshold}."
        )

    return [sorted(clusters[i]) for i in sorted(clusters)]
