"""
Deterministic similarity math over unit-length vectors.

Every similarity value is quantized to six decimals before it is compared
or tested against a threshold, so embeddings computed by different numeric
backends produce identical clustering decisions.
"""
import logging
import math
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np

from .dataclass import ShadowParagraph, Stance

logger = logging.getLogger(__name__)

QUANTIZATION = 1e6

ANTAGONISTIC_STANCES = (
    frozenset({Stance.DIRECTIVE, Stance.WARNING}),
    frozenset({Stance.FACTUAL, Stance.HEDGED}),
)
SEQUENTIAL_STANCES = frozenset({Stance.PRECONDITION, Stance.CONSEQUENCE})

ANTAGONISTIC_MULTIPLIER = 0.6
SAME_STANCE_MULTIPLIER = 1.1
SEQUENTIAL_MULTIPLIER = 1.05
CROSS_MODEL_MULTIPLIER = 1.15
CROSS_MODEL_MIN_SIMILARITY = 0.55


def quantize(value: float) -> float:
    """Round to six decimals (half up). Non-finite values pass through."""
    if not math.isfinite(value):
        return value
    return math.floor(value * QUANTIZATION + 0.5) / QUANTIZATION


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """
    Cosine similarity of two pre-normalized vectors (a plain dot product).

    The result is clamped to [-1, 1] to absorb rounding in the inputs.
    """
    n = min(len(a), len(b))
    dot = float(np.dot(a[:n], b[:n]))
    return max(-1.0, min(1.0, dot))


def adjust_similarity(raw: float, a: ShadowParagraph, b: ShadowParagraph) -> float:
    """
    Apply stance- and model-aware multipliers to a raw similarity.

    Args:
        raw: Raw cosine similarity between the two paragraphs
        a, b: The paragraphs being compared

    Returns:
        Adjusted similarity, clamped to [-1, 1]
    """
    sim = raw
    pair = frozenset({a.dominant_stance, b.dominant_stance})

    if pair in ANTAGONISTIC_STANCES:
        sim *= ANTAGONISTIC_MULTIPLIER
    elif a.dominant_stance == b.dominant_stance:
        sim *= SAME_STANCE_MULTIPLIER
    elif pair == SEQUENTIAL_STANCES:
        sim *= SEQUENTIAL_MULTIPLIER

    if a.model_index != b.model_index and raw > CROSS_MODEL_MIN_SIMILARITY:
        sim *= CROSS_MODEL_MULTIPLIER

    return max(-1.0, min(1.0, sim))


def build_distance_matrix(
    ids: Sequence[str],
    vectors: Mapping[str, np.ndarray],
    paragraphs: Optional[Sequence[ShadowParagraph]] = None,
) -> List[List[float]]:
    """
    Build the symmetric distance matrix `1 - quantize(similarity)`.

    Items without a vector get an infinite distance to everything else,
    and each missing id is logged once.

    Args:
        ids: Item ids in stable order (matrix row/column order)
        vectors: Unit vectors by id
        paragraphs: When given, similarities are adjusted by paragraph
            stance and model (see `adjust_similarity`)

    Returns:
        n x n list of distances with a zero diagonal
    """
    n = len(ids)
    by_id: Dict[str, ShadowParagraph] = {p.id: p for p in paragraphs} if paragraphs else {}
    missing = set()
    for item_id in ids:
        if item_id not in vectors and item_id not in missing:
            missing.add(item_id)
            logger.warning(f"No embedding for '{item_id}', using infinite distance")

    distances = [[0.0] * n for _ in range(n)]
    for i in range(n):
        for j in range(i + 1, n):
            vec_i = vectors.get(ids[i])
            vec_j = vectors.get(ids[j])
            if vec_i is None or vec_j is None:
                dist = math.inf
            else:
                sim = cosine_similarity(vec_i, vec_j)
                para_i = by_id.get(ids[i])
                para_j = by_id.get(ids[j])
                if para_i is not None and para_j is not None:
                    sim = adjust_similarity(sim, para_i, para_j)
                dist = quantize(1.0 - quantize(sim))
            distances[i][j] = dist
            distances[j][i] = dist
    return distances


def compute_cohesion(member_ids: Sequence[str], centroid_id: str, vectors: Mapping[str, np.ndarray]) -> float:
    """Average quantized similarity of the other members to the centroid."""
    if len(member_ids) <= 1:
        return 1.0
    centroid = vectors.get(centroid_id)
    if centroid is None:
        return 0.0
    sims = [
        quantize(cosine_similarity(vectors[mid], centroid))
        for mid in member_ids
        if mid != centroid_id and mid in vectors
    ]
    if not sims:
        return 1.0
    return quantize(sum(sims) / len(sims))


def pairwise_cohesion(member_ids: Sequence[str], vectors: Mapping[str, np.ndarray]) -> float:
    """Average quantized similarity across all member pairs."""
    present = [mid for mid in member_ids if mid in vectors]
    if len(present) < 2:
        return 1.0
    total = 0.0
    count = 0
    for i in range(len(present)):
        for j in range(i + 1, len(present)):
            total += quantize(cosine_similarity(vectors[present[i]], vectors[present[j]]))
            count += 1
    return quantize(total / count)


def mean_vector(vectors: Sequence[np.ndarray]) -> Optional[np.ndarray]:
    """Unit-normalized mean of the given vectors, or None if there are none."""
    if not vectors:
        return None
    mean = np.mean(np.vstack(vectors), axis=0)
    norm = np.linalg.norm(mean)
    if norm > 0:
        mean = mean / norm
    return mean
