"""
Configuration objects for every pipeline stage.

All tunables live here as dataclasses with documented defaults. Config
objects are passed by value and never mutated; use `merge_config` or
`dataclasses.replace` to derive a variant.
"""
from dataclasses import dataclass, replace
from typing import Dict


@dataclass(frozen=True)
class ExtractionConfig:
    """
    Limits for statement extraction.

    Caps bound worst-case cost on pathological input; hitting one is
    logged, never silent.
    """
    sentence_limit: int = 2000
    candidate_limit: int = 2000
    min_words: int = 5
    min_confidence_filter: float = 0.7


@dataclass(frozen=True)
class ClassifierConfig:
    """
    Stance/signal classifier settings.

    The embedding strategy is used only when `prefer_embeddings` is set and
    both the sentence vector and the label prototypes are available.
    """
    prefer_embeddings: bool = True
    min_similarity: float = 0.28
    ambiguity_margin: float = 0.04
    signal_similarity: float = 0.35
    soft_exclusion_penalty: float = 0.1


@dataclass(frozen=True)
class ClusteringConfig:
    """Paragraph clustering settings."""
    # Cosine similarity a pair must reach to merge; higher means more clusters
    similarity_threshold: float = 0.72
    # Safety ceiling, logged when exceeded, never enforced by forced merges
    max_clusters: int = 40

    low_cohesion_threshold: float = 0.70
    dumbbell_gap: float = 0.10
    dumbbell_min_members: int = 4
    max_cluster_size: int = 8
    stance_diversity_threshold: int = 3
    contested_ratio_threshold: float = 0.30

    max_expansion_members: int = 6
    max_expansion_chars_total: int = 2100
    max_member_text_chars: int = 700

    embedding_dimensions: int = 256
    model_id: str = "all-MiniLM-L6-v2"

    min_paragraphs_for_clustering: int = 3

    use_mutual_knn: bool = True
    mutual_knn_k: int = 5
    mutual_edge_discount: float = 0.9
    adjust_distance_by_paragraph_meta: bool = True


CONFIG_PRESETS: Dict[str, ClusteringConfig] = {
    "high_precision": ClusteringConfig(similarity_threshold=0.88, embedding_dimensions=384),
    "balanced": ClusteringConfig(),
    "high_recall": ClusteringConfig(similarity_threshold=0.78),
    "fast": ClusteringConfig(embedding_dimensions=128),
}


def get_preset(name: str) -> ClusteringConfig:
    """Look up a clustering preset by name."""
    if name not in CONFIG_PRESETS:
        raise ValueError(f"Unknown clustering preset '{name}'. Available: {sorted(CONFIG_PRESETS)}")
    return CONFIG_PRESETS[name]


def merge_config(base: ClusteringConfig = None, **overrides) -> ClusteringConfig:
    """Return a copy of `base` (default config if None) with overrides applied."""
    return replace(base or ClusteringConfig(), **overrides)


@dataclass(frozen=True)
class GateConfig:
    """Conditional gate derivation settings."""
    min_exclusive_footprint: int = 2
    min_exclusivity_ratio: float = 0.5
    # Below this many source statements a ratio is not trusted: all must be exclusive
    min_statements_for_ratio: int = 4
    min_context_specificity: float = 0.35
    dedup_jaccard: float = 0.7
    max_gates: int = 5

    contrastive_min_local_count: int = 2
    contrastive_top_terms: int = 5
    anchor_coherence: float = 0.65
    epistemic_coherence: float = 0.45
    ambiguous_term_weight: float = 0.25

    apply_inter_region_boost: bool = True
    conflict_cluster_boost: float = 0.2
    conflict_boost: float = 0.12
    tradeoff_boost: float = 0.1

    convergent_ratio: float = 0.70


@dataclass(frozen=True)
class ConditionalFinderConfig:
    clause_merge_threshold: float = 0.8
    min_clause_chars: int = 5
    max_clause_chars: int = 120
    fallback_clause_chars: int = 80
    max_orphans: int = 15


@dataclass(frozen=True)
class ConflictConfig:
    significance_threshold: float = 0.3


@dataclass(frozen=True)
class TraversalConfig:
    """
    Traversal question merge settings.

    The block threshold, pruned ratio and partition boost are fixed
    constants in practice; they are exposed so callers can tune them.
    """
    max_questions: int = 5
    blocked_by_cosine_threshold: float = 0.5
    auto_resolve_pruned_ratio: float = 0.8
    partition_type_boost: float = 0.3
    partition_confidence: float = 0.8
