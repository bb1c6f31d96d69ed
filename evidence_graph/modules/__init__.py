"""
Evidence graph pipeline stages.

- Extraction: stance classification, exclusion rules, statement extraction, shadow delta
- Structure: paragraph projection, hierarchical clustering
- Traversal: claim provenance, gate derivation, conditions, conflicts, question merge
"""

from .statement_extractor import (
    StatementExtractor,
    extract_statements,
)

from .stance_classifier import (
    StanceClassifier,
    classify_stance,
    detect_signals,
    compute_signal_weight,
)

from .exclusion_rules import (
    is_excluded,
    get_exclusion_violations,
)

from .shadow_delta import (
    compute_shadow_delta,
    referenced_ids_from_claims,
)

from .paragraph_projector import (
    project_paragraphs,
    to_clusterable_items,
)

from .clustering_engine import build_clusters
from .hac import build_mutual_knn_graph, hierarchical_cluster

from .claim_provenance import (
    compute_statement_ownership,
    compute_claim_exclusivity,
    compute_claim_overlap,
)

from .gate_deriver import (
    GateDeriver,
    derive_conditional_gates,
)

from .conditional_finder import (
    ConditionalFinder,
    find_conditionals,
)

from .conflict_deriver import (
    classify_stance_asymmetry,
    derive_conflicts,
)

from .question_merge import merge_traversal_questions
from .traversal_state import TraversalState
from .mechanical_traversal import (
    build_mechanical_traversal,
    summarize_traversal,
)

__all__ = [
    # Extraction
    "StatementExtractor",
    "extract_statements",
    "StanceClassifier",
    "classify_stance",
    "detect_signals",
    "compute_signal_weight",
    "is_excluded",
    "get_exclusion_violations",
    "compute_shadow_delta",
    "referenced_ids_from_claims",

    # Structure
    "project_paragraphs",
    "to_clusterable_items",
    "build_clusters",
    "build_mutual_knn_graph",
    "hierarchical_cluster",

    # Traversal
    "compute_statement_ownership",
    "compute_claim_exclusivity",
    "compute_claim_overlap",
    "GateDeriver",
    "derive_conditional_gates",
    "ConditionalFinder",
    "find_conditionals",
    "classify_stance_asymmetry",
    "derive_conflicts",
    "merge_traversal_questions",
    "TraversalState",
    "build_mechanical_traversal",
    "summarize_traversal",
]
