"""
Evidence Graph: statement extraction, clustering and traversal gating over
multi-model responses.

Turns a set of model responses into stance-classified statements, groups
them into paragraph clusters, and derives the yes/no gates, conflicts and
capped question queue a user can answer to prune the evidence.
"""

from .engine import EvidenceGraphArguments, EvidenceGraphRunner
from .dataclass import (
    Stance,
    Signal,
    Signals,
    ShadowStatement,
    ShadowParagraph,
    ParagraphCluster,
    ClusteringResult,
    DerivedConditionalGate,
    ExtractedCondition,
    DerivedConflict,
    TraversalQuestion,
    EvidenceGraphResults,
)
from .embeddings import (
    EmbeddingProvider,
    EmbeddingRegistry,
    LitellmEmbeddingProvider,
    HashingEmbeddingProvider,
    create_embedding_provider,
)
from .errors import (
    EvidenceGraphError,
    EmbeddingError,
    EmbeddingDimensionError,
    EmbeddingCountError,
    InputValidationError,
)

__version__ = "1.0.0"

__all__ = [
    "EvidenceGraphArguments",
    "EvidenceGraphRunner",
    "EvidenceGraphResults",
    "Stance",
    "Signal",
    "Signals",
    "ShadowStatement",
    "ShadowParagraph",
    "ParagraphCluster",
    "ClusteringResult",
    "DerivedConditionalGate",
    "ExtractedCondition",
    "DerivedConflict",
    "TraversalQuestion",
    "EmbeddingProvider",
    "EmbeddingRegistry",
    "LitellmEmbeddingProvider",
    "HashingEmbeddingProvider",
    "create_embedding_provider",
    "EvidenceGraphError",
    "EmbeddingError",
    "EmbeddingDimensionError",
    "EmbeddingCountError",
    "InputValidationError",
]
