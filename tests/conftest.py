"""
Shared test fixtures for the evidence graph test suite.
"""
import zlib
from typing import Dict, List, Optional, Sequence

import numpy as np
import pytest

from evidence_graph.dataclass import ClassificationMeta, ShadowParagraph, ShadowStatement, Signals, Stance
from evidence_graph.embeddings import EmbeddingProvider, EmbeddingRegistry
from evidence_graph.schemas import ClaimInput


# =============================================================================
# Test Embeddings (4D vectors for predictable similarity tests)
# =============================================================================

EMBEDDING_X = [1.0, 0.0, 0.0, 0.0]
EMBEDDING_Y = [0.0, 1.0, 0.0, 0.0]
EMBEDDING_Z = [0.0, 0.0, 1.0, 0.0]


def unit(values: Sequence[float]) -> np.ndarray:
    vec = np.asarray(values, dtype=np.float32)
    return vec / np.linalg.norm(vec)


def vector_at(similarity: float, axis: int = 0, other: int = 1, dims: int = 4) -> np.ndarray:
    """Unit vector whose cosine with the `axis` basis vector is `similarity`."""
    vec = np.zeros(dims, dtype=np.float32)
    vec[axis] = similarity
    vec[other] = np.sqrt(max(0.0, 1.0 - similarity ** 2))
    return vec


# =============================================================================
# Fake embedding provider
# =============================================================================

class FakeEmbeddingProvider(EmbeddingProvider):
    """
    Deterministic in-memory provider.

    Texts listed in `fixed` get those vectors; anything else gets a stable
    pseudo-random unit vector seeded from the text.
    """

    def __init__(self, dimensions: int = 8, fixed: Optional[Dict[str, Sequence[float]]] = None, batch_size: int = 16):
        super().__init__(model_id="fake-embedder", dimensions=dimensions, batch_size=batch_size)
        self.fixed = {k: list(v) for k, v in (fixed or {}).items()}
        self.calls: List[List[str]] = []

    async def _fetch_batch(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        out = []
        for text in texts:
            if text in self.fixed:
                out.append(self.fixed[text])
                continue
            rng = np.random.default_rng(zlib.crc32(text.encode("utf-8")))
            out.append(rng.normal(size=self.dimensions).tolist())
        return out


@pytest.fixture
def fake_provider():
    return FakeEmbeddingProvider()


@pytest.fixture
def registry(fake_provider):
    return EmbeddingRegistry(fake_provider)


# =============================================================================
# Builders
# =============================================================================

def make_statement(
    statement_id: str,
    text: str,
    stance: Stance = Stance.FACTUAL,
    model_index: int = 0,
    paragraph_index: int = 0,
    sentence_index: int = 0,
    confidence: float = 0.8,
    conditional: bool = False,
    tension: bool = False,
    ordering: bool = False,
    method: str = "pattern",
) -> ShadowStatement:
    return ShadowStatement(
        id=statement_id,
        model_index=model_index,
        text=text,
        stance=stance,
        confidence=confidence,
        signals=Signals(ordering=ordering, tension=tension, conditional=conditional),
        paragraph_index=paragraph_index,
        sentence_index=sentence_index,
        full_paragraph=text,
        classification=ClassificationMeta(method=method),
    )


def make_paragraph(
    paragraph_id: str,
    stance: Stance = Stance.FACTUAL,
    model_index: int = 0,
    statement_ids: Sequence[str] = (),
    contested: bool = False,
    signals: Optional[Signals] = None,
    text: str = "",
) -> ShadowParagraph:
    return ShadowParagraph(
        id=paragraph_id,
        model_index=model_index,
        paragraph_index=0,
        statement_ids=list(statement_ids),
        dominant_stance=stance,
        stance_hints=[stance],
        contested=contested,
        confidence=0.8,
        signals=signals or Signals(),
        statements=[],
        full_paragraph=text or f"Paragraph {paragraph_id}",
    )


def make_claim(claim_id: str, source_ids: Sequence[str], label: str = "", **kwargs) -> ClaimInput:
    return ClaimInput(id=claim_id, label=label or claim_id, text=label or claim_id, source_statement_ids=list(source_ids), **kwargs)


@pytest.fixture
def statement_factory():
    return make_statement


@pytest.fixture
def claim_factory():
    return make_claim


# =============================================================================
# Sample Test Data
# =============================================================================

SAMPLE_RESPONSES = [
    {
        "model_index": 0,
        "text": (
            "You should use a managed Postgres service for the primary database. "
            "If you're a startup, a single region deployment keeps operating costs low.\n\n"
            "Avoid running your own Kubernetes cluster without a dedicated platform team. "
            "The control plane requires constant upgrades and careful monitoring."
        ),
    },
    {
        "model_index": 1,
        "text": (
            "Serverless functions scale to zero and reduce idle infrastructure spend. "
            "However, cold starts can add noticeable latency for interactive requests.\n\n"
            "First, set up continuous integration before adding more services to the stack."
        ),
    },
]
