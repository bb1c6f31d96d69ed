"""
Embedding acquisition and caching.

The pipeline is synchronous above one async boundary: fetching vectors
from an embedding service. Providers here batch requests, validate every
batch for count and dimension alignment, and return unit-normalized numpy
rows. Misaligned batches are fatal for that batch.

Key Design:
1. LitellmEmbeddingProvider: API embeddings via litellm.aembedding
2. HashingEmbeddingProvider: lexical hashing vectors (no API, deterministic)
3. EmbeddingRegistry: injectable single-flight label cache + term index cache
"""
import asyncio
import logging
import re
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Hashable, List, Mapping, Optional, Sequence, Tuple

import litellm
import numpy as np
from sklearn.feature_extraction.text import HashingVectorizer

from .dataclass import ShadowParagraph, ShadowStatement, Signal, Stance
from .distance import cosine_similarity
from .errors import EmbeddingCountError, EmbeddingDimensionError, EmbeddingError

logger = logging.getLogger(__name__)

# Requests larger than this yield to the event loop between batches
YIELD_THRESHOLD = 64


# ============================================================================
# Text and vector helpers
# ============================================================================

_CODE_SPAN = re.compile(r"`{1,3}([^`]+?)`{1,3}")
_STRONG = re.compile(r"(\*\*|__)([^\n]+?)\1")
_EMPHASIS = re.compile(r"(\*|_)([^\n]+?)\1")
_BEFORE_OK = re.compile(r"[\s(\[{\"'.,;:!?]")
_AFTER_OK = re.compile(r"[\s)\]}'\".,;:!?]")


def strip_inline_markdown(text: str) -> str:
    """
    Remove inline markdown (code spans, bold, italics) before embedding.

    Emphasis markers are only stripped at word boundaries, so identifiers
    like `snake_case_name` survive.
    """
    out = _CODE_SPAN.sub(r"\1", text)

    def _emphasis(match: re.Match) -> str:
        full = match.string
        marker, inner = match.group(1), match.group(2)
        before = full[match.start() - 1] if match.start() > 0 else ""
        after = full[match.end()] if match.end() < len(full) else ""
        if before and not _BEFORE_OK.match(before):
            return match.group(0)
        if after and not _AFTER_OK.match(after):
            return match.group(0)
        if not inner.strip():
            return match.group(0)
        return inner

    for _ in range(3):
        previous = out
        out = _STRONG.sub(r"\2", out)
        out = _EMPHASIS.sub(_emphasis, out)
        if out == previous:
            break

    return re.sub(r"\s{2,}", " ", out).strip()


def normalize_rows(matrix: np.ndarray) -> np.ndarray:
    """L2-normalize each row; all-zero rows stay zero."""
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


def decode_batch(raw: Sequence[Sequence[float]], expected_count: int, expected_dims: int, batch_index: int = 0) -> np.ndarray:
    """
    Validate and normalize one batch of raw vectors.

    Raises:
        EmbeddingCountError: if the number of vectors differs from the number of inputs
        EmbeddingDimensionError: if any vector has the wrong length
    """
    if len(raw) != expected_count:
        raise EmbeddingCountError(expected_count, len(raw), batch_index=batch_index)
    for vec in raw:
        if len(vec) != expected_dims:
            raise EmbeddingDimensionError(expected_dims, len(vec), batch_index=batch_index)
    if expected_count == 0:
        return np.zeros((0, expected_dims), dtype=np.float32)
    return normalize_rows(np.asarray(raw, dtype=np.float32))


# ============================================================================
# Providers
# ============================================================================

class EmbeddingProvider(ABC):
    """
    Abstract embedding collaborator: text -> fixed-dimension unit vector.

    Subclasses implement `_fetch_batch`; `embed` handles batching,
    yielding, validation and error wrapping.
    """

    def __init__(self, model_id: str, dimensions: int, batch_size: int = 32):
        self.model_id = model_id
        self.dimensions = dimensions
        self.batch_size = batch_size

    @abstractmethod
    async def _fetch_batch(self, texts: List[str]) -> List[List[float]]:
        """Return one raw vector per input text, aligned by position."""

    async def embed(self, texts: Sequence[str]) -> np.ndarray:
        """
        Embed texts in batches.

        Returns:
            numpy array of shape (len(texts), dimensions), rows unit-normalized

        Raises:
            EmbeddingError: the first failed or misaligned batch aborts the call
        """
        if not texts:
            return np.zeros((0, self.dimensions), dtype=np.float32)

        # Empty strings are rejected by most APIs
        prepared = [t if t.strip() else " " for t in texts]
        should_yield = len(prepared) > YIELD_THRESHOLD
        rows = []

        for batch_index, start in enumerate(range(0, len(prepared), self.batch_size)):
            batch = prepared[start:start + self.batch_size]
            try:
                raw = await self._fetch_batch(batch)
            except EmbeddingError:
                raise
            except Exception as e:
                raise EmbeddingError(f"Embedding batch {batch_index} failed: {e}", batch_index=batch_index) from e

            rows.append(decode_batch(raw, len(batch), self.dimensions, batch_index=batch_index))

            if should_yield and start + self.batch_size < len(prepared):
                await asyncio.sleep(0)

        return np.vstack(rows)


class LitellmEmbeddingProvider(EmbeddingProvider):
    """
    API-based embeddings through litellm.

    Works with any provider litellm routes to (OpenAI, Azure, proxies).
    """

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        dimensions: int = 256,
        api_key: Optional[str] = None,
        api_base: Optional[str] = None,
        batch_size: int = 64,
    ):
        """
        Args:
            model: litellm model name
            dimensions: Requested output dimensions (validated on every batch)
            api_key: API key (or set the provider's env var)
            api_base: Custom API base URL (for Azure or proxy)
            batch_size: Texts per request
        """
        super().__init__(model_id=model, dimensions=dimensions, batch_size=batch_size)
        self.api_key = api_key
        self.api_base = api_base
        logger.info(f"Initialized litellm embedding provider: {model} ({dimensions} dims)")

    async def _fetch_batch(self, texts: List[str]) -> List[List[float]]:
        response = await litellm.aembedding(
            model=self.model_id,
            input=texts,
            dimensions=self.dimensions,
            api_key=self.api_key,
            api_base=self.api_base,
        )
        return [item["embedding"] for item in response["data"]]


class HashingEmbeddingProvider(EmbeddingProvider):
    """
    Lexical embeddings from hashed word and bigram counts.

    Stateless, so vectors from separate calls are comparable. Suitable for
    offline runs and tests; similarity reflects shared vocabulary only.
    """

    def __init__(self, dimensions: int = 256, batch_size: int = 256):
        super().__init__(model_id="hashing-ngram", dimensions=dimensions, batch_size=batch_size)
        self.vectorizer = HashingVectorizer(
            n_features=dimensions,
            alternate_sign=False,
            ngram_range=(1, 2),
            stop_words="english",
            norm="l2",
        )

    async def _fetch_batch(self, texts: List[str]) -> List[List[float]]:
        return self.vectorizer.transform(texts).toarray().tolist()


def create_embedding_provider(model_type: str = "litellm", **kwargs) -> EmbeddingProvider:
    """
    Factory for embedding providers.

    Args:
        model_type: "litellm" or "hashing"
        **kwargs: Passed to the provider constructor
    """
    if model_type == "litellm":
        return LitellmEmbeddingProvider(**kwargs)
    elif model_type == "hashing":
        kwargs.pop("model", None)
        kwargs.pop("api_key", None)
        kwargs.pop("api_base", None)
        return HashingEmbeddingProvider(**kwargs)
    else:
        raise ValueError(f"Unknown model_type: {model_type}")


async def embed_items(provider: EmbeddingProvider, items: Sequence[Tuple[str, str]]) -> Dict[str, np.ndarray]:
    """Embed (id, text) pairs after stripping inline markdown; returns vectors by id."""
    if not items:
        return {}
    texts = [strip_inline_markdown(text) for _, text in items]
    matrix = await provider.embed(texts)
    return {item_id: matrix[i] for i, (item_id, _) in enumerate(items)}


async def embed_statements(provider: EmbeddingProvider, statements: Sequence[ShadowStatement]) -> Dict[str, np.ndarray]:
    return await embed_items(provider, [(s.id, s.text) for s in statements])


def pool_to_paragraph_embeddings(
    paragraphs: Sequence[ShadowParagraph],
    statements: Sequence[ShadowStatement],
    statement_vectors: Mapping[str, np.ndarray],
    dimensions: int,
) -> Dict[str, np.ndarray]:
    """
    Pool statement vectors into paragraph vectors.

    Each statement is weighted by max(0.1, confidence), boosted x1.3 for
    tension, x1.2 for conditional and x1.1 for ordering. Paragraphs with no
    embedded statement get a zero vector.
    """
    by_id = {s.id: s for s in statements}
    pooled: Dict[str, np.ndarray] = {}

    for para in paragraphs:
        weighted = []
        for sid in para.statement_ids:
            vec = statement_vectors.get(sid)
            stmt = by_id.get(sid)
            if vec is None or stmt is None:
                continue
            weight = max(0.1, stmt.confidence)
            if stmt.signals.tension:
                weight *= 1.3
            if stmt.signals.conditional:
                weight *= 1.2
            if stmt.signals.ordering:
                weight *= 1.1
            weighted.append((vec, weight))

        if not weighted:
            pooled[para.id] = np.zeros(dimensions, dtype=np.float32)
            continue

        total = sum(w for _, w in weighted)
        mean = sum(vec * w for vec, w in weighted) / total
        norm = np.linalg.norm(mean)
        pooled[para.id] = mean / norm if norm > 0 else mean

    return pooled


# ============================================================================
# Label prototypes
# ============================================================================

STANCE_LABEL_VARIANTS: Dict[Stance, Tuple[str, str, str]] = {
    Stance.DIRECTIVE: (
        "An instruction or recommendation telling the reader what to do, which approach to take, or what to implement",
        "A statement advising a concrete action: choose, adopt, use, build or configure a specific thing",
        "Guidance proposing a course of action, a best practice, or an implementation step to follow",
    ),
    Stance.WARNING: (
        "A warning about a risk, pitfall or failure mode that advises against doing something",
        "A statement urging caution: avoid this, watch out for that problem, be aware of this danger",
        "A statement pointing out what can go wrong or which downside comes with a choice",
    ),
    Stance.PRECONDITION: (
        "A statement about something that has to be in place first: a requirement or dependency before proceeding",
        "A statement pointing back to a necessary precondition that must already hold before the next step",
        "A foundation or prior setup that must exist before an action can be taken",
    ),
    Stance.CONSEQUENCE: (
        "A statement about what comes next or what becomes possible once an earlier step is complete",
        "A statement pointing forward: after a prior step is done, this action, phase or outcome follows",
        "A follow-on step or downstream result that depends on earlier work being finished",
    ),
    Stance.FACTUAL: (
        "A factual observation describing how something works, what something is, or what a situation looks like",
        "A direct, confident claim about reality that explains a mechanism or describes behavior without hedging",
        "A declarative statement presenting information as fact rather than recommending or warning",
    ),
    Stance.HEDGED: (
        "A qualified statement saying something might or might not apply, or that outcomes vary with circumstances",
        "A statement full of caveats and qualifiers such as might, perhaps, generally, it depends, in some cases",
        "A claim that avoids committing to a definite position and notes the answer depends on context",
    ),
}

SIGNAL_LABEL_VARIANTS: Dict[Signal, Tuple[str, str, str]] = {
    Signal.TENSION: (
        "A statement presenting a tradeoff or a contrasting consideration where two valid concerns pull apart",
        "A passage weighing pros against cons or noting a downside to an otherwise positive recommendation",
        "A statement qualifying a recommendation with however or but, granting merit to both sides",
    ),
    Signal.CONDITIONAL: (
        "A statement whose applicability depends on a specific situation, context or assumption about the reader",
        "Advice that only holds when certain facts are true, such as team size, budget, timeline or platform",
        "A recommendation qualified by if, when or unless that works in some contexts and not others",
    ),
    Signal.ORDERING: (
        "A statement about ordering, steps, phases or temporal dependency between actions",
        "A passage describing what should happen in which order: first this, then that",
        "A statement establishing a workflow or progression where the sequence of steps matters",
    ),
}

RELATIONSHIP_LABEL_VARIANTS: Dict[str, Tuple[str, str, str]] = {
    "conflict": (
        "Two recommendations that contradict each other so that following both is impossible",
        "Two passages where accepting one means rejecting the other",
        "Mutually exclusive positions addressing the same problem in incompatible ways",
    ),
    "support": (
        "Two passages that agree and reinforce the same conclusion",
        "Two statements aligned on the same approach or describing the same reality",
        "Passages corroborating each other from different angles",
    ),
    "tradeoff": (
        "Two valid approaches in tension where choosing one accepts downsides the other avoids",
        "Two viable paths where a gain in one area costs something in another",
        "Two recommendations solving the same problem with different strengths, requiring a preference",
    ),
}

STANCE_VIOLATION_COSINE = 0.6
CROSS_TAXONOMY_VIOLATION_COSINE = 0.7
CRITICAL_VIOLATION_COSINE = 0.85


@dataclass
class LabelEmbeddings:
    """Frozen prototype vectors (three variants per label) plus validation report."""
    model_id: str
    dimensions: int
    stances: Dict[Stance, np.ndarray]
    signals: Dict[Signal, np.ndarray]
    relationships: Dict[str, np.ndarray]
    validation: Dict[str, Any] = field(default_factory=dict)


def _max_cross_variant_cosine(a: np.ndarray, b: np.ndarray) -> float:
    return max(cosine_similarity(va, vb) for va in a for vb in b)


def _summarize(values: List[float]) -> Dict[str, float]:
    ordered = sorted(values)
    if not ordered:
        return {"count": 0, "min": 0.0, "p50": 0.0, "p90": 0.0, "max": 0.0, "mean": 0.0}

    def pick(p: float) -> float:
        return ordered[min(len(ordered) - 1, max(0, round((len(ordered) - 1) * p)))]

    return {
        "count": len(ordered),
        "min": ordered[0],
        "p50": pick(0.5),
        "p90": pick(0.9),
        "max": ordered[-1],
        "mean": sum(ordered) / len(ordered),
    }


def validate_label_separation(labels: LabelEmbeddings) -> Dict[str, Any]:
    """
    Check that label prototypes are distinguishable from one another.

    A pair of labels violates separation when the best cosine between any of
    their variants reaches 0.60 (0.70 for stance-vs-signal pairs). Severity is
    "critical" for any cross-taxonomy violation or a cosine of 0.85 or more.
    """
    violations = []

    def check_group(category: str, group: Mapping[Any, np.ndarray]) -> List[Dict[str, Any]]:
        keys = list(group)
        pairs = []
        for i in range(len(keys)):
            for j in range(i + 1, len(keys)):
                a, b = keys[i], keys[j]
                cosine = _max_cross_variant_cosine(group[a], group[b])
                name_a = a.value if isinstance(a, (Stance, Signal)) else a
                name_b = b.value if isinstance(b, (Stance, Signal)) else b
                pairs.append({"a": name_a, "b": name_b, "cosine": cosine})
                if cosine >= STANCE_VIOLATION_COSINE:
                    violations.append({"category": category, "a": name_a, "b": name_b, "cosine": cosine})
        return pairs

    stance_pairs = check_group("stance", labels.stances)
    signal_pairs = check_group("signal", labels.signals)
    relationship_pairs = check_group("relationship", labels.relationships)

    cross = []
    for stance, s_vecs in labels.stances.items():
        for signal, g_vecs in labels.signals.items():
            cosine = _max_cross_variant_cosine(s_vecs, g_vecs)
            cross.append(cosine)
            if cosine >= CROSS_TAXONOMY_VIOLATION_COSINE:
                violations.append({"category": "cross_taxonomy", "a": stance.value, "b": signal.value, "cosine": cosine})

    stance_sorted = sorted(stance_pairs, key=lambda p: p["cosine"])

    def polarity_rank(x: Stance, y: Stance) -> int:
        for idx, p in enumerate(stance_sorted):
            if {p["a"], p["b"]} == {x.value, y.value}:
                return idx + 1
        return len(stance_sorted) + 1

    if not violations:
        severity = "ok"
    elif any(v["category"] == "cross_taxonomy" for v in violations) or max(v["cosine"] for v in violations) >= CRITICAL_VIOLATION_COSINE:
        severity = "critical"
    else:
        severity = "warning"

    for v in violations:
        logger.warning(f"Label separation violation ({v['category']}): {v['a']} ~ {v['b']} cosine={v['cosine']:.3f}")

    return {
        "ok": not violations,
        "severity": severity,
        "violations": violations,
        "lowest_stance_pairs": stance_sorted[:5],
        "distributions": {
            "stance_pairs": _summarize([p["cosine"] for p in stance_pairs]),
            "signal_pairs": _summarize([p["cosine"] for p in signal_pairs]),
            "relationship_pairs": _summarize([p["cosine"] for p in relationship_pairs]),
            "cross_taxonomy_pairs": _summarize(cross),
        },
        "polarity_ranks": {
            "directive_warning": polarity_rank(Stance.DIRECTIVE, Stance.WARNING),
            "factual_hedged": polarity_rank(Stance.FACTUAL, Stance.HEDGED),
        },
    }


async def build_label_embeddings(provider: EmbeddingProvider) -> LabelEmbeddings:
    """Embed every label variant in one request sequence and validate separation."""
    groups: List[Tuple[str, Any, Tuple[str, str, str]]] = []
    groups += [("stance", k, v) for k, v in STANCE_LABEL_VARIANTS.items()]
    groups += [("signal", k, v) for k, v in SIGNAL_LABEL_VARIANTS.items()]
    groups += [("relationship", k, v) for k, v in RELATIONSHIP_LABEL_VARIANTS.items()]

    texts = [text for _, _, variants in groups for text in variants]
    matrix = await provider.embed(texts)

    stances, signals, relationships = {}, {}, {}
    for idx, (kind, key, _) in enumerate(groups):
        vecs = matrix[idx * 3:(idx + 1) * 3]
        {"stance": stances, "signal": signals, "relationship": relationships}[kind][key] = vecs

    labels = LabelEmbeddings(
        model_id=provider.model_id,
        dimensions=provider.dimensions,
        stances=stances,
        signals=signals,
        relationships=relationships,
    )
    labels.validation = validate_label_separation(labels)
    logger.info(
        f"Built label embeddings for {provider.model_id} ({provider.dimensions} dims), "
        f"separation={labels.validation['severity']}"
    )
    return labels


# ============================================================================
# Caches
# ============================================================================

class SingleFlight:
    """
    Memoize async builds so concurrent callers await one computation.

    A failed build is not cached; the next caller starts a fresh one.
    """

    def __init__(self):
        self._values: Dict[Hashable, Any] = {}
        self._in_flight: Dict[Hashable, asyncio.Future] = {}

    def get(self, key: Hashable) -> Optional[Any]:
        return self._values.get(key)

    async def get_or_build(self, key: Hashable, factory: Callable[[], Awaitable[Any]]) -> Any:
        if key in self._values:
            return self._values[key]
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._in_flight[key] = task
            task.add_done_callback(lambda t, k=key: self._settle(k, t))
        return await task

    def _settle(self, key: Hashable, task: asyncio.Future) -> None:
        self._in_flight.pop(key, None)
        if not task.cancelled() and task.exception() is None:
            self._values[key] = task.result()

    def clear(self) -> None:
        self._values.clear()


class TermIndexCache:
    """
    Small cache of term indexes keyed by conversational turn id.

    Holds at most `capacity` entries; inserting beyond that evicts the
    oldest inserted entry. Reads do not refresh an entry's age.
    """

    def __init__(self, capacity: int = 5):
        self.capacity = capacity
        self._entries: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()

    def get(self, turn_id: str) -> Optional[Dict[str, Any]]:
        return self._entries.get(turn_id)

    def put(self, turn_id: str, index: Dict[str, Any]) -> None:
        if turn_id in self._entries:
            self._entries[turn_id] = index
            return
        self._entries[turn_id] = index
        while len(self._entries) > self.capacity:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"Evicted term index for turn {evicted}")

    def __contains__(self, turn_id: str) -> bool:
        return turn_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class EmbeddingRegistry:
    """
    Context object owning the embedding provider and its caches.

    Tests construct isolated instances; nothing here is module-global.
    The label cache is keyed by (model id, dimensions, "labels").
    """

    def __init__(self, provider: EmbeddingProvider, term_index_capacity: int = 5):
        self.provider = provider
        self.label_cache = SingleFlight()
        self.term_indexes = TermIndexCache(capacity=term_index_capacity)

    def _label_key(self) -> Tuple[str, int, str]:
        return (self.provider.model_id, self.provider.dimensions, "labels")

    async def get_label_embeddings(self) -> LabelEmbeddings:
        """Build the label prototypes once; concurrent callers share the build."""
        return await self.label_cache.get_or_build(self._label_key(), lambda: build_label_embeddings(self.provider))

    def cached_label_embeddings(self) -> Optional[LabelEmbeddings]:
        return self.label_cache.get(self._label_key())
