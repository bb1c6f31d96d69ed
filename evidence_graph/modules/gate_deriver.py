"""
Conditional Gate Derivation

Finds claims whose evidence is both exclusive (no other claim cites it)
and context-specific (conditional language or tightly coherent
distinguishing vocabulary), and turns each into a yes/no question whose
answer can prune the claim.

Pipeline per claim:
1. Exclusivity footprint and ratio
2. Conditional clause detection over exclusive statements
3. Contrastive term analysis (fallback when no clause is found), with
   optional embedding coherence per term
4. Context-specificity floor
Then: Jaccard deduplication, ranking, cap, renumbering.
"""
import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Set, Tuple

import numpy as np
from sklearn.feature_extraction.text import ENGLISH_STOP_WORDS, CountVectorizer

from ..config import GateConfig
from ..dataclass import (
    DerivedConditionalGate,
    GateDerivationResult,
    ShadowStatement,
    TermAnalysis,
    TermClass,
)
from ..distance import pairwise_cohesion
from ..embeddings import EmbeddingRegistry
from ..schemas import ClaimInput, EdgeInput, StructuralPatterns
from .claim_provenance import compute_claim_exclusivity, compute_statement_ownership, jaccard
from .stance_classifier import detect_signals

logger = logging.getLogger(__name__)


# ============================================================================
# Text helpers
# ============================================================================

_CLAUSE = re.compile(r"\b(only if|if|when|unless|in case|provided that|as long as|assuming)\b([\s\S]{0,200})", re.IGNORECASE)
_CLAUSE_END = re.compile(r"(?<![:/])(?<!\d)[.;:!?,]+(?=\s|$)")
_ACRONYM = re.compile(r"\b[A-Z]{2,}\b")
_CASED_PHRASE = re.compile(r"\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+){0,2}\b")
_TERM_TOKEN = r"(?u)\b[a-zA-Z][a-zA-Z0-9_-]{2,}\b"
_CLAUSE_WORDS = {"if", "when", "unless", "only"}


def clamp01(x: float) -> float:
    if not np.isfinite(x):
        return 0.0
    return max(0.0, min(1.0, x))


def clip_text(text: str, max_len: int) -> str:
    s = text.strip()
    if len(s) <= max_len:
        return s
    return s[:max(0, max_len - 1)].rstrip() + "…"


def normalize_token(token: str) -> str:
    return re.sub(r"[^\w-]+", "", token).strip()


@dataclass
class ConditionalClause:
    clause: str
    keyword: str
    rest: str


def extract_conditional_clause(text: str) -> Optional[ConditionalClause]:
    """
    The first condition-bearing clause in a sentence.

    `rest` runs from the keyword to the first clause boundary, clipped to
    120 characters.
    """
    match = _CLAUSE.search(text.strip())
    if not match:
        return None
    keyword = match.group(1).strip().lower()
    tail = match.group(2).strip()
    if not tail:
        return None
    head = _CLAUSE_END.split(tail)[0] or tail
    rest = re.sub(r"^[,)\]]+", "", clip_text(head, 120)).strip()
    if not rest:
        return None
    return ConditionalClause(clause=f"{keyword} {rest}".strip(), keyword=keyword, rest=rest)


def extract_proper_noun_terms(text: str) -> List[str]:
    """Acronyms and capitalized phrases, deduplicated case-insensitively."""
    terms = _ACRONYM.findall(text) + _CASED_PHRASE.findall(text)
    seen = set()
    out = []
    for term in terms:
        term = term.strip()
        key = term.lower()
        if not term or key in seen or key in _CLAUSE_WORDS or key in ENGLISH_STOP_WORDS:
            continue
        seen.add(key)
        out.append(term)
    return out


def build_question(
    claim_label: str,
    clause: Optional[ConditionalClause],
    proper_nouns: Sequence[str],
    anchor_terms: Sequence[str] = (),
) -> Tuple[str, str, List[str]]:
    """
    Phrase the gate question.

    Returns:
        (question, condition, anchor_terms)
    """
    if clause is not None:
        if clause.keyword in ("if", "when", "only if", "unless"):
            question = f"Does this apply {clause.keyword} {clause.rest}?"
        else:
            question = f"Does this apply {clause.clause}?"
        tokens = [clause.keyword] + clause.rest.split()[:6]
        anchors = [t for t in (normalize_token(x) for x in tokens) if t][:3]
        return clip_text(question, 160), clip_text(clause.clause, 140), anchors

    nouns = [n for n in proper_nouns if n.strip()][:3] or list(anchor_terms)[:3]
    if nouns:
        joined = " / ".join(nouns)
        return f"Does your situation involve {joined}?", joined, list(nouns)

    label = claim_label.strip() or "this claim"
    return f'Does "{clip_text(label, 80)}" depend on your context?', "context", []


# ============================================================================
# Term analysis
# ============================================================================

def build_term_index(statements: Sequence[ShadowStatement]) -> Tuple[Dict[str, List[str]], Dict[str, int]]:
    """
    Term -> ids of statements containing it, plus global term counts.

    Returns empty mappings when no statement has a usable term.
    """
    texts = [s.text for s in statements]
    if not texts:
        return {}, {}
    vectorizer = CountVectorizer(lowercase=True, stop_words="english", token_pattern=_TERM_TOKEN)
    try:
        matrix = vectorizer.fit_transform(texts)
    except ValueError:
        # Empty vocabulary: only stopwords or short tokens
        return {}, {}

    vocabulary = vectorizer.get_feature_names_out()
    totals = np.asarray(matrix.sum(axis=0)).ravel()
    members: Dict[str, Set[str]] = {term: set() for term in vocabulary}
    rows, cols = matrix.nonzero()
    for row, col in zip(rows, cols):
        members[vocabulary[col]].add(statements[row].id)
    index = {term: sorted(ids) for term, ids in members.items()}
    counts = {term: int(totals[col]) for col, term in enumerate(vocabulary)}
    return index, counts


def contrastive_terms(
    local_texts: Sequence[str],
    global_counts: Mapping[str, int],
    min_local_count: int = 2,
    top_n: int = 5,
) -> List[Tuple[str, int, int, float]]:
    """
    Terms over-represented in `local_texts` relative to all statements.

    Returns:
        (term, local_count, global_count, contrast_ratio) for the top terms
    """
    if not local_texts:
        return []
    analyzer = CountVectorizer(lowercase=True, stop_words="english", token_pattern=_TERM_TOKEN).build_analyzer()
    local = Counter(token for text in local_texts for token in analyzer(text))
    scored = []
    for term, count in local.items():
        global_count = global_counts.get(term, count)
        if count < min_local_count or global_count <= 0:
            continue
        scored.append((term, count, global_count, count / global_count))
    scored.sort(key=lambda t: (-t[3], -t[1], t[0]))
    return scored[:top_n]


def classify_term(
    term_statement_ids: Sequence[str],
    vectors: Optional[Mapping[str, np.ndarray]],
    config: GateConfig,
) -> Tuple[Optional[float], TermClass]:
    """Coherence of the statements sharing a term decides whether it anchors a context."""
    if not vectors:
        return None, TermClass.AMBIGUOUS
    present = [sid for sid in term_statement_ids if sid in vectors]
    if len(present) < 2:
        return None, TermClass.AMBIGUOUS
    coherence = pairwise_cohesion(present, vectors)
    if coherence >= config.anchor_coherence:
        return coherence, TermClass.CONTEXT_ANCHOR
    if coherence < config.epistemic_coherence:
        return coherence, TermClass.EPISTEMIC
    return coherence, TermClass.AMBIGUOUS


def term_specificity(terms: Sequence[TermAnalysis], ambiguous_weight: float) -> float:
    if not terms:
        return 0.0
    anchors = sum(1 for t in terms if t.term_class == TermClass.CONTEXT_ANCHOR)
    ambiguous = sum(1 for t in terms if t.term_class == TermClass.AMBIGUOUS)
    return (anchors + ambiguous_weight * ambiguous) / len(terms)


# ============================================================================
# Structural boosts
# ============================================================================

def compute_inter_region_boost(
    claim_id: str,
    patterns: Optional[StructuralPatterns],
    edges: Sequence[EdgeInput],
    config: GateConfig,
) -> float:
    """Boost claims already known to sit in a conflict or tradeoff."""
    if not config.apply_inter_region_boost:
        return 0.0
    patterns = patterns or StructuralPatterns()

    for cluster in patterns.conflict_clusters:
        if cluster.target_id == claim_id or claim_id in cluster.challenger_ids:
            return config.conflict_cluster_boost

    in_conflict = any(claim_id in (c.claim_a.id, c.claim_b.id) for c in patterns.conflicts) or any(
        e.type == "conflicts" and claim_id in (e.from_id, e.to_id) for e in edges
    )
    if in_conflict:
        return config.conflict_boost

    in_tradeoff = any(claim_id in (t.claim_a_id, t.claim_b_id) for t in patterns.tradeoffs) or any(
        e.type == "tradeoff" and claim_id in (e.from_id, e.to_id) for e in edges
    )
    if in_tradeoff:
        return config.tradeoff_boost
    return 0.0


# ============================================================================
# Deriver
# ============================================================================

@dataclass
class _Candidate:
    claim_id: str
    gate: DerivedConditionalGate
    ranking_score: float
    query_relevance: float
    inter_region_boost: float
    statement_set: Set[str] = field(default_factory=set)


class GateDeriver:
    """
    Derives conditional gates from claims and their source statements.

    Never raises on odd claim data; every claim's outcome is recorded in
    `debug["per_claim"]`.
    """

    def __init__(self, config: Optional[GateConfig] = None, registry: Optional[EmbeddingRegistry] = None):
        self.config = config or GateConfig()
        self.registry = registry

    def _term_index(self, statements: Sequence[ShadowStatement], turn_id: Optional[str]):
        cache = self.registry.term_indexes if self.registry is not None else None
        if cache is not None and turn_id is not None:
            cached = cache.get(turn_id)
            if cached is not None:
                return cached["index"], cached["counts"]
        index, counts = build_term_index(statements)
        if cache is not None and turn_id is not None:
            cache.put(turn_id, {"index": index, "counts": counts})
        return index, counts

    def derive(
        self,
        claims: Sequence[ClaimInput],
        statements: Sequence[ShadowStatement],
        edges: Sequence[EdgeInput] = (),
        patterns: Optional[StructuralPatterns] = None,
        statement_vectors: Optional[Mapping[str, np.ndarray]] = None,
        query_relevance: Optional[Mapping[str, float]] = None,
        turn_id: Optional[str] = None,
    ) -> GateDerivationResult:
        """
        Derive, deduplicate, rank and cap gates.

        Args:
            claims: Upstream claims with source statement ids
            statements: Extracted statements
            edges: Claim graph edges
            patterns: Structural patterns (conflicts, tradeoffs, convergence)
            statement_vectors: Optional statement vectors for term coherence
            query_relevance: Optional per-statement relevance to the user query
            turn_id: Key for the term index cache

        Returns:
            GateDerivationResult with gates `derived_gate_0..` and a debug report
        """
        config = self.config
        debug: Dict = {"short_circuit_reason": None, "per_claim": [], "gates": []}
        claims = [c for c in claims if c.id.strip()]

        if not claims:
            debug["short_circuit_reason"] = "no_claims"
            return GateDerivationResult(gates=[], debug=debug)

        patterns = patterns or StructuralPatterns()
        has_conflicts = bool(patterns.conflicts) or any(e.type == "conflicts" for e in edges)
        if patterns.convergence_ratio > config.convergent_ratio and not has_conflicts:
            debug["short_circuit_reason"] = "convergent_landscape"
            logger.info(f"Gate derivation skipped: convergent landscape ({patterns.convergence_ratio:.2f})")
            return GateDerivationResult(gates=[], debug=debug)

        statements_by_id = {s.id: s for s in statements}
        ownership = compute_statement_ownership(claims)
        exclusivity = compute_claim_exclusivity(claims, ownership)

        if not any(len(e.exclusive_ids) >= config.min_exclusive_footprint for e in exclusivity.values()):
            debug["short_circuit_reason"] = "no_exclusive_evidence"
            for claim in claims:
                ex = exclusivity[claim.id]
                debug["per_claim"].append({
                    "claim_id": claim.id,
                    "claim_label": claim.label or claim.id,
                    "exclusive_count": len(ex.exclusive_ids),
                    "shared_count": len(ex.shared_ids),
                    "exclusivity_ratio": ex.exclusivity_ratio,
                    "classification": "below_footprint",
                })
            logger.info("Gate derivation skipped: no claim has enough exclusive evidence")
            return GateDerivationResult(gates=[], debug=debug)

        term_index, global_counts = self._term_index(statements, turn_id)
        relevance = query_relevance or {}

        candidates: List[_Candidate] = []
        for claim in claims:
            candidate, entry = self._evaluate_claim(
                claim, exclusivity[claim.id], statements_by_id, term_index, global_counts,
                statement_vectors, relevance, patterns, edges,
            )
            debug["per_claim"].append(entry)
            if candidate is not None:
                candidate.gate.id = f"derived_gate_{len(candidates)}"
                candidates.append(candidate)

        merged = self._deduplicate(candidates)
        merged.sort(key=lambda c: (-c.ranking_score, -c.query_relevance, c.gate.id))
        selected = merged[:config.max_gates]
        selected_ids = {id(c) for c in selected}

        gates = []
        for i, candidate in enumerate(selected):
            candidate.gate.id = f"derived_gate_{i}"
            gates.append(candidate.gate)

        for candidate in merged:
            debug["gates"].append({
                "gate_id": candidate.gate.id if id(candidate) in selected_ids else None,
                "claim_id": candidate.claim_id,
                "confidence": candidate.gate.confidence,
                "affected_claims": candidate.gate.affected_claims,
                "selected": id(candidate) in selected_ids,
                "inter_region_boost": candidate.inter_region_boost,
            })

        logger.info(f"Derived {len(gates)} gates from {len(candidates)} candidates over {len(claims)} claims")
        return GateDerivationResult(gates=gates, debug=debug)

    def _evaluate_claim(
        self,
        claim: ClaimInput,
        exclusivity,
        statements_by_id: Mapping[str, ShadowStatement],
        term_index: Mapping[str, List[str]],
        global_counts: Mapping[str, int],
        vectors: Optional[Mapping[str, np.ndarray]],
        relevance: Mapping[str, float],
        patterns: StructuralPatterns,
        edges: Sequence[EdgeInput],
    ) -> Tuple[Optional[_Candidate], Dict]:
        config = self.config
        exclusive_ids = exclusivity.exclusive_ids
        total = len(exclusive_ids) + len(exclusivity.shared_ids)
        ratio = exclusivity.exclusivity_ratio
        label = claim.label.strip() or claim.id

        passed_footprint = len(exclusive_ids) >= config.min_exclusive_footprint
        if total < config.min_statements_for_ratio:
            passed_exclusivity = total > 0 and not exclusivity.shared_ids
        else:
            passed_exclusivity = ratio >= config.min_exclusivity_ratio

        exclusive_statements = [statements_by_id[sid] for sid in exclusive_ids if sid in statements_by_id]
        # Embedding-classified signals are trusted only when every exclusive statement used them
        used_pattern_fallback = any(
            s.classification is None or s.classification.method != "embedding" for s in exclusive_statements
        )

        conditional_texts = []
        proper_nouns: List[str] = []
        for s in exclusive_statements:
            proper_nouns.extend(extract_proper_noun_terms(s.text))
            fired = detect_signals(s.text).conditional if used_pattern_fallback else s.signals.conditional
            if fired:
                conditional_texts.append(s.text)
        conditional_ratio = clamp01(len(conditional_texts) / len(exclusive_ids)) if exclusive_ids else 0.0

        clause = None
        for text in conditional_texts:
            clause = extract_conditional_clause(text)
            if clause is not None:
                break

        terms: List[TermAnalysis] = []
        if clause is None and exclusive_statements:
            for term, local, global_count, contrast in contrastive_terms(
                [s.text for s in exclusive_statements], global_counts,
                config.contrastive_min_local_count, config.contrastive_top_terms,
            ):
                coherence, term_class = classify_term(term_index.get(term, []), vectors, config)
                terms.append(TermAnalysis(term, local, global_count, contrast, coherence, term_class))
        term_spec = term_specificity(terms, config.ambiguous_term_weight)
        context_specificity = max(conditional_ratio, term_spec)

        noun_counts = Counter(n.lower() for n in proper_nouns)
        ranked_nouns = []
        for key, _ in sorted(noun_counts.items(), key=lambda kv: (-kv[1], kv[0]))[:5]:
            ranked_nouns.append(next(n for n in proper_nouns if n.lower() == key))
        anchor_terms = [t.term for t in terms if t.term_class == TermClass.CONTEXT_ANCHOR]
        question, condition, anchors = build_question(label, clause, ranked_nouns, anchor_terms)

        boost = compute_inter_region_boost(claim.id, patterns, edges, config)
        ranking_score = clamp01(ratio * context_specificity + boost)
        scores = [relevance.get(sid, 0.0) for sid in exclusive_ids]
        claim_relevance = clamp01(sum(scores) / len(scores)) if scores else 0.0

        if not passed_footprint:
            classification = "below_footprint"
        elif not passed_exclusivity:
            classification = "below_exclusivity"
        elif context_specificity < config.min_context_specificity:
            classification = "low_context_specificity"
        else:
            classification = "gate_candidate"

        entry = {
            "claim_id": claim.id,
            "claim_label": label,
            "total_source_statements": total,
            "exclusive_count": len(exclusive_ids),
            "shared_count": len(exclusivity.shared_ids),
            "exclusivity_ratio": ratio,
            "classification": classification,
            "conditional_count": len(conditional_texts),
            "conditional_ratio": conditional_ratio,
            "term_specificity": term_spec,
            "context_specificity": context_specificity,
            "used_pattern_fallback": used_pattern_fallback,
            "inter_region_boost": boost,
            "ranking_score": ranking_score,
            "query_relevance": claim_relevance,
        }
        if classification != "gate_candidate":
            return None, entry

        source_ids = sorted(exclusive_ids)
        gate = DerivedConditionalGate(
            id="",
            question=question,
            condition=condition,
            affected_claims=[claim.id],
            anchor_terms=anchors,
            source_statement_ids=source_ids,
            confidence=ranking_score,
            exclusivity_ratio=ratio,
            context_specificity=context_specificity,
            exclusive_footprint=len(source_ids),
            terms=terms,
        )
        return _Candidate(claim.id, gate, ranking_score, claim_relevance, boost, set(source_ids)), entry

    def _deduplicate(self, candidates: List[_Candidate]) -> List[_Candidate]:
        """Merge candidates with near-identical evidence; the best-ranked phrasing wins."""
        merged = []
        consumed: Set[int] = set()
        for i, a in enumerate(candidates):
            if i in consumed:
                continue
            group = [a]
            for j in range(i + 1, len(candidates)):
                if j in consumed:
                    continue
                if jaccard(a.statement_set, candidates[j].statement_set) >= self.config.dedup_jaccard:
                    group.append(candidates[j])
                    consumed.add(j)
            group.sort(key=lambda c: (-c.ranking_score, -c.query_relevance, c.gate.id))
            winner = group[0]
            winner.gate.affected_claims = sorted({cid for c in group for cid in c.gate.affected_claims})
            merged.append(winner)
        return merged


def derive_conditional_gates(
    claims: Sequence[ClaimInput],
    statements: Sequence[ShadowStatement],
    edges: Sequence[EdgeInput] = (),
    patterns: Optional[StructuralPatterns] = None,
    statement_vectors: Optional[Mapping[str, np.ndarray]] = None,
    query_relevance: Optional[Mapping[str, float]] = None,
    config: Optional[GateConfig] = None,
    registry: Optional[EmbeddingRegistry] = None,
    turn_id: Optional[str] = None,
) -> GateDerivationResult:
    """Convenience wrapper around GateDeriver.derive."""
    return GateDeriver(config, registry).derive(
        claims, statements, edges, patterns, statement_vectors, query_relevance, turn_id
    )
