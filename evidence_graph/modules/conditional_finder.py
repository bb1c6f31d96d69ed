"""
Conditional finder.

Pulls the explicit condition clauses ("if you are a startup", "when the
data is sensitive") out of the evidence behind conditional-type claims,
groups equivalent clauses, and reports which claims a "no" answer would
prune.
"""
import logging
import re
from collections import Counter, defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Set

import numpy as np

from ..config import ConditionalFinderConfig
from ..dataclass import (
    GROUNDED_STANCES,
    SITUATIONAL_STANCES,
    ConditionAffectedClaim,
    ConditionalFinderResult,
    ConditionSource,
    ExtractedCondition,
    ShadowStatement,
    StanceVerdict,
)
from ..distance import cosine_similarity, mean_vector, quantize
from ..schemas import ClaimInput, EdgeInput

logger = logging.getLogger(__name__)


CLAUSE_PATTERNS = [
    re.compile(r"^if\s+(.+?)\s*[,;]\s*", re.IGNORECASE),
    re.compile(r"^when\s+(.+?)\s*[,;]\s*", re.IGNORECASE),
    re.compile(r"^unless\s+(.+?)\s*[,;]\s*", re.IGNORECASE),
    re.compile(r"^assuming\s+(.+?)\s*[,;]\s*", re.IGNORECASE),
    re.compile(r"^provided\s+that\s+(.+?)\s*[,;]\s*", re.IGNORECASE),
    re.compile(r"^only\s+if\s+(.+?)\s*[,;]\s*", re.IGNORECASE),
    re.compile(r"[,;]\s*if\s+(.+?)\s*[,;.]\s*", re.IGNORECASE),
    re.compile(r"depends\s+on\s+(?:whether\s+)?(.+?)\s*[,;.]", re.IGNORECASE),
    re.compile(r"^for\s+(.+?(?:users?|teams?|projects?|companies|organizations?))\s*[,;]\s*", re.IGNORECASE),
]

VERB_PREFIXES = (
    "using", "running", "deploying", "building", "working",
    "managing", "hosting", "operating", "maintaining", "developing",
)

STRENGTH_ORDER = {"strong": 0, "weak": 1, "inert": 2}


@dataclass
class ExtractedClause:
    raw_clause: str
    extraction_method: str  # regex or fallback


def normalize_clause(clause: str) -> str:
    return re.sub(r"\s+", " ", clause.lower().replace("’", "'")).strip()


def clean_clause(clause: str) -> str:
    return re.sub(r"[.;,\s]+$", "", re.sub(r"\s+", " ", clause.strip())).strip()


def extract_clause(text: str, config: Optional[ConditionalFinderConfig] = None) -> ExtractedClause:
    """First clause-pattern match of acceptable length, else a text prefix."""
    config = config or ConditionalFinderConfig()
    for pattern in CLAUSE_PATTERNS:
        match = pattern.search(text)
        if match and match.group(1):
            clause = match.group(1).strip()
            if config.min_clause_chars <= len(clause) <= config.max_clause_chars:
                return ExtractedClause(clause, "regex")
    return ExtractedClause(text[:config.fallback_clause_chars].strip(), "fallback")


def format_question(clause: str) -> str:
    """Turn a clause into a question addressed to the user."""
    trimmed = clause.strip()
    lower = trimmed.lower()

    if lower.startswith("you "):
        if lower.startswith("you are "):
            return f"Are you {trimmed[8:].strip()}?"
        return f"Do {trimmed}?"
    if lower.startswith("you're "):
        return f"Are you {trimmed[7:].strip()}?"
    if lower.startswith("your "):
        return f"Do you have {trimmed[5:]}?"
    if lower.startswith("the "):
        return f"Do you have {trimmed}?"
    if any(lower.startswith(verb + " ") for verb in VERB_PREFIXES):
        return f"Are you {trimmed}?"
    if lower.startswith("there "):
        return f"Are {trimmed}?"
    return f"Does this apply to you: {trimmed}?"


def analyze_claim_stances(claim: ClaimInput, statements_by_id: Mapping[str, ShadowStatement]) -> StanceVerdict:
    """
    Would a "no" to the condition prune this claim?

    Warning or factual evidence stands on its own and keeps the claim;
    purely situational evidence falls with the condition.
    """
    counts: Counter = Counter()
    for sid in claim.source_statement_ids:
        stmt = statements_by_id.get(sid)
        if stmt is not None:
            counts[stmt.stance] += 1

    total = sum(counts.values())
    prunable = sum(n for stance, n in counts.items() if stance in SITUATIONAL_STANCES)
    keepable = sum(n for stance, n in counts.items() if stance in GROUNDED_STANCES)
    stance_counts = {stance.value: n for stance, n in sorted(counts.items(), key=lambda kv: kv[0].value)}

    if keepable > 0:
        verdict = "would_keep"
        reason = f"{keepable} warning/factual source statements provide value independent of this condition"
    elif prunable > 0:
        verdict = "would_prune"
        reason = f"All {prunable} source statements are situational advice (directive/precondition/consequence/hedged)"
    else:
        verdict = "no_evidence"
        reason = "No source statements found for this claim"
    return StanceVerdict(total, prunable, keepable, stance_counts, verdict, reason)


def average_pairwise_similarity(vectors: Sequence[np.ndarray]) -> float:
    if len(vectors) <= 1:
        return 1.0
    total, count = 0.0, 0
    for i in range(len(vectors)):
        for j in range(i + 1, len(vectors)):
            total += quantize(cosine_similarity(vectors[i], vectors[j]))
            count += 1
    return total / count if count else 0.0


def connected_components(n: int, is_connected: Callable[[int, int], bool]) -> List[List[int]]:
    """Components of an implicit graph, each sorted, in order of smallest member."""
    visited = [False] * n
    components = []
    for start in range(n):
        if visited[start]:
            continue
        visited[start] = True
        stack = [start]
        component = []
        while stack:
            cur = stack.pop()
            component.append(cur)
            for j in range(n):
                if not visited[j] and is_connected(cur, j):
                    visited[j] = True
                    stack.append(j)
        components.append(sorted(component))
    return components


@dataclass
class _ClaimClauses:
    claim: ClaimInput
    canonical_clause: str
    canonical_norm: str
    sources: List[ConditionSource]
    representative: Optional[np.ndarray]


class ConditionalFinder:
    """Extracts condition clauses from conditional-type claims."""

    def __init__(self, config: Optional[ConditionalFinderConfig] = None):
        self.config = config or ConditionalFinderConfig()

    def _orphans(
        self,
        statements: Sequence[ShadowStatement],
        used_ids: Set[str],
        conditional_claims: Sequence[ClaimInput],
        statements_by_id: Mapping[str, ShadowStatement],
    ) -> List[Dict]:
        models_with_claims = set()
        for claim in conditional_claims:
            models_with_claims.update(claim.supporters)
            for sid in claim.source_statement_ids:
                if sid in statements_by_id:
                    models_with_claims.add(statements_by_id[sid].model_index)

        orphans = [s for s in statements if s.signals.conditional and s.id not in used_ids]
        orphans.sort(key=lambda s: -s.confidence)
        result = []
        for s in orphans[:self.config.max_orphans]:
            if s.model_index in models_with_claims:
                reason = "Not source evidence for any conditional-type claim"
            else:
                reason = f"Model {s.model_index} has no conditional-type claims"
            result.append({
                "statement_id": s.id,
                "text": s.text,
                "extracted_clause": extract_clause(s.text, self.config).raw_clause,
                "model_index": s.model_index,
                "reason": reason,
            })
        return result

    def find(
        self,
        claims: Sequence[ClaimInput],
        statements: Sequence[ShadowStatement],
        edges: Sequence[EdgeInput] = (),
        statement_vectors: Optional[Mapping[str, np.ndarray]] = None,
    ) -> ConditionalFinderResult:
        """
        Find and group condition clauses.

        Args:
            claims: Upstream claims; only `type == "conditional"` ones are mined
            statements: Extracted statements
            edges: Claim graph edges, prerequisite edges extend affected claims
            statement_vectors: Optional statement vectors for clause grouping

        Returns:
            ConditionalFinderResult with conditions `cond_0..`, strongest first
        """
        statements_by_id = {s.id: s for s in statements}
        claims_by_id = {c.id: c for c in claims if c.id.strip()}
        conditional_claims = [c for c in claims if c.type == "conditional" and c.id.strip()]
        conditional_total = sum(1 for s in statements if s.signals.conditional)

        extractions: List[_ClaimClauses] = []
        used_ids: Set[str] = set()
        in_claims = 0

        for claim in conditional_claims:
            used_ids.update(claim.source_statement_ids)
            signal_statements = [
                statements_by_id[sid] for sid in claim.source_statement_ids
                if sid in statements_by_id and statements_by_id[sid].signals.conditional
            ]
            in_claims += len(signal_statements)
            if not signal_statements:
                continue

            clauses = [(s, extract_clause(s.text, self.config)) for s in signal_statements]
            regex_only = [(s, c) for s, c in clauses if c.extraction_method == "regex"]
            candidates = [clean_clause(c.raw_clause) for _, c in (regex_only or clauses)]
            candidates = [c for c in candidates if c]
            if not candidates:
                continue
            canonical = min(candidates, key=len)

            representative = None
            if statement_vectors:
                representative = mean_vector(
                    [statement_vectors[s.id] for s in signal_statements if s.id in statement_vectors]
                )

            extractions.append(_ClaimClauses(
                claim=claim,
                canonical_clause=canonical,
                canonical_norm=normalize_clause(canonical),
                sources=[
                    ConditionSource(
                        id=s.id,
                        text=s.text,
                        stance=s.stance,
                        model_index=s.model_index,
                        confidence=s.confidence,
                        raw_clause=clean_clause(c.raw_clause),
                        extraction_method=c.extraction_method,
                    )
                    for s, c in clauses
                ],
                representative=representative,
            ))

        orphans = self._orphans(statements, used_ids, conditional_claims, statements_by_id)
        meta = {
            "total_conditional_claims": len(conditional_claims),
            "conditions_produced": 0,
            "conditional_statements_in_claims": in_claims,
            "conditional_statements_total": conditional_total,
        }
        if not extractions:
            logger.info(f"No condition clauses found across {len(conditional_claims)} conditional claims")
            return ConditionalFinderResult(conditions=[], meta=meta, orphaned_conditional_statements=orphans)

        def is_connected(i: int, j: int) -> bool:
            if i == j:
                return True
            a, b = extractions[i].representative, extractions[j].representative
            if a is not None and b is not None:
                if quantize(cosine_similarity(a, b)) >= self.config.clause_merge_threshold:
                    return True
            return extractions[i].canonical_norm == extractions[j].canonical_norm

        prerequisites: Dict[str, Set[str]] = defaultdict(set)
        for edge in edges:
            if edge.type == "prerequisite" and edge.from_id.strip() and edge.to_id.strip():
                prerequisites[edge.from_id].add(edge.to_id)

        conditions = [
            self._build_condition([extractions[i] for i in component], prerequisites, claims_by_id, statements_by_id)
            for component in connected_components(len(extractions), is_connected)
        ]
        conditions.sort(key=lambda c: (STRENGTH_ORDER[c.gate_strength], -len(c.affected_claims)))
        for i, condition in enumerate(conditions):
            condition.id = f"cond_{i}"

        meta["conditions_produced"] = len(conditions)
        logger.info(f"Found {len(conditions)} conditions from {len(conditional_claims)} conditional claims")
        return ConditionalFinderResult(conditions=conditions, meta=meta, orphaned_conditional_statements=orphans)

    def _build_condition(
        self,
        members: List[_ClaimClauses],
        prerequisites: Mapping[str, Set[str]],
        claims_by_id: Mapping[str, ClaimInput],
        statements_by_id: Mapping[str, ShadowStatement],
    ) -> ExtractedCondition:
        member_clauses = [m.canonical_clause for m in members]
        canonical = clean_clause(min(member_clauses, key=len))

        vectors = [m.representative for m in members if m.representative is not None]
        if len(vectors) >= 2:
            similarity = average_pairwise_similarity(vectors)
        else:
            similarity = 1.0 if len({m.canonical_norm for m in members}) <= 1 else 0.0

        sources: Dict[str, ConditionSource] = {}
        for m in members:
            for source in m.sources:
                sources.setdefault(source.id, source)

        affected: Dict[str, ConditionAffectedClaim] = {}
        for m in members:
            affected[m.claim.id] = self._affected(m.claim, statements_by_id, "direct")
        for m in members:
            for to_id in sorted(prerequisites.get(m.claim.id, ())):
                if to_id in affected or to_id not in claims_by_id:
                    continue
                affected[to_id] = self._affected(claims_by_id[to_id], statements_by_id, "prerequisite_downstream")

        verdicts = [a.stance_analysis.verdict for a in affected.values()]
        if not verdicts:
            strength = "inert"
        elif "would_prune" in verdicts:
            strength = "strong"
        else:
            strength = "weak"

        return ExtractedCondition(
            id="",
            canonical_clause=canonical,
            question=format_question(canonical),
            source_statements=list(sources.values()),
            affected_claims=list(affected.values()),
            member_clauses=member_clauses,
            cluster_similarity=similarity,
            gate_strength=strength,
        )

    @staticmethod
    def _affected(claim: ClaimInput, statements_by_id, connection_type: str) -> ConditionAffectedClaim:
        return ConditionAffectedClaim(
            claim_id=claim.id,
            claim_label=claim.label or claim.id,
            claim_type=claim.type,
            stance_analysis=analyze_claim_stances(claim, statements_by_id),
            connection_type=connection_type,
        )


def find_conditionals(
    claims: Sequence[ClaimInput],
    statements: Sequence[ShadowStatement],
    edges: Sequence[EdgeInput] = (),
    statement_vectors: Optional[Mapping[str, np.ndarray]] = None,
    config: Optional[ConditionalFinderConfig] = None,
) -> ConditionalFinderResult:
    return ConditionalFinder(config).find(claims, statements, edges, statement_vectors)
