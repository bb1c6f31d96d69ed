"""
Claim provenance measurements.

Set membership and set overlap over claims and their source statements;
no geometry and no semantic interpretation.
"""
from collections import defaultdict
from typing import AbstractSet, Dict, List, Sequence, Set

from ..dataclass import ClaimExclusivity, ClaimOverlapEntry
from ..schemas import ClaimInput


def _source_ids(claim: ClaimInput) -> List[str]:
    return [sid.strip() for sid in claim.source_statement_ids if sid and sid.strip()]


def jaccard(a: AbstractSet[str], b: AbstractSet[str]) -> float:
    """Jaccard index; two empty sets count as identical."""
    if not a and not b:
        return 1.0
    if not a or not b:
        return 0.0
    inter = len(a & b)
    union = len(a) + len(b) - inter
    return inter / union if union else 0.0


def compute_statement_ownership(claims: Sequence[ClaimInput]) -> Dict[str, Set[str]]:
    """Statement id -> ids of the claims that cite it."""
    ownership: Dict[str, Set[str]] = defaultdict(set)
    for claim in claims:
        if not claim.id.strip():
            continue
        for sid in _source_ids(claim):
            ownership[sid].add(claim.id)
    return dict(ownership)


def compute_claim_exclusivity(
    claims: Sequence[ClaimInput],
    ownership: Dict[str, Set[str]],
) -> Dict[str, ClaimExclusivity]:
    """
    Split each claim's evidence into exclusive and shared statements.

    A claim with ratio 1.0 is built entirely from evidence no other claim
    touches; with ratio 0.0, pruning it loses nothing unique.
    """
    result = {}
    for claim in claims:
        if not claim.id.strip():
            continue
        exclusive, shared = [], []
        for sid in _source_ids(claim):
            if len(ownership.get(sid, ())) <= 1:
                exclusive.append(sid)
            else:
                shared.append(sid)
        total = len(exclusive) + len(shared)
        result[claim.id] = ClaimExclusivity(
            exclusive_ids=exclusive,
            shared_ids=shared,
            exclusivity_ratio=len(exclusive) / total if total else 0.0,
        )
    return result


def compute_claim_overlap(claims: Sequence[ClaimInput]) -> List[ClaimOverlapEntry]:
    """Pairwise Jaccard of source statement sets; only pairs above zero, highest first."""
    sets = {}
    for claim in claims:
        if claim.id.strip():
            sets[claim.id] = set(_source_ids(claim))

    ids = list(sets)
    entries = []
    for i in range(len(ids)):
        for j in range(i + 1, len(ids)):
            sim = jaccard(sets[ids[i]], sets[ids[j]])
            if sim > 0:
                entries.append(ClaimOverlapEntry(claim_a=ids[i], claim_b=ids[j], jaccard=sim))
    entries.sort(key=lambda e: -e.jaccard)
    return entries
