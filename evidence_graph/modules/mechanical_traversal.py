"""
Mechanical traversal analysis.

Runs the conditional finder and the conflict deriver together (strong
conditions act as the blocking gates) and summarizes how much of the
evidence an interactive traversal could prune.
"""
import logging
from collections import Counter
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np

from ..config import ConditionalFinderConfig, ConflictConfig
from ..dataclass import (
    ConditionalFinderResult,
    ConflictDerivationResult,
    DerivedConditionalGate,
    ShadowStatement,
)
from ..schemas import ClaimInput, EdgeInput, StructuralPatterns
from .conditional_finder import find_conditionals
from .conflict_deriver import derive_conflicts

logger = logging.getLogger(__name__)


def _assess(strong: int, passing: int, weak_exists: bool) -> str:
    if strong >= 2 or passing >= 2:
        return "high"
    if strong >= 1 or passing >= 1:
        return "moderate"
    if weak_exists:
        return "low"
    return "none"


def summarize_traversal(
    conditionals: ConditionalFinderResult,
    conflicts: ConflictDerivationResult,
    gates: Sequence[DerivedConditionalGate] = (),
) -> Dict:
    """
    Prunability of a traversal.

    Reports, for every condition, gate and passing conflict, how many
    statements a decision would prune, and an overall assessment of
    `high`, `moderate`, `low` or `none` with the evidence behind it.
    """
    strong = [c for c in conditionals.conditions if c.gate_strength == "strong"]
    weak_exists = any(c.gate_strength == "weak" for c in conditionals.conditions)
    passing = [c for c in conflicts.conflicts if c.passed_filter]
    blocked = [c for c in passing if c.blocked_by_gates]

    per_condition = []
    for condition in conditionals.conditions:
        prunable = sum(
            a.stance_analysis.total_source_statements
            for a in condition.affected_claims
            if a.stance_analysis.verdict == "would_prune"
        )
        per_condition.append({
            "id": condition.id,
            "question": condition.question,
            "gate_strength": condition.gate_strength,
            "statements_pruned_on_no": prunable,
        })

    per_gate = [
        {"id": g.id, "question": g.question, "statements_pruned_on_no": len(g.source_statement_ids)}
        for g in gates
    ]

    per_conflict = [
        {
            "id": c.id,
            "question": c.question,
            "statements_pruned_if_a_chosen": len(c.analysis.get("source_statements_b", [])),
            "statements_pruned_if_b_chosen": len(c.analysis.get("source_statements_a", [])),
            "blocked": bool(c.blocked_by_gates),
        }
        for c in passing
    ]

    asymmetry = Counter(c.stance_asymmetry.value for c in conflicts.conflicts)

    evidence: List[str] = []
    if strong:
        evidence.append(f"{len(strong)} strong conditional gate(s) detected")
    elif weak_exists:
        evidence.append("Weak conditional gates detected, but none strong")
    else:
        evidence.append("No conditional structure found in source evidence")
    if gates:
        evidence.append(f"{len(gates)} derived gate(s) from exclusive evidence")
    if passing:
        evidence.append(f"{len(passing)} conflict(s) pass the forcing-point filter")
    else:
        evidence.append("No conflicts pass the forcing-point filter")
    if blocked:
        evidence.append(f"{len(blocked)} passing conflict(s) blocked by strong gates")

    return {
        "conditions": per_condition,
        "gates": per_gate,
        "conflicts": per_conflict,
        "conflict_asymmetry": {
            "total_conflicts": len(conflicts.conflicts),
            "contextual_count": asymmetry.get("contextual", 0),
            "normative_count": asymmetry.get("normative", 0),
            "epistemic_count": asymmetry.get("epistemic", 0),
            "mixed_count": asymmetry.get("mixed", 0),
        },
        "summary": {
            "strong_gates": len(strong),
            "passing_conflicts": len(passing),
            "would_pause_traversal": bool(strong or passing or gates),
            "conflicts_blocked_by_gates": len(blocked),
            "conflicts_unblocked": len(passing) - len(blocked),
            "prunability_assessment": _assess(len(strong) + len(gates), len(passing), weak_exists),
            "assessment_evidence": evidence,
        },
    }


def build_mechanical_traversal(
    claims: Sequence[ClaimInput],
    statements: Sequence[ShadowStatement],
    edges: Sequence[EdgeInput] = (),
    patterns: Optional[StructuralPatterns] = None,
    statement_vectors: Optional[Mapping[str, np.ndarray]] = None,
    gates: Sequence[DerivedConditionalGate] = (),
    conditional_config: Optional[ConditionalFinderConfig] = None,
    conflict_config: Optional[ConflictConfig] = None,
) -> Dict:
    """
    Conditions, conflicts and the prunability summary in one pass.

    Conflicts are checked against the strong conditions plus any derived
    gates passed in.

    Returns:
        Dict with ConditionalFinderResult, ConflictDerivationResult and summary
    """
    patterns = patterns or StructuralPatterns()
    conditionals = find_conditionals(claims, statements, edges, statement_vectors, conditional_config)
    strong = [c for c in conditionals.conditions if c.gate_strength == "strong"]
    conflicts = derive_conflicts(patterns, claims, statements, list(gates) + strong, edges, conflict_config)
    summary = summarize_traversal(conditionals, conflicts, gates)
    logger.info(f"Traversal prunability: {summary['summary']['prunability_assessment']}")
    return {"conditionals": conditionals, "conflicts": conflicts, "summary": summary}
