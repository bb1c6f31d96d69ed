"""
Conflict derivation.

Enriches upstream claim-vs-claim conflict edges with a pass/fail filter,
selection reasons, cascade and articulation context, the gates that would
block either side, and a stance-asymmetry reading of each side's evidence.
"""
import logging
from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Union

from ..config import ConflictConfig
from ..dataclass import (
    GROUNDED_STANCES,
    SITUATIONAL_STANCES,
    ConflictBlock,
    ConflictDerivationResult,
    ConflictSide,
    DerivedConditionalGate,
    DerivedConflict,
    ExtractedCondition,
    ShadowStatement,
    Stance,
    StanceAsymmetry,
)
from ..schemas import ClaimInput, ConflictClaimRef, EdgeInput, StructuralPatterns

logger = logging.getLogger(__name__)

Gate = Union[DerivedConditionalGate, ExtractedCondition]


def is_meaningful_axis(axis: Optional[str]) -> bool:
    s = (axis or "").strip().lower()
    return bool(s) and s not in ("unknown", "n/a", "none")


def build_filter_fail_reason(significance: float, threshold: float, both_high: bool, challenger: bool) -> str:
    return ", ".join([
        f"Significance {significance:.2f} below threshold {threshold}",
        "both high support" if both_high else "not high-support vs high-support",
        "challenger involved" if challenger else "no challenger involved",
    ])


def to_conflict_side(ref: ConflictClaimRef) -> ConflictSide:
    return ConflictSide(
        id=ref.id,
        label=ref.label,
        text=ref.text,
        support_ratio=ref.support_ratio,
        is_high_support=ref.is_high_support,
        role=ref.role,
        supporter_count=ref.supporter_count,
    )


def resolve_source_statements(
    claim_id: str,
    claims_by_id: Mapping[str, ClaimInput],
    statements_by_id: Mapping[str, ShadowStatement],
) -> List[ShadowStatement]:
    claim = claims_by_id.get(claim_id)
    if claim is None:
        return []
    return [statements_by_id[sid] for sid in claim.source_statement_ids if sid in statements_by_id]


# Only the most confident statements per side are read
MAX_ASYMMETRY_STATEMENTS = 12


@dataclass
class AsymmetryReading:
    asymmetry: StanceAsymmetry
    score: float
    situational_side: str  # a, b or neither
    reason: str

    def to_dict(self) -> Dict:
        return {
            "type": self.asymmetry.value,
            "score": self.score,
            "situational_side": self.situational_side,
            "reason": self.reason,
        }


def _stance_ratios(statements: Sequence[ShadowStatement]) -> Dict[str, float]:
    if not statements:
        return {"situational": 0.0, "grounded": 0.0, "hedged": 0.0}
    counts = Counter(s.stance for s in statements)
    total = len(statements)
    return {
        "situational": sum(n for stance, n in counts.items() if stance in SITUATIONAL_STANCES) / total,
        "grounded": sum(n for stance, n in counts.items() if stance in GROUNDED_STANCES) / total,
        "hedged": counts[Stance.HEDGED] / total,
    }


def classify_stance_asymmetry(
    side_a: Sequence[ShadowStatement],
    side_b: Sequence[ShadowStatement],
) -> AsymmetryReading:
    """
    Read the kind of disagreement from the stance make-up of both sides.

    One side situational and the other not: the sides fit different
    contexts (contextual). Both mostly situational advice: a disagreement
    about what to do (normative). Both grounded with different hedging, or
    both heavily hedged: a disagreement about what is true (epistemic).
    """
    side_a = sorted(side_a, key=lambda s: -s.confidence)[:MAX_ASYMMETRY_STATEMENTS]
    side_b = sorted(side_b, key=lambda s: -s.confidence)[:MAX_ASYMMETRY_STATEMENTS]
    a, b = _stance_ratios(side_a), _stance_ratios(side_b)
    sit_a, sit_b = a["situational"], b["situational"]
    score = abs(sit_a - sit_b)
    situational_side = "neither" if score < 0.05 else ("a" if sit_a > sit_b else "b")

    if not side_a or not side_b:
        if not side_a and not side_b:
            reason = "insufficient evidence on both sides"
        else:
            reason = f"insufficient evidence on side {'a' if not side_a else 'b'}"
        return AsymmetryReading(StanceAsymmetry.MIXED, score, situational_side, reason)

    if (sit_a > 0.7 and sit_b < 0.4) or (sit_b > 0.7 and sit_a < 0.4):
        return AsymmetryReading(
            StanceAsymmetry.CONTEXTUAL, score, situational_side,
            f"situational asymmetry: a={sit_a:.2f} vs b={sit_b:.2f}",
        )
    if sit_a > 0.5 and sit_b > 0.5:
        return AsymmetryReading(
            StanceAsymmetry.NORMATIVE, score, situational_side,
            f"both sides are mostly situational advice: a={sit_a:.2f} b={sit_b:.2f}",
        )
    grounded_split = a["grounded"] > 0.6 and b["grounded"] > 0.6 and abs(a["hedged"] - b["hedged"]) >= 0.2
    if grounded_split or (a["hedged"] > 0.4 and b["hedged"] > 0.4):
        return AsymmetryReading(
            StanceAsymmetry.EPISTEMIC, score, situational_side,
            f"grounded disagreement or hedging mismatch: grounded(a={a['grounded']:.2f}, b={b['grounded']:.2f}) "
            f"hedged(a={a['hedged']:.2f}, b={b['hedged']:.2f})",
        )
    return AsymmetryReading(
        StanceAsymmetry.MIXED, score, situational_side,
        f"no clear asymmetry: a={sit_a:.2f} b={sit_b:.2f}",
    )


def _gate_affected_ids(gate: Gate) -> List[str]:
    if isinstance(gate, ExtractedCondition):
        return gate.affected_claim_ids
    return gate.affected_claims


def _gate_question(gate: Gate) -> str:
    if gate.question.strip():
        return gate.question.strip()
    if isinstance(gate, ExtractedCondition) and gate.canonical_clause.strip():
        return gate.canonical_clause.strip()
    return gate.id


def find_blocking_gates(claim_a: str, claim_b: str, gates: Sequence[Gate]) -> List[ConflictBlock]:
    """Gates whose affected claims include either side of the conflict."""
    blocks = []
    for gate in gates:
        affected = {cid.strip() for cid in _gate_affected_ids(gate) if cid and cid.strip()}
        blocks_a, blocks_b = claim_a in affected, claim_b in affected
        if not blocks_a and not blocks_b:
            continue
        if blocks_a and blocks_b:
            which, named = "both", f"{claim_a} and {claim_b} appear"
        elif blocks_a:
            which, named = "claim_a", f"{claim_a} appears"
        else:
            which, named = "claim_b", f"{claim_b} appears"
        blocks.append(ConflictBlock(
            gate_id=gate.id,
            gate_question=_gate_question(gate),
            which_side_blocked=which,
            reason=f"{named} in {gate.id}'s affected claims",
        ))
    return blocks


def _statement_summary(statements: Sequence[ShadowStatement]) -> List[Dict]:
    return [
        {"id": s.id, "text": s.text.strip(), "stance": s.stance.value, "model_index": s.model_index}
        for s in statements
    ]


def derive_conflicts(
    patterns: StructuralPatterns,
    claims: Sequence[ClaimInput],
    statements: Sequence[ShadowStatement],
    gates: Sequence[Gate] = (),
    edges: Sequence[EdgeInput] = (),
    config: Optional[ConflictConfig] = None,
) -> ConflictDerivationResult:
    """
    Filter and enrich upstream conflicts.

    A conflict passes when its significance clears the threshold, or when
    both sides are high support, or when a challenger is involved.

    Args:
        patterns: Structural patterns holding the conflict records
        claims: Upstream claims (for source statements)
        statements: Extracted statements
        gates: Derived gates and/or extracted conditions
        edges: Claim graph edges, only counted in meta
        config: Conflict configuration

    Returns:
        ConflictDerivationResult, passing conflicts first then by significance
    """
    config = config or ConflictConfig()
    threshold = config.significance_threshold

    cascades = {}
    for risk in patterns.cascade_risks:
        if risk.source_id.strip():
            cascades[risk.source_id.strip()] = {
                "has_cascade": True,
                "dependent_count": len(risk.dependent_ids),
                "dependent_labels": list(risk.dependent_labels),
            }
    articulation = set(patterns.articulation_points)
    statements_by_id = {s.id: s for s in statements if s.id.strip()}
    claims_by_id = {c.id: c for c in claims}

    filtered_out: Dict[str, int] = {}
    derived: List[DerivedConflict] = []

    for info in patterns.conflicts:
        side_a, side_b = to_conflict_side(info.claim_a), to_conflict_side(info.claim_b)
        pair = sorted([side_a.id, side_b.id])
        question = info.axis.strip() if is_meaningful_axis(info.axis) else f"{side_a.label} vs {side_b.label}"

        cascade_a, cascade_b = cascades.get(side_a.id), cascades.get(side_b.id)
        articulation_a, articulation_b = side_a.id in articulation, side_b.id in articulation
        sources_a = resolve_source_statements(side_a.id, claims_by_id, statements_by_id)
        sources_b = resolve_source_statements(side_b.id, claims_by_id, statements_by_id)

        significance = info.significance
        above = significance > threshold
        both_high = info.is_both_high_support
        challenger = info.involves_challenger
        passed = above or both_high or challenger

        override_reason = None
        if not passed:
            override_reason = build_filter_fail_reason(significance, threshold, both_high, challenger)
            filtered_out[override_reason] = filtered_out.get(override_reason, 0) + 1
        elif not above:
            why = [w for w, on in (("both high support", both_high), ("challenger involved", challenger)) if on]
            override_reason = f"Passed despite low significance due to: {', '.join(why)}"

        selection = []
        if both_high:
            selection.append("Peak vs peak conflict (both >50% support)")
        if challenger:
            selection.append("Challenger position contests consensus")
        if above:
            selection.append(f"High significance ({significance:.2f})")
        if info.involves_keystone:
            max_cascade = max((cascade_a or {}).get("dependent_count", 0), (cascade_b or {}).get("dependent_count", 0))
            selection.append(f"Keystone involved, pruning cascades to {max_cascade} dependents")
        if articulation_a or articulation_b:
            selection.append("Articulation point, pruning disconnects graph")

        asymmetry = classify_stance_asymmetry(sources_a, sources_b)
        derived.append(DerivedConflict(
            id=f"conflict_{pair[0]}__{pair[1]}",
            claim_a=side_a,
            claim_b=side_b,
            question=question,
            significance=significance,
            dynamics=info.dynamics,
            passed_filter=passed,
            selection_reason=selection,
            analysis={
                "is_both_high_support": both_high,
                "is_high_vs_low": info.is_high_vs_low,
                "involves_challenger": challenger,
                "involves_anchor": info.involves_anchor,
                "involves_keystone": info.involves_keystone,
                "cascade_a": cascade_a,
                "cascade_b": cascade_b,
                "is_articulation_point_a": articulation_a,
                "is_articulation_point_b": articulation_b,
                "source_statements_a": _statement_summary(sources_a),
                "source_statements_b": _statement_summary(sources_b),
                "stance_asymmetry": asymmetry.to_dict(),
            },
            filter_details={
                "significance_above_threshold": above,
                "significance_threshold": threshold,
                "is_both_high_support": both_high,
                "involves_challenger": challenger,
                "override_reason": override_reason,
            },
            blocked_by_gates=find_blocking_gates(side_a.id, side_b.id, gates),
            stance_asymmetry=asymmetry.asymmetry,
        ))

    derived.sort(key=lambda c: (not c.passed_filter, -c.significance))

    meta = {
        "total_conflict_edges": sum(1 for e in edges if e.type == "conflicts"),
        "enriched_conflicts": len(derived),
        "passing_filter": sum(1 for c in derived if c.passed_filter),
        "blocked_by_gates": sum(1 for c in derived if c.passed_filter and c.blocked_by_gates),
    }
    logger.info(
        f"Derived {meta['enriched_conflicts']} conflicts: {meta['passing_filter']} passing, "
        f"{meta['blocked_by_gates']} blocked by gates"
    )
    return ConflictDerivationResult(conflicts=derived, meta=meta, filtered_out_reasons=filtered_out)
