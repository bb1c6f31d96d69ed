"""
Data classes for the evidence graph pipeline.

This module defines the records produced by each stage: statements,
paragraphs, clusters, gates, conflicts and traversal questions. Every
record serializes to plain dictionaries so it can be written as JSON or
handed to a prompt builder.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


# ============================================================================
# Stances and signals
# ============================================================================

class Stance(Enum):
    """
    The single semantic role of a statement.

    Three polar pairs: directive/warning (do vs don't),
    precondition/consequence (before vs after), factual/hedged (is vs might).
    """
    DIRECTIVE = "directive"
    WARNING = "warning"
    PRECONDITION = "precondition"
    CONSEQUENCE = "consequence"
    FACTUAL = "factual"
    HEDGED = "hedged"


# Highest priority first: ordering claims outrank actions, actions outrank facts.
STANCE_PRIORITY: List[Stance] = [
    Stance.PRECONDITION,
    Stance.CONSEQUENCE,
    Stance.WARNING,
    Stance.DIRECTIVE,
    Stance.HEDGED,
    Stance.FACTUAL,
]


# Advice that only holds in some situations vs evidence that holds regardless
SITUATIONAL_STANCES = frozenset({Stance.DIRECTIVE, Stance.PRECONDITION, Stance.CONSEQUENCE, Stance.HEDGED})
GROUNDED_STANCES = frozenset({Stance.WARNING, Stance.FACTUAL})


def stance_priority(stance: Stance) -> int:
    """Numeric priority of a stance (6 = highest, 1 = lowest)."""
    return len(STANCE_PRIORITY) - STANCE_PRIORITY.index(stance)


class Signal(Enum):
    """Independent boolean properties of a statement, orthogonal to stance."""
    ORDERING = "ordering"
    TENSION = "tension"
    CONDITIONAL = "conditional"


SIGNAL_TAGS = {
    Signal.ORDERING: "SEQ",
    Signal.TENSION: "TENS",
    Signal.CONDITIONAL: "COND",
}


@dataclass(frozen=True)
class Signals:
    """The three signal flags of a statement or paragraph."""
    ordering: bool = False
    tension: bool = False
    conditional: bool = False

    def has(self, signal: Signal) -> bool:
        return getattr(self, signal.value)

    def union(self, other: Signals) -> Signals:
        return Signals(
            ordering=self.ordering or other.ordering,
            tension=self.tension or other.tension,
            conditional=self.conditional or other.conditional,
        )

    def tags(self) -> List[str]:
        return [tag for signal, tag in SIGNAL_TAGS.items() if self.has(signal)]

    def to_dict(self) -> Dict:
        return {
            "ordering": self.ordering,
            "tension": self.tension,
            "conditional": self.conditional,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> Signals:
        return cls(
            ordering=bool(data.get("ordering", False)),
            tension=bool(data.get("tension", False)),
            conditional=bool(data.get("conditional", False)),
        )


# ============================================================================
# Statements
# ============================================================================

@dataclass
class ClassificationMeta:
    """
    How a statement's stance was decided.

    `method` is "pattern" or "embedding". When the embedding strategy was
    preferred but could not run, `fallback_reason` says why.
    """
    method: str
    match_count: int = 0
    fallback_reason: Optional[str] = None
    similarity: Optional[float] = None
    margin: Optional[float] = None
    runner_up: Optional[Stance] = None
    ambiguous: bool = False
    soft_violations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "method": self.method,
            "match_count": self.match_count,
            "fallback_reason": self.fallback_reason,
            "similarity": self.similarity,
            "margin": self.margin,
            "runner_up": self.runner_up.value if self.runner_up else None,
            "ambiguous": self.ambiguous,
            "soft_violations": self.soft_violations,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> ClassificationMeta:
        runner_up = data.get("runner_up")
        return cls(
            method=data.get("method", "pattern"),
            match_count=data.get("match_count", 0),
            fallback_reason=data.get("fallback_reason"),
            similarity=data.get("similarity"),
            margin=data.get("margin"),
            runner_up=Stance(runner_up) if runner_up else None,
            ambiguous=data.get("ambiguous", False),
            soft_violations=list(data.get("soft_violations", [])),
        )


@dataclass
class ShadowStatement:
    """
    An atomic, attributable unit of evidence.

    Created once at extraction time. The only later change allowed is
    attaching geometric/graph coordinates computed downstream.
    """
    id: str
    model_index: int
    text: str
    stance: Stance
    confidence: float
    signals: Signals
    paragraph_index: int
    sentence_index: int
    full_paragraph: str = ""
    classification: Optional[ClassificationMeta] = None
    geometric_coordinates: Dict[str, Any] = field(default_factory=dict)

    def attach_coordinates(self, **coordinates: Any) -> None:
        self.geometric_coordinates.update(coordinates)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "model_index": self.model_index,
            "text": self.text,
            "stance": self.stance.value,
            "confidence": self.confidence,
            "signals": self.signals.to_dict(),
            "location": {
                "paragraph_index": self.paragraph_index,
                "sentence_index": self.sentence_index,
            },
            "full_paragraph": self.full_paragraph,
            "classification": self.classification.to_dict() if self.classification else None,
            "geometric_coordinates": self.geometric_coordinates,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> ShadowStatement:
        location = data.get("location", {})
        classification = data.get("classification")
        return cls(
            id=data["id"],
            model_index=data["model_index"],
            text=data["text"],
            stance=Stance(data["stance"]),
            confidence=data["confidence"],
            signals=Signals.from_dict(data.get("signals", {})),
            paragraph_index=location.get("paragraph_index", 0),
            sentence_index=location.get("sentence_index", 0),
            full_paragraph=data.get("full_paragraph", ""),
            classification=ClassificationMeta.from_dict(classification) if classification else None,
            geometric_coordinates=dict(data.get("geometric_coordinates", {})),
        )


@dataclass
class ShadowExtractionResult:
    """Statements extracted from a set of model responses, plus counters."""
    statements: List[ShadowStatement]
    meta: Dict[str, Any]

    def to_dict(self) -> Dict:
        return {
            "statements": [s.to_dict() for s in self.statements],
            "meta": self.meta,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> ShadowExtractionResult:
        return cls(
            statements=[ShadowStatement.from_dict(s) for s in data.get("statements", [])],
            meta=dict(data.get("meta", {})),
        )


@dataclass
class UnreferencedStatement:
    """A statement no claim cited, scored for how much it may have been missed."""
    statement: ShadowStatement
    query_relevance: float
    signal_weight: int
    adjusted_score: float

    def to_dict(self) -> Dict:
        return {
            "statement": self.statement.to_dict(),
            "query_relevance": self.query_relevance,
            "signal_weight": self.signal_weight,
            "adjusted_score": self.adjusted_score,
        }


@dataclass
class ShadowDeltaResult:
    unreferenced: List[UnreferencedStatement]
    audit: Dict[str, Any]

    def to_dict(self) -> Dict:
        return {
            "unreferenced": [u.to_dict() for u in self.unreferenced],
            "audit": self.audit,
        }


# ============================================================================
# Paragraphs
# ============================================================================

@dataclass
class ParagraphStatement:
    """Display surface of a statement inside a paragraph (text may be clipped)."""
    id: str
    text: str
    stance: Stance
    signals: List[str]

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "text": self.text,
            "stance": self.stance.value,
            "signals": self.signals,
        }


@dataclass
class ShadowParagraph:
    """
    An ordered group of statements sharing model and paragraph origin.

    Built once from statements and immutable thereafter. `full_paragraph`
    keeps the original text for evidence display.
    """
    id: str
    model_index: int
    paragraph_index: int
    statement_ids: List[str]
    dominant_stance: Stance
    stance_hints: List[Stance]
    contested: bool
    confidence: float
    signals: Signals
    statements: List[ParagraphStatement]
    full_paragraph: str

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "model_index": self.model_index,
            "paragraph_index": self.paragraph_index,
            "statement_ids": self.statement_ids,
            "dominant_stance": self.dominant_stance.value,
            "stance_hints": [s.value for s in self.stance_hints],
            "contested": self.contested,
            "confidence": self.confidence,
            "signals": self.signals.to_dict(),
            "statements": [s.to_dict() for s in self.statements],
            "full_paragraph": self.full_paragraph,
        }


@dataclass
class ParagraphProjectionResult:
    paragraphs: List[ShadowParagraph]
    meta: Dict[str, Any]

    def to_dict(self) -> Dict:
        return {
            "paragraphs": [p.to_dict() for p in self.paragraphs],
            "meta": self.meta,
        }


# ============================================================================
# Clusters
# ============================================================================

class UncertaintyReason(Enum):
    LOW_COHESION = "low_cohesion"
    DUMBBELL_CLUSTER = "dumbbell_cluster"
    OVERSIZED = "oversized"
    STANCE_DIVERSITY = "stance_diversity"
    HIGH_CONTESTED_RATIO = "high_contested_ratio"
    CONFLICTING_SIGNALS = "conflicting_signals"
    MISSING_VECTORS = "missing_vectors"


@dataclass
class ClusterExpansionMember:
    paragraph_id: str
    text: str

    def to_dict(self) -> Dict:
        return {"paragraph_id": self.paragraph_id, "text": self.text}


@dataclass
class ParagraphCluster:
    """
    A set of paragraphs sharing a representative.

    Membership only grows by merging. `expansion` is filled only for
    uncertain clusters, centroid first.
    """
    id: str
    paragraph_ids: List[str]
    statement_ids: List[str]
    representative_paragraph_id: str
    representative_text: str
    cohesion: float
    pairwise_cohesion: float
    uncertain: bool
    uncertainty_reasons: List[UncertaintyReason] = field(default_factory=list)
    expansion: List[ClusterExpansionMember] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.paragraph_ids)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "paragraph_ids": self.paragraph_ids,
            "statement_ids": self.statement_ids,
            "representative_paragraph_id": self.representative_paragraph_id,
            "representative_text": self.representative_text,
            "cohesion": self.cohesion,
            "pairwise_cohesion": self.pairwise_cohesion,
            "uncertain": self.uncertain,
            "uncertainty_reasons": [r.value for r in self.uncertainty_reasons],
            "expansion": [m.to_dict() for m in self.expansion],
        }


@dataclass
class ClusteringResult:
    clusters: List[ParagraphCluster]
    meta: Dict[str, Any]

    def to_dict(self) -> Dict:
        return {
            "clusters": [c.to_dict() for c in self.clusters],
            "meta": self.meta,
        }


# ============================================================================
# Claim provenance
# ============================================================================

@dataclass
class ClaimExclusivity:
    """Which of a claim's source statements no other claim cites."""
    exclusive_ids: List[str]
    shared_ids: List[str]
    exclusivity_ratio: float

    def to_dict(self) -> Dict:
        return {
            "exclusive_ids": self.exclusive_ids,
            "shared_ids": self.shared_ids,
            "exclusivity_ratio": self.exclusivity_ratio,
        }


@dataclass
class ClaimOverlapEntry:
    claim_a: str
    claim_b: str
    jaccard: float

    def to_dict(self) -> Dict:
        return {"claim_a": self.claim_a, "claim_b": self.claim_b, "jaccard": self.jaccard}


# ============================================================================
# Gates
# ============================================================================

class TermClass(Enum):
    """How a distinguishing term behaves across the statements that use it."""
    CONTEXT_ANCHOR = "context_anchor"
    EPISTEMIC = "epistemic"
    AMBIGUOUS = "ambiguous"


@dataclass
class TermAnalysis:
    term: str
    local_count: int
    global_count: int
    contrast_ratio: float
    coherence: Optional[float]
    term_class: TermClass

    def to_dict(self) -> Dict:
        return {
            "term": self.term,
            "local_count": self.local_count,
            "global_count": self.global_count,
            "contrast_ratio": self.contrast_ratio,
            "coherence": self.coherence,
            "term_class": self.term_class.value,
        }


@dataclass
class DerivedConditionalGate:
    """
    A yes/no question motivated by evidence exclusive to one claim.

    `source_statement_ids` belong, at derivation time, only to the
    claim the gate was derived from.
    """
    id: str
    question: str
    condition: str
    affected_claims: List[str]
    anchor_terms: List[str]
    source_statement_ids: List[str]
    confidence: float
    exclusivity_ratio: float
    context_specificity: float
    exclusive_footprint: int
    terms: List[TermAnalysis] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "question": self.question,
            "condition": self.condition,
            "affected_claims": self.affected_claims,
            "anchor_terms": self.anchor_terms,
            "source_statement_ids": self.source_statement_ids,
            "confidence": self.confidence,
            "exclusivity_ratio": self.exclusivity_ratio,
            "context_specificity": self.context_specificity,
            "exclusive_footprint": self.exclusive_footprint,
            "terms": [t.to_dict() for t in self.terms],
        }


@dataclass
class GateDerivationResult:
    gates: List[DerivedConditionalGate]
    debug: Dict[str, Any]

    def to_dict(self) -> Dict:
        return {"gates": [g.to_dict() for g in self.gates], "debug": self.debug}


# ============================================================================
# Extracted conditions
# ============================================================================

@dataclass
class ConditionSource:
    id: str
    text: str
    stance: Stance
    model_index: int
    confidence: float
    raw_clause: str
    extraction_method: str  # "regex" or "fallback"

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "text": self.text,
            "stance": self.stance.value,
            "model_index": self.model_index,
            "confidence": self.confidence,
            "raw_clause": self.raw_clause,
            "extraction_method": self.extraction_method,
        }


@dataclass
class StanceVerdict:
    """Whether a claim's evidence survives a "no" to the condition."""
    total_source_statements: int
    prunable: int
    keepable: int
    stance_counts: Dict[str, int]
    verdict: str  # would_prune, would_keep, no_evidence
    reason: str

    def to_dict(self) -> Dict:
        return {
            "total_source_statements": self.total_source_statements,
            "prunable": self.prunable,
            "keepable": self.keepable,
            "stance_counts": self.stance_counts,
            "verdict": self.verdict,
            "reason": self.reason,
        }


@dataclass
class ConditionAffectedClaim:
    claim_id: str
    claim_label: str
    claim_type: str
    stance_analysis: StanceVerdict
    connection_type: str  # direct or prerequisite_downstream

    def to_dict(self) -> Dict:
        return {
            "claim_id": self.claim_id,
            "claim_label": self.claim_label,
            "claim_type": self.claim_type,
            "stance_analysis": self.stance_analysis.to_dict(),
            "connection_type": self.connection_type,
        }


@dataclass
class ExtractedCondition:
    id: str
    canonical_clause: str
    question: str
    source_statements: List[ConditionSource]
    affected_claims: List[ConditionAffectedClaim]
    member_clauses: List[str]
    cluster_similarity: float
    gate_strength: str  # strong, weak, inert

    @property
    def affected_claim_ids(self) -> List[str]:
        return [c.claim_id for c in self.affected_claims]

    def to_dict(self) -> Dict:
        verdicts = [c.stance_analysis.verdict for c in self.affected_claims]
        return {
            "id": self.id,
            "canonical_clause": self.canonical_clause,
            "question": self.question,
            "source_statements": [s.to_dict() for s in self.source_statements],
            "affected_claims": [c.to_dict() for c in self.affected_claims],
            "cluster": {
                "member_count": len(self.member_clauses),
                "member_clauses": self.member_clauses,
                "cluster_similarity": self.cluster_similarity,
            },
            "gate_analysis": {
                "total_affected_claims": len(self.affected_claims),
                "would_prune_count": verdicts.count("would_prune"),
                "would_keep_count": verdicts.count("would_keep"),
                "no_evidence_count": verdicts.count("no_evidence"),
                "gate_strength": self.gate_strength,
            },
        }


@dataclass
class ConditionalFinderResult:
    conditions: List[ExtractedCondition]
    meta: Dict[str, Any]
    orphaned_conditional_statements: List[Dict[str, Any]]

    def to_dict(self) -> Dict:
        return {
            "conditions": [c.to_dict() for c in self.conditions],
            "meta": self.meta,
            "orphaned_conditional_statements": self.orphaned_conditional_statements,
        }


# ============================================================================
# Conflicts
# ============================================================================

class StanceAsymmetry(Enum):
    """Why two conflicting claims disagree, judged from their evidence stances."""
    CONTEXTUAL = "contextual"
    NORMATIVE = "normative"
    EPISTEMIC = "epistemic"
    MIXED = "mixed"


@dataclass
class ConflictSide:
    id: str
    label: str
    text: str
    support_ratio: float
    is_high_support: bool
    role: str
    supporter_count: int

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "label": self.label,
            "text": self.text,
            "support_ratio": self.support_ratio,
            "is_high_support": self.is_high_support,
            "role": self.role,
            "supporter_count": self.supporter_count,
        }


@dataclass
class ConflictBlock:
    gate_id: str
    gate_question: str
    which_side_blocked: str  # claim_a, claim_b or both
    reason: str

    def to_dict(self) -> Dict:
        return {
            "gate_id": self.gate_id,
            "gate_question": self.gate_question,
            "which_side_blocked": self.which_side_blocked,
            "reason": self.reason,
        }


@dataclass
class DerivedConflict:
    id: str
    claim_a: ConflictSide
    claim_b: ConflictSide
    question: str
    significance: float
    dynamics: str
    passed_filter: bool
    selection_reason: List[str]
    analysis: Dict[str, Any]
    filter_details: Dict[str, Any]
    blocked_by_gates: List[ConflictBlock] = field(default_factory=list)
    stance_asymmetry: StanceAsymmetry = StanceAsymmetry.MIXED

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "claim_a": self.claim_a.to_dict(),
            "claim_b": self.claim_b.to_dict(),
            "question": self.question,
            "significance": self.significance,
            "dynamics": self.dynamics,
            "passed_filter": self.passed_filter,
            "selection_reason": self.selection_reason,
            "analysis": self.analysis,
            "filter_details": self.filter_details,
            "blocked_by_gates": [b.to_dict() for b in self.blocked_by_gates],
            "stance_asymmetry": self.stance_asymmetry.value,
        }


@dataclass
class ConflictDerivationResult:
    conflicts: List[DerivedConflict]
    meta: Dict[str, Any]
    filtered_out_reasons: Dict[str, int]

    def to_dict(self) -> Dict:
        return {
            "conflicts": [c.to_dict() for c in self.conflicts],
            "meta": self.meta,
            "filtered_out_reasons": self.filtered_out_reasons,
        }


# ============================================================================
# Traversal questions
# ============================================================================

class QuestionType(Enum):
    PARTITION = "partition"
    CONDITIONAL = "conditional"


class QuestionStatus(Enum):
    PENDING = "pending"
    BLOCKED = "blocked"
    ANSWERED = "answered"
    AUTO_RESOLVED = "auto_resolved"


@dataclass
class TraversalQuestion:
    """
    The unit surfaced to a consumer for interactive pruning.

    After merging only the resolution process changes it (status,
    answer and user context).
    """
    id: str
    type: QuestionType
    question: str
    condition: str
    priority: float
    confidence: float
    affected_statement_ids: List[str]
    blocked_by: List[str] = field(default_factory=list)
    status: QuestionStatus = QuestionStatus.PENDING
    source_region_ids: List[str] = field(default_factory=list)
    anchor_terms: List[str] = field(default_factory=list)
    answer: Optional[str] = None
    auto_resolved_reason: Optional[str] = None
    user_context: Optional[str] = None
    # Conditional questions
    gate_id: Optional[str] = None
    affected_claims: List[str] = field(default_factory=list)
    exclusivity_ratio: Optional[float] = None
    # Partition questions
    partition_id: Optional[str] = None
    side_a_statement_ids: List[str] = field(default_factory=list)
    side_b_statement_ids: List[str] = field(default_factory=list)
    default_side: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "question": self.question,
            "condition": self.condition,
            "priority": self.priority,
            "confidence": self.confidence,
            "affected_statement_ids": self.affected_statement_ids,
            "blocked_by": self.blocked_by,
            "status": self.status.value,
            "source_region_ids": self.source_region_ids,
            "anchor_terms": self.anchor_terms,
            "answer": self.answer,
            "auto_resolved_reason": self.auto_resolved_reason,
            "user_context": self.user_context,
            "gate_id": self.gate_id,
            "affected_claims": self.affected_claims,
            "exclusivity_ratio": self.exclusivity_ratio,
            "partition_id": self.partition_id,
            "side_a_statement_ids": self.side_a_statement_ids,
            "side_b_statement_ids": self.side_b_statement_ids,
            "default_side": self.default_side,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> TraversalQuestion:
        return cls(
            id=data["id"],
            type=QuestionType(data["type"]),
            question=data.get("question", ""),
            condition=data.get("condition", ""),
            priority=data.get("priority", 0.0),
            confidence=data.get("confidence", 0.0),
            affected_statement_ids=list(data.get("affected_statement_ids", [])),
            blocked_by=list(data.get("blocked_by", [])),
            status=QuestionStatus(data.get("status", "pending")),
            source_region_ids=list(data.get("source_region_ids", [])),
            anchor_terms=list(data.get("anchor_terms", [])),
            answer=data.get("answer"),
            auto_resolved_reason=data.get("auto_resolved_reason"),
            user_context=data.get("user_context"),
            gate_id=data.get("gate_id"),
            affected_claims=list(data.get("affected_claims", [])),
            exclusivity_ratio=data.get("exclusivity_ratio"),
            partition_id=data.get("partition_id"),
            side_a_statement_ids=list(data.get("side_a_statement_ids", [])),
            side_b_statement_ids=list(data.get("side_b_statement_ids", [])),
            default_side=data.get("default_side"),
        )


@dataclass
class TraversalQuestionMergeResult:
    """
    Active questions (capped, renumbered `tq_0..`) plus the questions that
    auto-resolved, kept apart for observability.
    """
    questions: List[TraversalQuestion]
    auto_resolved: List[TraversalQuestion]
    meta: Dict[str, Any]

    def to_dict(self) -> Dict:
        return {
            "questions": [q.to_dict() for q in self.questions],
            "auto_resolved": [q.to_dict() for q in self.auto_resolved],
            "meta": self.meta,
        }


# ============================================================================
# Complete run
# ============================================================================

@dataclass
class EvidenceGraphResults:
    """Everything one pipeline run produced, stage by stage."""
    query: str
    extraction: ShadowExtractionResult
    shadow_delta: ShadowDeltaResult
    projection: ParagraphProjectionResult
    clustering: ClusteringResult
    gates: GateDerivationResult
    conditionals: ConditionalFinderResult
    conflicts: ConflictDerivationResult
    traversal: TraversalQuestionMergeResult
    prunability: Dict[str, Any] = field(default_factory=dict)
    statistics: Dict[str, Any] = field(default_factory=dict)
    generation_date: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict:
        return {
            "query": self.query,
            "extraction": self.extraction.to_dict(),
            "shadow_delta": self.shadow_delta.to_dict(),
            "projection": self.projection.to_dict(),
            "clustering": self.clustering.to_dict(),
            "gates": self.gates.to_dict(),
            "conditionals": self.conditionals.to_dict(),
            "conflicts": self.conflicts.to_dict(),
            "traversal": self.traversal.to_dict(),
            "prunability": self.prunability,
            "statistics": self.statistics,
            "generation_date": self.generation_date.isoformat(),
        }
