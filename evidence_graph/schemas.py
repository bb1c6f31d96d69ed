"""
Pydantic schemas for upstream inputs.

Model responses, claims, edges, conflict records, partitions and structural
patterns arrive from collaborators outside the pipeline. They are validated
once here; downstream code works with the validated objects. Optional
fields default to empty or zero.
"""
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import InputValidationError


class ModelResponse(BaseModel):
    model_index: int
    text: str


class ClaimInput(BaseModel):
    id: str
    label: str = ""
    text: str = ""
    type: str = "factual"
    supporters: List[int] = Field(default_factory=list)
    source_statement_ids: List[str] = Field(default_factory=list)
    support_ratio: float = 0.0
    is_high_support: bool = False
    role: str = "supplement"


class EdgeInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_id: str = Field(alias="from")
    to_id: str = Field(alias="to")
    type: Literal["supports", "conflicts", "tradeoff", "prerequisite"]


class ConflictClaimRef(BaseModel):
    id: str
    label: str = ""
    text: str = ""
    support_ratio: float = 0.0
    is_high_support: bool = False
    role: str = ""
    supporter_count: int = 0


class ConflictInfoInput(BaseModel):
    """A claim-vs-claim conflict edge, scored by upstream graph analysis."""
    claim_a: ConflictClaimRef
    claim_b: ConflictClaimRef
    significance: float = 0.0
    dynamics: Literal["symmetric", "asymmetric"] = "symmetric"
    is_both_high_support: bool = False
    is_high_vs_low: bool = False
    involves_challenger: bool = False
    involves_anchor: bool = False
    involves_keystone: bool = False
    axis: Optional[str] = None


class ConflictClusterInput(BaseModel):
    target_id: str
    challenger_ids: List[str] = Field(default_factory=list)


class TradeoffInput(BaseModel):
    claim_a_id: str
    claim_b_id: str


class CascadeRiskInput(BaseModel):
    source_id: str
    dependent_ids: List[str] = Field(default_factory=list)
    dependent_labels: List[str] = Field(default_factory=list)


class StructuralPatterns(BaseModel):
    conflict_clusters: List[ConflictClusterInput] = Field(default_factory=list)
    conflicts: List[ConflictInfoInput] = Field(default_factory=list)
    tradeoffs: List[TradeoffInput] = Field(default_factory=list)
    cascade_risks: List[CascadeRiskInput] = Field(default_factory=list)
    articulation_points: List[str] = Field(default_factory=list)
    convergence_ratio: float = 0.0


class PartitionInput(BaseModel):
    """A two-sided split of the evidence proposed by an upstream mapper."""
    id: str
    hinge_question: str = ""
    default_side: Optional[str] = None
    side_a_statement_ids: List[str] = Field(default_factory=list)
    side_b_statement_ids: List[str] = Field(default_factory=list)
    side_a_advocacy_statement_ids: List[str] = Field(default_factory=list)
    side_b_advocacy_statement_ids: List[str] = Field(default_factory=list)

    def side_a(self) -> List[str]:
        """Advocacy statements when present, otherwise the full side."""
        ids = self.side_a_advocacy_statement_ids or self.side_a_statement_ids
        return [s for s in ids if s]

    def side_b(self) -> List[str]:
        ids = self.side_b_advocacy_statement_ids or self.side_b_statement_ids
        return [s for s in ids if s]


class InputBundle(BaseModel):
    """Everything one pipeline run consumes."""
    responses: List[ModelResponse]
    query: str = ""
    claims: List[ClaimInput] = Field(default_factory=list)
    edges: List[EdgeInput] = Field(default_factory=list)
    patterns: StructuralPatterns = Field(default_factory=StructuralPatterns)
    partitions: List[PartitionInput] = Field(default_factory=list)
    statement_disruption_scores: Dict[str, float] = Field(default_factory=dict)
    pruned_statement_ids: List[str] = Field(default_factory=list)
    referenced_statement_ids: List[str] = Field(default_factory=list)


def _validate(model, data: Any, kind: str):
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise InputValidationError(kind, e.errors()) from e


def validate_bundle(data: Any) -> InputBundle:
    """Validate a raw input bundle (for example, parsed from JSON)."""
    return _validate(InputBundle, data, "bundle")


def validate_responses(data: Any) -> List[ModelResponse]:
    if not isinstance(data, list):
        raise InputValidationError("responses", "expected a list")
    return [_validate(ModelResponse, item, "response") for item in data]


def validate_claims(data: Any) -> List[ClaimInput]:
    if not isinstance(data, list):
        raise InputValidationError("claims", "expected a list")
    return [_validate(ClaimInput, item, "claim") for item in data]
