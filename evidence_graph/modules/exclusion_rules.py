"""
Exclusion rules applied after stance classification.

Hard rules drop a sentence outright (questions, fragments, meta-commentary,
quoted material). Soft rules only lower confidence. Most rules are scoped
to the stance the sentence was classified as.
"""
import re
from dataclasses import dataclass
from typing import Dict, FrozenSet, List

from ..dataclass import Stance

ALL_STANCES: FrozenSet[Stance] = frozenset(Stance)


@dataclass(frozen=True)
class ExclusionRule:
    id: str
    applies_to: FrozenSet[Stance]
    pattern: re.Pattern
    reason: str
    severity: str  # "hard" or "soft"


def _rule(rule_id: str, applies_to, pattern: str, reason: str, severity: str, flags: int = re.IGNORECASE) -> ExclusionRule:
    stances = applies_to if isinstance(applies_to, frozenset) else frozenset(applies_to)
    return ExclusionRule(rule_id, stances, re.compile(pattern, flags), reason, severity)


EXCLUSION_RULES: List[ExclusionRule] = [
    # Universal
    _rule("question_mark", ALL_STANCES, r"\?$", "Question, not statement", "hard", 0),
    _rule("too_short", ALL_STANCES, r"^.{0,15}$", "Too short to be substantive", "hard", re.DOTALL),
    _rule("meta_let_me", ALL_STANCES, r"^(let me|let's|i('ll| will| would)|allow me to)\b", "Meta-framing, not claim", "hard"),
    _rule("meta_note", ALL_STANCES, r"^(note that|it'?s worth (noting|mentioning)|keep in mind|remember that)\b",
          "Meta-commentary, not claim", "hard"),
    _rule("quoted_material", ALL_STANCES, r'^"[^"]{10,}"$|^“[^”]{10,}”$',
          "Quoted material, not original claim", "hard", 0),

    # Directive
    _rule("directive_epistemic_should", [Stance.DIRECTIVE],
          r"\bshould\s+(be|have\s+been)\s+(clear|obvious|noted|apparent|evident|unsurprising)\b",
          "Epistemic 'should' (expectation), not a directive", "hard"),
    _rule("directive_conditional_should", [Stance.DIRECTIVE], r"\bif\s+.{5,40}\s+should\b",
          "Conditional 'should', better read as a condition", "soft"),
    _rule("directive_hypothetical", [Stance.DIRECTIVE], r"\b(you|one)\s+could\s+(also|potentially|possibly)\b",
          "Suggestion, not a directive", "soft"),
    _rule("directive_question_form", [Stance.DIRECTIVE], r"\bshould\s+(you|we|i|they)\s+.{0,30}\?",
          "Directive phrased as a question", "hard"),
    _rule("directive_rhetorical", [Stance.DIRECTIVE], r"\b(surely|certainly)\s+(you|we|one)\s+(can|would|could)\s+agree\b",
          "Rhetorical appeal", "hard"),
    _rule("directive_past_tense", [Stance.DIRECTIVE], r"\bshould\s+have\s+(been|done|had|made|used)\b",
          "Past counterfactual, not an active directive", "soft"),
    _rule("directive_attributed", [Stance.DIRECTIVE],
          r"\b(they|he|she|the\s+\w+)\s+(say|says|said|suggest|argues?)\s+.{0,20}should\b",
          "Attributed to someone else, not asserted", "soft"),

    # Warning
    _rule("warning_hypothetical", [Stance.WARNING], r"\b(might|could)\s+(potentially\s+)?(cause|create|lead\s+to)\b",
          "Hypothetical risk, not a definite warning", "soft"),
    _rule("warning_past_reference", [Stance.WARNING], r"\b(should\s+have\s+avoided|shouldn'?t\s+have\s+done)\b",
          "Past counterfactual, not an active warning", "hard"),
    _rule("warning_rhetorical", [Stance.WARNING], r"\byou\s+(wouldn'?t|would\s+not)\s+want\s+to\b",
          "Rhetorical framing", "soft"),
    _rule("warning_generic", [Stance.WARNING], r"\b(be\s+careful|watch\s+out)\s*$",
          "Too generic, no specific risk", "soft"),

    # Precondition
    _rule("precondition_temporal_before", [Stance.PRECONDITION],
          r"\b(long\s+before|just\s+before|shortly\s+before|right\s+before|the\s+day\s+before)\b",
          "Temporal narration, not a dependency", "hard"),
    _rule("precondition_before_meeting", [Stance.PRECONDITION],
          r"\bbefore\s+(the\s+)?(meeting|call|event|conference|session|interview)\b",
          "Calendar reference, not a technical precondition", "soft"),
    _rule("precondition_narrative_first", [Stance.PRECONDITION], r"\bfirst\s+(time|day|week|month|year|attempt)\b",
          "Narrative 'first', not a dependency", "hard"),
    _rule("precondition_quantity", [Stance.PRECONDITION],
          r"\brequires\s+(a|an|the|some|more|less)\s+(lot|bit|degree|amount)\s+of\b",
          "Quantity requirement, not a dependency", "soft"),
    _rule("precondition_hypothetical", [Stance.PRECONDITION], r"\bif\s+you\s+were\s+to\s+.{0,30}\s+(first|before)\b",
          "Hypothetical scenario", "soft"),

    # Consequence
    _rule("consequence_calendar", [Stance.CONSEQUENCE], r"\b(after|following)\s+(the|this|that)\s+(meeting|call|event|lunch|break)\b",
          "Calendar event, not a dependency", "soft"),
    _rule("consequence_narrative_after", [Stance.CONSEQUENCE], r"\bafter\s+(a\s+)?(long|short|brief|while|time|period)\b",
          "Narrative passage of time", "hard"),
    _rule("consequence_once_upon", [Stance.CONSEQUENCE], r"\bonce\s+upon\s+a\s+time\b", "Narrative framing", "hard"),
    _rule("consequence_then_rhetorical", [Stance.CONSEQUENCE], r"\bthen\s+(what|why|how|where|who)\b",
          "Rhetorical question", "hard"),

    # Factual
    _rule("factual_narrative_was", [Stance.FACTUAL],
          r"^(it|this|that)\s+was\s+(a|an|the)\s+(great|good|bad|terrible|amazing|awful)\b",
          "Narrative evaluation, not a factual claim", "soft"),
    _rule("factual_hypothetical_would", [Stance.FACTUAL], r"\bwould\s+be\b", "Hypothetical, not actual state", "soft"),
    _rule("factual_metaphor", [Stance.FACTUAL], r"\b(is\s+like|are\s+like)\s+(a|an)\b", "Metaphor, not fact", "soft"),

    # Hedged
    _rule("hedged_rhetorical", [Stance.HEDGED], r"\b(who knows|god knows|anyone'?s guess)\b",
          "Rhetorical uncertainty", "hard"),
    _rule("hedged_politeness", [Stance.HEDGED], r"\b(might|may|could)\s+I\s+(ask|suggest|recommend)\b",
          "Politeness marker, not uncertainty", "hard"),
    _rule("hedged_past_speculation", [Stance.HEDGED], r"\bmight\s+have\s+been\b",
          "Past speculation", "soft"),
]


def _applicable(stance: Stance) -> List[ExclusionRule]:
    return [r for r in EXCLUSION_RULES if stance in r.applies_to]


def is_excluded(text: str, stance: Stance) -> bool:
    """True if any hard rule for this stance matches."""
    return any(r.severity == "hard" and r.pattern.search(text) for r in _applicable(stance))


def get_exclusion_violations(text: str, stance: Stance) -> List[Dict[str, str]]:
    """Every matching rule (hard and soft) for this stance."""
    return [
        {"id": r.id, "reason": r.reason, "severity": r.severity}
        for r in _applicable(stance)
        if r.pattern.search(text)
    ]
