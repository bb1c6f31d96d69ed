"""
Stance and signal classification.

A sentence gets exactly one stance and three independent signal flags.
Two interchangeable strategies:
1. Pattern: ordered regex triggers per stance, highest priority wins
2. Embedding: best cosine against frozen label prototypes, with an
   ambiguity margin; falls back to patterns (and says why) when vectors
   are unavailable

Classification never fails; the default stance is factual.
"""
import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import numpy as np

from ..config import ClassifierConfig
from ..dataclass import STANCE_PRIORITY, ClassificationMeta, Signal, Signals, Stance, stance_priority
from ..distance import cosine_similarity, quantize
from ..embeddings import LabelEmbeddings

logger = logging.getLogger(__name__)


def _compile(patterns: List[str]) -> List[re.Pattern]:
    return [re.compile(p, re.IGNORECASE) for p in patterns]


STANCE_PATTERNS: Dict[Stance, List[re.Pattern]] = {
    Stance.WARNING: _compile([
        r"\bdon'?t\b",
        r"\bdo\s+not\b",
        r"\bavoid\b",
        r"\bnever\b",
        r"\brisk\b",
        r"\bcareful\b",
        r"\bcaution\b",
        r"\bwarning\b",
        r"\bdanger\b",
        r"\bpitfall\b",
        r"\btrap\b",
        r"\bmistake\b",
        r"\berror\b",
        r"\bproblem\s+with\b",
        r"\bwatch\s+out\b",
        r"\bbe\s+aware\b",
        r"\bbeware\b",
        r"\bcan\s+lead\s+to\s+problems\b",
        r"\bshould\s+not\b",
        r"\bshouldn'?t\b",
    ]),
    Stance.PRECONDITION: _compile([
        r"\bbefore\b",
        r"\bfirst\b",
        r"\bprior\s+to\b",
        r"\brequires?\b",
        r"\bneeds?\s+to\s+have\b",
        r"\bprerequisite\b",
        r"\bprecondition\b",
        r"\bmust\s+(come|happen|occur)\s+before\b",
        r"\bfoundation\s+for\b",
        r"\bgroundwork\b",
        r"\bcan'?t\s+.{0,20}\s+without\s+first\b",
        r"\benables?\b",
        r"\bunblocks?\b",
        r"\ballows?\s+you\s+to\b",
        r"\binitially\b",
    ]),
    Stance.CONSEQUENCE: _compile([
        r"\bafter\b",
        r"\bonce\b",
        r"\bthen\s+you\s+can\b",
        r"\bfollowing\s+this\b",
        r"\bsubsequent\b",
        r"\bonly\s+after\b",
        r"\bwhen\s+.{0,20}\s+is\s+(done|complete|ready)\b",
        r"\bhaving\s+(done|completed|established)\b",
        r"\bin\s+the\s+next\s+step\b",
        r"\bdownstream\b",
    ]),
    Stance.DIRECTIVE: _compile([
        r"\bshould\b",
        r"\bmust\b",
        r"\bought\s+to\b",
        r"\bneed\s+to\b",
        r"\bhave\s+to\b",
        r"\bensure\b",
        r"\bmake\s+sure\b",
        r"\balways\b",
        r"\brequired\b",
        r"\bessential\b",
        r"\bcritical\s+to\b",
        r"\bimperative\b",
        r"\brecommend\b",
        r"\bsuggest\b",
        r"\badvise\b",
        r"\bconsider\b",
        r"\buse\b",
        r"\bimplement\b",
        r"\bapply\b",
    ]),
    Stance.HEDGED: _compile([
        r"\bmight\b",
        r"\bmay\b",
        r"\bcould\b",
        r"\bpossibly\b",
        r"\bperhaps\b",
        r"\bmaybe\b",
        r"\bunclear\b",
        r"\bunknown\b",
        r"\buncertain\b",
        r"\bdepends\b",
        r"\bnot\s+sure\b",
        r"\bhard\s+to\s+(say|know|tell)\b",
        r"\bdifficult\s+to\s+know\b",
        r"\b(it|that)\s+varies\b",
        r"\btypically\b",
        r"\busually\b",
        r"\bin\s+some\s+cases\b",
    ]),
    Stance.FACTUAL: _compile([
        r"\bis\b",
        r"\bare\b",
        r"\bwas\b",
        r"\bwere\b",
        r"\bdoes\b",
        r"\bdo\b",
        r"\bhas\b",
        r"\bhave\b",
        r"\bworks?\b",
        r"\bperforms?\b",
        r"\bprovides?\b",
        r"\boffers?\b",
        r"\bincludes?\b",
        r"\bexists?\b",
        r"\bcontains?\b",
        r"\bsupports?\b",
    ]),
}

SIGNAL_PATTERNS: Dict[Signal, List[re.Pattern]] = {
    Signal.ORDERING: _compile([
        r"\bbefore\b",
        r"\bafter\b",
        r"\bfirst\b",
        r"\bthen\b",
        r"\bnext\b",
        r"\bfinally\b",
        r"\bonce\b",
        r"\brequires?\b",
        r"\bdepends\s+on\b",
        r"\bprior\s+to\b",
        r"\bsubsequent\b",
        r"\bfollowing\b",
        r"\bpreceding\b",
        r"\bstep\s+\d+\b",
        r"\bphase\s+\d+\b",
        r"\benables?\b",
        r"\bunblocks?\b",
    ]),
    Signal.TENSION: _compile([
        r"\bbut\b",
        r"\bhowever\b",
        r"\balthough\b",
        r"\bthough\b",
        r"\bdespite\b",
        r"\bnevertheless\b",
        r"\byet\b",
        r"\binstead\b",
        r"\brather\s+than\b",
        r"\bon\s+the\s+other\s+hand\b",
        r"\bin\s+contrast\b",
        r"\bconversely\b",
        r"\bversus\b",
        r"\bvs\.?\b",
        r"\bor\b",
        r"\btrade-?off\b",
        r"\bbalance\b",
        r"\btension\b",
        r"\bcompeting\b",
        r"\bconflicts?\s+with\b",
    ]),
    Signal.CONDITIONAL: _compile([
        r"\bif\b",
        r"\bwhen\b",
        r"\bunless\b",
        r"\bassuming\b",
        r"\bprovided\s+that\b",
        r"\bgiven\s+that\b",
        r"\bin\s+case\b",
        r"\bcontingent\s+on\b",
        r"\bsubject\s+to\b",
        r"\bdepending\s+on\b",
        r"\bfor\s+(this|that|these)\s+case\b",
        r"\bin\s+(some|certain|specific)\s+cases\b",
        r"\bonly\s+if\b",
        r"\bonly\s+when\b",
    ]),
}

SIGNAL_WEIGHTS = {
    Signal.CONDITIONAL: 3,
    Signal.ORDERING: 2,
    Signal.TENSION: 1,
}


def classify_stance(text: str) -> Tuple[Stance, float, int]:
    """
    Pattern strategy: the highest-priority stance with at least one match wins.

    Confidence = min(1.0, 0.5 + 0.15 x matches of the winning stance).

    Returns:
        (stance, confidence, match_count)
    """
    for stance in STANCE_PRIORITY:
        matches = sum(1 for p in STANCE_PATTERNS[stance] if p.search(text))
        if matches > 0:
            return stance, min(1.0, 0.5 + 0.15 * matches), matches
    return Stance.FACTUAL, 0.5, 0


def detect_signals(text: str) -> Signals:
    """Detect the three signals independently of stance."""
    return Signals(
        ordering=any(p.search(text) for p in SIGNAL_PATTERNS[Signal.ORDERING]),
        tension=any(p.search(text) for p in SIGNAL_PATTERNS[Signal.TENSION]),
        conditional=any(p.search(text) for p in SIGNAL_PATTERNS[Signal.CONDITIONAL]),
    )


def compute_signal_weight(signals: Signals) -> int:
    return sum(w for signal, w in SIGNAL_WEIGHTS.items() if signals.has(signal))


@dataclass
class StanceDecision:
    stance: Stance
    confidence: float
    signals: Signals
    meta: ClassificationMeta


def _label_score(vector: np.ndarray, variants: np.ndarray) -> float:
    return quantize(max(cosine_similarity(vector, v) for v in variants))


class StanceClassifier:
    """
    Classify sentences with the embedding strategy when possible.

    Falls back to the pattern strategy and records the reason in
    `ClassificationMeta.fallback_reason` when the embedding pipeline is
    unavailable or the best stance is below the similarity floor.
    """

    def __init__(self, config: Optional[ClassifierConfig] = None, labels: Optional[LabelEmbeddings] = None):
        self.config = config or ClassifierConfig()
        self.labels = labels

    def classify(self, text: str, vector: Optional[np.ndarray] = None) -> StanceDecision:
        pattern_stance, pattern_conf, match_count = classify_stance(text)
        pattern_signals = detect_signals(text)

        fallback_reason = None
        if not self.config.prefer_embeddings:
            fallback_reason = "embeddings_disabled"
        elif self.labels is None:
            fallback_reason = "label_embeddings_unavailable"
        elif vector is None:
            fallback_reason = "statement_embedding_unavailable"
        elif len(vector) != self.labels.dimensions:
            fallback_reason = "dimension_mismatch"

        if fallback_reason is not None:
            return StanceDecision(
                stance=pattern_stance,
                confidence=pattern_conf,
                signals=pattern_signals,
                meta=ClassificationMeta(method="pattern", match_count=match_count, fallback_reason=fallback_reason),
            )

        scores = {stance: _label_score(vector, self.labels.stances[stance]) for stance in STANCE_PRIORITY}
        # Ties go to the higher-priority stance
        ranked = sorted(scores.items(), key=lambda kv: (-kv[1], -stance_priority(kv[0])))
        best, best_score = ranked[0]
        runner_up, runner_score = ranked[1]
        margin = quantize(best_score - runner_score)

        signals = Signals(
            ordering=_label_score(vector, self.labels.signals[Signal.ORDERING]) >= self.config.signal_similarity,
            tension=_label_score(vector, self.labels.signals[Signal.TENSION]) >= self.config.signal_similarity,
            conditional=_label_score(vector, self.labels.signals[Signal.CONDITIONAL]) >= self.config.signal_similarity,
        )

        if best_score < self.config.min_similarity:
            return StanceDecision(
                stance=pattern_stance,
                confidence=pattern_conf,
                signals=signals,
                meta=ClassificationMeta(
                    method="pattern",
                    match_count=match_count,
                    fallback_reason="below_min_similarity",
                    similarity=best_score,
                    margin=margin,
                    runner_up=runner_up,
                ),
            )

        return StanceDecision(
            stance=best,
            confidence=max(0.0, min(1.0, best_score)),
            signals=signals,
            meta=ClassificationMeta(
                method="embedding",
                match_count=match_count,
                similarity=best_score,
                margin=margin,
                runner_up=runner_up,
                ambiguous=margin < self.config.ambiguity_margin,
            ),
        )
