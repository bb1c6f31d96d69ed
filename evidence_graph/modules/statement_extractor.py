"""
Statement Extraction

Mechanical extraction of atomic statements from model responses:
paragraph and sentence segmentation, substantiveness filtering, stance and
signal classification, exclusion rules, and provenance tracking.
No language model is called here.
"""
import logging
import re
from collections import Counter
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from ..config import ClassifierConfig, ExtractionConfig
from ..dataclass import ShadowExtractionResult, ShadowStatement, Signal, Stance
from ..embeddings import LabelEmbeddings, strip_inline_markdown
from ..schemas import ModelResponse
from .exclusion_rules import get_exclusion_violations
from .stance_classifier import StanceClassifier

logger = logging.getLogger(__name__)


# ============================================================================
# Text processing helpers
# ============================================================================

_PARAGRAPH_BREAK = re.compile(r"\n\n+")
_ABBREVIATION = re.compile(r"\b(Mr|Mrs|Ms|Dr|Prof|Inc|Ltd|vs|etc|e\.g|i\.e)\.", re.IGNORECASE)
_NUMBERED = re.compile(r"\b(\d+)\.")
_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")
_PLACEHOLDER = "|||"

_STRUCTURAL_PATTERNS = [
    re.compile(r"^#{1,6}\s"),
    re.compile(r"^\*{2}[^*]+\*{2}$"),
    re.compile(r"^__[^_]+__$"),
    re.compile(r"^[|\s\-:]+$"),
    re.compile(r"^[-*+]\s*$"),
    re.compile(r"^\d+\.\s*$"),
]

_META_PATTERNS = [
    re.compile(r"^(sure|okay|yes|no|well|so|now)[,.]?\s", re.IGNORECASE),
    re.compile(r"^(let me|I'll|I will|I can|I would)\b", re.IGNORECASE),
    re.compile(r"^(here's|here is|this is|that's|that is)\s+(a|an|the|my)\s+(summary|overview|breakdown|list)", re.IGNORECASE),
    re.compile(r"\b(as I mentioned|as discussed|as noted)\b", re.IGNORECASE),
    re.compile(r"^(to summarize|in summary|in conclusion)\b", re.IGNORECASE),
]


def split_paragraphs(text: str) -> List[str]:
    """Split on blank lines; empty paragraphs are dropped."""
    return [p.strip() for p in _PARAGRAPH_BREAK.split(text) if p.strip()]


def split_sentences(paragraph: str) -> List[str]:
    """
    Split a paragraph into sentences.

    Common abbreviations ("e.g.", "Dr.") and numbers followed by a period
    are protected so they do not end a sentence.
    """
    protected = _ABBREVIATION.sub(lambda m: m.group(1) + _PLACEHOLDER, paragraph)
    protected = _NUMBERED.sub(lambda m: m.group(1) + _PLACEHOLDER, protected)
    sentences = []
    for part in _SENTENCE_BOUNDARY.split(protected):
        restored = part.replace(_PLACEHOLDER, ".").strip()
        if restored:
            sentences.append(restored)
    return sentences


def is_substantive(sentence: str, min_words: int = 5) -> bool:
    """Reject fragments, markdown structure and canned meta-commentary."""
    trimmed = sentence.strip()
    if len(trimmed.split()) < min_words:
        return False
    if any(p.search(trimmed) for p in _STRUCTURAL_PATTERNS):
        return False
    # Table rows
    if trimmed.startswith("|") and trimmed.endswith("|") and trimmed.count("|") > 1:
        return False
    if any(p.search(trimmed) for p in _META_PATTERNS):
        return False
    return True


# ============================================================================
# Extractor
# ============================================================================

class StatementExtractor:
    """
    Turns raw model responses into ShadowStatements.

    Statement ids (`s_0`, `s_1`, ...) increase monotonically across all
    responses of one run. Sentence and statement caps stop extraction early
    and are logged.
    """

    def __init__(
        self,
        config: Optional[ExtractionConfig] = None,
        classifier_config: Optional[ClassifierConfig] = None,
        labels: Optional[LabelEmbeddings] = None,
    ):
        self.config = config or ExtractionConfig()
        self.classifier_config = classifier_config or ClassifierConfig()
        self.classifier = StanceClassifier(self.classifier_config, labels)

    def candidate_sentences(self, responses: Sequence[ModelResponse]) -> List[str]:
        """
        Substantive sentences in extraction order (deduplicated).

        Used to request sentence vectors before `extract` when the embedding
        classification strategy is wanted.
        """
        seen = set()
        out = []
        processed = 0
        for response in responses:
            for paragraph in split_paragraphs(response.text):
                for sentence in split_sentences(paragraph):
                    processed += 1
                    if processed > self.config.sentence_limit:
                        return out
                    if sentence not in seen and is_substantive(sentence, self.config.min_words):
                        seen.add(sentence)
                        out.append(sentence)
        return out

    def extract(
        self,
        responses: Sequence[ModelResponse],
        sentence_vectors: Optional[Mapping[str, np.ndarray]] = None,
    ) -> ShadowExtractionResult:
        """
        Extract statements from every response.

        Args:
            responses: Model responses in model order
            sentence_vectors: Optional vectors keyed by sentence text; when a
                sentence has one, the embedding classifier is used for it

        Returns:
            ShadowExtractionResult with statements and counters
        """
        logger.info(f"Extracting statements from {len(responses)} responses")
        sentence_vectors = sentence_vectors or {}

        statements: List[ShadowStatement] = []
        candidates_processed = 0
        candidates_excluded = 0
        sentences_processed = 0
        sentence_cap_hit = False
        candidate_cap_hit = False

        for response in responses:
            for p_idx, paragraph in enumerate(split_paragraphs(response.text)):
                for s_idx, sentence in enumerate(split_sentences(paragraph)):
                    sentences_processed += 1
                    if sentences_processed > self.config.sentence_limit:
                        sentence_cap_hit = True
                        logger.warning(
                            f"Hit sentence limit ({self.config.sentence_limit}), "
                            f"stopping at model {response.model_index}"
                        )
                        break

                    if not is_substantive(sentence, self.config.min_words):
                        continue
                    candidates_processed += 1

                    statement = self._build_statement(
                        f"s_{len(statements)}", response.model_index, sentence, paragraph,
                        p_idx, s_idx, sentence_vectors.get(sentence),
                    )
                    if statement is None:
                        candidates_excluded += 1
                        continue
                    statements.append(statement)

                    if len(statements) >= self.config.candidate_limit:
                        candidate_cap_hit = True
                        logger.warning(f"Hit candidate limit ({self.config.candidate_limit}), stopping extraction")
                        break

                if sentence_cap_hit or candidate_cap_hit:
                    break
            if sentence_cap_hit or candidate_cap_hit:
                break

        meta = build_extraction_meta(statements)
        meta.update({
            "candidates_processed": candidates_processed,
            "candidates_excluded": candidates_excluded,
            "sentences_processed": min(sentences_processed, self.config.sentence_limit),
            "sentence_limit_hit": sentence_cap_hit,
            "candidate_limit_hit": candidate_cap_hit,
        })
        logger.info(
            f"Extracted {len(statements)} statements "
            f"({candidates_excluded} excluded of {candidates_processed} candidates)"
        )
        return ShadowExtractionResult(statements=statements, meta=meta)

    def _build_statement(
        self,
        statement_id: str,
        model_index: int,
        sentence: str,
        paragraph: str,
        paragraph_index: int,
        sentence_index: int,
        vector: Optional[np.ndarray],
    ) -> Optional[ShadowStatement]:
        """Classify one sentence; None when a hard exclusion rule fires."""
        decision = self.classifier.classify(sentence, vector)
        violations = get_exclusion_violations(sentence, decision.stance)
        if any(v["severity"] == "hard" for v in violations):
            return None

        soft = [v["id"] for v in violations]
        confidence = decision.confidence
        if soft:
            confidence = max(0.0, confidence - self.classifier_config.soft_exclusion_penalty * len(soft))
            decision.meta.soft_violations = soft

        return ShadowStatement(
            id=statement_id,
            model_index=model_index,
            text=sentence,
            stance=decision.stance,
            confidence=round(confidence, 6),
            signals=decision.signals,
            paragraph_index=paragraph_index,
            sentence_index=sentence_index,
            full_paragraph=paragraph,
            classification=decision.meta,
        )


def extract_statements(
    responses: Sequence[ModelResponse],
    config: Optional[ExtractionConfig] = None,
    sentence_vectors: Optional[Mapping[str, np.ndarray]] = None,
    labels: Optional[LabelEmbeddings] = None,
    classifier_config: Optional[ClassifierConfig] = None,
) -> ShadowExtractionResult:
    """Convenience wrapper around StatementExtractor.extract."""
    extractor = StatementExtractor(config, classifier_config, labels)
    return extractor.extract(responses, sentence_vectors)


def sentence_embedding_items(sentences: Sequence[str]) -> List[Tuple[str, str]]:
    """(key, text) pairs for embedding candidate sentences, keyed by the raw sentence."""
    return [(s, strip_inline_markdown(s)) for s in sentences]


# ============================================================================
# Metadata and filters
# ============================================================================

def build_extraction_meta(statements: Sequence[ShadowStatement]) -> Dict:
    by_model = Counter(s.model_index for s in statements)
    by_stance = {stance.value: 0 for stance in Stance}
    for s in statements:
        by_stance[s.stance.value] += 1
    by_signal = {
        signal.value: sum(1 for s in statements if s.signals.has(signal))
        for signal in Signal
    }
    return {
        "total_statements": len(statements),
        "by_model": {str(k): v for k, v in sorted(by_model.items())},
        "by_stance": by_stance,
        "by_signal": by_signal,
    }


def filter_by_stance(statements: Sequence[ShadowStatement], stance: Stance) -> List[ShadowStatement]:
    return [s for s in statements if s.stance == stance]


def filter_by_model(statements: Sequence[ShadowStatement], model_index: int) -> List[ShadowStatement]:
    return [s for s in statements if s.model_index == model_index]


def filter_by_signals(statements: Sequence[ShadowStatement], **required: bool) -> List[ShadowStatement]:
    """
    Keep statements whose signal flags equal every given flag.

    Example: filter_by_signals(statements, conditional=True, tension=False)
    """
    out = []
    for s in statements:
        if all(getattr(s.signals, name) == value for name, value in required.items()):
            out.append(s)
    return out


def filter_by_confidence(statements: Sequence[ShadowStatement], min_confidence: float = 0.7) -> List[ShadowStatement]:
    return [s for s in statements if s.confidence >= min_confidence]
