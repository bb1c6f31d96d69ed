"""
Paragraph projection.

Regroups statements by (model, paragraph) into ShadowParagraphs, the unit
the clustering engine works on.
"""
import logging
from collections import defaultdict
from typing import Dict, List, Mapping, Sequence, Tuple

from ..dataclass import (
    STANCE_PRIORITY,
    ParagraphProjectionResult,
    ParagraphStatement,
    ShadowParagraph,
    ShadowStatement,
    Signals,
    Stance,
)

logger = logging.getLogger(__name__)

MAX_STATEMENT_CHARS = 320

CONTESTED_PAIRS = (
    (Stance.DIRECTIVE, Stance.WARNING),
    (Stance.FACTUAL, Stance.HEDGED),
)


def _clip(text: str, max_chars: int) -> str:
    normalized = text.strip()
    if len(normalized) <= max_chars:
        return normalized
    return normalized[:max_chars].strip()


def _stance_order(stance: Stance) -> Tuple[int, str]:
    # Lower sorts first: priority position, then lexical name
    return STANCE_PRIORITY.index(stance), stance.value


def compute_dominant_stance(
    stances: Sequence[Stance],
    confidence_by_stance: Mapping[Stance, float],
) -> Tuple[Stance, bool, List[Stance]]:
    """
    Resolve a paragraph's dominant stance.

    Contested paragraphs (directive with warning, or factual with hedged)
    take the highest-priority stance present. Otherwise the stance with the
    largest summed confidence wins, ties broken by priority then name.

    Returns:
        (dominant_stance, contested, stance_hints in priority order)
    """
    present = set(stances)
    hints = [s for s in STANCE_PRIORITY if s in present]
    if not present:
        return Stance.FACTUAL, False, hints

    contested = any(a in present and b in present for a, b in CONTESTED_PAIRS)
    if contested:
        return min(present, key=_stance_order), True, hints

    best = min(present, key=lambda s: (-confidence_by_stance.get(s, 0.0), _stance_order(s)))
    return best, False, hints


def project_paragraphs(statements: Sequence[ShadowStatement]) -> ParagraphProjectionResult:
    """
    Group statements into paragraphs.

    Paragraphs are ordered by (model, paragraph index) and numbered `p_0..`;
    statements inside a paragraph keep their original sentence order.
    """
    groups: Dict[Tuple[int, int], List[Tuple[ShadowStatement, int]]] = defaultdict(list)
    for encounter, stmt in enumerate(statements):
        groups[(stmt.model_index, stmt.paragraph_index)].append((stmt, encounter))

    paragraphs: List[ShadowParagraph] = []
    by_model: Dict[str, int] = defaultdict(int)
    contested_count = 0

    for i, key in enumerate(sorted(groups)):
        model_index, paragraph_index = key
        group = sorted(groups[key], key=lambda g: (g[0].sentence_index, g[1], g[0].id))
        members = [g[0] for g in group]

        signals = Signals()
        confidence_by_stance: Dict[Stance, float] = defaultdict(float)
        for stmt in members:
            signals = signals.union(stmt.signals)
            confidence_by_stance[stmt.stance] += stmt.confidence

        dominant, contested, hints = compute_dominant_stance([m.stance for m in members], confidence_by_stance)
        if contested:
            contested_count += 1
        by_model[str(model_index)] += 1

        paragraphs.append(ShadowParagraph(
            id=f"p_{i}",
            model_index=model_index,
            paragraph_index=paragraph_index,
            statement_ids=[m.id for m in members],
            dominant_stance=dominant,
            stance_hints=hints,
            contested=contested,
            confidence=max((m.confidence for m in members), default=0.0),
            signals=signals,
            statements=[
                ParagraphStatement(
                    id=m.id,
                    text=_clip(m.text, MAX_STATEMENT_CHARS),
                    stance=m.stance,
                    signals=m.signals.tags(),
                )
                for m in members
            ],
            full_paragraph=members[0].full_paragraph if members else "",
        ))

    logger.info(f"Projected {len(statements)} statements into {len(paragraphs)} paragraphs ({contested_count} contested)")
    return ParagraphProjectionResult(
        paragraphs=paragraphs,
        meta={
            "total_paragraphs": len(paragraphs),
            "by_model": dict(by_model),
            "contested_count": contested_count,
        },
    )


def to_clusterable_items(
    paragraphs: Sequence[ShadowParagraph],
    statements: Sequence[ShadowStatement],
) -> List[Tuple[str, str]]:
    """
    (paragraph id, text) pairs for embedding.

    Text is the join of the full statement texts, never the clipped
    surface form.
    """
    by_id = {s.id: s for s in statements}
    items = []
    for para in paragraphs:
        texts = [by_id[sid].text for sid in para.statement_ids if sid in by_id]
        items.append((para.id, " ".join(texts)))
    return items
