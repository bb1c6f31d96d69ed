"""
Shadow delta audit.

Surfaces statements the extractor caught that no upstream claim cited.
High-signal or query-relevant leftovers may point to mapper gaps; the rest
is noise that was correctly ignored.
"""
import logging
import re
from typing import Iterable, List, Optional, Set

from ..dataclass import (
    ShadowDeltaResult,
    ShadowExtractionResult,
    Stance,
    UnreferencedStatement,
)
from ..parsing import extract_statement_ids
from ..schemas import ClaimInput
from .stance_classifier import compute_signal_weight

logger = logging.getLogger(__name__)

STOP_WORDS = {
    'the', 'and', 'for', 'are', 'but', 'not', 'you', 'with',
    'this', 'that', 'can', 'will', 'what', 'when', 'where',
    'how', 'why', 'who', 'which', 'their', 'there', 'than',
    'then', 'them', 'these', 'those', 'have', 'has', 'had',
    'was', 'were', 'been', 'being', 'from', 'they', 'she',
    'would', 'could', 'should', 'about', 'into', 'through',
}


def significant_words(text: str) -> Set[str]:
    """Lowercased words of 3+ characters, stopwords removed."""
    normalized = re.sub(r"[^\w\s]", " ", text.lower())
    return {w for w in normalized.split() if len(w) >= 3 and w not in STOP_WORDS}


def query_relevance(statement_text: str, query: str) -> float:
    """Jaccard overlap of significant words between a statement and the query."""
    a = significant_words(statement_text)
    b = significant_words(query)
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def compute_shadow_delta(
    extraction: ShadowExtractionResult,
    referenced_ids: Iterable[str],
    query: str = "",
) -> ShadowDeltaResult:
    """
    Score every unreferenced statement and build an audit.

    adjusted_score = confidence x (1 + query_relevance) x (1 + 0.2 x signal_weight)

    Args:
        extraction: Extractor output
        referenced_ids: Statement ids cited by upstream claims
        query: The user's original question

    Returns:
        ShadowDeltaResult with unreferenced statements sorted by score
    """
    referenced = set(referenced_ids)
    by_stance = {stance.value: {"total": 0, "unreferenced": 0} for stance in Stance}
    unreferenced: List[UnreferencedStatement] = []

    for statement in extraction.statements:
        by_stance[statement.stance.value]["total"] += 1
        if statement.id in referenced:
            continue
        by_stance[statement.stance.value]["unreferenced"] += 1

        relevance = query_relevance(statement.text, query)
        weight = compute_signal_weight(statement.signals)
        unreferenced.append(UnreferencedStatement(
            statement=statement,
            query_relevance=relevance,
            signal_weight=weight,
            adjusted_score=statement.confidence * (1 + relevance) * (1 + weight * 0.2),
        ))

    # Stable on ties: extraction order
    unreferenced.sort(key=lambda u: -u.adjusted_score)

    gaps = {
        "conflicts": sum(1 for u in unreferenced if u.statement.signals.tension),
        "preconditions": sum(
            1 for u in unreferenced
            if u.statement.stance in (Stance.PRECONDITION, Stance.CONSEQUENCE) or u.statement.signals.ordering
        ),
        "directives": by_stance[Stance.DIRECTIVE.value]["unreferenced"] + by_stance[Stance.WARNING.value]["unreferenced"],
    }

    total = len(extraction.statements)
    sentences_processed = extraction.meta.get("sentences_processed", 0)
    audit = {
        "statement_count": total,
        "referenced_count": total - len(unreferenced),
        "unreferenced_count": len(unreferenced),
        "high_signal_unreferenced_count": sum(1 for u in unreferenced if u.signal_weight > 0),
        "by_stance": by_stance,
        "gaps": gaps,
        "survival_rate": total / sentences_processed if total > 0 and sentences_processed > 0 else 0.0,
        "candidates_processed": extraction.meta.get("candidates_processed", 0),
    }
    logger.info(f"Shadow delta: {len(unreferenced)}/{total} statements unreferenced")
    return ShadowDeltaResult(unreferenced=unreferenced, audit=audit)


def top_unreferenced(delta: ShadowDeltaResult, limit: int = 10) -> List[UnreferencedStatement]:
    return delta.unreferenced[:limit]


def high_signal_unreferenced(delta: ShadowDeltaResult, min_signal_weight: int = 2) -> List[UnreferencedStatement]:
    return [u for u in delta.unreferenced if u.signal_weight >= min_signal_weight]


def unreferenced_by_stance(delta: ShadowDeltaResult, stance: Stance) -> List[UnreferencedStatement]:
    return [u for u in delta.unreferenced if u.statement.stance == stance]


def referenced_ids_from_claims(claims: Iterable[ClaimInput]) -> Set[str]:
    """Every statement id cited by any claim."""
    ids: Set[str] = set()
    for claim in claims:
        ids.update(sid for sid in claim.source_statement_ids if sid)
    return ids


def extract_referenced_ids(mapper_output) -> Set[str]:
    """Statement ids (`s_<n>` tokens) mentioned in a mapper's raw output."""
    return set(extract_statement_ids(mapper_output))


def format_unreferenced_for_prompt(unreferenced: List[UnreferencedStatement], limit: int = 5) -> str:
    """Markdown block listing the top unreferenced statements with stance and signal tags."""
    if not unreferenced:
        return ""
    lines = [
        "## Additional Context (not in main analysis)",
        "",
        "These statements were extracted but not used in claims:",
        "",
    ]
    for u in unreferenced[:limit]:
        tags = u.statement.signals.tags()
        tag_text = f" [{','.join(tags)}]" if tags else ""
        lines.append(f'- ({u.statement.stance.value}{tag_text}): "{u.statement.text}"')
    return "\n".join(lines) + "\n"


def format_audit_summary(delta: ShadowDeltaResult, title: Optional[str] = None) -> str:
    audit = delta.audit
    lines = [
        f"{title or 'Shadow Delta Audit'}:",
        f"  Total statements: {audit['statement_count']}",
        f"  Referenced in claims: {audit['referenced_count']}",
        f"  Unreferenced: {audit['unreferenced_count']}",
        f"  High-signal unreferenced: {audit['high_signal_unreferenced_count']}",
        "",
        "  By stance:",
    ]
    for stance, counts in audit["by_stance"].items():
        percent = round(counts["unreferenced"] / counts["total"] * 100) if counts["total"] else 0
        lines.append(f"    {stance}: {counts['unreferenced']}/{counts['total']} ({percent}% unreferenced)")
    return "\n".join(lines) + "\n"
