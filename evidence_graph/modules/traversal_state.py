"""
Traversal state: the consumer-facing resolution loop.

Holds the merged question queue, the pruned-statement set and the answer
path. Every answer updates the pruned set and re-runs auto-resolution.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set

from ..config import TraversalConfig
from ..dataclass import QuestionStatus, QuestionType, TraversalQuestion, TraversalQuestionMergeResult
from .question_merge import auto_resolve

logger = logging.getLogger(__name__)


@dataclass
class Resolution:
    question_id: str
    answer: str
    user_context: Optional[str] = None
    pruned_statement_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "question_id": self.question_id,
            "answer": self.answer,
            "user_context": self.user_context,
            "pruned_statement_ids": self.pruned_statement_ids,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Resolution":
        return cls(
            question_id=data["question_id"],
            answer=data["answer"],
            user_context=data.get("user_context"),
            pruned_statement_ids=list(data.get("pruned_statement_ids", [])),
        )


class TraversalState:
    """
    Interactive pruning over a traversal question queue.

    Usage:
        state = TraversalState.from_merge_result(result)
        state.answer("tq_0", yes=False)
        pending = state.live_questions()
    """

    def __init__(
        self,
        questions: Sequence[TraversalQuestion],
        pruned_statement_ids: Optional[Set[str]] = None,
        config: Optional[TraversalConfig] = None,
    ):
        self.config = config or TraversalConfig()
        self.questions: Dict[str, TraversalQuestion] = {q.id: q for q in questions}
        self.pruned_statement_ids: Set[str] = set(pruned_statement_ids or ())
        self.resolutions: Dict[str, Resolution] = {}
        self.path: List[str] = []

    @classmethod
    def from_merge_result(
        cls,
        result: TraversalQuestionMergeResult,
        pruned_statement_ids: Optional[Set[str]] = None,
        config: Optional[TraversalConfig] = None,
    ) -> "TraversalState":
        return cls(result.questions, pruned_statement_ids, config)

    def _get(self, question_id: str) -> TraversalQuestion:
        if question_id not in self.questions:
            raise KeyError(f"Unknown question '{question_id}'")
        return self.questions[question_id]

    def _record(self, question: TraversalQuestion, answer: str, user_context: Optional[str], pruned: Set[str], step: str) -> List[str]:
        newly_pruned = sorted(pruned - self.pruned_statement_ids)
        if newly_pruned:
            step += f", {len(newly_pruned)} statement(s) pruned"
        self.path.append(step)
        self.pruned_statement_ids |= pruned
        question.status = QuestionStatus.ANSWERED
        question.answer = answer
        question.user_context = user_context
        self.resolutions[question.id] = Resolution(question.id, answer, user_context, newly_pruned)
        self._refresh()
        logger.info(f"Resolved {question.id} with '{answer}', {len(newly_pruned)} statements pruned")
        return newly_pruned

    def _refresh(self) -> None:
        # Resolution can release blocked questions or make others moot
        for q in auto_resolve(list(self.questions.values()), self.pruned_statement_ids, self.config.auto_resolve_pruned_ratio):
            self.path.append(f'auto: "{q.condition or q.question}" ({q.auto_resolved_reason})')
        for q in self.questions.values():
            if q.status != QuestionStatus.BLOCKED:
                continue
            if all(
                b not in self.questions or self.questions[b].status in (QuestionStatus.ANSWERED, QuestionStatus.AUTO_RESOLVED)
                for b in q.blocked_by
            ):
                q.status = QuestionStatus.PENDING

    def answer(self, question_id: str, yes: bool, user_context: Optional[str] = None) -> List[str]:
        """
        Answer a conditional question.

        A "no" prunes the question's affected statements; a "yes" keeps them.

        Returns:
            Statement ids newly pruned by this answer
        """
        question = self._get(question_id)
        if question.type != QuestionType.CONDITIONAL:
            raise ValueError(f"Question '{question_id}' is a partition; use choose_side")
        pruned = set() if yes else set(question.affected_statement_ids)
        answer = "yes" if yes else "no"
        step = f'{answer}: "{question.condition or question.question}"'
        return self._record(question, answer, user_context, pruned, step)

    def choose_side(self, question_id: str, side: str, user_context: Optional[str] = None) -> List[str]:
        """
        Resolve a partition by picking side "a" or "b".

        The other side's statements are pruned, except those the chosen side
        also cites.
        """
        question = self._get(question_id)
        if question.type != QuestionType.PARTITION:
            raise ValueError(f"Question '{question_id}' is not a partition")
        if side not in ("a", "b"):
            raise ValueError(f"side must be 'a' or 'b', got '{side}'")
        chosen = question.side_a_statement_ids if side == "a" else question.side_b_statement_ids
        losing = question.side_b_statement_ids if side == "a" else question.side_a_statement_ids
        pruned = set(losing) - set(chosen)
        return self._record(question, side, user_context, pruned, f'side {side}: "{question.question}"')

    def live_questions(self) -> List[TraversalQuestion]:
        """Pending questions in queue order."""
        return [q for q in self.questions.values() if q.status == QuestionStatus.PENDING]

    def is_complete(self) -> bool:
        return not any(q.status in (QuestionStatus.PENDING, QuestionStatus.BLOCKED) for q in self.questions.values())

    def to_dict(self) -> Dict:
        return {
            "questions": [q.to_dict() for q in self.questions.values()],
            "pruned_statement_ids": sorted(self.pruned_statement_ids),
            "resolutions": [r.to_dict() for r in self.resolutions.values()],
            "path": self.path,
        }

    @classmethod
    def from_dict(cls, data: Dict, config: Optional[TraversalConfig] = None) -> "TraversalState":
        state = cls(
            [TraversalQuestion.from_dict(q) for q in data.get("questions", [])],
            set(data.get("pruned_statement_ids", [])),
            config,
        )
        for raw in data.get("resolutions", []):
            resolution = Resolution.from_dict(raw)
            state.resolutions[resolution.question_id] = resolution
        state.path = list(data.get("path", []))
        return state
