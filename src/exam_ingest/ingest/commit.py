"""
Module: ingest.commit

Purpose:
    Validate a commit target, build the persistence payload from the
    reviewer-approved subset, and hand it to the persistence capability.
    Validate → Build → Persist

Key Functions:
    - validate_target(): Reject incomplete targets before any I/O
    - build_commit_payload(): Selected questions -> CommitPayload

Key Classes:
    - CommitPayload: Immutable payload with wire serialization
    - CommitPlanner: Awaits the persistence capability
    - CommitResult: Identifiers and counts reported back

Dependencies:
    - ingest.capabilities: PersistenceCapability

Used By:
    - ingest.session: commit()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Collection, Dict, Optional, Sequence

from exam_ingest.core.errors import CommitError, EmptyReviewSelectionError, IncompleteTargetError
from exam_ingest.core.models import (
    CommitTarget,
    ExistingSectionTarget,
    ExtractedPassage,
    ExtractedQuestion,
    NewExamTarget,
)

from .capabilities import PersistenceCapability

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommitPayload:
    """
    Everything the persistence capability needs for one import (immutable).

    Attributes:
        target: Where the questions go
        questions: Selected questions in working order
        passages: Every passage of the session
        instructions: Deduplicated instructions (empty when not imported)
    """
    target: CommitTarget
    questions: tuple[ExtractedQuestion, ...]
    passages: tuple[ExtractedPassage, ...]
    instructions: tuple[str, ...] = ()

    @property
    def total_marks(self) -> float:
        return sum(q.marks for q in self.questions)

    def to_dict(self) -> Dict[str, Any]:
        """Wire form sent to the persistence capability."""
        data: Dict[str, Any] = {
            "mode": self.target.mode,
            "questions": [
                {
                    "id": q.id,
                    "type": q.kind.value,
                    "text": q.text,
                    "options": list(q.options),
                    "correctAnswer": q.correct_answer,
                    "marks": q.marks,
                    "explanation": q.explanation,
                    "tags": list(q.tags),
                    "passageId": q.passage_id,
                }
                for q in self.questions
            ],
            "passages": [p.to_dict() for p in self.passages],
            "instructions": list(self.instructions),
        }
        if isinstance(self.target, NewExamTarget):
            data["examDetails"] = {
                "title": self.target.title.strip(),
                "duration": self.target.duration_minutes,
                "totalMarks": self.total_marks,
            }
        else:
            data["examId"] = self.target.exam_id
            data["sectionId"] = self.target.section_id
        return data


@dataclass(frozen=True)
class CommitResult:
    """
    Outcome reported by the persistence capability (immutable).

    Attributes:
        exam_id: Exam the questions were written to
        section_id: Section the questions were written to
        question_count: Number of questions persisted
        errors: Non-fatal per-item problems reported by the store
    """
    exam_id: str
    section_id: str
    question_count: int
    errors: tuple[str, ...] = ()


def validate_target(target: CommitTarget) -> None:
    """
    Check that a commit target carries its required fields.

    Raises:
        IncompleteTargetError: On a blank title, a non-positive duration,
            or a missing exam or section id
    """
    if isinstance(target, NewExamTarget):
        if not target.title or not target.title.strip():
            raise IncompleteTargetError("A new exam needs a title")
        if target.duration_minutes <= 0:
            raise IncompleteTargetError(
                f"Exam duration must be positive: {target.duration_minutes}"
            )
    elif isinstance(target, ExistingSectionTarget):
        if not target.exam_id or not target.exam_id.strip():
            raise IncompleteTargetError("Select an exam to import into")
        if not target.section_id or not target.section_id.strip():
            raise IncompleteTargetError("Select a section to import into")
    else:
        raise IncompleteTargetError(f"Unsupported commit target: {target!r}")


def build_commit_payload(
    questions: Sequence[ExtractedQuestion],
    selected_ids: Collection[str],
    passages: Sequence[ExtractedPassage],
    instructions: Sequence[str],
    target: CommitTarget,
    include_instructions: bool,
) -> CommitPayload:
    """
    Build the payload for the selected subset.

    Args:
        questions: Working collection in display order
        selected_ids: Ids the reviewer kept selected
        passages: Working passages
        instructions: Deduplicated instructions
        target: Validated commit target
        include_instructions: Whether instructions are imported

    Returns:
        CommitPayload with selected questions in working order
    """
    return CommitPayload(
        target=target,
        questions=tuple(q for q in questions if q.id in selected_ids),
        passages=tuple(passages),
        instructions=tuple(instructions) if include_instructions else (),
    )


class CommitPlanner:
    """
    Persists approved questions through the persistence capability.

    Example:
        >>> planner = CommitPlanner(store)
        >>> result = await planner.commit(
        ...     questions, selected, passages, instructions,
        ...     NewExamTarget("Physics Mock"), include_instructions=True,
        ... )
        >>> result.question_count
        12
    """

    def __init__(self, persistence: PersistenceCapability) -> None:
        self._persistence = persistence

    async def commit(
        self,
        questions: Sequence[ExtractedQuestion],
        selected_ids: Collection[str],
        passages: Sequence[ExtractedPassage],
        instructions: Sequence[str],
        target: CommitTarget,
        include_instructions: bool = True,
    ) -> CommitResult:
        """
        Validate, build and persist.

        Raises:
            IncompleteTargetError: Before any persistence call
            EmptyReviewSelectionError: If no selected question remains
            CommitError: If the capability raises or reports failure
        """
        validate_target(target)
        payload = build_commit_payload(
            questions, selected_ids, passages, instructions, target, include_instructions
        )
        if not payload.questions:
            raise EmptyReviewSelectionError("No questions selected for import")

        logger.info(
            f"Committing {len(payload.questions)} questions ({target.mode} target)",
            extra={"question_count": len(payload.questions), "mode": target.mode},
        )
        try:
            result = await self._persistence.persist(payload.to_dict())
        except Exception as e:
            logger.error(f"Persistence failed: {e}")
            raise CommitError(f"Failed to import questions: {e}") from e

        return self._parse_result(result, payload)

    @staticmethod
    def _parse_result(result: Any, payload: CommitPayload) -> CommitResult:
        if not isinstance(result, dict):
            raise CommitError(f"Unexpected persistence result: {result!r}")

        errors = [str(e) for e in (result.get("errors") or [])]
        if not result.get("success"):
            message = result.get("error") or "Failed to import questions"
            logger.error(f"Persistence rejected commit: {message}")
            raise CommitError(str(message), errors)

        exam_id: Optional[str] = result.get("examId")
        section_id: Optional[str] = result.get("sectionId")
        if not exam_id or not section_id:
            raise CommitError(f"Persistence result missing identifiers: {result!r}", errors)

        count = result.get("questionCount")
        committed = CommitResult(
            exam_id=str(exam_id),
            section_id=str(section_id),
            question_count=int(count) if count is not None else len(payload.questions),
            errors=tuple(errors),
        )
        logger.info(
            f"Committed {committed.question_count} questions to exam {committed.exam_id}",
            extra={"exam_id": committed.exam_id, "section_id": committed.section_id},
        )
        return committed
