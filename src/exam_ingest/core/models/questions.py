"""
Module: questions

Purpose:
    Provides the ExtractedQuestion and ExtractedPassage dataclasses - the
    canonical form of extraction output after normalization. Both are
    frozen; review edits replace an instance under the same identifier.

Key Classes:
    - QuestionKind: Enum of supported question kinds
    - ExtractedQuestion: Candidate question with a normalized answer key
    - ExtractedPassage: Shared reading/case-study passage

Key Functions:
    - option_letter(index): 0 -> "A", 1 -> "B", ...

Dependencies:
    - dataclasses (std)
    - enum (std)

Used By:
    - ingest.normalizer: creates questions and passages
    - ingest.session: holds the working collections
    - ingest.commit: serializes the selected subset
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class QuestionKind(str, Enum):
    """Kind of an extracted question."""
    SINGLE_CHOICE = "single_choice"
    MULTI_CHOICE = "multi_choice"
    FILL_BLANK = "fill_blank"
    SHORT_ANSWER = "short_answer"
    LONG_ANSWER = "long_answer"

    @property
    def is_choice(self) -> bool:
        """True for kinds answered by picking options."""
        return self in (QuestionKind.SINGLE_CHOICE, QuestionKind.MULTI_CHOICE)


def option_letter(index: int) -> str:
    """Letter label for an option position (0 -> "A")."""
    if index < 0:
        raise ValueError(f"option index must be non-negative: {index}")
    return chr(ord("A") + index)


@dataclass(frozen=True)
class ExtractedQuestion:
    """
    Candidate question produced by normalization (immutable).

    Attributes:
        id: Session-unique identifier like "q-0003" (never the capability's id)
        kind: Question kind
        text: Question body (may contain LaTeX/markdown)
        options: Option texts in order; empty for non-choice kinds
        answer_indices: 0-based correct option positions (choice kinds only)
        answer_text: Free-text answer (non-choice kinds only)
        explanation: Free-text explanation
        tags: Topic tags
        marks: Marks value
        page: 1-based originating page number, if known
        passage_id: Session id of the parent passage, if any

    Invariants:
        - Every answer index resolves to a position in options
        - Non-choice kinds carry no answer indices
        - SINGLE_CHOICE has at most one answer index

    Example:
        >>> q = ExtractedQuestion(
        ...     id="q-0001",
        ...     kind=QuestionKind.SINGLE_CHOICE,
        ...     text="Capital of France?",
        ...     options=("Berlin", "Madrid", "Paris"),
        ...     answer_indices=(2,),
        ... )
        >>> q.correct_answer
        'C'
    """

    id: str
    kind: QuestionKind
    text: str
    options: tuple[str, ...] = ()
    answer_indices: tuple[int, ...] = ()
    answer_text: str = ""
    explanation: str = ""
    tags: tuple[str, ...] = ()
    marks: float = 1.0
    page: Optional[int] = None
    passage_id: Optional[str] = None

    def __post_init__(self) -> None:
        """Validate question on construction."""
        if not self.id:
            raise ValueError("question id must be non-empty")
        if self.marks < 0:
            raise ValueError(f"marks must be non-negative: {self.marks}")

        if self.kind.is_choice:
            for idx in self.answer_indices:
                if not (0 <= idx < len(self.options)):
                    raise ValueError(
                        f"answer index {idx} does not resolve to an option "
                        f"of question {self.id} ({len(self.options)} options)"
                    )
            if len(set(self.answer_indices)) != len(self.answer_indices):
                raise ValueError(f"duplicate answer indices for question {self.id}")
            if self.kind is QuestionKind.SINGLE_CHOICE and len(self.answer_indices) > 1:
                raise ValueError(
                    f"single choice question {self.id} has {len(self.answer_indices)} answers"
                )
        elif self.answer_indices:
            raise ValueError(
                f"{self.kind.value} question {self.id} cannot have option answers"
            )

    @property
    def correct_answer(self) -> str:
        """
        Normalized correct answer.

        Option letters for choice kinds ("B" or "A,C"), free text otherwise.
        """
        if self.kind.is_choice:
            return ",".join(option_letter(i) for i in self.answer_indices)
        return self.answer_text

    @property
    def has_answer(self) -> bool:
        """True if an answer key is present."""
        if self.kind.is_choice:
            return bool(self.answer_indices)
        return bool(self.answer_text.strip())

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for persistence payloads."""
        return {
            "id": self.id,
            "type": self.kind.value,
            "text": self.text,
            "options": list(self.options),
            "correctAnswer": self.correct_answer,
            "explanation": self.explanation,
            "tags": list(self.tags),
            "marks": self.marks,
            "page": self.page,
            "passageId": self.passage_id,
        }

    def __repr__(self) -> str:
        return (
            f"ExtractedQuestion({self.id}, {self.kind.value}, "
            f"marks={self.marks}, answer={self.correct_answer!r})"
        )


@dataclass(frozen=True)
class ExtractedPassage:
    """
    Shared passage referenced by one or more questions (immutable).

    Attributes:
        id: Session-unique identifier like "p-0001"
        title: Short title (may be empty)
        text: Passage body
    """
    id: str
    title: str = ""
    text: str = ""

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("passage id must be non-empty")

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "title": self.title, "content": self.text}
