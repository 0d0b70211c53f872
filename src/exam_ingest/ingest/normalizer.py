"""
Module: ingest.normalizer

Purpose:
    Turn accumulated raw batch outputs into canonical questions, passages
    and instructions. This is the only place capability identifiers are
    read, and they never leave it: every question and passage gets a
    session-unique id, and passage references are resolved within the
    batch that produced them.

Key Classes:
    - ExtractionNormalizer: Stateful (id counters) normalizer for one session
    - NormalizedExtraction: Result container with warnings

Key Functions:
    - parse_kind(): Raw type label -> QuestionKind
    - parse_marks(): Raw marks value -> float
    - total_marks(): Sum marks over a selection

Dependencies:
    - ingest.answers: answer-key resolution
    - ingest.orchestrator: RawExtraction input

Used By:
    - ingest.session: analyze()
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Collection, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from exam_ingest.core.models import ExtractedPassage, ExtractedQuestion, QuestionKind

from .answers import answer_text, resolve_choice_answer
from .orchestrator import BatchOutput, RawExtraction

logger = logging.getLogger(__name__)

DEFAULT_MARKS = 1.0

_KIND_ALIASES: Dict[str, QuestionKind] = {
    "mcq": QuestionKind.SINGLE_CHOICE,
    "mcq_single": QuestionKind.SINGLE_CHOICE,
    "single_choice": QuestionKind.SINGLE_CHOICE,
    "mcq_multiple": QuestionKind.MULTI_CHOICE,
    "multi_choice": QuestionKind.MULTI_CHOICE,
    "multiple_choice": QuestionKind.MULTI_CHOICE,
    "fill_blank": QuestionKind.FILL_BLANK,
    "one_word": QuestionKind.FILL_BLANK,
    "short_answer": QuestionKind.SHORT_ANSWER,
    "long_answer": QuestionKind.LONG_ANSWER,
}

_NUMBER = re.compile(r"-?\d+(?:\.\d+)?")


@dataclass(frozen=True)
class NormalizedExtraction:
    """
    Canonical extraction result (immutable).

    Attributes:
        questions: Questions in extraction order, session-unique ids
        passages: Passages in extraction order, session-unique ids
        instructions: Deduplicated instruction strings, first-seen order
        warnings: Human-readable notes about dropped or defaulted data
    """
    questions: tuple[ExtractedQuestion, ...] = ()
    passages: tuple[ExtractedPassage, ...] = ()
    instructions: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()


# ─────────────────────────────────────────────────────────────────────────────
# Field parsing
# ─────────────────────────────────────────────────────────────────────────────

def parse_kind(raw_type: Any) -> Optional[QuestionKind]:
    """
    Map a raw type label to a QuestionKind.

    Returns None for unknown labels; the caller then falls back on the
    presence of options.
    """
    if isinstance(raw_type, QuestionKind):
        return raw_type
    if not isinstance(raw_type, str):
        return None
    key = re.sub(r"[\s-]+", "_", raw_type.strip().lower())
    return _KIND_ALIASES.get(key)


def parse_marks(raw: Any) -> Tuple[float, Optional[str]]:
    """
    Parse a marks value.

    Accepts numbers and strings like "2 marks" or "(4)". Missing values
    default to 1 silently; negative or unparseable values default to 1
    with a warning message.

    Returns:
        (marks, warning or None)

    Example:
        >>> parse_marks("(4)")
        (4.0, None)
        >>> parse_marks("lots")
        (1.0, "unparseable marks 'lots'")
    """
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return DEFAULT_MARKS, None
    if isinstance(raw, bool):
        return DEFAULT_MARKS, f"unparseable marks {raw!r}"
    if isinstance(raw, (int, float)):
        value = float(raw)
    else:
        match = _NUMBER.search(str(raw))
        if not match:
            return DEFAULT_MARKS, f"unparseable marks {raw!r}"
        value = float(match.group(0))
    if value < 0:
        return DEFAULT_MARKS, f"negative marks {raw!r}"
    return value, None


def _parse_int(raw: Any) -> Optional[int]:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float) and raw.is_integer():
        return int(raw)
    if isinstance(raw, str) and raw.strip().isdigit():
        return int(raw.strip())
    return None


def map_page(raw_page: Any, batch_pages: tuple[int, ...]) -> int:
    """
    Map a capability page number back to a 1-based document page number.

    The capability numbers pages within the batch (1..len(batch)); a value
    that is already one of the batch's document page numbers is kept.
    Anything else falls back to the batch's first page.
    """
    document_numbers = [i + 1 for i in batch_pages]
    page = _parse_int(raw_page)
    if page is not None:
        if 1 <= page <= len(batch_pages):
            return document_numbers[page - 1]
        if page in document_numbers:
            return page
    return document_numbers[0]


def _parse_tags(raw: Any) -> tuple[str, ...]:
    if raw is None:
        return ()
    items = raw.split(",") if isinstance(raw, str) else list(raw)
    tags: List[str] = []
    for item in items:
        tag = str(item).strip()
        if tag and tag not in tags:
            tags.append(tag)
    return tuple(tags)


def _parse_options(raw: Any) -> tuple[str, ...]:
    if not raw:
        return ()
    return tuple(str(o).strip() for o in raw if o is not None and str(o).strip())


def total_marks(
    questions: Union[Mapping[str, ExtractedQuestion], Iterable[ExtractedQuestion]],
    selection: Collection[str],
) -> float:
    """
    Sum marks over exactly the selected questions.

    Advisory only; recomputed from the current collection on every call.
    """
    items = questions.values() if isinstance(questions, Mapping) else questions
    return sum(q.marks for q in items if q.id in selection)


# ─────────────────────────────────────────────────────────────────────────────
# Normalizer
# ─────────────────────────────────────────────────────────────────────────────

class ExtractionNormalizer:
    """
    Normalizes raw extraction output for one session.

    Id counters live on the instance, so identifiers stay unique across
    every normalize() call made through the same normalizer.

    Args:
        id_prefix: Optional prefix prepended to generated ids

    Example:
        >>> normalizer = ExtractionNormalizer()
        >>> result = normalizer.normalize(raw)
        >>> [q.id for q in result.questions]
        ['q-0001', 'q-0002', 'q-0003']
    """

    def __init__(self, id_prefix: str = "") -> None:
        self.id_prefix = id_prefix
        self._question_counter = 0
        self._passage_counter = 0

    def _next_question_id(self) -> str:
        self._question_counter += 1
        return f"{self.id_prefix}q-{self._question_counter:04d}"

    def _next_passage_id(self) -> str:
        self._passage_counter += 1
        return f"{self.id_prefix}p-{self._passage_counter:04d}"

    def normalize(self, raw: RawExtraction) -> NormalizedExtraction:
        """
        Normalize every batch of a run, in batch order.

        Args:
            raw: Accumulated per-batch outputs

        Returns:
            NormalizedExtraction; problems are reported as warnings and
            never raise.
        """
        questions: List[ExtractedQuestion] = []
        passages: List[ExtractedPassage] = []
        instructions: List[str] = []
        warnings: List[str] = []

        for output in raw:
            passage_ids = self._normalize_passages(output, passages, warnings)
            for position, item in enumerate(output.response.questions, start=1):
                question = self._normalize_question(
                    item, output, position, passage_ids, warnings
                )
                if question is not None:
                    questions.append(question)
            for text in output.response.instructions:
                cleaned = str(text).strip()
                if cleaned and cleaned not in instructions:
                    instructions.append(cleaned)

        for warning in warnings:
            logger.warning(warning)
        logger.info(
            f"Normalized {len(questions)} questions, {len(passages)} passages, "
            f"{len(instructions)} instructions ({len(warnings)} warnings)",
            extra={
                "question_count": len(questions),
                "passage_count": len(passages),
                "warning_count": len(warnings),
            },
        )
        return NormalizedExtraction(
            questions=tuple(questions),
            passages=tuple(passages),
            instructions=tuple(instructions),
            warnings=tuple(warnings),
        )

    def _normalize_passages(
        self,
        output: BatchOutput,
        passages: List[ExtractedPassage],
        warnings: List[str],
    ) -> Dict[str, str]:
        """Re-key one batch's passages; returns capability id -> session id."""
        mapping: Dict[str, str] = {}
        label = f"batch {output.batch.ordinal + 1}"
        for item in output.response.passages:
            raw_id = str(item.get("id", "")).strip()
            if raw_id in mapping:
                warnings.append(f"{label}: duplicate passage id {raw_id!r} ignored")
                continue
            passage = ExtractedPassage(
                id=self._next_passage_id(),
                title=str(item.get("title") or "").strip(),
                text=str(item.get("content") or item.get("text") or "").strip(),
            )
            mapping[raw_id] = passage.id
            passages.append(passage)
        return mapping

    def _normalize_question(
        self,
        item: Dict[str, Any],
        output: BatchOutput,
        position: int,
        passage_ids: Dict[str, str],
        warnings: List[str],
    ) -> Optional[ExtractedQuestion]:
        label = f"batch {output.batch.ordinal + 1} question {position}"

        text = str(item.get("text") or "").strip()
        if not text:
            warnings.append(f"{label}: empty question text, skipped")
            return None

        options = _parse_options(item.get("options"))
        raw_answer = item.get("correctAnswer", item.get("answer"))
        kind = parse_kind(item.get("type"))
        if kind is None:
            kind = QuestionKind.SINGLE_CHOICE if options else QuestionKind.SHORT_ANSWER
            logger.debug(f"{label}: unknown type {item.get('type')!r}, using {kind.value}")

        if kind.is_choice and not options:
            warnings.append(f"{label}: {kind.value} without options, treated as short_answer")
            kind = QuestionKind.SHORT_ANSWER

        indices: tuple[int, ...] = ()
        text_answer = ""
        if kind.is_choice:
            indices, unresolved = resolve_choice_answer(raw_answer, options)
            for entry in unresolved:
                warnings.append(f"{label}: answer {entry!r} matches no option, dropped")
            if kind is QuestionKind.SINGLE_CHOICE and len(indices) > 1:
                kind = QuestionKind.MULTI_CHOICE
        else:
            options = ()
            text_answer = answer_text(raw_answer)

        marks, marks_warning = parse_marks(item.get("marks"))
        if marks_warning:
            warnings.append(f"{label}: {marks_warning}, using {DEFAULT_MARKS:g}")

        passage_id = None
        raw_ref = item.get("paragraphId", item.get("passageId"))
        if raw_ref not in (None, ""):
            passage_id = passage_ids.get(str(raw_ref).strip())
            if passage_id is None:
                warnings.append(f"{label}: unknown passage reference {raw_ref!r}, unlinked")

        return ExtractedQuestion(
            id=self._next_question_id(),
            kind=kind,
            text=text,
            options=options,
            answer_indices=indices,
            answer_text=text_answer,
            explanation=str(item.get("explanation") or "").strip(),
            tags=_parse_tags(item.get("tags")),
            marks=marks,
            page=map_page(item.get("page"), output.page_indices),
            passage_id=passage_id,
        )
