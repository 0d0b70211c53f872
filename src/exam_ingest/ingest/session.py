"""
Module: ingest.session

Purpose:
    The import session: an explicit state machine that owns one uploaded
    document from rasterization through review to commit. It holds the
    working question and passage collections, the reviewer's selection and
    the duplicate flags, and exposes a frozen snapshot for any UI layer.

    UPLOAD → SELECTING → EXTRACTING → REVIEWING ⇄ FINALIZING_DETAILS → COMMITTED
    (any non-terminal state) → ABANDONED

Key Classes:
    - SessionState: Session states
    - ImportSession: Transitions and review operations
    - SessionSnapshot: Immutable read-only view
    - PassageItem / QuestionItem: Ordered review rendering entries

Dependencies:
    - ingest.rasterizer, ingest.page_selector, ingest.orchestrator,
      ingest.normalizer, ingest.duplicates, ingest.commit

Used By:
    - Application layers driving an import (web handlers, desktop UI)

Concurrency:
    Every suspension point is awaited in sequence. abandon() and reset()
    bump a generation token; an operation that resumes after its token
    went stale leaves the session untouched and its result is dropped.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union

from exam_ingest.core.errors import (
    CommitError,
    EmptyReviewSelectionError,
    EmptySelectionError,
    ExtractionBatchError,
    IncompleteTargetError,
    IngestError,
    InvalidTransitionError,
    UnknownQuestionError,
)
from exam_ingest.core.models import (
    CommitTarget,
    ExtractedPassage,
    ExtractedQuestion,
    NewExamTarget,
    PageSelection,
    QuestionKind,
    RasterPage,
    ReviewSelection,
    option_letter,
)

from .answers import answer_text, normalize_text, resolve_choice_answer
from .capabilities import (
    DuplicateCheckCapability,
    ExtractionCapability,
    PersistenceCapability,
    Tag,
    TagDirectory,
)
from .commit import CommitPlanner, CommitResult
from .config import IngestConfig
from .duplicates import DuplicateDetector, DuplicateReport
from .normalizer import ExtractionNormalizer, parse_kind
from .orchestrator import BatchOrchestrator, ProgressCallback, ProgressReport, SleepFn
from .page_selector import PageSelector
from .rasterizer import arasterize_pdf
from .timing import TimingLog, timed_phase

logger = logging.getLogger(__name__)

_EDITABLE_FIELDS = frozenset({
    "kind", "text", "options", "correct_answer", "explanation", "tags", "marks", "passage_id",
})


class SessionState(str, Enum):
    """States of an import session."""
    UPLOAD = "upload"
    SELECTING = "selecting"
    EXTRACTING = "extracting"
    REVIEWING = "reviewing"
    FINALIZING_DETAILS = "finalizing_details"
    COMMITTED = "committed"
    ABANDONED = "abandoned"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMMITTED, SessionState.ABANDONED)


@dataclass(frozen=True)
class PassageItem:
    """Review entry for a passage, shown before its first linked question."""
    passage: ExtractedPassage


@dataclass(frozen=True)
class QuestionItem:
    """Review entry for a question with its selection and duplicate flags."""
    question: ExtractedQuestion
    selected: bool
    duplicate: bool

    @property
    def has_answer(self) -> bool:
        """False when the answer key is missing or matched no option."""
        return self.question.has_answer


RenderItem = Union[PassageItem, QuestionItem]


@dataclass(frozen=True)
class SessionSnapshot:
    """
    Read-only view of a session at one moment (immutable).

    Attributes:
        state: Current state
        page_count: Pages in the loaded document (0 before upload)
        selected_pages: Current page selection while selecting, otherwise
            the selection frozen for the last run
        questions: Working questions in display order
        passages: Working passages
        instructions: Deduplicated instructions
        selected_ids: Questions marked for import
        duplicate_ids: Questions flagged as likely duplicates
        total_marks: Marks of the selected questions
        include_instructions: Whether instructions will be imported
        progress: Last progress report of the extraction run
        warnings: Normalization and duplicate-check warnings
        last_error: Message of the last failed operation
        commit_result: Set once committed
    """
    state: SessionState
    page_count: int
    selected_pages: tuple[int, ...]
    questions: tuple[ExtractedQuestion, ...]
    passages: tuple[ExtractedPassage, ...]
    instructions: tuple[str, ...]
    selected_ids: frozenset[str]
    duplicate_ids: frozenset[str]
    total_marks: float
    include_instructions: bool
    progress: Optional[ProgressReport]
    warnings: tuple[str, ...]
    last_error: Optional[str]
    commit_result: Optional[CommitResult]


class ImportSession:
    """
    One document import, from upload to commit.

    Args:
        extraction: Extraction capability used by the orchestrator
        duplicate_check: Optional duplicate-check capability
        persistence: Persistence capability used by commit()
        tag_directory: Optional tag lookup for editing
        config: Pipeline configuration
        sleep: Awaitable sleep for the inter-batch delay
        timing_log: Optional TimingLog for run timings
        id_prefix: Prefix for generated question/passage ids

    Example:
        >>> session = ImportSession(extractor, persistence=store)
        >>> await session.load_document(pdf_bytes)
        >>> session.selector.select_all()
        >>> await session.analyze(model_choice="gpt-4o")
        >>> session.deselect_question("q-0002")
        >>> session.proceed()
        >>> result = await session.commit(NewExamTarget("Physics Mock"))
    """

    def __init__(
        self,
        extraction: ExtractionCapability,
        *,
        duplicate_check: Optional[DuplicateCheckCapability] = None,
        persistence: Optional[PersistenceCapability] = None,
        tag_directory: Optional[TagDirectory] = None,
        config: Optional[IngestConfig] = None,
        sleep: SleepFn = asyncio.sleep,
        timing_log: Optional[TimingLog] = None,
        id_prefix: str = "",
    ) -> None:
        self.config = config or IngestConfig()
        self._extraction = extraction
        self._duplicate_check = duplicate_check
        self._persistence = persistence
        self._tag_directory = tag_directory
        self._sleep = sleep
        self._timing_log = timing_log
        self._normalizer = ExtractionNormalizer(id_prefix)

        self._state = SessionState.UPLOAD
        self._generation = 0
        self._clear()

    def _clear(self) -> None:
        """Drop the document and every derived collection."""
        self._pages: List[RasterPage] = []
        self._selector: Optional[PageSelector] = None
        self._frozen: Optional[PageSelection] = None
        self._questions: Dict[str, ExtractedQuestion] = {}
        self._passages: Dict[str, ExtractedPassage] = {}
        self._instructions: tuple[str, ...] = ()
        self._review = ReviewSelection()
        self._duplicates: frozenset[str] = frozenset()
        self._include_instructions = False
        self._progress: Optional[ProgressReport] = None
        self._warnings: List[str] = []
        self._last_error: Optional[str] = None
        self._commit_result: Optional[CommitResult] = None

    # ─────────────────────────────────────────────────────────────────────────
    # State helpers
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        return self._state

    def _require(self, operation: str, *states: SessionState) -> None:
        if self._state not in states:
            allowed = ", ".join(s.value for s in states)
            raise InvalidTransitionError(
                f"{operation} is not allowed in state {self._state.value} (expected {allowed})"
            )

    def _transition(self, new_state: SessionState) -> None:
        logger.info(
            f"Session {self._state.value} -> {new_state.value}",
            extra={"from_state": self._state.value, "to_state": new_state.value},
        )
        self._state = new_state

    def _is_current(self, token: int) -> bool:
        return token == self._generation

    def _record_error(self, error: Exception) -> None:
        self._last_error = str(error)

    # ─────────────────────────────────────────────────────────────────────────
    # Transitions
    # ─────────────────────────────────────────────────────────────────────────

    async def load_document(self, pdf_bytes: bytes) -> None:
        """
        Rasterize an uploaded PDF and start page selection.

        The first page is selected by default.

        Raises:
            DocumentFormatError: Not a PDF; session stays in UPLOAD
            RenderError: A page failed; session stays in UPLOAD
        """
        self._require("load_document", SessionState.UPLOAD)
        token = self._generation
        pages: List[RasterPage] = []
        try:
            async for page in arasterize_pdf(
                pdf_bytes,
                dpi=self.config.dpi,
                image_format=self.config.image_format,
                jpeg_quality=self.config.jpeg_quality,
            ):
                pages.append(page)
        except IngestError as e:
            if self._is_current(token):
                self._record_error(e)
            raise

        if not self._is_current(token):
            logger.info("Discarding rasterized document of an abandoned session")
            return

        self._pages = pages
        self._selector = PageSelector(len(pages), initial=(0,))
        self._last_error = None
        self._transition(SessionState.SELECTING)

    @property
    def pages(self) -> tuple[RasterPage, ...]:
        return tuple(self._pages)

    @property
    def selector(self) -> PageSelector:
        """Page selector of the loaded document (SELECTING only)."""
        self._require("selector", SessionState.SELECTING)
        assert self._selector is not None
        return self._selector

    async def analyze(
        self,
        instructions: Optional[str] = None,
        model_choice: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> SessionSnapshot:
        """
        Extract the selected pages and move to review.

        Runs the orchestrator, the normalizer and the duplicate detector.
        Every extracted question starts selected.

        Raises:
            EmptySelectionError: No page selected; stays in SELECTING
            ExtractionBatchError: A batch failed; every partial result is
                discarded and the session returns to UPLOAD
        """
        self._require("analyze", SessionState.SELECTING)
        assert self._selector is not None
        selection = self._selector.freeze()
        if selection.is_empty:
            error = EmptySelectionError("Select at least one page to analyze")
            self._record_error(error)
            raise error

        token = self._generation
        self._frozen = selection
        self._progress = None
        self._last_error = None
        self._transition(SessionState.EXTRACTING)

        def report(progress: ProgressReport) -> None:
            if not self._is_current(token):
                return
            self._progress = progress
            if on_progress is not None:
                on_progress(progress)

        orchestrator = BatchOrchestrator(
            self._extraction,
            batch_size=self.config.batch_size,
            inter_batch_delay=self.config.inter_batch_delay,
            batch_timeout=self.config.batch_timeout,
            sleep=self._sleep,
            timing_log=self._timing_log,
        )
        try:
            raw = await orchestrator.run(
                [self._pages[i] for i in selection],
                instructions=instructions,
                model_choice=model_choice or self.config.default_model,
                on_progress=report,
            )
        except ExtractionBatchError as e:
            if not self._is_current(token):
                logger.info(f"Ignoring failure of an abandoned run: {e}")
                return self.snapshot()
            self._clear()
            self._record_error(e)
            self._transition(SessionState.UPLOAD)
            raise

        if not self._is_current(token):
            logger.info("Discarding extraction result of an abandoned run")
            return self.snapshot()

        with timed_phase(self._timing_log, "normalize"):
            normalized = self._normalizer.normalize(raw)

        duplicates = DuplicateReport()
        if self._duplicate_check is not None:
            with timed_phase(self._timing_log, "duplicate_check"):
                duplicates = await DuplicateDetector(self._duplicate_check).detect(
                    normalized.questions
                )
            if not self._is_current(token):
                logger.info("Discarding extraction result of an abandoned run")
                return self.snapshot()

        self._questions = {q.id: q for q in normalized.questions}
        self._passages = {p.id: p for p in normalized.passages}
        self._instructions = normalized.instructions
        self._review = ReviewSelection(self._questions)
        self._duplicates = duplicates.duplicate_ids
        self._include_instructions = (
            self.config.include_instructions_by_default and bool(self._instructions)
        )
        self._warnings = list(normalized.warnings)
        if duplicates.warning:
            self._warnings.append(duplicates.warning)
        self._transition(SessionState.REVIEWING)
        return self.snapshot()

    def proceed(self) -> None:
        """
        Move from review to the commit details form.

        Raises:
            EmptyReviewSelectionError: No question selected
        """
        self._require("proceed", SessionState.REVIEWING)
        if not len(self._review):
            raise EmptyReviewSelectionError("Select at least one question to import")
        self._transition(SessionState.FINALIZING_DETAILS)

    def back(self) -> None:
        """Return to review; every edit and selection is kept."""
        self._require("back", SessionState.FINALIZING_DETAILS)
        self._transition(SessionState.REVIEWING)

    async def commit(
        self,
        target: CommitTarget,
        include_instructions: Optional[bool] = None,
    ) -> CommitResult:
        """
        Persist the selected questions to the target.

        Args:
            target: NewExamTarget or ExistingSectionTarget
            include_instructions: Overrides the session toggle when given

        Raises:
            IncompleteTargetError: Target misses required fields; no
                persistence call is made and the session stays put
            CommitError: Persistence failed; the session stays put with
                every edit preserved
        """
        self._require("commit", SessionState.FINALIZING_DETAILS)
        if self._persistence is None:
            error = CommitError("No persistence capability configured")
            self._record_error(error)
            raise error
        if include_instructions is not None:
            self._include_instructions = include_instructions

        token = self._generation
        try:
            result = await CommitPlanner(self._persistence).commit(
                list(self._questions.values()),
                self._review.ids,
                list(self._passages.values()),
                self._instructions,
                target,
                include_instructions=self._include_instructions,
            )
        except (IncompleteTargetError, CommitError) as e:
            if self._is_current(token):
                self._record_error(e)
            raise

        if not self._is_current(token):
            logger.warning(
                f"Commit to exam {result.exam_id} finished after the session was abandoned"
            )
            return result

        self._commit_result = result
        self._last_error = None
        self._transition(SessionState.COMMITTED)
        return result

    def abandon(self) -> None:
        """Abandon the session; in-flight work is discarded when it resumes."""
        if self._state.is_terminal:
            raise InvalidTransitionError(f"Cannot abandon a {self._state.value} session")
        self._generation += 1
        self._transition(SessionState.ABANDONED)

    def reset(self) -> None:
        """Return an abandoned (or idle) session to a clean UPLOAD state."""
        self._require("reset", SessionState.ABANDONED, SessionState.UPLOAD)
        self._generation += 1
        self._clear()
        self._transition(SessionState.UPLOAD)

    # ─────────────────────────────────────────────────────────────────────────
    # Review operations
    # ─────────────────────────────────────────────────────────────────────────

    def _question(self, question_id: str) -> ExtractedQuestion:
        try:
            return self._questions[question_id]
        except KeyError:
            raise UnknownQuestionError(question_id) from None

    def toggle_question(self, question_id: str) -> bool:
        """Flip a question's selection; returns the new membership."""
        self._require("toggle_question", SessionState.REVIEWING)
        self._question(question_id)
        return self._review.toggle(question_id)

    def select_question(self, question_id: str) -> None:
        self._require("select_question", SessionState.REVIEWING)
        self._question(question_id)
        self._review.select(question_id)

    def deselect_question(self, question_id: str) -> None:
        """Exclude a question from import; it stays in the collection."""
        self._require("deselect_question", SessionState.REVIEWING)
        self._question(question_id)
        self._review.deselect(question_id)

    def select_all_questions(self) -> None:
        self._require("select_all_questions", SessionState.REVIEWING)
        self._review.replace(self._questions)

    def delete_question(self, question_id: str) -> None:
        """Remove a question from the collection and the selection; ids are never reused."""
        self._require("delete_question", SessionState.REVIEWING)
        self._question(question_id)
        del self._questions[question_id]
        self._review.deselect(question_id)
        logger.debug(f"Deleted question {question_id}")

    def update_question(self, question_id: str, **changes: Any) -> ExtractedQuestion:
        """
        Edit a question in place under the same id.

        Editable fields: kind, text, options, correct_answer, explanation,
        tags, marks, passage_id. The answer key is resolved again against
        the resulting options.

        Raises:
            UnknownQuestionError: Unknown question or passage id
            TypeError: Unknown field name
            ValueError: Invalid kind or marks, or several answers for an
                explicitly single-choice question
        """
        self._require("update_question", SessionState.REVIEWING)
        current = self._question(question_id)
        unknown = set(changes) - _EDITABLE_FIELDS
        if unknown:
            raise TypeError(f"Cannot edit question fields: {', '.join(sorted(unknown))}")

        kind = current.kind
        if "kind" in changes:
            parsed = parse_kind(changes["kind"])
            if parsed is None:
                raise ValueError(f"Unknown question kind: {changes['kind']!r}")
            kind = parsed

        options = current.options
        if "options" in changes:
            options = tuple(str(o).strip() for o in changes["options"] or () if str(o).strip())

        updates: Dict[str, Any] = {"kind": kind}
        if kind.is_choice:
            if "correct_answer" in changes:
                indices, unresolved = resolve_choice_answer(changes["correct_answer"], options)
            else:
                indices, unresolved = _carry_answer(current, options)
            for entry in unresolved:
                message = f"{question_id}: answer {entry!r} matches no option, dropped"
                logger.warning(message)
                self._warnings.append(message)
            if kind is QuestionKind.SINGLE_CHOICE and len(indices) > 1:
                if "kind" in changes:
                    raise ValueError(f"Single choice question {question_id} accepts one answer")
                kind = QuestionKind.MULTI_CHOICE
            updates.update(kind=kind, options=options, answer_indices=indices, answer_text="")
        else:
            if "correct_answer" in changes:
                text = answer_text(changes["correct_answer"])
            elif current.kind.is_choice:
                text = ", ".join(current.options[i] for i in current.answer_indices)
            else:
                text = current.answer_text
            updates.update(options=(), answer_indices=(), answer_text=text)

        if "text" in changes:
            updates["text"] = str(changes["text"])
        if "explanation" in changes:
            updates["explanation"] = str(changes["explanation"] or "")
        if "tags" in changes:
            updates["tags"] = tuple(
                dict.fromkeys(str(t).strip() for t in changes["tags"] or () if str(t).strip())
            )
        if "marks" in changes:
            updates["marks"] = float(changes["marks"])
        if "passage_id" in changes:
            passage_id = changes["passage_id"] or None
            if passage_id is not None and passage_id not in self._passages:
                raise UnknownQuestionError(passage_id)
            updates["passage_id"] = passage_id

        updated = replace(current, **updates)
        self._questions[question_id] = updated
        return updated

    def update_passage(
        self,
        passage_id: str,
        *,
        title: Optional[str] = None,
        text: Optional[str] = None,
    ) -> ExtractedPassage:
        self._require("update_passage", SessionState.REVIEWING)
        try:
            current = self._passages[passage_id]
        except KeyError:
            raise UnknownQuestionError(passage_id) from None
        updated = replace(
            current,
            title=current.title if title is None else title,
            text=current.text if text is None else text,
        )
        self._passages[passage_id] = updated
        return updated

    def new_exam_target(self, title: str, duration_minutes: Optional[int] = None) -> NewExamTarget:
        """Target for a new exam, using the configured duration when none is given."""
        if duration_minutes is None:
            duration_minutes = self.config.default_duration_minutes
        return NewExamTarget(title=title, duration_minutes=duration_minutes)

    def set_include_instructions(self, include: bool) -> None:
        self._require(
            "set_include_instructions",
            SessionState.REVIEWING,
            SessionState.FINALIZING_DETAILS,
        )
        self._include_instructions = include

    # ─────────────────────────────────────────────────────────────────────────
    # Queries
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def questions(self) -> tuple[ExtractedQuestion, ...]:
        return tuple(self._questions.values())

    @property
    def passages(self) -> tuple[ExtractedPassage, ...]:
        return tuple(self._passages.values())

    @property
    def instructions(self) -> tuple[str, ...]:
        return self._instructions

    @property
    def selected_ids(self) -> frozenset[str]:
        return self._review.ids

    @property
    def duplicate_ids(self) -> frozenset[str]:
        """Flagged ids still present in the collection."""
        return frozenset(qid for qid in self._duplicates if qid in self._questions)

    @property
    def include_instructions(self) -> bool:
        return self._include_instructions

    @property
    def total_marks(self) -> float:
        """Marks of the selected questions, recomputed on every access."""
        return self._review.total_marks(self._questions)

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    def render_items(self) -> List[RenderItem]:
        """
        Review entries in display order.

        Each passage appears once, right before the first question linked
        to it. Passages with no remaining linked question come last.
        """
        items: List[RenderItem] = []
        shown: set[str] = set()
        duplicates = self.duplicate_ids
        for question in self._questions.values():
            passage_id = question.passage_id
            if passage_id and passage_id in self._passages and passage_id not in shown:
                shown.add(passage_id)
                items.append(PassageItem(self._passages[passage_id]))
            items.append(QuestionItem(
                question=question,
                selected=question.id in self._review,
                duplicate=question.id in duplicates,
            ))
        items.extend(PassageItem(p) for pid, p in self._passages.items() if pid not in shown)
        return items

    async def available_tags(self) -> List[Tag]:
        if self._tag_directory is None:
            return []
        return await self._tag_directory.list_tags()

    def snapshot(self) -> SessionSnapshot:
        if self._state is SessionState.SELECTING and self._selector is not None:
            selected_pages = self._selector.selected
        else:
            selected_pages = self._frozen.indices if self._frozen else ()
        return SessionSnapshot(
            state=self._state,
            page_count=len(self._pages),
            selected_pages=selected_pages,
            questions=self.questions,
            passages=self.passages,
            instructions=self._instructions,
            selected_ids=self._review.ids,
            duplicate_ids=self.duplicate_ids,
            total_marks=self.total_marks,
            include_instructions=self._include_instructions,
            progress=self._progress,
            warnings=tuple(self._warnings),
            last_error=self._last_error,
            commit_result=self._commit_result,
        )

    def __repr__(self) -> str:
        return (
            f"ImportSession({self._state.value}, {len(self._pages)} pages, "
            f"{len(self._review)}/{len(self._questions)} questions selected)"
        )


def _carry_answer(
    question: ExtractedQuestion,
    options: Sequence[str],
) -> tuple[tuple[int, ...], List[str]]:
    """
    Re-resolve an existing answer key against edited options.

    An answer follows its option text when that text is still present,
    otherwise it keeps its letter position. A previous free-text answer
    is resolved like a raw answer.
    """
    if not question.kind.is_choice:
        return resolve_choice_answer(question.answer_text or None, options)

    wanted = {normalize_text(o): i for i, o in reversed(list(enumerate(options)))}
    indices: set[int] = set()
    unresolved: List[str] = []
    for old in question.answer_indices:
        position = wanted.get(normalize_text(question.options[old]))
        if position is None and old < len(options):
            position = old
        if position is None:
            unresolved.append(option_letter(old))
        else:
            indices.add(position)
    return tuple(sorted(indices)), unresolved
