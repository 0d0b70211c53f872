"""
Module: core.errors

Purpose:
    Exception taxonomy for the ingestion pipeline. Every error raised by a
    pipeline stage derives from IngestError so callers driving a session
    can catch the whole family in one place.

Key Classes:
    - DocumentFormatError / RenderError: rasterization failures
    - IndexOutOfRangeError / EmptySelectionError: page selection input
    - ExtractionBatchError / ResponseFormatError: batch extraction aborts
    - IncompleteTargetError / CommitError: commit failures

Used By:
    - exam_ingest.ingest: all pipeline stages
"""

from __future__ import annotations

from typing import Optional


class IngestError(Exception):
    """Base class for all ingestion pipeline errors."""
    pass


class DocumentFormatError(IngestError):
    """Input bytes are not a readable PDF document."""
    pass


class RenderError(IngestError):
    """A single page could not be rasterized."""

    def __init__(self, page_index: int, message: str):
        super().__init__(f"Failed to render page {page_index + 1}: {message}")
        self.page_index = page_index


class IndexOutOfRangeError(IngestError, IndexError):
    """Page index outside [0, page_count)."""

    def __init__(self, index: int, page_count: int):
        super().__init__(
            f"Page index {index} out of range for document with {page_count} pages"
        )
        self.index = index
        self.page_count = page_count


class EmptySelectionError(IngestError):
    """Extraction requested with no pages selected."""
    pass


class ResponseFormatError(IngestError):
    """Capability response does not match the extraction response schema."""

    def __init__(self, message: str, path: str = "", errors: list[str] | None = None):
        super().__init__(message)
        self.path = path
        self.errors = errors or []


class ExtractionBatchError(IngestError):
    """
    A batch extraction call failed; the run was aborted.

    Attributes:
        batch_index: 0-based ordinal of the failing batch.
        cause: Underlying exception (also chained as __cause__).
    """

    def __init__(self, batch_index: int, cause: BaseException, page_range: str = ""):
        noun = "page" if page_range.isdigit() else "pages"
        where = f" ({noun} {page_range})" if page_range else ""
        super().__init__(f"Extraction batch {batch_index + 1}{where} failed: {cause}")
        self.batch_index = batch_index
        self.cause = cause
        self.page_range = page_range


class InvalidTransitionError(IngestError):
    """Session operation not allowed in the current state."""
    pass


class EmptyReviewSelectionError(IngestError):
    """Proceed requested with no questions selected for import."""
    pass


class UnknownQuestionError(IngestError, KeyError):
    """No question (or passage) with the given session identifier."""

    def __init__(self, item_id: str):
        super().__init__(item_id)
        self.item_id = item_id

    def __str__(self) -> str:
        return f"Unknown item id: {self.item_id!r}"


class IncompleteTargetError(IngestError):
    """Commit target is missing required fields."""
    pass


class CommitError(IngestError):
    """The persistence capability rejected or failed the commit."""

    def __init__(self, message: str, errors: Optional[list[str]] = None):
        super().__init__(message)
        self.errors = errors or []
