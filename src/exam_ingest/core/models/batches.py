"""
Module: batches

Purpose:
    ExtractionBatch - a contiguous slice of the frozen page selection that
    is submitted to the extraction capability in one call.

Used By:
    - ingest.orchestrator
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum


class BatchStatus(str, Enum):
    """Lifecycle of a single batch."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class ExtractionBatch:
    """
    One batch of selected pages (immutable).

    Attributes:
        ordinal: 0-based batch index within the run
        page_indices: Document page indices in frozen selection order
        status: Current status
    """
    ordinal: int
    page_indices: tuple[int, ...]
    status: BatchStatus = BatchStatus.PENDING

    def __post_init__(self) -> None:
        if not self.page_indices:
            raise ValueError(f"batch {self.ordinal} has no pages")

    @property
    def page_range(self) -> str:
        """Human-readable 1-based page label, e.g. "4-6" or "2, 5, 9"."""
        numbers = [i + 1 for i in self.page_indices]
        if len(numbers) == 1:
            return str(numbers[0])
        if numbers == list(range(numbers[0], numbers[-1] + 1)):
            return f"{numbers[0]}-{numbers[-1]}"
        return ", ".join(str(n) for n in numbers)

    @property
    def page_label(self) -> str:
        """page_range with its noun, e.g. "page 2" or "pages 4-6"."""
        noun = "pages" if len(self.page_indices) > 1 else "page"
        return f"{noun} {self.page_range}"

    def with_status(self, status: BatchStatus) -> ExtractionBatch:
        return replace(self, status=status)

    def __len__(self) -> int:
        return len(self.page_indices)
