"""
Module: ingest.orchestrator

Purpose:
    Drive extraction of a frozen page selection through the extraction
    capability in fixed-size batches, strictly one at a time, with a
    rate-limit delay between batches and progress reporting.
    Partition → (report → call → validate → accumulate → wait)*

Key Functions:
    - partition_batches(): Split a page selection into consecutive batches

Key Classes:
    - BatchOrchestrator: Runs batches sequentially, fail-fast
    - ProgressReport: (completed, total, status) snapshot for a UI
    - BatchOutput / RawExtraction: Accumulated per-batch capability output

Dependencies:
    - asyncio (std): awaiting calls, optional per-batch timeout
    - ingest.capabilities: extraction contract
    - ingest.timing: per-batch timings

Used By:
    - ingest.session: analyze()

Failure Policy:
    The first failing batch aborts the run with ExtractionBatchError and
    no further batches are issued. Output of earlier batches is not
    returned; the session discards it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterator, List, Optional, Sequence

from exam_ingest.core.errors import EmptySelectionError, ExtractionBatchError
from exam_ingest.core.models import BatchStatus, ExtractionBatch, RasterPage

from .capabilities import ExtractionCapability, ExtractionRequest, ExtractionResponse
from .config import DEFAULT_BATCH_SIZE, DEFAULT_INTER_BATCH_DELAY
from .timing import TimingLog, timed_phase

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]
ProgressCallback = Callable[["ProgressReport"], None]

COMPLETE_STATUS = "Extraction complete"


class CapabilityReportedError(Exception):
    """The capability answered with success=False."""
    pass


@dataclass(frozen=True)
class ProgressReport:
    """
    Progress of an extraction run (immutable).

    Attributes:
        completed: Batches finished so far
        total: Total batches in the run
        status: Human-readable status naming the current page range
    """
    completed: int
    total: int
    status: str

    @property
    def fraction(self) -> float:
        """Completed share in [0, 1] for progress bars."""
        if self.total == 0:
            return 0.0
        return self.completed / self.total


@dataclass(frozen=True)
class BatchOutput:
    """Validated capability response for one batch."""
    batch: ExtractionBatch
    response: ExtractionResponse

    @property
    def page_indices(self) -> tuple[int, ...]:
        return self.batch.page_indices


@dataclass(frozen=True)
class RawExtraction:
    """
    Ordered per-batch outputs of a completed run.

    Capability identifiers inside each batch are untrusted and only
    meaningful within that batch.
    """
    batches: tuple[BatchOutput, ...] = ()

    def __iter__(self) -> Iterator[BatchOutput]:
        return iter(self.batches)

    def __len__(self) -> int:
        return len(self.batches)

    @property
    def question_count(self) -> int:
        return sum(len(b.response.questions) for b in self.batches)


def partition_batches(
    pages: Sequence[int],
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> List[ExtractionBatch]:
    """
    Split page indices into consecutive batches of at most batch_size.

    Pages keep the order they are given in; the last batch may be smaller.

    Example:
        >>> [b.page_indices for b in partition_batches(range(7), 3)]
        [(0, 1, 2), (3, 4, 5), (6,)]
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be positive: {batch_size}")
    indices = list(pages)
    return [
        ExtractionBatch(ordinal=n, page_indices=tuple(indices[start:start + batch_size]))
        for n, start in enumerate(range(0, len(indices), batch_size))
    ]


class BatchOrchestrator:
    """
    Sequential, fail-fast batch runner.

    Args:
        capability: Extraction capability to call per batch
        batch_size: Pages per call
        inter_batch_delay: Seconds awaited between consecutive batches
        batch_timeout: Optional per-call timeout in seconds
        sleep: Awaitable sleep used for the delay (injected in tests)
        timing_log: Optional TimingLog receiving per-batch timings

    Example:
        >>> orchestrator = BatchOrchestrator(capability, batch_size=3)
        >>> raw = await orchestrator.run(pages, model_choice="gpt-4o")
        >>> len(raw)
        3
    """

    def __init__(
        self,
        capability: ExtractionCapability,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        inter_batch_delay: float = DEFAULT_INTER_BATCH_DELAY,
        batch_timeout: Optional[float] = None,
        sleep: SleepFn = asyncio.sleep,
        timing_log: Optional[TimingLog] = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive: {batch_size}")
        if inter_batch_delay < 0:
            raise ValueError(f"inter_batch_delay must be non-negative: {inter_batch_delay}")
        self._capability = capability
        self.batch_size = batch_size
        self.inter_batch_delay = inter_batch_delay
        self.batch_timeout = batch_timeout
        self._sleep = sleep
        self._timing_log = timing_log
        self._batches: List[ExtractionBatch] = []

    @property
    def batches(self) -> tuple[ExtractionBatch, ...]:
        """Batches of the most recent run with their final status."""
        return tuple(self._batches)

    async def run(
        self,
        pages: Sequence[RasterPage],
        *,
        instructions: Optional[str] = None,
        model_choice: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> RawExtraction:
        """
        Extract every page, one batch at a time.

        Args:
            pages: Rasterized pages in frozen selection order
            instructions: Optional reviewer instruction sent with every batch
            model_choice: Opaque model selector passed to the capability
            on_progress: Called before each batch and once on completion

        Returns:
            RawExtraction with one BatchOutput per batch, in batch order

        Raises:
            EmptySelectionError: If pages is empty (no call is made)
            ExtractionBatchError: At the first failing batch
        """
        if not pages:
            raise EmptySelectionError("No pages selected for extraction")

        by_index = {page.index: page for page in pages}
        self._batches = partition_batches([page.index for page in pages], self.batch_size)
        total = len(self._batches)
        outputs: List[BatchOutput] = []

        logger.info(
            f"Starting extraction of {len(pages)} pages in {total} batches",
            extra={"page_count": len(pages), "batch_count": total, "model": model_choice},
        )

        for batch in self._batches:
            status = (
                f"Processing {batch.page_label} "
                f"(batch {batch.ordinal + 1} of {total})"
            )
            self._report(on_progress, ProgressReport(batch.ordinal, total, status))

            request = ExtractionRequest(
                images=tuple(by_index[i].data_url() for i in batch.page_indices),
                instructions=instructions,
                model_choice=model_choice,
                page_numbers=tuple(i + 1 for i in batch.page_indices),
            )
            self._set_status(batch.ordinal, BatchStatus.RUNNING)
            response = await self._call(batch, request)
            self._set_status(batch.ordinal, BatchStatus.SUCCEEDED)
            outputs.append(BatchOutput(batch=self._batches[batch.ordinal], response=response))

            logger.debug(
                f"Batch {batch.ordinal + 1}/{total} returned "
                f"{len(response.questions)} questions, {len(response.passages)} passages",
                extra={"batch_index": batch.ordinal, "page_range": batch.page_range},
            )

            if batch.ordinal < total - 1 and self.inter_batch_delay > 0:
                with timed_phase(self._timing_log, "delay", batch=f"batch-{batch.ordinal + 1}"):
                    await self._sleep(self.inter_batch_delay)

        raw = RawExtraction(batches=tuple(outputs))
        self._report(on_progress, ProgressReport(total, total, COMPLETE_STATUS))
        logger.info(
            f"Extraction complete: {raw.question_count} raw questions from {total} batches",
            extra={"batch_count": total, "question_count": raw.question_count},
        )
        if self._timing_log is not None:
            logger.info(self._timing_log.summary())
        return raw

    async def _call(self, batch: ExtractionBatch, request: ExtractionRequest) -> ExtractionResponse:
        """Issue one capability call; every failure becomes ExtractionBatchError."""
        try:
            with timed_phase(self._timing_log, "extract_call", batch=f"batch-{batch.ordinal + 1}"):
                if self.batch_timeout is not None:
                    data = await asyncio.wait_for(
                        self._capability.extract(request), timeout=self.batch_timeout
                    )
                else:
                    data = await self._capability.extract(request)
            response = ExtractionResponse.from_dict(data)
            if not response.success:
                raise CapabilityReportedError(response.error or "Extraction failed")
        except asyncio.TimeoutError as e:
            self._fail(batch, f"timed out after {self.batch_timeout}s")
            raise ExtractionBatchError(batch.ordinal, e, batch.page_range) from e
        except Exception as e:
            self._fail(batch, f"{type(e).__name__}: {e}")
            raise ExtractionBatchError(batch.ordinal, e, batch.page_range) from e
        return response

    def _fail(self, batch: ExtractionBatch, reason: str) -> None:
        self._set_status(batch.ordinal, BatchStatus.FAILED)
        logger.error(
            f"Batch {batch.ordinal + 1} ({batch.page_label}) failed: {reason}",
            extra={"batch_index": batch.ordinal, "page_range": batch.page_range},
        )

    def _set_status(self, ordinal: int, status: BatchStatus) -> None:
        self._batches[ordinal] = self._batches[ordinal].with_status(status)

    @staticmethod
    def _report(callback: Optional[ProgressCallback], report: ProgressReport) -> None:
        logger.debug(report.status, extra={"completed": report.completed, "total": report.total})
        if callback is not None:
            callback(report)
