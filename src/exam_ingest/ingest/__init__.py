"""
Module: ingest

Purpose:
    PDF question-paper ingestion pipeline: rasterize an uploaded document,
    extract questions from selected pages in rate-limited batches, normalize
    and review them, and commit an approved subset to an exam.

    Rasterizer → Selector → Orchestrator → Normalizer → Duplicate Detector
    → Review Session → Commit Planner

Key Classes:
    - ImportSession: State machine driving one import
    - IngestConfig: Configuration for rendering, batching and review
    - BatchOrchestrator: Sequential, fail-fast batch extraction
    - ExtractionNormalizer: Raw capability output -> canonical models
    - JsonlQuestionStore: Local persistence / duplicate source / tag directory

Dependencies:
    - fitz (PyMuPDF), PIL: rasterization
    - jsonschema: capability response validation
    - portalocker: store file locking
"""

from .config import IngestConfig
from .capabilities import (
    DuplicateCheckCapability,
    ExtractionCapability,
    ExtractionRequest,
    ExtractionResponse,
    PersistenceCapability,
    Tag,
    TagDirectory,
)
from .rasterizer import arasterize_pdf, count_pages, rasterize_pdf
from .page_selector import PageSelector
from .orchestrator import BatchOrchestrator, ProgressReport, RawExtraction, partition_batches
from .normalizer import ExtractionNormalizer, NormalizedExtraction, total_marks
from .duplicates import DuplicateDetector, DuplicateReport, QuestionBankDuplicateCheck
from .commit import CommitPlanner, CommitResult, build_commit_payload, validate_target
from .session import ImportSession, PassageItem, QuestionItem, SessionSnapshot, SessionState
from .store import JsonlQuestionStore
from .timing import TimingLog, timed_phase

__all__ = [
    "IngestConfig",
    "DuplicateCheckCapability",
    "ExtractionCapability",
    "ExtractionRequest",
    "ExtractionResponse",
    "PersistenceCapability",
    "Tag",
    "TagDirectory",
    "arasterize_pdf",
    "count_pages",
    "rasterize_pdf",
    "PageSelector",
    "BatchOrchestrator",
    "ProgressReport",
    "RawExtraction",
    "partition_batches",
    "ExtractionNormalizer",
    "NormalizedExtraction",
    "total_marks",
    "DuplicateDetector",
    "DuplicateReport",
    "QuestionBankDuplicateCheck",
    "CommitPlanner",
    "CommitResult",
    "build_commit_payload",
    "validate_target",
    "ImportSession",
    "PassageItem",
    "QuestionItem",
    "SessionSnapshot",
    "SessionState",
    "JsonlQuestionStore",
    "TimingLog",
    "timed_phase",
]
