"""
Module: ingest.duplicates

Purpose:
    Flag freshly extracted questions that probably already exist in the
    question bank. Flags are advisory: nothing is removed or deselected,
    and a failing check degrades to "no flags" with a warning.

Key Classes:
    - DuplicateDetector: Maps capability indices back to session ids
    - DuplicateReport: Flagged ids plus an optional degradation warning
    - QuestionBankDuplicateCheck: Local DuplicateCheckCapability over a store

Key Functions:
    - normalize_for_comparison(): Case-fold, strip punctuation, collapse spaces

Dependencies:
    - difflib.SequenceMatcher (std): near-match ratio

Used By:
    - ingest.session: analyze()
"""

from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass
from difflib import SequenceMatcher
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence

from exam_ingest.core.models import ExtractedQuestion

from .capabilities import DuplicateCheckCapability
from .config import IngestConfig

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.95

_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class DuplicateReport:
    """
    Result of a duplicate check (immutable).

    Attributes:
        duplicate_ids: Session ids of likely duplicates
        warning: Set when the check failed and the report is empty
    """
    duplicate_ids: frozenset[str] = frozenset()
    warning: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return self.warning is not None


class DuplicateDetector:
    """
    Cross-checks questions against the bank through a capability.

    Example:
        >>> detector = DuplicateDetector(QuestionBankDuplicateCheck(store))
        >>> report = await detector.detect(questions)
        >>> sorted(report.duplicate_ids)
        ['q-0002']
    """

    def __init__(self, capability: DuplicateCheckCapability) -> None:
        self._capability = capability

    async def detect(self, questions: Sequence[ExtractedQuestion]) -> DuplicateReport:
        """
        Flag likely duplicates.

        Never raises for capability problems: any exception, success=False
        or malformed index list yields an empty report with a warning.
        """
        if not questions:
            return DuplicateReport()

        payload = [{"text": q.text.strip(), "type": q.kind.value} for q in questions]
        try:
            result = await self._capability.check(payload)
        except Exception as e:
            return self._degraded(f"Duplicate check failed: {type(e).__name__}: {e}")

        if not isinstance(result, dict) or not result.get("success"):
            error = result.get("error") if isinstance(result, dict) else None
            return self._degraded(f"Duplicate check unsuccessful: {error or 'no details'}")

        indices = result.get("duplicateIndices")
        if not isinstance(indices, list) or not all(
            isinstance(i, int) and not isinstance(i, bool) and 0 <= i < len(questions)
            for i in indices
        ):
            return self._degraded(f"Duplicate check returned malformed indices: {indices!r}")

        duplicate_ids = frozenset(questions[i].id for i in indices)
        logger.info(
            f"Duplicate check flagged {len(duplicate_ids)} of {len(questions)} questions",
            extra={"duplicate_count": len(duplicate_ids), "question_count": len(questions)},
        )
        return DuplicateReport(duplicate_ids=duplicate_ids)

    @staticmethod
    def _degraded(message: str) -> DuplicateReport:
        logger.warning(message)
        return DuplicateReport(warning=message)


# ─────────────────────────────────────────────────────────────────────────────
# Local capability
# ─────────────────────────────────────────────────────────────────────────────

def normalize_for_comparison(text: str) -> str:
    """
    Normalize question text for duplicate comparison.

    Example:
        >>> normalize_for_comparison("  What is   2+2? ")
        'what is 22'
    """
    text = unicodedata.normalize("NFKC", text).casefold()
    text = _PUNCTUATION.sub("", text)
    return _WHITESPACE.sub(" ", text).strip()


class QuestionBank(Protocol):
    """Source of persisted questions, as {"type", "text"} records."""

    def bank_questions(self) -> Iterable[Dict[str, Any]]:
        ...


class QuestionBankDuplicateCheck:
    """
    DuplicateCheckCapability backed by a local question bank.

    A candidate is a duplicate when a bank question of the same kind has
    identical normalized text, or a SequenceMatcher ratio at or above the
    threshold.

    Args:
        bank: Question source (e.g. JsonlQuestionStore)
        threshold: Minimum similarity ratio for a near-match
    """

    def __init__(self, bank: QuestionBank, threshold: float = DEFAULT_THRESHOLD) -> None:
        if not (0.0 < threshold <= 1.0):
            raise ValueError(f"threshold must be in (0, 1]: {threshold}")
        self._bank = bank
        self.threshold = threshold

    @classmethod
    def from_config(cls, bank: QuestionBank, config: IngestConfig) -> QuestionBankDuplicateCheck:
        return cls(bank, threshold=config.duplicate_threshold)

    async def check(self, questions: List[Dict[str, Any]]) -> Dict[str, Any]:
        by_kind: Dict[str, List[str]] = {}
        for record in self._bank.bank_questions():
            normalized = normalize_for_comparison(str(record.get("text") or ""))
            if normalized:
                by_kind.setdefault(str(record.get("type")), []).append(normalized)

        duplicates = [
            index
            for index, candidate in enumerate(questions)
            if self._matches(
                normalize_for_comparison(str(candidate.get("text") or "")),
                by_kind.get(str(candidate.get("type")), []),
            )
        ]
        return {"success": True, "duplicateIndices": duplicates}

    def _matches(self, candidate: str, existing: List[str]) -> bool:
        if not candidate:
            return False
        if candidate in existing:
            return True
        for text in existing:
            matcher = SequenceMatcher(None, candidate, text)
            # quick_ratio is an upper bound on ratio
            if matcher.quick_ratio() >= self.threshold and matcher.ratio() >= self.threshold:
                return True
        return False
