"""
Module: targets

Purpose:
    CommitTarget variants - where an approved import is written: a brand
    new exam, or an existing exam section.

Used By:
    - ingest.commit: validation and payload construction
    - ingest.session: commit()
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class NewExamTarget:
    """
    Create a new draft exam with a single default section.

    Attributes:
        title: Exam title (required, non-blank)
        duration_minutes: Exam duration; defaults to 180 like the exam editor
    """
    title: str
    duration_minutes: int = 180

    mode = "new"


@dataclass(frozen=True)
class ExistingSectionTarget:
    """
    Append to an existing exam section.

    Attributes:
        exam_id: Identifier of the exam (required)
        section_id: Identifier of the section within that exam (required)
    """
    exam_id: str
    section_id: str

    mode = "existing"


CommitTarget = Union[NewExamTarget, ExistingSectionTarget]
