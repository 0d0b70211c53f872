"""
Core Models Package

Data models shared by every pipeline stage.

**DESIGN RATIONALE:**

Value objects (pages, questions, passages, batches, targets) are frozen
dataclasses:
1. No accidental mutation while a batch run is in flight
2. Review edits are explicit replacements under a stable identifier
3. Snapshots handed to a UI cannot be modified behind the session's back

The one mutable model is ReviewSelection, which is owned by a session.
"""

from .pages import RasterPage
from .questions import ExtractedPassage, ExtractedQuestion, QuestionKind, option_letter
from .batches import BatchStatus, ExtractionBatch
from .selection import PageSelection, ReviewSelection
from .targets import CommitTarget, ExistingSectionTarget, NewExamTarget

__all__ = [
    "RasterPage",
    "ExtractedPassage",
    "ExtractedQuestion",
    "QuestionKind",
    "option_letter",
    "BatchStatus",
    "ExtractionBatch",
    "PageSelection",
    "ReviewSelection",
    "CommitTarget",
    "ExistingSectionTarget",
    "NewExamTarget",
]
