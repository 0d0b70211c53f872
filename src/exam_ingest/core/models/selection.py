"""
Module: selection

Purpose:
    Provides PageSelection (the frozen set of pages handed to a batch run)
    and ReviewSelection (the reviewer-controlled subset of extracted
    questions slated for commit).

Key Functions:
    - PageSelection.from_indices(): Freeze indices in ascending page order
    - ReviewSelection.total_marks(): Sum over selected questions only

Dependencies:
    - dataclasses (std)
    - .questions.ExtractedQuestion

Used By:
    - ingest.page_selector: freeze() produces a PageSelection
    - ingest.session: owns the ReviewSelection

Design Notes:
    PageSelection is copied at the moment a run starts so later selector
    changes never affect an in-flight run. ReviewSelection never grows on
    its own: it is seeded once with every normalized question and then
    only changes through explicit reviewer actions.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator, Mapping, Set

from .questions import ExtractedQuestion


@dataclass(frozen=True)
class PageSelection:
    """
    Immutable, ordered snapshot of selected page indices.

    Attributes:
        indices: Selected 0-based page indices, ascending
        page_count: Number of pages in the source document

    Example:
        >>> sel = PageSelection.from_indices({4, 0, 2}, page_count=5)
        >>> sel.indices
        (0, 2, 4)
    """

    indices: tuple[int, ...]
    page_count: int

    def __post_init__(self) -> None:
        """Validate selection on construction."""
        if list(self.indices) != sorted(set(self.indices)):
            raise ValueError(f"indices must be unique and ascending: {self.indices}")
        invalid = [i for i in self.indices if not (0 <= i < self.page_count)]
        if invalid:
            raise ValueError(
                f"indices {invalid} outside document with {self.page_count} pages"
            )

    @classmethod
    def from_indices(cls, indices: Iterable[int], page_count: int) -> PageSelection:
        return cls(indices=tuple(sorted(set(indices))), page_count=page_count)

    @property
    def is_empty(self) -> bool:
        return not self.indices

    def __len__(self) -> int:
        return len(self.indices)

    def __iter__(self) -> Iterator[int]:
        return iter(self.indices)

    def __contains__(self, index: object) -> bool:
        return index in self.indices


class ReviewSelection:
    """
    Mutable set of question ids the reviewer has marked for inclusion.

    Example:
        >>> sel = ReviewSelection(["q-0001", "q-0002"])
        >>> sel.deselect("q-0002")
        >>> sel.ids
        frozenset({'q-0001'})
    """

    def __init__(self, ids: Iterable[str] = ()) -> None:
        self._ids: Set[str] = set(ids)

    # ─────────────────────────────────────────────────────────────────────────
    # Mutation
    # ─────────────────────────────────────────────────────────────────────────

    def select(self, question_id: str) -> None:
        self._ids.add(question_id)

    def deselect(self, question_id: str) -> None:
        self._ids.discard(question_id)

    def toggle(self, question_id: str) -> bool:
        """Flip membership; returns the new membership state."""
        if question_id in self._ids:
            self._ids.remove(question_id)
            return False
        self._ids.add(question_id)
        return True

    def replace(self, ids: Iterable[str]) -> None:
        self._ids = set(ids)

    def clear(self) -> None:
        self._ids.clear()

    # ─────────────────────────────────────────────────────────────────────────
    # Queries
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def ids(self) -> frozenset[str]:
        return frozenset(self._ids)

    def __contains__(self, question_id: object) -> bool:
        return question_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def total_marks(self, questions: Mapping[str, ExtractedQuestion]) -> float:
        """
        Sum marks over exactly the selected questions.

        **IMPORTANT:** Always calculated, never stored, so any edit to a
        question's marks or to the selection is reflected immediately.

        Args:
            questions: Working collection keyed by question id

        Returns:
            Sum of marks for selected ids present in the collection
        """
        return sum(q.marks for qid, q in questions.items() if qid in self._ids)

    def __repr__(self) -> str:
        return f"ReviewSelection({len(self._ids)} selected)"
