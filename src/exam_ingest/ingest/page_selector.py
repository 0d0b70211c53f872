"""
Module: ingest.page_selector

Purpose:
    Pure state container for the pages a reviewer wants to extract.
    Holds a set of indices bounded by [0, page_count); no side effects
    beyond mutating that set.

Key Classes:
    - PageSelector: select / deselect / toggle / select_all / clear / freeze

Used By:
    - ingest.session: exposed while the session is in SELECTING
"""

from __future__ import annotations

import logging
from typing import Iterable, Set

from exam_ingest.core.errors import IndexOutOfRangeError
from exam_ingest.core.models import PageSelection

logger = logging.getLogger(__name__)


class PageSelector:
    """
    Mutable page selection for one document.

    Example:
        >>> selector = PageSelector(page_count=5)
        >>> selector.select(3)
        >>> selector.select(1)
        >>> selector.selected
        (1, 3)
        >>> selector.select(5)
        Traceback (most recent call last):
        ...
        IndexOutOfRangeError: Page index 5 out of range for document with 5 pages
    """

    def __init__(self, page_count: int, initial: Iterable[int] = ()) -> None:
        if page_count < 0:
            raise ValueError(f"page_count must be non-negative: {page_count}")
        self._page_count = page_count
        self._selected: Set[int] = set()
        for index in initial:
            self.select(index)

    @property
    def page_count(self) -> int:
        return self._page_count

    def _check(self, index: int) -> None:
        if not (0 <= index < self._page_count):
            raise IndexOutOfRangeError(index, self._page_count)

    def select(self, index: int) -> None:
        self._check(index)
        self._selected.add(index)

    def deselect(self, index: int) -> None:
        """Remove a page from the selection; unselected pages are a no-op."""
        self._check(index)
        self._selected.discard(index)

    def toggle(self, index: int) -> bool:
        """Flip a page's membership; returns the new membership state."""
        self._check(index)
        if index in self._selected:
            self._selected.remove(index)
            return False
        self._selected.add(index)
        return True

    def select_all(self) -> None:
        self._selected = set(range(self._page_count))

    def clear(self) -> None:
        self._selected.clear()

    def is_selected(self, index: int) -> bool:
        return index in self._selected

    @property
    def selected(self) -> tuple[int, ...]:
        """Selected indices in ascending page order."""
        return tuple(sorted(self._selected))

    def __len__(self) -> int:
        return len(self._selected)

    def freeze(self) -> PageSelection:
        """
        Copy the current selection for a batch run.

        Later changes to this selector never affect the returned snapshot.
        """
        frozen = PageSelection.from_indices(self._selected, self._page_count)
        logger.debug(f"Froze page selection: {len(frozen)}/{self._page_count} pages")
        return frozen

    def __repr__(self) -> str:
        return f"PageSelector({len(self._selected)}/{self._page_count} selected)"
