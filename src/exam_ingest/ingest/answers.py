"""
Module: ingest.answers

Purpose:
    Resolve free-form answer keys against a question's options. Extraction
    output names the correct option in many ways ("Paris", "C", "(c)",
    "Option C", "3", ["A", "C"], "A and C"); everything downstream needs
    0-based option positions.

Key Functions:
    - resolve_choice_answer(): Raw answer -> (indices, unresolved entries)
    - answer_text(): Raw answer -> free text for non-choice kinds
    - normalize_text(): Case-fold and collapse whitespace

Used By:
    - ingest.normalizer: initial answer keys
    - ingest.session: re-resolution after options are edited
"""

from __future__ import annotations

import re
from typing import Any, List, Sequence, Tuple

_WHITESPACE = re.compile(r"\s+")
_SEPARATORS = re.compile(r"\s*[,;]\s*|\s+and\s+|\s*&\s*", re.IGNORECASE)
_LETTER_FORM = re.compile(r"^\(?(?:option\s+)?([a-z])\s*[).:]?$", re.IGNORECASE)
_NUMBER_FORM = re.compile(r"^\(?(\d+)[).]?$")


def normalize_text(value: str) -> str:
    """Case-fold and collapse runs of whitespace."""
    return _WHITESPACE.sub(" ", value).strip().casefold()


def _resolve_entry(entry: str, options: Sequence[str]) -> int | None:
    """Resolve one answer entry; text match wins over letter and number forms."""
    wanted = normalize_text(entry)
    if not wanted:
        return None

    # 1. Exact option text
    for i, option in enumerate(options):
        if normalize_text(option) == wanted:
            return i

    # 2. Letter forms: "A", "(b)", "Option C", "c)"
    match = _LETTER_FORM.match(wanted)
    if match:
        i = ord(match.group(1).lower()) - ord("a")
        if i < len(options):
            return i
        return None

    # 3. 1-based option number
    match = _NUMBER_FORM.match(wanted)
    if match:
        i = int(match.group(1)) - 1
        if 0 <= i < len(options):
            return i
    return None


def _split_entries(raw: Any, options: Sequence[str]) -> List[str]:
    if raw is None:
        return []
    if isinstance(raw, bool):
        return [str(raw)]
    if isinstance(raw, (list, tuple)):
        return [str(item) for item in raw if item is not None]
    text = str(raw).strip()
    if not text:
        return []
    # Whole string first: option texts may themselves contain commas or "and"
    if _resolve_entry(text, options) is not None:
        return [text]
    return [part for part in _SEPARATORS.split(text) if part.strip()]


def resolve_choice_answer(
    raw: Any,
    options: Sequence[str],
) -> Tuple[tuple[int, ...], List[str]]:
    """
    Resolve a raw answer key to option positions.

    Args:
        raw: Answer as given (string, number, list of either, or None)
        options: Option texts in order

    Returns:
        (indices, unresolved) where indices are unique, ascending 0-based
        positions inside options and unresolved lists entries that matched
        no option.

    Example:
        >>> resolve_choice_answer("Paris", ["Berlin", "Madrid", "Paris"])
        ((2,), [])
        >>> resolve_choice_answer("A and (c)", ["x", "y", "z"])
        ((0, 2), [])
        >>> resolve_choice_answer("E", ["x", "y"])
        ((), ['E'])
    """
    indices: set[int] = set()
    unresolved: List[str] = []
    for entry in _split_entries(raw, options):
        i = _resolve_entry(entry, options)
        if i is None:
            unresolved.append(entry.strip())
        else:
            indices.add(i)
    return tuple(sorted(indices)), unresolved


def answer_text(raw: Any) -> str:
    """Free-text answer for non-choice kinds."""
    if raw is None:
        return ""
    if isinstance(raw, (list, tuple)):
        return ", ".join(str(item).strip() for item in raw if item is not None and str(item).strip())
    return str(raw).strip()
