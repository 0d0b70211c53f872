"""
Module: ingest.file_locking

Purpose:
    Cross-platform file locking for the local question bank store, so two
    sessions committing at once never interleave partial JSONL lines or
    lose each other's records. Uses portalocker for Mac, Windows, and
    Linux compatibility.

Key Functions:
    - locked_file: Context manager for locked file access
    - locked_read_jsonl: Read every record of a JSONL file under a shared lock
    - locked_append_jsonl: Append records to JSONL with exclusive lock
    - locked_rewrite_jsonl: Read-modify-write a whole JSONL file with lock
    - locked_read_modify_write_json: Read-modify-write a JSON document

Dependencies:
    - portalocker: Cross-platform file locking

Used By:
    - ingest.store: exams, questions and passages files
    - ingest.timing: timing data
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Generator, Iterable, List

import portalocker

logger = logging.getLogger(__name__)


@contextmanager
def locked_file(
    path: Path,
    mode: str = 'r',
    lock_type: int = portalocker.LOCK_EX,
) -> Generator:
    """
    Context manager for cross-platform locked file access.

    Args:
        path: Path to file.
        mode: File open mode ('r', 'r+', 'a', etc.).
        lock_type: Lock type (LOCK_EX for exclusive, LOCK_SH for shared).

    Yields:
        Open file handle with lock held.

    Example:
        >>> with locked_file(path, 'a') as f:
        ...     f.write('data')
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    # Ensure file exists for read modes
    if 'r' in mode and not path.exists():
        path.touch()

    with open(path, mode, encoding='utf-8') as f:
        portalocker.lock(f, lock_type)
        try:
            yield f
        finally:
            portalocker.unlock(f)


def _parse_lines(content: str, path: Path) -> List[Dict[str, Any]]:
    records = []
    for lineno, line in enumerate(content.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            records.append(json.loads(line))
        except json.JSONDecodeError as e:
            raise ValueError(f"Corrupt record in {path.name} line {lineno}: {e}") from e
    return records


def locked_read_jsonl(path: Path) -> List[Dict[str, Any]]:
    """
    Read all records from a JSONL file under a shared lock.

    A missing file reads as empty.

    Raises:
        ValueError: If a line is not valid JSON
    """
    if not path.exists():
        return []
    with locked_file(path, 'r', portalocker.LOCK_SH) as f:
        return _parse_lines(f.read(), path)


def locked_append_jsonl(path: Path, records: Iterable[Dict[str, Any]]) -> int:
    """
    Append records to a JSONL file with exclusive lock.

    Args:
        path: Path to JSONL file.
        records: Dictionaries to append, one JSON line each.

    Returns:
        Number of records written.

    Example:
        >>> locked_append_jsonl(questions_path, [{"id": "q1", "marks": 5}])
        1
    """
    lines = [json.dumps(record, ensure_ascii=False) + '\n' for record in records]
    with locked_file(path, 'a', portalocker.LOCK_EX) as f:
        f.writelines(lines)

    logger.debug(f"Appended {len(lines)} records to {path.name}")
    return len(lines)


def locked_rewrite_jsonl(
    path: Path,
    modifier: Callable[[List[Dict[str, Any]]], List[Dict[str, Any]]],
) -> List[Dict[str, Any]]:
    """
    Read every record, apply modifier, write the result back, all under
    one exclusive lock.

    Args:
        path: Path to JSONL file.
        modifier: Function taking the existing records, returning the new ones.

    Returns:
        The records that were written.
    """
    with locked_file(path, 'r+', portalocker.LOCK_EX) as f:
        f.seek(0)
        existing = _parse_lines(f.read(), path)

        modified = modifier(existing)

        f.seek(0)
        f.truncate()
        for record in modified:
            f.write(json.dumps(record, ensure_ascii=False) + '\n')
        return modified


def locked_read_modify_write_json(
    path: Path,
    modifier: Callable[[Dict[str, Any]], Dict[str, Any]],
    default: Callable[[], Dict[str, Any]] = dict,
) -> Dict[str, Any]:
    """
    Read JSON, apply modifier, write back - all with exclusive lock.

    Args:
        path: Path to JSON file.
        modifier: Function that takes existing data, returns modified data.
        default: Factory for default data if file doesn't exist.

    Returns:
        The modified data that was written.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    if not path.exists():
        path.write_text(json.dumps(default(), indent=2), encoding='utf-8')

    with open(path, 'r+', encoding='utf-8') as f:
        portalocker.lock(f, portalocker.LOCK_EX)
        try:
            f.seek(0)
            content = f.read()
            existing = json.loads(content) if content.strip() else default()

            modified = modifier(existing)

            f.seek(0)
            f.truncate()
            json.dump(modified, f, indent=2, ensure_ascii=False)

            return modified
        finally:
            portalocker.unlock(f)
