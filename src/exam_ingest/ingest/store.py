"""
Module: ingest.store

Purpose:
    Local question bank kept in JSONL files. Implements the persistence
    capability, the duplicate-check question source and the tag directory
    so a session can run end to end without a database.

    Layout under the store root:
        exams.jsonl      one exam per line, sections embedded
        questions.jsonl  one question per line
        passages.jsonl   one passage per line
        tags.jsonl       one tag per line

Key Classes:
    - JsonlQuestionStore: persist() / bank_questions() / list_tags()

Dependencies:
    - ingest.file_locking: portalocker-backed JSONL access

Used By:
    - ingest.duplicates: QuestionBankDuplicateCheck source
    - ingest.session: persistence capability and tag directory
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from exam_ingest.core.models import QuestionKind

from .capabilities import Tag
from .file_locking import locked_append_jsonl, locked_read_jsonl, locked_rewrite_jsonl

logger = logging.getLogger(__name__)

IMPORT_DESCRIPTION = "Imported via AI"
UNTITLED_PASSAGE = "Untitled Passage"
DEFAULT_DURATION = 180

_KINDS = {kind.value for kind in QuestionKind}


def _new_id() -> str:
    return uuid.uuid4().hex


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StoreError(Exception):
    """Store file is missing a referenced record."""
    pass


class JsonlQuestionStore:
    """
    JSONL-backed exam store.

    Args:
        root: Directory holding the store files (created on first write)

    Example:
        >>> store = JsonlQuestionStore(Path("workspace/bank"))
        >>> result = await store.persist(payload)
        >>> result["questionCount"]
        12
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    @property
    def exams_path(self) -> Path:
        return self.root / "exams.jsonl"

    @property
    def questions_path(self) -> Path:
        return self.root / "questions.jsonl"

    @property
    def passages_path(self) -> Path:
        return self.root / "passages.jsonl"

    @property
    def tags_path(self) -> Path:
        return self.root / "tags.jsonl"

    # ─────────────────────────────────────────────────────────────────────────
    # Queries
    # ─────────────────────────────────────────────────────────────────────────

    def exams(self) -> List[Dict[str, Any]]:
        return locked_read_jsonl(self.exams_path)

    def get_exam(self, exam_id: str) -> Optional[Dict[str, Any]]:
        return next((e for e in self.exams() if e.get("id") == exam_id), None)

    def questions(self, section_id: Optional[str] = None) -> List[Dict[str, Any]]:
        records = locked_read_jsonl(self.questions_path)
        if section_id is None:
            return records
        return [q for q in records if q.get("sectionId") == section_id]

    def passages(self) -> List[Dict[str, Any]]:
        return locked_read_jsonl(self.passages_path)

    def bank_questions(self) -> List[Dict[str, Any]]:
        """Every stored question as a {"type", "text"} record."""
        return [{"type": q.get("type"), "text": q.get("text", "")} for q in self.questions()]

    async def list_tags(self) -> List[Tag]:
        tags = [Tag(id=t["id"], name=t["name"]) for t in locked_read_jsonl(self.tags_path)]
        return sorted(tags, key=lambda t: t.name.casefold())

    # ─────────────────────────────────────────────────────────────────────────
    # Persistence capability
    # ─────────────────────────────────────────────────────────────────────────

    async def persist(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Write one import.

        "new" creates a draft exam with a default section named after the
        exam; "existing" appends instructions to the exam and questions to
        the section. Passage ids are replaced by store ids and question
        references remapped. Per-question problems are collected in
        "errors" without failing the whole import.

        Returns:
            {success, examId, sectionId, questionCount, errors} or
            {success: False, error} for an invalid payload
        """
        questions = payload.get("questions")
        if not isinstance(questions, list):
            return {"success": False, "error": "Invalid payload"}

        instructions = [str(i) for i in payload.get("instructions") or []]
        if payload.get("mode") == "existing":
            exam_id = payload.get("examId")
            section_id = payload.get("sectionId")
            if not exam_id or not section_id:
                return {"success": False, "error": "Missing exam or section ID"}
            try:
                self._append_instructions(exam_id, section_id, instructions)
            except StoreError as e:
                return {"success": False, "error": str(e)}
        else:
            details = payload.get("examDetails") or {}
            title = str(details.get("title") or "").strip()
            if not title:
                return {"success": False, "error": "Missing exam title"}
            exam_id, section_id = self._create_exam(
                title,
                duration=details.get("duration") or DEFAULT_DURATION,
                total_marks=details.get("totalMarks") or 0,
                instructions=instructions,
            )

        passage_map = self._insert_passages(payload.get("passages") or [])
        inserted, errors = self._insert_questions(questions, exam_id, section_id, passage_map)

        logger.info(
            f"Import complete: {inserted}/{len(questions)} questions inserted for exam {exam_id}",
            extra={"exam_id": exam_id, "section_id": section_id, "error_count": len(errors)},
        )
        return {
            "success": True,
            "examId": exam_id,
            "sectionId": section_id,
            "questionCount": inserted,
            "errors": errors,
        }

    def _create_exam(
        self,
        title: str,
        *,
        duration: int,
        total_marks: float,
        instructions: List[str],
    ) -> tuple[str, str]:
        exam_id = _new_id()
        section_id = _new_id()
        locked_append_jsonl(self.exams_path, [{
            "id": exam_id,
            "title": title,
            "description": IMPORT_DESCRIPTION,
            "duration": int(duration),
            "totalMarks": total_marks,
            "instructions": instructions,
            "status": "draft",
            "sections": [{"id": section_id, "name": title, "order": 1}],
            "createdAt": _now(),
        }])
        logger.debug(f"Created exam {exam_id} with section {section_id}")
        return exam_id, section_id

    def _append_instructions(self, exam_id: str, section_id: str, instructions: List[str]) -> None:
        """Check the target exists and append instructions to the exam."""

        def modifier(exams: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
            exam = next((e for e in exams if e.get("id") == exam_id), None)
            if exam is None:
                raise StoreError(f"Exam not found: {exam_id}")
            if not any(s.get("id") == section_id for s in exam.get("sections", [])):
                raise StoreError(f"Section {section_id} not found in exam {exam_id}")
            exam["instructions"] = list(exam.get("instructions") or []) + instructions
            exam["updatedAt"] = _now()
            return exams

        locked_rewrite_jsonl(self.exams_path, modifier)

    def _insert_passages(self, passages: List[Dict[str, Any]]) -> Dict[str, str]:
        """Store passages; returns payload passage id -> store id."""
        mapping: Dict[str, str] = {}
        records = []
        for p in passages:
            store_id = _new_id()
            mapping[str(p.get("id"))] = store_id
            records.append({
                "id": store_id,
                "title": p.get("title") or UNTITLED_PASSAGE,
                "content": p.get("content") or "",
            })
        if records:
            locked_append_jsonl(self.passages_path, records)
        return mapping

    def _insert_questions(
        self,
        questions: List[Dict[str, Any]],
        exam_id: str,
        section_id: str,
        passage_map: Dict[str, str],
    ) -> tuple[int, List[str]]:
        order_start = len(self.questions(section_id))
        records: List[Dict[str, Any]] = []
        errors: List[str] = []
        tag_names: List[str] = []

        for idx, q in enumerate(questions, start=1):
            try:
                records.append(self._question_record(
                    q, exam_id, section_id, passage_map, order_start + len(records) + 1
                ))
            except ValueError as e:
                logger.error(f"Failed to insert question {idx}: {e}")
                errors.append(f"Q{idx}: {e}")
                continue
            tag_names.extend(t for t in records[-1]["tags"] if t not in tag_names)

        if records:
            locked_append_jsonl(self.questions_path, records)
        self._upsert_tags(tag_names)
        return len(records), errors

    @staticmethod
    def _question_record(
        q: Dict[str, Any],
        exam_id: str,
        section_id: str,
        passage_map: Dict[str, str],
        order: int,
    ) -> Dict[str, Any]:
        text = str(q.get("text") or "").strip()
        if not text:
            raise ValueError("question text is empty")
        kind = q.get("type") or QuestionKind.SINGLE_CHOICE.value
        if kind not in _KINDS:
            raise ValueError(f"unknown question type {kind!r}")

        options = [str(o) for o in q.get("options") or []]
        answer = str(q.get("correctAnswer") or "").strip()
        correct: List[str] = []
        model_answer: Optional[str] = None
        if QuestionKind(kind).is_choice:
            # Letters only; each must name an option
            for letter in filter(None, (a.strip() for a in answer.split(","))):
                position = ord(letter.upper()) - ord("A") if len(letter) == 1 else -1
                if not (0 <= position < len(options)):
                    raise ValueError(f"answer {letter!r} does not name an option")
                correct.append(letter.upper())
        elif kind == QuestionKind.FILL_BLANK.value:
            correct = [answer] if answer else []
        else:
            model_answer = answer or None

        raw_passage = q.get("passageId")
        return {
            "id": _new_id(),
            "examId": exam_id,
            "sectionId": section_id,
            "type": kind,
            "text": text,
            "options": [
                {"id": chr(ord("A") + i), "text": option} for i, option in enumerate(options)
            ],
            "correctAnswer": correct,
            "modelAnswer": model_answer,
            "marks": float(1 if q.get("marks") is None else q["marks"]),
            "explanation": q.get("explanation") or "",
            "passageId": passage_map.get(str(raw_passage)) if raw_passage else None,
            "tags": [str(t).strip() for t in q.get("tags") or [] if str(t).strip()],
            "order": order,
            "createdAt": _now(),
        }

    def _upsert_tags(self, names: List[str]) -> None:
        if not names:
            return

        def modifier(tags: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
            known = {t["name"] for t in tags}
            for name in names:
                if name not in known:
                    tags.append({"id": _new_id(), "name": name})
                    known.add(name)
            return tags

        locked_rewrite_jsonl(self.tags_path, modifier)
