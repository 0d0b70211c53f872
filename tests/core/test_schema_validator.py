"""
Tests for extraction response schema validation.
"""

import pytest

from exam_ingest.core.errors import ResponseFormatError
from exam_ingest.core.schemas import validate_extraction_response


class TestValidateExtractionResponse:
    """Tests for validate_extraction_response()."""

    def test_validate_when_minimal_success_then_passes(self):
        validate_extraction_response({"success": True})

    def test_validate_when_full_response_then_passes(self):
        validate_extraction_response({
            "success": True,
            "questions": [
                {"type": "mcq", "text": "Q?", "options": ["a", "b"], "correctAnswer": "A", "marks": "2 marks"},
                {"type": "mcq_multiple", "text": "Q2?", "options": ["a", "b"], "correctAnswer": ["A", "B"]},
            ],
            "paragraphs": [{"id": "p1", "text": "Passage"}],
            "instructions": ["Answer all questions"],
        })

    def test_validate_when_not_object_then_raises_error(self):
        with pytest.raises(ResponseFormatError, match="must be an object"):
            validate_extraction_response(["success"])

    def test_validate_when_success_missing_then_raises_error(self):
        with pytest.raises(ResponseFormatError, match="success"):
            validate_extraction_response({"questions": []})

    def test_validate_when_question_without_text_then_reports_path(self):
        with pytest.raises(ResponseFormatError) as exc_info:
            validate_extraction_response({"success": True, "questions": [{"type": "mcq"}]})

        assert exc_info.value.path == "questions.0"
        assert exc_info.value.errors

    def test_validate_when_passage_without_id_then_raises_error(self):
        with pytest.raises(ResponseFormatError):
            validate_extraction_response({"success": True, "passages": [{"text": "x"}]})
