"""
Tests for ingest.normalizer.
"""

import pytest

from exam_ingest.core.models import ExtractionBatch, QuestionKind
from exam_ingest.ingest.capabilities import ExtractionResponse
from exam_ingest.ingest.normalizer import (
    ExtractionNormalizer,
    map_page,
    parse_kind,
    parse_marks,
    total_marks,
)
from exam_ingest.ingest.orchestrator import BatchOutput, RawExtraction


def _raw(*batches):
    """Build a RawExtraction from (page_indices, response dict) pairs."""
    return RawExtraction(batches=tuple(
        BatchOutput(
            batch=ExtractionBatch(ordinal=n, page_indices=tuple(pages)),
            response=ExtractionResponse.from_dict(data),
        )
        for n, (pages, data) in enumerate(batches)
    ))


def _mcq(text, options=("a", "b", "c"), answer="A", **extra):
    item = {"id": "q1", "type": "mcq", "text": text, "options": list(options), "correctAnswer": answer}
    item.update(extra)
    return item


class TestIdentifiers:
    """Session-unique ids regardless of capability ids."""

    def test_normalize_when_batches_reuse_q1_then_ids_unique(self):
        raw = _raw(
            ([0, 1, 2], {"success": True, "questions": [_mcq("First")]}),
            ([3, 4, 5], {"success": True, "questions": [_mcq("Second")]}),
        )

        result = ExtractionNormalizer().normalize(raw)

        assert [q.id for q in result.questions] == ["q-0001", "q-0002"]
        assert [q.text for q in result.questions] == ["First", "Second"]

    def test_normalize_when_called_twice_then_counter_continues(self):
        normalizer = ExtractionNormalizer()
        data = {"success": True, "questions": [_mcq("x"), _mcq("y")]}

        first = normalizer.normalize(_raw(([0], data)))
        second = normalizer.normalize(_raw(([0], data)))

        ids = [q.id for q in first.questions + second.questions]
        assert len(set(ids)) == len(ids) == 4

    def test_normalize_when_prefix_given_then_prefixed_ids(self):
        raw = _raw(([0], {"success": True, "questions": [_mcq("x")], "passages": [{"id": "p1"}]}))

        result = ExtractionNormalizer("s1-").normalize(raw)

        assert result.questions[0].id == "s1-q-0001"
        assert result.passages[0].id == "s1-p-0001"


class TestPassages:
    """Passage re-keying and linking."""

    def test_normalize_when_passage_ids_collide_across_batches_then_linked_within_batch(self):
        raw = _raw(
            ([0], {
                "success": True,
                "paragraphs": [{"id": "p1", "text": "Passage one"}],
                "questions": [{"type": "short_answer", "text": "About one", "paragraphId": "p1"}],
            }),
            ([1], {
                "success": True,
                "paragraphs": [{"id": "p1", "title": "Two", "content": "Passage two"}],
                "questions": [{"type": "short_answer", "text": "About two", "paragraphId": "p1"}],
            }),
        )

        result = ExtractionNormalizer().normalize(raw)

        passages = {p.id: p for p in result.passages}
        assert [p.text for p in result.passages] == ["Passage one", "Passage two"]
        assert passages[result.questions[0].passage_id].text == "Passage one"
        assert passages[result.questions[1].passage_id].text == "Passage two"
        assert passages[result.questions[1].passage_id].title == "Two"

    def test_normalize_when_reference_unknown_then_unlinked_with_warning(self):
        raw = _raw(([0], {
            "success": True,
            "questions": [{"type": "short_answer", "text": "Orphan", "paragraphId": "p9"}],
        }))

        result = ExtractionNormalizer().normalize(raw)

        assert result.questions[0].passage_id is None
        assert any("p9" in w for w in result.warnings)


class TestInstructions:
    def test_normalize_when_instructions_repeat_then_deduplicated_in_order(self):
        raw = _raw(
            ([0], {"success": True, "instructions": ["All questions are compulsory", " Use black ink "]}),
            ([1], {"success": True, "instructions": ["Use black ink", "", "Calculators allowed"]}),
        )

        result = ExtractionNormalizer().normalize(raw)

        assert result.instructions == (
            "All questions are compulsory",
            "Use black ink",
            "Calculators allowed",
        )


class TestAnswerKeys:
    """Answer normalization for choice kinds."""

    def test_normalize_when_answer_is_option_text_then_letter(self):
        raw = _raw(([0], {"success": True, "questions": [
            _mcq("Capital of France?", options=("Berlin", "Madrid", "Paris"), answer="Paris"),
        ]}))

        question = ExtractionNormalizer().normalize(raw).questions[0]

        assert question.answer_indices == (2,)
        assert question.correct_answer == "C"

    def test_normalize_when_answer_unresolvable_then_dropped_with_warning(self):
        raw = _raw(([0], {"success": True, "questions": [_mcq("Q", answer="London")]}))

        result = ExtractionNormalizer().normalize(raw)

        assert result.questions[0].answer_indices == ()
        assert any("London" in w for w in result.warnings)

    def test_normalize_when_single_choice_has_two_answers_then_multi(self):
        raw = _raw(([0], {"success": True, "questions": [_mcq("Q", answer="A, C")]}))

        question = ExtractionNormalizer().normalize(raw).questions[0]

        assert question.kind is QuestionKind.MULTI_CHOICE
        assert question.correct_answer == "A,C"

    def test_normalize_when_every_choice_question_then_indices_within_options(self):
        answers = ["A", "D", "(b)", "Option C", "4", ["A", "Z"], "nonsense", None, 7]
        raw = _raw(([0], {"success": True, "questions": [
            _mcq(f"Q{i}", options=("w", "x", "y"), answer=a) for i, a in enumerate(answers)
        ]}))

        for question in ExtractionNormalizer().normalize(raw).questions:
            assert all(0 <= i < len(question.options) for i in question.answer_indices)

    def test_normalize_when_fill_blank_then_answer_text_kept(self):
        raw = _raw(([0], {"success": True, "questions": [
            {"type": "one_word", "text": "H_2O is ___", "correctAnswer": " water ", "options": ["ignored"]},
        ]}))

        question = ExtractionNormalizer().normalize(raw).questions[0]

        assert question.kind is QuestionKind.FILL_BLANK
        assert question.options == ()
        assert question.correct_answer == "water"


class TestKinds:
    @pytest.mark.parametrize(
        "raw_type, expected",
        [
            ("mcq", QuestionKind.SINGLE_CHOICE),
            ("MCQ_Single", QuestionKind.SINGLE_CHOICE),
            ("mcq_multiple", QuestionKind.MULTI_CHOICE),
            ("multiple-choice", QuestionKind.MULTI_CHOICE),
            ("fill_blank", QuestionKind.FILL_BLANK),
            ("short answer", QuestionKind.SHORT_ANSWER),
            ("long_answer", QuestionKind.LONG_ANSWER),
            ("essay", None),
            (None, None),
        ],
    )
    def test_parse_kind_when_label_then_maps(self, raw_type, expected):
        assert parse_kind(raw_type) is expected

    def test_normalize_when_unknown_type_with_options_then_single_choice(self):
        raw = _raw(([0], {"success": True, "questions": [
            {"type": "quiz", "text": "Q", "options": ["a", "b"], "correctAnswer": "b"},
        ]}))

        question = ExtractionNormalizer().normalize(raw).questions[0]

        assert question.kind is QuestionKind.SINGLE_CHOICE
        assert question.answer_indices == (1,)

    def test_normalize_when_unknown_type_without_options_then_short_answer(self):
        raw = _raw(([0], {"success": True, "questions": [{"text": "Explain osmosis"}]}))
        assert ExtractionNormalizer().normalize(raw).questions[0].kind is QuestionKind.SHORT_ANSWER

    def test_normalize_when_mcq_without_options_then_short_answer_with_warning(self):
        raw = _raw(([0], {"success": True, "questions": [{"type": "mcq", "text": "Q", "correctAnswer": "B"}]}))

        result = ExtractionNormalizer().normalize(raw)

        assert result.questions[0].kind is QuestionKind.SHORT_ANSWER
        assert result.questions[0].answer_text == "B"
        assert result.warnings


class TestMarksAndPages:
    @pytest.mark.parametrize(
        "raw, expected",
        [(2, 2.0), (0.5, 0.5), ("2 marks", 2.0), ("(4)", 4.0), ("[3 marks]", 3.0), (None, 1.0), ("", 1.0)],
    )
    def test_parse_marks_when_valid_then_value(self, raw, expected):
        assert parse_marks(raw) == (expected, None)

    @pytest.mark.parametrize("raw", ["lots", -2, "-1"])
    def test_parse_marks_when_invalid_then_default_with_warning(self, raw):
        marks, warning = parse_marks(raw)

        assert marks == 1.0
        assert warning

    def test_map_page_when_batch_relative_then_document_page(self):
        assert map_page(2, (3, 4, 5)) == 5

    def test_map_page_when_already_document_page_then_kept(self):
        assert map_page(6, (3, 4, 5)) == 6

    def test_map_page_when_missing_then_batch_first_page(self):
        assert map_page(None, (3, 4, 5)) == 4
        assert map_page(42, (3, 4, 5)) == 4

    def test_normalize_when_page_given_then_mapped(self):
        raw = _raw(([6, 7], {"success": True, "questions": [_mcq("Q", page=2)]}))
        assert ExtractionNormalizer().normalize(raw).questions[0].page == 8


class TestTotalMarks:
    def test_total_marks_when_selection_changes_then_recomputed(self):
        raw = _raw(([0], {"success": True, "questions": [
            _mcq("a", marks=2), _mcq("b", marks=3), _mcq("c", marks=5),
        ]}))
        questions = ExtractionNormalizer().normalize(raw).questions
        selected = {q.id for q in questions}

        assert total_marks(questions, selected) == 10
        selected.discard(questions[1].id)
        assert total_marks(questions, selected) == 7
        assert total_marks({q.id: q for q in questions}, set()) == 0
