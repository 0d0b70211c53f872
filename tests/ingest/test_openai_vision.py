"""
Tests for the OpenAI-compatible extraction provider.
"""

from types import SimpleNamespace

import httpx
import pytest
from openai import APIStatusError, RateLimitError

from exam_ingest.ingest.capabilities import ExtractionCapability, ExtractionRequest, ExtractionResponse
from exam_ingest.ingest.providers.openai_vision import (
    BASE_PROMPT,
    FALLBACK_MODEL,
    GEMINI_BASE_URL,
    GROQ_BASE_URL,
    ModelReplyError,
    OpenAIVisionExtractor,
    ProviderExhaustedError,
    build_prompt,
    parse_model_json,
    resolve_provider,
    split_api_keys,
)


class FakeCompletions:
    def __init__(self, content):
        self.content = content
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def fake_client(content):
    completions = FakeCompletions(content)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions


REPLY = """```json
{
  "instructions": ["All questions are compulsory"],
  "paragraphs": [{"id": "p1", "title": "Motion", "content": "A car accelerates."}],
  "questions": [
    {"type": "mcq", "text": "Unit of \\alpha?", "options": ["rad", "m"], "correctAnswer": "A",
     "page": 1, "paragraphId": "p1"}
  ]
}
```"""


class TestResolveProvider:
    @pytest.mark.parametrize(
        "choice, expected",
        [
            ("gpt-4o", ("openai", "gpt-4o")),
            ("llama-3.2-90b-vision-preview", ("groq", "llama-3.2-90b-vision-preview")),
            ("meta-llama/llama-4-scout-17b-16e-instruct", ("groq", "meta-llama/llama-4-scout-17b-16e-instruct")),
            ("gemini-1.5-pro", ("gemini", "gemini-1.5-pro")),
            ("claude-x", ("gemini", FALLBACK_MODEL)),
            (None, ("gemini", FALLBACK_MODEL)),
        ],
    )
    def test_resolve_when_choice_then_provider_and_model(self, choice, expected):
        assert resolve_provider(choice) == expected


class TestParseModelJson:
    def test_parse_when_fenced_then_object(self):
        assert parse_model_json('```json\n{"questions": []}\n```') == {"questions": []}

    def test_parse_when_surrounded_by_prose_then_object_sliced(self):
        assert parse_model_json('Here you go: {"a": 1} Hope this helps') == {"a": 1}

    def test_parse_when_latex_backslashes_then_preserved(self):
        parsed = parse_model_json(r'{"text": "\sqrt{x} + \alpha = \pi", "q": "say \"hi\"\n"}')

        assert parsed["text"] == r"\sqrt{x} + \alpha = \pi"
        assert parsed["q"] == 'say "hi"\n'

    def test_parse_when_unicode_escape_then_decoded(self):
        assert parse_model_json(r'{"t": "\u00b0C"}') == {"t": "°C"}

    @pytest.mark.parametrize("text", ["no json here", "[1, 2]", "{broken: }"])
    def test_parse_when_not_an_object_then_raises(self, text):
        with pytest.raises(ModelReplyError):
            parse_model_json(text)


class TestBuildPrompt:
    def test_build_prompt_when_instructions_then_appended(self):
        prompt = build_prompt("  Skip section B ")

        assert prompt.startswith(BASE_PROMPT)
        assert prompt.endswith("ADDITIONAL INSTRUCTIONS:\nSkip section B")

    def test_build_prompt_when_blank_then_base(self):
        assert build_prompt("  ") == BASE_PROMPT


class TestOpenAIVisionExtractor:
    def test_extractor_when_checked_then_satisfies_protocol(self):
        assert isinstance(OpenAIVisionExtractor(api_key="k"), ExtractionCapability)

    def test_extract_when_reply_then_wire_form_validates(self, run):
        # Arrange
        client, completions = fake_client(REPLY)
        extractor = OpenAIVisionExtractor(client=client)
        request = ExtractionRequest(
            images=("data:image/jpeg;base64,AAA", "data:image/jpeg;base64,BBB"),
            instructions="Physics only",
            model_choice="gpt-4o",
        )

        # Act
        data = run(extractor.extract(request))

        # Assert
        response = ExtractionResponse.from_dict(data)
        assert response.success
        assert response.questions[0]["text"] == r"Unit of \alpha?"
        assert response.passages[0]["id"] == "p1"
        assert response.instructions == ["All questions are compulsory"]

        call = completions.calls[0]
        assert call["model"] == "gpt-4o"
        assert call["messages"][0]["content"].endswith("Physics only")
        images = [part for part in call["messages"][1]["content"] if part["type"] == "image_url"]
        assert [p["image_url"]["url"] for p in images] == list(request.images)

    def test_extract_when_model_for_other_provider_then_unsuccessful(self, run):
        client, completions = fake_client(REPLY)

        data = run(OpenAIVisionExtractor(provider="openai", client=client).extract(
            ExtractionRequest(images=("x",), model_choice="llama-3.2-90b-vision-preview")
        ))

        assert data["success"] is False
        assert "groq" in data["error"]
        assert completions.calls == []

    def test_extract_when_groq_provider_then_serves_llama(self, run):
        client, completions = fake_client('{"questions": []}')

        data = run(OpenAIVisionExtractor(provider="groq", client=client).extract(
            ExtractionRequest(images=("x",), model_choice="meta-llama/llama-4-scout-17b-16e-instruct")
        ))

        assert data == {"success": True, "questions": [], "paragraphs": [], "instructions": []}

    def test_extract_when_no_images_then_unsuccessful(self, run):
        data = run(OpenAIVisionExtractor(api_key="k").extract(ExtractionRequest(images=(), model_choice="gpt-4o")))
        assert data["success"] is False

    def test_extract_when_reply_not_json_then_raises(self, run):
        client, _ = fake_client("I could not read the page.")

        with pytest.raises(ModelReplyError):
            run(OpenAIVisionExtractor(client=client).extract(
                ExtractionRequest(images=("x",), model_choice="gpt-4o")
            ))

    def test_extract_when_no_api_key_then_runtime_error(self, run, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)

        with pytest.raises(RuntimeError, match="OPENAI_API_KEY"):
            run(OpenAIVisionExtractor().extract(ExtractionRequest(images=("x",), model_choice="gpt-4o")))

    def test_init_when_unknown_provider_then_raises(self):
        with pytest.raises(ValueError):
            OpenAIVisionExtractor(provider="anthropic")


def status_error(code):
    request = httpx.Request("POST", "https://example.test/v1/chat/completions")
    response = httpx.Response(code, request=request)
    error_cls = RateLimitError if code == 429 else APIStatusError
    return error_cls(f"Error code: {code}", response=response, body=None)


class ScriptedFactory:
    """Client factory whose clients share one queue of replies and errors."""

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.built = []
        self.calls = []

    def __call__(self, api_key, base_url):
        self.built.append((api_key, base_url))
        return SimpleNamespace(chat=SimpleNamespace(completions=self._Completions(self, api_key)))

    class _Completions:
        def __init__(self, factory, api_key):
            self.factory = factory
            self.api_key = api_key

        async def create(self, **kwargs):
            self.factory.calls.append((self.api_key, kwargs["model"]))
            outcome = self.factory.outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            message = SimpleNamespace(content=outcome)
            return SimpleNamespace(choices=[SimpleNamespace(message=message)])


EMPTY = '{"questions": []}'


class TestProviderRouting:
    def test_extract_when_no_model_choice_then_gemini_endpoint(self, run, monkeypatch, recording_sleep):
        # Arrange
        monkeypatch.setenv("GEMINI_API_KEY", "g1")
        factory = ScriptedFactory([EMPTY])
        extractor = OpenAIVisionExtractor(client_factory=factory, sleep=recording_sleep)

        # Act
        data = run(extractor.extract(ExtractionRequest(images=("x",))))

        # Assert
        assert data["success"] is True
        assert factory.built == [("g1", GEMINI_BASE_URL)]
        assert factory.calls == [("g1", FALLBACK_MODEL)]

    def test_extract_when_models_differ_then_each_provider_endpoint(self, run, monkeypatch):
        monkeypatch.setenv("GEMINI_API_KEY", "g1")
        monkeypatch.setenv("GROQ_API_KEY", "q1")
        monkeypatch.setenv("OPENAI_API_KEY", "o1")
        factory = ScriptedFactory([EMPTY, EMPTY, EMPTY])
        extractor = OpenAIVisionExtractor(client_factory=factory)

        for choice in ("gemini-2.0-flash", "llama-3.2-90b-vision-preview", "gpt-4o"):
            run(extractor.extract(ExtractionRequest(images=("x",), model_choice=choice)))

        assert factory.built == [("g1", GEMINI_BASE_URL), ("q1", GROQ_BASE_URL), ("o1", None)]

    def test_extract_when_no_gemini_key_then_runtime_error(self, run, monkeypatch):
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)

        with pytest.raises(RuntimeError, match="GEMINI_API_KEY"):
            run(OpenAIVisionExtractor().extract(ExtractionRequest(images=("x",))))


class TestKeyRotation:
    def test_extract_when_rate_limited_then_next_key_used(self, run, recording_sleep):
        # Arrange
        factory = ScriptedFactory([status_error(429), EMPTY, EMPTY])
        extractor = OpenAIVisionExtractor(api_key="k1, k2", client_factory=factory, sleep=recording_sleep)
        request = ExtractionRequest(images=("x",), model_choice="gpt-4o")

        # Act
        first = run(extractor.extract(request))
        second = run(extractor.extract(request))

        # Assert
        assert first["success"] and second["success"]
        assert [key for key, _ in factory.calls] == ["k1", "k2", "k2"]
        assert recording_sleep.delays == [1.0]

    def test_extract_when_rotation_wraps_then_longer_delay(self, run, recording_sleep):
        factory = ScriptedFactory([status_error(503), status_error(429), EMPTY])
        extractor = OpenAIVisionExtractor(api_key="k1,k2", client_factory=factory, sleep=recording_sleep)

        data = run(extractor.extract(ExtractionRequest(images=("x",), model_choice="gpt-4o")))

        assert data["success"] is True
        assert [key for key, _ in factory.calls] == ["k1", "k2", "k1"]
        assert recording_sleep.delays == [1.0, 5.0]

    def test_extract_when_every_attempt_rate_limited_then_exhausted(self, run, recording_sleep):
        factory = ScriptedFactory([status_error(429), status_error(429)])
        extractor = OpenAIVisionExtractor(api_key="k1", client_factory=factory, sleep=recording_sleep)

        with pytest.raises(ProviderExhaustedError) as exc_info:
            run(extractor.extract(ExtractionRequest(images=("x",), model_choice="gpt-4o")))

        assert exc_info.value.attempts == 2
        assert isinstance(exc_info.value.__cause__, RateLimitError)
        assert len(factory.calls) == 2
        assert recording_sleep.delays == [5.0]

    def test_extract_when_status_not_retryable_then_raised_at_once(self, run, recording_sleep):
        factory = ScriptedFactory([status_error(401)])
        extractor = OpenAIVisionExtractor(api_key="k1,k2", client_factory=factory, sleep=recording_sleep)

        with pytest.raises(APIStatusError) as exc_info:
            run(extractor.extract(ExtractionRequest(images=("x",), model_choice="gpt-4o")))

        assert exc_info.value.status_code == 401
        assert len(factory.calls) == 1
        assert recording_sleep.delays == []

    def test_init_when_attempts_not_positive_then_raises(self):
        with pytest.raises(ValueError):
            OpenAIVisionExtractor(attempts_per_key=0)


def test_split_api_keys_when_blanks_then_dropped():
    assert split_api_keys(" k1, ,k2 ") == ["k1", "k2"]
    assert split_api_keys(None) == []
