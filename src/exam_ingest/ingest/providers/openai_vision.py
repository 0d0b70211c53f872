"""
Module: ingest.providers.openai_vision

Purpose:
    Extraction capability backed by OpenAI-compatible chat completions
    endpoints with image input. Gemini, OpenAI and Groq all expose such an
    endpoint, so one client library serves the three providers; the model
    choice of each request picks the provider. One call per batch: every
    page image of the batch goes into a single user message, and the reply
    is cleaned up into the extraction wire form.

    API keys come from GEMINI_API_KEY / OPENAI_API_KEY / GROQ_API_KEY and
    may hold several comma-separated keys. A 429 or 503 reply rotates to
    the next key and retries after a short delay.

Key Classes:
    - OpenAIVisionExtractor: ExtractionCapability implementation

Key Functions:
    - resolve_provider(): Model choice -> (provider, model name)
    - build_prompt(): Base digitization prompt plus reviewer instructions
    - parse_model_json(): Fence stripping, object slicing, escape repair
    - split_api_keys(): Comma-separated key list -> keys

Dependencies:
    - openai.AsyncOpenAI: chat completions client
    - openai.APIStatusError: HTTP status of failed calls

Used By:
    - ingest.session (injected as the extraction capability)
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from openai import APIStatusError, AsyncOpenAI

from ..capabilities import ExtractionRequest

logger = logging.getLogger(__name__)

# ── Provider config ────────────────────────────────────────────────────────────
GEMINI_MODELS = (
    "gemini-1.5-flash",
    "gemini-flash-latest",
    "gemini-1.5-pro",
    "gemini-pro-latest",
    "gemini-flash-lite-latest",
    "gemini-2.0-flash",
    "gemini-2.0-pro-exp-02-05",
)
FALLBACK_MODEL = "gemini-flash-latest"
GROQ_PREFIXES = ("llama-", "mixtral-", "meta-llama/")

PROVIDERS = ("gemini", "openai", "groq")
GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"
GROQ_BASE_URL = "https://api.groq.com/openai/v1"

_BASE_URLS: Dict[str, Optional[str]] = {
    "gemini": GEMINI_BASE_URL,
    "openai": None,
    "groq": GROQ_BASE_URL,
}
_API_KEY_ENV = {
    "gemini": "GEMINI_API_KEY",
    "openai": "OPENAI_API_KEY",
    "groq": "GROQ_API_KEY",
}

# Retry policy: rate limited / overloaded replies rotate keys
RETRY_STATUS_CODES = (429, 503)
ATTEMPTS_PER_KEY = 2
RETRY_DELAY = 1.0
CYCLE_DELAY = 5.0

ClientFactory = Callable[[str, Optional[str]], AsyncOpenAI]
SleepFn = Callable[[float], Awaitable[None]]

BASE_PROMPT = """\
You are an expert OCR and exam digitization assistant specialized in Physics, Chemistry, and Mathematics.
Analyze the attached images of question paper pages and extract every question.

STRICT MATHJAX/LATEX FORMATTING RULES:
1. Convert ALL math, physics, and chemistry expressions (including subscripts and superscripts) to valid MathJax syntax.
2. Inline math: use \\( ... \\) or raw LaTeX commands (e.g. \\alpha, H_2O, x^2).
3. Display math: use \\[ ... \\] for standalone equations.
4. Chemical formulas MUST use LaTeX subscripts/superscripts (H_2O, CO_2, ^{14}C, SO_4^{2-}).
5. Physics units and variables use LaTeX where appropriate (m/s^2, 10^{-6}).

EXTRACTION RULES:
- Classify each question:
  - "mcq": one correct option among (A, B, C, D).
  - "mcq_multiple": more than one correct option.
  - "fill_blank": single word or short phrase answers; also "One Word" questions.
  - "short_answer": answers of 1-2 sentences.
  - "long_answer": answers of a detailed paragraph or more.
- For mcq / mcq_multiple: remove question numbering, extract the options list,
  and set correctAnswer to the option letter(s), e.g. "B" or ["A", "C"].
- For other types: options is an empty array; correctAnswer is the exact answer
  (fill_blank) or the key points / model answer (short and long answers).
- explanation: detailed step-by-step logic.
- tags: 2-3 specific topics.
- marks: explicit marks if shown (e.g. "[2 marks]", "(4)"), otherwise 1.
- page: the 1-based position of the image the question appears on.

PASSAGES:
- If a passage is followed by questions about it, add it to "paragraphs" with a
  unique id (e.g. "p1") and set "paragraphId" on each related question.
- Do NOT create a question of type "paragraph".

INSTRUCTIONS:
- Extract exam-level instructions (e.g. "All questions are compulsory") into "instructions".

RETURN JSON ONLY using this schema:
{
  "instructions": ["Instruction 1"],
  "paragraphs": [{"id": "p1", "title": "Passage title", "content": "Full text of the passage"}],
  "questions": [
    {
      "type": "mcq" | "mcq_multiple" | "fill_blank" | "short_answer" | "long_answer",
      "text": "Question text",
      "options": ["Option A", "Option B", "Option C", "Option D"],
      "correctAnswer": "A",
      "explanation": "...",
      "tags": ["topic"],
      "marks": 2,
      "page": 1,
      "paragraphId": "p1"
    }
  ]
}
"""

# Valid JSON escapes are kept; any other backslash is doubled
_ESCAPES = re.compile(r'(\\["\\/bfnrt]|\\u[0-9a-fA-F]{4})|(\\.)', re.DOTALL)


class ModelReplyError(ValueError):
    """Model reply does not contain a JSON object."""
    pass


class ProviderExhaustedError(RuntimeError):
    """Every retry of a rate-limited provider failed."""

    def __init__(self, provider: str, attempts: int):
        super().__init__(f"{provider}: all keys exhausted after {attempts} attempts")
        self.provider = provider
        self.attempts = attempts


def split_api_keys(raw: Optional[str]) -> List[str]:
    """
    Split a comma-separated key list, dropping blanks.

    Example:
        >>> split_api_keys(" k1, ,k2 ")
        ['k1', 'k2']
    """
    return [key.strip() for key in (raw or "").split(",") if key.strip()]


def resolve_provider(model_choice: Optional[str]) -> Tuple[str, str]:
    """
    Map a model choice to (provider, model name).

    Example:
        >>> resolve_provider("gpt-4o")
        ('openai', 'gpt-4o')
        >>> resolve_provider("meta-llama/llama-4-scout-17b-16e-instruct")[0]
        'groq'
        >>> resolve_provider("something-else")
        ('gemini', 'gemini-flash-latest')
    """
    choice = (model_choice or "").strip()
    if choice in GEMINI_MODELS:
        return "gemini", choice
    if choice.startswith("gpt-"):
        return "openai", choice
    if choice.startswith(GROQ_PREFIXES):
        return "groq", choice
    return "gemini", FALLBACK_MODEL


def build_prompt(instructions: Optional[str] = None) -> str:
    if instructions and instructions.strip():
        return f"{BASE_PROMPT}\n\nADDITIONAL INSTRUCTIONS:\n{instructions.strip()}"
    return BASE_PROMPT


def _repair_escape(match: re.Match) -> str:
    if match.group(1):
        return match.group(1)
    return "\\\\" + match.group(2)[1:]


def parse_model_json(text: str) -> Dict[str, Any]:
    """
    Parse a model reply into a JSON object.

    Strips markdown code fences, keeps the text between the first "{" and
    the last "}", and doubles backslashes that do not form a valid JSON
    escape (LaTeX commands such as \\alpha or \\sqrt).

    Raises:
        ModelReplyError: If no JSON object can be recovered
    """
    cleaned = text.replace("```json", "").replace("```", "").strip()
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end == -1 or end < start:
        raise ModelReplyError("No JSON object found in response")
    cleaned = _ESCAPES.sub(_repair_escape, cleaned[start:end + 1])
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise ModelReplyError(f"Invalid JSON in response: {e}") from e
    if not isinstance(parsed, dict):
        raise ModelReplyError("Response JSON is not an object")
    return parsed




def _default_client_factory(api_key: str, base_url: Optional[str]) -> AsyncOpenAI:
    return AsyncOpenAI(api_key=api_key, base_url=base_url)


class OpenAIVisionExtractor:
    """
    ExtractionCapability using OpenAI-compatible chat completions.

    Serves every provider by default, routing each request by its model
    choice (Gemini for unknown or missing choices). Pass provider= to
    serve a single provider; requests whose model choice resolves to
    another provider are then answered with success=False.

    Args:
        provider: "gemini", "openai", "groq", or None for all three
        api_key: Comma-separated key(s) overriding the provider's
            environment variable
        base_url: Endpoint override
        client: Preconfigured AsyncOpenAI client used for every call (tests)
        client_factory: Builds a client from (api_key, base_url)
        max_tokens: Completion token limit
        attempts_per_key: Calls per key before giving up on 429/503
        retry_delay: Seconds to wait before retrying with the next key
        cycle_delay: Seconds to wait when rotation wraps to the first key
        sleep: Async sleep used between retries

    Example:
        >>> extractor = OpenAIVisionExtractor()
        >>> data = await extractor.extract(ExtractionRequest(images, model_choice="gpt-4o"))
        >>> data["success"]
        True
    """

    def __init__(
        self,
        *,
        provider: Optional[str] = None,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
        client_factory: ClientFactory = _default_client_factory,
        max_tokens: int = 4000,
        attempts_per_key: int = ATTEMPTS_PER_KEY,
        retry_delay: float = RETRY_DELAY,
        cycle_delay: float = CYCLE_DELAY,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        if provider is not None and provider not in PROVIDERS:
            raise ValueError(f"Unsupported provider: {provider!r}")
        if attempts_per_key < 1:
            raise ValueError(f"attempts_per_key must be positive: {attempts_per_key}")
        self.provider = provider
        self._api_key = api_key
        self._base_url = base_url
        self._client = client
        self._client_factory = client_factory
        self.max_tokens = max_tokens
        self.attempts_per_key = attempts_per_key
        self.retry_delay = retry_delay
        self.cycle_delay = cycle_delay
        self._sleep = sleep
        self._clients: Dict[Tuple[str, str], AsyncOpenAI] = {}
        # Key index that last succeeded, per provider
        self._key_index: Dict[str, int] = {}

    def _api_keys(self, provider: str) -> List[str]:
        if self._client is not None:
            return [""]
        env_name = _API_KEY_ENV[provider]
        keys = split_api_keys(self._api_key or os.getenv(env_name))
        if not keys:
            raise RuntimeError(f"{env_name} is not set.")
        return keys

    def _get_client(self, provider: str, api_key: str) -> AsyncOpenAI:
        if self._client is not None:
            return self._client
        cache_key = (provider, api_key)
        if cache_key not in self._clients:
            base_url = self._base_url or _BASE_URLS[provider]
            self._clients[cache_key] = self._client_factory(api_key, base_url)
        return self._clients[cache_key]

    async def _complete(self, provider: str, model: str, messages: List[Dict[str, Any]]) -> Any:
        """Call the provider, rotating keys on rate limit or overload."""
        keys = self._api_keys(provider)
        index = self._key_index.get(provider, 0) % len(keys)
        max_attempts = len(keys) * self.attempts_per_key

        for attempt in range(1, max_attempts + 1):
            client = self._get_client(provider, keys[index])
            try:
                response = await client.chat.completions.create(
                    model=model,
                    messages=messages,
                    max_tokens=self.max_tokens,
                )
            except APIStatusError as e:
                if e.status_code not in RETRY_STATUS_CODES:
                    raise
                if attempt == max_attempts:
                    raise ProviderExhaustedError(provider, attempt) from e
                index = (index + 1) % len(keys)
                logger.warning(
                    f"{provider} attempt {attempt} failed with status {e.status_code}, "
                    f"switching to key {index + 1} of {len(keys)}",
                    extra={"provider": provider, "attempt": attempt, "status": e.status_code},
                )
                await self._sleep(self.cycle_delay if index == 0 else self.retry_delay)
                continue
            self._key_index[provider] = index
            return response

        raise ProviderExhaustedError(provider, max_attempts)

    async def extract(self, request: ExtractionRequest) -> Dict[str, Any]:
        if not request.images:
            return {"success": False, "error": "No images provided."}

        provider, model = resolve_provider(request.model_choice)
        if self.provider is not None and provider != self.provider:
            return {
                "success": False,
                "error": f"Model {request.model_choice!r} needs the {provider} provider; "
                         f"this extractor serves {self.provider}",
            }

        content: List[Dict[str, Any]] = [{
            "type": "text",
            "text": (
                f"Analyze these {len(request.images)} page images and extract "
                "questions according to the system instructions."
            ),
        }]
        content.extend(
            {"type": "image_url", "image_url": {"url": image}} for image in request.images
        )

        logger.debug(
            f"Calling {provider} model {model} with {len(request.images)} images",
            extra={"provider": provider, "model": model},
        )
        response = await self._complete(provider, model, [
            {"role": "system", "content": build_prompt(request.instructions)},
            {"role": "user", "content": content},
        ])
        parsed = parse_model_json(response.choices[0].message.content or "")
        return {
            "success": True,
            "questions": parsed.get("questions") or [],
            "paragraphs": parsed.get("paragraphs") or parsed.get("passages") or [],
            "instructions": parsed.get("instructions") or [],
        }
