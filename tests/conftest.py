import asyncio
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import pytest

# Add src to sys.path so we can import exam_ingest
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if SRC_PATH.as_posix() not in sys.path:
    sys.path.insert(0, SRC_PATH.as_posix())

import fitz  # noqa: E402

from exam_ingest.core.models import RasterPage  # noqa: E402


# ─────────────────────────────────────────────────────────────────────────────
# Fakes for the external capabilities
# ─────────────────────────────────────────────────────────────────────────────

Reply = Union[Dict[str, Any], BaseException, Callable[[Any], Dict[str, Any]]]


class FakeExtraction:
    """
    Extraction capability replaying canned replies, one per call.

    A reply is a response dict, an exception to raise, or a callable
    receiving the request. When replies run out the default reply is used.
    """

    def __init__(self, replies: Optional[List[Reply]] = None, default: Optional[Reply] = None):
        self.replies = list(replies or [])
        self.default = default if default is not None else {"success": True, "questions": []}
        self.requests: List[Any] = []
        self.on_call: Optional[Callable[[Any], None]] = None

    async def extract(self, request):
        self.requests.append(request)
        if self.on_call is not None:
            self.on_call(request)
        await asyncio.sleep(0)
        reply = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, BaseException):
            raise reply
        if callable(reply):
            return reply(request)
        return reply


class FakeDuplicateCheck:
    def __init__(self, result: Reply):
        self.result = result
        self.calls: List[List[Dict[str, Any]]] = []

    async def check(self, questions):
        self.calls.append(questions)
        if isinstance(self.result, BaseException):
            raise self.result
        return self.result


class FakePersistence:
    def __init__(self, result: Optional[Reply] = None):
        self.result = result if result is not None else {
            "success": True,
            "examId": "exam-1",
            "sectionId": "section-1",
            "questionCount": None,
        }
        self.payloads: List[Dict[str, Any]] = []

    async def persist(self, payload):
        self.payloads.append(payload)
        if isinstance(self.result, BaseException):
            raise self.result
        result = dict(self.result)
        if "questionCount" in result and result["questionCount"] is None:
            result["questionCount"] = len(payload["questions"])
        return result


class RecordingSleep:
    """Awaitable sleep that records delays instead of waiting."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def make_pdf() -> Callable[[int], bytes]:
    """Factory building an n-page PDF with one line of text per page."""

    def _make(page_count: int = 3) -> bytes:
        doc = fitz.open()
        try:
            for i in range(page_count):
                page = doc.new_page(width=300, height=400)
                page.insert_text((36, 72), f"Question page {i + 1}", fontsize=14)
            return doc.tobytes()
        finally:
            doc.close()

    return _make


@pytest.fixture
def make_pages() -> Callable[[int], List[RasterPage]]:
    """Factory for small in-memory raster pages (no PDF involved)."""

    def _make(count: int) -> List[RasterPage]:
        return [RasterPage(index=i, image=f"page-{i}".encode(), width=10, height=10) for i in range(count)]

    return _make


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def fake_extraction_cls():
    return FakeExtraction


@pytest.fixture
def fake_duplicate_check_cls():
    return FakeDuplicateCheck


@pytest.fixture
def fake_persistence_cls():
    return FakePersistence


@pytest.fixture
def run():
    """Run a coroutine to completion on a fresh event loop."""
    return asyncio.run
