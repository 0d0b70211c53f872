"""
Module: ingest.capabilities

Purpose:
    Contracts for the external collaborators the pipeline consumes but
    does not implement: the document-understanding (extraction) service,
    the duplicate-check service, the persistence service, and the
    question-tag directory.

Key Classes:
    - ExtractionRequest / ExtractionResponse: extraction wire contract
    - ExtractionCapability: Protocol, called only by the orchestrator
    - DuplicateCheckCapability: Protocol, called by the duplicate detector
    - PersistenceCapability: Protocol, called by the commit planner
    - TagDirectory / Tag: read-only tag lookup used while editing

Dependencies:
    - typing.Protocol (std)
    - core.schemas: response validation

Used By:
    - ingest.orchestrator, ingest.duplicates, ingest.commit, ingest.session
    - ingest.store: local implementations
    - ingest.providers: model-backed extraction
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from exam_ingest.core.schemas import validate_extraction_response


@dataclass(frozen=True)
class ExtractionRequest:
    """
    One batch submitted to the extraction capability.

    Attributes:
        images: Encoded page images (data URLs), in page order
        instructions: Optional free-text instruction appended to the prompt
        model_choice: Opaque model selector
        page_numbers: 1-based document page numbers matching images
    """
    images: tuple[str, ...]
    instructions: Optional[str] = None
    model_choice: str = ""
    page_numbers: tuple[int, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "images": list(self.images),
            "instructions": self.instructions,
            "modelChoice": self.model_choice,
        }


@dataclass(frozen=True)
class ExtractionResponse:
    """
    Validated extraction output for one batch.

    Attributes:
        success: Capability-reported success flag
        questions: Raw question objects (untrusted ids)
        passages: Raw passage objects (untrusted ids)
        instructions: Raw instruction strings
        error: Capability-reported error message
    """
    success: bool
    questions: List[Dict[str, Any]] = field(default_factory=list)
    passages: List[Dict[str, Any]] = field(default_factory=list)
    instructions: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> ExtractionResponse:
        """
        Build a response from the wire form.

        Passages are accepted under either "passages" or "paragraphs".

        Raises:
            ResponseFormatError: If data fails schema validation
        """
        validate_extraction_response(data)
        passages = data.get("passages")
        if passages is None:
            passages = data.get("paragraphs") or []
        return cls(
            success=bool(data["success"]),
            questions=list(data.get("questions") or []),
            passages=list(passages),
            instructions=list(data.get("instructions") or []),
            error=data.get("error"),
        )


@dataclass(frozen=True)
class Tag:
    """Question tag from the tag directory."""
    id: str
    name: str


@runtime_checkable
class ExtractionCapability(Protocol):
    """Document-understanding service: page images in, structured JSON out."""

    async def extract(self, request: ExtractionRequest) -> Dict[str, Any]:
        """
        Return the wire-form response
        ``{success, questions, passages, instructions, error}``.

        May raise; the orchestrator treats any exception as a batch failure.
        """
        ...


@runtime_checkable
class DuplicateCheckCapability(Protocol):
    """Cross-checks candidate questions against the persisted question bank."""

    async def check(self, questions: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Return ``{success, duplicateIndices}`` for ``[{text, type}, ...]``."""
        ...


@runtime_checkable
class PersistenceCapability(Protocol):
    """Writes a commit payload to the exam store."""

    async def persist(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Return ``{success, examId, sectionId, questionCount, errors}``.

        A validation failure is reported as ``success=False`` with an
        ``error`` message, or by raising.
        """
        ...


@runtime_checkable
class TagDirectory(Protocol):
    """Read-only lookup of available question tags."""

    async def list_tags(self) -> List[Tag]:
        ...
