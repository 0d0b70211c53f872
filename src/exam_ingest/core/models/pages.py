"""
Module: pages

Purpose:
    RasterPage - one page of an uploaded PDF rendered to an encoded image.

Dependencies:
    - dataclasses (std)
    - base64 (std)

Used By:
    - ingest.rasterizer: produces RasterPage objects
    - ingest.orchestrator: sends page images to the extraction capability
"""

from __future__ import annotations

import base64
from dataclasses import dataclass


@dataclass(frozen=True)
class RasterPage:
    """
    One rasterized page (immutable).

    Attributes:
        index: 0-based page index, stable for the document's lifetime
        image: Encoded image payload (JPEG or PNG bytes)
        mime_type: MIME type of the payload, e.g. "image/jpeg"
        width: Pixel width of the rendered page
        height: Pixel height of the rendered page

    Example:
        >>> page = RasterPage(0, b"...", "image/jpeg", 1240, 1754)
        >>> page.page_number
        1
    """
    index: int
    image: bytes
    mime_type: str = "image/jpeg"
    width: int = 0
    height: int = 0

    def __post_init__(self) -> None:
        if self.index < 0:
            raise ValueError(f"index must be non-negative: {self.index}")

    @property
    def page_number(self) -> int:
        """1-based page number as shown to reviewers."""
        return self.index + 1

    def data_url(self) -> str:
        """Encode the payload as a data URL for the extraction capability."""
        encoded = base64.b64encode(self.image).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"

    def __repr__(self) -> str:
        return (
            f"RasterPage(index={self.index}, {self.mime_type}, "
            f"{self.width}x{self.height}, {len(self.image)} bytes)"
        )
