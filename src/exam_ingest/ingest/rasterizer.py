"""
Module: ingest.rasterizer

Purpose:
    Convert an uploaded PDF byte stream into one encoded raster image per
    page. Pages are produced lazily and in order; the sequence cannot be
    restarted (rasterizing again means re-reading the source bytes).

Key Functions:
    - rasterize_pdf(): Lazy generator of RasterPage objects
    - arasterize_pdf(): Async variant yielding to the event loop per page
    - render_page(): Render a single PyMuPDF page to a PIL image

Dependencies:
    - fitz (PyMuPDF): PDF parsing and rendering
    - PIL.Image: Image encoding

Used By:
    - ingest.session: load_document()

Error Contract:
    DocumentFormatError is raised before any page is produced when the
    bytes are not a usable PDF. RenderError is raised at the failing page;
    pages already yielded stay valid and callers keep them as a prefix.
"""

from __future__ import annotations

import asyncio
import io
import logging
from typing import AsyncIterator, Iterator

import fitz
from PIL import Image

from exam_ingest.core.errors import DocumentFormatError, RenderError
from exam_ingest.core.models import RasterPage

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_DPI = 150
DEFAULT_JPEG_QUALITY = 80

_MIME_TYPES = {"jpeg": "image/jpeg", "png": "image/png"}


def _open_document(data: bytes) -> fitz.Document:
    """Open PDF bytes, mapping every failure to DocumentFormatError."""
    if not data:
        raise DocumentFormatError("Uploaded file is empty")
    if not data.lstrip()[:5].startswith(b"%PDF"):
        raise DocumentFormatError("Uploaded file is not a PDF (missing %PDF header)")

    try:
        doc = fitz.open(stream=data, filetype="pdf")
    except (RuntimeError, ValueError) as e:
        raise DocumentFormatError(f"Could not open PDF: {e}") from e

    if doc.needs_pass:
        doc.close()
        raise DocumentFormatError("PDF is password protected")
    if doc.page_count == 0:
        doc.close()
        raise DocumentFormatError("PDF has no pages")
    return doc


def count_pages(data: bytes) -> int:
    """
    Return the number of pages in a PDF without rendering anything.

    Raises:
        DocumentFormatError: If the bytes are not a usable PDF
    """
    doc = _open_document(data)
    try:
        return doc.page_count
    finally:
        doc.close()


def render_page(page: fitz.Page, dpi: int = DEFAULT_DPI) -> Image.Image:
    """
    Render a full PDF page to an RGB image.

    Args:
        page: PyMuPDF page object.
        dpi: Resolution for rendering. Defaults to 150.

    Returns:
        RGB PIL image of the whole page.

    Example:
        >>> image = render_page(doc[0], dpi=72)
        >>> image.size
        (595, 842)
    """
    matrix = fitz.Matrix(dpi / 72.0, dpi / 72.0)
    pix = page.get_pixmap(matrix=matrix, alpha=False, colorspace=fitz.csRGB)
    return Image.frombytes("RGB", (pix.width, pix.height), pix.samples)


def _encode(image: Image.Image, image_format: str, jpeg_quality: int) -> bytes:
    buffer = io.BytesIO()
    if image_format == "jpeg":
        image.save(buffer, format="JPEG", quality=jpeg_quality)
    else:
        image.save(buffer, format="PNG", compress_level=6)
    return buffer.getvalue()


def rasterize_pdf(
    data: bytes,
    *,
    dpi: int = DEFAULT_DPI,
    image_format: str = "jpeg",
    jpeg_quality: int = DEFAULT_JPEG_QUALITY,
) -> Iterator[RasterPage]:
    """
    Lazily rasterize every page of a PDF.

    Args:
        data: Raw PDF bytes.
        dpi: Render resolution.
        image_format: "jpeg" or "png".
        jpeg_quality: JPEG quality when image_format is "jpeg".

    Yields:
        RasterPage for page 0, 1, 2, ... in document order.

    Raises:
        DocumentFormatError: On first iteration if the bytes are not a PDF.
        RenderError: At the first page that cannot be rendered.

    Example:
        >>> pages = list(rasterize_pdf(pdf_bytes, dpi=100))
        >>> [p.index for p in pages]
        [0, 1, 2]
    """
    if image_format not in _MIME_TYPES:
        raise ValueError(f"Unsupported image format: {image_format!r}")

    doc = _open_document(data)
    try:
        total = doc.page_count
        logger.info(f"Rasterizing {total} pages at {dpi} dpi")
        for index in range(total):
            try:
                image = render_page(doc[index], dpi=dpi)
                payload = _encode(image, image_format, jpeg_quality)
            except (RuntimeError, ValueError, OSError) as e:
                logger.error(
                    f"Failed to render page {index + 1} of {total}: {e}",
                    extra={"page_index": index, "page_count": total},
                )
                raise RenderError(index, str(e)) from e

            logger.debug(f"Rendered page {index + 1}/{total} ({len(payload)} bytes)")
            yield RasterPage(
                index=index,
                image=payload,
                mime_type=_MIME_TYPES[image_format],
                width=image.width,
                height=image.height,
            )
    finally:
        doc.close()


async def arasterize_pdf(
    data: bytes,
    *,
    dpi: int = DEFAULT_DPI,
    image_format: str = "jpeg",
    jpeg_quality: int = DEFAULT_JPEG_QUALITY,
) -> AsyncIterator[RasterPage]:
    """
    Async variant of rasterize_pdf().

    Yields control to the event loop after each page so a long document
    does not starve other tasks on the same loop.
    """
    pages = rasterize_pdf(
        data, dpi=dpi, image_format=image_format, jpeg_quality=jpeg_quality
    )
    try:
        for page in pages:
            yield page
            await asyncio.sleep(0)
    finally:
        pages.close()
