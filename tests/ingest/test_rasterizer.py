"""
Tests for ingest.rasterizer.

Uses small PDFs generated with PyMuPDF.
"""

import io

import pytest
from PIL import Image

from exam_ingest.core.errors import DocumentFormatError, RenderError
from exam_ingest.ingest import rasterizer
from exam_ingest.ingest.rasterizer import arasterize_pdf, count_pages, rasterize_pdf


class TestRasterizePdf:
    """Tests for rasterize_pdf()."""

    def test_rasterize_when_three_pages_then_yields_in_order(self, make_pdf):
        pages = list(rasterize_pdf(make_pdf(3), dpi=72))

        assert [p.index for p in pages] == [0, 1, 2]
        assert all(p.mime_type == "image/jpeg" for p in pages)

    def test_rasterize_when_jpeg_then_payload_decodes_at_dpi_size(self, make_pdf):
        page = next(rasterize_pdf(make_pdf(1), dpi=72))

        image = Image.open(io.BytesIO(page.image))

        assert image.format == "JPEG"
        assert image.size == (300, 400)
        assert (page.width, page.height) == (300, 400)

    def test_rasterize_when_png_requested_then_png_payload(self, make_pdf):
        page = next(rasterize_pdf(make_pdf(1), dpi=72, image_format="png"))

        assert page.mime_type == "image/png"
        assert Image.open(io.BytesIO(page.image)).format == "PNG"

    def test_rasterize_when_higher_dpi_then_larger_image(self, make_pdf):
        page = next(rasterize_pdf(make_pdf(1), dpi=144))
        assert (page.width, page.height) == (600, 800)

    def test_rasterize_when_empty_bytes_then_raises_format_error(self):
        with pytest.raises(DocumentFormatError, match="empty"):
            list(rasterize_pdf(b""))

    def test_rasterize_when_not_pdf_then_raises_format_error(self):
        with pytest.raises(DocumentFormatError, match="not a PDF"):
            list(rasterize_pdf(b"hello world, definitely not a pdf"))

    def test_rasterize_when_truncated_pdf_then_raises_format_error(self):
        with pytest.raises(DocumentFormatError):
            list(rasterize_pdf(b"%PDF-1.7\n garbage"))

    def test_rasterize_when_unknown_format_then_raises_value_error(self, make_pdf):
        with pytest.raises(ValueError, match="Unsupported image format"):
            list(rasterize_pdf(make_pdf(1), image_format="tiff"))

    def test_rasterize_when_page_fails_then_prefix_kept_and_render_error(self, make_pdf, monkeypatch):
        original = rasterizer.render_page
        calls = []

        def failing_render(page, dpi=72):
            calls.append(page.number)
            if page.number == 1:
                raise RuntimeError("corrupt content stream")
            return original(page, dpi=dpi)

        monkeypatch.setattr(rasterizer, "render_page", failing_render)
        produced = []

        with pytest.raises(RenderError) as exc_info:
            for page in rasterize_pdf(make_pdf(3), dpi=72):
                produced.append(page)

        assert [p.index for p in produced] == [0]
        assert exc_info.value.page_index == 1
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    def test_count_pages_when_valid_then_returns_count(self, make_pdf):
        assert count_pages(make_pdf(4)) == 4


class TestArasterizePdf:
    def test_arasterize_when_iterated_then_same_pages_as_sync(self, make_pdf, run):
        data = make_pdf(2)

        async def collect():
            return [p async for p in arasterize_pdf(data, dpi=72)]

        pages = run(collect())

        assert [p.index for p in pages] == [0, 1]
