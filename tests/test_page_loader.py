from __future__ import annotations

import io

import fitz
import pytest
from pypdf import PdfWriter

from src.errors import DocumentLoadError
from src.models.takeoff import PageRange
from src.services.page_loader import PageLoader, PdfPageExtractor, render_page_to_png
from tests.stubs.takeoff_fakes import FakeDocumentStore


def _pdf(pages: int) -> bytes:
    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=200, height=200)
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def test_page_count_reads_structure():
    assert PdfPageExtractor().page_count(_pdf(3)) == 3


def test_page_count_rejects_garbage():
    with pytest.raises(DocumentLoadError):
        PdfPageExtractor().page_count(b"this is not a pdf")


def test_extract_pages_renders_images_and_marks_missing_pages():
    pages = PdfPageExtractor(dpi=72).extract_pages(_pdf(3), 2, 4)

    assert [page.page for page in pages] == [2, 3, 4]
    assert pages[0].image_url.startswith("data:image/png;base64,")
    assert pages[1].image_url is not None
    assert pages[2].image_url is None
    assert pages[2].text is None


def test_render_steps_down_to_minimum_dpi_when_over_budget():
    doc = fitz.open(stream=_pdf(1), filetype="pdf")
    try:
        png = render_page_to_png(doc, 0, dpi=144, max_bytes=1)
    finally:
        doc.close()
    assert png.startswith(b"\x89PNG")


@pytest.mark.asyncio
async def test_discover_page_count_from_document():
    loader = PageLoader(FakeDocumentStore({"plan.pdf": _pdf(4)}))

    count = await loader.discover_page_count("plan.pdf")

    assert count.total_pages == 4
    assert count.estimated is False


@pytest.mark.asyncio
async def test_discover_page_count_trusts_explicit_end():
    documents = FakeDocumentStore({})
    loader = PageLoader(documents)

    count = await loader.discover_page_count("plan.pdf", PageRange(start=2, end=9))

    assert count.total_pages == 9
    assert documents.calls == []


@pytest.mark.asyncio
async def test_discover_page_count_falls_back_when_unreadable():
    loader = PageLoader(
        FakeDocumentStore({"broken.pdf": b"garbage", "empty.pdf": _pdf(0)}),
        fallback_page_count=100,
    )

    for ref in ("missing.pdf", "broken.pdf", "empty.pdf"):
        count = await loader.discover_page_count(ref)
        assert count.total_pages == 100
        assert count.estimated is True


@pytest.mark.asyncio
async def test_load_pages_for_batch_downloads_every_time():
    documents = FakeDocumentStore({"plan.pdf": _pdf(5)})
    loader = PageLoader(documents, extractor=PdfPageExtractor(dpi=72))

    first = await loader.load_pages_for_batch("plan.pdf", 1, 2)
    second = await loader.load_pages_for_batch("plan.pdf", 3, 5)

    assert [p.page for p in first + second] == [1, 2, 3, 4, 5]
    assert documents.calls == ["plan.pdf", "plan.pdf"]


@pytest.mark.asyncio
async def test_load_pages_wraps_download_failures():
    class _ExplodingStore:
        async def download(self, ref: str) -> bytes:
            raise RuntimeError("socket closed")

    loader = PageLoader(_ExplodingStore())

    with pytest.raises(DocumentLoadError, match="pages 1-5"):
        await loader.load_pages_for_batch("plan.pdf", 1, 5)

    with pytest.raises(DocumentLoadError, match="Document not found"):
        await PageLoader(FakeDocumentStore({})).load_pages_for_batch("plan.pdf", 1, 5)
