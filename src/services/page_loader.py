"""Page loading for takeoff batches.

Each batch re-downloads and re-parses the whole plan PDF; nothing is cached
between calls so any worker can pick up any batch. Page counting and text use
pypdf, page images are rendered with PyMuPDF and passed to providers as PNG
data URLs.
"""

from __future__ import annotations

import asyncio
import base64
import io
import logging
from dataclasses import dataclass
from typing import Protocol

import fitz  # PyMuPDF
from pypdf import PdfReader
from pypdf.errors import PyPdfError

from src.errors import DocumentLoadError
from src.models.takeoff import PageRange
from src.services.interfaces import DocumentStore

LOG = logging.getLogger("takeoff.pages")

DEFAULT_RENDER_DPI = 144
MIN_RENDER_DPI = 72
DEFAULT_MAX_IMAGE_BYTES = 4 * 1024 * 1024


@dataclass(slots=True)
class PageContent:
    page: int
    image_url: str | None = None
    text: str | None = None


@dataclass(slots=True)
class PageCount:
    total_pages: int
    estimated: bool = False


class PdfExtractor(Protocol):
    def page_count(self, data: bytes) -> int: ...

    def extract_pages(self, data: bytes, page_start: int, page_end: int) -> list[PageContent]: ...


def png_data_url(png_bytes: bytes) -> str:
    return "data:image/png;base64," + base64.b64encode(png_bytes).decode("ascii")


def render_page_to_png(
    doc: fitz.Document,
    page_idx: int,
    dpi: int = DEFAULT_RENDER_DPI,
    max_bytes: int = DEFAULT_MAX_IMAGE_BYTES,
) -> bytes:
    """Render a page to PNG, stepping the DPI down while the image is over budget."""
    page = doc.load_page(page_idx)
    current_dpi = dpi
    png_bytes = b""
    while current_dpi >= MIN_RENDER_DPI:
        zoom = current_dpi / 72.0
        pix = page.get_pixmap(matrix=fitz.Matrix(zoom, zoom), alpha=False)
        png_bytes = pix.tobytes("png")
        if len(png_bytes) <= max_bytes:
            return png_bytes
        current_dpi = int(current_dpi * 0.75)
    return png_bytes


class PdfPageExtractor(PdfExtractor):
    """pypdf for structure and text, PyMuPDF for rasterising."""

    def __init__(
        self,
        *,
        dpi: int = DEFAULT_RENDER_DPI,
        max_image_bytes: int = DEFAULT_MAX_IMAGE_BYTES,
    ) -> None:
        self.dpi = dpi
        self.max_image_bytes = max_image_bytes

    def page_count(self, data: bytes) -> int:
        try:
            return len(PdfReader(io.BytesIO(data)).pages)
        except (PyPdfError, ValueError, OSError) as exc:
            raise DocumentLoadError(f"Unable to read PDF structure: {exc}") from exc

    def extract_pages(self, data: bytes, page_start: int, page_end: int) -> list[PageContent]:
        reader: PdfReader | None
        try:
            reader = PdfReader(io.BytesIO(data))
        except (PyPdfError, ValueError, OSError) as exc:
            LOG.warning("pdf_text_reader_unavailable", extra={"error": str(exc)})
            reader = None
        try:
            doc: fitz.Document | None = fitz.open(stream=data, filetype="pdf")
        except (RuntimeError, ValueError) as exc:
            LOG.warning("pdf_renderer_unavailable", extra={"error": str(exc)})
            doc = None
        if reader is None and doc is None:
            raise DocumentLoadError("Document could not be opened as a PDF")

        try:
            return [
                PageContent(
                    page=page_number,
                    image_url=self._render(doc, page_number),
                    text=self._text(reader, page_number),
                )
                for page_number in range(page_start, page_end + 1)
            ]
        finally:
            if doc is not None:
                doc.close()

    def _render(self, doc: fitz.Document | None, page_number: int) -> str | None:
        if doc is None or page_number > doc.page_count:
            return None
        try:
            png = render_page_to_png(doc, page_number - 1, self.dpi, self.max_image_bytes)
        except (RuntimeError, ValueError) as exc:
            LOG.warning("pdf_page_render_failed", extra={"page": page_number, "error": str(exc)})
            return None
        return png_data_url(png)

    def _text(self, reader: PdfReader | None, page_number: int) -> str | None:
        if reader is None or page_number > len(reader.pages):
            return None
        try:
            text = reader.pages[page_number - 1].extract_text() or ""
        except (PyPdfError, ValueError, KeyError, TypeError) as exc:
            LOG.warning("pdf_page_text_failed", extra={"page": page_number, "error": str(exc)})
            return None
        text = text.strip()
        return text or None


class PageLoader:
    """Resolves plan documents and slices them into per-page content."""

    def __init__(
        self,
        document_store: DocumentStore,
        *,
        extractor: PdfExtractor | None = None,
        fallback_page_count: int = 100,
    ) -> None:
        self.document_store = document_store
        self.extractor = extractor or PdfPageExtractor()
        self.fallback_page_count = fallback_page_count

    async def discover_page_count(self, pdf_ref: str, pages: PageRange | None = None) -> PageCount:
        if pages is not None and pages.end is not None:
            return PageCount(total_pages=pages.end)
        try:
            data = await self.document_store.download(pdf_ref)
            total = await asyncio.to_thread(self.extractor.page_count, data)
        except Exception as exc:  # noqa: BLE001
            LOG.warning(
                "page_count_fallback",
                extra={
                    "pdf_ref": pdf_ref,
                    "fallback_pages": self.fallback_page_count,
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                },
            )
            return PageCount(total_pages=self.fallback_page_count, estimated=True)
        if total < 1:
            LOG.warning("page_count_empty_document", extra={"pdf_ref": pdf_ref})
            return PageCount(total_pages=self.fallback_page_count, estimated=True)
        return PageCount(total_pages=total)

    async def load_pages_for_batch(
        self, pdf_ref: str, page_start: int, page_end: int
    ) -> list[PageContent]:
        try:
            data = await self.document_store.download(pdf_ref)
        except DocumentLoadError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise DocumentLoadError(f"Failed to load pages {page_start}-{page_end}: {exc}") from exc
        pages = await asyncio.to_thread(self.extractor.extract_pages, data, page_start, page_end)
        LOG.debug(
            "batch_pages_loaded",
            extra={
                "pdf_ref": pdf_ref,
                "page_start": page_start,
                "page_end": page_end,
                "pages_with_images": sum(1 for p in pages if p.image_url),
            },
        )
        return pages


__all__ = [
    "PageContent",
    "PageCount",
    "PdfExtractor",
    "PdfPageExtractor",
    "PageLoader",
    "render_page_to_png",
    "png_data_url",
]
