"""
Page Extraction Service - Renders page images and text from PDF bytes.
"""
import asyncio
from typing import Protocol

import fitz  # PyMuPDF
from PIL import Image

from config.logging_config import get_logger
from core.exceptions import PageExtractionError
from core.models import PageContent, PageExtractionResult
from utils.image_utils import pil_to_base64, render_pdf_page

logger = get_logger(__name__)


class PageExtractor(Protocol):
    """Anything that turns a raw file buffer into pages."""

    async def extract(self, content: bytes, file_name: str = "") -> PageExtractionResult:
        ...


class PyMuPDFPageExtractor:
    """PageExtractor backed by PyMuPDF."""

    def __init__(self, target_dpi: int = 150, max_image_size: int = 2048, render_images: bool = True):
        """
        Initialize extractor.

        Args:
            target_dpi: DPI used to rasterize pages
            max_image_size: Longest edge of rendered page images
            render_images: Whether to rasterize pages at all
        """
        self.target_dpi = target_dpi
        self.max_image_size = max_image_size
        self.render_images = render_images

    async def extract(self, content: bytes, file_name: str = "") -> PageExtractionResult:
        """Extract pages in a worker thread; PyMuPDF calls are blocking."""
        return await asyncio.to_thread(self.extract_sync, content, file_name)

    def extract_sync(self, content: bytes, file_name: str = "") -> PageExtractionResult:
        try:
            doc = fitz.open(stream=content, filetype="pdf")
        except (RuntimeError, ValueError) as e:
            raise PageExtractionError(
                f"Could not open {file_name or 'PDF'}: {e}", code='FILE_CORRUPTED'
            ) from e

        try:
            if doc.page_count == 0:
                raise PageExtractionError(
                    f"{file_name or 'PDF'} contains no pages", code='FILE_CORRUPTED'
                )

            pages = []
            for index in range(doc.page_count):
                page = doc.load_page(index)
                text = page.get_text("text") or ""
                entry = PageContent(
                    page_number=index + 1,
                    text=text.strip(),
                    has_images=bool(page.get_images(full=False)),
                    confidence=1.0 if text.strip() else 0.5
                )
                if self.render_images:
                    image = render_pdf_page(page, self.target_dpi)
                    if max(image.size) > self.max_image_size:
                        image.thumbnail(
                            (self.max_image_size, self.max_image_size),
                            Image.Resampling.LANCZOS
                        )
                    entry.image_base64 = pil_to_base64(image)
                    entry.width, entry.height = image.size
                pages.append(entry)

            metadata = dict(doc.metadata or {})
            metadata.update({'file_name': file_name, 'target_dpi': self.target_dpi})
        finally:
            doc.close()

        logger.debug("Extracted %d pages from %s", len(pages), file_name)
        return PageExtractionResult(
            text="\n\n".join(p.text for p in pages if p.text),
            page_count=len(pages),
            pages=pages,
            metadata=metadata
        )
