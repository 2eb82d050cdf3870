from __future__ import annotations

import os
from typing import Protocol

import numpy as np
from pdf2image import convert_from_bytes
from pdf2image.exceptions import PDFInfoNotInstalledError, PDFPageCountError, PDFPopplerTimeoutError, PDFSyntaxError
from PIL import Image

from studyquiz.errors import ExtractionError
from studyquiz.logging_config import get_logger
from studyquiz.utils.types import UploadedFile

logger = get_logger(__name__)

MAX_FILE_SIZE_MB = int(os.getenv("MAX_FILE_SIZE_MB", "150"))
PDF_POINTS_PER_INCH = 72


class PageRenderer(Protocol):
    def render_page(self, pdf_bytes: bytes, page_number: int) -> Image.Image: ...


def validate_upload(file: UploadedFile, max_file_size_mb: int | None = None) -> None:
    """Basic sanity checks before any extraction work."""
    max_file_size_mb = max_file_size_mb or MAX_FILE_SIZE_MB
    if not file.data:
        raise ExtractionError(file.name, "the file is empty")
    size_mb = len(file.data) / (1024 * 1024)
    if size_mb > max_file_size_mb:
        raise ExtractionError(file.name, f"{size_mb:.1f} MB exceeds the {max_file_size_mb} MB limit")


def is_blank(image: Image.Image) -> bool:
    """True when every pixel is opaque white or fully transparent black."""
    pixels = np.asarray(image.convert("RGBA"), dtype=np.uint8).reshape(-1, 4)
    if pixels.size == 0:
        return True
    white = np.all(pixels == 255, axis=1)
    transparent = np.all(pixels == 0, axis=1)
    return bool(np.all(white | transparent))


class PdfPageRenderer:
    """Render single PDF pages to PIL images via poppler, upscaled for OCR legibility."""

    def __init__(self, scale: float = 2.0) -> None:
        self.scale = scale

    @property
    def dpi(self) -> int:
        return int(round(PDF_POINTS_PER_INCH * self.scale))

    def render_page(self, pdf_bytes: bytes, page_number: int) -> Image.Image:
        try:
            images = convert_from_bytes(pdf_bytes, dpi=self.dpi, first_page=page_number, last_page=page_number)
        except (PDFInfoNotInstalledError, PDFPageCountError, PDFSyntaxError, PDFPopplerTimeoutError, OSError, ValueError) as exc:
            raise RuntimeError(f"Could not render page {page_number}: {exc}") from exc
        if not images:
            raise RuntimeError(f"Could not render page {page_number}: no image produced")
        logger.debug("Rendered page %s at %s dpi", page_number, self.dpi)
        return images[0]
