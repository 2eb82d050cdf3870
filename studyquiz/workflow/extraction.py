from __future__ import annotations

import io
import re
from typing import List, Union

import docx
from pypdf import PdfReader

from studyquiz.errors import ExtractionError
from studyquiz.logging_config import get_logger
from studyquiz.utils.types import ExtractionResult, PageClassification, PdfExtraction, UploadedFile

logger = get_logger(__name__)

# Pages with less embedded text than this are probably scans.
MIN_PAGE_CHARS = 100
MIN_PAGE_NON_WHITESPACE = 50

TEXT_MIME_TYPES = {"text/plain", "text/markdown", "text/x-markdown"}
TEXT_SUFFIXES = {".txt", ".md", ".markdown"}
DOCX_MIME_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
PDF_MIME_TYPE = "application/pdf"

_WHITESPACE = re.compile(r"\s+")


def is_text(file: UploadedFile) -> bool:
    return file.mime_type in TEXT_MIME_TYPES or file.suffix in TEXT_SUFFIXES


def is_docx(file: UploadedFile) -> bool:
    return file.mime_type == DOCX_MIME_TYPE or file.suffix == ".docx"


def is_pdf(file: UploadedFile) -> bool:
    return file.mime_type == PDF_MIME_TYPE or file.suffix == ".pdf"


def is_image(file: UploadedFile) -> bool:
    return file.mime_type.startswith("image/")


def is_likely_image(text: str | None) -> bool:
    """True when a page's text layer is too thin to trust over OCR."""
    raw = text or ""
    return len(raw) < MIN_PAGE_CHARS or len(_WHITESPACE.sub("", raw)) < MIN_PAGE_NON_WHITESPACE


def classify_page(page_number: int, text: str | None) -> PageClassification:
    normalized = _WHITESPACE.sub(" ", text or "").strip()
    if is_likely_image(normalized):
        return PageClassification(page_number=page_number, text=None, needs_ocr=True)
    return PageClassification(page_number=page_number, text=normalized, needs_ocr=False)


class LocalTextExtractor:
    """Turn text, Markdown, Word and PDF uploads into raw text without network calls."""

    def extract(self, file: UploadedFile) -> Union[ExtractionResult, PdfExtraction]:
        if is_text(file):
            return self.extract_text(file)
        if is_docx(file):
            return self.extract_docx(file)
        if is_pdf(file):
            return self.extract_pdf(file)
        raise ExtractionError(file.name, "Unsupported file type. Please use .txt, .md, .docx, .pdf, or image files.")

    @staticmethod
    def extract_text(file: UploadedFile) -> ExtractionResult:
        try:
            content = file.text()
        except UnicodeDecodeError as exc:
            raise ExtractionError(file.name, f"unsupported text encoding ({exc.reason})") from exc
        return ExtractionResult(content=content, source="local")

    @staticmethod
    def extract_docx(file: UploadedFile) -> ExtractionResult:
        # python-docx surfaces zip, lxml and part-lookup failures as unrelated types.
        try:
            document = docx.Document(io.BytesIO(file.data))
            lines: List[str] = [para.text for para in document.paragraphs if para.text.strip()]
            for table in document.tables:
                for row in table.rows:
                    cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
                    if cells:
                        lines.append(" | ".join(cells))
        except Exception as exc:
            logger.warning("DOCX read failed | file=%s error=%s", file.name, exc)
            raise ExtractionError(file.name, "the Word document is corrupt or not a .docx file") from exc
        logger.info("DOCX read | file=%s paragraphs=%s tables=%s", file.name, len(document.paragraphs), len(document.tables))
        return ExtractionResult(content="\n".join(lines), source="local")

    @staticmethod
    def extract_pdf(file: UploadedFile) -> PdfExtraction:
        # pypdf raises plain Python errors on malformed structures, not only PyPdfError.
        try:
            reader = PdfReader(io.BytesIO(file.data))
            if reader.is_encrypted:
                reader.decrypt("")
            pages = [classify_page(index, page.extract_text() or "") for index, page in enumerate(reader.pages, 1)]
        except Exception as exc:
            logger.warning("PDF read failed | file=%s error=%s", file.name, exc)
            raise ExtractionError(file.name, f"the PDF could not be read ({exc})") from exc
        if not pages:
            raise ExtractionError(file.name, "the PDF has no pages")

        extraction = PdfExtraction(file_name=file.name, pages=pages)
        logger.info("PDF classified | file=%s pages=%s needs_ocr=%s", file.name, extraction.page_count, len(extraction.pages_needing_ocr))
        return extraction
