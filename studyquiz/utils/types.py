from __future__ import annotations

import mimetypes
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import List, Literal, Optional

ExtractionSource = Literal["local", "ai"]

LOW_CONFIDENCE_WARNING = 50.0

mimetypes.add_type("text/markdown", ".md")
mimetypes.add_type("text/markdown", ".markdown")


@dataclass(frozen=True)
class UploadedFile:
    """A user-selected file; immutable once read."""

    name: str
    mime_type: str
    data: bytes

    @classmethod
    def from_bytes(cls, name: str, data: bytes, mime_type: str | None = None) -> "UploadedFile":
        if not mime_type or mime_type == "application/octet-stream":
            mime_type, _ = mimetypes.guess_type(name)
        return cls(name=name, mime_type=mime_type or "application/octet-stream", data=data)

    @classmethod
    def from_path(cls, path: Path | str, mime_type: str | None = None) -> "UploadedFile":
        source = Path(path)
        return cls.from_bytes(source.name, source.read_bytes(), mime_type)

    @property
    def suffix(self) -> str:
        return Path(self.name).suffix.lower()

    def text(self) -> str:
        return self.data.decode("utf-8-sig")


@dataclass
class OCRPageResult:
    """Raw local OCR output for a single image or page."""

    page: int
    raw_text: str
    cleaned_text: str
    confidence: float


@dataclass
class ExtractionResult:
    """Outcome of turning one file or one image into text."""

    content: str
    source: ExtractionSource = "local"
    confidence: Optional[float] = None

    @property
    def is_low_confidence(self) -> bool:
        return self.source == "local" and self.confidence is not None and self.confidence < LOW_CONFIDENCE_WARNING


@dataclass
class PageClassification:
    """Embedded-text verdict for one PDF page (1-based)."""

    page_number: int
    text: Optional[str]
    needs_ocr: bool


@dataclass
class PdfExtraction:
    file_name: str
    pages: List[PageClassification] = field(default_factory=list)

    @property
    def page_count(self) -> int:
        return len(self.pages)

    @property
    def pages_needing_ocr(self) -> List[PageClassification]:
        return [page for page in self.pages if page.needs_ocr]

    @property
    def embedded_pages(self) -> List[PageClassification]:
        return [page for page in self.pages if not page.needs_ocr]


@dataclass(frozen=True)
class ProcessedFile:
    """Durable ingestion unit kept for the rest of the pipeline."""

    name: str
    content: str


@dataclass
class GenerationProgress:
    current: int = 0
    total: int = 0
    message: str = ""

    def copy(self) -> "GenerationProgress":
        return replace(self)

    @property
    def percent(self) -> float:
        if self.total <= 0:
            return 0.0
        return round(min(100.0, (self.current / self.total) * 100.0), 2)


@dataclass
class Notification:
    """A user-visible toast emitted by the controller."""

    level: Literal["info", "warning", "error"]
    title: str
    message: str = ""
