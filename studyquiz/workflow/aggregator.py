from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

from studyquiz.errors import AIServiceError, ExtractionError, OcrError, OperationCancelled
from studyquiz.logging_config import get_logger
from studyquiz.utils.cancellation import CancellationToken
from studyquiz.utils.types import PageClassification, ProcessedFile, UploadedFile
from studyquiz.workflow.extraction import LocalTextExtractor, is_image, is_pdf
from studyquiz.workflow.ingestion import PageRenderer, is_blank, validate_upload
from studyquiz.workflow.ocr import TieredOcrResolver, data_url_from_bytes
from studyquiz.workflow.progress import ProgressTracker

logger = get_logger(__name__)

PAGE_SEPARATOR = "\n\n---\n\n"
OCR_ERROR_PREVIEW = 100
OCR_MAX_CONCURRENCY = max(1, int(os.getenv("OCR_MAX_CONCURRENCY", "4")))


@dataclass
class IngestionReport:
    processed: List[ProcessedFile] = field(default_factory=list)
    skipped_duplicates: List[str] = field(default_factory=list)
    errors: List[ExtractionError] = field(default_factory=list)
    notices: List[str] = field(default_factory=list)
    low_confidence: List[str] = field(default_factory=list)
    cancelled: bool = False


def combined_content(files: Iterable[ProcessedFile]) -> str:
    return PAGE_SEPARATOR.join(f.content for f in files)


def ocr_error_placeholder(page_number: int, message: str) -> str:
    return f"[OCR Error on page {page_number}: {message[:OCR_ERROR_PREVIEW]}...]"


class ContentAggregator:
    """Turn a batch of uploads into one ``ProcessedFile`` each.

    Files are handled one after another; OCR for the flagged pages of a single PDF
    fans out concurrently. A failing file is reported and skipped, a failing page
    becomes a placeholder in that page's slot.
    """

    def __init__(
        self,
        extractor: LocalTextExtractor,
        resolver: TieredOcrResolver,
        renderer: PageRenderer,
        *,
        max_concurrency: int = OCR_MAX_CONCURRENCY,
    ) -> None:
        self.extractor = extractor
        self.resolver = resolver
        self.renderer = renderer
        self.max_concurrency = max(1, max_concurrency)

    async def ingest(
        self,
        files: Sequence[UploadedFile],
        api_key: Optional[str],
        eco_mode: bool,
        progress: Optional[ProgressTracker] = None,
        token: Optional[CancellationToken] = None,
        existing: Iterable[ProcessedFile | str] = (),
    ) -> IngestionReport:
        progress = progress or ProgressTracker()
        report = IngestionReport()

        seen = {item if isinstance(item, str) else item.name for item in existing}
        queue: List[UploadedFile] = []
        for file in files:
            if file.name in seen:
                report.skipped_duplicates.append(file.name)
                report.notices.append(f"{file.name} is already uploaded; skipped.")
                continue
            seen.add(file.name)
            queue.append(file)

        total_files = len(queue)
        progress.start("parsing", total_files, "Preparing to process files...")
        for index, file in enumerate(queue, 1):
            if token is not None and token.is_cancelled():
                report.cancelled = True
                break
            progress.message(f"Processing file {index} of {total_files}: {file.name}")
            logger.info("Ingest start | file=%s (%s/%s) type=%s", file.name, index, total_files, file.mime_type)
            try:
                content = await self._process_file(file, api_key, eco_mode, progress, token, report)
            except OperationCancelled:
                logger.info("Ingest cancelled | file=%s discarded", file.name)
                report.cancelled = True
                break
            except ExtractionError as exc:
                logger.warning("Ingest failed | file=%s error=%s", file.name, exc.cause)
                report.errors.append(exc)
            except (OcrError, AIServiceError) as exc:
                logger.warning("Ingest failed | file=%s error=%s", file.name, exc)
                report.errors.append(ExtractionError(file.name, str(exc)))
            else:
                report.processed.append(ProcessedFile(name=file.name, content=content))
                logger.info("Ingest done | file=%s chars=%s", file.name, len(content))
            progress.advance(1)
        return report

    async def _process_file(
        self,
        file: UploadedFile,
        api_key: Optional[str],
        eco_mode: bool,
        progress: ProgressTracker,
        token: Optional[CancellationToken],
        report: IngestionReport,
    ) -> str:
        validate_upload(file)
        if is_image(file):
            result = await self.resolver.resolve(data_url_from_bytes(file.data, file.mime_type), api_key, eco_mode)
            if result.is_low_confidence:
                report.low_confidence.append(file.name)
            return result.content
        if is_pdf(file):
            return await self._process_pdf(file, api_key, eco_mode, progress, token, report)
        return self.extractor.extract(file).content

    async def _process_pdf(
        self,
        file: UploadedFile,
        api_key: Optional[str],
        eco_mode: bool,
        progress: ProgressTracker,
        token: Optional[CancellationToken],
        report: IngestionReport,
    ) -> str:
        extraction = self.extractor.extract_pdf(file)
        to_ocr = extraction.pages_needing_ocr
        page_count = extraction.page_count
        progress.retotal(progress.state.total + page_count + len(to_ocr))
        for page in extraction.pages:
            if token is not None:
                token.raise_if_cancelled()
            progress.advance(1, f"Analyzing page {page.page_number} of {page_count}: {file.name}")

        ocr_texts: Dict[int, str] = {}
        if to_ocr:
            semaphore = asyncio.Semaphore(self.max_concurrency)
            completed = 0

            async def run(page: PageClassification) -> str:
                nonlocal completed
                async with semaphore:
                    if token is not None:
                        token.raise_if_cancelled()
                    text = await self._ocr_page(file, page.page_number, api_key, eco_mode, report)
                completed += 1
                progress.advance(1, f"OCR page {completed} of {len(to_ocr)}: {file.name}")
                return text

            results = await asyncio.gather(*(run(page) for page in to_ocr), return_exceptions=True)
            for page, outcome in zip(to_ocr, results):
                if isinstance(outcome, BaseException):
                    raise outcome
                ocr_texts[page.page_number] = outcome
            if token is not None:
                token.raise_if_cancelled()

        texts = [ocr_texts.get(page.page_number, "") if page.needs_ocr else (page.text or "") for page in extraction.pages]
        return PAGE_SEPARATOR.join(texts)

    async def _ocr_page(
        self,
        file: UploadedFile,
        page_number: int,
        api_key: Optional[str],
        eco_mode: bool,
        report: IngestionReport,
    ) -> str:
        try:
            image = await asyncio.to_thread(self.renderer.render_page, file.data, page_number)
            if is_blank(image):
                logger.info("Blank page skipped | file=%s page=%s", file.name, page_number)
                return ""
            result = await self.resolver.resolve_image(image, api_key, eco_mode, page=page_number)
        except (AIServiceError, OcrError, RuntimeError) as exc:
            logger.warning("Page OCR failed | file=%s page=%s error=%s", file.name, page_number, exc)
            report.notices.append(f"OCR failed on page {page_number} of {file.name}.")
            return ocr_error_placeholder(page_number, str(exc))
        if result.is_low_confidence:
            report.low_confidence.append(f"{file.name} (page {page_number})")
        return result.content
