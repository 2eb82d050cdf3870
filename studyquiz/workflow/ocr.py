from __future__ import annotations

import asyncio
import base64
import binascii
import io
import re
from typing import Callable, Optional, Protocol

import numpy as np
import pytesseract
from PIL import Image, UnidentifiedImageError
from pytesseract import Output

from studyquiz.errors import AIServiceError, OcrError, RemoteOcrError
from studyquiz.logging_config import get_logger
from studyquiz.utils.types import ExtractionResult, OCRPageResult
from studyquiz.utils.usage import UsageTracker
from studyquiz.workflow.llm import AIClient

logger = get_logger(__name__)

# Accept/escalate tie-break: local text must beat both to skip the AI call.
ACCEPT_MIN_TEXT_LENGTH = 20
ACCEPT_MIN_CONFIDENCE = 70.0
BINARIZE_THRESHOLD = 128

_DATA_URL = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?:;[\w-]+=[\w.-]+)*;base64,(?P<payload>.*)$", re.DOTALL)


def should_accept_local(text: str | None, confidence: float) -> bool:
    return len((text or "").strip()) > ACCEPT_MIN_TEXT_LENGTH and confidence > ACCEPT_MIN_CONFIDENCE


def data_url_from_bytes(data: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def encode_data_url(image: Image.Image, image_format: str = "PNG") -> str:
    buffer = io.BytesIO()
    image.save(buffer, format=image_format)
    return data_url_from_bytes(buffer.getvalue(), f"image/{image_format.lower()}")


def decode_data_url(data_url: str) -> Image.Image:
    match = _DATA_URL.match((data_url or "").strip())
    if not match:
        raise OcrError("Image payload is not a base64 data URL")
    try:
        raw = base64.b64decode(match.group("payload"), validate=True)
        image = Image.open(io.BytesIO(raw))
        image.load()
    except (binascii.Error, ValueError, UnidentifiedImageError, OSError) as exc:
        raise OcrError(f"Could not decode image: {exc}") from exc
    return image


def binarize(image: Image.Image, threshold: int = BINARIZE_THRESHOLD) -> Image.Image:
    """Grayscale, then hard-threshold every pixel to pure black or white."""
    gray = np.asarray(image.convert("L"), dtype=np.uint8)
    return Image.fromarray(np.where(gray >= threshold, 255, 0).astype(np.uint8))


def _basic_cleanup(text: str) -> str:
    return text.replace("\x0c", "").strip()


def _extract_confidence(image: Image.Image, lang: str) -> float:
    data = pytesseract.image_to_data(image, lang=lang, output_type=Output.DICT)
    confidences = []
    for value in data.get("conf", []):
        try:
            conf = float(value)
        except (TypeError, ValueError):
            continue
        if conf >= 0:
            confidences.append(conf)
    if not confidences:
        return 0.0
    return round(sum(confidences) / len(confidences), 2)


class OcrEngine(Protocol):
    def recognize(self, image: Image.Image, page: int = 1) -> OCRPageResult: ...


class LocalOcrEngine:
    """On-device OCR via tesseract."""

    def __init__(self, lang: str = "eng") -> None:
        self.lang = lang

    def recognize(self, image: Image.Image, page: int = 1) -> OCRPageResult:
        raw_text = pytesseract.image_to_string(image, lang=self.lang)
        confidence = _extract_confidence(image, self.lang)
        return OCRPageResult(page=page, raw_text=raw_text, cleaned_text=_basic_cleanup(raw_text), confidence=confidence)


class LocalOcrStrategy:
    def __init__(self, engine: OcrEngine) -> None:
        self.engine = engine

    async def run(self, image: Image.Image, *, preprocess: bool = False, page: int = 1) -> OCRPageResult:
        source = binarize(image) if preprocess else image
        try:
            return await asyncio.to_thread(self.engine.recognize, source, page)
        except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError, OSError, RuntimeError) as exc:
            raise OcrError(f"Local OCR failed: {exc}") from exc


class RemoteOcrStrategy:
    """Vision-model OCR; the only path in this module that costs API usage."""

    def __init__(self, client_factory: Callable[[str], AIClient], usage: UsageTracker) -> None:
        self.client_factory = client_factory
        self.usage = usage

    async def run(self, image_data_url: str, api_key: str, hint: Optional[str] = None) -> ExtractionResult:
        self.usage.increment()
        try:
            client = self.client_factory(api_key)
            text = await client.extract_text_from_image(image_data_url, hint)
        except AIServiceError as exc:
            raise RemoteOcrError(exc.message, exc.status_code) from exc
        return ExtractionResult(content=text.strip(), source="ai")


class TieredOcrResolver:
    """Local OCR first, AI OCR only when the local pass is not good enough.

    Eco mode binarizes the image and never leaves the machine; low confidence is
    reported through ``ExtractionResult.is_low_confidence`` for the caller to warn.
    """

    def __init__(self, local: LocalOcrStrategy, remote: RemoteOcrStrategy) -> None:
        self.local = local
        self.remote = remote

    async def resolve(self, image_data_url: str, api_key: Optional[str], eco_mode: bool) -> ExtractionResult:
        image = decode_data_url(image_data_url)
        return await self.resolve_image(image, api_key, eco_mode, image_data_url=image_data_url)

    async def resolve_image(
        self,
        image: Image.Image,
        api_key: Optional[str],
        eco_mode: bool,
        *,
        image_data_url: Optional[str] = None,
        page: int = 1,
    ) -> ExtractionResult:
        if eco_mode:
            attempt = await self.local.run(image, preprocess=True, page=page)
            result = ExtractionResult(content=attempt.cleaned_text, source="local", confidence=attempt.confidence)
            if result.is_low_confidence:
                logger.warning("Eco OCR low confidence | page=%s confidence=%.1f", page, attempt.confidence)
            return result

        local: Optional[OCRPageResult] = None
        try:
            local = await self.local.run(image, page=page)
        except OcrError as exc:
            logger.warning("Local OCR unavailable | page=%s error=%s", page, exc)

        if local is not None and should_accept_local(local.cleaned_text, local.confidence):
            logger.info("OCR accepted locally | page=%s confidence=%.1f chars=%s", page, local.confidence, len(local.cleaned_text))
            return ExtractionResult(content=local.cleaned_text, source="local", confidence=local.confidence)

        if not api_key:
            if local is None:
                raise OcrError("Local OCR failed and no API key is configured for AI OCR.")
            logger.info("OCR below threshold but no API key | page=%s confidence=%.1f", page, local.confidence)
            return ExtractionResult(content=local.cleaned_text, source="local", confidence=local.confidence)

        logger.info("OCR escalating to AI | page=%s local_confidence=%s", page, local.confidence if local else "n/a")
        hint = local.cleaned_text if local else None
        return await self.remote.run(image_data_url or encode_data_url(image), api_key, hint)
