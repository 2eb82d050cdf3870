import io
import pathlib
import re
import sys
from typing import Any, Callable, Dict, List, Optional

import pytest
from PIL import Image

# Ensure the repository root is on the path for direct test runs.
REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.append(str(REPO_ROOT))

from studyquiz.errors import AIServiceError
from studyquiz.utils.types import OCRPageResult, UploadedFile
from studyquiz.utils.usage import UNLIMITED_BUDGET, InMemoryUsageTracker
from studyquiz.workflow.aggregator import ContentAggregator
from studyquiz.workflow.concepts import KeyConceptSynthesizer
from studyquiz.workflow.controller import PipelineController
from studyquiz.workflow.extraction import LocalTextExtractor
from studyquiz.workflow.ocr import LocalOcrStrategy, RemoteOcrStrategy, TieredOcrResolver
from studyquiz.workflow.quiz import BatchedQuizGenerator
from studyquiz.workflow.utils.request_models import (
    ApiKeyValidation,
    LatexExtraction,
    ValidateAnswerResult,
    ValidationStatus,
)

LONG_TEXT = (
    "Photosynthesis converts light energy into chemical energy stored in glucose. "
    "Chlorophyll in the thylakoid membranes absorbs mostly red and blue light."
)
LONG_TEXT_2 = (
    "Cellular respiration releases the energy stored in glucose through glycolysis, "
    "the citric acid cycle and oxidative phosphorylation in the mitochondria."
)


def _pdf_escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")


def make_pdf(page_texts: List[str]) -> bytes:
    """Build a minimal single-font PDF whose pages carry ``page_texts`` as a text layer."""
    count = len(page_texts)
    page_ids = [4 + 2 * i for i in range(count)]
    objects: Dict[int, bytes] = {
        1: b"<< /Type /Catalog /Pages 2 0 R >>",
        2: f"<< /Type /Pages /Kids [{' '.join(f'{pid} 0 R' for pid in page_ids)}] /Count {count} >>".encode(),
        3: b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
    }
    for pid, text in zip(page_ids, page_texts):
        stream = f"BT /F1 10 Tf 20 700 Td ({_pdf_escape(text)}) Tj ET".encode() if text else b""
        objects[pid] = (
            f"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] "
            f"/Resources << /Font << /F1 3 0 R >> >> /Contents {pid + 1} 0 R >>"
        ).encode()
        objects[pid + 1] = b"<< /Length %d >>\nstream\n" % len(stream) + stream + b"\nendstream"

    out = io.BytesIO()
    out.write(b"%PDF-1.4\n")
    offsets: Dict[int, int] = {}
    for obj_id in sorted(objects):
        offsets[obj_id] = out.tell()
        out.write(f"{obj_id} 0 obj\n".encode() + objects[obj_id] + b"\nendobj\n")
    xref_at = out.tell()
    size = max(objects) + 1
    out.write(f"xref\n0 {size}\n".encode())
    out.write(b"0000000000 65535 f \n")
    for obj_id in range(1, size):
        out.write(f"{offsets[obj_id]:010d} 00000 n \n".encode())
    out.write(f"trailer\n<< /Size {size} /Root 1 0 R >>\nstartxref\n{xref_at}\n%%EOF\n".encode())
    return out.getvalue()


def png_bytes(color="white", size=(32, 32), mode="RGB") -> bytes:
    buffer = io.BytesIO()
    Image.new(mode, size, color).save(buffer, format="PNG")
    return buffer.getvalue()


def text_file(name: str, content: str) -> UploadedFile:
    return UploadedFile(name=name, mime_type="text/plain", data=content.encode("utf-8"))


class FakeOcrEngine:
    def __init__(self, text: str = LONG_TEXT, confidence: float = 92.0, error: Optional[Exception] = None) -> None:
        self.text = text
        self.confidence = confidence
        self.error = error
        self.images: List[Image.Image] = []

    @property
    def calls(self) -> int:
        return len(self.images)

    def recognize(self, image: Image.Image, page: int = 1) -> OCRPageResult:
        self.images.append(image)
        if self.error is not None:
            raise self.error
        return OCRPageResult(page=page, raw_text=self.text, cleaned_text=self.text.strip(), confidence=self.confidence)


class FakeRenderer:
    def __init__(self, pages: Optional[Dict[int, Image.Image]] = None, error: Optional[Exception] = None) -> None:
        self.pages = pages or {}
        self.error = error
        self.rendered: List[int] = []

    def render_page(self, pdf_bytes: bytes, page_number: int) -> Image.Image:
        self.rendered.append(page_number)
        if self.error is not None:
            raise self.error
        return self.pages.get(page_number, Image.new("RGB", (40, 40), "black"))


def question_payload(count: int, prefix: str = "Q") -> Dict[str, Any]:
    return {
        "questions": [
            {
                "questionType": "multipleChoice",
                "question": f"{prefix} {i}: which pigment absorbs red light?",
                "options": ["Chlorophyll", "Carotene", "Xanthophyll", "Melanin"],
                "answer": "Chlorophyll",
            }
            for i in range(count)
        ]
    }


_COUNT = re.compile(r"Generate exactly (\d+) questions")


class FakeAIClient:
    """Records every call; behaviour per method is configurable."""

    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.ocr_text = "Text read by the vision model"
        self.ocr_error: Optional[Exception] = None
        self.text_reply: Any = "# File: notes.txt\n- Photosynthesis"
        self.json_reply: Optional[Callable[[str, int], Any]] = None
        self.has_math: Any = True
        self.grade = ValidateAnswerResult(status=ValidationStatus.CORRECT, explanation="Matches the reference.")
        self.key_validation = ApiKeyValidation(success=True)

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    def prompts(self, name: str) -> List[str]:
        return [call[1] for call in self.calls if call[0] == name]

    async def extract_text_from_image(self, data_url: str, hint: Optional[str] = None) -> str:
        self.calls.append(("extract_text_from_image", data_url, hint))
        if self.ocr_error is not None:
            raise self.ocr_error
        return self.ocr_text

    async def extract_latex_from_image(self, data_url: str, hint: Optional[str] = None) -> LatexExtraction:
        self.calls.append(("extract_latex_from_image", data_url, hint))
        return LatexExtraction(latex_representation="x^{2}", steps_extracted=["x^{2} = 4"], confidence_score=88)

    async def generate_text(self, prompt: str, **kwargs: Any) -> str:
        self.calls.append(("generate_text", prompt))
        if isinstance(self.text_reply, Exception):
            raise self.text_reply
        return self.text_reply

    async def generate_json(self, prompt: str, **kwargs: Any) -> Any:
        self.calls.append(("generate_json", prompt))
        batch_number = self.count("generate_json")
        match = _COUNT.search(prompt)
        requested = int(match.group(1)) if match else 0
        if self.json_reply is None:
            return question_payload(requested, prefix=f"B{batch_number}")
        reply = self.json_reply(prompt, batch_number)
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def analyze_for_math(self, content: str) -> bool:
        self.calls.append(("analyze_for_math", content))
        if isinstance(self.has_math, Exception):
            raise self.has_math
        return self.has_math

    async def validate_answer(self, question: str, user_answer: str, correct_answer: str) -> ValidateAnswerResult:
        self.calls.append(("validate_answer", question, user_answer, correct_answer))
        return self.grade

    async def summarize(self, content: str) -> str:
        self.calls.append(("summarize", content))
        return "- short summary"

    async def validate_api_key(self) -> ApiKeyValidation:
        self.calls.append(("validate_api_key",))
        return self.key_validation


@pytest.fixture
def fake_client() -> FakeAIClient:
    return FakeAIClient()


@pytest.fixture
def client_factory(fake_client):
    keys: List[str] = []

    def factory(api_key: str) -> FakeAIClient:
        if not api_key:
            raise AIServiceError("An API key is required for AI calls.", status_code=401)
        keys.append(api_key)
        return fake_client

    factory.keys = keys
    return factory


@pytest.fixture
def usage() -> InMemoryUsageTracker:
    return InMemoryUsageTracker(budget=UNLIMITED_BUDGET)


@pytest.fixture
def ocr_engine() -> FakeOcrEngine:
    return FakeOcrEngine()


@pytest.fixture
def renderer() -> FakeRenderer:
    return FakeRenderer()


@pytest.fixture
def resolver(ocr_engine, client_factory, usage) -> TieredOcrResolver:
    return TieredOcrResolver(LocalOcrStrategy(ocr_engine), RemoteOcrStrategy(client_factory, usage))


@pytest.fixture
def aggregator(resolver, renderer) -> ContentAggregator:
    return ContentAggregator(LocalTextExtractor(), resolver, renderer)


@pytest.fixture
def make_controller(aggregator, client_factory, usage):
    def build(api_key: Optional[str] = "sk-test", batch_size: int = 5, **kwargs: Any) -> PipelineController:
        return PipelineController(
            aggregator=aggregator,
            synthesizer=KeyConceptSynthesizer(client_factory, usage),
            generator=BatchedQuizGenerator(client_factory, usage),
            client_factory=client_factory,
            usage=usage,
            api_key=api_key,
            batch_size=batch_size,
            **kwargs,
        )

    return build
