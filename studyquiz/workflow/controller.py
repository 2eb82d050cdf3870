from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from studyquiz.errors import (
    AIServiceError,
    ApiKeyRequiredError,
    ModelOverloadedError,
    PipelineStateError,
    StudyQuizError,
)
from studyquiz.logging_config import get_logger
from studyquiz.utils.cancellation import OperationEpochs
from studyquiz.utils.types import Notification, ProcessedFile, UploadedFile
from studyquiz.utils.usage import InMemoryUsageTracker, UsageTracker
from studyquiz.workflow.aggregator import ContentAggregator, IngestionReport, combined_content
from studyquiz.workflow.concepts import KeyConceptSynthesizer
from studyquiz.workflow.extraction import LocalTextExtractor
from studyquiz.workflow.ingestion import PdfPageRenderer
from studyquiz.workflow.llm import AIClient, AIClientFactory
from studyquiz.workflow.ocr import LocalOcrEngine, LocalOcrStrategy, RemoteOcrStrategy, TieredOcrResolver
from studyquiz.workflow.progress import ProgressTracker
from studyquiz.workflow.quiz import BatchedQuizGenerator, GenerationOutcome
from studyquiz.workflow.utils.request_models import (
    GenerationParams,
    MultipleChoiceQuestion,
    QuestionFormat,
    Quiz,
    ValidateAnswerResult,
    ValidationStatus,
)
from studyquiz.workflow.utils.settings import default_settings

logger = get_logger(__name__)

PARSING = "parsing"
ANALYZING = "analyzing"
GENERATING = "generating"

NotifyCallback = Callable[[Notification], None]


class PipelineState(str, Enum):
    SETUP = "setup"
    PARSING = "parsing"
    ANALYZING = "analyzing"
    GENERATING = "generating"
    QUIZ = "quiz"
    RESULTS = "results"


@dataclass
class QuizScore:
    correct: int
    graded: int
    total: int

    @property
    def pending(self) -> int:
        """Open-ended and problem-solving answers still waiting for AI grading."""
        return self.total - self.graded

    @property
    def percent(self) -> float:
        if self.graded == 0:
            return 0.0
        return round(self.correct / self.graded * 100.0, 2)


class PipelineController:
    """Owns the quiz session: state, files, cancellation and the shared progress record.

    Long-running stages get a fresh token from ``OperationEpochs``; results are only
    committed when that token is still the latest one for its stage.
    """

    def __init__(
        self,
        *,
        aggregator: ContentAggregator,
        synthesizer: KeyConceptSynthesizer,
        generator: BatchedQuizGenerator,
        client_factory: Callable[[str], AIClient],
        usage: UsageTracker,
        api_key: Optional[str] = None,
        eco_mode: bool = False,
        batch_size: int = 5,
        notify: Optional[NotifyCallback] = None,
        progress: Optional[ProgressTracker] = None,
    ) -> None:
        self.aggregator = aggregator
        self.synthesizer = synthesizer
        self.generator = generator
        self.client_factory = client_factory
        self.usage = usage
        self.api_key = api_key
        self.eco_mode = eco_mode
        self.batch_size = batch_size
        self.progress = progress or ProgressTracker()
        self.epochs = OperationEpochs()
        self.notifications: List[Notification] = []
        self._notify_callback = notify

        self.state = PipelineState.SETUP
        self.files: List[ProcessedFile] = []
        self.has_math_content: Optional[bool] = None
        self.quiz: Optional[Quiz] = None
        self.answers: Dict[int, str] = {}
        self.validations: Dict[int, ValidateAnswerResult] = {}
        self.timer_per_question = 0

    @classmethod
    def from_settings(
        cls,
        settings: Any = None,
        *,
        api_key: Optional[str] = None,
        usage: Optional[UsageTracker] = None,
        notify: Optional[NotifyCallback] = None,
    ) -> "PipelineController":
        settings = settings or default_settings()
        usage = usage or InMemoryUsageTracker(settings.usage_budget)
        factory = AIClientFactory(settings)
        resolver = TieredOcrResolver(
            LocalOcrStrategy(LocalOcrEngine(settings.ocr_lang)),
            RemoteOcrStrategy(factory, usage),
        )
        aggregator = ContentAggregator(LocalTextExtractor(), resolver, PdfPageRenderer(settings.ocr_render_scale))
        return cls(
            aggregator=aggregator,
            synthesizer=KeyConceptSynthesizer(factory, usage),
            generator=BatchedQuizGenerator(factory, usage),
            client_factory=factory,
            usage=usage,
            api_key=api_key or settings.openai_api_key or None,
            eco_mode=settings.eco_mode,
            batch_size=settings.batch_size,
            notify=notify,
        )

    @property
    def content(self) -> str:
        return combined_content(self.files)

    def notify(self, level: str, title: str, message: str = "") -> None:
        notification = Notification(level=level, title=title, message=message)
        self.notifications.append(notification)
        if self._notify_callback is not None:
            try:
                self._notify_callback(notification)
            except Exception:
                logger.warning("Notification callback failed; continuing.", exc_info=True)

    def _require_api_key(self, action: str) -> str:
        if not self.api_key:
            error = ApiKeyRequiredError(action)
            self.notify("error", "API Key Required", str(error))
            raise error
        return self.api_key

    async def upload(self, files: Sequence[UploadedFile]) -> IngestionReport:
        api_key = self._require_api_key("uploading files")
        if self.state is not PipelineState.SETUP:
            raise PipelineStateError(f"Cannot upload files while {self.state.value}.")

        token = self.epochs.begin(PARSING)
        self.state = PipelineState.PARSING
        try:
            report = await self.aggregator.ingest(
                files, api_key, self.eco_mode, self.progress, token, existing=self.files
            )
        except Exception as exc:
            if self.epochs.is_latest(token):
                self.state = PipelineState.SETUP
                self.progress.reset()
                self.notify("error", "File Processing Error", str(exc))
            raise

        if not self.epochs.is_latest(token):
            logger.info("Stale ingestion result dropped | epoch=%s", token.epoch)
            return report

        self.files.extend(report.processed)
        self.state = PipelineState.SETUP
        self.progress.reset()
        self._report_ingestion(report)
        if report.processed:
            await self.analyze_content()
        return report

    def _report_ingestion(self, report: IngestionReport) -> None:
        for notice in report.notices:
            self.notify("info", "Notice", notice)
        for error in report.errors:
            self.notify("error", "File Processing Error", str(error))
        if report.low_confidence:
            self.notify(
                "warning",
                "Low OCR confidence",
                "Text may be inaccurate in: " + ", ".join(report.low_confidence),
            )
        if report.cancelled:
            self.notify("info", "Processing cancelled", f"Kept {len(report.processed)} fully processed file(s).")
        elif report.processed:
            self.notify("info", "File processing complete!", "Your content is ready.")

    async def analyze_content(self) -> bool:
        """Detect math notation in the ingested content; any failure means "assume yes"."""
        if not self.files:
            self.has_math_content = None
            return False
        if self.state is not PipelineState.SETUP:
            raise PipelineStateError(f"Cannot analyze content while {self.state.value}.")

        token = self.epochs.begin(ANALYZING)
        self.state = PipelineState.ANALYZING
        try:
            self.usage.increment()
            client = self.client_factory(self.api_key or "")
            has_math = await client.analyze_for_math(self.content)
        except AIServiceError:
            logger.warning("Math analysis unavailable; assuming math content", exc_info=True)
            has_math = True

        if self.epochs.is_current(token):
            self.has_math_content = has_math
            self.state = PipelineState.SETUP
            logger.info("Content analysis done | has_math=%s", has_math)
        return has_math

    async def start_quiz(self, params: GenerationParams) -> Optional[GenerationOutcome]:
        api_key = self._require_api_key("generating a quiz")
        if not self.files:
            raise PipelineStateError("Upload at least one file before starting a quiz.")
        if self.state not in (PipelineState.SETUP, PipelineState.ANALYZING):
            raise PipelineStateError(f"Cannot start a quiz while {self.state.value}.")
        if params.question_format is QuestionFormat.PROBLEM_SOLVING and self.has_math_content is False:
            message = "Problem-solving questions need mathematical content in the uploaded files."
            self.notify("error", "Format unavailable", message)
            raise PipelineStateError(message)

        if self.state is PipelineState.ANALYZING:
            # Analysis is opportunistic; generation does not wait for it.
            self.epochs.invalidate(ANALYZING)
        token = self.epochs.begin(GENERATING)
        self.state = PipelineState.GENERATING
        self.timer_per_question = params.timer_per_question
        self.progress.start(GENERATING, params.num_questions, "Synthesizing key concepts...")

        try:
            brief = await self.synthesizer.synthesize(self.files, api_key)
            outcome = await self.generator.generate(
                brief, params.num_questions, self.batch_size, params, api_key, self.progress, token
            )
        except StudyQuizError as exc:
            if self.epochs.is_latest(token):
                self.state = PipelineState.SETUP
                self.progress.reset()
                title = "AI Model Overloaded" if isinstance(exc, ModelOverloadedError) else "Error Generating Quiz"
                self.notify("error", title, str(exc))
            logger.warning("Generation failed | epoch=%s error=%s", token.epoch, exc)
            return None

        if not self.epochs.is_latest(token):
            logger.info("Stale generation result dropped | epoch=%s", token.epoch)
            return outcome
        self.progress.reset()
        if outcome.cancelled:
            self.state = PipelineState.SETUP
            self.notify("info", "Generation cancelled", "Quiz generation was cancelled.")
            return outcome

        if outcome.shortfall:
            self.notify(
                "info",
                "Quiz Adjusted",
                f"The AI generated {len(outcome.questions)} valid questions instead of the requested {outcome.requested}.",
            )
        self.quiz = Quiz(questions=outcome.questions)
        self.answers = {}
        self.validations = {}
        self.state = PipelineState.QUIZ
        return outcome

    def cancel_parsing(self) -> bool:
        return self.epochs.cancel(PARSING)

    def cancel_generation(self) -> bool:
        return self.epochs.cancel(GENERATING)

    def restart(self) -> None:
        for stage in (PARSING, ANALYZING, GENERATING):
            self.epochs.invalidate(stage)
        self.files = []
        self.has_math_content = None
        self.quiz = None
        self.answers = {}
        self.validations = {}
        self.timer_per_question = 0
        self.progress.reset()
        self.state = PipelineState.SETUP

    def retake(self) -> None:
        if self.quiz is None or self.state not in (PipelineState.QUIZ, PipelineState.RESULTS):
            raise PipelineStateError("There is no quiz to retake.")
        self.answers = {}
        self.validations = {}
        self.progress.reset()
        self.state = PipelineState.QUIZ

    def submit_answers(self, answers: Mapping[int, str]) -> QuizScore:
        if self.quiz is None or self.state is not PipelineState.QUIZ:
            raise PipelineStateError("There is no quiz in progress.")
        self.answers = {int(k): str(v) for k, v in answers.items()}
        self.state = PipelineState.RESULTS
        return self.score()

    def score(self) -> QuizScore:
        questions = self.quiz.questions if self.quiz else []
        correct = graded = 0
        for index, question in enumerate(questions):
            if isinstance(question, MultipleChoiceQuestion):
                graded += 1
                correct += int(self.answers.get(index) == question.answer)
            elif index in self.validations:
                graded += 1
                correct += int(self.validations[index].status is ValidationStatus.CORRECT)
        return QuizScore(correct=correct, graded=graded, total=len(questions))

    async def validate_open_answer(self, index: int) -> ValidateAnswerResult:
        if self.quiz is None or self.state is not PipelineState.RESULTS:
            raise PipelineStateError("Submit the quiz before validating answers.")
        try:
            question = self.quiz.questions[index]
        except IndexError as exc:
            raise PipelineStateError(f"No question at index {index}.") from exc
        if isinstance(question, MultipleChoiceQuestion):
            raise PipelineStateError("Multiple-choice answers are graded locally.")
        user_answer = (self.answers.get(index) or "").strip()
        if not user_answer:
            raise PipelineStateError("There is no answer to validate for this question.")

        api_key = self._require_api_key("validating answers")
        self.usage.increment()
        try:
            result = await self.client_factory(api_key).validate_answer(question.question, user_answer, question.answer)
        except AIServiceError as exc:
            self.notify("error", "Validation Failed", exc.message)
            raise
        self.validations[index] = result
        return result
