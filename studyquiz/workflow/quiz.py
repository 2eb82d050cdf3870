from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence

from pydantic import ValidationError

from studyquiz.errors import AIServiceError, BatchGenerationError, NoQuestionsGeneratedError
from studyquiz.logging_config import get_logger
from studyquiz.utils.cancellation import CancellationToken
from studyquiz.utils.usage import UsageTracker
from studyquiz.workflow.llm import AIClient
from studyquiz.workflow.progress import ProgressTracker
from studyquiz.workflow.utils.request_models import GenerationParams, Question, QuestionAdapter, QuestionFormat

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 5

_FORMAT_INSTRUCTIONS = {
    QuestionFormat.MULTIPLE_CHOICE: (
        'Generate ONLY multiple-choice questions (questionType "multipleChoice") with exactly 4 distinct '
        "options; answer must match one option exactly."
    ),
    QuestionFormat.OPEN_ENDED: (
        'Generate ONLY conceptual questions needing a free-form answer (questionType "openEnded"); '
        "answer holds a model answer or key points."
    ),
    QuestionFormat.PROBLEM_SOLVING: (
        'Generate ONLY computation problems (questionType "problemSolving"); answer holds the '
        "step-by-step solution with the final result in \\boxed{}."
    ),
    QuestionFormat.MIXED: (
        'Generate a balanced mix of "multipleChoice" (4 distinct options, answer is one of them), '
        '"openEnded" and "problemSolving" questions, each with the correct questionType.'
    ),
}

_HELL_BOUND_INSTRUCTION = (
    "Make every question exceptionally hard: force synthesis across concepts, use multi-step problems, "
    "and give multiple-choice items three devious, plausible distractors."
)


@dataclass
class GenerationOutcome:
    questions: List[Question] = field(default_factory=list)
    requested: int = 0
    cancelled: bool = False

    @property
    def shortfall(self) -> int:
        return max(0, self.requested - len(self.questions))


def parse_questions(payload: Any) -> tuple[List[Question], int]:
    """Validate raw model output, returning accepted questions and the rejected count."""
    if isinstance(payload, dict):
        items = payload.get("questions")
        if items is None and isinstance(payload.get("quiz"), dict):
            items = payload["quiz"].get("questions")
    else:
        items = payload
    if not isinstance(items, list):
        return [], 0

    accepted: List[Question] = []
    rejected = 0
    for item in items:
        if not isinstance(item, dict) or not str(item.get("question") or "").strip():
            rejected += 1
            continue
        try:
            accepted.append(QuestionAdapter.validate_python(item))
        except ValidationError as exc:
            rejected += 1
            logger.debug("Question rejected | reason=%s", exc.errors()[0].get("msg") if exc.errors() else exc)
    return accepted, rejected


class BatchedQuizGenerator:
    """Ask the model for questions in fixed-size batches until the total is reached.

    Every batch carries the texts generated so far as an avoid list. Progress moves
    by accepted questions, so rejected items show up as a shortfall.
    """

    def __init__(self, client_factory: Callable[[str], AIClient], usage: UsageTracker) -> None:
        self.client_factory = client_factory
        self.usage = usage

    def build_prompt(self, brief: str, count: int, params: GenerationParams, avoid: Sequence[str]) -> str:
        fmt = QuestionFormat.MIXED if params.hell_bound else params.question_format
        lines = [
            "Generate a quiz from the Key Concepts below.",
            f"Key Concepts:\n{brief}",
            "",
            f"Generate exactly {count} questions at '{params.difficulty.value}' difficulty.",
            _FORMAT_INSTRUCTIONS[fmt],
            "Use only the Key Concepts, in their language. Wrap all math in $...$ or $$...$$ LaTeX delimiters.",
        ]
        if params.hell_bound:
            lines.append(_HELL_BOUND_INSTRUCTION)
        if params.topic_hint:
            lines.append(f"Focus on these topics: {params.topic_hint}")
        if avoid:
            lines.append("Do NOT repeat or closely paraphrase any of these existing questions:\n- " + "\n- ".join(avoid))
        lines.append(
            'Respond with strict JSON: {"questions": [{"questionType": "...", "question": "...", '
            '"options": ["..."], "answer": "..."}]} (omit options for non multiple-choice items).'
        )
        return "\n".join(lines)

    async def generate(
        self,
        brief: str,
        total: int,
        batch_size: int,
        params: GenerationParams,
        api_key: str,
        progress: Optional[ProgressTracker] = None,
        token: Optional[CancellationToken] = None,
    ) -> GenerationOutcome:
        progress = progress or ProgressTracker()
        batch_size = max(1, batch_size or DEFAULT_BATCH_SIZE)
        outcome = GenerationOutcome(requested=total)
        avoid: List[str] = []
        client = self.client_factory(api_key)

        progress.start("generating", total, "Generating questions...")
        requested_so_far = 0
        while requested_so_far < total:
            if token is not None and token.is_cancelled():
                outcome.cancelled = True
                logger.info("Generation cancelled | accepted=%s requested=%s", len(outcome.questions), total)
                break
            this_batch = min(batch_size, total - requested_so_far)
            start_index = requested_so_far
            logger.info("Quiz batch start | start=%s size=%s avoid=%s", start_index, this_batch, len(avoid))
            self.usage.increment()
            try:
                payload = await client.generate_json(self.build_prompt(brief, this_batch, params, avoid), temperature=0.7)
            except AIServiceError as exc:
                raise BatchGenerationError(start_index, exc.message) from exc
            requested_so_far += this_batch

            accepted, rejected = parse_questions(payload)
            # The model sometimes overshoots; keep the batch to what was asked for.
            accepted = accepted[:this_batch]
            outcome.questions.extend(accepted)
            avoid.extend(q.question for q in accepted)
            if rejected:
                logger.warning("Quiz batch rejected items | start=%s rejected=%s", start_index, rejected)
            progress.advance(len(accepted), f"Generated {len(outcome.questions)} of {total} questions")

        if not outcome.questions and not outcome.cancelled:
            raise NoQuestionsGeneratedError()
        logger.info("Generation done | accepted=%s requested=%s cancelled=%s", len(outcome.questions), total, outcome.cancelled)
        return outcome
