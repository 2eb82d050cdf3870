import re

import pytest

from conftest import question_payload
from studyquiz.errors import AIServiceError, BatchGenerationError, NoQuestionsGeneratedError
from studyquiz.utils.cancellation import CancellationToken
from studyquiz.workflow.progress import ProgressTracker
from studyquiz.workflow.quiz import BatchedQuizGenerator, parse_questions
from studyquiz.workflow.utils.request_models import (
    GenerationParams,
    MultipleChoiceQuestion,
    OpenEndedQuestion,
    QuestionFormat,
)

BRIEF = "# File: notes.txt\n- Photosynthesis"


def _requested_sizes(fake_client):
    return [int(re.search(r"Generate exactly (\d+) questions", p).group(1)) for p in fake_client.prompts("generate_json")]


@pytest.mark.asyncio
async def test_thirteen_questions_in_batches_of_five(fake_client, client_factory, usage):
    outcome = await BatchedQuizGenerator(client_factory, usage).generate(
        BRIEF, 13, 5, GenerationParams(num_questions=13), "sk-test"
    )

    assert _requested_sizes(fake_client) == [5, 5, 3]
    assert len(outcome.questions) == 13
    assert outcome.shortfall == 0
    assert usage.get() == 3


@pytest.mark.asyncio
async def test_batch_sizes_ignore_rejections(fake_client, client_factory, usage):
    def reply(prompt, batch):
        payload = question_payload(5, prefix=f"B{batch}")
        payload["questions"][0]["question"] = "   "
        return payload

    fake_client.json_reply = reply

    outcome = await BatchedQuizGenerator(client_factory, usage).generate(
        BRIEF, 13, 5, GenerationParams(num_questions=13), "sk-test"
    )

    assert _requested_sizes(fake_client) == [5, 5, 3]
    assert len(outcome.questions) == 11
    assert outcome.shortfall == 2


@pytest.mark.asyncio
async def test_earlier_questions_are_sent_as_avoid_list(fake_client, client_factory, usage):
    outcome = await BatchedQuizGenerator(client_factory, usage).generate(
        BRIEF, 10, 5, GenerationParams(num_questions=10), "sk-test"
    )

    first, second = fake_client.prompts("generate_json")
    assert "Do NOT repeat" not in first
    for question in outcome.questions[:5]:
        assert question.question in second


@pytest.mark.asyncio
async def test_progress_moves_by_accepted_questions(fake_client, client_factory, usage):
    fake_client.json_reply = lambda prompt, batch: question_payload(2, prefix=f"B{batch}")
    progress = ProgressTracker()
    seen = []
    progress.subscribe(seen.append)

    await BatchedQuizGenerator(client_factory, usage).generate(
        BRIEF, 10, 5, GenerationParams(num_questions=10), "sk-test", progress
    )

    assert seen[0].total == 10
    assert [s.current for s in seen] == [0, 2, 4]


@pytest.mark.asyncio
async def test_failing_batch_names_its_start_index(fake_client, client_factory, usage):
    def reply(prompt, batch):
        if batch == 2:
            return AIServiceError("Internal error", status_code=500)
        return question_payload(5, prefix=f"B{batch}")

    fake_client.json_reply = reply

    with pytest.raises(BatchGenerationError) as excinfo:
        await BatchedQuizGenerator(client_factory, usage).generate(
            BRIEF, 13, 5, GenerationParams(num_questions=13), "sk-test"
        )

    assert excinfo.value.start_index == 5
    assert "batch starting at 5" in str(excinfo.value)
    assert fake_client.count("generate_json") == 2


@pytest.mark.asyncio
async def test_zero_valid_questions_is_fatal(fake_client, client_factory, usage):
    fake_client.json_reply = lambda prompt, batch: {"questions": [{"questionType": "openEnded", "question": "", "answer": "x"}]}

    with pytest.raises(NoQuestionsGeneratedError, match="failed to generate any valid questions"):
        await BatchedQuizGenerator(client_factory, usage).generate(
            BRIEF, 3, 5, GenerationParams(num_questions=3), "sk-test"
        )


@pytest.mark.asyncio
async def test_cancellation_is_observed_between_batches(fake_client, client_factory, usage):
    token = CancellationToken(stage="generating", epoch=1)

    def reply(prompt, batch):
        token.cancel()
        return question_payload(5, prefix=f"B{batch}")

    fake_client.json_reply = reply

    outcome = await BatchedQuizGenerator(client_factory, usage).generate(
        BRIEF, 13, 5, GenerationParams(num_questions=13), "sk-test", token=token
    )

    assert outcome.cancelled is True
    assert len(outcome.questions) == 5
    assert fake_client.count("generate_json") == 1


@pytest.mark.asyncio
async def test_cancelled_before_first_batch_is_not_an_error(fake_client, client_factory, usage):
    token = CancellationToken(stage="generating", epoch=1)
    token.cancel()

    outcome = await BatchedQuizGenerator(client_factory, usage).generate(
        BRIEF, 5, 5, GenerationParams(num_questions=5), "sk-test", token=token
    )

    assert outcome.cancelled is True
    assert outcome.questions == []
    assert fake_client.calls == []


@pytest.mark.asyncio
async def test_overshooting_batch_is_trimmed(fake_client, client_factory, usage):
    fake_client.json_reply = lambda prompt, batch: question_payload(8, prefix=f"B{batch}")

    outcome = await BatchedQuizGenerator(client_factory, usage).generate(
        BRIEF, 3, 5, GenerationParams(num_questions=3), "sk-test"
    )

    assert len(outcome.questions) == 3


def test_parse_rejects_answers_outside_the_options():
    payload = {
        "questions": [
            {"questionType": "multipleChoice", "question": "2+2?", "options": ["1", "2", "3", "4"], "answer": "5"},
            {"questionType": "multipleChoice", "question": "3+3?", "options": ["6", "7", "8", "9"], "answer": "6"},
            {"questionType": "multipleChoice", "question": "dup?", "options": ["a", "a", "b", "c"], "answer": "a"},
            {"questionType": "multipleChoice", "question": "few?", "options": ["a", "b"], "answer": "a"},
            {"questionType": "openEnded", "question": "Why is the sky blue?", "answer": "Rayleigh scattering"},
            {"questionType": "essay", "question": "Unknown type", "answer": "?"},
            "not an object",
        ]
    }

    accepted, rejected = parse_questions(payload)

    assert [q.question for q in accepted] == ["3+3?", "Why is the sky blue?"]
    assert isinstance(accepted[0], MultipleChoiceQuestion)
    assert isinstance(accepted[1], OpenEndedQuestion)
    assert rejected == 5


def test_parse_accepts_wrapped_quiz_payload():
    accepted, rejected = parse_questions({"quiz": question_payload(2)})

    assert len(accepted) == 2
    assert rejected == 0


def test_parse_ignores_non_list_payloads():
    assert parse_questions({"questions": "none"}) == ([], 0)
    assert parse_questions({}) == ([], 0)


def test_prompt_reflects_format_and_hell_bound(client_factory, usage):
    generator = BatchedQuizGenerator(client_factory, usage)

    plain = generator.build_prompt(BRIEF, 4, GenerationParams(question_format=QuestionFormat.OPEN_ENDED), [])
    hell = generator.build_prompt(BRIEF, 4, GenerationParams(hell_bound=True, topic_hint="enzymes"), ["Old question?"])

    assert "openEnded" in plain and "exceptionally hard" not in plain
    assert "exceptionally hard" in hell
    assert "balanced mix" in hell
    assert "enzymes" in hell
    assert "- Old question?" in hell
