import json
from types import SimpleNamespace

import httpx
import openai
import pytest
from PIL import Image

from conftest import FakeOcrEngine
from studyquiz.errors import AIServiceError, ModelOverloadedError, RemoteOcrError
from studyquiz.utils.usage import UNLIMITED_BUDGET, InMemoryUsageTracker
from studyquiz.workflow.llm import AIClient, _extract_json, classify_key_error, error_message_from_body
from studyquiz.workflow.ocr import LocalOcrStrategy, RemoteOcrStrategy, TieredOcrResolver
from studyquiz.workflow.utils.request_models import ValidationStatus

REQUEST = httpx.Request("POST", "https://api.example.test/v1/chat/completions")


def _status_error(status, body):
    response = httpx.Response(status, request=REQUEST, json=body)
    return openai.APIStatusError(json.dumps(body), response=response, body=body)


def _reply(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


class FakeCompletions:
    """Plays back a script of replies or exceptions, one per ``create`` call."""

    def __init__(self, *script):
        self.script = list(script)
        self.requests = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return _reply(item)


def _client(*script):
    completions = FakeCompletions(*script)
    delays = []

    async def sleep(delay):
        delays.append(delay)

    client = AIClient("sk-test", client=SimpleNamespace(chat=SimpleNamespace(completions=completions)), sleep=sleep)
    return client, completions, delays


def test_extract_json_handles_wrapped_payloads():
    assert _extract_json('{"a": 1}') == {"a": 1}
    assert _extract_json('Sure! ```json\n{"questions": []}\n```') == {"questions": []}
    assert _extract_json("noise [1, 2] noise") == [1, 2]
    assert _extract_json("no json here") == {}


@pytest.mark.parametrize(
    "body, raw, expected",
    [
        ({"message": "Top level"}, None, "Top level"),
        ({"error": {"message": "Nested message", "code": 400}}, None, "Nested message"),
        ({"error": "Plain error"}, None, "Plain error"),
        ({"details": "Only details"}, None, "Only details"),
        ('{"error": {"message": "From text"}}', None, "From text"),
        (None, "<html>" + "x" * 300, ("<html>" + "x" * 300)[:200]),
        (None, "", "Unknown error from the AI service"),
    ],
)
def test_error_message_from_body(body, raw, expected):
    assert error_message_from_body(body, raw) == expected


@pytest.mark.parametrize(
    "message, expected",
    [
        ("Incorrect API key provided: sk-***", "Invalid API key. Please check the key and try again."),
        ("API key not valid. Please pass a valid API key.", "Invalid API key. Please check the key and try again."),
        ("The caller does not have permission", "This API key does not have permission to use the model."),
        ("You exceeded your current quota", "This API key has exceeded its quota."),
        ("Something else", "Something else"),
    ],
)
def test_classify_key_error(message, expected):
    assert classify_key_error(message) == expected


def test_missing_key_is_rejected_up_front():
    with pytest.raises(AIServiceError) as excinfo:
        AIClient("")
    assert excinfo.value.status_code == 401


@pytest.mark.asyncio
async def test_overload_is_retried_with_growing_delay_then_surfaced():
    overloaded = {"error": {"message": "The model is overloaded. Please try again later."}}
    client, completions, delays = _client(*(_status_error(503, overloaded) for _ in range(3)))

    with pytest.raises(ModelOverloadedError):
        await client.generate_text("hello")

    assert len(completions.requests) == 3
    assert delays == [2.0, 4.0]


@pytest.mark.asyncio
async def test_overload_message_without_503_is_also_retried():
    busy = {"error": {"message": "Model overloaded"}}
    client, completions, delays = _client(_status_error(429, busy), "recovered")

    assert await client.generate_text("hello") == "recovered"
    assert delays == [2.0]


@pytest.mark.asyncio
async def test_other_status_errors_are_not_retried():
    client, completions, delays = _client(_status_error(401, {"error": {"message": "Incorrect API key provided"}}))

    with pytest.raises(AIServiceError) as excinfo:
        await client.generate_text("hello")

    assert not isinstance(excinfo.value, ModelOverloadedError)
    assert excinfo.value.status_code == 401
    assert excinfo.value.message == "Incorrect API key provided"
    assert delays == []


@pytest.mark.asyncio
async def test_connection_errors_become_service_errors():
    client, _, _ = _client(openai.APIConnectionError(request=REQUEST))

    with pytest.raises(AIServiceError, match="Could not reach"):
        await client.generate_text("hello")


@pytest.mark.asyncio
async def test_generate_json_requests_json_mode():
    client, completions, _ = _client('{"questions": [{"question": "q"}]}')

    data = await client.generate_json("make a quiz", temperature=0.7)

    assert data == {"questions": [{"question": "q"}]}
    assert completions.requests[0]["response_format"] == {"type": "json_object"}
    assert completions.requests[0]["temperature"] == 0.7


@pytest.mark.asyncio
async def test_image_ocr_sends_the_image_and_hint():
    client, completions, _ = _client('{"extractedText": "E = mc^2"}')

    text = await client.extract_text_from_image("data:image/png;base64,AAAA", hint="E = mc")

    assert text == "E = mc^2"
    content = completions.requests[0]["messages"][1]["content"]
    assert content[1] == {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}}
    assert "E = mc" in content[0]["text"]


@pytest.mark.asyncio
async def test_image_ocr_without_extracted_text_is_malformed():
    client, _, _ = _client('{"text": "wrong field"}')

    with pytest.raises(AIServiceError, match="Malformed OCR response"):
        await client.extract_text_from_image("data:image/png;base64,AAAA")


@pytest.mark.asyncio
async def test_latex_extraction_is_validated():
    client, _, _ = _client('{"latex_representation": "\\\\frac{1}{2}", "steps_extracted": ["a", "b"], "confidence_score": 91}')

    result = await client.extract_latex_from_image("data:image/png;base64,AAAA")

    assert result.latex_representation == "\\frac{1}{2}"
    assert result.steps_extracted == ["a", "b"]
    assert result.confidence_score == 91


@pytest.mark.asyncio
async def test_validate_api_key_reports_quota():
    client, _, _ = _client(_status_error(429, {"error": {"message": "You exceeded your current quota"}}))

    result = await client.validate_api_key()

    assert result.success is False
    assert result.error == "This API key has exceeded its quota."


@pytest.mark.asyncio
async def test_validate_api_key_success():
    client, completions, _ = _client("OK")

    assert (await client.validate_api_key()).success is True
    assert completions.requests[0]["max_tokens"] == 2


@pytest.mark.asyncio
async def test_math_analysis_degrades_to_true():
    client, _, _ = _client(_status_error(500, {"error": {"message": "Internal"}}))

    assert await client.analyze_for_math("plain prose") is True


@pytest.mark.asyncio
async def test_math_analysis_reads_the_flag():
    client, _, _ = _client('{"hasMath": false}')

    assert await client.analyze_for_math("plain prose") is False


@pytest.mark.asyncio
async def test_validate_answer_parses_status():
    client, _, _ = _client('{"status": "Partially Correct", "explanation": "Missing a step."}')

    result = await client.validate_answer("2+2?", "4ish", "4")

    assert result.status is ValidationStatus.PARTIALLY_CORRECT
    assert result.explanation == "Missing a step."


@pytest.mark.asyncio
async def test_validate_answer_rejects_unknown_status():
    client, _, _ = _client('{"status": "Maybe"}')

    with pytest.raises(AIServiceError, match="Malformed grading response"):
        await client.validate_answer("2+2?", "5", "4")


@pytest.mark.asyncio
async def test_image_ocr_is_not_retried_on_overload():
    overloaded = {"error": {"message": "The model is overloaded."}}
    client, completions, delays = _client(_status_error(503, overloaded), '{"extractedText": "late"}')

    with pytest.raises(ModelOverloadedError):
        await client.extract_text_from_image("data:image/png;base64,AAAA")

    assert len(completions.requests) == 1
    assert delays == []


@pytest.mark.asyncio
async def test_overloaded_escalation_is_one_call_and_one_usage():
    overloaded = {"error": {"message": "The model is overloaded."}}
    client, completions, _ = _client(
        _status_error(503, overloaded), _status_error(503, overloaded), '{"extractedText": "late"}'
    )
    usage = InMemoryUsageTracker(budget=UNLIMITED_BUDGET)
    resolver = TieredOcrResolver(
        LocalOcrStrategy(FakeOcrEngine(text="smudge", confidence=10.0)),
        RemoteOcrStrategy(lambda key: client, usage),
    )

    with pytest.raises(RemoteOcrError) as excinfo:
        await resolver.resolve_image(Image.new("RGB", (8, 8), "white"), "sk-test", False)

    assert excinfo.value.status_code == 503
    assert len(completions.requests) == 1
    assert usage.get() == 1
