from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, List, Optional

from openai import APIConnectionError, APIError, APIStatusError, AsyncOpenAI

from studyquiz.errors import AIServiceError, ModelOverloadedError
from studyquiz.logging_config import get_logger
from studyquiz.workflow.utils.request_models import (
    ApiKeyValidation,
    LatexExtraction,
    ValidateAnswerResult,
    ValidationStatus,
)
from studyquiz.workflow.utils.settings import default_settings

logger = get_logger(__name__)

ERROR_BODY_PREVIEW = 200

OCR_SYSTEM_PROMPT = (
    "You are a meticulous transcription assistant. Transcribe ALL text visible in the image, "
    "including handwriting, preserving line breaks and reading order. Do not summarize or explain. "
    'Respond with strict JSON: {"extractedText": "..."}'
)

LATEX_SYSTEM_PROMPT = (
    "You transcribe handwritten or printed mathematics. Convert every expression to LaTeX and list "
    "each solution step separately. Respond with strict JSON:\n"
    '{"latex_representation": "...", "steps_extracted": ["..."], "confidence_score": 0-100}'
)


def error_message_from_body(body: Any, raw: str | None = None) -> str:
    """Pick the human-readable message out of a provider error body."""
    if isinstance(body, (str, bytes)):
        try:
            body = json.loads(body)
        except (TypeError, ValueError):
            pass
    if isinstance(body, dict):
        if isinstance(body.get("message"), str) and body["message"].strip():
            return body["message"].strip()
        error = body.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str) and error["message"].strip():
            return error["message"].strip()
        if isinstance(error, str) and error.strip():
            return error.strip()
        if body.get("details"):
            return str(body["details"]).strip()
    text = raw if raw is not None else (body if isinstance(body, str) else "")
    text = (text or "").strip()
    if not text:
        return "Unknown error from the AI service"
    return text[:ERROR_BODY_PREVIEW]


def is_overloaded(status_code: int | None, message: str) -> bool:
    return status_code == 503 or "overloaded" in (message or "").lower()


class AIClient:
    """Thin async wrapper around the chat completions API with overload retry.

    Every call goes through ``_complete`` so status errors are mapped onto
    ``AIServiceError`` / ``ModelOverloadedError`` in one place.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        *,
        base_url: Optional[str] = None,
        max_retries: int = 3,
        retry_delay: float = 2.0,
        client: Any = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if not api_key and client is None:
            raise AIServiceError("An API key is required for AI calls.", status_code=401)
        self.api_key = api_key
        self.model = model
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self._sleep = sleep
        # SDK-level retries are disabled; overload retry is handled here.
        self._client = client or AsyncOpenAI(api_key=api_key, base_url=base_url, max_retries=0)

    async def _complete(
        self,
        messages: List[Dict[str, Any]],
        *,
        temperature: float = 0.3,
        max_tokens: Optional[int] = None,
        json_mode: bool = False,
        retry: bool = True,
    ) -> str:
        kwargs: Dict[str, Any] = {"model": self.model, "messages": messages, "temperature": temperature}
        if max_tokens:
            kwargs["max_tokens"] = max_tokens
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        attempts = self.max_retries if retry else 1
        for attempt in range(1, attempts + 1):
            try:
                response = await self._client.chat.completions.create(**kwargs)
            except APIStatusError as exc:
                raw = exc.response.text if exc.response is not None else None
                message = error_message_from_body(exc.body, raw)
                if is_overloaded(exc.status_code, message):
                    if attempt < attempts:
                        delay = self.retry_delay * attempt
                        logger.warning("Model overloaded | attempt=%s/%s retry_in=%.1fs", attempt, attempts, delay)
                        await self._sleep(delay)
                        continue
                    raise ModelOverloadedError(status_code=exc.status_code) from exc
                raise AIServiceError(message, status_code=exc.status_code) from exc
            except APIConnectionError as exc:
                raise AIServiceError(f"Could not reach the AI service: {exc}") from exc
            except APIError as exc:
                raise AIServiceError(str(exc)) from exc
            if not response.choices:
                raise AIServiceError("The AI service returned no choices.")
            return response.choices[0].message.content or ""
        raise ModelOverloadedError()

    async def generate_text(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: Optional[int] = None,
    ) -> str:
        messages: List[Dict[str, Any]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        return (await self._complete(messages, temperature=temperature, max_tokens=max_tokens)).strip()

    async def generate_json(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: Optional[int] = None,
    ) -> Any:
        messages: List[Dict[str, Any]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        content = await self._complete(messages, temperature=temperature, max_tokens=max_tokens, json_mode=True)
        return _extract_json(content)

    async def _vision_json(self, system: str, data_url: str, hint: Optional[str]) -> Dict[str, Any]:
        instruction = "Transcribe this image."
        if hint and hint.strip():
            instruction += f"\nA local OCR pass produced this (possibly wrong) text; use it only as a hint:\n{hint.strip()}"
        messages = [
            {"role": "system", "content": system},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": instruction},
                    {"type": "image_url", "image_url": {"url": data_url}},
                ],
            },
        ]
        # Vision calls are single-shot: one escalation is one paid request.
        content = await self._complete(messages, temperature=0.0, json_mode=True, retry=False)
        data = _extract_json(content)
        if not isinstance(data, dict) or not data:
            raise AIServiceError(f"Malformed OCR response: {content[:ERROR_BODY_PREVIEW]}")
        return data

    async def extract_text_from_image(self, data_url: str, hint: Optional[str] = None) -> str:
        data = await self._vision_json(OCR_SYSTEM_PROMPT, data_url, hint)
        text = data.get("extractedText")
        if not isinstance(text, str):
            raise AIServiceError("Malformed OCR response: missing extractedText")
        return text

    async def extract_latex_from_image(self, data_url: str, hint: Optional[str] = None) -> LatexExtraction:
        data = await self._vision_json(LATEX_SYSTEM_PROMPT, data_url, hint)
        try:
            return LatexExtraction.model_validate(data)
        except ValueError as exc:
            raise AIServiceError(f"Malformed LaTeX response: {exc}") from exc

    async def validate_api_key(self) -> ApiKeyValidation:
        """Make the smallest real call and classify any failure."""
        try:
            await self._complete([{"role": "user", "content": "Reply with OK."}], temperature=0.0, max_tokens=2)
        except AIServiceError as exc:
            return ApiKeyValidation(success=False, error=classify_key_error(exc.message))
        return ApiKeyValidation(success=True)

    async def analyze_for_math(self, content: str) -> bool:
        prompt = (
            "Does the following study material contain mathematical notation, equations, formulas or "
            'calculations? Respond with strict JSON: {"hasMath": true|false}\n\n'
            f"{content[:8000]}"
        )
        try:
            data = await self.generate_json(prompt, temperature=0.0)
        except AIServiceError:
            logger.warning("Math analysis failed; assuming math content", exc_info=True)
            return True
        if isinstance(data, dict) and isinstance(data.get("hasMath"), bool):
            return data["hasMath"]
        return True

    async def validate_answer(self, question: str, user_answer: str, correct_answer: str) -> ValidateAnswerResult:
        prompt = (
            "Grade the student's answer against the reference answer. Accept paraphrases and equivalent "
            "working. Respond with strict JSON:\n"
            '{"status": "Correct" | "Partially Correct" | "Incorrect", "explanation": "..."}\n\n'
            f"Question: {question}\nReference answer: {correct_answer}\nStudent answer: {user_answer}"
        )
        data = await self.generate_json(prompt, temperature=0.0)
        status = data.get("status") if isinstance(data, dict) else None
        try:
            return ValidateAnswerResult(status=ValidationStatus(status), explanation=str(data.get("explanation") or ""))
        except ValueError as exc:
            raise AIServiceError(f"Malformed grading response: {status!r}") from exc

    async def summarize(self, content: str) -> str:
        summary = await self.generate_text(
            f"Summarize the following document as concise Markdown study notes:\n\n{content}",
            system="You write faithful, compact study summaries.",
        )
        if not summary:
            raise AIServiceError("The AI service returned an empty summary.")
        return summary


def classify_key_error(message: str) -> str:
    if "API key not valid" in message or "Incorrect API key" in message or "invalid_api_key" in message:
        return "Invalid API key. Please check the key and try again."
    if "permission" in message.lower():
        return "This API key does not have permission to use the model."
    if "quota" in message.lower():
        return "This API key has exceeded its quota."
    return message


class AIClientFactory:
    """Builds ``AIClient`` instances for per-user API keys from shared settings."""

    def __init__(self, settings: Any = None) -> None:
        self.settings = settings or default_settings()

    def __call__(self, api_key: str) -> AIClient:
        return AIClient(
            api_key,
            model=self.settings.openai_model,
            base_url=self.settings.openai_base_url,
            max_retries=self.settings.ai_max_retries,
            retry_delay=self.settings.ai_retry_delay,
        )


def _extract_json(content: str) -> Any:
    try:
        return json.loads(content)
    except json.JSONDecodeError:
        try:
            start = content.index("{")
            end = content.rindex("}")
            return json.loads(content[start : end + 1])
        except (ValueError, json.JSONDecodeError):
            try:
                start = content.index("[")
                end = content.rindex("]")
                return json.loads(content[start : end + 1])
            except (ValueError, json.JSONDecodeError):
                logger.warning("Failed to parse JSON content: %s", content[:ERROR_BODY_PREVIEW])
                return {}
