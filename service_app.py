from __future__ import annotations

import json
import os
import uuid
from dataclasses import dataclass
from enum import Enum
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional

from fastapi import BackgroundTasks, Body, Depends, FastAPI, File, Form, HTTPException, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError

from studyquiz.errors import AIServiceError, StudyQuizError
from studyquiz.logging_config import get_logger
from studyquiz.utils.types import Notification, UploadedFile
from studyquiz.utils.usage import RedisUsageTracker
from studyquiz.workflow.controller import PipelineController, PipelineState
from studyquiz.workflow.llm import AIClient, AIClientFactory
from studyquiz.workflow.progress import RedisProgressPublisher
from studyquiz.workflow.utils.request_models import (
    ImageOcrRequest,
    QuestionAdapter,
    QuizJobOptions,
    SummarizeRequest,
    ValidateAnswerRequest,
    ValidateApiKeyRequest,
)
from studyquiz.workflow.utils.settings import default_settings

logger = get_logger("studyquiz.service")

progress_client: Redis | None = None

ControllerFactory = Callable[[str, Callable[[Notification], None]], PipelineController]
PublisherFactory = Callable[[str], RedisProgressPublisher]


class JobStatus(str, Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


TERMINAL_STATUSES = {JobStatus.COMPLETED.value, JobStatus.CANCELLED.value, JobStatus.FAILED.value, "ERROR"}


@dataclass
class QuizJob:
    job_id: str
    controller: PipelineController
    publisher: RedisProgressPublisher
    status: JobStatus = JobStatus.QUEUED
    error: Optional[str] = None

    def snapshot(self) -> Dict[str, Any]:
        controller = self.controller
        progress = controller.progress.state
        payload: Dict[str, Any] = {
            "job_id": self.job_id,
            "status": self.status.value,
            "state": controller.state.value,
            "progress": {
                "current": progress.current,
                "total": progress.total,
                "message": progress.message,
                "percent": progress.percent,
            },
            "files": [f.name for f in controller.files],
            "has_math_content": controller.has_math_content,
            "notifications": [n.__dict__ for n in controller.notifications],
            "error": self.error,
        }
        if controller.quiz is not None:
            payload["questions"] = [
                QuestionAdapter.dump_python(q, by_alias=True, mode="json") for q in controller.quiz.questions
            ]
        return payload


JOBS: Dict[str, QuizJob] = {}
# Finished jobs kept in memory; older ones are served from the Redis snapshot.
MAX_RETAINED_JOBS = int(os.getenv("MAX_RETAINED_JOBS", "200"))


def _evict_finished_jobs() -> None:
    finished = [job_id for job_id, job in JOBS.items() if job.status.value in TERMINAL_STATUSES]
    for job_id in finished[: max(len(finished) - MAX_RETAINED_JOBS, 0)]:
        del JOBS[job_id]
        logger.debug("Evicted finished job | job=%s", job_id)

app = FastAPI(title="Study Quiz Service")


def get_settings() -> SimpleNamespace:
    return default_settings()


def get_client_factory(settings: SimpleNamespace = Depends(get_settings)) -> Callable[[str], AIClient]:
    return AIClientFactory(settings)


def get_controller_factory(settings: SimpleNamespace = Depends(get_settings)) -> ControllerFactory:
    def build(api_key: str, notify: Callable[[Notification], None]) -> PipelineController:
        usage = RedisUsageTracker(settings.progress_redis_url, api_key, budget=settings.usage_budget)
        return PipelineController.from_settings(settings, api_key=api_key, usage=usage, notify=notify)

    return build


def get_publisher_factory(settings: SimpleNamespace = Depends(get_settings)) -> PublisherFactory:
    return lambda job_id: RedisProgressPublisher(job_id, redis_url=settings.progress_redis_url)


async def get_progress_client(settings: SimpleNamespace = Depends(get_settings)) -> Redis:
    global progress_client
    if progress_client is None:
        progress_client = Redis.from_url(settings.progress_redis_url, decode_responses=True)
    return progress_client


def _resolve_api_key(candidate: Optional[str], settings: SimpleNamespace) -> str:
    api_key = (candidate or "").strip() or settings.openai_api_key
    if not api_key:
        raise HTTPException(status_code=401, detail="An API key is required")
    return api_key


def _error_response(error: str, exc: AIServiceError) -> JSONResponse:
    status_code = exc.status_code if exc.status_code and exc.status_code >= 400 else 500
    return JSONResponse({"error": error, "details": exc.message}, status_code=status_code)


@app.get("/health")
async def health() -> JSONResponse:
    return JSONResponse({"status": "ok"})


@app.post("/api/extract-text-from-image")
async def extract_text_from_image(
    payload: ImageOcrRequest = Body(...),
    settings: SimpleNamespace = Depends(get_settings),
    client_factory: Callable[[str], AIClient] = Depends(get_client_factory),
) -> JSONResponse:
    api_key = _resolve_api_key(payload.api_key, settings)
    try:
        text = await client_factory(api_key).extract_text_from_image(payload.image_data_url, payload.local_ocr_attempt)
    except AIServiceError as exc:
        logger.warning("Image OCR failed | error=%s", exc.message)
        return _error_response("Failed to extract text from image", exc)
    return JSONResponse({"extractedText": text})


@app.post("/api/extract-latex-from-image")
async def extract_latex_from_image(
    payload: ImageOcrRequest = Body(...),
    settings: SimpleNamespace = Depends(get_settings),
    client_factory: Callable[[str], AIClient] = Depends(get_client_factory),
) -> JSONResponse:
    api_key = _resolve_api_key(payload.api_key, settings)
    try:
        result = await client_factory(api_key).extract_latex_from_image(payload.image_data_url, payload.local_ocr_attempt)
    except AIServiceError as exc:
        logger.warning("LaTeX OCR failed | error=%s", exc.message)
        return _error_response("Failed to extract LaTeX from image", exc)
    return JSONResponse(result.model_dump())


@app.post("/api/validate-api-key")
async def validate_api_key(
    payload: ValidateApiKeyRequest = Body(...),
    client_factory: Callable[[str], AIClient] = Depends(get_client_factory),
) -> JSONResponse:
    if not payload.api_key.strip():
        return JSONResponse({"success": False, "error": "API key is required"}, status_code=400)
    result = await client_factory(payload.api_key.strip()).validate_api_key()
    return JSONResponse(result.model_dump(exclude_none=True))


@app.post("/api/validate-answer")
async def validate_answer(
    payload: ValidateAnswerRequest = Body(...),
    settings: SimpleNamespace = Depends(get_settings),
    client_factory: Callable[[str], AIClient] = Depends(get_client_factory),
) -> JSONResponse:
    api_key = _resolve_api_key(payload.api_key, settings)
    try:
        result = await client_factory(api_key).validate_answer(payload.question, payload.user_answer, payload.correct_answer)
    except AIServiceError as exc:
        return _error_response("Failed to validate answer", exc)
    return JSONResponse({"status": result.status.value, "explanation": result.explanation})


@app.post("/api/summarize-document")
async def summarize_document(
    payload: SummarizeRequest = Body(...),
    settings: SimpleNamespace = Depends(get_settings),
    client_factory: Callable[[str], AIClient] = Depends(get_client_factory),
) -> JSONResponse:
    api_key = _resolve_api_key(payload.api_key, settings)
    try:
        summary = await client_factory(api_key).summarize(payload.content)
    except AIServiceError as exc:
        return _error_response("Failed to generate summary", exc)
    return JSONResponse({"summary": summary})


async def run_quiz_job(job: QuizJob, files: List[UploadedFile], options: QuizJobOptions) -> None:
    """Ingest the uploads, then generate the quiz; the final status lands in Redis."""
    controller = job.controller
    job.status = JobStatus.RUNNING
    job.publisher.emit(status=job.status.value, current_step=PipelineState.PARSING.value)
    try:
        report = await controller.upload(files)
        if report.cancelled:
            job.status = JobStatus.CANCELLED
        elif not controller.files:
            job.status = JobStatus.FAILED
            job.error = "None of the uploaded files could be processed."
        else:
            outcome = await controller.start_quiz(options)
            if outcome is None:
                job.status = JobStatus.FAILED
                errors = [n.message for n in controller.notifications if n.level == "error"]
                job.error = errors[-1] if errors else "Quiz generation failed."
            elif outcome.cancelled:
                job.status = JobStatus.CANCELLED
            else:
                job.status = JobStatus.COMPLETED
    except StudyQuizError as exc:
        logger.warning("Quiz job failed | job=%s error=%s", job.job_id, exc)
        job.status = JobStatus.FAILED
        job.error = str(exc)
    except Exception as exc:
        logger.exception("Quiz job crashed | job=%s", job.job_id)
        job.status = JobStatus.FAILED
        job.error = f"Unexpected error: {exc}"
    finally:
        if job.status not in (JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.FAILED):
            job.status = JobStatus.FAILED
            job.error = job.error or "The job stopped before finishing."
        extra: Dict[str, Any] = {"error": job.error}
        if job.status is JobStatus.COMPLETED and controller.quiz is not None:
            extra["questions"] = json.dumps(job.snapshot()["questions"])
        job.publisher.emit(status=job.status.value, current_step=controller.state.value, extra=extra)
        logger.info("Quiz job finished | job=%s status=%s", job.job_id, job.status.value)
        _evict_finished_jobs()


@app.post("/api/quiz-jobs")
async def create_quiz_job(
    background_tasks: BackgroundTasks,
    files: List[UploadFile] = File(...),
    options: str = Form("{}"),
    api_key: Optional[str] = Form(None, alias="apiKey"),
    settings: SimpleNamespace = Depends(get_settings),
    controller_factory: ControllerFactory = Depends(get_controller_factory),
    publisher_factory: PublisherFactory = Depends(get_publisher_factory),
) -> JSONResponse:
    """Accept uploads plus JSON options and run ingestion + generation in the background."""
    key = _resolve_api_key(api_key, settings)
    try:
        job_options = QuizJobOptions.model_validate_json(options or "{}")
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=json.loads(exc.json())) from exc
    if job_options.num_questions > settings.max_questions:
        raise HTTPException(
            status_code=422,
            detail=f"num_questions must be at most {settings.max_questions}",
        )

    uploads = [UploadedFile.from_bytes(f.filename or "upload", await f.read(), f.content_type) for f in files]
    job_id = str(uuid.uuid4())
    publisher = publisher_factory(job_id)
    controller = controller_factory(
        key, lambda n: logger.info("Job notice | job=%s level=%s title=%s", job_id, n.level, n.title)
    )
    controller.eco_mode = job_options.eco_mode
    controller.batch_size = job_options.batch_size or settings.batch_size
    controller.progress.subscribe(publisher.listener(JobStatus.RUNNING.value))

    job = QuizJob(job_id=job_id, controller=controller, publisher=publisher)
    JOBS[job_id] = job
    publisher.emit(status=JobStatus.QUEUED.value, current_step="queued", extra={"files": len(uploads)})
    background_tasks.add_task(run_quiz_job, job, uploads, job_options)
    return JSONResponse({"job_id": job_id, "status": "queued", "files": [u.name for u in uploads]}, status_code=202)


@app.get("/api/quiz-jobs/{job_id}")
async def get_quiz_job(job_id: str, client: Redis = Depends(get_progress_client)) -> JSONResponse:
    job = JOBS.get(job_id)
    if job is not None:
        return JSONResponse(job.snapshot())
    try:
        snapshot = await client.hgetall(f"job:{job_id}")
    except RedisError:
        logger.warning("Progress lookup failed | job=%s", job_id, exc_info=True)
        snapshot = {}
    if not snapshot:
        raise HTTPException(status_code=404, detail="Job not found")
    return JSONResponse(snapshot)


@app.post("/api/quiz-jobs/{job_id}/cancel")
async def cancel_quiz_job(job_id: str) -> JSONResponse:
    job = JOBS.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    cancelled = job.controller.cancel_parsing() or job.controller.cancel_generation()
    return JSONResponse({"job_id": job_id, "cancelled": cancelled, "status": job.status.value})


@app.websocket("/ws/progress/{job_id}")
async def progress_ws(websocket: WebSocket, job_id: str, client: Redis = Depends(get_progress_client)):
    """Websocket endpoint that streams progress updates for a quiz job."""
    await websocket.accept()
    channel = f"progress:{job_id}"
    key = f"job:{job_id}"
    pubsub = client.pubsub()
    await pubsub.subscribe(channel)
    try:
        snapshot = await client.hgetall(key)
        if snapshot:
            await websocket.send_json({"type": "snapshot", "job_id": job_id, **snapshot})
            if str(snapshot.get("status", "")).upper() in TERMINAL_STATUSES:
                return
        while True:
            message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=10.0)
            if message and message.get("data"):
                try:
                    payload = json.loads(message["data"])
                except (TypeError, json.JSONDecodeError):
                    payload = {"raw": message["data"]}
                payload.setdefault("job_id", job_id)
                payload.setdefault("type", "progress")
                await websocket.send_json(payload)
                if str(payload.get("status", "")).upper() in TERMINAL_STATUSES:
                    break
            else:
                snapshot = await client.hgetall(key)
                await websocket.send_json({"type": "heartbeat", "job_id": job_id, **snapshot})
                if str(snapshot.get("status", "")).upper() in TERMINAL_STATUSES:
                    break
    except WebSocketDisconnect:
        logger.info("Websocket disconnected for job_id=%s", job_id)
    finally:
        await pubsub.unsubscribe(channel)
        await pubsub.close()
