from __future__ import annotations

import json
import os
from typing import Any, Callable, Dict, List, Optional

from redis import Redis

from studyquiz.logging_config import get_logger
from studyquiz.utils.types import GenerationProgress

logger = get_logger(__name__)

PROGRESS_REDIS_URL = os.getenv("PROGRESS_REDIS_URL", "redis://localhost:6379/2")

ProgressListener = Callable[[GenerationProgress], None]


class ProgressTracker:
    """Owns the single progress record shown to the user.

    Within a stage ``current`` only moves forward; ``start`` and ``reset`` are the
    stage transitions that may bring it back to zero.
    """

    def __init__(self, listeners: Optional[List[ProgressListener]] = None) -> None:
        self.state = GenerationProgress()
        self.stage = ""
        self._listeners: List[ProgressListener] = list(listeners or [])

    def subscribe(self, listener: ProgressListener) -> None:
        self._listeners.append(listener)

    def _publish(self) -> None:
        snapshot = self.state.copy()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.warning("A progress listener failed; continuing.", exc_info=True)

    def start(self, stage: str, total: int, message: str = "") -> None:
        self.stage = stage
        self.state = GenerationProgress(current=0, total=max(0, int(total)), message=message)
        self._publish()

    def retotal(self, total: int, message: str | None = None) -> None:
        """Grow the denominator, e.g. once a PDF's page count is known."""
        self.state.total = max(self.state.total, int(total), self.state.current)
        if message is not None:
            self.state.message = message
        self._publish()

    def update(self, current: int, message: str | None = None) -> None:
        self.state.current = max(self.state.current, int(current))
        if self.state.total and self.state.current > self.state.total:
            self.state.total = self.state.current
        if message is not None:
            self.state.message = message
        self._publish()

    def advance(self, amount: int = 1, message: str | None = None) -> None:
        self.update(self.state.current + max(0, int(amount)), message)

    def message(self, message: str) -> None:
        self.state.message = message
        self._publish()

    def reset(self) -> None:
        self.stage = ""
        self.state = GenerationProgress()
        self._publish()


class RedisProgressPublisher:
    """Mirror progress snapshots into a Redis hash + pubsub channel for websocket followers."""

    def __init__(self, job_id: str, redis_url: str | None = None, client: Redis | None = None) -> None:
        self.job_id = job_id
        self.client = client or Redis.from_url(redis_url or PROGRESS_REDIS_URL, decode_responses=True)

    @property
    def key(self) -> str:
        return f"job:{self.job_id}"

    @property
    def channel(self) -> str:
        return f"progress:{self.job_id}"

    def emit(self, status: str, current_step: str, progress: GenerationProgress | None = None, extra: Dict[str, Any] | None = None) -> None:
        payload: Dict[str, Any] = {"job_id": self.job_id, "status": status, "current_step": current_step}
        if progress is not None:
            payload.update({"current": progress.current, "total": progress.total, "message": progress.message, "progress": progress.percent})
        if extra:
            payload.update(extra)
        try:
            self.client.hset(self.key, mapping={k: str(v) for k, v in payload.items() if v is not None})
            self.client.publish(self.channel, json.dumps(payload, default=str))
        except Exception:
            logger.warning("Failed to publish progress | job=%s", self.job_id, exc_info=True)

    def listener(self, status: str = "RUNNING") -> ProgressListener:
        def _listen(progress: GenerationProgress) -> None:
            self.emit(status=status, current_step=progress.message or "running", progress=progress)

        return _listen
