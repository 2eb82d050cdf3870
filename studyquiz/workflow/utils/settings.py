from __future__ import annotations

import os
from types import SimpleNamespace
from typing import Any, Dict

from studyquiz.utils.usage import FREE_TIER_BUDGET


def default_settings(*, override: Dict[str, Any] | None = None) -> SimpleNamespace:
    """Build pipeline settings from the environment, then apply ``override``."""
    settings = SimpleNamespace(
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        openai_base_url=os.getenv("OPENAI_BASE_URL") or None,
        ocr_lang=os.getenv("OCR_LANG", "eng"),
        ocr_render_scale=float(os.getenv("OCR_RENDER_SCALE", "2.0")),
        eco_mode=os.getenv("ECO_MODE", "").lower() in {"1", "true", "yes"},
        batch_size=int(os.getenv("QUIZ_BATCH_SIZE", 5)),
        max_questions=int(os.getenv("QUIZ_MAX_QUESTIONS", 100)),
        ai_max_retries=int(os.getenv("AI_MAX_RETRIES", 3)),
        ai_retry_delay=float(os.getenv("AI_RETRY_DELAY", 2.0)),
        usage_budget=int(os.getenv("FREE_TIER_BUDGET", FREE_TIER_BUDGET)),
        progress_redis_url=os.getenv("PROGRESS_REDIS_URL", "redis://localhost:6379/2"),
    )
    if override:
        for key, val in normalize_settings(override).items():
            setattr(settings, key, val)
    return settings


def normalize_settings(settings: Dict[str, Any] | None) -> Dict[str, Any]:
    """Normalize common alias keys."""
    if settings is None:
        return {}
    normalized = dict(settings)
    if normalized.get("api_key") and not normalized.get("openai_api_key"):
        normalized["openai_api_key"] = normalized.pop("api_key")
    if normalized.get("model") and not normalized.get("openai_model"):
        normalized["openai_model"] = normalized.pop("model")
    if "eco" in normalized and "eco_mode" not in normalized:
        normalized["eco_mode"] = bool(normalized.pop("eco"))
    return normalized
