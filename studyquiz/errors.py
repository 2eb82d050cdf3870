from __future__ import annotations


class StudyQuizError(Exception):
    """Base class for pipeline failures that carry a user-facing message."""


class ExtractionError(StudyQuizError):
    """A single uploaded file could not be turned into text."""

    def __init__(self, file_name: str, cause: str) -> None:
        self.file_name = file_name
        self.cause = cause
        super().__init__(f"Could not process {file_name}: {cause}")


class OcrError(StudyQuizError):
    """Local OCR failed and there was no permitted fallback."""


class AIServiceError(StudyQuizError):
    """The AI provider rejected a call or returned something unusable."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class ModelOverloadedError(AIServiceError):
    """The AI model reported it is overloaded (HTTP 503); usually transient."""

    default_message = "The AI model is overloaded. Please try again shortly."

    def __init__(self, message: str | None = None, status_code: int | None = 503) -> None:
        super().__init__(message or self.default_message, status_code)


class RemoteOcrError(AIServiceError):
    """The remote OCR escalation failed or returned a malformed reply."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(f"AI OCR Failed: {message}", status_code)


class SynthesisError(StudyQuizError):
    """Key-concept synthesis failed; generation cannot continue without a brief."""


class BatchGenerationError(StudyQuizError):
    """A quiz batch call failed; identifies the batch by its first question index."""

    def __init__(self, start_index: int, cause: str) -> None:
        self.start_index = start_index
        self.cause = cause
        super().__init__(f"Quiz generation failed in batch starting at {start_index}: {cause}")


class NoQuestionsGeneratedError(StudyQuizError):
    def __init__(self) -> None:
        super().__init__(
            "The AI failed to generate any valid questions. Please check your content or settings and try again."
        )


class ApiKeyRequiredError(StudyQuizError):
    def __init__(self, action: str = "uploading files") -> None:
        super().__init__(f"Please set your API key before {action}.")


class PipelineStateError(StudyQuizError):
    """An operation was requested from a state that does not allow it."""


class OperationCancelled(Exception):
    """Raised by a cancellation token check; not a failure."""
