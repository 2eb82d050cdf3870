from __future__ import annotations

from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator


class QuestionFormat(str, Enum):
    MULTIPLE_CHOICE = "multipleChoice"
    OPEN_ENDED = "openEnded"
    MIXED = "mixed"
    PROBLEM_SOLVING = "problemSolving"


class Difficulty(str, Enum):
    EASY = "Easy"
    MEDIUM = "Medium"
    HARD = "Hard"


class _QuestionBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    question: str = Field(..., min_length=1)
    answer: str = Field(..., min_length=1)


class MultipleChoiceQuestion(_QuestionBase):
    question_type: Literal["multipleChoice"] = Field("multipleChoice", alias="questionType")
    options: List[str] = Field(..., min_length=4, max_length=4)

    @field_validator("options")
    @classmethod
    def _distinct_options(cls, options: List[str]) -> List[str]:
        cleaned = [str(opt).strip() for opt in options]
        if any(not opt for opt in cleaned):
            raise ValueError("options must not be blank")
        if len(set(cleaned)) != len(cleaned):
            raise ValueError("options must be distinct")
        return cleaned

    @model_validator(mode="after")
    def _answer_is_an_option(self) -> "MultipleChoiceQuestion":
        if self.answer not in self.options:
            raise ValueError("answer must match one of the options exactly")
        return self


class OpenEndedQuestion(_QuestionBase):
    question_type: Literal["openEnded"] = Field("openEnded", alias="questionType")


class ProblemSolvingQuestion(_QuestionBase):
    question_type: Literal["problemSolving"] = Field("problemSolving", alias="questionType")


Question = Annotated[
    Union[MultipleChoiceQuestion, OpenEndedQuestion, ProblemSolvingQuestion],
    Field(discriminator="question_type"),
]
QuestionAdapter: TypeAdapter = TypeAdapter(Question)


class Quiz(BaseModel):
    questions: List[Question] = Field(default_factory=list)


class GenerationParams(BaseModel):
    num_questions: int = Field(10, ge=1, le=100, description="Total questions requested")
    difficulty: Difficulty = Field(Difficulty.MEDIUM, description="Difficulty calibration")
    question_format: QuestionFormat = Field(QuestionFormat.MULTIPLE_CHOICE, description="Question format")
    topic_hint: Optional[str] = Field(None, description="Optional topics to focus on")
    hell_bound: bool = Field(False, description="Harder, trick-heavy question style")
    timer_per_question: int = Field(0, ge=0, le=3600, description="Seconds per question; 0 disables the timer")


class ValidationStatus(str, Enum):
    CORRECT = "Correct"
    PARTIALLY_CORRECT = "Partially Correct"
    INCORRECT = "Incorrect"


class ValidateAnswerResult(BaseModel):
    status: ValidationStatus
    explanation: str = ""


class LatexExtraction(BaseModel):
    latex_representation: str = ""
    steps_extracted: List[str] = Field(default_factory=list)
    confidence_score: float = Field(0.0, ge=0, le=100)


class ApiKeyValidation(BaseModel):
    success: bool
    error: Optional[str] = None


class ImageOcrRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    image_data_url: str = Field(..., alias="imageDataUrl", description="data:image/...;base64,... payload")
    local_ocr_attempt: Optional[str] = Field(None, alias="localOcrAttempt", description="Hint text from local OCR")
    api_key: Optional[str] = Field(None, alias="apiKey")


class ValidateApiKeyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    api_key: str = Field(..., alias="apiKey")


class ValidateAnswerRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    question: str = Field(..., min_length=1)
    user_answer: str = Field(..., alias="userAnswer", min_length=1)
    correct_answer: str = Field(..., alias="correctAnswer", min_length=1)
    api_key: Optional[str] = Field(None, alias="apiKey")


class SummarizeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    content: str = Field(..., min_length=1)
    api_key: Optional[str] = Field(None, alias="apiKey")


class QuizJobOptions(GenerationParams):
    eco_mode: bool = Field(False, description="Never escalate OCR to the AI model")
    batch_size: Optional[int] = Field(None, ge=1, le=20, description="Questions per AI call")
