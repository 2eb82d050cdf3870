from __future__ import annotations

from typing import Callable, Sequence

from studyquiz.errors import AIServiceError, ModelOverloadedError, SynthesisError
from studyquiz.logging_config import get_logger
from studyquiz.utils.types import ProcessedFile
from studyquiz.utils.usage import UsageTracker
from studyquiz.workflow.llm import AIClient

logger = get_logger(__name__)

FILE_SEPARATOR = "\n\n---\n\n"
# Above this many documents the brief is capped per document to keep it short.
MANY_FILES_THRESHOLD = 3
MAX_CONCEPTS_PER_FILE = 5


def render_corpus(files: Sequence[ProcessedFile]) -> str:
    return FILE_SEPARATOR.join(f"# File: {f.name}\n\n{f.content}" for f in files)


def concept_instruction(file_count: int) -> str:
    if file_count > MANY_FILES_THRESHOLD:
        return (
            f"For each document, identify and extract a maximum of {MAX_CONCEPTS_PER_FILE} key concepts. "
            "Keep only the most important, high-level ideas."
        )
    return "For each document, identify and extract all relevant key concepts. Be comprehensive."


class KeyConceptSynthesizer:
    """One AI call that condenses every ingested file into a Markdown brief."""

    def __init__(self, client_factory: Callable[[str], AIClient], usage: UsageTracker) -> None:
        self.client_factory = client_factory
        self.usage = usage

    def build_prompt(self, files: Sequence[ProcessedFile]) -> str:
        return (
            "Analyze the Core Material below, which consists of one or more documents, and extract the key "
            "concepts from each.\n\n"
            f"Core Material:\n{render_corpus(files)}\n\n"
            "Rules:\n"
            f"1. {concept_instruction(len(files))}\n"
            "2. Use only the Core Material; no external knowledge.\n"
            "3. Answer in the language of the Core Material.\n"
            "4. Format the answer as Markdown: a '# File: <name>' header per document, bullet points for "
            "the concepts, and '---' between documents."
        )

    async def synthesize(self, files: Sequence[ProcessedFile], api_key: str) -> str:
        if not files:
            raise SynthesisError("There is no content to analyze. Upload at least one file first.")
        logger.info("Concept synthesis start | files=%s chars=%s", len(files), sum(len(f.content) for f in files))
        self.usage.increment()
        try:
            client = self.client_factory(api_key)
            brief = await client.generate_text(
                self.build_prompt(files),
                system="You are an expert in information synthesis.",
            )
        except ModelOverloadedError:
            logger.warning("Concept synthesis failed | model overloaded after retries")
            raise
        except AIServiceError as exc:
            raise SynthesisError(exc.message) from exc
        if not brief.strip():
            raise SynthesisError("The AI failed to synthesize key concepts. It returned an empty response.")
        logger.info("Concept synthesis done | chars=%s", len(brief))
        return brief
