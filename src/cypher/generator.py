"""
Statement Generation.

Prompts the text-generation provider for upsert statements, either once
for the whole document or once per segment, and extracts the statement
text from the answer.
"""

import re

import structlog

from src.config.settings import PipelineSettings
from src.cypher.corrector import decode_repair
from src.cypher.prompts import (
    EMPTY_RESULT_REMINDER,
    RELATIONSHIP_EXAMPLES,
    STATEMENT_GENERATION_PROMPT,
    format_node_types,
    format_relationships,
    render_prompt,
    truncate_text,
)
from src.ingestion.document_type import DocumentType, get_type_hints
from src.ingestion.errors import EmptyGenerationError
from src.ingestion.reliability.retry_handler import (
    GENERATION_RETRY_POLICY,
    RetryExecutor,
    RetryPolicy,
)
from src.ingestion.state import GraphSchema
from src.llm.provider import GenerationOptions, TextGenerator

logger = structlog.get_logger(__name__)

ERROR_PLACEHOLDER = "-- ERROR: No Cypher generated --"

# Below this size an unfiltered answer is kept rather than discarded
RAW_FALLBACK_MAX_CHARS = 10000

_FENCE = re.compile(r"```(?:cypher|cql)?[ \t]*\n?", re.IGNORECASE)
_PROSE_PREFIX = re.compile(r"^(Here's|Here is|The cypher|Cypher query|Query):\s*", re.IGNORECASE)
_PROSE_SUFFIX = re.compile(r"\s*(This query|The query|This cypher).*$", re.IGNORECASE | re.DOTALL)
_STATEMENT_START = re.compile(
    r"^(MERGE|CREATE|MATCH|OPTIONAL|SET|ON|RETURN|WITH|WHERE|UNWIND|FOREACH)\b",
    re.IGNORECASE,
)


def extract_cypher(response: str) -> str:
    """
    Pull statement text out of a model answer.

    Strips code fences, decodes escaped arrows, drops leading and trailing
    prose, and keeps only lines that look like statements. If filtering
    removes everything, the cleaned answer is returned when it is short.
    """
    if not response or not response.strip():
        return ""

    cleaned = _FENCE.sub("", response.strip())
    cleaned = decode_repair(cleaned)
    cleaned = _PROSE_PREFIX.sub("", cleaned)
    cleaned = _PROSE_SUFFIX.sub("", cleaned).strip()

    lines = []
    for line in cleaned.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith(("//", "--")):
            continue
        if _STATEMENT_START.match(stripped) or any(c in stripped for c in "([{"):
            lines.append(stripped)

    statements = "\n".join(lines).strip()
    if not statements and cleaned and len(cleaned) < RAW_FALLBACK_MAX_CHARS:
        return cleaned
    return statements


class StatementGenerator:
    """
    Generates upsert statements from text against a document schema.

    An empty answer gets one more attempt with an explicit reminder; if
    that is empty too, EmptyGenerationError is raised. Provider failures
    are retried by the generation retry policy.
    """

    def __init__(
        self,
        generator: TextGenerator,
        settings: PipelineSettings | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._generator = generator
        self._settings = settings or PipelineSettings()
        policy = retry_policy or GENERATION_RETRY_POLICY.with_overrides(
            max_attempts=self._settings.retry_max_attempts,
            initial_delay=self._settings.generation_initial_delay,
            max_delay=self._settings.generation_max_delay,
        )
        self._executor = RetryExecutor(policy)

    @property
    def provider_name(self) -> str:
        return self._generator.provider_name

    @property
    def model_name(self) -> str:
        return self._generator.model_name

    def build_prompt(
        self,
        text: str,
        schema: GraphSchema,
        document_type: DocumentType | str = DocumentType.GENERAL,
        full_document: bool = True,
    ) -> tuple[str, str]:
        document_type = DocumentType(document_type) if document_type else DocumentType.GENERAL
        if full_document:
            max_chars = self._settings.full_document_max_chars
            marker = "[... document continues ...]"
        else:
            max_chars = self._settings.chunk_max_chars
            marker = "[... text continues ...]"

        return render_prompt(
            STATEMENT_GENERATION_PROMPT,
            document_type=document_type.value,
            node_types=format_node_types(schema),
            relationships=format_relationships(schema),
            relationship_examples="\n".join(f"- {example}" for example in RELATIONSHIP_EXAMPLES),
            type_hint=get_type_hints(document_type).statement_hint,
            text=truncate_text(text, max_chars, marker),
        )

    async def _call(self, system_prompt: str, user_prompt: str, options: GenerationOptions) -> str:
        return await self._executor.execute(self._generator.generate, system_prompt, user_prompt, options)

    async def generate(
        self,
        text: str,
        schema: GraphSchema,
        document_type: DocumentType | str = DocumentType.GENERAL,
        full_document: bool = True,
        document_id: str | None = None,
        segment_index: int | None = None,
    ) -> tuple[str, str]:
        """
        Generate statements for ``text``.

        Returns:
            (raw_response, statements)

        Raises:
            EmptyGenerationError: Both attempts produced no statements
        """
        system_prompt, user_prompt = self.build_prompt(text, schema, document_type, full_document)
        max_tokens = (
            self._settings.full_document_max_tokens if full_document else self._settings.chunk_max_tokens
        )
        options = GenerationOptions(temperature=0.1, max_tokens=max_tokens)

        response = await self._call(system_prompt, user_prompt, options)
        statements = extract_cypher(response)

        if not statements:
            logger.warning(
                "Empty statements generated, retrying with reminder",
                document_id=document_id,
                segment_index=segment_index,
                response_preview=(response or "")[:200],
            )
            response = await self._call(system_prompt, user_prompt + EMPTY_RESULT_REMINDER, options)
            statements = extract_cypher(response)

        if not statements:
            raise EmptyGenerationError(
                f"Generated statements are empty after retry. Raw response: {(response or '')[:500]}",
                document_id=document_id,
                stage="generate",
            )

        logger.info(
            "Statements generated",
            document_id=document_id,
            segment_index=segment_index,
            full_document=full_document,
            length=len(statements),
        )
        return response, statements
