"""
Graph Schema Extraction.

Asks the text-generation provider for a ``{"nodes", "relationships"}``
schema of a document and recovers JSON from loosely formatted answers.
"""

import json
import re
from typing import Any

import structlog

from src.config.settings import PipelineSettings
from src.cypher.prompts import (
    SCHEMA_EXTRACTION_PROMPT,
    format_reference_schema,
    render_prompt,
    truncate_text,
)
from src.ingestion.document_type import DocumentType, get_type_hints
from src.ingestion.reliability.retry_handler import (
    SCHEMA_RETRY_POLICY,
    RetryExecutor,
    RetryPolicy,
)
from src.ingestion.state import GraphSchema, RelationshipDescriptor
from src.llm.provider import GenerationOptions, TextGenerator

logger = structlog.get_logger(__name__)


REFERENCE_SCHEMA = GraphSchema(
    nodes={
        "Account": ["accountId", "accountName", "accountType", "accountStatus"],
        "Party": ["partyId", "firstName", "lastName", "organizationName", "partyType"],
        "Address": ["addressId", "street", "city", "state", "zipCode", "country"],
        "Accounting": ["transactionId", "accountId", "amount", "transactionDate", "description"],
        "Product": ["productId", "productName", "productType", "price", "availability"],
        "Reference": ["referenceId", "referenceType", "referenceValue"],
        "Risk": ["riskId", "riskType", "riskLevel", "mitigationStrategy"],
        "Security": ["securityId", "securityType", "issuer", "marketPrice"],
        "Investment": ["investmentId", "accountId", "securityId", "investmentAmount", "investmentDate"],
        "Trade": ["tradeId", "securityId", "tradeAmount", "tradeDate", "tradeType"],
        "Position": ["positionId", "accountId", "securityId", "quantity", "marketValue"],
        "Holding": ["holdingId", "accountId", "securityId", "quantity", "acquisitionDate"],
    },
    relationships=[
        RelationshipDescriptor(type=t, from_label=f, to_label=to)
        for f, t, to in (
            ("Party", "HAS_ACCOUNT", "Account"),
            ("Party", "HAS_ADDRESS", "Address"),
            ("Account", "HAS_ADDRESS", "Address"),
            ("Account", "EXECUTED_TRADE", "Trade"),
            ("Account", "HAS_POSITION", "Position"),
            ("Account", "HAS_HOLDING", "Holding"),
            ("Account", "HAS_INVESTMENT", "Investment"),
            ("Trade", "ON_SECURITY", "Security"),
            ("Investment", "IN_SECURITY", "Security"),
            ("Position", "IN_SECURITY", "Security"),
            ("Holding", "IN_SECURITY", "Security"),
            ("Reference", "CLASSIFIES", "Investment"),
            ("Reference", "CLASSIFIES", "Trade"),
            ("Reference", "CLASSIFIES", "Security"),
            ("Reference", "CLASSIFIES", "Risk"),
            ("Risk", "ASSOCIATED_WITH", "Investment"),
            ("Accounting", "RELATES_TO", "Account"),
            ("Product", "INVOLVED_IN", "Trade"),
        )
    ],
)

_FENCED_BLOCKS = (
    re.compile(r"```json\s*([\s\S]*?)\s*```", re.IGNORECASE),
    re.compile(r"```\s*([\s\S]*?)\s*```"),
)
_OBJECT = re.compile(r"\{[\s\S]*\}")
_TRAILING_COMMA = re.compile(r",(\s*[}\]])")


def _loads_object(text: str) -> dict[str, Any] | None:
    for candidate in (text, _TRAILING_COMMA.sub(r"\1", text)):
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(value, dict):
            return value
    return None


def _balanced_object(text: str) -> str | None:
    start = text.find("{")
    if start == -1:
        return None
    depth = 0
    for i in range(start, len(text)):
        if text[i] == "{":
            depth += 1
        elif text[i] == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def extract_json(text: str) -> dict[str, Any]:
    """
    Recover a JSON object from a model answer.

    Tries, in order: fenced code blocks, the outermost ``{...}`` span (with
    trailing commas removed on failure), the whole text, and finally the
    first brace-balanced object.

    Raises:
        ValueError: No JSON object could be recovered
    """
    if not isinstance(text, str) or not text.strip():
        raise ValueError("Invalid model response: empty text")

    cleaned = text.strip()

    for pattern in _FENCED_BLOCKS:
        match = pattern.search(cleaned)
        if match:
            inner = _OBJECT.search(match.group(1))
            if inner:
                value = _loads_object(inner.group(0))
                if value is not None:
                    return value

    cleaned = re.sub(r"^```(?:json)?\s*", "", cleaned, flags=re.IGNORECASE)
    cleaned = re.sub(r"\s*```$", "", cleaned)

    match = _OBJECT.search(cleaned)
    if match:
        value = _loads_object(match.group(0))
        if value is not None:
            return value

    value = _loads_object(cleaned)
    if value is not None:
        return value

    balanced = _balanced_object(cleaned)
    if balanced:
        value = _loads_object(balanced)
        if value is not None:
            return value

    raise ValueError(f"Invalid model response: no JSON object found. Preview: {text[:500]}")


def parse_schema_payload(payload: dict[str, Any], document_id: str | None = None) -> GraphSchema:
    """
    Validate a schema payload and build a normalized GraphSchema.

    Missing sections become empty, non-list property entries become empty
    lists, and relationships missing type/from/to are dropped.
    """
    nodes = payload.get("nodes")
    if isinstance(nodes, list):
        raise ValueError("Invalid schema format: nodes should be an object, not an array")
    if not isinstance(nodes, dict):
        logger.warning("Missing nodes in schema, using empty object", document_id=document_id)
        nodes = {}

    relationships = payload.get("relationships")
    if not isinstance(relationships, list):
        logger.warning("Missing relationships in schema, using empty array", document_id=document_id)
        relationships = []

    clean_nodes: dict[str, list[str]] = {}
    for label, props in nodes.items():
        if not isinstance(props, list):
            logger.warning("Node properties should be an array, converting", label=label)
            props = []
        clean_nodes[str(label)] = [str(p) for p in props if isinstance(p, (str, int, float))]

    clean_relationships: list[RelationshipDescriptor] = []
    for index, rel in enumerate(relationships):
        if not isinstance(rel, dict) or not all(rel.get(k) for k in ("type", "from", "to")):
            logger.warning("Invalid relationship, removing", index=index, relationship=rel)
            continue
        clean_relationships.append(
            RelationshipDescriptor(
                type=str(rel["type"]).strip(),
                from_label=str(rel["from"]).strip(),
                to_label=str(rel["to"]).strip(),
            )
        )

    return GraphSchema(
        document_id=document_id,
        nodes=clean_nodes,
        relationships=clean_relationships,
    ).normalized()


class SchemaExtractor:
    """
    Extracts a graph schema from document text with one generation call.

    Business and financial documents also get the reference schema as
    guidance for naming conventions.
    """

    def __init__(
        self,
        generator: TextGenerator,
        settings: PipelineSettings | None = None,
        retry_policy: RetryPolicy | None = None,
        reference_schema: GraphSchema = REFERENCE_SCHEMA,
    ) -> None:
        self._generator = generator
        self._settings = settings or PipelineSettings()
        policy = retry_policy or SCHEMA_RETRY_POLICY.with_overrides(
            max_attempts=self._settings.retry_max_attempts,
            initial_delay=self._settings.schema_initial_delay,
            max_delay=self._settings.schema_max_delay,
        )
        self._executor = RetryExecutor(policy)
        self._reference_schema = reference_schema

    def build_prompt(self, text: str, document_type: DocumentType | str) -> tuple[str, str]:
        document_type = DocumentType(document_type) if document_type else DocumentType.GENERAL
        reference = ""
        if document_type in (DocumentType.BUSINESS, DocumentType.FINANCIAL):
            reference = format_reference_schema(self._reference_schema)

        return render_prompt(
            SCHEMA_EXTRACTION_PROMPT,
            document_type=document_type.value,
            type_hint=get_type_hints(document_type).schema_hint,
            text=truncate_text(text, self._settings.schema_max_chars, "[... document continues ...]"),
            reference_schema=reference,
        )

    async def extract(
        self,
        document_id: str,
        text: str,
        document_type: DocumentType | str = DocumentType.GENERAL,
    ) -> GraphSchema:
        system_prompt, user_prompt = self.build_prompt(text, document_type)
        options = GenerationOptions(temperature=0.1, max_tokens=self._settings.schema_max_tokens)

        async def attempt() -> GraphSchema:
            response = await self._generator.generate(system_prompt, user_prompt, options)
            logger.info(
                "Schema extraction response received",
                document_id=document_id,
                response_length=len(response),
            )
            return parse_schema_payload(extract_json(response), document_id=document_id)

        schema = await self._executor.execute(attempt)

        logger.info(
            "Schema extracted",
            document_id=document_id,
            node_count=len(schema.nodes),
            relationship_count=len(schema.relationships),
        )
        return schema
