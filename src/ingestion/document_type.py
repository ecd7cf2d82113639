"""
Document Type Detection.

Classifies a document from its filename and the first few thousand
characters of its text, and supplies per-type hints for the schema and
statement prompts.
"""

import re
from dataclasses import dataclass
from enum import Enum


class DocumentType(str, Enum):
    BUSINESS = "business"
    FINANCIAL = "financial"
    TECHNICAL = "technical"
    LEGAL = "legal"
    GENERAL = "general"


@dataclass(frozen=True)
class TypeHints:
    """Prompt additions for one document type."""

    schema_hint: str
    statement_hint: str


@dataclass(frozen=True)
class _Rule:
    document_type: DocumentType
    keywords: tuple[str, ...]
    filename_pattern: re.Pattern[str]

    def matches(self, filename: str, text: str) -> bool:
        if self.filename_pattern.search(filename):
            return True
        return any(keyword in text for keyword in self.keywords)


TEXT_SAMPLE_CHARS = 5000

# Checked in order; the first match wins. Business process model and data
# migration documents come first and are treated as business documents.
_RULES: tuple[_Rule, ...] = (
    _Rule(
        DocumentType.BUSINESS,
        (
            "business process model", "data migration", "greenplum", "snowflake",
            "account id", "party id", "security id", "bpm",
        ),
        re.compile(r"(bpm|business.process.model|data.migration)", re.IGNORECASE),
    ),
    _Rule(
        DocumentType.FINANCIAL,
        (
            "account", "transaction", "payment", "invoice", "financial", "accounting",
            "trade", "investment", "security", "holding", "position", "risk",
            "portfolio", "balance sheet", "income statement",
        ),
        re.compile(r"(financial|account|invoice|statement|report|balance)", re.IGNORECASE),
    ),
    _Rule(
        DocumentType.BUSINESS,
        (
            "company", "organization", "department", "employee", "manager", "process",
            "workflow", "procedure", "policy", "strategy", "business plan", "meeting",
        ),
        re.compile(r"(business|company|organization|process|procedure|policy)", re.IGNORECASE),
    ),
    _Rule(
        DocumentType.TECHNICAL,
        (
            "api", "system", "architecture", "database", "server", "client", "code",
            "function", "class", "method", "interface", "protocol", "algorithm", "framework",
        ),
        re.compile(r"(technical|api|system|architecture|design|spec|guide)", re.IGNORECASE),
    ),
    _Rule(
        DocumentType.LEGAL,
        (
            "contract", "agreement", "terms", "conditions", "legal", "law", "clause",
            "party", "signature", "liability", "warranty", "disclaimer",
        ),
        re.compile(r"(legal|contract|agreement|terms|law|clause)", re.IGNORECASE),
    ),
)


TYPE_HINTS: dict[DocumentType, TypeHints] = {
    DocumentType.FINANCIAL: TypeHints(
        schema_hint=(
            "Focus on financial entities: accounts, transactions, parties, securities, "
            "trades, positions, holdings, and their relationships."
        ),
        statement_hint=(
            "Pay special attention to financial identifiers (accountId, transactionId, "
            "tradeId) and ensure all numeric values are properly formatted. Relationships "
            "often involve ownership, transactions, and holdings."
        ),
    ),
    DocumentType.BUSINESS: TypeHints(
        schema_hint=(
            "Focus on business entities: companies, departments, employees, roles, "
            "processes, and organizational relationships. For data migration documents, "
            "use relationship names like HELD_BY, HAS_ADDRESS, EXECUTED_TRADE, HAS_POSITION, "
            "HAS_HOLDING, HAS_INVESTMENT, IN_SECURITY, ON_SECURITY, CLASSIFIES, "
            "ASSOCIATED_WITH. Use business-meaningful names, not generic CONNECTS_TO."
        ),
        statement_hint=(
            "Emphasize organizational hierarchies, reporting structures, and business "
            "processes. Use relationship types like HAS_ACCOUNT, HAS_ADDRESS, EXECUTED_TRADE, "
            "HAS_POSITION, HAS_HOLDING, HAS_INVESTMENT, IN_SECURITY, ON_SECURITY. Ensure all "
            "IDs (accountId, partyId, securityId) are properly extracted."
        ),
    ),
    DocumentType.TECHNICAL: TypeHints(
        schema_hint=(
            "Focus on technical entities: systems, components, APIs, services, databases, "
            "and their technical relationships."
        ),
        statement_hint=(
            "Pay attention to technical identifiers, version numbers, and system "
            "dependencies. Relationships often involve dependencies, integrations, and "
            "data flows."
        ),
    ),
    DocumentType.LEGAL: TypeHints(
        schema_hint=(
            "Focus on legal entities: parties, contracts, clauses, terms, obligations, "
            "and legal relationships."
        ),
        statement_hint=(
            "Emphasize party relationships, contract terms, and legal obligations. Use "
            "clear identifiers for parties and contracts."
        ),
    ),
    DocumentType.GENERAL: TypeHints(
        schema_hint="Extract all relevant entities, their properties, and relationships from the document.",
        statement_hint=(
            "Generate Cypher statements that accurately represent the entities and "
            "relationships found in the text."
        ),
    ),
}


def detect_document_type(filename: str, text: str = "") -> DocumentType:
    """Classify a document by filename patterns and keywords in its opening text."""
    lower_name = filename.lower()
    sample = text[:TEXT_SAMPLE_CHARS].lower()

    for rule in _RULES:
        if rule.matches(lower_name, sample):
            return rule.document_type
    return DocumentType.GENERAL


def get_type_hints(document_type: DocumentType | str | None) -> TypeHints:
    try:
        return TYPE_HINTS[DocumentType(document_type)]
    except ValueError:
        return TYPE_HINTS[DocumentType.GENERAL]
