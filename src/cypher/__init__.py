"""
Cypher Statement Module.

Everything that touches generated upsert statements:
- Generation from document text against a schema
- Deterministic correction (parse, canonicalize, deduplicate, render)
- Statement splitting and write-clause detection
- File archive of generated programs
- Read-only natural-language querying
"""

from src.cypher.archive import StatementArchive, safe_filename
from src.cypher.corrector import (
    CorrectionResult,
    StatementCorrector,
    correct,
    correct_with_report,
    decode_repair,
    normalize_relationship_type,
    synthesize_constraints,
)
from src.cypher.generator import ERROR_PLACEHOLDER, StatementGenerator, extract_cypher
from src.cypher.parser import ParseResult, parse_program, tokenize
from src.cypher.program import (
    ConstraintDecl,
    EdgeDecl,
    NodeDecl,
    ParsedProgram,
    StatementIntent,
    TemporalValue,
    render_literal,
)
from src.cypher.query import QueryResult, QueryService
from src.cypher.rules import (
    FINANCIAL_RULES,
    CompletionRequirement,
    DirectionRule,
    RuleSet,
)
from src.cypher.validator import (
    contains_write_clause,
    is_schema_statement,
    partition_statements,
    split_statements,
    strip_comments,
)

__all__ = [
    # Correction
    "StatementCorrector",
    "CorrectionResult",
    "correct",
    "correct_with_report",
    "decode_repair",
    "normalize_relationship_type",
    "synthesize_constraints",
    # Program
    "ParsedProgram",
    "NodeDecl",
    "EdgeDecl",
    "ConstraintDecl",
    "StatementIntent",
    "TemporalValue",
    "render_literal",
    "ParseResult",
    "parse_program",
    "tokenize",
    # Rules
    "RuleSet",
    "DirectionRule",
    "CompletionRequirement",
    "FINANCIAL_RULES",
    # Generation
    "StatementGenerator",
    "extract_cypher",
    "ERROR_PLACEHOLDER",
    # Statements
    "split_statements",
    "strip_comments",
    "partition_statements",
    "is_schema_statement",
    "contains_write_clause",
    # Archive / query
    "StatementArchive",
    "safe_filename",
    "QueryService",
    "QueryResult",
]
