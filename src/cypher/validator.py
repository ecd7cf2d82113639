"""
Statement Lexical Helpers.

Quote-aware comment stripping and statement splitting, plus
classification of schema (DDL) statements versus data writes. The
explain-only syntax check itself runs in the graph store.
"""

import re

_SCHEMA_STATEMENT = re.compile(
    r"^\s*(?:CREATE|DROP)\s+(?:OR\s+REPLACE\s+)?"
    r"(?:(?:RANGE|TEXT|POINT|LOOKUP|FULLTEXT|VECTOR|BTREE)\s+)?(?:CONSTRAINT|INDEX)\b",
    re.IGNORECASE,
)

_WRITE_KEYWORDS = re.compile(
    r"\b(CREATE|MERGE|DELETE|DETACH|SET|REMOVE|DROP|LOAD\s+CSV|FOREACH)\b",
    re.IGNORECASE,
)


def strip_comments(text: str) -> str:
    """
    Remove ``//`` and ``/* */`` comments, and ``--`` comments that start a line.

    Quoted strings and backtick names are left intact. Newlines are kept so
    line structure survives.
    """
    out: list[str] = []
    i = 0
    n = len(text)
    quote: str | None = None
    line_start = True

    while i < n:
        ch = text[i]

        if quote:
            out.append(ch)
            if ch == "\\" and quote != "`" and i + 1 < n:
                out.append(text[i + 1])
                i += 2
                continue
            if ch == quote:
                quote = None
            i += 1
            continue

        if ch in ("'", '"', "`"):
            quote = ch
            line_start = False
            out.append(ch)
            i += 1
            continue

        if text.startswith("//", i) or (line_start and text.startswith("--", i)):
            end = text.find("\n", i)
            i = n if end == -1 else end
            continue

        if text.startswith("/*", i):
            end = text.find("*/", i + 2)
            comment = text[i:] if end == -1 else text[i:end + 2]
            out.append("\n" * comment.count("\n"))
            i = n if end == -1 else end + 2
            continue

        if ch == "\n":
            line_start = True
        elif not ch.isspace():
            line_start = False
        out.append(ch)
        i += 1

    return "".join(out)


def split_statements(text: str) -> list[str]:
    """
    Split a program into individual statements on ``;`` outside quotes.

    Comments are removed first; empty fragments are dropped and the
    trailing semicolon is not kept.
    """
    statements: list[str] = []
    current: list[str] = []
    quote: str | None = None
    cleaned = strip_comments(text)
    i = 0

    while i < len(cleaned):
        ch = cleaned[i]
        if quote:
            current.append(ch)
            if ch == "\\" and quote != "`" and i + 1 < len(cleaned):
                current.append(cleaned[i + 1])
                i += 2
                continue
            if ch == quote:
                quote = None
        elif ch in ("'", '"', "`"):
            quote = ch
            current.append(ch)
        elif ch == ";":
            statement = "".join(current).strip()
            if statement:
                statements.append(statement)
            current = []
        else:
            current.append(ch)
        i += 1

    tail = "".join(current).strip()
    if tail:
        statements.append(tail)
    return statements


def is_schema_statement(statement: str) -> bool:
    """True for ``CREATE/DROP CONSTRAINT`` and ``CREATE/DROP INDEX`` statements."""
    return bool(_SCHEMA_STATEMENT.match(statement))


def partition_statements(statements: list[str]) -> tuple[list[str], list[str]]:
    """Split statements into ``(schema_statements, write_statements)``, preserving order."""
    schema: list[str] = []
    writes: list[str] = []
    for statement in statements:
        (schema if is_schema_statement(statement) else writes).append(statement)
    return schema, writes


def contains_write_clause(query: str) -> bool:
    """True when a query (outside strings and comments) uses a write clause."""
    without_strings = re.sub(r"'(?:[^'\\]|\\.)*'|\"(?:[^\"\\]|\\.)*\"", "''", strip_comments(query))
    return bool(_WRITE_KEYWORDS.search(without_strings))
