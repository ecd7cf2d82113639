"""
Upsert Program Parser.

Reads model-generated Cypher into node and edge declarations:

- ``(var:Label {props})`` declares a node keyed by one of its properties
- a bare ``(var)`` refers to the most recent binding of ``var``
- ``(a)-[:TYPE]->(b)`` chains produce edges, tagged by the clause they sit in
- ``SET var.prop = literal`` adds attributes (last write wins)

Anything that is not a literal (function calls, arithmetic, parameters)
is skipped. Schema statements and comments are ignored.
"""

import re
import string
from dataclasses import dataclass, field
from typing import Any, Mapping, NamedTuple

from src.cypher.program import (
    EdgeDecl,
    Literal,
    NodeDecl,
    StatementIntent,
    TemporalValue,
    render_literal,
)
from src.cypher.validator import strip_comments

_TOKEN = re.compile(
    r"""
    (?P<space>\s+)
  | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
  | (?P<name>`(?:[^`]|``)*`)
  | (?P<number>\d+(?:\.\d+)?(?:[eE][+-]?\d+)?)
  | (?P<ident>[^\W\d]\w*)
  | (?P<arrow>->|<-)
  | (?P<punct>.)
    """,
    re.VERBOSE | re.DOTALL,
)

PATTERN_CLAUSES = frozenset({"MERGE", "CREATE", "MATCH"})
WRITE_CLAUSES = frozenset({"MERGE", "CREATE"})

CLAUSE_KEYWORDS = frozenset({
    "MERGE", "CREATE", "MATCH", "OPTIONAL", "SET", "WITH", "WHERE", "RETURN",
    "UNWIND", "DELETE", "DETACH", "REMOVE", "ON", "ORDER", "SKIP", "LIMIT",
    "CALL", "YIELD", "FOREACH", "UNION", "LOAD", "DROP",
})

_STATEMENT_STARTS = frozenset({
    "MERGE", "MATCH", "CREATE", "OPTIONAL", "WITH", "UNWIND", "RETURN", "DROP", "CALL",
})

_SCHEMA_MODIFIERS = frozenset({"OR", "REPLACE", "RANGE", "TEXT", "POINT", "LOOKUP", "FULLTEXT", "VECTOR", "BTREE"})

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_ISO_DATETIME = re.compile(
    r"^\d{4}-\d{2}-\d{2}(?:[T ]\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?(?:Z|[+-]\d{2}:?\d{2})?)?$"
)
_TEMPORAL_FUNCTIONS = {
    "date": _ISO_DATE,
    "datetime": _ISO_DATETIME,
    "localdatetime": _ISO_DATETIME,
}

_GENERIC_ID = re.compile(r"^(?:\w+(?:Id|ID|_id)|id|ID|Id|_id|uuid|UUID)$")
_LABEL_FROM_KEY = re.compile(r"^([a-z][A-Za-z0-9]*)Id$")

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "b": "\b", "f": "\f", "\\": "\\", "'": "'", '"': '"'}


class Token(NamedTuple):
    kind: str
    text: str
    newline_before: bool


class _Sentinel:
    def __init__(self, name: str) -> None:
        self.name = name

    def __repr__(self) -> str:
        return self.name


NOT_LITERAL: Any = _Sentinel("NOT_LITERAL")
_INVALID_TEMPORAL: Any = _Sentinel("INVALID_TEMPORAL")


def tokenize(text: str) -> list[Token]:
    tokens: list[Token] = []
    newline = False
    for match in _TOKEN.finditer(text):
        kind = match.lastgroup or "punct"
        if kind == "space":
            newline = newline or "\n" in match.group()
            continue
        tokens.append(Token(kind, match.group(), newline))
        newline = False
    return tokens


def unescape(body: str) -> str:
    """Resolve Cypher string escapes (``\\n``, ``\\"``, ``\\uXXXX``...)."""
    out: list[str] = []
    i = 0
    while i < len(body):
        ch = body[i]
        if ch == "\\" and i + 1 < len(body):
            nxt = body[i + 1]
            if nxt in _ESCAPES:
                out.append(_ESCAPES[nxt])
                i += 2
                continue
            if nxt in "uU":
                width = 4 if nxt == "u" else 8
                digits = body[i + 2:i + 2 + width]
                if len(digits) == width and all(c in string.hexdigits for c in digits):
                    out.append(chr(int(digits, 16)))
                    i += 2 + width
                    continue
            out.append(nxt)
            i += 2
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def is_label_identifier(label: str, prop: str) -> bool:
    """True for ``accountId`` / ``account_id`` on ``Account`` (case-insensitive)."""
    lowered = label.lower()
    return prop.lower() in (f"{lowered}id", f"{lowered}_id")


def is_generic_identifier(prop: str) -> bool:
    return bool(_GENERIC_ID.match(prop))


def choose_key(label: str, properties: Mapping[str, Literal]) -> str | None:
    """
    Pick the property that identifies a node.

    Preference: the label's own identifier (``accountId`` for Account),
    then any identifier-like property, then the first property. List
    values never serve as keys.
    """
    candidates = [k for k, v in properties.items() if not isinstance(v, tuple)]
    for prop in candidates:
        if is_label_identifier(label, prop):
            return prop
    for prop in candidates:
        if is_generic_identifier(prop):
            return prop
    return candidates[0] if candidates else None


def infer_label(properties: Mapping[str, Literal]) -> str | None:
    """Infer ``Address`` from an ``addressId`` property."""
    for prop in properties:
        match = _LABEL_FROM_KEY.match(prop)
        if match:
            name = match.group(1)
            return name[0].upper() + name[1:]
    return None


def _number(text: str) -> int | float:
    if any(c in text for c in ".eE"):
        return float(text)
    return int(text)


@dataclass
class _Relationship:
    type: str | None
    properties: dict[str, Literal]
    direction: str
    variable_length: bool = False


@dataclass
class ParseResult:
    """Nodes and edges in source order, plus what had to be discarded."""

    nodes: list[NodeDecl] = field(default_factory=list)
    edges: list[EdgeDecl] = field(default_factory=list)
    dropped_edges: list[str] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)


class _ProgramParser:
    def __init__(self, tokens: list[Token], property_aliases: Mapping[str, Mapping[str, str]]) -> None:
        self._tokens = tokens
        self._aliases = property_aliases
        self._bindings: dict[str, NodeDecl] = {}
        self._index: dict[tuple[str, str, str], NodeDecl] = {}
        self._result = ParseResult()

    # -------------------------------------------------------------------------
    # Token helpers
    # -------------------------------------------------------------------------

    def _tok(self, i: int) -> Token | None:
        return self._tokens[i] if 0 <= i < len(self._tokens) else None

    def _is(self, i: int, text: str) -> bool:
        tok = self._tok(i)
        return tok is not None and tok.text == text

    def _name(self, i: int) -> str | None:
        tok = self._tok(i)
        if tok is None:
            return None
        if tok.kind == "ident":
            return tok.text
        if tok.kind == "name":
            return tok.text[1:-1].replace("``", "`")
        return None

    def _is_keyword(self, i: int) -> bool:
        tok = self._tok(i)
        return (
            tok is not None
            and tok.kind == "ident"
            and tok.text.upper() in CLAUSE_KEYWORDS
            and not self._is(i - 1, ".")
        )

    def _is_call(self, i: int) -> bool:
        prev = self._tok(i - 1)
        if prev is None or prev.kind not in ("ident", "name"):
            return False
        return not self._is_keyword(i - 1)

    # -------------------------------------------------------------------------
    # Top level
    # -------------------------------------------------------------------------

    def parse(self) -> ParseResult:
        clause: str | None = None
        i = 0
        while i < len(self._tokens):
            tok = self._tokens[i]

            if tok.text == ";":
                clause = None
                i += 1
                continue

            if self._is_keyword(i):
                word = tok.text.upper()
                if word in ("CREATE", "DROP") and self._is_schema_start(i):
                    i = self._skip_schema_statement(i)
                    clause = None
                    continue
                clause = word
                i += 1
                if word == "SET":
                    i = self._parse_set(i)
                continue

            if tok.text == "(" and clause in PATTERN_CLAUSES and not self._is_call(i):
                i = self._parse_pattern(i, clause)
                continue

            i += 1

        self._result.nodes = list(self._index.values())
        return self._result

    def _is_schema_start(self, i: int) -> bool:
        j = i + 1
        while (tok := self._tok(j)) is not None and tok.kind == "ident" and tok.text.upper() in _SCHEMA_MODIFIERS:
            j += 1
        tok = self._tok(j)
        return tok is not None and tok.kind == "ident" and tok.text.upper() in ("CONSTRAINT", "INDEX")

    def _skip_schema_statement(self, i: int) -> int:
        j = i + 1
        while (tok := self._tok(j)) is not None:
            if tok.text == ";":
                return j + 1
            if tok.newline_before and tok.kind == "ident" and tok.text.upper() in _STATEMENT_STARTS:
                return j
            j += 1
        return j

    # -------------------------------------------------------------------------
    # Patterns
    # -------------------------------------------------------------------------

    def _parse_pattern(self, i: int, clause: str) -> int:
        parsed = self._parse_node(i)
        if parsed is None:
            return i + 1
        current, current_var, j = parsed

        while True:
            rel = self._parse_relationship(j)
            if rel is None:
                return j
            relationship, k = rel

            target = self._parse_node(k)
            if target is None:
                return k
            node, var, m = target

            self._add_edge(current, current_var, relationship, node, var, clause)
            current, current_var, j = node, var, m

    def _parse_node(self, i: int) -> tuple[NodeDecl | None, str | None, int] | None:
        if not self._is(i, "("):
            return None
        j = i + 1

        var = self._name(j)
        if var is not None:
            j += 1

        labels: list[str] = []
        while self._is(j, ":") or self._is(j, "&"):
            label = self._name(j + 1)
            if label is None:
                return None
            labels.append(label)
            j += 2

        props: dict[str, Literal] | None = None
        if self._is(j, "{"):
            parsed = self._parse_map(j)
            if parsed is None:
                return None
            props, j = parsed

        if not self._is(j, ")"):
            return None

        node = self._resolve_node(var, labels[0] if labels else None, props)
        return node, var, j + 1

    def _parse_relationship(self, j: int) -> tuple[_Relationship, int] | None:
        if self._is(j, "<-"):
            direction = "left"
        elif self._is(j, "-"):
            direction = "right"
        else:
            return None
        j += 1

        # Bare --, --> and <--
        if self._is(j, "-") or self._is(j, "->"):
            if direction == "right" and self._is(j, "-"):
                direction = "undirected"
            if not self._is(j + 1, "("):
                return None
            return _Relationship(type=None, properties={}, direction=direction), j + 1

        if not self._is(j, "["):
            return None
        j += 1

        if self._name(j) is not None:
            j += 1

        rel_type: str | None = None
        if self._is(j, ":"):
            rel_type = self._name(j + 1)
            if rel_type is None:
                return None
            j += 2
            while self._is(j, "|"):
                j += 1
                if self._is(j, ":"):
                    j += 1
                if self._name(j) is None:
                    return None
                j += 1

        variable_length = False
        if self._is(j, "*"):
            variable_length = True
            j += 1
            while (tok := self._tok(j)) is not None and (tok.kind == "number" or tok.text == "."):
                j += 1

        props: dict[str, Literal] = {}
        if self._is(j, "{"):
            parsed = self._parse_map(j)
            if parsed is None:
                return None
            props, j = parsed

        if not self._is(j, "]"):
            return None
        j += 1

        if direction == "left":
            if not self._is(j, "-"):
                return None
        elif self._is(j, "-"):
            direction = "undirected"
        elif not self._is(j, "->"):
            return None
        j += 1

        if not self._is(j, "("):
            return None
        return _Relationship(rel_type, props, direction, variable_length), j

    def _add_edge(
        self,
        source: NodeDecl | None,
        source_var: str | None,
        rel: _Relationship,
        target: NodeDecl | None,
        target_var: str | None,
        clause: str,
    ) -> None:
        if rel.type is None or rel.variable_length:
            self._result.dropped_edges.append(
                f"untyped or variable-length relationship between {source_var or '()'} and {target_var or '()'}"
            )
            return
        if source is None or target is None:
            missing = source_var if source is None else target_var
            self._result.dropped_edges.append(
                f"[:{rel.type}] has an unresolved endpoint ({missing or 'anonymous node'})"
            )
            return

        if rel.direction == "left":
            source, target = target, source

        self._result.edges.append(
            EdgeDecl(
                source=source,
                type=rel.type,
                target=target,
                intent=StatementIntent.WRITE if clause in WRITE_CLAUSES else StatementIntent.READ,
                properties=rel.properties,
            )
        )

    # -------------------------------------------------------------------------
    # Node resolution
    # -------------------------------------------------------------------------

    def _alias(self, label: str, prop: str) -> str:
        return self._aliases.get(label, {}).get(prop, prop)

    def _apply_aliases(self, label: str, props: dict[str, Literal]) -> dict[str, Literal]:
        renamed: dict[str, Literal] = {}
        for prop, value in props.items():
            new = self._alias(label, prop)
            if new != prop and new in props:
                continue
            renamed[new] = value
        return renamed

    def _resolve_node(
        self,
        var: str | None,
        label: str | None,
        props: dict[str, Literal] | None,
    ) -> NodeDecl | None:
        bound = self._bindings.get(var) if var else None

        if props and label is None and bound is None:
            label = infer_label(props)

        if props and label is not None:
            node = self._declare(var, label, props)
            if node is not None:
                return node

        if bound is not None:
            if props:
                self._merge_attributes(bound, props)
            return bound
        return None

    def _declare(self, var: str | None, label: str, props: dict[str, Literal]) -> NodeDecl | None:
        props = self._apply_aliases(label, props)
        key = choose_key(label, props)
        if key is None:
            return None
        value = props.pop(key)

        identity = (label, key, render_literal(value))
        node = self._index.get(identity)
        if node is None:
            node = NodeDecl(label=label, key=key, value=value, attributes=props, source_variable=var)
            self._index[identity] = node
        else:
            node.attributes.update(props)

        if var:
            self._bindings[var] = node
        return node

    def _merge_attributes(self, node: NodeDecl, props: dict[str, Literal]) -> None:
        for prop, value in self._apply_aliases(node.label, props).items():
            if prop != node.key:
                node.attributes[prop] = value

    def _resolve_reference(self, var: str, prop: str) -> Any:
        node = self._bindings.get(var)
        if node is None:
            return NOT_LITERAL
        prop = self._alias(node.label, prop)
        if prop == node.key:
            return node.value
        return node.attributes.get(prop, NOT_LITERAL)

    # -------------------------------------------------------------------------
    # Values
    # -------------------------------------------------------------------------

    def _parse_map(self, i: int) -> tuple[dict[str, Literal], int] | None:
        props: dict[str, Literal] = {}
        j = i + 1
        if self._is(j, "}"):
            return props, j + 1

        while True:
            tok = self._tok(j)
            if tok is None:
                return None
            key = self._name(j)
            if key is None and tok.kind == "string":
                key = unescape(tok.text[1:-1])
            if key is None or not self._is(j + 1, ":"):
                return None

            value, j = self._parse_value(j + 2, (",", "}"), name=key)
            if value is not NOT_LITERAL:
                props[key] = value

            if self._is(j, ","):
                j += 1
                continue
            if self._is(j, "}"):
                return props, j + 1
            return None

    def _at_stop(self, j: int, stops: tuple[str, ...], keyword_stops: bool) -> bool:
        tok = self._tok(j)
        if tok is None or tok.text in stops or tok.text == ";":
            return True
        return keyword_stops and self._is_keyword(j)

    def _parse_value(
        self,
        j: int,
        stops: tuple[str, ...],
        keyword_stops: bool = False,
        name: str = "",
    ) -> tuple[Any, int]:
        value, end = self._parse_term(j)

        if value is _INVALID_TEMPORAL:
            self._result.notes.append(f"dropped non-ISO temporal value for {name}")
        elif value is not NOT_LITERAL and self._at_stop(end, stops, keyword_stops):
            return value, end

        return NOT_LITERAL, self._skip_expression(j, stops, keyword_stops)

    def _parse_term(self, j: int) -> tuple[Any, int]:
        tok = self._tok(j)
        if tok is None:
            return NOT_LITERAL, j

        if tok.kind == "string":
            return unescape(tok.text[1:-1]), j + 1

        if tok.text == "-" and (nxt := self._tok(j + 1)) is not None and nxt.kind == "number":
            return -_number(nxt.text), j + 2
        if tok.kind == "number":
            return _number(tok.text), j + 1

        if tok.kind == "ident":
            lowered = tok.text.lower()
            if lowered in ("true", "false"):
                return lowered == "true", j + 1

            if lowered in _TEMPORAL_FUNCTIONS and self._is(j + 1, "("):
                arg = self._tok(j + 2)
                if arg is not None and arg.kind == "string" and self._is(j + 3, ")"):
                    raw = unescape(arg.text[1:-1]).strip()
                    if _TEMPORAL_FUNCTIONS[lowered].match(raw):
                        return TemporalValue(lowered, raw), j + 4
                    return _INVALID_TEMPORAL, j + 4
                return NOT_LITERAL, j

            prop = self._name(j + 2)
            if self._is(j + 1, ".") and prop is not None:
                return self._resolve_reference(tok.text, prop), j + 3

        if tok.text == "[":
            return self._parse_list(j)

        return NOT_LITERAL, j

    def _parse_list(self, j: int) -> tuple[Any, int]:
        items: list[Any] = []
        k = j + 1
        if self._is(k, "]"):
            return (), k + 1
        while True:
            item, k = self._parse_term(k)
            if item is NOT_LITERAL or item is _INVALID_TEMPORAL or isinstance(item, tuple):
                return NOT_LITERAL, j
            items.append(item)
            if self._is(k, ","):
                k += 1
                continue
            if self._is(k, "]"):
                return tuple(items), k + 1
            return NOT_LITERAL, j

    def _skip_expression(self, j: int, stops: tuple[str, ...], keyword_stops: bool = False) -> int:
        depth = 0
        while (tok := self._tok(j)) is not None:
            if depth == 0 and self._at_stop(j, stops, keyword_stops):
                return j
            if tok.text in ("(", "[", "{"):
                depth += 1
            elif tok.text in (")", "]", "}"):
                if depth == 0:
                    return j
                depth -= 1
            j += 1
        return j

    # -------------------------------------------------------------------------
    # SET
    # -------------------------------------------------------------------------

    def _parse_set(self, j: int) -> int:
        while self._tok(j) is not None:
            var = self._name(j)
            if var is not None and not self._is_keyword(j):
                prop = self._name(j + 2)
                if self._is(j + 1, ".") and prop is not None and self._is(j + 3, "="):
                    value, j = self._parse_value(j + 4, (",",), keyword_stops=True, name=prop)
                    self._assign(var, prop, value)
                elif self._is(j + 1, "=") or (self._is(j + 1, "+") and self._is(j + 2, "=")):
                    k = j + 2 if self._is(j + 1, "=") else j + 3
                    parsed = self._parse_map(k) if self._is(k, "{") else None
                    if parsed is not None:
                        props, j = parsed
                        node = self._bindings.get(var)
                        if node is not None:
                            self._merge_attributes(node, props)
                    else:
                        j = self._skip_expression(k, (",",), keyword_stops=True)
                else:
                    j = self._skip_expression(j + 1, (",",), keyword_stops=True)
            else:
                j = self._skip_expression(j, (",",), keyword_stops=True)

            if not self._is(j, ","):
                return j
            j += 1
        return j

    def _assign(self, var: str, prop: str, value: Any) -> None:
        if value is NOT_LITERAL:
            return
        node = self._bindings.get(var)
        if node is None:
            self._result.notes.append(f"SET on unbound variable {var}.{prop} ignored")
            return
        prop = self._alias(node.label, prop)
        if prop != node.key:
            node.attributes[prop] = value


def parse_program(
    text: str,
    property_aliases: Mapping[str, Mapping[str, str]] | None = None,
) -> ParseResult:
    """Parse generated statements into node and edge declarations."""
    tokens = tokenize(strip_comments(text))
    return _ProgramParser(tokens, property_aliases or {}).parse()
