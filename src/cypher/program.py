"""
Statement Program Model.

In-memory form of a corrected upsert program: uniqueness constraints,
node upserts keyed by one property, and edge upserts between those nodes.
Only the rendered text is ever persisted.
"""

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Union

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

CONSTRAINTS_HEADER = "/* --- 1) Add uniqueness constraints (run once) --- */"
NODES_HEADER = "/* --- 2) Create nodes with unique variable names --- */"
EDGES_HEADER = "/* --- 3) Now MERGE relationships (use variables from above) --- */"
NO_CONSTRAINTS_NOTE = "// No constraints generated (no ID properties found in schema or nodes)."


class StatementIntent(str, Enum):
    """Whether a pattern came from a write clause (MERGE/CREATE) or a read clause (MATCH)."""

    WRITE = "write"
    READ = "read"


@dataclass(frozen=True)
class TemporalValue:
    """A ``date("...")`` or ``datetime("...")`` literal."""

    function: str
    value: str


Scalar = Union[str, int, float, bool, TemporalValue]
Literal = Union[Scalar, tuple[Scalar, ...]]


def render_literal(value: Literal) -> str:
    """Render a literal as Cypher source."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, TemporalValue):
        return f"{value.function}({json.dumps(value.value)})"
    if isinstance(value, tuple):
        return "[" + ", ".join(render_literal(v) for v in value) + "]"
    return json.dumps(value, ensure_ascii=False)


def quote_name(name: str) -> str:
    """Backtick-quote a label, type or property name when it is not a plain identifier."""
    if _IDENTIFIER.match(name):
        return name
    return "`" + name.replace("`", "``") + "`"


def render_map(properties: dict[str, Literal]) -> str:
    return "{" + ", ".join(f"{quote_name(k)}: {render_literal(v)}" for k, v in properties.items()) + "}"


@dataclass
class NodeDecl:
    """A node upsert: one label, one key property, extra literal attributes."""

    label: str
    key: str
    value: Scalar
    attributes: dict[str, Literal] = field(default_factory=dict)
    variable: str = ""
    source_variable: str | None = None

    @property
    def identity(self) -> tuple[str, str, str]:
        return (self.label, self.key, render_literal(self.value))

    def pattern(self) -> str:
        return f"({self.variable}:{quote_name(self.label)} {{{quote_name(self.key)}: {render_literal(self.value)}}})"

    def render(self) -> str:
        statement = f"MERGE {self.pattern()}"
        if self.attributes:
            assignments = ", ".join(
                f"{self.variable}.{quote_name(k)} = {render_literal(v)}"
                for k, v in self.attributes.items()
            )
            statement += f" SET {assignments}"
        return statement + ";"


@dataclass
class EdgeDecl:
    """An edge upsert between two declared nodes."""

    source: NodeDecl
    type: str
    target: NodeDecl
    intent: StatementIntent = StatementIntent.WRITE
    properties: dict[str, Literal] = field(default_factory=dict)
    synthesized: bool = False

    @property
    def identity(self) -> tuple[tuple[str, str, str], str, tuple[str, str, str]]:
        return (self.source.identity, self.type, self.target.identity)

    def describe(self) -> str:
        return f"({self.source.label})-[:{self.type}]->({self.target.label})"

    def render(self) -> str:
        if self.source is self.target:
            match = f"MATCH {self.source.pattern()}"
        else:
            match = f"MATCH {self.source.pattern()}, {self.target.pattern()}"
        props = f" {render_map(self.properties)}" if self.properties else ""
        return (
            f"{match} MERGE ({self.source.variable})"
            f"-[:{quote_name(self.type)}{props}]->({self.target.variable});"
        )


@dataclass(frozen=True)
class ConstraintDecl:
    """Uniqueness constraint on a label's identifier property."""

    label: str
    property: str
    variable: str

    def render(self) -> str:
        padding = " " * max(1, 30 - len(self.variable))
        return (
            f"CREATE CONSTRAINT IF NOT EXISTS FOR ({self.variable}:{quote_name(self.label)})"
            f"{padding}REQUIRE {self.variable}.{quote_name(self.property)} IS UNIQUE;"
        )


@dataclass
class ParsedProgram:
    """Constraints, node upserts and edge upserts, in emission order."""

    constraints: list[ConstraintDecl] = field(default_factory=list)
    nodes: list[NodeDecl] = field(default_factory=list)
    edges: list[EdgeDecl] = field(default_factory=list)

    def nodes_with_label(self, label: str) -> list[NodeDecl]:
        return [n for n in self.nodes if n.label == label]

    def render(self) -> str:
        lines = [CONSTRAINTS_HEADER, ""]
        if self.constraints:
            lines.extend(c.render() for c in self.constraints)
        else:
            lines.append(NO_CONSTRAINTS_NOTE)

        lines.extend(["", NODES_HEADER, ""])
        lines.extend(n.render() for n in self.nodes)

        lines.extend(["", EDGES_HEADER, ""])
        lines.extend(e.render() for e in self.edges)

        return "\n".join(lines) + "\n"
