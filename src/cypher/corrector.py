"""
Statement Corrector.

Turns raw model output into a deterministic, self-contained upsert
program:

1. Decode escaped arrows and markup (``-&gt;``, ``%3E``, code fences...)
2. Parse node and edge declarations
3. Normalize relationship types and apply the rule set's direction rules
4. Promote or drop edges that came from read-only clauses
5. De-duplicate edges and add required-but-missing links
6. Assign canonical variables, synthesize uniqueness constraints, render

Correcting an already corrected program returns it unchanged.
"""

import re
from dataclasses import dataclass, field

import structlog

from src.cypher.parser import is_label_identifier, parse_program
from src.cypher.program import (
    ConstraintDecl,
    EdgeDecl,
    NodeDecl,
    ParsedProgram,
    StatementIntent,
)
from src.cypher.rules import FINANCIAL_RULES, CompletionRequirement, RuleSet
from src.ingestion.state import GraphSchema

logger = structlog.get_logger(__name__)

MAX_DECODE_ROUNDS = 10
MAX_RULE_ROUNDS = 10

_CODE_FENCE = re.compile(r"^[ \t]*```[\w-]*[ \t]*$\n?", re.MULTILINE)
_NESTED_AMP = re.compile(r"&amp;(?=(?:gt|lt|amp|#\d+|#x[0-9a-f]+);)", re.IGNORECASE)
_ENCODED = (
    (re.compile(r"&gt;", re.IGNORECASE), ">"),
    (re.compile(r"&lt;", re.IGNORECASE), "<"),
    (re.compile(r"&#0*62;|&#x0*3e;", re.IGNORECASE), ">"),
    (re.compile(r"&#0*60;|&#x0*3c;", re.IGNORECASE), "<"),
    (re.compile(r"%3e", re.IGNORECASE), ">"),
    (re.compile(r"%3c", re.IGNORECASE), "<"),
    (re.compile(r"\\x3e", re.IGNORECASE), ">"),
    (re.compile(r"\\x3c", re.IGNORECASE), "<"),
    (re.compile(r"\\u003e", re.IGNORECASE), ">"),
    (re.compile(r"\\u003c", re.IGNORECASE), "<"),
)
_SPLIT_ID = re.compile(r"\b([a-z]\w*)I[ \t]+d\b")

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")
_CONSTRAINT_GENERIC_ID = re.compile(r"^(?:id|_id|uuid)$", re.IGNORECASE)


def _decode_once(text: str) -> str:
    text = _CODE_FENCE.sub("", text)
    text = _NESTED_AMP.sub("&", text)
    for pattern, replacement in _ENCODED:
        text = pattern.sub(replacement, text)
    return _SPLIT_ID.sub(r"\1Id", text)


def decode_repair(text: str) -> str:
    """
    Undo markup escaping of arrows and brackets until the text stops changing.

    Handles nested escapes such as ``&amp;gt;`` (bounded number of rounds),
    strips code fences and rejoins ``accountI d`` into ``accountId``.
    """
    current = text
    for _ in range(MAX_DECODE_ROUNDS):
        decoded = _decode_once(current)
        if decoded == current:
            break
        current = decoded
    return current


def normalize_relationship_type(rel_type: str) -> str:
    """``hasAccount`` / ``Has Account`` / ``has-account`` -> ``HAS_ACCOUNT``."""
    value = _CAMEL_BOUNDARY.sub("_", rel_type.strip())
    value = re.sub(r"\W+", "_", value)
    value = re.sub(r"_+", "_", value).strip("_")
    return value.upper() or rel_type


def _normalize_property(prop: str) -> str:
    return prop[:1].lower() + prop[1:]


def _schema_identifier(label: str, props: list[str]) -> str | None:
    for prop in props:
        if is_label_identifier(label, prop):
            return prop
    for prop in props:
        if _CONSTRAINT_GENERIC_ID.match(prop):
            return prop
    return None


def synthesize_constraints(
    schema: GraphSchema | None,
    nodes: list[NodeDecl],
    rules: RuleSet = FINANCIAL_RULES,
) -> list[ConstraintDecl]:
    """
    One uniqueness constraint per label with an identifier property.

    Identifiers come from the schema (``{label}Id`` first, then a generic
    ``id``/``uuid``); when the schema yields none, they are inferred from
    the keys the parsed nodes use. Foreign keys such as ``accountId`` on
    Trade never produce constraints.
    """
    constraints: list[ConstraintDecl] = []
    seen: set[str] = set()

    def add(label: str, prop: str) -> None:
        seen.add(label)
        constraints.append(
            ConstraintDecl(label=label, property=_normalize_property(prop), variable=rules.prefix_for(label))
        )

    if schema is not None:
        for label, props in schema.nodes.items():
            prop = _schema_identifier(label, props)
            if prop and label not in seen:
                add(label, prop)

    if not constraints:
        for node in nodes:
            if node.label in seen:
                continue
            if is_label_identifier(node.label, node.key) or _CONSTRAINT_GENERIC_ID.match(node.key):
                add(node.label, node.key)

    return constraints


@dataclass
class CorrectionResult:
    """Corrected text plus a record of what the corrector changed."""

    text: str
    program: ParsedProgram | None = None
    applied_fixes: list[str] = field(default_factory=list)
    dropped_edges: list[str] = field(default_factory=list)

    @property
    def corrected(self) -> bool:
        """False when no nodes were found and the decoded text was returned as-is."""
        return self.program is not None


class StatementCorrector:
    """
    Deterministic corrector for generated upsert programs.

    Usage:
        corrector = StatementCorrector()
        text = corrector.correct(raw_statements, schema)

        # Domain-neutral: no direction rules, no completion pass
        neutral = StatementCorrector(RuleSet.empty(), enable_completion_pass=False)
    """

    def __init__(
        self,
        rules: RuleSet = FINANCIAL_RULES,
        enable_completion_pass: bool = True,
        promote_read_edges: bool = True,
    ) -> None:
        self.rules = rules
        self.enable_completion_pass = enable_completion_pass
        self.promote_read_edges = promote_read_edges

    def correct(self, raw: str, schema: GraphSchema | None = None) -> str:
        return self.correct_with_report(raw, schema).text

    def correct_with_report(self, raw: str, schema: GraphSchema | None = None) -> CorrectionResult:
        fixes: list[str] = []
        decoded = decode_repair(raw or "")
        if decoded != (raw or ""):
            fixes.append("decoded escaped arrows and markup")

        parsed = parse_program(decoded, self.rules.property_aliases)
        fixes.extend(parsed.notes)
        dropped = list(parsed.dropped_edges)

        if not parsed.nodes:
            logger.warning(
                "No node declarations found, returning decoded statements",
                length=len(decoded),
            )
            return CorrectionResult(text=decoded, applied_fixes=fixes, dropped_edges=dropped)

        edges = [
            edge
            for edge in self._resolve_intents(parsed.edges, fixes, dropped)
            if self._apply_rules(edge, fixes, dropped)
        ]
        edges = self._deduplicate(edges, fixes)

        program = ParsedProgram(nodes=parsed.nodes, edges=edges)
        if self.enable_completion_pass:
            self._complete(program, fixes)

        for counter, node in enumerate(program.nodes, start=1):
            node.variable = f"{self.rules.prefix_for(node.label)}{counter}"

        program.constraints = synthesize_constraints(schema, program.nodes, self.rules)

        logger.debug(
            "Statements corrected",
            nodes=len(program.nodes),
            edges=len(program.edges),
            constraints=len(program.constraints),
            fixes=len(fixes),
            dropped_edges=len(dropped),
        )
        return CorrectionResult(
            text=program.render(),
            program=program,
            applied_fixes=fixes,
            dropped_edges=dropped,
        )

    def _resolve_intents(self, edges: list[EdgeDecl], fixes: list[str], dropped: list[str]) -> list[EdgeDecl]:
        kept: list[EdgeDecl] = []
        for edge in edges:
            if edge.intent is StatementIntent.READ:
                if not self.promote_read_edges:
                    dropped.append(f"{edge.describe()} appears only in a read clause")
                    continue
                edge.intent = StatementIntent.WRITE
                fixes.append(f"promoted read-only edge {edge.describe()}")
            kept.append(edge)
        return kept

    def _apply_rules(self, edge: EdgeDecl, fixes: list[str], dropped: list[str]) -> bool:
        """Normalize and rewrite ``edge`` in place. Returns False if a rule drops it."""
        normalized = normalize_relationship_type(edge.type)
        if normalized != edge.type:
            fixes.append(f"renamed relationship type {edge.type} to {normalized}")
            edge.type = normalized

        seen: set[tuple[str, str, str]] = set()
        for _ in range(MAX_RULE_ROUNDS):
            rule = self.rules.find_rule(edge.type, edge.source.label, edge.target.label)
            state = (edge.type, edge.source.label, edge.target.label)
            if rule is None or state in seen:
                break
            seen.add(state)

            before = edge.describe()
            if rule.drop:
                dropped.append(f"{before} removed by rule {rule.describe()}")
                return False
            if rule.flip:
                edge.source, edge.target = edge.target, edge.source
            if rule.rename:
                edge.type = rule.rename
            fixes.append(f"{before} rewritten as {edge.describe()}")
        return True

    def _deduplicate(self, edges: list[EdgeDecl], fixes: list[str]) -> list[EdgeDecl]:
        unique: dict[tuple, EdgeDecl] = {}
        for edge in edges:
            existing = unique.get(edge.identity)
            if existing is None:
                unique[edge.identity] = edge
                continue
            existing.properties.update(edge.properties)
            fixes.append(f"removed duplicate edge {edge.describe()}")
        return list(unique.values())

    @staticmethod
    def _has_link(edges: list[EdgeDecl], subject: NodeDecl, requirement: CompletionRequirement) -> bool:
        for edge in edges:
            if edge.type != requirement.type:
                continue
            if requirement.subject_is_source and edge.source is subject:
                return True
            if not requirement.subject_is_source and edge.target is subject:
                return True
        return False

    def _complete(self, program: ParsedProgram, fixes: list[str]) -> None:
        for requirement in self.rules.completion_requirements:
            candidates = program.nodes_with_label(requirement.candidate_label)
            if not candidates:
                continue
            candidate = candidates[0]

            for subject in program.nodes_with_label(requirement.subject_label):
                if subject is candidate or self._has_link(program.edges, subject, requirement):
                    continue
                if requirement.subject_is_source:
                    edge = EdgeDecl(source=subject, type=requirement.type, target=candidate, synthesized=True)
                else:
                    edge = EdgeDecl(source=candidate, type=requirement.type, target=subject, synthesized=True)
                program.edges.append(edge)
                fixes.append(f"added missing {edge.describe()}")


def correct(raw: str, schema: GraphSchema | None = None) -> str:
    """Correct raw statements with the default financial rule set."""
    return StatementCorrector().correct(raw, schema)


def correct_with_report(raw: str, schema: GraphSchema | None = None) -> CorrectionResult:
    return StatementCorrector().correct_with_report(raw, schema)
