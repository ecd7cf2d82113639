"""
Domain Rule Sets for Statement Correction.

A RuleSet bundles the domain knowledge the corrector applies after
parsing: relationship direction and naming rules, property aliases,
variable-name prefixes per label, and the completion requirements that
add obviously missing links. The financial rule set is the default; an
empty rule set leaves relationships as generated.
"""

from dataclasses import dataclass, field
from typing import Mapping


@dataclass(frozen=True)
class DirectionRule:
    """
    Rewrite for one relationship type between two labels.

    ``from_label``/``to_label`` of None match any label. ``flip`` reverses
    the edge; ``rename`` replaces the type; ``drop`` removes it.
    """

    type: str
    from_label: str | None = None
    to_label: str | None = None
    flip: bool = False
    rename: str | None = None
    drop: bool = False

    def matches(self, rel_type: str, from_label: str, to_label: str) -> bool:
        return (
            rel_type == self.type
            and (self.from_label is None or self.from_label == from_label)
            and (self.to_label is None or self.to_label == to_label)
        )

    def describe(self) -> str:
        if self.drop:
            action = "drop"
        else:
            action = " + ".join(
                part for part in (
                    "flip" if self.flip else "",
                    f"rename to {self.rename}" if self.rename else "",
                ) if part
            )
        return f"{self.from_label or '*'}-[:{self.type}]->{self.to_label or '*'}: {action}"


@dataclass(frozen=True)
class CompletionRequirement:
    """
    Every ``subject_label`` node must have an edge of ``type`` to or from a
    ``candidate_label`` node.

    When missing, one is added using the first candidate node. With
    ``subject_is_source`` the edge runs subject -> candidate, otherwise
    candidate -> subject.
    """

    subject_label: str
    type: str
    candidate_label: str
    subject_is_source: bool = True


@dataclass(frozen=True)
class RuleSet:
    name: str
    direction_rules: tuple[DirectionRule, ...] = ()
    property_aliases: Mapping[str, Mapping[str, str]] = field(default_factory=dict)
    label_prefixes: Mapping[str, str] = field(default_factory=dict)
    completion_requirements: tuple[CompletionRequirement, ...] = ()

    def prefix_for(self, label: str) -> str:
        """Variable prefix for a label; defaults to its first letter, lowercased."""
        if label in self.label_prefixes:
            return self.label_prefixes[label]
        first = next((c for c in label if c.isalpha()), "n")
        return first.lower()

    def find_rule(self, rel_type: str, from_label: str, to_label: str) -> DirectionRule | None:
        for rule in self.direction_rules:
            if rule.matches(rel_type, from_label, to_label):
                return rule
        return None

    @classmethod
    def empty(cls) -> "RuleSet":
        return cls(name="empty")


def _flip(rel_type: str, from_label: str | None, to_label: str | None, rename: str | None = None) -> DirectionRule:
    return DirectionRule(type=rel_type, from_label=from_label, to_label=to_label, flip=True, rename=rename)


FINANCIAL_RULES = RuleSet(
    name="financial",
    direction_rules=(
        # Ownership runs from the account
        _flip("HAS_POSITION", "Position", "Account"),
        _flip("HAS_HOLDING", "Holding", "Account"),
        _flip("MADE_INVESTMENT", "Investment", "Account", rename="HAS_INVESTMENT"),
        DirectionRule(type="MADE_INVESTMENT", rename="HAS_INVESTMENT"),
        _flip("EXECUTED_TRADE", "Trade", "Account"),
        # Instruments point at the security
        _flip("HAS_TRADE", "Security", "Trade", rename="ON_SECURITY"),
        _flip("INVOLVED_IN_INVESTMENT", "Security", "Investment", rename="IN_SECURITY"),
        _flip("HELD_IN_POSITION", "Security", None, rename="IN_SECURITY"),
        _flip("HELD_IN_HOLDING", "Security", None, rename="IN_SECURITY"),
        DirectionRule(type="HELD_IN_POSITION", to_label="Security", rename="IN_SECURITY"),
        DirectionRule(type="HELD_IN_HOLDING", to_label="Security", rename="IN_SECURITY"),
        # Parties own accounts and addresses
        _flip("HAS_ACCOUNT", "Account", "Party"),
        _flip("HELD_BY", "Account", "Party", rename="HAS_ACCOUNT"),
        _flip("BELONGS_TO", "Address", "Party", rename="HAS_ADDRESS"),
        _flip("BELONGS_TO", "Address", "Account", rename="HAS_ADDRESS"),
    ),
    property_aliases={"Security": {"productId": "securityId"}},
    label_prefixes={
        "Account": "account",
        "Party": "party",
        "Address": "addr",
        "Accounting": "acctg",
        "Reference": "ref",
        "Investment": "inv",
        "Position": "pos",
        "Holding": "h",
        "Risk": "r",
        "Security": "s",
        "Trade": "t",
    },
    completion_requirements=(
        CompletionRequirement("Investment", "IN_SECURITY", "Security"),
        CompletionRequirement("Trade", "ON_SECURITY", "Security"),
        CompletionRequirement("Trade", "EXECUTED_TRADE", "Account", subject_is_source=False),
    ),
)
