"""
Unit Tests for the Statement Corrector.

Tests decoding, direction rules, completion, constraint synthesis and
idempotence of corrected upsert programs.
"""

import re

import pytest

from src.cypher.corrector import (
    StatementCorrector,
    correct,
    correct_with_report,
    decode_repair,
    normalize_relationship_type,
    synthesize_constraints,
)
from src.cypher.program import CONSTRAINTS_HEADER, EDGES_HEADER, NO_CONSTRAINTS_NOTE, NODES_HEADER
from src.cypher.rules import RuleSet
from src.ingestion.state import GraphSchema


POSITION_TO_ACCOUNT = """
MERGE (a:Account {accountId: "A1", name: "Brokerage"})
MERGE (p:Position {positionId: "P1", quantity: 10})
MERGE (p)-[:HAS_POSITION]->(a);
"""

SECURITY_IN_POSITION = """
MERGE (s:Security {securityId: "S1", ticker: "ACME"})
MERGE (p:Position {positionId: "P1"})
MERGE (s)-[:HELD_IN_POSITION]->(p);
"""

UNLINKED_TRADE = """
MERGE (s1:Security {securityId: "S1"})
MERGE (s2:Security {securityId: "S2"})
MERGE (t:Trade {tradeId: "T1", side: "BUY"})
MERGE (a:Account {accountId: "A1"})
"""

_EDGE_LINE = re.compile(r"^MATCH (?P<match>.+) MERGE \((?P<src>\w+)\)-\[.+\]->\((?P<dst>\w+)\);$")


def edge_lines(text: str) -> list[str]:
    return [line for line in text.splitlines() if line.startswith("MATCH ")]


# =============================================================================
# Decoding
# =============================================================================


class TestDecodeRepair:
    """Test cases for markup and escape decoding."""

    def test_html_entities(self) -> None:
        assert decode_repair("(a)-[:R]-&gt;(b)") == "(a)-[:R]->(b)"
        assert decode_repair("(a)&lt;-[:R]-(b)") == "(a)<-[:R]-(b)"

    def test_nested_entities(self) -> None:
        assert decode_repair("(a)-[:R]-&amp;amp;gt;(b)") == "(a)-[:R]->(b)"

    def test_url_and_unicode_escapes(self) -> None:
        assert decode_repair("-[:R]-%3E(b)") == "-[:R]->(b)"
        assert decode_repair("-[:R]-\\u003e(b)") == "-[:R]->(b)"
        assert decode_repair("-[:R]-&#62;(b)") == "-[:R]->(b)"

    def test_strips_code_fences(self) -> None:
        text = "```cypher\nMERGE (a:Account {accountId: \"A1\"});\n```\n"
        assert decode_repair(text) == "MERGE (a:Account {accountId: \"A1\"});\n"

    def test_rejoins_split_identifier(self) -> None:
        assert decode_repair("{accountI d: \"A1\"}") == "{accountId: \"A1\"}"

    def test_clean_text_unchanged(self) -> None:
        text = "MERGE (a:Account {accountId: \"A1\"});"
        assert decode_repair(text) == text


class TestNormalizeRelationshipType:
    """Test cases for relationship type normalization."""

    @pytest.mark.parametrize(
        "raw",
        ["hasAccount", "HasAccount", "Has Account", "has-account", "has_account", "HAS_ACCOUNT"],
    )
    def test_variants(self, raw: str) -> None:
        assert normalize_relationship_type(raw) == "HAS_ACCOUNT"


# =============================================================================
# Direction rules
# =============================================================================


class TestDirectionRules:
    """Test cases for the financial direction and naming rules."""

    def test_position_to_account_is_flipped(self) -> None:
        text = correct(POSITION_TO_ACCOUNT)

        assert "MERGE (account1)-[:HAS_POSITION]->(pos2);" in text
        assert "-[:HAS_POSITION]->(account" not in text

    def test_security_held_in_position_becomes_in_security(self) -> None:
        text = correct(SECURITY_IN_POSITION)

        assert "MERGE (pos2)-[:IN_SECURITY]->(s1);" in text
        assert "HELD_IN_POSITION" not in text

    def test_report_lists_rewrites(self) -> None:
        report = correct_with_report(POSITION_TO_ACCOUNT)

        assert report.corrected
        assert any("rewritten as (Account)-[:HAS_POSITION]->(Position)" in fix for fix in report.applied_fixes)
        edge = report.program.edges[0]
        assert edge.source.label == "Account"
        assert edge.target.label == "Position"

    def test_empty_rule_set_keeps_direction(self) -> None:
        corrector = StatementCorrector(RuleSet.empty(), enable_completion_pass=False)
        text = corrector.correct(POSITION_TO_ACCOUNT)

        # Default prefixes are the first letter of the label
        assert "MERGE (p2)-[:HAS_POSITION]->(a1);" in text

    def test_camel_case_type_is_normalized(self) -> None:
        raw = """
        MERGE (p:Party {partyId: "P1"})
        MERGE (a:Account {accountId: "A1"})
        MERGE (p)-[:hasAccount]->(a);
        """
        text = correct(raw)

        assert "MERGE (party1)-[:HAS_ACCOUNT]->(account2);" in text
        assert "hasAccount" not in text

    def test_left_arrow_is_read_as_reversed_edge(self) -> None:
        raw = """
        MERGE (a:Account {accountId: "A1"})
        MERGE (p:Party {partyId: "P1"})
        MERGE (a)<-[:HAS_ACCOUNT]-(p);
        """
        text = correct(raw)

        assert "MERGE (party2)-[:HAS_ACCOUNT]->(account1);" in text


# =============================================================================
# Edges
# =============================================================================


class TestEdgeHandling:
    """Test cases for read-clause edges, duplicates and untyped edges."""

    def test_read_clause_edge_is_promoted(self) -> None:
        raw = 'MATCH (p:Party {partyId: "P1"})-[:HAS_ACCOUNT]->(a:Account {accountId: "A1"});'
        report = correct_with_report(raw)

        assert "MERGE (party1)-[:HAS_ACCOUNT]->(account2);" in report.text
        assert any("promoted read-only edge" in fix for fix in report.applied_fixes)

    def test_read_clause_edge_is_dropped_without_promotion(self) -> None:
        raw = 'MATCH (p:Party {partyId: "P1"})-[:HAS_ACCOUNT]->(a:Account {accountId: "A1"});'
        report = StatementCorrector(promote_read_edges=False).correct_with_report(raw)

        assert edge_lines(report.text) == []
        assert any("read clause" in reason for reason in report.dropped_edges)

    def test_duplicate_edges_are_merged(self) -> None:
        raw = POSITION_TO_ACCOUNT + "MERGE (a)<-[:HAS_POSITION]-(p);\n"
        text = correct(raw)

        assert text.count("-[:HAS_POSITION]->") == 1

    def test_untyped_edge_is_dropped(self) -> None:
        raw = 'MERGE (a:Account {accountId: "A1"})-->(p:Party {partyId: "P1"});'
        report = correct_with_report(raw)

        assert edge_lines(report.text) == []
        assert report.dropped_edges

    def test_edges_reference_only_their_own_match(self) -> None:
        raw = POSITION_TO_ACCOUNT + SECURITY_IN_POSITION
        text = correct(raw)

        lines = edge_lines(text)
        assert lines
        for line in lines:
            match = _EDGE_LINE.match(line)
            assert match is not None, line
            assert f"({match['src']}:" in match["match"]
            assert f"({match['dst']}:" in match["match"]


# =============================================================================
# Nodes and values
# =============================================================================


class TestNodes:
    """Test cases for node keys, attributes and literals."""

    def test_attributes_rendered_with_set(self) -> None:
        text = correct(POSITION_TO_ACCOUNT)

        assert 'MERGE (account1:Account {accountId: "A1"}) SET account1.name = "Brokerage";' in text
        assert 'MERGE (pos2:Position {positionId: "P1"}) SET pos2.quantity = 10;' in text

    def test_repeated_node_declarations_are_merged(self) -> None:
        raw = """
        MERGE (a:Account {accountId: "A1"})
        MERGE (b:Account {accountId: "A1", type: "IRA"});
        """
        text = correct(raw)

        assert text.count("MERGE (account1:Account") == 1
        assert 'account1.type = "IRA"' in text

    def test_set_clause_adds_attributes(self) -> None:
        raw = 'MERGE (a:Account {accountId: "A1"}) SET a.name = "Main", a.balance = 12.5;'
        text = correct(raw)

        assert 'account1.name = "Main"' in text
        assert "account1.balance = 12.5" in text

    def test_non_literal_values_are_skipped(self) -> None:
        raw = 'MERGE (a:Account {accountId: "A1"}) SET a.updated = timestamp(), a.name = "Main";'
        text = correct(raw)

        assert "timestamp" not in text
        assert 'account1.name = "Main"' in text

    def test_iso_temporal_values_are_kept(self) -> None:
        raw = 'MERGE (a:Account {accountId: "A1", openedOn: date("2024-01-31")});'
        text = correct(raw)

        assert 'account1.openedOn = date("2024-01-31")' in text

    def test_non_iso_temporal_values_are_dropped(self) -> None:
        raw = 'MERGE (a:Account {accountId: "A1", openedOn: date("31/01/2024")});'
        report = correct_with_report(raw)

        assert "openedOn" not in report.text
        assert any("openedOn" in note for note in report.applied_fixes)

    def test_security_product_id_alias(self) -> None:
        raw = 'MERGE (s:Security {productId: "S1", ticker: "ACME"});'
        text = correct(raw)

        assert 'MERGE (s1:Security {securityId: "S1"})' in text

    def test_label_inferred_from_identifier(self) -> None:
        raw = 'MERGE (x {addressId: "AD1", city: "Boston"});'
        text = correct(raw)

        assert 'MERGE (addr1:Address {addressId: "AD1"})' in text


# =============================================================================
# Completion
# =============================================================================


class TestCompletion:
    """Test cases for the completion pass."""

    def test_trade_is_linked_to_first_security_and_account(self) -> None:
        report = correct_with_report(UNLINKED_TRADE)

        assert "MERGE (t3)-[:ON_SECURITY]->(s1);" in report.text
        assert "MERGE (account4)-[:EXECUTED_TRADE]->(t3);" in report.text
        assert "-[:ON_SECURITY]->(s2)" not in report.text
        assert all(edge.synthesized for edge in report.program.edges)

    def test_existing_link_is_respected(self) -> None:
        raw = UNLINKED_TRADE + "MERGE (t)-[:ON_SECURITY]->(s2);\n"
        text = correct(raw)

        assert "MERGE (t3)-[:ON_SECURITY]->(s2);" in text
        assert "-[:ON_SECURITY]->(s1)" not in text

    def test_completion_can_be_disabled(self) -> None:
        text = StatementCorrector(enable_completion_pass=False).correct(UNLINKED_TRADE)

        assert edge_lines(text) == []

    def test_no_candidate_means_no_link(self) -> None:
        raw = 'MERGE (t:Trade {tradeId: "T1"});'
        text = correct(raw)

        assert edge_lines(text) == []


# =============================================================================
# Constraints
# =============================================================================


class TestConstraints:
    """Test cases for uniqueness constraint synthesis."""

    def test_constraints_from_schema(self, financial_schema: GraphSchema) -> None:
        text = correct(POSITION_TO_ACCOUNT, financial_schema)

        assert "FOR (account:Account)" in text
        assert "REQUIRE account.accountId IS UNIQUE;" in text
        assert "FOR (party:Party)" in text
        assert "REQUIRE s.securityId IS UNIQUE;" in text
        assert "REQUIRE pos.positionId IS UNIQUE;" in text

    def test_constraints_inferred_from_nodes(self) -> None:
        text = correct(POSITION_TO_ACCOUNT)

        assert "REQUIRE account.accountId IS UNIQUE;" in text
        assert "REQUIRE pos.positionId IS UNIQUE;" in text
        assert NO_CONSTRAINTS_NOTE not in text

    def test_foreign_keys_do_not_produce_constraints(self) -> None:
        schema = GraphSchema(nodes={"Trade": ["tradeId", "accountId"]}, relationships=[])
        constraints = synthesize_constraints(schema, [])

        assert [(c.label, c.property) for c in constraints] == [("Trade", "tradeId")]

    def test_generic_id_is_used_when_no_label_identifier(self) -> None:
        schema = GraphSchema(nodes={"Widget": ["name", "id"]}, relationships=[])
        constraints = synthesize_constraints(schema, [])

        assert [(c.label, c.property) for c in constraints] == [("Widget", "id")]

    def test_note_when_no_identifier_exists(self) -> None:
        text = correct('MERGE (w:Widget {name: "gear"});')

        assert NO_CONSTRAINTS_NOTE in text

    def test_constraint_padding(self) -> None:
        schema = GraphSchema(nodes={"Account": ["accountId"]}, relationships=[])
        rendered = synthesize_constraints(schema, [])[0].render()

        assert rendered == (
            "CREATE CONSTRAINT IF NOT EXISTS FOR (account:Account)"
            + " " * 23
            + "REQUIRE account.accountId IS UNIQUE;"
        )


# =============================================================================
# Output shape
# =============================================================================


class TestOutput:
    """Test cases for the rendered program as a whole."""

    def test_sections_in_order(self) -> None:
        text = correct(POSITION_TO_ACCOUNT)

        assert text.index(CONSTRAINTS_HEADER) < text.index(NODES_HEADER) < text.index(EDGES_HEADER)
        assert text.endswith("\n")

    def test_correction_is_idempotent(self, financial_schema: GraphSchema) -> None:
        raw = POSITION_TO_ACCOUNT + SECURITY_IN_POSITION + UNLINKED_TRADE
        once = correct(raw, financial_schema)

        assert correct(once, financial_schema) == once

    def test_idempotent_without_schema(self) -> None:
        once = correct(POSITION_TO_ACCOUNT)
        assert correct(once) == once

    def test_deterministic(self) -> None:
        assert correct(UNLINKED_TRADE) == correct(UNLINKED_TRADE)

    def test_no_nodes_returns_decoded_text(self) -> None:
        report = correct_with_report("RETURN 1 -&gt; 2")

        assert not report.corrected
        assert report.text == "RETURN 1 -> 2"

    def test_empty_input(self) -> None:
        assert correct("") == ""
