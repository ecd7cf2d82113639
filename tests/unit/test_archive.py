"""
Unit Tests for the Statement Archive.
"""

from datetime import datetime, timezone
from pathlib import Path

from src.cypher.archive import StatementArchive, safe_filename
from src.ingestion.state import GeneratedStatementResult, ResultStatus


def test_safe_filename() -> None:
    assert safe_filename("My Report (v2).pdf") == "My_Report__v2_"
    assert safe_filename("statement.txt") == "statement"
    assert safe_filename(".pdf") == "document"


class TestStatementArchive:
    """Test cases for StatementArchive."""

    def test_render_header_and_results(self) -> None:
        results = [
            GeneratedStatementResult(document_id="doc-1", statements="MERGE (a:A {id: 1});\n\n"),
            GeneratedStatementResult(
                document_id="doc-1",
                segment_id="s1",
                segment_index=1,
                status=ResultStatus.ERROR,
                error="model timed out",
            ),
        ]
        generated_at = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

        text = StatementArchive.render("doc-1", "report.pdf", results, generated_at)

        assert text.startswith("-- Generated Cypher for: report.pdf\n-- Document ID: doc-1\n")
        assert "-- Generated at: 2024-05-01T12:00:00+00:00" in text
        assert "MERGE (a:A {id: 1});\n" in text
        assert "-- ERROR in result 2: model timed out" in text

    def test_save_writes_file(self, tmp_path: Path) -> None:
        archive = StatementArchive(tmp_path / "out")
        results = [GeneratedStatementResult(document_id="doc-1", statements="MERGE (a:A {id: 1});")]

        path = archive.save("doc-1", "My Report.pdf", results)

        assert path.parent == tmp_path / "out"
        assert path.name.startswith("My_Report_doc-1_")
        assert path.suffix == ".cypher"
        assert "MERGE (a:A {id: 1});" in path.read_text(encoding="utf-8")
