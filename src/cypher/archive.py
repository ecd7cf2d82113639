"""
Statement Archive.

Writes the combined statement program of a document to a ``.cypher``
file for auditing.
"""

import re
from datetime import datetime, timezone
from pathlib import Path

import structlog

from src.ingestion.state import GeneratedStatementResult, ResultStatus

logger = structlog.get_logger(__name__)


def safe_filename(filename: str) -> str:
    """``My Report (v2).pdf`` -> ``My_Report__v2_``."""
    stem = re.sub(r"[^a-zA-Z0-9.-]", "_", filename)
    return re.sub(r"\.[^/.]+$", "", stem) or "document"


class StatementArchive:
    """File archive of generated programs, one file per generation run."""

    def __init__(self, directory: str | Path):
        self._dir = Path(directory)

    @property
    def directory(self) -> Path:
        return self._dir

    @staticmethod
    def render(
        document_id: str,
        filename: str,
        results: list[GeneratedStatementResult],
        generated_at: datetime | None = None,
    ) -> str:
        generated_at = generated_at or datetime.now(timezone.utc)
        parts = [
            f"-- Generated Cypher for: {filename}\n"
            f"-- Document ID: {document_id}\n"
            f"-- Generated at: {generated_at.isoformat()}\n"
        ]

        for position, result in enumerate(results, start=1):
            if result.status == ResultStatus.ERROR:
                parts.append(f"-- ERROR in result {position}: {result.error}\n")
            else:
                parts.append(result.statements.rstrip() + "\n")

        return "\n".join(parts)

    def save(
        self,
        document_id: str,
        filename: str,
        results: list[GeneratedStatementResult],
    ) -> Path:
        """
        Write the archive file.

        Returns:
            Path of the written file
        """
        now = datetime.now(timezone.utc)
        timestamp = now.strftime("%Y-%m-%dT%H-%M-%S")
        path = self._dir / f"{safe_filename(filename)}_{document_id}_{timestamp}.cypher"

        self._dir.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write(self.render(document_id, filename, results, now))

        logger.info(
            "Statements archived",
            document_id=document_id,
            path=str(path),
            result_count=len(results),
        )
        return path
