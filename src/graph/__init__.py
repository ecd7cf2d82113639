"""
Graph Store Module.

Neo4j access for validation, transactional ingestion and read queries.
"""

from src.graph.neo4j_client import (
    GraphStore,
    GraphTransaction,
    MutationSummary,
)

__all__ = [
    "GraphStore",
    "GraphTransaction",
    "MutationSummary",
]
