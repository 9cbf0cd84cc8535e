"""
Vector Search Contracts

Data models for embedding records, search results and the embed queue.
"""

from .models import (
    EmbeddingRecord,
    ChunkVector,
    Candidate,
    ScoredCandidate,
    EligibilityCriteria,
    DocumentValues,
    SearchHit,
    SearchResult,
    QueueStatus,
    QueueJob,
)

__all__ = [
    "EmbeddingRecord",
    "ChunkVector",
    "Candidate",
    "ScoredCandidate",
    "EligibilityCriteria",
    "DocumentValues",
    "SearchHit",
    "SearchResult",
    "QueueStatus",
    "QueueJob",
]
