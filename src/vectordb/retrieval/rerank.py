"""
Reranking - Stage 2 of the search funnel.

Implements:
- Cosine similarity scoring against the full-precision vectors
- Bounded top-K with deterministic tie-breaks (ascending record id)

Only the stage-1 survivors are re-fetched, which bounds the cost of the
exact pass to S2 vector reads.
"""

import logging
import math
from typing import List, Optional, Sequence

from ..contracts.models import Candidate, ScoredCandidate
from ..core.exceptions import DimensionMismatchError, ValidationError
from ..storage.base import EmbeddingStore
from .topk import BoundedTopK


logger = logging.getLogger(__name__)

EPSILON = 1e-12


def cosine_similarity(
    vec_a: Sequence[float],
    vec_b: Sequence[float],
    magnitude_a: Optional[float] = None,
    magnitude_b: Optional[float] = None,
) -> float:
    """
    Compute cosine similarity between two vectors.

    ``dot(a, b) / (|a| * |b| + 1e-12)``; the epsilon keeps zero vectors at 0.0
    instead of dividing by zero.

    Args:
        vec_a: First vector
        vec_b: Second vector
        magnitude_a: Precomputed L2 norm of vec_a (computed if omitted)
        magnitude_b: Precomputed L2 norm of vec_b (computed if omitted)

    Returns:
        Cosine similarity, within [-1, 1] up to rounding

    Raises:
        ValidationError: If a vector is empty
        DimensionMismatchError: If vectors have different dimensions
    """
    if not vec_a or not vec_b:
        raise ValidationError("Vectors cannot be empty")

    if len(vec_a) != len(vec_b):
        raise DimensionMismatchError(
            f"Vector dimensions must match: {len(vec_a)} != {len(vec_b)}",
            expected=len(vec_a),
            actual=len(vec_b),
        )

    dot_product = sum(a * b for a, b in zip(vec_a, vec_b))
    if magnitude_a is None:
        magnitude_a = math.sqrt(sum(a * a for a in vec_a))
    if magnitude_b is None:
        magnitude_b = math.sqrt(sum(b * b for b in vec_b))

    return dot_product / (magnitude_a * magnitude_b + EPSILON)


class Reranker:
    """Exact cosine reranking of stage-1 candidates."""

    def __init__(self, store: EmbeddingStore):
        self.store = store

    def rerank(
        self,
        candidates: List[Candidate],
        query_vector: Sequence[float],
        width: int,
    ) -> List[ScoredCandidate]:
        """
        Score candidates by cosine similarity and keep the best ``width``.

        Args:
            candidates: Stage-1 survivors
            query_vector: Raw query vector
            width: Number of results to keep (S3)

        Returns:
            ScoredCandidates in non-increasing similarity, ties by ascending id

        Raises:
            DimensionMismatchError: If a stored vector's length differs from the query's
        """
        if not candidates or width <= 0:
            return []

        distances = {c.id: c.hamming_distance for c in candidates}
        records = self.store.get_many(list(distances))
        query_magnitude = math.sqrt(sum(v * v for v in query_vector))

        top: BoundedTopK[ScoredCandidate] = BoundedTopK(
            width,
            key=lambda s: s.similarity,
            tie_break=lambda s: s.id,
            largest=True,
        )
        for record in records:
            similarity = cosine_similarity(
                query_vector,
                record.vector,
                magnitude_a=query_magnitude,
                magnitude_b=record.magnitude,
            )
            top.push(ScoredCandidate(
                id=record.id,
                document_id=record.document_id,
                similarity=similarity,
                hamming_distance=distances.get(record.id),
            ))

        if len(records) < len(distances):
            logger.debug(
                f"{len(distances) - len(records)} candidates disappeared before reranking"
            )

        reranked = top.results()
        logger.debug(f"Cosine stage kept {len(reranked)} of {len(records)} vectors (width={width})")
        return reranked
