"""
Result Ordering - Stage 3 of the search funnel.

Without a sort, results stay in similarity order. With a sort, attribute and
metadata values are fetched for the surviving documents only and the
composite ordering decides the final order. Similarity is not used as a
hidden tie-break; callers add a ``similarity`` sort key for that.
"""

import functools
import logging
from typing import Any, Dict, List, Optional, Sequence

from ..contracts.models import DocumentValues, ScoredCandidate
from ..query.expressions import SortTerm, Target
from ..query.sorting import cast_value
from ..storage.base import DocumentRepository


logger = logging.getLogger(__name__)


def _compare_values(a: Any, b: Any) -> int:
    """Three-way compare where None (missing) is smaller than any value."""
    if a is None and b is None:
        return 0
    if a is None:
        return -1
    if b is None:
        return 1
    try:
        return (a > b) - (a < b)
    except TypeError:
        # Mixed column types: fall back to comparing text
        sa, sb = str(a), str(b)
        return (sa > sb) - (sa < sb)


def _sort_value(
    term: SortTerm,
    candidate: ScoredCandidate,
    values: Dict[int, DocumentValues],
) -> Any:
    if term.target is Target.SIMILARITY:
        return candidate.similarity

    doc_values = values.get(candidate.document_id)
    if doc_values is None:
        return None
    if term.target is Target.METADATA:
        return cast_value(doc_values.metadata.get(term.field_name), term.cast)
    return doc_values.attributes.get(term.field_name)


def order_candidates(
    candidates: Sequence[ScoredCandidate],
    terms: Sequence[SortTerm],
    values: Dict[int, DocumentValues],
) -> List[ScoredCandidate]:
    """
    Order candidates by a composite sort.

    Missing values sort first ascending and last descending. The sort is
    stable, so fully tied candidates keep their incoming order.
    """
    keyed = [
        (tuple(_sort_value(term, c, values) for term in terms), c)
        for c in candidates
    ]

    def compare(left, right) -> int:
        for index, term in enumerate(terms):
            result = _compare_values(left[0][index], right[0][index])
            if result:
                return -result if term.descending else result
        return 0

    keyed.sort(key=functools.cmp_to_key(compare))
    return [c for _, c in keyed]


class ResultSorter:
    """Applies the caller's ordering to stage-2 survivors and trims to K."""

    def __init__(self, repository: DocumentRepository):
        self.repository = repository

    def order(
        self,
        candidates: Sequence[ScoredCandidate],
        k: int,
        terms: Optional[Sequence[SortTerm]] = None,
    ) -> List[ScoredCandidate]:
        """
        Args:
            candidates: Stage-2 survivors in similarity order
            k: Number of results requested
            terms: Compiled sort terms, or None/empty for similarity order

        Returns:
            At most ``k`` candidates; never padded
        """
        if not terms:
            return list(candidates[:k])

        document_ids = sorted({c.document_id for c in candidates})
        needs_values = any(t.target is not Target.SIMILARITY for t in terms)
        values = (
            self.repository.get_sort_values(document_ids, terms)
            if needs_values and document_ids
            else {}
        )

        ordered = order_candidates(candidates, terms, values)
        logger.debug(f"Ordered {len(ordered)} candidates by {len(terms)} sort keys")
        return ordered[:k]
