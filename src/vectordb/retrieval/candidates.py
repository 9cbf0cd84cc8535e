"""
Candidate Selection - Stage 1 of the search funnel.

Scores every scoped binary code by Hamming distance to the query code and
keeps the closest ``width`` records. Ties go to the lower record id.
"""

import logging
from typing import Iterable, List, Tuple

from ..contracts.models import Candidate
from ..quantization import BinaryQuantizer
from .topk import BoundedTopK


logger = logging.getLogger(__name__)


class CandidateSelector:
    """
    Approximate top-K by Hamming distance.

    Example:
        >>> selector = CandidateSelector(BinaryQuantizer(8))
        >>> selector.select("AA", [(1, "AA"), (2, "2A")], width=1)
        [Candidate(id=1, hamming_distance=0)]
    """

    def __init__(self, quantizer: BinaryQuantizer):
        self.quantizer = quantizer

    def select(
        self,
        query_code: str,
        codes: Iterable[Tuple[int, str]],
        width: int,
    ) -> List[Candidate]:
        """
        Keep the ``width`` codes closest to ``query_code``.

        Args:
            query_code: Hex code of the query vector
            codes: ``(record_id, binary_code)`` pairs already scoped to eligible documents
            width: Number of candidates to keep (S2)

        Returns:
            Candidates in non-decreasing Hamming distance, ties by ascending id

        Raises:
            DimensionMismatchError: If any code has the wrong length
        """
        top: BoundedTopK[Candidate] = BoundedTopK(
            width,
            key=lambda c: c.hamming_distance,
            tie_break=lambda c: c.id,
        )

        scanned = 0
        for record_id, code in codes:
            scanned += 1
            distance = self.quantizer.hamming_distance(query_code, code)
            top.push(Candidate(id=record_id, hamming_distance=distance))

        selected = top.results()
        logger.debug(f"Hamming stage kept {len(selected)} of {scanned} codes (width={width})")
        return selected
