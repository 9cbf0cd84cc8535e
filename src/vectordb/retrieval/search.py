"""
Search orchestration.

Runs the three-stage funnel for one query:

    eligible documents -> stored codes (<= S1)
        -> Hamming top S2 -> cosine top S3 -> caller ordering -> K ids

Every collaborator is injected, so the same orchestrator runs against the
SQLite and SQL Server backends (or test doubles).
"""

import logging
import time
import uuid
from typing import Any, Iterable, List, Optional, Sequence, Tuple, Union

from ..contracts.models import EligibilityCriteria, SearchHit, SearchResult
from ..core.config import SearchConfig
from ..core.exceptions import DimensionMismatchError, ValidationError
from ..core.logging import SearchContext, log_with_context
from ..query.expressions import AllOf, Always, AnyOf, Comparison, Expression, SortTerm, Target, iter_comparisons
from ..query.filters import PredicateBuilder
from ..query.sorting import SortKey, SortSpec
from ..quantization import BinaryQuantizer
from ..storage.base import DocumentRepository, EmbeddingStore
from .candidates import CandidateSelector
from .ordering import ResultSorter
from .rerank import Reranker


logger = logging.getLogger(__name__)

_EXPRESSION_TYPES = (Always, Comparison, AnyOf, AllOf)

PredicateInput = Union[None, PredicateBuilder, Expression]
SortInput = Union[None, SortSpec, Sequence[Any]]


def compile_predicate(predicate: PredicateInput) -> Optional[Expression]:
    """Accept a PredicateBuilder, an already compiled expression, or None."""
    if predicate is None:
        return None
    if isinstance(predicate, PredicateBuilder):
        return predicate.compile()
    if isinstance(predicate, _EXPRESSION_TYPES):
        return predicate
    raise ValidationError(f"Unsupported predicate type: {type(predicate).__name__}")


def compile_sort(sort: SortInput) -> Tuple[SortTerm, ...]:
    """
    Accept a SortSpec, a sequence of SortTerms/SortKeys/mappings, or None.
    """
    if sort is None:
        return ()
    if isinstance(sort, SortSpec):
        return sort.compile()
    if isinstance(sort, (str, bytes)) or not isinstance(sort, Iterable):
        raise ValidationError(f"Unsupported sort type: {type(sort).__name__}")

    terms = []
    for item in sort:
        if isinstance(item, SortTerm):
            terms.append(item)
        elif isinstance(item, SortKey):
            terms.append(item.to_term())
        else:
            terms.append(SortKey.from_spec(item).to_term())
    return tuple(terms)


class SearchOrchestrator:
    """
    Entry point for similarity search.

    Example:
        >>> orchestrator = SearchOrchestrator(store, repository, SearchConfig(dimensions=8))
        >>> orchestrator.search([1, -1, 1, -1, 1, -1, 1, -1], k=1)
        [17]
    """

    def __init__(
        self,
        store: EmbeddingStore,
        repository: DocumentRepository,
        config: Optional[SearchConfig] = None,
        quantizer: Optional[BinaryQuantizer] = None,
    ):
        """
        Args:
            store: Embedding store holding codes and vectors
            repository: Document repository for eligibility and sort values
            config: Funnel widths and eligibility defaults
            quantizer: Quantizer for query codes (defaults to the store's)
        """
        self.config = config or SearchConfig()
        self.config.validate()
        self.store = store
        self.repository = repository
        self.quantizer = quantizer or store.quantizer
        if self.quantizer.dimensions != self.config.dimensions:
            raise ValidationError(
                f"Quantizer dimensions ({self.quantizer.dimensions}) do not match "
                f"configured dimensions ({self.config.dimensions})"
            )

        self.selector = CandidateSelector(self.quantizer)
        self.reranker = Reranker(store)
        self.sorter = ResultSorter(repository)

    def default_criteria(self) -> EligibilityCriteria:
        return EligibilityCriteria(
            document_types=list(self.config.document_types),
            statuses=list(self.config.document_statuses),
        )

    def search(
        self,
        query_vector: Sequence[float],
        k: int,
        predicate: PredicateInput = None,
        sort: SortInput = None,
        criteria: Optional[EligibilityCriteria] = None,
    ) -> List[int]:
        """
        Find the ``k`` best embedding records for a query vector.

        Args:
            query_vector: Raw query vector of length D
            k: Number of results requested (>= 1)
            predicate: PredicateBuilder or compiled expression restricting documents
            sort: SortSpec (or list of sort keys) ordering the final results
            criteria: Document type/status scope (defaults from config)

        Returns:
            Up to ``k`` embedding-record ids; empty when nothing is eligible

        Raises:
            DimensionMismatchError: If the query vector length is not D
            ValidationError: If k < 1 or the predicate/sort is invalid
            StoreError: If a storage backend fails
        """
        return self.search_detailed(query_vector, k, predicate, sort, criteria).ids

    def search_detailed(
        self,
        query_vector: Sequence[float],
        k: int,
        predicate: PredicateInput = None,
        sort: SortInput = None,
        criteria: Optional[EligibilityCriteria] = None,
    ) -> SearchResult:
        """
        Run a search and return hits together with per-stage statistics.

        Same arguments and errors as ``search``.
        """
        start_time = time.time()

        self._validate_request(query_vector, k)
        expression = compile_predicate(predicate)
        terms = compile_sort(sort)
        self._check_attributes(expression, terms)
        criteria = criteria or self.default_criteria()
        query = [float(v) for v in query_vector]

        result = SearchResult(search_id=str(uuid.uuid4()), k=k)
        with SearchContext(search_id=result.search_id):
            document_ids = self.repository.find_eligible_ids(criteria, expression)
            result.eligible_documents = len(document_ids)
            log_with_context(
                logger, logging.DEBUG,
                f"{len(document_ids)} eligible documents", stage="eligibility",
            )
            if not document_ids:
                result.execution_ms = int((time.time() - start_time) * 1000)
                logger.info(f"Search {result.search_id}: no eligible documents")
                return result

            codes = self.store.scan_codes(document_ids, limit=self.config.scan_limit)
            result.scanned = len(codes)

            query_code = self.quantizer.to_binary_code(query)
            candidates = self.selector.select(query_code, codes, self.config.stage2_width(k))
            result.stage2_count = len(candidates)
            log_with_context(
                logger, logging.DEBUG,
                f"Hamming stage: {len(codes)} scanned, {len(candidates)} kept", stage="hamming",
            )

            scored = self.reranker.rerank(candidates, query, self.config.stage3_width(k))
            result.stage3_count = len(scored)
            log_with_context(
                logger, logging.DEBUG,
                f"Cosine stage: {len(scored)} kept", stage="cosine",
            )

            final = self.sorter.order(scored, k, terms)
            result.hits = [
                SearchHit(
                    rank=rank,
                    id=c.id,
                    document_id=c.document_id,
                    similarity=c.similarity,
                    hamming_distance=c.hamming_distance,
                )
                for rank, c in enumerate(final, start=1)
            ]

        result.execution_ms = int((time.time() - start_time) * 1000)
        logger.info(
            f"Search {result.search_id}: k={k}, eligible={result.eligible_documents}, "
            f"scanned={result.scanned}, hamming={result.stage2_count}, "
            f"cosine={result.stage3_count}, returned={len(result.hits)} "
            f"in {result.execution_ms}ms"
        )
        return result

    def _check_attributes(self, expression: Optional[Expression], terms: Sequence[SortTerm]) -> None:
        """Reject filters and sort keys naming attributes the repository does not have."""
        known = self.repository.attribute_columns
        names = [c.field_name for c in iter_comparisons(expression) if c.target is Target.ATTRIBUTE]
        names += [t.field_name for t in terms if t.target is Target.ATTRIBUTE]
        unknown = sorted(set(names) - set(known))
        if unknown:
            raise ValidationError(f"Unknown document attribute(s): {', '.join(unknown)}")

    def _validate_request(self, query_vector: Sequence[float], k: int) -> None:
        if isinstance(k, bool) or not isinstance(k, int) or k < 1:
            raise ValidationError(f"k must be a positive integer, got {k!r}")
        if len(query_vector) != self.quantizer.dimensions:
            raise DimensionMismatchError(
                f"Query vector has {len(query_vector)} dimensions, expected {self.quantizer.dimensions}",
                expected=self.quantizer.dimensions,
                actual=len(query_vector),
            )
