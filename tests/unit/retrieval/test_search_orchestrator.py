"""
Unit tests for SearchOrchestrator against in-memory SQLite stores.

Tests for:
- End-to-end ranking through all three stages
- Eligibility scope and predicates
- Caller-defined ordering
- Request validation before any store access
- Funnel width bounds
"""

import random
from contextlib import ExitStack
from unittest.mock import MagicMock, patch

import pytest

from vectordb.contracts.models import EligibilityCriteria
from vectordb.core.config import SearchConfig
from vectordb.core.exceptions import DimensionMismatchError, ValidationError
from vectordb.query import PredicateBuilder, SortSpec
from vectordb.retrieval import SearchOrchestrator


X = [1, -1, 1, -1, 1, -1, 1, -1]
Y = [-1, -1, 1, -1, 1, -1, 1, -1]


def add_document(repository, store, vector, meta=None, **fields):
    """Insert a document with one chunk; returns (document_id, record_id)."""
    document_id = repository.add_document(**fields)
    for key, value in (meta or {}).items():
        repository.set_meta(document_id, key, value)
    record_id = store.upsert(document_id, 0, vector, "content")
    return document_id, record_id


class TestSearchRanking:
    """Tests for the ranked output."""

    def test_closest_vector_wins(self, orchestrator, embedding_store, document_repository):
        """Test the query's own vector ranks first at K=1."""
        _, x_id = add_document(document_repository, embedding_store, X)
        add_document(document_repository, embedding_store, Y)

        assert orchestrator.search(X, k=1) == [x_id]

    def test_results_in_similarity_order(self, orchestrator, embedding_store, document_repository):
        """Test without a sort the output follows cosine similarity."""
        _, far = add_document(document_repository, embedding_store, [-v for v in X])
        _, near = add_document(document_repository, embedding_store, Y)
        _, exact = add_document(document_repository, embedding_store, X)

        assert orchestrator.search(X, k=3) == [exact, near, far]

    def test_never_padded(self, orchestrator, embedding_store, document_repository):
        """Test fewer than K results are returned when fewer exist."""
        add_document(document_repository, embedding_store, X)

        assert len(orchestrator.search(X, k=5)) == 1

    def test_returns_chunk_ids(self, orchestrator, embedding_store, document_repository):
        """Test ids are embedding-record ids, several per document possible."""
        document_id = document_repository.add_document()
        ids = embedding_store.replace_all_for_document(document_id, [X, Y])

        assert orchestrator.search(X, k=2) == ids

    def test_detailed_result(self, orchestrator, embedding_store, document_repository):
        """Test search_detailed reports hits and stage counts."""
        x_doc, x_id = add_document(document_repository, embedding_store, X)
        add_document(document_repository, embedding_store, Y)

        result = orchestrator.search_detailed(X, k=1)

        assert result.ids == [x_id]
        assert result.hits[0].rank == 1
        assert result.hits[0].document_id == x_doc
        assert result.hits[0].hamming_distance == 0
        assert abs(result.hits[0].similarity - 1.0) < 1e-9
        assert result.eligible_documents == 2
        assert result.scanned == 2
        assert result.search_id


class TestEligibility:
    """Tests for eligibility scope and predicates."""

    def test_predicate_matching_nothing(self, orchestrator, embedding_store, document_repository):
        """Test a predicate with no matching documents yields an empty list."""
        add_document(document_repository, embedding_store, X, author="alice")
        builder = PredicateBuilder.from_groups({
            "author": [{"field_name": "author", "operator": "=", "compare_value": "nobody"}],
        })

        assert orchestrator.search(X, k=3, predicate=builder) == []

    def test_no_documents(self, orchestrator):
        """Test an empty repository is not an error."""
        result = orchestrator.search_detailed(X, k=3)

        assert result.ids == []
        assert result.eligible_documents == 0

    def test_default_scope_excludes_drafts_and_other_types(
        self, orchestrator, embedding_store, document_repository
    ):
        """Test configured document types and statuses apply."""
        _, published = add_document(document_repository, embedding_store, Y)
        add_document(document_repository, embedding_store, X, status="draft")
        add_document(document_repository, embedding_store, X, doc_type="page")

        assert orchestrator.search(X, k=5) == [published]

    def test_explicit_criteria(self, orchestrator, embedding_store, document_repository):
        """Test caller criteria replace the configured scope."""
        add_document(document_repository, embedding_store, Y)
        _, page = add_document(document_repository, embedding_store, X, doc_type="page")

        criteria = EligibilityCriteria(document_types=["page"], statuses=["publish"])

        assert orchestrator.search(X, k=5, criteria=criteria) == [page]

    def test_metadata_filter(self, orchestrator, embedding_store, document_repository):
        """Test metadata filters compare numeric text numerically."""
        add_document(document_repository, embedding_store, X, meta={"views": "9"})
        _, popular = add_document(document_repository, embedding_store, Y, meta={"views": "10"})

        builder = PredicateBuilder.from_groups({
            "views": [{"field_name": "views", "operator": ">=", "compare_value": 10, "is_meta_filter": True}],
        })

        assert orchestrator.search(X, k=5, predicate=builder) == [popular]

    def test_or_within_group_and_across(self, orchestrator, embedding_store, document_repository):
        """Test group semantics end to end."""
        _, a = add_document(document_repository, embedding_store, X, author="alice", title="Alpha")
        _, b = add_document(document_repository, embedding_store, Y, author="bob", title="Beta")
        add_document(document_repository, embedding_store, X, author="carol", title="Alpha")

        builder = PredicateBuilder.from_groups({
            "author": [
                {"field_name": "author", "operator": "=", "compare_value": "alice"},
                {"field_name": "author", "operator": "=", "compare_value": "bob"},
            ],
            "title": [{"field_name": "title", "operator": "LIKE", "compare_value": "a"}],
        })

        assert sorted(orchestrator.search(X, k=5, predicate=builder)) == sorted([a, b])

    def test_like_is_literal(self, orchestrator, embedding_store, document_repository):
        """Test LIKE wildcards in the value match literally."""
        _, literal = add_document(document_repository, embedding_store, X, title="50% off")
        add_document(document_repository, embedding_store, Y, title="500 off")

        builder = PredicateBuilder.from_groups({
            "title": [{"field_name": "title", "operator": "LIKE", "compare_value": "50%"}],
        })

        assert orchestrator.search(X, k=5, predicate=builder) == [literal]

    def test_empty_in_matches_all(self, orchestrator, embedding_store, document_repository):
        """Test an empty IN list does not restrict the search."""
        add_document(document_repository, embedding_store, X)
        add_document(document_repository, embedding_store, Y)

        builder = PredicateBuilder.from_groups({
            "ids": [{"field_name": "id", "operator": "IN", "compare_value": []}],
        })

        assert len(orchestrator.search(X, k=5, predicate=builder)) == 2


class TestOrdering:
    """Tests for caller-defined ordering."""

    def test_metadata_number_desc(self, orchestrator, embedding_store, document_repository):
        """Test views 10/5/20 sorted DESC as numbers."""
        _, ten = add_document(document_repository, embedding_store, X, meta={"views": "10"})
        _, five = add_document(document_repository, embedding_store, Y, meta={"views": "5"})
        _, twenty = add_document(
            document_repository, embedding_store, [1, 1, 1, -1, 1, -1, 1, -1], meta={"views": "20"}
        )

        sort = SortSpec()
        sort.add("views", "DESC", target="metadata", cast="number")

        assert orchestrator.search(X, k=3, sort=sort) == [twenty, ten, five]

    def test_sort_from_list(self, orchestrator, embedding_store, document_repository):
        """Test sort keys may be given as a list of mappings."""
        _, b = add_document(document_repository, embedding_store, X, title="b")
        _, a = add_document(document_repository, embedding_store, Y, title="a")

        ids = orchestrator.search(X, k=2, sort=[{"field_name": "title", "direction": "ASC"}])

        assert ids == [a, b]

    def test_sort_applies_after_similarity_cut(self, orchestrator, embedding_store, document_repository):
        """Test the sort reorders only the most similar candidates."""
        config = SearchConfig(dimensions=8, stage2_factor=1, stage3_factor=1, document_types=["post"])
        narrow = SearchOrchestrator(embedding_store, document_repository, config)
        _, best = add_document(document_repository, embedding_store, X, title="z")
        add_document(document_repository, embedding_store, [-v for v in X], title="a")

        assert narrow.search(X, k=1, sort=[{"field_name": "title"}]) == [best]


class TestValidation:
    """Tests for request validation."""

    @pytest.mark.parametrize("k", [0, -1, 1.5, True])
    def test_invalid_k(self, k):
        """Test k must be a positive integer and stores are untouched."""
        store, repository = MagicMock(), MagicMock()
        store.quantizer.dimensions = 8
        orchestrator = SearchOrchestrator(store, repository, SearchConfig(dimensions=8))

        with pytest.raises(ValidationError):
            orchestrator.search(X, k=k)
        repository.find_eligible_ids.assert_not_called()
        store.scan_codes.assert_not_called()

    def test_wrong_query_dimensions(self):
        """Test the query length must equal D."""
        store, repository = MagicMock(), MagicMock()
        store.quantizer.dimensions = 8
        orchestrator = SearchOrchestrator(store, repository, SearchConfig(dimensions=8))

        with pytest.raises(DimensionMismatchError):
            orchestrator.search([1.0, 2.0, 3.0], k=1)
        repository.find_eligible_ids.assert_not_called()

    def test_invalid_sort_fails_before_store(self):
        """Test sort validation errors surface before store access."""
        store, repository = MagicMock(), MagicMock()
        store.quantizer.dimensions = 8
        orchestrator = SearchOrchestrator(store, repository, SearchConfig(dimensions=8))

        with pytest.raises(ValidationError):
            orchestrator.search(X, k=1, sort=[{"field_name": "views", "target": "metadata"}])
        repository.find_eligible_ids.assert_not_called()

    @pytest.mark.parametrize("populated", [False, True])
    @pytest.mark.parametrize("request_kwargs", [
        {"sort": [{"field_name": "no_such_column"}]},
        {"predicate": PredicateBuilder.from_groups({
            "x": [{"field_name": "no_such_column", "operator": "=", "compare_value": 1}],
        })},
    ])
    def test_unknown_attribute_fails_before_store(
        self, orchestrator, embedding_store, document_repository, populated, request_kwargs
    ):
        """Test unknown attribute names raise without touching either store."""
        if populated:
            add_document(document_repository, embedding_store, X)

        with ExitStack() as stack:
            spies = [
                stack.enter_context(patch.object(target, name, wraps=getattr(target, name)))
                for target, name in [
                    (document_repository, "find_eligible_ids"),
                    (document_repository, "get_sort_values"),
                    (embedding_store, "scan_codes"),
                    (embedding_store, "get_many"),
                ]
            ]
            with pytest.raises(ValidationError, match="no_such_column"):
                orchestrator.search(X, k=1, **request_kwargs)

        for spy in spies:
            spy.assert_not_called()

    def test_known_attribute_in_nested_group_accepted(
        self, orchestrator, embedding_store, document_repository
    ):
        """Test known attributes inside OR groups pass the attribute check."""
        _, x_id = add_document(document_repository, embedding_store, X, author="alice")
        builder = PredicateBuilder.from_groups({
            "who": [
                {"field_name": "author", "operator": "=", "compare_value": "alice"},
                {"field_name": "views", "operator": ">", "compare_value": 5, "is_meta_filter": True},
            ],
        })

        assert orchestrator.search(X, k=1, predicate=builder, sort=[{"field_name": "title"}]) == [x_id]

    def test_quantizer_config_mismatch(self, embedding_store, document_repository):
        """Test the store's dimensionality must match the config."""
        with pytest.raises(ValidationError, match="do not match"):
            SearchOrchestrator(embedding_store, document_repository, SearchConfig(dimensions=16))


class TestFunnelBounds:
    """Tests for per-stage width limits."""

    def test_stage_counts_bounded(self, embedding_store, document_repository):
        """Test S2 <= 10K and S3 <= 5K with the default factors."""
        rng = random.Random(42)
        for _ in range(60):
            vector = [rng.uniform(-1, 1) for _ in range(8)]
            add_document(document_repository, embedding_store, vector)

        orchestrator = SearchOrchestrator(
            embedding_store, document_repository, SearchConfig(dimensions=8, document_types=["post"])
        )
        result = orchestrator.search_detailed(X, k=2)

        assert result.scanned == 60
        assert result.stage2_count == 20
        assert result.stage3_count == 10
        assert len(result.hits) == 2

    def test_scan_limit(self, embedding_store, document_repository):
        """Test stage 1 scans at most scan_limit codes."""
        for _ in range(5):
            add_document(document_repository, embedding_store, X)

        config = SearchConfig(dimensions=8, scan_limit=3, document_types=["post"])
        result = SearchOrchestrator(embedding_store, document_repository, config).search_detailed(X, k=1)

        assert result.scanned == 3
