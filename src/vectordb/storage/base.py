"""
Storage interfaces for embeddings and documents.

The search core only talks to these abstract classes; concrete backends
(SQLite, SQL Server) are injected by the caller or built by
``storage.create_embedding_store``.
"""

import itertools
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Iterator, List, Optional, Sequence, Tuple

from ..contracts.models import (
    ChunkVector,
    DocumentValues,
    EligibilityCriteria,
    EmbeddingRecord,
)
from ..query.expressions import Expression, SortTerm
from ..quantization import BinaryQuantizer, magnitude, normalize


# Stays below the host parameter limits of SQLite (999 on old builds) and SQL Server (2100)
IN_BATCH_SIZE = 500

DOCUMENT_COLUMNS = frozenset({
    "id", "doc_type", "status", "title", "author", "created_at", "updated_at",
})


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def batched(values: Sequence[Any], size: int = IN_BATCH_SIZE) -> Iterator[List[Any]]:
    """Yield ``values`` in lists of at most ``size`` items."""
    iterator = iter(values)
    while True:
        batch = list(itertools.islice(iterator, size))
        if not batch:
            return
        yield batch


def placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


@dataclass(frozen=True)
class PreparedVector:
    """Derived columns computed once per upsert."""
    vector: List[float]
    normalized_vector: List[float]
    binary_code: str
    magnitude: float


class KeyedLocks:
    """
    One lock per key, created on demand.

    Used to serialize bulk replaces of the same document while replaces of
    different documents proceed in parallel. A key's lock is dropped once
    no thread holds or waits on it.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Any, threading.Lock] = {}
        self._users: Dict[Any, int] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key: Any) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._users[key] = self._users.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[key] -= 1
                if not self._users[key]:
                    del self._users[key]
                    del self._locks[key]


class EmbeddingStore(ABC):
    """
    Abstract base class for embedding stores.

    Records are keyed by a surrogate ``id`` and unique on
    ``(document_id, sequence_no)``. Missing lookups return None or an empty
    list; driver failures raise StoreError.
    """

    def __init__(self, quantizer: BinaryQuantizer):
        self.quantizer = quantizer
        self._document_locks = KeyedLocks()

    @property
    def dimensions(self) -> int:
        return self.quantizer.dimensions

    def prepare_vector(self, vector: Sequence[float]) -> PreparedVector:
        """
        Compute binary code, magnitude and normalized vector.

        Raises:
            DimensionMismatchError: If the vector length is not the store's D
        """
        values = [float(v) for v in vector]
        code = self.quantizer.to_binary_code(values)
        return PreparedVector(
            vector=values,
            normalized_vector=normalize(values),
            binary_code=code,
            magnitude=magnitude(values),
        )

    @abstractmethod
    def init_schema(self) -> None:
        """Create tables and indexes if they do not exist (idempotent)."""
        pass

    @abstractmethod
    def drop_schema(self) -> None:
        """Drop the embeddings table if it exists."""
        pass

    @abstractmethod
    def get(self, record_id: int) -> Optional[EmbeddingRecord]:
        pass

    @abstractmethod
    def get_many(self, record_ids: Sequence[int], preserve_order: bool = False) -> List[EmbeddingRecord]:
        """
        Fetch several records by id.

        Args:
            record_ids: Ids to fetch; unknown ids are skipped
            preserve_order: Return records in the order of ``record_ids``
                (otherwise ascending id)
        """
        pass

    @abstractmethod
    def get_for_document(self, document_id: int) -> List[EmbeddingRecord]:
        """All records of a document ordered by sequence number."""
        pass

    @abstractmethod
    def get_by_position(self, document_id: int, sequence_no: int) -> Optional[EmbeddingRecord]:
        pass

    @abstractmethod
    def get_latest_updated(self, document_id: int) -> Optional[EmbeddingRecord]:
        """The document's most recently updated record."""
        pass

    @abstractmethod
    def get_all(self, limit: int = 100000) -> List[EmbeddingRecord]:
        pass

    @abstractmethod
    def scan_codes(self, document_ids: Sequence[int], limit: int) -> List[Tuple[int, str]]:
        """
        ``(id, binary_code)`` of records belonging to ``document_ids``.

        At most ``limit`` rows, ascending id.
        """
        pass

    @abstractmethod
    def upsert(self, document_id: int, sequence_no: int, vector: Sequence[float], vector_type: str) -> int:
        """
        Insert or update the record at ``(document_id, sequence_no)``.

        Returns:
            The record id (unchanged when the record already existed)
        """
        pass

    def replace_all_for_document(self, document_id: int, chunks: Sequence[Any]) -> List[int]:
        """
        Replace every record of a document with ``chunks``.

        ``chunks[i]`` becomes sequence number ``i``; each chunk is a
        ChunkVector, a mapping with ``vector``/``vector_type`` or a bare
        vector. Calls for the same document are serialized.

        Returns:
            Ids of the inserted records, in sequence order
        """
        prepared = [ChunkVector.from_value(chunk) for chunk in chunks]
        # Validate every vector before deleting anything
        vectors = [self.prepare_vector(chunk.vector) for chunk in prepared]
        with self._document_locks.hold(document_id):
            return self._replace_all(
                document_id,
                [(vec, chunk.vector_type) for vec, chunk in zip(vectors, prepared)],
            )

    @abstractmethod
    def _replace_all(self, document_id: int, rows: List[Tuple[PreparedVector, str]]) -> List[int]:
        """Delete and reinsert a document's records in one transaction."""
        pass

    @abstractmethod
    def delete(self, record_id: int) -> None:
        pass

    @abstractmethod
    def count(self) -> int:
        pass

    @abstractmethod
    def close(self) -> None:
        pass


class DocumentRepository(ABC):
    """
    Abstract base class for the host document repository.

    Documents carry typed attribute columns and untyped (text) metadata rows.
    """

    @property
    def attribute_columns(self) -> FrozenSet[str]:
        """Attribute names that filters and sort keys may reference."""
        return DOCUMENT_COLUMNS

    @abstractmethod
    def find_eligible_ids(
        self,
        criteria: EligibilityCriteria,
        predicate: Optional[Expression] = None,
    ) -> List[int]:
        """
        Ids of documents matching the type/status criteria and the predicate.

        Args:
            criteria: Allowed document types and statuses
            predicate: Compiled predicate, or None for no filtering
        """
        pass

    @abstractmethod
    def get_sort_values(
        self,
        document_ids: Sequence[int],
        terms: Sequence[SortTerm],
    ) -> Dict[int, DocumentValues]:
        """Attribute and metadata values referenced by ``terms`` for each document."""
        pass
