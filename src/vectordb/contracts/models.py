"""
Vector Search Data Models

Data models shared by the stores, the candidate funnel and the embed queue.

These models map to the tables:
- <prefix>embeddings      (EmbeddingRecord)
- <prefix>embed_queue     (QueueJob)

and to the in-memory results of a search:
- Candidate / ScoredCandidate: stage-1 and stage-2 survivors
- SearchHit / SearchResult: the final ranked output
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence


def _parse_timestamp(value: Any) -> Optional[datetime]:
    """Accept datetimes, ISO strings or None."""
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class EmbeddingRecord:
    """
    One embedded chunk of a document.

    Attributes:
        id: Store-assigned surrogate key
        document_id: Owning document
        sequence_no: Chunk position within the document
        vector: Raw embedding
        normalized_vector: Unit-length projection of ``vector``
        binary_code: Hex sign code (D/4 characters)
        magnitude: L2 norm of ``vector``
        vector_type: Free-form tag (e.g. 'content', 'title')
        created_at: When the record was first inserted
        updated_at: When the record was last upserted
    """
    id: int
    document_id: int
    sequence_no: int
    vector: List[float]
    normalized_vector: List[float]
    binary_code: str
    magnitude: float
    vector_type: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def dimensions(self) -> int:
        return len(self.vector)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "document_id": self.document_id,
            "sequence_no": self.sequence_no,
            "vector": self.vector,
            "normalized_vector": self.normalized_vector,
            "vector_type": self.vector_type,
            "binary_code": self.binary_code,
            "magnitude": self.magnitude,
            "created_at": _format_timestamp(self.created_at),
            "updated_at": _format_timestamp(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EmbeddingRecord":
        """Create from dictionary."""
        return cls(
            id=int(data["id"]),
            document_id=int(data["document_id"]),
            sequence_no=int(data["sequence_no"]),
            vector=[float(v) for v in data["vector"]],
            normalized_vector=[float(v) for v in data.get("normalized_vector") or []],
            binary_code=data["binary_code"],
            magnitude=float(data["magnitude"]),
            vector_type=data.get("vector_type", ""),
            created_at=_parse_timestamp(data.get("created_at")),
            updated_at=_parse_timestamp(data.get("updated_at")),
        )


@dataclass
class ChunkVector:
    """Input for a bulk replace: one chunk's vector and type tag."""
    vector: Sequence[float]
    vector_type: str = "content"

    @classmethod
    def from_value(cls, value: Any) -> "ChunkVector":
        """Accept a ChunkVector, a mapping with 'vector'/'vector_type', or a bare vector."""
        if isinstance(value, cls):
            return value
        if isinstance(value, dict):
            return cls(vector=value["vector"], vector_type=value.get("vector_type", "content"))
        return cls(vector=value)


@dataclass(frozen=True)
class Candidate:
    """Stage-1 survivor: a record id and its Hamming distance to the query."""
    id: int
    hamming_distance: int


@dataclass(frozen=True)
class ScoredCandidate:
    """Stage-2 survivor with its exact cosine similarity."""
    id: int
    document_id: int
    similarity: float
    hamming_distance: Optional[int] = None


@dataclass
class EligibilityCriteria:
    """
    Document-level scope applied before any filter.

    Attributes:
        document_types: Allowed document types (empty means any type)
        statuses: Allowed document statuses (empty means any status)
    """
    document_types: List[str] = field(default_factory=list)
    statuses: List[str] = field(default_factory=list)


@dataclass
class DocumentValues:
    """Attribute and metadata values of one document, used for sorting."""
    document_id: int
    attributes: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Optional[str]] = field(default_factory=dict)


@dataclass
class SearchHit:
    """One ranked search result."""
    rank: int
    id: int
    document_id: int
    similarity: float
    hamming_distance: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rank": self.rank,
            "id": self.id,
            "document_id": self.document_id,
            "similarity": self.similarity,
            "hamming_distance": self.hamming_distance,
        }


@dataclass
class SearchResult:
    """
    Complete result of a search, with funnel statistics.

    Attributes:
        search_id: Correlation id used in log lines
        k: Number of results requested
        hits: Ranked hits (at most k)
        eligible_documents: Documents that passed the eligibility scope and predicate
        scanned: Stored codes scanned in stage 1
        stage2_count: Hamming survivors
        stage3_count: Cosine survivors
        execution_ms: Wall time of the whole search
    """
    search_id: str
    k: int
    hits: List[SearchHit] = field(default_factory=list)
    eligible_documents: int = 0
    scanned: int = 0
    stage2_count: int = 0
    stage3_count: int = 0
    execution_ms: int = 0

    @property
    def ids(self) -> List[int]:
        return [hit.id for hit in self.hits]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "search_id": self.search_id,
            "k": self.k,
            "hits": [hit.to_dict() for hit in self.hits],
            "eligible_documents": self.eligible_documents,
            "scanned": self.scanned,
            "stage2_count": self.stage2_count,
            "stage3_count": self.stage3_count,
            "execution_ms": self.execution_ms,
        }


class QueueStatus(str, Enum):
    """Status of a document in the embed queue."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class QueueJob:
    """
    A document waiting to be (re)embedded.

    Attributes:
        job_id: Queue row id
        document_id: Document to embed
        chunk_count: Expected number of chunks (0 when unknown)
        status: Current queue status
        queued_time: When the document was queued
        start_time: When processing started
        end_time: When processing completed or failed
        error_count: Number of failed attempts
        error_message: Last error message
    """
    job_id: int
    document_id: int
    status: QueueStatus
    chunk_count: int = 0
    queued_time: Optional[datetime] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    error_count: int = 0
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "document_id": self.document_id,
            "chunk_count": self.chunk_count,
            "status": self.status.value,
            "queued_time": _format_timestamp(self.queued_time),
            "start_time": _format_timestamp(self.start_time),
            "end_time": _format_timestamp(self.end_time),
            "error_count": self.error_count,
            "error_message": self.error_message,
        }
