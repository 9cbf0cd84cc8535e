"""
SQLite-based embedding store and document repository.

Suitable for local use and tests; ``:memory:`` gives an ephemeral database.
Vectors are stored as JSON text, timestamps as ISO-8601 strings.
"""

import heapq
import itertools
import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from ..contracts.models import DocumentValues, EligibilityCriteria, EmbeddingRecord
from ..core.exceptions import StoreError, ValidationError
from ..quantization import BinaryQuantizer
from ..query.expressions import Expression, SortTerm, Target, is_identifier
from ..query.sql import SQLITE, SqlTranslator
from .base import (
    DocumentRepository,
    EmbeddingStore,
    PreparedVector,
    batched,
    placeholders,
    utcnow_iso,
)


logger = logging.getLogger(__name__)


class SqliteDatabase:
    """
    A single SQLite connection shared between threads.

    All access goes through ``transaction()`` or ``query()``, which hold the
    connection lock and translate ``sqlite3.Error`` into StoreError.
    """

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        self.conn = self._connect()

    def _connect(self) -> sqlite3.Connection:
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(self.db_path, check_same_thread=False)
        except sqlite3.Error as e:
            logger.error(f"Failed to open SQLite database {self.db_path}: {e}")
            raise StoreError(f"Failed to open SQLite database {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        logger.debug(f"Connected to SQLite database: {self.db_path}")
        return conn

    @contextmanager
    def transaction(self, action: str) -> Iterator[sqlite3.Cursor]:
        """
        Run statements atomically.

        Args:
            action: Short description used in error messages
        """
        with self._lock:
            cursor = self.conn.cursor()
            try:
                yield cursor
                self.conn.commit()
            except sqlite3.Error as e:
                self.conn.rollback()
                logger.error(f"SQLite error during {action}: {e}")
                raise StoreError(f"Failed to {action}: {e}") from e
            except Exception:
                self.conn.rollback()
                raise

    def query(self, action: str, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            try:
                return self.conn.execute(sql, tuple(params)).fetchall()
            except sqlite3.Error as e:
                logger.error(f"SQLite error during {action}: {e}")
                raise StoreError(f"Failed to {action}: {e}") from e

    def close(self) -> None:
        with self._lock:
            if self.conn:
                self.conn.close()
                self.conn = None
                logger.debug(f"Closed SQLite database: {self.db_path}")


class SqliteEmbeddingStore(EmbeddingStore):
    """
    SQLite implementation of the embedding store.

    Table ``<prefix>embeddings``, unique on ``(document_id, sequence_no)``.
    """

    def __init__(
        self,
        quantizer: BinaryQuantizer,
        db_path: Union[str, Path] = ":memory:",
        table_prefix: str = "vdb_",
        auto_init: bool = True,
    ):
        """
        Args:
            quantizer: Quantizer fixing the store's dimensionality
            db_path: Database file, or ':memory:'
            table_prefix: Prefix of the embeddings table name
            auto_init: Whether to create tables automatically
        """
        super().__init__(quantizer)
        table = f"{table_prefix}embeddings"
        if not is_identifier(table):
            raise ValidationError(f"Invalid table prefix: {table_prefix!r}")
        self.table = table
        self.db = SqliteDatabase(db_path)

        if auto_init:
            self.init_schema()

    def init_schema(self) -> None:
        with self.db.transaction("initialize embeddings schema") as cursor:
            cursor.execute(f"""
                CREATE TABLE IF NOT EXISTS "{self.table}" (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    document_id INTEGER NOT NULL,
                    sequence_no INTEGER NOT NULL,
                    vector TEXT NOT NULL,
                    normalized_vector TEXT NOT NULL,
                    vector_type TEXT NOT NULL,
                    binary_code TEXT NOT NULL,
                    magnitude REAL NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (document_id, sequence_no)
                )
            """)
            cursor.execute(f"""
                CREATE INDEX IF NOT EXISTS "ix_{self.table}_document"
                ON "{self.table}" (document_id, updated_at)
            """)
        logger.debug(f"Initialized embeddings table {self.table}")

    def drop_schema(self) -> None:
        with self.db.transaction("drop embeddings table") as cursor:
            cursor.execute(f'DROP TABLE IF EXISTS "{self.table}"')
        logger.debug(f"Dropped embeddings table {self.table}")

    def _row_to_record(self, row: sqlite3.Row) -> EmbeddingRecord:
        return EmbeddingRecord(
            id=row["id"],
            document_id=row["document_id"],
            sequence_no=row["sequence_no"],
            vector=json.loads(row["vector"]),
            normalized_vector=json.loads(row["normalized_vector"]),
            binary_code=row["binary_code"],
            magnitude=row["magnitude"],
            vector_type=row["vector_type"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def get(self, record_id: int) -> Optional[EmbeddingRecord]:
        rows = self.db.query(
            "get embedding",
            f'SELECT * FROM "{self.table}" WHERE id = ?',
            (record_id,),
        )
        return self._row_to_record(rows[0]) if rows else None

    def get_many(self, record_ids: Sequence[int], preserve_order: bool = False) -> List[EmbeddingRecord]:
        unique_ids = list(dict.fromkeys(record_ids))
        records: Dict[int, EmbeddingRecord] = {}
        for batch in batched(unique_ids):
            rows = self.db.query(
                "get embeddings",
                f'SELECT * FROM "{self.table}" WHERE id IN ({placeholders(len(batch))})',
                batch,
            )
            for row in rows:
                records[row["id"]] = self._row_to_record(row)

        if preserve_order:
            return [records[i] for i in unique_ids if i in records]
        return [records[i] for i in sorted(records)]

    def get_for_document(self, document_id: int) -> List[EmbeddingRecord]:
        rows = self.db.query(
            "get document embeddings",
            f'SELECT * FROM "{self.table}" WHERE document_id = ? ORDER BY sequence_no',
            (document_id,),
        )
        return [self._row_to_record(row) for row in rows]

    def get_by_position(self, document_id: int, sequence_no: int) -> Optional[EmbeddingRecord]:
        rows = self.db.query(
            "get embedding by position",
            f'SELECT * FROM "{self.table}" WHERE document_id = ? AND sequence_no = ?',
            (document_id, sequence_no),
        )
        return self._row_to_record(rows[0]) if rows else None

    def get_latest_updated(self, document_id: int) -> Optional[EmbeddingRecord]:
        rows = self.db.query(
            "get latest embedding",
            f'SELECT * FROM "{self.table}" WHERE document_id = ? '
            f'ORDER BY updated_at DESC, id DESC LIMIT 1',
            (document_id,),
        )
        return self._row_to_record(rows[0]) if rows else None

    def get_all(self, limit: int = 100000) -> List[EmbeddingRecord]:
        rows = self.db.query(
            "list embeddings",
            f'SELECT * FROM "{self.table}" ORDER BY id LIMIT ?',
            (limit,),
        )
        return [self._row_to_record(row) for row in rows]

    def scan_codes(self, document_ids: Sequence[int], limit: int) -> List[Tuple[int, str]]:
        if not document_ids or limit <= 0:
            return []

        # Each batch comes back sorted by id; merge them and stop at the limit
        batches = []
        for batch in batched(sorted(set(document_ids))):
            rows = self.db.query(
                "scan binary codes",
                f'SELECT id, binary_code FROM "{self.table}" '
                f'WHERE document_id IN ({placeholders(len(batch))}) ORDER BY id LIMIT ?',
                [*batch, limit],
            )
            batches.append([(row["id"], row["binary_code"]) for row in rows])

        return list(itertools.islice(heapq.merge(*batches), limit))

    def upsert(self, document_id: int, sequence_no: int, vector: Sequence[float], vector_type: str) -> int:
        prepared = self.prepare_vector(vector)
        now = utcnow_iso()

        with self.db.transaction("upsert embedding") as cursor:
            cursor.execute(
                f'SELECT id FROM "{self.table}" WHERE document_id = ? AND sequence_no = ?',
                (document_id, sequence_no),
            )
            row = cursor.fetchone()
            if row:
                cursor.execute(f"""
                    UPDATE "{self.table}"
                    SET vector = ?, normalized_vector = ?, vector_type = ?,
                        binary_code = ?, magnitude = ?, updated_at = ?
                    WHERE id = ?
                """, (
                    json.dumps(prepared.vector),
                    json.dumps(prepared.normalized_vector),
                    vector_type,
                    prepared.binary_code,
                    prepared.magnitude,
                    now,
                    row["id"],
                ))
                record_id = row["id"]
                logger.debug(f"Updated embedding {record_id} ({document_id}, {sequence_no})")
            else:
                record_id = self._insert(cursor, document_id, sequence_no, prepared, vector_type, now)
                logger.debug(f"Inserted embedding {record_id} ({document_id}, {sequence_no})")

        return record_id

    def _insert(
        self,
        cursor: sqlite3.Cursor,
        document_id: int,
        sequence_no: int,
        prepared: PreparedVector,
        vector_type: str,
        now: str,
    ) -> int:
        cursor.execute(f"""
            INSERT INTO "{self.table}" (
                document_id, sequence_no, vector, normalized_vector, vector_type,
                binary_code, magnitude, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            document_id,
            sequence_no,
            json.dumps(prepared.vector),
            json.dumps(prepared.normalized_vector),
            vector_type,
            prepared.binary_code,
            prepared.magnitude,
            now,
            now,
        ))
        return cursor.lastrowid

    def _replace_all(self, document_id: int, rows: List[Tuple[PreparedVector, str]]) -> List[int]:
        now = utcnow_iso()
        with self.db.transaction("replace document embeddings") as cursor:
            cursor.execute(f'DELETE FROM "{self.table}" WHERE document_id = ?', (document_id,))
            ids = [
                self._insert(cursor, document_id, sequence_no, prepared, vector_type, now)
                for sequence_no, (prepared, vector_type) in enumerate(rows)
            ]
        logger.debug(f"Replaced embeddings of document {document_id} with {len(ids)} chunks")
        return ids

    def delete(self, record_id: int) -> None:
        with self.db.transaction("delete embedding") as cursor:
            cursor.execute(f'DELETE FROM "{self.table}" WHERE id = ?', (record_id,))

    def count(self) -> int:
        rows = self.db.query("count embeddings", f'SELECT COUNT(*) FROM "{self.table}"')
        return rows[0][0]

    def close(self) -> None:
        self.db.close()


class SqliteDocumentRepository(DocumentRepository):
    """
    Documents and their metadata in SQLite.

    Attribute filters may reference any column of the documents table;
    metadata filters go through correlated EXISTS sub-queries.
    """

    def __init__(
        self,
        db_path: Union[str, Path] = ":memory:",
        documents_table: str = "documents",
        meta_table: str = "document_meta",
        auto_init: bool = True,
    ):
        for name in (documents_table, meta_table):
            if not is_identifier(name):
                raise ValidationError(f"Invalid table name: {name!r}")
        self.documents_table = documents_table
        self.meta_table = meta_table
        self.db = SqliteDatabase(db_path)
        self.translator = SqlTranslator(
            dialect=SQLITE,
            meta_table=SQLITE.quote(meta_table),
            attribute_columns=self.attribute_columns,
        )

        if auto_init:
            self.init_schema()

    def init_schema(self) -> None:
        with self.db.transaction("initialize document schema") as cursor:
            cursor.execute(f"""
                CREATE TABLE IF NOT EXISTS "{self.documents_table}" (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    doc_type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    title TEXT,
                    author TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            cursor.execute(f"""
                CREATE TABLE IF NOT EXISTS "{self.meta_table}" (
                    meta_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    document_id INTEGER NOT NULL,
                    meta_key TEXT NOT NULL,
                    meta_value TEXT,
                    UNIQUE (document_id, meta_key)
                )
            """)
        logger.debug("Initialized document schema")

    def add_document(
        self,
        doc_type: str = "post",
        status: str = "publish",
        title: Optional[str] = None,
        author: Optional[str] = None,
        document_id: Optional[int] = None,
        created_at: Optional[Union[str, date]] = None,
    ) -> int:
        """
        Insert a document row.

        Returns:
            The document id
        """
        now = utcnow_iso()
        if isinstance(created_at, date):
            created_at = created_at.isoformat()
        with self.db.transaction("add document") as cursor:
            cursor.execute(f"""
                INSERT INTO "{self.documents_table}"
                    (id, doc_type, status, title, author, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (document_id, doc_type, status, title, author, created_at or now, now))
            return cursor.lastrowid

    def set_meta(self, document_id: int, key: str, value: Any) -> None:
        """Set (or overwrite) one metadata value; values are stored as text."""
        text = None if value is None else str(value)
        with self.db.transaction("set document meta") as cursor:
            cursor.execute(f"""
                INSERT INTO "{self.meta_table}" (document_id, meta_key, meta_value)
                VALUES (?, ?, ?)
                ON CONFLICT (document_id, meta_key) DO UPDATE SET meta_value = excluded.meta_value
            """, (document_id, key, text))

    def find_eligible_ids(
        self,
        criteria: EligibilityCriteria,
        predicate: Optional[Expression] = None,
    ) -> List[int]:
        clauses: List[str] = []
        params: List[Any] = []
        if criteria.document_types:
            clauses.append(f'd."doc_type" IN ({placeholders(len(criteria.document_types))})')
            params.extend(criteria.document_types)
        if criteria.statuses:
            clauses.append(f'd."status" IN ({placeholders(len(criteria.statuses))})')
            params.extend(criteria.statuses)

        predicate_sql, predicate_params = self.translator.where(predicate)
        clauses.append(predicate_sql)
        params.extend(predicate_params)

        sql = (
            f'SELECT d."id" FROM "{self.documents_table}" d '
            f'WHERE {" AND ".join(clauses)} ORDER BY d."id"'
        )
        rows = self.db.query("find eligible documents", sql, params)
        return [row[0] for row in rows]

    def get_sort_values(
        self,
        document_ids: Sequence[int],
        terms: Sequence[SortTerm],
    ) -> Dict[int, DocumentValues]:
        attributes = sorted({t.field_name for t in terms if t.target is Target.ATTRIBUTE})
        meta_keys = sorted({t.field_name for t in terms if t.target is Target.METADATA})
        for name in attributes:
            if name not in self.attribute_columns:
                raise ValidationError(f"Unknown document attribute: {name!r}")

        values: Dict[int, DocumentValues] = {}
        columns = ", ".join(SQLITE.quote(c) for c in ["id", *attributes])
        for batch in batched(list(dict.fromkeys(document_ids))):
            rows = self.db.query(
                "read sort attributes",
                f'SELECT {columns} FROM "{self.documents_table}" '
                f'WHERE "id" IN ({placeholders(len(batch))})',
                batch,
            )
            for row in rows:
                values[row["id"]] = DocumentValues(
                    document_id=row["id"],
                    attributes={name: row[name] for name in attributes},
                )

            if not meta_keys:
                continue
            rows = self.db.query(
                "read sort metadata",
                f'SELECT document_id, meta_key, meta_value FROM "{self.meta_table}" '
                f'WHERE document_id IN ({placeholders(len(batch))}) '
                f'AND meta_key IN ({placeholders(len(meta_keys))})',
                [*batch, *meta_keys],
            )
            for row in rows:
                doc = values.setdefault(row["document_id"], DocumentValues(document_id=row["document_id"]))
                doc.metadata[row["meta_key"]] = row["meta_value"]

        return values

    def close(self) -> None:
        self.db.close()
