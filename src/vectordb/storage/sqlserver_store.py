"""
SQL Server-based embedding store and document repository.

Uses pyodbc with one connection per thread. Vectors are stored as JSON in
NVARCHAR(MAX) columns; the binary code is a fixed-width VARCHAR so the
stage-1 scan reads only ids and codes.
"""

import heapq
import itertools
import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

try:
    import pyodbc
except ImportError:
    pyodbc = None

from ..contracts.models import DocumentValues, EligibilityCriteria, EmbeddingRecord
from ..core.exceptions import StoreError, ValidationError
from ..quantization import BinaryQuantizer
from ..query.expressions import Expression, SortTerm, Target, is_identifier
from ..query.sql import SQLSERVER, SqlTranslator
from .base import (
    DocumentRepository,
    EmbeddingStore,
    PreparedVector,
    batched,
    placeholders,
)


logger = logging.getLogger(__name__)

_MAX_IDENTIFIER_LENGTH = 128


def _check_identifier(name: str, kind: str) -> str:
    if not name or len(name) > _MAX_IDENTIFIER_LENGTH or not is_identifier(name):
        raise ValidationError(f"Invalid {kind} name: {name!r}")
    return name


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.fromisoformat(str(value))


class SqlServerDatabase:
    """
    Thread-local pyodbc connections to one SQL Server database.

    ``transaction()`` and ``query()`` translate ``pyodbc.Error`` into
    StoreError, keeping the driver error as the cause.
    """

    def __init__(self, connection_string: str):
        if pyodbc is None:
            raise ImportError(
                "pyodbc is required for the SQL Server backend. "
                "Install with: pip install pyodbc"
            )
        if not connection_string:
            raise ValidationError("A SQL Server connection string is required")

        self.connection_string = connection_string
        self._thread_local = threading.local()
        self._connections = []
        self._connections_lock = threading.Lock()

        try:
            self._get_conn()
            logger.debug("Connected to SQL Server")
        except pyodbc.Error as e:
            logger.error(f"Failed to connect to SQL Server: {e}")
            raise StoreError(f"Failed to connect to SQL Server: {e}") from e

    def _get_conn(self):
        """Get (or create) a thread-local connection for safe concurrent use."""
        conn = getattr(self._thread_local, "conn", None)
        if conn is None:
            conn = pyodbc.connect(self.connection_string)
            self._thread_local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    @contextmanager
    def transaction(self, action: str) -> Iterator[Any]:
        conn = self._get_conn()
        cursor = conn.cursor()
        try:
            yield cursor
            conn.commit()
        except pyodbc.Error as e:
            conn.rollback()
            logger.error(f"SQL Server error during {action}: {e}")
            raise StoreError(f"Failed to {action}: {e}") from e
        except Exception:
            conn.rollback()
            raise

    def query(self, action: str, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        """Run a SELECT and return rows as dictionaries."""
        try:
            cursor = self._get_conn().cursor()
            cursor.execute(sql, tuple(params))
            columns = [column[0] for column in cursor.description]
            return [dict(zip(columns, row)) for row in cursor.fetchall()]
        except pyodbc.Error as e:
            logger.error(f"SQL Server error during {action}: {e}")
            raise StoreError(f"Failed to {action}: {e}") from e

    def close(self) -> None:
        with self._connections_lock:
            for conn in self._connections:
                try:
                    conn.close()
                except pyodbc.Error as e:
                    logger.debug(f"Ignoring error while closing connection: {e}")
            self._connections.clear()
        self._thread_local = threading.local()
        logger.debug("Closed SQL Server connections")


class SqlServerEmbeddingStore(EmbeddingStore):
    """
    SQL Server implementation of the embedding store.

    Table ``[<schema>].[<prefix>embeddings]``, unique on
    ``(document_id, sequence_no)``.
    """

    def __init__(
        self,
        quantizer: BinaryQuantizer,
        connection_string: str,
        schema: str = "vectordb",
        table_prefix: str = "vdb_",
        auto_init: bool = True,
    ):
        """
        Args:
            quantizer: Quantizer fixing the store's dimensionality
            connection_string: Full ODBC connection string
            schema: Schema holding the embeddings table
            table_prefix: Prefix of the embeddings table name
            auto_init: Whether to create schema and table automatically
        """
        super().__init__(quantizer)
        self.schema = _check_identifier(schema, "schema")
        self.table_name = _check_identifier(f"{table_prefix}embeddings", "table")
        self.table = f"[{self.schema}].[{self.table_name}]"
        self.db = SqlServerDatabase(connection_string)

        if auto_init:
            self.init_schema()

    def init_schema(self) -> None:
        with self.db.transaction("initialize embeddings schema") as cursor:
            # CREATE SCHEMA cannot take parameters; the name is validated above
            cursor.execute(f"""
                IF NOT EXISTS (SELECT * FROM sys.schemas WHERE name = ?)
                BEGIN
                    EXEC('CREATE SCHEMA [{self.schema}]')
                END
            """, (self.schema,))
            cursor.execute(f"""
                IF OBJECT_ID(?, 'U') IS NULL
                BEGIN
                    CREATE TABLE {self.table} (
                        id BIGINT IDENTITY(1,1) PRIMARY KEY,
                        document_id BIGINT NOT NULL,
                        sequence_no INT NOT NULL,
                        vector NVARCHAR(MAX) NOT NULL,
                        normalized_vector NVARCHAR(MAX) NOT NULL,
                        vector_type NVARCHAR(50) NOT NULL,
                        binary_code VARCHAR({self.quantizer.code_length}) NOT NULL,
                        magnitude FLOAT NOT NULL,
                        created_at DATETIME2 NOT NULL,
                        updated_at DATETIME2 NOT NULL,
                        CONSTRAINT [UQ_{self.table_name}_position] UNIQUE (document_id, sequence_no)
                    );
                    CREATE INDEX [IX_{self.table_name}_document]
                        ON {self.table} (document_id, updated_at);
                END
            """, (f"{self.schema}.{self.table_name}",))
        logger.debug(f"Initialized embeddings table {self.table}")

    def drop_schema(self) -> None:
        with self.db.transaction("drop embeddings table") as cursor:
            cursor.execute(f"DROP TABLE IF EXISTS {self.table}")
        logger.debug(f"Dropped embeddings table {self.table}")

    def _row_to_record(self, row: Dict[str, Any]) -> EmbeddingRecord:
        return EmbeddingRecord(
            id=int(row["id"]),
            document_id=int(row["document_id"]),
            sequence_no=int(row["sequence_no"]),
            vector=json.loads(row["vector"]),
            normalized_vector=json.loads(row["normalized_vector"]),
            binary_code=row["binary_code"],
            magnitude=float(row["magnitude"]),
            vector_type=row["vector_type"],
            created_at=_parse_datetime(row["created_at"]),
            updated_at=_parse_datetime(row["updated_at"]),
        )

    def get(self, record_id: int) -> Optional[EmbeddingRecord]:
        rows = self.db.query(
            "get embedding",
            f"SELECT * FROM {self.table} WHERE id = ?",
            (record_id,),
        )
        return self._row_to_record(rows[0]) if rows else None

    def get_many(self, record_ids: Sequence[int], preserve_order: bool = False) -> List[EmbeddingRecord]:
        unique_ids = list(dict.fromkeys(record_ids))
        records: Dict[int, EmbeddingRecord] = {}
        for batch in batched(unique_ids):
            rows = self.db.query(
                "get embeddings",
                f"SELECT * FROM {self.table} WHERE id IN ({placeholders(len(batch))})",
                batch,
            )
            for row in rows:
                record = self._row_to_record(row)
                records[record.id] = record

        if preserve_order:
            return [records[i] for i in unique_ids if i in records]
        return [records[i] for i in sorted(records)]

    def get_for_document(self, document_id: int) -> List[EmbeddingRecord]:
        rows = self.db.query(
            "get document embeddings",
            f"SELECT * FROM {self.table} WHERE document_id = ? ORDER BY sequence_no",
            (document_id,),
        )
        return [self._row_to_record(row) for row in rows]

    def get_by_position(self, document_id: int, sequence_no: int) -> Optional[EmbeddingRecord]:
        rows = self.db.query(
            "get embedding by position",
            f"SELECT * FROM {self.table} WHERE document_id = ? AND sequence_no = ?",
            (document_id, sequence_no),
        )
        return self._row_to_record(rows[0]) if rows else None

    def get_latest_updated(self, document_id: int) -> Optional[EmbeddingRecord]:
        rows = self.db.query(
            "get latest embedding",
            f"SELECT TOP 1 * FROM {self.table} WHERE document_id = ? "
            f"ORDER BY updated_at DESC, id DESC",
            (document_id,),
        )
        return self._row_to_record(rows[0]) if rows else None

    def get_all(self, limit: int = 100000) -> List[EmbeddingRecord]:
        rows = self.db.query(
            "list embeddings",
            f"SELECT TOP (?) * FROM {self.table} ORDER BY id",
            (limit,),
        )
        return [self._row_to_record(row) for row in rows]

    def scan_codes(self, document_ids: Sequence[int], limit: int) -> List[Tuple[int, str]]:
        if not document_ids or limit <= 0:
            return []

        batches = []
        for batch in batched(sorted(set(document_ids))):
            rows = self.db.query(
                "scan binary codes",
                f"SELECT TOP (?) id, binary_code FROM {self.table} "
                f"WHERE document_id IN ({placeholders(len(batch))}) ORDER BY id",
                [limit, *batch],
            )
            batches.append([(int(row["id"]), row["binary_code"]) for row in rows])

        return list(itertools.islice(heapq.merge(*batches), limit))

    def upsert(self, document_id: int, sequence_no: int, vector: Sequence[float], vector_type: str) -> int:
        prepared = self.prepare_vector(vector)
        now = datetime.now(timezone.utc)
        vector_json = json.dumps(prepared.vector)
        normalized_json = json.dumps(prepared.normalized_vector)

        with self.db.transaction("upsert embedding") as cursor:
            cursor.execute(f"""
                MERGE {self.table} WITH (HOLDLOCK) AS target
                USING (SELECT ? AS document_id, ? AS sequence_no) AS source
                ON target.document_id = source.document_id
                   AND target.sequence_no = source.sequence_no
                WHEN MATCHED THEN
                    UPDATE SET
                        vector = ?,
                        normalized_vector = ?,
                        vector_type = ?,
                        binary_code = ?,
                        magnitude = ?,
                        updated_at = ?
                WHEN NOT MATCHED THEN
                    INSERT (document_id, sequence_no, vector, normalized_vector, vector_type,
                            binary_code, magnitude, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                OUTPUT INSERTED.id;
            """, (
                document_id,
                sequence_no,
                vector_json,
                normalized_json,
                vector_type,
                prepared.binary_code,
                prepared.magnitude,
                now,
                document_id,
                sequence_no,
                vector_json,
                normalized_json,
                vector_type,
                prepared.binary_code,
                prepared.magnitude,
                now,
                now,
            ))
            record_id = int(cursor.fetchone()[0])

        logger.debug(f"Upserted embedding {record_id} ({document_id}, {sequence_no})")
        return record_id

    def _replace_all(self, document_id: int, rows: List[Tuple[PreparedVector, str]]) -> List[int]:
        now = datetime.now(timezone.utc)
        ids = []
        with self.db.transaction("replace document embeddings") as cursor:
            cursor.execute(f"DELETE FROM {self.table} WHERE document_id = ?", (document_id,))
            for sequence_no, (prepared, vector_type) in enumerate(rows):
                cursor.execute(f"""
                    INSERT INTO {self.table} (
                        document_id, sequence_no, vector, normalized_vector, vector_type,
                        binary_code, magnitude, created_at, updated_at
                    )
                    OUTPUT INSERTED.id
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
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
                ids.append(int(cursor.fetchone()[0]))
        logger.debug(f"Replaced embeddings of document {document_id} with {len(ids)} chunks")
        return ids

    def delete(self, record_id: int) -> None:
        with self.db.transaction("delete embedding") as cursor:
            cursor.execute(f"DELETE FROM {self.table} WHERE id = ?", (record_id,))

    def count(self) -> int:
        rows = self.db.query("count embeddings", f"SELECT COUNT(*) AS total FROM {self.table}")
        return int(rows[0]["total"])

    def close(self) -> None:
        self.db.close()


class SqlServerDocumentRepository(DocumentRepository):
    """
    Read-only view of the host's document and metadata tables in SQL Server.
    """

    def __init__(
        self,
        connection_string: str,
        schema: str = "dbo",
        documents_table: str = "documents",
        meta_table: str = "document_meta",
    ):
        self.schema = _check_identifier(schema, "schema")
        self.documents_table = f"[{self.schema}].[{_check_identifier(documents_table, 'table')}]"
        self.meta_table = f"[{self.schema}].[{_check_identifier(meta_table, 'table')}]"
        self.db = SqlServerDatabase(connection_string)
        self.translator = SqlTranslator(
            dialect=SQLSERVER,
            meta_table=self.meta_table,
            attribute_columns=self.attribute_columns,
        )

    def find_eligible_ids(
        self,
        criteria: EligibilityCriteria,
        predicate: Optional[Expression] = None,
    ) -> List[int]:
        clauses: List[str] = []
        params: List[Any] = []
        if criteria.document_types:
            clauses.append(f"d.[doc_type] IN ({placeholders(len(criteria.document_types))})")
            params.extend(criteria.document_types)
        if criteria.statuses:
            clauses.append(f"d.[status] IN ({placeholders(len(criteria.statuses))})")
            params.extend(criteria.statuses)

        predicate_sql, predicate_params = self.translator.where(predicate)
        clauses.append(predicate_sql)
        params.extend(predicate_params)

        rows = self.db.query(
            "find eligible documents",
            f"SELECT d.[id] FROM {self.documents_table} d "
            f"WHERE {' AND '.join(clauses)} ORDER BY d.[id]",
            params,
        )
        return [int(row["id"]) for row in rows]

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
        columns = ", ".join(SQLSERVER.quote(c) for c in ["id", *attributes])
        for batch in batched(list(dict.fromkeys(document_ids))):
            rows = self.db.query(
                "read sort attributes",
                f"SELECT {columns} FROM {self.documents_table} "
                f"WHERE [id] IN ({placeholders(len(batch))})",
                batch,
            )
            for row in rows:
                doc_id = int(row["id"])
                values[doc_id] = DocumentValues(
                    document_id=doc_id,
                    attributes={name: row[name] for name in attributes},
                )

            if not meta_keys:
                continue
            rows = self.db.query(
                "read sort metadata",
                f"SELECT document_id, meta_key, meta_value FROM {self.meta_table} "
                f"WHERE document_id IN ({placeholders(len(batch))}) "
                f"AND meta_key IN ({placeholders(len(meta_keys))})",
                [*batch, *meta_keys],
            )
            for row in rows:
                doc_id = int(row["document_id"])
                doc = values.setdefault(doc_id, DocumentValues(document_id=doc_id))
                doc.metadata[row["meta_key"]] = row["meta_value"]

        return values

    def close(self) -> None:
        self.db.close()
