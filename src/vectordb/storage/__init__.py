"""
Storage backends for embeddings, documents and the embed queue.

The backend is chosen by ``SearchConfig.backend``:
    - sqlite (default): local file or ':memory:'
    - sqlserver: pyodbc, requires ``sqlserver_connection_string``
"""

import logging
from typing import Optional

from ..core.config import SearchConfig
from ..core.exceptions import ConfigError
from ..quantization import BinaryQuantizer
from .base import DocumentRepository, EmbeddingStore, KeyedLocks, PreparedVector


logger = logging.getLogger(__name__)


# Lazy imports so the SQLite backend works without pyodbc installed
def _get_sqlite_module():
    from . import sqlite_store
    return sqlite_store


def _get_sqlserver_module():
    from . import sqlserver_store
    return sqlserver_store


def _require_connection_string(config: SearchConfig) -> str:
    if not config.sqlserver_connection_string:
        raise ConfigError(
            "sqlserver backend requires a connection string "
            "(sqlserver_connection_string or VECTORDB_SQLSERVER_CONN_STR)"
        )
    return config.sqlserver_connection_string


def create_embedding_store(
    config: SearchConfig,
    quantizer: Optional[BinaryQuantizer] = None,
    auto_init: bool = True,
) -> EmbeddingStore:
    """
    Create the embedding store configured by ``config``.

    Args:
        config: Search configuration (backend, paths, prefixes)
        quantizer: Quantizer to use (defaults to one for ``config.dimensions``)
        auto_init: Create tables if they do not exist

    Raises:
        ConfigError: If the backend is unknown or incompletely configured
        ImportError: If the sqlserver backend is chosen without pyodbc
    """
    quantizer = quantizer or BinaryQuantizer(config.dimensions)
    backend = config.backend.lower()
    logger.debug(f"Creating {backend} embedding store")

    if backend == "sqlite":
        return _get_sqlite_module().SqliteEmbeddingStore(
            quantizer,
            db_path=config.sqlite_path,
            table_prefix=config.table_prefix,
            auto_init=auto_init,
        )
    if backend == "sqlserver":
        return _get_sqlserver_module().SqlServerEmbeddingStore(
            quantizer,
            connection_string=_require_connection_string(config),
            schema=config.sqlserver_schema,
            table_prefix=config.table_prefix,
            auto_init=auto_init,
        )
    raise ConfigError(f"Unknown storage backend: {config.backend!r}")


def create_document_repository(config: SearchConfig) -> DocumentRepository:
    """
    Create the document repository for the configured backend.

    The SQLite repository shares the embeddings database file.
    """
    backend = config.backend.lower()
    if backend == "sqlite":
        return _get_sqlite_module().SqliteDocumentRepository(db_path=config.sqlite_path)
    if backend == "sqlserver":
        return _get_sqlserver_module().SqlServerDocumentRepository(
            connection_string=_require_connection_string(config),
        )
    raise ConfigError(f"Unknown storage backend: {config.backend!r}")


__all__ = [
    "DocumentRepository",
    "EmbeddingStore",
    "KeyedLocks",
    "PreparedVector",
    "create_document_repository",
    "create_embedding_store",
]
