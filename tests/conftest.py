"""
Shared test fixtures and configuration for pytest.
"""

import logging
import os
import sys
from pathlib import Path
from typing import Optional

import pytest

# Add src directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


logger = logging.getLogger(__name__)


# ============================================================================
# Environment detection
# ============================================================================

def sqlserver_connection_string() -> Optional[str]:
    """Connection string for integration tests, if configured."""
    return os.environ.get("VECTORDB_TEST_SQLSERVER_CONN_STR") or os.environ.get(
        "VECTORDB_SQLSERVER_CONN_STR"
    )


def is_sqlserver_available() -> bool:
    """Check if SQL Server is available for testing."""
    conn_str = sqlserver_connection_string()
    if not conn_str:
        return False

    try:
        import pyodbc

        conn = pyodbc.connect(conn_str, timeout=5)
        conn.close()
        return True

    except Exception as e:
        logger.debug(f"SQL Server not available: {e}")
        return False


# ============================================================================
# Pytest hooks
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (no external dependencies)")
    config.addinivalue_line("markers", "integration: Integration tests (requires SQL Server)")
    config.addinivalue_line("markers", "slow: Tests that take a long time to run")


def pytest_collection_modifyitems(config, items):
    """Automatically skip integration tests if SQL Server is not available."""
    if not any("integration" in item.keywords for item in items):
        return
    if is_sqlserver_available():
        return

    skip_sqlserver = pytest.mark.skip(
        reason="SQL Server not available (set VECTORDB_TEST_SQLSERVER_CONN_STR)"
    )

    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_sqlserver)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def quantizer():
    """Quantizer for small 8-dimensional test vectors."""
    from vectordb.quantization import BinaryQuantizer

    return BinaryQuantizer(8)


@pytest.fixture
def search_config():
    """Config matching the 8-dimensional test vectors."""
    from vectordb.core.config import SearchConfig

    return SearchConfig(dimensions=8, document_types=["post"], document_statuses=["publish"])


@pytest.fixture
def embedding_store(quantizer):
    """In-memory SQLite embedding store."""
    from vectordb.storage.sqlite_store import SqliteEmbeddingStore

    store = SqliteEmbeddingStore(quantizer, db_path=":memory:")
    yield store
    store.close()


@pytest.fixture
def document_repository():
    """In-memory SQLite document repository."""
    from vectordb.storage.sqlite_store import SqliteDocumentRepository

    repository = SqliteDocumentRepository(db_path=":memory:")
    yield repository
    repository.close()


@pytest.fixture
def orchestrator(embedding_store, document_repository, search_config):
    """Search orchestrator wired to the in-memory stores."""
    from vectordb.retrieval.search import SearchOrchestrator

    return SearchOrchestrator(embedding_store, document_repository, search_config)


@pytest.fixture(scope="session")
def sqlserver_test_schema() -> str:
    """Unique schema name so integration runs do not collide."""
    import uuid
    return f"vdb_test_{uuid.uuid4().hex[:8]}"


@pytest.fixture
def sqlserver_embedding_store(sqlserver_test_schema):
    """
    SQL Server embedding store in a throwaway schema.

    The table is dropped after each test.
    """
    conn_str = sqlserver_connection_string()
    if not conn_str:
        pytest.skip("SQL Server connection string not configured")

    from vectordb.quantization import BinaryQuantizer
    from vectordb.storage.sqlserver_store import SqlServerEmbeddingStore

    store = SqlServerEmbeddingStore(
        BinaryQuantizer(8),
        connection_string=conn_str,
        schema=sqlserver_test_schema,
    )

    yield store

    store.drop_schema()
    store.close()
