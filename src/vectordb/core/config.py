"""
Configuration for the vector search module.

Settings come from, in increasing precedence:
1. Dataclass defaults
2. A YAML file (``SearchConfig.from_yaml``)
3. ``VECTORDB_*`` environment variables (a local ``.env`` is loaded first,
   existing shell variables win)
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from dotenv import find_dotenv, load_dotenv

from .exceptions import ConfigError


logger = logging.getLogger(__name__)


DEFAULT_DIMENSIONS = 1024
DEFAULT_SCAN_LIMIT = 1_000_000
DEFAULT_STAGE2_FACTOR = 10
DEFAULT_STAGE3_FACTOR = 5

BACKENDS = ("sqlite", "sqlserver")


def _first_non_empty_env(*keys: str) -> Optional[str]:
    """Return the first non-empty env var value for the given keys."""
    for key in keys:
        value = os.environ.get(key)
        if value is not None and value.strip() != "":
            return value
    return None


def _split_list(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


@dataclass
class SearchConfig:
    """
    Configuration for search and storage.

    Attributes:
        dimensions: Vector dimensionality D (must be a multiple of 4)
        scan_limit: Maximum stored codes scanned in stage 1 (S1)
        stage2_factor: Hamming survivors per requested result (S2 = factor * K)
        stage3_factor: Cosine survivors per requested result (S3 = factor * K)
        document_types: Document types eligible for search
        document_statuses: Document statuses eligible for search
        backend: Storage backend ('sqlite' or 'sqlserver')
        sqlite_path: SQLite database file (':memory:' for an ephemeral store)
        sqlserver_connection_string: Full ODBC connection string for SQL Server
        sqlserver_schema: SQL Server schema holding the tables
        table_prefix: Prefix for the embedding and queue tables
    """
    dimensions: int = DEFAULT_DIMENSIONS
    scan_limit: int = DEFAULT_SCAN_LIMIT
    stage2_factor: int = DEFAULT_STAGE2_FACTOR
    stage3_factor: int = DEFAULT_STAGE3_FACTOR
    document_types: List[str] = field(default_factory=lambda: ["post", "page"])
    document_statuses: List[str] = field(default_factory=lambda: ["publish"])
    backend: str = "sqlite"
    sqlite_path: str = "vectordb.sqlite3"
    sqlserver_connection_string: Optional[str] = None
    sqlserver_schema: str = "vectordb"
    table_prefix: str = "vdb_"

    def stage2_width(self, k: int) -> int:
        """Number of Hamming candidates kept for a request of ``k`` results."""
        return self.stage2_factor * k

    def stage3_width(self, k: int) -> int:
        """Number of cosine-reranked candidates kept for ``k`` results."""
        return self.stage3_factor * k

    def validate(self) -> "SearchConfig":
        """
        Check value ranges.

        Returns:
            self, for chaining

        Raises:
            ConfigError: If any value is out of range
        """
        if self.dimensions <= 0 or self.dimensions % 4 != 0:
            raise ConfigError(
                f"dimensions must be a positive multiple of 4, got {self.dimensions}"
            )
        for name in ("scan_limit", "stage2_factor", "stage3_factor"):
            if getattr(self, name) < 1:
                raise ConfigError(f"{name} must be >= 1, got {getattr(self, name)}")
        if self.backend not in BACKENDS:
            raise ConfigError(
                f"Unknown backend '{self.backend}', expected one of {', '.join(BACKENDS)}"
            )
        if self.backend == "sqlserver" and not self.sqlserver_connection_string:
            raise ConfigError("sqlserver backend requires sqlserver_connection_string")
        return self

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SearchConfig":
        """Create from a (possibly partial) dictionary; unknown keys are ignored."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {', '.join(sorted(unknown))}")
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def from_yaml(cls, config_path: Union[str, Path], apply_env: bool = True) -> "SearchConfig":
        """
        Load configuration from a YAML file.

        The file may hold the settings at the top level or under a
        ``vectordb:`` key.

        Args:
            config_path: Path to YAML config file
            apply_env: Whether VECTORDB_* environment variables override the file

        Raises:
            ConfigError: If the file is missing or not a mapping
        """
        config_path = Path(config_path)
        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")

        logger.info(f"Loading config from: {config_path}")

        with open(config_path, "r", encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Config file must contain a mapping: {config_path}")
        data = data.get("vectordb", data)

        config = cls.from_dict(data)
        if apply_env:
            config._apply_env_overrides()
        return config.validate()

    @classmethod
    def from_env(cls) -> "SearchConfig":
        """Create config from defaults plus environment variables."""
        config = cls()
        config._apply_env_overrides()
        return config.validate()

    def _apply_env_overrides(self) -> None:
        """Apply VECTORDB_* environment variables on top of current values."""
        load_dotenv(find_dotenv(usecwd=True), override=False)

        int_settings = {
            "dimensions": "VECTORDB_DIMENSIONS",
            "scan_limit": "VECTORDB_SCAN_LIMIT",
            "stage2_factor": "VECTORDB_STAGE2_FACTOR",
            "stage3_factor": "VECTORDB_STAGE3_FACTOR",
        }
        for attr, key in int_settings.items():
            value = _first_non_empty_env(key)
            if value is None:
                continue
            try:
                setattr(self, attr, int(value))
            except ValueError as e:
                raise ConfigError(f"{key} must be an integer, got '{value}'") from e

        types = _first_non_empty_env("VECTORDB_DOCUMENT_TYPES")
        if types:
            self.document_types = _split_list(types)
        statuses = _first_non_empty_env("VECTORDB_DOCUMENT_STATUSES")
        if statuses:
            self.document_statuses = _split_list(statuses)

        self.backend = _first_non_empty_env("VECTORDB_BACKEND") or self.backend
        self.sqlite_path = _first_non_empty_env("VECTORDB_SQLITE_PATH") or self.sqlite_path
        self.sqlserver_connection_string = (
            _first_non_empty_env("VECTORDB_SQLSERVER_CONN_STR")
            or self.sqlserver_connection_string
        )
        self.sqlserver_schema = (
            _first_non_empty_env("VECTORDB_SQLSERVER_SCHEMA") or self.sqlserver_schema
        )
        self.table_prefix = _first_non_empty_env("VECTORDB_TABLE_PREFIX") or self.table_prefix
