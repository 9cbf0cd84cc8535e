"""
Core subpackage for the vector search module.

Contains configuration, exceptions, and logging utilities.
"""

from .config import SearchConfig
from .exceptions import (
    VectorDBError,
    ValidationError,
    DimensionMismatchError,
    InvalidOperatorError,
    InvalidCompareValueError,
    InvalidDirectionError,
    InvalidSortSpecError,
    StoreError,
    ConfigError,
)

__all__ = [
    # Config
    "SearchConfig",
    # Exceptions
    "VectorDBError",
    "ValidationError",
    "DimensionMismatchError",
    "InvalidOperatorError",
    "InvalidCompareValueError",
    "InvalidDirectionError",
    "InvalidSortSpecError",
    "StoreError",
    "ConfigError",
]
