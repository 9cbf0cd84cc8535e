"""
Query subpackage: filter/sort builders and their storage adapters.
"""

from .expressions import (
    AllOf,
    Always,
    AnyOf,
    Cast,
    Comparison,
    Direction,
    Operator,
    SortTerm,
    Target,
)
from .filters import Filter, PredicateBuilder
from .sorting import SortKey, SortSpec, cast_value
from .sql import SQLITE, SQLSERVER, SqlDialect, SqlTranslator, escape_like

__all__ = [
    # Expressions
    "AllOf",
    "Always",
    "AnyOf",
    "Cast",
    "Comparison",
    "Direction",
    "Operator",
    "SortTerm",
    "Target",
    # Builders
    "Filter",
    "PredicateBuilder",
    "SortKey",
    "SortSpec",
    "cast_value",
    # SQL adapter
    "SQLITE",
    "SQLSERVER",
    "SqlDialect",
    "SqlTranslator",
    "escape_like",
]
