"""
Query Expressions - Language-neutral predicate and sort data.

Filters and sorts compile to these frozen dataclasses rather than to a query
string. Storage adapters (see ``query.sql``) translate them into their own
dialect; the in-process ResultSorter reads SortTerms directly.

Predicate shape produced by PredicateBuilder:

    AllOf(
        AnyOf(Comparison(...), Comparison(...)),   # group "a"
        AnyOf(Always()),                            # group "b" (empty IN)
    )
"""

import re
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Iterator, Optional, Tuple, Union


IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class Operator(str, Enum):
    """Comparison operators accepted in filters."""
    EQ = "="
    NE = "!="
    GT = ">"
    LT = "<"
    GE = ">="
    LE = "<="
    IN = "IN"
    NOT_IN = "NOT IN"
    LIKE = "LIKE"
    NOT_LIKE = "NOT LIKE"

    @property
    def is_membership(self) -> bool:
        return self in (Operator.IN, Operator.NOT_IN)

    @property
    def is_pattern(self) -> bool:
        return self in (Operator.LIKE, Operator.NOT_LIKE)


class Target(str, Enum):
    """Where a field lives: a document column, a metadata row, or the search score."""
    ATTRIBUTE = "attribute"
    METADATA = "metadata"
    SIMILARITY = "similarity"


class Cast(str, Enum):
    """How untyped metadata text is interpreted before ordering."""
    TEXT = "text"
    NUMBER = "number"
    DATE = "date"


class Direction(str, Enum):
    ASC = "ASC"
    DESC = "DESC"


Scalar = Union[str, int, float, date]


@dataclass(frozen=True)
class Always:
    """Tautology: matches every row."""


@dataclass(frozen=True)
class Comparison:
    """
    A single field comparison.

    For LIKE / NOT LIKE, ``value`` is the substring to look for; adapters add
    the wildcards and escape pattern metacharacters in the value.
    For IN / NOT IN, ``value`` is a non-empty tuple.
    """
    field_name: str
    operator: Operator
    value: Union[Scalar, Tuple[Scalar, ...]]
    target: Target = Target.ATTRIBUTE


@dataclass(frozen=True)
class AnyOf:
    """OR over its terms."""
    terms: Tuple[Any, ...]


@dataclass(frozen=True)
class AllOf:
    """AND over its terms."""
    terms: Tuple[Any, ...]


Expression = Union[Always, Comparison, AnyOf, AllOf]


@dataclass(frozen=True)
class SortTerm:
    """One key of a composite ordering. ``cast`` is set only for metadata keys."""
    field_name: str
    direction: Direction = Direction.ASC
    target: Target = Target.ATTRIBUTE
    cast: Optional[Cast] = None

    @property
    def descending(self) -> bool:
        return self.direction is Direction.DESC


def is_identifier(name: str) -> bool:
    """True if ``name`` is a plain column identifier (letters, digits, underscore)."""
    return isinstance(name, str) and bool(IDENTIFIER_PATTERN.match(name))


def iter_comparisons(expression: Optional[Expression]) -> Iterator[Comparison]:
    """Yield every Comparison leaf of a compiled predicate, depth first."""
    if isinstance(expression, Comparison):
        yield expression
    elif isinstance(expression, (AnyOf, AllOf)):
        for term in expression.terms:
            yield from iter_comparisons(term)
