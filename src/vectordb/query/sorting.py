"""
Sort keys and the SortSpec composite ordering.

Metadata values are stored as untyped text, so a metadata sort must say how
to read them (text, number or date). Attribute sorts use the column's own type.
"""

import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Iterator, List, Mapping, Optional, Tuple

from ..core.exceptions import InvalidDirectionError, InvalidSortSpecError, ValidationError
from .expressions import Cast, Direction, SortTerm, Target, is_identifier
from .filters import parse_target


_NUMERIC_PREFIX = re.compile(r"^\s*[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?")


def parse_direction(direction: Any) -> Direction:
    """
    Raises:
        InvalidDirectionError: If direction is not ASC or DESC
    """
    if isinstance(direction, Direction):
        return direction
    if isinstance(direction, str):
        try:
            return Direction(direction.strip().upper())
        except ValueError:
            pass
    raise InvalidDirectionError(f"Invalid sort direction: {direction!r}")


def cast_value(value: Any, cast: Cast) -> Any:
    """
    Interpret a stored value for ordering.

    - NUMBER: leading numeric text as Decimal; text with no numeric prefix is 0
    - DATE: ISO date or datetime; anything unparseable is None (missing)
    - TEXT: str(value)

    None stays None.
    """
    if value is None:
        return None

    if cast is Cast.NUMBER:
        if isinstance(value, bool):
            return Decimal(int(value))
        if isinstance(value, (int, float, Decimal)):
            return Decimal(str(value))
        match = _NUMERIC_PREFIX.match(str(value))
        if not match:
            return Decimal(0)
        try:
            return Decimal(match.group(0).strip())
        except InvalidOperation:
            return Decimal(0)

    if cast is Cast.DATE:
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        text = str(value).strip()
        try:
            return datetime.fromisoformat(text).date()
        except ValueError:
            pass
        try:
            return date.fromisoformat(text[:10])
        except ValueError:
            return None

    return str(value)


@dataclass(frozen=True)
class SortKey:
    """
    A validated sort key.

    Attributes:
        field_name: Document column or metadata key (ignored for similarity)
        direction: ASC or DESC
        target: ATTRIBUTE, METADATA or SIMILARITY
        cast: How metadata text is read; None for attribute and similarity keys
    """
    field_name: str
    direction: Direction = Direction.ASC
    target: Target = Target.ATTRIBUTE
    cast: Optional[Cast] = None

    @classmethod
    def create(
        cls,
        field_name: str,
        direction: Any = Direction.ASC,
        target: Any = Target.ATTRIBUTE,
        cast: Any = None,
    ) -> "SortKey":
        """
        Validate and build a sort key.

        Raises:
            InvalidDirectionError: Direction is not ASC/DESC
            InvalidSortSpecError: Missing or unknown cast on a metadata key
            ValidationError: Bad field name or target
        """
        dir_ = parse_direction(direction)
        tgt = parse_target(target, allow_similarity=True)

        if tgt is Target.SIMILARITY:
            return cls(field_name=field_name or "similarity", direction=dir_, target=tgt)

        if not isinstance(field_name, str) or not field_name:
            raise ValidationError(f"field_name must be a non-empty string, got {field_name!r}")

        if tgt is Target.ATTRIBUTE:
            if not is_identifier(field_name):
                raise ValidationError(f"Invalid attribute name: {field_name!r}")
            return cls(field_name=field_name, direction=dir_, target=tgt)

        if cast is None:
            raise InvalidSortSpecError(
                f"Metadata sort on '{field_name}' requires a cast (text, number or date)"
            )
        try:
            parsed_cast = cast if isinstance(cast, Cast) else Cast(str(cast).lower())
        except ValueError:
            raise InvalidSortSpecError(f"Invalid cast {cast!r} for '{field_name}'") from None
        return cls(field_name=field_name, direction=dir_, target=tgt, cast=parsed_cast)

    @classmethod
    def from_spec(cls, spec: Mapping[str, Any]) -> "SortKey":
        """
        Build from a mapping with field_name, direction and optional
        target / cast (or the boolean ``is_meta_sort`` with ``meta_cast``).
        """
        if "field_name" not in spec and spec.get("target") != Target.SIMILARITY.value:
            raise InvalidSortSpecError("Sort spec must contain field_name")
        if "target" in spec:
            target = spec["target"]
        else:
            target = Target.METADATA if spec.get("is_meta_sort") else Target.ATTRIBUTE
        cast = spec.get("cast", spec.get("meta_cast"))
        return cls.create(
            spec.get("field_name", ""),
            spec.get("direction", Direction.ASC),
            target,
            cast,
        )

    def to_term(self) -> SortTerm:
        return SortTerm(
            field_name=self.field_name,
            direction=self.direction,
            target=self.target,
            cast=self.cast,
        )


class SortSpec:
    """Ordered sequence of sort keys forming a composite ordering."""

    def __init__(self, keys: Optional[Iterable[SortKey]] = None):
        self._keys: List[SortKey] = list(keys or [])

    def add(
        self,
        field_name: str,
        direction: Any = Direction.ASC,
        target: Any = Target.ATTRIBUTE,
        cast: Any = None,
    ) -> SortKey:
        key = SortKey.create(field_name, direction, target, cast)
        self._keys.append(key)
        return key

    @classmethod
    def from_list(cls, specs: Iterable[Any]) -> "SortSpec":
        """Build from a list of SortKeys or mappings accepted by SortKey.from_spec."""
        return cls(
            spec if isinstance(spec, SortKey) else SortKey.from_spec(spec)
            for spec in specs
        )

    @property
    def keys(self) -> Tuple[SortKey, ...]:
        return tuple(self._keys)

    def compile(self) -> Tuple[SortTerm, ...]:
        return tuple(key.to_term() for key in self._keys)

    def __len__(self) -> int:
        return len(self._keys)

    def __iter__(self) -> Iterator[SortKey]:
        return iter(self._keys)

    def __bool__(self) -> bool:
        return bool(self._keys)
