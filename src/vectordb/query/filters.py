"""
Filters and the PredicateBuilder.

Filters are collected into named groups. A group is the OR of its filters;
the compiled predicate is the AND of all non-empty groups.

Example:
    >>> builder = PredicateBuilder()
    >>> builder.add_filter_group("category")
    >>> builder.add_filter("category", {"field_name": "doc_type", "operator": "IN",
    ...                                 "compare_value": ["post", "page"]})
    >>> builder.add_filter_group("popular")
    >>> builder.add_filter("popular", {"field_name": "views", "operator": ">=",
    ...                                "compare_value": 100, "target": "metadata"})
    >>> builder.compile()
    AllOf(terms=(AnyOf(...), AnyOf(...)))
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..core.exceptions import (
    InvalidCompareValueError,
    InvalidOperatorError,
    ValidationError,
)
from .expressions import (
    AllOf,
    Always,
    AnyOf,
    Comparison,
    Expression,
    Operator,
    Target,
    is_identifier,
)


logger = logging.getLogger(__name__)

_SCALAR_TYPES = (str, int, float, date)


def parse_operator(operator: Any) -> Operator:
    """
    Normalize an operator given as an Operator or a string such as ``"not  in"``.

    Raises:
        InvalidOperatorError: If the operator is not supported
    """
    if isinstance(operator, Operator):
        return operator
    if isinstance(operator, str):
        normalized = " ".join(operator.split()).upper()
        try:
            return Operator(normalized)
        except ValueError:
            pass
    supported = ", ".join(op.value for op in Operator)
    raise InvalidOperatorError(
        f"Invalid operator {operator!r}; expected one of: {supported}",
        operator=operator,
    )


def parse_target(target: Any, allow_similarity: bool = False) -> Target:
    """Normalize a target given as a Target or a string."""
    try:
        parsed = target if isinstance(target, Target) else Target(str(target).lower())
    except ValueError:
        parsed = None
    if parsed is None or (parsed is Target.SIMILARITY and not allow_similarity):
        raise ValidationError(f"Invalid target {target!r}")
    return parsed


def _is_scalar(value: Any) -> bool:
    return isinstance(value, _SCALAR_TYPES) and not isinstance(value, bool)


@dataclass(frozen=True)
class Filter:
    """
    A validated filter.

    Attributes:
        field_name: Document column (attribute) or metadata key
        operator: Comparison operator
        compare_value: Scalar, or tuple of scalars for IN / NOT IN
        target: ATTRIBUTE or METADATA
    """
    field_name: str
    operator: Operator
    compare_value: Any
    target: Target = Target.ATTRIBUTE

    @classmethod
    def create(
        cls,
        field_name: str,
        operator: Any,
        compare_value: Any,
        target: Any = Target.ATTRIBUTE,
    ) -> "Filter":
        """
        Validate and build a filter.

        Raises:
            InvalidOperatorError: Unknown operator
            InvalidCompareValueError: Value is not a string, number, date or list of those
            ValidationError: Bad field name or target
        """
        op = parse_operator(operator)
        tgt = parse_target(target)

        if not isinstance(field_name, str) or not field_name:
            raise ValidationError(f"field_name must be a non-empty string, got {field_name!r}")
        if tgt is Target.ATTRIBUTE and not is_identifier(field_name):
            raise ValidationError(f"Invalid attribute name: {field_name!r}")

        if isinstance(compare_value, (list, tuple)):
            if not op.is_membership:
                raise InvalidCompareValueError(
                    f"Operator {op.value} does not accept a list value"
                )
            if not all(_is_scalar(item) for item in compare_value):
                raise InvalidCompareValueError(
                    f"List values must contain only strings, numbers or dates: {compare_value!r}"
                )
            value = tuple(compare_value)
        elif _is_scalar(compare_value):
            value = (compare_value,) if op.is_membership else compare_value
        else:
            raise InvalidCompareValueError(
                f"Unsupported compare value type {type(compare_value).__name__}"
            )

        if op.is_pattern and not isinstance(value, str):
            value = str(value)

        return cls(field_name=field_name, operator=op, compare_value=value, target=tgt)

    @classmethod
    def from_spec(cls, spec: Mapping[str, Any]) -> "Filter":
        """
        Build from a caller-supplied mapping.

        Accepts ``target`` ('attribute' / 'metadata') or the boolean
        ``is_meta_filter``.
        """
        missing = [k for k in ("field_name", "operator", "compare_value") if k not in spec]
        if missing:
            raise ValidationError(
                f"Filter spec must contain field_name, operator and compare_value "
                f"(missing: {', '.join(missing)})"
            )
        if "target" in spec:
            target = spec["target"]
        else:
            target = Target.METADATA if spec.get("is_meta_filter") else Target.ATTRIBUTE
        return cls.create(spec["field_name"], spec["operator"], spec["compare_value"], target)

    def to_expression(self) -> Expression:
        # Empty IN / NOT IN would be invalid SQL; treat as match-all
        if self.operator.is_membership and len(self.compare_value) == 0:
            logger.debug(
                f"Empty {self.operator.value} on '{self.field_name}' compiles to match-all"
            )
            return Always()
        return Comparison(
            field_name=self.field_name,
            operator=self.operator,
            value=self.compare_value,
            target=self.target,
        )


class PredicateBuilder:
    """
    Collects filter groups and compiles them to an expression tree.

    Groups are kept in insertion order so compiled output is deterministic.
    """

    def __init__(self):
        self._groups: Dict[str, List[Filter]] = {}

    def add_filter_group(self, key: str) -> None:
        """Create (or reset) an empty OR-group."""
        self._groups[key] = []

    def add_filter(self, key: str, spec: Any) -> Filter:
        """
        Append a filter to an existing group.

        Args:
            key: Group key created with add_filter_group
            spec: A Filter or a mapping accepted by Filter.from_spec

        Returns:
            The validated Filter

        Raises:
            ValidationError: If the group does not exist or the spec is invalid
        """
        if key not in self._groups:
            raise ValidationError(f"Unknown filter group: {key!r}")
        flt = spec if isinstance(spec, Filter) else Filter.from_spec(spec)
        self._groups[key].append(flt)
        return flt

    def has_filters(self) -> bool:
        return any(self._groups.values())

    def get_filters(self) -> Dict[str, List[Filter]]:
        return {key: list(filters) for key, filters in self._groups.items()}

    def compile(self) -> Optional[Expression]:
        """
        Compile to ``AllOf(AnyOf(...), ...)``, or None when there are no filters.
        """
        if not self.has_filters():
            return None
        groups = tuple(
            AnyOf(tuple(f.to_expression() for f in filters))
            for filters in self._groups.values()
            if filters
        )
        return AllOf(groups)

    @classmethod
    def from_groups(cls, groups: Mapping[str, Iterable[Any]]) -> "PredicateBuilder":
        """
        Build from ``{group_key: [filter_spec, ...]}``.

        Example:
            >>> PredicateBuilder.from_groups({"type": [{"field_name": "doc_type",
            ...     "operator": "=", "compare_value": "post"}]})
        """
        builder = cls()
        for key, specs in groups.items():
            builder.add_filter_group(key)
            for spec in specs:
                builder.add_filter(key, spec)
        return builder
