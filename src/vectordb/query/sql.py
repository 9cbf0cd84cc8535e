"""
SQL adapter for compiled predicates.

Translates expression trees from ``query.expressions`` into a parameterized
WHERE clause for SQLite or SQL Server. Values are always bound as ``?``
parameters; only validated identifiers are inlined.

Metadata comparisons become correlated EXISTS sub-queries against the
document meta table, so an OR-group may freely mix attribute and metadata
filters:

    EXISTS (SELECT 1 FROM "document_meta" m
            WHERE m."document_id" = d."id" AND m."meta_key" = ? AND m."meta_value" = ?)
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Any, FrozenSet, List, Optional, Tuple

from ..core.exceptions import ValidationError
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


LIKE_ESCAPE = "\\"


def escape_like(value: str, metachars: str = "%_") -> str:
    """Escape ``metachars`` (and the escape character) so the value matches literally."""
    escaped = value.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
    for char in metachars:
        escaped = escaped.replace(char, LIKE_ESCAPE + char)
    return escaped


def _bind_value(value: Any) -> Any:
    if isinstance(value, date):
        return value.isoformat()
    return value


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass(frozen=True)
class SqlDialect:
    """Quoting, casting and LIKE rules for one SQL engine."""
    name: str
    quote_open: str
    quote_close: str
    numeric_cast: str
    # SQL Server also treats [ as a LIKE character-class opener
    like_metachars: str = "%_"

    def quote(self, identifier: str) -> str:
        if not is_identifier(identifier):
            raise ValidationError(f"Invalid SQL identifier: {identifier!r}")
        return f"{self.quote_open}{identifier}{self.quote_close}"

    def cast_number(self, expression: str) -> str:
        return self.numeric_cast.format(expr=expression)

    def like_pattern(self, value: Any) -> str:
        """Substring pattern matching ``value`` literally."""
        return f"%{escape_like(str(value), self.like_metachars)}%"


SQLITE = SqlDialect(name="sqlite", quote_open='"', quote_close='"',
                    numeric_cast="CAST({expr} AS REAL)")
SQLSERVER = SqlDialect(name="sqlserver", quote_open="[", quote_close="]",
                       numeric_cast="TRY_CAST({expr} AS FLOAT)", like_metachars="%_[")


@dataclass
class SqlTranslator:
    """
    Translate predicates for a document table aliased ``document_alias``.

    Attributes:
        dialect: SQLITE or SQLSERVER
        meta_table: Fully qualified, already quoted meta table name
        document_alias: Alias of the documents table in the outer query
        attribute_columns: If set, attribute filters must name one of these
    """
    dialect: SqlDialect
    meta_table: str
    document_alias: str = "d"
    attribute_columns: Optional[FrozenSet[str]] = None
    meta_alias: str = field(default="m")

    def where(self, expression: Optional[Expression]) -> Tuple[str, List[Any]]:
        """
        Translate an expression to ``(sql, params)``.

        None translates to the tautology ``1=1``.
        """
        params: List[Any] = []
        if expression is None:
            return "1=1", params
        sql = self._translate(expression, params)
        return sql, params

    def _translate(self, expression: Expression, params: List[Any]) -> str:
        if isinstance(expression, Always):
            return "1=1"
        if isinstance(expression, AllOf):
            return self._join(expression.terms, " AND ", params)
        if isinstance(expression, AnyOf):
            return self._join(expression.terms, " OR ", params)
        if isinstance(expression, Comparison):
            if expression.target is Target.METADATA:
                return self._metadata_comparison(expression, params)
            return self._attribute_comparison(expression, params)
        raise ValidationError(f"Cannot translate expression {expression!r}")

    def _join(self, terms, separator: str, params: List[Any]) -> str:
        if not terms:
            return "1=1"
        return "(" + separator.join(self._translate(t, params) for t in terms) + ")"

    def _attribute_comparison(self, comparison: Comparison, params: List[Any]) -> str:
        name = comparison.field_name
        if self.attribute_columns is not None and name not in self.attribute_columns:
            raise ValidationError(f"Unknown document attribute: {name!r}")
        column = f"{self.document_alias}.{self.dialect.quote(name)}"
        return self._predicate(column, comparison, params, numeric=False)

    def _metadata_comparison(self, comparison: Comparison, params: List[Any]) -> str:
        m = self.meta_alias
        q = self.dialect.quote
        params.append(comparison.field_name)
        value_column = f"{m}.{q('meta_value')}"
        predicate = self._predicate(value_column, comparison, params, numeric=True)
        return (
            f"EXISTS (SELECT 1 FROM {self.meta_table} {m} "
            f"WHERE {m}.{q('document_id')} = {self.document_alias}.{q('id')} "
            f"AND {m}.{q('meta_key')} = ? AND {predicate})"
        )

    def _predicate(
        self,
        column: str,
        comparison: Comparison,
        params: List[Any],
        numeric: bool,
    ) -> str:
        op = comparison.operator
        value = comparison.value

        if op.is_pattern:
            params.append(self.dialect.like_pattern(value))
            return f"{column} {op.value} ? ESCAPE '{LIKE_ESCAPE}'"

        if op.is_membership:
            values = list(value)
            # Metadata is stored as text; compare numerically when every value is a number
            if numeric and all(_is_number(v) for v in values):
                column = self.dialect.cast_number(column)
            params.extend(_bind_value(v) for v in values)
            placeholders = ", ".join("?" for _ in values)
            return f"{column} {op.value} ({placeholders})"

        if numeric and _is_number(value):
            column = self.dialect.cast_number(column)
        params.append(_bind_value(value))
        sql_op = "<>" if op is Operator.NE else op.value
        return f"{column} {sql_op} ?"
