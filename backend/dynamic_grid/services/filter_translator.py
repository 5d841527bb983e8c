"""Turn a structured filter model into bound-parameter predicate fragments.

One fragment per filtered column, ANDed in column order. Column names are
validated and quoted, operands only ever travel as bound parameters. Every
fragment can also be evaluated against a row mapping with the same SQL
three-valued semantics, which is what the in-process procedure backend uses.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from dynamic_grid.models.filters import FilterExpression, SetFilter, parse_clause
from dynamic_grid.services.exceptions import GridValidationError

SAFE_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

TEXT = "text"
NUMBER = "number"
DATE = "date"
BOOLEAN = "boolean"

TEXT_OPERATORS = ("contains", "notContains", "equals", "notEqual", "startsWith", "endsWith", "blank", "notBlank")
NUMBER_OPERATORS = (
    "equals", "notEqual", "lessThan", "lessThanOrEqual", "greaterThan", "greaterThanOrEqual",
    "inRange", "blank", "notBlank",
)
DATE_OPERATORS = NUMBER_OPERATORS
BOOLEAN_OPERATORS = ("equals", "notEqual", "blank", "notBlank")
SET_OPERATORS = ("in",)

OPERATORS: Dict[str, Sequence[str]] = {
    TEXT: TEXT_OPERATORS,
    NUMBER: NUMBER_OPERATORS,
    DATE: DATE_OPERATORS,
    BOOLEAN: BOOLEAN_OPERATORS,
}

# Fallback when the client sends an operator the type does not know.
DEFAULT_OPERATOR = {TEXT: "contains", NUMBER: "equals", DATE: "equals", BOOLEAN: "equals"}

_TYPE_ALIASES = {
    "text": TEXT, "string": TEXT, "varchar": TEXT, "nvarchar": TEXT, "char": TEXT, "uuid": TEXT,
    "number": NUMBER, "numeric": NUMBER, "decimal": NUMBER, "int": NUMBER, "integer": NUMBER,
    "bigint": NUMBER, "smallint": NUMBER, "float": NUMBER, "double": NUMBER, "real": NUMBER, "money": NUMBER,
    "date": DATE, "datetime": DATE, "timestamp": DATE, "timestamptz": DATE, "datetime2": DATE,
    "boolean": BOOLEAN, "bool": BOOLEAN, "bit": BOOLEAN,
}

_TRUE = {"true", "1", "yes", "y", "t"}
_FALSE = {"false", "0", "no", "n", "f"}


def normalize_semantic_type(raw: Optional[str]) -> str:
    if not raw:
        return TEXT
    return _TYPE_ALIASES.get(str(raw).strip().lower(), TEXT)


def is_safe_identifier(name: Optional[str]) -> bool:
    return bool(name) and bool(SAFE_IDENTIFIER_RE.match(name))


def quote_identifier(name: str) -> str:
    """Double-quote a validated identifier; ``schema.table`` is quoted per part."""
    parts = name.split(".")
    if not parts or not all(is_safe_identifier(p) for p in parts):
        raise GridValidationError(f"Invalid identifier: {name!r}", code="INVALID_IDENTIFIER")
    return ".".join(f'"{p}"' for p in parts)


# --- operand parsing -------------------------------------------------------------


def parse_number(value: Any, column: str) -> Decimal:
    if isinstance(value, bool):
        raise GridValidationError(f"Filter value for '{column}' must be a number", code="INVALID_FILTER_VALUE", column=column)
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise GridValidationError(
            f"Filter value for '{column}' must be a number", code="INVALID_FILTER_VALUE", column=column
        ) from exc
    if not number.is_finite():
        raise GridValidationError(f"Filter value for '{column}' must be finite", code="INVALID_FILTER_VALUE", column=column)
    return number


def parse_date(value: Any, column: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        # AG Grid sends "YYYY-MM-DD hh:mm:ss"; plain ISO dates are accepted too.
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError as exc:
        raise GridValidationError(
            f"Filter value for '{column}' must be an ISO date", code="INVALID_FILTER_VALUE", column=column
        ) from exc


def parse_boolean(value: Any, column: str) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise GridValidationError(f"Filter value for '{column}' must be a boolean", code="INVALID_FILTER_VALUE", column=column)


def _parser_for(semantic_type: str) -> Callable[[Any, str], Any]:
    if semantic_type == NUMBER:
        return parse_number
    if semantic_type == DATE:
        return parse_date
    if semantic_type == BOOLEAN:
        return parse_boolean
    return lambda value, column: str(value)


def _row_value(value: Any, semantic_type: str) -> Any:
    """Coerce a row cell for comparison; None when it cannot be compared."""
    if value is None:
        return None
    try:
        return _parser_for(semantic_type)(value, "")
    except GridValidationError:
        return None


# --- fragments -------------------------------------------------------------------


@dataclass
class PredicateFragment:
    column: str
    semantic_type: str
    operator: str
    sql: str
    params: Dict[str, Any] = field(default_factory=dict)
    operand: Any = None
    operand_to: Any = None

    def matches(self, row: Mapping[str, Any]) -> bool:
        raw = row.get(self.column)
        if self.operator == "blank":
            return raw is None or (isinstance(raw, str) and raw == "")
        if self.operator == "notBlank":
            return raw is not None and not (isinstance(raw, str) and raw == "")
        if raw is None:
            # Only the "(Blanks)" set entry matches NULL; any other comparison filters it out.
            return self.operator == "in" and None in self.operand

        if self.operator == "in":
            if self.semantic_type == TEXT:
                return str(raw).lower() in {str(v).lower() for v in self.operand}
            value = _row_value(raw, self.semantic_type)
            return value is not None and value in set(self.operand)

        if self.semantic_type == TEXT:
            haystack = str(raw).lower()
            needle = str(self.operand).lower()
            return {
                "contains": lambda: needle in haystack,
                "notContains": lambda: needle not in haystack,
                "equals": lambda: haystack == needle,
                "notEqual": lambda: haystack != needle,
                "startsWith": lambda: haystack.startswith(needle),
                "endsWith": lambda: haystack.endswith(needle),
            }[self.operator]()

        value = _row_value(raw, self.semantic_type)
        if value is None:
            return False
        operand = self.operand
        if self.operator == "equals":
            return value == operand
        if self.operator == "notEqual":
            return value != operand
        if self.operator == "lessThan":
            return value < operand
        if self.operator == "lessThanOrEqual":
            return value <= operand
        if self.operator == "greaterThan":
            return value > operand
        if self.operator == "greaterThanOrEqual":
            return value >= operand
        if self.operator == "inRange":
            return operand <= value <= self.operand_to
        return False


@dataclass
class Predicate:
    fragments: List[PredicateFragment] = field(default_factory=list)

    @property
    def sql(self) -> str:
        return " AND ".join(f.sql for f in self.fragments)

    @property
    def params(self) -> Dict[str, Any]:
        merged: Dict[str, Any] = {}
        for fragment in self.fragments:
            merged.update(fragment.params)
        return merged

    @property
    def columns(self) -> List[str]:
        return [f.column for f in self.fragments]

    def matches(self, row: Mapping[str, Any]) -> bool:
        return all(f.matches(row) for f in self.fragments)

    def __bool__(self) -> bool:
        return bool(self.fragments)


_COMPARISON_SQL = {
    "equals": "=",
    "notEqual": "<>",
    "lessThan": "<",
    "lessThanOrEqual": "<=",
    "greaterThan": ">",
    "greaterThanOrEqual": ">=",
}


def _blank_sql(quoted: str, semantic_type: str, negate: bool) -> str:
    if semantic_type == TEXT:
        if negate:
            return f"({quoted} IS NOT NULL AND {quoted} <> '')"
        return f"({quoted} IS NULL OR {quoted} = '')"
    return f"{quoted} IS NOT NULL" if negate else f"{quoted} IS NULL"


def _resolve_operator(column: str, semantic_type: str, requested: Optional[str], strict: bool) -> str:
    allowed = OPERATORS[semantic_type]
    if requested in allowed:
        return requested
    if strict and requested is not None:
        raise GridValidationError(
            f"Operator '{requested}' is not supported for {semantic_type} column '{column}'",
            code="UNSUPPORTED_OPERATOR",
            column=column,
            operator=requested,
        )
    return DEFAULT_OPERATOR[semantic_type]


def _require(value: Any, column: str, operator: str) -> Any:
    if value is None or (isinstance(value, str) and value == ""):
        raise GridValidationError(
            f"Filter '{operator}' on '{column}' needs a value", code="MISSING_FILTER_VALUE", column=column
        )
    return value


def build_fragment(index: int, column: str, clause: Any, semantic_type: str, strict: bool = False) -> PredicateFragment:
    quoted = quote_identifier(column)
    name = f"f{index}"

    if isinstance(clause, SetFilter):
        parse = _parser_for(semantic_type)
        values = [parse(v, column) for v in clause.values if v is not None]
        blanks = any(v is None for v in clause.values)
        if not values:
            if blanks:
                return PredicateFragment(column, semantic_type, "in", f"{quoted} IS NULL", {}, [None])
            return PredicateFragment(column, semantic_type, "in", "1 = 0", {}, [])
        params = {f"{name}_{j}": v for j, v in enumerate(values)}
        placeholders = ", ".join(f":{key}" for key in params)
        if semantic_type == TEXT:
            sql = f"LOWER({quoted}) IN ({', '.join(f'LOWER(:{key})' for key in params)})"
        else:
            sql = f"{quoted} IN ({placeholders})"
        if blanks:
            sql = f"({sql} OR {quoted} IS NULL)"
            values.append(None)
        return PredicateFragment(column, semantic_type, "in", sql, params, values)

    operator = _resolve_operator(column, semantic_type, clause.operator, strict)

    if operator in ("blank", "notBlank"):
        return PredicateFragment(column, semantic_type, operator, _blank_sql(quoted, semantic_type, operator == "notBlank"))

    if semantic_type == TEXT:
        text = str(_require(clause.operand, column, operator))
        patterns = {
            "contains": f"{quoted} ILIKE '%' || :{name} || '%'",
            "notContains": f"{quoted} NOT ILIKE '%' || :{name} || '%'",
            "equals": f"{quoted} ILIKE :{name}",
            "notEqual": f"{quoted} NOT ILIKE :{name}",
            "startsWith": f"{quoted} ILIKE :{name} || '%'",
            "endsWith": f"{quoted} ILIKE '%' || :{name}",
        }
        return PredicateFragment(column, semantic_type, operator, patterns[operator], {name: text}, text)

    parse = _parser_for(semantic_type)
    target = f"CAST({quoted} AS DATE)" if semantic_type == DATE else quoted
    operand = parse(_require(clause.operand, column, operator), column)

    if operator == "inRange":
        upper = parse(_require(clause.operand_to, column, operator), column)
        if upper < operand:
            operand, upper = upper, operand
        sql = f"{target} BETWEEN :{name} AND :{name}_to"
        return PredicateFragment(
            column, semantic_type, operator, sql, {name: operand, f"{name}_to": upper}, operand, upper
        )

    sql = f"{target} {_COMPARISON_SQL[operator]} :{name}"
    return PredicateFragment(column, semantic_type, operator, sql, {name: operand}, operand)


def merge_drill_down(explicit: FilterExpression, drill_down: Iterable[Mapping[str, Any]]) -> FilterExpression:
    """Overlay drill-down filters on the explicit ones.

    A drill-down entry on a column the client also filtered replaces the
    explicit clause in place; new columns are appended in chain order.
    Column names match case-insensitively and the first spelling is kept.
    """
    merged: FilterExpression = dict(explicit)
    spelling = {column.lower(): column for column in merged}
    for filters in drill_down:
        for column, value in filters.items():
            column = str(column)
            key = spelling.setdefault(column.lower(), column)
            merged[key] = parse_clause(key, value)
    return merged


def translate(
    expression: FilterExpression,
    column_types: Mapping[str, str],
    known_columns: Optional[Iterable[str]] = None,
    strict: bool = False,
) -> Predicate:
    """Build the predicate for ``expression``.

    Columns missing from ``column_types`` are treated as text. In strict mode
    they are rejected instead (``known_columns`` widens the accepted set, e.g.
    with the procedure's declared columns).
    """
    types = {str(k).lower(): normalize_semantic_type(v) for k, v in column_types.items()}
    known = set(types)
    if known_columns is not None:
        known.update(str(c).lower() for c in known_columns)

    fragments: List[PredicateFragment] = []
    for index, (column, clause) in enumerate(expression.items()):
        if not is_safe_identifier(column):
            raise GridValidationError(f"Invalid filter column: {column!r}", code="INVALID_IDENTIFIER", column=column)
        if strict and column.lower() not in known:
            raise GridValidationError(
                f"Unknown filter column '{column}'", code="UNKNOWN_FILTER_COLUMN", column=column
            )
        semantic_type = types.get(column.lower(), TEXT)
        fragments.append(build_fragment(index, column, clause, semantic_type, strict))
    return Predicate(fragments)
