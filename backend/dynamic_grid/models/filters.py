"""AG Grid filter model and drill-down breadcrumb chain.

Both arrive from the client as JSON text (or an already decoded object) and
are parsed exactly once here; the rest of the engine only sees the typed
clauses below.

Wire shape of a filter model::

    {
      "name":   {"filterType": "text",   "type": "contains", "filter": "foo"},
      "salary": {"filterType": "number", "type": "inRange", "filter": 10, "filterTo": 20},
      "hired":  {"filterType": "date",   "type": "lessThan", "dateFrom": "2024-01-01"},
      "status": {"filterType": "set",    "values": ["Active", "Pending"]},
      "region": "EU"                      # shorthand for equals
    }
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from dynamic_grid.services.exceptions import GridValidationError


class _ClauseBase(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    operator: Optional[str] = Field(default=None, alias="type")


class TextFilter(_ClauseBase):
    filter_type: Literal["text"] = "text"
    value: Any = Field(default=None, alias="filter")
    value_to: Any = Field(default=None, alias="filterTo")

    @property
    def operand(self) -> Any:
        return self.value

    @property
    def operand_to(self) -> Any:
        return self.value_to


class NumberFilter(_ClauseBase):
    filter_type: Literal["number"] = "number"
    value: Any = Field(default=None, alias="filter")
    value_to: Any = Field(default=None, alias="filterTo")

    @property
    def operand(self) -> Any:
        return self.value

    @property
    def operand_to(self) -> Any:
        return self.value_to


class DateFilter(_ClauseBase):
    filter_type: Literal["date"] = "date"
    date_from: Any = None
    date_to: Any = None

    @property
    def operand(self) -> Any:
        return self.date_from

    @property
    def operand_to(self) -> Any:
        return self.date_to


class SetFilter(_ClauseBase):
    filter_type: Literal["set"] = "set"
    values: List[Any] = Field(default_factory=list)

    @property
    def operand(self) -> Any:
        return self.values

    @property
    def operand_to(self) -> Any:
        return None


FilterClause = Annotated[
    Union[TextFilter, NumberFilter, DateFilter, SetFilter],
    Field(discriminator="filter_type"),
]

# Ordered column -> clause. Insertion order is the order fragments are ANDed.
FilterExpression = Dict[str, FilterClause]

_clause_adapter: TypeAdapter = TypeAdapter(FilterClause)


class DrillDownLevel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    procedure_name: Optional[str] = None
    display_name: Optional[str] = None
    filters: Dict[str, Any] = Field(default_factory=dict)
    breadcrumb_label: Optional[str] = None


def _decode(raw: Any, what: str, code: str) -> Any:
    if raw is None:
        return None
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    if isinstance(raw, str):
        if not raw.strip():
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise GridValidationError(f"{what} is not valid JSON: {exc.msg}", code=code) from exc
    return raw


def _infer_filter_type(payload: Dict[str, Any]) -> str:
    if "values" in payload:
        return "set"
    if "dateFrom" in payload or "date_from" in payload:
        return "date"
    value = payload.get("filter")
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return "number"
    return "text"


def parse_clause(column: str, payload: Any) -> Union[TextFilter, NumberFilter, DateFilter, SetFilter]:
    """Parse one column's clause, expanding the scalar/list shorthands."""
    if isinstance(payload, (TextFilter, NumberFilter, DateFilter, SetFilter)):
        return payload
    if isinstance(payload, list):
        return SetFilter(values=payload)
    if not isinstance(payload, dict):
        if payload is None:
            return TextFilter(operator="blank")
        if isinstance(payload, (int, float)) and not isinstance(payload, bool):
            return NumberFilter(operator="equals", value=payload)
        return TextFilter(operator="equals", value=payload)

    data = dict(payload)
    if "filterType" not in data and "filter_type" not in data:
        data["filterType"] = _infer_filter_type(data)
    try:
        return _clause_adapter.validate_python(data)
    except ValidationError as exc:
        raise GridValidationError(
            f"Invalid filter for column '{column}'",
            code="INVALID_FILTER",
            column=column,
            errors=[err.get("msg") for err in exc.errors()],
        ) from exc


def parse_filter_model(raw: Any) -> FilterExpression:
    """Decode ``filterJson`` into an ordered column -> clause mapping."""
    data = _decode(raw, "filterJson", "INVALID_FILTER_JSON")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise GridValidationError("filterJson must be a JSON object", code="INVALID_FILTER_JSON")
    return {str(column): parse_clause(str(column), payload) for column, payload in data.items()}


def serialize_filter_model(expression: FilterExpression) -> Dict[str, Any]:
    return {
        column: clause.model_dump(by_alias=True, exclude_none=True)
        for column, clause in expression.items()
    }


def parse_drill_down(raw: Any) -> List[DrillDownLevel]:
    """Decode ``drillDownJson``.

    Accepts the breadcrumb list, the client state object ``{"levels": [...]}``
    or a bare ``{column: value}`` mapping (a single anonymous level).
    """
    data = _decode(raw, "drillDownJson", "INVALID_DRILL_DOWN_JSON")
    if data is None:
        return []
    if isinstance(data, dict):
        if "levels" in data:
            data = data.get("levels") or []
        else:
            data = [{"filters": data}]
    if not isinstance(data, list):
        raise GridValidationError("drillDownJson must be a list of levels", code="INVALID_DRILL_DOWN_JSON")

    levels: List[DrillDownLevel] = []
    for item in data:
        if not isinstance(item, dict):
            raise GridValidationError("drill-down level must be an object", code="INVALID_DRILL_DOWN_JSON")
        try:
            levels.append(DrillDownLevel.model_validate(item))
        except ValidationError as exc:
            raise GridValidationError("Invalid drill-down level", code="INVALID_DRILL_DOWN_JSON") from exc
    return levels
