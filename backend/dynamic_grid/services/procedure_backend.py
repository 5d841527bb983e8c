"""Invocation of grid procedures and their companion mutation procedures.

The engine only knows the fixed calling convention; what a procedure does
inside is its own business. ``SqlProcedureBackend`` calls real database
routines, ``InMemoryProcedureBackend`` serves registered row lists and applies
the translated predicate itself (local development and tests).
"""

from __future__ import annotations

import json
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import text
from sqlalchemy.engine import Connection

from dynamic_grid.services.exceptions import DatabaseError
from dynamic_grid.services.filter_translator import Predicate
from dynamic_grid.utils.logger import logger

GRID_PARAMETERS = (
    "p_PageNumber",
    "p_PageSize",
    "p_StartRow",
    "p_EndRow",
    "p_SortColumn",
    "p_SortDirection",
    "p_FilterJson",
    "p_DrillDownJson",
    "p_SearchTerm",
)

CREATE = "create"
UPDATE = "update"
DELETE = "delete"

MUTATION_PARAMETERS = {
    CREATE: ("p_FieldValuesJson", "p_UserId"),
    UPDATE: ("p_Id", "p_ChangesJson", "p_UserId"),
    DELETE: ("p_Id", "p_UserId"),
}


def normalize_value(value: Any) -> Any:
    """Reduce a driver value to None/bool/int/float/str/date/datetime."""
    if value is None or isinstance(value, (bool, int, float, str, datetime, date)):
        return value
    if isinstance(value, Decimal):
        if value == value.to_integral_value():
            return int(value)
        return float(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    if isinstance(value, time):
        return value.isoformat()
    return str(value)


def normalize_row(row: Mapping[str, Any]) -> Dict[str, Any]:
    return {str(k): normalize_value(v) for k, v in row.items()}


def _pick(doc: Mapping[str, Any], *names: str) -> Any:
    lowered = {str(k).lower(): v for k, v in doc.items()}
    for name in names:
        if name.lower() in lowered:
            return lowered[name.lower()]
    return None


def _as_document(raw: Any, procedure_name: str) -> Optional[Dict[str, Any]]:
    if raw is None:
        return None
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise DatabaseError(
                f"{procedure_name} returned malformed JSON", code="INVALID_PROCEDURE_RESULT"
            ) from exc
    if not isinstance(raw, dict):
        raise DatabaseError(f"{procedure_name} must return a JSON object", code="INVALID_PROCEDURE_RESULT")
    return raw


@dataclass
class ProcedureCall:
    procedure_name: str
    page_number: int
    page_size: int
    start_row: Optional[int] = None
    end_row: Optional[int] = None
    sort_column: Optional[str] = None
    sort_direction: str = "ASC"
    filter_json: Optional[str] = None
    drill_down_json: Optional[str] = None
    search_term: Optional[str] = None
    predicate: Predicate = field(default_factory=Predicate)

    def parameters(self) -> Dict[str, Any]:
        return {
            "p_PageNumber": self.page_number,
            "p_PageSize": self.page_size,
            "p_StartRow": self.start_row,
            "p_EndRow": self.end_row,
            "p_SortColumn": self.sort_column,
            "p_SortDirection": self.sort_direction,
            "p_FilterJson": self.filter_json,
            "p_DrillDownJson": self.drill_down_json,
            "p_SearchTerm": self.search_term,
        }


@dataclass
class ProcedureResult:
    rows: List[Dict[str, Any]] = field(default_factory=list)
    columns: Optional[List[Dict[str, Any]]] = None
    total_count: Optional[int] = None
    has_more: Optional[bool] = None


@dataclass
class MutationCall:
    procedure_name: str
    kind: str
    row_id: Any = None
    values: Dict[str, Any] = field(default_factory=dict)
    user_id: Any = None

    def parameters(self) -> Dict[str, Any]:
        payload = json.dumps(self.values, default=str)
        if self.kind == CREATE:
            return {"p_FieldValuesJson": payload, "p_UserId": self.user_id}
        if self.kind == UPDATE:
            return {"p_Id": self.row_id, "p_ChangesJson": payload, "p_UserId": self.user_id}
        return {"p_Id": self.row_id, "p_UserId": self.user_id}


@dataclass
class MutationOutcome:
    success: bool
    message: Optional[str] = None
    error_code: Optional[str] = None
    row: Optional[Dict[str, Any]] = None
    rows_affected: Optional[int] = None

    @classmethod
    def from_document(cls, doc: Optional[Mapping[str, Any]], kind: str) -> "MutationOutcome":
        if doc is None:
            return cls(success=False, message=f"No response from {kind} procedure", error_code="NO_RESPONSE")
        row = _pick(doc, "createdRow", "updatedRow", "row")
        rows_affected = _pick(doc, "rowsAffected", "rows_affected")
        return cls(
            success=bool(_pick(doc, "success")),
            message=_pick(doc, "message"),
            error_code=_pick(doc, "errorCode", "error_code"),
            row=normalize_row(row) if isinstance(row, Mapping) else None,
            rows_affected=int(rows_affected) if rows_affected is not None else None,
        )


class ProcedureBackend(ABC):
    @abstractmethod
    def fetch(self, conn: Connection, call: ProcedureCall) -> ProcedureResult:
        raise NotImplementedError

    @abstractmethod
    def mutate(self, conn: Connection, call: MutationCall) -> MutationOutcome:
        raise NotImplementedError


class SqlProcedureBackend(ProcedureBackend):
    """Calls routines in the routed database.

    PostgreSQL/SQLite functions return one JSON document. SQL Server
    procedures return the row set, then a second result set with the total.
    """

    def fetch(self, conn: Connection, call: ProcedureCall) -> ProcedureResult:
        params = call.parameters()
        if conn.dialect.name == "mssql":
            return self._fetch_mssql(conn, call.procedure_name, params)

        placeholders = ", ".join(f":{name}" for name in GRID_PARAMETERS)
        raw = conn.execute(text(f"SELECT {call.procedure_name}({placeholders})"), params).scalar()
        doc = _as_document(raw, call.procedure_name)
        if doc is None:
            return ProcedureResult(rows=[], total_count=0)

        rows = _pick(doc, "rows") or []
        total = _pick(doc, "totalCount", "total_count")
        has_more = _pick(doc, "hasMore", "has_more")
        return ProcedureResult(
            rows=[normalize_row(r) for r in rows if isinstance(r, Mapping)],
            columns=_pick(doc, "columns"),
            total_count=int(total) if total is not None else None,
            has_more=bool(has_more) if has_more is not None else None,
        )

    @staticmethod
    def _exec_statement(procedure_name: str, names) -> str:
        assignments = ", ".join(f"@{name}=%({name})s" for name in names)
        return f"EXEC {procedure_name} {assignments}"

    def _fetch_mssql(self, conn: Connection, procedure_name: str, params: Dict[str, Any]) -> ProcedureResult:
        cursor = conn.connection.cursor()
        try:
            cursor.execute(self._exec_statement(procedure_name, GRID_PARAMETERS), params)
            columns = [d[0] for d in cursor.description or []]
            rows = [normalize_row(dict(zip(columns, r))) for r in cursor.fetchall()] if columns else []
            total = None
            if cursor.nextset():
                first = cursor.fetchone()
                if first is not None:
                    total = int(first[0])
            return ProcedureResult(rows=rows, total_count=total)
        finally:
            cursor.close()

    def mutate(self, conn: Connection, call: MutationCall) -> MutationOutcome:
        params = call.parameters()
        names = MUTATION_PARAMETERS[call.kind]
        if conn.dialect.name == "mssql":
            cursor = conn.connection.cursor()
            try:
                cursor.execute(self._exec_statement(call.procedure_name, names), params)
                columns = [d[0] for d in cursor.description or []]
                first = cursor.fetchone() if columns else None
            finally:
                cursor.close()
            if first is None:
                return MutationOutcome.from_document(None, call.kind)
            if len(columns) == 1 and isinstance(first[0], (str, bytes)):
                return MutationOutcome.from_document(_as_document(first[0], call.procedure_name), call.kind)
            return MutationOutcome.from_document(dict(zip(columns, first)), call.kind)

        placeholders = ", ".join(f":{name}" for name in names)
        raw = conn.execute(text(f"SELECT {call.procedure_name}({placeholders})"), params).scalar()
        return MutationOutcome.from_document(_as_document(raw, call.procedure_name), call.kind)


def _sort_key(value: Any):
    # None sorts last in both directions; mixed types fall back to text.
    if value is None:
        return (1, 0, "")
    if isinstance(value, bool):
        return (0, 0, int(value))
    if isinstance(value, (int, float, Decimal)):
        return (0, 0, value)
    if isinstance(value, (datetime, date)):
        return (0, 1, value.isoformat())
    return (0, 2, str(value).lower())


class _Table:
    def __init__(self, rows, key_field: str):
        self.rows: List[Dict[str, Any]] = [dict(r) for r in rows]
        self.key_field = key_field


class InMemoryProcedureBackend(ProcedureBackend):
    """Serves registered row lists under the grid calling convention."""

    def __init__(self):
        self._tables: Dict[str, _Table] = {}
        self._companions: Dict[str, tuple] = {}
        self._lock = threading.Lock()

    def register(
        self,
        procedure_name: str,
        rows,
        key_field: str = "Id",
        create: Optional[str] = None,
        update: Optional[str] = None,
        delete: Optional[str] = None,
    ) -> None:
        table = _Table(rows, key_field)
        with self._lock:
            self._tables[procedure_name.lower()] = table
            for kind, name in ((CREATE, create), (UPDATE, update), (DELETE, delete)):
                if name:
                    self._companions[name.lower()] = (kind, table)

    def rows(self, procedure_name: str) -> List[Dict[str, Any]]:
        return [dict(r) for r in self._tables[procedure_name.lower()].rows]

    def fetch(self, conn: Connection, call: ProcedureCall) -> ProcedureResult:
        table = self._tables.get(call.procedure_name.lower())
        if table is None:
            raise DatabaseError(f"function {call.procedure_name} does not exist", code="DB_ERROR")

        with self._lock:
            rows = [r for r in table.rows if call.predicate.matches(r)]

        if call.search_term:
            needle = call.search_term.lower()
            rows = [r for r in rows if any(v is not None and needle in str(v).lower() for v in r.values())]

        if call.sort_column:
            column = next((k for k in (rows[0].keys() if rows else ()) if k.lower() == call.sort_column.lower()), None)
            if column is not None:
                present = [r for r in rows if r.get(column) is not None]
                missing = [r for r in rows if r.get(column) is None]
                present.sort(key=lambda r: _sort_key(r.get(column)), reverse=call.sort_direction == "DESC")
                rows = present + missing

        total = len(rows)
        if call.start_row is not None and call.end_row is not None:
            page = rows[call.start_row:call.end_row]
        else:
            offset = (call.page_number - 1) * call.page_size
            page = rows[offset:offset + call.page_size]
        return ProcedureResult(rows=[normalize_row(r) for r in page], total_count=total)

    def mutate(self, conn: Connection, call: MutationCall) -> MutationOutcome:
        entry = self._companions.get(call.procedure_name.lower())
        if entry is None:
            raise DatabaseError(f"function {call.procedure_name} does not exist", code="DB_ERROR")
        _, table = entry
        key = table.key_field

        with self._lock:
            if call.kind == CREATE:
                row = dict(call.values)
                if row.get(key) is None:
                    ids = [r.get(key) for r in table.rows if isinstance(r.get(key), int)]
                    row[key] = (max(ids) + 1) if ids else 1
                table.rows.append(row)
                logger.debug("in_memory_backend.create procedure=%s id=%s", call.procedure_name, row[key])
                return MutationOutcome(success=True, message="Row created", row=normalize_row(row), rows_affected=1)

            index = next(
                (i for i, r in enumerate(table.rows) if str(r.get(key)) == str(call.row_id)),
                None,
            )
            if index is None:
                return MutationOutcome(
                    success=False, message="Row not found", error_code="ROW_NOT_FOUND", rows_affected=0
                )
            if call.kind == UPDATE:
                table.rows[index].update(call.values)
                return MutationOutcome(
                    success=True, message="Row updated", row=normalize_row(table.rows[index]), rows_affected=1
                )
            table.rows.pop(index)
            return MutationOutcome(success=True, message="Row deleted", rows_affected=1)
