from __future__ import annotations

import json
import re
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from pydantic import ValidationError
from sqlalchemy import text
from sqlalchemy.orm import Session

from dynamic_grid.models.grid import (
    ColumnDefinition,
    ColumnMetadataSpec,
    ColumnMetadataUpsert,
    DropdownOption,
)
from dynamic_grid.models_sqlalchemy.models import ColumnMetadata
from dynamic_grid.services.cache import MetadataCache
from dynamic_grid.services.database_router import DatabaseRouter
from dynamic_grid.services.exceptions import GridValidationError, NotFoundError
from dynamic_grid.services.filter_translator import (
    BOOLEAN,
    DATE,
    NUMBER,
    TEXT,
    normalize_semantic_type,
    quote_identifier,
)
from dynamic_grid.utils.logger import logger

_PLACEHOLDER_RE = re.compile(r"@param_([A-Za-z_][A-Za-z0-9_]*)")

_CLIENT_TYPES = {TEXT: "string", NUMBER: "number", DATE: "date", BOOLEAN: "boolean"}

# Lower-cased column definition keys as procedures tend to emit them.
_DECLARED_KEYS = {
    "field": "field",
    "headername": "header_name",
    "type": "type",
    "width": "width",
    "sortable": "sortable",
    "filter": "filter",
    "editable": "editable",
    "celleditor": "cell_editor",
    "celleditorparams": "cell_editor_params",
    "columngroup": "column_group",
    "columngroupshow": "column_group_show",
    "pinned": "pinned",
    "customproperties": "custom_properties",
}


def infer_semantic_type(values: Iterable[Any]) -> str:
    for value in values:
        if value is None:
            continue
        if isinstance(value, bool):
            return BOOLEAN
        if isinstance(value, (int, float, Decimal)):
            return NUMBER
        if isinstance(value, (date, datetime)):
            return DATE
        return TEXT
    return TEXT


def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def _context_lookup(row_context: Mapping[str, Any], name: str) -> Any:
    if name in row_context:
        return row_context[name]
    lowered = name.lower()
    for key, value in row_context.items():
        if str(key).lower() == lowered:
            return value
    return None


def _declared_column(raw: Mapping[str, Any]) -> Optional[ColumnDefinition]:
    data = {_DECLARED_KEYS[k.lower()]: v for k, v in raw.items() if k.lower() in _DECLARED_KEYS}
    if not data.get("field"):
        return None
    data.setdefault("header_name", data["field"])
    if isinstance(data.get("cell_editor_params"), (dict, list)):
        data["cell_editor_params"] = json.dumps(data["cell_editor_params"])
    try:
        return ColumnDefinition(**data)
    except ValidationError:
        logger.warning("column_metadata.bad_declared_column field=%s", data.get("field"))
        return None


def _to_spec(row: ColumnMetadata) -> Optional[ColumnMetadataSpec]:
    try:
        return ColumnMetadataSpec(
            id=row.id,
            procedure_name=row.procedure_name,
            column_name=row.column_name,
            header_name=row.header_name,
            data_type=row.data_type,
            width=row.width,
            editable=bool(row.editable),
            pinned=row.pinned,
            column_group=row.column_group,
            column_group_show=row.column_group_show,
            display_order=row.display_order,
            cell_editor=row.cell_editor,
            dropdown_type=row.dropdown_type,
            static_values=row.static_values,
            master_table=row.master_table,
            value_field=row.value_field,
            label_field=row.label_field,
            filter_condition=row.filter_condition,
            depends_on=row.depends_on,
            link_config=row.link_config,
            is_active=bool(row.is_active),
        )
    except ValidationError as exc:
        # One broken row must not take the whole grid down; the column renders without extras.
        logger.warning(
            "column_metadata.invalid_row procedure=%s column=%s errors=%s",
            row.procedure_name,
            row.column_name,
            exc.errors(),
        )
        return None


class ColumnMetadataResolver:
    def __init__(self, session_factory: Callable[[], Session], cache: MetadataCache, router: DatabaseRouter):
        self._session_factory = session_factory
        self._cache = cache
        self._router = router

    @staticmethod
    def _key(procedure_name: str):
        return ("columns", procedure_name.lower())

    def _load(self, procedure_name: str) -> List[ColumnMetadataSpec]:
        db = self._session_factory()
        try:
            rows = (
                db.query(ColumnMetadata)
                .filter(ColumnMetadata.procedure_name == procedure_name, ColumnMetadata.is_active.is_(True))
                .order_by(
                    ColumnMetadata.display_order.is_(None),
                    ColumnMetadata.display_order,
                    ColumnMetadata.id,
                )
                .all()
            )
        finally:
            db.close()
        specs = [_to_spec(r) for r in rows]
        return [s for s in specs if s is not None]

    def metadata_for(self, procedure_name: str) -> List[ColumnMetadataSpec]:
        return self._cache.get_or_load(self._key(procedure_name), lambda: self._load(procedure_name))

    def column_types(self, procedure_name: str) -> Dict[str, str]:
        return {
            spec.column_name: normalize_semantic_type(spec.data_type)
            for spec in self.metadata_for(procedure_name)
            if spec.data_type
        }

    def invalidate(self, procedure_name: Optional[str] = None) -> None:
        if procedure_name is None:
            self._cache.invalidate()
        else:
            self._cache.invalidate(self._key(procedure_name))

    # --- dropdowns -------------------------------------------------------------

    def find_dropdown(
        self,
        procedure_name: str,
        column_name: Optional[str] = None,
        master_table: Optional[str] = None,
        value_field: Optional[str] = None,
        label_field: Optional[str] = None,
    ) -> ColumnMetadataSpec:
        """The registered dropdown a client request refers to."""
        for spec in self.metadata_for(procedure_name):
            if not spec.is_dropdown:
                continue
            if column_name and spec.column_name.lower() == column_name.lower():
                return spec
            if (
                not column_name
                and spec.dropdown_type == "dynamic"
                and (spec.master_table or "").lower() == (master_table or "").lower()
                and (spec.value_field or "").lower() == (value_field or "").lower()
                and (spec.label_field or "").lower() == (label_field or "").lower()
            ):
                return spec
        raise NotFoundError(
            f"No dropdown registered for {procedure_name} ({column_name or master_table})",
            code="DROPDOWN_NOT_FOUND",
        )

    def dropdown_values(
        self,
        spec: ColumnMetadataSpec,
        row_context: Optional[Mapping[str, Any]] = None,
        database_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> List[DropdownOption]:
        if spec.dropdown_type == "static":
            return list(spec.static_values)
        if spec.dropdown_type != "dynamic":
            return []

        row_context = row_context or {}
        for dependency in spec.depends_on:
            if _is_missing(_context_lookup(row_context, dependency)):
                logger.info(
                    "column_metadata.dropdown_unresolved procedure=%s column=%s missing=%s",
                    spec.procedure_name,
                    spec.column_name,
                    dependency,
                )
                return []

        params: Dict[str, Any] = {}
        condition = spec.filter_condition or ""
        for name in _PLACEHOLDER_RE.findall(condition):
            value = _context_lookup(row_context, name)
            if _is_missing(value):
                return []
            params[f"param_{name}"] = value
        condition = _PLACEHOLDER_RE.sub(lambda m: f":param_{m.group(1)}", condition)

        value_col = quote_identifier(spec.value_field)
        label_col = quote_identifier(spec.label_field)
        sql = f"SELECT {value_col} AS value, {label_col} AS label FROM {quote_identifier(spec.master_table)}"
        if condition.strip():
            sql += f" WHERE {condition}"
        sql += f" ORDER BY {label_col}"

        with self._router.connection_for(database_id, timeout=timeout) as conn:
            rows = conn.execute(text(sql), params).mappings().all()
        return [DropdownOption(value=r["value"], label=r["label"]) for r in rows]

    # --- column definitions ----------------------------------------------------

    def build_columns(
        self,
        procedure_name: str,
        declared: Optional[Sequence[Mapping[str, Any]]],
        rows: Sequence[Mapping[str, Any]],
    ) -> List[ColumnDefinition]:
        metadata = {spec.column_name.lower(): spec for spec in self.metadata_for(procedure_name)}

        columns: List[ColumnDefinition] = []
        if declared:
            for raw in declared:
                if isinstance(raw, Mapping):
                    column = _declared_column(raw)
                    if column is not None:
                        columns.append(column)
        else:
            seen = set()
            fields: List[str] = []
            for spec in metadata.values():
                fields.append(spec.column_name)
                seen.add(spec.column_name.lower())
            for row in rows[:1]:
                for key in row.keys():
                    if key.lower() not in seen:
                        fields.append(key)
                        seen.add(key.lower())
            for name in fields:
                spec = metadata.get(name.lower())
                if spec is not None and spec.data_type:
                    semantic = normalize_semantic_type(spec.data_type)
                else:
                    semantic = infer_semantic_type(row.get(name) for row in rows)
                columns.append(ColumnDefinition(field=name, header_name=name, type=_CLIENT_TYPES[semantic]))

        return [self._apply_metadata(column, metadata.get(column.field.lower())) for column in columns]

    @staticmethod
    def _apply_metadata(column: ColumnDefinition, spec: Optional[ColumnMetadataSpec]) -> ColumnDefinition:
        if spec is None:
            return column

        updates: Dict[str, Any] = {"editable": spec.editable or column.editable}
        if spec.header_name:
            updates["header_name"] = spec.header_name
        if spec.data_type:
            updates["type"] = _CLIENT_TYPES[normalize_semantic_type(spec.data_type)]
        for attr in ("width", "pinned", "column_group", "column_group_show", "cell_editor"):
            value = getattr(spec, attr)
            if value is not None:
                updates[attr] = value

        custom: Dict[str, Any] = dict(column.custom_properties or {})
        if spec.is_dropdown:
            if "cell_editor" not in updates and not column.cell_editor:
                updates["cell_editor"] = "agSelectCellEditor"
            if spec.dropdown_type == "static":
                updates["cell_editor_params"] = json.dumps(
                    {"values": [option.value for option in spec.static_values]}, default=str
                )
            custom["dropdownConfig"] = {
                "type": spec.dropdown_type,
                "staticValues": [option.model_dump() for option in spec.static_values],
                "masterTable": spec.master_table,
                "valueField": spec.value_field,
                "labelField": spec.label_field,
                "dependsOn": list(spec.depends_on),
            }
        if spec.link_config is not None and spec.link_config.enabled:
            custom["linkConfig"] = spec.link_config.model_dump(by_alias=True, exclude_none=True)
        if custom:
            updates["custom_properties"] = custom

        return column.model_copy(update=updates)

    # --- administration --------------------------------------------------------

    def upsert_metadata(
        self, db: Session, procedure_name: str, column_name: str, payload: ColumnMetadataUpsert
    ) -> ColumnMetadataSpec:
        values = payload.model_dump()
        try:
            spec = ColumnMetadataSpec(procedure_name=procedure_name, column_name=column_name, **values)
        except ValidationError as exc:
            raise GridValidationError(
                "Invalid column metadata",
                code="INVALID_COLUMN_METADATA",
                errors=[err.get("msg") for err in exc.errors()],
            ) from exc

        quote_identifier(column_name)
        if spec.dropdown_type == "dynamic":
            for identifier in (spec.master_table, spec.value_field, spec.label_field):
                quote_identifier(identifier)
        for dependency in spec.depends_on:
            quote_identifier(dependency)

        values["static_values"] = [option.model_dump() for option in spec.static_values]
        values["link_config"] = (
            spec.link_config.model_dump(by_alias=True, exclude_none=True) if spec.link_config else None
        )
        values["dropdown_type"] = spec.dropdown_type

        now = datetime.now(timezone.utc)
        row = (
            db.query(ColumnMetadata)
            .filter(ColumnMetadata.procedure_name == procedure_name, ColumnMetadata.column_name == column_name)
            .first()
        )
        if row is None:
            row = ColumnMetadata(
                procedure_name=procedure_name, column_name=column_name, created_at=now, updated_at=now, **values
            )
            db.add(row)
        else:
            for key, value in values.items():
                setattr(row, key, value)
            row.updated_at = now

        db.commit()
        db.refresh(row)
        logger.info("column_metadata.upsert procedure=%s column=%s", procedure_name, column_name)
        self.invalidate(procedure_name)
        return _to_spec(row) or spec
