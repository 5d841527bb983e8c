from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base for every API payload: snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProcedureDefinition(CamelModel):
    """A registered grid procedure, validated on construction."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: Optional[int] = None
    procedure_name: str
    display_name: str
    description: Optional[str] = None
    category: Optional[str] = None
    is_active: bool = True
    requires_auth: bool = True
    allowed_roles: FrozenSet[str] = frozenset()
    database_name: Optional[str] = None
    default_page_size: int = Field(default=15, ge=1)
    max_page_size: int = Field(default=1000, ge=1)
    cache_duration_seconds: Optional[int] = None
    create_procedure: Optional[str] = None
    update_procedure: Optional[str] = None
    delete_procedure: Optional[str] = None

    @field_validator("allowed_roles", mode="before")
    @classmethod
    def _roles_from_json(cls, value: Any) -> Any:
        # Stored as a JSON array; tolerate NULL.
        if value is None:
            return frozenset()
        if isinstance(value, str):
            return frozenset(part.strip() for part in value.split(",") if part.strip())
        return value

    @model_validator(mode="after")
    def _check_page_sizes(self) -> "ProcedureDefinition":
        if self.default_page_size > self.max_page_size:
            raise ValueError(
                f"default_page_size ({self.default_page_size}) exceeds max_page_size ({self.max_page_size})"
            )
        return self


class StoredProcedureInfo(CamelModel):
    id: Optional[int] = None
    procedure_name: str
    display_name: str
    description: Optional[str] = None
    category: Optional[str] = None
    is_active: bool
    requires_auth: bool
    allowed_roles: List[str] = Field(default_factory=list)
    default_page_size: int
    max_page_size: int

    @classmethod
    def from_definition(cls, definition: ProcedureDefinition) -> "StoredProcedureInfo":
        return cls(
            id=definition.id,
            procedure_name=definition.procedure_name,
            display_name=definition.display_name,
            description=definition.description,
            category=definition.category,
            is_active=definition.is_active,
            requires_auth=definition.requires_auth,
            allowed_roles=sorted(definition.allowed_roles),
            default_page_size=definition.default_page_size,
            max_page_size=definition.max_page_size,
        )


class ProcedureDefinitionUpsert(CamelModel):
    """Admin payload for registering or updating a procedure."""

    display_name: str
    description: Optional[str] = None
    category: Optional[str] = None
    is_active: bool = True
    requires_auth: bool = True
    allowed_roles: List[str] = Field(default_factory=list)
    database_name: Optional[str] = None
    default_page_size: int = Field(default=15, ge=1)
    max_page_size: int = Field(default=1000, ge=1)
    cache_duration_seconds: Optional[int] = Field(default=None, ge=0)
    create_procedure: Optional[str] = None
    update_procedure: Optional[str] = None
    delete_procedure: Optional[str] = None

    @model_validator(mode="after")
    def _check_page_sizes(self) -> "ProcedureDefinitionUpsert":
        if self.default_page_size > self.max_page_size:
            raise ValueError("defaultPageSize must not exceed maxPageSize")
        return self


class DropdownOption(BaseModel):
    value: Any = None
    label: Any = None


class LinkParam(CamelModel):
    name: str
    fields: List[str] = Field(default_factory=list)
    separator: Optional[str] = None


class DrillDownFilterParam(CamelModel):
    target_column: str
    source_fields: List[str] = Field(default_factory=list)
    separator: Optional[str] = None


class DrillDownLink(CamelModel):
    enabled: bool = False
    target_procedure: Optional[str] = None
    filter_params: List[DrillDownFilterParam] = Field(default_factory=list)
    breadcrumb_label: Optional[str] = None


class LinkConfig(CamelModel):
    enabled: bool = False
    route_path: Optional[str] = None
    open_in_new_tab: bool = False
    params: List[LinkParam] = Field(default_factory=list)
    drill_down: Optional[DrillDownLink] = None


class ColumnMetadataSpec(CamelModel):
    """Per-column editor/dropdown/link configuration for one procedure."""

    id: Optional[int] = None
    procedure_name: str
    column_name: str
    header_name: Optional[str] = None
    data_type: Optional[str] = None
    width: Optional[int] = None
    editable: bool = False
    pinned: Optional[bool] = None
    column_group: Optional[str] = None
    column_group_show: Optional[str] = None
    display_order: Optional[int] = None
    cell_editor: Optional[str] = None
    dropdown_type: Optional[str] = None
    static_values: List[DropdownOption] = Field(default_factory=list)
    master_table: Optional[str] = None
    value_field: Optional[str] = None
    label_field: Optional[str] = None
    filter_condition: Optional[str] = None
    depends_on: List[str] = Field(default_factory=list)
    link_config: Optional[LinkConfig] = None
    is_active: bool = True

    @field_validator("static_values", "depends_on", mode="before")
    @classmethod
    def _none_to_list(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("dropdown_type", mode="before")
    @classmethod
    def _normalize_dropdown_type(cls, value: Any) -> Any:
        if value is None:
            return None
        value = str(value).strip().lower()
        if value in ("", "none"):
            return None
        if value not in ("static", "dynamic"):
            raise ValueError("dropdownType must be 'static', 'dynamic' or null")
        return value

    @field_validator("column_group_show")
    @classmethod
    def _check_group_show(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in ("open", "closed"):
            raise ValueError("columnGroupShow must be 'open', 'closed' or null")
        return value

    @model_validator(mode="after")
    def _check_dynamic_source(self) -> "ColumnMetadataSpec":
        if self.dropdown_type == "dynamic" and not (self.master_table and self.value_field and self.label_field):
            raise ValueError("dynamic dropdown requires masterTable, valueField and labelField")
        return self

    @property
    def is_dropdown(self) -> bool:
        return self.dropdown_type is not None


class ColumnMetadataUpsert(CamelModel):
    header_name: Optional[str] = None
    data_type: Optional[str] = None
    width: Optional[int] = None
    editable: bool = False
    pinned: Optional[bool] = None
    column_group: Optional[str] = None
    column_group_show: Optional[str] = None
    display_order: Optional[int] = None
    cell_editor: Optional[str] = None
    dropdown_type: Optional[str] = None
    static_values: List[DropdownOption] = Field(default_factory=list)
    master_table: Optional[str] = None
    value_field: Optional[str] = None
    label_field: Optional[str] = None
    filter_condition: Optional[str] = None
    depends_on: List[str] = Field(default_factory=list)
    link_config: Optional[LinkConfig] = None
    is_active: bool = True


class ColumnDefinition(CamelModel):
    field: str
    header_name: str
    type: str = "string"
    width: Optional[int] = None
    sortable: bool = True
    filter: bool = True
    editable: bool = False
    cell_editor: Optional[str] = None
    # JSON text, e.g. '{"values": ["A", "B"]}'
    cell_editor_params: Optional[str] = None
    column_group: Optional[str] = None
    column_group_show: Optional[str] = None
    pinned: Optional[bool] = None
    custom_properties: Optional[Dict[str, Any]] = None


class GridDataRequest(CamelModel):
    procedure_name: str = Field(..., min_length=1)

    # Page mode
    page_number: Optional[int] = None
    page_size: Optional[int] = None

    # Row-range mode (infinite scrolling): 0-based, end exclusive
    start_row: Optional[int] = None
    end_row: Optional[int] = None

    sort_column: Optional[str] = None
    sort_direction: Optional[str] = None
    filter_json: Optional[Union[str, Dict[str, Any]]] = None
    drill_down_json: Optional[Union[str, List[Any], Dict[str, Any]]] = None
    search_term: Optional[str] = None
    # Optional per-call timeout, capped by GRID_QUERY_TIMEOUT_SECONDS.
    timeout_seconds: Optional[float] = Field(default=None, gt=0)

    @property
    def is_row_range(self) -> bool:
        return self.start_row is not None or self.end_row is not None


class GridDataResponse(CamelModel):
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    columns: List[ColumnDefinition] = Field(default_factory=list)
    total_count: int = 0
    page_number: int = 1
    page_size: int = 0
    total_pages: int = 0
    last_row: Optional[int] = None
    metadata: Optional[Dict[str, Any]] = None


class DrillDownSettings(CamelModel):
    enable_unlimited_drill_down: bool = False
    default_max_depth: int = 5


class ColumnStateResponse(CamelModel):
    procedure_name: str
    column_state: Optional[str] = None
    updated_at: Optional[datetime] = None
