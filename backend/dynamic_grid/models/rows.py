from typing import Any, Dict, Optional, Union

from pydantic import AliasChoices, Field

from dynamic_grid.models.grid import CamelModel


RowId = Union[int, str]


class RowCreateRequest(CamelModel):
    procedure_name: str = Field(..., min_length=1)
    field_values: Dict[str, Any] = Field(default_factory=dict)


class RowCreateResponse(CamelModel):
    success: bool
    message: Optional[str] = None
    created_row: Optional[Dict[str, Any]] = None
    error_code: Optional[str] = None


class RowUpdateRequest(CamelModel):
    procedure_name: str = Field(..., min_length=1)
    row_id: RowId
    changes: Dict[str, Any] = Field(default_factory=dict)


class RowUpdateResponse(CamelModel):
    success: bool
    message: Optional[str] = None
    updated_row: Optional[Dict[str, Any]] = None
    error_code: Optional[str] = None


class RowDeleteRequest(CamelModel):
    procedure_name: str = Field(..., min_length=1)
    row_id: RowId


class RowDeleteResponse(CamelModel):
    success: bool
    message: Optional[str] = None
    error_code: Optional[str] = None
    rows_affected: Optional[int] = None


class DropdownValuesRequest(CamelModel):
    procedure_name: str = Field(..., min_length=1)
    column_name: Optional[str] = None
    master_table: Optional[str] = None
    value_field: Optional[str] = None
    label_field: Optional[str] = None
    # Ignored: the registered condition for the column is always used.
    filter_condition: Optional[str] = None
    row_context: Dict[str, Any] = Field(default_factory=dict)


class SaveColumnStateRequest(CamelModel):
    procedure_name: str = Field(..., min_length=1)
    # Opaque client layout document, persisted and returned verbatim.
    column_state: str = Field(validation_alias=AliasChoices("columnState", "columnStateBlob", "column_state"))
