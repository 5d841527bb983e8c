from __future__ import annotations

from typing import List, Optional

import logging

from fastapi import APIRouter, Depends, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from dynamic_grid.config import settings
from dynamic_grid.dependencies import (
    get_column_metadata_resolver,
    get_column_state_store,
    get_grid_executor,
    get_procedure_registry,
    get_row_mutation_pipeline,
)
from dynamic_grid.models.grid import (
    ColumnStateResponse,
    DropdownOption,
    GridDataRequest,
    GridDataResponse,
    StoredProcedureInfo,
)
from dynamic_grid.models.rows import (
    DropdownValuesRequest,
    RowCreateRequest,
    RowCreateResponse,
    RowDeleteRequest,
    RowDeleteResponse,
    RowUpdateRequest,
    RowUpdateResponse,
    SaveColumnStateRequest,
)
from dynamic_grid.models.user import GridUser
from dynamic_grid.models_sqlalchemy import get_db
from dynamic_grid.services.auth import get_current_user, get_optional_user
from dynamic_grid.services.column_metadata import ColumnMetadataResolver
from dynamic_grid.services.column_state import ColumnStateStore
from dynamic_grid.services.exceptions import ConflictError, ForbiddenError, GridError
from dynamic_grid.services.grid_executor import GridQueryExecutor
from dynamic_grid.services.procedure_registry import ProcedureRegistry
from dynamic_grid.services.row_mutations import RowMutationPipeline, coerce_row_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/dynamic-grid", tags=["dynamic_grid"])


def _roles(user: Optional[GridUser]) -> List[str]:
    return list(user.roles) if user else []


def _mutation_error(exc: GridError) -> JSONResponse:
    """Mutation routes answer in their own envelope, with the usual status codes."""
    body = {"success": False, "message": exc.message, "errorCode": exc.code}
    if isinstance(exc, ConflictError):
        body["rowsAffected"] = exc.rows_affected
    return JSONResponse(status_code=exc.status_code, content=body)


# The handlers below are plain ``def`` on purpose: they block on database I/O
# and FastAPI runs them in its threadpool.


@router.post("/execute", response_model=GridDataResponse)
def execute_grid(
    payload: GridDataRequest,
    current_user: Optional[GridUser] = Depends(get_optional_user),
    executor: GridQueryExecutor = Depends(get_grid_executor),
) -> GridDataResponse:
    return executor.execute(payload, _roles(current_user))


@router.post("/create-row", response_model=RowCreateResponse)
def create_row(
    payload: RowCreateRequest,
    current_user: GridUser = Depends(get_current_user),
    pipeline: RowMutationPipeline = Depends(get_row_mutation_pipeline),
):
    try:
        return pipeline.create(payload, current_user.roles, coerce_row_id(current_user.id))
    except GridError as exc:
        logger.warning("dynamic_grid.create_row failed procedure=%s code=%s", payload.procedure_name, exc.code)
        return _mutation_error(exc)


@router.post("/update-row", response_model=RowUpdateResponse)
def update_row(
    payload: RowUpdateRequest,
    current_user: GridUser = Depends(get_current_user),
    pipeline: RowMutationPipeline = Depends(get_row_mutation_pipeline),
):
    try:
        return pipeline.update(payload, current_user.roles, coerce_row_id(current_user.id))
    except GridError as exc:
        logger.warning(
            "dynamic_grid.update_row failed procedure=%s row_id=%s code=%s",
            payload.procedure_name,
            payload.row_id,
            exc.code,
        )
        return _mutation_error(exc)


@router.post("/delete-row", response_model=RowDeleteResponse)
def delete_row(
    payload: RowDeleteRequest,
    current_user: GridUser = Depends(get_current_user),
    pipeline: RowMutationPipeline = Depends(get_row_mutation_pipeline),
):
    try:
        return pipeline.delete(payload, current_user.roles, coerce_row_id(current_user.id))
    except GridError as exc:
        logger.warning(
            "dynamic_grid.delete_row failed procedure=%s row_id=%s code=%s",
            payload.procedure_name,
            payload.row_id,
            exc.code,
        )
        return _mutation_error(exc)


@router.get("/available-procedures", response_model=List[StoredProcedureInfo])
def available_procedures(
    current_user: Optional[GridUser] = Depends(get_optional_user),
    registry: ProcedureRegistry = Depends(get_procedure_registry),
) -> List[StoredProcedureInfo]:
    return [StoredProcedureInfo.from_definition(d) for d in registry.available_for(_roles(current_user))]


@router.get("/column-state/{procedure_name}", response_model=ColumnStateResponse)
def get_column_state(
    procedure_name: str,
    current_user: GridUser = Depends(get_current_user),
    store: ColumnStateStore = Depends(get_column_state_store),
    db: Session = Depends(get_db),
) -> ColumnStateResponse:
    state = store.load(db, current_user.id, procedure_name)
    if state is None:
        # Nothing saved yet -> client uses its default layout
        return ColumnStateResponse(procedure_name=procedure_name, column_state=None)
    return ColumnStateResponse(
        procedure_name=state.procedure_name, column_state=state.column_state, updated_at=state.updated_at
    )


@router.post("/column-state", response_model=ColumnStateResponse)
def save_column_state(
    payload: SaveColumnStateRequest,
    current_user: GridUser = Depends(get_current_user),
    store: ColumnStateStore = Depends(get_column_state_store),
    db: Session = Depends(get_db),
) -> ColumnStateResponse:
    state = store.save(db, current_user.id, payload.procedure_name, payload.column_state)
    return ColumnStateResponse(
        procedure_name=state.procedure_name, column_state=state.column_state, updated_at=state.updated_at
    )


@router.delete("/column-state/{procedure_name}", status_code=status.HTTP_204_NO_CONTENT)
def reset_column_state(
    procedure_name: str,
    current_user: GridUser = Depends(get_current_user),
    store: ColumnStateStore = Depends(get_column_state_store),
    db: Session = Depends(get_db),
) -> Response:
    store.delete(db, current_user.id, procedure_name)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/dropdown-values", response_model=List[DropdownOption])
def dropdown_values(
    payload: DropdownValuesRequest,
    current_user: Optional[GridUser] = Depends(get_optional_user),
    registry: ProcedureRegistry = Depends(get_procedure_registry),
    resolver: ColumnMetadataResolver = Depends(get_column_metadata_resolver),
) -> List[DropdownOption]:
    definition = registry.resolve(payload.procedure_name)
    if not registry.is_allowed(definition, _roles(current_user)):
        raise ForbiddenError(f"Access denied to procedure: {definition.procedure_name}")

    spec = resolver.find_dropdown(
        definition.procedure_name,
        column_name=payload.column_name,
        master_table=payload.master_table,
        value_field=payload.value_field,
        label_field=payload.label_field,
    )
    return resolver.dropdown_values(
        spec, payload.row_context, definition.database_name, timeout=settings.GRID_QUERY_TIMEOUT_SECONDS
    )
