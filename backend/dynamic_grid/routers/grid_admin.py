from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from dynamic_grid.config import settings
from dynamic_grid.dependencies import get_column_metadata_resolver, get_procedure_registry
from dynamic_grid.models.grid import (
    ColumnMetadataSpec,
    ColumnMetadataUpsert,
    DrillDownSettings,
    ProcedureDefinitionUpsert,
    StoredProcedureInfo,
)
from dynamic_grid.models.user import GridUser
from dynamic_grid.models_sqlalchemy import get_db
from dynamic_grid.services.auth import grid_admin_required
from dynamic_grid.services.column_metadata import ColumnMetadataResolver
from dynamic_grid.services.procedure_registry import ProcedureRegistry, validate_procedure_name

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/dynamic-grid/admin", tags=["dynamic_grid_admin"])
config_router = APIRouter(prefix="/api/configuration", tags=["configuration"])


@router.put("/procedures/{procedure_name}", response_model=StoredProcedureInfo)
def upsert_procedure(
    procedure_name: str,
    payload: ProcedureDefinitionUpsert,
    current_user: GridUser = Depends(grid_admin_required),
    registry: ProcedureRegistry = Depends(get_procedure_registry),
    db: Session = Depends(get_db),
) -> StoredProcedureInfo:
    definition = registry.upsert_definition(db, procedure_name, payload, updated_by=current_user.id)
    return StoredProcedureInfo.from_definition(definition)


@router.put("/column-metadata/{procedure_name}/{column_name}", response_model=ColumnMetadataSpec)
def upsert_column_metadata(
    procedure_name: str,
    column_name: str,
    payload: ColumnMetadataUpsert,
    current_user: GridUser = Depends(grid_admin_required),
    resolver: ColumnMetadataResolver = Depends(get_column_metadata_resolver),
    db: Session = Depends(get_db),
) -> ColumnMetadataSpec:
    procedure_name = validate_procedure_name(procedure_name)
    spec = resolver.upsert_metadata(db, procedure_name, column_name, payload)
    logger.info(
        "grid_admin.column_metadata user_id=%s procedure=%s column=%s", current_user.id, procedure_name, column_name
    )
    return spec


@config_router.get("/drill-down-settings", response_model=DrillDownSettings)
def drill_down_settings() -> DrillDownSettings:
    return DrillDownSettings(
        enable_unlimited_drill_down=settings.GRID_DRILL_DOWN_UNLIMITED,
        default_max_depth=settings.GRID_DRILL_DOWN_MAX_DEPTH,
    )
