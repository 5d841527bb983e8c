"""Composition root for the grid services.

Each service is built once per process (``lru_cache``) and shared by all
requests; routes receive them through ``Depends`` so tests can swap any of
them with ``app.dependency_overrides``.
"""

from functools import lru_cache

from fastapi import Depends

from dynamic_grid.config import settings
from dynamic_grid.models_sqlalchemy import SessionLocal, engine
from dynamic_grid.services.cache import MetadataCache
from dynamic_grid.services.column_metadata import ColumnMetadataResolver
from dynamic_grid.services.column_state import ColumnStateStore
from dynamic_grid.services.database_router import DatabaseRouter
from dynamic_grid.services.grid_executor import GridQueryExecutor
from dynamic_grid.services.procedure_backend import ProcedureBackend, SqlProcedureBackend
from dynamic_grid.services.procedure_registry import ProcedureRegistry
from dynamic_grid.services.row_mutations import RowMutationPipeline


# Shared by registry and resolver so one invalidation path covers both.
@lru_cache()
def get_metadata_cache() -> MetadataCache:
    return MetadataCache(ttl_seconds=settings.GRID_METADATA_CACHE_TTL_SECONDS)


@lru_cache()
def get_database_router() -> DatabaseRouter:
    return DatabaseRouter(
        default_url=settings.DATABASE_URL,
        databases=settings.GRID_DATABASES,
        timeout_seconds=settings.GRID_QUERY_TIMEOUT_SECONDS,
        default_engine=engine,
    )


@lru_cache()
def get_procedure_backend() -> ProcedureBackend:
    return SqlProcedureBackend()


@lru_cache()
def get_procedure_registry() -> ProcedureRegistry:
    return ProcedureRegistry(SessionLocal, get_metadata_cache())


@lru_cache()
def get_column_metadata_resolver() -> ColumnMetadataResolver:
    return ColumnMetadataResolver(SessionLocal, get_metadata_cache(), get_database_router())


@lru_cache()
def get_column_state_store() -> ColumnStateStore:
    return ColumnStateStore()


def get_grid_executor(
    registry: ProcedureRegistry = Depends(get_procedure_registry),
    router: DatabaseRouter = Depends(get_database_router),
    resolver: ColumnMetadataResolver = Depends(get_column_metadata_resolver),
    backend: ProcedureBackend = Depends(get_procedure_backend),
) -> GridQueryExecutor:
    return GridQueryExecutor(
        registry=registry,
        router=router,
        resolver=resolver,
        backend=backend,
        strict_filters=settings.GRID_STRICT_FILTERS,
        drill_down_max_depth=settings.drill_down_max_depth,
        timeout_seconds=settings.GRID_QUERY_TIMEOUT_SECONDS,
    )


def get_row_mutation_pipeline(
    registry: ProcedureRegistry = Depends(get_procedure_registry),
    router: DatabaseRouter = Depends(get_database_router),
    backend: ProcedureBackend = Depends(get_procedure_backend),
) -> RowMutationPipeline:
    return RowMutationPipeline(
        registry=registry,
        router=router,
        backend=backend,
        timeout_seconds=settings.GRID_QUERY_TIMEOUT_SECONDS,
    )
