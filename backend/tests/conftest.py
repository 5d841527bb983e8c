import os

# The central engine is built at import time; point it at in-memory SQLite first.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.compiler import compiles

from dynamic_grid.config import settings
from dynamic_grid.models_sqlalchemy import Base, SessionLocal, engine
from dynamic_grid.models_sqlalchemy.models import ColumnMetadata, StoredProcedureRegistry
from dynamic_grid.services.cache import MetadataCache
from dynamic_grid.services.column_metadata import ColumnMetadataResolver
from dynamic_grid.services.column_state import ColumnStateStore
from dynamic_grid.services.database_router import DatabaseRouter
from dynamic_grid.services.grid_executor import GridQueryExecutor
from dynamic_grid.services.procedure_backend import InMemoryProcedureBackend
from dynamic_grid.services.procedure_registry import ProcedureRegistry
from dynamic_grid.services.row_mutations import RowMutationPipeline


@compiles(JSONB, 'sqlite')
def compile_jsonb(element, compiler, **kw):
    return "JSON"


@pytest.fixture(autouse=True)
def setup_database():
    """Create the central tables before each test, drop after."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_session():
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def cache():
    return MetadataCache()


@pytest.fixture
def registry(cache):
    return ProcedureRegistry(SessionLocal, cache)


@pytest.fixture
def router():
    r = DatabaseRouter("sqlite://", {"Planning": "sqlite://"}, timeout_seconds=5)
    yield r
    r.dispose()


@pytest.fixture
def resolver(cache, router):
    return ColumnMetadataResolver(SessionLocal, cache, router)


@pytest.fixture
def backend():
    return InMemoryProcedureBackend()


@pytest.fixture
def executor(registry, router, resolver, backend):
    return GridQueryExecutor(registry, router, resolver, backend, strict_filters=False, drill_down_max_depth=5)


@pytest.fixture
def pipeline(registry, router, backend):
    return RowMutationPipeline(registry, router, backend)


@pytest.fixture
def column_state_store():
    return ColumnStateStore()


@pytest.fixture
def add_procedure(db_session):
    """Insert a registry row; returns the ORM object."""

    def _add(name, **overrides):
        values = dict(
            procedure_name=name,
            display_name=overrides.pop("display_name", name),
            is_active=True,
            requires_auth=True,
            allowed_roles=["Admin", "User"],
            default_page_size=15,
            max_page_size=1000,
        )
        values.update(overrides)
        row = StoredProcedureRegistry(**values)
        db_session.add(row)
        db_session.commit()
        db_session.refresh(row)
        return row

    return _add


@pytest.fixture
def add_column(db_session):
    def _add(procedure_name, column_name, **overrides):
        values = dict(procedure_name=procedure_name, column_name=column_name, is_active=True)
        values.update(overrides)
        row = ColumnMetadata(**values)
        db_session.add(row)
        db_session.commit()
        db_session.refresh(row)
        return row

    return _add


def make_token(sub="42", roles=("User",), **claims):
    payload = {"sub": sub, "roles": list(roles)}
    payload.update(claims)
    return jwt.encode(payload, settings.secret_key, algorithm=settings.ALGORITHM)


@pytest.fixture
def auth_headers():
    def _headers(sub="42", roles=("User",)):
        return {"Authorization": f"Bearer {make_token(sub, roles)}"}

    return _headers


@pytest.fixture
def client(registry, router, resolver, backend):
    from dynamic_grid import dependencies
    from dynamic_grid.main import app

    app.dependency_overrides[dependencies.get_procedure_registry] = lambda: registry
    app.dependency_overrides[dependencies.get_database_router] = lambda: router
    app.dependency_overrides[dependencies.get_column_metadata_resolver] = lambda: resolver
    app.dependency_overrides[dependencies.get_procedure_backend] = lambda: backend
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
