from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from dynamic_grid.models.grid import ProcedureDefinition, ProcedureDefinitionUpsert
from dynamic_grid.models_sqlalchemy.models import StoredProcedureRegistry
from dynamic_grid.services.cache import MetadataCache
from dynamic_grid.services.exceptions import DatabaseError, GridValidationError, NotFoundError
from dynamic_grid.utils.logger import logger

# Optionally schema-qualified: sp_Grid_Buses, dbo.sp_Grid_Buses
PROCEDURE_NAME_RE = re.compile(r"^(?:[A-Za-z_][A-Za-z0-9_]*\.)?[A-Za-z_][A-Za-z0-9_]*$")

_ALL_KEY = ("procedure", "*")


def validate_procedure_name(name: Optional[str]) -> str:
    name = (name or "").strip()
    if not PROCEDURE_NAME_RE.match(name):
        raise GridValidationError(f"Invalid procedure name format: {name!r}", code="INVALID_PROCEDURE_NAME")
    return name


def _to_definition(row: StoredProcedureRegistry) -> ProcedureDefinition:
    try:
        return ProcedureDefinition(
            id=row.id,
            procedure_name=row.procedure_name,
            display_name=row.display_name,
            description=row.description,
            category=row.category,
            is_active=bool(row.is_active),
            requires_auth=bool(row.requires_auth),
            allowed_roles=row.allowed_roles or [],
            database_name=row.database_name,
            default_page_size=row.default_page_size,
            max_page_size=row.max_page_size,
            cache_duration_seconds=row.cache_duration_seconds,
            create_procedure=row.create_procedure,
            update_procedure=row.update_procedure,
            delete_procedure=row.delete_procedure,
        )
    except ValidationError as exc:
        raise DatabaseError(
            f"Registry entry for {row.procedure_name} is invalid", code="INVALID_REGISTRY_ENTRY"
        ) from exc


class ProcedureRegistry:
    """Authoritative list of grid procedures, read through the metadata cache."""

    def __init__(self, session_factory: Callable[[], Session], cache: MetadataCache):
        self._session_factory = session_factory
        self._cache = cache

    @staticmethod
    def _key(name: str):
        return ("procedure", name.lower())

    def _load_all(self) -> List[ProcedureDefinition]:
        db = self._session_factory()
        try:
            rows = db.query(StoredProcedureRegistry).order_by(StoredProcedureRegistry.procedure_name).all()
            return [_to_definition(r) for r in rows]
        finally:
            db.close()

    def _load_one(self, name: str) -> Optional[ProcedureDefinition]:
        db = self._session_factory()
        try:
            row = (
                db.query(StoredProcedureRegistry)
                .filter(StoredProcedureRegistry.procedure_name == name)
                .first()
            )
            if row is None:
                # Registry names are matched case-insensitively, like PostgreSQL folds them.
                for candidate in db.query(StoredProcedureRegistry).all():
                    if candidate.procedure_name.lower() == name.lower():
                        row = candidate
                        break
            return _to_definition(row) if row is not None else None
        finally:
            db.close()

    def lookup(self, name: str) -> Optional[ProcedureDefinition]:
        """Definition for ``name`` whether active or not; None when unregistered."""
        name = validate_procedure_name(name)
        # Misses are not cached: names come from clients and would pile up.
        return self._cache.get_or_load(self._key(name), lambda: self._load_one(name), cache_none=False)

    def resolve(self, name: str) -> ProcedureDefinition:
        definition = self.lookup(name)
        if definition is None or not definition.is_active:
            raise NotFoundError(f"Procedure not found or inactive: {name}", code="PROCEDURE_NOT_FOUND")
        return definition

    @staticmethod
    def is_allowed(definition: ProcedureDefinition, caller_roles: Iterable[str]) -> bool:
        if not definition.requires_auth:
            return True
        allowed = {r.lower() for r in definition.allowed_roles}
        return any(str(role).lower() in allowed for role in caller_roles or ())

    @staticmethod
    def clamp_page_size(definition: ProcedureDefinition, requested: Optional[int]) -> int:
        if requested is None or requested <= 0:
            return definition.default_page_size
        return min(requested, definition.max_page_size)

    def all_definitions(self) -> List[ProcedureDefinition]:
        return self._cache.get_or_load(_ALL_KEY, self._load_all)

    def available_for(self, caller_roles: Iterable[str]) -> List[ProcedureDefinition]:
        roles = list(caller_roles or ())
        return [d for d in self.all_definitions() if d.is_active and self.is_allowed(d, roles)]

    def invalidate(self, name: Optional[str] = None) -> None:
        if name is None:
            self._cache.invalidate()
            return
        self._cache.invalidate(self._key(name))
        self._cache.invalidate(_ALL_KEY)

    def upsert_definition(
        self, db: Session, name: str, payload: ProcedureDefinitionUpsert, updated_by: Optional[str] = None
    ) -> ProcedureDefinition:
        name = validate_procedure_name(name)
        for companion in (payload.create_procedure, payload.update_procedure, payload.delete_procedure):
            if companion:
                validate_procedure_name(companion)

        now = datetime.now(timezone.utc)
        row = db.query(StoredProcedureRegistry).filter(StoredProcedureRegistry.procedure_name == name).first()
        values = payload.model_dump()
        if row is None:
            row = StoredProcedureRegistry(procedure_name=name, created_at=now, created_by=updated_by, **values)
            db.add(row)
            logger.info("procedure_registry.create name=%s by=%s", name, updated_by)
        else:
            for key, value in values.items():
                setattr(row, key, value)
            row.updated_at = now
            row.updated_by = updated_by
            logger.info("procedure_registry.update name=%s by=%s", name, updated_by)

        db.commit()
        db.refresh(row)
        self.invalidate(name)
        return _to_definition(row)
