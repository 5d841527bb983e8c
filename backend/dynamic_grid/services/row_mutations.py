from __future__ import annotations

import re
from typing import Any, Iterable, Optional, Tuple

from dynamic_grid.models.grid import ProcedureDefinition
from dynamic_grid.models.rows import (
    RowCreateRequest,
    RowCreateResponse,
    RowDeleteRequest,
    RowDeleteResponse,
    RowUpdateRequest,
    RowUpdateResponse,
)
from dynamic_grid.services.database_router import DatabaseRouter
from dynamic_grid.services.exceptions import (
    ConflictError,
    DatabaseError,
    ForbiddenError,
    GridValidationError,
    NotFoundError,
)
from dynamic_grid.services.procedure_backend import CREATE, DELETE, UPDATE, MutationCall, MutationOutcome, ProcedureBackend
from dynamic_grid.services.procedure_registry import ProcedureRegistry
from dynamic_grid.utils.logger import logger

_GRID_PREFIX_RE = re.compile(r"^(?P<schema>[A-Za-z_][A-Za-z0-9_]*\.)?sp_Grid_(?P<rest>.+)$", re.IGNORECASE)
_INT_RE = re.compile(r"^-?\d+$")
_MISSING_ROW_CODES = {"NOT_FOUND", "ROW_NOT_FOUND", "CONFLICT"}

_NOT_SUPPORTED = {
    CREATE: ("CREATE_NOT_SUPPORTED", "Create not supported for this grid"),
    UPDATE: ("UPDATE_NOT_SUPPORTED", "Update not supported for this grid"),
    DELETE: ("DELETE_NOT_SUPPORTED", "Delete not supported for this grid"),
}


def _split(grid_procedure: str) -> Tuple[str, str]:
    match = _GRID_PREFIX_RE.match(grid_procedure)
    if not match:
        raise NotFoundError(
            f"Cannot derive companion procedures for {grid_procedure}", code="MUTATION_NOT_SUPPORTED"
        )
    return match.group("schema") or "", match.group("rest")


def singularize(word: str) -> str:
    lowered = word.lower()
    if lowered.endswith("ies") and len(word) > 3:
        return word[:-3] + "y"
    if lowered.endswith(("ses", "xes", "zes", "ches", "shes")):
        return word[:-2]
    if lowered.endswith("s") and not lowered.endswith("ss"):
        return word[:-1]
    return word


def derive_entity_name(grid_procedure: str) -> str:
    """sp_Grid_Example_Employees -> Employee, sp_Grid_Buses -> Bus."""
    _, rest = _split(grid_procedure)
    return singularize(rest.split("_")[-1])


def derive_update_procedure_name(grid_procedure: str) -> str:
    schema, rest = _split(grid_procedure)
    return f"{schema}sp_Grid_Update_{rest}"


def derive_delete_procedure_name(grid_procedure: str) -> str:
    schema, _ = _split(grid_procedure)
    return f"{schema}sp_Grid_Delete_{derive_entity_name(grid_procedure)}"


def derive_create_procedure_name(grid_procedure: str) -> str:
    schema, _ = _split(grid_procedure)
    return f"{schema}sp_Grid_Insert_{derive_entity_name(grid_procedure)}"


def coerce_row_id(value: Any) -> Any:
    """Integer-like ids bind as integers; composite ("101_1") and other ids as text."""
    if isinstance(value, bool) or value is None:
        raise GridValidationError("rowId is required", code="INVALID_ROW_ID")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    text_value = str(value).strip()
    if not text_value:
        raise GridValidationError("rowId is required", code="INVALID_ROW_ID")
    if _INT_RE.match(text_value):
        return int(text_value)
    return text_value


class RowMutationPipeline:
    def __init__(
        self,
        registry: ProcedureRegistry,
        router: DatabaseRouter,
        backend: ProcedureBackend,
        timeout_seconds: Optional[float] = None,
    ):
        self.registry = registry
        self.router = router
        self.backend = backend
        self.timeout_seconds = timeout_seconds

    def _companion(self, kind: str, procedure_name: str, roles) -> Tuple[ProcedureDefinition, ProcedureDefinition]:
        definition = self.registry.resolve(procedure_name)
        if not self.registry.is_allowed(definition, roles):
            raise ForbiddenError(f"Access denied to {definition.procedure_name}")

        explicit = {
            CREATE: definition.create_procedure,
            UPDATE: definition.update_procedure,
            DELETE: definition.delete_procedure,
        }[kind]
        derive = {
            CREATE: derive_create_procedure_name,
            UPDATE: derive_update_procedure_name,
            DELETE: derive_delete_procedure_name,
        }[kind]
        code, message = _NOT_SUPPORTED[kind]
        try:
            companion_name = explicit or derive(definition.procedure_name)
        except NotFoundError as exc:
            raise NotFoundError(message, code=code) from exc

        companion = self.registry.lookup(companion_name)
        if companion is None or not companion.is_active:
            logger.warning(
                "row_mutation.%s not_supported procedure=%s companion=%s", kind, procedure_name, companion_name
            )
            raise NotFoundError(message, code=code, companion=companion_name)
        if not self.registry.is_allowed(companion, roles):
            raise ForbiddenError(f"Access denied to {companion.procedure_name}")
        return definition, companion

    def _invoke(self, definition: ProcedureDefinition, companion: ProcedureDefinition, call: MutationCall) -> MutationOutcome:
        """Run the companion and check its outcome inside one transaction.

        A failed outcome raises before the block exits, so anything the
        companion wrote before reporting the failure is rolled back.
        """
        database = companion.database_name or definition.database_name
        with self.router.connection_for(database, timeout=self.timeout_seconds, transactional=True) as conn:
            outcome = self.backend.mutate(conn, call)
            logger.info(
                "row_mutation.%s procedure=%s row_id=%s success=%s code=%s rows_affected=%s",
                call.kind,
                call.procedure_name,
                call.row_id,
                outcome.success,
                outcome.error_code,
                outcome.rows_affected,
            )
            self._raise_for(outcome, call.kind)
        return outcome

    @staticmethod
    def _raise_for(outcome: MutationOutcome, kind: str) -> None:
        code = (outcome.error_code or "").upper()
        if outcome.success:
            if kind != CREATE and outcome.rows_affected == 0:
                raise ConflictError("Row no longer exists or was changed", code="CONFLICT", rows_affected=0)
            return
        message = outcome.message or f"{kind.capitalize()} failed"
        if code.startswith("INVALID"):
            raise GridValidationError(message, code=code)
        if kind != CREATE and (code in _MISSING_ROW_CODES or outcome.rows_affected == 0):
            raise ConflictError(message, code=code or "CONFLICT", rows_affected=0)
        raise DatabaseError(message, code=code or "PROCEDURE_FAILED")

    def create(self, request: RowCreateRequest, roles: Iterable[str], user_id: Any) -> RowCreateResponse:
        if not request.field_values:
            raise GridValidationError("fieldValues must not be empty", code="INVALID_FIELD_VALUES")
        definition, companion = self._companion(CREATE, request.procedure_name, list(roles or ()))
        call = MutationCall(companion.procedure_name, CREATE, values=request.field_values, user_id=user_id)
        outcome = self._invoke(definition, companion, call)
        return RowCreateResponse(success=True, message=outcome.message, created_row=outcome.row)

    def update(self, request: RowUpdateRequest, roles: Iterable[str], user_id: Any) -> RowUpdateResponse:
        if not request.changes:
            raise GridValidationError("changes must not be empty", code="INVALID_CHANGES")
        row_id = coerce_row_id(request.row_id)
        definition, companion = self._companion(UPDATE, request.procedure_name, list(roles or ()))
        call = MutationCall(companion.procedure_name, UPDATE, row_id=row_id, values=request.changes, user_id=user_id)
        outcome = self._invoke(definition, companion, call)
        return RowUpdateResponse(success=True, message=outcome.message, updated_row=outcome.row)

    def delete(self, request: RowDeleteRequest, roles: Iterable[str], user_id: Any) -> RowDeleteResponse:
        row_id = coerce_row_id(request.row_id)
        definition, companion = self._companion(DELETE, request.procedure_name, list(roles or ()))
        call = MutationCall(companion.procedure_name, DELETE, row_id=row_id, user_id=user_id)
        outcome = self._invoke(definition, companion, call)
        rows_affected = outcome.rows_affected if outcome.rows_affected is not None else 1
        return RowDeleteResponse(success=True, message=outcome.message, rows_affected=rows_affected)
