import pytest
from sqlalchemy import text

from dynamic_grid.models.rows import RowCreateRequest, RowDeleteRequest, RowUpdateRequest
from dynamic_grid.services.exceptions import ConflictError, ForbiddenError, GridValidationError, NotFoundError
from dynamic_grid.services.procedure_backend import MutationOutcome
from dynamic_grid.services.row_mutations import (
    RowMutationPipeline,
    coerce_row_id,
    derive_create_procedure_name,
    derive_delete_procedure_name,
    derive_entity_name,
    derive_update_procedure_name,
    singularize,
)

PROC = "sp_Grid_Buses"


@pytest.fixture
def editable_buses(add_procedure, backend):
    add_procedure(PROC)
    add_procedure("sp_Grid_Update_Buses")
    add_procedure("sp_Grid_Delete_Bus")
    add_procedure("sp_Grid_Insert_Bus")
    backend.register(
        PROC,
        [{"Id": 1, "Name": "Alpha"}, {"Id": 2, "Name": "Bravo"}],
        create="sp_Grid_Insert_Bus",
        update="sp_Grid_Update_Buses",
        delete="sp_Grid_Delete_Bus",
    )


@pytest.mark.parametrize(
    "word, expected",
    [
        ("Employees", "Employee"),
        ("Buses", "Bus"),
        ("Categories", "Category"),
        ("Boxes", "Box"),
        ("Branches", "Branch"),
        ("Aclines", "Acline"),
        ("Address", "Address"),
        ("Staff", "Staff"),
    ],
)
def test_singularize(word, expected):
    assert singularize(word) == expected


def test_companion_names():
    assert derive_entity_name("sp_Grid_Example_Employees") == "Employee"
    assert derive_update_procedure_name("sp_Grid_Example_Employees") == "sp_Grid_Update_Example_Employees"
    assert derive_delete_procedure_name("sp_Grid_Example_Employees") == "sp_Grid_Delete_Employee"
    assert derive_create_procedure_name("sp_Grid_Buses") == "sp_Grid_Insert_Bus"
    assert derive_delete_procedure_name("dbo.sp_Grid_Buses") == "dbo.sp_Grid_Delete_Bus"

    with pytest.raises(NotFoundError):
        derive_update_procedure_name("usp_ListBuses")


@pytest.mark.parametrize("raw, expected", [(5, 5), ("42", 42), (" 7 ", 7), (3.0, 3), ("101_1", "101_1"), ("ab-c", "ab-c")])
def test_coerce_row_id(raw, expected):
    assert coerce_row_id(raw) == expected


@pytest.mark.parametrize("raw", [None, "", "   ", True])
def test_coerce_row_id_rejects_missing(raw):
    with pytest.raises(GridValidationError):
        coerce_row_id(raw)


def test_update_existing_row(pipeline, backend, editable_buses):
    response = pipeline.update(
        RowUpdateRequest(procedure_name=PROC, row_id="2", changes={"Name": "Bravo 2"}), ["User"], user_id="42"
    )

    assert response.success is True
    assert response.updated_row == {"Id": 2, "Name": "Bravo 2"}
    assert backend.rows(PROC)[1]["Name"] == "Bravo 2"


def test_update_missing_row_is_conflict_with_zero_rows(pipeline, editable_buses):
    with pytest.raises(ConflictError) as exc:
        pipeline.update(RowUpdateRequest(procedure_name=PROC, row_id=999, changes={"Name": "x"}), ["User"], user_id="42")

    assert exc.value.rows_affected == 0
    assert exc.value.status_code == 409


def test_update_requires_changes(pipeline, editable_buses):
    with pytest.raises(GridValidationError) as exc:
        pipeline.update(RowUpdateRequest(procedure_name=PROC, row_id=1, changes={}), ["User"], user_id="42")
    assert exc.value.code == "INVALID_CHANGES"


def test_create_assigns_id(pipeline, backend, editable_buses):
    response = pipeline.create(RowCreateRequest(procedure_name=PROC, field_values={"Name": "Charlie"}), ["User"], "42")

    assert response.created_row == {"Name": "Charlie", "Id": 3}
    assert len(backend.rows(PROC)) == 3

    with pytest.raises(GridValidationError):
        pipeline.create(RowCreateRequest(procedure_name=PROC, field_values={}), ["User"], "42")


def test_delete_then_delete_again(pipeline, backend, editable_buses):
    response = pipeline.delete(RowDeleteRequest(procedure_name=PROC, row_id=1), ["User"], "42")
    assert response.rows_affected == 1
    assert [r["Id"] for r in backend.rows(PROC)] == [2]

    with pytest.raises(ConflictError):
        pipeline.delete(RowDeleteRequest(procedure_name=PROC, row_id=1), ["User"], "42")


def test_missing_companion_is_not_supported(pipeline, add_procedure, backend):
    add_procedure(PROC)
    backend.register(PROC, [{"Id": 1}])

    with pytest.raises(NotFoundError) as exc:
        pipeline.delete(RowDeleteRequest(procedure_name=PROC, row_id=1), ["User"], "42")
    assert exc.value.code == "DELETE_NOT_SUPPORTED"

    with pytest.raises(NotFoundError) as exc:
        pipeline.update(RowUpdateRequest(procedure_name=PROC, row_id=1, changes={"a": 1}), ["User"], "42")
    assert exc.value.code == "UPDATE_NOT_SUPPORTED"


def test_explicit_companion_overrides_convention(pipeline, add_procedure, backend):
    add_procedure(PROC, update_procedure="sp_Bus_Save")
    add_procedure("sp_Bus_Save")
    backend.register(PROC, [{"Id": 1, "Name": "Alpha"}], update="sp_Bus_Save")

    response = pipeline.update(RowUpdateRequest(procedure_name=PROC, row_id=1, changes={"Name": "A"}), ["User"], "42")

    assert response.updated_row["Name"] == "A"


def test_companion_roles_are_checked(pipeline, add_procedure, backend):
    add_procedure(PROC)
    add_procedure("sp_Grid_Delete_Bus", allowed_roles=["Admin"])
    backend.register(PROC, [{"Id": 1}], delete="sp_Grid_Delete_Bus")

    with pytest.raises(ForbiddenError):
        pipeline.delete(RowDeleteRequest(procedure_name=PROC, row_id=1), ["User"], "42")


def test_mutation_outcomes_map_to_errors(pipeline):
    with pytest.raises(GridValidationError):
        pipeline._raise_for(MutationOutcome(success=False, error_code="INVALID_SALARY", message="bad"), "update")
    with pytest.raises(ConflictError):
        pipeline._raise_for(MutationOutcome(success=True, rows_affected=0), "update")
    # Zero rows on create is not a conflict.
    pipeline._raise_for(MutationOutcome(success=True, rows_affected=0), "create")


class _AuditThenFailBackend:
    """Writes an audit row, then reports the target row as missing."""

    def __init__(self, error_code="ROW_NOT_FOUND", success=False):
        self.error_code = error_code
        self.success = success

    def mutate(self, conn, call):
        conn.execute(text("INSERT INTO audit (procedure_name) VALUES (:p)"), {"p": call.procedure_name})
        return MutationOutcome(success=self.success, error_code=self.error_code, message="Row not found", rows_affected=0)


def _audit_rows(router):
    with router.connection_for(None) as conn:
        return conn.execute(text("SELECT COUNT(*) FROM audit")).scalar()


@pytest.mark.parametrize("error_code, success", [("ROW_NOT_FOUND", False), (None, True)])
def test_failed_outcome_rolls_back_companion_writes(registry, router, add_procedure, error_code, success):
    add_procedure(PROC)
    add_procedure("sp_Grid_Update_Buses")
    with router.connection_for(None, transactional=True) as conn:
        conn.execute(text("CREATE TABLE audit (procedure_name TEXT)"))
    pipeline = RowMutationPipeline(registry, router, _AuditThenFailBackend(error_code, success))

    with pytest.raises(ConflictError):
        pipeline.update(RowUpdateRequest(procedure_name=PROC, row_id=3, changes={"Name": "x"}), ["User"], "42")

    assert _audit_rows(router) == 0


def test_successful_outcome_commits_companion_writes(registry, router, add_procedure):
    add_procedure(PROC)
    add_procedure("sp_Grid_Delete_Bus")
    with router.connection_for(None, transactional=True) as conn:
        conn.execute(text("CREATE TABLE audit (procedure_name TEXT)"))

    class _AuditBackend(_AuditThenFailBackend):
        def mutate(self, conn, call):
            super().mutate(conn, call)
            return MutationOutcome(success=True, rows_affected=1)

    pipeline = RowMutationPipeline(registry, router, _AuditBackend())
    response = pipeline.delete(RowDeleteRequest(procedure_name=PROC, row_id=3), ["User"], "42")

    assert response.rows_affected == 1
    assert _audit_rows(router) == 1
