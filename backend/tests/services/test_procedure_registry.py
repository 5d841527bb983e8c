import pytest

from dynamic_grid.models.grid import ProcedureDefinition, ProcedureDefinitionUpsert
from dynamic_grid.services.exceptions import GridValidationError, NotFoundError
from dynamic_grid.services.procedure_registry import ProcedureRegistry, validate_procedure_name


def _definition(**overrides):
    values = dict(procedure_name="sp_Grid_Buses", display_name="Buses", allowed_roles=["Admin", "User"])
    values.update(overrides)
    return ProcedureDefinition(**values)


@pytest.mark.parametrize(
    "requested, expected",
    [(None, 15), (0, 15), (-3, 15), (50, 50), (1000, 1000), (5000, 1000)],
)
def test_clamp_page_size(requested, expected):
    assert ProcedureRegistry.clamp_page_size(_definition(), requested) == expected


def test_default_page_size_cannot_exceed_max():
    with pytest.raises(ValueError):
        _definition(default_page_size=100, max_page_size=50)


def test_resolve_returns_active_definition(registry, add_procedure):
    add_procedure("sp_Grid_Buses", display_name="Buses", database_name="Planning", category="Network")

    definition = registry.resolve("sp_Grid_Buses")

    assert definition.display_name == "Buses"
    assert definition.database_name == "Planning"
    assert definition.allowed_roles == frozenset({"Admin", "User"})


def test_resolve_is_case_insensitive(registry, add_procedure):
    add_procedure("sp_Grid_Buses")
    assert registry.resolve("SP_GRID_BUSES").procedure_name == "sp_Grid_Buses"


def test_resolve_unknown_or_inactive_is_not_found(registry, add_procedure):
    add_procedure("sp_Grid_Retired", is_active=False)

    with pytest.raises(NotFoundError) as exc:
        registry.resolve("sp_Grid_Missing")
    assert exc.value.code == "PROCEDURE_NOT_FOUND"

    with pytest.raises(NotFoundError):
        registry.resolve("sp_Grid_Retired")

    # lookup still sees inactive entries
    assert registry.lookup("sp_Grid_Retired").is_active is False


@pytest.mark.parametrize("name", ["", "sp Grid", "sp_Grid;DROP", "a.b.c", "1sp", "sp_Grid--"])
def test_invalid_names_rejected(name):
    with pytest.raises(GridValidationError) as exc:
        validate_procedure_name(name)
    assert exc.value.code == "INVALID_PROCEDURE_NAME"


def test_schema_qualified_name_accepted():
    assert validate_procedure_name(" dbo.sp_Grid_Buses ") == "dbo.sp_Grid_Buses"


def test_is_allowed():
    definition = _definition(allowed_roles=["Admin", "Manager"])
    assert ProcedureRegistry.is_allowed(definition, ["manager"])
    assert not ProcedureRegistry.is_allowed(definition, ["User"])
    assert not ProcedureRegistry.is_allowed(definition, [])

    public = _definition(requires_auth=False, allowed_roles=[])
    assert ProcedureRegistry.is_allowed(public, [])


def test_available_for_filters_by_role_and_activity(registry, add_procedure):
    add_procedure("sp_Grid_Buses", allowed_roles=["User"])
    add_procedure("sp_Grid_Salaries", allowed_roles=["Admin"])
    add_procedure("sp_Grid_Retired", allowed_roles=["User"], is_active=False)
    add_procedure("sp_Grid_Public", requires_auth=False, allowed_roles=[])

    names = [d.procedure_name for d in registry.available_for(["User"])]

    assert names == ["sp_Grid_Buses", "sp_Grid_Public"]


def test_lookup_is_cached_until_invalidated(registry, add_procedure, db_session):
    row = add_procedure("sp_Grid_Buses", display_name="Buses")
    assert registry.resolve("sp_Grid_Buses").display_name == "Buses"

    row.display_name = "Bus list"
    db_session.commit()
    assert registry.resolve("sp_Grid_Buses").display_name == "Buses"

    registry.invalidate("sp_Grid_Buses")
    assert registry.resolve("sp_Grid_Buses").display_name == "Bus list"


def test_upsert_definition_creates_then_updates(registry, db_session):
    # Looked up before it exists; the upsert must still be visible afterwards.
    assert registry.lookup("sp_Grid_Lines") is None

    payload = ProcedureDefinitionUpsert(display_name="Lines", allowed_roles=["User"], max_page_size=200)
    created = registry.upsert_definition(db_session, "sp_Grid_Lines", payload, updated_by="admin")
    assert created.max_page_size == 200
    assert registry.resolve("sp_Grid_Lines").display_name == "Lines"

    payload = ProcedureDefinitionUpsert(display_name="AC lines", allowed_roles=["Admin"], update_procedure="sp_Grid_Update_Line")
    registry.upsert_definition(db_session, "sp_Grid_Lines", payload, updated_by="admin")

    definition = registry.resolve("sp_Grid_Lines")
    assert definition.display_name == "AC lines"
    assert definition.update_procedure == "sp_Grid_Update_Line"
    assert [d.procedure_name for d in registry.available_for(["Admin"])] == ["sp_Grid_Lines"]


def test_upsert_rejects_invalid_companion_name(registry, db_session):
    payload = ProcedureDefinitionUpsert(display_name="Lines", delete_procedure="drop table")
    with pytest.raises(GridValidationError):
        registry.upsert_definition(db_session, "sp_Grid_Lines", payload)


def test_unknown_names_leave_nothing_cached(registry, cache, add_procedure):
    for i in range(500):
        assert registry.lookup(f"sp_Grid_Nope{i}") is None

    assert len(cache) == 0
    assert cache._key_locks == {}

    # A procedure registered after a miss is found without an invalidation.
    add_procedure("sp_Grid_Nope7", display_name="Late")
    assert registry.resolve("sp_Grid_Nope7").display_name == "Late"
    assert len(cache) == 1
