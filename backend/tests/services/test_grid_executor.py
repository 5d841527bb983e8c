import json
import logging

import pytest

from dynamic_grid.models.grid import GridDataRequest
from dynamic_grid.services.exceptions import ForbiddenError, GridValidationError, NotFoundError
from dynamic_grid.services.grid_executor import GridQueryExecutor, resolve_sort

PROC = "sp_Grid_Buses"


@pytest.fixture
def buses(add_procedure, backend):
    add_procedure(PROC, display_name="Buses")
    backend.register(
        PROC,
        [{"Id": i, "Name": f"Bus {i}", "Voltage": 110 if i % 2 else 220, "Zone": "North" if i <= 50 else "South"}
         for i in range(1, 101)],
    )


def _request(**kwargs):
    return GridDataRequest(procedure_name=PROC, **kwargs)


def test_page_mode_returns_requested_slice(executor, buses):
    response = executor.execute(_request(page_number=2, page_size=15), ["User"])

    assert [r["Id"] for r in response.rows] == list(range(16, 31))
    assert response.total_count == 100
    assert response.total_pages == 7
    assert response.page_number == 2
    assert response.page_size == 15
    assert response.last_row is None
    assert response.metadata["displayName"] == "Buses"


def test_default_page_and_clamped_size(executor, add_procedure, backend):
    add_procedure(PROC, default_page_size=10, max_page_size=25)
    backend.register(PROC, [{"Id": i} for i in range(1, 101)])

    default = executor.execute(_request(), ["User"])
    assert default.page_number == 1 and default.page_size == 10
    assert len(default.rows) == 10

    clamped = executor.execute(_request(page_number=1, page_size=500), ["User"])
    assert clamped.page_size == 25
    assert clamped.total_pages == 4


def test_row_range_past_the_end(add_procedure, backend, executor):
    add_procedure(PROC)
    backend.register(PROC, [{"Id": i} for i in range(1, 43)])

    response = executor.execute(_request(start_row=0, end_row=50), ["User"])

    assert len(response.rows) == 42
    assert response.last_row == 42
    assert response.total_count == 42


def test_row_range_window_is_clamped_to_max_page_size(add_procedure, backend, executor):
    add_procedure(PROC, max_page_size=100)
    backend.register(PROC, [{"Id": i} for i in range(1, 1001)])

    response = executor.execute(_request(start_row=200, end_row=900), ["User"])

    assert response.page_size == 100
    assert [r["Id"] for r in response.rows] == list(range(201, 301))
    assert response.page_number == 3


@pytest.mark.parametrize(
    "paging, code",
    [
        (dict(page_number=1, start_row=0, end_row=10), "AMBIGUOUS_PAGING"),
        (dict(start_row=10, end_row=10), "INVALID_ROW_RANGE"),
        (dict(start_row=5), "INVALID_ROW_RANGE"),
        (dict(start_row=-1, end_row=10), "INVALID_ROW_RANGE"),
        (dict(page_number=0), "INVALID_PAGE_NUMBER"),
    ],
)
def test_invalid_paging(executor, buses, paging, code):
    with pytest.raises(GridValidationError) as exc:
        executor.execute(_request(**paging), ["User"])
    assert exc.value.code == code


def test_unknown_inactive_and_forbidden(executor, add_procedure, backend):
    add_procedure("sp_Grid_Retired", is_active=False)
    add_procedure("sp_Grid_Salaries", allowed_roles=["Admin"])
    backend.register("sp_Grid_Salaries", [{"Id": 1}])

    with pytest.raises(NotFoundError):
        executor.execute(GridDataRequest(procedure_name="sp_Grid_Missing"), ["User"])
    with pytest.raises(NotFoundError):
        executor.execute(GridDataRequest(procedure_name="sp_Grid_Retired"), ["Admin"])
    with pytest.raises(ForbiddenError):
        executor.execute(GridDataRequest(procedure_name="sp_Grid_Salaries"), ["User"])
    with pytest.raises(ForbiddenError):
        executor.execute(GridDataRequest(procedure_name="sp_Grid_Salaries"), [])

    assert executor.execute(GridDataRequest(procedure_name="sp_Grid_Salaries"), ["admin"]).total_count == 1


def test_filters_sort_and_search(executor, buses, add_column):
    add_column(PROC, "Voltage", data_type="number")
    request = _request(
        page_number=1,
        page_size=100,
        sort_column="Id",
        sort_direction="desc",
        filter_json=json.dumps({"Voltage": {"filterType": "number", "type": "greaterThan", "filter": 150}}),
        search_term="Bus 9",
    )

    response = executor.execute(request, ["User"])

    # Even ids carry 220 kV; "Bus 9" matches 9 and 90-99.
    assert [r["Id"] for r in response.rows] == [98, 96, 94, 92, 90]
    assert response.metadata["sortDirection"] == "DESC"
    assert response.metadata["appliedFilters"] == {
        "Voltage": {"filterType": "number", "type": "greaterThan", "filter": 150}
    }


def test_invalid_sort_requests():
    with pytest.raises(GridValidationError) as exc:
        resolve_sort(_request(sort_direction="sideways"))
    assert exc.value.code == "INVALID_SORT_DIRECTION"

    with pytest.raises(GridValidationError) as exc:
        resolve_sort(_request(sort_column="Id; DROP TABLE x"))
    assert exc.value.code == "INVALID_SORT_COLUMN"

    assert resolve_sort(_request()) == (None, "ASC")


def test_drill_down_narrows_and_overrides(executor, buses):
    drill = [
        {"procedureName": "sp_Grid_Zones", "displayName": "Zones", "filters": {}, "breadcrumbLabel": "Zones"},
        {"procedureName": PROC, "displayName": "Buses", "filters": {"Zone": "South"}, "breadcrumbLabel": "South"},
    ]
    request = _request(
        page_number=1,
        page_size=100,
        filter_json={"Zone": {"filterType": "text", "type": "equals", "filter": "North"}},
        drill_down_json=json.dumps(drill),
    )

    response = executor.execute(request, ["User"])

    assert response.total_count == 50
    assert all(r["Zone"] == "South" for r in response.rows)
    assert response.metadata["drillDownDepth"] == 1


def test_drill_down_levels_for_other_grids_are_ignored(executor, buses):
    drill = [{"procedureName": "sp_Grid_Zones", "filters": {"Zone": "South"}}]

    response = executor.execute(_request(page_size=100, drill_down_json=drill), ["User"])

    assert response.total_count == 100


def test_drill_down_depth_limit(registry, router, resolver, backend, buses):
    levels = [{"procedureName": PROC, "filters": {"Id": i}} for i in range(3)]
    limited = GridQueryExecutor(registry, router, resolver, backend, drill_down_max_depth=2)
    unlimited = GridQueryExecutor(registry, router, resolver, backend, drill_down_max_depth=None)

    with pytest.raises(GridValidationError) as exc:
        limited.execute(_request(drill_down_json=levels), ["User"])
    assert exc.value.code == "DRILL_DOWN_TOO_DEEP"

    # Last level wins for a repeated column.
    response = unlimited.execute(_request(drill_down_json=levels), ["User"])
    assert [r["Id"] for r in response.rows] == [2]


def test_strict_filters_reject_unknown_columns(registry, router, resolver, backend, buses, add_column):
    add_column(PROC, "Voltage", data_type="number")
    strict = GridQueryExecutor(registry, router, resolver, backend, strict_filters=True)

    with pytest.raises(GridValidationError) as exc:
        strict.execute(_request(filter_json={"Nickname": "x"}), ["User"])
    assert exc.value.code == "UNKNOWN_FILTER_COLUMN"

    assert strict.execute(_request(filter_json={"Voltage": 220}), ["User"]).total_count == 50


def test_unconfigured_database_falls_back_to_default(executor, add_procedure, backend, caplog):
    add_procedure(PROC, database_name="Warehouse")
    backend.register(PROC, [{"Id": 1}])

    with caplog.at_level(logging.WARNING, logger="dynamic_grid"):
        response = executor.execute(_request(), ["User"])

    assert response.total_count == 1
    assert any("database_router.fallback" in r.getMessage() for r in caplog.records)


def test_columns_inferred_when_procedure_declares_none(executor, buses):
    response = executor.execute(_request(page_size=1), ["User"])

    assert [(c.field, c.type) for c in response.columns] == [
        ("Id", "number"),
        ("Name", "string"),
        ("Voltage", "number"),
        ("Zone", "string"),
    ]
