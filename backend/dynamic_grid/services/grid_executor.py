from __future__ import annotations

import json
import math
import time
from typing import Iterable, List, Optional, Tuple

from dynamic_grid.models.filters import (
    DrillDownLevel,
    FilterExpression,
    parse_drill_down,
    parse_filter_model,
    serialize_filter_model,
)
from dynamic_grid.models.grid import GridDataRequest, GridDataResponse, ProcedureDefinition
from dynamic_grid.services.column_metadata import ColumnMetadataResolver
from dynamic_grid.services.database_router import DatabaseRouter
from dynamic_grid.services.exceptions import ForbiddenError, GridValidationError
from dynamic_grid.services.filter_translator import is_safe_identifier, merge_drill_down, translate
from dynamic_grid.services.procedure_backend import ProcedureBackend, ProcedureCall
from dynamic_grid.services.procedure_registry import ProcedureRegistry
from dynamic_grid.utils.logger import logger

SORT_DIRECTIONS = ("ASC", "DESC")


def resolve_paging(request: GridDataRequest, definition: ProcedureDefinition) -> Tuple[int, int, Optional[int], Optional[int]]:
    """(page_number, page_size, start_row, end_row) after validation and clamping.

    Row ranges are 0-based with an exclusive end, and never span more than
    ``max_page_size`` rows.
    """
    page_mode = request.page_number is not None
    if page_mode and request.is_row_range:
        raise GridValidationError(
            "Specify either pageNumber/pageSize or startRow/endRow, not both", code="AMBIGUOUS_PAGING"
        )

    if request.is_row_range:
        start, end = request.start_row, request.end_row
        if start is None or end is None or start < 0 or end <= start:
            raise GridValidationError(
                "Row range requires 0 <= startRow < endRow", code="INVALID_ROW_RANGE", startRow=start, endRow=end
            )
        size = ProcedureRegistry.clamp_page_size(definition, end - start)
        return start // size + 1, size, start, start + size

    page_number = request.page_number if page_mode else 1
    if page_number < 1:
        raise GridValidationError("pageNumber must be >= 1", code="INVALID_PAGE_NUMBER", pageNumber=page_number)
    size = ProcedureRegistry.clamp_page_size(definition, request.page_size)
    return page_number, size, None, None


def resolve_sort(request: GridDataRequest) -> Tuple[Optional[str], str]:
    direction = (request.sort_direction or "ASC").strip().upper() or "ASC"
    if direction not in SORT_DIRECTIONS:
        raise GridValidationError(
            f"sortDirection must be ASC or DESC, got {request.sort_direction!r}", code="INVALID_SORT_DIRECTION"
        )
    column = (request.sort_column or "").strip() or None
    if column is not None and not is_safe_identifier(column):
        raise GridValidationError(f"Invalid sort column: {column!r}", code="INVALID_SORT_COLUMN")
    return column, direction


class GridQueryExecutor:
    def __init__(
        self,
        registry: ProcedureRegistry,
        router: DatabaseRouter,
        resolver: ColumnMetadataResolver,
        backend: ProcedureBackend,
        strict_filters: bool = False,
        drill_down_max_depth: Optional[int] = 5,
        timeout_seconds: Optional[float] = None,
    ):
        self.registry = registry
        self.router = router
        self.resolver = resolver
        self.backend = backend
        self.strict_filters = strict_filters
        self.drill_down_max_depth = drill_down_max_depth
        self.timeout_seconds = timeout_seconds

    def _applicable_levels(self, procedure_name: str, levels: List[DrillDownLevel]) -> List[DrillDownLevel]:
        depth = sum(1 for level in levels if level.filters)
        if self.drill_down_max_depth is not None and depth > self.drill_down_max_depth:
            raise GridValidationError(
                f"Drill-down depth {depth} exceeds the limit of {self.drill_down_max_depth}",
                code="DRILL_DOWN_TOO_DEEP",
                depth=depth,
                maxDepth=self.drill_down_max_depth,
            )
        # Each level narrows the grid it targets; anonymous levels apply to this one.
        return [
            level
            for level in levels
            if not level.procedure_name or level.procedure_name.lower() == procedure_name.lower()
        ]

    def build_filter(
        self, request: GridDataRequest, definition: ProcedureDefinition
    ) -> Tuple[FilterExpression, List[DrillDownLevel], int]:
        explicit = parse_filter_model(request.filter_json)
        levels = parse_drill_down(request.drill_down_json)
        applicable = self._applicable_levels(definition.procedure_name, levels)
        merged = merge_drill_down(explicit, (level.filters for level in applicable))
        depth = sum(1 for level in levels if level.filters)
        return merged, levels, depth

    def _timeout(self, requested: Optional[float]) -> Optional[float]:
        if requested is None:
            return self.timeout_seconds
        if self.timeout_seconds is None:
            return requested
        return min(requested, self.timeout_seconds)

    def execute(self, request: GridDataRequest, caller_roles: Iterable[str]) -> GridDataResponse:
        started = time.monotonic()
        roles = list(caller_roles or ())

        definition = self.registry.resolve(request.procedure_name)
        if not self.registry.is_allowed(definition, roles):
            logger.warning("grid.execute forbidden procedure=%s roles=%s", definition.procedure_name, roles)
            raise ForbiddenError(f"Access denied to procedure: {definition.procedure_name}")

        page_number, page_size, start_row, end_row = resolve_paging(request, definition)
        sort_column, sort_direction = resolve_sort(request)

        column_types = self.resolver.column_types(definition.procedure_name)
        known_columns = [spec.column_name for spec in self.resolver.metadata_for(definition.procedure_name)]
        merged, levels, depth = self.build_filter(request, definition)
        predicate = translate(merged, column_types, known_columns=known_columns, strict=self.strict_filters)

        applied = serialize_filter_model(merged)
        call = ProcedureCall(
            procedure_name=definition.procedure_name,
            page_number=page_number,
            page_size=page_size,
            start_row=start_row,
            end_row=end_row,
            sort_column=sort_column,
            sort_direction=sort_direction,
            filter_json=json.dumps(applied, default=str) if applied else None,
            drill_down_json=json.dumps([level.model_dump(by_alias=True) for level in levels]) if levels else None,
            search_term=(request.search_term or "").strip() or None,
            predicate=predicate,
        )

        with self.router.connection_for(definition.database_name, timeout=self._timeout(request.timeout_seconds)) as conn:
            result = self.backend.fetch(conn, call)

        rows = result.rows
        total = result.total_count
        if start_row is not None:
            if total is not None:
                last_row = total
            elif len(rows) < page_size or result.has_more is False:
                last_row = start_row + len(rows)
            else:
                last_row = None
        else:
            last_row = None

        if total is None:
            total = last_row if last_row is not None else (start_row or (page_number - 1) * page_size) + len(rows)

        columns = self.resolver.build_columns(definition.procedure_name, result.columns, rows)

        logger.info(
            "grid.execute procedure=%s db=%s page=%s size=%s range=%s-%s filters=%s rows=%s total=%s elapsed_ms=%d",
            definition.procedure_name,
            definition.database_name or "default",
            page_number,
            page_size,
            start_row,
            end_row,
            len(predicate.fragments),
            len(rows),
            total,
            (time.monotonic() - started) * 1000,
        )

        return GridDataResponse(
            rows=rows,
            columns=columns,
            total_count=total,
            page_number=page_number,
            page_size=page_size,
            total_pages=math.ceil(total / page_size) if page_size > 0 else 0,
            last_row=last_row,
            metadata={
                "procedureName": definition.procedure_name,
                "displayName": definition.display_name,
                "sortColumn": sort_column,
                "sortDirection": sort_direction,
                "appliedFilters": applied,
                "drillDownDepth": depth,
            },
        )
