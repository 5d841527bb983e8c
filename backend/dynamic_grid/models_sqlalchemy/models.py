from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, Index
from sqlalchemy.dialects.postgresql import JSONB
from datetime import datetime

from . import Base


class StoredProcedureRegistry(Base):
    """One row per grid procedure that clients are allowed to execute."""

    __tablename__ = "stored_procedure_registry"

    id = Column(Integer, primary_key=True, autoincrement=True)
    procedure_name = Column(String(200), nullable=False)
    display_name = Column(String(100), nullable=False)
    description = Column(String(500), nullable=True)
    # e.g. "HR", "Finance", "Network"
    category = Column(String(50), nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    requires_auth = Column(Boolean, nullable=False, default=True)
    # JSON array of role names: ["Admin", "Manager"]
    allowed_roles = Column(JSONB, nullable=False, default=list)

    # Routing key into GRID_DATABASES. NULL means the default connection.
    database_name = Column(String(100), nullable=True)

    default_page_size = Column(Integer, nullable=False, default=15)
    max_page_size = Column(Integer, nullable=False, default=1000)
    cache_duration_seconds = Column(Integer, nullable=True)

    # Optional explicit companion procedures; when NULL the naming convention
    # (sp_Grid_X -> sp_Grid_Update_X, sp_Grid_Delete_<Entity>, ...) applies.
    create_procedure = Column(String(200), nullable=True)
    update_procedure = Column(String(200), nullable=True)
    delete_procedure = Column(String(200), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=datetime.utcnow)
    created_by = Column(String(100), nullable=True)
    updated_by = Column(String(100), nullable=True)

    __table_args__ = (
        Index('idx_stored_procedure_registry_name', 'procedure_name', unique=True),
        Index('idx_stored_procedure_registry_database', 'database_name'),
    )


class ColumnMetadata(Base):
    """Per (procedure, column) editor, dropdown and link configuration."""

    __tablename__ = "column_metadata"

    id = Column(Integer, primary_key=True, autoincrement=True)
    procedure_name = Column(String(255), nullable=False)
    column_name = Column(String(255), nullable=False)

    header_name = Column(String(255), nullable=True)
    # Semantic type used by the filter translator: text | number | date | boolean
    data_type = Column(String(50), nullable=True)
    width = Column(Integer, nullable=True)
    editable = Column(Boolean, nullable=False, default=False)
    pinned = Column(Boolean, nullable=True)
    column_group = Column(String(255), nullable=True)
    # 'open', 'closed' or NULL
    column_group_show = Column(String(10), nullable=True)
    display_order = Column(Integer, nullable=True)

    cell_editor = Column(String(50), nullable=True)
    # 'static' | 'dynamic' | NULL
    dropdown_type = Column(String(20), nullable=True)
    # [{"value": "Active", "label": "Active"}, ...]
    static_values = Column(JSONB, nullable=True)
    master_table = Column(String(255), nullable=True)
    value_field = Column(String(255), nullable=True)
    label_field = Column(String(255), nullable=True)
    # Trusted, admin-authored condition with @param_<Column> placeholders
    filter_condition = Column(Text, nullable=True)
    # ["GroupId"]
    depends_on = Column(JSONB, nullable=True)

    # {"enabled", "routePath", "openInNewTab", "params": [...], "drillDown": {...}}
    link_config = Column(JSONB, nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index('uq_column_metadata_proc_column', 'procedure_name', 'column_name', unique=True),
        Index('idx_column_metadata_procedure', 'procedure_name', 'is_active'),
    )


class GridColumnState(Base):
    __tablename__ = "grid_column_states"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(100), nullable=False)
    procedure_name = Column(String(200), nullable=False)

    # Opaque client layout document (order/width/visibility), stored verbatim.
    column_state = Column(Text, nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index('idx_grid_column_states_user_procedure', 'user_id', 'procedure_name', unique=True),
    )
