"""Create procedure registry, column metadata and column state tables

Revision ID: dynamic_grid_core_20260101
Revises:
Create Date: 2026-01-01

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "dynamic_grid_core_20260101"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "stored_procedure_registry",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("procedure_name", sa.String(length=200), nullable=False),
        sa.Column("display_name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column("category", sa.String(length=50), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("requires_auth", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "allowed_roles",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("database_name", sa.String(length=100), nullable=True),
        sa.Column("default_page_size", sa.Integer(), nullable=False, server_default="15"),
        sa.Column("max_page_size", sa.Integer(), nullable=False, server_default="1000"),
        sa.Column("cache_duration_seconds", sa.Integer(), nullable=True),
        sa.Column("create_procedure", sa.String(length=200), nullable=True),
        sa.Column("update_procedure", sa.String(length=200), nullable=True),
        sa.Column("delete_procedure", sa.String(length=200), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(length=100), nullable=True),
        sa.Column("updated_by", sa.String(length=100), nullable=True),
        sa.CheckConstraint("default_page_size <= max_page_size", name="ck_stored_procedure_registry_page_sizes"),
    )
    op.create_index(
        "idx_stored_procedure_registry_name",
        "stored_procedure_registry",
        ["procedure_name"],
        unique=True,
    )
    op.create_index(
        "idx_stored_procedure_registry_database",
        "stored_procedure_registry",
        ["database_name"],
    )

    op.create_table(
        "column_metadata",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("procedure_name", sa.String(length=255), nullable=False),
        sa.Column("column_name", sa.String(length=255), nullable=False),
        sa.Column("header_name", sa.String(length=255), nullable=True),
        sa.Column("data_type", sa.String(length=50), nullable=True),
        sa.Column("width", sa.Integer(), nullable=True),
        sa.Column("editable", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("pinned", sa.Boolean(), nullable=True),
        sa.Column("column_group", sa.String(length=255), nullable=True),
        sa.Column("column_group_show", sa.String(length=10), nullable=True),
        sa.Column("display_order", sa.Integer(), nullable=True),
        sa.Column("cell_editor", sa.String(length=50), nullable=True),
        sa.Column("dropdown_type", sa.String(length=20), nullable=True),
        sa.Column("static_values", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("master_table", sa.String(length=255), nullable=True),
        sa.Column("value_field", sa.String(length=255), nullable=True),
        sa.Column("label_field", sa.String(length=255), nullable=True),
        sa.Column("filter_condition", sa.Text(), nullable=True),
        sa.Column("depends_on", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("link_config", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "dropdown_type IS NULL OR dropdown_type IN ('static', 'dynamic')",
            name="ck_column_metadata_dropdown_type",
        ),
        sa.CheckConstraint(
            "dropdown_type IS DISTINCT FROM 'dynamic' OR "
            "(master_table IS NOT NULL AND value_field IS NOT NULL AND label_field IS NOT NULL)",
            name="ck_column_metadata_dynamic_source",
        ),
    )
    op.create_index(
        "uq_column_metadata_proc_column",
        "column_metadata",
        ["procedure_name", "column_name"],
        unique=True,
    )
    op.create_index(
        "idx_column_metadata_procedure",
        "column_metadata",
        ["procedure_name", "is_active"],
    )

    op.create_table(
        "grid_column_states",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=100), nullable=False),
        sa.Column("procedure_name", sa.String(length=200), nullable=False),
        sa.Column("column_state", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index(
        "idx_grid_column_states_user_procedure",
        "grid_column_states",
        ["user_id", "procedure_name"],
        unique=True,
    )


def downgrade() -> None:
    op.drop_index("idx_grid_column_states_user_procedure", table_name="grid_column_states")
    op.drop_table("grid_column_states")
    op.drop_index("idx_column_metadata_procedure", table_name="column_metadata")
    op.drop_index("uq_column_metadata_proc_column", table_name="column_metadata")
    op.drop_table("column_metadata")
    op.drop_index("idx_stored_procedure_registry_database", table_name="stored_procedure_registry")
    op.drop_index("idx_stored_procedure_registry_name", table_name="stored_procedure_registry")
    op.drop_table("stored_procedure_registry")
