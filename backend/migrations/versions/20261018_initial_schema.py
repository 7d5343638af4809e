"""Initial stock ledger, checkout, discrepancy, sync and alias schema

Revision ID: 20261018_initial_schema
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261018_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "stock_movements",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("sku", sa.String(128), nullable=False),
        sa.Column("type", sa.String(16), nullable=False),
        sa.Column("qty", sa.Integer(), nullable=False),
        sa.Column("adjust_direction", sa.String(16), nullable=True),
        sa.Column("ref_type", sa.String(32), nullable=False),
        sa.Column("ref_id", sa.String(64), nullable=False),
        sa.Column("source_ref", sa.String(255), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(128), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.CheckConstraint("qty > 0", name="ck_stock_movements_qty_positive"),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("stock_movements", schema=None) as batch_op:
        batch_op.create_index("ix_stock_movements_sku", ["sku"], unique=False)
        batch_op.create_index("ix_stock_movements_type", ["type"], unique=False)
        batch_op.create_index("ix_stock_movements_ref_type", ["ref_type"], unique=False)
        batch_op.create_index("ix_stock_movements_occurred_at", ["occurred_at"], unique=False)
        batch_op.create_index("ix_stock_movements_sku_occurred", ["sku", "occurred_at"], unique=False)
        batch_op.create_index("ix_stock_movements_ref", ["ref_type", "ref_id"], unique=False)
        batch_op.create_index("ix_stock_movements_type_occurred", ["type", "occurred_at"], unique=False)

    op.create_table(
        "stock_summaries",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("sku", sa.String(128), nullable=False),
        sa.Column("available_qty", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("reserved_qty", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_in_qty", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_out_qty", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("low_stock_threshold", sa.Integer(), nullable=False, server_default=sa.text("10")),
        sa.Column("last_movement_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("sku"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("stock_summaries", schema=None) as batch_op:
        batch_op.create_index("ix_stock_summaries_available", ["available_qty"], unique=False)
        batch_op.create_index("ix_stock_summaries_last_movement_at", ["last_movement_at"], unique=False)

    op.create_table(
        "truck_checkouts",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("employee_name", sa.String(255), nullable=False),
        sa.Column("employee_id", sa.String(64), nullable=True),
        sa.Column("truck_number", sa.String(64), nullable=True),
        sa.Column("checkout_date", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="checked_out"),
        sa.Column("completed_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("invoice_type", sa.String(16), nullable=False, server_default="closed"),
        sa.Column("fetched_invoices", sa.JSON(), nullable=True),
        sa.Column("tally_results", sa.JSON(), nullable=True),
        sa.Column("tally_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("tallied_by", sa.String(128), nullable=True),
        sa.Column("stock_processed", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("stock_processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("stock_processing_error", sa.Text(), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(128), nullable=True),
        sa.Column("completed_by", sa.String(128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("truck_checkouts", schema=None) as batch_op:
        batch_op.create_index("ix_truck_checkouts_checkout_date", ["checkout_date"], unique=False)
        batch_op.create_index("ix_truck_checkouts_status", ["status"], unique=False)
        batch_op.create_index("ix_truck_checkouts_employee_date", ["employee_name", "checkout_date"], unique=False)
        batch_op.create_index("ix_truck_checkouts_status_date", ["status", "checkout_date"], unique=False)

    op.create_table(
        "truck_checkout_items",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("checkout_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("sku", sa.String(128), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("notes", sa.String(255), nullable=True),
        sa.Column("ledger_sku", sa.String(128), nullable=True),
        sa.CheckConstraint("quantity > 0", name="ck_truck_checkout_items_qty_positive"),
        sa.ForeignKeyConstraint(["checkout_id"], ["truck_checkouts.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("truck_checkout_items", schema=None) as batch_op:
        batch_op.create_index("ix_truck_checkout_items_checkout_id", ["checkout_id"], unique=False)

    op.create_table(
        "truck_checkout_invoices",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("checkout_id", sa.Integer(), nullable=False),
        sa.Column("invoice_number", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(["checkout_id"], ["truck_checkouts.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("invoice_number", name="uq_truck_checkout_invoices_number"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("truck_checkout_invoices", schema=None) as batch_op:
        batch_op.create_index("ix_truck_checkout_invoices_checkout_id", ["checkout_id"], unique=False)

    op.create_table(
        "stock_discrepancies",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("invoice_number", sa.String(64), nullable=False, server_default="N/A"),
        sa.Column("invoice_type", sa.String(32), nullable=False, server_default="RouteStarInvoice"),
        sa.Column("item_name", sa.String(255), nullable=False),
        sa.Column("item_sku", sa.String(128), nullable=True),
        sa.Column("category_name", sa.String(255), nullable=True),
        sa.Column("system_quantity", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("actual_quantity", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("difference", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("discrepancy_type", sa.String(16), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="Pending"),
        sa.Column("reported_by", sa.String(128), nullable=False),
        sa.Column("reported_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("resolved_by", sa.String(128), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("stock_discrepancies", schema=None) as batch_op:
        batch_op.create_index("ix_stock_discrepancies_invoice_number", ["invoice_number"], unique=False)
        batch_op.create_index("ix_stock_discrepancies_category_name", ["category_name"], unique=False)
        batch_op.create_index("ix_stock_discrepancies_discrepancy_type", ["discrepancy_type"], unique=False)
        batch_op.create_index("ix_stock_discrepancies_status", ["status"], unique=False)
        batch_op.create_index("ix_stock_discrepancies_reported_at", ["reported_at"], unique=False)
        batch_op.create_index("ix_stock_discrepancies_status_reported", ["status", "reported_at"], unique=False)
        batch_op.create_index("ix_stock_discrepancies_invoice_item", ["invoice_number", "item_name"], unique=False)
        batch_op.create_index("ix_stock_discrepancies_reporter", ["reported_by", "reported_at"], unique=False)

    op.create_table(
        "sync_runs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("source", sa.String(64), nullable=False),
        sa.Column("kind", sa.String(32), nullable=False),
        sa.Column("params", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="RUNNING"),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("records_found", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("records_inserted", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("records_updated", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("records_failed", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("triggered_by", sa.String(128), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("sync_runs", schema=None) as batch_op:
        batch_op.create_index("ix_sync_runs_source", ["source"], unique=False)
        batch_op.create_index("ix_sync_runs_status", ["status"], unique=False)
        batch_op.create_index("ix_sync_runs_started_at", ["started_at"], unique=False)
        batch_op.create_index("ix_sync_runs_source_started", ["source", "started_at"], unique=False)
        batch_op.create_index("ix_sync_runs_status_source", ["status", "source"], unique=False)

    op.create_table(
        "external_invoices",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("source", sa.String(64), nullable=False),
        sa.Column("external_id", sa.String(128), nullable=True),
        sa.Column("number", sa.String(64), nullable=False),
        sa.Column("invoice_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("counterparty_name", sa.String(255), nullable=True),
        sa.Column("status", sa.String(32), nullable=True),
        sa.Column("subtotal_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("tax_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("stock_processed", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("stock_processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_run_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.ForeignKeyConstraint(["last_sync_run_id"], ["sync_runs.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("source", "number", name="uq_external_invoices_source_number"),
        sa.UniqueConstraint("source", "external_id", name="uq_external_invoices_source_external_id"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("external_invoices", schema=None) as batch_op:
        batch_op.create_index("ix_external_invoices_source", ["source"], unique=False)
        batch_op.create_index("ix_external_invoices_number", ["number"], unique=False)
        batch_op.create_index("ix_external_invoices_invoice_date", ["invoice_date"], unique=False)
        batch_op.create_index("ix_external_invoices_counterparty_name", ["counterparty_name"], unique=False)
        batch_op.create_index("ix_external_invoices_stock_processed", ["stock_processed"], unique=False)

    op.create_table(
        "external_invoice_lines",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("invoice_id", sa.Integer(), nullable=False),
        sa.Column("line_number", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("sku", sa.String(128), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("unit_price_cents", sa.Integer(), nullable=True),
        sa.Column("line_total_cents", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["invoice_id"], ["external_invoices.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("invoice_id", "line_number", name="uq_external_invoice_lines_invoice_line"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("external_invoice_lines", schema=None) as batch_op:
        batch_op.create_index("ix_external_invoice_lines_invoice_id", ["invoice_id"], unique=False)

    op.create_table(
        "item_aliases",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("canonical_name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("canonical_name"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("item_aliases", schema=None) as batch_op:
        batch_op.create_index("ix_item_aliases_is_active", ["is_active"], unique=False)
        batch_op.create_index("ix_item_aliases_canonical_active", ["canonical_name", "is_active"], unique=False)

    op.create_table(
        "item_alias_names",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("alias_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("notes", sa.String(255), nullable=True),
        sa.ForeignKeyConstraint(["alias_id"], ["item_aliases.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("alias_id", "name", name="uq_item_alias_names_alias_name"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("item_alias_names", schema=None) as batch_op:
        batch_op.create_index("ix_item_alias_names_alias_id", ["alias_id"], unique=False)
        batch_op.create_index("ix_item_alias_names_name", ["name"], unique=False)


def downgrade():
    op.drop_table("item_alias_names")
    op.drop_table("item_aliases")
    op.drop_table("external_invoice_lines")
    op.drop_table("external_invoices")
    op.drop_table("sync_runs")
    op.drop_table("stock_discrepancies")
    op.drop_table("truck_checkout_invoices")
    op.drop_table("truck_checkout_items")
    op.drop_table("truck_checkouts")
    op.drop_table("stock_summaries")
    op.drop_table("stock_movements")
