"""create purchase orders, event log, inventory sync outbox, audit log

Revision ID: 0001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # order_number_sequences: one counter per (prefix, year)
    op.create_table(
        "order_number_sequences",
        sa.Column("prefix", sa.String(20), primary_key=True),
        sa.Column("year", sa.Integer(), primary_key=True),
        sa.Column("last_value", sa.Integer(), nullable=False, server_default="0"),
    )

    op.create_table(
        "purchase_orders",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("order_number", sa.String(50), nullable=False, unique=True),
        sa.Column("supplier_id", sa.Uuid(), nullable=False),
        sa.Column("supplier_name", sa.String(255), nullable=True),
        sa.Column("order_date", sa.Date(), nullable=False),
        sa.Column("expected_delivery_date", sa.Date(), nullable=True),
        sa.Column("payment_terms", sa.String(20), nullable=False, server_default="Net 30"),
        sa.Column("custom_payment_terms", sa.String(255), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="Open"),
        sa.Column("receiving_status", sa.String(20), nullable=False, server_default="Open"),
        sa.Column("payment_status", sa.String(20), nullable=False, server_default="Unpaid"),
        sa.Column("total_amount", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cancel_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("total_amount >= 0", name="ck_purchase_orders_total_non_negative"),
    )
    op.create_index("ix_purchase_orders_supplier_id", "purchase_orders", ["supplier_id"])
    op.create_index("ix_purchase_orders_status", "purchase_orders", ["status", "receiving_status", "payment_status"])

    op.create_table(
        "purchase_order_items",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("po_id", sa.Uuid(), sa.ForeignKey("purchase_orders.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("product_id", sa.Uuid(), nullable=False),
        sa.Column("product_name", sa.String(255), nullable=True),
        sa.Column("ordered_quantity", sa.Numeric(12, 4), nullable=False),
        sa.Column("received_quantity", sa.Numeric(12, 4), nullable=False, server_default="0"),
        sa.Column("unit_price", sa.Numeric(12, 4), nullable=False),
        sa.Column("line_total", sa.Numeric(14, 2), nullable=False),
        sa.CheckConstraint("ordered_quantity > 0", name="ck_po_items_ordered_positive"),
        sa.CheckConstraint("unit_price > 0", name="ck_po_items_price_positive"),
        sa.CheckConstraint(
            "received_quantity >= 0 AND received_quantity <= ordered_quantity",
            name="ck_po_items_received_in_range",
        ),
    )
    op.create_index("ix_purchase_order_items_po_id", "purchase_order_items", ["po_id"])

    # Event log: append-only
    op.create_table(
        "receiving_events",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("po_id", sa.Uuid(), sa.ForeignKey("purchase_orders.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("idempotency_key", sa.String(255), nullable=True),
        sa.Column("received_date", sa.Date(), nullable=False),
        sa.Column("received_by", sa.String(255), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.UniqueConstraint("po_id", "idempotency_key", name="uq_receiving_events_po_idempotency"),
    )
    op.create_index("ix_receiving_events_po_id", "receiving_events", ["po_id"])

    op.create_table(
        "receiving_event_lines",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("event_id", sa.Uuid(), sa.ForeignKey("receiving_events.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("item_id", sa.Uuid(), sa.ForeignKey("purchase_order_items.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("quantity_received", sa.Numeric(12, 4), nullable=False),
        sa.Column("actual_unit_price", sa.Numeric(12, 4), nullable=True),
        sa.CheckConstraint("quantity_received > 0", name="ck_receiving_lines_quantity_positive"),
    )
    op.create_index("ix_receiving_event_lines_event_id", "receiving_event_lines", ["event_id"])

    op.create_table(
        "payment_events",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("po_id", sa.Uuid(), sa.ForeignKey("purchase_orders.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("idempotency_key", sa.String(255), nullable=True),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("method", sa.String(50), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("paid_at", sa.Date(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint("amount <> 0", name="ck_payment_events_amount_non_zero"),
        sa.UniqueConstraint("po_id", "idempotency_key", name="uq_payment_events_po_idempotency"),
    )
    op.create_index("ix_payment_events_po_id", "payment_events", ["po_id"])

    # Trigger: the event log is INSERT-only (raises on UPDATE or DELETE)
    op.execute("""
        CREATE OR REPLACE FUNCTION reject_event_log_mutation()
        RETURNS TRIGGER AS $$
        BEGIN
            RAISE EXCEPTION '% is append-only: % rejected', TG_TABLE_NAME, TG_OP;
        END;
        $$ LANGUAGE plpgsql;
    """)
    for table in ("receiving_events", "receiving_event_lines", "payment_events"):
        op.execute(f"""
            CREATE TRIGGER trg_{table}_append_only
            BEFORE UPDATE OR DELETE ON {table}
            FOR EACH ROW EXECUTE FUNCTION reject_event_log_mutation();
        """)

    op.create_table(
        "inventory_sync_notifications",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("po_id", sa.Uuid(), sa.ForeignKey("purchase_orders.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("event_id", sa.Uuid(), sa.ForeignKey("receiving_events.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("item_id", sa.Uuid(), sa.ForeignKey("purchase_order_items.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("product_id", sa.Uuid(), nullable=False),
        sa.Column("quantity", sa.Numeric(12, 4), nullable=False),
        sa.Column("idempotency_key", sa.String(255), nullable=False, unique=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_inventory_sync_notifications_po_id", "inventory_sync_notifications", ["po_id"])
    op.create_index("ix_inventory_sync_notifications_status", "inventory_sync_notifications", ["status"])

    op.create_table(
        "audit_log",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("actor", sa.String(255), nullable=True),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("target_type", sa.String(100), nullable=True),
        sa.Column("target_id", sa.Uuid(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_audit_log_target_id", "audit_log", ["target_id"])


def downgrade() -> None:
    op.drop_table("audit_log")
    op.drop_table("inventory_sync_notifications")
    for table in ("receiving_events", "receiving_event_lines", "payment_events"):
        op.execute(f"DROP TRIGGER IF EXISTS trg_{table}_append_only ON {table}")
    op.execute("DROP FUNCTION IF EXISTS reject_event_log_mutation()")
    op.drop_table("payment_events")
    op.drop_table("receiving_event_lines")
    op.drop_table("receiving_events")
    op.drop_table("purchase_order_items")
    op.drop_table("purchase_orders")
    op.drop_table("order_number_sequences")
