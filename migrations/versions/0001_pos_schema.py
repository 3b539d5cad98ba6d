"""Schéma POS : commandes, tabs, règlements, dépenses et catalogue."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0001_pos_schema"
down_revision = None
branch_labels = None
depends_on = None


def _money(name: str, **kwargs) -> sa.Column:
    return sa.Column(name, sa.Numeric(12, 2), nullable=False, server_default="0", **kwargs)


def upgrade() -> None:
    op.create_table(
        "menu_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("category", sa.Text(), nullable=False, server_default="food"),
        sa.Column("price", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("available", sa.Boolean(), nullable=False, server_default=sa.true()),
    )

    op.create_table(
        "inventory",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("menu_item_id", sa.Integer(), sa.ForeignKey("menu_items.id", ondelete="CASCADE"), nullable=False),
        sa.Column("cost_per_unit", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("quantity", sa.Numeric(14, 3), nullable=False, server_default="0"),
    )
    op.create_index("ix_inventory_menu_item", "inventory", ["menu_item_id"])

    op.create_table(
        "pos_settings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("service_fee_pct", sa.Numeric(6, 4), nullable=False, server_default="0.02"),
        sa.Column("delivery_fee_base", sa.Numeric(12, 2), nullable=False, server_default="1000"),
        sa.Column("delivery_fee_reduced", sa.Numeric(12, 2), nullable=False, server_default="500"),
        sa.Column("free_delivery_threshold", sa.Numeric(12, 2), nullable=False, server_default="2000"),
        sa.Column("tax_pct", sa.Numeric(6, 4), nullable=False, server_default="0.075"),
        sa.Column("tax_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
    )

    op.create_table(
        "tabs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tab_number", sa.Text(), nullable=False, unique=True),
        sa.Column("table_number", sa.Text(), nullable=False),
        sa.Column("user_id", sa.Integer()),
        sa.Column("opened_by_staff_id", sa.Integer()),
        sa.Column("customer_name", sa.Text()),
        sa.Column("customer_email", sa.Text()),
        sa.Column("customer_phone", sa.Text()),
        sa.Column("guest_id", sa.Text()),
        sa.Column("status", sa.Text(), nullable=False, server_default="open"),
        sa.Column("payment_status", sa.Text(), nullable=False, server_default="pending"),
        _money("subtotal"),
        _money("service_fee"),
        _money("tax"),
        _money("delivery_fee"),
        _money("discount_total"),
        _money("tip_amount"),
        _money("total"),
        sa.Column("opened_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("closed_at", sa.DateTime()),
        sa.Column("paid_at", sa.DateTime()),
        sa.Column("payment_reference", sa.Text(), unique=True),
        sa.Column("transaction_reference", sa.Text()),
        sa.Column("payment_method", sa.Text()),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("status IN ('open', 'settling', 'closed')", name="ck_tabs_status"),
    )
    # Une seule addition active (open / settling) par table.
    op.create_index(
        "ux_tabs_active_table",
        "tabs",
        ["table_number"],
        unique=True,
        postgresql_where=sa.text("status IN ('open', 'settling')"),
        sqlite_where=sa.text("status IN ('open', 'settling')"),
    )
    op.create_index("ix_tabs_opened_at", "tabs", ["opened_at"])

    op.create_table(
        "tab_discounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tab_id", sa.Integer(), sa.ForeignKey("tabs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("reference", sa.Text()),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("tab_id", "reference", name="uq_tab_discounts_reference"),
    )

    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_number", sa.Text(), nullable=False, unique=True),
        sa.Column("idempotency_key", sa.Text(), unique=True),
        sa.Column("user_id", sa.Integer()),
        sa.Column("guest_name", sa.Text()),
        sa.Column("guest_email", sa.Text()),
        sa.Column("guest_phone", sa.Text()),
        sa.Column("order_type", sa.Text(), nullable=False),
        sa.Column("table_number", sa.Text()),
        sa.Column("pickup_time", sa.DateTime()),
        sa.Column("delivery_address", sa.Text()),
        sa.Column("delivery_instructions", sa.Text()),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("payment_status", sa.Text(), nullable=False, server_default="pending"),
        _money("subtotal"),
        _money("tax"),
        _money("service_fee"),
        _money("delivery_fee"),
        _money("discount"),
        _money("total"),
        sa.Column("tab_id", sa.Integer(), sa.ForeignKey("tabs.id")),
        sa.Column("tab_linked_at", sa.DateTime()),
        sa.Column("payment_reference", sa.Text(), unique=True),
        sa.Column("transaction_reference", sa.Text()),
        sa.Column("payment_method", sa.Text()),
        sa.Column("paid_at", sa.DateTime()),
        _money("refund_amount"),
        sa.Column("refund_status", sa.Text(), nullable=False, server_default="none"),
        sa.Column("notes", sa.Text()),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("order_type IN ('dine-in', 'pickup', 'delivery')", name="ck_orders_type"),
        sa.CheckConstraint("total >= 0", name="ck_orders_total_positive"),
    )
    op.create_index("ix_orders_tab", "orders", ["tab_id"])
    op.create_index("ix_orders_paid_created", "orders", ["payment_status", "created_at"])

    op.create_table(
        "order_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("menu_item_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("subtotal", sa.Numeric(12, 2), nullable=False),
        sa.Column("special_instructions", sa.Text()),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.CheckConstraint("quantity >= 1", name="ck_order_items_quantity"),
    )
    op.create_index("ix_order_items_order", "order_items", ["order_id"])

    op.create_table(
        "order_status_history",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("note", sa.Text()),
        sa.Column("actor_id", sa.Integer()),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_order_status_history_order", "order_status_history", ["order_id"])

    op.create_table(
        "reward_offers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("code", sa.Text(), nullable=False, unique=True),
        sa.Column("description", sa.Text()),
        sa.Column("discount_type", sa.Text(), nullable=False),
        sa.Column("discount_value", sa.Numeric(12, 2), nullable=False),
        sa.Column("min_subtotal", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("max_discount", sa.Numeric(12, 2)),
        sa.Column("user_id", sa.Integer()),
        sa.Column("status", sa.Text(), nullable=False, server_default="active"),
        sa.Column("expires_at", sa.DateTime()),
    )

    op.create_table(
        "expenses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("expense_date", sa.Date(), nullable=False, server_default=sa.func.current_date()),
        sa.Column("expense_type", sa.Text(), nullable=False),
        sa.Column("category", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("supplier", sa.Text()),
        sa.Column("receipt_reference", sa.Text()),
        sa.Column("notes", sa.Text()),
        sa.Column("created_by", sa.Integer()),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("expense_type IN ('direct-cost', 'operating-expense')", name="ck_expenses_type"),
    )
    op.create_index("ix_expenses_date", "expenses", ["expense_date"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("actor_id", sa.Integer()),
        sa.Column("action", sa.Text(), nullable=False),
        sa.Column("resource", sa.Text(), nullable=False),
        sa.Column("resource_id", sa.Text(), nullable=False),
        sa.Column("details", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "pos_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("event_type", sa.Text(), nullable=False),
        sa.Column("payload", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("pos_events")
    op.drop_table("audit_logs")
    op.drop_index("ix_expenses_date", table_name="expenses")
    op.drop_table("expenses")
    op.drop_table("reward_offers")
    op.drop_index("ix_order_status_history_order", table_name="order_status_history")
    op.drop_table("order_status_history")
    op.drop_index("ix_order_items_order", table_name="order_items")
    op.drop_table("order_items")
    op.drop_index("ix_orders_paid_created", table_name="orders")
    op.drop_index("ix_orders_tab", table_name="orders")
    op.drop_table("orders")
    op.drop_table("tab_discounts")
    op.drop_index("ix_tabs_opened_at", table_name="tabs")
    op.drop_index("ux_tabs_active_table", table_name="tabs")
    op.drop_table("tabs")
    op.drop_table("pos_settings")
    op.drop_index("ix_inventory_menu_item", table_name="inventory")
    op.drop_table("inventory")
    op.drop_table("menu_items")
