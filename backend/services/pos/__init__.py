"""
POS services - orders, tabs, settlement and financial reporting.

Sub-modules:
- constants: statuses, transition table, gateway status mapping
- repository: SQL helpers shared inside one transaction
- orders: order lifecycle (creation, transitions, cancellation, refunds)
- tabs: per-table tab aggregation and checkout preparation
- settlement: payment initialization, verification, cascades, webhooks
- reports: daily / range profit and loss summary, expense ledger
- rewards: reward offers eligible at checkout
- events: post-commit events and audit log
"""

from backend.services.pos.orders import (
    Actor,
    add_order_note,
    cancel_order,
    compute_refund_amount,
    create_order,
    get_order,
    list_orders,
    update_status,
)
from backend.services.pos.tabs import (
    add_order_to_tab,
    apply_discount,
    apply_reward_offer,
    close_tab,
    create_tab,
    get_open_tab_for_table,
    get_tab_details,
    list_tabs,
    prepare_for_checkout,
    recalculate_totals,
)
from backend.services.pos.settlement import (
    complete_payment_manually,
    generate_payment_reference,
    handle_gateway_webhook,
    initialize_order_payment,
    initialize_tab_payment,
    verify_payment,
)
from backend.services.pos.reports import (
    generate_summary,
    list_expenses,
    record_expense,
)
from backend.services.pos.rewards import (
    compute_discount,
    eligible_offers,
)

__all__ = [
    # Orders
    "Actor",
    "create_order",
    "get_order",
    "list_orders",
    "update_status",
    "cancel_order",
    "add_order_note",
    "compute_refund_amount",
    # Tabs
    "create_tab",
    "add_order_to_tab",
    "recalculate_totals",
    "prepare_for_checkout",
    "apply_discount",
    "apply_reward_offer",
    "close_tab",
    "get_tab_details",
    "get_open_tab_for_table",
    "list_tabs",
    # Settlement
    "generate_payment_reference",
    "initialize_tab_payment",
    "initialize_order_payment",
    "verify_payment",
    "complete_payment_manually",
    "handle_gateway_webhook",
    # Reports
    "generate_summary",
    "record_expense",
    "list_expenses",
    # Rewards
    "eligible_offers",
    "compute_discount",
]
