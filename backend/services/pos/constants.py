"""Statuts, transitions et tables de correspondance du module POS."""

from __future__ import annotations

ORDER_TYPES = ("dine-in", "pickup", "delivery")

ORDER_STATUSES = (
    "pending",
    "confirmed",
    "preparing",
    "ready",
    "out-for-delivery",
    "delivered",
    "completed",
    "cancelled",
)
TERMINAL_ORDER_STATUSES = frozenset({"delivered", "completed", "cancelled"})

# ready -> out-for-delivery réservé aux livraisons, ready -> completed aux autres types.
ORDER_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"confirmed", "cancelled"}),
    "confirmed": frozenset({"preparing", "cancelled"}),
    "preparing": frozenset({"ready", "cancelled"}),
    "ready": frozenset({"completed", "out-for-delivery", "cancelled"}),
    "out-for-delivery": frozenset({"delivered", "cancelled"}),
    "delivered": frozenset(),
    "completed": frozenset(),
    "cancelled": frozenset(),
}

TAB_STATUSES = ("open", "settling", "closed")

GATEWAY_STATUS_MAP = {
    "PAID": "paid",
    "OVERPAID": "paid",
    "FAILED": "failed",
    "EXPIRED": "failed",
    "CANCELLED": "cancelled",
    "PENDING": "pending",
    "PARTIALLY_PAID": "pending",
}

MANUAL_PAYMENT_TYPES = ("cash", "transfer", "card")
PAYMENT_KINDS = {"tab": "TAB", "order": "ORD"}

FULL_REFUND_STATUSES = frozenset({"pending", "confirmed"})
HALF_REFUND_STATUSES = frozenset({"preparing"})

EXPENSE_TYPES = ("direct-cost", "operating-expense")
DRINK_CATEGORIES = frozenset({"drink", "drinks"})

ROLE_PRIORITY = {"customer": 0, "staff": 1, "manager": 2, "admin": 3}

ORDER_NUMBER_PREFIX = "WGB"
ORDER_NUMBER_ATTEMPTS = 5


def map_gateway_status(raw: str | None) -> str:
    """Traduit un statut prestataire en statut de paiement interne (défaut : pending)."""

    return GATEWAY_STATUS_MAP.get(str(raw or "").strip().upper(), "pending")


def is_transition_allowed(current: str, target: str, order_type: str) -> bool:
    if target not in ORDER_TRANSITIONS.get(current, frozenset()):
        return False
    if current == "ready" and target == "out-for-delivery":
        return order_type == "delivery"
    if current == "ready" and target == "completed":
        return order_type != "delivery"
    return True
