"""Order lifecycle: creation, status transitions, cancellation and refunds."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping

from sqlalchemy import text
from sqlalchemy.engine import Connection

from core.data_repository import fetch_all, get_engine
from core.errors import (
    GatewayError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from core.fee_calculator import FeeSettingsProvider, as_amount, calculate_order_totals
from core.payment_gateway import PaymentGateway, get_payment_gateway
from backend.services.pos import repository as repo
from backend.services.pos import tabs as tab_service
from backend.services.pos.constants import (
    FULL_REFUND_STATUSES,
    HALF_REFUND_STATUSES,
    ORDER_NUMBER_ATTEMPTS,
    ORDER_NUMBER_PREFIX,
    ORDER_STATUSES,
    ORDER_TYPES,
    TERMINAL_ORDER_STATUSES,
    is_transition_allowed,
)
from backend.services.pos.events import EventSink, emit_safely
from backend.services.pos.utils import ZERO, db_timestamp, money, parse_timestamp, utcnow

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    """Utilisateur à l'origine d'une opération (identifiant + rôle)."""

    id: int | None
    role: str = "staff"


def generate_order_number(now_ms: int | None = None) -> str:
    stamp = str(now_ms if now_ms is not None else int(time.time() * 1000))
    return f"{ORDER_NUMBER_PREFIX}{stamp[-8:]}"


def compute_refund_amount(previous_status: str, payment_status: str, total: Any) -> Decimal:
    """Remboursement intégral avant préparation, moitié pendant, rien ensuite."""

    if payment_status != "paid":
        return ZERO
    amount = as_amount(total)
    if previous_status in FULL_REFUND_STATUSES:
        return amount
    if previous_status in HALF_REFUND_STATUSES:
        return as_amount(amount / 2)
    return ZERO


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


def _validate_items(raw_items: Any) -> list[dict[str, Any]]:
    if not raw_items:
        raise ValidationError("An order needs at least one item")
    items: list[dict[str, Any]] = []
    for position, raw in enumerate(raw_items):
        if not isinstance(raw, Mapping):
            raise ValidationError(f"Item #{position + 1} is malformed")
        name = _clean(raw.get("name"))
        if raw.get("menu_item_id") is None or not name:
            raise ValidationError(f"Item #{position + 1} needs a menu_item_id and a name")
        try:
            quantity = int(raw.get("quantity", 0))
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Item #{position + 1} has an invalid quantity") from exc
        if quantity < 1:
            raise ValidationError(f"Item #{position + 1} quantity must be at least 1")
        price = as_amount(raw.get("price"), default="-1")
        if price < 0:
            raise ValidationError(f"Item #{position + 1} price must be non-negative")
        items.append(
            {
                "menu_item_id": int(raw["menu_item_id"]),
                "name": name,
                "price": price,
                "quantity": quantity,
                "subtotal": price * quantity,
                "special_instructions": _clean(raw.get("special_instructions")),
                "position": position,
            }
        )
    return items


def _validate_identity(payload: Mapping[str, Any], user_id: int | None) -> dict[str, Any]:
    if user_id is not None:
        return {"user_id": int(user_id), "guest_name": None, "guest_email": None, "guest_phone": None}
    guest = {key: _clean(payload.get(key)) for key in ("guest_name", "guest_email", "guest_phone")}
    missing = [key for key, value in guest.items() if not value]
    if missing:
        raise ValidationError(f"Guest checkout requires {', '.join(missing)}")
    return {"user_id": None, **guest}


def _validate_type_detail(payload: Mapping[str, Any]) -> dict[str, Any]:
    order_type = _clean(payload.get("order_type"))
    if order_type not in ORDER_TYPES:
        raise ValidationError(f"order_type must be one of {', '.join(ORDER_TYPES)}")
    detail: dict[str, Any] = {
        "order_type": order_type,
        "table_number": None,
        "pickup_time": None,
        "delivery_address": None,
        "delivery_instructions": None,
    }
    if order_type == "dine-in":
        detail["table_number"] = _clean(payload.get("table_number"))
        if not detail["table_number"]:
            raise ValidationError("Dine-in orders require a table_number")
    elif order_type == "pickup":
        try:
            pickup_time = parse_timestamp(payload.get("pickup_time"))
        except ValueError as exc:
            raise ValidationError("pickup_time is not a valid timestamp") from exc
        if pickup_time is None:
            raise ValidationError("Pickup orders require a pickup_time")
        detail["pickup_time"] = db_timestamp(pickup_time)
    else:
        detail["delivery_address"] = _clean(payload.get("delivery_address"))
        if not detail["delivery_address"]:
            raise ValidationError("Delivery orders require a delivery_address")
        detail["delivery_instructions"] = _clean(payload.get("delivery_instructions"))
    return detail


def _next_order_number(conn: Connection, now_ms: int) -> str:
    for offset in range(ORDER_NUMBER_ATTEMPTS):
        candidate = generate_order_number(now_ms + offset)
        if repo.find_order_by(conn, "order_number", candidate) is None:
            return candidate
        LOGGER.debug("Order number %s already taken, trying the next one", candidate)
    raise InvalidStateError("Unable to allocate a unique order number, retry the checkout")


def _require_order(conn: Connection, order_id: int, *, lock: bool = True) -> dict[str, Any]:
    order = repo.load_order(conn, order_id, lock=lock)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found", order_id=order_id)
    return order


def _order_details(conn: Connection, order: dict[str, Any]) -> dict[str, Any]:
    details = dict(order)
    details["items"] = repo.load_order_items(conn, [order["id"]]).get(order["id"], [])
    details["status_history"] = repo.load_status_history(conn, order["id"])
    return details


def create_order(
    payload: Mapping[str, Any],
    user_id: int | None = None,
    *,
    provider: FeeSettingsProvider | None = None,
    event_sink: EventSink | None = None,
) -> dict[str, Any]:
    """Validate a checkout payload and persist the order as ``pending``.

    A payload carrying an ``idempotency_key`` that was already used returns the
    existing order unchanged. A ``tab_id`` attaches the order to that tab within
    the same transaction.
    """

    items = _validate_items(payload.get("items"))
    identity = _validate_identity(payload, user_id)
    detail = _validate_type_detail(payload)
    idempotency_key = _clean(payload.get("idempotency_key"))
    tab_id = payload.get("tab_id")
    if tab_id is not None and detail["order_type"] != "dine-in":
        raise ValidationError("Only dine-in orders can be added to a tab")

    subtotal = sum((item["subtotal"] for item in items), ZERO)
    fees = calculate_order_totals(subtotal, detail["order_type"], provider=provider)
    discount = as_amount(payload.get("discount"))
    if discount < 0 or discount > fees.total:
        raise ValidationError("discount must be between 0 and the order total")
    total = fees.total - discount

    now = utcnow()
    with get_engine().begin() as conn:
        if idempotency_key:
            existing = repo.find_order_by(conn, "idempotency_key", idempotency_key)
            if existing is not None:
                LOGGER.info("Checkout replay for key %s -> order %s", idempotency_key, existing["order_number"])
                return _order_details(conn, existing)

        order_number = _next_order_number(conn, int(now.timestamp() * 1000))
        result = conn.execute(
            text(
                """
                INSERT INTO orders (
                    order_number, idempotency_key, user_id, guest_name, guest_email, guest_phone,
                    order_type, table_number, pickup_time, delivery_address, delivery_instructions,
                    status, payment_status, subtotal, tax, service_fee, delivery_fee, discount,
                    total, refund_amount, refund_status, notes, version, created_at, updated_at
                )
                VALUES (
                    :order_number, :idempotency_key, :user_id, :guest_name, :guest_email, :guest_phone,
                    :order_type, :table_number, :pickup_time, :delivery_address, :delivery_instructions,
                    'pending', 'pending', :subtotal, :tax, :service_fee, :delivery_fee, :discount,
                    :total, 0, 'none', :notes, 1, :now, :now
                )
                RETURNING id
                """
            ),
            {
                "order_number": order_number,
                "idempotency_key": idempotency_key,
                **identity,
                **detail,
                "subtotal": money(fees.subtotal),
                "tax": money(fees.tax),
                "service_fee": money(fees.service_fee),
                "delivery_fee": money(fees.delivery_fee),
                "discount": money(discount),
                "total": money(total),
                "notes": _clean(payload.get("notes")),
                "now": db_timestamp(now),
            },
        )
        order_id = int(result.scalar_one())
        conn.execute(
            text(
                """
                INSERT INTO order_items (
                    order_id, menu_item_id, name, price, quantity, subtotal, special_instructions, position
                )
                VALUES (
                    :order_id, :menu_item_id, :name, :price, :quantity, :subtotal, :special_instructions, :position
                )
                """
            ),
            [
                {
                    "order_id": order_id,
                    "menu_item_id": item["menu_item_id"],
                    "name": item["name"],
                    "price": money(item["price"]),
                    "quantity": item["quantity"],
                    "subtotal": money(item["subtotal"]),
                    "special_instructions": item["special_instructions"],
                    "position": item["position"],
                }
                for item in items
            ],
        )
        repo.append_history(conn, order_id, "pending", "Order placed", identity["user_id"])

        if tab_id is not None:
            tab = tab_service._require_tab(conn, int(tab_id))
            tab_service._attach_order(conn, tab, order_id, provider=provider)

        order = _order_details(conn, _require_order(conn, order_id, lock=False))

    LOGGER.info("Order %s created (%s, total %s)", order_number, detail["order_type"], total)
    emit_safely(
        event_sink,
        "order.created",
        {
            "order_id": order["id"],
            "order_number": order_number,
            "order_type": order["order_type"],
            "table_number": order["table_number"],
            "tab_id": order["tab_id"],
            "total": str(order["total"]),
            "items": [
                {
                    "name": item["name"],
                    "quantity": item["quantity"],
                    "special_instructions": item["special_instructions"],
                }
                for item in order["items"]
            ],
        },
    )
    return order


def get_order(order_id: int) -> dict[str, Any]:
    with get_engine().begin() as conn:
        return _order_details(conn, _require_order(conn, order_id, lock=False))


def list_orders(
    status: str | None = None,
    tab_id: int | None = None,
    user_id: int | None = None,
    *,
    limit: int = 50,
) -> list[dict[str, Any]]:
    sql = f"SELECT {repo.ORDER_COLUMNS} FROM orders WHERE 1 = 1"
    params: dict[str, Any] = {"limit": int(max(1, limit))}
    if status:
        if status not in ORDER_STATUSES:
            raise ValidationError(f"Unknown order status {status!r}", status=status)
        sql += " AND status = :status"
        params["status"] = status
    if tab_id is not None:
        sql += " AND tab_id = :tab_id"
        params["tab_id"] = int(tab_id)
    if user_id is not None:
        sql += " AND user_id = :user_id"
        params["user_id"] = int(user_id)
    sql += " ORDER BY created_at DESC, id DESC LIMIT :limit"
    with get_engine().begin() as conn:
        return [repo.normalize_order(row) for row in fetch_all(conn, sql, params)]


def update_status(
    order_id: int,
    new_status: str,
    note: str | None = None,
    actor: Actor | None = None,
    *,
    provider: FeeSettingsProvider | None = None,
    gateway: PaymentGateway | None = None,
    event_sink: EventSink | None = None,
) -> dict[str, Any]:
    if new_status not in ORDER_STATUSES:
        raise ValidationError(f"Unknown order status {new_status!r}")
    if new_status == "cancelled":
        return cancel_order(
            order_id,
            reason=note,
            actor=actor,
            provider=provider,
            gateway=gateway,
            event_sink=event_sink,
        )

    with get_engine().begin() as conn:
        order = _require_order(conn, order_id)
        current = order["status"]
        if not is_transition_allowed(current, new_status, order["order_type"]):
            raise InvalidTransitionError(
                f"Order {order['order_number']} cannot go from {current} to {new_status}",
                order_id=order_id,
            )
        repo.update_order(conn, order, {"status": new_status})
        repo.append_history(conn, order_id, new_status, _clean(note), getattr(actor, "id", None))
        details = _order_details(conn, order)

    LOGGER.info("Order %s: %s -> %s", order["order_number"], current, new_status)
    emit_safely(
        event_sink,
        "order.status_changed",
        {"order_id": order["id"], "status": new_status, "note": _clean(note)},
    )
    return details


def add_order_note(order_id: int, note: str, actor: Actor | None = None) -> dict[str, Any]:
    text_note = _clean(note)
    if not text_note:
        raise ValidationError("Note cannot be empty")
    with get_engine().begin() as conn:
        order = _require_order(conn, order_id)
        repo.append_history(conn, order_id, order["status"], text_note, getattr(actor, "id", None))
        return _order_details(conn, order)


def _flag_refund(order_id: int, refund_status: str) -> None:
    with get_engine().begin() as conn:
        order = _require_order(conn, order_id)
        repo.update_order(conn, order, {"refund_status": refund_status})


def _execute_refund(order: dict[str, Any], amount: Decimal, reason: str, gateway: PaymentGateway | None) -> str:
    """Hand the refund to the gateway; any failure leaves it for manual review."""

    transaction_reference = order.get("transaction_reference")
    if not transaction_reference:
        LOGGER.warning("Order %s has no gateway transaction to refund", order["order_number"])
        _flag_refund(order["id"], "manual_review")
        return "manual_review"
    try:
        (gateway or get_payment_gateway()).initiate_refund(transaction_reference, amount, reason)
    except GatewayError as exc:
        LOGGER.error("Refund of %s for order %s failed: %s", amount, order["order_number"], exc)
        _flag_refund(order["id"], "manual_review")
        return "manual_review"
    LOGGER.info("Refund of %s initiated for order %s", amount, order["order_number"])
    return "initiated"


def cancel_order(
    order_id: int,
    reason: str | None = None,
    actor: Actor | None = None,
    *,
    provider: FeeSettingsProvider | None = None,
    gateway: PaymentGateway | None = None,
    event_sink: EventSink | None = None,
) -> dict[str, Any]:
    """Cancel an order, recompute its open tab and refund what the policy allows."""

    reason = _clean(reason)
    with get_engine().begin() as conn:
        order = _require_order(conn, order_id)
        if getattr(actor, "role", None) == "customer" and order["user_id"] != getattr(actor, "id", None):
            raise UnauthorizedError("Customers can only cancel their own orders", order_id=order_id)
        previous = order["status"]
        if previous in TERMINAL_ORDER_STATUSES:
            raise InvalidTransitionError(
                f"Order {order['order_number']} is {previous} and cannot be cancelled",
                order_id=order_id,
            )
        tab = repo.load_tab(conn, order["tab_id"], lock=True) if order["tab_id"] is not None else None
        if tab is not None and tab["status"] == "settling":
            raise InvalidStateError(
                f"Order {order['order_number']} belongs to tab {tab['tab_number']} which is being settled",
                order_id=order_id,
            )

        refund = compute_refund_amount(previous, order["payment_status"], order["total"])
        if refund > 0:
            payment_status = "refunded"
        elif order["payment_status"] == "paid":
            payment_status = "paid"
        else:
            payment_status = "cancelled"
        repo.update_order(
            conn,
            order,
            {
                "status": "cancelled",
                "payment_status": payment_status,
                "refund_amount": money(refund),
                "refund_status": "initiated" if refund > 0 else "none",
            },
        )
        repo.append_history(conn, order_id, "cancelled", reason, getattr(actor, "id", None))
        if tab is not None and tab["status"] == "open":
            tab_service._recalculate(conn, tab, provider=provider)

    LOGGER.info("Order %s cancelled from %s (refund %s)", order["order_number"], previous, refund)
    emit_safely(event_sink, "order.status_changed", {"order_id": order["id"], "status": "cancelled", "note": reason})
    if refund > 0:
        _execute_refund(order, refund, reason or f"Order {order['order_number']} cancelled", gateway)
    return get_order(order_id)
