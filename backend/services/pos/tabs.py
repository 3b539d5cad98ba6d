"""Tab aggregation: one running bill per table, fed by dine-in orders.

Membership is stored on the orders (``orders.tab_id``); the tab only keeps the
money aggregates. Every mutation recalculates inside the caller's transaction,
locks the tab row where the database supports it and writes with a version
check so that two concurrent writers cannot silently overwrite each other.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable

from sqlalchemy import text
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from core.data_repository import fetch_all, fetch_one, get_engine
from core.errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from core.fee_calculator import FeeSettingsProvider, as_amount, calculate_order_totals
from backend.services.pos import repository as repo
from backend.services.pos.constants import ORDER_NUMBER_ATTEMPTS, TAB_STATUSES
from backend.services.pos.events import EventSink, emit_safely, record_audit
from backend.services.pos.rewards import _eligible_offers, _get_offer_by_code, compute_discount
from backend.services.pos.utils import ZERO, db_timestamp, money, utcnow

LOGGER = logging.getLogger(__name__)


def generate_tab_number(table_number: str, now_ms: int | None = None) -> str:
    stamp = str(now_ms if now_ms is not None else int(time.time() * 1000))
    return f"TAB-{table_number}-{stamp[-6:]}"


def _next_tab_number(conn: Connection, table_number: str, now_ms: int) -> str:
    for offset in range(ORDER_NUMBER_ATTEMPTS):
        candidate = generate_tab_number(table_number, now_ms + offset)
        if repo.find_tab_by(conn, "tab_number", candidate) is None:
            return candidate
    raise ConflictError(f"Unable to allocate a tab number for table {table_number}, retry")


def _require_tab(conn: Connection, tab_id: int, *, lock: bool = True) -> dict[str, Any]:
    tab = repo.load_tab(conn, tab_id, lock=lock)
    if tab is None:
        raise NotFoundError(f"Tab {tab_id} not found", tab_id=tab_id)
    return tab


def _tab_total(tab: dict[str, Any]) -> Decimal:
    return (
        as_amount(tab["subtotal"])
        + as_amount(tab["service_fee"])
        + as_amount(tab["tax"])
        - as_amount(tab["discount_total"])
        + as_amount(tab["tip_amount"])
    )


def _ledger_discount(conn: Connection, tab_id: int) -> Decimal:
    row = fetch_one(
        conn,
        "SELECT COALESCE(SUM(amount), 0) AS amount FROM tab_discounts WHERE tab_id = :tab_id",
        {"tab_id": tab_id},
    )
    return as_amount(row["amount"] if row else 0)


def _require_mutable(tab: dict[str, Any]) -> None:
    if tab["status"] == "closed":
        raise InvalidStateError(f"Tab {tab['tab_number']} is closed", tab_id=tab["id"])
    if tab["status"] == "settling":
        # Le prestataire confirme le montant transmis à l'initialisation.
        raise InvalidStateError(
            f"Tab {tab['tab_number']} is being settled, its total cannot change",
            tab_id=tab["id"],
        )


def _recalculate(
    conn: Connection,
    tab: dict[str, Any],
    *,
    provider: FeeSettingsProvider | None = None,
    tip_amount: Decimal | None = None,
) -> dict[str, Any]:
    """Recompute the aggregates of an already locked tab from its orders and discounts."""

    _require_mutable(tab)

    row = fetch_one(
        conn,
        "SELECT COALESCE(SUM(subtotal), 0) AS subtotal FROM orders "
        "WHERE tab_id = :tab_id AND status <> 'cancelled'",
        {"tab_id": tab["id"]},
    )
    subtotal = as_amount(row["subtotal"] if row else 0)
    fees = calculate_order_totals(subtotal, "dine-in", provider=provider)
    tip = as_amount(tab["tip_amount"] if tip_amount is None else tip_amount)
    # Remises cumulées plafonnées à ce qui reste dû ; le registre tab_discounts reste intact.
    discount = min(_ledger_discount(conn, tab["id"]), subtotal + fees.service_fee + fees.tax + tip)
    total = subtotal + fees.service_fee + fees.tax - discount + tip

    repo.update_tab(
        conn,
        tab,
        {
            "subtotal": money(subtotal),
            "service_fee": money(fees.service_fee),
            "tax": money(fees.tax),
            "delivery_fee": 0,
            "discount_total": money(discount),
            "tip_amount": money(tip),
            "total": money(total),
        },
    )
    return tab


def _attach_order(
    conn: Connection,
    tab: dict[str, Any],
    order_id: int,
    *,
    provider: FeeSettingsProvider | None = None,
) -> dict[str, Any]:
    if tab["status"] != "open":
        raise InvalidStateError(
            f"Tab {tab['tab_number']} is {tab['status']}, orders can only join an open tab",
            tab_id=tab["id"],
        )
    order = repo.load_order(conn, order_id, lock=True)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found", order_id=order_id)
    if order["status"] == "cancelled":
        raise InvalidStateError(f"Order {order['order_number']} is cancelled", order_id=order_id)
    if order["tab_id"] is not None and int(order["tab_id"]) != int(tab["id"]):
        raise InvalidStateError(
            f"Order {order['order_number']} already belongs to tab {order['tab_id']}",
            order_id=order_id,
        )
    if order["tab_id"] is None:
        repo.update_order(conn, order, {"tab_id": tab["id"], "tab_linked_at": db_timestamp(utcnow())})
    return _recalculate(conn, tab, provider=provider)


def _details(conn: Connection, tab: dict[str, Any]) -> dict[str, Any]:
    orders = repo.load_tab_orders(conn, tab["id"])
    items = repo.load_order_items(conn, [order["id"] for order in orders])
    for order in orders:
        order["items"] = items.get(order["id"], [])
    return {**tab, "orders": orders}


def create_tab(
    table_number: str,
    identity: dict[str, Any] | None = None,
    *,
    opened_by_staff_id: int | None = None,
    event_sink: EventSink | None = None,
) -> dict[str, Any]:
    """Open a tab for a table; a table has at most one open or settling tab."""

    table = str(table_number or "").strip()
    if not table:
        raise ValidationError("table_number is required")
    identity = identity or {}
    now = utcnow()

    try:
        with get_engine().begin() as conn:
            existing = repo.find_active_tab(conn, table)
            if existing is not None:
                raise ConflictError(
                    f"Table {table} already has an active tab ({existing['tab_number']})",
                    tab_id=existing["id"],
                )
            result = conn.execute(
                text(
                    """
                    INSERT INTO tabs (
                        tab_number, table_number, user_id, opened_by_staff_id, customer_name,
                        customer_email, customer_phone, guest_id, status, payment_status,
                        subtotal, service_fee, tax, delivery_fee, discount_total, tip_amount,
                        total, opened_at, version, created_at, updated_at
                    )
                    VALUES (
                        :tab_number, :table_number, :user_id, :opened_by_staff_id, :customer_name,
                        :customer_email, :customer_phone, :guest_id, 'open', 'pending',
                        0, 0, 0, 0, 0, 0, 0, :now, 1, :now, :now
                    )
                    RETURNING id
                    """
                ),
                {
                    "tab_number": _next_tab_number(conn, table, int(now.timestamp() * 1000)),
                    "table_number": table,
                    "user_id": identity.get("user_id"),
                    "opened_by_staff_id": opened_by_staff_id,
                    "customer_name": identity.get("customer_name"),
                    "customer_email": identity.get("customer_email"),
                    "customer_phone": identity.get("customer_phone"),
                    "guest_id": identity.get("guest_id"),
                    "now": db_timestamp(now),
                },
            )
            tab_id = int(result.scalar_one())
            tab = _details(conn, _require_tab(conn, tab_id, lock=False))
    except IntegrityError as exc:
        raise ConflictError(f"Table {table} already has an active tab") from exc

    LOGGER.info("Tab %s opened for table %s", tab["tab_number"], table)
    emit_safely(event_sink, "tab.opened", {"tab_id": tab["id"], "tab_number": tab["tab_number"], "table_number": table})
    return tab


def add_order_to_tab(
    tab_id: int,
    order_id: int,
    *,
    provider: FeeSettingsProvider | None = None,
) -> dict[str, Any]:
    with get_engine().begin() as conn:
        tab = _require_tab(conn, tab_id)
        _attach_order(conn, tab, order_id, provider=provider)
        return _details(conn, tab)


def recalculate_totals(tab_id: int, *, provider: FeeSettingsProvider | None = None) -> dict[str, Any]:
    with get_engine().begin() as conn:
        tab = _require_tab(conn, tab_id)
        return _recalculate(conn, tab, provider=provider)


def prepare_for_checkout(
    tab_id: int,
    tip_amount: Any = 0,
    *,
    provider: FeeSettingsProvider | None = None,
) -> dict[str, Any]:
    """Set the tip, refresh totals and list the reward offers the tab qualifies for."""

    tip = as_amount(tip_amount)
    if tip < 0:
        raise ValidationError("tip_amount must be non-negative")
    with get_engine().begin() as conn:
        tab = _require_tab(conn, tab_id)
        _recalculate(conn, tab, provider=provider, tip_amount=tip)
        offers = _eligible_offers(conn, tab["subtotal"], tab.get("user_id"), utcnow())
        return {"tab": _details(conn, tab), "eligible_rewards": offers}


def _apply_discount(conn: Connection, tab: dict[str, Any], amount: Decimal, reference: str | None) -> dict[str, Any]:
    _require_mutable(tab)
    if reference:
        already = fetch_one(
            conn,
            "SELECT id FROM tab_discounts WHERE tab_id = :tab_id AND reference = :reference",
            {"tab_id": tab["id"], "reference": reference},
        )
        if already is not None:
            LOGGER.info("Discount %s already applied to tab %s", reference, tab["tab_number"])
            return tab

    discount_total = _ledger_discount(conn, tab["id"]) + amount
    total = _tab_total({**tab, "discount_total": discount_total})
    if total < 0:
        raise ValidationError(
            f"Discount of {amount} would make the tab total negative",
            tab_id=tab["id"],
        )
    conn.execute(
        text(
            "INSERT INTO tab_discounts (tab_id, reference, amount, created_at) "
            "VALUES (:tab_id, :reference, :amount, :created_at)"
        ),
        {"tab_id": tab["id"], "reference": reference, "amount": money(amount), "created_at": db_timestamp(utcnow())},
    )
    repo.update_tab(conn, tab, {"discount_total": money(discount_total), "total": money(total)})
    return tab


def apply_discount(tab_id: int, amount: Any, reference: str | None = None) -> dict[str, Any]:
    """Add a discount to the tab; a given ``reference`` is only ever applied once."""

    value = as_amount(amount)
    if value <= 0:
        raise ValidationError("Discount amount must be positive")
    try:
        with get_engine().begin() as conn:
            tab = _require_tab(conn, tab_id)
            return _apply_discount(conn, tab, value, reference)
    except IntegrityError as exc:
        raise ConflictError(f"Discount {reference} was applied concurrently", tab_id=tab_id) from exc


def apply_reward_offer(tab_id: int, code: str) -> dict[str, Any]:
    """Redeem a reward offer against the tab subtotal."""

    if not str(code or "").strip():
        raise ValidationError("Offer code is required")
    with get_engine().begin() as conn:
        tab = _require_tab(conn, tab_id)
        offer = _get_offer_by_code(conn, code)
        if offer is None:
            raise NotFoundError(f"Reward offer {code} not found")
        eligible = {item["id"] for item in _eligible_offers(conn, tab["subtotal"], tab.get("user_id"), utcnow())}
        if offer["id"] not in eligible:
            raise ValidationError(f"Reward offer {offer['code']} is not applicable to this tab")
        discount = compute_discount(offer, tab["subtotal"])
        if discount <= ZERO:
            raise ValidationError(f"Reward offer {offer['code']} yields no discount")
        return _apply_discount(conn, tab, discount, f"offer:{offer['code']}")


def close_tab(tab_id: int, *, actor_id: int | None = None, event_sink: EventSink | None = None) -> dict[str, Any]:
    """Administrative void: the tab is closed without touching its payment status."""

    with get_engine().begin() as conn:
        tab = _require_tab(conn, tab_id)
        if tab["status"] == "closed":
            raise InvalidStateError(f"Tab {tab['tab_number']} is already closed", tab_id=tab_id)
        repo.update_tab(conn, tab, {"status": "closed", "closed_at": db_timestamp(utcnow())})
        record_audit(
            conn,
            actor_id=actor_id,
            action="tab.closed",
            resource="tab",
            resource_id=tab["id"],
            details={"tab_number": tab["tab_number"], "payment_status": tab["payment_status"]},
        )
    emit_safely(event_sink, "tab.closed", {"tab_id": tab["id"], "tab_number": tab["tab_number"]})
    return tab


def get_tab_details(tab_id: int) -> dict[str, Any]:
    with get_engine().begin() as conn:
        tab = _require_tab(conn, tab_id, lock=False)
        return _details(conn, tab)


def get_open_tab_for_table(table_number: str) -> dict[str, Any] | None:
    with get_engine().begin() as conn:
        tab = repo.find_active_tab(conn, str(table_number).strip())
        return _details(conn, tab) if tab else None


def list_tabs(
    statuses: Iterable[str] | None = None,
    table_number: str | None = None,
    user_id: int | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    *,
    limit: int = 100,
) -> list[dict[str, Any]]:
    sql = f"SELECT {repo.TAB_COLUMNS} FROM tabs WHERE 1 = 1"
    params: dict[str, Any] = {"limit": int(max(1, limit))}
    status_list = [status for status in (statuses or []) if status]
    unknown = sorted(set(status_list) - set(TAB_STATUSES))
    if unknown:
        raise ValidationError(f"Unknown tab status: {', '.join(unknown)}")
    if status_list:
        placeholders = ", ".join(f":status_{index}" for index in range(len(status_list)))
        sql += f" AND status IN ({placeholders})"
        params.update({f"status_{index}": status for index, status in enumerate(status_list)})
    if table_number:
        sql += " AND table_number = :table_number"
        params["table_number"] = str(table_number).strip()
    if user_id is not None:
        sql += " AND user_id = :user_id"
        params["user_id"] = int(user_id)
    if start is not None:
        sql += " AND opened_at >= :start"
        params["start"] = db_timestamp(start)
    if end is not None:
        sql += " AND opened_at <= :end"
        params["end"] = db_timestamp(end)
    sql += " ORDER BY opened_at DESC, id DESC LIMIT :limit"
    with get_engine().begin() as conn:
        return [repo.normalize_tab(row) for row in fetch_all(conn, sql, params)]
