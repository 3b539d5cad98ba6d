"""Lectures et écritures SQL partagées par les services commandes, tabs et règlement.

Toutes les fonctions reçoivent la connexion de la transaction en cours ; aucune
n'ouvre sa propre transaction.
"""

from __future__ import annotations

from typing import Any, Iterable

from sqlalchemy import bindparam, text
from sqlalchemy.engine import Connection

from core.data_repository import fetch_all, fetch_one, for_update
from core.errors import ConflictError
from backend.services.pos.utils import db_timestamp, normalize_row, utcnow

ORDER_AMOUNTS = ("subtotal", "tax", "service_fee", "delivery_fee", "discount", "total", "refund_amount")
ORDER_TIMESTAMPS = ("pickup_time", "tab_linked_at", "paid_at", "created_at", "updated_at")
TAB_AMOUNTS = ("subtotal", "service_fee", "tax", "delivery_fee", "discount_total", "tip_amount", "total")
TAB_TIMESTAMPS = ("opened_at", "closed_at", "paid_at", "created_at", "updated_at")

ORDER_COLUMNS = """
    id, order_number, idempotency_key, user_id, guest_name, guest_email, guest_phone,
    order_type, table_number, pickup_time, delivery_address, delivery_instructions,
    status, payment_status, subtotal, tax, service_fee, delivery_fee, discount, total,
    tab_id, tab_linked_at, payment_reference, transaction_reference, payment_method,
    paid_at, refund_amount, refund_status, notes, version, created_at, updated_at
"""

TAB_COLUMNS = """
    id, tab_number, table_number, user_id, opened_by_staff_id, customer_name,
    customer_email, customer_phone, guest_id, status, payment_status, subtotal,
    service_fee, tax, delivery_fee, discount_total, tip_amount, total, opened_at,
    closed_at, paid_at, payment_reference, transaction_reference, payment_method,
    version, created_at, updated_at
"""


def normalize_order(row: dict[str, Any] | None) -> dict[str, Any] | None:
    if row is None:
        return None
    return normalize_row(row, amounts=ORDER_AMOUNTS, timestamps=ORDER_TIMESTAMPS)


def normalize_tab(row: dict[str, Any] | None) -> dict[str, Any] | None:
    if row is None:
        return None
    return normalize_row(row, amounts=TAB_AMOUNTS, timestamps=TAB_TIMESTAMPS)


def load_order(conn: Connection, order_id: int, *, lock: bool = False) -> dict[str, Any] | None:
    sql = f"SELECT {ORDER_COLUMNS} FROM orders WHERE id = :id"
    if lock:
        sql += for_update(conn)
    return normalize_order(fetch_one(conn, sql, {"id": int(order_id)}))


def load_tab(conn: Connection, tab_id: int, *, lock: bool = False) -> dict[str, Any] | None:
    sql = f"SELECT {TAB_COLUMNS} FROM tabs WHERE id = :id"
    if lock:
        sql += for_update(conn)
    return normalize_tab(fetch_one(conn, sql, {"id": int(tab_id)}))


def find_order_by(conn: Connection, column: str, value: Any) -> dict[str, Any] | None:
    if column not in {"payment_reference", "idempotency_key", "order_number", "transaction_reference"}:
        raise ValueError(f"Unsupported lookup column {column!r}")
    return normalize_order(fetch_one(conn, f"SELECT {ORDER_COLUMNS} FROM orders WHERE {column} = :value", {"value": value}))


def find_tab_by(conn: Connection, column: str, value: Any) -> dict[str, Any] | None:
    if column not in {"payment_reference", "transaction_reference", "tab_number"}:
        raise ValueError(f"Unsupported lookup column {column!r}")
    return normalize_tab(fetch_one(conn, f"SELECT {TAB_COLUMNS} FROM tabs WHERE {column} = :value", {"value": value}))


def find_active_tab(conn: Connection, table_number: str) -> dict[str, Any] | None:
    return normalize_tab(
        fetch_one(
            conn,
            f"""
            SELECT {TAB_COLUMNS} FROM tabs
            WHERE table_number = :table_number AND status IN ('open', 'settling')
            ORDER BY id DESC
            LIMIT 1
            """,
            {"table_number": table_number},
        )
    )


def load_tab_orders(conn: Connection, tab_id: int, *, lock: bool = False) -> list[dict[str, Any]]:
    """Commandes du tab dans l'ordre de rattachement."""

    sql = f"SELECT {ORDER_COLUMNS} FROM orders WHERE tab_id = :tab_id ORDER BY tab_linked_at, id"
    if lock:
        sql += for_update(conn)
    return [normalize_order(row) for row in fetch_all(conn, sql, {"tab_id": int(tab_id)})]


def load_order_items(conn: Connection, order_ids: Iterable[int]) -> dict[int, list[dict[str, Any]]]:
    ids = [int(value) for value in order_ids]
    grouped: dict[int, list[dict[str, Any]]] = {order_id: [] for order_id in ids}
    if not ids:
        return grouped
    statement = text(
        """
        SELECT id, order_id, menu_item_id, name, price, quantity, subtotal, special_instructions
        FROM order_items
        WHERE order_id IN :ids
        ORDER BY order_id, position, id
        """
    ).bindparams(bindparam("ids", expanding=True))
    for row in conn.execute(statement, {"ids": ids}):
        item = normalize_row(row._mapping, amounts=("price", "subtotal"))
        item["quantity"] = int(item["quantity"])
        grouped.setdefault(int(item["order_id"]), []).append(item)
    return grouped


def load_status_history(conn: Connection, order_id: int) -> list[dict[str, Any]]:
    rows = fetch_all(
        conn,
        """
        SELECT id, status, note, actor_id, created_at
        FROM order_status_history
        WHERE order_id = :order_id
        ORDER BY created_at, id
        """,
        {"order_id": int(order_id)},
    )
    return [normalize_row(row, timestamps=("created_at",)) for row in rows]


def append_history(
    conn: Connection,
    order_id: int,
    status: str,
    note: str | None = None,
    actor_id: int | None = None,
) -> None:
    conn.execute(
        text(
            """
            INSERT INTO order_status_history (order_id, status, note, actor_id, created_at)
            VALUES (:order_id, :status, :note, :actor_id, :created_at)
            """
        ),
        {
            "order_id": int(order_id),
            "status": status,
            "note": note,
            "actor_id": actor_id,
            "created_at": db_timestamp(utcnow()),
        },
    )


def _compare_and_swap(
    conn: Connection,
    table: str,
    entity: dict[str, Any],
    changes: dict[str, Any],
    *,
    amounts: tuple[str, ...],
    timestamps: tuple[str, ...],
) -> None:
    assignments = ", ".join(f"{column} = :{column}" for column in changes)
    params = dict(changes)
    params.update({"_id": int(entity["id"]), "_version": int(entity["version"])})
    result = conn.execute(
        text(
            f"UPDATE {table} SET {assignments}, version = version + 1 "
            "WHERE id = :_id AND version = :_version"
        ),
        params,
    )
    if result.rowcount != 1:
        raise ConflictError(f"{table[:-1].capitalize()} {entity['id']} was modified concurrently", id=entity["id"])
    entity.update(normalize_row(changes, amounts=amounts, timestamps=timestamps))
    entity["version"] = int(entity["version"]) + 1


def update_order(conn: Connection, order: dict[str, Any], changes: dict[str, Any]) -> None:
    """Écrit ``changes`` si la version lue est toujours la version en base."""

    changes = {**changes, "updated_at": db_timestamp(utcnow())}
    _compare_and_swap(conn, "orders", order, changes, amounts=ORDER_AMOUNTS, timestamps=ORDER_TIMESTAMPS)


def update_tab(conn: Connection, tab: dict[str, Any], changes: dict[str, Any]) -> None:
    changes = {**changes, "updated_at": db_timestamp(utcnow())}
    _compare_and_swap(conn, "tabs", tab, changes, amounts=TAB_AMOUNTS, timestamps=TAB_TIMESTAMPS)
