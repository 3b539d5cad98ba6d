"""Reusable sample payloads and seed rows for service-level tests."""

from __future__ import annotations

from typing import Any

from sqlalchemy import text


def jollof_item(quantity: int = 1) -> dict[str, Any]:
    return {"menu_item_id": 1, "name": "Jollof Rice", "price": 2000, "quantity": quantity}


def chapman_item(quantity: int = 1) -> dict[str, Any]:
    return {"menu_item_id": 2, "name": "Chapman", "price": 1500, "quantity": quantity}


def dine_in_payload(table: str = "T4", *items: dict[str, Any], **extra: Any) -> dict[str, Any]:
    payload = {
        "order_type": "dine-in",
        "table_number": table,
        "items": list(items) or [jollof_item()],
        "guest_name": "Ada Obi",
        "guest_email": "ada@example.com",
        "guest_phone": "+2348000000000",
    }
    payload.update(extra)
    return payload


def delivery_payload(*items: dict[str, Any], **extra: Any) -> dict[str, Any]:
    payload = {
        "order_type": "delivery",
        "delivery_address": "12 Marina Road, Lagos",
        "items": list(items) or [jollof_item()],
        "guest_name": "Ada Obi",
        "guest_email": "ada@example.com",
        "guest_phone": "+2348000000000",
    }
    payload.update(extra)
    return payload


def seed_catalog(engine) -> None:
    """Deux plats, une boisson, un article sans coût renseigné."""

    with engine.begin() as conn:
        conn.execute(
            text("INSERT INTO menu_items (id, name, category, price) VALUES (:id, :name, :category, :price)"),
            [
                {"id": 1, "name": "Jollof Rice", "category": "main", "price": 2000},
                {"id": 2, "name": "Chapman", "category": "drinks", "price": 1500},
                {"id": 3, "name": "Suya", "category": "starter", "price": 1200},
            ],
        )
        conn.execute(
            text("INSERT INTO inventory (menu_item_id, cost_per_unit, quantity) VALUES (:menu_item_id, :cost, 50)"),
            [
                {"menu_item_id": 1, "cost": 800},
                {"menu_item_id": 2, "cost": 600},
            ],
        )


def seed_offer(engine, **overrides: Any) -> None:
    row = {
        "code": "WELCOME10",
        "description": "10% off",
        "discount_type": "percentage",
        "discount_value": 10,
        "min_subtotal": 3000,
        "max_discount": None,
        "user_id": None,
        "status": "active",
        "expires_at": None,
    }
    row.update(overrides)
    with engine.begin() as conn:
        conn.execute(
            text(
                """
                INSERT INTO reward_offers (
                    code, description, discount_type, discount_value, min_subtotal,
                    max_discount, user_id, status, expires_at
                )
                VALUES (
                    :code, :description, :discount_type, :discount_value, :min_subtotal,
                    :max_discount, :user_id, :status, :expires_at
                )
                """
            ),
            row,
        )
