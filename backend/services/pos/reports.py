"""Financial summary (revenue, cost of goods, expenses, margins) and expense ledger."""

from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Mapping

import pandas as pd
from sqlalchemy import text

from core.data_repository import fetch_all, fetch_one, get_engine, query_df
from core.errors import ValidationError
from core.fee_calculator import as_amount
from backend.services.pos.constants import DRINK_CATEGORIES, EXPENSE_TYPES
from backend.services.pos.utils import db_timestamp, day_bounds, money, normalize_row, utcnow

LOGGER = logging.getLogger(__name__)

_ITEM_COLUMNS = ["menu_item_id", "name", "category", "quantity", "revenue_cents", "cost_cents", "cost_unit_cents"]


def _cents(series: pd.Series) -> pd.Series:
    values = pd.to_numeric(series, errors="coerce").fillna(0)
    return (values * 100).round().astype("int64")


def _amount(cents: int | float) -> Decimal:
    return (Decimal(int(cents)) / Decimal(100)).quantize(Decimal("0.01"))


def _margin(part_cents: int, revenue_cents: int) -> float:
    if revenue_cents == 0:
        return 0.0
    return round(part_cents / revenue_cents * 100, 2)


def _kind(category: Any) -> str:
    return "drink" if str(category or "").strip().lower() in DRINK_CATEGORIES else "food"


def _total(frame: pd.DataFrame, column: str) -> int:
    return int(frame[column].sum()) if not frame.empty else 0


def _fetch_sold_items(start_ts: str, end_ts: str) -> pd.DataFrame:
    """Lignes des commandes payées de la période, rapprochées du catalogue."""

    lines = query_df(
        """
        SELECT oi.menu_item_id, oi.price, oi.quantity
        FROM orders o
        JOIN order_items oi ON oi.order_id = o.id
        WHERE o.payment_status = 'paid'
          AND o.created_at >= :start
          AND o.created_at <= :end
        """,
        params={"start": start_ts, "end": end_ts},
    )
    catalog = query_df(
        """
        SELECT m.id AS menu_item_id, m.name, m.category, i.cost_per_unit
        FROM menu_items m
        LEFT JOIN inventory i ON i.menu_item_id = m.id
        ORDER BY m.id, i.id
        """
    )
    if lines.empty or catalog.empty:
        return pd.DataFrame(columns=_ITEM_COLUMNS)

    catalog = catalog.drop_duplicates(subset="menu_item_id", keep="first")
    catalog["menu_item_id"] = catalog["menu_item_id"].astype("int64")
    lines["menu_item_id"] = pd.to_numeric(lines["menu_item_id"], errors="coerce")
    lines = lines.dropna(subset=["menu_item_id"])
    lines["menu_item_id"] = lines["menu_item_id"].astype("int64")

    # Jointure interne : une ligne dont l'article n'existe plus au catalogue est ignorée.
    merged = lines.merge(catalog, on="menu_item_id", how="inner")
    if merged.empty:
        return pd.DataFrame(columns=_ITEM_COLUMNS)

    merged["quantity"] = pd.to_numeric(merged["quantity"], errors="coerce").fillna(0).astype("int64")
    merged["cost_unit_cents"] = _cents(merged["cost_per_unit"])
    merged["revenue_cents"] = _cents(merged["price"]) * merged["quantity"]
    merged["cost_cents"] = merged["cost_unit_cents"] * merged["quantity"]

    grouped = (
        merged.groupby(["menu_item_id", "name", "category", "cost_unit_cents"], dropna=False)
        .agg(quantity=("quantity", "sum"), revenue_cents=("revenue_cents", "sum"), cost_cents=("cost_cents", "sum"))
        .reset_index()
    )
    return grouped.sort_values(["name", "menu_item_id"], kind="mergesort").reset_index(drop=True)[_ITEM_COLUMNS]


def _count_paid_orders(start_ts: str, end_ts: str) -> int:
    df = query_df(
        """
        SELECT COUNT(*) AS order_count
        FROM orders
        WHERE payment_status = 'paid'
          AND created_at >= :start
          AND created_at <= :end
        """,
        params={"start": start_ts, "end": end_ts},
    )
    if df.empty:
        return 0
    return int(df.iloc[0]["order_count"] or 0)


def _fetch_expenses(start: date, end: date) -> pd.DataFrame:
    return query_df(
        """
        SELECT id, expense_date, expense_type, category, description, amount
        FROM expenses
        WHERE expense_date >= :start AND expense_date <= :end
        ORDER BY expense_date, id
        """,
        params={"start": start.isoformat(), "end": end.isoformat()},
    )


def _category_block(items: pd.DataFrame, column: str) -> dict[str, Any]:
    rows = []
    for row in items.itertuples(index=False):
        entry: dict[str, Any] = {
            "menu_item_id": int(row.menu_item_id),
            "name": row.name,
            "quantity": int(row.quantity),
        }
        if column == "revenue_cents":
            entry["total"] = _amount(row.revenue_cents)
        else:
            entry["cost_per_unit"] = _amount(row.cost_unit_cents)
            entry["total"] = _amount(row.cost_cents)
        rows.append(entry)
    return {"items": rows, "total": _amount(_total(items, column))}


def generate_summary(start: date, end: date | None = None) -> dict[str, Any]:
    """Build the profit and loss summary for ``start`` (or ``start``..``end``)."""

    last = end or start
    if last < start:
        raise ValidationError("end date must not be before start date")
    lower, upper = day_bounds(start, last)
    start_ts, end_ts = db_timestamp(lower), db_timestamp(upper)

    items = _fetch_sold_items(start_ts, end_ts)
    kinds = items["category"].map(_kind)
    food = items[kinds == "food"]
    drink = items[kinds == "drink"]

    revenue_food = _total(food, "revenue_cents")
    revenue_drink = _total(drink, "revenue_cents")
    cost_food = _total(food, "cost_cents")
    cost_drink = _total(drink, "cost_cents")
    revenue_total = revenue_food + revenue_drink
    gross_food = revenue_food - cost_food
    gross_drink = revenue_drink - cost_drink
    gross_total = gross_food + gross_drink

    expenses = _fetch_expenses(start, last)
    direct: list[dict[str, Any]] = []
    operating: list[dict[str, Any]] = []
    direct_cents = 0
    operating_cents = 0
    if not expenses.empty:
        expenses["amount_cents"] = _cents(expenses["amount"])
        for row in expenses.itertuples(index=False):
            entry = {"category": row.category, "description": row.description, "amount": _amount(row.amount_cents)}
            if row.expense_type == "direct-cost":
                direct.append(entry)
                direct_cents += int(row.amount_cents)
            else:
                operating.append(entry)
                operating_cents += int(row.amount_cents)
    expenses_total = direct_cents + operating_cents
    net_total = gross_total - expenses_total

    return {
        "start_date": start,
        "end_date": last,
        "revenue": {
            "food": _category_block(food, "revenue_cents"),
            "drink": _category_block(drink, "revenue_cents"),
            "total": _amount(revenue_total),
        },
        "costs": {
            "food": _category_block(food, "cost_cents"),
            "drink": _category_block(drink, "cost_cents"),
            "total": _amount(cost_food + cost_drink),
        },
        "gross_profit": {
            "food": _amount(gross_food),
            "drink": _amount(gross_drink),
            "total": _amount(gross_total),
        },
        "expenses": {
            "direct_costs": direct,
            "operating_costs": operating,
            "total_direct_costs": _amount(direct_cents),
            "total_operating_expenses": _amount(operating_cents),
            "total": _amount(expenses_total),
        },
        "net_profit": _amount(net_total),
        "metrics": {
            "gross_profit_margin": _margin(gross_total, revenue_total),
            "net_profit_margin": _margin(net_total, revenue_total),
            "order_count": _count_paid_orders(start_ts, end_ts),
        },
    }


def record_expense(payload: Mapping[str, Any], created_by: int | None = None) -> dict[str, Any]:
    expense_type = str(payload.get("expense_type") or "").strip()
    if expense_type not in EXPENSE_TYPES:
        raise ValidationError(f"expense_type must be one of {', '.join(EXPENSE_TYPES)}")
    description = str(payload.get("description") or "").strip()
    if len(description) < 3:
        raise ValidationError("description must be at least 3 characters")
    category = str(payload.get("category") or "").strip()
    if not category:
        raise ValidationError("category is required")
    amount = as_amount(payload.get("amount"), default="-1")
    if amount < 0:
        raise ValidationError("amount must be non-negative")
    expense_date = payload.get("expense_date") or utcnow().date()
    if isinstance(expense_date, str):
        try:
            expense_date = date.fromisoformat(expense_date)
        except ValueError as exc:
            raise ValidationError("expense_date must be an ISO date") from exc

    with get_engine().begin() as conn:
        result = conn.execute(
            text(
                """
                INSERT INTO expenses (
                    expense_date, expense_type, category, description, amount,
                    supplier, receipt_reference, notes, created_by, created_at
                )
                VALUES (
                    :expense_date, :expense_type, :category, :description, :amount,
                    :supplier, :receipt_reference, :notes, :created_by, :created_at
                )
                RETURNING id
                """
            ),
            {
                "expense_date": expense_date.isoformat(),
                "expense_type": expense_type,
                "category": category,
                "description": description,
                "amount": money(amount),
                "supplier": payload.get("supplier"),
                "receipt_reference": payload.get("receipt_reference"),
                "notes": payload.get("notes"),
                "created_by": created_by,
                "created_at": db_timestamp(utcnow()),
            },
        )
        expense_id = int(result.scalar_one())
        row = fetch_one(conn, "SELECT * FROM expenses WHERE id = :id", {"id": expense_id})
    LOGGER.info("Expense %s recorded (%s, %s)", expense_id, expense_type, amount)
    return _normalize_expense(row)


def _normalize_expense(row: dict[str, Any]) -> dict[str, Any]:
    expense = normalize_row(row, amounts=("amount",), timestamps=("created_at",))
    raw_date = expense.get("expense_date")
    if isinstance(raw_date, datetime):
        expense["expense_date"] = raw_date.date()
    elif isinstance(raw_date, str):
        expense["expense_date"] = date.fromisoformat(raw_date[:10])
    return expense


def list_expenses(start: date, end: date | None = None) -> list[dict[str, Any]]:
    last = end or start
    with get_engine().begin() as conn:
        rows = fetch_all(
            conn,
            """
            SELECT * FROM expenses
            WHERE expense_date >= :start AND expense_date <= :end
            ORDER BY expense_date, id
            """,
            {"start": start.isoformat(), "end": last.isoformat()},
        )
    return [_normalize_expense(row) for row in rows]
