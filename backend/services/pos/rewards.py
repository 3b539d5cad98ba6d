"""Offres de fidélité applicables à un tab au moment du règlement."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy.engine import Connection

from core.data_repository import fetch_all, fetch_one, get_engine
from core.fee_calculator import as_amount, round_currency
from backend.services.pos.utils import ZERO, db_timestamp, normalize_row, utcnow

_OFFER_AMOUNTS = ("discount_value", "min_subtotal", "max_discount")


def _normalize_offer(row: dict[str, Any]) -> dict[str, Any]:
    offer = normalize_row(row, amounts=_OFFER_AMOUNTS, timestamps=("expires_at",))
    if row.get("max_discount") is None:
        offer["max_discount"] = None
    return offer


def compute_discount(offer: dict[str, Any], subtotal: Decimal) -> Decimal:
    """Montant de remise d'une offre pour un sous-total, jamais supérieur à celui-ci."""

    base = as_amount(subtotal)
    value = as_amount(offer.get("discount_value"))
    if offer.get("discount_type") == "percentage":
        amount = round_currency(base * value / Decimal("100"))
    elif offer.get("discount_type") == "fixed":
        amount = value
    else:
        return ZERO
    cap = offer.get("max_discount")
    if cap is not None:
        amount = min(amount, as_amount(cap))
    return max(ZERO, min(amount, base))


def _eligible_offers(
    conn: Connection,
    subtotal: Decimal,
    user_id: int | None,
    now: datetime,
) -> list[dict[str, Any]]:
    rows = fetch_all(
        conn,
        """
        SELECT id, code, description, discount_type, discount_value,
               min_subtotal, max_discount, user_id, status, expires_at
        FROM reward_offers
        WHERE status = 'active'
          AND min_subtotal <= :subtotal
          AND (expires_at IS NULL OR expires_at > :now)
          AND (user_id IS NULL OR user_id = :user_id)
        ORDER BY min_subtotal DESC, id
        """,
        {"subtotal": float(subtotal), "now": db_timestamp(now), "user_id": user_id},
    )
    offers = []
    for row in rows:
        offer = _normalize_offer(row)
        offer["discount_amount"] = compute_discount(offer, subtotal)
        offers.append(offer)
    return offers


def eligible_offers(subtotal: Decimal, user_id: int | None = None) -> list[dict[str, Any]]:
    with get_engine().begin() as conn:
        return _eligible_offers(conn, as_amount(subtotal), user_id, utcnow())


def _get_offer_by_code(conn: Connection, code: str) -> dict[str, Any] | None:
    row = fetch_one(
        conn,
        """
        SELECT id, code, description, discount_type, discount_value,
               min_subtotal, max_discount, user_id, status, expires_at
        FROM reward_offers
        WHERE code = :code
        """,
        {"code": code.strip().upper()},
    )
    return _normalize_offer(row) if row else None
