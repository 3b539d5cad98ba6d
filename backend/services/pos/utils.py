"""Helpers partagés : horodatage, montants et conversion des lignes SQL."""

from __future__ import annotations

import json
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any, Mapping

from core.fee_calculator import as_amount

ZERO = Decimal("0.00")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def db_timestamp(value: datetime | None) -> str | None:
    """Horodatage UTC naïf, format ISO triable (identique sous SQLite et PostgreSQL)."""

    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat(sep=" ", timespec="microseconds")


def parse_timestamp(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def day_bounds(start: date, end: date | None = None) -> tuple[datetime, datetime]:
    """Retourne ``[start 00:00, end 23:59:59.999999]`` en UTC."""

    last = end or start
    return (
        datetime.combine(start, time.min, tzinfo=timezone.utc),
        datetime.combine(last, time.max, tzinfo=timezone.utc),
    )


def money(value: Any) -> float:
    """Valeur liable par tous les drivers (sqlite3 ne sait pas lier ``Decimal``)."""

    return float(as_amount(value))


def dump_json(payload: Any) -> str:
    return json.dumps(payload, default=str, ensure_ascii=False)


def normalize_row(
    row: Mapping[str, Any],
    *,
    amounts: tuple[str, ...] = (),
    timestamps: tuple[str, ...] = (),
) -> dict[str, Any]:
    """Copie une ligne SQL en convertissant montants et horodatages."""

    data = dict(row)
    for key in amounts:
        if key in data:
            data[key] = as_amount(data[key])
    for key in timestamps:
        if key in data:
            data[key] = parse_timestamp(data[key])
    return data
