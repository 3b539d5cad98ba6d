"""Service fee, delivery fee and tax computation for orders and tabs.

Fee settings live in the ``pos_settings`` table. They are read through a
``FeeSettingsProvider`` which keeps the last loaded value for a bounded time
(``ttl_seconds``) so that totals recalculation does not hit the database on every
call. The provider is an explicit object: callers inject their own (tests pass a
fixed one) instead of relying on hidden module state.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from functools import lru_cache
from typing import Callable

from sqlalchemy import text

from .data_repository import SETTINGS, get_engine

LOGGER = logging.getLogger(__name__)

ORDER_TYPES: tuple[str, ...] = ("dine-in", "pickup", "delivery")
_UNIT = Decimal("1")
_CENT = Decimal("0.01")


def as_amount(value, default: str = "0") -> Decimal:
    """Convert any stored/bound value to a 2-decimal ``Decimal``."""

    try:
        amount = Decimal(str(value if value is not None else default))
    except (InvalidOperation, TypeError, ValueError):
        amount = Decimal(default)
    if amount.is_nan():
        amount = Decimal(default)
    return amount.quantize(_CENT, rounding=ROUND_HALF_UP)


def round_currency(value: Decimal) -> Decimal:
    """Round to whole currency units, half-up, keeping the 2-decimal scale."""

    return value.quantize(_UNIT, rounding=ROUND_HALF_UP).quantize(_CENT)


@dataclass(frozen=True)
class FeeSettings:
    service_fee_pct: Decimal = Decimal("0.02")
    delivery_fee_base: Decimal = Decimal("1000")
    delivery_fee_reduced: Decimal = Decimal("500")
    free_delivery_threshold: Decimal = Decimal("2000")
    tax_pct: Decimal = Decimal("0.075")
    tax_enabled: bool = False


@dataclass(frozen=True)
class FeeBreakdown:
    subtotal: Decimal
    service_fee: Decimal
    delivery_fee: Decimal
    tax: Decimal
    total: Decimal


def load_fee_settings() -> FeeSettings:
    """Read the single settings row, falling back to defaults when absent."""

    with get_engine().begin() as conn:
        row = conn.execute(
            text(
                """
                SELECT service_fee_pct, delivery_fee_base, delivery_fee_reduced,
                       free_delivery_threshold, tax_pct, tax_enabled
                FROM pos_settings
                ORDER BY id
                LIMIT 1
                """
            )
        ).fetchone()
    if row is None:
        return FeeSettings()
    return FeeSettings(
        service_fee_pct=Decimal(str(row.service_fee_pct)),
        delivery_fee_base=as_amount(row.delivery_fee_base),
        delivery_fee_reduced=as_amount(row.delivery_fee_reduced),
        free_delivery_threshold=as_amount(row.free_delivery_threshold),
        tax_pct=Decimal(str(row.tax_pct)),
        tax_enabled=bool(row.tax_enabled),
    )


class FeeSettingsProvider:
    """Time-boxed cache in front of a settings loader."""

    def __init__(
        self,
        loader: Callable[[], FeeSettings] = load_fee_settings,
        *,
        ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._loader = loader
        self._ttl = max(0.0, float(ttl_seconds))
        self._clock = clock
        self._lock = threading.Lock()
        self._cached: FeeSettings | None = None
        self._loaded_at = 0.0

    def get(self) -> FeeSettings:
        with self._lock:
            now = self._clock()
            if self._cached is not None and now - self._loaded_at < self._ttl:
                return self._cached
            self._cached = self._loader()
            self._loaded_at = now
            LOGGER.debug("Fee settings reloaded: %s", self._cached)
            return self._cached

    def invalidate(self) -> None:
        with self._lock:
            self._cached = None
            self._loaded_at = 0.0


@lru_cache(maxsize=1)
def get_fee_provider() -> FeeSettingsProvider:
    return FeeSettingsProvider(ttl_seconds=SETTINGS.fee_settings_ttl_seconds)


def calculate_service_fee(subtotal: Decimal, settings: FeeSettings) -> Decimal:
    return round_currency(subtotal * settings.service_fee_pct)


def calculate_delivery_fee(subtotal: Decimal, settings: FeeSettings) -> Decimal:
    if subtotal >= settings.free_delivery_threshold:
        return settings.delivery_fee_reduced
    return settings.delivery_fee_base


def calculate_tax(subtotal: Decimal, settings: FeeSettings) -> Decimal:
    if not settings.tax_enabled:
        return Decimal("0.00")
    return round_currency(subtotal * settings.tax_pct)


def calculate_order_totals(
    subtotal,
    order_type: str,
    *,
    provider: FeeSettingsProvider | None = None,
) -> FeeBreakdown:
    """Compute fees and total for a subtotal and an order type."""

    if order_type not in ORDER_TYPES:
        raise ValueError(f"Unknown order type: {order_type!r}")
    settings = (provider or get_fee_provider()).get()
    base = as_amount(subtotal)
    service_fee = calculate_service_fee(base, settings)
    delivery_fee = calculate_delivery_fee(base, settings) if order_type == "delivery" else Decimal("0.00")
    tax = calculate_tax(base, settings)
    return FeeBreakdown(
        subtotal=base,
        service_fee=service_fee,
        delivery_fee=as_amount(delivery_fee),
        tax=tax,
        total=base + service_fee + as_amount(delivery_fee) + tax,
    )


__all__ = [
    "ORDER_TYPES",
    "FeeSettings",
    "FeeBreakdown",
    "FeeSettingsProvider",
    "as_amount",
    "round_currency",
    "load_fee_settings",
    "get_fee_provider",
    "calculate_order_totals",
]
