"""Collaborateurs injectés dans les routes POS (surchargés dans les tests)."""

from __future__ import annotations

from core.fee_calculator import FeeSettingsProvider, get_fee_provider
from core.payment_gateway import PaymentGateway, get_payment_gateway
from backend.services.pos.events import DEFAULT_EVENT_SINK, EventSink


def get_gateway() -> PaymentGateway:
    return get_payment_gateway()


def get_event_sink() -> EventSink:
    return DEFAULT_EVENT_SINK


def get_fees() -> FeeSettingsProvider:
    return get_fee_provider()
