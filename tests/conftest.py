"""Fixtures partagées : base SQLite en mémoire, passerelle factice, collecteur d'évènements."""

from __future__ import annotations

import os
import sys
from decimal import Decimal
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Évite toute connexion Postgres lors de l'import des modules backend/core.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("POS_EVENTS_ENABLED", "0")

from core import data_repository, fee_calculator  # noqa: E402
from core.errors import GatewayError  # noqa: E402
from core.fee_calculator import FeeSettings, FeeSettingsProvider  # noqa: E402
from core.payment_gateway import InitializeResult, RefundResult, VerifyResult  # noqa: E402
from backend.services.pos import events, orders, reports, rewards, settlement, tabs  # noqa: E402

SCHEMA = [
    """
    CREATE TABLE menu_items (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        category TEXT NOT NULL DEFAULT 'food',
        price REAL NOT NULL DEFAULT 0,
        available BOOLEAN NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE inventory (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        menu_item_id INTEGER NOT NULL REFERENCES menu_items(id),
        cost_per_unit REAL NOT NULL DEFAULT 0,
        quantity REAL NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE pos_settings (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        service_fee_pct REAL NOT NULL DEFAULT 0.02,
        delivery_fee_base REAL NOT NULL DEFAULT 1000,
        delivery_fee_reduced REAL NOT NULL DEFAULT 500,
        free_delivery_threshold REAL NOT NULL DEFAULT 2000,
        tax_pct REAL NOT NULL DEFAULT 0.075,
        tax_enabled BOOLEAN NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE tabs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        tab_number TEXT NOT NULL UNIQUE,
        table_number TEXT NOT NULL,
        user_id INTEGER,
        opened_by_staff_id INTEGER,
        customer_name TEXT,
        customer_email TEXT,
        customer_phone TEXT,
        guest_id TEXT,
        status TEXT NOT NULL DEFAULT 'open',
        payment_status TEXT NOT NULL DEFAULT 'pending',
        subtotal REAL NOT NULL DEFAULT 0,
        service_fee REAL NOT NULL DEFAULT 0,
        tax REAL NOT NULL DEFAULT 0,
        delivery_fee REAL NOT NULL DEFAULT 0,
        discount_total REAL NOT NULL DEFAULT 0,
        tip_amount REAL NOT NULL DEFAULT 0,
        total REAL NOT NULL DEFAULT 0,
        opened_at TIMESTAMP NOT NULL,
        closed_at TIMESTAMP,
        paid_at TIMESTAMP,
        payment_reference TEXT UNIQUE,
        transaction_reference TEXT,
        payment_method TEXT,
        version INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE UNIQUE INDEX ux_tabs_active_table ON tabs (table_number)
    WHERE status IN ('open', 'settling')
    """,
    """
    CREATE TABLE tab_discounts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        tab_id INTEGER NOT NULL REFERENCES tabs(id),
        reference TEXT,
        amount REAL NOT NULL,
        created_at TIMESTAMP NOT NULL,
        UNIQUE (tab_id, reference)
    )
    """,
    """
    CREATE TABLE orders (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        order_number TEXT NOT NULL UNIQUE,
        idempotency_key TEXT UNIQUE,
        user_id INTEGER,
        guest_name TEXT,
        guest_email TEXT,
        guest_phone TEXT,
        order_type TEXT NOT NULL,
        table_number TEXT,
        pickup_time TIMESTAMP,
        delivery_address TEXT,
        delivery_instructions TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        payment_status TEXT NOT NULL DEFAULT 'pending',
        subtotal REAL NOT NULL DEFAULT 0,
        tax REAL NOT NULL DEFAULT 0,
        service_fee REAL NOT NULL DEFAULT 0,
        delivery_fee REAL NOT NULL DEFAULT 0,
        discount REAL NOT NULL DEFAULT 0,
        total REAL NOT NULL DEFAULT 0,
        tab_id INTEGER REFERENCES tabs(id),
        tab_linked_at TIMESTAMP,
        payment_reference TEXT UNIQUE,
        transaction_reference TEXT,
        payment_method TEXT,
        paid_at TIMESTAMP,
        refund_amount REAL NOT NULL DEFAULT 0,
        refund_status TEXT NOT NULL DEFAULT 'none',
        notes TEXT,
        version INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE order_items (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        order_id INTEGER NOT NULL REFERENCES orders(id),
        menu_item_id INTEGER NOT NULL,
        name TEXT NOT NULL,
        price REAL NOT NULL,
        quantity INTEGER NOT NULL,
        subtotal REAL NOT NULL,
        special_instructions TEXT,
        position INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE order_status_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        order_id INTEGER NOT NULL REFERENCES orders(id),
        status TEXT NOT NULL,
        note TEXT,
        actor_id INTEGER,
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE reward_offers (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        code TEXT NOT NULL UNIQUE,
        description TEXT,
        discount_type TEXT NOT NULL,
        discount_value REAL NOT NULL,
        min_subtotal REAL NOT NULL DEFAULT 0,
        max_discount REAL,
        user_id INTEGER,
        status TEXT NOT NULL DEFAULT 'active',
        expires_at TIMESTAMP
    )
    """,
    """
    CREATE TABLE expenses (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        expense_date DATE NOT NULL,
        expense_type TEXT NOT NULL,
        category TEXT NOT NULL,
        description TEXT NOT NULL,
        amount REAL NOT NULL,
        supplier TEXT,
        receipt_reference TEXT,
        notes TEXT,
        created_by INTEGER,
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE audit_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        actor_id INTEGER,
        action TEXT NOT NULL,
        resource TEXT NOT NULL,
        resource_id TEXT NOT NULL,
        details TEXT,
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE pos_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        event_type TEXT NOT NULL,
        payload TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL
    )
    """,
]

_ENGINE_USERS = (data_repository, fee_calculator, events, rewards, tabs, orders, settlement, reports)


class FakeGateway:
    """Passerelle en mémoire : enregistre les appels, statut de vérification pilotable."""

    def __init__(self) -> None:
        self.initialized: list[dict] = []
        self.verified: list[str] = []
        self.refunds: list[tuple[str, Decimal, str]] = []
        self.status = "PAID"
        self.payment_method = "CARD"
        self.fail_refund = False
        self.fail_verify = 0
        self.valid_signature = "good-signature"
        self._counter = 0

    def initialize(self, *, amount, customer_name, customer_email, reference, redirect_url, description, metadata=None):
        self._counter += 1
        self.initialized.append(
            {
                "amount": amount,
                "customer_name": customer_name,
                "customer_email": customer_email,
                "reference": reference,
                "redirect_url": redirect_url,
                "description": description,
                "metadata": metadata,
            }
        )
        return InitializeResult(
            checkout_url=f"https://checkout.test/{reference}",
            transaction_reference=f"MNFY|{self._counter:04d}",
            payment_reference=reference,
        )

    def verify(self, reference):
        self.verified.append(reference)
        if self.fail_verify > 0:
            self.fail_verify -= 1
            raise GatewayError("gateway timeout")
        return VerifyResult(
            payment_status=self.status,
            transaction_reference=reference,
            payment_method=self.payment_method,
            amount_paid=Decimal("0"),
        )

    def initiate_refund(self, transaction_reference, amount, reason):
        if self.fail_refund:
            raise GatewayError("refund rejected")
        self.refunds.append((transaction_reference, amount, reason))
        return RefundResult(refund_reference=f"RF-{transaction_reference}", status="PENDING", raw={})

    def validate_webhook_signature(self, body, signature):
        return signature == self.valid_signature


class RecordingSink:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []

    def emit(self, event_type, payload):
        self.events.append((event_type, payload))

    def types(self) -> list[str]:
        return [event_type for event_type, _ in self.events]


@pytest.fixture()
def sqlite_engine(monkeypatch):
    engine = create_engine(
        "sqlite:///:memory:",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    with engine.begin() as conn:
        for statement in SCHEMA:
            conn.exec_driver_sql(statement)

    # Patch le moteur pour toute la stack core.* / services POS
    for module in _ENGINE_USERS:
        monkeypatch.setattr(module, "get_engine", lambda: engine)
    return engine


@pytest.fixture()
def fees() -> FeeSettingsProvider:
    return FeeSettingsProvider(lambda: FeeSettings(), ttl_seconds=60)


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
def sink() -> RecordingSink:
    return RecordingSink()
