"""Settlement reconciler: payment initialization, verification and cascades.

Gateway calls always run outside database transactions. Once the gateway has
answered, the outcome is applied in a single transaction that covers the tab
and every order linked to it, so an observer never sees a paid tab with unpaid
orders.
"""

from __future__ import annotations

import json
import logging
import secrets
import time
from datetime import datetime
from typing import Any

from sqlalchemy.engine import Connection

from core.data_repository import SETTINGS, get_engine
from core.errors import (
    InvalidStateError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from core.payment_gateway import PaymentGateway, VerifyResult, build_verify_result, get_payment_gateway
from backend.services.pos import repository as repo
from backend.services.pos.constants import MANUAL_PAYMENT_TYPES, PAYMENT_KINDS, map_gateway_status
from backend.services.pos.events import EventSink, emit_safely, record_audit
from backend.services.pos.utils import db_timestamp, utcnow

LOGGER = logging.getLogger(__name__)

_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def generate_payment_reference(kind: str, entity_id: int, now_ms: int | None = None) -> str:
    """``TAB12-1717171717171-X9K2QZ`` style reference, unique per attempt."""

    prefix = PAYMENT_KINDS.get(kind)
    if prefix is None:
        raise ValidationError(f"Unknown payment kind {kind!r}")
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"{prefix}{entity_id}-{stamp}-{suffix}"


def _default_redirect(kind: str, entity_id: int) -> str:
    if kind == "tab":
        return f"{SETTINGS.app_base_url}/orders/tabs/{entity_id}/payment-callback"
    return f"{SETTINGS.app_base_url}/orders/{entity_id}/payment-callback"


def _initialize(
    kind: str,
    entity: dict[str, Any],
    *,
    customer_name: str,
    customer_email: str,
    redirect_url: str | None,
    description: str,
    gateway: PaymentGateway | None,
) -> dict[str, Any]:
    amount = entity["total"]
    if amount <= 0:
        raise ValidationError(f"Nothing to pay on {kind} {entity['id']}", amount=str(amount))
    if not customer_email:
        raise ValidationError("customer_email is required to initialize a payment")

    reference = generate_payment_reference(kind, entity["id"])
    result = (gateway or get_payment_gateway()).initialize(
        amount=amount,
        customer_name=customer_name,
        customer_email=customer_email,
        reference=reference,
        redirect_url=redirect_url or _default_redirect(kind, entity["id"]),
        description=description,
        metadata={"kind": kind, "entity_id": entity["id"]},
    )

    with get_engine().begin() as conn:
        loader = repo.load_tab if kind == "tab" else repo.load_order
        current = loader(conn, entity["id"], lock=True)
        if current is None:
            raise NotFoundError(f"{kind.capitalize()} {entity['id']} not found")
        if current["total"] != amount:
            # Le montant a changé pendant l'appel au prestataire : la session ouverte est caduque.
            raise InvalidStateError(
                f"{kind.capitalize()} {entity['id']} total changed during payment initialization",
                expected=str(amount),
                actual=str(current["total"]),
            )
        changes: dict[str, Any] = {
            "payment_reference": reference,
            "transaction_reference": result.transaction_reference,
            "payment_status": "pending",
        }
        if kind == "tab":
            if current["status"] == "closed":
                raise InvalidStateError(f"Tab {current['tab_number']} is closed")
            changes["status"] = "settling"
            repo.update_tab(conn, current, changes)
        else:
            repo.update_order(conn, current, changes)

    LOGGER.info("%s %s payment initialized with reference %s", kind, entity["id"], reference)
    return {
        "kind": kind,
        "entity_id": entity["id"],
        "amount": amount,
        "payment_reference": reference,
        "transaction_reference": result.transaction_reference,
        "checkout_url": result.checkout_url,
    }


def initialize_tab_payment(
    tab_id: int,
    customer_name: str | None = None,
    customer_email: str | None = None,
    redirect_url: str | None = None,
    *,
    gateway: PaymentGateway | None = None,
) -> dict[str, Any]:
    with get_engine().begin() as conn:
        tab = repo.load_tab(conn, tab_id)
    if tab is None:
        raise NotFoundError(f"Tab {tab_id} not found", tab_id=tab_id)
    if tab["status"] == "closed" or tab["payment_status"] == "paid":
        raise InvalidStateError(f"Tab {tab['tab_number']} is already {tab['status']}", tab_id=tab_id)
    return _initialize(
        "tab",
        tab,
        customer_name=customer_name or tab.get("customer_name") or f"Table {tab['table_number']}",
        customer_email=customer_email or tab.get("customer_email") or "",
        redirect_url=redirect_url,
        description=f"Tab {tab['tab_number']}",
        gateway=gateway,
    )


def initialize_order_payment(
    order_id: int,
    customer_name: str | None = None,
    customer_email: str | None = None,
    redirect_url: str | None = None,
    *,
    gateway: PaymentGateway | None = None,
) -> dict[str, Any]:
    with get_engine().begin() as conn:
        order = repo.load_order(conn, order_id)
        tab = repo.load_tab(conn, order["tab_id"]) if order and order["tab_id"] is not None else None
    if order is None:
        raise NotFoundError(f"Order {order_id} not found", order_id=order_id)
    if order["status"] == "cancelled" or order["payment_status"] in {"paid", "refunded"}:
        raise InvalidStateError(
            f"Order {order['order_number']} is {order['status']}/{order['payment_status']}",
            order_id=order_id,
        )
    if tab is not None and tab["status"] != "closed":
        raise InvalidStateError(
            f"Order {order['order_number']} is settled through tab {tab['tab_number']}",
            order_id=order_id,
        )
    return _initialize(
        "order",
        order,
        customer_name=customer_name or order.get("guest_name") or "Customer",
        customer_email=customer_email or order.get("guest_email") or "",
        redirect_url=redirect_url,
        description=f"Order {order['order_number']}",
        gateway=gateway,
    )


def _locate(conn: Connection, reference: str) -> tuple[str, dict[str, Any]]:
    order = repo.find_order_by(conn, "payment_reference", reference)
    if order is not None:
        return "order", order
    tab = repo.find_tab_by(conn, "payment_reference", reference)
    if tab is not None:
        return "tab", tab
    raise NotFoundError(f"No tab or order matches payment reference {reference}", reference=reference)


def _cascade_orders(
    conn: Connection,
    tab: dict[str, Any],
    *,
    paid_at: str,
    transaction_reference: str | None,
    payment_method: str | None,
    actor_id: int | None = None,
) -> list[int]:
    """Mark every live order of a paid tab as paid; pending ones are confirmed."""

    updated: list[int] = []
    for order in repo.load_tab_orders(conn, tab["id"], lock=True):
        if order["status"] == "cancelled":
            continue
        changes: dict[str, Any] = {
            "payment_status": "paid",
            "paid_at": paid_at,
            "transaction_reference": transaction_reference,
            "payment_method": payment_method,
        }
        if order["status"] == "pending":
            changes["status"] = "confirmed"
        repo.update_order(conn, order, changes)
        if changes.get("status") == "confirmed":
            repo.append_history(conn, order["id"], "confirmed", f"Paid with tab {tab['tab_number']}", actor_id)
        updated.append(int(order["id"]))
    return updated


def _apply_outcome(
    conn: Connection,
    kind: str,
    entity_id: int,
    status: str,
    *,
    transaction_reference: str | None,
    paid_at: datetime | None,
    payment_method: str | None,
    payment_reference: str | None = None,
    actor_id: int | None = None,
) -> tuple[dict[str, Any], list[tuple[str, dict[str, Any]]]]:
    """Persist a mapped payment status; returns the entity and the events to emit."""

    events: list[tuple[str, dict[str, Any]]] = []
    loader = repo.load_tab if kind == "tab" else repo.load_order
    entity = loader(conn, entity_id, lock=True)
    if entity is None:
        raise NotFoundError(f"{kind.capitalize()} {entity_id} not found")
    if entity["payment_status"] == "paid":
        return entity, events

    now = utcnow()
    changes: dict[str, Any] = {"payment_status": status}
    if transaction_reference:
        changes["transaction_reference"] = transaction_reference
    if payment_reference and not entity.get("payment_reference"):
        changes["payment_reference"] = payment_reference

    if status == "paid":
        paid_stamp = db_timestamp(paid_at or now)
        changes["paid_at"] = paid_stamp
        changes["payment_method"] = payment_method
        reference = transaction_reference or entity.get("transaction_reference")
        if kind == "tab":
            changes["status"] = "closed"
            if entity.get("closed_at") is None:
                changes["closed_at"] = db_timestamp(now)
            repo.update_tab(conn, entity, changes)
            order_ids = _cascade_orders(
                conn,
                entity,
                paid_at=paid_stamp,
                transaction_reference=reference,
                payment_method=payment_method,
                actor_id=actor_id,
            )
            events.append(
                (
                    "tab.payment_completed",
                    {
                        "tab_id": entity["id"],
                        "tab_number": entity["tab_number"],
                        "total": str(entity["total"]),
                        "order_ids": order_ids,
                    },
                )
            )
        else:
            if entity["status"] == "pending":
                changes["status"] = "confirmed"
            elif entity["status"] == "cancelled":
                LOGGER.warning(
                    "Payment received for cancelled order %s, flagged for manual refund", entity["order_number"]
                )
                changes["refund_status"] = "manual_review"
            repo.update_order(conn, entity, changes)
            if changes.get("status") == "confirmed":
                repo.append_history(conn, entity["id"], "confirmed", "Payment received", actor_id)
            events.append(
                (
                    "order.payment_completed",
                    {"order_id": entity["id"], "order_number": entity["order_number"], "total": str(entity["total"])},
                )
            )
    elif status in {"failed", "cancelled"}:
        if kind == "tab" and entity["status"] == "settling":
            changes["status"] = "open"
        if kind == "tab":
            repo.update_tab(conn, entity, changes)
        else:
            repo.update_order(conn, entity, changes)
    elif transaction_reference and transaction_reference != entity.get("transaction_reference"):
        updater = repo.update_tab if kind == "tab" else repo.update_order
        updater(conn, entity, {"transaction_reference": transaction_reference})
    return entity, events


def _outcome(kind: str, entity: dict[str, Any], *, already_processed: bool) -> dict[str, Any]:
    return {
        "kind": kind,
        "entity_id": entity["id"],
        "status": entity["status"],
        "payment_status": entity["payment_status"],
        "payment_reference": entity.get("payment_reference"),
        "transaction_reference": entity.get("transaction_reference"),
        "paid_at": entity.get("paid_at"),
        "already_processed": already_processed,
    }


def _reconcile(
    reference: str,
    result: VerifyResult,
    *,
    event_sink: EventSink | None,
    kind: str,
    entity: dict[str, Any],
) -> dict[str, Any]:
    status = map_gateway_status(result.payment_status)
    with get_engine().begin() as conn:
        entity, events = _apply_outcome(
            conn,
            kind,
            entity["id"],
            status,
            transaction_reference=result.transaction_reference,
            paid_at=result.paid_at,
            payment_method=result.payment_method,
        )
    LOGGER.info("Payment %s reconciled: gateway %s -> %s", reference, result.payment_status, entity["payment_status"])
    for event_type, payload in events:
        emit_safely(event_sink, event_type, payload)
    return _outcome(kind, entity, already_processed=not events and entity["payment_status"] == "paid")


def verify_payment(
    reference: str,
    *,
    gateway: PaymentGateway | None = None,
    event_sink: EventSink | None = None,
) -> dict[str, Any]:
    """Ask the gateway for the status of ``reference`` and apply it.

    Verifying an entity that is already paid is a no-op: no gateway call, no
    cascade and no event.
    """

    reference = str(reference or "").strip()
    if not reference:
        raise ValidationError("Payment reference is required")
    with get_engine().begin() as conn:
        kind, entity = _locate(conn, reference)
    if entity["payment_status"] == "paid":
        return _outcome(kind, entity, already_processed=True)

    lookup = entity.get("transaction_reference") or reference
    result = (gateway or get_payment_gateway()).verify(lookup)
    return _reconcile(reference, result, event_sink=event_sink, kind=kind, entity=entity)


def complete_payment_manually(
    kind: str,
    entity_id: int,
    payment_type: str,
    reference: str,
    processed_by: int | None,
    comments: str | None = None,
    *,
    event_sink: EventSink | None = None,
) -> dict[str, Any]:
    """Record a cash, transfer or card-terminal payment taken by staff."""

    if kind not in PAYMENT_KINDS:
        raise ValidationError(f"Unknown payment kind {kind!r}")
    if payment_type not in MANUAL_PAYMENT_TYPES:
        raise ValidationError(f"payment_type must be one of {', '.join(MANUAL_PAYMENT_TYPES)}")
    reference = str(reference or "").strip()
    if not reference:
        raise ValidationError("A payment reference is required for manual completion")

    with get_engine().begin() as conn:
        loader = repo.load_tab if kind == "tab" else repo.load_order
        entity = loader(conn, entity_id, lock=True)
        if entity is None:
            raise NotFoundError(f"{kind.capitalize()} {entity_id} not found")
        if entity["payment_status"] == "paid":
            raise InvalidStateError(f"{kind.capitalize()} {entity_id} is already paid")
        if kind == "tab" and entity["status"] == "closed":
            raise InvalidStateError(f"Tab {entity['tab_number']} is closed")
        if kind == "order" and entity["status"] == "cancelled":
            raise InvalidStateError(f"Order {entity['order_number']} is cancelled")

        entity, events = _apply_outcome(
            conn,
            kind,
            entity_id,
            "paid",
            transaction_reference=reference,
            paid_at=None,
            payment_method=payment_type,
            payment_reference=reference,
            actor_id=processed_by,
        )
        record_audit(
            conn,
            actor_id=processed_by,
            action="payment.manual_completion",
            resource=kind,
            resource_id=entity_id,
            details={
                "payment_type": payment_type,
                "reference": reference,
                "amount": str(entity["total"]),
                "comments": comments,
            },
        )

    LOGGER.info("%s %s settled manually (%s, ref %s) by %s", kind, entity_id, payment_type, reference, processed_by)
    for event_type, payload in events:
        emit_safely(event_sink, event_type, payload)
    return _outcome(kind, entity, already_processed=False)


def handle_gateway_webhook(
    raw_body: bytes | str,
    signature: str | None,
    *,
    gateway: PaymentGateway | None = None,
    event_sink: EventSink | None = None,
) -> dict[str, Any]:
    """Apply a signed gateway notification through the same path as ``verify_payment``."""

    client = gateway or get_payment_gateway()
    if not client.validate_webhook_signature(raw_body, signature):
        LOGGER.warning("Rejected gateway webhook with an invalid signature")
        raise UnauthorizedError("Invalid webhook signature")
    try:
        document = json.loads(raw_body)
    except (TypeError, ValueError) as exc:
        raise ValidationError("Webhook body is not valid JSON") from exc
    if not isinstance(document, dict):
        raise ValidationError("Webhook body must be a JSON object")

    body = document.get("eventData") if isinstance(document.get("eventData"), dict) else document
    reference = str(body.get("paymentReference") or "").strip()
    if not reference:
        raise ValidationError("Webhook payload has no paymentReference")

    with get_engine().begin() as conn:
        kind, entity = _locate(conn, reference)
    if entity["payment_status"] == "paid":
        return _outcome(kind, entity, already_processed=True)
    return _reconcile(reference, build_verify_result(body), event_sink=event_sink, kind=kind, entity=entity)
