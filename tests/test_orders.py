from decimal import Decimal

import pytest
from sqlalchemy import text

from core.errors import InvalidTransitionError, UnauthorizedError, ValidationError
from backend.services.pos import orders as order_service
from backend.services.pos.orders import Actor, compute_refund_amount, generate_order_number
from tests import sample_data


def _mark_paid(engine, order_id, *, status="confirmed", total=None, transaction_reference="MNFY|0009"):
    params = {"id": order_id, "status": status, "ref": transaction_reference}
    sql = "UPDATE orders SET payment_status = 'paid', status = :status, transaction_reference = :ref"
    if total is not None:
        sql += ", total = :total"
        params["total"] = total
    with engine.begin() as conn:
        conn.execute(text(sql + " WHERE id = :id"), params)


def test_generate_order_number_uses_last_eight_digits():
    assert generate_order_number(1717171717171) == "WGB17171717"


def test_create_dine_in_order_computes_totals(sqlite_engine, fees, sink):
    payload = sample_data.dine_in_payload("T4", sample_data.jollof_item(), sample_data.chapman_item())

    order = order_service.create_order(payload, provider=fees, event_sink=sink)

    assert order["order_number"].startswith("WGB")
    assert order["status"] == "pending"
    assert order["payment_status"] == "pending"
    assert order["subtotal"] == Decimal("3500.00")
    assert order["service_fee"] == Decimal("70.00")
    assert order["delivery_fee"] == Decimal("0.00")
    assert order["total"] == Decimal("3570.00")
    assert [item["name"] for item in order["items"]] == ["Jollof Rice", "Chapman"]
    assert [entry["status"] for entry in order["status_history"]] == ["pending"]
    assert sink.types() == ["order.created"]
    assert sink.events[0][1]["table_number"] == "T4"


def test_create_delivery_order_adds_delivery_fee(sqlite_engine, fees, sink):
    order = order_service.create_order(
        sample_data.delivery_payload(sample_data.chapman_item()),
        provider=fees,
        event_sink=sink,
    )

    assert order["delivery_fee"] == Decimal("1000.00")
    assert order["total"] == Decimal("2530.00")
    assert order["delivery_address"] == "12 Marina Road, Lagos"


def test_authenticated_order_does_not_need_guest_details(sqlite_engine, fees, sink):
    payload = {
        "order_type": "pickup",
        "pickup_time": "2024-06-01T18:00:00Z",
        "items": [sample_data.jollof_item()],
    }

    order = order_service.create_order(payload, user_id=7, provider=fees, event_sink=sink)

    assert order["user_id"] == 7
    assert order["guest_name"] is None
    assert order["pickup_time"].hour == 18


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"items": []}, "at least one item"),
        ({"guest_email": None}, "guest_email"),
        ({"table_number": ""}, "table_number"),
        ({"order_type": "drive-through"}, "order_type"),
        ({"items": [{"menu_item_id": 1, "name": "Jollof", "price": 100, "quantity": 0}]}, "quantity"),
    ],
)
def test_create_order_rejects_invalid_payloads(sqlite_engine, fees, sink, overrides, message):
    payload = sample_data.dine_in_payload()
    payload.update(overrides)

    with pytest.raises(ValidationError, match=message):
        order_service.create_order(payload, provider=fees, event_sink=sink)

    with sqlite_engine.begin() as conn:
        assert conn.execute(text("SELECT COUNT(*) FROM orders")).scalar_one() == 0


def test_only_dine_in_orders_can_join_a_tab(sqlite_engine, fees, sink):
    with pytest.raises(ValidationError, match="dine-in"):
        order_service.create_order(sample_data.delivery_payload(tab_id=1), provider=fees, event_sink=sink)


def test_idempotency_key_returns_existing_order(sqlite_engine, fees, sink):
    payload = sample_data.dine_in_payload(idempotency_key="checkout-123")

    first = order_service.create_order(payload, provider=fees, event_sink=sink)
    second = order_service.create_order(payload, provider=fees, event_sink=sink)

    assert second["id"] == first["id"]
    assert sink.types() == ["order.created"]
    with sqlite_engine.begin() as conn:
        assert conn.execute(text("SELECT COUNT(*) FROM orders")).scalar_one() == 1


def test_dine_in_lifecycle_until_completed(sqlite_engine, fees, sink):
    order = order_service.create_order(sample_data.dine_in_payload(), provider=fees, event_sink=sink)
    staff = Actor(id=3, role="staff")

    for status in ("confirmed", "preparing", "ready", "completed"):
        order = order_service.update_status(order["id"], status, actor=staff, provider=fees, event_sink=sink)

    assert order["status"] == "completed"
    assert [entry["status"] for entry in order["status_history"]] == [
        "pending",
        "confirmed",
        "preparing",
        "ready",
        "completed",
    ]
    assert order["status_history"][-1]["actor_id"] == 3
    assert sink.types().count("order.status_changed") == 4


def test_completed_order_cannot_go_back_to_preparing(sqlite_engine, fees, sink):
    order = order_service.create_order(sample_data.dine_in_payload(), provider=fees, event_sink=sink)
    for status in ("confirmed", "preparing", "ready", "completed"):
        order_service.update_status(order["id"], status, provider=fees, event_sink=sink)

    with pytest.raises(InvalidTransitionError):
        order_service.update_status(order["id"], "preparing", provider=fees, event_sink=sink)

    assert order_service.get_order(order["id"])["status"] == "completed"


def test_out_for_delivery_is_reserved_to_delivery_orders(sqlite_engine, fees, sink):
    dine_in = order_service.create_order(sample_data.dine_in_payload(), provider=fees, event_sink=sink)
    delivery = order_service.create_order(sample_data.delivery_payload(), provider=fees, event_sink=sink)
    for order in (dine_in, delivery):
        for status in ("confirmed", "preparing", "ready"):
            order_service.update_status(order["id"], status, provider=fees, event_sink=sink)

    with pytest.raises(InvalidTransitionError):
        order_service.update_status(dine_in["id"], "out-for-delivery", provider=fees, event_sink=sink)
    with pytest.raises(InvalidTransitionError):
        order_service.update_status(delivery["id"], "completed", provider=fees, event_sink=sink)

    shipped = order_service.update_status(delivery["id"], "out-for-delivery", provider=fees, event_sink=sink)
    assert shipped["status"] == "out-for-delivery"


def test_unknown_status_is_a_validation_error(sqlite_engine, fees, sink):
    order = order_service.create_order(sample_data.dine_in_payload(), provider=fees, event_sink=sink)

    with pytest.raises(ValidationError):
        order_service.update_status(order["id"], "eaten", provider=fees, event_sink=sink)


@pytest.mark.parametrize(
    "previous, payment_status, expected",
    [
        ("pending", "paid", Decimal("5000.00")),
        ("confirmed", "paid", Decimal("5000.00")),
        ("preparing", "paid", Decimal("2500.00")),
        ("ready", "paid", Decimal("0.00")),
        ("confirmed", "pending", Decimal("0.00")),
    ],
)
def test_compute_refund_amount_policy(previous, payment_status, expected):
    assert compute_refund_amount(previous, payment_status, Decimal("5000")) == expected


def test_cancelling_paid_order_in_preparation_refunds_half(sqlite_engine, fees, gateway, sink):
    order = order_service.create_order(sample_data.dine_in_payload(), provider=fees, event_sink=sink)
    _mark_paid(sqlite_engine, order["id"], status="preparing", total=5000)

    cancelled = order_service.cancel_order(
        order["id"],
        reason="Kitchen closed",
        actor=Actor(id=2, role="manager"),
        provider=fees,
        gateway=gateway,
        event_sink=sink,
    )

    assert cancelled["status"] == "cancelled"
    assert cancelled["payment_status"] == "refunded"
    assert cancelled["refund_amount"] == Decimal("2500.00")
    assert cancelled["refund_status"] == "initiated"
    assert gateway.refunds == [("MNFY|0009", Decimal("2500.00"), "Kitchen closed")]
    assert cancelled["status_history"][-1]["note"] == "Kitchen closed"


def test_cancelling_unpaid_order_marks_payment_cancelled(sqlite_engine, fees, gateway, sink):
    order = order_service.create_order(sample_data.dine_in_payload(), provider=fees, event_sink=sink)

    cancelled = order_service.update_status(
        order["id"], "cancelled", note="Guest left", provider=fees, gateway=gateway, event_sink=sink
    )

    assert cancelled["status"] == "cancelled"
    assert cancelled["payment_status"] == "cancelled"
    assert cancelled["refund_amount"] == Decimal("0.00")
    assert cancelled["refund_status"] == "none"
    assert gateway.refunds == []


def test_cancelling_ready_paid_order_keeps_payment(sqlite_engine, fees, gateway, sink):
    order = order_service.create_order(sample_data.dine_in_payload(), provider=fees, event_sink=sink)
    _mark_paid(sqlite_engine, order["id"], status="ready")

    cancelled = order_service.cancel_order(order["id"], provider=fees, gateway=gateway, event_sink=sink)

    assert cancelled["payment_status"] == "paid"
    assert cancelled["refund_amount"] == Decimal("0.00")
    assert gateway.refunds == []


def test_refund_failure_is_flagged_for_manual_review(sqlite_engine, fees, gateway, sink):
    gateway.fail_refund = True
    order = order_service.create_order(sample_data.dine_in_payload(), provider=fees, event_sink=sink)
    _mark_paid(sqlite_engine, order["id"], status="confirmed")

    cancelled = order_service.cancel_order(order["id"], provider=fees, gateway=gateway, event_sink=sink)

    assert cancelled["payment_status"] == "refunded"
    assert cancelled["refund_amount"] == order["total"]
    assert cancelled["refund_status"] == "manual_review"


def test_refund_without_transaction_goes_to_manual_review(sqlite_engine, fees, gateway, sink):
    order = order_service.create_order(sample_data.dine_in_payload(), provider=fees, event_sink=sink)
    _mark_paid(sqlite_engine, order["id"], status="pending", transaction_reference=None)

    cancelled = order_service.cancel_order(order["id"], provider=fees, gateway=gateway, event_sink=sink)

    assert cancelled["refund_status"] == "manual_review"
    assert gateway.refunds == []


def test_terminal_orders_cannot_be_cancelled(sqlite_engine, fees, gateway, sink):
    order = order_service.create_order(sample_data.dine_in_payload(), provider=fees, event_sink=sink)
    order_service.cancel_order(order["id"], provider=fees, gateway=gateway, event_sink=sink)

    with pytest.raises(InvalidTransitionError):
        order_service.cancel_order(order["id"], provider=fees, gateway=gateway, event_sink=sink)


def test_customer_cannot_cancel_someone_else_order(sqlite_engine, fees, gateway, sink):
    order = order_service.create_order(
        sample_data.dine_in_payload(), user_id=10, provider=fees, event_sink=sink
    )

    with pytest.raises(UnauthorizedError):
        order_service.cancel_order(
            order["id"], actor=Actor(id=11, role="customer"), provider=fees, gateway=gateway, event_sink=sink
        )

    own = order_service.cancel_order(
        order["id"], actor=Actor(id=10, role="customer"), provider=fees, gateway=gateway, event_sink=sink
    )
    assert own["status"] == "cancelled"


def test_add_note_keeps_status_and_appends_history(sqlite_engine, fees, sink):
    order = order_service.create_order(sample_data.dine_in_payload(), provider=fees, event_sink=sink)

    updated = order_service.add_order_note(order["id"], "No pepper", actor=Actor(id=4))

    assert updated["status"] == "pending"
    assert updated["status_history"][-1]["note"] == "No pepper"
    with pytest.raises(ValidationError):
        order_service.add_order_note(order["id"], "   ")


def test_list_orders_filters_by_status(sqlite_engine, fees, gateway, sink):
    kept = order_service.create_order(sample_data.dine_in_payload("T1"), provider=fees, event_sink=sink)
    dropped = order_service.create_order(sample_data.dine_in_payload("T2"), provider=fees, event_sink=sink)
    order_service.cancel_order(dropped["id"], provider=fees, gateway=gateway, event_sink=sink)

    pending = order_service.list_orders(status="pending")

    assert [order["id"] for order in pending] == [kept["id"]]
    assert len(order_service.list_orders()) == 2
    with pytest.raises(ValidationError):
        order_service.list_orders(status="lost")
