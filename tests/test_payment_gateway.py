import hashlib
import hmac
from datetime import datetime, timezone
from decimal import Decimal

import pytest
import requests

from core.errors import GatewayError
from core.payment_gateway import (
    INIT_PATH,
    LOGIN_PATH,
    REFUND_PATH,
    MonnifyGateway,
    build_verify_result,
    parse_gateway_timestamp,
)
from core.settings import GatewaySettings


class _FakeResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class _FakeSession:
    def __init__(self, responses):
        self._responses = list(responses)
        self.calls = []

    def request(self, method, url, timeout=None, **kwargs):
        self.calls.append({"method": method, "url": url, "timeout": timeout, **kwargs})
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _login(expires_in=3600):
    return _FakeResponse(
        200,
        {"requestSuccessful": True, "responseBody": {"accessToken": "tok-1", "expiresIn": expires_in}},
    )


def _settings():
    return GatewaySettings(
        base_url="https://gateway.test",
        api_key="MK_TEST",
        secret_key="SK_TEST",
        contract_code="1234",
        timeout_seconds=5.0,
    )


def test_initialize_authenticates_then_posts_transaction():
    session = _FakeSession(
        [
            _login(),
            _FakeResponse(
                200,
                {
                    "requestSuccessful": True,
                    "responseBody": {
                        "checkoutUrl": "https://pay.test/abc",
                        "transactionReference": "MNFY|001",
                        "paymentReference": "TAB1-1-XYZ",
                    },
                },
            ),
        ]
    )
    gateway = MonnifyGateway(_settings(), session=session)

    result = gateway.initialize(
        amount=Decimal("3870.00"),
        customer_name="Ada",
        customer_email="ada@example.com",
        reference="TAB1-1-XYZ",
        redirect_url="https://app.test/callback",
        description="Tab TAB-T4-000001",
    )

    assert result.checkout_url == "https://pay.test/abc"
    assert result.transaction_reference == "MNFY|001"
    assert session.calls[0]["url"] == "https://gateway.test" + LOGIN_PATH
    assert session.calls[0]["headers"]["Authorization"].startswith("Basic ")
    init_call = session.calls[1]
    assert init_call["url"] == "https://gateway.test" + INIT_PATH
    assert init_call["headers"] == {"Authorization": "Bearer tok-1"}
    assert init_call["json"]["amount"] == 3870.0
    assert init_call["json"]["contractCode"] == "1234"
    assert init_call["timeout"] == 5.0


def test_token_is_reused_until_expiry():
    now = [0.0]
    verify_ok = _FakeResponse(200, {"requestSuccessful": True, "responseBody": {"paymentStatus": "PENDING"}})
    session = _FakeSession([_login(expires_in=60), verify_ok, verify_ok, _login(expires_in=60), verify_ok])
    gateway = MonnifyGateway(_settings(), session=session, clock=lambda: now[0])

    gateway.verify("MNFY|001")
    now[0] = 20.0
    gateway.verify("MNFY|001")
    now[0] = 31.0
    gateway.verify("MNFY|001")

    login_calls = [call for call in session.calls if call["url"].endswith(LOGIN_PATH)]
    assert len(login_calls) == 2


def test_verify_quotes_reference_and_maps_body():
    session = _FakeSession(
        [
            _login(),
            _FakeResponse(
                200,
                {
                    "requestSuccessful": True,
                    "responseBody": {
                        "paymentStatus": "paid",
                        "transactionReference": "MNFY|001",
                        "paymentReference": "ORD5-1-ABC",
                        "paidOn": "2024-05-01 12:30:00.0",
                        "amountPaid": "2570.00",
                        "paymentMethod": "CARD",
                    },
                },
            ),
        ]
    )
    gateway = MonnifyGateway(_settings(), session=session)

    result = gateway.verify("MNFY|001")

    assert session.calls[1]["url"].endswith("/api/v2/transactions/MNFY%7C001")
    assert result.payment_status == "PAID"
    assert result.amount_paid == Decimal("2570.00")
    assert result.paid_at == datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)


def test_network_failure_becomes_gateway_error():
    session = _FakeSession([requests.ConnectionError("boom")])
    gateway = MonnifyGateway(_settings(), session=session)

    with pytest.raises(GatewayError):
        gateway.verify("MNFY|001")


def test_rejected_request_becomes_gateway_error():
    session = _FakeSession(
        [
            _login(),
            _FakeResponse(400, {"requestSuccessful": False, "responseMessage": "Invalid amount"}),
        ]
    )
    gateway = MonnifyGateway(_settings(), session=session)

    with pytest.raises(GatewayError, match="Invalid amount"):
        gateway.initiate_refund("MNFY|001", Decimal("100"), "cancelled")


def test_refund_posts_amount_and_reason():
    session = _FakeSession(
        [
            _login(),
            _FakeResponse(
                200,
                {"requestSuccessful": True, "responseBody": {"refundReference": "RF-1", "refundStatus": "IN_PROGRESS"}},
            ),
        ]
    )
    gateway = MonnifyGateway(_settings(), session=session)

    result = gateway.initiate_refund("MNFY|001", Decimal("2500.00"), "Order cancelled")

    assert result.refund_reference == "RF-1"
    assert result.status == "IN_PROGRESS"
    refund_call = session.calls[1]
    assert refund_call["url"].endswith(REFUND_PATH)
    assert refund_call["json"]["refundAmount"] == 2500.0
    assert refund_call["json"]["transactionReference"] == "MNFY|001"


def test_webhook_signature_is_hmac_sha512_of_raw_body():
    gateway = MonnifyGateway(_settings(), session=_FakeSession([]))
    body = b'{"eventData": {"paymentReference": "ORD1-1-AAA"}}'
    signature = hmac.new(b"SK_TEST", body, hashlib.sha512).hexdigest()

    assert gateway.validate_webhook_signature(body, signature) is True
    assert gateway.validate_webhook_signature(body, signature.upper()) is True
    assert gateway.validate_webhook_signature(body + b" ", signature) is False
    assert gateway.validate_webhook_signature(body, None) is False


def test_build_verify_result_defaults_to_pending():
    result = build_verify_result({})
    assert result.payment_status == "PENDING"
    assert result.transaction_reference is None


def test_parse_gateway_timestamp_formats():
    assert parse_gateway_timestamp(None) is None
    assert parse_gateway_timestamp("2024-05-01T10:00:00Z") == datetime(2024, 5, 1, 10, tzinfo=timezone.utc)
    assert parse_gateway_timestamp("not a date") is None
