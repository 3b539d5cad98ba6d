"""Client HTTP du prestataire de paiement (API de type Monnify).

Le client ne connaît ni les tabs ni les commandes : il initialise une transaction,
vérifie son statut, déclenche un remboursement et valide la signature des webhooks.
Toute erreur réseau ou réponse refusée est convertie en ``GatewayError``.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from typing import Any, Callable, Protocol
from urllib.parse import quote

import requests
from requests.adapters import HTTPAdapter, Retry

from .data_repository import SETTINGS
from .errors import GatewayError
from .settings import GatewaySettings

LOGGER = logging.getLogger(__name__)

LOGIN_PATH = "/api/v1/auth/login"
INIT_PATH = "/api/v1/merchant/transactions/init-transaction"
STATUS_PATH = "/api/v2/transactions/{reference}"
REFUND_PATH = "/api/v1/refunds/initiate-refund"
DEFAULT_PAYMENT_METHODS = ("CARD", "ACCOUNT_TRANSFER")
SIGNATURE_HEADER = "monnify-signature"
_GATEWAY_TIMESTAMP_FORMATS = ("%Y-%m-%d %H:%M:%S.%f", "%d/%m/%Y %I:%M:%S %p")


@dataclass(frozen=True)
class InitializeResult:
    checkout_url: str
    transaction_reference: str
    payment_reference: str | None = None


@dataclass(frozen=True)
class VerifyResult:
    payment_status: str
    transaction_reference: str | None
    payment_reference: str | None = None
    paid_at: datetime | None = None
    amount_paid: Decimal = Decimal("0")
    payment_method: str | None = None


@dataclass(frozen=True)
class RefundResult:
    refund_reference: str
    status: str
    raw: dict[str, Any] = field(default_factory=dict)


class PaymentGateway(Protocol):
    def initialize(
        self,
        *,
        amount: Decimal,
        customer_name: str,
        customer_email: str,
        reference: str,
        redirect_url: str,
        description: str,
        metadata: dict[str, Any] | None = None,
    ) -> InitializeResult: ...

    def verify(self, reference: str) -> VerifyResult: ...

    def initiate_refund(self, transaction_reference: str, amount: Decimal, reason: str) -> RefundResult: ...

    def validate_webhook_signature(self, body: bytes | str, signature: str | None) -> bool: ...


def parse_gateway_timestamp(raw: Any) -> datetime | None:
    """Parse ``paidOn`` values (``2024-05-01 12:30:00.0`` or ISO 8601) as UTC."""

    if raw in (None, ""):
        return None
    if isinstance(raw, datetime):
        parsed = raw
    else:
        cleaned = str(raw).strip().replace("Z", "+00:00")
        try:
            parsed = datetime.fromisoformat(cleaned)
        except ValueError:
            parsed = None
            for fmt in _GATEWAY_TIMESTAMP_FORMATS:
                try:
                    parsed = datetime.strptime(cleaned, fmt)
                    break
                except ValueError:
                    continue
            if parsed is None:
                LOGGER.warning("Unparseable gateway timestamp %r", raw)
                return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _as_decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value if value is not None else "0"))
    except (InvalidOperation, ValueError):
        return Decimal("0")


def build_verify_result(body: dict[str, Any]) -> VerifyResult:
    """Projette un ``responseBody`` (ou un ``eventData`` de webhook) en ``VerifyResult``."""

    return VerifyResult(
        payment_status=str(body.get("paymentStatus") or "PENDING").upper(),
        transaction_reference=body.get("transactionReference"),
        payment_reference=body.get("paymentReference"),
        paid_at=parse_gateway_timestamp(body.get("paidOn")),
        amount_paid=_as_decimal(body.get("amountPaid")),
        payment_method=body.get("paymentMethod"),
    )


class MonnifyGateway:
    """Implémentation ``requests`` du contrat ``PaymentGateway``."""

    def __init__(
        self,
        settings: GatewaySettings,
        *,
        session: requests.Session | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self._clock = clock
        self._token: str | None = None
        self._token_expires_at = 0.0
        self._lock = threading.Lock()
        self.session = session or self._build_session(settings.max_retries)

    @staticmethod
    def _build_session(max_retries: int) -> requests.Session:
        # Seuls les GET sont rejoués : un POST d'initialisation ne doit jamais partir deux fois.
        retries = Retry(
            total=max_retries,
            status_forcelist=(429, 500, 502, 503, 504),
            backoff_factor=0.6,
            allowed_methods=("GET",),
        )
        session = requests.Session()
        session.headers.update({"Accept": "application/json", "Content-Type": "application/json"})
        session.mount("https://", HTTPAdapter(max_retries=retries))
        session.mount("http://", HTTPAdapter(max_retries=retries))
        return session

    def _url(self, path: str) -> str:
        return f"{self.settings.base_url.rstrip('/')}{path}"

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = self.session.request(
                method,
                self._url(path),
                timeout=self.settings.timeout_seconds,
                **kwargs,
            )
        except requests.RequestException as exc:
            LOGGER.error("Gateway %s %s failed: %s", method, path, exc)
            raise GatewayError(f"Payment gateway unreachable: {exc}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if not response.ok:
            message = payload.get("responseMessage") if isinstance(payload, dict) else None
            LOGGER.error("Gateway %s %s returned HTTP %s: %s", method, path, response.status_code, message)
            raise GatewayError(message or f"Payment gateway returned HTTP {response.status_code}")
        if not isinstance(payload, dict) or not payload.get("requestSuccessful", False):
            message = payload.get("responseMessage") if isinstance(payload, dict) else None
            raise GatewayError(message or "Payment gateway rejected the request")
        return payload

    def _auth_token(self) -> str:
        with self._lock:
            if self._token and self._clock() < self._token_expires_at:
                return self._token
            credentials = f"{self.settings.api_key}:{self.settings.secret_key}".encode("utf-8")
            payload = self._request(
                "POST",
                LOGIN_PATH,
                headers={"Authorization": f"Basic {base64.b64encode(credentials).decode('ascii')}"},
            )
            body = payload.get("responseBody") or {}
            token = body.get("accessToken")
            if not token:
                raise GatewayError("Payment gateway returned no access token")
            expires_in = float(body.get("expiresIn") or 0)
            # Marge de 30 s pour ne pas envoyer un jeton expiré en vol.
            self._token = str(token)
            self._token_expires_at = self._clock() + max(0.0, expires_in - 30)
            return self._token

    def _bearer(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._auth_token()}"}

    def initialize(
        self,
        *,
        amount: Decimal,
        customer_name: str,
        customer_email: str,
        reference: str,
        redirect_url: str,
        description: str,
        metadata: dict[str, Any] | None = None,
    ) -> InitializeResult:
        request_body = {
            "amount": float(amount),
            "customerName": customer_name,
            "customerEmail": customer_email,
            "paymentReference": reference,
            "paymentDescription": description,
            "currencyCode": self.settings.currency,
            "contractCode": self.settings.contract_code,
            "redirectUrl": redirect_url,
            "paymentMethods": list(DEFAULT_PAYMENT_METHODS),
            "metaData": metadata or {},
        }
        payload = self._request("POST", INIT_PATH, json=request_body, headers=self._bearer())
        body = payload.get("responseBody") or {}
        checkout_url = body.get("checkoutUrl")
        transaction_reference = body.get("transactionReference")
        if not checkout_url or not transaction_reference:
            raise GatewayError("Payment gateway response is missing checkout details")
        LOGGER.info("Payment %s initialized (transaction %s)", reference, transaction_reference)
        return InitializeResult(
            checkout_url=str(checkout_url),
            transaction_reference=str(transaction_reference),
            payment_reference=body.get("paymentReference") or reference,
        )

    def verify(self, reference: str) -> VerifyResult:
        path = STATUS_PATH.format(reference=quote(reference, safe=""))
        payload = self._request("GET", path, headers=self._bearer())
        return build_verify_result(payload.get("responseBody") or {})

    def initiate_refund(self, transaction_reference: str, amount: Decimal, reason: str) -> RefundResult:
        refund_reference = f"RF-{transaction_reference}-{int(time.time() * 1000)}"
        payload = self._request(
            "POST",
            REFUND_PATH,
            json={
                "transactionReference": transaction_reference,
                "refundReference": refund_reference,
                "refundAmount": float(amount),
                "refundReason": reason,
                "customerNote": reason,
            },
            headers=self._bearer(),
        )
        body = payload.get("responseBody") or {}
        return RefundResult(
            refund_reference=str(body.get("refundReference") or refund_reference),
            status=str(body.get("refundStatus") or "PENDING"),
            raw=body,
        )

    def validate_webhook_signature(self, body: bytes | str, signature: str | None) -> bool:
        if not signature or not self.settings.secret_key:
            return False
        raw = body.encode("utf-8") if isinstance(body, str) else body
        expected = hmac.new(self.settings.secret_key.encode("utf-8"), raw, hashlib.sha512).hexdigest()
        return hmac.compare_digest(expected, signature.strip().lower())


@lru_cache(maxsize=1)
def get_payment_gateway() -> MonnifyGateway:
    return MonnifyGateway(SETTINGS.gateway)


__all__ = [
    "SIGNATURE_HEADER",
    "InitializeResult",
    "VerifyResult",
    "RefundResult",
    "PaymentGateway",
    "MonnifyGateway",
    "build_verify_result",
    "parse_gateway_timestamp",
    "get_payment_gateway",
]
