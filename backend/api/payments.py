"""API endpoints for payment initialization, verification and gateway callbacks."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from core.data_repository import SETTINGS
from core.errors import GatewayError
from core.payment_gateway import SIGNATURE_HEADER
from backend.dependencies.pos import get_event_sink, get_gateway
from backend.dependencies.security import AuthenticatedUser, get_current_user, get_optional_user, require_min_role
from backend.schemas.common import ApiResponse
from backend.schemas.payments import (
    ManualPaymentRequest,
    PaymentInitialization,
    PaymentInitRequest,
    PaymentOutcome,
)
from backend.services import pos as pos_service

router = APIRouter(prefix="/payments", tags=["payments"])

logger = logging.getLogger(__name__)


@router.post("/tabs/{tab_id}/initialize", response_model=ApiResponse[PaymentInitialization])
def initialize_tab_payment(
    tab_id: int,
    payload: PaymentInitRequest,
    _: AuthenticatedUser = Depends(get_current_user),
    gateway=Depends(get_gateway),
):
    result = pos_service.initialize_tab_payment(
        tab_id,
        payload.customer_name,
        payload.customer_email,
        payload.redirect_url,
        gateway=gateway,
    )
    return {"success": True, "data": result}


@router.post("/orders/{order_id}/initialize", response_model=ApiResponse[PaymentInitialization])
def initialize_order_payment(
    order_id: int,
    payload: PaymentInitRequest,
    _: Optional[AuthenticatedUser] = Depends(get_optional_user),
    gateway=Depends(get_gateway),
):
    result = pos_service.initialize_order_payment(
        order_id,
        payload.customer_name,
        payload.customer_email,
        payload.redirect_url,
        gateway=gateway,
    )
    return {"success": True, "data": result}


@router.get("/verify/{reference}", response_model=ApiResponse[PaymentOutcome])
def verify_payment(reference: str, gateway=Depends(get_gateway), events=Depends(get_event_sink)):
    """Gateway redirect target: same reference, bounded retries on gateway errors."""

    attempts = max(1, SETTINGS.gateway.max_retries + 1)
    for attempt in range(1, attempts + 1):
        try:
            outcome = pos_service.verify_payment(reference, gateway=gateway, event_sink=events)
            return {"success": True, "data": outcome}
        except GatewayError as exc:
            if attempt >= attempts:
                raise
            logger.warning("Verify %s failed (attempt %s/%s): %s", reference, attempt, attempts, exc)


@router.post("/manual", response_model=ApiResponse[PaymentOutcome])
def complete_payment_manually(
    payload: ManualPaymentRequest,
    user: AuthenticatedUser = Depends(require_min_role("staff")),
    events=Depends(get_event_sink),
):
    outcome = pos_service.complete_payment_manually(
        payload.kind,
        payload.entity_id,
        payload.payment_type,
        payload.reference,
        processed_by=user.id,
        comments=payload.comments,
        event_sink=events,
    )
    return {"success": True, "data": outcome}


@router.post("/webhook", response_model=ApiResponse[PaymentOutcome])
async def gateway_webhook(
    request: Request,
    signature: Optional[str] = Header(default=None, alias=SIGNATURE_HEADER),
    gateway=Depends(get_gateway),
    events=Depends(get_event_sink),
):
    raw_body = await request.body()
    outcome = pos_service.handle_gateway_webhook(raw_body, signature, gateway=gateway, event_sink=events)
    return {"success": True, "data": outcome}
