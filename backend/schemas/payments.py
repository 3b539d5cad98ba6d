"""Pydantic schemas for payment endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field


class PaymentInitRequest(BaseModel):
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    redirect_url: Optional[str] = None


class PaymentInitialization(BaseModel):
    kind: Literal["tab", "order"]
    entity_id: int
    amount: float
    payment_reference: str
    transaction_reference: str
    checkout_url: str


class ManualPaymentRequest(BaseModel):
    kind: Literal["tab", "order"]
    entity_id: int
    payment_type: Literal["cash", "transfer", "card"]
    reference: str = Field(..., min_length=1)
    comments: Optional[str] = None


class PaymentOutcome(BaseModel):
    kind: Literal["tab", "order"]
    entity_id: int
    status: str
    payment_status: str
    payment_reference: Optional[str] = None
    transaction_reference: Optional[str] = None
    paid_at: Optional[datetime] = None
    already_processed: bool = False
