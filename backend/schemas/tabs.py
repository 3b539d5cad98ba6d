"""Pydantic schemas for tab endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from backend.schemas.orders import Order


class TabCreate(BaseModel):
    table_number: str = Field(..., min_length=1)
    user_id: Optional[int] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    guest_id: Optional[str] = None


class Tab(BaseModel):
    id: int
    tab_number: str
    table_number: str
    user_id: Optional[int] = None
    opened_by_staff_id: Optional[int] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    status: str
    payment_status: str
    subtotal: float
    service_fee: float
    tax: float
    delivery_fee: float
    discount_total: float
    tip_amount: float
    total: float
    opened_at: datetime
    closed_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    payment_reference: Optional[str] = None
    transaction_reference: Optional[str] = None
    version: int


class TabDetails(Tab):
    orders: List[Order] = Field(default_factory=list)


class TabOrderLink(BaseModel):
    order_id: int


class TabCheckoutRequest(BaseModel):
    tip_amount: float = Field(default=0, ge=0)


class RewardOffer(BaseModel):
    id: int
    code: str
    description: Optional[str] = None
    discount_type: str
    discount_value: float
    min_subtotal: float
    max_discount: Optional[float] = None
    expires_at: Optional[datetime] = None
    discount_amount: float


class TabCheckout(BaseModel):
    tab: TabDetails
    eligible_rewards: List[RewardOffer] = Field(default_factory=list)


class TabDiscountRequest(BaseModel):
    amount: float = Field(..., gt=0)
    reference: Optional[str] = Field(default=None, max_length=128)


class TabRewardRequest(BaseModel):
    code: str = Field(..., min_length=1)
