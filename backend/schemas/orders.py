"""Pydantic schemas for order endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

OrderType = Literal["dine-in", "pickup", "delivery"]


class OrderItemCreate(BaseModel):
    menu_item_id: int
    name: str = Field(..., min_length=1)
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    special_instructions: Optional[str] = None

    @field_validator("name", mode="before")
    def _strip_name(cls, value: str) -> str:
        return str(value or "").strip()


class OrderCreate(BaseModel):
    items: List[OrderItemCreate] = Field(..., min_length=1)
    order_type: OrderType
    table_number: Optional[str] = None
    pickup_time: Optional[datetime] = None
    delivery_address: Optional[str] = None
    delivery_instructions: Optional[str] = None
    guest_name: Optional[str] = None
    guest_email: Optional[str] = None
    guest_phone: Optional[str] = None
    tab_id: Optional[int] = None
    idempotency_key: Optional[str] = Field(default=None, max_length=128)
    notes: Optional[str] = None


class OrderItem(BaseModel):
    id: int
    menu_item_id: int
    name: str
    price: float
    quantity: int
    subtotal: float
    special_instructions: Optional[str] = None


class StatusHistoryEntry(BaseModel):
    status: str
    note: Optional[str] = None
    actor_id: Optional[int] = None
    created_at: datetime


class OrderSummary(BaseModel):
    id: int
    order_number: str
    order_type: OrderType
    status: str
    payment_status: str
    table_number: Optional[str] = None
    user_id: Optional[int] = None
    guest_name: Optional[str] = None
    subtotal: float
    tax: float
    service_fee: float
    delivery_fee: float
    discount: float
    total: float
    tab_id: Optional[int] = None
    created_at: datetime


class Order(OrderSummary):
    guest_email: Optional[str] = None
    guest_phone: Optional[str] = None
    pickup_time: Optional[datetime] = None
    delivery_address: Optional[str] = None
    delivery_instructions: Optional[str] = None
    tab_linked_at: Optional[datetime] = None
    payment_reference: Optional[str] = None
    transaction_reference: Optional[str] = None
    payment_method: Optional[str] = None
    paid_at: Optional[datetime] = None
    refund_amount: float = 0.0
    refund_status: str = "none"
    notes: Optional[str] = None
    version: int
    updated_at: datetime
    items: List[OrderItem] = Field(default_factory=list)
    status_history: List[StatusHistoryEntry] = Field(default_factory=list)


class OrderStatusUpdate(BaseModel):
    status: str = Field(..., min_length=1)
    note: Optional[str] = None


class OrderCancelRequest(BaseModel):
    reason: Optional[str] = None


class OrderNoteCreate(BaseModel):
    note: str = Field(..., min_length=1)
