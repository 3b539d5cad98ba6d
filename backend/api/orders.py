"""API endpoints for the order lifecycle."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from core.errors import UnauthorizedError
from backend.dependencies.pos import get_event_sink, get_fees, get_gateway
from backend.dependencies.security import (
    AuthenticatedUser,
    get_current_user,
    get_optional_user,
    require_min_role,
)
from backend.schemas.common import ApiResponse
from backend.schemas.orders import (
    Order,
    OrderCancelRequest,
    OrderCreate,
    OrderNoteCreate,
    OrderStatusUpdate,
    OrderSummary,
)
from backend.services import pos as pos_service

router = APIRouter(prefix="/orders", tags=["orders"])


def _actor(user: AuthenticatedUser | None) -> pos_service.Actor | None:
    return pos_service.Actor(id=user.id, role=user.role) if user else None


@router.post("", response_model=ApiResponse[Order], status_code=201)
def create_order(
    payload: OrderCreate,
    user: Optional[AuthenticatedUser] = Depends(get_optional_user),
    fees=Depends(get_fees),
    events=Depends(get_event_sink),
):
    user_id = user.id if user and user.role == "customer" else None
    order = pos_service.create_order(
        payload.model_dump(),
        user_id=user_id,
        provider=fees,
        event_sink=events,
    )
    return {"success": True, "data": order}


@router.get("", response_model=ApiResponse[list[OrderSummary]])
def list_orders(
    status: Optional[str] = Query(default=None),
    tab_id: Optional[int] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    _: AuthenticatedUser = Depends(require_min_role("staff")),
):
    return {"success": True, "data": pos_service.list_orders(status=status, tab_id=tab_id, limit=limit)}


@router.get("/{order_id}", response_model=ApiResponse[Order])
def get_order(order_id: int, user: AuthenticatedUser = Depends(get_current_user)):
    order = pos_service.get_order(order_id)
    if user.role == "customer" and order["user_id"] != user.id:
        raise UnauthorizedError("Customers can only view their own orders", order_id=order_id)
    return {"success": True, "data": order}


@router.patch("/{order_id}/status", response_model=ApiResponse[Order])
def update_order_status(
    order_id: int,
    payload: OrderStatusUpdate,
    user: AuthenticatedUser = Depends(require_min_role("staff")),
    fees=Depends(get_fees),
    gateway=Depends(get_gateway),
    events=Depends(get_event_sink),
):
    order = pos_service.update_status(
        order_id,
        payload.status,
        note=payload.note,
        actor=_actor(user),
        provider=fees,
        gateway=gateway,
        event_sink=events,
    )
    return {"success": True, "data": order}


@router.post("/{order_id}/cancel", response_model=ApiResponse[Order])
def cancel_order(
    order_id: int,
    payload: OrderCancelRequest | None = None,
    user: AuthenticatedUser = Depends(get_current_user),
    fees=Depends(get_fees),
    gateway=Depends(get_gateway),
    events=Depends(get_event_sink),
):
    order = pos_service.cancel_order(
        order_id,
        reason=payload.reason if payload else None,
        actor=_actor(user),
        provider=fees,
        gateway=gateway,
        event_sink=events,
    )
    return {"success": True, "data": order}


@router.post("/{order_id}/notes", response_model=ApiResponse[Order])
def add_order_note(
    order_id: int,
    payload: OrderNoteCreate,
    user: AuthenticatedUser = Depends(require_min_role("staff")),
):
    return {"success": True, "data": pos_service.add_order_note(order_id, payload.note, actor=_actor(user))}
