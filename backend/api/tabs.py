"""API endpoints for table tabs."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from backend.dependencies.pos import get_event_sink, get_fees
from backend.dependencies.security import AuthenticatedUser, get_current_user, require_min_role
from backend.schemas.common import ApiResponse
from backend.schemas.tabs import (
    Tab,
    TabCheckout,
    TabCheckoutRequest,
    TabCreate,
    TabDetails,
    TabDiscountRequest,
    TabOrderLink,
    TabRewardRequest,
)
from backend.services import pos as pos_service

router = APIRouter(prefix="/tabs", tags=["tabs"])


@router.post("", response_model=ApiResponse[TabDetails], status_code=201)
def create_tab(
    payload: TabCreate,
    user: AuthenticatedUser = Depends(require_min_role("staff")),
    events=Depends(get_event_sink),
):
    identity = payload.model_dump(exclude={"table_number"})
    tab = pos_service.create_tab(
        payload.table_number,
        identity,
        opened_by_staff_id=user.id,
        event_sink=events,
    )
    return {"success": True, "data": tab}


@router.get("", response_model=ApiResponse[List[Tab]])
def list_tabs(
    status: Optional[List[str]] = Query(default=None),
    table_number: Optional[str] = Query(default=None),
    user_id: Optional[int] = Query(default=None),
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    _: AuthenticatedUser = Depends(require_min_role("staff")),
):
    tabs = pos_service.list_tabs(status, table_number, user_id, start, end)
    return {"success": True, "data": tabs}


@router.get("/table/{table_number}", response_model=ApiResponse[Optional[TabDetails]])
def get_open_tab(table_number: str, _: AuthenticatedUser = Depends(get_current_user)):
    return {"success": True, "data": pos_service.get_open_tab_for_table(table_number)}


@router.get("/{tab_id}", response_model=ApiResponse[TabDetails])
def get_tab(tab_id: int, _: AuthenticatedUser = Depends(get_current_user)):
    return {"success": True, "data": pos_service.get_tab_details(tab_id)}


@router.post("/{tab_id}/orders", response_model=ApiResponse[TabDetails])
def add_order(
    tab_id: int,
    payload: TabOrderLink,
    _: AuthenticatedUser = Depends(get_current_user),
    fees=Depends(get_fees),
):
    return {"success": True, "data": pos_service.add_order_to_tab(tab_id, payload.order_id, provider=fees)}


@router.post("/{tab_id}/recalculate", response_model=ApiResponse[Tab])
def recalculate(
    tab_id: int,
    _: AuthenticatedUser = Depends(require_min_role("staff")),
    fees=Depends(get_fees),
):
    return {"success": True, "data": pos_service.recalculate_totals(tab_id, provider=fees)}


@router.post("/{tab_id}/checkout", response_model=ApiResponse[TabCheckout])
def prepare_checkout(
    tab_id: int,
    payload: TabCheckoutRequest,
    _: AuthenticatedUser = Depends(get_current_user),
    fees=Depends(get_fees),
):
    result = pos_service.prepare_for_checkout(tab_id, payload.tip_amount, provider=fees)
    return {"success": True, "data": result}


@router.post("/{tab_id}/discounts", response_model=ApiResponse[Tab])
def apply_discount(
    tab_id: int,
    payload: TabDiscountRequest,
    _: AuthenticatedUser = Depends(require_min_role("manager")),
):
    return {"success": True, "data": pos_service.apply_discount(tab_id, payload.amount, payload.reference)}


@router.post("/{tab_id}/rewards", response_model=ApiResponse[Tab])
def redeem_reward(
    tab_id: int,
    payload: TabRewardRequest,
    _: AuthenticatedUser = Depends(get_current_user),
):
    return {"success": True, "data": pos_service.apply_reward_offer(tab_id, payload.code)}


@router.post("/{tab_id}/close", response_model=ApiResponse[Tab])
def close_tab(
    tab_id: int,
    user: AuthenticatedUser = Depends(require_min_role("manager")),
    events=Depends(get_event_sink),
):
    return {"success": True, "data": pos_service.close_tab(tab_id, actor_id=user.id, event_sink=events)}
