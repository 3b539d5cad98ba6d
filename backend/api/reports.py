"""Reports API router."""

from __future__ import annotations

from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from backend.dependencies.security import AuthenticatedUser, require_min_role
from backend.schemas.common import ApiResponse
from backend.schemas.reports import Expense, ExpenseCreate, FinancialSummary
from backend.services import pos as pos_service

router = APIRouter(prefix="/reports", tags=["reports"])


@router.get("/summary", response_model=ApiResponse[FinancialSummary])
def get_financial_summary(
    start: date = Query(..., description="Premier jour inclus"),
    end: Optional[date] = Query(default=None, description="Dernier jour inclus (défaut : start)"),
    _: AuthenticatedUser = Depends(require_min_role("manager")),
):
    """Return the profit and loss summary for a day or a date range."""

    return {"success": True, "data": pos_service.generate_summary(start, end)}


@router.get("/expenses", response_model=ApiResponse[List[Expense]])
def list_expenses(
    start: date = Query(...),
    end: Optional[date] = Query(default=None),
    _: AuthenticatedUser = Depends(require_min_role("manager")),
):
    return {"success": True, "data": pos_service.list_expenses(start, end)}


@router.post("/expenses", response_model=ApiResponse[Expense], status_code=201)
def create_expense(
    payload: ExpenseCreate,
    user: AuthenticatedUser = Depends(require_min_role("manager")),
):
    return {"success": True, "data": pos_service.record_expense(payload.model_dump(), created_by=user.id)}
