"""Pydantic schemas for reporting endpoints."""

from __future__ import annotations

from datetime import date, datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class RevenueLine(BaseModel):
    menu_item_id: int
    name: str
    quantity: int = Field(0, ge=0)
    total: float


class CostLine(BaseModel):
    menu_item_id: int
    name: str
    quantity: int = Field(0, ge=0)
    cost_per_unit: float
    total: float


class RevenueBlock(BaseModel):
    items: List[RevenueLine] = Field(default_factory=list)
    total: float = 0.0


class CostBlock(BaseModel):
    items: List[CostLine] = Field(default_factory=list)
    total: float = 0.0


class RevenueBreakdown(BaseModel):
    food: RevenueBlock
    drink: RevenueBlock
    total: float


class CostBreakdown(BaseModel):
    food: CostBlock
    drink: CostBlock
    total: float


class ProfitBreakdown(BaseModel):
    food: float
    drink: float
    total: float


class ExpenseLine(BaseModel):
    category: str
    description: str
    amount: float


class ExpenseBreakdown(BaseModel):
    direct_costs: List[ExpenseLine] = Field(default_factory=list)
    operating_costs: List[ExpenseLine] = Field(default_factory=list)
    total_direct_costs: float = 0.0
    total_operating_expenses: float = 0.0
    total: float = 0.0


class ReportMetrics(BaseModel):
    gross_profit_margin: float
    net_profit_margin: float
    order_count: int = Field(0, ge=0)


class FinancialSummary(BaseModel):
    start_date: date
    end_date: date
    revenue: RevenueBreakdown
    costs: CostBreakdown
    gross_profit: ProfitBreakdown
    expenses: ExpenseBreakdown
    net_profit: float
    metrics: ReportMetrics


class ExpenseCreate(BaseModel):
    expense_date: date = Field(default_factory=date.today)
    expense_type: Literal["direct-cost", "operating-expense"]
    category: str = Field(..., min_length=1)
    description: str = Field(..., min_length=3)
    amount: float = Field(..., ge=0)
    supplier: Optional[str] = None
    receipt_reference: Optional[str] = None
    notes: Optional[str] = None


class Expense(BaseModel):
    id: int
    expense_date: date
    expense_type: str
    category: str
    description: str
    amount: float
    supplier: Optional[str] = None
    receipt_reference: Optional[str] = None
    notes: Optional[str] = None
    created_by: Optional[int] = None
    created_at: Optional[datetime] = None
