"""Pydantic schemas for cash-flow budgets and sync."""
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict, Any, Literal
from datetime import datetime
from decimal import Decimal


BudgetCategory = Literal["REVENUE", "EXPENSE", "TAX", "CAPITAL", "OTHER"]


class CashFlowBudgetBase(BaseModel):
    account_code: str = Field(..., min_length=1, max_length=50)
    account_name: str = Field(..., min_length=1, max_length=200)
    category: BudgetCategory
    month_year: str = Field(..., pattern=r"^\d{4}-(0[1-9]|1[0-2])$")
    budgeted_amount: Decimal
    actual_amount: Decimal = Decimal("0")
    notes: Optional[str] = Field(default=None, max_length=500)


class CashFlowBudgetCreate(CashFlowBudgetBase):
    pass


class CashFlowBudgetResponse(CashFlowBudgetBase):
    id: str
    variance: Optional[Decimal] = None
    imported_from: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class BudgetImportResult(BaseModel):
    success: bool
    imported: int
    created: int = 0
    updated: int = 0
    errors: List[str] = []
    message: Optional[str] = None


class CashFlowSyncResult(BaseModel):
    success: bool
    items_synced: int = 0
    items_created: int = 0
    items_updated: int = 0
    items_deleted: int = 0
    payment_patterns: int = 0
    financial_position: Optional[Dict[str, Any]] = None
