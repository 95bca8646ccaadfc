"""Pydantic schemas for mirrored ledger data."""
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict, Any, Generic, TypeVar
from datetime import date, datetime
from decimal import Decimal


T = TypeVar("T")


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class Page(BaseModel, Generic[T]):
    items: List[T]
    pagination: Pagination


# ============================================================================
# ACCOUNTS
# ============================================================================

class GLAccountResponse(BaseModel):
    id: str
    code: str
    name: str
    type: Optional[str] = None
    status: str
    description: Optional[str] = None
    account_class: Optional[str] = None
    system_account: Optional[str] = None
    reporting_code: Optional[str] = None
    reporting_code_name: Optional[str] = None
    tax_type: Optional[str] = None
    show_in_expense_claims: bool = False
    enable_payments_to_account: bool = False

    model_config = ConfigDict(from_attributes=True)


class BankAccountResponse(BaseModel):
    id: str
    xero_account_id: str
    name: str
    code: Optional[str] = None
    currency_code: Optional[str] = None
    status: Optional[str] = None
    bank_name: Optional[str] = None
    account_number: Optional[str] = None
    balance: Optional[Decimal] = None
    balance_updated_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# TRANSACTIONS
# ============================================================================

class BankTransactionFilter(BaseModel):
    """Query filters for bank transactions."""
    account_id: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    is_reconciled: Optional[bool] = None
    search: Optional[str] = Field(default=None, max_length=200)
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)


class BankTransactionResponse(BaseModel):
    id: str
    xero_transaction_id: str
    bank_account_id: str
    date: Optional[datetime] = None
    amount: Decimal
    currency_code: Optional[str] = None
    type: str
    status: Optional[str] = None
    description: Optional[str] = None
    reference: Optional[str] = None
    contact_name: Optional[str] = None
    is_reconciled: bool
    has_attachments: bool
    line_items: Optional[List[Dict[str, Any]]] = None

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# INVOICES
# ============================================================================

class InvoiceResponse(BaseModel):
    id: str
    xero_invoice_id: str
    invoice_number: Optional[str] = None
    reference: Optional[str] = None
    contact_name: Optional[str] = None
    type: str
    status: str
    date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    amount_due: Decimal
    total: Decimal
    currency_code: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class LedgerStats(BaseModel):
    gl_accounts: int
    bank_accounts: int
    transactions: int
    unreconciled_transactions: int
    open_invoices: int
    open_bills: int
    receivables_due: Decimal
    payables_due: Decimal
    cash_balance: Decimal
