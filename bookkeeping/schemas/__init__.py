"""Pydantic schemas."""
from bookkeeping.schemas.xero import (
    XeroConnectionStatus,
    XeroAuthUrl,
    XeroDisconnectResult,
    XeroWebhookEvent,
    XeroWebhookPayload,
)
from bookkeeping.schemas.sync import (
    SyncRequest,
    SyncSummary,
    SyncLogResponse,
    SyncStatusResponse,
    HistoricalSyncRequest,
    HistoricalSyncStarted,
    ReconcileRequest,
)
from bookkeeping.schemas.ledger import (
    Pagination,
    Page,
    GLAccountResponse,
    BankAccountResponse,
    BankTransactionFilter,
    BankTransactionResponse,
    InvoiceResponse,
    LedgerStats,
)
from bookkeeping.schemas.cashflow import (
    BudgetCategory,
    CashFlowBudgetCreate,
    CashFlowBudgetResponse,
    BudgetImportResult,
    CashFlowSyncResult,
)
