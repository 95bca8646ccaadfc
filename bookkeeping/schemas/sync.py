"""Pydantic schemas for sync operations."""
from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import Optional, Dict, Any, List
from datetime import date, datetime
from decimal import Decimal


class SyncRequest(BaseModel):
    """Request to sync data from Xero."""
    force_full_sync: bool = False


class SyncSummary(BaseModel):
    """Result of perform_sync."""
    sync_type: str
    gl_accounts: int = 0
    bank_accounts: int = 0
    transactions: int = 0
    invoices: int = 0
    bills: int = 0
    created: int = 0
    updated: int = 0


class SyncLogResponse(BaseModel):
    id: str
    sync_type: str
    status: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    records_created: int = 0
    records_updated: int = 0
    records_deleted: int = 0
    error_message: Optional[str] = None
    details: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(from_attributes=True)


class SyncStatusResponse(BaseModel):
    last_sync: Optional[Dict[str, Any]] = None
    transaction_count: int
    total_amount: Decimal
    bank_account_count: int
    unreconciled_count: int
    is_syncing: bool = False


# ============================================================================
# HISTORICAL SYNC
# ============================================================================

class HistoricalSyncRequest(BaseModel):
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    transaction_limit: int = Field(default=10000, ge=1, le=100000)
    invoice_limit: int = Field(default=5000, ge=1, le=50000)
    bill_limit: int = Field(default=5000, ge=1, le=50000)
    resume: bool = False
    sync_id: Optional[str] = None  # required when resuming

    @model_validator(mode="after")
    def check_dates(self):
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("start_date must be on or before end_date")
        if self.resume and not self.sync_id:
            raise ValueError("sync_id is required to resume a sync")
        return self


class HistoricalSyncStarted(BaseModel):
    sync_id: str
    status: str
    message: str


class ReconcileRequest(BaseModel):
    from_date: Optional[date] = None
