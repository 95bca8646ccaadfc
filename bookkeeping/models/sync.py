"""Sync bookkeeping: run logs and resumable checkpoints."""
from sqlalchemy import Column, String, DateTime, Integer, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func

from bookkeeping.database import Base
from bookkeeping.models.base import generate_id


class SyncLog(Base):
    """One sync run.

    sync_type: full_sync | incremental_sync | historical_sync | reconciliation
        | DELTA | FULL_RECONCILIATION
    status: in_progress | success | failed
    """

    __tablename__ = "sync_logs"

    id = Column(String, primary_key=True, default=lambda: generate_id("sync"))
    tenant_id = Column(String, nullable=True, index=True)
    sync_type = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, index=True)

    started_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    records_created = Column(Integer, nullable=False, default=0)
    records_updated = Column(Integer, nullable=False, default=0)
    records_deleted = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    details = Column(JSONB, nullable=True)


class SyncCheckpoint(Base):
    """Resume point for a long-running historical sync."""

    __tablename__ = "sync_checkpoints"

    id = Column(String, primary_key=True, default=lambda: generate_id("ckpt"))
    sync_id = Column(String, nullable=False, unique=True, index=True)
    tenant_id = Column(String, nullable=True)

    last_completed_entity = Column(String, nullable=True)
    last_processed_page = Column(JSONB, nullable=True)  # {"contacts": 3, "invoices": 1, ...}
    processed_counts = Column(JSONB, nullable=True)
    completed_bank_accounts = Column(JSONB, nullable=True)  # [xero_account_id, ...]

    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
