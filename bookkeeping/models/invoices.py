"""Receivables, payables and the scheduled/derived data built on them."""
from sqlalchemy import Column, String, DateTime, Integer, Float, Numeric, UniqueConstraint
from sqlalchemy.sql import func

from bookkeeping.database import Base
from bookkeeping.models.base import generate_id


class SyncedInvoice(Base):
    """Invoice (ACCREC) or bill (ACCPAY) mirrored from Xero."""

    __tablename__ = "synced_invoices"

    id = Column(String, primary_key=True, default=lambda: generate_id("inv"))
    xero_invoice_id = Column(String, nullable=False, unique=True, index=True)
    xero_contact_id = Column(String, nullable=True, index=True)
    contact_name = Column(String, nullable=True)
    invoice_number = Column(String, nullable=True)
    reference = Column(String, nullable=True)

    type = Column(String, nullable=False, index=True)  # ACCREC | ACCPAY
    # OPEN | PAID from the open-items sync, otherwise the raw Xero status
    # (AUTHORISED | PAID | VOIDED | DELETED), or PENDING_VERIFICATION mid-reconciliation
    status = Column(String, nullable=False, index=True)

    date = Column(DateTime(timezone=True), nullable=True)
    due_date = Column(DateTime(timezone=True), nullable=True)
    fully_paid_on_date = Column(DateTime(timezone=True), nullable=True)
    amount_due = Column(Numeric(precision=15, scale=2), nullable=False, default=0)
    total = Column(Numeric(precision=15, scale=2), nullable=False, default=0)
    line_amount_types = Column(String, nullable=True)
    currency_code = Column(String, nullable=True)
    last_modified_utc = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class RepeatingTransaction(Base):
    """Repeating invoice template - a scheduled future cash flow."""

    __tablename__ = "repeating_transactions"

    id = Column(String, primary_key=True, default=lambda: generate_id("rpt"))
    xero_repeating_invoice_id = Column(String, nullable=False, unique=True, index=True)
    type = Column(String, nullable=False)  # ACCREC | ACCPAY
    xero_contact_id = Column(String, nullable=True)
    contact_name = Column(String, nullable=True)

    schedule_unit = Column(String, nullable=False, default="MONTHLY")  # WEEKLY | MONTHLY
    schedule_interval = Column(Integer, nullable=False, default=1)
    next_scheduled_date = Column(DateTime(timezone=True), nullable=True)
    end_date = Column(DateTime(timezone=True), nullable=True)

    amount = Column(Numeric(precision=15, scale=2), nullable=False, default=0)
    total = Column(Numeric(precision=15, scale=2), nullable=False, default=0)
    status = Column(String, nullable=False)  # AUTHORISED | PENDING_VERIFICATION | CANCELLED
    reference = Column(String, nullable=True)
    last_modified_utc = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class PaymentPattern(Base):
    """How promptly a contact historically pays (or is paid)."""

    __tablename__ = "payment_patterns"
    __table_args__ = (
        UniqueConstraint("xero_contact_id", "type", name="uq_payment_patterns_contact_type"),
    )

    id = Column(String, primary_key=True, default=lambda: generate_id("pp"))
    xero_contact_id = Column(String, nullable=False, index=True)
    contact_name = Column(String, nullable=True)
    type = Column(String, nullable=False)  # CUSTOMER | SUPPLIER

    average_days_to_pay = Column(Float, nullable=False, default=0)
    on_time_rate = Column(Float, nullable=False, default=0)
    early_rate = Column(Float, nullable=False, default=0)
    late_rate = Column(Float, nullable=False, default=0)
    sample_size = Column(Integer, nullable=False, default=0)
    last_calculated = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
