"""Mirrored ledger entities: chart of accounts, bank accounts, contacts and bank transactions."""
from sqlalchemy import Column, String, DateTime, Text, Boolean, Numeric, ForeignKey
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from bookkeeping.database import Base
from bookkeeping.models.base import generate_id


class GLAccount(Base):
    """Chart-of-Accounts entry mirrored from Xero, keyed by account code."""

    __tablename__ = "gl_accounts"

    id = Column(String, primary_key=True, default=lambda: generate_id("gl"))
    xero_account_id = Column(String, nullable=True, unique=True)
    code = Column(String, nullable=False, unique=True, index=True)
    name = Column(String, nullable=False)
    type = Column(String, nullable=True)  # REVENUE | EXPENSE | BANK | CURRENT ...
    status = Column(String, nullable=False, default="ACTIVE")
    description = Column(Text, nullable=True)
    system_account = Column(String, nullable=True)
    show_in_expense_claims = Column(Boolean, nullable=False, default=False)
    enable_payments_to_account = Column(Boolean, nullable=False, default=False)
    account_class = Column(String, nullable=True)  # ASSET | EQUITY | EXPENSE | LIABILITY | REVENUE
    reporting_code = Column(String, nullable=True)
    reporting_code_name = Column(String, nullable=True)
    tax_type = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class BankAccount(Base):
    """Xero account of type BANK."""

    __tablename__ = "bank_accounts"

    id = Column(String, primary_key=True, default=lambda: generate_id("bank"))
    xero_account_id = Column(String, nullable=False, unique=True, index=True)
    name = Column(String, nullable=False)
    code = Column(String, nullable=True)
    currency_code = Column(String, nullable=True)
    status = Column(String, nullable=True)
    bank_name = Column(String, nullable=True)
    account_number = Column(String, nullable=True)

    # Closing balance from the Xero bank summary report
    balance = Column(Numeric(precision=15, scale=2), nullable=True)
    balance_updated_at = Column(DateTime(timezone=True), nullable=True)

    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    transactions = relationship("BankTransaction", back_populates="bank_account")


class Contact(Base):
    """Xero contact (customer and/or supplier)."""

    __tablename__ = "contacts"

    id = Column(String, primary_key=True, default=lambda: generate_id("contact"))
    xero_contact_id = Column(String, nullable=False, unique=True, index=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    is_customer = Column(Boolean, nullable=False, default=False)
    is_supplier = Column(Boolean, nullable=False, default=False)
    contact_status = Column(String, nullable=True)
    default_currency = Column(String, nullable=True)
    account_number = Column(String, nullable=True)
    updated_date_utc = Column(DateTime(timezone=True), nullable=True)

    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class BankTransaction(Base):
    """Spend or receive money transaction on a bank account."""

    __tablename__ = "bank_transactions"

    id = Column(String, primary_key=True, default=lambda: generate_id("txn"))
    xero_transaction_id = Column(String, nullable=False, unique=True, index=True)
    bank_account_id = Column(String, ForeignKey("bank_accounts.id", ondelete="CASCADE"), nullable=False, index=True)

    date = Column(DateTime(timezone=True), nullable=True, index=True)
    amount = Column(Numeric(precision=15, scale=2), nullable=False, default=0)
    currency_code = Column(String, nullable=True)
    type = Column(String, nullable=False)  # RECEIVE | SPEND
    status = Column(String, nullable=True)  # AUTHORISED | DELETED
    description = Column(Text, nullable=True)
    reference = Column(String, nullable=True)
    contact_name = Column(String, nullable=True)
    xero_contact_id = Column(String, nullable=True)
    is_reconciled = Column(Boolean, nullable=False, default=False)
    has_attachments = Column(Boolean, nullable=False, default=False)
    line_items = Column(JSONB, nullable=True)
    updated_date_utc = Column(DateTime(timezone=True), nullable=True)

    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    bank_account = relationship("BankAccount", back_populates="transactions")
