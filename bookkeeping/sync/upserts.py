"""Upsert helpers mapping Xero dicts (see bookkeeping.xero.client) onto local rows.

Each helper returns ``(row, created)``. Rows are looked up by their Xero
identifier (GL accounts by id, then code) and updated in place; nothing is
committed here.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bookkeeping.models import (
    BankAccount,
    BankTransaction,
    Contact,
    GLAccount,
    RepeatingTransaction,
    SyncedInvoice,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def _find(db: AsyncSession, column, value):
    result = await db.execute(select(column.class_).where(column == value))
    return result.scalar_one_or_none()


def _apply(row, fields: Dict[str, Any]) -> None:
    for key, value in fields.items():
        setattr(row, key, value)


# ============================================================================
# ACCOUNTS
# ============================================================================

async def upsert_gl_account(db: AsyncSession, account: Dict[str, Any]) -> Tuple[GLAccount, bool]:
    fields = {
        "xero_account_id": account["account_id"],
        "name": account.get("name") or account["code"],
        "type": account.get("type"),
        "status": account.get("status") or "ACTIVE",
        "description": account.get("description"),
        "system_account": account.get("system_account"),
        "show_in_expense_claims": bool(account.get("show_in_expense_claims")),
        "enable_payments_to_account": bool(account.get("enable_payments_to_account")),
        "account_class": account.get("class"),
        "reporting_code": account.get("reporting_code"),
        "reporting_code_name": account.get("reporting_code_name"),
        "tax_type": account.get("tax_type"),
    }
    # Codes can be renumbered in Xero; the account id is stable
    row = await _find(db, GLAccount.xero_account_id, account["account_id"])
    if row is None:
        row = await _find(db, GLAccount.code, account["code"])
    if row is None:
        row = GLAccount(code=account["code"], **fields)
        db.add(row)
        return row, True
    row.code = account["code"]
    _apply(row, fields)
    return row, False


async def upsert_bank_account(db: AsyncSession, account: Dict[str, Any]) -> Tuple[BankAccount, bool]:
    fields = {
        "name": account.get("name") or "Unnamed account",
        "code": account.get("code"),
        "currency_code": account.get("currency_code"),
        "status": account.get("status"),
        "bank_name": account.get("bank_account_type"),
        "account_number": account.get("bank_account_number"),
        "last_synced_at": _now(),
    }
    row = await _find(db, BankAccount.xero_account_id, account["account_id"])
    if row is None:
        row = BankAccount(xero_account_id=account["account_id"], **fields)
        db.add(row)
        await db.flush()
        return row, True
    _apply(row, fields)
    return row, False


# ============================================================================
# CONTACTS
# ============================================================================

async def upsert_contact(db: AsyncSession, contact: Dict[str, Any]) -> Tuple[Contact, bool]:
    fields = {
        "name": contact.get("name") or "Unknown contact",
        "email": contact.get("email"),
        "is_customer": bool(contact.get("is_customer")),
        "is_supplier": bool(contact.get("is_supplier")),
        "contact_status": contact.get("contact_status"),
        "default_currency": contact.get("default_currency"),
        "account_number": contact.get("account_number"),
        "updated_date_utc": contact.get("updated_date_utc"),
        "last_synced_at": _now(),
    }
    row = await _find(db, Contact.xero_contact_id, contact["contact_id"])
    if row is None:
        row = Contact(xero_contact_id=contact["contact_id"], **fields)
        db.add(row)
        return row, True
    _apply(row, fields)
    return row, False


# ============================================================================
# BANK TRANSACTIONS
# ============================================================================

def transaction_description(txn: Dict[str, Any]) -> Optional[str]:
    """Reference, else first line item description, else contact name."""
    if txn.get("reference"):
        return txn["reference"]
    line_items = txn.get("line_items") or []
    if line_items and line_items[0].get("description"):
        return line_items[0]["description"]
    return txn.get("contact_name")


async def upsert_bank_transaction(
    db: AsyncSession,
    txn: Dict[str, Any],
    bank_account_id: str,
) -> Tuple[BankTransaction, bool]:
    fields = {
        "bank_account_id": bank_account_id,
        "date": txn.get("date"),
        "amount": txn.get("total") or 0,
        "currency_code": txn.get("currency_code"),
        "type": "RECEIVE" if str(txn.get("type") or "").startswith("RECEIVE") else "SPEND",
        "status": txn.get("status"),
        "description": transaction_description(txn),
        "reference": txn.get("reference"),
        "contact_name": txn.get("contact_name"),
        "xero_contact_id": txn.get("contact_id"),
        "is_reconciled": bool(txn.get("is_reconciled")),
        "has_attachments": bool(txn.get("has_attachments")),
        "line_items": txn.get("line_items") or [],
        "updated_date_utc": txn.get("updated_date_utc"),
        "last_synced_at": _now(),
    }
    row = await _find(db, BankTransaction.xero_transaction_id, txn["transaction_id"])
    if row is None:
        row = BankTransaction(xero_transaction_id=txn["transaction_id"], **fields)
        db.add(row)
        return row, True
    _apply(row, fields)
    return row, False


# ============================================================================
# INVOICES
# ============================================================================

def open_item_status(invoice: Dict[str, Any]) -> str:
    return "OPEN" if (invoice.get("amount_due") or 0) > 0 else "PAID"


async def upsert_invoice(
    db: AsyncSession,
    invoice: Dict[str, Any],
    status: Optional[str] = None,
    invoice_type: Optional[str] = None,
) -> Tuple[SyncedInvoice, bool]:
    """Upsert an invoice or bill. `status` overrides the Xero status when given."""
    fields = {
        "xero_contact_id": invoice.get("contact_id"),
        "contact_name": invoice.get("contact_name"),
        "invoice_number": invoice.get("invoice_number"),
        "reference": invoice.get("reference"),
        "type": invoice_type or invoice.get("type") or "ACCREC",
        "status": status or invoice.get("status") or "OPEN",
        "date": invoice.get("date"),
        "due_date": invoice.get("due_date"),
        "fully_paid_on_date": invoice.get("fully_paid_on_date"),
        "amount_due": invoice.get("amount_due") or 0,
        "total": invoice.get("total") or 0,
        "line_amount_types": invoice.get("line_amount_types"),
        "currency_code": invoice.get("currency_code"),
        "last_modified_utc": invoice.get("updated_date_utc") or _now(),
    }
    row = await _find(db, SyncedInvoice.xero_invoice_id, invoice["invoice_id"])
    if row is None:
        row = SyncedInvoice(xero_invoice_id=invoice["invoice_id"], **fields)
        db.add(row)
        return row, True
    _apply(row, fields)
    return row, False


async def upsert_repeating_transaction(
    db: AsyncSession,
    repeating: Dict[str, Any],
) -> Tuple[RepeatingTransaction, bool]:
    fields = {
        "type": repeating.get("type") or "ACCREC",
        "xero_contact_id": repeating.get("contact_id"),
        "contact_name": repeating.get("contact_name"),
        "schedule_unit": repeating.get("schedule_unit") or "MONTHLY",
        "schedule_interval": repeating.get("schedule_period") or 1,
        "next_scheduled_date": repeating.get("next_scheduled_date"),
        "end_date": repeating.get("end_date"),
        "amount": repeating.get("amount") or 0,
        "total": repeating.get("total") or 0,
        "status": repeating.get("status") or "",
        "reference": repeating.get("reference"),
        "last_modified_utc": _now(),
    }
    row = await _find(db, RepeatingTransaction.xero_repeating_invoice_id, repeating["repeating_invoice_id"])
    if row is None:
        row = RepeatingTransaction(xero_repeating_invoice_id=repeating["repeating_invoice_id"], **fields)
        db.add(row)
        return row, True
    _apply(row, fields)
    return row, False
