"""Ledger Routes - read access to the mirrored Xero data.

Endpoints:
- GET /ledger/gl-accounts - Paginated GL accounts, grouped by type
- GET /ledger/chart-of-accounts - Active accounts ordered by code, grouped by class
- GET /ledger/bank-accounts - Bank accounts with last known balance
- GET /ledger/bank-transactions - Filtered, paginated bank transactions
- GET /ledger/invoices - Sales invoices (ACCREC)
- GET /ledger/bills - Bills (ACCPAY)
- GET /ledger/stats - Totals for the dashboard
"""
from datetime import datetime, time, timezone
from decimal import Decimal
from math import ceil
from typing import Annotated, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from bookkeeping.database import get_db
from bookkeeping import schemas
from bookkeeping.middleware.rate_limit import limiter, REPORTS_LIMIT
from bookkeeping.models import BankAccount, BankTransaction, GLAccount, SyncedInvoice


router = APIRouter()

EXPENSE_ACCOUNT_TYPES = ("EXPENSE", "DIRECTCOSTS", "OVERHEADS")
OPEN_INVOICE_STATUSES = ("OPEN", "AUTHORISED", "SUBMITTED")


def _pagination(page: int, limit: int, total: int) -> schemas.Pagination:
    return schemas.Pagination(
        page=page,
        limit=limit,
        total=total,
        total_pages=ceil(total / limit) if total else 0,
    )


def _start_of_day(value) -> datetime:
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def _end_of_day(value) -> datetime:
    return datetime.combine(value, time.max, tzinfo=timezone.utc)


# ============================================================================
# ACCOUNTS
# ============================================================================

@router.get("/gl-accounts")
@limiter.limit(REPORTS_LIMIT)
async def list_gl_accounts(
    request: Request,
    page: int = Query(1, ge=1),
    page_size: int = Query(500, ge=1, le=1000),
    db: AsyncSession = Depends(get_db)
):
    """
    GL accounts ordered by code, with the full list grouped by type and the
    expense-type accounts used for coding spend.
    """
    accounts = (await db.execute(
        select(GLAccount).order_by(GLAccount.code)
    )).scalars().all()

    by_type: Dict[str, List[dict]] = {}
    for account in accounts:
        by_type.setdefault(account.type or "OTHER", []).append(
            schemas.GLAccountResponse.model_validate(account).model_dump()
        )

    offset = (page - 1) * page_size
    page_items = accounts[offset:offset + page_size]

    return {
        "accounts": [schemas.GLAccountResponse.model_validate(a) for a in page_items],
        "accounts_by_type": by_type,
        "expense_accounts": [
            {"code": a.code, "name": a.name, "type": a.type}
            for a in accounts if a.type in EXPENSE_ACCOUNT_TYPES
        ],
        "pagination": _pagination(page, page_size, len(accounts)),
    }


@router.get("/chart-of-accounts")
@limiter.limit(REPORTS_LIMIT)
async def chart_of_accounts(
    request: Request,
    include_archived: bool = Query(False),
    db: AsyncSession = Depends(get_db)
):
    """Chart of accounts grouped by account class (ASSET, LIABILITY, ...)."""
    query = select(GLAccount).order_by(GLAccount.code)
    if not include_archived:
        query = query.where(GLAccount.status == "ACTIVE")
    accounts = (await db.execute(query)).scalars().all()

    by_class: Dict[str, List[schemas.GLAccountResponse]] = {}
    for account in accounts:
        by_class.setdefault(account.account_class or "OTHER", []).append(
            schemas.GLAccountResponse.model_validate(account)
        )

    return {"classes": by_class, "total": len(accounts)}


@router.get("/bank-accounts", response_model=List[schemas.BankAccountResponse])
@limiter.limit(REPORTS_LIMIT)
async def list_bank_accounts(
    request: Request,
    db: AsyncSession = Depends(get_db)
):
    result = await db.execute(select(BankAccount).order_by(BankAccount.name))
    return result.scalars().all()


# ============================================================================
# TRANSACTIONS
# ============================================================================

@router.get("/bank-transactions", response_model=schemas.Page[schemas.BankTransactionResponse])
@limiter.limit(REPORTS_LIMIT)
async def list_bank_transactions(
    request: Request,
    filters: Annotated[schemas.BankTransactionFilter, Query()],
    db: AsyncSession = Depends(get_db)
):
    """
    Bank transactions, newest first. Deleted transactions are excluded.
    """
    conditions = [or_(BankTransaction.status.is_(None), BankTransaction.status != "DELETED")]
    if filters.account_id:
        conditions.append(BankTransaction.bank_account_id == filters.account_id)
    if filters.start_date:
        conditions.append(BankTransaction.date >= _start_of_day(filters.start_date))
    if filters.end_date:
        conditions.append(BankTransaction.date <= _end_of_day(filters.end_date))
    if filters.is_reconciled is not None:
        conditions.append(BankTransaction.is_reconciled == filters.is_reconciled)
    if filters.search:
        pattern = f"%{filters.search}%"
        conditions.append(or_(
            BankTransaction.description.ilike(pattern),
            BankTransaction.reference.ilike(pattern),
            BankTransaction.contact_name.ilike(pattern),
        ))

    total = await db.scalar(select(func.count(BankTransaction.id)).where(*conditions))
    result = await db.execute(
        select(BankTransaction)
        .where(*conditions)
        .order_by(BankTransaction.date.desc())
        .offset((filters.page - 1) * filters.limit)
        .limit(filters.limit)
    )

    return {
        "items": result.scalars().all(),
        "pagination": _pagination(filters.page, filters.limit, total or 0),
    }


# ============================================================================
# INVOICES / BILLS
# ============================================================================

async def _list_invoices(
    db: AsyncSession,
    invoice_type: str,
    status: Optional[str],
    page: int,
    limit: int,
) -> dict:
    conditions = [SyncedInvoice.type == invoice_type]
    if status:
        conditions.append(SyncedInvoice.status == status.upper())

    total = await db.scalar(select(func.count(SyncedInvoice.id)).where(*conditions))
    result = await db.execute(
        select(SyncedInvoice)
        .where(*conditions)
        .order_by(SyncedInvoice.due_date.asc().nulls_last())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return {
        "items": result.scalars().all(),
        "pagination": _pagination(page, limit, total or 0),
    }


@router.get("/invoices", response_model=schemas.Page[schemas.InvoiceResponse])
@limiter.limit(REPORTS_LIMIT)
async def list_invoices(
    request: Request,
    status: Optional[str] = Query(None, description="Filter by status, e.g. OPEN, PAID, VOIDED"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db)
):
    return await _list_invoices(db, "ACCREC", status, page, limit)


@router.get("/bills", response_model=schemas.Page[schemas.InvoiceResponse])
@limiter.limit(REPORTS_LIMIT)
async def list_bills(
    request: Request,
    status: Optional[str] = Query(None, description="Filter by status, e.g. OPEN, PAID, VOIDED"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db)
):
    return await _list_invoices(db, "ACCPAY", status, page, limit)


# ============================================================================
# STATS
# ============================================================================

@router.get("/stats", response_model=schemas.LedgerStats)
@limiter.limit(REPORTS_LIMIT)
async def ledger_stats(
    request: Request,
    db: AsyncSession = Depends(get_db)
):
    active_txn = or_(BankTransaction.status.is_(None), BankTransaction.status != "DELETED")

    async def open_totals(invoice_type: str):
        row = (await db.execute(
            select(func.count(SyncedInvoice.id), func.coalesce(func.sum(SyncedInvoice.amount_due), 0))
            .where(
                SyncedInvoice.type == invoice_type,
                SyncedInvoice.status.in_(OPEN_INVOICE_STATUSES),
            )
        )).one()
        return row[0] or 0, Decimal(row[1] or 0)

    open_invoices, receivables_due = await open_totals("ACCREC")
    open_bills, payables_due = await open_totals("ACCPAY")

    return schemas.LedgerStats(
        gl_accounts=await db.scalar(select(func.count(GLAccount.id))) or 0,
        bank_accounts=await db.scalar(select(func.count(BankAccount.id))) or 0,
        transactions=await db.scalar(select(func.count(BankTransaction.id)).where(active_txn)) or 0,
        unreconciled_transactions=await db.scalar(
            select(func.count(BankTransaction.id)).where(active_txn, BankTransaction.is_reconciled == False)
        ) or 0,
        open_invoices=open_invoices,
        open_bills=open_bills,
        receivables_due=receivables_due,
        payables_due=payables_due,
        cash_balance=Decimal(
            await db.scalar(select(func.coalesce(func.sum(BankAccount.balance), 0))) or 0
        ),
    )
