"""Cash Flow Routes.

Endpoints:
- POST /cashflow/sync - Delta sync of receivables, payables and balances
- POST /cashflow/reconcile - Full reconciliation of cash-flow data
- GET /cashflow/budgets - List budget lines
- POST /cashflow/budgets - Create or update a budget line
- DELETE /cashflow/budgets/{budget_id} - Delete a budget line
- POST /cashflow/budgets/import - Import budgets from xlsx
- GET /cashflow/budgets/export - Export budgets to xlsx
- GET /cashflow/budgets/template - Download an import template
"""
from typing import List, Literal, Optional
import logging

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile
from fastapi.responses import Response
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bookkeeping.database import get_db
from bookkeeping import schemas
from bookkeeping.cashflow import budgets
from bookkeeping.errors import NotFoundError, ValidationError
from bookkeeping.middleware.rate_limit import limiter, SYNC_LIMIT, RECONCILE_LIMIT, REPORTS_LIMIT
from bookkeeping.models import CashFlowBudget, XeroConnection
from bookkeeping.sync.cashflow import CashFlowDataSync
from bookkeeping.xero.dependencies import require_connection


router = APIRouter()
logger = logging.getLogger(__name__)

MONTH_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"
MAX_IMPORT_BYTES = 10 * 1024 * 1024


def _xlsx_response(content: bytes, filename: str) -> Response:
    return Response(
        content=content,
        media_type=budgets.XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# ============================================================================
# SYNC
# ============================================================================

@router.post("/sync", response_model=schemas.CashFlowSyncResult)
@limiter.limit(SYNC_LIMIT)
async def sync_cashflow(
    request: Request,
    connection: XeroConnection = Depends(require_connection),
    db: AsyncSession = Depends(get_db)
):
    """
    Delta sync of invoices, bills, repeating invoices, credit notes and bank
    balances since the last successful run, then recompute payment patterns.
    """
    return await CashFlowDataSync(db, connection).perform_daily_sync()


@router.post("/reconcile", response_model=schemas.CashFlowSyncResult)
@limiter.limit(RECONCILE_LIMIT)
async def reconcile_cashflow(
    request: Request,
    connection: XeroConnection = Depends(require_connection),
    db: AsyncSession = Depends(get_db)
):
    """
    Re-pull everything and void local records Xero no longer returns.
    """
    return await CashFlowDataSync(db, connection).perform_full_reconciliation()


# ============================================================================
# BUDGETS
# ============================================================================

@router.get("/budgets", response_model=List[schemas.CashFlowBudgetResponse])
async def list_budgets(
    start_month: Optional[str] = Query(None, pattern=MONTH_PATTERN),
    end_month: Optional[str] = Query(None, pattern=MONTH_PATTERN),
    category: Optional[schemas.BudgetCategory] = Query(None),
    db: AsyncSession = Depends(get_db)
):
    return await budgets.list_budgets(db, start_month, end_month, category)


@router.post("/budgets", response_model=schemas.CashFlowBudgetResponse)
async def save_budget(
    body: schemas.CashFlowBudgetCreate,
    db: AsyncSession = Depends(get_db)
):
    """
    Create a budget line, or update the one for the same account and month.
    """
    budget, created = await budgets.upsert_budget(db, body.model_dump())
    await db.commit()
    await db.refresh(budget)
    logger.info(f"{'Created' if created else 'Updated'} budget {budget.account_code} {budget.month_year}")
    return budget


@router.delete("/budgets/{budget_id}")
async def delete_budget(
    budget_id: str,
    db: AsyncSession = Depends(get_db)
):
    result = await db.execute(select(CashFlowBudget).where(CashFlowBudget.id == budget_id))
    budget = result.scalar_one_or_none()
    if budget is None:
        raise NotFoundError("Budget")

    await db.delete(budget)
    await db.commit()
    return {"success": True, "id": budget_id}


@router.post("/budgets/import", response_model=schemas.BudgetImportResult)
@limiter.limit(REPORTS_LIMIT)
async def import_budgets(
    request: Request,
    file: UploadFile = File(...),
    type: Literal["manual", "xero"] = Form("manual"),
    db: AsyncSession = Depends(get_db)
):
    """
    Import budgets from an xlsx file. `type=xero` reads a Xero Budget
    Manager export; otherwise the template layout is expected.
    """
    content = await file.read()
    if not content:
        raise ValidationError("No file provided")
    if len(content) > MAX_IMPORT_BYTES:
        raise ValidationError("File too large (max 10MB)")

    if type == "xero":
        result = await budgets.import_xero_budget_export(db, content)
    else:
        result = await budgets.import_budgets(db, content)

    result["message"] = (
        f"Successfully imported {result['imported']} budget entries"
        if result["success"] else "Import completed with errors"
    )
    return result


@router.get("/budgets/export")
@limiter.limit(REPORTS_LIMIT)
async def export_budgets(
    request: Request,
    start_month: Optional[str] = Query(None, pattern=MONTH_PATTERN),
    end_month: Optional[str] = Query(None, pattern=MONTH_PATTERN),
    db: AsyncSession = Depends(get_db)
):
    default_start, default_end = budgets.default_month_range()
    start_month = start_month or default_start
    end_month = end_month or default_end

    content = await budgets.export_budgets(db, start_month, end_month)
    return _xlsx_response(content, f"budget-export-{start_month}-to-{end_month}.xlsx")


@router.get("/budgets/template")
@limiter.limit(REPORTS_LIMIT)
async def budget_template(
    request: Request,
    db: AsyncSession = Depends(get_db)
):
    content = await budgets.generate_template(db)
    return _xlsx_response(content, "budget-template.xlsx")
