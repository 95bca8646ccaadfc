"""Cash-flow budgets: storage plus xlsx import/export.

Two import layouts are accepted:
- manual: one row per account and month with the template's columns
- xero: a Xero Budget Manager export, one row per account with a column per month
"""
from datetime import date
from decimal import Decimal, InvalidOperation
from io import BytesIO
from typing import Any, Dict, List, Optional, Tuple
import logging
import re
import zipfile

from dateutil.relativedelta import relativedelta
from openpyxl import Workbook, load_workbook
from openpyxl.styles import Font, PatternFill
from openpyxl.utils.exceptions import InvalidFileException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bookkeeping.errors import ValidationError
from bookkeeping.models import CashFlowBudget, GLAccount


logger = logging.getLogger(__name__)

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

BUDGET_CATEGORIES = ("REVENUE", "EXPENSE", "TAX", "CAPITAL", "OTHER")
MAX_AMOUNT = Decimal(10) ** 13
MONTH_YEAR_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")

EXPORT_COLUMNS = [
    ("Account Code", 15),
    ("Account Name", 30),
    ("Category", 15),
    ("Month", 10),
    ("Budgeted Amount", 15),
    ("Actual Amount", 15),
    ("Variance", 15),
    ("Notes", 30),
]
TEMPLATE_COLUMNS = [
    ("Account Code", 15),
    ("Account Name", 40),
    ("Category", 15),
    ("Month", 10),
    ("Budgeted Amount", 15),
    ("Notes", 50),
]
TEMPLATE_INSTRUCTIONS = [
    "Budget Import Template Instructions",
    "",
    "1. Fill in the Budgeted Amount column for each account and month",
    f"2. Category must be one of: {', '.join(BUDGET_CATEGORIES)}",
    "3. Month format is YYYY-MM (e.g. 2024-01)",
    "4. Save as Excel (.xlsx)",
    "5. Import using the Budget Import feature",
    "",
    "Tips:",
    "- Leave amount as 0 for accounts with no budget",
    "- Amounts are stored as absolute values",
    "- Add notes for any special considerations",
]

MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}

HEADER_FONT = Font(bold=True, color="FFFFFF")
HEADER_FILL = PatternFill(start_color="4472C4", end_color="4472C4", fill_type="solid")


# ============================================================================
# PARSING HELPERS
# ============================================================================

def parse_amount(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    try:
        amount = Decimal(str(value).replace(",", "").strip())
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {value}")
    # Numeric(15, 2)
    if not amount.is_finite() or abs(amount) >= MAX_AMOUNT:
        raise ValueError(f"Invalid amount: {value}")
    return amount


def category_for_code(account_code: str) -> str:
    """Guess a budget category from a Xero default chart account code."""
    try:
        code = int(account_code)
    except (TypeError, ValueError):
        return "EXPENSE"
    if 200 <= code < 300:
        return "REVENUE"
    if 800 <= code < 900:
        return "TAX"
    return "EXPENSE"


def parse_account_cell(value: Any) -> Optional[Tuple[str, str]]:
    """'200 - Sales' or '200 Sales' -> ('200', 'Sales')."""
    text = str(value or "").strip()
    match = re.match(r"^(\d+)\s*[-–]\s*(.+)$", text) or re.match(r"^(\d+)\s+(.+)$", text)
    if not match:
        return None
    return match.group(1), match.group(2).strip()


def parse_month_header(value: Any) -> Optional[str]:
    """Month column header ('Jan-24', 'Jan 2024', '01/2024' or a date cell) -> 'YYYY-MM'."""
    if isinstance(value, date):
        return f"{value.year:04d}-{value.month:02d}"
    text = str(value or "").strip()

    match = re.match(r"^([A-Za-z]{3})[A-Za-z]*-(\d{2})$", text)
    if match and match.group(1).lower() in MONTHS:
        return f"{2000 + int(match.group(2))}-{MONTHS[match.group(1).lower()]:02d}"

    match = re.match(r"^([A-Za-z]{3})[A-Za-z]*\s+(\d{4})$", text)
    if match and match.group(1).lower() in MONTHS:
        return f"{match.group(2)}-{MONTHS[match.group(1).lower()]:02d}"

    match = re.match(r"^(\d{1,2})/(\d{4})$", text)
    if match and 1 <= int(match.group(1)) <= 12:
        return f"{match.group(2)}-{int(match.group(1)):02d}"

    return None


def validate_row(row: Dict[str, Any]) -> Dict[str, Any]:
    """Validate one manual-import row; raises ValueError with a readable message."""
    account_code = str(row.get("Account Code") or "").strip()
    account_name = str(row.get("Account Name") or "").strip()
    category = str(row.get("Category") or "").strip().upper()
    month_year = row.get("Month")
    month_year = parse_month_header(month_year) if isinstance(month_year, date) else str(month_year or "").strip()
    notes = str(row.get("Notes") or "").strip()

    if not account_code:
        raise ValueError("Account Code is required")
    if len(account_code) > 50:
        raise ValueError("Account Code must be at most 50 characters")
    if not account_name:
        raise ValueError("Account Name is required")
    if len(account_name) > 200:
        raise ValueError("Account Name must be at most 200 characters")
    if category not in BUDGET_CATEGORIES:
        raise ValueError(f"Invalid category: {category}. Must be one of {', '.join(BUDGET_CATEGORIES)}")
    if not MONTH_YEAR_RE.match(month_year):
        raise ValueError(f"Invalid month format: {month_year}. Use YYYY-MM format")
    if len(notes) > 500:
        raise ValueError("Notes must be at most 500 characters")

    return {
        "account_code": account_code,
        "account_name": account_name,
        "category": category,
        "month_year": month_year,
        "budgeted_amount": abs(parse_amount(row.get("Budgeted Amount"))),
        "notes": notes or None,
    }


def _load_sheet_rows(content: bytes) -> List[tuple]:
    try:
        workbook = load_workbook(BytesIO(content), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as e:
        raise ValidationError("Could not read spreadsheet", details=str(e))
    # The template puts instructions first; prefer a sheet that looks like budget data
    sheet = workbook.worksheets[0]
    for candidate in workbook.worksheets:
        if "budget" in candidate.title.lower():
            sheet = candidate
            break
    rows = [row for row in sheet.iter_rows(values_only=True)]
    workbook.close()
    return rows


def _workbook_bytes(workbook: Workbook) -> bytes:
    output = BytesIO()
    workbook.save(output)
    return output.getvalue()


def _write_header(worksheet, columns) -> None:
    worksheet.append([name for name, _ in columns])
    for idx, (_, width) in enumerate(columns, start=1):
        cell = worksheet.cell(row=1, column=idx)
        cell.font = HEADER_FONT
        cell.fill = HEADER_FILL
        worksheet.column_dimensions[cell.column_letter].width = width


# ============================================================================
# STORAGE
# ============================================================================

async def list_budgets(
    db: AsyncSession,
    start_month: Optional[str] = None,
    end_month: Optional[str] = None,
    category: Optional[str] = None,
) -> List[CashFlowBudget]:
    query = select(CashFlowBudget)
    if start_month:
        query = query.where(CashFlowBudget.month_year >= start_month)
    if end_month:
        query = query.where(CashFlowBudget.month_year <= end_month)
    if category:
        query = query.where(CashFlowBudget.category == category)
    result = await db.execute(query.order_by(CashFlowBudget.month_year, CashFlowBudget.account_code))
    return result.scalars().all()


async def upsert_budget(
    db: AsyncSession,
    fields: Dict[str, Any],
    imported_from: str = "manual",
) -> Tuple[CashFlowBudget, bool]:
    """Insert or update the budget line keyed by (account_code, month_year)."""
    result = await db.execute(
        select(CashFlowBudget).where(
            CashFlowBudget.account_code == fields["account_code"],
            CashFlowBudget.month_year == fields["month_year"],
        )
    )
    budget = result.scalar_one_or_none()
    created = budget is None
    if created:
        budget = CashFlowBudget(imported_from=imported_from)
        db.add(budget)
    for key, value in fields.items():
        setattr(budget, key, value)
    if budget.actual_amount is None:
        budget.actual_amount = Decimal("0")
    await db.flush()
    return budget, created


# ============================================================================
# IMPORT
# ============================================================================

async def import_budgets(db: AsyncSession, content: bytes) -> Dict[str, Any]:
    """Import a manual budget sheet. Bad rows are reported, good rows are kept."""
    rows = _load_sheet_rows(content)
    if not rows:
        return {"success": False, "imported": 0, "created": 0, "updated": 0, "errors": ["File is empty"]}

    headers = [str(h).strip() if h is not None else "" for h in rows[0]]
    errors: List[str] = []
    created = updated = 0

    for offset, values in enumerate(rows[1:], start=2):
        if not any(v not in (None, "") for v in values):
            continue
        row = dict(zip(headers, values))
        try:
            fields = validate_row(row)
        except ValueError as e:
            errors.append(f"Row {offset}: {e}")
            continue
        _, was_created = await upsert_budget(db, fields, imported_from="manual_import")
        if was_created:
            created += 1
        else:
            updated += 1

    await db.commit()
    imported = created + updated
    logger.info(f"Budget import: {imported} rows imported, {len(errors)} errors")
    return {"success": not errors, "imported": imported, "created": created, "updated": updated, "errors": errors}


async def import_xero_budget_export(db: AsyncSession, content: bytes) -> Dict[str, Any]:
    """Import a Xero Budget Manager export (account rows x month columns)."""
    rows = _load_sheet_rows(content)

    header_index = None
    for idx, row in enumerate(rows[:10]):
        if any(isinstance(cell, str) and "account" in cell.lower() for cell in row):
            header_index = idx
            break
    if header_index is None:
        return {
            "success": False, "imported": 0, "created": 0, "updated": 0,
            "errors": ["Could not find header row in Xero export"],
        }

    headers = rows[header_index]
    account_col = next(
        i for i, h in enumerate(headers) if isinstance(h, str) and "account" in h.lower()
    )
    month_cols = [
        (i, parse_month_header(h)) for i, h in enumerate(headers) if i > account_col
    ]
    month_cols = [(i, month) for i, month in month_cols if month]

    errors: List[str] = []
    created = updated = 0
    for row in rows[header_index + 1:]:
        if account_col >= len(row):
            continue
        account = parse_account_cell(row[account_col])
        if account is None:
            continue
        code, name = account

        for col, month_year in month_cols:
            if col >= len(row):
                continue
            try:
                amount = parse_amount(row[col])
            except ValueError as e:
                errors.append(f"Account {code}, Month {month_year}: {e}")
                continue
            if amount == 0:
                continue
            _, was_created = await upsert_budget(
                db,
                {
                    "account_code": code,
                    "account_name": name[:200],
                    "category": category_for_code(code),
                    "month_year": month_year,
                    "budgeted_amount": abs(amount),
                },
                imported_from="xero_export",
            )
            if was_created:
                created += 1
            else:
                updated += 1

    await db.commit()
    imported = created + updated
    logger.info(f"Xero budget import: {imported} entries imported, {len(errors)} errors")
    return {"success": not errors, "imported": imported, "created": created, "updated": updated, "errors": errors}


# ============================================================================
# EXPORT / TEMPLATE
# ============================================================================

def default_month_range(today: Optional[date] = None) -> Tuple[str, str]:
    """Current month through eleven months ahead."""
    today = today or date.today()
    end = today + relativedelta(months=11)
    return today.strftime("%Y-%m"), end.strftime("%Y-%m")


async def export_budgets(db: AsyncSession, start_month: str, end_month: str) -> bytes:
    budgets = await list_budgets(db, start_month, end_month)

    workbook = Workbook()
    worksheet = workbook.active
    worksheet.title = "Budget"
    _write_header(worksheet, EXPORT_COLUMNS)
    for budget in budgets:
        worksheet.append([
            budget.account_code,
            budget.account_name,
            budget.category,
            budget.month_year,
            float(budget.budgeted_amount or 0),
            float(budget.actual_amount or 0),
            float(budget.variance),
            budget.notes or "",
        ])
    return _workbook_bytes(workbook)


async def generate_template(db: AsyncSession, months: int = 12, today: Optional[date] = None) -> bytes:
    """Twelve months of zero-budget rows for every active revenue/expense account."""
    result = await db.execute(
        select(GLAccount)
        .where(GLAccount.status == "ACTIVE", GLAccount.account_class.in_(("REVENUE", "EXPENSE")))
        .order_by(GLAccount.code)
    )
    accounts = result.scalars().all()

    workbook = Workbook()
    instructions = workbook.active
    instructions.title = "Instructions"
    for line in TEMPLATE_INSTRUCTIONS:
        instructions.append([line])
    instructions["A1"].font = Font(bold=True, size=14)
    instructions.column_dimensions["A"].width = 70

    worksheet = workbook.create_sheet("Budget Template")
    _write_header(worksheet, TEMPLATE_COLUMNS)
    first = (today or date.today()).replace(day=1)
    for month in range(months):
        month_year = (first + relativedelta(months=month)).strftime("%Y-%m")
        for account in accounts:
            worksheet.append([
                account.code,
                account.name,
                account.account_class,
                month_year,
                0,
                "",
            ])
    return _workbook_bytes(workbook)
