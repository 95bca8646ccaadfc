"""Xero API client wrapper.

This module provides a wrapper around the xero-python SDK with automatic
token refresh, per-tenant rate limiting and mapping of SDK models to plain
dicts.
"""
from typing import Optional, Dict, Any, List
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
import asyncio
import logging
import secrets
import urllib.parse

import httpx
from dateutil import parser as date_parser
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from xero_python.api_client import ApiClient, Configuration
from xero_python.api_client.oauth2 import OAuth2Token
from xero_python.accounting import AccountingApi

from bookkeeping.config import settings
from bookkeeping.errors import AppError, ConflictError, ExternalServiceError
from bookkeeping.models import XeroConnection
from bookkeeping.sync.lock import LockResource, new_holder, sync_lock
from bookkeeping.xero.rate_limiter import XeroRateLimiter, rate_limiter_manager


logger = logging.getLogger(__name__)


# ============================================================================
# OAUTH2 CONFIGURATION
# ============================================================================

XERO_AUTH_URL = "https://login.xero.com/identity/connect/authorize"
XERO_TOKEN_URL = "https://identity.xero.com/connect/token"
XERO_CONNECTIONS_URL = "https://api.xero.com/connections"
XERO_REVOCATION_URL = "https://identity.xero.com/connect/revocation"

TOKEN_EXPIRY_BUFFER = timedelta(minutes=5)


def get_authorization_url(state: str) -> str:
    """Generate the Xero OAuth2 authorization URL."""
    params = {
        "response_type": "code",
        "client_id": settings.XERO_CLIENT_ID,
        "redirect_uri": settings.XERO_REDIRECT_URI,
        "scope": settings.XERO_SCOPES,
        "state": state,
    }
    return f"{XERO_AUTH_URL}?{urllib.parse.urlencode(params)}"


def generate_state() -> str:
    """Generate a secure random state for OAuth."""
    return secrets.token_urlsafe(32)


# ============================================================================
# API CLIENT FACTORY
# ============================================================================

def create_api_client(access_token: str) -> ApiClient:
    """Create a configured Xero API client."""
    oauth2_token = OAuth2Token(
        client_id=settings.XERO_CLIENT_ID,
        client_secret=settings.XERO_CLIENT_SECRET
    )
    oauth2_token.access_token = access_token

    return ApiClient(
        Configuration(),
        oauth2_token=oauth2_token
    )


# ============================================================================
# TOKEN MANAGEMENT
# ============================================================================

async def exchange_code_for_tokens(code: str) -> Dict[str, Any]:
    """Exchange authorization code for access and refresh tokens."""
    async with httpx.AsyncClient() as client:
        response = await client.post(
            XERO_TOKEN_URL,
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": settings.XERO_REDIRECT_URI,
            },
            auth=(settings.XERO_CLIENT_ID, settings.XERO_CLIENT_SECRET),
            headers={"Content-Type": "application/x-www-form-urlencoded"}
        )

    if response.status_code != 200:
        raise ExternalServiceError("Xero", f"Token exchange failed: {response.text}")
    return response.json()


async def refresh_access_token(refresh_token: str) -> Dict[str, Any]:
    """Refresh the access token using the refresh token."""
    async with httpx.AsyncClient() as client:
        response = await client.post(
            XERO_TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
            auth=(settings.XERO_CLIENT_ID, settings.XERO_CLIENT_SECRET),
            headers={"Content-Type": "application/x-www-form-urlencoded"}
        )

    if response.status_code != 200:
        raise ExternalServiceError("Xero", f"Token refresh failed: {response.text}")
    return response.json()


async def get_xero_tenants(access_token: str) -> List[Dict[str, Any]]:
    """Get list of connected Xero tenants (organisations)."""
    async with httpx.AsyncClient() as client:
        response = await client.get(
            XERO_CONNECTIONS_URL,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json"
            }
        )

    if response.status_code != 200:
        raise ExternalServiceError("Xero", f"Failed to get tenants: {response.text}")
    return response.json()


async def revoke_refresh_token(refresh_token: str) -> None:
    """Revoke a refresh token, ending the app's access to all its tenants."""
    async with httpx.AsyncClient() as client:
        response = await client.post(
            XERO_REVOCATION_URL,
            data={"token": refresh_token},
            auth=(settings.XERO_CLIENT_ID, settings.XERO_CLIENT_SECRET),
            headers={"Content-Type": "application/x-www-form-urlencoded"}
        )

    if response.status_code != 200:
        raise ExternalServiceError("Xero", f"Token revocation failed: {response.text}")


def apply_tokens(connection: XeroConnection, tokens: Dict[str, Any]) -> None:
    connection.access_token = tokens["access_token"]
    connection.refresh_token = tokens.get("refresh_token", connection.refresh_token)
    connection.token_expires_at = datetime.now(timezone.utc) + timedelta(seconds=tokens["expires_in"])
    if tokens.get("id_token"):
        connection.id_token = tokens["id_token"]
    if tokens.get("scope"):
        connection.scopes = tokens["scope"]


# Tenant id -> in-flight refresh, so concurrent callers share one refresh
_refresh_in_flight: Dict[str, asyncio.Task] = {}


async def _refresh_under_lock(db: AsyncSession, connection: XeroConnection) -> XeroConnection:
    resource = f"{LockResource.XERO_TOKEN_REFRESH}:{connection.tenant_id}"

    async def do_refresh() -> XeroConnection:
        # Another worker may have rotated the single-use refresh token while we waited
        await db.refresh(connection)
        if not token_needs_refresh(connection):
            return connection
        logger.info(f"Refreshing Xero tokens for tenant {connection.tenant_id}")
        tokens = await refresh_access_token(connection.refresh_token)
        apply_tokens(connection, tokens)
        connection.sync_error = None
        await db.commit()
        await db.refresh(connection)
        return connection

    return await sync_lock.with_lock(
        resource,
        new_holder("token-refresh"),
        do_refresh,
        timeout=settings.TOKEN_REFRESH_TIMEOUT_SECONDS,
        retries=3,
        retry_delay=1.0,
    )


async def refresh_connection_tokens(db: AsyncSession, connection: XeroConnection) -> XeroConnection:
    """Refresh a connection's tokens, sharing one refresh per tenant."""
    tenant_id = connection.tenant_id
    task = _refresh_in_flight.get(tenant_id)
    if task is None:
        task = asyncio.ensure_future(_refresh_under_lock(db, connection))
        _refresh_in_flight[tenant_id] = task
        task.add_done_callback(lambda _: _refresh_in_flight.pop(tenant_id, None))

    try:
        return await asyncio.wait_for(
            asyncio.shield(task),
            timeout=settings.TOKEN_REFRESH_TIMEOUT_SECONDS
        )
    except asyncio.TimeoutError as e:
        raise ExternalServiceError("Xero", "Token refresh timed out") from e


def token_needs_refresh(connection: XeroConnection) -> bool:
    if not connection.token_expires_at:
        return False
    return connection.token_expires_at < datetime.now(timezone.utc) + TOKEN_EXPIRY_BUFFER


# ============================================================================
# CONNECTION HELPER
# ============================================================================

async def get_active_connection(
    db: AsyncSession,
    tenant_id: Optional[str] = None
) -> Optional[XeroConnection]:
    """
    Get the active Xero connection, refreshing its token if needed.
    Returns None if no valid connection exists.
    """
    query = select(XeroConnection).where(XeroConnection.is_active == True)
    if tenant_id:
        query = query.where(XeroConnection.tenant_id == tenant_id)
    result = await db.execute(query.order_by(XeroConnection.created_at.desc()))
    connection = result.scalars().first()

    if not connection:
        return None

    if token_needs_refresh(connection):
        try:
            connection = await refresh_connection_tokens(db, connection)
        except ConflictError:
            raise
        except (AppError, httpx.HTTPError) as e:
            logger.error(f"Token refresh failed for tenant {connection.tenant_id}: {e}")
            connection.is_active = False
            connection.sync_error = f"Token refresh failed: {str(e)}"
            await db.commit()
            return None

    return connection


# ============================================================================
# MAPPING HELPERS
# ============================================================================

def to_datetime(value: Any) -> Optional[datetime]:
    """Normalise SDK/JSON date values to timezone-aware datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, str):
        return to_datetime(date_parser.parse(value))
    return None


def enum_value(value: Any) -> Optional[str]:
    if value is None:
        return None
    return getattr(value, "value", value)


def to_decimal(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    return Decimal(str(value))


def _compact(**kwargs) -> Dict[str, Any]:
    return {k: v for k, v in kwargs.items() if v is not None}


def map_line_items(line_items) -> List[Dict[str, Any]]:
    return [
        {
            "description": li.description,
            "quantity": float(li.quantity or 0),
            "unit_amount": float(li.unit_amount or 0),
            "line_amount": float(li.line_amount or 0),
            "account_code": li.account_code,
            "tax_type": li.tax_type,
        }
        for li in (line_items or [])
    ]


def map_invoice(inv) -> Dict[str, Any]:
    return {
        "invoice_id": inv.invoice_id,
        "invoice_number": inv.invoice_number,
        "reference": inv.reference,
        "contact_id": inv.contact.contact_id if inv.contact else None,
        "contact_name": inv.contact.name if inv.contact else None,
        "type": enum_value(inv.type),
        "status": enum_value(inv.status),
        "amount_due": to_decimal(inv.amount_due),
        "total": to_decimal(inv.total),
        "currency_code": enum_value(inv.currency_code),
        "line_amount_types": enum_value(inv.line_amount_types),
        "date": to_datetime(inv.date),
        "due_date": to_datetime(inv.due_date),
        "fully_paid_on_date": to_datetime(inv.fully_paid_on_date),
        "updated_date_utc": to_datetime(inv.updated_date_utc),
    }


def map_contact(contact) -> Dict[str, Any]:
    return {
        "contact_id": contact.contact_id,
        "name": contact.name,
        "email": contact.email_address,
        "is_customer": bool(contact.is_customer),
        "is_supplier": bool(contact.is_supplier),
        "contact_status": enum_value(contact.contact_status),
        "default_currency": enum_value(contact.default_currency),
        "account_number": contact.account_number,
        "updated_date_utc": to_datetime(contact.updated_date_utc),
    }


def map_bank_transaction(txn) -> Dict[str, Any]:
    return {
        "transaction_id": txn.bank_transaction_id,
        "bank_account_id": txn.bank_account.account_id if txn.bank_account else None,
        "type": enum_value(txn.type),
        "status": enum_value(txn.status),
        "contact_id": txn.contact.contact_id if txn.contact else None,
        "contact_name": txn.contact.name if txn.contact else None,
        "date": to_datetime(txn.date),
        "total": to_decimal(txn.total),
        "currency_code": enum_value(txn.currency_code),
        "is_reconciled": bool(txn.is_reconciled),
        "has_attachments": bool(txn.has_attachments),
        "reference": txn.reference,
        "line_items": map_line_items(txn.line_items),
        "updated_date_utc": to_datetime(txn.updated_date_utc),
    }


def parse_report_rows(report) -> List[Dict[str, Any]]:
    """Flatten a Xero report into {section, label, values} rows."""
    rows = []
    for row in report.rows or []:
        section = row.title
        for detail in row.rows or []:
            if detail.cells:
                rows.append({
                    "section": section,
                    "row_type": enum_value(detail.row_type),
                    "label": detail.cells[0].value,
                    "values": [cell.value for cell in detail.cells[1:]],
                    "account_id": next(
                        (
                            attr.value
                            for attr in (detail.cells[0].attributes or [])
                            if attr.id == "accountID"
                        ),
                        None,
                    ),
                })
    return rows


def _parse_amount(value: Any) -> Decimal:
    if value in (None, ""):
        return Decimal("0")
    return Decimal(str(value).replace(",", ""))


# ============================================================================
# XERO API WRAPPER CLASS
# ============================================================================

class XeroClient:
    """High-level Xero API client; every call goes through the tenant's rate limiter."""

    def __init__(self, connection: XeroConnection, limiter: Optional[XeroRateLimiter] = None):
        self.connection = connection
        self.tenant_id = connection.tenant_id
        self.api_client = create_api_client(connection.access_token)
        self.accounting_api = AccountingApi(self.api_client)
        self.limiter = limiter or rate_limiter_manager.get_limiter(self.tenant_id)

    async def _call(self, method_name: str, **kwargs) -> Any:
        method = getattr(self.accounting_api, method_name)
        return await self.limiter.execute(
            method,
            self.tenant_id,
            _return_http_data_only=False,
            **_compact(**kwargs)
        )

    # -------------------------------------------------------------------------
    # Organisation
    # -------------------------------------------------------------------------

    async def get_organisation(self) -> Dict[str, Any]:
        """Get organisation details."""
        response = await self._call("get_organisations")
        if response.organisations:
            org = response.organisations[0]
            return {
                "organisation_id": org.organisation_id,
                "name": org.name,
                "legal_name": org.legal_name,
                "base_currency": enum_value(org.base_currency),
                "country_code": enum_value(org.country_code),
                "organisation_type": enum_value(org.organisation_type),
            }
        return {}

    # -------------------------------------------------------------------------
    # Accounts
    # -------------------------------------------------------------------------

    async def get_accounts(
        self,
        where: Optional[str] = None,
        order: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Get chart-of-accounts entries."""
        response = await self._call("get_accounts", where=where, order=order)
        return [
            {
                "account_id": acc.account_id,
                "code": acc.code,
                "name": acc.name,
                "type": enum_value(acc.type),
                "status": enum_value(acc.status),
                "description": acc.description,
                "system_account": enum_value(acc.system_account),
                "show_in_expense_claims": bool(acc.show_in_expense_claims),
                "enable_payments_to_account": bool(acc.enable_payments_to_account),
                "class": enum_value(acc._class),
                "reporting_code": acc.reporting_code,
                "reporting_code_name": acc.reporting_code_name,
                "tax_type": acc.tax_type,
                "currency_code": enum_value(acc.currency_code),
                "bank_account_number": acc.bank_account_number,
                "bank_account_type": enum_value(acc.bank_account_type),
            }
            for acc in response.accounts or []
        ]

    async def get_bank_accounts(self) -> List[Dict[str, Any]]:
        return await self.get_accounts(where='Type=="BANK"')

    # -------------------------------------------------------------------------
    # Bank Transactions
    # -------------------------------------------------------------------------

    async def get_bank_transactions(
        self,
        page: int = 1,
        where: Optional[str] = None,
        order: Optional[str] = None,
        if_modified_since: Optional[datetime] = None,
        page_size: int = 100
    ) -> List[Dict[str, Any]]:
        """Get one page of bank transactions."""
        response = await self._call(
            "get_bank_transactions",
            if_modified_since=if_modified_since,
            where=where,
            order=order,
            page=page,
            page_size=page_size,
        )
        return [map_bank_transaction(txn) for txn in response.bank_transactions or []]

    async def get_bank_transaction(self, bank_transaction_id: str) -> Optional[Dict[str, Any]]:
        response = await self._call("get_bank_transaction", bank_transaction_id=bank_transaction_id)
        if response.bank_transactions:
            return map_bank_transaction(response.bank_transactions[0])
        return None

    # -------------------------------------------------------------------------
    # Invoices
    # -------------------------------------------------------------------------

    async def get_invoices(
        self,
        page: int = 1,
        where: Optional[str] = None,
        order: Optional[str] = None,
        statuses: Optional[List[str]] = None,
        if_modified_since: Optional[datetime] = None,
        page_size: int = 100
    ) -> List[Dict[str, Any]]:
        """
        Get one page of invoices from Xero.

        Args:
            where: Xero filter expression, e.g. 'Type=="ACCPAY"'
            statuses: Filter by status (DRAFT, SUBMITTED, AUTHORISED, PAID, VOIDED)
            if_modified_since: Only invoices changed after this time
        """
        response = await self._call(
            "get_invoices",
            if_modified_since=if_modified_since,
            where=where,
            order=order,
            statuses=statuses,
            page=page,
            page_size=page_size,
        )
        return [map_invoice(inv) for inv in response.invoices or []]

    async def get_invoice(self, invoice_id: str) -> Optional[Dict[str, Any]]:
        response = await self._call("get_invoice", invoice_id=invoice_id)
        if response.invoices:
            return map_invoice(response.invoices[0])
        return None

    async def get_credit_notes(
        self,
        page: int = 1,
        if_modified_since: Optional[datetime] = None,
        where: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        response = await self._call(
            "get_credit_notes",
            if_modified_since=if_modified_since,
            where=where,
            page=page,
        )
        return [
            {
                "credit_note_id": note.credit_note_id,
                "type": enum_value(note.type),
                "status": enum_value(note.status),
                "total": to_decimal(note.total),
                "allocations": [
                    {
                        "invoice_id": alloc.invoice.invoice_id if alloc.invoice else None,
                        "amount": to_decimal(alloc.amount),
                    }
                    for alloc in (note.allocations or [])
                ],
            }
            for note in response.credit_notes or []
        ]

    # -------------------------------------------------------------------------
    # Repeating Invoices
    # -------------------------------------------------------------------------

    async def get_repeating_invoices(self, where: Optional[str] = None) -> List[Dict[str, Any]]:
        """Get repeating invoice templates (scheduled future cash flows)."""
        response = await self._call("get_repeating_invoices", where=where)
        results = []
        for rep in response.repeating_invoices or []:
            schedule = rep.schedule
            results.append({
                "repeating_invoice_id": rep.repeating_invoice_id,
                "type": enum_value(rep.type),
                "contact_id": rep.contact.contact_id if rep.contact else None,
                "contact_name": rep.contact.name if rep.contact else None,
                "schedule_unit": enum_value(schedule.unit) if schedule else None,
                "schedule_period": schedule.period if schedule else None,
                "next_scheduled_date": to_datetime(schedule.next_scheduled_date) if schedule else None,
                "end_date": to_datetime(schedule.end_date) if schedule else None,
                "amount": sum((to_decimal(li.line_amount) for li in rep.line_items or []), Decimal("0")),
                "total": to_decimal(rep.total),
                "status": enum_value(rep.status),
                "reference": rep.reference,
            })
        return results

    # -------------------------------------------------------------------------
    # Contacts
    # -------------------------------------------------------------------------

    async def get_contacts(
        self,
        page: int = 1,
        where: Optional[str] = None,
        if_modified_since: Optional[datetime] = None,
        include_archived: bool = False
    ) -> List[Dict[str, Any]]:
        """Get one page of contacts."""
        response = await self._call(
            "get_contacts",
            if_modified_since=if_modified_since,
            where=where,
            page=page,
            include_archived=include_archived,
        )
        return [map_contact(contact) for contact in response.contacts or []]

    async def get_contact(self, contact_id: str) -> Optional[Dict[str, Any]]:
        response = await self._call("get_contact", contact_id=contact_id)
        if response.contacts:
            return map_contact(response.contacts[0])
        return None

    # -------------------------------------------------------------------------
    # Reports
    # -------------------------------------------------------------------------

    async def get_bank_summary(self) -> List[Dict[str, Any]]:
        """Closing balance per bank account from the Bank Summary report."""
        response = await self._call("get_report_bank_summary")
        balances = []
        if response.reports:
            for row in parse_report_rows(response.reports[0]):
                if row["row_type"] != "Row" or not row["values"]:
                    continue
                balances.append({
                    "account_id": row["account_id"],
                    "name": row["label"],
                    "closing_balance": _parse_amount(row["values"][-1]),
                })
        return balances

    async def get_balance_sheet(self) -> Dict[str, Any]:
        """Summary rows from the Balance Sheet report."""
        response = await self._call("get_report_balance_sheet")
        if not response.reports:
            return {"rows": []}
        report = response.reports[0]
        return {
            "report_date": report.report_date,
            "rows": [
                {"section": row["section"], "label": row["label"], "value": _parse_amount(row["values"][0])}
                for row in parse_report_rows(report)
                if row["row_type"] == "SummaryRow" and row["values"]
            ],
        }
