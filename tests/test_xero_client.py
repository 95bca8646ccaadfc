"""
Tests for the Xero client wrapper: OAuth helpers, token handling and SDK model mapping.
"""

import pytest
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch
from urllib.parse import parse_qs, urlparse

from bookkeeping.errors import ConflictError, ExternalServiceError
from bookkeeping.xero import client as client_module
from bookkeeping.xero.client import (
    XeroClient,
    _refresh_under_lock,
    get_active_connection,
    get_authorization_url,
    map_bank_transaction,
    map_invoice,
    parse_report_rows,
    to_datetime,
    token_needs_refresh,
)


# =============================================================================
# Fixtures
# =============================================================================

def enum(value):
    return SimpleNamespace(value=value)


@pytest.fixture
def sdk_invoice():
    return SimpleNamespace(
        invoice_id="inv-1",
        invoice_number="INV-0001",
        reference="PO 77",
        contact=SimpleNamespace(contact_id="c-1", name="Acme Ltd"),
        type=enum("ACCREC"),
        status=enum("AUTHORISED"),
        amount_due=250.5,
        total=300,
        currency_code=enum("GBP"),
        line_amount_types=enum("Exclusive"),
        date=date(2024, 3, 1),
        due_date=date(2024, 3, 31),
        fully_paid_on_date=None,
        updated_date_utc=datetime(2024, 3, 2, 10, 0),
    )


def report_row(label, values, row_type="Row", account_id=None):
    attributes = [SimpleNamespace(id="accountID", value=account_id)] if account_id else None
    cells = [SimpleNamespace(value=label, attributes=attributes)]
    cells += [SimpleNamespace(value=v, attributes=None) for v in values]
    return SimpleNamespace(row_type=enum(row_type), cells=cells)


def xero_client(response):
    limiter = MagicMock()
    limiter.execute = AsyncMock(return_value=response)
    connection = SimpleNamespace(tenant_id="tenant-123", access_token="access")
    return XeroClient(connection, limiter=limiter), limiter


# =============================================================================
# Unit Tests - OAuth helpers
# =============================================================================

class TestOAuthHelpers:
    """Authorization URL and token expiry checks."""

    def test_authorization_url(self):
        url = get_authorization_url("state-abc")
        query = parse_qs(urlparse(url).query)

        assert url.startswith("https://login.xero.com/identity/connect/authorize")
        assert query["response_type"] == ["code"]
        assert query["state"] == ["state-abc"]
        assert query["client_id"] == ["test-client-id"]

    def test_token_needs_refresh_within_buffer(self):
        connection = SimpleNamespace(token_expires_at=datetime.now(timezone.utc) + timedelta(minutes=2))
        assert token_needs_refresh(connection) is True

    def test_token_fresh(self):
        connection = SimpleNamespace(token_expires_at=datetime.now(timezone.utc) + timedelta(minutes=20))
        assert token_needs_refresh(connection) is False

    def test_unknown_expiry_not_refreshed(self):
        assert token_needs_refresh(SimpleNamespace(token_expires_at=None)) is False


class TestGetActiveConnection:
    """Loading the connection and refreshing expired tokens."""

    @pytest.mark.asyncio
    async def test_none_when_not_connected(self, mock_db):
        assert await get_active_connection(mock_db) is None

    @pytest.mark.asyncio
    async def test_refresh_failure_deactivates(self, mock_db, fake_result):
        connection = SimpleNamespace(
            tenant_id="tenant-123",
            token_expires_at=datetime.now(timezone.utc) - timedelta(minutes=1),
            is_active=True,
            sync_error=None,
        )
        mock_db.execute.return_value = fake_result([connection])

        with patch.object(
            client_module,
            "refresh_connection_tokens",
            AsyncMock(side_effect=ExternalServiceError("Xero", "Token refresh failed: invalid_grant")),
        ):
            result = await get_active_connection(mock_db)

        assert result is None
        assert connection.is_active is False
        assert "invalid_grant" in connection.sync_error
        mock_db.commit.assert_awaited()

    @pytest.mark.asyncio
    async def test_lock_contention_keeps_connection_active(self, mock_db, fake_result):
        connection = SimpleNamespace(
            tenant_id="tenant-123",
            token_expires_at=datetime.now(timezone.utc) - timedelta(minutes=1),
            is_active=True,
            sync_error=None,
        )
        mock_db.execute.return_value = fake_result([connection])

        with patch.object(
            client_module,
            "refresh_connection_tokens",
            AsyncMock(side_effect=ConflictError("Sync already in progress")),
        ):
            with pytest.raises(ConflictError):
                await get_active_connection(mock_db)

        assert connection.is_active is True
        assert connection.sync_error is None
        mock_db.commit.assert_not_awaited()


class TestRefreshUnderLock:
    """Token refresh once the per-tenant refresh lock is held."""

    def expired_connection(self):
        return SimpleNamespace(
            tenant_id="tenant-123",
            refresh_token="stale-refresh",
            token_expires_at=datetime.now(timezone.utc) - timedelta(minutes=1),
            sync_error=None,
        )

    @pytest.mark.asyncio
    async def test_skips_refresh_when_another_worker_rotated_tokens(self, mock_db, lock_passthrough):
        connection = self.expired_connection()

        def reload(row):
            row.refresh_token = "rotated-refresh"
            row.token_expires_at = datetime.now(timezone.utc) + timedelta(minutes=30)

        mock_db.refresh.side_effect = reload
        refresh = AsyncMock()

        with patch.object(client_module, "sync_lock", lock_passthrough), \
             patch.object(client_module, "refresh_access_token", refresh):
            result = await _refresh_under_lock(mock_db, connection)

        assert result is connection
        refresh.assert_not_awaited()
        assert lock_passthrough.with_lock.call_args.args[0] == "xero-token-refresh:tenant-123"

    @pytest.mark.asyncio
    async def test_refreshes_with_reloaded_token(self, mock_db, lock_passthrough):
        connection = self.expired_connection()

        def reload(row):
            row.refresh_token = "current-refresh"

        mock_db.refresh.side_effect = reload
        refresh = AsyncMock(return_value={
            "access_token": "new-access",
            "refresh_token": "next-refresh",
            "expires_in": 1800,
        })

        with patch.object(client_module, "sync_lock", lock_passthrough), \
             patch.object(client_module, "refresh_access_token", refresh):
            await _refresh_under_lock(mock_db, connection)

        refresh.assert_awaited_once_with("current-refresh")
        assert connection.access_token == "new-access"
        mock_db.commit.assert_awaited()


# =============================================================================
# Unit Tests - mapping
# =============================================================================

class TestMapping:
    """SDK models to plain dicts."""

    def test_to_datetime_variants(self):
        assert to_datetime(None) is None
        assert to_datetime(date(2024, 1, 2)) == datetime(2024, 1, 2, tzinfo=timezone.utc)
        assert to_datetime("2024-01-02T03:04:05Z") == datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        assert to_datetime(datetime(2024, 1, 2)).tzinfo is not None

    def test_map_invoice(self, sdk_invoice):
        mapped = map_invoice(sdk_invoice)

        assert mapped["invoice_id"] == "inv-1"
        assert mapped["contact_id"] == "c-1"
        assert mapped["type"] == "ACCREC"
        assert mapped["status"] == "AUTHORISED"
        assert mapped["amount_due"] == Decimal("250.5")
        assert mapped["due_date"] == datetime(2024, 3, 31, tzinfo=timezone.utc)
        assert mapped["fully_paid_on_date"] is None

    def test_map_bank_transaction_without_contact(self):
        txn = SimpleNamespace(
            bank_transaction_id="bt-1",
            bank_account=SimpleNamespace(account_id="acct-1"),
            type=enum("SPEND"),
            status=enum("AUTHORISED"),
            contact=None,
            date=date(2024, 5, 1),
            total=99.99,
            currency_code=enum("GBP"),
            is_reconciled=None,
            has_attachments=True,
            reference=None,
            line_items=[SimpleNamespace(
                description="Coffee", quantity=1, unit_amount=99.99, line_amount=99.99,
                account_code="429", tax_type="INPUT2",
            )],
            updated_date_utc=None,
        )

        mapped = map_bank_transaction(txn)

        assert mapped["bank_account_id"] == "acct-1"
        assert mapped["contact_name"] is None
        assert mapped["is_reconciled"] is False
        assert mapped["line_items"][0]["account_code"] == "429"

    def test_parse_report_rows(self):
        report = SimpleNamespace(rows=[
            SimpleNamespace(title="", rows=None),
            SimpleNamespace(title="Bank", rows=[
                report_row("Business Account", ["100.00", "50.00", "1,250.00"], account_id="acct-1"),
                report_row("Total", ["1,250.00"], row_type="SummaryRow"),
            ]),
        ])

        rows = parse_report_rows(report)

        assert len(rows) == 2
        assert rows[0]["section"] == "Bank"
        assert rows[0]["account_id"] == "acct-1"
        assert rows[1]["row_type"] == "SummaryRow"


# =============================================================================
# Unit Tests - XeroClient
# =============================================================================

class TestXeroClient:
    """Calls go through the limiter and come back as dicts."""

    @pytest.mark.asyncio
    async def test_get_invoices_passes_filters(self, sdk_invoice):
        client, limiter = xero_client(SimpleNamespace(invoices=[sdk_invoice]))

        invoices = await client.get_invoices(page=2, where='Type=="ACCREC"')

        assert invoices[0]["invoice_number"] == "INV-0001"
        args, kwargs = limiter.execute.call_args
        assert args[1] == "tenant-123"
        assert kwargs["page"] == 2
        assert kwargs["where"] == 'Type=="ACCREC"'
        assert kwargs["_return_http_data_only"] is False
        assert "if_modified_since" not in kwargs

    @pytest.mark.asyncio
    async def test_get_invoice_missing(self):
        client, _ = xero_client(SimpleNamespace(invoices=[]))
        assert await client.get_invoice("nope") is None

    @pytest.mark.asyncio
    async def test_bank_summary_closing_balances(self):
        report = SimpleNamespace(rows=[
            SimpleNamespace(title="", rows=[
                report_row("Business Account", ["100.00", "50.00", "-20.00", "1,250.00"], account_id="acct-1"),
                report_row("Total", ["1,250.00"], row_type="SummaryRow"),
            ]),
        ])
        client, _ = xero_client(SimpleNamespace(reports=[report]))

        balances = await client.get_bank_summary()

        assert balances == [{"account_id": "acct-1", "name": "Business Account", "closing_balance": Decimal("1250.00")}]

    @pytest.mark.asyncio
    async def test_credit_note_allocations(self):
        note = SimpleNamespace(
            credit_note_id="cn-1",
            type=enum("ACCRECCREDIT"),
            status=enum("AUTHORISED"),
            total=40,
            allocations=[SimpleNamespace(invoice=SimpleNamespace(invoice_id="inv-1"), amount=40)],
        )
        client, _ = xero_client(SimpleNamespace(credit_notes=[note]))

        notes = await client.get_credit_notes()

        assert notes[0]["allocations"] == [{"invoice_id": "inv-1", "amount": Decimal("40")}]
