"""
Tests for the Xero webhook receiver.

Tests cover:
- Signature computation and verification
- Intent-to-receive handling and signature rejection
- Event dispatch per category
"""

import json
import pytest
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock, patch

from fastapi.testclient import TestClient

from bookkeeping.main import app
from bookkeeping.xero import webhooks
from bookkeeping.xero.webhooks import compute_signature, process_events, verify_signature


WEBHOOK_URL = "/api/v1/xero/webhooks"
KEY = "test-webhook-key"


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def session_patch(mock_db):
    """Route process_events onto the mocked session."""
    @asynccontextmanager
    async def session_maker():
        yield mock_db

    with patch.object(webhooks, "async_session_maker", session_maker):
        yield mock_db


def event(category="INVOICE", event_type="Update", resource_id="inv-1", tenant_id="tenant-123"):
    return {
        "resourceId": resource_id,
        "tenantId": tenant_id,
        "eventType": event_type,
        "eventCategory": category,
    }


def signed(payload: dict):
    body = json.dumps(payload).encode("utf-8")
    return body, {"x-xero-signature": compute_signature(body, KEY), "content-type": "application/json"}


# =============================================================================
# Unit Tests - signatures
# =============================================================================

class TestSignatures:
    """HMAC-SHA256 signature checks."""

    def test_round_trip(self):
        body = b'{"events":[]}'
        assert verify_signature(body, compute_signature(body, KEY), KEY)

    def test_tampered_body_fails(self):
        signature = compute_signature(b'{"events":[]}', KEY)
        assert not verify_signature(b'{"events":[1]}', signature, KEY)

    def test_missing_signature_or_key_fails(self):
        assert not verify_signature(b"{}", "", KEY)
        assert not verify_signature(b"{}", "abc", "")


# =============================================================================
# Integration Tests - route
# =============================================================================

class TestWebhookRoute:
    """POST /xero/webhooks."""

    def test_empty_body_acknowledged(self, client):
        response = client.post(WEBHOOK_URL, content=b"")

        assert response.status_code == 200

    def test_bad_signature_rejected(self, client):
        body, _ = signed({"events": [], "firstEventSequence": 1, "lastEventSequence": 1})

        response = client.post(WEBHOOK_URL, content=body, headers={"x-xero-signature": "bogus"})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "AUTHENTICATION_ERROR"

    def test_intent_to_receive_with_valid_signature(self, client):
        body, headers = signed({"events": [], "firstEventSequence": 0, "lastEventSequence": 0})

        with patch.object(webhooks, "process_events", AsyncMock()) as process:
            response = client.post(WEBHOOK_URL, content=body, headers=headers)

        assert response.status_code == 200
        process.assert_not_called()

    def test_events_processed_in_background(self, client):
        body, headers = signed({
            "events": [event()],
            "firstEventSequence": 4,
            "lastEventSequence": 4,
        })

        with patch.object(webhooks, "process_events", AsyncMock()) as process:
            response = client.post(WEBHOOK_URL, content=body, headers=headers)

        assert response.status_code == 200
        events = process.call_args.args[0]
        assert events[0]["resourceId"] == "inv-1"
        assert events[0]["eventCategory"] == "INVOICE"

    def test_malformed_payload(self, client):
        body, headers = signed({"events": [{"resourceId": "x"}]})

        response = client.post(WEBHOOK_URL, content=body, headers=headers)

        assert response.status_code == 400


# =============================================================================
# Unit Tests - event processing
# =============================================================================

class TestProcessEvents:
    """Dispatch of webhook events."""

    @pytest.mark.asyncio
    async def test_dispatch_and_summary(self, session_patch, connection):
        xero = MagicMock()
        xero.get_invoice = AsyncMock(return_value={"invoice_id": "inv-1", "status": "PAID"})
        upsert = AsyncMock(return_value=(MagicMock(), False))

        with patch.object(webhooks, "get_active_connection", AsyncMock(return_value=connection)), \
             patch.object(webhooks, "XeroClient", MagicMock(return_value=xero)), \
             patch.object(webhooks, "upsert_invoice", upsert):
            summary = await process_events([event(), event(category="PAYMENT", resource_id="pay-1")])

        assert summary == {"processed": 1, "ignored": 1, "failed": 0}
        upsert.assert_awaited_once()
        session_patch.commit.assert_awaited()

    @pytest.mark.asyncio
    async def test_unknown_tenant_counts_as_failure(self, session_patch):
        with patch.object(webhooks, "get_active_connection", AsyncMock(return_value=None)):
            summary = await process_events([event(tenant_id="other")])

        assert summary["failed"] == 1
        session_patch.rollback.assert_awaited()

    @pytest.mark.asyncio
    async def test_invoice_delete_removes_row(self, session_patch, connection):
        with patch.object(webhooks, "get_active_connection", AsyncMock(return_value=connection)), \
             patch.object(webhooks, "XeroClient", MagicMock()):
            summary = await process_events([event(event_type="Delete")])

        assert summary["processed"] == 1
        session_patch.execute.assert_awaited_once()
