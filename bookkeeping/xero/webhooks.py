"""Xero webhook receiver.

Endpoints:
- POST /xero/webhooks - Receive event notifications from Xero

Xero signs each delivery with HMAC-SHA256 of the raw body using the
webhook key; the base64 digest arrives in the `x-xero-signature` header.
Invalid signatures must get a 401 for Xero's intent-to-receive check to pass.
"""
from typing import Any, Dict, List
import base64
import hashlib
import hmac
import json
import logging

from fastapi import APIRouter, BackgroundTasks, Request, Response
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from bookkeeping.config import settings
from bookkeeping.database import async_session_maker
from bookkeeping.errors import AuthenticationError, ValidationError
from bookkeeping.models import BankAccount, BankTransaction, SyncedInvoice
from bookkeeping.schemas import XeroWebhookPayload
from bookkeeping.sync.upserts import upsert_bank_transaction, upsert_contact, upsert_invoice
from bookkeeping.xero.client import XeroClient, get_active_connection


router = APIRouter()
logger = logging.getLogger(__name__)


def compute_signature(body: bytes, key: str) -> str:
    digest = hmac.new(key.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_signature(body: bytes, signature: str, key: str) -> bool:
    if not signature or not key:
        return False
    return hmac.compare_digest(compute_signature(body, key), signature)


# ============================================================================
# EVENT PROCESSING
# ============================================================================

async def handle_invoice_event(db: AsyncSession, client: XeroClient, event: Dict[str, Any]) -> None:
    invoice_id = event["resourceId"]
    if event["eventType"] == "Delete":
        await db.execute(delete(SyncedInvoice).where(SyncedInvoice.xero_invoice_id == invoice_id))
        logger.info(f"Webhook: deleted invoice {invoice_id}")
        return
    invoice = await client.get_invoice(invoice_id)
    if invoice:
        await upsert_invoice(db, invoice)
        logger.info(f"Webhook: upserted invoice {invoice_id}")


async def handle_contact_event(db: AsyncSession, client: XeroClient, event: Dict[str, Any]) -> None:
    contact = await client.get_contact(event["resourceId"])
    if contact:
        await upsert_contact(db, contact)
        logger.info(f"Webhook: upserted contact {event['resourceId']}")


async def handle_bank_transaction_event(db: AsyncSession, client: XeroClient, event: Dict[str, Any]) -> None:
    transaction_id = event["resourceId"]
    if event["eventType"] == "Delete":
        row = (await db.execute(
            select(BankTransaction).where(BankTransaction.xero_transaction_id == transaction_id)
        )).scalar_one_or_none()
        if row is not None:
            row.status = "DELETED"
        return

    txn = await client.get_bank_transaction(transaction_id)
    if not txn:
        return
    account = (await db.execute(
        select(BankAccount).where(BankAccount.xero_account_id == txn.get("bank_account_id"))
    )).scalar_one_or_none()
    if account is None:
        logger.warning(f"Webhook: bank account for transaction {transaction_id} not synced, skipping")
        return
    await upsert_bank_transaction(db, txn, account.id)
    logger.info(f"Webhook: upserted bank transaction {transaction_id}")


EVENT_HANDLERS = {
    "INVOICE": handle_invoice_event,
    "CONTACT": handle_contact_event,
    "BANKTRANSACTION": handle_bank_transaction_event,
}


async def process_events(events: List[Dict[str, Any]]) -> Dict[str, int]:
    """Apply webhook events, each in its own transaction."""
    summary = {"processed": 0, "ignored": 0, "failed": 0}
    async with async_session_maker() as db:
        clients: Dict[str, XeroClient] = {}
        for event in events:
            handler = EVENT_HANDLERS.get(event["eventCategory"])
            if handler is None:
                logger.info(f"Webhook: ignoring {event['eventCategory']} {event['eventType']} event")
                summary["ignored"] += 1
                continue

            tenant_id = event.get("tenantId")
            try:
                if tenant_id not in clients:
                    connection = await get_active_connection(db, tenant_id)
                    if connection is None:
                        raise ValidationError(f"No active connection for tenant {tenant_id}")
                    clients[tenant_id] = XeroClient(connection)
                await handler(db, clients[tenant_id], event)
                await db.commit()
                summary["processed"] += 1
            except Exception as e:
                await db.rollback()
                logger.error(
                    f"Webhook: failed to process {event['eventCategory']} {event['resourceId']}: {e}"
                )
                summary["failed"] += 1

    logger.info(f"Webhook batch processed: {summary}")
    return summary


# ============================================================================
# ROUTE
# ============================================================================

@router.post("/webhooks")
async def receive_webhook(request: Request, background_tasks: BackgroundTasks):
    """Verify and acknowledge a Xero webhook delivery; events are applied in the background."""
    body = await request.body()
    signature = request.headers.get("x-xero-signature", "")

    if not body.strip():
        logger.info("Webhook intent-to-receive check")
        return Response(status_code=200)

    if not verify_signature(body, signature, settings.XERO_WEBHOOK_KEY):
        logger.warning("Webhook rejected: invalid signature")
        raise AuthenticationError("Invalid webhook signature")

    try:
        payload = XeroWebhookPayload.model_validate(json.loads(body))
    except ValueError as e:
        raise ValidationError("Invalid webhook payload", details=str(e))

    if payload.events:
        logger.info(
            f"Webhook received {len(payload.events)} events "
            f"(sequence {payload.firstEventSequence}-{payload.lastEventSequence})"
        )
        background_tasks.add_task(
            process_events,
            [event.model_dump() for event in payload.events],
        )

    return Response(status_code=200)
