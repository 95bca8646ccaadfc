"""Pydantic schemas for the Xero connection and webhooks."""
from pydantic import BaseModel, Field
from typing import Optional, List, Literal
from datetime import datetime


# ============================================================================
# CONNECTION SCHEMAS
# ============================================================================

class XeroConnectionStatus(BaseModel):
    """Status of the Xero connection."""
    is_connected: bool
    tenant_name: Optional[str] = None
    tenant_id: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    token_expires_at: Optional[datetime] = None
    sync_error: Optional[str] = None


class XeroAuthUrl(BaseModel):
    """Authorization URL for OAuth flow."""
    auth_url: str
    state: str


class XeroDisconnectResult(BaseModel):
    success: bool
    message: str


# ============================================================================
# WEBHOOK SCHEMAS
# ============================================================================

class XeroWebhookEvent(BaseModel):
    """A single event in a webhook delivery (field names as Xero sends them)."""
    resourceUrl: Optional[str] = None
    resourceId: str
    tenantId: Optional[str] = None
    eventDateUtc: Optional[datetime] = None
    eventType: Literal["Create", "Update", "Delete"]
    eventCategory: str  # INVOICE | CONTACT | PAYMENT | BANKTRANSACTION | BANKACCOUNT ...


class XeroWebhookPayload(BaseModel):
    events: List[XeroWebhookEvent] = Field(default_factory=list)
    firstEventSequence: int
    lastEventSequence: int
