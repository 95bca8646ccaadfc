"""Xero API Routes.

Endpoints:
- GET /xero/status - Check connection status
- GET /xero/auth - Start OAuth flow
- GET /xero/auth/callback - OAuth callback
- POST /xero/disconnect - Disconnect Xero
- GET /xero/sync-history - Recent sync runs
- GET /xero/rate-limit - Outbound API usage for the connected tenant
- GET /xero/accounts - Chart of accounts straight from Xero
"""
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete
from datetime import datetime, timedelta, timezone
from typing import List
import logging
import urllib.parse

from bookkeeping.database import get_db
from bookkeeping.config import settings
from bookkeeping import schemas
from bookkeeping.errors import AppError, ValidationError
from bookkeeping.middleware.rate_limit import (
    limiter,
    AUTH_LIMIT,
    AUTH_CALLBACK_LIMIT,
    DISCONNECT_LIMIT,
    STATUS_LIMIT,
    REPORTS_LIMIT,
)
from bookkeeping.models import XeroConnection, SyncLog, OAuthState
from bookkeeping.xero.client import (
    get_authorization_url,
    generate_state,
    exchange_code_for_tokens,
    get_xero_tenants,
    revoke_refresh_token,
    apply_tokens,
    XeroClient,
)
from bookkeeping.xero.dependencies import require_connection


router = APIRouter()
logger = logging.getLogger(__name__)

# OAuth state expiry time (10 minutes)
OAUTH_STATE_EXPIRY_MINUTES = 10


# ============================================================================
# CONNECTION STATUS
# ============================================================================

@router.get("/status", response_model=schemas.XeroConnectionStatus)
@limiter.limit(STATUS_LIMIT)
async def get_xero_status(
    request: Request,
    db: AsyncSession = Depends(get_db)
):
    """
    Get the current Xero connection status.
    """
    result = await db.execute(
        select(XeroConnection).order_by(XeroConnection.created_at.desc())
    )
    connection = result.scalars().first()

    if not connection:
        return schemas.XeroConnectionStatus(is_connected=False)

    return schemas.XeroConnectionStatus(
        is_connected=connection.is_active,
        tenant_name=connection.tenant_name,
        tenant_id=connection.tenant_id,
        last_sync_at=connection.last_sync_at,
        token_expires_at=connection.token_expires_at,
        sync_error=connection.sync_error
    )


# ============================================================================
# OAUTH FLOW
# ============================================================================

@router.get("/auth", response_model=schemas.XeroAuthUrl)
@limiter.limit(AUTH_LIMIT)
async def connect_xero(
    request: Request,
    db: AsyncSession = Depends(get_db)
):
    """
    Start the Xero OAuth flow.
    Returns the authorization URL to redirect the user to.
    """
    if not settings.XERO_CLIENT_ID or not settings.XERO_CLIENT_SECRET:
        raise AppError(
            "Xero credentials not configured. Please set XERO_CLIENT_ID and XERO_CLIENT_SECRET.",
            500,
            "CONFIGURATION_ERROR",
        )

    state = generate_state()
    db.add(OAuthState(
        state=state,
        provider="xero",
        expires_at=datetime.now(timezone.utc) + timedelta(minutes=OAUTH_STATE_EXPIRY_MINUTES)
    ))
    await db.commit()

    return schemas.XeroAuthUrl(
        auth_url=get_authorization_url(state),
        state=state
    )


@router.get("/auth/callback")
@limiter.limit(AUTH_CALLBACK_LIMIT)
async def xero_callback(
    request: Request,
    code: str = Query(None),
    state: str = Query(None),
    error: str = Query(None),
    db: AsyncSession = Depends(get_db)
):
    """
    OAuth callback endpoint.
    Exchanges the authorization code for tokens, stores the connection and
    redirects back to the frontend.
    """
    if error:
        logger.warning(f"Xero authorization denied: {error}")
        query = urllib.parse.urlencode({"error": error})
        return RedirectResponse(f"{settings.FRONTEND_URL}/bookkeeping?{query}")

    if not code or not state:
        raise ValidationError("Missing code or state parameter")

    result = await db.execute(
        select(OAuthState).where(OAuthState.state == state)
    )
    state_record = result.scalar_one_or_none()

    if not state_record:
        logger.warning("OAuth callback with unknown state")
        raise ValidationError("Invalid or expired state parameter")

    # One-time use
    await db.delete(state_record)
    await db.commit()

    if state_record.expires_at < datetime.now(timezone.utc):
        logger.warning("OAuth callback with expired state")
        raise ValidationError("OAuth state has expired. Please try connecting again.")

    tokens = await exchange_code_for_tokens(code)
    tenants = await get_xero_tenants(tokens["access_token"])

    if not tenants:
        raise ValidationError(
            "No Xero organisations found. Please ensure you selected an organisation during authorization."
        )

    tenant = tenants[0]

    result = await db.execute(
        select(XeroConnection).where(XeroConnection.tenant_id == tenant["tenantId"])
    )
    connection = result.scalar_one_or_none()

    if connection is None:
        connection = XeroConnection(tenant_id=tenant["tenantId"])
        db.add(connection)

    connection.tenant_name = tenant.get("tenantName", "Unknown Organisation")
    connection.tenant_type = tenant.get("tenantType")
    apply_tokens(connection, tokens)
    connection.scopes = tokens.get("scope", settings.XERO_SCOPES)
    connection.is_active = True
    connection.sync_error = None

    # Only one organisation is connected at a time
    others = await db.execute(
        select(XeroConnection).where(
            XeroConnection.tenant_id != tenant["tenantId"],
            XeroConnection.is_active == True
        )
    )
    for other in others.scalars().all():
        other.is_active = False

    await db.commit()
    logger.info(f"Connected Xero tenant {connection.tenant_name} ({connection.tenant_id})")

    return RedirectResponse(f"{settings.FRONTEND_URL}/bookkeeping?connected=true")


@router.post("/disconnect", response_model=schemas.XeroDisconnectResult)
@limiter.limit(DISCONNECT_LIMIT)
async def disconnect_xero(
    request: Request,
    db: AsyncSession = Depends(get_db)
):
    """
    Disconnect Xero: revoke the refresh token and clear stored tokens.
    """
    result = await db.execute(
        select(XeroConnection).where(XeroConnection.is_active == True)
    )
    connections = result.scalars().all()

    if not connections:
        return schemas.XeroDisconnectResult(success=True, message="Xero was not connected")

    for connection in connections:
        if connection.refresh_token:
            try:
                await revoke_refresh_token(connection.refresh_token)
            except AppError as e:
                logger.warning(f"Token revocation failed for tenant {connection.tenant_id}: {e}")

        connection.is_active = False
        connection.access_token = None
        connection.refresh_token = None
        connection.id_token = None
        connection.token_expires_at = None

    await db.execute(delete(OAuthState).where(OAuthState.provider == "xero"))
    await db.commit()

    return schemas.XeroDisconnectResult(success=True, message="Disconnected from Xero")


# ============================================================================
# SYNC HISTORY / USAGE
# ============================================================================

@router.get("/sync-history", response_model=List[schemas.SyncLogResponse])
@limiter.limit(STATUS_LIMIT)
async def get_sync_history(
    request: Request,
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_db)
):
    """
    Get recent sync runs, newest first.
    """
    result = await db.execute(
        select(SyncLog)
        .order_by(SyncLog.started_at.desc())
        .limit(limit)
    )
    return result.scalars().all()


@router.get("/rate-limit")
@limiter.limit(STATUS_LIMIT)
async def get_rate_limit_status(
    request: Request,
    connection: XeroConnection = Depends(require_connection)
):
    """
    Outbound Xero API usage for the connected tenant.
    """
    client = XeroClient(connection)
    return await client.limiter.get_rate_limit_status()


@router.get("/accounts")
@limiter.limit(REPORTS_LIMIT)
async def get_live_accounts(
    request: Request,
    connection: XeroConnection = Depends(require_connection)
):
    """
    Chart of accounts fetched live from Xero (not the local mirror).
    """
    client = XeroClient(connection)
    accounts = await client.get_accounts(order="Code ASC")
    return {"accounts": accounts, "count": len(accounts)}
