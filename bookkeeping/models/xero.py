"""Database models for the Xero connection."""
from sqlalchemy import Column, String, DateTime, Text, Boolean
from sqlalchemy.sql import func

from bookkeeping.database import Base
from bookkeeping.models.base import generate_id


class XeroConnection(Base):
    """Xero connection model - stores OAuth tokens and tenant info."""

    __tablename__ = "xero_connections"

    id = Column(String, primary_key=True, default=lambda: generate_id("xero"))

    # Xero tenant info
    tenant_id = Column(String, nullable=False, unique=True, index=True)
    tenant_name = Column(String, nullable=True)
    tenant_type = Column(String, nullable=True)  # ORGANISATION | PRACTICE

    # OAuth tokens
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime(timezone=True), nullable=True)
    scopes = Column(Text, nullable=True)
    id_token = Column(Text, nullable=True)

    # Connection status
    is_active = Column(Boolean, nullable=False, default=False)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    sync_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class OAuthState(Base):
    """OAuth state tokens, valid for a short window during the auth flow."""

    __tablename__ = "oauth_states"

    id = Column(String, primary_key=True, default=lambda: generate_id("oauth"))
    state = Column(String, nullable=False, unique=True, index=True)
    provider = Column(String, nullable=False, default="xero")
    expires_at = Column(DateTime(timezone=True), nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
