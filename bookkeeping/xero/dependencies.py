"""FastAPI dependencies for routes that need a live Xero connection."""
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from bookkeeping.database import get_db
from bookkeeping.errors import AuthenticationError
from bookkeeping.models import XeroConnection
from bookkeeping.xero.client import get_active_connection


async def require_connection(db: AsyncSession = Depends(get_db)) -> XeroConnection:
    """Active connection with a usable access token, or 401."""
    connection = await get_active_connection(db)
    if connection is None:
        raise AuthenticationError("Xero is not connected. Please connect to Xero.")
    return connection
