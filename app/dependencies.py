"""
Open Bookkeeping Payroll - FastAPI Dependencies

Shared dependencies for database sessions, tenant/actor resolution and the
payroll run service.

Authentication happens upstream; the gateway forwards the resolved tenant
and user as X-Entity-ID and X-Actor-ID headers.
"""

import uuid
from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_async_session
from app.services.payroll_service import PayrollRunService, get_payroll_run_service


async def get_current_entity_id(
    x_entity_id: uuid.UUID = Header(..., alias="X-Entity-ID", description="Tenant (business entity) ID"),
) -> uuid.UUID:
    """Tenant the request acts on."""
    return x_entity_id


async def get_current_actor_id(
    x_actor_id: Optional[uuid.UUID] = Header(None, alias="X-Actor-ID", description="Acting user ID"),
) -> Optional[uuid.UUID]:
    """User performing the request, recorded on transitions."""
    return x_actor_id


async def get_payroll_service(
    db: AsyncSession = Depends(get_async_session),
) -> PayrollRunService:
    return get_payroll_run_service(db)


async def require_actor_id(
    x_actor_id: uuid.UUID = Header(..., alias="X-Actor-ID", description="Acting user ID"),
) -> uuid.UUID:
    """User performing a status change; every transition records who made it."""
    return x_actor_id
