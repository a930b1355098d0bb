from typing import List

from fastapi import APIRouter, Query

from ledgerbot.api.dependencies import db_dep, tenant_dep
from ledgerbot.core import schemas, storage

router = APIRouter(prefix="/transactions", tags=["Transactions"])


@router.get("/{phone}", response_model=List[schemas.TransactionResponse])
async def get_transactions(
    tenant: tenant_dep,
    db: db_dep,
    limit: int = Query(100, ge=1, le=1000),
):
    """Most recent confirmed transactions for a tenant, newest first."""
    return await storage.get_recent_transactions(tenant.id, db, limit=limit)
