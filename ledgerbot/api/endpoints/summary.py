from fastapi import APIRouter

from ledgerbot.api.dependencies import db_dep, tenant_dep
from ledgerbot.core import aggregate, schemas

router = APIRouter(prefix="/summary", tags=["Summary"])


@router.get("/{phone}", response_model=schemas.SummaryResponse)
async def get_summary(tenant: tenant_dep, db: db_dep):
    """
    This month's income, expenses and net, spending per category,
    and how many pages the tenant has sent overall.
    """
    return await aggregate.get_monthly_summary(tenant.id, db)
