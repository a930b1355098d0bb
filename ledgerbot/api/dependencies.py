from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerbot.assistant.orchestrator import ConversationOrchestrator
from ledgerbot.assistant.query_engine import QueryGateway
from ledgerbot.core import models, storage
from ledgerbot.core.database import get_db

db_dep = Annotated[AsyncSession, Depends(get_db)]


# Collaborators are built once by the lifespan in main.py and live on app.state
def get_orchestrator(request: Request) -> ConversationOrchestrator:
    return request.app.state.orchestrator


def get_gateway(request: Request) -> QueryGateway:
    return request.app.state.gateway


def get_transport(request: Request):
    return request.app.state.transport


# Dashboard endpoints address tenants by phone number, as the dashboard links do
async def get_tenant_by_phone(phone: str, db: db_dep) -> models.Tenant:
    tenant = await storage.get_tenant(phone, db)
    if not tenant:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "User not found")
    return tenant


tenant_dep = Annotated[models.Tenant, Depends(get_tenant_by_phone)]
