from typing import Annotated

from fastapi import APIRouter, Depends

from ledgerbot.api.dependencies import db_dep, get_gateway, tenant_dep
from ledgerbot.assistant.query_engine import QueryGateway
from ledgerbot.core import schemas

router = APIRouter(prefix="/query", tags=["Query"])


@router.post("/{phone}", response_model=schemas.QueryAnswer)
async def ask_question(
    payload: schemas.QueryRequest,
    tenant: tenant_dep,
    db: db_dep,
    gateway: Annotated[QueryGateway, Depends(get_gateway)],
):
    """
    Dashboard chat: the same question pipeline the WhatsApp bot uses.
    Failures come back as an apology in `answer`, never as a 500.
    """
    tenant_id = tenant.id
    return await gateway.answer(payload.question.strip(), tenant_id, db)
