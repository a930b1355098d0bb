import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Form, Response

from ledgerbot.api.dependencies import db_dep, get_orchestrator, get_transport
from ledgerbot.assistant.orchestrator import (
    GENERIC_ERROR_MESSAGE,
    ConversationOrchestrator,
)
from ledgerbot.core import schemas

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhook", tags=["Webhook"])

EMPTY_TWIML = "<Response></Response>"
ACK_MESSAGE = "📷 Got it! Digitizing your page... ⏳"


@router.post("/whatsapp")
async def whatsapp_webhook(
    db: db_dep,
    orchestrator: Annotated[ConversationOrchestrator, Depends(get_orchestrator)],
    transport: Annotated[object, Depends(get_transport)],
    sender: Annotated[str, Form(alias="From")],
    body: Annotated[str, Form(alias="Body")] = "",
    media_count: Annotated[int, Form(alias="NumMedia")] = 0,
    media_url: Annotated[Optional[str], Form(alias="MediaUrl0")] = None,
    media_content_type: Annotated[Optional[str], Form(alias="MediaContentType0")] = None,
):
    """
    Twilio delivery webhook. Replies go out through the Messages API, so
    Twilio itself always gets an empty TwiML document back.
    """
    turn = schemas.InboundTurn(
        sender=sender,
        body=body,
        media_count=media_count,
        media_url=media_url,
        media_content_type=media_content_type,
    )

    if turn.has_media:
        try:
            await transport.send(turn.identity, ACK_MESSAGE)
        except Exception as error:
            logger.warning(f"Failed to send acknowledgement: {error}")

    try:
        reply = await orchestrator.handle_turn(turn, db)
    except Exception as error:
        # Whatever broke, the sender still hears back
        logger.exception(f"Webhook error: {error}")
        reply = GENERIC_ERROR_MESSAGE

    try:
        await transport.send(turn.identity, reply)
    except Exception as error:
        logger.error(f"Failed to deliver reply: {error}")

    return Response(content=EMPTY_TWIML, media_type="application/xml")
