import json

import pytest
from httpx import AsyncClient

from ledgerbot.api.endpoints.webhook import ACK_MESSAGE
from ledgerbot.assistant.orchestrator import GENERIC_ERROR_MESSAGE, HELP_MESSAGE

SENDER = "whatsapp:+94770000001"


@pytest.mark.asyncio
async def test_help_command_reply(client: AsyncClient, transport):
    """A text command is answered through the transport, Twilio gets empty TwiML"""
    response = await client.post("/webhook/whatsapp", data={"From": SENDER, "Body": "help"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/xml")
    assert response.text == "<Response></Response>"
    assert transport.sent == [{"to": "+94770000001", "body": HELP_MESSAGE, "media_url": None}]


@pytest.mark.asyncio
async def test_photo_gets_ack_then_follow_up(client: AsyncClient, transport, llm):
    """Media turns are acknowledged before digitization starts"""
    llm.queue(
        json.dumps({"rows": [{"date": "2026-10-01", "description": "Sugar", "amount": 900, "type": "debit"}]}),
        json.dumps({"follow_up_message": "Found *1 entry*. Save it? (yes/no)"}),
    )
    form = {
        "From": SENDER,
        "Body": "",
        "NumMedia": "1",
        "MediaUrl0": "https://api.twilio.com/media/ME1",
        "MediaContentType0": "image/jpeg",
    }

    response = await client.post("/webhook/whatsapp", data=form)

    assert response.status_code == 200
    assert [message["body"] for message in transport.sent] == [
        ACK_MESSAGE,
        "Found *1 entry*. Save it? (yes/no)",
    ]
    assert transport.fetched == ["https://api.twilio.com/media/ME1"]


@pytest.mark.asyncio
async def test_unexpected_error_still_replies(client: AsyncClient, transport, orchestrator, monkeypatch):
    """Anything the orchestrator raises becomes the generic apology"""

    async def explode(turn, db):
        raise RuntimeError("boom")

    monkeypatch.setattr(orchestrator, "handle_turn", explode)

    response = await client.post("/webhook/whatsapp", data={"From": SENDER, "Body": "hello"})

    assert response.status_code == 200
    assert transport.sent[-1]["body"] == GENERIC_ERROR_MESSAGE


@pytest.mark.asyncio
async def test_delivery_failure_does_not_fail_webhook(client: AsyncClient, transport, monkeypatch):
    """Twilio must never see a 500, even when the reply cannot be delivered"""

    async def broken_send(to, body, media_url=None):
        raise RuntimeError("twilio down")

    monkeypatch.setattr(transport, "send", broken_send)

    response = await client.post("/webhook/whatsapp", data={"From": SENDER, "Body": "help"})

    assert response.status_code == 200
    assert response.text == "<Response></Response>"


@pytest.mark.asyncio
async def test_missing_sender_is_rejected(client: AsyncClient, transport):
    """A delivery without From is not a Twilio message"""
    response = await client.post("/webhook/whatsapp", data={"Body": "help"})

    assert response.status_code == 422
    assert transport.sent == []
