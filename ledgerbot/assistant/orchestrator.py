"""
CONVERSATION ORCHESTRATOR - one inbound turn in, one reply out

Per-tenant state lives only in the pending extraction store:

    NoPending ──photo──▶ AwaitingConfirmation ──yes──▶ confirmed (rows stored)
        ▲                      │   │
        │                      │   └──no──▶ declined
        └──────────────────────┴── TTL / new photo ──▶ expired

Each turn is classified once into a TurnKind and dispatched to the
handler for that kind. Every handler returns a reply; expected failures
are turned into messages here instead of escaping to the webhook.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional
from urllib.parse import quote

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerbot.assistant.extraction import Extractor, format_confirmation_reply
from ledgerbot.assistant.intent import Intent, classify_confirmation
from ledgerbot.assistant.query_engine import QueryGateway
from ledgerbot.core import aggregate, models, pending, schemas, storage
from ledgerbot.core.exceptions import (
    DigitizationFailed,
    GenerationFailed,
    LedgerBotError,
    StorageUnavailable,
)

logger = logging.getLogger(__name__)


class TurnKind(Enum):
    MEDIA_SUBMISSION = "media_submission"
    COMMAND = "command"
    CONFIRMATION = "confirmation"
    FREE_QUERY = "free_query"


class Command(Enum):
    HELP = "help"
    SUMMARY = "summary"
    DASHBOARD = "dashboard"
    PHOTO_PROMPT = "photo_prompt"


COMMAND_WORDS = {
    "help": Command.HELP,
    "start": Command.HELP,
    "hi": Command.HELP,
    "hello": Command.HELP,
    "summary": Command.SUMMARY,
    "report": Command.DASHBOARD,
    "dashboard": Command.DASHBOARD,
}

HELP_MESSAGE = (
    "📒 *Ledger Digitizer*\n\n"
    "Send me a photo of your ledger page and I'll:\n"
    "✅ Digitize every entry\n"
    "✅ Categorize them once you say yes\n"
    "✅ Answer questions about your books\n\n"
    "*Commands:*\n"
    '📊 "summary": this month\n'
    '📋 "report": dashboard link\n\n'
    '_Or just ask, e.g. "how much did I spend on food this month?"_'
)
PHOTO_PROMPT_MESSAGE = '📷 Send me a photo of your ledger page!\nType "help" for commands.'
GENERIC_ERROR_MESSAGE = "❌ Something went wrong. Please try again."


def match_command(body: str) -> Optional[Command]:
    text = (body or "").strip().lower()
    if not text:
        return Command.PHOTO_PROMPT
    return COMMAND_WORDS.get(text)


def classify_turn(
    turn: schemas.InboundTurn, active: Optional[models.PendingExtraction]
) -> TurnKind:
    """
    Pick the branch for a turn. Order matters:
    media always starts a new extraction, commands never touch state,
    and only then does an awaiting record claim the text as an answer.
    """
    if turn.has_media:
        return TurnKind.MEDIA_SUBMISSION

    command = match_command(turn.body)
    if command is not None and command != Command.PHOTO_PROMPT:
        return TurnKind.COMMAND
    if active is not None:
        return TurnKind.CONFIRMATION
    if command == Command.PHOTO_PROMPT:
        return TurnKind.COMMAND
    return TurnKind.FREE_QUERY


@dataclass
class TurnContext:
    tenant_id: int
    phone: str
    turn: schemas.InboundTurn
    db: AsyncSession
    active: Optional[models.PendingExtraction] = None


class ConversationOrchestrator:
    def __init__(
        self,
        extractor: Extractor,
        gateway: QueryGateway,
        transport,
        app_url: str,
        ttl_hours: int = 24,
    ):
        self.extractor = extractor
        self.gateway = gateway
        self.transport = transport
        self.app_url = app_url.rstrip("/")
        self.ttl_hours = ttl_hours

        self.handlers = {
            TurnKind.MEDIA_SUBMISSION: self._on_media,
            TurnKind.COMMAND: self._on_command,
            TurnKind.CONFIRMATION: self._on_confirmation,
            TurnKind.FREE_QUERY: self._on_free_query,
        }

    def dashboard_url(self, phone: str) -> str:
        return f"{self.app_url}/dashboard?phone={quote(phone)}"

    async def handle_turn(self, turn: schemas.InboundTurn, db: AsyncSession) -> str:
        """Run one inbound turn and return the reply text for the sender."""
        try:
            tenant = await storage.get_or_create_tenant(turn.identity, db)
        except StorageUnavailable as error:
            logger.error(f"Could not load tenant for inbound turn: {error}")
            return GENERIC_ERROR_MESSAGE

        ctx = TurnContext(tenant_id=tenant.id, phone=tenant.phone, turn=turn, db=db)

        command = match_command(turn.body)
        if not turn.has_media and (command is None or command == Command.PHOTO_PROMPT):
            ctx.active = await self._lookup_active(ctx.tenant_id, db)

        kind = classify_turn(turn, ctx.active)
        logger.info(f"[Tenant {ctx.tenant_id}] Handling {kind.value} turn")

        try:
            return await self.handlers[kind](ctx)
        except LedgerBotError as error:
            logger.error(f"[Tenant {ctx.tenant_id}] {kind.value} turn failed: {error}")
            return GENERIC_ERROR_MESSAGE

    async def _lookup_active(
        self, tenant_id: int, db: AsyncSession
    ) -> Optional[models.PendingExtraction]:
        # Fail open: a broken lookup sends the tenant down the plain query path
        try:
            return await pending.get_active_extraction(
                tenant_id, db, ttl_hours=self.ttl_hours
            )
        except StorageUnavailable as error:
            logger.warning(f"[Tenant {tenant_id}] Treating as no pending extraction: {error}")
            return None

    # =========================
    # MEDIA SUBMISSION
    # =========================
    async def _on_media(self, ctx: TurnContext) -> str:
        tenant_id = ctx.tenant_id

        # A new photo always replaces whatever was waiting for an answer
        expired = await pending.expire_active_extractions(tenant_id, ctx.db)
        if expired:
            logger.info(f"[Tenant {tenant_id}] New photo replaced {expired} pending extraction(s)")

        try:
            image, mime_type = await self.transport.fetch_media(ctx.turn.media_url)
        except httpx.HTTPError as error:
            logger.error(f"[Tenant {tenant_id}] Media download failed: {error}")
            return "⚠️ I couldn't download that photo. Please send it again."

        try:
            page = await self.extractor.digitize(
                image, ctx.turn.media_content_type or mime_type
            )
        except DigitizationFailed as error:
            return f"⚠️ {error}"
        except GenerationFailed as error:
            logger.error(f"[Tenant {tenant_id}] Digitization failed: {error}")
            return "⚠️ I couldn't read that page right now. Please try again in a moment."

        question = await self.extractor.follow_up_question(page)

        # The page is only flushed here; the pending record's commit keeps both or neither
        stored_page = await storage.create_page(
            tenant_id, page, ctx.db, image_url=ctx.turn.media_url, commit=False
        )
        await pending.create_pending_extraction(
            tenant_id,
            stored_page.id,
            page.model_dump(mode="json"),
            ctx.db,
            content_type=page.content_assessment,
            follow_up_question=question,
            image_url=ctx.turn.media_url,
        )
        logger.info(f"[Tenant {tenant_id}] Digitized {len(page.rows)} rows, awaiting confirmation")
        return question

    # =========================
    # CONFIRMATION
    # =========================
    async def _on_confirmation(self, ctx: TurnContext) -> str:
        active = ctx.active
        intent = classify_confirmation(ctx.turn.body)

        if intent == Intent.NO:
            await pending.resolve_pending_extraction(
                active.id, schemas.ExtractionStatus.DECLINED, ctx.db
            )
            return "👍 No problem, I've discarded that page. Send another photo anytime."

        page = schemas.DigitizedPage.model_validate(active.raw_extraction)

        if intent == Intent.UNCLEAR:
            return (
                f"I have *{len(page.rows)} entries* from your last photo waiting.\n"
                "Reply *yes* to categorize and save them, or *no* to discard them."
            )

        try:
            rows = await self.extractor.categorize(
                page.rows, page.currency_detected, page.page_notes
            )
        except GenerationFailed as error:
            logger.error(f"[Tenant {ctx.tenant_id}] Categorization failed: {error}")
            return "⚠️ I couldn't categorize those entries just now. Reply *yes* to try again."

        try:
            stored = await pending.confirm_extraction(
                active.id, ctx.tenant_id, active.page_id, rows, ctx.db
            )
        except StorageUnavailable as error:
            logger.error(f"[Tenant {ctx.tenant_id}] Could not save confirmed rows: {error}")
            return "⚠️ I couldn't save those entries just now. Reply *yes* to try again."

        if stored is None:
            return "That page has already been handled. Send another photo anytime."

        return format_confirmation_reply(
            rows, page.currency_detected, self.dashboard_url(ctx.phone)
        )

    # =========================
    # COMMANDS
    # =========================
    async def _on_command(self, ctx: TurnContext) -> str:
        command = match_command(ctx.turn.body)
        url = self.dashboard_url(ctx.phone)

        if command == Command.HELP:
            return HELP_MESSAGE
        if command == Command.DASHBOARD:
            return f"📋 Dashboard:\n{url}"
        if command == Command.SUMMARY:
            summary = await aggregate.get_monthly_summary(ctx.tenant_id, ctx.db)
            if not summary["transaction_count"]:
                return "No transactions this month yet. Send a ledger photo to get started!"
            return (
                "📊 *This month*\n"
                f"{summary['transaction_count']} transactions\n"
                f"💸 Expenses: {summary['total_expense']:,.2f}\n"
                f"💰 Income: {summary['total_income']:,.2f}\n"
                f"{'📈' if summary['net'] >= 0 else '📉'} Net: {summary['net']:,.2f}\n\n"
                f"Full details: {url}"
            )
        return PHOTO_PROMPT_MESSAGE

    # =========================
    # FREE-FORM QUESTION
    # =========================
    async def _on_free_query(self, ctx: TurnContext) -> str:
        answer = await self.gateway.answer(ctx.turn.body.strip(), ctx.tenant_id, ctx.db)
        return answer.answer
