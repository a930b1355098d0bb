import asyncio
import logging
from contextlib import asynccontextmanager

import alembic.command
import alembic.config
from fastapi import FastAPI

from ledgerbot.api.router import api_router
from ledgerbot.assistant.extraction import Extractor
from ledgerbot.assistant.gemini import GeminiClient
from ledgerbot.assistant.orchestrator import ConversationOrchestrator
from ledgerbot.assistant.query_engine import (
    QueryExecutor,
    QueryGateway,
    QueryGenerator,
    ResponseFormatter,
)
from ledgerbot.assistant.transport import TwilioTransport
from ledgerbot.core.config import settings
from ledgerbot.core.database import build_engine, build_sessionmaker

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


def run_migrations():
    """Sync function to run migrations"""
    alembic_cfg = alembic.config.Config("alembic.ini")
    alembic.command.upgrade(alembic_cfg, "head")


def build_gateway(llm) -> QueryGateway:
    return QueryGateway(
        generator=QueryGenerator(llm),
        executor=QueryExecutor(max_rows=settings.QUERY_MAX_ROWS),
        formatter=ResponseFormatter(llm, max_chars=settings.REPLY_MAX_CHARS),
        history_turns=settings.QUERY_HISTORY_TURNS,
    )


# Every external client is built here and torn down here, never inside a component
@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.RUN_MIGRATIONS_ON_STARTUP:
        # Apply any pending migrations automatically when the app starts
        try:
            await asyncio.to_thread(run_migrations)
            logger.info("Migrations applied successfully (or already up-to-date)")
        except Exception as e:
            logger.error(f"Migration error during startup: {e}")

    engine = build_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
    llm = GeminiClient(api_key=settings.GEMINI_API_KEY, model=settings.GEMINI_MODEL)
    transport = TwilioTransport(
        account_sid=settings.TWILIO_ACCOUNT_SID,
        auth_token=settings.TWILIO_AUTH_TOKEN,
        from_number=settings.TWILIO_WHATSAPP_NUMBER,
    )
    gateway = build_gateway(llm)

    app.state.sessionmaker = build_sessionmaker(engine)
    app.state.transport = transport
    app.state.gateway = gateway
    app.state.orchestrator = ConversationOrchestrator(
        extractor=Extractor(llm),
        gateway=gateway,
        transport=transport,
        app_url=settings.APP_URL,
        ttl_hours=settings.PENDING_EXTRACTION_TTL_HOURS,
    )

    yield

    await transport.close()
    await engine.dispose()


app = FastAPI(title="Ledger Digitizer API", lifespan=lifespan)

# Include the master router containing all our endpoints
app.include_router(api_router)


@app.get("/health")
async def health():
    return {"status": "ok"}
