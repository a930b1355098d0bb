import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from ledgerbot.main import app
from ledgerbot.core import models, storage
from ledgerbot.core.database import Base, get_db
from ledgerbot.api.dependencies import get_gateway, get_orchestrator, get_transport
from ledgerbot.assistant.extraction import Extractor
from ledgerbot.assistant.orchestrator import ConversationOrchestrator
from ledgerbot.assistant.query_engine import (
    QueryExecutor,
    QueryGateway,
    QueryGenerator,
    ResponseFormatter,
)

# One private in-memory database per test
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TENANT_PHONE = "+94770000001"
OTHER_PHONE = "+94770000002"


# Scripted stand-in for the Gemini client: replies are handed out in order
class ScriptedLLM:
    def __init__(self):
        self.replies = []
        self.calls = []

    def queue(self, *replies):
        self.replies.extend(replies)

    async def generate(self, prompt, **kwargs):
        self.calls.append({"prompt": prompt, **kwargs})
        if not self.replies:
            raise AssertionError("LLM called more times than scripted")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


# Records outgoing messages instead of calling Twilio
class RecordingTransport:
    def __init__(self):
        self.sent = []
        self.fetched = []

    async def send(self, to, body, media_url=None):
        self.sent.append({"to": to, "body": body, "media_url": media_url})

    async def fetch_media(self, media_url):
        self.fetched.append(media_url)
        return b"fake-image-bytes", "image/jpeg"


# Create the tables fresh for every test and drop them after
@pytest_asyncio.fixture(scope="function")
async def test_engine():
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(test_engine):
    TestingSessionLocal = async_sessionmaker(
        test_engine, class_=AsyncSession, expire_on_commit=False
    )
    async with TestingSessionLocal() as session:
        yield session
        await session.rollback()


@pytest.fixture
def llm():
    return ScriptedLLM()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def gateway(llm):
    return QueryGateway(
        generator=QueryGenerator(llm),
        executor=QueryExecutor(max_rows=20),
        formatter=ResponseFormatter(llm, max_chars=1500),
        history_turns=5,
    )


@pytest.fixture
def orchestrator(llm, gateway, transport):
    return ConversationOrchestrator(
        extractor=Extractor(llm),
        gateway=gateway,
        transport=transport,
        app_url="https://ledger.example.com",
        ttl_hours=24,
    )


# Client
@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession, orchestrator, gateway, transport):
    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_transport] = lambda: transport

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


# Tenants
@pytest_asyncio.fixture(scope="function")
async def tenant(db_session: AsyncSession) -> models.Tenant:
    return await storage.get_or_create_tenant(TENANT_PHONE, db_session)


@pytest_asyncio.fixture(scope="function")
async def other_tenant(db_session: AsyncSession) -> models.Tenant:
    return await storage.get_or_create_tenant(OTHER_PHONE, db_session)
