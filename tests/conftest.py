"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, SQLite in memory)
- Fake Redis for the execution lock
- Mock outbound HTTP (webhook actions)
- Test data factories for CRM records, automations and chatbot graphs
"""
# DATABASE_URL לפני ייבוא omniflow: ה-engine נוצר בזמן import
import os
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest
from typing import Any, AsyncGenerator
from unittest.mock import AsyncMock, MagicMock, patch
from httpx import Response

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from omniflow.db.database import Base, get_db
from omniflow.db.models.automation import Automation, AutomationStatus
from omniflow.db.models.chatbot import Chatbot, ChatbotTriggerType, FlowEdge, FlowNode
from omniflow.db.models.crm import Channel, Contact, Conversation, Deal, Tag
from omniflow.core.config import settings
from omniflow.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TENANT_ID = "tenant-1"
ADMIN_API_KEY = "test-admin-key"


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession):
    """Create test client with database override"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    """מפעיל ADMIN_API_KEY ומחזיר headers תואמים"""
    with patch.object(settings, "ADMIN_API_KEY", ADMIN_API_KEY):
        yield {"X-Admin-API-Key": ADMIN_API_KEY}


# ============================================================================
# Mock External Services
# ============================================================================

def _mock_http_client(status_code: int = 200, text: str = "ok"):
    mock_response = MagicMock(spec=Response)
    mock_response.status_code = status_code
    mock_response.text = text

    mock_instance = AsyncMock()
    mock_instance.request = AsyncMock(return_value=mock_response)
    mock_instance.__aenter__ = AsyncMock(return_value=mock_instance)
    mock_instance.__aexit__ = AsyncMock(return_value=None)
    return mock_instance


@pytest.fixture
def mock_webhook_endpoint():
    """Mock a webhook destination answering 200"""
    with patch("httpx.AsyncClient") as mock_client:
        mock_instance = _mock_http_client(200)
        mock_client.return_value = mock_instance
        yield mock_instance


@pytest.fixture
def mock_failing_webhook_endpoint():
    """Mock a webhook destination answering 500"""
    with patch("httpx.AsyncClient") as mock_client:
        mock_instance = _mock_http_client(500, "Internal Server Error")
        mock_client.return_value = mock_instance
        yield mock_instance


# ============================================================================
# Test Data Factories
# ============================================================================

async def _persist(db_session: AsyncSession, obj):
    db_session.add(obj)
    await db_session.commit()
    await db_session.refresh(obj)
    return obj


@pytest.fixture
def channel_factory(db_session: AsyncSession):
    """Factory for creating test channels"""
    async def _create_channel(
        name: str = "WhatsApp Principal",
        type: str = "whatsapp",
        provider: str | None = "meta",
        tenant_id: str = TENANT_ID,
    ) -> Channel:
        return await _persist(db_session, Channel(
            tenant_id=tenant_id, name=name, type=type, provider=provider
        ))
    return _create_channel


@pytest.fixture
def contact_factory(db_session: AsyncSession):
    """Factory for creating test contacts"""
    async def _create_contact(
        name: str | None = "Maria Silva",
        email: str | None = "maria@example.com",
        phone: str | None = "+5511999990000",
        company: str | None = "Acme",
        tenant_id: str = TENANT_ID,
    ) -> Contact:
        return await _persist(db_session, Contact(
            tenant_id=tenant_id, name=name, email=email, phone=phone, company=company
        ))
    return _create_contact


@pytest.fixture
def conversation_factory(db_session: AsyncSession):
    """Factory for creating test conversations"""
    async def _create_conversation(
        channel_id: str,
        contact_id: str,
        tenant_id: str = TENANT_ID,
    ) -> Conversation:
        return await _persist(db_session, Conversation(
            tenant_id=tenant_id, channel_id=channel_id, contact_id=contact_id
        ))
    return _create_conversation


@pytest.fixture
def tag_factory(db_session: AsyncSession):
    async def _create_tag(name: str = "vip", tenant_id: str = TENANT_ID) -> Tag:
        return await _persist(db_session, Tag(tenant_id=tenant_id, name=name))
    return _create_tag


@pytest.fixture
def deal_factory(db_session: AsyncSession):
    async def _create_deal(
        contact_id: str | None = None,
        stage_id: str | None = "stage-lead",
        title: str = "Contrato anual",
        tenant_id: str = TENANT_ID,
    ) -> Deal:
        return await _persist(db_session, Deal(
            tenant_id=tenant_id,
            contact_id=contact_id,
            pipeline_id="pipeline-1",
            stage_id=stage_id,
            title=title,
        ))
    return _create_deal


@pytest.fixture
def automation_factory(db_session: AsyncSession):
    """Factory for creating test automations"""
    async def _create_automation(
        trigger_type: str,
        actions: Any = None,
        conditions: list | None = None,
        trigger_config: dict | None = None,
        status: str = AutomationStatus.ACTIVE.value,
        priority: int = 0,
        name: str = "Automação de teste",
        tenant_id: str = TENANT_ID,
    ) -> Automation:
        return await _persist(db_session, Automation(
            tenant_id=tenant_id,
            name=name,
            trigger_type=trigger_type,
            trigger_config=trigger_config or {},
            conditions=conditions or [],
            actions=actions if actions is not None else [],
            status=status,
            priority=priority,
        ))
    return _create_automation


@pytest.fixture
def chatbot_factory(db_session: AsyncSession):
    """Factory for creating test chatbots"""
    async def _create_chatbot(
        channel_id: str | None,
        trigger_type: str = ChatbotTriggerType.KEYWORD.value,
        trigger_config: dict | None = None,
        is_active: bool = True,
        name: str = "Bot de atendimento",
        tenant_id: str = TENANT_ID,
    ) -> Chatbot:
        return await _persist(db_session, Chatbot(
            tenant_id=tenant_id,
            channel_id=channel_id,
            name=name,
            is_active=is_active,
            trigger_type=trigger_type,
            trigger_config=trigger_config if trigger_config is not None else {"keywords": ["oi"]},
        ))
    return _create_chatbot


@pytest.fixture
def node_factory(db_session: AsyncSession):
    async def _create_node(chatbot_id: str, type: str, config: dict | None = None, name: str | None = None) -> FlowNode:
        return await _persist(db_session, FlowNode(
            chatbot_id=chatbot_id, type=type, name=name, config=config or {}
        ))
    return _create_node


@pytest.fixture
def edge_factory(db_session: AsyncSession):
    async def _create_edge(
        chatbot_id: str,
        source_id: str,
        target_id: str,
        condition: dict | None = None,
        position: int = 0,
    ) -> FlowEdge:
        return await _persist(db_session, FlowEdge(
            chatbot_id=chatbot_id,
            source_id=source_id,
            target_id=target_id,
            condition=condition,
            position=position,
        ))
    return _create_edge


# ============================================================================
# Sample Test Data
# ============================================================================

@pytest.fixture
async def crm(channel_factory, contact_factory, conversation_factory) -> dict:
    """Channel + contact + open conversation of one tenant"""
    channel = await channel_factory()
    contact = await contact_factory()
    conversation = await conversation_factory(channel.id, contact.id)
    return {"channel": channel, "contact": contact, "conversation": conversation}


# ============================================================================
# Circuit Breaker Reset
# ============================================================================

@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Reset circuit breakers between tests"""
    from omniflow.core.circuit_breaker import CircuitBreaker
    CircuitBreaker.reset_all()
    yield
    CircuitBreaker.reset_all()


class FakeRedis:
    """תחליף ל-Redis לבדיקות: in-memory dict עם ממשק תואם ומעקב TTL."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._ttls: dict[str, int] = {}

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        """SET עם תמיכה ב-NX (רק אם לא קיים) ו-EX (תפוגה בשניות)"""
        if nx and key in self._store:
            return None
        self._store[key] = value
        if ex is not None:
            self._ttls[key] = ex
        return True

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._store.pop(key, None)
            self._ttls.pop(key, None)

    async def aclose(self) -> None:
        self._store.clear()
        self._ttls.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """מחליף את get_redis ב-FakeRedis לכל הבדיקות."""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("omniflow.core.redis_client.get_redis", _get_fake_redis):
        yield _fake
