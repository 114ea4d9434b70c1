"""
Pytest configuration and fixtures for tests.
Provides reusable fixtures for the database, collaborators and data setup.
"""
import io
import os

# Settings are read at import time, so the environment must be ready first
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET", "test-secret-key-that-is-at-least-32-characters")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("REDIS_URL", "")

import pytest
from typing import AsyncGenerator
from httpx import AsyncClient, ASGITransport
from PIL import Image
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from pairchat.core.database import get_db
from pairchat.core.platform_client import PlatformClient
from pairchat.core.realtime import ChangeFeed
from pairchat.dependencies import get_current_user, get_platform_client, get_storage_service
from pairchat.main import fastapi_app
from pairchat.models import Base, Conversation, Gif, PrivateMessage, canonical_pair
from pairchat.models.message import AttachmentKind
from pairchat.services.notification_service import NotificationDispatcher
from pairchat.services.storage_service import StorageService

# Test database URL (use separate test database)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"  # In-memory SQLite for tests

ALICE = "user_alice"
BOB = "user_bob"
CAROL = "user_carol"


@pytest.fixture(scope="function")
async def test_engine():
    """Create test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        # One shared connection so every session sees the same in-memory database
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_engine) -> async_sessionmaker:
    """Session factory bound to the test engine, for per-action sessions."""
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def feed() -> ChangeFeed:
    """A private change feed so tests never share subscribers."""
    return ChangeFeed(queue_size=16)


@pytest.fixture
def platform(mocker):
    """Platform client double: everyone is open to messages, no one is a friend."""
    client = mocker.AsyncMock(spec=PlatformClient)
    client.get_messaging_permission.return_value = None
    client.is_exempt.return_value = False
    client.is_friend.return_value = False
    client.get_profiles.return_value = {}
    client.send_notification.return_value = None
    client.health_check.return_value = True
    return client


@pytest.fixture
def notifier(platform) -> NotificationDispatcher:
    return NotificationDispatcher(platform)


@pytest.fixture
def oss_bucket(mocker):
    """OSS bucket double that accepts every object."""
    bucket = mocker.Mock()
    bucket.put_object.return_value = mocker.Mock(status=200)
    return bucket


@pytest.fixture
def storage(oss_bucket) -> StorageService:
    return StorageService(bucket=oss_bucket)


@pytest.fixture
def png_bytes() -> bytes:
    """A small real PNG image."""
    buffer = io.BytesIO()
    Image.new("RGB", (4, 4), color=(200, 30, 30)).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
async def conversation(db_session: AsyncSession) -> Conversation:
    """Conversation between alice and bob."""
    low, high = canonical_pair(ALICE, BOB)
    conv = Conversation(participant_a=low, participant_b=high)
    db_session.add(conv)
    await db_session.commit()
    return conv


@pytest.fixture
async def make_message(db_session: AsyncSession):
    """Factory inserting a message row directly, bypassing the service."""
    async def _make(conversation_id: str, sender_id: str, content: str = "hello", **kwargs) -> PrivateMessage:
        message = PrivateMessage(
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content,
            attachment_kind=kwargs.pop("attachment_kind", AttachmentKind.NONE),
            **kwargs,
        )
        db_session.add(message)
        await db_session.commit()
        return message
    return _make


@pytest.fixture
async def wave_gif(db_session: AsyncSession) -> Gif:
    gif = Gif(
        shortcode="wave",
        title="Wave",
        preview_url="https://gifs.example.com/wave-small.gif",
        original_url="https://gifs.example.com/wave.gif",
    )
    db_session.add(gif)
    await db_session.commit()
    return gif


def auth_override(user_id: str, role: str = "member"):
    async def mock_get_current_user():
        return {"id": user_id, "role": role, "username": user_id}
    return mock_get_current_user


@pytest.fixture(scope="function")
async def client(db_session: AsyncSession, platform, storage) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client authenticated as alice."""
    async def override_get_db():
        yield db_session

    # Override dependencies
    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.dependency_overrides[get_current_user] = auth_override(ALICE)
    fastapi_app.dependency_overrides[get_platform_client] = lambda: platform
    fastapi_app.dependency_overrides[get_storage_service] = lambda: storage

    async with AsyncClient(transport=ASGITransport(app=fastapi_app), base_url="http://test") as ac:
        yield ac

    # Clear overrides after test
    fastapi_app.dependency_overrides.clear()


@pytest.fixture(scope="function")
async def unauth_client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client WITHOUT authentication (for testing unauthorized access)."""

    async def override_get_db():
        yield db_session

    # Only override database, not authentication
    fastapi_app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(transport=ASGITransport(app=fastapi_app), base_url="http://test") as ac:
        yield ac

    # Clear overrides after test
    fastapi_app.dependency_overrides.clear()
