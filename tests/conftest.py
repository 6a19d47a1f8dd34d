import os
import tempfile
from typing import Any, AsyncGenerator, Dict, Generator, Iterable, List, Optional, Tuple
from unittest.mock import AsyncMock, MagicMock

# chat_core.database builds its engine at import time
os.environ.setdefault(
    "DATABASE_URL",
    "sqlite+aiosqlite:///" + os.path.join(tempfile.gettempdir(), "chat_core_test.db"),
)
os.environ.setdefault("LOG_JSON", "false")

import httpx  # noqa: E402
import pytest  # noqa: E402
from dotenv import load_dotenv  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from chat_core.clients.base_profile_client import BaseProfileClient  # noqa: E402
from chat_core.clients.base_push_client import BasePushClient  # noqa: E402
from chat_core.database import Base, make_session_factory  # noqa: E402
from chat_core.dependencies import get_messaging_service  # noqa: E402
from chat_core.main import app  # noqa: E402
from chat_core.models.api.conversations import ConversationResponse  # noqa: E402
from chat_core.models.api.notifications import PushSummary  # noqa: E402
from chat_core.models.api.participants import ParticipantSpec  # noqa: E402
from chat_core.realtime.hub import RealtimeHub  # noqa: E402
from chat_core.services.messaging_service import MessagingService  # noqa: E402
from chat_core.services.rate_limiter import SenderRateLimiter  # noqa: E402

load_dotenv()


class FakeProfileClient(BaseProfileClient):
    """Profile directory backed by a dict; ids in `failing` raise."""

    def __init__(
        self,
        profiles: Optional[Dict[str, Any]] = None,
        failing: Iterable[str] = (),
    ):
        super().__init__(cache_size=100)
        self.profiles = profiles or {}
        self.failing = set(failing)
        self.calls: List[str] = []

    async def fetch_profile(self, user_id: str) -> Any:
        self.calls.append(user_id)
        if user_id in self.failing:
            raise httpx.ConnectError("profile directory unreachable")
        return self.profiles.get(user_id)


class FakePushClient(BasePushClient):
    """Records notifications instead of sending them."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: List[Tuple[str, PushSummary]] = []

    async def notify(self, user_id: str, summary: PushSummary) -> None:
        if self.fail:
            raise httpx.ConnectError("push notifier unreachable")
        self.sent.append((user_id, summary))


@pytest.fixture(scope="function")
async def test_engine(tmp_path: Any) -> AsyncGenerator[AsyncEngine, None]:
    """A fresh SQLite database per test."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'chat.db'}",
        echo=os.getenv("SQL_DEBUG", "false").lower() == "true",
        future=True,
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Clean up
    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(test_engine)


@pytest.fixture(scope="function")
async def test_db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """A session on the per-test database for repository tests."""
    async with session_factory() as session:
        yield session


@pytest.fixture(scope="function")
async def mock_db() -> AsyncGenerator[AsyncMock, None]:
    """Create a mock database session for unit tests."""
    mock_session = AsyncMock()
    mock_session.commit = AsyncMock()
    mock_session.rollback = AsyncMock()
    mock_session.close = AsyncMock()
    mock_session.execute = AsyncMock()
    mock_session.flush = AsyncMock()
    mock_session.add = MagicMock()  # add is sync, not async

    yield mock_session


@pytest.fixture
def profiles() -> FakeProfileClient:
    return FakeProfileClient(
        {
            "cust-1": {"full_name": "Casey Customer", "role": "customer"},
            "drv-1": {
                "display_name": "Dana Driver",
                "avatar_url": "https://cdn.example.com/dana.png",
                "role": "driver",
            },
            "shop-1": [{"full_name": "Corner Shop", "role": "merchant"}],
        }
    )


@pytest.fixture
def push() -> FakePushClient:
    return FakePushClient()


@pytest.fixture
def hub() -> RealtimeHub:
    return RealtimeHub(max_queue=16)


@pytest.fixture
def service(
    session_factory: async_sessionmaker[AsyncSession],
    hub: RealtimeHub,
    profiles: FakeProfileClient,
    push: FakePushClient,
) -> MessagingService:
    return MessagingService(
        session_factory=session_factory,
        hub=hub,
        profiles=profiles,
        push=push,
        rate_limiter=SenderRateLimiter(30),
        max_retries=2,
        retry_base_delay=0,
        store_timeout=5,
    )


@pytest.fixture
async def conversation(service: MessagingService) -> ConversationResponse:
    """An order-linked conversation between cust-1 and drv-1."""
    return await service.find_or_create_conversation(
        "order-linked",
        "order-1",
        [
            ParticipantSpec(user_id="cust-1", role="customer"),
            ParticipantSpec(user_id="drv-1", role="driver"),
        ],
    )


@pytest.fixture
def mock_service() -> MagicMock:
    """MessagingService double for router tests."""
    return MagicMock(spec=MessagingService)


@pytest.fixture
def client(mock_service: MagicMock) -> Generator[TestClient, Any, None]:
    """Create a test client for the FastAPI app."""
    app.dependency_overrides[get_messaging_service] = lambda: mock_service
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()
