import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Settings
from database import Base, build_engine, get_db
from main import app
from models.user import User
from routers import rate_limit
from services.context import build_services
from services.enhancement import PassthroughProvider


WEBHOOK_SECRET = "whsec_test_secret"


class RecordingDispatcher:
    def __init__(self):
        self.dispatched = []

    async def dispatch(self, photo_id: str) -> None:
        self.dispatched.append(photo_id)


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit.reset_local_counters()
    yield
    rate_limit.reset_local_counters()
    app.state.disable_rate_limits = previous


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        PHOTO_STORAGE_DIR=str(tmp_path / "assets"),
        ENHANCEMENT_PROVIDER="passthrough",
        ENHANCEMENT_BACKOFF_BASE_SECONDS=0.0,
        ENHANCEMENT_BACKOFF_CAP_SECONDS=0.0,
        ENHANCEMENT_TIMEOUT_SECONDS=5.0,
        ENHANCEMENT_DISPATCH_MODE="local",
        BILLING_ENABLED=True,
        STRIPE_SECRET_KEY="sk_test_123",
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
    )


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "photos.db"
    engine = build_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest.fixture
def services(test_settings, session_maker):
    context = build_services(test_settings, session_maker, provider=PassthroughProvider())
    context.dispatcher = RecordingDispatcher()
    return context


@pytest.fixture
def make_user(session_maker):
    async def _make_user(user_id: str, *, credits: int = 0, free_used: int = 0, storage_limit: int | None = None):
        async with session_maker() as db:
            user = User(id=user_id, credits=credits, free_enhancements_used=free_used)
            if storage_limit is not None:
                user.storage_limit_bytes = storage_limit
            db.add(user)
            await db.commit()
        return user_id

    return _make_user


@pytest.fixture
def load_user(session_maker):
    async def _load_user(user_id: str) -> User:
        async with session_maker() as db:
            return await db.get(User, user_id)

    return _load_user


@pytest_asyncio.fixture
async def api_client(services, session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    previous_services = getattr(app.state, "services", None)
    app.dependency_overrides[get_db] = override_get_db
    app.state.services = services
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.pop(get_db, None)
    app.state.services = previous_services
