import sys
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

from iptv_manager_api.app import create_app  # noqa: E402
from iptv_manager_api.core.settings import settings  # noqa: E402
from iptv_manager_api.db.session import get_session  # noqa: E402
from iptv_manager_api.models import Base, User, UserRoleEnum  # noqa: E402
from iptv_manager_api.observability.loyalty import get_loyalty_store  # noqa: E402
from iptv_manager_api.observability.scheduler import get_scheduler_store  # noqa: E402


@pytest.fixture(autouse=True)
def reset_observability():
    get_loyalty_store().reset()
    get_scheduler_store().reset()
    yield
    get_loyalty_store().reset()
    get_scheduler_store().reset()


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path: Path):
    """Separate connections per session, for tests that interleave two transactions."""

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'loyalty.db'}", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def app_with_db(session_factory, monkeypatch):
    monkeypatch.setattr(settings, "tracing_enabled", False)
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def make_user():
    async def _make_user(
        session: AsyncSession,
        email: str,
        *,
        admin: bool = False,
        display_name: str | None = None,
    ) -> User:
        user = User(
            email=email,
            display_name=display_name,
            role=UserRoleEnum.ADMIN.value if admin else UserRoleEnum.CLIENT.value,
        )
        session.add(user)
        await session.flush()
        return user

    return _make_user
