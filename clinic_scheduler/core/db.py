from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from clinic_scheduler.core.config import settings

_ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}


def to_async_database_url(url: str) -> str:
    """Swap in the async driver and drop libpq-only params asyncpg does not accept."""
    parsed = make_url(url)
    drivername = _ASYNC_DRIVERS.get(parsed.drivername, parsed.drivername)
    parsed = parsed.set(drivername=drivername).difference_update_query(["sslmode", "channel_binding"])
    return parsed.render_as_string(hide_password=False)


def build_engine(url: str) -> AsyncEngine:
    async_url = to_async_database_url(url)
    if async_url.startswith("sqlite"):
        # SQLite pools are file handles; pool sizing args are rejected
        return create_async_engine(async_url, echo=False)
    connect_args = {"ssl": True} if settings.database_ssl else {}
    return create_async_engine(
        async_url,
        echo=settings.env == "development",
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
        connect_args=connect_args,
    )


def build_session_maker(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


engine = build_engine(settings.database_url)
async_session_maker = build_session_maker(engine)


async def init_db(bind: AsyncEngine | None = None) -> None:
    """Create tables if using create_all; prefer Alembic in production."""
    # Register tables on the metadata before create_all
    from clinic_scheduler import models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
