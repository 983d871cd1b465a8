from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from staff_auth.core.settings import Settings


def build_engine(settings: Settings) -> AsyncEngine:
    return create_async_engine(settings.database_url, future=True, echo=False, pool_pre_ping=True)


def build_session_factory(settings: Settings, engine: AsyncEngine | None = None) -> async_sessionmaker[AsyncSession]:
    engine = engine or build_engine(settings)
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)
