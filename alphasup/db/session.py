from typing import AsyncIterator

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from alphasup.config import settings


def _engine_options(url: str) -> dict:
    options = {"echo": settings.DEBUG and not settings.is_production}
    # sqlite (tests, local runs) uses its own pool and rejects sizing arguments
    if make_url(url).get_backend_name() != "sqlite":
        options.update(pool_pre_ping=True, pool_size=settings.DB_POOL_SIZE, max_overflow=settings.DB_MAX_OVERFLOW)
    return options


DATABASE_URL = str(settings.DATABASE_URL)
engine = create_async_engine(DATABASE_URL, **_engine_options(DATABASE_URL))

# expire_on_commit=False: services hand committed rows back to routers
async_session = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


async def get_session() -> AsyncIterator[AsyncSession]:
    async with async_session() as session:
        yield session
