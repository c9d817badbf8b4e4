from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from db.models import Base
from services.config import settings

# Bookkeeping database (checkpoints, usage, tool-call log); assistant queries use the read-only asyncpg pool
engine = create_async_engine(
    settings.system_db_url,
    pool_size=settings.db_pool_max_size,
    pool_pre_ping=True,
)

AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db():
    async with AsyncSessionLocal() as session:
        yield session


async def init_models():
    """Create the assistant_* tables if they do not exist yet"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
