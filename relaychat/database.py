from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import NullPool
from relaychat.settings import settings

engine_options = {"echo": False}
if settings.DATABASE_URL.startswith("sqlite"):
    # aiosqlite connections are cheap; don't keep them across event loops
    engine_options["poolclass"] = NullPool

engine = create_async_engine(settings.DATABASE_URL, **engine_options)
AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
