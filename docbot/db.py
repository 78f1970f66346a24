
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncEngine
from sqlalchemy.orm import DeclarativeBase
from .config import settings

# Lazy initialization: the engine is only built on first use
_engine: AsyncEngine | None = None
_SessionLocal: async_sessionmaker | None = None

def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        url = settings.database_url
        kwargs = {"echo": False}
        if url.startswith("postgresql"):
            kwargs["pool_pre_ping"] = True
        _engine = create_async_engine(url, **kwargs)
    return _engine

def get_session_local() -> async_sessionmaker:
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _SessionLocal

async def init_models(engine: AsyncEngine) -> None:
    """Create missing tables. Schema migrations are managed outside the service."""
    from . import models  # noqa: F401  registers the tables on Base.metadata
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

async def dispose_engine() -> None:
    global _engine, _SessionLocal
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _SessionLocal = None

class Base(DeclarativeBase):
    pass
