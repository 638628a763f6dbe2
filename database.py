"""Database configuration and session management."""
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession, AsyncEngine
from typing import AsyncGenerator, Optional
import os

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./branchchat.db")
DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"

engine = create_async_engine(DATABASE_URL, echo=DATABASE_ECHO)
SessionLocal = async_sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)


def get_session_factory() -> async_sessionmaker:
    """Session factory dependency."""
    return SessionLocal


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Database session dependency."""
    async with SessionLocal() as db:
        yield db


async def init_db(bind: Optional[AsyncEngine] = None) -> None:
    """Create tables if they don't exist."""
    from models import Base  # Import models to register them

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
