from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine
from sqlalchemy.orm import sessionmaker
from .config import settings

DATABASE_URL = settings.database_url


def make_engine(url: str = DATABASE_URL, echo: bool = False) -> AsyncEngine:
    return create_async_engine(url, echo=echo, future=True)


def make_session_factory(bind: AsyncEngine) -> sessionmaker:
    return sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


# async engine
engine: AsyncEngine = make_engine()

async_session = make_session_factory(engine)


# helper to create tables (call at startup)
async def init_db(bind: AsyncEngine = None):
    # models must be imported so their tables are registered on the metadata
    from . import models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
